"""Pydantic settings loaded from .env."""
import psutil
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


def _default_workers() -> int:
    return psutil.cpu_count(logical=False) or 1


class Settings(BaseSettings):
    rpc_url: str = Field("http://127.0.0.1:8899", env="RPC_URL")
    keypair_path: str = Field("./miner-keypair.json", env="KEYPAIR_PATH")
    recipient: str = Field("", env="RECIPIENT")
    protocol_version: str = Field("v3.0", env="PROTOCOL_VERSION")
    ledger_factory: str = Field("poi_miner.ledger.simulated:SimulatedLedger", env="LEDGER_FACTORY")
    database_url: str = Field("./poi_miner.db", env="DATABASE_URL")
    autostart: bool = Field(True, env="AUTOSTART")
    # Proof search
    max_attempts: int = Field(50_000_000, env="MAX_ATTEMPTS")
    search_workers: int = Field(default_factory=_default_workers, env="SEARCH_WORKERS")
    progress_interval: int = Field(1_000_000, env="PROGRESS_INTERVAL")
    # Epoch loop timing (seconds)
    error_backoff_s: float = Field(10.0, env="ERROR_BACKOFF_S")
    max_sleep_step_s: float = Field(30.0, env="MAX_SLEEP_STEP_S")
    advance_poll_s: float = Field(2.0, env="ADVANCE_POLL_S")

    @model_validator(mode="after")
    def check_ranges(self) -> "Settings":
        if self.max_attempts <= 0:
            raise ValueError("MAX_ATTEMPTS must be positive")
        if self.search_workers <= 0:
            raise ValueError("SEARCH_WORKERS must be positive")
        if self.max_sleep_step_s <= 0:
            raise ValueError("MAX_SLEEP_STEP_S must be positive")
        return self

    @property
    def recipient_bytes(self) -> bytes | None:
        value = self.recipient.strip()
        return bytes.fromhex(value) if value else None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
