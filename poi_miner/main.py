"""FastAPI application with lifespan that runs the epoch coordinator and REST routes."""
import asyncio
import functools
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from poi_miner.api.routes import router
from poi_miner.config import settings
from poi_miner.database import SolutionLog, close_db, get_db
from poi_miner.ledger.base import build_ledger
from poi_miner.models.epoch import MinerIdentity
from poi_miner.protocol.coordinator import EpochCoordinator
from poi_miner.protocol.versions import get_version
from poi_miner.services.clock import SystemClock

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_coordinator(clock=None) -> EpochCoordinator:
    """Wire identity, protocol version, ledger and solution log from settings."""
    clock = clock or SystemClock()
    identity = MinerIdentity.from_keypair_file(settings.keypair_path, settings.recipient_bytes)
    version = get_version(settings.protocol_version)
    ledger = build_ledger(settings.ledger_factory, identity, version, clock)
    return EpochCoordinator(
        ledger,
        identity,
        version,
        clock,
        max_attempts=settings.max_attempts,
        search_workers=settings.search_workers,
        progress_interval=settings.progress_interval,
        error_backoff_s=settings.error_backoff_s,
        max_sleep_step_s=settings.max_sleep_step_s,
        advance_poll_s=settings.advance_poll_s,
        recorder=SolutionLog(),
    )


def _log_coordinator_exit(coordinator: EpochCoordinator, task: asyncio.Task) -> None:
    """Report a coordinator that stopped on its own as soon as it happens."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        coordinator.stop()
        logger.error("Coordinator stopped: %s", exc, exc_info=exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("PoI miner starting, initialising database")
    await get_db()
    coordinator = build_coordinator()
    app.state.coordinator = coordinator
    logger.info(
        "Miner %s on %s (protocol %s, %d search worker(s))",
        coordinator.identity.public_key.hex(), settings.rpc_url,
        coordinator.version.name, settings.search_workers,
    )
    task = None
    if settings.autostart:
        task = asyncio.create_task(coordinator.run())
        task.add_done_callback(functools.partial(_log_coordinator_exit, coordinator))
    yield
    logger.info("PoI miner shutting down, stopping coordinator")
    coordinator.stop()
    if task is not None and not task.done():
        await task
    await close_db()


app = FastAPI(
    title="PoI Miner",
    description="Proof-of-inference mining agent: vocabulary, proof text, nonce search and epoch lifecycle",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)
