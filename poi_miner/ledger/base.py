"""Ledger collaborator interface consumed by the epoch coordinator."""
import importlib
from typing import Protocol, runtime_checkable

from poi_miner.models.epoch import EpochState, MinerIdentity, TxResult
from poi_miner.protocol.versions import ProtocolVersion


@runtime_checkable
class LedgerClient(Protocol):
    """
    The four remote capabilities the miner core needs, plus the vesting
    calls used by protocol versions that route rewards through vesting.

    Implementations own transport, signing and instruction layout. Transport
    faults raise LedgerError; program-level rejections come back as a failed
    TxResult.
    """

    async def read_epoch_state(self) -> EpochState: ...

    async def submit(self, text: str, nonce: int, epoch: int) -> TxResult: ...

    async def advance_epoch(self, solution_count: int) -> TxResult: ...

    async def claim(self, epoch: int) -> TxResult: ...

    async def ensure_vesting(self) -> TxResult: ...

    async def withdraw(self) -> TxResult: ...


def load_ledger_factory(path: str):
    """Resolve a ``module:attr`` path to a ledger factory."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"ledger factory must look like 'module:attr', got {path!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


def build_ledger(path: str, identity: MinerIdentity, version: ProtocolVersion, clock, **options) -> LedgerClient:
    factory = load_ledger_factory(path)
    return factory(identity=identity, version=version, clock=clock, **options)
