"""Epoch snapshot, solution, identity and transaction result dataclasses."""
import json
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class FailureKind(str, Enum):
    DUPLICATE = "duplicate"
    EPOCH_ENDED = "epoch_ended"
    EPOCH_NOT_ENDED = "epoch_not_ended"
    INVALID_TEXT = "invalid_text"
    INSUFFICIENT_DIFFICULTY = "insufficient_difficulty"
    NOTHING_TO_WITHDRAW = "nothing_to_withdraw"
    NOT_FOUND = "not_found"
    CLAIM_EXPIRED = "claim_expired"
    REJECTED = "rejected"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class EpochState:
    """Immutable snapshot of the remote mine state account."""

    total_mined: int
    difficulty: int
    seed: bytes
    epoch: int
    epoch_start: int
    epoch_end: int
    solutions_in_epoch: int
    total_supply: int
    settled_in_epoch: int = 0
    mint: bytes = bytes(32)
    crank_authority: bytes = bytes(32)
    bump: int = 0

    def remaining(self, now: float) -> float:
        return self.epoch_end - now

    def has_ended(self, now: float) -> bool:
        return now >= self.epoch_end


@dataclass(frozen=True)
class MinerIdentity:
    """Session context passed to every component that needs the miner's key."""

    public_key: bytes
    recipient: bytes | None = None

    def __post_init__(self) -> None:
        if len(self.public_key) != 32:
            raise ValueError("public_key must be 32 bytes")
        if self.recipient is not None and len(self.recipient) != 32:
            raise ValueError("recipient must be 32 bytes")

    @property
    def reward_recipient(self) -> bytes:
        return self.recipient or self.public_key

    @classmethod
    def from_keypair_file(cls, path: str, recipient: bytes | None = None) -> "MinerIdentity":
        """Load a Solana CLI keypair (JSON array of 64 ints; public key is the tail)."""
        raw = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        secret = bytes(raw)
        if len(secret) != 64:
            raise ValueError(f"keypair file {path} does not hold 64 bytes")
        return cls(public_key=secret[32:], recipient=recipient)


@dataclass(frozen=True)
class Solution:
    epoch: int
    nonce: int
    text: str
    digest: bytes


@dataclass
class TxResult:
    ok: bool
    signature: str = ""
    failure: FailureKind | None = None
    detail: str = ""

    @classmethod
    def success(cls, signature: str) -> "TxResult":
        return cls(ok=True, signature=signature)

    @classmethod
    def fail(cls, failure: FailureKind, detail: str = "") -> "TxResult":
        return cls(ok=False, failure=failure, detail=detail)


@dataclass
class CoordinatorState:
    """Process-local bookkeeping; a restart re-derives intent from remote state."""

    last_submitted_epoch: int | None = None
    solution_tally: int = 0
    # Epoch the tally counts solutions for; a tally for any other epoch is stale.
    tally_epoch: int | None = None
    withdraw_counter: int = 0
    # Ascending epochs with a solution on record that has not been claimed yet.
    pending_claims: list[int] = field(default_factory=list)
    snapshot: EpochState | None = None
    solution: Solution | None = None
    history: deque = field(default_factory=lambda: deque(maxlen=256))

    def add_pending_claim(self, epoch: int) -> None:
        if epoch not in self.pending_claims:
            self.pending_claims.append(epoch)
            self.pending_claims.sort()

    def claimable(self, epoch: int) -> list[int]:
        """Pending claims for ``epoch`` or earlier."""
        return [e for e in self.pending_claims if e <= epoch]
