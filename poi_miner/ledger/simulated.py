"""In-process replica of the mining program, used by the demo and the tests."""
import hashlib
import logging
from dataclasses import dataclass, replace

from eth_hash.auto import keccak

from poi_miner.ledger import codec
from poi_miner.models.epoch import EpochState, FailureKind, MinerIdentity, TxResult
from poi_miner.protocol.composer import check_text
from poi_miner.protocol.pow import hash_candidate, meets_difficulty, preimage_prefix
from poi_miner.protocol.versions import V3_0, ProtocolVersion
from poi_miner.protocol.words import derive_words
from poi_miner.services.clock import SystemClock

logger = logging.getLogger(__name__)

# Program constants
MAX_SUPPLY = 100_000_000_000_000
INITIAL_REWARD = 25_000_000
HALVING_INTERVAL = 2_000_000
EPOCH_DURATION = 600
TARGET_SOLUTIONS = 50
INITIAL_DIFFICULTY = 8
MAX_DIFFICULTY = 250
MIN_DIFFICULTY = 4
MAX_DIFFICULTY_ADJ = 5
CLAIM_EXPIRY_EPOCHS = 500
VESTING_DURATION = 30 * 24 * 3600
SLOT_SECONDS = 0.4


def calculate_reward(total_mined: int) -> int:
    halvings = total_mined // HALVING_INTERVAL
    if halvings >= 64:
        return 0
    return INITIAL_REWARD >> halvings


def log2_ceil(n: int) -> int:
    if n <= 1:
        return 0
    return (n - 1).bit_length()


def retarget(difficulty: int, solution_count: int) -> int:
    """Difficulty for the next epoch given the solutions settled in this one."""
    target = TARGET_SOLUTIONS
    if solution_count > target + target // 5:
        increase = min(max(log2_ceil(solution_count // target), 1), MAX_DIFFICULTY_ADJ)
        return min(difficulty + increase, MAX_DIFFICULTY)
    if solution_count == 0:
        return max(difficulty - MAX_DIFFICULTY_ADJ, MIN_DIFFICULTY)
    if solution_count < target - target // 5:
        decrease = min(max(log2_ceil(target // max(solution_count, 1)), 1), MAX_DIFFICULTY_ADJ)
        return max(difficulty - decrease, MIN_DIFFICULTY)
    return difficulty


@dataclass
class SolutionRecord:
    miner: bytes
    recipient: bytes
    epoch: int
    nonce: int
    digest: bytes


@dataclass
class VestingRecord:
    locked: int = 0
    unlocked: int = 0
    last_update: float = 0.0

    def drip(self, now: float) -> None:
        if self.locked == 0 or now <= self.last_update:
            self.last_update = now
            return
        elapsed = now - self.last_update
        release = self.locked if elapsed >= VESTING_DURATION else int(self.locked * elapsed // VESTING_DURATION)
        self.unlocked += release
        self.locked -= release
        self.last_update = now


class SimulatedLedger:
    """
    Applies the program's rules to an in-memory mine-state account.
    The account is kept as encoded bytes and decoded on every read, the same
    way a transport-backed client would see it.
    """

    def __init__(
        self,
        identity: MinerIdentity,
        version: ProtocolVersion = V3_0,
        clock=None,
        *,
        seed: bytes | None = None,
        difficulty: int = INITIAL_DIFFICULTY,
        epoch_duration: int = EPOCH_DURATION,
        crank_authority: bytes | None = None,
    ):
        if clock is None:
            clock = SystemClock()
        self.identity = identity
        self.version = version
        self.clock = clock
        self.epoch_duration = epoch_duration
        self._genesis = clock.now()
        now = int(self._genesis)
        if seed is None:
            seed = keccak(now.to_bytes(8, "little", signed=True) + identity.public_key)
        state = EpochState(
            total_mined=0,
            difficulty=difficulty,
            seed=seed,
            epoch=0,
            epoch_start=now,
            epoch_end=now + epoch_duration,
            solutions_in_epoch=0,
            total_supply=0,
            mint=hashlib.sha256(b"mint").digest(),
            crank_authority=crank_authority or identity.public_key,
            bump=255,
        )
        self._account = codec.encode_mine_state(state)
        self.solutions: dict[tuple[bytes, int], SolutionRecord] = {}
        self.vesting: dict[bytes, VestingRecord] = {}
        self.balances: dict[bytes, int] = {}
        self.transactions: list[tuple[str, bytes, str]] = []
        self._faults: dict[str, list] = {}

    # ------------------------------------------------------------------
    # Test hooks
    def queue_fault(self, method: str, outcome) -> None:
        """Make the next call to ``method`` raise (Exception) or return (TxResult) ``outcome``."""
        self._faults.setdefault(method, []).append(outcome)

    def _fault(self, method: str):
        queued = self._faults.get(method)
        if not queued:
            return None
        outcome = queued.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def state(self) -> EpochState:
        return codec.decode_mine_state(self._account)

    def _store(self, state: EpochState) -> None:
        self._account = codec.encode_mine_state(state)

    def _slot(self, now: float) -> int:
        return int((now - self._genesis) / SLOT_SECONDS)

    def _record(self, name: str, data: bytes) -> TxResult:
        signature = hashlib.sha256(data + len(self.transactions).to_bytes(8, "little")).hexdigest()
        self.transactions.append((name, data, signature))
        return TxResult.success(signature)

    # ------------------------------------------------------------------
    # LedgerClient
    async def read_epoch_state(self) -> EpochState:
        self._fault("read_epoch_state")
        return codec.decode_mine_state(self._account)

    async def submit(self, text: str, nonce: int, epoch: int) -> TxResult:
        injected = self._fault("submit")
        if injected is not None:
            return injected
        recipient = self.identity.reward_recipient if self.version.submit_with_recipient else None
        data = codec.encode_submit(text, nonce, recipient)
        state = self.state
        now = self.clock.now()

        if now >= state.epoch_end or epoch < state.epoch:
            return TxResult.fail(FailureKind.EPOCH_ENDED, "Current epoch has ended, call advance_epoch first")
        if epoch != state.epoch:
            return TxResult.fail(FailureKind.REJECTED, f"no epoch {epoch} yet")
        if state.total_supply >= MAX_SUPPLY:
            return TxResult.fail(FailureKind.REJECTED, "Maximum token supply reached")
        key = (self.identity.public_key, epoch)
        if key in self.solutions:
            return TxResult.fail(FailureKind.DUPLICATE, "solution account already in use")

        required = derive_words(state.seed, state.difficulty)
        violations = check_text(text, required)
        if violations:
            return TxResult.fail(FailureKind.INVALID_TEXT, ",".join(violations))
        digest = hash_candidate(preimage_prefix(state.seed, self.identity.public_key, text), nonce)
        if not meets_difficulty(digest, state.difficulty):
            return TxResult.fail(FailureKind.INSUFFICIENT_DIFFICULTY, "Hash does not meet difficulty requirement")

        self.solutions[key] = SolutionRecord(
            miner=self.identity.public_key,
            recipient=self.identity.reward_recipient,
            epoch=epoch,
            nonce=nonce,
            digest=digest,
        )
        return self._record("submit_solution", data)

    async def advance_epoch(self, solution_count: int) -> TxResult:
        injected = self._fault("advance_epoch")
        if injected is not None:
            return injected
        data = codec.encode_advance(solution_count)
        state = self.state
        now = self.clock.now()
        if self.identity.public_key != state.crank_authority:
            return TxResult.fail(FailureKind.REJECTED, "Unauthorized")
        if now < state.epoch_end:
            return TxResult.fail(FailureKind.EPOCH_NOT_ENDED, "Epoch has not ended yet")

        ts = int(now)
        seed_input = (
            state.seed
            + ts.to_bytes(8, "little", signed=True)
            + self._slot(now).to_bytes(8, "little")
            + solution_count.to_bytes(8, "little")
        )
        self._store(
            replace(
                state,
                solutions_in_epoch=solution_count,
                difficulty=retarget(state.difficulty, solution_count),
                seed=keccak(seed_input),
                epoch=state.epoch + 1,
                epoch_start=ts,
                epoch_end=ts + self.epoch_duration,
            )
        )
        logger.debug("Simulated ledger advanced to epoch %d", state.epoch + 1)
        return self._record("advance_epoch", data)

    async def claim(self, epoch: int) -> TxResult:
        injected = self._fault("claim")
        if injected is not None:
            return injected
        state = self.state
        now = self.clock.now()
        record = self.solutions.get((self.identity.public_key, epoch))
        if record is None:
            return TxResult.fail(FailureKind.NOT_FOUND, f"no solution for epoch {epoch}")
        epoch_over = record.epoch < state.epoch or (record.epoch == state.epoch and now >= state.epoch_end)
        if not epoch_over:
            return TxResult.fail(FailureKind.EPOCH_NOT_ENDED, "Epoch has not ended yet")
        if state.epoch >= record.epoch + CLAIM_EXPIRY_EPOCHS:
            return TxResult.fail(FailureKind.CLAIM_EXPIRED, "Solution claim period has expired (500 epochs)")

        reward = min(calculate_reward(state.total_mined), MAX_SUPPLY - state.total_supply)
        if self.version.vesting:
            vesting = self.vesting.get(self.identity.public_key)
            if vesting is None:
                return TxResult.fail(FailureKind.NOT_FOUND, "vesting account missing")
            vesting.drip(now)
            vesting.locked += reward
        else:
            self.balances[record.recipient] = self.balances.get(record.recipient, 0) + reward

        self._store(replace(state, total_mined=state.total_mined + 1, total_supply=state.total_supply + reward))
        del self.solutions[(self.identity.public_key, epoch)]
        return self._record("claim", codec.encode_claim())

    async def ensure_vesting(self) -> TxResult:
        injected = self._fault("ensure_vesting")
        if injected is not None:
            return injected
        if not self.version.vesting or self.identity.public_key in self.vesting:
            return TxResult.success("")
        self.vesting[self.identity.public_key] = VestingRecord(last_update=self.clock.now())
        return self._record("create_vesting", codec.encode_create_vesting())

    async def withdraw(self) -> TxResult:
        injected = self._fault("withdraw")
        if injected is not None:
            return injected
        vesting = self.vesting.get(self.identity.public_key)
        if vesting is None:
            return TxResult.fail(FailureKind.NOT_FOUND, "vesting account missing")
        vesting.drip(self.clock.now())
        if vesting.unlocked == 0:
            return TxResult.fail(FailureKind.NOTHING_TO_WITHDRAW, "Nothing to withdraw")
        recipient = self.identity.reward_recipient
        self.balances[recipient] = self.balances.get(recipient, 0) + vesting.unlocked
        vesting.unlocked = 0
        return self._record("withdraw", codec.encode_withdraw())
