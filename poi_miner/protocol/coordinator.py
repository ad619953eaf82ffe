"""Epoch state machine: solve, submit, wait, advance and claim, forever."""
import asyncio
import logging
import threading
from enum import Enum
from typing import Callable, Protocol

from poi_miner.errors import CompositionError, LedgerError
from poi_miner.ledger.base import LedgerClient
from poi_miner.models.epoch import CoordinatorState, FailureKind, MinerIdentity, Solution, TxResult
from poi_miner.protocol.pow import SearchResult
from poi_miner.protocol.versions import ProtocolVersion
from poi_miner.services.clock import Clock, sleep_bounded

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    AWAITING_EPOCH_END = "awaiting_epoch_end"
    SOLVING = "solving"
    SUBMITTING = "submitting"
    WAITING_FOR_ADVANCE = "waiting_for_advance"
    ADVANCING = "advancing"
    CLAIMING = "claiming"
    ERROR = "error"


class Recorder(Protocol):
    async def record_solution(self, solution, difficulty, signature, attempts, elapsed_s, duplicate=False): ...

    async def record_claim(self, epoch, ok, signature, detail): ...


TransitionObserver = Callable[[Phase, Phase], None]


class EpochCoordinator:
    """
    Single owner of CoordinatorState. Each step reads fresh remote state where
    it matters and never carries a snapshot across an epoch boundary.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        identity: MinerIdentity,
        version: ProtocolVersion,
        clock: Clock,
        *,
        max_attempts: int,
        search_workers: int = 1,
        progress_interval: int = 1_000_000,
        error_backoff_s: float = 10.0,
        max_sleep_step_s: float = 30.0,
        advance_poll_s: float = 2.0,
        recorder: Recorder | None = None,
        observer: TransitionObserver | None = None,
    ) -> None:
        self.ledger = ledger
        self.identity = identity
        self.version = version
        self.clock = clock
        self.max_attempts = max_attempts
        self.search_workers = search_workers
        self.progress_interval = progress_interval
        self.error_backoff_s = error_backoff_s
        self.max_sleep_step_s = max_sleep_step_s
        self.advance_poll_s = advance_poll_s
        self.recorder = recorder
        self.observer = observer

        self.state = CoordinatorState()
        self.phase = Phase.IDLE
        self.last_error = ""
        self.search_attempts = 0
        self.last_search: SearchResult | None = None
        self._after_claim = Phase.IDLE
        self._vesting_ready = False
        self._attempted_claims: set[int] = set()
        self._claim_upto = -1
        self._stop = asyncio.Event()
        self._cancel_search = threading.Event()
        self._handlers = {
            Phase.IDLE: self._idle,
            Phase.AWAITING_EPOCH_END: self._await_epoch_end,
            Phase.SOLVING: self._solve,
            Phase.SUBMITTING: self._submit,
            Phase.WAITING_FOR_ADVANCE: self._wait_for_advance,
            Phase.ADVANCING: self._advance,
            Phase.CLAIMING: self._claim,
            Phase.ERROR: self._error,
        }

    # ------------------------------------------------------------------
    # Public API
    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Request shutdown; an in-flight nonce search is cancelled too."""
        self._stop.set()
        self._cancel_search.set()

    async def run(self, max_steps: int | None = None) -> None:
        """Drive the state machine until stopped (or ``max_steps`` transitions)."""
        steps = 0
        while not self._stop.is_set():
            if max_steps is not None and steps >= max_steps:
                return
            await self.step()
            steps += 1

    async def step(self) -> Phase:
        """Run the handler for the current phase and move to the phase it returns."""
        current = self.phase
        try:
            nxt = await self._handlers[current]()
        except CompositionError as exc:
            self.last_error = f"{current.value}: {exc}"
            raise
        except LedgerError as exc:
            self.last_error = f"{current.value}: {exc}"
            logger.warning("Ledger error during %s: %s", current.value, exc)
            nxt = Phase.ERROR
        except asyncio.CancelledError:
            self._cancel_search.set()
            raise
        except Exception as exc:
            self.last_error = f"{current.value}: {exc}"
            logger.exception("Unexpected error during %s", current.value)
            nxt = Phase.ERROR

        self.state.history.append((current, nxt))
        self.phase = nxt
        logger.debug("Coordinator %s -> %s", current.value, nxt.value)
        if self.observer is not None:
            self.observer(current, nxt)
        return nxt

    def status(self) -> dict:
        snap = self.state.snapshot
        return {
            "phase": self.phase.value,
            "protocol_version": self.version.name,
            "miner": self.identity.public_key.hex(),
            "epoch": snap.epoch if snap else None,
            "difficulty": snap.difficulty if snap else None,
            "epoch_ends_in_s": round(snap.remaining(self.clock.now()), 1) if snap else None,
            "last_submitted_epoch": self.state.last_submitted_epoch,
            "solution_tally": self.state.solution_tally,
            "withdraw_counter": self.state.withdraw_counter,
            "pending_claims": list(self.state.pending_claims),
            "search_attempts": self.search_attempts,
            "last_error": self.last_error,
            "stopped": self.stopped,
        }

    # ------------------------------------------------------------------
    # Phase handlers
    async def _idle(self) -> Phase:
        snap = await self.ledger.read_epoch_state()
        self.state.snapshot = snap
        now = self.clock.now()
        logger.info(
            "Epoch %d | difficulty %d | ends in %ds",
            snap.epoch, snap.difficulty, int(snap.remaining(now)),
        )
        if self.state.tally_epoch != snap.epoch:
            # Someone else advanced past the epoch this tally was counting.
            self.state.solution_tally = 0
            self.state.tally_epoch = snap.epoch
        if snap.has_ended(now):
            return Phase.ADVANCING
        if self.state.claimable(snap.epoch - 1):
            self._claim_upto = snap.epoch - 1
            self._after_claim = Phase.IDLE
            return Phase.CLAIMING
        if self.state.last_submitted_epoch == snap.epoch:
            return Phase.AWAITING_EPOCH_END
        return Phase.SOLVING

    async def _solve(self) -> Phase:
        snap = self.state.snapshot
        vocabulary = self.version.derive_words(snap.seed, snap.difficulty)
        text = self.version.compose_text(vocabulary)
        logger.info("Required words (%d): %s", len(vocabulary), ", ".join(vocabulary))
        logger.info("Grinding nonce (difficulty=%d, %d bytes of text)...", snap.difficulty, len(text.encode()))

        if self._stop.is_set():
            return Phase.IDLE
        self._cancel_search.clear()
        self.search_attempts = 0
        result = await asyncio.to_thread(
            self.version.search,
            snap.seed,
            self.identity.public_key,
            text,
            snap.difficulty,
            self.max_attempts,
            workers=self.search_workers,
            cancel=self._cancel_search,
            progress=self._on_progress,
            progress_interval=self.progress_interval,
        )
        if result is None:
            if self._stop.is_set():
                return Phase.IDLE
            self.last_error = f"search exhausted after {self.max_attempts} attempts"
            logger.warning("No nonce found for epoch %d in %d attempts", snap.epoch, self.max_attempts)
            return Phase.ERROR

        self.last_search = result
        self.search_attempts = result.attempts
        logger.info("Found nonce %d in %.1fs (%d attempts)", result.nonce, result.elapsed_s, result.attempts)

        # The epoch may have moved on while grinding; never submit against it.
        fresh = await self.ledger.read_epoch_state()
        if fresh.epoch != snap.epoch or fresh.seed != snap.seed or fresh.has_ended(self.clock.now()):
            logger.info("Epoch %d closed while solving; discarding solution", snap.epoch)
            self.state.snapshot = fresh
            return Phase.IDLE

        self.state.solution = Solution(epoch=snap.epoch, nonce=result.nonce, text=text, digest=result.digest)
        return Phase.SUBMITTING

    async def _submit(self) -> Phase:
        solution = self.state.solution
        self.state.solution = None
        result = await self.ledger.submit(solution.text, solution.nonce, solution.epoch)

        duplicate = not result.ok and result.failure == FailureKind.DUPLICATE
        if not result.ok and not duplicate:
            if result.failure == FailureKind.EPOCH_ENDED:
                logger.info("Epoch %d ended before submission landed", solution.epoch)
                return Phase.IDLE
            self.last_error = f"submit: {result.failure.value if result.failure else 'failed'} {result.detail}"
            logger.warning("Submission for epoch %d rejected: %s", solution.epoch, self.last_error)
            return Phase.ERROR

        if duplicate:
            logger.info("Epoch %d already has our solution on record", solution.epoch)
        else:
            logger.info("Submitted solution for epoch %d: %s", solution.epoch, result.signature)
        self.state.last_submitted_epoch = solution.epoch
        if self.state.tally_epoch != solution.epoch:
            self.state.solution_tally = 0
            self.state.tally_epoch = solution.epoch
        self.state.solution_tally += 1
        self.state.withdraw_counter += 1
        self.state.add_pending_claim(solution.epoch)

        if self.recorder is not None:
            search = self.last_search
            await self.recorder.record_solution(
                solution,
                self.state.snapshot.difficulty,
                result.signature,
                search.attempts if search else 0,
                search.elapsed_s if search else 0.0,
                duplicate,
            )
        if self.version.should_withdraw(self.state.withdraw_counter):
            await self._withdraw()
        return Phase.AWAITING_EPOCH_END

    async def _await_epoch_end(self) -> Phase:
        remaining = self.state.snapshot.remaining(self.clock.now())
        if remaining > 0:
            wait = min(remaining, self.max_sleep_step_s)
            logger.info("Already submitted for epoch %d, waiting %ds...", self.state.snapshot.epoch, int(wait))
            await self.clock.sleep(wait, self._stop)
        return Phase.IDLE

    async def _wait_for_advance(self) -> Phase:
        await sleep_bounded(self.clock, self.advance_poll_s, self.max_sleep_step_s, self._stop)
        return Phase.IDLE

    async def _advance(self) -> Phase:
        snap = self.state.snapshot
        count = self.state.solution_tally if self.state.tally_epoch == snap.epoch else 0
        logger.info("Epoch %d ended, advancing with %d local solution(s)", snap.epoch, count)
        # A tally must never leak into the next epoch, whatever happens below.
        self.state.solution_tally = 0
        self.state.tally_epoch = None
        result = await self.ledger.advance_epoch(count)

        if result.ok:
            logger.info("Epoch advanced: %s", result.signature)
        else:
            logger.warning("Advance failed: %s %s", result.failure.value if result.failure else "", result.detail)
        self._after_claim = Phase.IDLE if result.ok else Phase.WAITING_FOR_ADVANCE

        if self.state.last_submitted_epoch == snap.epoch and snap.epoch not in self._attempted_claims:
            self.state.add_pending_claim(snap.epoch)
        self._attempted_claims = {e for e in self._attempted_claims if e >= snap.epoch}
        if self.state.claimable(snap.epoch):
            self._claim_upto = snap.epoch
            return Phase.CLAIMING
        return self._after_claim

    async def _claim(self) -> Phase:
        if self.version.vesting and not self._vesting_ready:
            await self._ensure_vesting()

        for epoch in self.state.claimable(self._claim_upto):
            logger.info("Claiming reward for epoch %d...", epoch)
            self._attempted_claims.add(epoch)
            result = await self.ledger.claim(epoch)
            if result.ok:
                logger.info("Claimed: %s", result.signature)
            else:
                logger.warning("Claim for epoch %d failed: %s %s", epoch,
                               result.failure.value if result.failure else "", result.detail)
            if self.recorder is not None:
                await self.recorder.record_claim(epoch, result.ok, result.signature, result.detail)
            # Only an epoch that has not been advanced past stays claimable later;
            # every later pending epoch is then still open too.
            if result.failure == FailureKind.EPOCH_NOT_ENDED:
                return Phase.WAITING_FOR_ADVANCE
            self.state.pending_claims.remove(epoch)
        return self._after_claim

    async def _error(self) -> Phase:
        logger.info("Backing off %.1fs after error: %s", self.error_backoff_s, self.last_error)
        await sleep_bounded(self.clock, self.error_backoff_s, self.max_sleep_step_s, self._stop)
        return Phase.IDLE

    # ------------------------------------------------------------------
    # Helpers
    def _on_progress(self, attempts: int) -> None:
        self.search_attempts = attempts
        logger.debug("Search progress: %d attempts", attempts)

    async def _ensure_vesting(self) -> None:
        result = await self.ledger.ensure_vesting()
        if result.ok:
            self._vesting_ready = True
        else:
            logger.warning("Vesting account unavailable: %s", result.detail)

    async def _withdraw(self) -> TxResult | None:
        try:
            result = await self.ledger.withdraw()
        except LedgerError as exc:
            logger.warning("Withdraw skipped: %s", exc)
            return None
        if result.ok:
            logger.info("Withdrew vested tokens: %s", result.signature)
        else:
            logger.info("Withdraw skipped: %s", result.detail)
        return result
