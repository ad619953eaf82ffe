"""Scenario tests for the epoch state machine against the simulated ledger."""
import asyncio
import dataclasses
import os
import sys
import unittest
from unittest.mock import AsyncMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from poi_miner.errors import CompositionError, LedgerUnavailable
from poi_miner.ledger import codec
from poi_miner.ledger.simulated import INITIAL_REWARD, SimulatedLedger
from poi_miner.models.epoch import FailureKind, MinerIdentity, TxResult
from poi_miner.protocol import pow
from poi_miner.protocol.coordinator import EpochCoordinator, Phase
from poi_miner.protocol.versions import V2_2, V3_0
from poi_miner.services.clock import FakeClock

MINER = MinerIdentity(public_key=b"\x11" * 32)


class _MemoryRecorder:
    def __init__(self):
        self.solutions = []
        self.claims = []

    async def record_solution(self, solution, difficulty, signature, attempts, elapsed_s, duplicate=False):
        self.solutions.append((solution, difficulty, duplicate))

    async def record_claim(self, epoch, ok, signature, detail):
        self.claims.append((epoch, ok))


def _make(version=V3_0, difficulty=8, **options):
    clock = FakeClock()
    ledger = SimulatedLedger(MINER, version, clock, seed=bytes(32), difficulty=difficulty)
    recorder = _MemoryRecorder()
    defaults = dict(max_attempts=1 << 20, max_sleep_step_s=600.0, recorder=recorder)
    defaults.update(options)
    coordinator = EpochCoordinator(ledger, MINER, version, clock, **defaults)
    return coordinator, ledger, clock, recorder


async def _steps(coordinator, n):
    return [await coordinator.step() for _ in range(n)]


class TestEpochCycle(unittest.TestCase):
    def test_full_epoch_cycle(self):
        coordinator, ledger, clock, recorder = _make()

        async def _run():
            return await _steps(coordinator, 7)

        phases = asyncio.run(_run())
        self.assertEqual(phases, [
            Phase.SOLVING,
            Phase.SUBMITTING,
            Phase.AWAITING_EPOCH_END,
            Phase.IDLE,
            Phase.ADVANCING,
            Phase.CLAIMING,
            Phase.IDLE,
        ])
        names = [name for name, _, _ in ledger.transactions]
        self.assertEqual(names, ["submit_solution", "advance_epoch", "create_vesting", "claim"])
        self.assertEqual(ledger.transactions[1][1], codec.encode_advance(1))
        self.assertEqual(ledger.vesting[MINER.public_key].locked, INITIAL_REWARD)
        self.assertEqual(len(recorder.solutions), 1)
        self.assertEqual(recorder.claims, [(0, True)])
        self.assertEqual(coordinator.state.pending_claims, [])
        self.assertEqual(coordinator.state.solution_tally, 0)

    def test_v22_claims_without_vesting(self):
        coordinator, ledger, clock, _ = _make(version=V2_2)
        asyncio.run(_steps(coordinator, 7))
        names = [name for name, _, _ in ledger.transactions]
        self.assertEqual(names, ["submit_solution", "advance_epoch", "claim"])
        self.assertEqual(ledger.balances[MINER.public_key], INITIAL_REWARD)

    def test_ended_epoch_after_submission_claims_without_solving(self):
        coordinator, ledger, clock, _ = _make()
        coordinator.state.last_submitted_epoch = 0
        clock.advance(600)
        asyncio.run(_steps(coordinator, 3))
        self.assertEqual(list(coordinator.state.history), [
            (Phase.IDLE, Phase.ADVANCING),
            (Phase.ADVANCING, Phase.CLAIMING),
            (Phase.CLAIMING, Phase.IDLE),
        ])

    def test_awaits_end_after_submitting(self):
        coordinator, ledger, clock, _ = _make(max_sleep_step_s=30.0)
        asyncio.run(_steps(coordinator, 5))
        self.assertEqual(coordinator.phase, Phase.AWAITING_EPOCH_END)
        self.assertEqual(clock.sleeps, [30.0])
        self.assertEqual([name for name, _, _ in ledger.transactions], ["submit_solution"])

    def test_duplicate_counts_as_submitted(self):
        coordinator, ledger, clock, recorder = _make()
        ledger.queue_fault("submit", TxResult.fail(FailureKind.DUPLICATE, "already in use"))
        phases = asyncio.run(_steps(coordinator, 3))
        self.assertEqual(phases[-1], Phase.AWAITING_EPOCH_END)
        self.assertEqual(coordinator.state.last_submitted_epoch, 0)
        self.assertEqual(coordinator.state.solution_tally, 1)
        self.assertEqual(coordinator.state.pending_claims, [0])
        self.assertTrue(recorder.solutions[0][2])

    def test_epoch_ended_on_submit_returns_idle(self):
        coordinator, ledger, clock, _ = _make()
        ledger.queue_fault("submit", TxResult.fail(FailureKind.EPOCH_ENDED))
        phases = asyncio.run(_steps(coordinator, 3))
        self.assertEqual(phases[-1], Phase.IDLE)
        self.assertIsNone(coordinator.state.last_submitted_epoch)

    def test_rejected_submission_goes_to_error(self):
        coordinator, ledger, clock, _ = _make()
        ledger.queue_fault("submit", TxResult.fail(FailureKind.INVALID_TEXT, "length"))
        phases = asyncio.run(_steps(coordinator, 3))
        self.assertEqual(phases[-1], Phase.ERROR)
        self.assertIn("invalid_text", coordinator.last_error)


class TestSolving(unittest.TestCase):
    def test_search_exhaustion_goes_to_error(self):
        coordinator, ledger, clock, _ = _make(difficulty=200, max_attempts=64, error_backoff_s=10.0)
        phases = asyncio.run(_steps(coordinator, 3))
        self.assertEqual(phases, [Phase.SOLVING, Phase.ERROR, Phase.IDLE])
        self.assertIn("exhausted", coordinator.last_error)
        self.assertEqual(clock.sleeps, [10.0])
        self.assertEqual(ledger.transactions, [])

    def test_stale_epoch_discards_solution(self):
        holder = {}

        def slow_search(*args, **kwargs):
            holder["clock"].advance(700)
            return pow.search(*args, **kwargs)

        version = dataclasses.replace(V2_2, search=slow_search)
        coordinator, ledger, clock, _ = _make(version=version)
        holder["clock"] = clock
        phases = asyncio.run(_steps(coordinator, 2))
        self.assertEqual(phases, [Phase.SOLVING, Phase.IDLE])
        self.assertIsNone(coordinator.state.solution)
        self.assertEqual(ledger.transactions, [])

    def test_composition_error_propagates(self):
        def broken(vocabulary):
            raise CompositionError(["length"])

        version = dataclasses.replace(V2_2, compose_text=broken)
        coordinator, _, _, _ = _make(version=version)

        async def _run():
            await coordinator.step()
            await coordinator.step()

        with self.assertRaises(CompositionError):
            asyncio.run(_run())
        self.assertIn("length", coordinator.last_error)

    def test_stop_before_search_returns_idle(self):
        coordinator, ledger, _, _ = _make()

        async def _run():
            await coordinator.step()
            coordinator.stop()
            return await coordinator.step()

        self.assertEqual(asyncio.run(_run()), Phase.IDLE)
        self.assertEqual(ledger.transactions, [])


class TestAdvanceAndClaim(unittest.TestCase):
    def test_tally_reset_and_passed_to_advance(self):
        coordinator, ledger, clock, _ = _make()
        coordinator.state.solution_tally = 3
        coordinator.state.tally_epoch = 0
        clock.advance(600)
        phases = asyncio.run(_steps(coordinator, 2))
        self.assertEqual(phases, [Phase.ADVANCING, Phase.IDLE])
        self.assertEqual(coordinator.state.solution_tally, 0)
        self.assertEqual(ledger.transactions[-1][1], codec.encode_advance(3))

    def test_tally_reset_when_advance_fails(self):
        coordinator, ledger, clock, _ = _make()
        coordinator.state.solution_tally = 2
        coordinator.state.tally_epoch = 0
        ledger.queue_fault("advance_epoch", TxResult.fail(FailureKind.REJECTED, "Unauthorized"))
        clock.advance(600)
        phases = asyncio.run(_steps(coordinator, 2))
        self.assertEqual(phases, [Phase.ADVANCING, Phase.WAITING_FOR_ADVANCE])
        self.assertEqual(coordinator.state.solution_tally, 0)

    def test_not_ended_waits_for_advance(self):
        coordinator, ledger, clock, _ = _make(advance_poll_s=2.0)
        ledger.queue_fault("advance_epoch", TxResult.fail(FailureKind.EPOCH_NOT_ENDED))
        clock.advance(600)
        phases = asyncio.run(_steps(coordinator, 3))
        self.assertEqual(phases, [Phase.ADVANCING, Phase.WAITING_FOR_ADVANCE, Phase.IDLE])
        self.assertEqual(clock.sleeps, [2.0])

    def test_claim_kept_when_epoch_not_ended(self):
        coordinator, ledger, clock, recorder = _make()
        coordinator.state.last_submitted_epoch = 0
        coordinator.state.pending_claims = [0]
        ledger.queue_fault("advance_epoch", TxResult.fail(FailureKind.EPOCH_NOT_ENDED))
        ledger.queue_fault("claim", TxResult.fail(FailureKind.EPOCH_NOT_ENDED))
        clock.advance(600)
        phases = asyncio.run(_steps(coordinator, 3))
        self.assertEqual(phases, [Phase.ADVANCING, Phase.CLAIMING, Phase.WAITING_FOR_ADVANCE])
        self.assertEqual(coordinator.state.pending_claims, [0])
        self.assertEqual(recorder.claims, [(0, False)])

    def test_failed_claim_is_not_retried(self):
        coordinator, ledger, clock, _ = _make()
        coordinator.state.last_submitted_epoch = 0
        clock.advance(600)
        phases = asyncio.run(_steps(coordinator, 4))
        self.assertEqual(phases, [Phase.ADVANCING, Phase.CLAIMING, Phase.IDLE, Phase.SOLVING])
        self.assertEqual(coordinator.state.pending_claims, [])

    def test_external_advance_starts_fresh_tally_and_keeps_claim(self):
        coordinator, ledger, clock, recorder = _make()

        async def _run():
            phases = await _steps(coordinator, 3)
            # Another crank closes epoch 0 before this miner gets to it.
            clock.advance(600)
            await ledger.advance_epoch(5)
            return phases + await _steps(coordinator, 10)

        phases = asyncio.run(_run())
        self.assertEqual(phases, [
            Phase.SOLVING,
            Phase.SUBMITTING,
            Phase.AWAITING_EPOCH_END,
            Phase.IDLE,
            Phase.CLAIMING,
            Phase.IDLE,
            Phase.SOLVING,
            Phase.SUBMITTING,
            Phase.AWAITING_EPOCH_END,
            Phase.IDLE,
            Phase.ADVANCING,
            Phase.CLAIMING,
            Phase.IDLE,
        ])
        advances = [data for name, data, _ in ledger.transactions if name == "advance_epoch"]
        self.assertEqual(advances, [codec.encode_advance(5), codec.encode_advance(1)])
        self.assertEqual(recorder.claims, [(0, True), (1, True)])
        self.assertEqual(coordinator.state.pending_claims, [])
        self.assertEqual(ledger.solutions, {})

    def _two_epochs_behind(self):
        coordinator, ledger, clock, recorder = _make(version=V2_2)
        coordinator.state.pending_claims = [0, 1]
        clock.advance(600)
        asyncio.run(ledger.advance_epoch(0))
        clock.advance(600)
        return coordinator, ledger, recorder

    def test_claims_every_pending_epoch(self):
        coordinator, ledger, recorder = self._two_epochs_behind()
        ledger.queue_fault("claim", TxResult.success("sig-0"))
        ledger.queue_fault("claim", TxResult.fail(FailureKind.CLAIM_EXPIRED))
        phases = asyncio.run(_steps(coordinator, 3))
        self.assertEqual(phases, [Phase.ADVANCING, Phase.CLAIMING, Phase.IDLE])
        self.assertEqual(recorder.claims, [(0, True), (1, False)])
        self.assertEqual(coordinator.state.pending_claims, [])

    def test_unfinished_epoch_stays_pending(self):
        coordinator, ledger, recorder = self._two_epochs_behind()
        ledger.queue_fault("claim", TxResult.success("sig-0"))
        ledger.queue_fault("claim", TxResult.fail(FailureKind.EPOCH_NOT_ENDED))
        phases = asyncio.run(_steps(coordinator, 3))
        self.assertEqual(phases, [Phase.ADVANCING, Phase.CLAIMING, Phase.WAITING_FOR_ADVANCE])
        self.assertEqual(coordinator.state.pending_claims, [1])

    def test_pending_claims_ordered_and_unique(self):
        state = _make()[0].state
        for epoch in (4, 2, 4, 7):
            state.add_pending_claim(epoch)
        self.assertEqual(state.pending_claims, [2, 4, 7])
        self.assertEqual(state.claimable(4), [2, 4])

    def test_withdraw_every_tenth_submission(self):
        coordinator, ledger, clock, _ = _make()
        ledger.withdraw = AsyncMock(return_value=TxResult.success("sig"))
        coordinator.state.withdraw_counter = 9
        asyncio.run(_steps(coordinator, 3))
        self.assertEqual(coordinator.state.withdraw_counter, 10)
        ledger.withdraw.assert_awaited_once()

    def test_no_withdraw_on_v22(self):
        coordinator, ledger, clock, _ = _make(version=V2_2)
        ledger.withdraw = AsyncMock(return_value=TxResult.success("sig"))
        coordinator.state.withdraw_counter = 9
        asyncio.run(_steps(coordinator, 3))
        ledger.withdraw.assert_not_awaited()


class TestErrors(unittest.TestCase):
    def test_ledger_unavailable_backs_off(self):
        coordinator, ledger, clock, _ = _make(error_backoff_s=45.0, max_sleep_step_s=30.0)
        ledger.queue_fault("read_epoch_state", LedgerUnavailable("rpc down"))
        phases = asyncio.run(_steps(coordinator, 3))
        self.assertEqual(phases, [Phase.ERROR, Phase.IDLE, Phase.SOLVING])
        self.assertIn("rpc down", coordinator.last_error)
        self.assertEqual(clock.sleeps, [30.0, 15.0])

    def test_unexpected_exception_goes_to_error(self):
        coordinator, ledger, _, _ = _make()
        ledger.queue_fault("read_epoch_state", RuntimeError("boom"))
        with self.assertLogs("poi_miner.protocol.coordinator", level="ERROR"):
            phase = asyncio.run(coordinator.step())
        self.assertEqual(phase, Phase.ERROR)


class TestRun(unittest.TestCase):
    def test_observer_and_stop(self):
        seen = []
        coordinator, _, _, _ = _make()

        def observe(old, new):
            seen.append((old, new))
            if new == Phase.AWAITING_EPOCH_END:
                coordinator.stop()

        coordinator.observer = observe
        asyncio.run(coordinator.run(max_steps=50))
        self.assertEqual(seen[-1], (Phase.SUBMITTING, Phase.AWAITING_EPOCH_END))
        self.assertTrue(coordinator.stopped)

    def test_max_steps(self):
        coordinator, _, _, _ = _make()
        asyncio.run(coordinator.run(max_steps=2))
        self.assertEqual(len(coordinator.state.history), 2)

    def test_status(self):
        coordinator, _, _, _ = _make()
        asyncio.run(coordinator.step())
        status = coordinator.status()
        self.assertEqual(status["phase"], "solving")
        self.assertEqual(status["epoch"], 0)
        self.assertEqual(status["protocol_version"], "v3.0")
        self.assertEqual(status["miner"], MINER.public_key.hex())


if __name__ == "__main__":
    unittest.main()
