"""
Offline mining run: drives the epoch coordinator against the in-process
simulated ledger with a virtual clock, so several epochs pass in seconds.
Prints each transition and a final status summary.
"""
import asyncio
import json
import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from dotenv import load_dotenv
load_dotenv()

from poi_miner.ledger.simulated import SimulatedLedger
from poi_miner.models.epoch import MinerIdentity
from poi_miner.protocol.coordinator import EpochCoordinator
from poi_miner.protocol.versions import get_version
from poi_miner.services.clock import FakeClock

PROTOCOL_VERSION = os.getenv("PROTOCOL_VERSION", "v3.0")
STEPS = int(os.getenv("SIM_STEPS", "60"))
DIFFICULTY = int(os.getenv("SIM_DIFFICULTY", "12"))
EPOCH_DURATION = int(os.getenv("SIM_EPOCH_DURATION", "600"))
MINER_KEY = bytes.fromhex(os.getenv("SIM_MINER_KEY", "11" * 32))


def _print_transition(old, new):
    print(f"  {old.value:>20} -> {new.value}")


async def main():
    clock = FakeClock()
    identity = MinerIdentity(public_key=MINER_KEY)
    version = get_version(PROTOCOL_VERSION)
    ledger = SimulatedLedger(
        identity, version, clock, difficulty=DIFFICULTY, epoch_duration=EPOCH_DURATION,
    )
    coordinator = EpochCoordinator(
        ledger,
        identity,
        version,
        clock,
        max_attempts=5_000_000,
        progress_interval=250_000,
        observer=_print_transition,
    )

    print(f"Simulating {STEPS} steps on protocol {version.name} (difficulty {DIFFICULTY})")
    await coordinator.run(max_steps=STEPS)

    print("\nCoordinator status:")
    print(json.dumps(coordinator.status(), indent=2))
    print("\nLedger:")
    state = ledger.state
    print(f"  epoch={state.epoch} difficulty={state.difficulty} total_mined={state.total_mined}")
    print(f"  total_supply={state.total_supply} balances={len(ledger.balances)}")
    print(f"  instructions: {[name for name, _, _ in ledger.transactions]}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    asyncio.run(main())
