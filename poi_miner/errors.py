"""Exception hierarchy shared by the miner components."""


class MinerError(Exception):
    """Base class for miner failures."""


class CompositionError(MinerError):
    """Proof text cannot satisfy the structural rules for a vocabulary."""

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__(f"proof text violates: {', '.join(self.violations)}")


class LedgerError(MinerError):
    """Transport-level failure talking to the ledger."""


class LedgerUnavailable(LedgerError):
    """The ledger could not be reached or returned no account data."""


class UnknownProtocolVersion(MinerError):
    pass
