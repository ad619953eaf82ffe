"""Protocol versions: one strategy object per deployed program revision."""
from dataclasses import dataclass
from typing import Callable

from poi_miner.errors import UnknownProtocolVersion
from poi_miner.protocol import composer, pow, words


@dataclass(frozen=True)
class ProtocolVersion:
    """
    Puzzle pipeline plus the ledger-facing traits of a program revision.
    The coordinator's state machine is shared; only these pieces vary.
    """

    name: str
    derive_words: Callable[[bytes, int], tuple[str, ...]] = words.derive_words
    compose_text: Callable[[tuple[str, ...]], str] = composer.compose_text
    search: Callable[..., pow.SearchResult | None] = pow.search
    submit_with_recipient: bool = False
    vesting: bool = False
    withdraw_every: int = 0

    def should_withdraw(self, withdraw_counter: int) -> bool:
        return self.vesting and self.withdraw_every > 0 and withdraw_counter % self.withdraw_every == 0


V2_2 = ProtocolVersion(name="v2.2")

# v3.0 routes rewards through a per-miner vesting account and names the
# token recipient in every submission.
V3_0 = ProtocolVersion(name="v3.0", submit_with_recipient=True, vesting=True, withdraw_every=10)

PROTOCOL_VERSIONS: dict[str, ProtocolVersion] = {v.name: v for v in (V2_2, V3_0)}


def get_version(name: str) -> ProtocolVersion:
    try:
        return PROTOCOL_VERSIONS[name]
    except KeyError:
        raise UnknownProtocolVersion(
            f"unknown protocol version {name!r}; expected one of {sorted(PROTOCOL_VERSIONS)}"
        ) from None
