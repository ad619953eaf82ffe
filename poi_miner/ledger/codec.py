"""Byte layouts of the mine-state account and the program's instruction data."""
import hashlib
import struct

from poi_miner.models.epoch import EpochState

ACCOUNT_SIZE = 169
INSTRUCTION_NAMESPACE = "global"

# Offsets follow the 8-byte account discriminator.
_STATE_LAYOUT = struct.Struct("<8sQQ32sQqqQQQ32s32sB")


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


def instruction_id(action: str) -> bytes:
    """First 8 bytes of sha256("global:<action>")."""
    return hashlib.sha256(f"{INSTRUCTION_NAMESPACE}:{action}".encode()).digest()[:8]


def decode_mine_state(data: bytes) -> EpochState:
    if len(data) < ACCOUNT_SIZE:
        raise ValueError(f"mine state account is {len(data)} bytes, expected {ACCOUNT_SIZE}")
    (
        _disc,
        total_mined,
        difficulty,
        seed,
        epoch,
        epoch_start,
        epoch_end,
        solutions,
        settled,
        total_supply,
        mint,
        crank,
        bump,
    ) = _STATE_LAYOUT.unpack_from(data)
    return EpochState(
        total_mined=total_mined,
        difficulty=difficulty,
        seed=seed,
        epoch=epoch,
        epoch_start=epoch_start,
        epoch_end=epoch_end,
        solutions_in_epoch=solutions,
        settled_in_epoch=settled,
        total_supply=total_supply,
        mint=mint,
        crank_authority=crank,
        bump=bump,
    )


def encode_mine_state(state: EpochState) -> bytes:
    return _STATE_LAYOUT.pack(
        account_discriminator("MineState"),
        state.total_mined,
        state.difficulty,
        state.seed,
        state.epoch,
        state.epoch_start,
        state.epoch_end,
        state.solutions_in_epoch,
        state.settled_in_epoch,
        state.total_supply,
        state.mint,
        state.crank_authority,
        state.bump,
    )


def encode_submit(text: str, nonce: int, recipient: bytes | None = None) -> bytes:
    """Instruction data: id, u32 text length, text bytes, u64 nonce, optional recipient."""
    body = text.encode("utf-8")
    data = instruction_id("submit_solution") + struct.pack("<I", len(body)) + body + struct.pack("<Q", nonce)
    if recipient is not None:
        if len(recipient) != 32:
            raise ValueError("recipient must be 32 bytes")
        data += recipient
    return data


def decode_submit(data: bytes, with_recipient: bool = False) -> tuple[str, int, bytes | None]:
    if data[:8] != instruction_id("submit_solution"):
        raise ValueError("not a submit_solution instruction")
    (length,) = struct.unpack_from("<I", data, 8)
    text = data[12:12 + length].decode("utf-8")
    (nonce,) = struct.unpack_from("<Q", data, 12 + length)
    recipient = data[20 + length:52 + length] if with_recipient else None
    return text, nonce, recipient


def encode_advance(solution_count: int) -> bytes:
    return instruction_id("advance_epoch") + struct.pack("<Q", solution_count)


def encode_claim() -> bytes:
    return instruction_id("claim")


def encode_create_vesting() -> bytes:
    return instruction_id("create_vesting")


def encode_withdraw() -> bytes:
    return instruction_id("withdraw")
