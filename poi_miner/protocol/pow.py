"""Keccak-256 proof-of-work: candidate hashing, difficulty predicate, nonce search."""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from eth_hash.auto import keccak

logger = logging.getLogger(__name__)

SEPARATOR = b"||"
NONCE_BYTES = 8
MAX_NONCE = 2 ** (8 * NONCE_BYTES) - 1
DIGEST_BITS = 256
_BATCH = 1024

ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class SearchResult:
    nonce: int
    digest: bytes
    attempts: int
    elapsed_s: float


def preimage_prefix(seed: bytes, identity: bytes, text: str) -> bytes:
    return seed + identity + text.encode("utf-8") + SEPARATOR


def hash_candidate(prefix: bytes, nonce: int) -> bytes:
    return keccak(prefix + nonce.to_bytes(NONCE_BYTES, "little"))


def meets_difficulty(digest: bytes, difficulty: int) -> bool:
    """True when the first ``difficulty`` bits of ``digest`` (MSB of byte 0 first) are zero."""
    full_bytes, remaining_bits = divmod(difficulty, 8)
    if full_bytes > len(digest) or (full_bytes == len(digest) and remaining_bits):
        return False
    if any(digest[:full_bytes]):
        return False
    if remaining_bits:
        mask = (0xFF << (8 - remaining_bits)) & 0xFF
        if digest[full_bytes] & mask:
            return False
    return True


def verify_solution(seed: bytes, identity: bytes, text: str, nonce: int, difficulty: int) -> bool:
    return meets_difficulty(hash_candidate(preimage_prefix(seed, identity, text), nonce), difficulty)


class _Progress:
    """Attempt counter shared by scan workers; reports every ``interval`` attempts."""

    def __init__(self, interval: int, callback: ProgressCallback | None):
        self._interval = max(1, interval)
        self._callback = callback
        self._lock = threading.Lock()
        self._next_report = self._interval
        self.attempts = 0

    def add(self, count: int) -> None:
        with self._lock:
            self.attempts += count
            report = self._callback is not None and self.attempts >= self._next_report
            if report:
                self._next_report = (self.attempts // self._interval + 1) * self._interval
            attempts = self.attempts
        if report:
            self._callback(attempts)


def _scan(
    prefix: bytes,
    difficulty: int,
    start: int,
    stop: int,
    step: int,
    halt: threading.Event,
    cancel: threading.Event | None,
    progress: _Progress,
) -> tuple[int, bytes] | None:
    pending = 0
    for nonce in range(start, stop, step):
        if halt.is_set() or (cancel is not None and cancel.is_set()):
            break
        digest = hash_candidate(prefix, nonce)
        pending += 1
        if meets_difficulty(digest, difficulty):
            halt.set()
            progress.add(pending)
            return nonce, digest
        if pending == _BATCH:
            progress.add(pending)
            pending = 0
    progress.add(pending)
    return None


def search(
    seed: bytes,
    identity: bytes,
    text: str,
    difficulty: int,
    max_attempts: int,
    *,
    workers: int = 1,
    cancel: threading.Event | None = None,
    progress: ProgressCallback | None = None,
    progress_interval: int = 1_000_000,
) -> SearchResult | None:
    """
    Brute-force a nonce whose candidate hash meets ``difficulty``.

    Nonces are scanned from 0 upward; with ``workers > 1`` each worker takes a
    disjoint stride of the range and the first hit stops the rest. Returns
    None when ``max_attempts`` is exhausted or ``cancel`` is set.
    """
    if difficulty > DIGEST_BITS:
        return None
    stop = min(max_attempts, MAX_NONCE + 1)
    prefix = preimage_prefix(seed, identity, text)
    halt = threading.Event()
    counter = _Progress(progress_interval, progress)
    t0 = time.perf_counter()

    if workers <= 1:
        found = _scan(prefix, difficulty, 0, stop, 1, halt, cancel, counter)
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pow") as pool:
            futures = [
                pool.submit(_scan, prefix, difficulty, k, stop, workers, halt, cancel, counter)
                for k in range(workers)
            ]
            hits = [hit for hit in (f.result() for f in futures) if hit is not None]
        # Several workers may hit before seeing the halt flag; keep the lowest nonce.
        found = min(hits) if hits else None

    elapsed = time.perf_counter() - t0
    if found is None:
        if cancel is not None and cancel.is_set():
            logger.info("Nonce search cancelled after %d attempts", counter.attempts)
        else:
            logger.info("No nonce met difficulty %d within %d attempts", difficulty, counter.attempts)
        return None

    nonce, digest = found
    # A nonce the verifier would reject is worse than none at all.
    if not verify_solution(seed, identity, text, nonce, difficulty):
        logger.error("Nonce %d failed re-verification; discarding", nonce)
        return None
    return SearchResult(nonce=nonce, digest=digest, attempts=counter.attempts, elapsed_s=elapsed)
