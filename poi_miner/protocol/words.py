"""Required-vocabulary derivation from the epoch challenge seed."""

# Frozen word list shared with the on-chain verifier. Never reorder or edit.
WORDLIST_VERSION = "1"

WORDS: tuple[str, ...] = (
    "time", "life", "world", "place", "water", "light", "house", "music", "power", "dream",
    "heart", "earth", "ocean", "river", "cloud", "stone", "flame", "voice", "night", "field",
    "space", "brain", "truth", "peace", "storm", "tower", "plant", "metal", "glass", "wheel",
    "bridge", "forest", "garden", "market", "island", "desert", "silver", "shadow", "spirit", "nature",
    "energy", "future", "memory", "moment", "season", "winter", "summer", "signal", "system", "design",
    "method", "reason", "answer", "letter", "person", "animal", "flower", "morning", "evening", "journey",
    "history", "culture", "balance", "freedom", "pattern", "shelter", "surface", "chapter", "element", "silence",
    "think", "learn", "build", "write", "speak", "dance", "climb", "watch", "shine", "carry",
    "drive", "paint", "teach", "reach", "solve", "share", "trust", "guide", "shape", "craft",
    "chase", "drift", "weave", "bloom", "grasp", "shift", "sweep", "trace", "wander", "gather",
    "create", "follow", "listen", "notice", "wonder", "happen", "become", "remain", "travel", "return",
    "search", "reveal", "explore", "imagine", "connect", "protect", "reflect", "develop", "consider", "discover",
    "bright", "quiet", "gentle", "strong", "simple", "hidden", "golden", "silent", "frozen", "bitter",
    "tender", "vivid", "subtle", "fierce", "humble", "steady", "clever", "honest", "broken", "sacred",
    "unique", "global", "active", "native", "smooth", "narrow", "liquid", "mental", "social", "visual",
    "formal", "casual", "proper", "remote", "secure", "stable", "cosmic", "ancient", "modern", "natural",
    "digital", "central", "special", "private", "perfect", "strange", "careful", "curious", "distant", "endless",
    "often", "never", "always", "slowly", "deeply", "gently", "simply", "nearly", "barely", "mostly",
    "partly", "surely", "truly", "fully", "quite", "still", "maybe", "hence", "twice", "ahead",
    "apart", "aside", "along", "after", "again", "early", "later", "since", "almost", "around",
)

SEED_LENGTH = 32

# (inclusive difficulty ceiling, word count); anything above the last step gets 8.
_WORD_COUNT_STEPS = ((10, 3), (15, 4), (20, 5), (30, 6), (40, 7))
_MAX_WORD_COUNT = 8


def word_count(difficulty: int) -> int:
    for ceiling, count in _WORD_COUNT_STEPS:
        if difficulty <= ceiling:
            return count
    return _MAX_WORD_COUNT


def derive_indices(seed: bytes, difficulty: int, list_size: int = len(WORDS)) -> list[int]:
    """
    Pick word-list indices from consecutive big-endian seed byte pairs.
    Collisions probe forward with wrap-around; a fully exhausted cycle stops
    derivation early, exactly as the verifier does.
    """
    if len(seed) != SEED_LENGTH:
        raise ValueError(f"challenge seed must be {SEED_LENGTH} bytes, got {len(seed)}")
    if difficulty < 0:
        raise ValueError("difficulty must be non-negative")

    used: set[int] = set()
    indices: list[int] = []
    for i in range(word_count(difficulty)):
        idx = ((seed[2 * i] << 8) | seed[2 * i + 1]) % list_size
        tries = 0
        while idx in used and tries < list_size:
            idx = (idx + 1) % list_size
            tries += 1
        if tries >= list_size:
            break
        used.add(idx)
        indices.append(idx)
    return indices


def derive_words(seed: bytes, difficulty: int) -> tuple[str, ...]:
    return tuple(WORDS[i] for i in derive_indices(seed, difficulty))
