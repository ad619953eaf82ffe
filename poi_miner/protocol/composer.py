"""Proof-text composition and the structural rules the verifier enforces."""
import logging
import re

from poi_miner.errors import CompositionError

logger = logging.getLogger(__name__)

MIN_TEXT_BYTES = 256
MAX_TEXT_BYTES = 800
SHORT_SENTENCE_MAX_WORDS = 10
LONG_QUESTION_MIN_WORDS = 20
MIN_WORD_GAP = 40

# ---------------------------------------------------------------------------
# Frozen template bank. The verifier checks texts built from exactly these
# sentences; none of them may contain a word-list entry as a whole word.
# ---------------------------------------------------------------------------

_SLOT = "{word}"
# Stands in for a missing vocabulary word in the protected sentences.
_NEUTRAL_WORD = "home"

_SHORT_TEMPLATE = "Our first word on the old slate was {word}."

_QUESTION_TEMPLATE = (
    "Is it fair to ask whether anyone who keeps the word {word} in mind "
    "can hope to see how the old rules of the game fit together today?"
)

_WORD_TEMPLATES = (
    "In the notes kept by the old scribes, the term {word} is set down with care on every page.",
    "Few of the clerks in the tax office could say what the term {word} meant to the folk in town.",
    "Many tales that were told by the fire turn on the term {word} and on what it can mean to us.",
    "A few of the elders in the hill towns used the term {word} to sum up a whole way of living.",
    "It is said by some that the term {word} once held a weight it does not hold for us now.",
    "When the rains came to the valley, the term {word} was on the lips of each farmer there.",
    "Anyone who reads the old books in the town hall can find the term {word} in the margins.",
    "Those who kept the ledgers of the port had a firm view on the term {word} and its worth.",
)

_FILLERS = (
    "The sun set low over the hills and the town grew calm as the day came to its end.",
    "Some of the folk in the square kept on talking well into the small hours of the day.",
    "A cart rolled by on the road to the mill and the dogs ran out to bark at the mule.",
)

_SENTENCE_RE = re.compile(r"[^.?!]+[.?!]")
_TERMINATORS = ".?!"


def _word_pattern(word: str) -> re.Pattern:
    return re.compile(rf"(?<![A-Za-z]){re.escape(word)}(?![A-Za-z])")


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _sentences(text: str) -> list[tuple[int, int, str]]:
    """Return (start, end, sentence) spans, offsets in characters."""
    spans = []
    for match in _SENTENCE_RE.finditer(text):
        raw = match.group(0)
        lead = len(raw) - len(raw.lstrip())
        spans.append((match.start() + lead, match.end(), raw.strip()))
    return spans


def _truncate(text: str, protected: int) -> str | None:
    """Cut back to the last terminator that keeps the protected prefix whole."""
    encoded = text.encode("utf-8")
    cut = MAX_TEXT_BYTES
    while cut >= max(protected, 1):
        if chr(encoded[cut - 1]) in _TERMINATORS:
            return encoded[:cut].decode("utf-8")
        cut -= 1
    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def check_text(text: str, vocabulary: tuple[str, ...] | list[str]) -> list[str]:
    """
    Validate a proof text against the verifier's rules.
    Returns the names of violated constraints; empty means compliant.
    """
    violations: list[str] = []
    size = _byte_len(text)
    if not MIN_TEXT_BYTES <= size <= MAX_TEXT_BYTES:
        violations.append("length")

    spans = _sentences(text)
    word_counts = [len(sentence.split()) for _, _, sentence in spans]
    if not any(n <= SHORT_SENTENCE_MAX_WORDS for n in word_counts):
        violations.append("short_sentence")
    if not any(
        n >= LONG_QUESTION_MIN_WORDS and sentence.endswith("?")
        for n, (_, _, sentence) in zip(word_counts, spans)
    ):
        violations.append("long_question")
    if not text or text[-1] not in _TERMINATORS:
        violations.append("terminator")

    cursor = 0
    prev_end: int | None = None
    prev_sentence = -1
    for word in vocabulary:
        pattern = _word_pattern(word)
        hits = list(pattern.finditer(text))
        if not hits:
            violations.append(f"word_missing:{word}")
            continue
        if len(hits) > 1:
            violations.append(f"word_repeated:{word}")
        match = pattern.search(text, cursor)
        if match is None:
            violations.append("word_order")
            continue
        sentence_idx = next(
            (i for i, (start, end, _) in enumerate(spans) if start <= match.start() < end),
            -1,
        )
        if sentence_idx <= prev_sentence:
            violations.append("word_sentence")
        if prev_end is not None:
            gap = _byte_len(text[prev_end:match.start()])
            if gap < MIN_WORD_GAP:
                violations.append("word_gap")
        prev_end = match.end()
        prev_sentence = sentence_idx
        cursor = match.end()

    # Several words can fail the same way; report each rule once.
    return list(dict.fromkeys(violations))


def compose_text(vocabulary: tuple[str, ...] | list[str]) -> str:
    """Build a compliant proof text embedding ``vocabulary`` in order."""
    words = list(vocabulary)
    first = words[0] if len(words) > 0 else _NEUTRAL_WORD
    second = words[1] if len(words) > 1 else _NEUTRAL_WORD

    # Short and question sentences go first so trimming never removes them.
    sentences = [
        _SHORT_TEMPLATE.replace(_SLOT, first),
        _QUESTION_TEMPLATE.replace(_SLOT, second),
    ]
    protected = _byte_len(" ".join(sentences))
    for i, word in enumerate(words[2:]):
        sentences.append(_WORD_TEMPLATES[i % len(_WORD_TEMPLATES)].replace(_SLOT, word))

    text = " ".join(sentences)
    filler_idx = 0
    while _byte_len(text) < MIN_TEXT_BYTES:
        text = f"{text} {_FILLERS[filler_idx % len(_FILLERS)]}"
        filler_idx += 1

    if _byte_len(text) > MAX_TEXT_BYTES:
        trimmed = _truncate(text, protected)
        if trimmed is None:
            raise CompositionError(["length"])
        logger.debug("Proof text trimmed from %d to %d bytes", _byte_len(text), _byte_len(trimmed))
        text = trimmed

    violations = check_text(text, words)
    if violations:
        raise CompositionError(violations)
    return text
