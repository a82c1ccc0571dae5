"""
Transcript Normalization

Turns the ordered dialogue captured from the agent session into prompt-ready
text for the story backend.

- normalize_text: clean one utterance (disfluencies, speech-to-text slips,
  punctuation, capitalization)
- generate_transcript: one "Role: content" line per turn, arrival order kept
- extract_user_content / extract_agent_content: one side of the dialogue only

These are standalone functions with no state; the capture buffer decides
when to call them.
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Tuple

from src.models import DialogueRole, DialogueTurn


# =========================================================================
# PATTERNS
# =========================================================================

# Pure disfluencies only. Words like "like", "so" or "really" carry meaning in
# a child's description and are kept.
FILLER_WORDS = [
    "um", "umm", "uh", "uhh", "er", "erm", "ah", "hmm", "mm",
    "you know", "i mean",
]

_FILLER_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(w) for w in sorted(FILLER_WORDS, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)

# "the the" -> "the", "a dragon a dragon" -> "a dragon"
_REPEATED_PATTERNS = [
    re.compile(r"\b(\w+\s+\w+)\s+\1\b", re.IGNORECASE),
    re.compile(r"\b(\w+)\s+\1\b", re.IGNORECASE),
]

# Common speech-to-text slips
COMMON_CORRECTIONS = {
    "wanna": "want to",
    "gonna": "going to",
    "gotta": "got to",
    "kinda": "kind of",
    "sorta": "sort of",
    "can't": "cannot",
    "won't": "will not",
}

_CORRECTION_PATTERNS = [
    (re.compile(r"\b" + re.escape(wrong) + r"\b", re.IGNORECASE), right)
    for wrong, right in COMMON_CORRECTIONS.items()
]

_WHITESPACE = re.compile(r"\s+")

ROLE_LABELS = {
    DialogueRole.USER: "User",
    DialogueRole.AGENT: "Agent",
}

TURN_SEPARATOR = "\n\n"


# =========================================================================
# TEXT NORMALIZATION
# =========================================================================

def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def _fix_common_errors(text: str) -> str:
    result = text
    for pattern, replacement in _CORRECTION_PATTERNS:
        result = pattern.sub(replacement, result)
    # Lone lowercase "i" (also covers i'm, i'd, i'll)
    return re.sub(r"\bi\b", "I", result)


def _cleanup_punctuation(text: str) -> str:
    result = re.sub(r"([.!?,;])\1+", r"\1", text)
    result = re.sub(r"\s+([.!?,:;])", r"\1", result)
    # Separators left dangling by removed fillers: "well, , ok" / "um, I"
    result = re.sub(r"([,;:])(?:\s*[,;:])+", r"\1", result)
    result = re.sub(r"^[,;:\s]+", "", result)
    result = re.sub(r"([.!?,;:])(?=[A-Za-z])", r"\1 ", result)
    return result


def _capitalize_sentences(text: str) -> str:
    return re.sub(
        r"(^|[.!?]\s+)([a-z])",
        lambda m: m.group(1) + m.group(2).upper(),
        text,
    )


def normalize_text(text: str) -> str:
    """
    Clean a single utterance.

    Args:
        text: Raw utterance as received from the agent session

    Returns:
        Cleaned text, or "" when nothing meaningful remains
    """
    if not text or not isinstance(text, str):
        return ""

    normalized = _collapse(text)
    normalized = _collapse(_FILLER_PATTERN.sub("", normalized))

    for pattern in _REPEATED_PATTERNS:
        normalized = pattern.sub(r"\1", normalized)

    normalized = _fix_common_errors(normalized)
    normalized = _cleanup_punctuation(normalized)
    normalized = _capitalize_sentences(_collapse(normalized))

    # Nothing but punctuation left
    if not re.search(r"\w", normalized):
        return ""
    return normalized


# =========================================================================
# DIALOGUE
# =========================================================================

@dataclass(frozen=True)
class Transcript:
    """
    Normalized dialogue ready for the story backend.

    Built once per flush; a new normalization always produces a new Transcript.
    """
    text: str
    turns: Tuple[DialogueTurn, ...]

    @property
    def turn_count(self) -> int:
        return len(self.turns)

    @property
    def user_turn_count(self) -> int:
        return count_user_turns(self.turns)

    @property
    def user_content(self) -> str:
        return extract_user_content(self.turns)

    def is_empty(self) -> bool:
        return not self.text.strip()

    def __str__(self) -> str:
        return self.text


def count_user_turns(turns: Iterable[DialogueTurn]) -> int:
    return sum(1 for turn in turns if turn.role == DialogueRole.USER)


def process_dialogue(turns: Iterable[DialogueTurn]) -> List[DialogueTurn]:
    """Normalize every turn, dropping turns that normalize to nothing."""
    processed = []
    for turn in turns:
        content = normalize_text(turn.content)
        if content:
            processed.append(turn.model_copy(update={"content": content}))
    return processed


def format_turn(turn: DialogueTurn) -> str:
    return f"{ROLE_LABELS[turn.role]}: {turn.content}"


def generate_transcript(turns: Iterable[DialogueTurn]) -> Transcript:
    """
    Build the prompt transcript.

    Never fails on empty or single-turn input; the capture buffer's
    minimum-user-turn gate is what keeps pointless transcripts out.
    """
    normalized = tuple(process_dialogue(turns))
    text = TURN_SEPARATOR.join(format_turn(turn) for turn in normalized)
    return Transcript(text=text, turns=normalized)


def _extract(turns: Iterable[DialogueTurn], role: DialogueRole) -> str:
    contents = (normalize_text(turn.content) for turn in turns if turn.role == role)
    return " ".join(content for content in contents if content)


def extract_user_content(turns: Iterable[DialogueTurn]) -> str:
    """Only the child's own words, space-joined."""
    return _extract(turns, DialogueRole.USER)


def extract_agent_content(turns: Iterable[DialogueTurn]) -> str:
    return _extract(turns, DialogueRole.AGENT)
