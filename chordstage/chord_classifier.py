"""ChordClassifier: decides whether a line of section text is chords or lyrics."""

import re
from enum import Enum

# Rhythm rests and repeat/bar symbols that appear among chords but are not chords
REST_SYMBOLS: frozenset[str] = frozenset(
    {"WR", "HR", "QR", "ER", "SR", "WR.", "HR.", "QR.", "ER.", "SR."}
)
REPEAT_SYMBOLS: frozenset[str] = frozenset({"%", "//", "/.", "/"})
BAR_MARKERS: frozenset[str] = frozenset({"|", "||", "|:", ":|", ":||", "||:", "."})

PASS_THROUGH_TOKENS: frozenset[str] = REST_SYMBOLS | REPEAT_SYMBOLS | BAR_MARKERS

_TAG_RE = re.compile(r"\[[^\]]*\]")
_SPLIT_RE = re.compile(r"[\s-]+")

_CHORD_RE = re.compile(
    r"^[A-G]"
    r"(?:##|#|bb|b)?"
    r"(?:maj|ma|M|min|m|dim|o|aug|\+|sus|add|Δ|°|ø|\d+|b|#)*"
    r"(?:\([^)]*\))?"
    r"(?:/[A-G#b\d]+)?$"
)
_SPECIAL_RE = re.compile(r"^(?:N\.C\.|NC|Tacet|STOP)$", re.IGNORECASE)
_DEGREE_RE = re.compile(r"^\d[b#]?$")
_SOLFEGE_RE = re.compile(r"^[A-G](?:is|es|s)?$")


class LineKind(Enum):
    CHORD = "chord"
    LYRIC = "lyric"


def strip_tags(line: str) -> str:
    """Remove bracketed section tags such as ``[Chorus]``."""
    return _TAG_RE.sub(" ", line)


def tokenize(line: str) -> list[str]:
    """Split a tag-stripped line on whitespace and hyphens."""
    return [t for t in _SPLIT_RE.split(strip_tags(line)) if t]


def is_chord_symbol(token: str) -> bool:
    """True when *token* matches the chord grammar (root, quality, optional bass)."""
    return bool(_CHORD_RE.match(token))


def is_chord_token(token: str) -> bool:
    """
    True when *token* may legitimately appear on a chord line.

    Accepts the chord grammar, the special words (N.C., NC, Tacet, STOP),
    bare scale degrees with an optional accidental, and solfège-style names.
    """
    return bool(
        _CHORD_RE.match(token)
        or _SPECIAL_RE.match(token)
        or _DEGREE_RE.match(token)
        or _SOLFEGE_RE.match(token)
    )


def classify(line: str) -> LineKind:
    """
    Classify a line as chords or lyrics.

    The line is a chord line iff every token (after stripping bracketed tags
    and splitting on whitespace/hyphens) is a chord token. A line with no
    tokens left is a lyric line. Never raises.
    """
    if not isinstance(line, str):
        return LineKind.LYRIC
    tokens = tokenize(line)
    if not tokens:
        return LineKind.LYRIC
    if all(is_chord_token(t) for t in tokens):
        return LineKind.CHORD
    return LineKind.LYRIC


def is_chord_line(line: str) -> bool:
    return classify(line) is LineKind.CHORD


def is_bar_line(line: str) -> bool:
    """
    True for bar-structure content used by bar formatting.

    Covers standalone structure lines (only ``|``, ``.`` and whitespace) and
    bar lines such as ``| C . G | Am |`` whose remaining tokens are all
    chords, rests or repeat symbols.
    """
    if not isinstance(line, str):
        return False
    stripped = strip_tags(line)
    if "|" not in stripped and stripped.strip(" .\t") != "":
        return False
    if not stripped.strip():
        return False
    tokens = tokenize(stripped.replace("|", " | "))
    if not any(t in BAR_MARKERS for t in tokens):
        return False
    return all(t in PASS_THROUGH_TOKENS or is_chord_token(t) for t in tokens)


def classify_for_display(line: str) -> LineKind:
    """Classification used by renderers: chord lines plus bar-structure lines."""
    if classify(line) is LineKind.CHORD or is_bar_line(line):
        return LineKind.CHORD
    return LineKind.LYRIC
