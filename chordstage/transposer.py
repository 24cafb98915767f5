"""Transposer: shifts chord symbols between keys without touching non-chord text."""

from __future__ import annotations

import copy
import json
import logging
import re
from typing import Any, Callable

from chordstage.chord_classifier import (
    PASS_THROUGH_TOKENS,
    LineKind,
    classify_for_display,
    is_chord_symbol,
)
from chordstage.errors import TransposeParseFailure
from chordstage.models import ContentTheme, Song

logger = logging.getLogger(__name__)

# Chromatic pitch class names (index 0 = C), one spelling per preference
SHARP_SCALE: list[str] = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]
FLAT_SCALE: list[str] = ["C", "Db", "D", "Eb", "E", "F", "Gb", "G", "Ab", "A", "Bb", "B"]

FLAT_KEYS: frozenset[str] = frozenset({"F", "Bb", "Eb", "Ab", "Db", "Gb", "Cb"})

_NATURALS: dict[str, int] = {"C": 0, "D": 2, "E": 4, "F": 5, "G": 7, "A": 9, "B": 11}
_ACCIDENTALS: dict[str, int] = {"": 0, "#": 1, "##": 2, "b": -1, "bb": -2}

_NOTE_RE = re.compile(r"^([A-G])(##|#|bb|b)?")
_ROOT_RE = re.compile(r"^([A-G](?:##|#|bb|b)?)(.*)$")
_BASS_RE = re.compile(r"^(.*)/([A-G](?:##|#|bb|b)?)$")
_TOKEN_RE = re.compile(r"[^\s|]+")


# ── Pitch helpers ───────────────────────────────────────────────────────────

def note_index(note: str) -> int | None:
    """Pitch class (0-11) of a note name such as ``"F#"`` or ``"Bb"``; None if unparsable."""
    if not isinstance(note, str):
        return None
    match = _NOTE_RE.match(note.strip())
    if not match:
        return None
    natural, accidental = match.group(1), match.group(2) or ""
    return (_NATURALS[natural] + _ACCIDENTALS[accidental]) % 12


def key_root(key: str) -> str | None:
    """Root note of a key name (``"F#m"`` -> ``"F#"``)."""
    if not isinstance(key, str):
        return None
    match = _NOTE_RE.match(key.strip())
    if not match:
        return None
    return match.group(1) + (match.group(2) or "")


def semitone_interval(from_key: str, to_key: str) -> int:
    """
    Upward semitone distance from *from_key* to *to_key*, in ``0..11``.

    Unparsable keys give an interval of 0 so callers leave content unchanged.
    """
    start = note_index(from_key)
    end = note_index(to_key)
    if start is None or end is None:
        return 0
    return (end - start) % 12


def prefers_sharps(key: str) -> bool:
    """Default spelling for a target key: flats for flat keys, sharps otherwise."""
    return key_root(key) not in FLAT_KEYS


def spell(pitch_class: int, prefer_sharps: bool = True) -> str:
    scale = SHARP_SCALE if prefer_sharps else FLAT_SCALE
    return scale[pitch_class % 12]


# ── Token / line transposition ──────────────────────────────────────────────

def transpose_by(token: str, semitones: int, prefer_sharps: bool = True) -> str:
    """
    Shift a chord token by *semitones*, moving the root and any slash bass.

    Rests, repeat symbols, bar markers and anything that is not a chord symbol
    are returned unchanged.
    """
    if not isinstance(token, str) or not token:
        return token
    if token in PASS_THROUGH_TOKENS or semitones % 12 == 0:
        return token
    if not is_chord_symbol(token):
        return token

    body, bass = token, None
    bass_match = _BASS_RE.match(token)
    if bass_match:
        body, bass = bass_match.group(1), bass_match.group(2)

    root_match = _ROOT_RE.match(body)
    if not root_match:
        return token
    root, quality = root_match.groups()

    root_index = note_index(root)
    if root_index is None:
        return token
    result = spell(root_index + semitones, prefer_sharps) + quality

    if bass is not None:
        bass_index = note_index(bass)
        if bass_index is None:
            return token
        result += "/" + spell(bass_index + semitones, prefer_sharps)
    return result


def transpose(token: str, from_key: str, to_key: str, prefer_sharps: bool = True) -> str:
    """
    Transpose one chord token from *from_key* to *to_key*.

    Chained transpositions agree with a direct one up to enharmonic spelling:
    a zero interval keeps the token as written, any other interval respells
    it with *prefer_sharps*, so ``Db`` up a tone and back comes out as ``C#``.
    """
    return transpose_by(token, semitone_interval(from_key, to_key), prefer_sharps)


def _map_chord_line(line: str, fn: Callable[[str], str]) -> str:
    """Apply *fn* to every token of a chord line, keeping spacing and bar lines."""
    if classify_for_display(line) is not LineKind.CHORD:
        return line
    return _TOKEN_RE.sub(lambda m: fn(m.group(0)), line)


def transpose_line(line: str, semitones: int, prefer_sharps: bool = True) -> str:
    """Transpose a chord line; lyric lines come back untouched."""
    if semitones % 12 == 0:
        return line
    return _map_chord_line(line, lambda tok: transpose_by(tok, semitones, prefer_sharps))


def transpose_text(text: str, from_key: str, to_key: str, prefer_sharps: bool = True) -> str:
    """Transpose every chord line of interleaved chord/lyric text."""
    if not isinstance(text, str):
        return text
    semitones = semitone_interval(from_key, to_key)
    if semitones == 0:
        return text
    return "\n".join(transpose_line(line, semitones, prefer_sharps) for line in text.split("\n"))


# ── Chord-grid payloads ─────────────────────────────────────────────────────

def _transpose_beats(beats: str, semitones: int, prefer_sharps: bool) -> str:
    return " ".join(transpose_by(b, semitones, prefer_sharps) for b in beats.split(" ") if b)


def transpose_grid_payload(content: str, semitones: int, prefer_sharps: bool = True) -> str:
    """
    Transpose the chord-bearing fields of every bar in a JSON chord-grid payload.

    Only ``chord``, ``chordAfter``, ``chordEnd`` and the chord references of
    rhythmic notes change. Melody, signs, endings, tie and dot flags are
    carried over untouched.

    Raises:
        TransposeParseFailure: If *content* is not a grid payload.
    """
    try:
        data: Any = json.loads(content)
    except (TypeError, ValueError) as exc:
        raise TransposeParseFailure(str(exc)) from exc

    bars = data.get("bars") if isinstance(data, dict) else data
    if not isinstance(bars, list):
        raise TransposeParseFailure("chord grid payload has no bar list")

    for bar in bars:
        if not isinstance(bar, dict):
            continue
        for field_name in ("chord", "chordAfter", "chordEnd"):
            value = bar.get(field_name)
            if isinstance(value, str) and value.strip():
                bar[field_name] = _transpose_beats(value, semitones, prefer_sharps)
        for note in bar.get("notes") or []:
            if isinstance(note, dict) and isinstance(note.get("chord"), str):
                note["chord"] = transpose_by(note["chord"], semitones, prefer_sharps)

    return json.dumps(data, ensure_ascii=False)


def transpose_section_content(
    content: str,
    from_key: str,
    to_key: str,
    prefer_sharps: bool = True,
    theme: ContentTheme = ContentTheme.PLAIN,
) -> str:
    """
    Transpose a section's raw content.

    Chord-grid payloads are transposed bar by bar; if the payload cannot be
    parsed the whole string is transposed as text instead.
    """
    if not isinstance(content, str) or not content:
        return content
    semitones = semitone_interval(from_key, to_key)
    if semitones == 0:
        return content

    if theme is ContentTheme.CHORD_GRID and content.lstrip().startswith(("[", "{")):
        try:
            return transpose_grid_payload(content, semitones, prefer_sharps)
        except TransposeParseFailure as exc:
            logger.debug("Grid payload unparsable (%s); transposing as text", exc)

    return "\n".join(
        transpose_line(line, semitones, prefer_sharps) for line in content.split("\n")
    )


def transpose_song(song: Song, to_key: str, prefer_sharps: bool = True) -> Song:
    """Return a copy of *song* moved to *to_key*; the input is not modified."""
    moved = copy.deepcopy(song)
    moved.current_key = to_key
    for section in moved.sections:
        section.content = transpose_section_content(
            section.content, song.current_key, to_key, prefer_sharps, song.theme
        )
    return moved


# ── Simplification ──────────────────────────────────────────────────────────

def simplify_chord(token: str) -> str:
    """
    Reduce a chord to its basic triad, keeping any slash bass.

    ``Bm7 -> Bm``, ``Cmaj7/E -> C/E``, ``F#dim7 -> F#dim``, ``Gsus4 -> G``.
    Non-chord tokens are returned unchanged.
    """
    if not isinstance(token, str) or not is_chord_symbol(token):
        return token

    body, bass = token, ""
    bass_match = _BASS_RE.match(token)
    if bass_match:
        body, bass = bass_match.group(1), "/" + bass_match.group(2)

    root_match = _ROOT_RE.match(body)
    if not root_match:
        return token
    root, quality = root_match.groups()

    if quality.startswith(("maj", "ma", "M", "Δ")):
        triad = ""
    elif quality.startswith(("min", "m", "ø")):
        triad = "m"
    elif quality.startswith(("dim", "o", "°")):
        triad = "dim"
    elif quality.startswith(("aug", "+")):
        triad = "aug"
    else:
        triad = ""
    return root + triad + bass


def simplify_line(line: str) -> str:
    """Simplify every chord of a chord line; lyric lines are untouched."""
    return _map_chord_line(line, simplify_chord)
