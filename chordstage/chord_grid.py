"""ChordGrid: parses structured bar payloads and lays them out line by line."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from chordstage import config
from chordstage.chord_classifier import PASS_THROUGH_TOKENS
from chordstage.models import ChordGridBar, GridNote

logger = logging.getLogger(__name__)

# A bar whose whole chord field is one of these repeats the previous bar(s)
BAR_REPEAT_SYMBOLS: frozenset[str] = frozenset({"%", "//", "/."})

# Beat placeholders that occupy a column without naming a chord
EMPTY_BEATS: frozenset[str] = frozenset({".", "/"})


@dataclass(frozen=True)
class TieSpan:
    """
    Extent of a tie arc starting at a note.

    Attributes:
        columns:     Number of beat columns the arc covers.
        crosses_bar: True when the tie target is in the next bar; the arc then
                     spans the remaining columns of this bar plus one column
                     of the next.
    """

    columns: int
    crosses_bar: bool = False


@dataclass(frozen=True)
class PlacedNote:
    """A rhythmic note positioned on a 1-based beat column."""

    column: int
    type: str
    dotted: bool = False
    tie: TieSpan | None = None


@dataclass(frozen=True)
class BarLayout:
    """Display model for one bar of the grid."""

    beats: list[str]
    columns: int
    melody: list[str] = field(default_factory=list)
    repeat_symbol: str | None = None
    signs: list[str] = field(default_factory=list)
    ending_label: str | None = None
    ending_start: bool = False
    ending_end: bool = False
    time_signature_override: str | None = None
    notes: list[PlacedNote] = field(default_factory=list)


@dataclass(frozen=True)
class GridLine:
    """
    One row of bars.

    Partial final lines keep a fixed per-bar width: ``width_fraction`` is the
    share of the full row they occupy, left-aligned rather than stretched.
    """

    bars: list[BarLayout]
    is_partial: bool = False
    width_fraction: float = 1.0

    @property
    def has_melody(self) -> bool:
        return any(b.melody for b in self.bars)

    @property
    def has_signs(self) -> bool:
        return any(b.signs for b in self.bars)

    @property
    def has_endings(self) -> bool:
        return any(b.ending_label or b.ending_end for b in self.bars)


@dataclass(frozen=True)
class GridLayout:
    lines: list[GridLine]
    bars_per_line: int = config.DEFAULT_BARS_PER_LINE


# ── Parsing ─────────────────────────────────────────────────────────────────

def looks_like_grid_payload(content: str) -> bool:
    """True when *content* is a JSON bar array or ``{"bars": [...]}`` object."""
    if not isinstance(content, str):
        return False
    stripped = content.strip()
    if not stripped.startswith(("[", "{")):
        return False
    try:
        data = json.loads(stripped)
    except ValueError:
        return False
    if isinstance(data, dict):
        return isinstance(data.get("bars"), list)
    return isinstance(data, list)


def _parse_pipe_separated(content: str) -> list[ChordGridBar]:
    """Parse ``"C | Am . G | F"`` style text into bars (``.`` is an empty beat)."""
    bars: list[ChordGridBar] = []
    for idx, chunk in enumerate(content.replace("\n", "|").split("|")):
        beats = chunk.split()
        if not beats:
            continue
        bars.append(ChordGridBar(id=f"bar-{idx}", chord=" ".join(beats)))
    return bars


def parse_grid(content: str) -> list[ChordGridBar]:
    """
    Parse a chord-grid payload into bars.

    Accepts a JSON array of bar objects (or of beat arrays), a JSON object
    with a ``bars`` list, or pipe-separated text. Never raises; unusable
    input gives an empty list.
    """
    if not isinstance(content, str) or not content.strip():
        return []
    try:
        data: Any = json.loads(content)
    except ValueError:
        return _parse_pipe_separated(content)

    raw_bars = data.get("bars") if isinstance(data, dict) else data
    if not isinstance(raw_bars, list):
        return []

    bars: list[ChordGridBar] = []
    for idx, raw in enumerate(raw_bars):
        if isinstance(raw, dict):
            try:
                bars.append(ChordGridBar.from_dict(raw))
            except (TypeError, ValueError) as exc:
                logger.debug("Skipping malformed bar %d: %s", idx, exc)
        elif isinstance(raw, list):
            beats = [str(b) if b else "." for b in raw]
            bars.append(ChordGridBar(id=f"bar-{idx}", chord=" ".join(beats)))
        elif isinstance(raw, str):
            bars.append(ChordGridBar(id=f"bar-{idx}", chord=raw))
    return bars


# ── Beat geometry ───────────────────────────────────────────────────────────

def bar_beats(bar: ChordGridBar) -> list[str]:
    """
    Ordered beat tokens of a bar, one per grid column.

    Order: chord beats, leading rest, chords after the rest, trailing rest,
    closing chords.
    """
    beats = bar.chord.split()
    if bar.rest_type:
        beats.append(bar.rest_type)
    if bar.chord_after:
        beats.extend(bar.chord_after.split())
    if bar.trailing_rest_type:
        beats.append(bar.trailing_rest_type)
    if bar.chord_end:
        beats.extend(bar.chord_end.split())
    return beats


def grid_column_for_note(note: GridNote, note_index: int, beats: list[str]) -> int:
    """
    1-based column a note sits on, or -1 when it cannot be placed.

    A note naming a chord sits on that chord's column. Otherwise its beat
    reference (explicit, or implicitly its position among the bar's notes)
    counts chords only, skipping rests and symbols.
    """
    if note.chord and note.chord in beats:
        return beats.index(note.chord) + 1

    try:
        wanted = int(note.beat) if note.beat is not None else note_index + 1
    except ValueError:
        wanted = note_index + 1

    chord_counter = 0
    for column, beat in enumerate(beats, start=1):
        if beat in PASS_THROUGH_TOKENS:
            continue
        chord_counter += 1
        if chord_counter == wanted:
            return column
    return -1


def tie_span(target_column: int, beats: list[str], columns: int) -> TieSpan:
    """
    Length of a tie starting at *target_column* (1-based).

    The tie runs to the next chord in the same bar; with no chord left it
    crosses the bar line, covering the remaining columns plus one.
    """
    for idx in range(target_column, len(beats)):
        beat = beats[idx]
        if beat in EMPTY_BEATS or beat in PASS_THROUGH_TOKENS:
            continue
        return TieSpan(columns=(idx + 1) - target_column, crosses_bar=False)
    return TieSpan(columns=(columns - target_column) + 1, crosses_bar=True)


def _ordinal(value: str) -> str:
    try:
        n = int(value)
    except ValueError:
        return ""
    suffixes = ["th", "st", "nd", "rd"]
    v = n % 100
    if 10 < v < 14:
        return "th"
    return suffixes[n % 10] if n % 10 < 4 else "th"


def ending_label(ending_type: str) -> str:
    """``"1" -> "1st ending"``."""
    return f"{ending_type}{_ordinal(ending_type)} ending"


# ── Layout ──────────────────────────────────────────────────────────────────

def layout_bar(bar: ChordGridBar, transform: Callable[[str], str] | None = None) -> BarLayout:
    """
    Build the display model of one bar.

    *transform* is applied to every chord beat before display (e.g. chord
    simplification or bass-note reduction); note placement always uses the
    untransformed beats so chord references still match.
    """
    fn = transform or (lambda token: token)
    signs = bar.signs.labels() if bar.signs else []
    ending = bar.ending
    label = ending_label(ending.type) if ending and ending.is_start else None

    trimmed = bar.chord.strip()
    if trimmed in BAR_REPEAT_SYMBOLS:
        return BarLayout(
            beats=[],
            columns=1,
            repeat_symbol=trimmed,
            signs=signs,
            ending_label=label,
            ending_start=bool(ending and ending.is_start),
            ending_end=bool(ending and ending.is_end),
            time_signature_override=bar.time_signature_override,
        )

    beats = bar_beats(bar)
    melody = bar.melody.split() if bar.melody else []
    columns = max(len(beats), len(melody), 1)

    notes: list[PlacedNote] = []
    for idx, note in enumerate(bar.notes):
        column = grid_column_for_note(note, idx, beats)
        if column < 1:
            continue
        notes.append(
            PlacedNote(
                column=column,
                type=note.type,
                dotted=note.dotted,
                tie=tie_span(column, beats, columns) if note.tied else None,
            )
        )

    display_beats = ["" if beat == "." else fn(beat) for beat in beats]
    return BarLayout(
        beats=display_beats,
        columns=columns,
        melody=melody,
        signs=signs,
        ending_label=label,
        ending_start=bool(ending and ending.is_start),
        ending_end=bool(ending and ending.is_end),
        time_signature_override=bar.time_signature_override,
        notes=notes,
    )


def layout_grid(
    bars: list[ChordGridBar],
    bars_per_line: int = config.DEFAULT_BARS_PER_LINE,
    transform: Callable[[str], str] | None = None,
) -> GridLayout:
    """Group bars into rows of *bars_per_line*; the last row may be partial."""
    per_line = max(1, bars_per_line)
    lines: list[GridLine] = []
    for start in range(0, len(bars), per_line):
        chunk = [layout_bar(bar, transform) for bar in bars[start:start + per_line]]
        is_partial = len(chunk) < per_line
        lines.append(
            GridLine(
                bars=chunk,
                is_partial=is_partial,
                width_fraction=len(chunk) / per_line if is_partial else 1.0,
            )
        )
    return GridLayout(lines=lines, bars_per_line=per_line)
