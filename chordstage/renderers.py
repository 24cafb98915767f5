"""Role- and theme-aware content rendering, plus display-model output renderers."""

from __future__ import annotations

import dataclasses
import json
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable

from chordstage import config
from chordstage.chord_classifier import (
    PASS_THROUGH_TOKENS,
    LineKind,
    classify_for_display,
    is_chord_symbol,
    strip_tags,
)
from chordstage.chord_grid import (
    BarLayout,
    GridLayout,
    GridLine,
    layout_grid,
    looks_like_grid_payload,
    parse_grid,
)
from chordstage.models import (
    ContentTheme,
    ParticipantRole,
    PerformancePosition,
    Section,
    Song,
    beats_per_bar,
    resolve_section,
)
from chordstage.transposer import simplify_chord

_TOKEN_RE = re.compile(r"[^\s|]+")
_BASS_RE = re.compile(r"/([A-G](?:##|#|bb|b)?)$")

NO_SONG_PLACEHOLDER = "No song selected"
NO_SECTION_PLACEHOLDER = "No section selected"


@dataclass(frozen=True)
class RenderOptions:
    """
    Knobs that shape a display model beyond the viewer's role.

    Attributes:
        theme:             Plain interleaved text or chord grid.
        simplify_chords:   Reduce every chord to its triad before display.
        show_all_sections: Render every arranged section instead of the current one.
        bars_per_line:     Chord-grid bars per row.
        time_signature:    ``"N/M"``; N is the number of beats per bar.
    """

    theme: ContentTheme = ContentTheme.PLAIN
    simplify_chords: bool = False
    show_all_sections: bool = False
    bars_per_line: int = config.DEFAULT_BARS_PER_LINE
    time_signature: str = config.DEFAULT_TIME_SIGNATURE

    @property
    def beats_per_bar(self) -> int:
        return beats_per_bar(self.time_signature)


@dataclass(frozen=True)
class ChordSpan:
    """Character offsets of one addressable chord inside a display line."""

    chord: str
    start: int
    end: int


@dataclass(frozen=True)
class DisplayLine:
    text: str
    kind: LineKind
    chords: list[ChordSpan] = field(default_factory=list)


@dataclass(frozen=True)
class DisplayModel:
    """
    What one viewer sees for one section.

    ``grid`` is set for chord-grid content, ``lines`` for text content, and
    ``placeholder`` when there is nothing for this role to show.
    """

    title: str
    role: ParticipantRole
    theme: ContentTheme
    section_id: str | None = None
    lines: list[DisplayLine] = field(default_factory=list)
    grid: GridLayout | None = None
    placeholder: str | None = None
    chords_clickable: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.lines and (self.grid is None or not self.grid.lines)


# ── Role transforms ─────────────────────────────────────────────────────────

def bass_note(token: str) -> str:
    """``"F#m7/A" -> "A"``; tokens without a slash bass are returned unchanged."""
    if not isinstance(token, str) or not is_chord_symbol(token):
        return token
    match = _BASS_RE.search(token)
    return match.group(1) if match else token


def _identity(token: str) -> str:
    return token


_ROLE_CHORD_TRANSFORMS: dict[ParticipantRole, Callable[[str], str]] = {
    ParticipantRole.BASSIST: bass_note,
}

_CLICKABLE_ROLES: frozenset[ParticipantRole] = frozenset(
    {ParticipantRole.GUITARIST, ParticipantRole.KEYBOARDIST}
)


def chord_transform(role: ParticipantRole, options: RenderOptions) -> Callable[[str], str]:
    """Per-token transform for *role*: optional simplification, then the role's reduction."""
    role_fn = _ROLE_CHORD_TRANSFORMS.get(role, _identity)
    if not options.simplify_chords:
        return role_fn
    return lambda token: role_fn(simplify_chord(token))


def _chord_spans(text: str) -> list[ChordSpan]:
    return [
        ChordSpan(chord=m.group(0), start=m.start(), end=m.end())
        for m in _TOKEN_RE.finditer(text)
        if m.group(0) not in PASS_THROUGH_TOKENS and is_chord_symbol(m.group(0))
    ]


def _render_line(line: str, fn: Callable[[str], str], clickable: bool) -> DisplayLine:
    kind = classify_for_display(line)
    if kind is LineKind.LYRIC:
        return DisplayLine(text=line, kind=kind)
    text = _TOKEN_RE.sub(lambda m: fn(m.group(0)), line)
    return DisplayLine(text=text, kind=kind, chords=_chord_spans(text) if clickable else [])


def _has_lyric_content(lines: list[DisplayLine]) -> bool:
    return any(strip_tags(line.text).strip() for line in lines)


def _content(section: Section) -> str:
    return section.content if isinstance(section.content, str) else ""


# ── Section rendering ───────────────────────────────────────────────────────

def _render_text(section: Section, role: ParticipantRole, options: RenderOptions) -> DisplayModel:
    clickable = role in _CLICKABLE_ROLES
    fn = chord_transform(role, options)
    lines = [_render_line(raw, fn, clickable) for raw in _content(section).split("\n")]

    if role is ParticipantRole.VOCALIST:
        lines = [line for line in lines if line.kind is LineKind.LYRIC]
        if not _has_lyric_content(lines):
            return DisplayModel(
                title=section.display_name,
                role=role,
                theme=ContentTheme.PLAIN,
                section_id=section.id,
                placeholder=section.display_name,
            )

    return DisplayModel(
        title=section.display_name,
        role=role,
        theme=ContentTheme.PLAIN,
        section_id=section.id,
        lines=lines,
        chords_clickable=clickable,
    )


def _render_grid(section: Section, role: ParticipantRole, options: RenderOptions) -> DisplayModel:
    content = _content(section)
    if not looks_like_grid_payload(content) and "|" not in content:
        return _render_text(section, role, options)
    bars = parse_grid(content)
    if not bars:
        return _render_text(section, role, options)

    if role is ParticipantRole.VOCALIST:
        # A grid carries no lyric lines
        return DisplayModel(
            title=section.display_name,
            role=role,
            theme=ContentTheme.CHORD_GRID,
            section_id=section.id,
            placeholder=section.display_name,
        )

    grid = layout_grid(bars, options.bars_per_line, chord_transform(role, options))
    return DisplayModel(
        title=section.display_name,
        role=role,
        theme=ContentTheme.CHORD_GRID,
        section_id=section.id,
        grid=grid,
        chords_clickable=role in _CLICKABLE_ROLES,
    )


_THEME_RENDERERS: dict[
    ContentTheme, Callable[[Section, ParticipantRole, RenderOptions], DisplayModel]
] = {
    ContentTheme.PLAIN: _render_text,
    ContentTheme.CHORD_GRID: _render_grid,
}


def render(
    section: Section | None,
    role: ParticipantRole,
    options: RenderOptions | None = None,
) -> DisplayModel:
    """
    Build the display model of one section for one viewer role.

    Vocalists see lyric lines only (or the section name when there are none),
    bassists see each slash chord reduced to its bass note, and guitarists and
    keyboardists get addressable chord spans. Never raises; a missing section
    renders as a placeholder.
    """
    opts = options or RenderOptions()
    if section is None:
        return DisplayModel(
            title="",
            role=role,
            theme=opts.theme,
            placeholder=NO_SECTION_PLACEHOLDER,
        )
    if section.time_signature and section.time_signature != opts.time_signature:
        opts = dataclasses.replace(opts, time_signature=section.time_signature)
    return _THEME_RENDERERS[opts.theme](section, role, opts)


def render_song(
    song: Song | None,
    position: PerformancePosition,
    role: ParticipantRole,
    options: RenderOptions | None = None,
) -> list[DisplayModel]:
    """
    Render what the position points at within *song*.

    Returns one model for the current section, or one per arranged section in
    play order when all sections are shown.
    """
    opts = options or RenderOptions()
    if song is None:
        return [
            DisplayModel(title="", role=role, theme=opts.theme, placeholder=NO_SONG_PLACEHOLDER)
        ]
    opts = dataclasses.replace(opts, theme=song.theme, time_signature=song.time_signature)

    if opts.show_all_sections or position.show_all_sections:
        arranged = [song.section_by_id(a.section_id) for a in song.ordered_arrangements()]
        sections = [s for s in arranged if s is not None] or list(song.sections)
        return [render(section, role, opts) for section in sections]

    return [render(resolve_section(song, position), role, opts)]


# ── Output renderers ────────────────────────────────────────────────────────

class DisplayRenderer(ABC):
    """Abstract display-model renderer."""

    @property
    @abstractmethod
    def default_extension(self) -> str:
        """Default filename extension for this renderer."""

    @abstractmethod
    def render(self, *, title: str, models: list[DisplayModel]) -> str:
        """Render display models into a file content string."""


class PlainTextRenderer(DisplayRenderer):
    """Render display models as monospace text for a terminal."""

    @property
    def default_extension(self) -> str:
        return ".txt"

    def render(self, *, title: str, models: list[DisplayModel]) -> str:
        out: list[str] = []
        if title:
            out.extend([title, "=" * len(title), ""])
        for model in models:
            if model.title:
                out.append(f"[{model.title}]")
            if model.placeholder is not None:
                out.append(f"  ({model.placeholder})")
            elif model.grid is not None:
                for line in model.grid.lines:
                    out.extend(self.format_grid_line(line))
            else:
                out.extend(line.text for line in model.lines)
            out.append("")
        return "\n".join(out).rstrip("\n") + "\n"

    @staticmethod
    def _bar_cell(bar: BarLayout) -> str:
        if bar.repeat_symbol:
            body = bar.repeat_symbol
        else:
            body = " ".join(beat or "." for beat in bar.beats)
        if bar.time_signature_override:
            body = f"({bar.time_signature_override}) {body}"
        return f" {body} "

    def format_grid_line(self, line: GridLine) -> list[str]:
        """
        Format one grid row as aligned text rows.

        Signs and ending labels sit above the chord row, melody below it.
        """
        cells = [self._bar_cell(bar) for bar in line.bars]
        widths = [len(cell) for cell in cells]
        rows: list[str] = []

        def annotate(values: list[str]) -> str:
            return " " + " ".join(v.ljust(w) for v, w in zip(values, widths)).rstrip()

        if line.has_signs:
            rows.append(annotate([" / ".join(bar.signs) for bar in line.bars]))
        if line.has_endings:
            rows.append(
                annotate(
                    [
                        f"┌{bar.ending_label}" if bar.ending_label else ("┐" if bar.ending_end else "")
                        for bar in line.bars
                    ]
                )
            )
        rows.append("|" + "|".join(cells) + "|")
        if line.has_melody:
            melody_cells = [f" {' '.join(bar.melody)} ".ljust(w) for bar, w in zip(line.bars, widths)]
            rows.append(" " + " ".join(melody_cells).rstrip())
        return rows


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class JsonRenderer(DisplayRenderer):
    """Render display models as a JSON document for other front ends."""

    @property
    def default_extension(self) -> str:
        return ".json"

    def render(self, *, title: str, models: list[DisplayModel]) -> str:
        payload = {"title": title, "sections": [asdict(m) for m in models]}
        return json.dumps(payload, default=_json_default, ensure_ascii=False, indent=2)


def get_display_renderer(output_format: str) -> DisplayRenderer:
    """Return a renderer for ``text`` or ``json``."""
    normalized = output_format.lower()
    if normalized == "text":
        return PlainTextRenderer()
    if normalized == "json":
        return JsonRenderer()
    raise ValueError(f"Unsupported display format: {output_format}")
