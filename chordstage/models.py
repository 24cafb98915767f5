"""Data models shared by the synchronizer, renderer and stores."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chordstage import config


class ParticipantRole(Enum):
    """Performer role a viewer picks; drives the content filter."""

    VOCALIST = "vocalist"
    GUITARIST = "guitarist"
    BASSIST = "bassist"
    KEYBOARDIST = "keyboardist"
    DRUMMER = "drummer"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> ParticipantRole:
        """Parse a role string; anything unknown maps to NONE."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.NONE


class ContentTheme(Enum):
    """How a song's section content is laid out."""

    PLAIN = "plain"
    CHORD_GRID = "chord_grid"

    @classmethod
    def parse(cls, value: Any) -> ContentTheme:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.PLAIN


def beats_per_bar(time_signature: str | None) -> int:
    """Numerator of ``"N/M"``; unparsable or non-positive values give 4."""
    if not isinstance(time_signature, str):
        return 4
    head = time_signature.split("/", 1)[0].strip()
    try:
        beats = int(head)
    except ValueError:
        return 4
    return beats if beats > 0 else 4


def clamp_scroll_speed(value: float) -> float:
    """Clamp a scroll speed multiplier into its allowed domain."""
    try:
        speed = float(value)
    except (TypeError, ValueError):
        return config.DEFAULT_SCROLL_SPEED
    return max(config.MIN_SCROLL_SPEED, min(config.MAX_SCROLL_SPEED, speed))


# ── Session & presence ──────────────────────────────────────────────────────

@dataclass
class Participant:
    """
    One connected device in a live session.

    Attributes:
        id:         Stable client identity.
        name:       Display name.
        avatar_url: Optional avatar reference.
        role:       Performer role used to filter content.
        is_owner:   True for the single participant allowed to mutate position.
        last_seen:  Epoch seconds of the latest presence report.
    """

    id: str
    name: str = ""
    avatar_url: str | None = None
    role: ParticipantRole = ParticipantRole.NONE
    is_owner: bool = False
    last_seen: float = field(default_factory=time.time)

    def to_presence(self) -> dict[str, Any]:
        """Presence meta tracked on the channel."""
        return {
            "id": self.id,
            "name": self.name,
            "avatarUrl": self.avatar_url,
            "role": self.role.value,
            "isOwner": self.is_owner,
            "lastSeen": self.last_seen,
        }

    @classmethod
    def from_presence(cls, meta: dict[str, Any]) -> Participant:
        return cls(
            id=str(meta.get("id", "")),
            name=str(meta.get("name") or ""),
            avatar_url=meta.get("avatarUrl"),
            role=ParticipantRole.parse(meta.get("role")),
            is_owner=bool(meta.get("isOwner", False)),
            last_seen=float(meta.get("lastSeen") or 0.0),
        )


@dataclass
class Session:
    """A live viewing context: owner identity and the current roster."""

    id: str
    owner_id: str
    participants: list[Participant] = field(default_factory=list)

    @property
    def owner(self) -> Participant | None:
        return next((p for p in self.participants if p.is_owner), None)


@dataclass(frozen=True)
class PerformancePosition:
    """
    The synchronized performance state.

    Only the session owner mutates the canonical copy; every other participant
    holds a mirror updated by applying deltas. Instances are immutable so the
    reducer can hand out new positions without aliasing.
    """

    current_song_index: int = 0
    current_song_id: str | None = None
    current_section_id: str | None = None
    current_arrangement_id: str | None = None
    tempo: int = config.DEFAULT_TEMPO
    is_playing: bool = False
    show_all_sections: bool = False
    is_auto_scrolling: bool = False
    scroll_speed_multiplier: float = config.DEFAULT_SCROLL_SPEED


# Local-only browsing state for non-owners; same shape, never broadcast.
IndependentPosition = PerformancePosition


# ── Song content ────────────────────────────────────────────────────────────

@dataclass
class Section:
    """A named content block of a song (verse, chorus, intro, ...)."""

    id: str
    section_type: str = "verse"
    name: str | None = None
    content: str = ""
    time_signature: str | None = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        return self.section_type.replace("_", " ").title()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Section:
        content = data.get("content")
        if content is None:
            # Provider records keep grid payloads in "lyrics" and text in "chords"
            content = data.get("lyrics") or data.get("chords") or ""
        return cls(
            id=str(data["id"]),
            section_type=str(data.get("section_type") or "verse"),
            name=data.get("name"),
            content=str(content),
            time_signature=data.get("section_time_signature") or data.get("time_signature"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "section_type": self.section_type,
            "name": self.name,
            "content": self.content,
            "section_time_signature": self.time_signature,
        }


@dataclass
class Arrangement:
    """A play-order entry referencing one section."""

    id: str
    section_id: str
    position: int = 0
    repeat_count: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Arrangement:
        return cls(
            id=str(data["id"]),
            section_id=str(data["section_id"]),
            position=int(data.get("position") or 0),
            repeat_count=int(data.get("repeat_count") or 1),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "section_id": self.section_id,
            "position": self.position,
            "repeat_count": self.repeat_count,
        }


@dataclass
class Song:
    """Song record as supplied by the data provider."""

    id: str
    title: str = ""
    artist: str | None = None
    current_key: str = "C"
    tempo: int = config.DEFAULT_TEMPO
    time_signature: str = config.DEFAULT_TIME_SIGNATURE
    theme: ContentTheme = ContentTheme.PLAIN
    sections: list[Section] = field(default_factory=list)
    arrangements: list[Arrangement] = field(default_factory=list)

    def ordered_arrangements(self) -> list[Arrangement]:
        """Arrangements in play order (ascending position)."""
        return sorted(self.arrangements, key=lambda a: a.position)

    def section_by_id(self, section_id: str | None) -> Section | None:
        if section_id is None:
            return None
        return next((s for s in self.sections if s.id == section_id), None)

    def arrangement_by_id(self, arrangement_id: str | None) -> Arrangement | None:
        if arrangement_id is None:
            return None
        return next((a for a in self.arrangements if a.id == arrangement_id), None)

    def arrangement_index(self, arrangement_id: str | None) -> int | None:
        """Index of an arrangement in play order, or None when unresolved."""
        for idx, arrangement in enumerate(self.ordered_arrangements()):
            if arrangement.id == arrangement_id:
                return idx
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Song:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            artist=data.get("artist"),
            current_key=str(data.get("current_key") or "C"),
            tempo=int(data.get("tempo") or config.DEFAULT_TEMPO),
            time_signature=str(data.get("time_signature") or config.DEFAULT_TIME_SIGNATURE),
            theme=ContentTheme.parse(data.get("theme")),
            sections=[Section.from_dict(s) for s in data.get("sections") or []],
            arrangements=[Arrangement.from_dict(a) for a in data.get("arrangements") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "artist": self.artist,
            "current_key": self.current_key,
            "tempo": self.tempo,
            "time_signature": self.time_signature,
            "theme": self.theme.value,
            "sections": [s.to_dict() for s in self.sections],
            "arrangements": [a.to_dict() for a in self.arrangements],
        }


@dataclass
class Setlist:
    """Ordered list of songs played in one session."""

    id: str
    name: str = ""
    song_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Setlist:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            song_ids=[str(s) for s in data.get("song_ids") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "song_ids": list(self.song_ids)}


# ── Chord grid ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MusicalSigns:
    """Navigation signs drawn above a bar."""

    segno: bool = False
    coda: bool = False
    ds: bool = False
    ds_al_coda: bool = False
    dc: bool = False
    dc_al_coda: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> MusicalSigns | None:
        if not isinstance(data, dict):
            return None
        signs = cls(
            segno=bool(data.get("segno")),
            coda=bool(data.get("coda")),
            ds=bool(data.get("ds")),
            ds_al_coda=bool(data.get("dsAlCoda")),
            dc=bool(data.get("dc")),
            dc_al_coda=bool(data.get("dcAlCoda")),
        )
        return signs if signs.labels() else None

    def labels(self) -> list[str]:
        """Printable labels in drawing order."""
        out: list[str] = []
        if self.segno:
            out.append("Segno")
        if self.coda:
            out.append("Coda")
        if self.ds_al_coda:
            out.append("D.S. al Coda")
        if self.ds:
            out.append("D.S.")
        if self.dc_al_coda:
            out.append("D.C. al Coda")
        if self.dc:
            out.append("D.C.")
        return out


@dataclass(frozen=True)
class Ending:
    """First/second ending bracket marker."""

    type: str
    is_start: bool = False
    is_end: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> Ending | None:
        if not isinstance(data, dict) or not data.get("type"):
            return None
        return cls(
            type=str(data["type"]),
            is_start=bool(data.get("isStart")),
            is_end=bool(data.get("isEnd")),
        )


@dataclass(frozen=True)
class GridNote:
    """A rhythmic note symbol placed over a chord beat."""

    type: str
    beat: str | None = None
    chord: str | None = None
    tied: bool = False
    dotted: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GridNote:
        beat = data.get("beat")
        return cls(
            type=str(data.get("type") or "quarter"),
            beat=str(beat) if beat not in (None, "") else None,
            chord=data.get("chord") or None,
            tied=bool(data.get("tied")),
            dotted=bool(data.get("dotted")),
        )


@dataclass(frozen=True)
class ChordGridBar:
    """One bar of a structured chord-grid payload."""

    id: str = ""
    chord: str = ""
    chord_after: str | None = None
    chord_end: str | None = None
    rest_type: str | None = None
    trailing_rest_type: str | None = None
    melody: str | None = None
    signs: MusicalSigns | None = None
    ending: Ending | None = None
    time_signature_override: str | None = None
    notes: tuple[GridNote, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChordGridBar:
        melody = data.get("melody")
        if isinstance(melody, dict):
            melody = melody.get("notAngka")
        return cls(
            id=str(data.get("id") or ""),
            chord=str(data.get("chord") or ""),
            chord_after=data.get("chordAfter") or None,
            chord_end=data.get("chordEnd") or None,
            rest_type=data.get("restType") or None,
            trailing_rest_type=data.get("trailingRestType") or None,
            melody=str(melody) if melody else None,
            signs=MusicalSigns.from_dict(data.get("musicalSigns")),
            ending=Ending.from_dict(data.get("ending")),
            time_signature_override=data.get("timeSignatureOverride") or None,
            notes=tuple(
                GridNote.from_dict(n) for n in data.get("notes") or [] if isinstance(n, dict)
            ),
        )


def resolve_section(song: Song | None, position: PerformancePosition) -> Section | None:
    """
    Section a position points at: arrangement first, then section id.

    References that do not resolve against *song* (for example while the song
    is still loading) give None and are left in place on the position.
    """
    if song is None:
        return None
    arrangement = song.arrangement_by_id(position.current_arrangement_id)
    if arrangement is not None:
        section = song.section_by_id(arrangement.section_id)
        if section is not None:
            return section
    return song.section_by_id(position.current_section_id)
