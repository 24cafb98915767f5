"""Closed vocabulary of position deltas and their flat wire records."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Union

logger = logging.getLogger(__name__)

_REQUIRED: Any = dataclasses.MISSING


def _wire(key: str, default: Any = _REQUIRED, convert: Callable[[Any], Any] | None = None) -> Any:
    """Declare a dataclass field with its camelCase wire key and an optional coercion."""
    metadata = {"wire": key, "convert": convert}
    if default is _REQUIRED:
        return field(metadata=metadata)
    return field(default=default, metadata=metadata)


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _strict_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    raise ValueError(f"not a boolean: {value!r}")


def _sections(value: Any) -> tuple[dict[str, Any], ...]:
    if not isinstance(value, (list, tuple)):
        raise ValueError("sections must be a list")
    return tuple(dict(s) for s in value if isinstance(s, dict))


class _Delta:
    """Shared wire codec for every delta dataclass."""

    KIND: ClassVar[str]

    @property
    def kind(self) -> str:
        return self.KIND

    def to_wire(self) -> dict[str, Any]:
        """Flat record: ``type`` plus one camelCase key per field."""
        record: dict[str, Any] = {"type": self.KIND}
        for f in dataclasses.fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            record[f.metadata["wire"]] = list(value) if isinstance(value, tuple) else value
        return record

    @classmethod
    def from_wire(cls, record: dict[str, Any]) -> Any:
        """
        Build the delta from a wire record.

        Raises:
            KeyError:   If a required key is missing.
            ValueError: If a value cannot be coerced.
            TypeError:  If a value has an unusable type.
        """
        kwargs: dict[str, Any] = {}
        for f in dataclasses.fields(cls):  # type: ignore[arg-type]
            key = f.metadata["wire"]
            if key not in record:
                if f.default is dataclasses.MISSING:
                    raise KeyError(key)
                continue
            value = record[key]
            convert = f.metadata["convert"]
            kwargs[f.name] = convert(value) if convert is not None and value is not None else value
        return cls(**kwargs)


# ── Online vocabulary ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class SectionChange(_Delta):
    KIND: ClassVar[str] = "section-change"

    section_id: str | None = _wire("sectionId", None, str)
    arrangement_id: str | None = _wire("arrangementId", None, str)
    is_playing: bool = _wire("isPlaying", False, _strict_bool)
    show_all_sections: bool = _wire("showAllSections", False, _strict_bool)
    song_id: str | None = _wire("songId", None, str)
    setlist_id: str | None = _wire("setlistId", None, str)


@dataclass(frozen=True)
class TempoChange(_Delta):
    KIND: ClassVar[str] = "tempo-change"

    tempo: int = _wire("tempo", convert=int)
    song_id: str | None = _wire("songId", None, str)
    setlist_id: str | None = _wire("setlistId", None, str)


@dataclass(frozen=True)
class AutoScrollChange(_Delta):
    KIND: ClassVar[str] = "auto_scroll_change"

    is_scrolling: bool = _wire("isScrolling", convert=_strict_bool)
    scroll_speed: float | None = _wire("scrollSpeed", None, float)


@dataclass(frozen=True)
class ShowAllSectionsChange(_Delta):
    KIND: ClassVar[str] = "show_all_sections_change"

    show_all_sections: bool = _wire("showAllSections", convert=_strict_bool)


@dataclass(frozen=True)
class TransposeChange(_Delta):
    """
    New key plus the already-transposed section records.

    ``sections`` holds ``{"id": ..., "content": ...}`` records so receivers
    replace content without transposing again.
    """

    KIND: ClassVar[str] = "transpose_change"

    new_key: str = _wire("newKey", convert=str)
    old_key: str | None = _wire("oldKey", None, str)
    sections: tuple[dict[str, Any], ...] = _wire("sections", (), _sections)
    timestamp: float = _wire("timestamp", 0.0, float)


@dataclass(frozen=True)
class SongChange(_Delta):
    KIND: ClassVar[str] = "song-change"

    song_index: int = _wire("songIndex", convert=int)
    song_id: str | None = _wire("songId", None, str)
    setlist_id: str | None = _wire("setlistId", None, str)


@dataclass(frozen=True)
class SetlistSync(_Delta):
    """Full-state resync sent to late joiners."""

    KIND: ClassVar[str] = "setlist-sync"

    current_song_index: int = _wire("currentSongIndex", convert=int)
    active_song_id: str | None = _wire("activeSongId", None, str)
    current_arrangement_id: str | None = _wire("currentArrangementId", None, str)
    current_section_id: str | None = _wire("currentSectionId", None, _opt_str)
    is_playing: bool = _wire("isPlaying", False, _strict_bool)
    tempo: int | None = _wire("tempo", None, int)
    show_all_sections: bool = _wire("showAllSections", False, _strict_bool)
    setlist_id: str | None = _wire("setlistId", None, str)


# ── Offline vocabulary ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class OfflineSectionChange(_Delta):
    KIND: ClassVar[str] = "section_change"

    current_section_index: int = _wire("currentSectionIndex", convert=int)


@dataclass(frozen=True)
class OfflineSongChange(_Delta):
    KIND: ClassVar[str] = "song_change"

    current_song_index: int = _wire("currentSongIndex", convert=int)


Delta = Union[
    SectionChange,
    TempoChange,
    AutoScrollChange,
    ShowAllSectionsChange,
    TransposeChange,
    SongChange,
    SetlistSync,
    OfflineSectionChange,
    OfflineSongChange,
]

DELTA_TYPES: dict[str, type[_Delta]] = {
    cls.KIND: cls
    for cls in (
        SectionChange,
        TempoChange,
        AutoScrollChange,
        ShowAllSectionsChange,
        TransposeChange,
        SongChange,
        SetlistSync,
        OfflineSectionChange,
        OfflineSongChange,
    )
}

OFFLINE_KINDS: frozenset[str] = frozenset({OfflineSectionChange.KIND, OfflineSongChange.KIND})


def parse_delta(record: Any, kind: str | None = None) -> Delta | None:
    """
    Decode a wire record into a delta.

    *kind* overrides the record's ``type`` key (channel events carry the kind
    as the event name). Unknown kinds and malformed records give None.
    """
    if not isinstance(record, dict):
        logger.debug("Ignoring non-object delta: %r", record)
        return None
    event = kind or record.get("type")
    cls = DELTA_TYPES.get(str(event))
    if cls is None:
        logger.debug("Ignoring unknown delta kind %r", event)
        return None
    try:
        return cls.from_wire(record)  # type: ignore[no-any-return]
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Malformed %s delta (%s): %r", event, exc, record)
        return None
