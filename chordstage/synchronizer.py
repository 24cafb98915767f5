"""State synchronizer: pure delta reducer plus owner-side actions."""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Callable

from chordstage.errors import StaleReference
from chordstage.messages import (
    AutoScrollChange,
    Delta,
    OfflineSectionChange,
    OfflineSongChange,
    SectionChange,
    SetlistSync,
    ShowAllSectionsChange,
    SongChange,
    TempoChange,
    TransposeChange,
)
from chordstage.models import (
    IndependentPosition,
    PerformancePosition,
    Section,
    Song,
    clamp_scroll_speed,
    resolve_section,
)
from chordstage.transposer import prefers_sharps, transpose_song

logger = logging.getLogger(__name__)


# ── Reducer ─────────────────────────────────────────────────────────────────

def _section_id_for(song: Song | None, arrangement_id: str | None) -> str | None:
    if song is None:
        return None
    arrangement = song.arrangement_by_id(arrangement_id)
    return arrangement.section_id if arrangement is not None else None


def _reduce_section_change(
    position: PerformancePosition, delta: SectionChange, song: Song | None
) -> PerformancePosition:
    return dataclasses.replace(
        position,
        current_section_id=delta.section_id,
        current_arrangement_id=delta.arrangement_id,
        is_playing=delta.is_playing,
        show_all_sections=delta.show_all_sections,
        current_song_id=delta.song_id if delta.song_id is not None else position.current_song_id,
    )


def _reduce_tempo_change(
    position: PerformancePosition, delta: TempoChange, song: Song | None
) -> PerformancePosition:
    return dataclasses.replace(position, tempo=delta.tempo)


def _reduce_auto_scroll_change(
    position: PerformancePosition, delta: AutoScrollChange, song: Song | None
) -> PerformancePosition:
    speed = (
        clamp_scroll_speed(delta.scroll_speed)
        if delta.scroll_speed is not None
        else position.scroll_speed_multiplier
    )
    return dataclasses.replace(
        position, is_auto_scrolling=delta.is_scrolling, scroll_speed_multiplier=speed
    )


def _reduce_show_all_sections(
    position: PerformancePosition, delta: ShowAllSectionsChange, song: Song | None
) -> PerformancePosition:
    return dataclasses.replace(position, show_all_sections=delta.show_all_sections)


def _reduce_transpose(
    position: PerformancePosition, delta: TransposeChange, song: Song | None
) -> PerformancePosition:
    return position


def _reduce_song_change(
    position: PerformancePosition, delta: SongChange, song: Song | None
) -> PerformancePosition:
    # A new song never inherits a running scroll
    return dataclasses.replace(
        position,
        current_song_index=delta.song_index,
        current_song_id=delta.song_id,
        current_section_id=None,
        current_arrangement_id=None,
        is_auto_scrolling=False,
    )


def _reduce_setlist_sync(
    position: PerformancePosition, delta: SetlistSync, song: Song | None
) -> PerformancePosition:
    section_id = delta.current_section_id
    if section_id is None:
        section_id = _section_id_for(song, delta.current_arrangement_id)
    return dataclasses.replace(
        position,
        current_song_index=delta.current_song_index,
        current_song_id=delta.active_song_id,
        current_arrangement_id=delta.current_arrangement_id,
        current_section_id=section_id,
        is_playing=delta.is_playing,
        tempo=delta.tempo if delta.tempo is not None else position.tempo,
        show_all_sections=delta.show_all_sections,
    )


def _reduce_offline_section(
    position: PerformancePosition, delta: OfflineSectionChange, song: Song | None
) -> PerformancePosition:
    if song is None:
        return position
    ordered = song.ordered_arrangements()
    if not 0 <= delta.current_section_index < len(ordered):
        return position
    arrangement = ordered[delta.current_section_index]
    return dataclasses.replace(
        position,
        current_arrangement_id=arrangement.id,
        current_section_id=arrangement.section_id,
        current_song_id=song.id,
    )


def _reduce_offline_song(
    position: PerformancePosition, delta: OfflineSongChange, song: Song | None
) -> PerformancePosition:
    return dataclasses.replace(
        position,
        current_song_index=delta.current_song_index,
        current_song_id=None,
        current_section_id=None,
        current_arrangement_id=None,
        is_auto_scrolling=False,
    )


_REDUCERS: dict[type, Callable[[PerformancePosition, Delta, Song | None], PerformancePosition]] = {
    SectionChange: _reduce_section_change,  # type: ignore[dict-item]
    TempoChange: _reduce_tempo_change,  # type: ignore[dict-item]
    AutoScrollChange: _reduce_auto_scroll_change,  # type: ignore[dict-item]
    ShowAllSectionsChange: _reduce_show_all_sections,  # type: ignore[dict-item]
    TransposeChange: _reduce_transpose,  # type: ignore[dict-item]
    SongChange: _reduce_song_change,  # type: ignore[dict-item]
    SetlistSync: _reduce_setlist_sync,  # type: ignore[dict-item]
    OfflineSectionChange: _reduce_offline_section,  # type: ignore[dict-item]
    OfflineSongChange: _reduce_offline_song,  # type: ignore[dict-item]
}


def apply_delta(
    position: PerformancePosition, delta: Delta, song: Song | None = None
) -> PerformancePosition:
    """
    Return the position after *delta*; *position* itself is never mutated.

    Every delta overwrites whole fields (no increments), so replaying the same
    sequence on any copy yields the same position. *song* is only consulted to
    resolve offline section indexes and arrangement-to-section lookups.
    """
    reducer = _REDUCERS.get(type(delta))
    if reducer is None:
        logger.debug("No reducer for %r", delta)
        return position
    return reducer(position, delta, song)


# ── Synchronizer ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Notice:
    """Informational message for the user (not an error)."""

    message: str


class StateSynchronizer:
    """
    Single source of truth for one device's performance position.

    On the owner device this holds the canonical position and every owner
    action returns the delta to broadcast. On every other device it is a
    mirror that only changes through :meth:`apply`. Owner actions invoked on
    a mirror return None and change nothing.
    """

    def __init__(
        self,
        *,
        is_owner: bool = False,
        setlist_id: str | None = None,
        position: PerformancePosition | None = None,
        song: Song | None = None,
        on_notice: Callable[[Notice], None] | None = None,
    ) -> None:
        self.is_owner = is_owner
        self.setlist_id = setlist_id
        self._position = position or PerformancePosition()
        self._song = song
        self._independent: IndependentPosition | None = None
        self._pending_section_index: int | None = None
        self._on_notice = on_notice

    # ── State ───────────────────────────────────────────────────────────

    @property
    def position(self) -> PerformancePosition:
        return self._position

    @property
    def song(self) -> Song | None:
        return self._song

    @property
    def independent(self) -> IndependentPosition | None:
        return self._independent

    @property
    def is_independent(self) -> bool:
        return self._independent is not None

    @property
    def effective_position(self) -> PerformancePosition:
        """Independent position while browsing, else the shared one."""
        return self._independent if self._independent is not None else self._position

    def current_section(self) -> Section | None:
        """Section shown now, or None ("no section selected") while unresolved."""
        return resolve_section(self._song, self.effective_position)

    def current_arrangement_index(self) -> int | None:
        if self._song is None:
            return None
        return self._song.arrangement_index(self.effective_position.current_arrangement_id)

    def require_arrangement_index(self) -> int:
        """
        Play-order index of the shared arrangement.

        Raises:
            StaleReference: If the arrangement is not part of the loaded song.
        """
        arrangement_id = self._position.current_arrangement_id
        if self._song is None:
            raise StaleReference(f"arrangement {arrangement_id!r} referenced before song data")
        index = self._song.arrangement_index(arrangement_id)
        if index is None:
            raise StaleReference(f"arrangement {arrangement_id!r} not in song {self._song.id}")
        return index

    def load_song(self, song: Song | None) -> None:
        """
        Install song data.

        Section references that arrived before the song are kept on the
        position and resolve from here on; a pending offline section index is
        applied now.
        """
        self._song = song
        if song is not None and self._position.current_song_id is None:
            # Offline song switches carry only an index
            self._position = dataclasses.replace(self._position, current_song_id=song.id)
        if song is not None and self._pending_section_index is not None:
            pending = OfflineSectionChange(current_section_index=self._pending_section_index)
            self._pending_section_index = None
            self._position = apply_delta(self._position, pending, song)

    def _notice(self, message: str) -> None:
        logger.info(message)
        if self._on_notice is not None:
            self._on_notice(Notice(message))

    # ── Inbound ─────────────────────────────────────────────────────────

    def apply(self, delta: Delta) -> bool:
        """
        Apply an inbound delta to the shared position.

        Deltas addressed to another setlist are ignored. The independent
        position is never touched. Returns True when the delta was applied.
        """
        delta_setlist = getattr(delta, "setlist_id", None)
        if delta_setlist and self.setlist_id and delta_setlist != self.setlist_id:
            logger.debug("Ignoring %s for setlist %s", delta.KIND, delta_setlist)
            return False

        if isinstance(delta, TransposeChange):
            self._apply_transpose(delta)
        elif isinstance(delta, OfflineSectionChange):
            ordered = self._song.ordered_arrangements() if self._song is not None else []
            if not 0 <= delta.current_section_index < len(ordered):
                logger.debug(
                    "Section index %d not resolvable yet; keeping it pending",
                    delta.current_section_index,
                )
                self._pending_section_index = delta.current_section_index
                return True
            self._pending_section_index = None
        elif isinstance(delta, (SongChange, OfflineSongChange)):
            self._pending_section_index = None
            # Indexes that follow must not resolve against the previous song
            if self._song is not None and self._song.id != getattr(delta, "song_id", None):
                self._song = None

        self._position = apply_delta(self._position, delta, self._song)
        return True

    def _apply_transpose(self, delta: TransposeChange) -> None:
        if self._song is None:
            logger.debug("Transpose to %s received before song data; ignored", delta.new_key)
            return
        contents = {
            str(record.get("id")): record.get("content")
            for record in delta.sections
            if record.get("id") is not None
        }
        song = dataclasses.replace(
            self._song,
            current_key=delta.new_key,
            sections=[
                dataclasses.replace(s, content=str(contents[s.id]))
                if contents.get(s.id) is not None
                else s
                for s in self._song.sections
            ],
        )
        self._song = song

    # ── Owner actions ───────────────────────────────────────────────────

    def _emit(self, delta: Delta) -> Delta:
        self._position = apply_delta(self._position, delta, self._song)
        return delta

    def _owner_only(self, action: str) -> bool:
        if not self.is_owner:
            logger.debug("Ignoring %s from non-owner", action)
        return self.is_owner

    def go_to_arrangement(self, index: int) -> SectionChange | None:
        """
        Move to the arrangement at *index* in play order.

        Owner navigation always turns "show all sections" off.
        """
        if not self._owner_only("go_to_arrangement") or self._song is None:
            return None
        ordered = self._song.ordered_arrangements()
        if not 0 <= index < len(ordered):
            logger.debug("Arrangement index %d out of range (0..%d)", index, len(ordered) - 1)
            return None
        arrangement = ordered[index]
        delta = SectionChange(
            section_id=arrangement.section_id,
            arrangement_id=arrangement.id,
            is_playing=self._position.is_playing,
            show_all_sections=False,
            song_id=self._song.id,
            setlist_id=self.setlist_id,
        )
        self._emit(delta)
        return delta

    def next_arrangement(self) -> SectionChange | None:
        if not self._owner_only("next_arrangement") or self._song is None:
            return None
        total = len(self._song.arrangements)
        current = self._song.arrangement_index(self._position.current_arrangement_id)
        if current is None:
            return self.go_to_arrangement(0) if total else None
        if current >= total - 1:
            self._notice("Already at the last section")
            return None
        return self.go_to_arrangement(current + 1)

    def previous_arrangement(self) -> SectionChange | None:
        if not self._owner_only("previous_arrangement") or self._song is None:
            return None
        current = self._song.arrangement_index(self._position.current_arrangement_id)
        if current is None or current <= 0:
            self._notice("Already at the first section")
            return None
        return self.go_to_arrangement(current - 1)

    def set_tempo(self, tempo: int) -> TempoChange | None:
        if not self._owner_only("set_tempo"):
            return None
        try:
            bpm = int(tempo)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid tempo %r", tempo)
            return None
        if bpm <= 0:
            logger.warning("Ignoring non-positive tempo %d", bpm)
            return None
        delta = TempoChange(
            tempo=bpm,
            song_id=self._position.current_song_id,
            setlist_id=self.setlist_id,
        )
        self._emit(delta)
        return delta

    def set_auto_scroll(self, is_scrolling: bool) -> AutoScrollChange | None:
        if not self._owner_only("set_auto_scroll"):
            return None
        delta = AutoScrollChange(
            is_scrolling=bool(is_scrolling),
            scroll_speed=self._position.scroll_speed_multiplier,
        )
        self._emit(delta)
        return delta

    def set_scroll_speed(self, speed: float) -> AutoScrollChange | None:
        if not self._owner_only("set_scroll_speed"):
            return None
        delta = AutoScrollChange(
            is_scrolling=self._position.is_auto_scrolling,
            scroll_speed=clamp_scroll_speed(speed),
        )
        self._emit(delta)
        return delta

    def set_show_all_sections(self, show: bool) -> ShowAllSectionsChange | None:
        if not self._owner_only("set_show_all_sections"):
            return None
        delta = ShowAllSectionsChange(show_all_sections=bool(show))
        self._emit(delta)
        return delta

    def change_song(self, index: int, song_id: str | None = None) -> SongChange | None:
        """Switch to another song of the setlist; the new song starts with auto-scroll off."""
        if not self._owner_only("change_song"):
            return None
        delta = SongChange(song_index=int(index), song_id=song_id, setlist_id=self.setlist_id)
        self._emit(delta)
        self._song = None
        self._pending_section_index = None
        return delta

    def transpose(self, new_key: str, prefer_sharps: bool | None = None) -> TransposeChange | None:
        """
        Transpose the loaded song to *new_key* and return the delta carrying
        the new section contents.
        """
        if not self._owner_only("transpose") or self._song is None:
            return None
        sharps = prefers_sharps(new_key) if prefer_sharps is None else prefer_sharps
        old_key = self._song.current_key
        moved = transpose_song(self._song, new_key, sharps)
        self._song = moved
        delta = TransposeChange(
            new_key=new_key,
            old_key=old_key,
            sections=tuple({"id": s.id, "content": s.content} for s in moved.sections),
            timestamp=time.time(),
        )
        return self._emit(delta)  # type: ignore[return-value]

    def full_sync(self) -> SetlistSync | None:
        """Full-state resync record for late joiners."""
        if not self._owner_only("full_sync"):
            return None
        p = self._position
        return SetlistSync(
            current_song_index=p.current_song_index,
            active_song_id=p.current_song_id,
            current_arrangement_id=p.current_arrangement_id,
            current_section_id=p.current_section_id,
            is_playing=p.is_playing,
            tempo=p.tempo,
            show_all_sections=p.show_all_sections,
            setlist_id=self.setlist_id,
        )

    # ── Independent browsing ────────────────────────────────────────────

    def start_independent(self) -> bool:
        """Begin local-only browsing from the current shared position (non-owners only)."""
        if self.is_owner:
            return False
        if self._independent is None:
            self._independent = self._position
        return True

    def browse_to(self, index: int) -> bool:
        """Move the independent position; never broadcast."""
        if self._independent is None or self._song is None:
            return False
        ordered = self._song.ordered_arrangements()
        if not 0 <= index < len(ordered):
            return False
        arrangement = ordered[index]
        self._independent = dataclasses.replace(
            self._independent,
            current_arrangement_id=arrangement.id,
            current_section_id=arrangement.section_id,
        )
        return True

    def stop_independent(self) -> None:
        """Return to following the shared position."""
        self._independent = None
