"""Live session: wires synchronizer, transport, song loading, auto-scroll and rendering."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from typing import Callable

from chordstage import config
from chordstage.autoscroll import AutoScrollEngine
from chordstage.channel import ChannelManager, PubSubTransport
from chordstage.errors import (
    AbortedLoad,
    ChordStageError,
    DataNotFound,
    StaleReference,
    TransportUnavailable,
)
from chordstage.messages import (
    Delta,
    OfflineSongChange,
    OfflineSectionChange,
    SectionChange,
    SetlistSync,
    SongChange,
    TransposeChange,
)
from chordstage.models import Participant, ParticipantRole, Session, Setlist, Song
from chordstage.offline import OfflineState, OfflineSyncAdapter
from chordstage.renderers import DisplayModel, RenderOptions, render_song
from chordstage.store import DataProvider, InMemoryDataProvider, PreferenceStore
from chordstage.synchronizer import Notice, StateSynchronizer

logger = logging.getLogger(__name__)


class LiveSession:
    """
    One device's view of a live performance.

    Owner actions go through the synchronizer, are broadcast on the channel
    (or the offline adapter) and refresh the local display. Inbound deltas
    are applied to the mirror, trigger song loads and drive the auto-scroll
    engine. Transport and provider failures are logged and the session keeps
    running unsynchronized.
    """

    def __init__(
        self,
        *,
        session: Session,
        participant: Participant,
        provider: DataProvider,
        transport: PubSubTransport | None = None,
        setlist_id: str | None = None,
        options: RenderOptions | None = None,
        preferences: PreferenceStore | None = None,
        scroll_engine: AutoScrollEngine | None = None,
        settle_delay: float = config.SYNC_SETTLE_DELAY_SEC,
        on_display: Callable[[list[DisplayModel]], None] | None = None,
        on_notice: Callable[[Notice], None] | None = None,
    ) -> None:
        self.session = session
        self.participant = participant
        self.provider = provider
        self.transport = transport
        self.options = options or RenderOptions()
        self.preferences = preferences
        self.scroll = scroll_engine or AutoScrollEngine()
        self.settle_delay = settle_delay
        self.on_display = on_display
        self.on_notice = on_notice

        self.synchronizer = StateSynchronizer(
            is_owner=participant.id == session.owner_id,
            setlist_id=setlist_id,
            on_notice=self._notice,
        )
        self.setlist: Setlist | None = None
        self.channel: ChannelManager | None = None
        self.offline: OfflineSyncAdapter | None = None
        self.degraded = False
        self.notices: list[Notice] = []

        self._load_task: asyncio.Task[None] | None = None
        self._load_generation = 0
        self._loading_song_id: str | None = None
        self._sync_handles: list[asyncio.TimerHandle] = []

    # ── State ───────────────────────────────────────────────────────────

    @property
    def is_owner(self) -> bool:
        return self.synchronizer.is_owner

    @property
    def role(self) -> ParticipantRole:
        return self.participant.role

    @property
    def song(self) -> Song | None:
        return self.synchronizer.song

    def song_id_at(self, index: int) -> str | None:
        if self.setlist is None or not 0 <= index < len(self.setlist.song_ids):
            return None
        return self.setlist.song_ids[index]

    def display(self) -> list[DisplayModel]:
        """Display models for this participant's role at the effective position."""
        opts = self.options
        if self.preferences is not None and self.preferences.simplify_chords:
            opts = dataclasses.replace(opts, simplify_chords=True)
        return render_song(self.song, self.synchronizer.effective_position, self.role, opts)

    def _refresh(self) -> None:
        if self.on_display is not None:
            self.on_display(self.display())

    def _notice(self, notice: Notice) -> None:
        self.notices.append(notice)
        if self.on_notice is not None:
            self.on_notice(notice)

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        """
        Load the setlist, join the channel and, as owner, open the first song.

        A channel failure leaves the session running in degraded mode.
        """
        if self.synchronizer.setlist_id is not None:
            try:
                self.setlist = self.provider.get_setlist(self.synchronizer.setlist_id)
            except DataNotFound as exc:
                logger.warning("Setlist unavailable: %s", exc)

        if self.transport is not None:
            self.channel = ChannelManager(
                self.transport,
                self.session,
                self.participant,
                on_delta=self.handle_delta,
                on_peer_joined=self._schedule_setlist_sync,
            )
            try:
                self.channel.join()
            except TransportUnavailable as exc:
                logger.warning("Live sync unavailable, continuing unsynchronized: %s", exc)
                self.degraded = True
        else:
            self.degraded = True

        if self.is_owner:
            if self.preferences is not None:
                saved = self.preferences.scroll_speed(self.session.id)
                if saved != self.synchronizer.position.scroll_speed_multiplier:
                    await self._run_owner_action(self.synchronizer.set_scroll_speed(saved))
            if self.setlist is not None and self.setlist.song_ids:
                await self.change_song(0)
        self._refresh()

    async def close(self) -> None:
        """Release the load task, settle timers, scroll timer and transports."""
        self._cancel_load()
        for handle in self._sync_handles:
            handle.cancel()
        self._sync_handles.clear()
        self.scroll.close()
        if self.channel is not None:
            self.channel.leave()
            self.channel = None
        if self.offline is not None:
            await self.offline.close()
            self.offline = None

    # ── Offline mode ────────────────────────────────────────────────────

    async def go_offline(
        self,
        adapter: OfflineSyncAdapter,
        as_md: bool | None = None,
        address: str | None = None,
    ) -> bool:
        """
        Switch to the local-network transport.

        *as_md* forces the role; None elects it (an MD that answers wins).
        The online channel is released before the adapter opens.

        Returns:
            True when this device is the musical director.

        Raises:
            TransportUnavailable: If no local transport could be opened.
        """
        if self.channel is not None:
            self.channel.leave()
            self.channel = None
        adapter.on_delta = self.handle_delta
        adapter.on_sync = self._on_offline_sync

        if as_md is None:
            is_md = await adapter.elect_role(self._offline_state(), address)
        elif as_md:
            await adapter.start_as_md(self._offline_state())
            is_md = True
        else:
            await adapter.join_as_guest(address)
            is_md = False

        self.offline = adapter
        self.synchronizer.is_owner = is_md
        self.degraded = False
        logger.info("Offline session active as %s", "MD" if is_md else "guest")
        self._refresh()
        return is_md

    def _offline_state(self) -> OfflineState:
        songs = []
        song_ids = list(self.setlist.song_ids) if self.setlist is not None else []
        for song_id in song_ids:
            try:
                songs.append(self.provider.get_song(song_id).to_dict())
            except DataNotFound as exc:
                logger.warning("Song missing from local store: %s", exc)
        position = self.synchronizer.position
        index = self.synchronizer.current_arrangement_index()
        return OfflineState(
            setlist_id=self.synchronizer.setlist_id,
            current_song_index=position.current_song_index,
            current_section_index=index if index is not None else 0,
            song_ids=song_ids,
            songs=songs,
        )

    def _on_offline_sync(self, state: OfflineState) -> None:
        if state.songs:
            provider = InMemoryDataProvider()
            for record in state.songs:
                try:
                    provider.add_song(Song.from_dict(record))
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed song from MD: %s", exc)
            self.provider = provider
        if state.song_ids:
            self.setlist = Setlist(id=state.setlist_id or "offline", song_ids=list(state.song_ids))
        self.synchronizer.setlist_id = state.setlist_id
        self.handle_delta(OfflineSongChange(current_song_index=state.current_song_index))
        self.handle_delta(OfflineSectionChange(current_section_index=state.current_section_index))

    # ── Inbound ─────────────────────────────────────────────────────────

    def handle_delta(self, delta: Delta) -> None:
        """Apply a delta received from the channel or the offline adapter."""
        if not self.synchronizer.apply(delta):
            return

        position = self.synchronizer.position
        if isinstance(delta, (SongChange, OfflineSongChange)):
            song_id = position.current_song_id or self.song_id_at(position.current_song_index)
            self._request_song(song_id)
        elif isinstance(delta, SetlistSync):
            song_id = position.current_song_id or self.song_id_at(position.current_song_index)
            if song_id is not None and (self.song is None or self.song.id != song_id):
                self._request_song(song_id)
        elif isinstance(delta, SectionChange) and delta.song_id is not None:
            if self.song is None or self.song.id != delta.song_id:
                self._request_song(delta.song_id)

        self._sync_scroll_engine()
        self._refresh()

    def _sync_scroll_engine(self) -> None:
        position = self.synchronizer.position
        song = self.song
        self.scroll.configure(
            tempo=position.tempo,
            time_signature=song.time_signature if song is not None else config.DEFAULT_TIME_SIGNATURE,
            multiplier=position.scroll_speed_multiplier,
            song_id=position.current_song_id,
        )
        self.scroll.set_scrolling(position.is_auto_scrolling)

    # ── Song loading ────────────────────────────────────────────────────

    def _cancel_load(self) -> None:
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self._load_task = None

    def _request_song(self, song_id: str | None) -> None:
        """Start loading *song_id*, superseding any load still in flight."""
        in_flight = self._load_task is not None and not self._load_task.done()
        if in_flight and song_id is not None and song_id == self._loading_song_id:
            return
        self._cancel_load()
        self._loading_song_id = song_id
        self._load_generation += 1
        if song_id is None:
            return
        generation = self._load_generation
        self._load_task = asyncio.get_running_loop().create_task(self._load(song_id, generation))

    async def _load(self, song_id: str, generation: int) -> None:
        try:
            song = await asyncio.to_thread(self.provider.get_song, song_id)
        except ChordStageError as exc:
            logger.warning("Song %s unavailable: %s", song_id, exc)
            if generation == self._load_generation:
                self._notice(Notice(f"Could not load song {song_id}"))
            return
        try:
            self._accept_load(song, generation)
        except AbortedLoad as exc:
            logger.debug("Discarding stale load: %s", exc)

    def _accept_load(self, song: Song, generation: int) -> None:
        if generation != self._load_generation:
            raise AbortedLoad(f"song {song.id} superseded by a newer navigation")
        self.synchronizer.load_song(song)
        logger.debug("Loaded song %s (%s)", song.id, song.title)
        self._sync_scroll_engine()
        self._refresh()

    async def wait_for_load(self) -> None:
        """Wait until the current song load (if any) has finished or been cancelled."""
        task = self._load_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ── Owner actions ───────────────────────────────────────────────────

    async def _publish(self, delta: Delta) -> None:
        if self.offline is not None:
            if isinstance(delta, SectionChange):
                try:
                    index = self.synchronizer.require_arrangement_index()
                except StaleReference as exc:
                    logger.debug("Section change not relayed offline: %s", exc)
                else:
                    await self.offline.change_section(index)
            elif isinstance(delta, SongChange):
                await self.offline.change_song(delta.song_index)
            else:
                await self.offline.publish(delta)
        elif self.channel is not None:
            self.channel.publish(delta)

    async def _run_owner_action(self, delta: Delta | None) -> Delta | None:
        if delta is None:
            return None
        await self._publish(delta)
        self._sync_scroll_engine()
        self._refresh()
        return delta

    async def go_to(self, index: int) -> Delta | None:
        return await self._run_owner_action(self.synchronizer.go_to_arrangement(index))

    async def next_section(self) -> Delta | None:
        return await self._run_owner_action(self.synchronizer.next_arrangement())

    async def previous_section(self) -> Delta | None:
        return await self._run_owner_action(self.synchronizer.previous_arrangement())

    async def set_tempo(self, tempo: int) -> Delta | None:
        return await self._run_owner_action(self.synchronizer.set_tempo(tempo))

    async def set_auto_scroll(self, is_scrolling: bool) -> Delta | None:
        return await self._run_owner_action(self.synchronizer.set_auto_scroll(is_scrolling))

    async def toggle_auto_scroll(self) -> Delta | None:
        return await self.set_auto_scroll(not self.synchronizer.position.is_auto_scrolling)

    async def set_scroll_speed(self, speed: float) -> Delta | None:
        delta = await self._run_owner_action(self.synchronizer.set_scroll_speed(speed))
        if delta is not None and self.preferences is not None:
            self.preferences.set_scroll_speed(
                self.session.id, self.synchronizer.position.scroll_speed_multiplier
            )
        return delta

    async def set_show_all_sections(self, show: bool) -> Delta | None:
        return await self._run_owner_action(self.synchronizer.set_show_all_sections(show))

    async def change_song(self, index: int) -> Delta | None:
        """Move to song *index* of the setlist, load it and open its first arrangement."""
        previous = self.synchronizer.position.current_song_id
        delta = self.synchronizer.change_song(index, self.song_id_at(index))
        if delta is None:
            return None
        if previous and self.preferences is not None and self.synchronizer.setlist_id:
            self.preferences.mark_completed(self.synchronizer.setlist_id, previous)
        await self._run_owner_action(delta)

        self._request_song(delta.song_id)
        await self.wait_for_load()
        song = self.song
        if song is not None and song.id == delta.song_id:
            await self._run_owner_action(self.synchronizer.set_tempo(song.tempo))
            if song.arrangements:
                await self.go_to(0)
        return delta

    async def transpose(self, new_key: str, prefer_sharps: bool | None = None) -> Delta | None:
        """Transpose the current song for everyone and store the result."""
        delta = self.synchronizer.transpose(new_key, prefer_sharps)
        if not isinstance(delta, TransposeChange):
            return None
        song = self.song
        if song is not None:
            try:
                self.provider.update_song_key(song.id, delta.new_key, list(delta.sections))
            except DataNotFound as exc:
                logger.warning("Transposed key not stored: %s", exc)
        return await self._run_owner_action(delta)

    # ── Presence ────────────────────────────────────────────────────────

    def _schedule_setlist_sync(self, new_ids: list[str]) -> None:
        """Answer newly seen peers with one full resync after the settle delay."""
        if not self.is_owner:
            return
        loop = asyncio.get_running_loop()
        handle = loop.call_later(self.settle_delay, self._send_setlist_sync)
        self._sync_handles.append(handle)
        logger.debug("Full sync for %s scheduled in %.2fs", ", ".join(new_ids), self.settle_delay)

    def _send_setlist_sync(self) -> None:
        now = asyncio.get_running_loop().time()
        self._sync_handles = [h for h in self._sync_handles if not h.cancelled() and h.when() > now]
        delta = self.synchronizer.full_sync()
        if delta is not None and self.channel is not None:
            self.channel.publish(delta)

    def update_role(self, role: ParticipantRole) -> None:
        """Change this viewer's role; peers see it through presence."""
        if self.channel is not None:
            self.channel.update_role(role)
        else:
            self.participant.role = role
        self._refresh()

    def set_simplify_chords(self, enabled: bool) -> None:
        if self.preferences is not None:
            self.preferences.set_simplify_chords(enabled)
        else:
            self.options = dataclasses.replace(self.options, simplify_chords=enabled)
        self._refresh()

    # ── Independent browsing ────────────────────────────────────────────

    def start_independent(self) -> bool:
        started = self.synchronizer.start_independent()
        if started:
            self._refresh()
        return started

    def browse_to(self, index: int) -> bool:
        moved = self.synchronizer.browse_to(index)
        if moved:
            self._refresh()
        return moved

    def stop_independent(self) -> None:
        self.synchronizer.stop_independent()
        self._refresh()
