"""Integration tests for the live session over in-process and local transports."""

import asyncio
import time
from pathlib import Path
from typing import Callable

from chordstage.channel import InMemoryPubSub
from chordstage.errors import TransportUnavailable
from chordstage.messages import SongChange
from chordstage.models import (
    Arrangement,
    Participant,
    ParticipantRole,
    Section,
    Session,
    Setlist,
    Song,
)
from chordstage.offline import OfflineSyncAdapter, TcpRelayTransport
from chordstage.renderers import DisplayModel
from chordstage.session import LiveSession
from chordstage.store import InMemoryDataProvider, PreferenceStore


def _songs() -> list[Song]:
    return [
        Song(
            id="song-1",
            title="First",
            current_key="C",
            tempo=96,
            sections=[
                Section(id="intro", section_type="intro", content="C/E F#m7/A"),
                Section(id="verse", section_type="verse", content="C G/B\nHello there"),
                Section(id="chorus", section_type="chorus", content="F C\nSing it"),
            ],
            arrangements=[
                Arrangement(id="s1-a1", section_id="intro", position=0),
                Arrangement(id="s1-a2", section_id="verse", position=1),
                Arrangement(id="s1-a3", section_id="chorus", position=2),
            ],
        ),
        Song(
            id="song-2",
            title="Second",
            current_key="G",
            tempo=140,
            time_signature="3/4",
            sections=[Section(id="v", content="G D\nAnother one")],
            arrangements=[
                Arrangement(id="s2-a1", section_id="v", position=0),
                Arrangement(id="s2-a2", section_id="v", position=1),
            ],
        ),
    ]


def _provider() -> InMemoryDataProvider:
    return InMemoryDataProvider(_songs(), [Setlist(id="L", song_ids=["song-1", "song-2"])])


def _owner(transport: InMemoryPubSub | None, **kwargs) -> LiveSession:
    return LiveSession(
        session=Session(id="gig", owner_id="owner"),
        participant=Participant(id="owner", name="MD"),
        provider=_provider(),
        transport=transport,
        setlist_id="L",
        settle_delay=0.01,
        **kwargs,
    )


def _viewer(
    transport: InMemoryPubSub | None, client_id: str, role: ParticipantRole, **kwargs
) -> LiveSession:
    return LiveSession(
        session=Session(id="gig", owner_id="owner"),
        participant=Participant(id=client_id, role=role),
        provider=_provider(),
        transport=transport,
        setlist_id="L",
        **kwargs,
    )


async def _until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_owner_start_opens_first_song() -> None:
    async def scenario() -> None:
        owner = _owner(InMemoryPubSub())
        await owner.start()
        position = owner.synchronizer.position
        assert owner.is_owner
        assert not owner.degraded
        assert owner.song is not None and owner.song.id == "song-1"
        assert position.current_arrangement_id == "s1-a1"
        assert position.tempo == 96
        await owner.close()

    asyncio.run(scenario())


def test_late_joiner_catches_up_via_full_sync() -> None:
    async def scenario() -> None:
        hub = InMemoryPubSub()
        owner = _owner(hub)
        await owner.start()
        await owner.next_section()
        await owner.next_section()
        assert owner.synchronizer.position.current_arrangement_id == "s1-a3"

        displays: list[list[DisplayModel]] = []
        bass = _viewer(hub, "bass", ParticipantRole.BASSIST, on_display=displays.append)
        await bass.start()
        await _until(lambda: bass.song is not None)
        await bass.wait_for_load()

        assert bass.synchronizer.position.current_arrangement_id == "s1-a3"
        assert bass.synchronizer.position.tempo == 96
        assert bass.display()[0].section_id == "chorus"
        assert displays

        # Live deltas follow
        await owner.previous_section()
        await owner.previous_section()
        (model,) = bass.display()
        assert model.section_id == "intro"
        assert model.lines[0].text == "E A"

        await bass.close()
        await owner.close()

    asyncio.run(scenario())


def test_viewer_follows_song_change() -> None:
    async def scenario() -> None:
        hub = InMemoryPubSub()
        owner = _owner(hub)
        await owner.start()
        viewer = _viewer(hub, "keys", ParticipantRole.KEYBOARDIST)
        await viewer.start()
        await _until(lambda: viewer.song is not None)

        await owner.change_song(1)
        await _until(lambda: viewer.song is not None and viewer.song.id == "song-2")
        position = viewer.synchronizer.position
        assert position.current_song_index == 1
        assert position.current_arrangement_id == "s2-a1"
        assert position.tempo == 140
        assert viewer.display()[0].chords_clickable

        await viewer.close()
        await owner.close()

    asyncio.run(scenario())


def test_song_change_turns_auto_scroll_off() -> None:
    async def scenario() -> None:
        hub = InMemoryPubSub()
        owner = _owner(hub)
        await owner.start()
        viewer = _viewer(hub, "drums", ParticipantRole.DRUMMER)
        await viewer.start()
        await _until(lambda: viewer.song is not None)

        await owner.set_auto_scroll(True)
        assert owner.scroll.is_running
        assert viewer.scroll.is_scrolling
        assert viewer.synchronizer.position.is_auto_scrolling

        await owner.change_song(1)
        assert not owner.synchronizer.position.is_auto_scrolling
        assert not owner.scroll.is_running
        assert not viewer.synchronizer.position.is_auto_scrolling
        assert not viewer.scroll.is_scrolling

        await viewer.close()
        await owner.close()

    asyncio.run(scenario())


def test_viewer_cannot_drive_the_session() -> None:
    async def scenario() -> None:
        hub = InMemoryPubSub()
        owner = _owner(hub)
        await owner.start()
        viewer = _viewer(hub, "vox", ParticipantRole.VOCALIST)
        await viewer.start()
        await _until(lambda: viewer.song is not None)

        assert await viewer.next_section() is None
        assert await viewer.set_tempo(200) is None
        assert owner.synchronizer.position.current_arrangement_id == "s1-a1"
        assert owner.synchronizer.position.tempo == 96

        await viewer.close()
        await owner.close()

    asyncio.run(scenario())


def test_boundary_navigation_is_a_notice() -> None:
    async def scenario() -> None:
        owner = _owner(None)
        await owner.start()
        assert await owner.previous_section() is None
        assert [n.message for n in owner.notices] == ["Already at the first section"]
        await owner.close()

    asyncio.run(scenario())


def test_unavailable_transport_degrades_without_failing() -> None:
    async def scenario() -> None:
        hub = InMemoryPubSub()
        hub.available = False
        owner = _owner(hub)
        await owner.start()
        assert owner.degraded
        assert owner.song is not None
        assert await owner.next_section() is not None
        await owner.close()

    asyncio.run(scenario())


def test_missing_setlist_is_not_fatal() -> None:
    async def scenario() -> None:
        session = LiveSession(
            session=Session(id="gig", owner_id="owner"),
            participant=Participant(id="owner"),
            provider=InMemoryDataProvider(),
            setlist_id="missing",
        )
        await session.start()
        assert session.setlist is None
        assert session.display()[0].placeholder == "No song selected"
        await session.close()

    asyncio.run(scenario())


class _SlowProvider(InMemoryDataProvider):
    def get_song(self, song_id: str) -> Song:
        if song_id == "song-1":
            time.sleep(0.2)
        return super().get_song(song_id)


def test_newer_navigation_supersedes_pending_load() -> None:
    async def scenario() -> None:
        viewer = LiveSession(
            session=Session(id="gig", owner_id="owner"),
            participant=Participant(id="v"),
            provider=_SlowProvider(_songs()),
        )
        viewer.handle_delta(SongChange(song_index=0, song_id="song-1"))
        viewer.handle_delta(SongChange(song_index=1, song_id="song-2"))
        await viewer.wait_for_load()
        assert viewer.song is not None and viewer.song.id == "song-2"

        await asyncio.sleep(0.3)
        assert viewer.song.id == "song-2"
        await viewer.close()

    asyncio.run(scenario())


class _OfflineBackend(InMemoryDataProvider):
    def get_song(self, song_id: str) -> Song:
        raise TransportUnavailable("backend unreachable")


def test_provider_outage_is_a_notice() -> None:
    async def scenario() -> None:
        viewer = LiveSession(
            session=Session(id="gig", owner_id="owner"),
            participant=Participant(id="v"),
            provider=_OfflineBackend(_songs()),
        )
        viewer.handle_delta(SongChange(song_index=0, song_id="song-1"))
        await viewer.wait_for_load()
        assert viewer.song is None
        assert [n.message for n in viewer.notices] == ["Could not load song song-1"]
        assert viewer.display()[0].placeholder == "No song selected"
        await viewer.close()

    asyncio.run(scenario())


def test_rejoining_viewer_gets_full_sync() -> None:
    async def scenario() -> None:
        hub = InMemoryPubSub()
        owner = _owner(hub)
        await owner.start()
        first = _viewer(hub, "v", ParticipantRole.GUITARIST)
        await first.start()
        await _until(lambda: first.song is not None)
        await first.close()

        await owner.next_section()
        await owner.next_section()

        again = _viewer(hub, "v", ParticipantRole.GUITARIST)
        await again.start()
        await _until(lambda: again.synchronizer.position.current_arrangement_id == "s1-a3")
        await again.wait_for_load()
        assert again.display()[0].section_id == "chorus"

        await again.close()
        await owner.close()

    asyncio.run(scenario())


def test_transpose_reaches_viewers_and_store() -> None:
    async def scenario() -> None:
        hub = InMemoryPubSub()
        owner = _owner(hub)
        await owner.start()
        viewer = _viewer(hub, "gtr", ParticipantRole.GUITARIST)
        await viewer.start()
        await _until(lambda: viewer.song is not None)

        delta = await owner.transpose("D")
        assert delta is not None
        assert owner.provider.get_song("song-1").current_key == "D"
        assert viewer.song.current_key == "D"
        assert viewer.song.section_by_id("verse").content == "D A/C#\nHello there"

        await viewer.close()
        await owner.close()

    asyncio.run(scenario())


def test_preferences_drive_speed_and_simplify(tmp_path: Path) -> None:
    async def scenario() -> None:
        prefs = PreferenceStore(tmp_path / "prefs.json")
        prefs.set_scroll_speed("gig", 2.0)
        owner = _owner(None, preferences=prefs)
        await owner.start()
        assert owner.synchronizer.position.scroll_speed_multiplier == 2.0

        await owner.set_scroll_speed(0.5)
        assert prefs.scroll_speed("gig") == 0.5

        await owner.go_to(1)
        owner.set_simplify_chords(True)
        assert prefs.simplify_chords

        await owner.change_song(1)
        assert prefs.completed_songs("L") == {"song-1"}
        await owner.close()

    asyncio.run(scenario())


def test_role_change_is_seen_by_owner() -> None:
    async def scenario() -> None:
        hub = InMemoryPubSub()
        owner = _owner(hub)
        await owner.start()
        viewer = _viewer(hub, "v", ParticipantRole.VOCALIST)
        await viewer.start()
        viewer.update_role(ParticipantRole.BASSIST)
        roster = {p.id: p for p in owner.channel.participants}
        assert roster["v"].role is ParticipantRole.BASSIST
        assert viewer.role is ParticipantRole.BASSIST
        await viewer.close()
        await owner.close()

    asyncio.run(scenario())


def test_independent_browsing_in_session() -> None:
    async def scenario() -> None:
        hub = InMemoryPubSub()
        owner = _owner(hub)
        await owner.start()
        viewer = _viewer(hub, "v", ParticipantRole.NONE)
        await viewer.start()
        await _until(lambda: viewer.song is not None)

        assert viewer.start_independent()
        assert viewer.browse_to(2)
        await owner.next_section()
        assert viewer.display()[0].section_id == "chorus"
        viewer.stop_independent()
        assert viewer.display()[0].section_id == "verse"

        await viewer.close()
        await owner.close()

    asyncio.run(scenario())


def test_offline_guest_follows_md() -> None:
    async def scenario() -> None:
        md = _owner(None)
        await md.start()
        await md.next_section()
        md_adapter = OfflineSyncAdapter("md", [TcpRelayTransport(host="127.0.0.1", port=0)])
        assert await md.go_offline(md_adapter, as_md=True)
        port = md_adapter.active.port

        guest = LiveSession(
            session=Session(id="offline", owner_id=""),
            participant=Participant(id="guest", role=ParticipantRole.BASSIST),
            provider=InMemoryDataProvider(),
        )
        guest_adapter = OfflineSyncAdapter(
            "guest", [TcpRelayTransport(port=port, connect_timeout=2.0)], probe_timeout=2.0
        )
        assert not await guest.go_offline(guest_adapter, as_md=False, address="127.0.0.1")
        await guest.wait_for_load()
        assert guest.song is not None and guest.song.id == "song-1"
        assert guest.synchronizer.position.current_arrangement_id == "s1-a2"

        await md.next_section()
        await _until(lambda: guest.synchronizer.position.current_arrangement_id == "s1-a3")

        await md.change_song(1)
        await _until(lambda: guest.song is not None and guest.song.id == "song-2")
        await _until(lambda: guest.synchronizer.position.current_arrangement_id == "s2-a1")
        assert guest.display()[0].lines[0].text == "G D"

        # A guest cannot move the MD
        assert await guest.next_section() is None

        await guest.close()
        await md.close()

    asyncio.run(scenario())
