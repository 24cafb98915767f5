"""Tests for the song/setlist providers and the preference store."""

import json
from pathlib import Path

import pytest

from chordstage.errors import DataNotFound
from chordstage.models import Arrangement, ContentTheme, Section, Setlist, Song
from chordstage.store import InMemoryDataProvider, JsonSongStore, PreferenceStore


def _song() -> Song:
    return Song(
        id="s1",
        title="Demo",
        current_key="G",
        tempo=96,
        time_signature="3/4",
        theme=ContentTheme.CHORD_GRID,
        sections=[Section(id="v", content="G | D | Em | C", time_signature="6/8")],
        arrangements=[Arrangement(id="a1", section_id="v", position=0, repeat_count=2)],
    )


def test_in_memory_provider_lookups() -> None:
    provider = InMemoryDataProvider([_song()], [Setlist(id="L", song_ids=["s1"])])
    assert provider.get_song("s1").title == "Demo"
    assert provider.get_setlist("L").song_ids == ["s1"]
    with pytest.raises(DataNotFound):
        provider.get_song("missing")
    with pytest.raises(DataNotFound):
        provider.get_setlist("missing")


def test_update_song_key_is_idempotent() -> None:
    provider = InMemoryDataProvider([_song()])
    sections = [{"id": "v", "content": "A | E | F#m | D"}]
    provider.update_song_key("s1", "A", sections)
    provider.update_song_key("s1", "A", sections)
    song = provider.get_song("s1")
    assert song.current_key == "A"
    assert song.sections[0].content == "A | E | F#m | D"


def test_json_store_round_trip(tmp_path: Path) -> None:
    store = JsonSongStore(tmp_path)
    path = store.save_song(_song())
    store.save_setlist(Setlist(id="L", name="Friday", song_ids=["s1"]))
    assert path == tmp_path / "songs" / "s1.json"

    song = store.get_song("s1")
    assert song == _song()
    assert store.get_setlist("L").name == "Friday"
    assert store.list_song_ids() == ["s1"]


def test_json_store_reads_provider_records(tmp_path: Path) -> None:
    songs = tmp_path / "songs"
    songs.mkdir()
    (songs / "x.json").write_text(
        json.dumps(
            {
                "id": "x",
                "title": "Provider",
                "sections": [{"id": "c", "section_type": "chorus", "chords": "C G"}],
                "arrangements": [{"id": "a", "section_id": "c", "position": 0}],
            }
        ),
        encoding="utf-8",
    )
    song = JsonSongStore(tmp_path).get_song("x")
    assert song.sections[0].content == "C G"
    assert song.tempo == 120
    assert song.theme is ContentTheme.PLAIN


def test_json_store_missing_and_malformed(tmp_path: Path) -> None:
    store = JsonSongStore(tmp_path)
    with pytest.raises(DataNotFound):
        store.get_song("nope")
    (tmp_path / "songs").mkdir()
    (tmp_path / "songs" / "bad.json").write_text("{oops", encoding="utf-8")
    with pytest.raises(DataNotFound):
        store.get_song("bad")
    (tmp_path / "songs" / "list.json").write_text("[]", encoding="utf-8")
    with pytest.raises(DataNotFound):
        store.get_song("list")
    (tmp_path / "songs" / "noid.json").write_text("{}", encoding="utf-8")
    with pytest.raises(DataNotFound):
        store.get_song("noid")


def test_json_store_persists_key_update(tmp_path: Path) -> None:
    store = JsonSongStore(tmp_path)
    store.save_song(_song())
    store.update_song_key("s1", "A", [{"id": "v", "content": "A | E"}])
    reloaded = JsonSongStore(tmp_path).get_song("s1")
    assert reloaded.current_key == "A"
    assert reloaded.sections[0].content == "A | E"
    assert not list((tmp_path / "songs").glob("*.tmp"))


def test_empty_store_lists_nothing(tmp_path: Path) -> None:
    assert JsonSongStore(tmp_path / "none").list_song_ids() == []


def test_preferences_persist(tmp_path: Path) -> None:
    path = tmp_path / "prefs" / "preferences.json"
    prefs = PreferenceStore(path)
    prefs.set_scroll_speed("gig", 1.75)
    prefs.set_simplify_chords(True)
    prefs.set_zoom("s1", 1.25)
    prefs.mark_completed("L", "s1")
    prefs.mark_completed("L", "s2")
    prefs.mark_completed("L", "s1", done=False)

    reloaded = PreferenceStore(path)
    assert reloaded.scroll_speed("gig") == 1.75
    assert reloaded.simplify_chords
    assert reloaded.zoom("s1") == 1.25
    assert reloaded.completed_songs("L") == {"s2"}


def test_preference_defaults_and_clamping(tmp_path: Path) -> None:
    prefs = PreferenceStore(tmp_path / "p.json")
    assert prefs.scroll_speed("unknown") == 1.0
    assert not prefs.simplify_chords
    assert prefs.zoom("s") == 1.0
    assert prefs.completed_songs("L") == set()
    prefs.set_scroll_speed("gig", 12)
    assert prefs.scroll_speed("gig") == 3.0


def test_unreadable_preferences_fall_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "p.json"
    path.write_text("not json", encoding="utf-8")
    prefs = PreferenceStore(path)
    assert prefs.scroll_speed("gig") == 1.0
    prefs.set_simplify_chords(True)
    assert json.loads(path.read_text(encoding="utf-8"))["simplify_chords"] is True
