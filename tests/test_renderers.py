"""Unit tests for role/theme rendering and the display-model renderers."""

import json

import pytest

from chordstage.chord_classifier import LineKind
from chordstage.models import (
    Arrangement,
    ContentTheme,
    ParticipantRole,
    PerformancePosition,
    Section,
    Song,
)
from chordstage.renderers import (
    NO_SECTION_PLACEHOLDER,
    NO_SONG_PLACEHOLDER,
    JsonRenderer,
    PlainTextRenderer,
    RenderOptions,
    bass_note,
    get_display_renderer,
    render,
    render_song,
)

VERSE = Section(id="v1", section_type="verse", content="C/E F#m7/A\nHello darkness my old friend")
INTRO = Section(id="i1", section_type="intro", content="C G Am F")
GRID = RenderOptions(theme=ContentTheme.CHORD_GRID)


def _song() -> Song:
    return Song(
        id="song-1",
        title="Demo",
        current_key="C",
        sections=[VERSE, INTRO],
        arrangements=[
            Arrangement(id="a2", section_id="v1", position=1),
            Arrangement(id="a1", section_id="i1", position=0),
        ],
    )


def test_bass_note_reduction() -> None:
    assert bass_note("F#m7/A") == "A"
    assert bass_note("C/E") == "E"
    assert bass_note("Am") == "Am"
    assert bass_note("%") == "%"


def test_bassist_sees_bass_notes_only() -> None:
    model = render(VERSE, ParticipantRole.BASSIST)
    assert model.lines[0].text == "E A"
    assert model.lines[1].text == "Hello darkness my old friend"


def test_vocalist_sees_lyric_lines_only() -> None:
    model = render(VERSE, ParticipantRole.VOCALIST)
    assert [line.text for line in model.lines] == ["Hello darkness my old friend"]
    assert all(line.kind is LineKind.LYRIC for line in model.lines)


def test_vocalist_gets_section_name_when_no_lyrics() -> None:
    model = render(INTRO, ParticipantRole.VOCALIST)
    assert model.placeholder == "Intro"
    assert model.lines == []


def test_drummer_and_none_see_full_content() -> None:
    for role in (ParticipantRole.DRUMMER, ParticipantRole.NONE):
        model = render(VERSE, role)
        assert [line.text for line in model.lines] == VERSE.content.split("\n")
        assert not model.chords_clickable


def test_guitarist_gets_clickable_chord_spans() -> None:
    model = render(VERSE, ParticipantRole.GUITARIST)
    assert model.chords_clickable
    spans = model.lines[0].chords
    assert [(s.chord, s.start, s.end) for s in spans] == [("C/E", 0, 3), ("F#m7/A", 4, 10)]
    assert model.lines[1].chords == []


def test_simplify_applies_before_role_transform() -> None:
    section = Section(id="s", content="Cmaj7/E Bm7")
    model = render(section, ParticipantRole.KEYBOARDIST, RenderOptions(simplify_chords=True))
    assert model.lines[0].text == "C/E Bm"
    model = render(section, ParticipantRole.BASSIST, RenderOptions(simplify_chords=True))
    assert model.lines[0].text == "E Bm"


def test_missing_section_is_a_placeholder() -> None:
    model = render(None, ParticipantRole.GUITARIST)
    assert model.placeholder == NO_SECTION_PLACEHOLDER


def test_grid_theme_lays_out_bars() -> None:
    section = Section(id="g", content="C | G | Am | F | Dm")
    model = render(section, ParticipantRole.GUITARIST, GRID)
    assert model.grid is not None
    assert [len(line.bars) for line in model.grid.lines] == [4, 1]
    assert model.grid.lines[1].is_partial


def test_grid_theme_applies_bass_reduction() -> None:
    section = Section(id="g", content=json.dumps([{"chord": "C/E G/B"}]))
    model = render(section, ParticipantRole.BASSIST, GRID)
    assert model.grid is not None
    assert model.grid.lines[0].bars[0].beats == ["E", "B"]


def test_grid_theme_vocalist_gets_placeholder() -> None:
    section = Section(id="g", section_type="chorus", content="C | G")
    model = render(section, ParticipantRole.VOCALIST, GRID)
    assert model.grid is None
    assert model.placeholder == "Chorus"


def test_grid_theme_falls_back_to_text_for_plain_content() -> None:
    model = render(VERSE, ParticipantRole.NONE, GRID)
    assert model.grid is None
    assert model.theme is ContentTheme.PLAIN
    assert len(model.lines) == 2


def test_section_time_signature_overrides_song() -> None:
    section = Section(id="w", content="C", time_signature="3/4")
    model = render(section, ParticipantRole.NONE, RenderOptions(time_signature="4/4"))
    assert model.section_id == "w"


def test_render_song_follows_arrangement() -> None:
    position = PerformancePosition(current_song_id="song-1", current_arrangement_id="a2")
    (model,) = render_song(_song(), position, ParticipantRole.NONE)
    assert model.section_id == "v1"


def test_render_song_falls_back_to_section_id() -> None:
    position = PerformancePosition(current_song_id="song-1", current_section_id="i1")
    (model,) = render_song(_song(), position, ParticipantRole.NONE)
    assert model.section_id == "i1"


def test_render_song_show_all_in_play_order() -> None:
    position = PerformancePosition(current_song_id="song-1", show_all_sections=True)
    models = render_song(_song(), position, ParticipantRole.NONE)
    assert [m.section_id for m in models] == ["i1", "v1"]


def test_render_song_without_song() -> None:
    (model,) = render_song(None, PerformancePosition(), ParticipantRole.NONE)
    assert model.placeholder == NO_SONG_PLACEHOLDER


def test_render_song_unresolved_reference_is_placeholder() -> None:
    position = PerformancePosition(current_song_id="song-1", current_arrangement_id="gone")
    (model,) = render_song(_song(), position, ParticipantRole.NONE)
    assert model.placeholder == NO_SECTION_PLACEHOLDER


def test_plain_text_renderer_output() -> None:
    position = PerformancePosition(show_all_sections=True)
    models = render_song(_song(), position, ParticipantRole.VOCALIST)
    content = PlainTextRenderer().render(title="Demo", models=models)
    assert content.startswith("Demo\n====\n")
    assert "[Intro]\n  (Intro)" in content
    assert "[Verse]\nHello darkness my old friend" in content


def test_plain_text_renderer_grid_rows() -> None:
    section = Section(
        id="g",
        content=json.dumps(
            [
                {"chord": "C . G", "musicalSigns": {"segno": True}, "melody": "1 2 3"},
                {"chord": "%", "ending": {"type": "1", "isStart": True}},
            ]
        ),
    )
    model = render(section, ParticipantRole.NONE, GRID)
    rows = PlainTextRenderer().format_grid_line(model.grid.lines[0])
    assert rows[0].strip().startswith("Segno")
    assert "┌1st ending" in rows[1]
    assert rows[2] == "| C . G | % |"
    assert rows[3].strip().startswith("1 2 3")


def test_json_renderer_serializes_enums() -> None:
    models = [render(VERSE, ParticipantRole.GUITARIST)]
    data = json.loads(JsonRenderer().render(title="Demo", models=models))
    assert data["title"] == "Demo"
    section = data["sections"][0]
    assert section["role"] == "guitarist"
    assert section["theme"] == "plain"
    assert section["lines"][0]["kind"] == "chord"
    assert section["lines"][0]["chords"][0] == {"chord": "C/E", "start": 0, "end": 3}


def test_get_display_renderer() -> None:
    assert isinstance(get_display_renderer("TEXT"), PlainTextRenderer)
    assert get_display_renderer("json").default_extension == ".json"
    with pytest.raises(ValueError, match="Unsupported display format"):
        get_display_renderer("pdf")


def test_missing_content_renders_without_raising() -> None:
    empty = Section(id="e", section_type="bridge", content=None)  # type: ignore[arg-type]
    for role in ParticipantRole:
        for options in (RenderOptions(), GRID):
            model = render(empty, role, options)
            assert model.section_id == "e"
    assert render(empty, ParticipantRole.VOCALIST).placeholder == "Bridge"
