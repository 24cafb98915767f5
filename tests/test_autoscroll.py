"""Unit tests for scroll-rate maths and the auto-scroll engine."""

import asyncio

import pytest

from chordstage.autoscroll import AutoScrollEngine, compute_scroll_rate, pixels_per_tick


def test_reference_rate_at_120_bpm_common_time() -> None:
    rate = compute_scroll_rate(120, "4/4", 1.0)
    assert rate.beats_per_line == 16
    assert rate.seconds_per_line == pytest.approx(8.0)
    assert rate.pixels_per_second == pytest.approx(20.0)
    assert rate.pixels_per_tick == pytest.approx(1.0)


def test_time_signature_numerator_sets_beats_per_line() -> None:
    assert compute_scroll_rate(120, "3/4").beats_per_line == 12
    assert compute_scroll_rate(120, "6/8").beats_per_line == 24
    assert compute_scroll_rate(120, "junk").beats_per_line == 16


def test_rate_increases_with_tempo() -> None:
    rates = [compute_scroll_rate(t, "4/4").pixels_per_second for t in (60, 90, 120, 180)]
    assert rates == sorted(rates)
    assert len(set(rates)) == len(rates)


def test_rate_increases_with_multiplier() -> None:
    slow = compute_scroll_rate(120, "4/4", 0.5).pixels_per_second
    fast = compute_scroll_rate(120, "4/4", 2.0).pixels_per_second
    assert slow < fast
    assert fast == pytest.approx(4 * slow)


def test_multiplier_is_clamped() -> None:
    assert compute_scroll_rate(120, "4/4", 10).pixels_per_second == pytest.approx(60.0)
    assert compute_scroll_rate(120, "4/4", 0).pixels_per_second == pytest.approx(2.0)


def test_missing_tempo_gives_zero_rate() -> None:
    assert compute_scroll_rate(0, "4/4").is_zero
    assert compute_scroll_rate(-10, "4/4").is_zero
    assert compute_scroll_rate(None, "4/4").is_zero  # type: ignore[arg-type]


def test_no_movement_when_scrolling_is_off() -> None:
    assert pixels_per_tick(120, "4/4", 1.0, is_scrolling=False) == 0.0
    assert pixels_per_tick(120, "4/4", 1.0, is_scrolling=True) == pytest.approx(1.0)


def test_manual_ticks_without_event_loop() -> None:
    advanced: list[float] = []
    engine = AutoScrollEngine(on_advance=advanced.append)
    engine.configure(tempo=120, time_signature="4/4", multiplier=1.0, song_id="s1")
    assert engine.tick() == 0.0

    engine.set_scrolling(True)
    assert not engine.is_running
    engine.tick()
    engine.tick()
    assert engine.offset_px == pytest.approx(2.0)
    assert advanced == [pytest.approx(1.0), pytest.approx(1.0)]

    engine.set_scrolling(False)
    assert engine.tick() == 0.0


def test_song_change_resets_offset() -> None:
    engine = AutoScrollEngine()
    engine.configure(tempo=120, time_signature="4/4", multiplier=1.0, song_id="s1")
    engine.set_scrolling(True)
    engine.tick()
    engine.configure(tempo=120, time_signature="4/4", multiplier=1.0, song_id="s2")
    assert engine.offset_px == 0.0


def test_engine_runs_single_task_and_restarts_on_change() -> None:
    async def scenario() -> AutoScrollEngine:
        engine = AutoScrollEngine(tick_sec=0.01)
        engine.configure(tempo=120, time_signature="4/4", multiplier=1.0, song_id="s1")
        engine.set_scrolling(True)
        assert engine.is_running
        assert engine.timers_started == 1

        # Same flag again does not spawn a second task
        engine.set_scrolling(True)
        assert engine.timers_started == 1

        engine.configure(tempo=140, time_signature="4/4", multiplier=1.0, song_id="s1")
        assert engine.timers_started == 2
        assert engine.is_running

        # Identical settings are a no-op
        engine.configure(tempo=140, time_signature="4/4", multiplier=1.0, song_id="s1")
        assert engine.timers_started == 2

        await asyncio.sleep(0.08)
        assert engine.offset_px > 0

        engine.set_scrolling(False)
        assert not engine.is_running
        stopped_at = engine.offset_px
        await asyncio.sleep(0.03)
        assert engine.offset_px == stopped_at

        engine.close()
        return engine

    engine = asyncio.run(scenario())
    assert not engine.is_running


def test_configure_while_stopped_does_not_start() -> None:
    async def scenario() -> int:
        engine = AutoScrollEngine(tick_sec=0.01)
        engine.configure(tempo=100, time_signature="3/4", multiplier=1.5)
        assert not engine.is_running
        return engine.timers_started

    assert asyncio.run(scenario()) == 0
