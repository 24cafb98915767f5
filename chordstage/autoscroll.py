"""Auto-scroll timing: tempo-derived scroll velocity and a cancellable tick task."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from chordstage import config
from chordstage.models import beats_per_bar, clamp_scroll_speed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScrollRate:
    """
    Scroll velocity derived from tempo and time signature.

    Attributes:
        beats_per_line:    Beats one rendered line represents (N x 4).
        seconds_per_line:  Time one line stays in view.
        pixels_per_second: Scroll speed at the configured line height.
        pixels_per_tick:   Distance advanced on each timer tick.
    """

    beats_per_line: int
    seconds_per_line: float
    pixels_per_second: float
    pixels_per_tick: float

    @property
    def is_zero(self) -> bool:
        return self.pixels_per_tick == 0


def compute_scroll_rate(
    tempo: float,
    time_signature: str | None = config.DEFAULT_TIME_SIGNATURE,
    multiplier: float = config.DEFAULT_SCROLL_SPEED,
    line_height_px: float = config.BASELINE_LINE_HEIGHT_PX,
    tick_sec: float = config.SCROLL_TICK_SEC,
) -> ScrollRate:
    """
    Derive the scroll rate for a tempo, time signature and speed multiplier.

    ``seconds_per_line = (60 / tempo) * N * 4`` and
    ``pixels_per_second = line_height * multiplier / seconds_per_line``.
    A missing or non-positive tempo gives a zero rate.
    """
    beats_per_line = beats_per_bar(time_signature) * config.BEATS_PER_LINE_FACTOR
    try:
        bpm = float(tempo)
    except (TypeError, ValueError):
        bpm = 0.0
    if bpm <= 0:
        return ScrollRate(beats_per_line, 0.0, 0.0, 0.0)

    seconds_per_line = (60.0 / bpm) * beats_per_line
    pixels_per_second = (line_height_px * clamp_scroll_speed(multiplier)) / seconds_per_line
    return ScrollRate(
        beats_per_line=beats_per_line,
        seconds_per_line=seconds_per_line,
        pixels_per_second=pixels_per_second,
        pixels_per_tick=pixels_per_second * tick_sec,
    )


def pixels_per_tick(
    tempo: float,
    time_signature: str | None,
    multiplier: float,
    is_scrolling: bool,
    line_height_px: float = config.BASELINE_LINE_HEIGHT_PX,
) -> float:
    """Distance one tick advances; 0 whenever auto-scroll is off."""
    if not is_scrolling:
        return 0.0
    return compute_scroll_rate(tempo, time_signature, multiplier, line_height_px).pixels_per_tick


@dataclass(frozen=True)
class ScrollSettings:
    """Inputs that, when changed, require a fresh timer."""

    tempo: int = config.DEFAULT_TEMPO
    time_signature: str = config.DEFAULT_TIME_SIGNATURE
    multiplier: float = config.DEFAULT_SCROLL_SPEED
    song_id: str | None = None
    target: str | None = None


class AutoScrollEngine:
    """
    Drives scrolling with a single cancellable asyncio tick task.

    The engine never holds more than one live task: every start first tears
    down the previous one, and any change of settings while scrolling
    recreates it. ``on_advance`` receives the pixel delta of each tick.
    """

    def __init__(
        self,
        on_advance: Callable[[float], None] | None = None,
        tick_sec: float = config.SCROLL_TICK_SEC,
        line_height_px: float = config.BASELINE_LINE_HEIGHT_PX,
    ) -> None:
        self._on_advance = on_advance
        self._tick_sec = tick_sec
        self._line_height_px = line_height_px
        self._settings = ScrollSettings()
        self._rate = self._compute_rate()
        self._scrolling = False
        self._task: asyncio.Task[None] | None = None
        self.offset_px: float = 0.0
        self.timers_started: int = 0

    # ── State ───────────────────────────────────────────────────────────

    @property
    def settings(self) -> ScrollSettings:
        return self._settings

    @property
    def rate(self) -> ScrollRate:
        return self._rate

    @property
    def is_scrolling(self) -> bool:
        return self._scrolling

    @property
    def is_running(self) -> bool:
        """True while a tick task is alive."""
        return self._task is not None and not self._task.done()

    def _compute_rate(self) -> ScrollRate:
        s = self._settings
        return compute_scroll_rate(
            s.tempo, s.time_signature, s.multiplier, self._line_height_px, self._tick_sec
        )

    # ── Control ─────────────────────────────────────────────────────────

    def configure(
        self,
        *,
        tempo: int,
        time_signature: str,
        multiplier: float,
        song_id: str | None = None,
        target: str | None = None,
    ) -> None:
        """Apply new inputs; a running timer is torn down and recreated if any changed."""
        settings = ScrollSettings(tempo, time_signature, clamp_scroll_speed(multiplier), song_id, target)
        if settings == self._settings:
            return
        song_changed = settings.song_id != self._settings.song_id
        self._settings = settings
        self._rate = self._compute_rate()
        if song_changed:
            self.offset_px = 0.0
        if self._scrolling:
            self.start()

    def set_scrolling(self, flag: bool) -> None:
        """Start or stop scrolling to match a synchronized on/off flag."""
        self._scrolling = bool(flag)
        if self._scrolling:
            if not self.is_running:
                self.start()
        else:
            self.stop()

    def start(self) -> None:
        """Start a fresh tick task, cancelling any previous one."""
        self.stop()
        self._scrolling = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; scroll ticks must be driven manually")
            return
        self._task = loop.create_task(self._run())
        self.timers_started += 1
        logger.debug(
            "Auto-scroll timer started: %.3f px/tick (tempo=%s, ts=%s, x%.2f)",
            self._rate.pixels_per_tick,
            self._settings.tempo,
            self._settings.time_signature,
            self._settings.multiplier,
        )

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.debug("Auto-scroll timer stopped")

    def close(self) -> None:
        """Release the timer; the engine can be started again afterwards."""
        self._scrolling = False
        self.stop()

    def tick(self) -> float:
        """Advance by one tick and return the pixel delta (0 when not scrolling)."""
        if not self._scrolling:
            return 0.0
        delta = self._rate.pixels_per_tick
        self.offset_px += delta
        if self._on_advance is not None and delta:
            self._on_advance(delta)
        return delta

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._tick_sec)
            self.tick()
