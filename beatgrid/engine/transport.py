from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Sequence

from beatgrid.audio.voice import VoiceTrigger
from beatgrid.engine.automation import AutomationTrack
from beatgrid.model.types import Instrument, PatternGrid
from beatgrid.util.limits import STEPS_PER_BAR, STEPS_PER_BEAT

logger = logging.getLogger(__name__)

STOPPED = "stopped"
PLAYING = "playing"


def step_interval_ms(bpm: float) -> float:
    """Milliseconds between sixteenth steps (15000 / bpm in 4/4)."""
    return 60000.0 / float(bpm) / (STEPS_PER_BAR / STEPS_PER_BEAT)


class TransportScheduler:
    """Step cursor plus the per-tick voice triggering.

    It holds only what a tick needs. Something external (an IntervalDriver, a
    test, a headless script) calls ``tick()``; stopping that caller is all it
    takes to stop playback.
    """

    def __init__(
        self,
        *,
        grid: PatternGrid,
        instruments: Sequence[Instrument],
        automation: AutomationTrack,
        trigger: VoiceTrigger,
        clock: Callable[[], float],
        bpm: float,
        num_bars: int,
    ) -> None:
        self.grid = grid
        self.instruments = instruments
        self.automation = automation
        self.trigger = trigger
        self.clock = clock
        self.bpm = float(bpm)
        self.num_bars = int(num_bars)
        self.current_step = -1
        self.state = STOPPED

    @property
    def playing(self) -> bool:
        return self.state == PLAYING

    @property
    def total_steps(self) -> int:
        return STEPS_PER_BAR * self.num_bars

    @property
    def interval_ms(self) -> float:
        return step_interval_ms(self.bpm)

    def start(self) -> None:
        # first tick lands on step 0
        self.current_step = -1
        self.state = PLAYING
        logger.info("transport start: %.1f bpm, %d bars", self.bpm, self.num_bars)

    def stop(self) -> None:
        self.state = STOPPED
        logger.info("transport stop at step %d", self.current_step)

    def set_bpm(self, bpm: float) -> None:
        self.bpm = float(bpm)

    def set_num_bars(self, num_bars: int) -> None:
        self.num_bars = int(num_bars)
        if self.current_step >= self.total_steps:
            self.current_step = -1

    def tick(self) -> int | None:
        if not self.playing:
            return None
        next_step = (self.current_step + 1) % self.total_steps
        self.play_step(next_step)
        self.current_step = next_step
        return next_step

    def play_step(self, step: int) -> int:
        now = self.clock()
        fired = 0
        for i in self.grid.active_instruments(step):
            if self.trigger.trigger(i, self.instruments[i], self.automation.get(step, i), now) is not None:
                fired += 1
        return fired


class IntervalDriver:
    """Calls ``callback`` every ``interval_ms()`` milliseconds on a daemon thread.

    The interval is re-read after every call, so tempo changes apply from the
    next tick on. A late tick is not made up for with a burst.
    """

    def __init__(self, callback: Callable[[], object], interval_ms: Callable[[], float],
                 name: str = "beatgrid-transport") -> None:
        self._callback = callback
        self._interval_ms = interval_ms
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 1.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout)
        self._thread = None

    def _run(self) -> None:
        stop = self._stop
        deadline = time.monotonic() + self._interval_ms() / 1000.0
        while not stop.wait(max(0.0, deadline - time.monotonic())):
            try:
                self._callback()
            except Exception:
                logger.exception("transport tick failed")
            interval = self._interval_ms() / 1000.0
            deadline += interval
            now = time.monotonic()
            if deadline < now:
                deadline = now + interval
