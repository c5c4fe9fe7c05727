from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from beatgrid.audio.sample_store import SampleBuffer, SampleStore
from beatgrid.audio.voice import CollectingSink, VoiceTrigger
from beatgrid.engine.automation import AutomationTrack
from beatgrid.engine.transport import IntervalDriver, TransportScheduler, step_interval_ms
from beatgrid.model.types import PatternGrid, default_instruments
from beatgrid.util.limits import MAX_STEPS


def _scheduler(*, bpm: float = 120, bars: int = 1, clock=lambda: 0.0):
    store = SampleStore()
    for i in range(5):
        store.put(i, SampleBuffer(np.full(100, 0.5, dtype=np.float32), 8000))
    sink = CollectingSink(sample_rate=8000, channels=1)
    insts = default_instruments()
    grid = PatternGrid(num_instruments=5, max_steps=MAX_STEPS)
    automation = AutomationTrack()
    ts = TransportScheduler(
        grid=grid,
        instruments=insts,
        automation=automation,
        trigger=VoiceTrigger(store, sink),
        clock=clock,
        bpm=bpm,
        num_bars=bars,
    )
    return ts, sink


@pytest.mark.parametrize("bpm,ms", [(60, 250.0), (120, 125.0), (240, 62.5)])
def test_step_interval(bpm: float, ms: float) -> None:
    assert step_interval_ms(bpm) == pytest.approx(ms)


def test_total_steps_follow_bars() -> None:
    ts, _ = _scheduler(bars=4)
    assert ts.total_steps == 64
    ts.set_num_bars(8)
    assert ts.total_steps == 128


def test_first_tick_after_start_is_step_zero_and_wraps() -> None:
    ts, _ = _scheduler(bars=1)
    assert ts.tick() is None  # stopped
    ts.start()
    assert ts.current_step == -1
    steps = [ts.tick() for _ in range(18)]
    assert steps[:16] == list(range(16))
    assert steps[16:] == [0, 1]


def test_stop_keeps_cursor_and_restart_rewinds() -> None:
    ts, _ = _scheduler()
    ts.start()
    for _ in range(5):
        ts.tick()
    ts.stop()
    assert ts.current_step == 4
    assert ts.tick() is None
    ts.start()
    assert ts.tick() == 0


def test_shrinking_bars_resets_out_of_range_cursor() -> None:
    ts, _ = _scheduler(bars=2)
    ts.start()
    for _ in range(20):
        ts.tick()
    assert ts.current_step == 19
    ts.set_num_bars(1)
    assert ts.current_step == -1
    assert ts.tick() == 0


def test_shrinking_bars_keeps_in_range_cursor() -> None:
    ts, _ = _scheduler(bars=2)
    ts.start()
    for _ in range(4):
        ts.tick()
    ts.set_num_bars(1)
    assert ts.current_step == 3


def test_tick_triggers_active_unmuted_instruments_at_clock_time() -> None:
    now = [1.25]
    ts, sink = _scheduler(clock=lambda: now[0])
    ts.grid.set(0, 0, True)
    ts.grid.set(2, 0, True)
    ts.grid.set(1, 1, True)
    ts.instruments[2].is_muted = True
    ts.start()

    ts.tick()
    assert [e.instrument_index for e in sink.events] == [0]
    assert sink.events[0].time == 1.25

    now[0] = 1.375
    ts.tick()
    assert [e.instrument_index for e in sink.events] == [0, 1]
    assert sink.events[1].time == 1.375


def test_tick_applies_automation_for_that_step_only() -> None:
    ts, sink = _scheduler()
    ts.grid.set(0, 0, True)
    ts.grid.set(0, 1, True)
    ts.automation.record(1, 0, "volume", 0.25)
    ts.automation.record(1, 0, "pitch", 12)
    ts.start()
    ts.tick()
    ts.tick()
    first, second = sink.events
    assert first.gain == 1.0 and first.playback_rate == 1.0
    assert second.gain == 0.25 and second.playback_rate == pytest.approx(2.0)
    assert ts.instruments[0].volume == 1.0


def test_bpm_change_updates_interval() -> None:
    ts, _ = _scheduler(bpm=120)
    ts.set_bpm(60)
    assert ts.interval_ms == pytest.approx(250.0)


def test_interval_driver_ticks_until_stopped() -> None:
    calls: list[int] = []
    done = threading.Event()

    def cb() -> None:
        calls.append(1)
        if len(calls) >= 3:
            done.set()

    d = IntervalDriver(cb, lambda: 5.0)
    d.start()
    try:
        assert done.wait(2.0)
    finally:
        d.stop()
    assert not d.running
    n = len(calls)
    time.sleep(0.05)
    assert len(calls) == n


def test_interval_driver_survives_callback_errors() -> None:
    calls: list[int] = []
    done = threading.Event()

    def cb() -> None:
        calls.append(1)
        if len(calls) >= 2:
            done.set()
        raise RuntimeError("boom")

    d = IntervalDriver(cb, lambda: 5.0)
    d.start()
    try:
        assert done.wait(2.0)
    finally:
        d.stop()
