from __future__ import annotations

import numpy as np
import pytest

from beatgrid.audio.live import LiveOutput
from beatgrid.audio.offline import ExportError, loop_duration, loop_frames, note_duration, render_loop
from beatgrid.audio.sample_store import SampleBuffer, SampleStore
from beatgrid.audio.voice import CollectingSink, VoiceTrigger, match_channels, plan_voice, render_voice
from beatgrid.engine.automation import AutomationTrack
from beatgrid.engine.params import resolve
from beatgrid.model.types import AutomationOverride, Instrument, PatternGrid, default_instruments
from beatgrid.util.limits import MAX_STEPS

SR = 8000


def _ramp(frames: int) -> SampleBuffer:
    return SampleBuffer(np.linspace(-0.5, 0.5, frames, dtype=np.float32), SR)


def _const(frames: int, value: float = 0.5) -> SampleBuffer:
    return SampleBuffer(np.full(frames, value, dtype=np.float32), SR)


def _session():
    return default_instruments(), PatternGrid(num_instruments=5, max_steps=MAX_STEPS), AutomationTrack()


def test_loop_sizing() -> None:
    assert note_duration(120) == pytest.approx(0.125)
    assert loop_duration(120, 1) == pytest.approx(2.0)
    assert loop_frames(120, 1, 44100) == 88200
    assert loop_frames(60, 2, 48000) == 384000

    insts, grid, automation = _session()
    out = render_loop(grid, insts, 120, 1, automation, store=SampleStore(), sample_rate=44100)
    assert out.shape == (2, 88200)
    assert out.dtype == np.float32
    assert not out.any()


def test_single_kick_copies_sample_at_frame_zero() -> None:
    insts, grid, automation = _session()
    store = SampleStore()
    kick = _ramp(SR // 2)
    store.put(0, kick)
    grid.set(0, 0, True)

    out = render_loop(grid, insts, 120, 1, automation, store=store, sample_rate=SR, channels=2)
    assert out.shape == (2, 2 * SR)
    np.testing.assert_array_equal(out[0, : SR // 2], kick.data[0])
    np.testing.assert_array_equal(out[1, : SR // 2], kick.data[0])
    assert not out[:, SR // 2 :].any()


def test_render_is_deterministic() -> None:
    insts, grid, automation = _session()
    store = SampleStore()
    store.put(0, _ramp(900))
    store.put(1, _const(700, 0.2))
    for s in range(0, 16, 4):
        grid.set(0, s, True)
    for s in range(2, 16, 4):
        grid.set(1, s, True)
    automation.record(6, 1, "pitch", 5)

    a = render_loop(grid, insts, 97, 1, automation, store=store, sample_rate=SR)
    b = render_loop(grid, insts, 97, 1, automation, store=store, sample_rate=SR)
    assert a.tobytes() == b.tobytes()


def test_muted_and_empty_slots_render_silence() -> None:
    insts, grid, automation = _session()
    store = SampleStore()
    store.put(0, _const(400))
    for s in range(16):
        grid.set(0, s, True)
        grid.set(3, s, True)  # no buffer loaded
    insts[0].is_muted = True

    out = render_loop(grid, insts, 120, 1, automation, store=store, sample_rate=SR)
    assert not out.any()


def test_automation_is_applied_per_step() -> None:
    insts, grid, automation = _session()
    store = SampleStore()
    store.put(0, _const(400, 0.5))
    grid.set(0, 0, True)
    grid.set(0, 4, True)
    automation.record(4, 0, "volume", 0.5)

    out = render_loop(grid, insts, 120, 1, automation, store=store, sample_rate=SR, channels=1)
    step4 = int(4 * note_duration(120) * SR)
    assert step4 == 4000
    assert np.all(out[0, :400] == 0.5)
    assert np.all(out[0, step4 : step4 + 400] == 0.25)
    assert not out[0, 400:step4].any()


def test_voices_past_loop_end_are_cut() -> None:
    insts, grid, automation = _session()
    store = SampleStore()
    store.put(0, _const(SR, 0.5))  # one second
    grid.set(0, 15, True)  # last step, 0.125 s before the end

    out = render_loop(grid, insts, 120, 1, automation, store=store, sample_rate=SR, channels=1)
    assert out.shape == (1, 2 * SR)
    assert np.all(out[0, 15 * 1000 :] == 0.5)


def test_render_rejects_mismatched_tables() -> None:
    insts, grid, automation = _session()
    with pytest.raises(ExportError):
        render_loop(grid, insts[:3], 120, 1, automation, store=SampleStore())
    with pytest.raises(ExportError):
        render_loop(grid, insts, 0, 1, automation, store=SampleStore())


def test_plan_voice_trims_and_skips() -> None:
    buf = _const(800)
    inst = Instrument(name="Kick", start_time=0.25, end_time=0.75, volume=0.4)
    ev = plan_voice(0, resolve(inst), buf, 2.0)
    assert ev is not None
    assert ev.offset == pytest.approx(0.025)
    assert ev.length == pytest.approx(0.05)
    assert ev.gain == 0.4
    assert ev.time == 2.0

    assert plan_voice(0, resolve(inst), None, 0.0) is None
    inst.is_muted = True
    assert plan_voice(0, resolve(inst), buf, 0.0) is None


def test_inverted_trim_plays_nothing() -> None:
    buf = _ramp(400)
    ev = plan_voice(0, resolve(Instrument(name="x", start_time=0.8, end_time=0.2)), buf, 0.0)
    assert ev is not None
    assert ev.length == 0.0
    assert render_voice(ev, SR, 2).shape == (2, 0)


def test_trimmed_region_is_read_from_offset() -> None:
    buf = _ramp(400)
    ev = plan_voice(0, resolve(Instrument(name="x", start_time=0.5, end_time=1.0)), buf, 0.0)
    out = render_voice(ev, SR, 1)
    assert out.shape == (1, 200)
    np.testing.assert_allclose(out[0], buf.data[0, 200:], atol=1e-6)


def test_octave_up_halves_length() -> None:
    buf = _ramp(400)
    ev = plan_voice(0, resolve(Instrument(name="x", pitch=12)), buf, 0.0)
    out = render_voice(ev, SR, 1)
    assert out.shape == (1, 200)
    np.testing.assert_allclose(out[0], buf.data[0, ::2], atol=1e-6)


def test_octave_down_doubles_length() -> None:
    buf = _ramp(400)
    ev = plan_voice(0, resolve(Instrument(name="x", pitch=-12)), buf, 0.0)
    out = render_voice(ev, SR, 1)
    assert out.shape[1] in (798, 799, 800)
    np.testing.assert_allclose(out[0, ::2], buf.data[0, : len(out[0, ::2])], atol=1e-6)


def test_match_channels() -> None:
    mono = np.array([[0.1, 0.2]], dtype=np.float32)
    stereo = np.array([[0.2, 0.4], [0.0, 0.0]], dtype=np.float32)
    assert match_channels(mono, 2).shape == (2, 2)
    np.testing.assert_allclose(match_channels(stereo, 1), [[0.1, 0.2]])
    assert match_channels(stereo, 2) is stereo


def test_trigger_resolves_override_on_sink() -> None:
    store = SampleStore()
    store.put(1, _const(100))
    sink = CollectingSink(sample_rate=SR, channels=1)
    trig = VoiceTrigger(store, sink)
    ev = trig.trigger(1, Instrument(name="Snare", volume=0.9), AutomationOverride(volume=0.3), 0.5)
    assert ev is sink.events[0]
    assert ev.gain == 0.3
    assert trig.trigger(0, Instrument(name="Kick"), None, 0.5) is None


def _pull(live: LiveOutput, frames: int, block: int = 256) -> np.ndarray:
    parts = []
    got = 0
    while got < frames:
        parts.append(live.render_block(block))
        got += block
    return np.concatenate(parts, axis=1)[:, :frames]


def test_live_output_matches_offline_render() -> None:
    insts, grid, automation = _session()
    store = SampleStore()
    store.put(0, _ramp(1500))  # longer than a step, so voices overlap
    store.put(2, _const(300, 0.1))
    for s in range(0, 16, 2):
        grid.set(0, s, True)
    for s in range(1, 16, 3):
        grid.set(2, s, True)
    automation.record(4, 0, "volume", 0.3)
    automation.record(7, 2, "end_time", 0.5)

    offline = render_loop(grid, insts, 120, 1, automation, store=store, sample_rate=SR, channels=2)

    live = LiveOutput(sample_rate=SR, channels=2, block_size=256)
    trig = VoiceTrigger(store, live)
    step_s = note_duration(120)
    for step in range(16):
        for i in grid.active_instruments(step):
            trig.trigger(i, insts[i], automation.get(step, i), step * step_s)

    streamed = _pull(live, offline.shape[1])
    np.testing.assert_array_equal(streamed, offline)


def test_live_master_gain_and_clock() -> None:
    live = LiveOutput(sample_rate=SR, channels=1, block_size=64)
    store = SampleStore()
    store.put(0, _const(100, 0.8))
    trig = VoiceTrigger(store, live)
    trig.trigger(0, Instrument(name="Kick"), None, 0.0)
    live.master_gain = 0.5

    assert live.active_voices == 1
    block = live.render_block(64)
    assert np.allclose(block, 0.4)
    assert live.current_time == pytest.approx(64 / SR)
    live.render_block(64)
    assert live.active_voices == 0


def test_live_late_voice_starts_next_block() -> None:
    live = LiveOutput(sample_rate=SR, channels=1)
    live.render_block(128)
    store = SampleStore()
    store.put(0, _const(10, 0.5))
    VoiceTrigger(store, live).trigger(0, Instrument(name="Kick"), None, 0.0)
    block = live.render_block(32)
    assert np.all(block[0, :10] == 0.5)
    assert not block[0, 10:].any()
