from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np

from beatgrid.audio.sample_store import SampleBuffer, SampleStore
from beatgrid.engine.params import EffectiveParameters, resolve
from beatgrid.model.types import AutomationOverride, Instrument

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class VoiceEvent:
    """One scheduled playback of a sample buffer.

    time is in the sink's clock domain (seconds). offset and length are in
    buffer seconds, before the playback rate is applied.
    """

    instrument_index: int
    time: float
    offset: float
    length: float
    gain: float
    playback_rate: float
    buffer: SampleBuffer


class VoiceSink(Protocol):
    """Anything voices can be scheduled on: the live graph or an offline graph."""

    sample_rate: int
    channels: int

    def schedule(self, event: VoiceEvent) -> None:
        ...


def plan_voice(
    instrument_index: int,
    params: EffectiveParameters,
    buffer: SampleBuffer | None,
    scheduled_time: float,
) -> VoiceEvent | None:
    if params.is_muted or buffer is None:
        return None
    duration = buffer.duration
    offset = duration * params.start_time
    # end < start is tolerated and simply plays nothing
    length = max(0.0, duration * (params.end_time - params.start_time))
    return VoiceEvent(
        instrument_index=instrument_index,
        time=float(scheduled_time),
        offset=offset,
        length=length,
        gain=float(params.volume),
        playback_rate=params.playback_rate,
        buffer=buffer,
    )


def match_channels(data: np.ndarray, channels: int) -> np.ndarray:
    src = data.shape[0]
    if src == channels:
        return data
    if src == 1:
        return np.repeat(data, channels, axis=0)
    if channels == 1:
        return data.mean(axis=0, keepdims=True)
    if src > channels:
        return data[:channels]
    pad = np.repeat(data[-1:], channels - src, axis=0)
    return np.concatenate([data, pad], axis=0)


def _snap(frames: float) -> float:
    # trim fractions times durations land a hair off whole frames
    r = round(frames)
    return float(r) if abs(frames - r) < 1e-6 else frames


def start_frame(event: VoiceEvent, sample_rate: int) -> int:
    return int(round(event.time * sample_rate))


def render_voice(event: VoiceEvent, sample_rate: int, channels: int) -> np.ndarray:
    """Render a voice to float32 (channels, frames) at ``sample_rate``.

    Reads the trimmed region with linear interpolation. Unity rate at matching
    sample rates copies the source exactly.
    """
    buf = event.buffer
    empty = np.zeros((channels, 0), dtype=np.float32)
    if buf.frames == 0 or event.length <= 0 or event.playback_rate <= 0:
        return empty

    src_rate = float(buf.sample_rate)
    offset_frames = _snap(event.offset * src_rate)
    play_frames = _snap(event.length * src_rate)
    step = event.playback_rate * src_rate / float(sample_rate)

    n_out = int(math.ceil(play_frames / step - 1e-9))
    if n_out <= 0:
        return empty
    pos = offset_frames + np.arange(n_out, dtype=np.float64) * step
    n_valid = int(np.searchsorted(pos, buf.frames - 1, side="right"))
    if n_valid <= 0:
        return empty
    pos = pos[:n_valid]

    src = match_channels(buf.data, channels)
    xp = np.arange(buf.frames, dtype=np.float64)
    out = np.empty((channels, n_valid), dtype=np.float32)
    for c in range(channels):
        out[c] = (np.interp(pos, xp, src[c]) * event.gain).astype(np.float32)
    return out


def mix_into(out: np.ndarray, out_start: int, rendered: np.ndarray, voice_start: int) -> None:
    """Add ``rendered`` (starting at absolute frame ``voice_start``) into ``out``,
    whose first column is absolute frame ``out_start``."""
    lo = max(out_start, voice_start)
    hi = min(out_start + out.shape[1], voice_start + rendered.shape[1])
    if hi <= lo:
        return
    out[:, lo - out_start : hi - out_start] += rendered[:, lo - voice_start : hi - voice_start]


class VoiceTrigger:
    """Resolves parameters and schedules one voice on whatever sink it was given."""

    def __init__(self, store: SampleStore, sink: VoiceSink) -> None:
        self.store = store
        self.sink = sink

    def trigger(
        self,
        instrument_index: int,
        instrument: Instrument,
        override: AutomationOverride | None,
        scheduled_time: float,
    ) -> VoiceEvent | None:
        params = resolve(instrument, override)
        event = plan_voice(instrument_index, params, self.store.lookup(instrument_index), scheduled_time)
        if event is None:
            return None
        self.sink.schedule(event)
        return event


@dataclass
class CollectingSink:
    """Keeps scheduled events without producing audio (headless runs, inspection)."""

    sample_rate: int = 44100
    channels: int = 2
    events: list[VoiceEvent] = field(default_factory=list)

    def schedule(self, event: VoiceEvent) -> None:
        self.events.append(event)

    def clear(self) -> None:
        self.events.clear()
