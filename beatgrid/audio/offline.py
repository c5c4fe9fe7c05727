from __future__ import annotations

import logging
import math
from typing import Sequence

import numpy as np

from beatgrid.audio.sample_store import SampleStore
from beatgrid.audio.voice import VoiceEvent, VoiceTrigger, mix_into, render_voice, start_frame
from beatgrid.engine.automation import AutomationTrack
from beatgrid.model.types import Instrument, PatternGrid
from beatgrid.util.limits import STEPS_PER_BAR, STEPS_PER_BEAT

logger = logging.getLogger(__name__)


class ExportError(RuntimeError):
    pass


def note_duration(bpm: float) -> float:
    """Seconds per sixteenth step."""
    return 60.0 / float(bpm) / STEPS_PER_BEAT


def loop_duration(bpm: float, num_bars: int) -> float:
    return STEPS_PER_BAR * int(num_bars) * note_duration(bpm)


def loop_frames(bpm: float, num_bars: int, sample_rate: int) -> int:
    return int(math.ceil(loop_duration(bpm, num_bars) * sample_rate))


class OfflineGraph:
    """Virtual audio graph with a fixed-length output and its own timeline.

    Voices past the end of the buffer are cut off.
    """

    def __init__(self, *, frames: int, sample_rate: int, channels: int) -> None:
        if frames < 0:
            raise ExportError(f"negative render length: {frames}")
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.frames = int(frames)
        self._events: list[VoiceEvent] = []

    def schedule(self, event: VoiceEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> list[VoiceEvent]:
        return list(self._events)

    def render(self) -> np.ndarray:
        out = np.zeros((self.channels, self.frames), dtype=np.float32)
        for ev in self._events:
            rendered = render_voice(ev, self.sample_rate, self.channels)
            mix_into(out, 0, rendered, start_frame(ev, self.sample_rate))
        return out


def render_loop(
    grid: PatternGrid,
    instruments: Sequence[Instrument],
    bpm: float,
    num_bars: int,
    automation: AutomationTrack,
    *,
    store: SampleStore,
    sample_rate: int = 44100,
    channels: int = 2,
) -> np.ndarray:
    """Render one pass of the loop into a float32 (channels, frames) buffer.

    The result depends only on the arguments and the buffers in ``store``.
    """
    if bpm <= 0:
        raise ExportError(f"bpm must be > 0: {bpm}")
    if len(instruments) != grid.num_instruments:
        raise ExportError(
            f"instrument table ({len(instruments)}) does not match grid rows ({grid.num_instruments})"
        )

    step_s = note_duration(bpm)
    total_steps = STEPS_PER_BAR * int(num_bars)
    if total_steps > grid.max_steps:
        raise ExportError(f"loop of {total_steps} steps exceeds grid ({grid.max_steps})")

    graph = OfflineGraph(frames=loop_frames(bpm, num_bars, sample_rate), sample_rate=sample_rate, channels=channels)
    trigger = VoiceTrigger(store, graph)

    for step in range(total_steps):
        event_time = step * step_s
        for i in grid.active_instruments(step):
            trigger.trigger(i, instruments[i], automation.get(step, i), event_time)

    logger.debug(
        "offline render: %d steps, %d voices, %d frames @ %d Hz",
        total_steps,
        len(graph.events),
        graph.frames,
        sample_rate,
    )
    return graph.render()
