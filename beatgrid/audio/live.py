"""Real-time output graph (sounddevice output callback)."""

from __future__ import annotations

import logging
import threading

import numpy as np

from beatgrid.audio.voice import VoiceEvent, mix_into, render_voice, start_frame

logger = logging.getLogger(__name__)


class LiveOutput:
    """
    Mixes scheduled voices into the output stream, block by block.

    The audio clock is the number of frames handed to the device so far, so
    voice times share a timeline with the output rather than the wall clock.
    Per callback:
      1. Sum every voice overlapping the block
      2. Drop voices that have finished
      3. Apply master gain and clip
    """

    def __init__(self, sample_rate: int = 44100, channels: int = 2, block_size: int = 512,
                 device: str | int | None = None):
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_size = block_size
        self.device = device
        self.master_gain: float = 1.0

        self._voices: list[tuple[int, np.ndarray]] = []  # (start frame, rendered audio)
        self._frames_rendered = 0
        self._lock = threading.Lock()
        self._stream = None

    # -- clock ---------------------------------------------------------------

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate)

    @property
    def active_voices(self) -> int:
        with self._lock:
            return len(self._voices)

    # -- scheduling ----------------------------------------------------------

    def schedule(self, event: VoiceEvent) -> None:
        rendered = render_voice(event, self.sample_rate, self.channels)
        if rendered.shape[1] == 0:
            return
        with self._lock:
            # a voice whose time has already passed starts with the next block
            begin = max(start_frame(event, self.sample_rate), self._frames_rendered)
            self._voices.append((begin, rendered))

    def render_block(self, frames: int) -> np.ndarray:
        """Pull the next ``frames`` of output as (channels, frames) and advance the clock."""
        out = np.zeros((self.channels, frames), dtype=np.float32)
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            keep: list[tuple[int, np.ndarray]] = []
            for begin, rendered in self._voices:
                mix_into(out, block_start, rendered, begin)
                if begin + rendered.shape[1] > block_end:
                    keep.append((begin, rendered))
            self._voices = keep
            self._frames_rendered = block_end
        out *= self.master_gain
        np.clip(out, -1.0, 1.0, out=out)
        return out

    def reset(self) -> None:
        with self._lock:
            self._voices = []

    # -- audio callback ------------------------------------------------------

    def _callback(self, outdata, frames: int, time_info, status):
        if status:
            logger.warning("[Audio] %s", status)
        outdata[:] = self.render_block(frames).T

    # -- start / stop --------------------------------------------------------

    def start(self):
        if self._stream is not None:
            return
        import sounddevice as sd

        self._stream = sd.OutputStream(
            samplerate=self.sample_rate,
            blocksize=self.block_size,
            channels=self.channels,
            dtype="float32",
            callback=self._callback,
            device=self.device,
        )
        self._stream.start()
        logger.info(
            "[Audio] Started sr=%d buf=%d ch=%d",
            self.sample_rate,
            self.block_size,
            self.channels,
        )

    def stop(self):
        if self._stream:
            self._stream.stop()
            self._stream.close()
            self._stream = None
            logger.info("[Audio] Stopped")

    @property
    def running(self) -> bool:
        return self._stream is not None and self._stream.active
