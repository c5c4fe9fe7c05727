"""beatgrid engine context - owns the session state and exposes the command surface."""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from beatgrid.audio.live import LiveOutput
from beatgrid.audio.offline import render_loop
from beatgrid.audio.sample_store import SampleStore
from beatgrid.audio.voice import VoiceSink, VoiceTrigger
from beatgrid.audio.wav import encode_wav
from beatgrid.engine.automation import AutomationTrack
from beatgrid.engine.params import EffectiveParameters, resolve
from beatgrid.engine.transport import IntervalDriver, TransportScheduler
from beatgrid.model.types import Instrument, PatternGrid, default_instruments
from beatgrid.util.config import AppConfig
from beatgrid.util.limits import (
    BAR_OPTIONS,
    BPM_MAX,
    BPM_MIN,
    DEFAULT_BARS,
    DEFAULT_BPM,
    MAX_STEPS,
    PITCH_MAX,
    PITCH_MIN,
)

logger = logging.getLogger(__name__)


@dataclass
class ExportResult:
    ok: bool
    path: str | None = None
    frames: int = 0
    busy: bool = False
    error: str | None = None


def export_filename(now_ms: int | None = None) -> str:
    ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    return f"drum-loop-{ms}.wav"


class DrumMachine:
    """Engine context for one editing session.

    Ticks and commands run under one re-entrant lock, so a tick (with all of
    its voice triggers) never interleaves with an edit. Exports render from a
    snapshot taken under that lock and run outside it.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        instruments: Sequence[Instrument] | None = None,
        store: SampleStore | None = None,
        sink: VoiceSink | None = None,
        bpm: float = DEFAULT_BPM,
        num_bars: int = DEFAULT_BARS,
    ) -> None:
        self.config = config or AppConfig()
        self.store = store or SampleStore()
        self.instruments: list[Instrument] = [i.copy() for i in (instruments or default_instruments())]
        self.grid = PatternGrid(num_instruments=len(self.instruments), max_steps=MAX_STEPS)
        self.automation = AutomationTrack()
        self.recording_automation = False
        self.master_volume = 1.0

        if sink is None:
            sink = LiveOutput(
                sample_rate=self.config.sample_rate,
                channels=self.config.channels,
                block_size=self.config.block_size,
                device=self.config.output_device,
            )
        self.sink = sink

        self._check_bpm(bpm)
        self._check_bars(num_bars)
        self.transport = TransportScheduler(
            grid=self.grid,
            instruments=self.instruments,
            automation=self.automation,
            trigger=VoiceTrigger(self.store, self.sink),
            clock=self._clock,
            bpm=bpm,
            num_bars=num_bars,
        )

        self._lock = threading.RLock()
        self._driver: IntervalDriver | None = None
        self._exporting = False
        self._export_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="beatgrid-io")

    # -- state ---------------------------------------------------------------

    @property
    def bpm(self) -> float:
        return self.transport.bpm

    @property
    def num_bars(self) -> int:
        return self.transport.num_bars

    @property
    def total_steps(self) -> int:
        return self.transport.total_steps

    @property
    def current_step(self) -> int:
        return self.transport.current_step

    @property
    def is_playing(self) -> bool:
        return self.transport.playing

    @property
    def is_exporting(self) -> bool:
        return self._exporting

    def _clock(self) -> float:
        return float(getattr(self.sink, "current_time", 0.0))

    def _instrument(self, index: int) -> Instrument:
        if not (0 <= index < len(self.instruments)):
            raise IndexError(f"instrument index out of range: {index}")
        return self.instruments[index]

    @staticmethod
    def _check_bpm(bpm: float) -> None:
        if not (BPM_MIN <= float(bpm) <= BPM_MAX):
            raise ValueError(f"bpm must be within {BPM_MIN}-{BPM_MAX}: {bpm}")

    @staticmethod
    def _check_bars(num_bars: int) -> None:
        if int(num_bars) not in BAR_OPTIONS:
            raise ValueError(f"bars must be one of {', '.join(map(str, BAR_OPTIONS))}: {num_bars}")

    def display_instruments(self) -> list[EffectiveParameters]:
        """Parameters as they sound right now: automation applied while playing."""
        with self._lock:
            step = self.transport.current_step
            live = self.is_playing and step >= 0
            return [
                resolve(inst, self.automation.get(step, i) if live else None)
                for i, inst in enumerate(self.instruments)
            ]

    # -- grid / global commands ----------------------------------------------

    def toggle_step(self, instrument_index: int, step: int) -> bool:
        with self._lock:
            return self.grid.toggle(instrument_index, step)

    def set_bpm(self, bpm: float) -> None:
        self._check_bpm(bpm)
        with self._lock:
            self.transport.set_bpm(bpm)

    def set_master_volume(self, volume: float) -> None:
        v = float(volume)
        if not (0.0 <= v <= 1.0):
            raise ValueError(f"master volume must be within 0-1: {volume}")
        with self._lock:
            self.master_volume = v
            if hasattr(self.sink, "master_gain"):
                self.sink.master_gain = v  # type: ignore[attr-defined]

    def set_bars(self, num_bars: int) -> None:
        self._check_bars(num_bars)
        with self._lock:
            self.transport.set_num_bars(int(num_bars))

    # -- per-instrument parameters -------------------------------------------

    def _set_param(self, instrument_index: int, field: str, value: Any) -> None:
        with self._lock:
            inst = self._instrument(instrument_index)
            if self.recording_automation:
                step = self.transport.current_step
                if self.is_playing and step >= 0:
                    self.automation.record(step, instrument_index, field, value)
                else:
                    logger.debug("automation write dropped: transport not running")
                return
            setattr(inst, field, value)

    def set_volume(self, instrument_index: int, volume: float) -> None:
        v = float(volume)
        if not (0.0 <= v <= 1.0):
            raise ValueError(f"volume must be within 0-1: {volume}")
        self._set_param(instrument_index, "volume", v)

    def set_pitch(self, instrument_index: int, semitones: int) -> None:
        p = int(semitones)
        if not (PITCH_MIN <= p <= PITCH_MAX):
            raise ValueError(f"pitch must be within {PITCH_MIN}..{PITCH_MAX}: {semitones}")
        self._set_param(instrument_index, "pitch", p)

    def set_start_time(self, instrument_index: int, start: float) -> None:
        v = float(start)
        if not (0.0 <= v <= 1.0):
            raise ValueError(f"start time must be within 0-1: {start}")
        self._set_param(instrument_index, "start_time", v)

    def set_end_time(self, instrument_index: int, end: float) -> None:
        v = float(end)
        if not (0.0 <= v <= 1.0):
            raise ValueError(f"end time must be within 0-1: {end}")
        self._set_param(instrument_index, "end_time", v)

    def toggle_mute(self, instrument_index: int) -> bool:
        with self._lock:
            inst = self._instrument(instrument_index)
            inst.is_muted = not inst.is_muted
            return inst.is_muted

    def set_mute(self, instrument_index: int, muted: bool) -> None:
        with self._lock:
            self._instrument(instrument_index).is_muted = bool(muted)

    def replace_session(
        self,
        instruments: Sequence[Instrument],
        rows: dict[int, list[bool]],
        automation: AutomationTrack,
    ) -> None:
        """Swap in a whole instrument table, grid and automation (same slot count)."""
        if len(instruments) != len(self.instruments):
            raise ValueError(f"expected {len(self.instruments)} instruments, got {len(instruments)}")
        with self._lock:
            # in place: the transport holds references to these objects
            for i, inst in enumerate(instruments):
                self.instruments[i] = inst.copy()
            for i in range(self.grid.num_instruments):
                self.grid.set_row(i, rows.get(i, []))
            self.automation.clear()
            for step, idx, override in automation.items():
                self.automation.put(step, idx, override)

    # -- samples -------------------------------------------------------------

    def load_samples(self, *, base_dir: Path | None = None) -> int:
        """Load every slot's sample_ref; failed slots stay silent."""
        with self._lock:
            instruments = list(self.instruments)
        return self.store.load_all(instruments, base_dir=base_dir)

    def load_sample(self, instrument_index: int, path: str | Path) -> bool:
        """Replace a slot's sample with a user file.

        On success the slot takes the file's name and its trim and pitch reset.
        On failure nothing changes and the previous sample keeps playing.
        """
        self._instrument(instrument_index)
        p = Path(path).expanduser()
        if not self.store.load(instrument_index, p):
            logger.error("could not load audio file: %s", p.name)
            return False
        with self._lock:
            inst = self._instrument(instrument_index)
            inst.name = p.stem
            inst.sample_ref = str(p)
            inst.start_time = 0.0
            inst.end_time = 1.0
            inst.pitch = 0
        return True

    def load_sample_async(self, instrument_index: int, path: str | Path) -> Future:
        return self._pool.submit(self.load_sample, instrument_index, path)

    # -- transport -----------------------------------------------------------

    def tick(self) -> int | None:
        with self._lock:
            return self.transport.tick()

    def start(self, *, drive: bool = True) -> None:
        """Start playback. With ``drive`` a background driver ticks in real time;
        without it the caller ticks manually."""
        with self._lock:
            if self.is_playing:
                return
            self.transport.start()
        if drive:
            self._driver = IntervalDriver(self.tick, lambda: self.transport.interval_ms)
            self._driver.start()

    def stop(self) -> None:
        if self._driver is not None:
            self._driver.stop()
            self._driver = None
        with self._lock:
            if self.is_playing:
                self.transport.stop()

    def toggle_play(self, *, drive: bool = True) -> bool:
        if self.is_playing:
            self.stop()
        else:
            self.start(drive=drive)
        return self.is_playing

    # -- automation ----------------------------------------------------------

    def toggle_automation_recording(self) -> bool:
        with self._lock:
            self.recording_automation = not self.recording_automation
            logger.info("automation recording %s", "on" if self.recording_automation else "off")
            return self.recording_automation

    def clear_automation(self, confirm: bool = True) -> bool:
        if not confirm:
            return False
        with self._lock:
            self.automation.clear()
        return True

    # -- export --------------------------------------------------------------

    def _snapshot(self) -> tuple[PatternGrid, list[Instrument], float, int, AutomationTrack]:
        with self._lock:
            return (
                self.grid.copy(),
                [i.copy() for i in self.instruments],
                self.bpm,
                self.num_bars,
                self.automation.copy(),
            )

    def render_loop(self):
        grid, instruments, bpm, bars, automation = self._snapshot()
        return render_loop(
            grid,
            instruments,
            bpm,
            bars,
            automation,
            store=self.store,
            sample_rate=self.config.sample_rate,
            channels=self.config.channels,
        )

    def _claim_export(self) -> bool:
        with self._export_lock:
            if self._exporting:
                return False
            self._exporting = True
            return True

    def _run_export(self, out_dir: Path) -> ExportResult:
        part: Path | None = None
        try:
            buf = self.render_loop()
            data = encode_wav(buf, self.config.sample_rate)
            out_dir.mkdir(parents=True, exist_ok=True)
            path = out_dir / export_filename()
            # the final name only ever holds a complete file
            part = path.with_name(path.name + ".part")
            part.write_bytes(data)
            os.replace(part, path)
            part = None
            logger.info("exported %s (%d frames)", path, buf.shape[1])
            return ExportResult(ok=True, path=str(path), frames=int(buf.shape[1]))
        except Exception as e:
            logger.exception("export failed")
            if part is not None:
                part.unlink(missing_ok=True)
            return ExportResult(ok=False, error=str(e))
        finally:
            self._exporting = False

    def export_loop(self, out_dir: str | Path | None = None) -> ExportResult:
        if not self._claim_export():
            logger.warning("export already in progress")
            return ExportResult(ok=False, busy=True)
        return self._run_export(Path(out_dir or self.config.export_dir).expanduser())

    def export_loop_async(self, out_dir: str | Path | None = None) -> Future | None:
        if not self._claim_export():
            logger.warning("export already in progress")
            return None
        try:
            return self._pool.submit(self._run_export, Path(out_dir or self.config.export_dir).expanduser())
        except RuntimeError:
            # pool already shut down
            self._exporting = False
            raise

    # -- lifecycle -----------------------------------------------------------

    def start_audio(self) -> None:
        start = getattr(self.sink, "start", None)
        if start is not None:
            start()

    def close(self) -> None:
        self.stop()
        stop = getattr(self.sink, "stop", None)
        if stop is not None:
            stop()
        self._pool.shutdown(wait=True)
