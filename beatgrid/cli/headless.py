from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from beatgrid.audio.voice import CollectingSink
from beatgrid.engine.machine import DrumMachine
from beatgrid.io.loop_yaml import apply_loop, load_loop_yaml, parse_cells
from beatgrid.io.midi import export_midi
from beatgrid.model.types import default_instruments
from beatgrid.util.config import AppConfig
from beatgrid.util.limits import DEFAULT_BARS, DEFAULT_BPM

logger = logging.getLogger(__name__)

_ON_OFF = {"on": True, "off": False, "1": True, "0": False, "true": True, "false": False}


@dataclass
class HeadlessContext:
    machine: DrumMachine | None = None
    sink: CollectingSink | None = None
    last_export: str | None = None


def _flag(s: str) -> bool:
    v = _ON_OFF.get(s.strip().lower())
    if v is None:
        raise ValueError(f"expected on/off: {s}")
    return v


class HeadlessRunner:
    """Runs line-oriented scripts against a DrumMachine with no audio device.

    Voices triggered by ``tick`` are collected, not played, and the transport
    advances only when the script says so.
    """

    def __init__(self, *, config: AppConfig | None = None, strict: bool = False) -> None:
        self.config = config or AppConfig()
        self.ctx = HeadlessContext()
        self.strict = strict
        self.commands_executed = 0
        self.warnings: list[str] = []
        self._base_dir: Path | None = None

    def run_lines(self, lines: list[str], *, base_dir: Path | None = None) -> None:
        prev_base = self._base_dir
        self._base_dir = base_dir
        try:
            for lineno, raw in enumerate(lines, start=1):
                line = raw.strip()
                if not line or line.startswith("#"):
                    continue

                # include other scripts
                if line.startswith("include "):
                    inc_path = self._path(line.split(" ", 1)[1].strip().strip('"'))
                    if not inc_path.exists():
                        msg = f"include not found: {inc_path}"
                        if self.strict:
                            raise FileNotFoundError(msg)
                        self.warnings.append(msg)
                        continue
                    inc_lines = inc_path.read_text(encoding="utf-8").splitlines()
                    self.run_lines(inc_lines, base_dir=inc_path.parent)
                    continue

                try:
                    self.run_command(line)
                    self.commands_executed += 1
                except Exception as e:
                    msg = f"Headless error line {lineno}: {line} ({e})"
                    if self.strict:
                        raise RuntimeError(msg) from e
                    logger.warning(msg)
                    self.warnings.append(msg)
                    continue
        finally:
            self._base_dir = prev_base

    def _path(self, s: str) -> Path:
        p = Path(s).expanduser()
        if not p.is_absolute() and self._base_dir is not None:
            p = self._base_dir / p
        return p

    def _new_machine(self, *, bpm: float, bars: int, instruments=None) -> DrumMachine:
        if self.ctx.machine is not None:
            self.ctx.machine.close()
        sink = CollectingSink(sample_rate=self.config.sample_rate, channels=self.config.channels)
        self.ctx.sink = sink
        self.ctx.machine = DrumMachine(
            self.config,
            instruments=instruments or default_instruments(),
            sink=sink,
            bpm=bpm,
            num_bars=bars,
        )
        return self.ctx.machine

    def require_machine(self) -> DrumMachine:
        if self.ctx.machine is None:
            raise RuntimeError("No session. Use new_session or load_loop first.")
        return self.ctx.machine

    def _inst(self, token: str) -> int:
        m = self.require_machine()
        t = token.strip().strip('"')
        if t.lstrip("-").isdigit():
            idx = int(t)
            if not (0 <= idx < len(m.instruments)):
                raise IndexError(f"instrument index out of range: {idx}")
            return idx
        for i, inst in enumerate(m.instruments):
            if inst.name.lower() == t.lower():
                return i
        raise KeyError(f"unknown instrument: {t}")

    def run_command(self, line: str) -> None:
        parts = line.split()
        cmd, *args = parts

        if cmd == "new_session":
            bpm = float(args[0]) if len(args) > 0 else DEFAULT_BPM
            bars = int(args[1]) if len(args) > 1 else DEFAULT_BARS
            self._new_machine(bpm=bpm, bars=bars)
            return

        if cmd == "load_loop":
            spec = load_loop_yaml(self._path(args[0]))
            m = self._new_machine(bpm=spec.bpm, bars=spec.bars, instruments=spec.instruments)
            apply_loop(m, spec)
            return

        m = self.require_machine()

        if cmd == "set_bpm":
            m.set_bpm(float(args[0]))
            return

        if cmd == "set_bars":
            m.set_bars(int(args[0]))
            return

        if cmd == "set_master_volume":
            m.set_master_volume(float(args[0]))
            return

        if cmd == "toggle_step":
            m.toggle_step(self._inst(args[0]), int(args[1]))
            return

        if cmd == "pattern":
            # pattern <inst> x...x...  (rest of line, spaces allowed)
            idx = self._inst(args[0])
            cells = parse_cells(" ".join(args[1:]))
            for step, on in enumerate(cells):
                if m.grid.is_active(idx, step) != on:
                    m.toggle_step(idx, step)
            return

        if cmd == "set_volume":
            m.set_volume(self._inst(args[0]), float(args[1]))
            return

        if cmd == "set_pitch":
            m.set_pitch(self._inst(args[0]), int(args[1]))
            return

        if cmd == "set_start":
            m.set_start_time(self._inst(args[0]), float(args[1]))
            return

        if cmd == "set_end":
            m.set_end_time(self._inst(args[0]), float(args[1]))
            return

        if cmd == "mute":
            idx = self._inst(args[0])
            if len(args) > 1:
                m.set_mute(idx, _flag(args[1]))
            else:
                m.toggle_mute(idx)
            return

        if cmd == "load_sample":
            path = self._path(" ".join(args[1:]).strip('"'))
            if not m.load_sample(self._inst(args[0]), path):
                raise RuntimeError(f"could not load audio file: {path}")
            return

        if cmd == "play":
            m.start(drive=False)
            return

        if cmd == "stop":
            m.stop()
            return

        if cmd == "tick":
            n = int(args[0]) if args else 1
            if n < 0:
                raise ValueError("tick count must be >= 0")
            for _ in range(n):
                m.tick()
            return

        if cmd == "record_automation":
            want = _flag(args[0]) if args else not m.recording_automation
            if want != m.recording_automation:
                m.toggle_automation_recording()
            return

        if cmd == "clear_automation":
            m.clear_automation(confirm=True)
            return

        if cmd == "export_wav":
            out_dir = self._path(args[0] if args else self.config.export_dir)
            res = m.export_loop(out_dir)
            if not res.ok:
                raise RuntimeError(res.error or "export busy")
            self.ctx.last_export = res.path
            return

        if cmd == "export_midi":
            out = self._path(args[0])
            export_midi(m.grid, m.instruments, m.bpm, m.num_bars, m.automation, out)
            return

        if cmd == "dump_state":
            out = self._path(args[0])
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(json.dumps(self.state(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
            return

        raise ValueError(f"Unknown command: {cmd}")

    def state(self) -> dict:
        m = self.require_machine()
        rows = []
        for i in range(m.grid.num_instruments):
            row = m.grid.row(i)[: m.total_steps]
            rows.append("".join("x" if on else "." for on in row))
        return {
            "bpm": m.bpm,
            "bars": m.num_bars,
            "master_volume": m.master_volume,
            "current_step": m.current_step,
            "playing": m.is_playing,
            "recording_automation": m.recording_automation,
            "instruments": [inst.to_dict() for inst in m.instruments],
            "pattern": rows,
            "automation": m.automation.to_dict(),
            "voices_triggered": len(self.ctx.sink.events) if self.ctx.sink is not None else 0,
            "last_export": self.ctx.last_export,
        }

    def close(self) -> None:
        if self.ctx.machine is not None:
            self.ctx.machine.close()
            self.ctx.machine = None


def read_lines_from_path_or_stdin(path: str | None) -> list[str]:
    if path and path != "-":
        return Path(path).read_text(encoding="utf-8").splitlines()
    return sys.stdin.read().splitlines()
