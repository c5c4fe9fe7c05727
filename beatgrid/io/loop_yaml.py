from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from beatgrid.engine.automation import AutomationTrack
from beatgrid.model.types import AutomationOverride, Instrument, default_instruments
from beatgrid.util.limits import DEFAULT_BARS, DEFAULT_BPM, MAX_STEPS

if TYPE_CHECKING:  # pragma: no cover
    from beatgrid.engine.machine import DrumMachine
    from beatgrid.util.config import AppConfig

logger = logging.getLogger(__name__)

_ON = {"x", "X", "1", "o", "O"}

# loop-file keys -> model field names
_INSTRUMENT_KEYS = {
    "sample": "sample_ref",
    "volume": "volume",
    "pitch": "pitch",
    "start": "start_time",
    "end": "end_time",
    "muted": "is_muted",
}
_AUTOMATION_KEYS = {"volume": "volume", "pitch": "pitch", "start": "start_time", "end": "end_time"}


@dataclass
class LoopSpec:
    name: str
    bpm: int = DEFAULT_BPM
    bars: int = DEFAULT_BARS
    instruments: list[Instrument] = field(default_factory=default_instruments)
    rows: dict[int, list[bool]] = field(default_factory=dict)
    automation: AutomationTrack = field(default_factory=AutomationTrack)
    base_dir: Path | None = None


def parse_cells(cells: str | list[Any]) -> list[bool]:
    """Parse "x...x..." strings (spaces and bar lines ignored) or lists of truthy values."""
    if isinstance(cells, str):
        return [c in _ON for c in cells if c not in " |"]
    return [bool(v) for v in cells]


def _instrument_index(instruments: list[Instrument], key: Any) -> int:
    if isinstance(key, int) or (isinstance(key, str) and key.strip().isdigit()):
        idx = int(key)
        if not (0 <= idx < len(instruments)):
            raise ValueError(f"instrument index out of range: {key}")
        return idx
    name = str(key).strip().lower()
    for i, inst in enumerate(instruments):
        if inst.name.lower() == name:
            return i
    raise ValueError(f"unknown instrument: {key}")


def _instrument_from_yaml(d: Any, fallback_name: str) -> Instrument:
    if isinstance(d, str):
        return Instrument(name=d)
    if not isinstance(d, dict):
        raise ValueError("instrument entries must be mappings or names")
    kwargs: dict[str, Any] = {"name": str(d.get("name") or fallback_name)}
    for key, attr in _INSTRUMENT_KEYS.items():
        if d.get(key) is not None:
            kwargs[attr] = d[key]
    return Instrument(**kwargs)


def loop_from_dict(data: dict[str, Any], *, name: str = "loop", base_dir: Path | None = None) -> LoopSpec:
    spec = LoopSpec(
        name=str(data.get("name") or name),
        bpm=int(data.get("bpm", DEFAULT_BPM)),
        bars=int(data.get("bars", DEFAULT_BARS)),
        base_dir=base_dir,
    )

    raw_insts = data.get("instruments")
    if raw_insts is not None:
        if not isinstance(raw_insts, list) or not raw_insts:
            raise ValueError("instruments must be a non-empty list")
        spec.instruments = [_instrument_from_yaml(d, f"Slot {i + 1}") for i, d in enumerate(raw_insts)]

    for key, cells in (data.get("pattern") or {}).items():
        idx = _instrument_index(spec.instruments, key)
        row = parse_cells(cells)
        if len(row) > MAX_STEPS:
            raise ValueError(f"pattern for {key} longer than {MAX_STEPS} steps")
        spec.rows[idx] = row

    for step, by_inst in (data.get("automation") or {}).items():
        if not isinstance(by_inst, dict):
            raise ValueError(f"automation for step {step} must be a mapping")
        for key, fields in by_inst.items():
            idx = _instrument_index(spec.instruments, key)
            override = AutomationOverride()
            for fk, fv in (fields or {}).items():
                attr = _AUTOMATION_KEYS.get(str(fk), str(fk))
                override = override.with_field(attr, fv)
            spec.automation.put(int(step), idx, override)

    return spec


def load_loop_yaml(path: str | Path) -> LoopSpec:
    p = Path(path).expanduser()
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("loop YAML must be a mapping/object")
    return loop_from_dict(data, name=p.stem, base_dir=p.resolve().parent)


def apply_loop(machine: "DrumMachine", spec: LoopSpec) -> int:
    """Load a LoopSpec into a machine whose slot count matches; returns samples loaded."""
    if len(spec.instruments) != len(machine.instruments):
        raise ValueError(
            f"loop has {len(spec.instruments)} instruments, machine has {len(machine.instruments)}"
        )
    machine.set_bpm(spec.bpm)
    machine.set_bars(spec.bars)
    machine.replace_session(spec.instruments, spec.rows, spec.automation)
    loaded = machine.load_samples(base_dir=spec.base_dir)
    logger.info("loop '%s': %d instruments, %d samples loaded", spec.name, len(spec.instruments), loaded)
    return loaded


def machine_from_loop(spec: LoopSpec, config: "AppConfig | None" = None, **kwargs: Any) -> "DrumMachine":
    from beatgrid.engine.machine import DrumMachine

    machine = DrumMachine(config, instruments=spec.instruments, bpm=spec.bpm, num_bars=spec.bars, **kwargs)
    apply_loop(machine, spec)
    return machine
