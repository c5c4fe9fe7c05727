from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from beatgrid.util.limits import MAX_STEPS, NUM_INSTRUMENTS

# Parameters an automation override may replace. Mute and the sample reference
# always come from the base instrument.
AUTOMATABLE_FIELDS: tuple[str, ...] = ("volume", "pitch", "start_time", "end_time")

DEFAULT_INSTRUMENT_NAMES: tuple[str, ...] = ("Kick", "Snare", "Closed Hat", "Clap", "High Tom")


def _unit(name: str, value: float) -> float:
    v = float(value)
    if not (0.0 <= v <= 1.0):
        raise ValueError(f"{name} out of range [0, 1]: {value}")
    return v


@dataclass
class Instrument:
    """One sampler slot: a sample reference plus its playback parameters.

    start_time/end_time are trim points expressed as fractions of the sample's
    duration. end_time < start_time is allowed and plays nothing.
    """

    name: str
    sample_ref: str | None = None
    volume: float = 1.0
    is_muted: bool = False
    start_time: float = 0.0
    end_time: float = 1.0
    pitch: int = 0  # semitones

    def __post_init__(self) -> None:
        self.volume = _unit("volume", self.volume)
        self.start_time = _unit("start_time", self.start_time)
        self.end_time = _unit("end_time", self.end_time)
        self.pitch = int(self.pitch)
        self.is_muted = bool(self.is_muted)

    def copy(self) -> "Instrument":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "sample_ref": self.sample_ref,
            "volume": self.volume,
            "is_muted": self.is_muted,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "pitch": self.pitch,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "Instrument":
        ref = d.get("sample_ref", None)
        return Instrument(
            name=str(d.get("name", "")),
            sample_ref=(str(ref) if ref else None),
            volume=float(d.get("volume", 1.0)),
            is_muted=bool(d.get("is_muted", False)),
            start_time=float(d.get("start_time", 0.0)),
            end_time=float(d.get("end_time", 1.0)),
            pitch=int(d.get("pitch", 0)),
        )


def default_instruments() -> list[Instrument]:
    return [Instrument(name=n) for n in DEFAULT_INSTRUMENT_NAMES[:NUM_INSTRUMENTS]]


@dataclass(frozen=True)
class AutomationOverride:
    """Partial parameter record for one (step, instrument) pair.

    ``None`` means the field is absent and the base instrument value applies.
    """

    volume: float | None = None
    pitch: int | None = None
    start_time: float | None = None
    end_time: float | None = None

    @property
    def is_empty(self) -> bool:
        return not self.present_fields()

    def present_fields(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name in AUTOMATABLE_FIELDS:
            v = getattr(self, name)
            if v is not None:
                out[name] = v
        return out

    def with_field(self, name: str, value: Any) -> "AutomationOverride":
        if name not in AUTOMATABLE_FIELDS:
            raise ValueError(f"not an automatable field: {name}")
        if value is not None:
            value = int(value) if name == "pitch" else float(value)
        return replace(self, **{name: value})

    def merged(self, other: "AutomationOverride | None") -> "AutomationOverride":
        """Return a new override where fields present in ``other`` win."""
        if other is None:
            return self
        return replace(self, **other.present_fields())

    def to_dict(self) -> dict[str, Any]:
        return self.present_fields()

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "AutomationOverride":
        unknown = set(d) - set(AUTOMATABLE_FIELDS)
        if unknown:
            raise ValueError(f"unknown automation field(s): {', '.join(sorted(unknown))}")
        o = AutomationOverride()
        for name in AUTOMATABLE_FIELDS:
            if d.get(name) is not None:
                o = o.with_field(name, d[name])
        return o


@dataclass
class PatternGrid:
    """Boolean step matrix indexed [instrument][step].

    The grid is allocated for the longest bar option so shortening the loop
    never discards toggled cells.
    """

    num_instruments: int = NUM_INSTRUMENTS
    max_steps: int = MAX_STEPS
    cells: list[list[bool]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.num_instruments <= 0:
            raise ValueError("num_instruments must be > 0")
        if self.max_steps <= 0:
            raise ValueError("max_steps must be > 0")
        if not self.cells:
            self.cells = [[False] * self.max_steps for _ in range(self.num_instruments)]
        if len(self.cells) != self.num_instruments or any(len(r) != self.max_steps for r in self.cells):
            raise ValueError("grid must be rectangular [num_instruments][max_steps]")

    def _check(self, instrument_index: int, step: int) -> None:
        if not (0 <= instrument_index < self.num_instruments):
            raise IndexError(f"instrument index out of range: {instrument_index}")
        if not (0 <= step < self.max_steps):
            raise IndexError(f"step out of range: {step}")

    def is_active(self, instrument_index: int, step: int) -> bool:
        self._check(instrument_index, step)
        return self.cells[instrument_index][step]

    def set(self, instrument_index: int, step: int, value: bool) -> None:
        self._check(instrument_index, step)
        self.cells[instrument_index][step] = bool(value)

    def toggle(self, instrument_index: int, step: int) -> bool:
        self._check(instrument_index, step)
        v = not self.cells[instrument_index][step]
        self.cells[instrument_index][step] = v
        return v

    def row(self, instrument_index: int) -> list[bool]:
        self._check(instrument_index, 0)
        return list(self.cells[instrument_index])

    def set_row(self, instrument_index: int, values: Iterable[bool]) -> None:
        """Overwrite a row from its first step; steps past ``values`` are cleared."""
        vals = [bool(v) for v in values]
        if len(vals) > self.max_steps:
            raise ValueError(f"row longer than grid: {len(vals)} > {self.max_steps}")
        self._check(instrument_index, 0)
        self.cells[instrument_index] = vals + [False] * (self.max_steps - len(vals))

    def active_instruments(self, step: int) -> list[int]:
        if not (0 <= step < self.max_steps):
            raise IndexError(f"step out of range: {step}")
        return [i for i in range(self.num_instruments) if self.cells[i][step]]

    def copy(self) -> "PatternGrid":
        return PatternGrid(
            num_instruments=self.num_instruments,
            max_steps=self.max_steps,
            cells=[list(r) for r in self.cells],
        )
