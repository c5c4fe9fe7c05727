from __future__ import annotations

from dataclasses import dataclass

from beatgrid.model.types import AutomationOverride, Instrument


@dataclass(frozen=True)
class EffectiveParameters:
    """An instrument's parameters after applying the override for one step."""

    name: str
    sample_ref: str | None
    is_muted: bool
    volume: float
    pitch: int
    start_time: float
    end_time: float

    @property
    def playback_rate(self) -> float:
        return 2.0 ** (self.pitch / 12.0)


def resolve(base: Instrument, override: AutomationOverride | None = None) -> EffectiveParameters:
    """Merge ``override`` over ``base`` without touching either."""
    volume = base.volume
    pitch = base.pitch
    start_time = base.start_time
    end_time = base.end_time
    if override is not None:
        if override.volume is not None:
            volume = float(override.volume)
        if override.pitch is not None:
            pitch = int(override.pitch)
        if override.start_time is not None:
            start_time = float(override.start_time)
        if override.end_time is not None:
            end_time = float(override.end_time)
    return EffectiveParameters(
        name=base.name,
        sample_ref=base.sample_ref,
        is_muted=base.is_muted,
        volume=volume,
        pitch=pitch,
        start_time=start_time,
        end_time=end_time,
    )
