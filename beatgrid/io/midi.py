from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:  # pragma: no cover
    import mido

from beatgrid.engine.automation import AutomationTrack
from beatgrid.engine.params import resolve
from beatgrid.model.types import Instrument, PatternGrid
from beatgrid.util.limits import STEPS_PER_BAR, STEPS_PER_BEAT

PPQ = 480
DRUM_CHANNEL = 9  # GM percussion (channel 10)

# GM drum map for the default kit names.
GM_PITCHES: dict[str, int] = {
    "kick": 36,
    "snare": 38,
    "closed hat": 42,
    "clap": 39,
    "high tom": 50,
}


@dataclass
class MidiExportResult:
    path: str
    ticks_per_beat: int
    notes: int


def gm_pitch(instrument: Instrument, index: int) -> int:
    return GM_PITCHES.get(instrument.name.strip().lower(), 37 + index)


def _velocity(volume: float) -> int:
    return max(1, min(127, int(round(volume * 127))))


def _track_events(
    index: int,
    instrument: Instrument,
    grid: PatternGrid,
    automation: AutomationTrack,
    total_steps: int,
) -> list[tuple[int, Any]]:
    import mido  # type: ignore

    step_ticks = PPQ // STEPS_PER_BEAT
    pitch = gm_pitch(instrument, index)
    events: list[tuple[int, Any]] = []
    for step in range(total_steps):
        if not grid.is_active(index, step):
            continue
        params = resolve(instrument, automation.get(step, index))
        if params.volume <= 0:
            # silent in the audio render too
            continue
        start = step * step_ticks
        vel = _velocity(params.volume)
        events.append((start, mido.Message("note_on", note=pitch, velocity=vel, channel=DRUM_CHANNEL)))
        events.append((start + step_ticks, mido.Message("note_off", note=pitch, velocity=0, channel=DRUM_CHANNEL)))

    # stable ordering: by time then note_off before note_on at the same tick
    events.sort(key=lambda x: (x[0], 0 if x[1].type == "note_off" else 1))
    return events


def pattern_to_midifile(
    grid: PatternGrid,
    instruments: Sequence[Instrument],
    bpm: float,
    num_bars: int,
    automation: AutomationTrack,
    *,
    name: str = "beatgrid",
) -> Any:
    import mido  # type: ignore

    mf = mido.MidiFile(ticks_per_beat=PPQ)

    tempo_track = mido.MidiTrack()
    tempo_track.append(mido.MetaMessage("set_tempo", tempo=mido.bpm2tempo(bpm), time=0))
    tempo_track.append(mido.MetaMessage("track_name", name=name, time=0))
    mf.tracks.append(tempo_track)

    total_steps = STEPS_PER_BAR * int(num_bars)
    for idx, inst in enumerate(instruments):
        if inst.is_muted:
            continue
        mt = mido.MidiTrack()
        mt.append(mido.MetaMessage("track_name", name=inst.name, time=0))
        last_t = 0
        for t, msg in _track_events(idx, inst, grid, automation, total_steps):
            msg.time = t - last_t
            last_t = t
            mt.append(msg)
        mf.tracks.append(mt)

    return mf


def export_midi(
    grid: PatternGrid,
    instruments: Sequence[Instrument],
    bpm: float,
    num_bars: int,
    automation: AutomationTrack,
    path: str | Path,
) -> MidiExportResult:
    out = Path(path).expanduser()
    out.parent.mkdir(parents=True, exist_ok=True)
    mf = pattern_to_midifile(grid, instruments, bpm, num_bars, automation)
    mf.save(out)
    notes = sum(1 for tr in mf.tracks for m in tr if getattr(m, "type", None) == "note_on")
    return MidiExportResult(path=str(out), ticks_per_beat=mf.ticks_per_beat, notes=notes)
