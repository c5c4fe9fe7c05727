from __future__ import annotations

import logging
from typing import Any, Iterator

from beatgrid.model.types import AUTOMATABLE_FIELDS, AutomationOverride

logger = logging.getLogger(__name__)


class AutomationTrack:
    """Sparse step -> instrument -> override mapping.

    Writes are field-level merges: recording one field never drops another field
    already captured for the same (step, instrument), or anything elsewhere.
    Empty overrides are never stored.
    """

    def __init__(self) -> None:
        self._steps: dict[int, dict[int, AutomationOverride]] = {}

    def __len__(self) -> int:
        return sum(len(v) for v in self._steps.values())

    def __bool__(self) -> bool:
        return bool(self._steps)

    def record(self, step: int, instrument_index: int, field: str, value: Any) -> AutomationOverride:
        if step < 0:
            raise ValueError(f"cannot record automation at step {step}")
        if instrument_index < 0:
            raise IndexError(f"instrument index out of range: {instrument_index}")
        if field not in AUTOMATABLE_FIELDS:
            raise ValueError(f"not an automatable field: {field}")

        by_inst = self._steps.setdefault(step, {})
        current = by_inst.get(instrument_index, AutomationOverride())
        updated = current.with_field(field, value)
        if updated.is_empty:
            by_inst.pop(instrument_index, None)
            if not by_inst:
                self._steps.pop(step, None)
        else:
            by_inst[instrument_index] = updated
        logger.debug("automation step=%d inst=%d %s=%r", step, instrument_index, field, value)
        return updated

    def put(self, step: int, instrument_index: int, override: AutomationOverride) -> None:
        """Merge a whole override in (used when loading loop files)."""
        for name, value in override.present_fields().items():
            self.record(step, instrument_index, name, value)

    def get(self, step: int, instrument_index: int) -> AutomationOverride | None:
        return self._steps.get(step, {}).get(instrument_index)

    def for_step(self, step: int) -> dict[int, AutomationOverride]:
        return dict(self._steps.get(step, {}))

    def clear(self) -> None:
        n = len(self)
        self._steps = {}
        logger.info("automation cleared (%d entries)", n)

    def items(self) -> Iterator[tuple[int, int, AutomationOverride]]:
        for step in sorted(self._steps):
            for inst in sorted(self._steps[step]):
                yield step, inst, self._steps[step][inst]

    def copy(self) -> "AutomationTrack":
        # Overrides are frozen, so copying the two dict levels is enough.
        t = AutomationTrack()
        t._steps = {s: dict(v) for s, v in self._steps.items()}
        return t

    def to_dict(self) -> dict[str, dict[str, dict[str, Any]]]:
        return {
            str(step): {str(inst): o.to_dict() for inst, o in sorted(by_inst.items())}
            for step, by_inst in sorted(self._steps.items())
        }

    @staticmethod
    def from_dict(d: dict[Any, Any]) -> "AutomationTrack":
        t = AutomationTrack()
        for step, by_inst in (d or {}).items():
            for inst, fields in (by_inst or {}).items():
                t.put(int(step), int(inst), AutomationOverride.from_dict(dict(fields or {})))
        return t
