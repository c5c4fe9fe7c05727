from __future__ import annotations

"""Fixed grid geometry and the value ranges the command surface accepts.

Commands enforce these ranges. The resolver and the voice trigger trust whatever
values reach them.
"""

STEPS_PER_BAR = 16
STEPS_PER_BEAT = 4  # 16ths
BAR_OPTIONS: tuple[int, ...] = (1, 2, 4, 8)
DEFAULT_BARS = 4
MAX_STEPS = STEPS_PER_BAR * max(BAR_OPTIONS)

DEFAULT_BPM = 120
BPM_MIN = 60
BPM_MAX = 240

PITCH_MIN = -12
PITCH_MAX = 12

NUM_INSTRUMENTS = 5
