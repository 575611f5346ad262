"""Scheduled bot tasks.

A task exposes ``name``, ``priority`` (lower runs first), ``can_run(cancel)``
and ``execute(cancel)``; the Scheduler drives them while the bot is in
Running mode.

Submodules:
    _helpers — retry wrapper with per-attempt deadlines
    gather   — resource gathering state machine
"""

from tasks._helpers import run_step
from tasks.gather import GatherTask, march_control_points, clear_selection_region
