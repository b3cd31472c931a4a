"""
Execution Window Controller

A run gets a wall-clock budget. Work is done in units (one API page, one
batch write) and the budget is checked only between units, never inside one.
"""
from enum import Enum
from typing import Callable, Optional, Tuple
import time

from shipsync.utils.logger import log


class RunMode(str, Enum):
    NORMAL = "normal"
    BACKFILL = "backfill"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"


TERMINAL_STATES = {RunState.COMPLETED, RunState.PAUSED, RunState.FAILED}

_TRANSITIONS = {
    RunState.IDLE: {RunState.RUNNING},
    RunState.RUNNING: TERMINAL_STATES,
}


class InvalidTransition(RuntimeError):
    pass


class Deadline:
    """
    Wall-clock budget for one run.

    warning_window is (start, end) in seconds remaining: check() logs a
    single warning once remaining time drops below start. should_yield()
    turns true once remaining time drops to end, leaving that much margin
    for the unit already in flight.
    """

    def __init__(
        self,
        max_seconds: float,
        warning_window: Tuple[float, float] = (30, 20),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_seconds = max_seconds
        self.warning_start, self.warning_end = max(warning_window), min(warning_window)
        self._clock = clock
        self._started = clock()
        self.warned = False

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float:
        return max(self.max_seconds - self.elapsed(), 0.0)

    def check(self) -> None:
        """Call at unit boundaries; warns once when the budget is nearly spent."""
        remaining = self.remaining()
        if not self.warned and remaining <= self.warning_start:
            self.warned = True
            log.warning(
                f"Approaching execution limit: {remaining:.0f}s remaining of {self.max_seconds:.0f}s, "
                f"finishing current unit"
            )

    def should_yield(self) -> bool:
        self.check()
        return self.remaining() <= self.warning_end


class ExecutionWindow:
    """State machine for one run: IDLE -> RUNNING -> COMPLETED | PAUSED | FAILED."""

    def __init__(self, mode: RunMode, deadline: Deadline):
        self.mode = RunMode(mode)
        self.deadline = deadline
        self.state = RunState.IDLE
        self.reason: Optional[str] = None

    def _move(self, target: RunState) -> None:
        if target not in _TRANSITIONS.get(self.state, set()):
            raise InvalidTransition(f"Cannot move {self.mode.value} run from {self.state.value} to {target.value}")
        log.debug(f"{self.mode.value} run: {self.state.value} -> {target.value}")
        self.state = target

    def start(self) -> None:
        self._move(RunState.RUNNING)

    def complete(self) -> None:
        self._move(RunState.COMPLETED)

    def pause(self, reason: str = "budget exhausted") -> None:
        self.reason = reason
        self._move(RunState.PAUSED)

    def fail(self, reason: str) -> None:
        self.reason = reason
        self._move(RunState.FAILED)

    @property
    def running(self) -> bool:
        return self.state == RunState.RUNNING

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def should_yield(self) -> bool:
        return self.deadline.should_yield()
