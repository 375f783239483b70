"""Clock: pure tick counter, no I/O.

One tick is one second. The caller drives tick() from a single periodic
source; the clock never decides what "done" means beyond stopping itself
when a bounded countdown reaches zero.
"""

from __future__ import annotations

from .errors import InvalidStateError
from .models import ClockState, TimerConfig


class Clock:
    """Elapsed/remaining counter for one armed session."""

    def __init__(self):
        self._config: TimerConfig | None = None
        self._elapsed_seconds: int = 0
        self._remaining_seconds: int | None = None
        self._running: bool = False

    # ---- Read-only properties ----

    @property
    def armed(self) -> bool:
        return self._config is not None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def elapsed_seconds(self) -> int:
        return self._elapsed_seconds

    @property
    def remaining_seconds(self) -> int | None:
        return self._remaining_seconds

    @property
    def state(self) -> ClockState:
        return ClockState(
            elapsed_seconds=self._elapsed_seconds,
            remaining_seconds=self._remaining_seconds,
            running=self._running,
        )

    # ---- Core methods ----

    def arm(self, config: TimerConfig) -> None:
        """Zero the counters for a new session. Does not start running."""
        self._config = config
        self._elapsed_seconds = 0
        self._remaining_seconds = config.target_seconds
        self._running = False

    def start(self) -> None:
        if self._config is None:
            raise InvalidStateError("Clock.start() called before arm()")
        if self._running:
            return
        if self._remaining_seconds == 0:
            raise InvalidStateError("Clock already expired; arm() again before start()")
        self._running = True

    def tick(self) -> ClockState:
        """Advance one second. Expiry of a bounded countdown stops the clock."""
        if not self._running:
            raise InvalidStateError("Clock.tick() called while not running")

        self._elapsed_seconds += 1
        if self._remaining_seconds is not None:
            self._remaining_seconds = max(0, self._remaining_seconds - 1)
            if self._remaining_seconds == 0:
                self._running = False
        return self.state

    def stop(self) -> ClockState:
        """Manual stop. Leaves elapsed/remaining untouched."""
        self._running = False
        return self.state

    def reset(self) -> None:
        self._config = None
        self._elapsed_seconds = 0
        self._remaining_seconds = None
        self._running = False
