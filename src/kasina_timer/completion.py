"""Single-fire completion detection.

A CompletionDetector turns clock transitions into at most one
CompletionEvent per arm() cycle. Once ``fired`` is set, every further
observation returns None until the next arm().
"""

from __future__ import annotations

import logging

from .errors import InvalidStateError
from .models import ClockState, CompletionCause, CompletionEvent, TimerConfig

logger = logging.getLogger(__name__)


class CompletionDetector:
    def __init__(self):
        self._config: TimerConfig | None = None
        self._fired: bool = False

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def armed(self) -> bool:
        return self._config is not None

    def arm(self, config: TimerConfig) -> None:
        self._config = config
        self._fired = False

    def reset(self) -> None:
        self._config = None
        self._fired = False

    def observe_tick(self, state: ClockState) -> CompletionEvent | None:
        """Call after every Clock.tick(). Fires on bounded expiry."""
        config = self._require_armed()
        if self._fired:
            return None
        if config.bounded and state.remaining_seconds == 0:
            return self._fire(CompletionCause.NATURAL_EXPIRY, state)
        return None

    def observe_stop(self, state: ClockState) -> CompletionEvent | None:
        """Manual stop. A stop with nothing elapsed is a cancel and fires nothing."""
        self._require_armed()
        if self._fired:
            return None
        if state.elapsed_seconds <= 0:
            return None
        return self._fire(CompletionCause.MANUAL_STOP, state)

    def observe_teardown(self, state: ClockState) -> CompletionEvent | None:
        """Owner is going away. ``state`` must be captured before stopping the clock."""
        if self._config is None or self._fired or not state.running:
            return None
        return self._fire(CompletionCause.ABANDONED, state)

    # ---- Internal ----

    def _require_armed(self) -> TimerConfig:
        if self._config is None:
            raise InvalidStateError("CompletionDetector used before arm()")
        return self._config

    def _fire(self, cause: CompletionCause, state: ClockState) -> CompletionEvent:
        self._fired = True
        event = CompletionEvent(
            cause=cause,
            elapsed_seconds=state.elapsed_seconds,
            target_seconds=self._config.target_seconds,
        )
        logger.info(f"Session ended: {cause.value} at {state.elapsed_seconds}s")
        return event
