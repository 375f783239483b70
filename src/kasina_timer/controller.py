"""TimerController: the public timer API the UI talks to.

States: IDLE -> ARMED -> RUNNING -> COMPLETING -> IDLE.

The controller owns one Clock and one CompletionDetector. Every path
that ends a session (natural expiry on tick, manual stop, teardown) goes
through _complete(), which resolves the duration, persists it, and
reports back through the UI callbacks. COMPLETING lasts only while the
persister is awaiting I/O.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from .clock import Clock
from .completion import CompletionDetector
from .config import Settings
from .errors import InvalidStateError
from .models import (
    CompletionCause,
    CompletionEvent,
    PersistResult,
    ResolvedSession,
    TimerConfig,
)
from .persister import SessionPersister
from .resolver import normalize_kasina_type, resolve
from .ticker import TickSource

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    RUNNING = "running"
    COMPLETING = "completing"


@dataclass
class TimerCallbacks:
    """UI hooks. All optional; exceptions raised by them are logged and ignored."""

    on_tick: Callable[[int, int | None], None] | None = None
    on_completing: Callable[[CompletionCause], None] | None = None
    on_persisted: Callable[[int, bool], None] | None = None


@dataclass(frozen=True)
class CompletionOutcome:
    event: CompletionEvent
    duration_seconds: int
    result: PersistResult | None = None  # None when too short to save

    @property
    def success(self) -> bool:
        return self.result is None or self.result.success


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimerController:
    def __init__(
        self,
        persister: SessionPersister,
        callbacks: TimerCallbacks | None = None,
        tick_source: TickSource | None = None,
        settings: Settings | None = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.persister = persister
        self.callbacks = callbacks or TimerCallbacks()
        self.tick_source = tick_source
        self.settings = settings or persister.settings
        self._now = now

        self._clock = Clock()
        self._detector = CompletionDetector()
        self._state = ControllerState.IDLE
        self._config: TimerConfig | None = None
        self._kasina_type: str | None = None
        self._started_at: datetime | None = None
        self.last_outcome: CompletionOutcome | None = None
        # Bumped by reset() so an in-flight completion does not touch a newer cycle
        self._cycle = 0

    # ---- Read-only properties ----

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def config(self) -> TimerConfig | None:
        return self._config

    @property
    def kasina_type(self) -> str | None:
        return self._kasina_type

    @property
    def elapsed_seconds(self) -> int:
        return self._clock.elapsed_seconds

    @property
    def remaining_seconds(self) -> int | None:
        return self._clock.remaining_seconds

    @property
    def fired(self) -> bool:
        return self._detector.fired

    @property
    def session_key(self) -> str | None:
        if self._started_at is None or self._kasina_type is None:
            return None
        return f"{self._started_at.isoformat()}_{self._kasina_type}"

    # ---- Lifecycle ----

    def configure(self, config: TimerConfig, kasina_type: str) -> None:
        if self._state != ControllerState.IDLE:
            raise InvalidStateError(f"configure() requires idle, controller is {self._state.value}")
        kasina = normalize_kasina_type(kasina_type)
        if not kasina:
            raise ValueError("kasina_type must not be empty")
        self._config = config
        self._kasina_type = kasina
        self._state = ControllerState.ARMED
        target = f"{config.target_seconds}s" if config.bounded else "count-up"
        logger.info(f"Armed {kasina} session ({target})")

    async def start(self) -> None:
        if self._state != ControllerState.ARMED:
            raise InvalidStateError(f"start() requires armed, controller is {self._state.value}")

        self._clock.arm(self._config)
        self._detector.arm(self._config)
        self._clock.start()
        self._started_at = self._now()
        self._state = ControllerState.RUNNING
        logger.info(f"Started {self._kasina_type} session {self.session_key}")

        await self._checkpoint()
        if self.tick_source is not None:
            self.tick_source.attach(self._scheduled_tick)

    async def tick(self) -> CompletionOutcome | None:
        """Advance one second. Returns the outcome if this tick ended the session."""
        if self._state != ControllerState.RUNNING:
            raise InvalidStateError(f"tick() requires running, controller is {self._state.value}")

        clock_state = self._clock.tick()
        self._notify(self.callbacks.on_tick, clock_state.elapsed_seconds, clock_state.remaining_seconds)

        event = self._detector.observe_tick(clock_state)
        if event is not None:
            return await self._complete(event)

        if clock_state.elapsed_seconds % self.settings.checkpoint_interval == 0:
            await self._checkpoint()
        return None

    async def stop(self) -> CompletionOutcome | None:
        """Manual stop. With nothing elapsed this is a cancel and saves nothing."""
        if self._state == ControllerState.RUNNING:
            clock_state = self._clock.stop()
            event = self._detector.observe_stop(clock_state)
            if event is None:
                logger.info(f"Cancelled {self._kasina_type} session before first tick")
                await self.reset()
                return None
            return await self._complete(event)

        if self._state == ControllerState.ARMED:
            await self.reset()
            return None

        logger.debug(f"stop() ignored while {self._state.value}")
        return None

    async def teardown(self) -> CompletionOutcome | None:
        """Owner is going away. A running, unfired session is recorded as abandoned."""
        if self.tick_source is not None:
            self.tick_source.detach()

        if self._state == ControllerState.RUNNING:
            clock_state = self._clock.state
            self._clock.stop()
            event = self._detector.observe_teardown(clock_state)
            if event is not None:
                return await self._complete(event)

        if self._state == ControllerState.ARMED:
            await self.reset()
        return None

    async def reset(self) -> None:
        """Back to IDLE from any state. An in-flight save keeps running."""
        discarded = self.session_key if self._state == ControllerState.RUNNING else None
        self._cycle += 1
        self._to_idle()
        if discarded is not None:
            await self.persister.clear_checkpoint(discarded)

    # ---- Internal ----

    async def _scheduled_tick(self) -> None:
        if self._state != ControllerState.RUNNING:
            if self.tick_source is not None:
                self.tick_source.detach()
            return
        await self.tick()

    async def _complete(self, event: CompletionEvent) -> CompletionOutcome:
        cycle = self._cycle
        config = self._config
        kasina = self._kasina_type
        started_at = self._started_at
        session_key = self.session_key

        self._state = ControllerState.COMPLETING
        if self.tick_source is not None:
            self.tick_source.detach()
        self._notify(self.callbacks.on_completing, event.cause)

        try:
            duration = resolve(event, config)
            result = None
            if duration == 0:
                logger.info(f"Session too short ({event.elapsed_seconds}s), not saving")
            else:
                result = await self.persister.persist(ResolvedSession(
                    duration_seconds=duration,
                    kasina_type=kasina,
                    started_at=started_at,
                ))
            await self.persister.clear_checkpoint(session_key)

            outcome = CompletionOutcome(event=event, duration_seconds=duration, result=result)
            self.last_outcome = outcome
            self._notify(self.callbacks.on_persisted, duration, outcome.success)
            return outcome
        finally:
            # Never left in COMPLETING, even if the save pipeline raised
            if self._cycle == cycle:
                self._to_idle()

    async def _checkpoint(self) -> None:
        await self.persister.checkpoint(
            self.session_key,
            self._kasina_type,
            self._started_at,
            self._clock.state,
            self._config,
        )

    def _to_idle(self) -> None:
        if self.tick_source is not None:
            self.tick_source.detach()
        self._clock.reset()
        self._detector.reset()
        self._config = None
        self._kasina_type = None
        self._started_at = None
        self._state = ControllerState.IDLE

    def _notify(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"UI callback {getattr(callback, '__name__', callback)!r} failed")
