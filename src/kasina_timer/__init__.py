"""Meditation session timer with single-fire completion and idempotent saving."""

from .clock import Clock
from .completion import CompletionDetector
from .config import Settings
from .controller import CompletionOutcome, ControllerState, TimerCallbacks, TimerController
from .errors import (
    InvalidStateError,
    KasinaTimerError,
    PersistError,
    PersistPermanentError,
    PersistTransientError,
)
from .models import (
    ClockState,
    CompletionCause,
    CompletionEvent,
    PersistResult,
    ResolvedSession,
    SaveAttempt,
    SaveStatus,
    SessionWritePayload,
    TimerConfig,
)
from .persister import SessionPersister
from .resolver import resolve
from .store import FallbackStore

__all__ = [
    "Clock",
    "ClockState",
    "CompletionCause",
    "CompletionDetector",
    "CompletionEvent",
    "CompletionOutcome",
    "ControllerState",
    "FallbackStore",
    "InvalidStateError",
    "KasinaTimerError",
    "PersistError",
    "PersistPermanentError",
    "PersistResult",
    "PersistTransientError",
    "ResolvedSession",
    "SaveAttempt",
    "SaveStatus",
    "SessionPersister",
    "SessionWritePayload",
    "Settings",
    "TimerCallbacks",
    "TimerConfig",
    "TimerController",
    "resolve",
]
