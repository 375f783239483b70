"""Data model for timer sessions, completion events and save attempts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_MINIMUM_RECORDABLE_SECONDS = 31
DEFAULT_ROUNDING_THRESHOLD_SECONDS = 31


@dataclass(frozen=True)
class TimerConfig:
    """Per-session setup. ``target_seconds=None`` means unbounded count-up."""

    target_seconds: int | None
    minimum_recordable_seconds: int = DEFAULT_MINIMUM_RECORDABLE_SECONDS
    rounding_threshold_seconds: int = DEFAULT_ROUNDING_THRESHOLD_SECONDS

    def __post_init__(self):
        if self.target_seconds is not None and self.target_seconds <= 0:
            raise ValueError(f"target_seconds must be positive or None, got {self.target_seconds}")
        if self.minimum_recordable_seconds < 0:
            raise ValueError("minimum_recordable_seconds must be >= 0")
        if not 0 <= self.rounding_threshold_seconds < 60:
            raise ValueError("rounding_threshold_seconds must be in [0, 60)")

    @classmethod
    def countdown(cls, seconds: int, **kwargs) -> TimerConfig:
        return cls(target_seconds=seconds, **kwargs)

    @classmethod
    def count_up(cls, **kwargs) -> TimerConfig:
        return cls(target_seconds=None, **kwargs)

    @property
    def bounded(self) -> bool:
        return self.target_seconds is not None


@dataclass(frozen=True)
class ClockState:
    elapsed_seconds: int = 0
    remaining_seconds: int | None = None
    running: bool = False


class CompletionCause(str, Enum):
    NATURAL_EXPIRY = "natural_expiry"
    MANUAL_STOP = "manual_stop"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class CompletionEvent:
    cause: CompletionCause
    elapsed_seconds: int
    target_seconds: int | None


@dataclass(frozen=True)
class ResolvedSession:
    """A session ready to persist. ``duration_seconds`` is already rounded."""

    duration_seconds: int
    kasina_type: str
    started_at: datetime

    @property
    def session_key(self) -> str:
        """Idempotency key: one logical session attempt."""
        return f"{self.started_at.isoformat()}_{self.kasina_type}"


class SaveStatus(str, Enum):
    PENDING = "pending"
    SAVED = "saved"
    FAILED = "failed"


@dataclass
class SaveAttempt:
    session_key: str
    status: SaveStatus = SaveStatus.PENDING
    attempts: int = 0


@dataclass(frozen=True)
class PersistResult:
    session_key: str
    status: SaveStatus
    attempts: int = 0
    error: str | None = None
    duplicate: bool = False

    @property
    def success(self) -> bool:
        return self.status == SaveStatus.SAVED


class SessionWritePayload(BaseModel):
    """Body of the session write request (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    kasina_type: str = Field(alias="kasinaType", min_length=1)
    kasina_name: str = Field(alias="kasinaName")
    duration_seconds: int = Field(alias="durationSeconds", gt=0)
    started_at: str = Field(alias="startedAt")
    session_key: str = Field(alias="sessionKey", min_length=1)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)
