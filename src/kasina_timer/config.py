"""Runtime settings, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_API_URL = "http://localhost:5000"
DEFAULT_DB_PATH = Path.home() / ".kasina" / "sessions.db"
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_RETRY_BACKOFF = 1.0
DEFAULT_CHECKPOINT_INTERVAL = 30  # ticks
DEFAULT_CHECKPOINT_MAX_AGE = 120  # seconds


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass
class Settings:
    api_url: str = DEFAULT_API_URL
    api_token: str | None = None
    db_path: Path = field(default_factory=lambda: DEFAULT_DB_PATH)
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL
    checkpoint_max_age: int = DEFAULT_CHECKPOINT_MAX_AGE

    @classmethod
    def from_env(cls) -> Settings:
        db = os.environ.get("KASINA_TIMER_DB")
        settings = cls(
            api_url=os.environ.get("KASINA_TIMER_API_URL", DEFAULT_API_URL),
            api_token=os.environ.get("KASINA_TIMER_API_TOKEN") or None,
            db_path=Path(db).expanduser() if db else DEFAULT_DB_PATH,
            request_timeout=_env_float("KASINA_TIMER_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            retry_backoff=_env_float("KASINA_TIMER_RETRY_BACKOFF", DEFAULT_RETRY_BACKOFF),
            checkpoint_interval=_env_int("KASINA_TIMER_CHECKPOINT_INTERVAL", DEFAULT_CHECKPOINT_INTERVAL),
            checkpoint_max_age=_env_int("KASINA_TIMER_CHECKPOINT_MAX_AGE", DEFAULT_CHECKPOINT_MAX_AGE),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if not self.api_url.startswith(("http://", "https://")):
            raise ValueError(f"api_url must be http(s), got {self.api_url!r}")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.retry_backoff < 0:
            raise ValueError("retry_backoff must be >= 0")
        if self.checkpoint_interval <= 0:
            raise ValueError("checkpoint_interval must be positive")
        if self.checkpoint_max_age <= 0:
            raise ValueError("checkpoint_max_age must be positive")
