"""Exception types for the timer and persistence pipeline."""


class KasinaTimerError(Exception):
    """Base class for all kasina_timer errors."""


class InvalidStateError(KasinaTimerError):
    """An operation was called in a state that does not allow it.

    Programmer misuse (ticking an unarmed clock, starting twice). Never
    caught inside the package.
    """


class PersistError(KasinaTimerError):
    """A session write did not reach the backend."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PersistTransientError(PersistError):
    """Network failure, timeout, 5xx or 429. Worth retrying."""


class PersistPermanentError(PersistError):
    """Rejected payload or unusable response. Retrying will not help."""
