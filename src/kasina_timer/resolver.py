"""Duration resolution: pure logic, no I/O.

Decides how many seconds a finished session is worth recording.
A result of 0 means "too short, do not persist".
"""

from __future__ import annotations

from .models import CompletionCause, CompletionEvent, TimerConfig

# Near-complete credit as (numerator, denominator): elapsed / target >= 9/10
# counts as the full target. Integer arithmetic, no float comparisons.
NEAR_COMPLETE_RATIO: tuple[int, int] = (9, 10)

SECONDS_PER_MINUTE = 60


def resolve(event: CompletionEvent, config: TimerConfig) -> int:
    """Return the canonical seconds value to persist for ``event``."""
    elapsed = max(0, event.elapsed_seconds)

    if elapsed < config.minimum_recordable_seconds:
        return 0

    target = config.target_seconds
    if event.cause == CompletionCause.NATURAL_EXPIRY and target is not None:
        # Target is authoritative in case of tick drift
        return target

    if target is not None:
        num, den = NEAR_COMPLETE_RATIO
        if elapsed * den >= target * num:
            return target

    return round_to_minute(elapsed, config.rounding_threshold_seconds)


def round_to_minute(elapsed_seconds: int, threshold_seconds: int) -> int:
    """Round a partial session up to whole minutes.

    Under one minute, only a remainder at or above ``threshold_seconds``
    earns a minute; from one minute on, any remainder rounds up.
    """
    minutes, remainder = divmod(elapsed_seconds, SECONDS_PER_MINUTE)
    if minutes == 0 and remainder < threshold_seconds:
        return 0
    if remainder > 0:
        return (minutes + 1) * SECONDS_PER_MINUTE
    return minutes * SECONDS_PER_MINUTE


def normalize_kasina_type(kasina_type: str) -> str:
    return kasina_type.strip().lower()


def kasina_display_name(kasina_type: str, duration_seconds: int) -> str:
    """Human label stored alongside the session, e.g. 'White (5-minutes)'."""
    kasina = normalize_kasina_type(kasina_type)
    # Nearest minute, halves rounding up
    minutes = max(1, (duration_seconds + SECONDS_PER_MINUTE // 2) // SECONDS_PER_MINUTE)
    unit = "minute" if minutes == 1 else "minutes"
    return f"{kasina[:1].upper()}{kasina[1:]} ({minutes}-{unit})"


def format_clock(seconds: int | None) -> str:
    """Format seconds as 'MM:SS' (or 'H:MM:SS' past an hour)."""
    if seconds is None:
        return "--:--"
    hours, rest = divmod(max(0, seconds), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"
