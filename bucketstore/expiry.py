from typing import Optional

EXPIRY_PRESETS = {
    "1h": 3600,
    "6h": 6 * 3600,
    "12h": 12 * 3600,
    "1d": 86400,
    "3d": 3 * 86400,
    "1w": 7 * 86400,
    "2w": 14 * 86400,
    "1m": 30 * 86400,
}
NEVER = "never"
FALLBACK_SECONDS = EXPIRY_PRESETS["1w"]


def explicit_seconds(value: str) -> Optional[int]:
    """Return the seconds for a preset or positive integer, ``None`` for anything else."""

    cleaned = (value or "").strip().lower()
    if cleaned in EXPIRY_PRESETS:
        return EXPIRY_PRESETS[cleaned]
    if cleaned.isascii() and cleaned.isdigit() and int(cleaned) > 0:
        return int(cleaned)
    return None


def expiry_seconds(value: str) -> Optional[int]:
    """Translate an ``expires_in`` value into seconds; ``None`` means permanent.

    Accepts a preset, ``never``, or a positive integer number of seconds. Anything else
    falls back to one week.
    """

    if (value or "").strip().lower() == NEVER:
        return None
    seconds = explicit_seconds(value)
    return FALLBACK_SECONDS if seconds is None else seconds


def parse_expiry(value: str, now: float) -> Optional[int]:
    seconds = expiry_seconds(value)
    if seconds is None:
        return None
    return int(now) + seconds


def is_expired(expires_at: Optional[int], now: float) -> bool:
    if expires_at is None:
        return False
    return expires_at < int(now)


def seconds_remaining(expires_at: Optional[int], now: float) -> Optional[int]:
    if expires_at is None:
        return None
    return max(0, expires_at - int(now))
