"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def from_epoch_seconds(value: str | int | None) -> datetime | None:
    """Convert a provider epoch-seconds timestamp to an aware UTC datetime.

    WhatsApp sends message timestamps as strings of epoch seconds. Returns
    None when the value is missing or not numeric.
    """
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def epoch_millis(moment: datetime | None = None) -> int:
    """Epoch milliseconds for `moment` (defaults to now)."""
    return int((moment or utc_now()).timestamp() * 1000)
