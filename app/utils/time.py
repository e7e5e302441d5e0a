"""Time utilities."""
from datetime import UTC, datetime, timezone


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def epoch_millis(value: datetime | None = None) -> int:
    """Return milliseconds since the epoch for ``value`` (default: now)."""

    return int((value or utcnow()).timestamp() * 1000)


__all__ = ["utcnow", "ensure_utc", "epoch_millis"]
