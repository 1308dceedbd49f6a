"""Naive-UTC time helpers shared by the billing modules.

All datetimes stored by the service are naive UTC, matching the columns.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ts_to_naive(ts: int | float | None) -> datetime | None:
    """Convert a Unix timestamp (as sent by Stripe) to naive UTC."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def naive_to_ts(value: datetime | None) -> int | None:
    """Convert a naive UTC datetime back to a Unix timestamp."""
    if value is None:
        return None
    return int(value.replace(tzinfo=timezone.utc).timestamp())
