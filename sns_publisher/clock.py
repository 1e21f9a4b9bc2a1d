# sns_publisher/clock.py
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware UTC, matching how timestamps are stored."""
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    # naive input is taken to be UTC already
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
