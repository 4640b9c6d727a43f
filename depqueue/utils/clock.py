from datetime import datetime, timezone

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalizes a datetime loaded from the store to an aware UTC value.

    PostgreSQL returns aware timestamps, SQLite hands back naive ones that were
    written as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
