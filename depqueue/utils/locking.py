from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# A fixed key for the leader lock.
# Postgres uses 64-bit keys for advisory locks.
LEADER_LOCK_KEY = 84728473

async def try_advisory_lock(session: AsyncSession, key: int = LEADER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired, False otherwise.

    Note: Session-level locks are released automatically when the session ends.
    Databases without advisory locks (SQLite in development) always lead.
    """
    if session.bind.dialect.name != "postgresql":
        return True

    result = await session.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    return result.scalar() is True
