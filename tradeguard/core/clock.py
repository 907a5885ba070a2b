"""Time helpers.

All persisted timestamps are naive UTC so they compare consistently across
PostgreSQL and SQLite.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

