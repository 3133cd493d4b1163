"""UTC timezone enforcement.

This module sets the TZ environment variable to UTC to ensure
consistent datetime behavior across all environments.

Timestamps are timezone-aware UTC datetimes; use utc_now() rather than
datetime.now() anywhere a value is persisted or compared with stored values.
"""

import os
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.types import DateTime, TypeDecorator

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCTimestamp(TypeDecorator):
    """TIMESTAMP WITH TIME ZONE column that only accepts aware datetimes.

    Values are normalized to UTC on the way in. SQLite keeps no offset, so
    rows read back from it are tagged as UTC.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self):
        super().__init__(timezone=True)

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.utcoffset() is None:
            raise ValueError("Timestamps must be timezone-aware; use utc_now()")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
