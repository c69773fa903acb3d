"""Timezone helpers.

Rows are stamped with :pyfunc:`utc_now_naive` on the Python side so the value
is known right after ``flush()`` and survives a JSON round-trip through the
cache unchanged.
"""

from datetime import datetime
from datetime import timezone


def utc_now_naive() -> datetime:  # noqa: D401 – simple utility
    """Return *naive* current time in UTC for database compatibility.

    SQLAlchemy DateTime columns without timezone info store naive datetimes.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


__all__ = ["utc_now_naive"]
