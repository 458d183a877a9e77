"""UTC time helpers.

Sets the TZ environment variable to UTC and exposes the naive-UTC clock used
for every persisted timestamp (job records, token usage, queue watchdog).
"""

import os
from datetime import datetime, timezone

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime.

    Columns are stored as TIMESTAMP WITHOUT TIME ZONE, so every timestamp in
    the scheduler is naive UTC to keep comparisons consistent.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
