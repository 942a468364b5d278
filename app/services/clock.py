"""
Time Source
Naive UTC timestamps, matching how the monitoring tables store them
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time in UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
