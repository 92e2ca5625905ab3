"""
Recurrence Expansion Service.

Expands a single consultation slot window into a recurring series using
python-dateutil rrule. Used by SlotBookingCoordinator.create_recurring():

    expand_slot_windows(start, end, count=3, interval_days=7)
    # -> 4 windows: the original plus three weekly repeats
"""

from datetime import datetime

from dateutil.rrule import DAILY, rrule


def expand_slot_windows(
    start: datetime,
    end: datetime,
    count: int = 0,
    interval_days: int = 7,
) -> list[tuple[datetime, datetime]]:
    """
    Expand a slot window into count + 1 windows spaced interval_days apart.

    Args:
        start: First window start (timezone-aware)
        end: First window end; every window keeps the same duration
        count: Number of repeats after the first window (0 = just the original)
        interval_days: Days between consecutive window starts

    Returns:
        List of (start, end) tuples sorted by start

    Examples:
        # Original + 2 repeats, one week apart
        expand_slot_windows(datetime(2025,3,3,9,0,tzinfo=UTC), datetime(2025,3,3,9,30,tzinfo=UTC), 2, 7)
        # Returns windows on Mar 3, Mar 10 and Mar 17 at 09:00-09:30
    """
    duration = end - start

    rule = rrule(freq=DAILY, interval=interval_days, count=count + 1, dtstart=start)
    return sorted((occurrence, occurrence + duration) for occurrence in rule)
