# bloom/domain/schedule.py
import calendar
from datetime import date, timedelta

WEEKLY = "weekly"
BIWEEKLY = "biweekly"
MONTHLY = "monthly"
FREQUENCIES = (WEEKLY, BIWEEKLY, MONTHLY)


def add_interval(previous: date, frequency: str, anchor_day: int | None = None) -> date:
    """
    One cycle after `previous`.
    Monthly keeps the anchor day (clamped to month end), so 01-31 -> 02-29 -> 03-31.
    """
    if frequency == WEEKLY:
        return previous + timedelta(days=7)
    if frequency == BIWEEKLY:
        return previous + timedelta(days=14)
    if frequency == MONTHLY:
        year = previous.year + previous.month // 12
        month = previous.month % 12 + 1
        day = anchor_day or previous.day
        return date(year, month, min(day, calendar.monthrange(year, month)[1]))
    raise ValueError(f"Unknown frequency {frequency}")


def first_on_or_after(start: date, today: date, frequency: str, anchor_day: int | None = None) -> date:
    candidate = start
    while candidate < today:
        candidate = add_interval(candidate, frequency, anchor_day)
    return candidate
