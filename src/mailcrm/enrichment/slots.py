"""Calendar slot generation from busy intervals.

Two views of the same free time:
- generate_slots(): up to 10 raw 30-minute slots, weekdays 09:00-18:00 local,
  starting from now.
- generate_structured_slots(): exactly 3 proposal windows of 2-3 hours, one
  per business day, the first at least 2 business days out. These are the
  windows offered to the other party in scheduling drafts.

Both are pure functions of (busy intervals, now). Local time is the timezone
of ``now``, which must be timezone-aware.

Usage:
    from mailcrm.enrichment.slots import generate_slots, generate_structured_slots

    now = datetime.now(ZoneInfo("Europe/London"))
    slots = generate_slots(busy, now)
    windows = generate_structured_slots(busy, now)
    windows[0].label  # "Tuesday, December 17, 2:00 PM - 4:00 PM (2 hours)"
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, tzinfo

from mailcrm.models import BusyInterval, CalendarSlot

WORKDAY_START = time(9, 0)
WORKDAY_END = time(18, 0)
LAST_CALL = time(17, 0)  # after this, today is skipped entirely
SLOT_LENGTH = timedelta(minutes=30)
MAX_RAW_SLOTS = 10
DEFAULT_LOOKAHEAD_DAYS = 7

STRUCTURED_COUNT = 3
STRUCTURED_MIN = timedelta(hours=2)
STRUCTURED_MAX = timedelta(hours=3)
STRUCTURED_LEAD_BUSINESS_DAYS = 2
STRUCTURED_HORIZON_BUSINESS_DAYS = 60


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_time(dt: datetime) -> str:
    """'9:00 AM', '2:30 PM'."""
    hour = dt.hour % 12 or 12
    return f"{hour}:{dt.minute:02d} {'AM' if dt.hour < 12 else 'PM'}"


def format_day(dt: datetime) -> str:
    """'Tuesday, December 17'."""
    return f"{dt:%A}, {dt:%B} {dt.day}"


def format_duration(length: timedelta) -> str:
    hours = length.total_seconds() / 3600
    if hours == int(hours):
        hours_text = str(int(hours))
    else:
        hours_text = f"{hours:g}"
    return f"{hours_text} hour{'' if hours == 1 else 's'}"


def _raw_label(start: datetime, end: datetime) -> str:
    return f"{format_day(start)}, {format_time(start)} - {format_time(end)}"


def _structured_label(start: datetime, end: datetime) -> str:
    return f"{_raw_label(start, end)} ({format_duration(end - start)})"


# ---------------------------------------------------------------------------
# Busy interval helpers
# ---------------------------------------------------------------------------


def is_business_day(day: date) -> bool:
    return day.weekday() < 5


def add_business_days(day: date, count: int) -> date:
    """The date ``count`` business days after ``day`` (weekends skipped)."""
    current = day
    added = 0
    while added < count:
        current += timedelta(days=1)
        if is_business_day(current):
            added += 1
    return current


def _blocked_days(busy: Iterable[BusyInterval], tz: tzinfo) -> set[date]:
    """Local dates fully blocked by all-day intervals."""
    days: set[date] = set()
    for interval in busy:
        if not interval.all_day:
            continue
        first = interval.start.astimezone(tz).date()
        last = (interval.end.astimezone(tz) - timedelta(microseconds=1)).date()
        day = first
        while day <= max(first, last):
            days.add(day)
            day += timedelta(days=1)
    return days


def _timed(busy: Iterable[BusyInterval]) -> list[BusyInterval]:
    return [b for b in busy if not b.all_day]


def _overlaps(start: datetime, end: datetime, busy: list[BusyInterval]) -> bool:
    return any(b.start < end and b.end > start for b in busy)


def _ceil_to_slot(dt: datetime) -> datetime:
    """Round up to the next half-hour boundary (unchanged if already on one)."""
    floored = dt.replace(minute=(dt.minute // 30) * 30, second=0, microsecond=0)
    return floored if floored == dt else floored + SLOT_LENGTH


def _work_window(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    return datetime.combine(day, WORKDAY_START, tzinfo=tz), datetime.combine(
        day, WORKDAY_END, tzinfo=tz
    )


# ---------------------------------------------------------------------------
# Raw slots
# ---------------------------------------------------------------------------


def generate_slots(
    busy: Iterable[BusyInterval],
    now: datetime,
    lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS,
    max_slots: int = MAX_RAW_SLOTS,
) -> list[CalendarSlot]:
    """Free 30-minute slots on weekdays, 09:00-18:00 local, in time order.

    Today's slots start at the next half-hour boundary; if it is already
    past 17:00, today is skipped.

    Args:
        busy: Busy intervals over the lookahead window
        now: Current time (timezone-aware; defines local time)
        lookahead_days: Number of calendar days to scan, starting today
        max_slots: Maximum number of slots returned

    Returns:
        At most max_slots non-conflicting slots

    Raises:
        ValueError: If now is naive
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    tz = now.tzinfo
    busy = list(busy)
    blocked = _blocked_days(busy, tz)
    timed = _timed(busy)
    slots: list[CalendarSlot] = []

    for offset in range(lookahead_days):
        day = now.date() + timedelta(days=offset)
        if not is_business_day(day) or day in blocked:
            continue

        start, day_end = _work_window(day, tz)
        if offset == 0:
            if now.time() > LAST_CALL:
                continue
            start = max(start, _ceil_to_slot(now))

        slot_start = start
        while slot_start + SLOT_LENGTH <= day_end:
            slot_end = slot_start + SLOT_LENGTH
            if not _overlaps(slot_start, slot_end, timed):
                slots.append(CalendarSlot(slot_start, slot_end, _raw_label(slot_start, slot_end)))
                if len(slots) >= max_slots:
                    return slots
            slot_start = slot_end

    return slots


# ---------------------------------------------------------------------------
# Structured proposal windows
# ---------------------------------------------------------------------------


def _first_free_window(
    day: date, tz: tzinfo, timed: list[BusyInterval]
) -> tuple[datetime, datetime] | None:
    """First free run of at least 2h inside the working day, capped at 3h."""
    day_start, day_end = _work_window(day, tz)
    cursor = day_start
    for interval in sorted(timed, key=lambda b: b.start):
        if interval.end <= cursor or interval.start >= day_end:
            continue
        run_end = min(interval.start, day_end)
        if run_end - cursor >= STRUCTURED_MIN:
            return cursor, min(run_end, cursor + STRUCTURED_MAX)
        cursor = max(cursor, _ceil_to_slot(interval.end))
        if cursor >= day_end:
            return None

    if day_end - cursor >= STRUCTURED_MIN:
        return cursor, min(day_end, cursor + STRUCTURED_MAX)
    return None


def generate_structured_slots(
    busy: Iterable[BusyInterval],
    now: datetime,
    count: int = STRUCTURED_COUNT,
) -> list[CalendarSlot]:
    """Proposal windows of 2-3 hours, one per business day.

    The first candidate day is two business days after today. Days are
    scanned in order until ``count`` windows are found. Busy intervals only
    cover the fetched window, so days past it are treated as free.

    Args:
        busy: Busy intervals
        now: Current time (timezone-aware; defines local time)
        count: Number of windows wanted

    Returns:
        ``count`` windows (fewer only if the scan horizon is exhausted)

    Raises:
        ValueError: If now is naive
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    tz = now.tzinfo
    busy = list(busy)
    blocked = _blocked_days(busy, tz)
    timed = _timed(busy)
    windows: list[CalendarSlot] = []

    day = add_business_days(now.date(), STRUCTURED_LEAD_BUSINESS_DAYS)
    for _ in range(STRUCTURED_HORIZON_BUSINESS_DAYS):
        if day not in blocked:
            window = _first_free_window(day, tz, timed)
            if window is not None:
                start, end = window
                windows.append(CalendarSlot(start, end, _structured_label(start, end)))
                if len(windows) >= count:
                    break
        day = add_business_days(day, 1)

    return windows
