from __future__ import annotations

from datetime import datetime, timedelta


# Fixed plant calendar: Mon-Sat, 06:00-22:00.
SHIFT_START_HOUR = 6
SHIFT_END_HOUR = 22
EXCLUDED_WEEKDAY = 6  # Sunday (datetime.weekday)
QUARTER = timedelta(minutes=15)
MIN_SHIFT_REMAINDER_HOURS = 0.25


def _at_hour(t: datetime, hour: int) -> datetime:
    return t.replace(hour=hour, minute=0, second=0, microsecond=0)


def _next_day_start(t: datetime) -> datetime:
    return _at_hour(t + timedelta(days=1), SHIFT_START_HOUR)


def next_valid_work_time(t: datetime) -> datetime:
    """
    Move `t` forward to the next instant inside the working window.

    Rules are re-applied until none fires:
      - Sunday        -> 06:00 next day
      - before 06:00  -> 06:00 same day
      - 22:00 onwards -> 06:00 next day
    """
    cur = t
    while True:
        if cur.weekday() == EXCLUDED_WEEKDAY:
            cur = _next_day_start(cur)
            continue
        if cur.hour < SHIFT_START_HOUR:
            cur = _at_hour(cur, SHIFT_START_HOUR)
            continue
        if cur.hour >= SHIFT_END_HOUR:
            cur = _next_day_start(cur)
            continue
        return cur


def snap_to_next_quarter_hour(t: datetime) -> datetime:
    """Ceiling to the next 15-minute mark. 14:04 -> 14:15, 14:15 -> 14:30."""
    floored = t.replace(minute=(t.minute // 15) * 15, second=0, microsecond=0)
    return floored + QUARTER


def ceil_to_quarter_hour(t: datetime) -> datetime:
    """Like snap_to_next_quarter_hour, but an exact 15-minute mark stays put."""
    if t.minute % 15 == 0 and t.second == 0 and t.microsecond == 0:
        return t
    return snap_to_next_quarter_hour(t)


def global_start(now: datetime) -> datetime:
    return next_valid_work_time(snap_to_next_quarter_hour(now))


def shift_end(t: datetime) -> datetime:
    return _at_hour(t, SHIFT_END_HOUR)


def hours_left_in_shift(t: datetime) -> float:
    return (shift_end(t) - t).total_seconds() / 3600.0


def is_working_time(t: datetime) -> bool:
    if t.weekday() == EXCLUDED_WEEKDAY:
        return False
    return SHIFT_START_HOUR <= t.hour < SHIFT_END_HOUR


def day_start(t: datetime) -> datetime:
    return t.replace(hour=0, minute=0, second=0, microsecond=0)


def add_work_days(t: datetime, days: int) -> datetime:
    """Step `days` calendar days (signed), not counting Sundays."""
    cur = t
    remaining = abs(int(days))
    step = timedelta(days=1 if days > 0 else -1)
    while remaining > 0:
        cur += step
        if cur.weekday() != EXCLUDED_WEEKDAY:
            remaining -= 1
    return cur


def advance_work_minutes(start: datetime, minutes: float) -> datetime:
    """
    Walk `minutes` of work forward from `start`, carrying whatever does not
    fit in a shift into the next working day. Returns the finishing instant.
    """
    remaining = float(minutes)
    cur = next_valid_work_time(start)
    while remaining > 1e-9:
        cur = next_valid_work_time(cur)
        available = (shift_end(cur) - cur).total_seconds() / 60.0
        if available <= 0:
            cur = _next_day_start(cur)
            continue

        run = min(remaining, available)
        remaining -= run
        cur = shift_end(cur) if remaining > 1e-9 else cur + timedelta(minutes=run)
    return cur
