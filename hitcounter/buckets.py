# hitcounter/buckets.py
"""
Time buckets for hit counting.

Every window is a pair of inclusive unix timestamps computed on the local
calendar of the configured timezone:

  daily    00:00:00 .. 23:59:59 of the reference date
  weekly   Monday 00:00:00 .. Sunday 23:59:59 (ISO weeks, never locale based)
  monthly  first day 00:00:00 .. last day 23:59:59
  yearly   Jan 1 00:00:00 .. Dec 31 23:59:59

The "last_*" variants step the reference back by one unit and apply the same
rule, so last_year().end + 1 == this_year().start always holds.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Callable, Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from hitcounter.errors import ClockError, ConfigError


class HitType(enum.IntFlag):
    DAILY = 1
    WEEKLY = 32
    MONTHLY = 512
    YEARLY = 4096
    ALL = DAILY | WEEKLY | MONTHLY | YEARLY


ALL_TYPES = HitType.ALL

# Evaluation order for a single hit. Only side effects (token refresh) care.
PRIORITY = (HitType.DAILY, HitType.WEEKLY, HitType.MONTHLY, HitType.YEARLY)

_NAMES = {kind.name.lower(): kind for kind in PRIORITY}


def selected_types(mask: int) -> Iterator[HitType]:
    for kind in PRIORITY:
        if kind & mask:
            yield kind


def type_name(kind: int) -> str:
    return HitType(kind).name.lower()


def parse_types(value: Optional[str], default: int = ALL_TYPES) -> int:
    """
    "daily,weekly" -> DAILY | WEEKLY. Accepts names, "all" or raw numbers.
    Empty input falls back to `default`.
    """
    if value is None or not str(value).strip():
        return int(default)
    mask = 0
    for part in str(value).split(","):
        part = part.strip().lower()
        if not part:
            continue
        if part == "all":
            mask |= ALL_TYPES
        elif part in _NAMES:
            mask |= _NAMES[part]
        elif part.isdigit() and int(part) & ALL_TYPES:
            mask |= int(part) & ALL_TYPES
        else:
            raise ValueError(f"unknown hit type: {part!r}")
    return mask


@dataclass(frozen=True)
class Window:
    start: int
    end: int

    def contains(self, ts: int) -> bool:
        return self.start <= ts <= self.end

    def remaining(self, now_ts: int) -> int:
        return max(0, self.end - now_ts)


# ---- pure calculators -------------------------------------------------------

def _aware(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _midnight(d: date, tz: tzinfo) -> int:
    return int(datetime.combine(d, time.min, tzinfo=tz).timestamp())


def _span(first: date, after_last: date, tz: tzinfo) -> Window:
    return Window(_midnight(first, tz), _midnight(after_last, tz) - 1)


def _day(d: date, tz: tzinfo) -> Window:
    return _span(d, d + timedelta(days=1), tz)


def _week(d: date, tz: tzinfo) -> Window:
    monday = d - timedelta(days=d.weekday())
    return _span(monday, monday + timedelta(days=7), tz)


def _month(d: date, tz: tzinfo) -> Window:
    first = d.replace(day=1)
    following = (first + timedelta(days=32)).replace(day=1)
    return _span(first, following, tz)


def _year(d: date, tz: tzinfo) -> Window:
    return _span(date(d.year, 1, 1), date(d.year + 1, 1, 1), tz)


def today(now: datetime) -> Window:
    now = _aware(now)
    return _day(now.date(), now.tzinfo)


def yesterday(now: datetime) -> Window:
    now = _aware(now)
    return _day(now.date() - timedelta(days=1), now.tzinfo)


def this_week(now: datetime) -> Window:
    now = _aware(now)
    return _week(now.date(), now.tzinfo)


def last_week(now: datetime) -> Window:
    now = _aware(now)
    return _week(now.date() - timedelta(days=7), now.tzinfo)


def this_month(now: datetime) -> Window:
    now = _aware(now)
    return _month(now.date(), now.tzinfo)


def last_month(now: datetime) -> Window:
    now = _aware(now)
    return _month(now.date().replace(day=1) - timedelta(days=1), now.tzinfo)


def this_year(now: datetime) -> Window:
    now = _aware(now)
    return _year(now.date(), now.tzinfo)


def last_year(now: datetime) -> Window:
    now = _aware(now)
    return _year(date(now.year - 1, 1, 1), now.tzinfo)


_CURRENT = {
    HitType.DAILY: today,
    HitType.WEEKLY: this_week,
    HitType.MONTHLY: this_month,
    HitType.YEARLY: this_year,
}

_PREVIOUS = {
    HitType.DAILY: yesterday,
    HitType.WEEKLY: last_week,
    HitType.MONTHLY: last_month,
    HitType.YEARLY: last_year,
}


def current_window(kind: int, now: datetime) -> Window:
    return _CURRENT[HitType(kind)](now)


def previous_window(kind: int, now: datetime) -> Window:
    return _PREVIOUS[HitType(kind)](now)


# ---- calendar bound to a clock ---------------------------------------------

def _system_clock() -> datetime:
    return datetime.now(timezone.utc)


def load_timezone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"unknown timezone: {name!r}") from e


class BucketCalendar:
    """Bucket windows relative to an injectable clock, in one timezone."""

    def __init__(self, tz: Optional[tzinfo] = None, clock: Optional[Callable[[], datetime]] = None):
        self.tz = tz or timezone.utc
        self.clock = clock or _system_clock

    def now(self) -> datetime:
        try:
            current = self.clock()
        except Exception as e:
            raise ClockError(f"time source unavailable: {e}") from e
        if not isinstance(current, datetime):
            raise ClockError(f"time source returned {type(current).__name__}, not datetime")
        return _aware(current).astimezone(self.tz)

    def timestamp(self) -> int:
        return int(self.now().timestamp())

    def current(self, kind: int, now: Optional[datetime] = None) -> Window:
        return current_window(kind, now or self.now())

    def previous(self, kind: int, now: Optional[datetime] = None) -> Window:
        return previous_window(kind, now or self.now())
