"""Calendar navigation math shared by the day, week and month planners.

Every function here works on the viewer's wall-clock calendar date. Nothing
converts through UTC: a ``datetime`` contributes its own year/month/day, and
"today" comes from :func:`today_local` with an explicit timezone name.

Keys used across the service:

- day key: ``YYYY-MM-DD``
- week key: ``YYYY-MM-DD`` of the Monday starting the week
- month key: ``YYYY-MM``
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

GRID_CELLS = 42
DateLike = Union[date, datetime]


@dataclass(frozen=True)
class MonthCell:
    day: int
    in_month: bool
    date_iso: str
    is_today: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def local_iso_date(value: DateLike) -> str:
    """Format ``value`` as ``YYYY-MM-DD`` from its own calendar fields."""
    return f"{value.year:04d}-{value.month:02d}-{value.day:02d}"


def parse_iso_date(value: str) -> date:
    raw = str(value or "").strip()
    if len(raw) != 10:
        raise ValueError(f"Invalid date: {value!r}")
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value!r}") from exc


def parse_year_month(value: str) -> Tuple[int, int]:
    raw = str(value or "").strip()
    parts = raw.split("-")
    if len(parts) != 2 or len(parts[0]) != 4 or len(parts[1]) != 2:
        raise ValueError(f"Invalid month: {value!r}")
    try:
        year, month = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise ValueError(f"Invalid month: {value!r}") from exc
    if not 1 <= month <= 12 or not 1 < year < 9999:
        raise ValueError(f"Invalid month: {value!r}")
    return year, month


def format_year_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def month_key(value: DateLike) -> str:
    return format_year_month(value.year, value.month)


def days_in_month(year_month: str) -> int:
    year, month = parse_year_month(year_month)
    return calendar.monthrange(year, month)[1]


def month_date_range(year_month: str) -> Tuple[str, str]:
    year, month = parse_year_month(year_month)
    last = calendar.monthrange(year, month)[1]
    return local_iso_date(date(year, month, 1)), local_iso_date(date(year, month, last))


def today_local(tz_name: Optional[str] = None) -> date:
    """Today's calendar date in ``tz_name``, or in the machine zone."""
    if tz_name:
        try:
            return datetime.now(ZoneInfo(tz_name)).date()
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown timezone %r, using local time", tz_name)
    return datetime.now().astimezone().date()


def build_month_grid(
    year_month: str,
    today: Optional[date] = None,
    first_weekday: int = calendar.SUNDAY,
) -> List[MonthCell]:
    """Six full weeks of cells covering ``year_month``.

    The grid starts on ``first_weekday`` (``datetime.weekday`` numbering) on or
    before the 1st, so its height never depends on how the month falls.
    """
    year, month = parse_year_month(year_month)
    if today is None:
        today = today_local()
    first = date(year, month, 1)
    leading = (first.weekday() - first_weekday) % 7
    start = first - timedelta(days=leading)
    cells = []
    for offset in range(GRID_CELLS):
        current = start + timedelta(days=offset)
        in_month = current.month == month and current.year == year
        cells.append(
            MonthCell(
                day=current.day,
                in_month=in_month,
                date_iso=local_iso_date(current),
                is_today=in_month and current == today,
            )
        )
    return cells


def get_week_start_local(value: DateLike) -> str:
    day = date(value.year, value.month, value.day)
    return local_iso_date(day - timedelta(days=day.weekday()))


def week_end(week_start_iso: str) -> str:
    start = parse_iso_date(week_start_iso)
    return local_iso_date(start + timedelta(days=6))


def week_dates(week_start_iso: str) -> List[str]:
    start = parse_iso_date(week_start_iso)
    return [local_iso_date(start + timedelta(days=idx)) for idx in range(7)]


def shift_week(week_start_iso: str, weeks: int) -> str:
    start = parse_iso_date(week_start_iso)
    return get_week_start_local(start + timedelta(weeks=weeks))


def shift_month(year_month: str, months: int) -> str:
    year, month = parse_year_month(year_month)
    index = year * 12 + (month - 1) + months
    key = format_year_month(index // 12, index % 12 + 1)
    parse_year_month(key)
    return key


def prev_month(year_month: str) -> str:
    return shift_month(year_month, -1)


def next_month(year_month: str) -> str:
    return shift_month(year_month, 1)


def shift_day(day_iso: str, days: int) -> str:
    return local_iso_date(parse_iso_date(day_iso) + timedelta(days=days))
