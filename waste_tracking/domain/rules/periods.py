from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import StrEnum

from waste_tracking.domain.errors import ValidationError

_END_OF_DAY = time(23, 59, 59, 999999)


class DateFilter(StrEnum):
    TODAY = "today"
    THIS_WEEK = "thisWeek"
    THIS_MONTH = "thisMonth"
    LAST_MONTH = "lastMonth"


@dataclass(slots=True, frozen=True)
class TimeWindow:
    """Closed interval [start, end], both ends timezone-aware UTC."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def parse_filter(value: str | DateFilter | None) -> DateFilter:
    if value is None or value == "":
        return DateFilter.TODAY
    try:
        return DateFilter(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in DateFilter)
        raise ValidationError(f"Unknown filter '{value}', expected one of: {allowed}") from exc


def parse_zoom_date(value: str | date | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value).date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00"))).date()
    except ValueError as exc:
        raise ValidationError(f"Invalid zoomDate format: {value}") from exc


def as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def utc_day_range(day: date | datetime) -> TimeWindow:
    if isinstance(day, datetime):
        day = as_utc(day).date()
    return TimeWindow(
        start=datetime.combine(day, time.min, tzinfo=timezone.utc),
        end=datetime.combine(day, _END_OF_DAY, tzinfo=timezone.utc),
    )


def current_window(date_filter: DateFilter, now: datetime) -> TimeWindow:
    now = as_utc(now)
    if date_filter is DateFilter.TODAY:
        return utc_day_range(now)
    if date_filter is DateFilter.THIS_WEEK:
        monday = now.date() - timedelta(days=now.weekday())
        return TimeWindow(start=utc_day_range(monday).start, end=now)
    if date_filter is DateFilter.THIS_MONTH:
        return TimeWindow(start=_month_start(now.year, now.month), end=now)
    year, month = _shift_month(now.year, now.month, -1)
    return _full_month(year, month)


def previous_window(date_filter: DateFilter, now: datetime) -> TimeWindow:
    now = as_utc(now)
    if date_filter is DateFilter.TODAY:
        return utc_day_range(now.date() - timedelta(days=1))
    if date_filter is DateFilter.THIS_WEEK:
        current = current_window(DateFilter.THIS_WEEK, now)
        return TimeWindow(start=current.start - timedelta(days=7), end=now - timedelta(days=7))
    if date_filter is DateFilter.THIS_MONTH:
        year, month = _shift_month(now.year, now.month, -1)
        last_day = calendar.monthrange(year, month)[1]
        effective_day = min(now.day, last_day)
        return TimeWindow(
            start=_month_start(year, month),
            end=utc_day_range(date(year, month, effective_day)).end,
        )
    year, month = _shift_month(now.year, now.month, -2)
    return _full_month(year, month)


def leaderboard_window(now: datetime, fallback_day: int) -> tuple[TimeWindow, str]:
    now = as_utc(now)
    if now.day <= fallback_day:
        year, month = _shift_month(now.year, now.month, -1)
        return _full_month(year, month), "Last Month"
    return _full_month(now.year, now.month), "This Month"


def trailing_days_window(now: datetime, days: int) -> TimeWindow:
    now = as_utc(now)
    first = now.date() - timedelta(days=max(1, days) - 1)
    return TimeWindow(start=utc_day_range(first).start, end=utc_day_range(now).end)


def _month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1, tzinfo=timezone.utc)


def _full_month(year: int, month: int) -> TimeWindow:
    last_day = calendar.monthrange(year, month)[1]
    return TimeWindow(start=_month_start(year, month), end=utc_day_range(date(year, month, last_day)).end)


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1
