from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, NamedTuple, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from booking import config
from booking.errors import NotFoundError, ValidationError
from models.scheduling import (
    AvailabilityException,
    AvailabilityTemplate,
    ExceptionType,
    NON_BLOCKING_STATUSES,
    Trainer,
    TrainingSession,
)

# Exceptions without explicit bounds cover the whole day.
DEFAULT_EXCEPTION_START = time(0, 0)
DEFAULT_EXCEPTION_END = time(23, 59)


class TimeInterval(NamedTuple):
    start: datetime
    end: datetime


def to_instant(day: date, clock: time, tz: ZoneInfo) -> datetime:
    """Trainer wall-clock time on ``day`` -> naive UTC instant."""
    local = datetime.combine(day, clock, tzinfo=tz)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def merge_intervals(intervals: Iterable[TimeInterval]) -> list[TimeInterval]:
    """Sort by start and coalesce ranges that touch or overlap."""
    ordered = sorted(intervals, key=lambda iv: iv.start)
    merged: list[TimeInterval] = []
    for interval in ordered:
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = TimeInterval(last.start, max(last.end, interval.end))
        else:
            merged.append(interval)
    return merged


def subtract_interval(
    intervals: Iterable[TimeInterval],
    cut_start: datetime,
    cut_end: datetime,
) -> list[TimeInterval]:
    """
    Remove [cut_start, cut_end) from every range. A range that straddles the
    cut is split in two; one fully covered disappears.
    """
    result: list[TimeInterval] = []
    for interval in intervals:
        if interval.start < cut_end and interval.end > cut_start:
            if interval.start < cut_start:
                result.append(TimeInterval(interval.start, cut_start))
            if interval.end > cut_end:
                result.append(TimeInterval(cut_end, interval.end))
        else:
            result.append(interval)
    return result


def _apply_exception(
    ranges: list[TimeInterval],
    exception,
    day: date,
    tz: ZoneInfo,
) -> list[TimeInterval]:
    kind = ExceptionType(exception.exception_type)
    if kind is ExceptionType.UNAVAILABLE_FULL_DAY:
        return []

    start = to_instant(day, exception.start_time or DEFAULT_EXCEPTION_START, tz)
    end = to_instant(day, exception.end_time or DEFAULT_EXCEPTION_END, tz)

    if kind is ExceptionType.UNAVAILABLE_PARTIAL_DAY:
        return subtract_interval(ranges, start, end)
    if kind is ExceptionType.AVAILABLE_EXTRA_SLOT:
        return merge_intervals([*ranges, TimeInterval(start, end)])
    raise ValueError(f"Unhandled exception type: {kind!r}")


def _each_day(window_start: date, window_end: date):
    day = window_start
    while day <= window_end:
        yield day
        day += timedelta(days=1)


def calculate_free_intervals(
    templates: Sequence,
    exceptions: Sequence,
    booked_starts: Iterable[datetime],
    window_start: date,
    window_end: date,
    *,
    tz: Optional[ZoneInfo] = None,
    session_minutes: int = config.SESSION_DURATION_MINUTES,
) -> list[TimeInterval]:
    """
    Turn weekly templates plus date overrides into concrete free intervals.

    ``templates`` need ``day_of_week``/``start_time``/``end_time``;
    ``exceptions`` need ``exception_date``/``exception_type``/``start_time``/
    ``end_time`` and must already be in authoring order, which is the order
    they are applied in. ``booked_starts`` are naive UTC session starts; each
    removes a fixed ``session_minutes`` block. The window is inclusive.
    """
    if tz is None:
        tz = config.TRAINER_TIMEZONE

    templates_by_weekday: dict[int, list] = defaultdict(list)
    for template in templates:
        templates_by_weekday[template.day_of_week].append(template)

    exceptions_by_date: dict[date, list] = defaultdict(list)
    for exception in exceptions:
        exceptions_by_date[exception.exception_date].append(exception)

    session_width = timedelta(minutes=session_minutes)
    booked = sorted(booked_starts)

    free: list[TimeInterval] = []
    for day in _each_day(window_start, window_end):
        ranges = merge_intervals(
            TimeInterval(
                to_instant(day, template.start_time, tz),
                to_instant(day, template.end_time, tz),
            )
            for template in templates_by_weekday.get(day.weekday(), [])
        )

        for exception in exceptions_by_date.get(day, []):
            ranges = _apply_exception(ranges, exception, day, tz)

        for booked_start in booked:
            ranges = subtract_interval(ranges, booked_start, booked_start + session_width)

        free.extend(iv for iv in ranges if iv.start < iv.end)

    return sorted(free, key=lambda iv: iv.start)


def resolve_availability(
    session: Session,
    *,
    trainer_id: int,
    window_start: date,
    window_end: date,
    tz: Optional[ZoneInfo] = None,
) -> list[TimeInterval]:
    """Load a trainer's rules and bookings and compute free intervals."""
    if window_end < window_start:
        raise ValidationError("Availability window end must not precede its start.")
    if tz is None:
        tz = config.TRAINER_TIMEZONE

    if not session.get(Trainer, trainer_id):
        raise NotFoundError("Trainer not found.")

    templates = session.scalars(
        select(AvailabilityTemplate).where(AvailabilityTemplate.trainer_id == trainer_id)
    ).all()

    exceptions = session.scalars(
        select(AvailabilityException)
        .where(
            AvailabilityException.trainer_id == trainer_id,
            AvailabilityException.exception_date >= window_start,
            AvailabilityException.exception_date <= window_end,
        )
        .order_by(AvailabilityException.created_at, AvailabilityException.exception_id)
    ).all()

    # Pad by a day on each side so timezone offsets cannot hide a booking.
    range_start = to_instant(window_start - timedelta(days=1), time.min, tz)
    range_end = to_instant(window_end + timedelta(days=2), time.min, tz)
    booked_starts = session.scalars(
        select(TrainingSession.start_time).where(
            TrainingSession.trainer_id == trainer_id,
            TrainingSession.status.notin_(NON_BLOCKING_STATUSES),
            TrainingSession.start_time < range_end,
            TrainingSession.end_time > range_start,
        )
    ).all()

    return calculate_free_intervals(
        templates,
        exceptions,
        booked_starts,
        window_start,
        window_end,
        tz=tz,
    )
