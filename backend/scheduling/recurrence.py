"""
Recurrence expansion

Turns a series rule into the concrete dates of its occurrences. Pure: no
datastore access, no clock. Conflict checks happen per occurrence in the
series service.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterator, Optional

from backend.core import config
from backend.core.errors import InvalidBookingRequest
from backend.scheduling.schedule import day_of_week


@dataclass(frozen=True)
class RecurrenceRule:
    recurrence_type: str
    start_date: date
    interval: int = 1
    days: tuple[int, ...] = field(default_factory=tuple)
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = None


def validate_rule(rule: RecurrenceRule) -> None:
    if rule.recurrence_type not in config.RECURRENCE_TYPES:
        raise InvalidBookingRequest(f'recurrence_type must be one of: {", ".join(config.RECURRENCE_TYPES)}.')
    if not 1 <= rule.interval <= config.MAX_RECURRENCE_INTERVAL:
        raise InvalidBookingRequest(f'recurrence_interval must be between 1 and {config.MAX_RECURRENCE_INTERVAL}.')
    if any(not 0 <= day <= 6 for day in rule.days):
        raise InvalidBookingRequest('recurrence_days must be between 0 (Sunday) and 6 (Saturday).')
    if rule.recurrence_type == 'custom' and not rule.days:
        raise InvalidBookingRequest('Custom recurrence needs at least one day in recurrence_days.')
    if rule.end_date is None and rule.max_occurrences is None:
        raise InvalidBookingRequest('Either end_date or max_occurrences must be provided.')
    if rule.end_date is not None and rule.end_date < rule.start_date:
        raise InvalidBookingRequest('end_date cannot be before start_date.')
    if rule.max_occurrences is not None and not 1 <= rule.max_occurrences <= config.MAX_SERIES_OCCURRENCES:
        raise InvalidBookingRequest(f'max_occurrences must be between 1 and {config.MAX_SERIES_OCCURRENCES}.')


def add_months(value: date, months: int) -> date:
    """Same day of month ``months`` later, clamped to the end of shorter months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(value.day, calendar.monthrange(year, month)[1]))


def _weekly_candidates(rule: RecurrenceRule, week_step: int) -> Iterator[date]:
    days = sorted(set(rule.days)) or [day_of_week(rule.start_date)]
    week_start = rule.start_date - timedelta(days=day_of_week(rule.start_date))
    while True:
        for day in days:
            candidate = week_start + timedelta(days=day)
            if candidate >= rule.start_date:
                yield candidate
        week_start += timedelta(weeks=week_step)


def _candidates(rule: RecurrenceRule) -> Iterator[date]:
    if rule.recurrence_type == 'daily':
        current = rule.start_date
        while True:
            yield current
            current += timedelta(days=rule.interval)
    elif rule.recurrence_type == 'weekly':
        yield from _weekly_candidates(rule, rule.interval)
    elif rule.recurrence_type == 'biweekly':
        yield from _weekly_candidates(rule, 2)
    elif rule.recurrence_type == 'monthly':
        step = 0
        while True:
            yield add_months(rule.start_date, step * rule.interval)
            step += 1
    else:
        current = rule.start_date
        while True:
            if day_of_week(current) in rule.days:
                yield current
            current += timedelta(days=1)


def expand_occurrences(rule: RecurrenceRule) -> list[date]:
    """Occurrence dates in ascending order.

    Stops at ``end_date``, at ``max_occurrences`` (never more than the
    configured series limit), or at the configured span from ``start_date``,
    whichever comes first.
    """
    validate_rule(rule)

    limit = min(rule.max_occurrences or config.MAX_SERIES_OCCURRENCES, config.MAX_SERIES_OCCURRENCES)
    horizon = rule.start_date + timedelta(days=config.MAX_SERIES_SPAN_DAYS)
    if rule.end_date is not None:
        horizon = min(horizon, rule.end_date)

    dates: list[date] = []
    for candidate in _candidates(rule):
        if candidate > horizon or len(dates) >= limit:
            break
        dates.append(candidate)
    return dates
