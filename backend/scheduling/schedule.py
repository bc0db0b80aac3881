"""
Schedule model

A provider's recurring weekly shape of bookable time: availability windows and
break intervals keyed by day of week (0=Sunday .. 6=Saturday). Times of day are
handled as minutes since midnight; every interval is half-open [start, end).
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Iterable, Union

MINUTES_PER_DAY = 24 * 60

DAY_NAMES = {
    0: 'Sunday',
    1: 'Monday',
    2: 'Tuesday',
    3: 'Wednesday',
    4: 'Thursday',
    5: 'Friday',
    6: 'Saturday',
}

TimeValue = Union[time, str, int]


def to_minutes(value: TimeValue) -> int:
    """Convert a time of day (``time``, ``'HH:MM'``, ``'HH:MM:SS'`` or minutes) to minutes since midnight."""
    if isinstance(value, bool):
        raise ValueError(f'Cannot convert {value!r} to a time of day')
    if isinstance(value, int):
        minutes = value
    elif isinstance(value, time):
        minutes = value.hour * 60 + value.minute
    elif isinstance(value, str):
        parts = value.strip().split(':')
        if len(parts) not in (2, 3) or not all(part.isdigit() for part in parts):
            raise ValueError(f'Time must be HH:MM or HH:MM:SS, got {value!r}')
        hours, mins = int(parts[0]), int(parts[1])
        if hours > 23 or mins > 59:
            raise ValueError(f'Time out of range: {value!r}')
        minutes = hours * 60 + mins
    else:
        raise ValueError(f'Cannot convert {type(value)} to a time of day')

    if not 0 <= minutes <= MINUTES_PER_DAY:
        raise ValueError(f'Time out of range: {value!r}')
    return minutes


def format_minutes(minutes: int) -> str:
    return f'{minutes // 60:02d}:{minutes % 60:02d}'


def minutes_to_time(minutes: int) -> time:
    if minutes >= MINUTES_PER_DAY:
        raise ValueError('Intervals cannot cross midnight.')
    return time(minutes // 60, minutes % 60)


def day_of_week(value: Union[date, datetime]) -> int:
    """Sunday-based day of week: 0=Sunday .. 6=Saturday."""
    return (value.weekday() + 1) % 7


@dataclass(frozen=True, order=True)
class Interval:
    start: int
    end: int

    @classmethod
    def from_times(cls, start: TimeValue, end: TimeValue) -> 'Interval':
        return cls(to_minutes(start), to_minutes(end))

    @property
    def duration(self) -> int:
        return self.end - self.start

    def contains(self, other: 'Interval') -> bool:
        return self.start <= other.start and other.end <= self.end

    def label(self) -> str:
        return f'{format_minutes(self.start)}-{format_minutes(self.end)}'


def overlaps(a: Interval, b: Interval) -> bool:
    """Half-open overlap: intervals that only touch at an edge do not overlap."""
    return a.start < b.end and b.start < a.end


@dataclass(frozen=True)
class ScheduleEntry:
    day_of_week: int
    interval: Interval
    kind: str | None = None
    label: str | None = None
    active: bool = True


class WeeklySchedule:
    """Read-only view over a provider's windows and breaks.

    Inactive entries are ignored. Lookups return entries ordered by start time.
    """

    def __init__(self, windows: Iterable[ScheduleEntry] = (), breaks: Iterable[ScheduleEntry] = ()):
        self._windows = self._index(windows)
        self._breaks = self._index(breaks)

    @staticmethod
    def _index(entries: Iterable[ScheduleEntry]) -> dict[int, list[ScheduleEntry]]:
        by_day: dict[int, list[ScheduleEntry]] = {}
        for entry in entries:
            if not entry.active:
                continue
            by_day.setdefault(entry.day_of_week, []).append(entry)
        for day_entries in by_day.values():
            day_entries.sort(key=lambda entry: (entry.interval.start, entry.interval.end))
        return by_day

    def windows_for(self, weekday: int) -> list[ScheduleEntry]:
        return list(self._windows.get(weekday, []))

    def breaks_for(self, weekday: int) -> list[ScheduleEntry]:
        return list(self._breaks.get(weekday, []))

    def has_availability(self) -> bool:
        return any(self._windows.values())

    @classmethod
    def from_rows(cls, windows, breaks) -> 'WeeklySchedule':
        """Build from ORM rows (or any objects exposing the same attributes)."""
        return cls(
            windows=[
                ScheduleEntry(
                    day_of_week=row.day_of_week,
                    interval=Interval.from_times(row.start_time, row.end_time),
                    active=bool(row.is_active),
                )
                for row in windows
            ],
            breaks=[
                ScheduleEntry(
                    day_of_week=row.day_of_week,
                    interval=Interval.from_times(row.start_time, row.end_time),
                    kind=row.kind,
                    label=row.label,
                    active=bool(row.is_active),
                )
                for row in breaks
            ],
        )
