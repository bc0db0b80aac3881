"""
Slot generation

Turns a provider's weekly schedule plus existing bookings into discrete
bookable slots. Output is advisory: nothing is reserved, and the booking
service re-checks every request at commit time.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Mapping, Optional, Sequence

from backend.core import config
from backend.core.errors import ConflictReason, InvalidBookingRequest
from backend.scheduling.conflicts import (
    OVERLAPS_APPOINTMENT,
    OVERLAPS_BREAK,
    BookedInterval,
    active_bookings,
)
from backend.scheduling.schedule import (
    DAY_NAMES,
    MINUTES_PER_DAY,
    Interval,
    WeeklySchedule,
    day_of_week,
    format_minutes,
    overlaps,
)


@dataclass(frozen=True)
class SlotRequest:
    duration_minutes: int = config.DEFAULT_DURATION_MINUTES
    base_date: Optional[date] = None
    suggestion_type: str = config.DEFAULT_SUGGESTION_TYPE
    max_per_day: int = config.DEFAULT_MAX_SLOTS_PER_DAY


@dataclass(frozen=True)
class Slot:
    date: date
    day_of_week: int
    start: int
    end: int
    is_preferred: bool = False

    @property
    def start_time(self) -> str:
        return format_minutes(self.start)

    @property
    def end_time(self) -> str:
        return format_minutes(self.end)

    @property
    def day_name(self) -> str:
        return DAY_NAMES[self.day_of_week]


@dataclass
class DailySlots:
    date: date
    day_of_week: int
    slots: list[Slot] = field(default_factory=list)

    @property
    def day_name(self) -> str:
        return DAY_NAMES[self.day_of_week]

    @property
    def slot_count(self) -> int:
        return len(self.slots)


@dataclass
class SlotSuggestions:
    start_date: date
    end_date: date
    duration_minutes: int
    days: list[DailySlots] = field(default_factory=list)
    next_available: list[Slot] = field(default_factory=list)

    @property
    def total_slots(self) -> int:
        return sum(day.slot_count for day in self.days)


@dataclass(frozen=True)
class GridSlot:
    start: int
    end: int
    conflicts: tuple[ConflictReason, ...] = ()

    @property
    def is_available(self) -> bool:
        return not self.conflicts

    @property
    def start_time(self) -> str:
        return format_minutes(self.start)

    @property
    def end_time(self) -> str:
        return format_minutes(self.end)


def validate_slot_request(request: SlotRequest) -> None:
    if not config.MIN_DURATION_MINUTES <= request.duration_minutes <= config.MAX_DURATION_MINUTES:
        raise InvalidBookingRequest(
            f'duration_minutes must be between {config.MIN_DURATION_MINUTES} and {config.MAX_DURATION_MINUTES}.'
        )
    if not 1 <= request.max_per_day <= config.MAX_SLOTS_PER_DAY_LIMIT:
        raise InvalidBookingRequest(f'max_per_day must be between 1 and {config.MAX_SLOTS_PER_DAY_LIMIT}.')
    if request.suggestion_type not in config.SUGGESTION_RANGE_DAYS:
        raise InvalidBookingRequest(
            f'suggestion_type must be one of: {", ".join(sorted(config.SUGGESTION_RANGE_DAYS))}.'
        )


def resolve_base_date(base_date: Optional[date], now: datetime, rollover_hour: Optional[int]) -> date:
    """Start of the search range.

    Defaults to today; a request for today made at or after ``rollover_hour``
    starts from tomorrow instead. ``rollover_hour=None`` disables the rollover.
    """
    today = now.date()
    resolved = base_date or today
    if resolved == today and rollover_hour is not None and now.hour >= rollover_hour:
        resolved = today + timedelta(days=1)
    return resolved


def resolve_range_end(base_date: date, suggestion_type: str) -> date:
    return base_date + timedelta(days=config.SUGGESTION_RANGE_DAYS[suggestion_type])


def first_start_after_cutoff(window_start: int, cutoff: int, duration_minutes: int) -> int:
    """First walk position for a window on the current day.

    Starts before ``cutoff`` are dropped and the walk resumes on the next
    multiple of ``duration_minutes`` (counted from midnight) at or after it.
    """
    if window_start >= cutoff:
        return window_start
    return -(-cutoff // duration_minutes) * duration_minutes


def generate_day_slots(
    target_date: date,
    schedule: WeeklySchedule,
    bookings: Sequence[BookedInterval],
    duration_minutes: int,
    max_per_day: int,
    now: Optional[datetime] = None,
    buffer_minutes: int = config.TODAY_BUFFER_MINUTES,
) -> list[Slot]:
    weekday = day_of_week(target_date)
    windows = schedule.windows_for(weekday)
    if not windows:
        return []

    cutoff = None
    if now is not None:
        if target_date < now.date():
            return []
        if target_date == now.date():
            cutoff = now.hour * 60 + now.minute + buffer_minutes
            if cutoff >= MINUTES_PER_DAY:
                return []

    breaks = schedule.breaks_for(weekday)
    booked = active_bookings(bookings)
    starts: set[int] = set()

    for window in windows:
        slot_start = window.interval.start
        if cutoff is not None:
            slot_start = first_start_after_cutoff(slot_start, cutoff, duration_minutes)

        while slot_start + duration_minutes <= window.interval.end:
            candidate = Interval(slot_start, slot_start + duration_minutes)
            blocked = any(overlaps(candidate, brk.interval) for brk in breaks) or any(
                overlaps(candidate, booking.interval) for booking in booked
            )
            if not blocked:
                starts.add(slot_start)
            slot_start += duration_minutes

    return [
        Slot(date=target_date, day_of_week=weekday, start=start, end=start + duration_minutes)
        for start in sorted(starts)[:max_per_day]
    ]


def generate_slots(
    request: SlotRequest,
    schedule: WeeklySchedule,
    bookings_by_date: Mapping[date, Sequence[BookedInterval]],
    now: datetime,
    buffer_minutes: int = config.TODAY_BUFFER_MINUTES,
    rollover_hour: Optional[int] = config.BASE_DATE_ROLLOVER_HOUR,
    next_available_count: int = config.NEXT_AVAILABLE_COUNT,
) -> SlotSuggestions:
    """Bookable slots for every date from the resolved base date through the range end.

    Days are emitted in date order and slots within a day in start order, so
    the first entry of ``next_available`` is always the earliest option.
    """
    validate_slot_request(request)

    start_date = resolve_base_date(request.base_date, now, rollover_hour)
    end_date = resolve_range_end(start_date, request.suggestion_type)
    result = SlotSuggestions(start_date=start_date, end_date=end_date, duration_minutes=request.duration_minutes)

    if not schedule.has_availability():
        return result

    current = start_date
    while current <= end_date:
        slots = generate_day_slots(
            current,
            schedule,
            bookings_by_date.get(current, ()),
            request.duration_minutes,
            request.max_per_day,
            now=now,
            buffer_minutes=buffer_minutes,
        )
        if slots:
            result.days.append(DailySlots(date=current, day_of_week=slots[0].day_of_week, slots=slots))
            if len(result.next_available) < next_available_count:
                result.next_available.extend(slots[: next_available_count - len(result.next_available)])
        current += timedelta(days=1)

    result.next_available = [
        Slot(
            date=slot.date,
            day_of_week=slot.day_of_week,
            start=slot.start,
            end=slot.end,
            is_preferred=index == 0,
        )
        for index, slot in enumerate(result.next_available)
    ]
    return result


def build_day_grid(
    target_date: date,
    schedule: WeeklySchedule,
    bookings: Sequence[BookedInterval],
    step_minutes: int = config.DAY_GRID_STEP_MINUTES,
) -> list[GridSlot]:
    """Every step inside the day's windows, annotated with what blocks it.

    Unlike ``generate_day_slots`` blocked positions are kept so a calendar can
    show why they are unavailable.
    """
    if step_minutes <= 0:
        raise InvalidBookingRequest('step_minutes must be positive.')

    weekday = day_of_week(target_date)
    breaks = schedule.breaks_for(weekday)
    booked = active_bookings(bookings)
    grid: dict[int, GridSlot] = {}

    for window in schedule.windows_for(weekday):
        position = window.interval.start
        while position < window.interval.end:
            candidate = Interval(position, min(position + step_minutes, window.interval.end))
            conflicts = [
                ConflictReason(
                    kind=OVERLAPS_BREAK,
                    start_time=format_minutes(brk.interval.start),
                    end_time=format_minutes(brk.interval.end),
                    label=brk.label or brk.kind,
                )
                for brk in breaks
                if overlaps(candidate, brk.interval)
            ]
            conflicts.extend(
                ConflictReason(
                    kind=OVERLAPS_APPOINTMENT,
                    start_time=format_minutes(booking.interval.start),
                    end_time=format_minutes(booking.interval.end),
                    appointment_id=booking.appointment_id,
                    label=booking.status,
                )
                for booking in booked
                if overlaps(candidate, booking.interval)
            )
            grid.setdefault(position, GridSlot(start=candidate.start, end=candidate.end, conflicts=tuple(conflicts)))
            position += step_minutes

    return [grid[start] for start in sorted(grid)]
