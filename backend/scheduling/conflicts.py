"""
Conflict detection

Pure checks of a requested interval against a provider's existing bookings and,
optionally, its weekly schedule. Used by the booking service at commit time and
by the slot generator when filtering candidates.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from backend.core.errors import ConflictReason
from backend.scheduling.schedule import Interval, WeeklySchedule, format_minutes, overlaps

CANCELLED = 'cancelled'

OUTSIDE_AVAILABILITY = 'outside_availability'
OVERLAPS_APPOINTMENT = 'overlaps_appointment'
OVERLAPS_BREAK = 'overlaps_break'


@dataclass(frozen=True)
class BookedInterval:
    interval: Interval
    appointment_id: Optional[int] = None
    status: str = 'pending'

    @property
    def is_active(self) -> bool:
        return self.status != CANCELLED


def active_bookings(
    bookings: Iterable[BookedInterval],
    exclude_appointment_id: Optional[int] = None,
) -> list[BookedInterval]:
    return [
        booking
        for booking in bookings
        if booking.is_active
        and (exclude_appointment_id is None or booking.appointment_id != exclude_appointment_id)
    ]


def booking_conflicts(
    requested: Interval,
    bookings: Iterable[BookedInterval],
    exclude_appointment_id: Optional[int] = None,
) -> list[ConflictReason]:
    return [
        ConflictReason(
            kind=OVERLAPS_APPOINTMENT,
            start_time=format_minutes(booking.interval.start),
            end_time=format_minutes(booking.interval.end),
            appointment_id=booking.appointment_id,
            label=booking.status,
        )
        for booking in active_bookings(bookings, exclude_appointment_id)
        if overlaps(requested, booking.interval)
    ]


def schedule_conflicts(requested: Interval, schedule: WeeklySchedule, weekday: int) -> list[ConflictReason]:
    """Reasons the requested interval violates the weekly schedule for ``weekday``.

    The interval must fit entirely inside a single availability window and must
    not overlap any break.
    """
    reasons: list[ConflictReason] = []

    windows = schedule.windows_for(weekday)
    if not any(window.interval.contains(requested) for window in windows):
        reasons.append(
            ConflictReason(
                kind=OUTSIDE_AVAILABILITY,
                start_time=format_minutes(requested.start),
                end_time=format_minutes(requested.end),
                label='closed' if not windows else None,
            )
        )

    for break_entry in schedule.breaks_for(weekday):
        if overlaps(requested, break_entry.interval):
            reasons.append(
                ConflictReason(
                    kind=OVERLAPS_BREAK,
                    start_time=format_minutes(break_entry.interval.start),
                    end_time=format_minutes(break_entry.interval.end),
                    label=break_entry.label or break_entry.kind,
                )
            )

    return reasons


def find_conflicts(
    requested: Interval,
    bookings: Iterable[BookedInterval],
    schedule: Optional[WeeklySchedule] = None,
    weekday: Optional[int] = None,
    exclude_appointment_id: Optional[int] = None,
) -> list[ConflictReason]:
    """Every reason ``requested`` cannot be booked. Empty means the interval is free.

    Schedule constraints are only checked when both ``schedule`` and ``weekday``
    are given.
    """
    reasons: list[ConflictReason] = []
    if schedule is not None and weekday is not None:
        reasons.extend(schedule_conflicts(requested, schedule, weekday))
    reasons.extend(booking_conflicts(requested, bookings, exclude_appointment_id))
    return reasons
