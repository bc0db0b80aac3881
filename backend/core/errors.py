"""Error taxonomy shared by the scheduling core and the booking services."""

from dataclasses import dataclass
from datetime import date


class BookingError(Exception):
    """Base class for every error the booking engine raises on purpose."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidBookingRequest(BookingError):
    """Malformed or out-of-range input. Nothing was written."""


class ResourceNotFound(BookingError):
    """A referenced provider, service, tenant or appointment is missing or not accessible."""


class PermissionDenied(BookingError):
    """The caller's role may not perform the requested action."""


class StoreUnavailable(BookingError):
    """The datastore failed. Safe to re-run the whole operation."""


@dataclass(frozen=True)
class ConflictReason:
    kind: str
    start_time: str
    end_time: str
    appointment_id: int | None = None
    label: str | None = None

    def describe(self) -> str:
        if self.kind == 'overlaps_appointment':
            return f'Overlaps existing appointment {self.start_time}-{self.end_time}.'
        if self.kind == 'overlaps_break':
            return f'Overlaps {self.label or "break"} period {self.start_time}-{self.end_time}.'
        return f'{self.start_time}-{self.end_time} is outside availability hours.'

    def as_dict(self) -> dict:
        return {
            'kind': self.kind,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'appointment_id': self.appointment_id,
            'label': self.label,
            'message': self.describe(),
        }


class BookingConflict(BookingError):
    """The requested interval collides with a committed booking, a break, or falls outside availability."""

    def __init__(self, reasons: list[ConflictReason], message: str = 'Time slot is no longer available.'):
        super().__init__(message)
        self.reasons = list(reasons)


@dataclass(frozen=True)
class OccurrenceConflict:
    occurrence: int
    date: date
    reasons: tuple[ConflictReason, ...]

    def as_dict(self) -> dict:
        return {
            'occurrence': self.occurrence,
            'date': self.date.isoformat(),
            'conflicts': [reason.as_dict() for reason in self.reasons],
        }


class SeriesConflict(BookingConflict):
    """Too many occurrences of a recurring series collide; nothing was created."""

    def __init__(self, occurrences: list[OccurrenceConflict], total_occurrences: int):
        super().__init__(
            [reason for occurrence in occurrences for reason in occurrence.reasons],
            f'{len(occurrences)} of {total_occurrences} occurrences have scheduling conflicts.',
        )
        self.occurrences = list(occurrences)
        self.total_occurrences = total_occurrences
