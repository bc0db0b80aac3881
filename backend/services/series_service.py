"""
Recurring appointment series

A series is expanded into dates up front and every occurrence is checked
against the provider's bookings and schedule. When more than the configured
share of occurrences conflict the whole series is refused. Otherwise the
series row is stored and each free occurrence is reserved on its own through
the booking ledger, so a slot taken in the meantime is skipped rather than
double-booked.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.clock import clinic_now
from backend.core.errors import (
    BookingConflict,
    BookingError,
    InvalidBookingRequest,
    OccurrenceConflict,
    ResourceNotFound,
    SeriesConflict,
    StoreUnavailable,
)
from backend.models.appointment import CANCELLED_STATUS, Appointment, AppointmentSeries
from backend.models.provider import Provider
from backend.scheduling.conflicts import find_conflicts
from backend.scheduling.recurrence import RecurrenceRule, expand_occurrences
from backend.scheduling.schedule import Interval, day_of_week, minutes_to_time
from backend.services import booking_service
from backend.services.availability_service import get_provider, load_bookings, load_schedule

logger = logging.getLogger(__name__)

SERIES_STATUSES = ('active', 'paused', 'completed', 'cancelled')
SERIES_CANCELLABLE_APPOINTMENT_STATUSES = ('pending', 'confirmed')


@dataclass(frozen=True)
class SeriesRequest:
    tenant_id: str
    provider_id: str
    rule: RecurrenceRule
    base_time: time
    service_id: Optional[str] = None
    duration_minutes: Optional[int] = None
    patient_name: Optional[str] = None
    patient_email: Optional[str] = None
    patient_phone: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class SeriesResult:
    series: AppointmentSeries
    total_occurrences: int
    appointments: list[Appointment] = field(default_factory=list)
    skipped: list[OccurrenceConflict] = field(default_factory=list)


def occurrence_request(request: SeriesRequest, occurrence_date: date, duration_minutes: int):
    return booking_service.ReservationRequest(
        tenant_id=request.tenant_id,
        provider_id=request.provider_id,
        appointment_date=occurrence_date,
        start_time=request.base_time,
        service_id=request.service_id,
        duration_minutes=duration_minutes,
        patient_name=request.patient_name,
        patient_email=request.patient_email,
        patient_phone=request.patient_phone,
        notes=request.notes,
    )


def find_occurrence_conflicts(
    db: Session,
    provider: Provider,
    dates: list[date],
    interval: Interval,
) -> list[OccurrenceConflict]:
    schedule = None
    if provider.kind in config.STRICT_SCHEDULE_PROVIDER_KINDS:
        schedule = load_schedule(db, provider.id)
    bookings = load_bookings(db, provider.id, dates[0], dates[-1], tenant_id=provider.tenant_id)

    conflicts = []
    for occurrence, occurrence_date in enumerate(dates, start=1):
        reasons = find_conflicts(
            interval,
            bookings.get(occurrence_date, []),
            schedule=schedule,
            weekday=day_of_week(occurrence_date) if schedule is not None else None,
        )
        if reasons:
            conflicts.append(OccurrenceConflict(occurrence=occurrence, date=occurrence_date, reasons=tuple(reasons)))
    return conflicts


def create_series(db: Session, request: SeriesRequest, now: Optional[datetime] = None) -> SeriesResult:
    """Store a series and reserve every occurrence that is free.

    Raises ``SeriesConflict`` before writing anything when too many occurrences
    collide.
    """
    now = now or clinic_now()
    dates = expand_occurrences(request.rule)
    if not dates:
        raise InvalidBookingRequest('The recurrence rule produced no occurrences.')

    try:
        provider = get_provider(db, request.provider_id, request.tenant_id)
        if not provider.allow_bookings:
            raise InvalidBookingRequest('Selected provider is not currently accepting bookings.')

        duration = booking_service.resolve_duration(db, occurrence_request(request, dates[0], request.duration_minutes))
        interval = booking_service.requested_interval(request.base_time, duration)
        if datetime.combine(dates[0], minutes_to_time(interval.start)) <= now:
            raise InvalidBookingRequest('A series must start in the future.')

        conflicts = find_occurrence_conflicts(db, provider, dates, interval)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreUnavailable('Database unavailable.') from exc

    if len(conflicts) > len(dates) * config.SERIES_MAX_CONFLICT_RATIO:
        raise SeriesConflict(conflicts, len(dates))

    series = AppointmentSeries(
        tenant_id=request.tenant_id,
        provider_id=provider.id,
        service_id=request.service_id,
        recurrence_type=request.rule.recurrence_type,
        recurrence_interval=request.rule.interval,
        recurrence_days=','.join(str(day) for day in sorted(set(request.rule.days))),
        base_time=minutes_to_time(interval.start),
        duration_minutes=duration,
        start_date=request.rule.start_date,
        end_date=request.rule.end_date,
        max_occurrences=request.rule.max_occurrences,
        status='active',
        patient_name=request.patient_name,
        patient_email=request.patient_email,
        patient_phone=request.patient_phone,
        notes=request.notes,
    )
    try:
        db.add(series)
        db.commit()
        db.refresh(series)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreUnavailable('Database unavailable.') from exc

    series_id = series.id
    planned_conflicts = {conflict.occurrence for conflict in conflicts}
    result = SeriesResult(series=series, total_occurrences=len(dates), skipped=list(conflicts))

    for occurrence, occurrence_date in enumerate(dates, start=1):
        if occurrence in planned_conflicts:
            continue

        def link_to_series(session: Session, appointment: Appointment, occurrence=occurrence) -> None:
            appointment.series_id = series_id
            appointment.series_occurrence = occurrence

        try:
            result.appointments.append(
                booking_service.run_reservation(
                    db,
                    occurrence_request(request, occurrence_date, duration),
                    now=now,
                    before_commit=link_to_series,
                )
            )
        except BookingConflict as exc:
            logger.warning('Series %s occurrence %s on %s was taken before it could be reserved', series_id, occurrence, occurrence_date)
            result.skipped.append(OccurrenceConflict(occurrence=occurrence, date=occurrence_date, reasons=tuple(exc.reasons)))

    result.skipped.sort(key=lambda conflict: conflict.occurrence)
    db.refresh(series)
    logger.info(
        'Series %s created for provider %s with %s of %s occurrences booked',
        series_id,
        provider.id,
        len(result.appointments),
        len(dates),
    )
    return result


def get_series(db: Session, series_id: int, tenant_id: Optional[str] = None) -> AppointmentSeries:
    series = db.query(AppointmentSeries).filter(AppointmentSeries.id == series_id).populate_existing().first()
    if series is None or (tenant_id is not None and series.tenant_id != tenant_id):
        raise ResourceNotFound('Series not found.')
    return series


def series_appointments(db: Session, series_id: int) -> list[Appointment]:
    return db.query(Appointment).filter(
        Appointment.series_id == series_id,
    ).order_by(Appointment.series_occurrence.asc()).all()


def list_series(
    db: Session,
    tenant_id: str,
    provider_id: Optional[str] = None,
    status: Optional[str] = None,
) -> list[AppointmentSeries]:
    if status is not None and status not in SERIES_STATUSES:
        raise InvalidBookingRequest('Invalid series status.')

    query = db.query(AppointmentSeries).filter(AppointmentSeries.tenant_id == tenant_id)
    if provider_id:
        query = query.filter(AppointmentSeries.provider_id == provider_id)
    if status:
        query = query.filter(AppointmentSeries.status == status)
    return query.order_by(AppointmentSeries.start_date.asc(), AppointmentSeries.id.asc()).all()


def cancel_series(
    db: Session,
    series_id: int,
    tenant_id: Optional[str] = None,
    future_only: bool = False,
    reason: Optional[str] = None,
    changed_by_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Cancel a series and its pending or confirmed appointments.

    With ``future_only`` appointments that already started are left alone.
    Returns the number of appointments cancelled.
    """
    now = now or clinic_now()
    cancelled = 0

    try:
        series = get_series(db, series_id, tenant_id)
        if series.status == CANCELLED_STATUS:
            raise InvalidBookingRequest('Series is already cancelled.')

        series.status = CANCELLED_STATUS
        for appointment in series_appointments(db, series.id):
            booking_service.lock_appointment(db, appointment.id)
            if appointment.status not in SERIES_CANCELLABLE_APPOINTMENT_STATUSES:
                continue
            if future_only and datetime.combine(appointment.appointment_date, appointment.start_time) <= now:
                continue
            booking_service.apply_transition(
                db,
                appointment,
                CANCELLED_STATUS,
                reason or 'series cancelled',
                changed_by_role,
            )
            cancelled += 1
        db.commit()
    except BookingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreUnavailable('Database unavailable.') from exc

    logger.info('Series %s cancelled with %s appointments', series_id, cancelled)
    return cancelled
