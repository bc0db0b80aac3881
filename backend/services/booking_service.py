"""
Booking service

The authoritative conflict check. Every reservation for a provider and date
goes through that day's ledger row: the row is locked (where the database
supports row locks), the current bookings are re-read and checked, and the
insert only commits if the ledger version is still the one read at the start.
A moved version means another reservation committed in between, so the whole
check-and-write is run again from the top.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.clock import clinic_now
from backend.core.errors import (
    BookingConflict,
    BookingError,
    InvalidBookingRequest,
    PermissionDenied,
    ResourceNotFound,
    StoreUnavailable,
)
from backend.models.appointment import (
    APPOINTMENT_STATUSES,
    CANCELLED_STATUS,
    Appointment,
    AppointmentStatusChange,
    BookingLedger,
)
from backend.models.provider import Provider, Service
from backend.scheduling.conflicts import BookedInterval, find_conflicts
from backend.scheduling.schedule import MINUTES_PER_DAY, Interval, day_of_week, minutes_to_time, to_minutes
from backend.services import notifications
from backend.services.availability_service import get_provider, load_bookings, load_schedule

logger = logging.getLogger(__name__)

STATUS_TRANSITIONS = {
    'pending': ('confirmed', 'cancelled'),
    'confirmed': ('in_progress', 'completed', 'cancelled'),
    'in_progress': ('completed',),
    'completed': (),
    'cancelled': (),
}
RESCHEDULABLE_STATUSES = ('pending', 'confirmed')
REBOOKABLE_STATUSES = ('completed', 'cancelled')

BeforeCommit = Callable[[Session, Appointment], None]


@dataclass(frozen=True)
class ReservationRequest:
    tenant_id: str
    provider_id: str
    appointment_date: date
    start_time: time
    service_id: Optional[str] = None
    duration_minutes: Optional[int] = None
    patient_name: Optional[str] = None
    patient_email: Optional[str] = None
    patient_phone: Optional[str] = None
    notes: Optional[str] = None
    allow_overbooking: bool = False
    requested_by_role: Optional[str] = None


class _LedgerMoved(Exception):
    """Another reservation for the same provider and day committed first."""


def resolve_duration(db: Session, request: ReservationRequest) -> int:
    service = None
    if request.service_id:
        service = db.query(Service).filter(Service.id == request.service_id).first()
        if service is None or not service.is_active or service.tenant_id != request.tenant_id:
            raise ResourceNotFound('Service not found.')

    duration = request.duration_minutes
    if duration is None and service is not None:
        duration = service.duration_minutes
    if duration is None:
        raise InvalidBookingRequest('Either service_id or duration_minutes must be provided.')

    if not config.MIN_DURATION_MINUTES <= duration <= config.MAX_DURATION_MINUTES:
        raise InvalidBookingRequest(
            f'duration_minutes must be between {config.MIN_DURATION_MINUTES} and {config.MAX_DURATION_MINUTES}.'
        )
    return duration


def requested_interval(start_time: time, duration_minutes: int) -> Interval:
    start = to_minutes(start_time)
    end = start + duration_minutes
    if end > MINUTES_PER_DAY - 1:
        raise InvalidBookingRequest('Appointments cannot extend past midnight.')
    return Interval(start, end)


def ensure_ledger_row(db: Session, provider_id: str, booking_date: date) -> None:
    exists = db.query(BookingLedger.id).filter(
        BookingLedger.provider_id == provider_id,
        BookingLedger.booking_date == booking_date,
    ).first()
    if exists:
        return

    db.add(BookingLedger(provider_id=provider_id, booking_date=booking_date, version=0))
    try:
        db.commit()
    except IntegrityError:
        # Created by a concurrent request; the unique constraint kept it to one row.
        db.rollback()


def lock_ledger(db: Session, provider_id: str, booking_date: date) -> int:
    return db.execute(
        select(BookingLedger.version)
        .where(
            BookingLedger.provider_id == provider_id,
            BookingLedger.booking_date == booking_date,
        )
        .with_for_update()
    ).scalar_one()


def bump_ledger(db: Session, provider_id: str, booking_date: date, expected_version: int) -> bool:
    result = db.execute(
        update(BookingLedger)
        .where(
            BookingLedger.provider_id == provider_id,
            BookingLedger.booking_date == booking_date,
            BookingLedger.version == expected_version,
        )
        .values(version=BookingLedger.version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def load_day_bookings(db: Session, provider_id: str, booking_date: date) -> list[BookedInterval]:
    return load_bookings(db, provider_id, booking_date, booking_date).get(booking_date, [])


def _reserve_once(
    db: Session,
    request: ReservationRequest,
    provider: Provider,
    interval: Interval,
    exclude_appointment_id: Optional[int],
    before_commit: Optional[BeforeCommit],
) -> Appointment:
    version = lock_ledger(db, provider.id, request.appointment_date)

    schedule = None
    weekday = None
    if provider.kind in config.STRICT_SCHEDULE_PROVIDER_KINDS:
        schedule = load_schedule(db, provider.id)
        weekday = day_of_week(request.appointment_date)

    bookings = load_day_bookings(db, provider.id, request.appointment_date)
    reasons = find_conflicts(
        interval,
        bookings,
        schedule=schedule,
        weekday=weekday,
        exclude_appointment_id=exclude_appointment_id,
    )

    if reasons and not request.allow_overbooking:
        raise BookingConflict(reasons)
    if reasons:
        logger.warning(
            'Overbooking provider %s on %s %s by role %s: %s',
            provider.id,
            request.appointment_date,
            interval.label(),
            request.requested_by_role,
            '; '.join(reason.describe() for reason in reasons),
        )

    appointment = Appointment(
        tenant_id=request.tenant_id,
        provider_id=provider.id,
        service_id=request.service_id,
        appointment_date=request.appointment_date,
        start_time=minutes_to_time(interval.start),
        end_time=minutes_to_time(interval.end),
        status='pending',
        patient_name=request.patient_name,
        patient_email=request.patient_email,
        patient_phone=request.patient_phone,
        notes=request.notes,
        is_overbooked=bool(reasons),
    )
    db.add(appointment)
    db.flush()

    if before_commit is not None:
        before_commit(db, appointment)

    if not bump_ledger(db, provider.id, request.appointment_date, version):
        raise _LedgerMoved()

    db.commit()
    db.refresh(appointment)
    return appointment


def run_reservation(
    db: Session,
    request: ReservationRequest,
    now: Optional[datetime] = None,
    exclude_appointment_id: Optional[int] = None,
    before_commit: Optional[BeforeCommit] = None,
) -> Appointment:
    now = now or clinic_now()

    if request.allow_overbooking and (request.requested_by_role or '').strip().lower() not in config.OVERBOOKING_ROLES:
        raise PermissionDenied('Only clinic staff can overbook an appointment.')

    try:
        provider = get_provider(db, request.provider_id, request.tenant_id)
        if not provider.allow_bookings:
            raise InvalidBookingRequest('Selected provider is not currently accepting bookings.')

        duration = resolve_duration(db, request)
        interval = requested_interval(request.start_time, duration)
        if datetime.combine(request.appointment_date, minutes_to_time(interval.start)) <= now:
            raise InvalidBookingRequest('Appointments must be scheduled in the future.')
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreUnavailable('Database unavailable.') from exc

    for attempt in range(1, config.RESERVATION_ATTEMPTS + 1):
        try:
            ensure_ledger_row(db, provider.id, request.appointment_date)
            appointment = _reserve_once(db, request, provider, interval, exclude_appointment_id, before_commit)
        except _LedgerMoved:
            db.rollback()
            logger.warning(
                'Concurrent reservation for provider %s on %s, re-running check (attempt %s)',
                provider.id,
                request.appointment_date,
                attempt,
            )
            continue
        except BookingError:
            db.rollback()
            raise
        except IntegrityError as exc:
            db.rollback()
            raise BookingConflict([], 'Time slot was taken by a concurrent booking.') from exc
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreUnavailable('Database unavailable.') from exc

        logger.info(
            'Booked appointment %s for provider %s on %s %s',
            appointment.id,
            provider.id,
            appointment.appointment_date,
            interval.label(),
        )
        return appointment

    raise StoreUnavailable('Could not reserve the slot because of concurrent updates. Please retry.')


def _notify(send: Callable[[Session, Appointment], object], db: Session, appointment: Appointment) -> None:
    try:
        send(db, appointment)
    except Exception:
        logger.exception('Notification dispatch failed for appointment %s', appointment.id)


def check_and_reserve(db: Session, request: ReservationRequest, now: Optional[datetime] = None) -> Appointment:
    """Commit a new pending appointment or raise ``BookingConflict``.

    Raises ``InvalidBookingRequest``, ``ResourceNotFound`` or ``PermissionDenied``
    before anything is written, and ``StoreUnavailable`` when the datastore fails.
    """
    appointment = run_reservation(db, request, now=now)
    _notify(notifications.queue_booking_confirmation, db, appointment)
    return appointment


def get_appointment(db: Session, appointment_id: int, tenant_id: Optional[str] = None) -> Appointment:
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).populate_existing().first()
    if appointment is None or (tenant_id is not None and appointment.tenant_id != tenant_id):
        raise ResourceNotFound('Appointment not found.')
    return appointment


def lock_appointment(db: Session, appointment_id: int, tenant_id: Optional[str] = None) -> Appointment:
    """Re-read an appointment from the database, row-locked where supported.

    Replaces whatever copy the session already holds, so status checks never
    run against a value another request has since changed.
    """
    appointment = db.execute(
        select(Appointment)
        .where(Appointment.id == appointment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if appointment is None or (tenant_id is not None and appointment.tenant_id != tenant_id):
        raise ResourceNotFound('Appointment not found.')
    return appointment


def list_appointments(
    db: Session,
    tenant_id: str,
    provider_id: Optional[str] = None,
    appointment_date: Optional[date] = None,
    status: Optional[str] = None,
) -> list[Appointment]:
    if status is not None and status not in APPOINTMENT_STATUSES:
        raise InvalidBookingRequest('Invalid appointment status.')

    query = db.query(Appointment).filter(Appointment.tenant_id == tenant_id)
    if provider_id:
        query = query.filter(Appointment.provider_id == provider_id)
    if appointment_date:
        query = query.filter(Appointment.appointment_date == appointment_date)
    if status:
        query = query.filter(Appointment.status == status)

    return query.order_by(Appointment.appointment_date.asc(), Appointment.start_time.asc()).all()


def apply_transition(
    db: Session,
    appointment: Appointment,
    new_status: str,
    reason: Optional[str],
    changed_by_role: Optional[str],
) -> None:
    if new_status not in APPOINTMENT_STATUSES:
        raise InvalidBookingRequest('Invalid appointment status.')

    current_status = appointment.status
    if current_status == new_status:
        raise InvalidBookingRequest(f"Appointment is already in '{new_status}' status.")
    if new_status not in STATUS_TRANSITIONS.get(current_status, ()):
        raise InvalidBookingRequest(f"Status transition from '{current_status}' to '{new_status}' is not allowed.")

    # Only applies if nobody moved the status since it was read.
    result = db.execute(
        update(Appointment)
        .where(
            Appointment.id == appointment.id,
            Appointment.status == current_status,
        )
        .values(status=new_status, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidBookingRequest('Appointment status was changed by another request. Reload and retry.')

    db.add(
        AppointmentStatusChange(
            appointment_id=appointment.id,
            from_status=current_status,
            to_status=new_status,
            reason=reason,
            changed_by_role=changed_by_role,
        )
    )


def transition_status(
    db: Session,
    appointment_id: int,
    new_status: str,
    tenant_id: Optional[str] = None,
    reason: Optional[str] = None,
    changed_by_role: Optional[str] = None,
) -> Appointment:
    try:
        appointment = lock_appointment(db, appointment_id, tenant_id)
        previous_status = appointment.status
        apply_transition(db, appointment, new_status, reason, changed_by_role)
        db.commit()
        db.refresh(appointment)
    except BookingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreUnavailable('Database unavailable.') from exc

    logger.info('Appointment %s moved from %s to %s', appointment.id, previous_status, new_status)
    return appointment


def cancel_appointment(
    db: Session,
    appointment_id: int,
    tenant_id: Optional[str] = None,
    reason: Optional[str] = None,
    changed_by_role: Optional[str] = None,
) -> Appointment:
    appointment = transition_status(db, appointment_id, CANCELLED_STATUS, tenant_id, reason, changed_by_role)
    _notify(notifications.queue_cancellation_notice, db, appointment)
    return appointment


def _follow_up_request(
    original: Appointment,
    new_date: date,
    new_start_time: time,
    allow_overbooking: bool,
    changed_by_role: Optional[str],
) -> ReservationRequest:
    return ReservationRequest(
        tenant_id=original.tenant_id,
        provider_id=original.provider_id,
        appointment_date=new_date,
        start_time=new_start_time,
        service_id=original.service_id,
        duration_minutes=to_minutes(original.end_time) - to_minutes(original.start_time),
        patient_name=original.patient_name,
        patient_email=original.patient_email,
        patient_phone=original.patient_phone,
        notes=original.notes,
        allow_overbooking=allow_overbooking,
        requested_by_role=changed_by_role,
    )


def reschedule_appointment(
    db: Session,
    appointment_id: int,
    new_date: date,
    new_start_time: time,
    tenant_id: Optional[str] = None,
    reason: Optional[str] = None,
    changed_by_role: Optional[str] = None,
    allow_overbooking: bool = False,
    now: Optional[datetime] = None,
) -> Appointment:
    """Move an appointment to a new date and time.

    The replacement is reserved through the same ledger check as a new booking,
    ignoring the original's own interval, and the original is cancelled in the
    same transaction. The original's status is re-read under lock right before
    it is cancelled, so a concurrent completion or cancellation wins.
    """
    try:
        original = get_appointment(db, appointment_id, tenant_id)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreUnavailable('Database unavailable.') from exc

    if original.status not in RESCHEDULABLE_STATUSES:
        raise InvalidBookingRequest('Only pending or confirmed appointments can be rescheduled.')

    request = _follow_up_request(original, new_date, new_start_time, allow_overbooking, changed_by_role)
    original_id = original.id

    def cancel_original(session: Session, replacement: Appointment) -> None:
        current = lock_appointment(session, original_id)
        if current.status not in RESCHEDULABLE_STATUSES:
            raise InvalidBookingRequest('Only pending or confirmed appointments can be rescheduled.')
        replacement.rescheduled_from_id = original_id
        apply_transition(session, current, CANCELLED_STATUS, reason or 'rescheduled', changed_by_role)

    replacement = run_reservation(
        db,
        request,
        now=now,
        exclude_appointment_id=original_id,
        before_commit=cancel_original,
    )
    logger.info('Appointment %s rescheduled as %s', original_id, replacement.id)
    _notify(notifications.queue_reschedule_notice, db, replacement)
    return replacement


def rebook_appointment(
    db: Session,
    appointment_id: int,
    new_date: date,
    new_start_time: time,
    tenant_id: Optional[str] = None,
    changed_by_role: Optional[str] = None,
    allow_overbooking: bool = False,
    now: Optional[datetime] = None,
) -> Appointment:
    """Book a fresh appointment modelled on a completed or cancelled one.

    The original is left untouched; the new booking goes through the normal
    conflict check and is linked back with ``rescheduled_from_id``.
    """
    try:
        original = get_appointment(db, appointment_id, tenant_id)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreUnavailable('Database unavailable.') from exc

    if original.status not in REBOOKABLE_STATUSES:
        raise InvalidBookingRequest(
            f"Appointments in '{original.status}' status cannot be rebooked. Only completed or cancelled ones can."
        )

    request = _follow_up_request(original, new_date, new_start_time, allow_overbooking, changed_by_role)
    original_id = original.id

    def link_original(session: Session, rebooked: Appointment) -> None:
        rebooked.rescheduled_from_id = original_id
        rebooked.is_rebook = True

    rebooked = run_reservation(db, request, now=now, before_commit=link_original)
    logger.info('Appointment %s rebooked as %s', original_id, rebooked.id)
    _notify(notifications.queue_booking_confirmation, db, rebooked)
    return rebooked
