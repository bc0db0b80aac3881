"""Datastore reads that feed the pure scheduling core."""

from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from backend.core import config
from backend.core.clock import clinic_now
from backend.core.errors import InvalidBookingRequest, ResourceNotFound
from backend.models.appointment import CANCELLED_STATUS, Appointment
from backend.models.availability import AvailabilityWindow, BreakInterval
from backend.models.provider import PROVIDER_KINDS, Provider
from backend.scheduling.conflicts import BookedInterval
from backend.scheduling.schedule import Interval, WeeklySchedule
from backend.scheduling.slots import (
    GridSlot,
    SlotRequest,
    SlotSuggestions,
    build_day_grid,
    generate_slots,
    resolve_base_date,
    resolve_range_end,
    validate_slot_request,
)


def get_provider(
    db: Session,
    provider_id: str,
    tenant_id: Optional[str] = None,
    provider_kind: Optional[str] = None,
) -> Provider:
    if not provider_id or not provider_id.strip():
        raise InvalidBookingRequest('Provider ID is required.')
    if provider_kind is not None and provider_kind not in PROVIDER_KINDS:
        raise InvalidBookingRequest(f'provider_kind must be one of: {", ".join(PROVIDER_KINDS)}.')

    provider = db.query(Provider).filter(Provider.id == provider_id).first()
    if provider is None or not provider.is_active:
        raise ResourceNotFound('Provider not found.')
    if tenant_id is not None and provider.tenant_id != tenant_id:
        raise ResourceNotFound('Provider not active in this tenant.')
    if provider_kind is not None and provider.kind != provider_kind:
        raise ResourceNotFound('Provider not found.')

    return provider


def load_schedule(db: Session, provider_id: str) -> WeeklySchedule:
    windows = db.query(AvailabilityWindow).filter(
        AvailabilityWindow.provider_id == provider_id,
        AvailabilityWindow.is_active.is_(True),
    ).all()
    breaks = db.query(BreakInterval).filter(
        BreakInterval.provider_id == provider_id,
        BreakInterval.is_active.is_(True),
    ).all()
    return WeeklySchedule.from_rows(windows, breaks)


def to_booked_interval(appointment: Appointment) -> BookedInterval:
    return BookedInterval(
        interval=Interval.from_times(appointment.start_time, appointment.end_time),
        appointment_id=appointment.id,
        status=appointment.status,
    )


def load_bookings(
    db: Session,
    provider_id: str,
    start_date: date,
    end_date: date,
    tenant_id: Optional[str] = None,
    include_cancelled: bool = False,
) -> dict[date, list[BookedInterval]]:
    query = db.query(Appointment).filter(
        Appointment.provider_id == provider_id,
        Appointment.appointment_date >= start_date,
        Appointment.appointment_date <= end_date,
    )
    if tenant_id is not None:
        query = query.filter(Appointment.tenant_id == tenant_id)
    if not include_cancelled:
        query = query.filter(Appointment.status != CANCELLED_STATUS)

    bookings: dict[date, list[BookedInterval]] = {}
    for appointment in query.order_by(Appointment.appointment_date.asc(), Appointment.start_time.asc()).all():
        bookings.setdefault(appointment.appointment_date, []).append(to_booked_interval(appointment))
    return bookings


def suggest_slots(
    db: Session,
    provider_id: str,
    request: SlotRequest,
    tenant_id: Optional[str] = None,
    provider_kind: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[Provider, SlotSuggestions]:
    validate_slot_request(request)
    now = now or clinic_now()
    provider = get_provider(db, provider_id, tenant_id, provider_kind)

    start_date = resolve_base_date(request.base_date, now, config.BASE_DATE_ROLLOVER_HOUR)
    end_date = resolve_range_end(start_date, request.suggestion_type)

    schedule = load_schedule(db, provider.id)
    bookings = {}
    if schedule.has_availability():
        bookings = load_bookings(db, provider.id, start_date, end_date, tenant_id=provider.tenant_id)

    suggestions = generate_slots(
        request,
        schedule,
        bookings,
        now=now,
        rollover_hour=config.BASE_DATE_ROLLOVER_HOUR,
    )
    return provider, suggestions


def day_grid(
    db: Session,
    provider_id: str,
    target_date: date,
    tenant_id: Optional[str] = None,
    step_minutes: int = config.DAY_GRID_STEP_MINUTES,
) -> tuple[Provider, list[GridSlot]]:
    provider = get_provider(db, provider_id, tenant_id)
    if not provider.allow_bookings:
        raise InvalidBookingRequest('Provider is not currently accepting bookings.')

    schedule = load_schedule(db, provider.id)
    bookings = load_bookings(db, provider.id, target_date, target_date, tenant_id=provider.tenant_id)
    return provider, build_day_grid(target_date, schedule, bookings.get(target_date, []), step_minutes)
