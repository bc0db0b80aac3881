import logging
from datetime import date, datetime, time

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.errors import BookingConflict, BookingError
from backend.database import get_db
from backend.models.appointment import APPOINTMENT_STATUSES
from backend.routes.availability_routes import ensure_database_ready, slot_to_response
from backend.routes.http_errors import database_unavailable, to_http_exception
from backend.scheduling.schedule import to_minutes
from backend.scheduling.slots import SlotRequest
from backend.services import availability_service, booking_service

router = APIRouter(tags=['appointments'])

logger = logging.getLogger(__name__)


def _normalize_optional(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class CreateAppointmentRequest(BaseModel):
    tenant_id: str
    provider_id: str
    appointment_date: date
    start_time: time
    service_id: str | None = None
    duration_minutes: int | None = None
    patient_name: str | None = None
    patient_email: str | None = None
    patient_phone: str | None = None
    notes: str | None = None
    allow_overbooking: bool = False
    requested_by_role: str | None = None

    @field_validator('tenant_id', 'provider_id')
    @classmethod
    def validate_required_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Value is required.')
        return normalized

    @field_validator('start_time')
    @classmethod
    def truncate_to_minute(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)

    @field_validator('patient_email')
    @classmethod
    def validate_patient_email(cls, value: str | None) -> str | None:
        normalized = _normalize_optional(value)
        if normalized is None:
            return None
        normalized = normalized.lower()
        if '@' not in normalized:
            raise ValueError('Invalid patient email.')
        return normalized

    @field_validator('service_id', 'patient_name', 'patient_phone', 'requested_by_role')
    @classmethod
    def strip_optional(cls, value: str | None) -> str | None:
        return _normalize_optional(value)

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        normalized = _normalize_optional(value)
        if normalized is not None and len(normalized) > config.MAX_APPOINTMENT_NOTES_LENGTH:
            raise ValueError(f'Notes must be {config.MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')
        return normalized


class UpdateStatusRequest(BaseModel):
    status: str
    reason: str | None = None
    changed_by_role: str | None = None

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in APPOINTMENT_STATUSES:
            raise ValueError('Invalid appointment status.')
        return normalized

    @field_validator('reason', 'changed_by_role')
    @classmethod
    def strip_optional(cls, value: str | None) -> str | None:
        return _normalize_optional(value)


class CancelAppointmentRequest(BaseModel):
    reason: str | None = None
    changed_by_role: str | None = None

    @field_validator('reason', 'changed_by_role')
    @classmethod
    def strip_optional(cls, value: str | None) -> str | None:
        return _normalize_optional(value)


class RescheduleAppointmentRequest(BaseModel):
    new_date: date
    new_start_time: time
    reason: str
    changed_by_role: str | None = None
    allow_overbooking: bool = False

    @field_validator('new_start_time')
    @classmethod
    def truncate_to_minute(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str) -> str:
        normalized = value.strip()
        if len(normalized) < 3:
            raise ValueError('Reason must be at least 3 characters.')
        return normalized

    @field_validator('changed_by_role')
    @classmethod
    def strip_optional(cls, value: str | None) -> str | None:
        return _normalize_optional(value)


class RebookAppointmentRequest(BaseModel):
    new_date: date
    new_start_time: time
    changed_by_role: str | None = None
    allow_overbooking: bool = False

    @field_validator('new_start_time')
    @classmethod
    def truncate_to_minute(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)

    @field_validator('changed_by_role')
    @classmethod
    def strip_optional(cls, value: str | None) -> str | None:
        return _normalize_optional(value)


class AppointmentResponse(BaseModel):
    id: int
    tenant_id: str
    provider_id: str
    service_id: str | None = None
    appointment_date: date
    start_time: time
    end_time: time
    duration_minutes: int
    status: str
    patient_name: str | None = None
    patient_email: str | None = None
    patient_phone: str | None = None
    notes: str | None = None
    is_overbooked: bool = False
    rescheduled_from_id: int | None = None
    is_rebook: bool = False
    series_id: int | None = None
    series_occurrence: int | None = None
    created_at: datetime | None = None


def appointment_to_response(appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        tenant_id=appointment.tenant_id,
        provider_id=appointment.provider_id,
        service_id=appointment.service_id,
        appointment_date=appointment.appointment_date,
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        duration_minutes=to_minutes(appointment.end_time) - to_minutes(appointment.start_time),
        status=appointment.status or 'pending',
        patient_name=appointment.patient_name,
        patient_email=appointment.patient_email,
        patient_phone=appointment.patient_phone,
        notes=appointment.notes,
        is_overbooked=bool(appointment.is_overbooked),
        rescheduled_from_id=appointment.rescheduled_from_id,
        is_rebook=bool(appointment.is_rebook),
        series_id=appointment.series_id,
        series_occurrence=appointment.series_occurrence,
        created_at=appointment.created_at,
    )


def alternatives_after_conflict(db: Session, tenant_id: str, provider_id: str, duration_minutes: int | None) -> list[dict]:
    """Next open slots to offer alongside a 409; empty when they cannot be computed."""
    try:
        request = SlotRequest(duration_minutes=duration_minutes or config.DEFAULT_DURATION_MINUTES)
        _, suggestions = availability_service.suggest_slots(db, provider_id, request, tenant_id=tenant_id)
        return [slot_to_response(slot).model_dump(mode='json') for slot in suggestions.next_available]
    except (BookingError, SQLAlchemyError):
        db.rollback()
        logger.warning('Could not compute alternatives for provider %s after a conflict', provider_id, exc_info=True)
        return []


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(data: CreateAppointmentRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    request = booking_service.ReservationRequest(
        tenant_id=data.tenant_id,
        provider_id=data.provider_id,
        appointment_date=data.appointment_date,
        start_time=data.start_time,
        service_id=data.service_id,
        duration_minutes=data.duration_minutes,
        patient_name=data.patient_name,
        patient_email=data.patient_email,
        patient_phone=data.patient_phone,
        notes=data.notes,
        allow_overbooking=data.allow_overbooking,
        requested_by_role=data.requested_by_role,
    )

    try:
        appointment = booking_service.check_and_reserve(db, request)
        return appointment_to_response(appointment)
    except BookingConflict as exc:
        duration = data.duration_minutes
        if duration is None and data.service_id:
            try:
                duration = booking_service.resolve_duration(db, request)
            except (BookingError, SQLAlchemyError):
                duration = None
        next_available = alternatives_after_conflict(db, data.tenant_id, data.provider_id, duration)
        raise to_http_exception(exc, next_available=next_available) from exc
    except BookingError as exc:
        raise to_http_exception(exc) from exc


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    tenant_id: str = Query(...),
    provider_id: str | None = Query(default=None),
    appointment_date: date | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias='status'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointments = booking_service.list_appointments(
            db,
            tenant_id,
            provider_id=provider_id,
            appointment_date=appointment_date,
            status=status_filter,
        )
        return [appointment_to_response(appointment) for appointment in appointments]
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    tenant_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return appointment_to_response(booking_service.get_appointment(db, appointment_id, tenant_id))
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/{appointment_id}/status', response_model=AppointmentResponse)
def update_appointment_status(
    appointment_id: int,
    data: UpdateStatusRequest,
    tenant_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        if data.status == 'cancelled':
            appointment = booking_service.cancel_appointment(
                db,
                appointment_id,
                tenant_id=tenant_id,
                reason=data.reason,
                changed_by_role=data.changed_by_role,
            )
        else:
            appointment = booking_service.transition_status(
                db,
                appointment_id,
                data.status,
                tenant_id=tenant_id,
                reason=data.reason,
                changed_by_role=data.changed_by_role,
            )
        return appointment_to_response(appointment)
    except BookingError as exc:
        raise to_http_exception(exc) from exc


@router.put('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    data: CancelAppointmentRequest,
    tenant_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = booking_service.cancel_appointment(
            db,
            appointment_id,
            tenant_id=tenant_id,
            reason=data.reason,
            changed_by_role=data.changed_by_role,
        )
        return appointment_to_response(appointment)
    except BookingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/{appointment_id}/reschedule', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def reschedule_appointment(
    appointment_id: int,
    data: RescheduleAppointmentRequest,
    tenant_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = booking_service.reschedule_appointment(
            db,
            appointment_id,
            data.new_date,
            data.new_start_time,
            tenant_id=tenant_id,
            reason=data.reason,
            changed_by_role=data.changed_by_role,
            allow_overbooking=data.allow_overbooking,
        )
        return appointment_to_response(appointment)
    except BookingConflict as exc:
        try:
            original = booking_service.get_appointment(db, appointment_id, tenant_id)
        except (BookingError, SQLAlchemyError):
            original = None
        next_available = []
        if original is not None:
            next_available = alternatives_after_conflict(
                db,
                original.tenant_id,
                original.provider_id,
                to_minutes(original.end_time) - to_minutes(original.start_time),
            )
        raise to_http_exception(exc, next_available=next_available) from exc
    except BookingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/{appointment_id}/rebook', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def rebook_appointment(
    appointment_id: int,
    data: RebookAppointmentRequest,
    tenant_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = booking_service.rebook_appointment(
            db,
            appointment_id,
            data.new_date,
            data.new_start_time,
            tenant_id=tenant_id,
            changed_by_role=data.changed_by_role,
            allow_overbooking=data.allow_overbooking,
        )
        return appointment_to_response(appointment)
    except BookingError as exc:
        raise to_http_exception(exc) from exc
