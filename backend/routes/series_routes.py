from datetime import date, datetime, time

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.errors import BookingError
from backend.database import get_db
from backend.routes.appointment_routes import AppointmentResponse, appointment_to_response
from backend.routes.availability_routes import ensure_database_ready
from backend.routes.http_errors import database_unavailable, to_http_exception
from backend.scheduling.recurrence import RecurrenceRule
from backend.services import series_service

router = APIRouter(tags=['appointment-series'])


def _normalize_optional(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class CreateSeriesRequest(BaseModel):
    tenant_id: str
    provider_id: str
    recurrence_type: str
    recurrence_interval: int = 1
    recurrence_days: list[int] = []
    base_time: time
    start_date: date
    end_date: date | None = None
    max_occurrences: int | None = None
    service_id: str | None = None
    duration_minutes: int | None = None
    patient_name: str | None = None
    patient_email: str | None = None
    patient_phone: str | None = None
    notes: str | None = None

    @field_validator('tenant_id', 'provider_id')
    @classmethod
    def validate_required_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Value is required.')
        return normalized

    @field_validator('recurrence_type')
    @classmethod
    def validate_recurrence_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in config.RECURRENCE_TYPES:
            raise ValueError(f'recurrence_type must be one of: {", ".join(config.RECURRENCE_TYPES)}.')
        return normalized

    @field_validator('recurrence_interval')
    @classmethod
    def validate_interval(cls, value: int) -> int:
        if not 1 <= value <= config.MAX_RECURRENCE_INTERVAL:
            raise ValueError(f'recurrence_interval must be between 1 and {config.MAX_RECURRENCE_INTERVAL}.')
        return value

    @field_validator('recurrence_days')
    @classmethod
    def validate_days(cls, value: list[int]) -> list[int]:
        if any(not 0 <= day <= 6 for day in value):
            raise ValueError('recurrence_days must be between 0 (Sunday) and 6 (Saturday).')
        return sorted(set(value))

    @field_validator('base_time')
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

    @field_validator('service_id', 'patient_name', 'patient_phone')
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

    @model_validator(mode='after')
    def validate_bounds(self):
        if self.end_date is None and self.max_occurrences is None:
            raise ValueError('Either end_date or max_occurrences must be provided.')
        if self.recurrence_type == 'custom' and not self.recurrence_days:
            raise ValueError('Custom recurrence needs at least one day in recurrence_days.')
        return self

    def to_rule(self) -> RecurrenceRule:
        return RecurrenceRule(
            recurrence_type=self.recurrence_type,
            start_date=self.start_date,
            interval=self.recurrence_interval,
            days=tuple(self.recurrence_days),
            end_date=self.end_date,
            max_occurrences=self.max_occurrences,
        )


class CancelSeriesRequest(BaseModel):
    reason: str | None = None
    changed_by_role: str | None = None

    @field_validator('reason', 'changed_by_role')
    @classmethod
    def strip_optional(cls, value: str | None) -> str | None:
        return _normalize_optional(value)


class SkippedOccurrenceResponse(BaseModel):
    occurrence: int
    date: date
    conflicts: list[dict]


class SeriesResponse(BaseModel):
    id: int
    tenant_id: str
    provider_id: str
    service_id: str | None = None
    recurrence_type: str
    recurrence_interval: int
    recurrence_days: list[int]
    base_time: time
    duration_minutes: int
    start_date: date
    end_date: date | None = None
    max_occurrences: int | None = None
    status: str
    patient_name: str | None = None
    patient_email: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    appointments: list[AppointmentResponse] = []
    total_appointments: int = 0


class CreateSeriesResponse(SeriesResponse):
    total_occurrences: int
    skipped: list[SkippedOccurrenceResponse] = []


class CancelSeriesResponse(BaseModel):
    id: int
    status: str
    cancelled_appointments: int


def _parse_days(value: str | None) -> list[int]:
    if not value:
        return []
    return [int(day) for day in value.split(',') if day.strip()]


def series_to_response(series, appointments) -> SeriesResponse:
    return SeriesResponse(
        id=series.id,
        tenant_id=series.tenant_id,
        provider_id=series.provider_id,
        service_id=series.service_id,
        recurrence_type=series.recurrence_type,
        recurrence_interval=series.recurrence_interval,
        recurrence_days=_parse_days(series.recurrence_days),
        base_time=series.base_time,
        duration_minutes=series.duration_minutes,
        start_date=series.start_date,
        end_date=series.end_date,
        max_occurrences=series.max_occurrences,
        status=series.status,
        patient_name=series.patient_name,
        patient_email=series.patient_email,
        notes=series.notes,
        created_at=series.created_at,
        appointments=[appointment_to_response(appointment) for appointment in appointments],
        total_appointments=len(appointments),
    )


@router.post('', response_model=CreateSeriesResponse, status_code=status.HTTP_201_CREATED)
def create_series(data: CreateSeriesRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    request = series_service.SeriesRequest(
        tenant_id=data.tenant_id,
        provider_id=data.provider_id,
        rule=data.to_rule(),
        base_time=data.base_time,
        service_id=data.service_id,
        duration_minutes=data.duration_minutes,
        patient_name=data.patient_name,
        patient_email=data.patient_email,
        patient_phone=data.patient_phone,
        notes=data.notes,
    )

    try:
        result = series_service.create_series(db, request)
    except BookingError as exc:
        raise to_http_exception(exc) from exc

    response = series_to_response(result.series, result.appointments)
    return CreateSeriesResponse(
        **response.model_dump(),
        total_occurrences=result.total_occurrences,
        skipped=[SkippedOccurrenceResponse(**conflict.as_dict()) for conflict in result.skipped],
    )


@router.get('', response_model=list[SeriesResponse])
def list_series(
    tenant_id: str = Query(...),
    provider_id: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias='status'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        series_rows = series_service.list_series(db, tenant_id, provider_id=provider_id, status=status_filter)
        return [
            series_to_response(series, series_service.series_appointments(db, series.id))
            for series in series_rows
        ]
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{series_id}', response_model=SeriesResponse)
def get_series(
    series_id: int,
    tenant_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        series = series_service.get_series(db, series_id, tenant_id)
        return series_to_response(series, series_service.series_appointments(db, series.id))
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.delete('/{series_id}', response_model=CancelSeriesResponse)
def cancel_series(
    series_id: int,
    data: CancelSeriesRequest | None = None,
    tenant_id: str | None = Query(default=None),
    future_only: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    data = data or CancelSeriesRequest()
    try:
        cancelled = series_service.cancel_series(
            db,
            series_id,
            tenant_id=tenant_id,
            future_only=future_only,
            reason=data.reason,
            changed_by_role=data.changed_by_role,
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc

    return CancelSeriesResponse(id=series_id, status='cancelled', cancelled_appointments=cancelled)
