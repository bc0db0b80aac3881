from datetime import date, time
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.errors import BookingError
from backend.database import ensure_appointment_schema, ensure_availability_schema, get_db
from backend.models.availability import AvailabilityWindow, BreakInterval
from backend.routes.http_errors import database_unavailable, to_http_exception
from backend.scheduling.schedule import DAY_NAMES, day_of_week
from backend.scheduling.slots import GridSlot, Slot, SlotRequest, SlotSuggestions
from backend.services import availability_service

router = APIRouter(tags=['availability'])

SuggestionType = Literal['next_week', 'two_weeks', 'month']
BREAK_KINDS = ('lunch', 'personal', 'meeting', 'other')


class WeeklyRangeRequest(BaseModel):
    day_of_week: int
    start_time: time
    end_time: time

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(cls, value: int) -> int:
        if not 0 <= value <= 6:
            raise ValueError('day_of_week must be between 0 (Sunday) and 6 (Saturday).')
        return value

    @field_validator('start_time', 'end_time')
    @classmethod
    def truncate_to_minute(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)

    @model_validator(mode='after')
    def validate_range(self):
        if self.start_time >= self.end_time:
            raise ValueError('start_time must be before end_time.')
        return self


class CreateWindowRequest(WeeklyRangeRequest):
    pass


class CreateBreakRequest(WeeklyRangeRequest):
    kind: str = 'personal'
    label: str | None = None

    @field_validator('kind')
    @classmethod
    def validate_kind(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in BREAK_KINDS:
            raise ValueError('Invalid break kind.')
        return normalized

    @field_validator('label')
    @classmethod
    def validate_label(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class WindowResponse(BaseModel):
    id: int
    day_of_week: int
    start_time: time
    end_time: time
    is_active: bool

    class Config:
        from_attributes = True


class BreakResponse(BaseModel):
    id: int
    day_of_week: int
    start_time: time
    end_time: time
    kind: str
    label: str | None = None
    is_active: bool

    class Config:
        from_attributes = True


class WeeklyScheduleResponse(BaseModel):
    provider_id: str
    provider_kind: str
    allow_bookings: bool
    windows: list[WindowResponse]
    breaks: list[BreakResponse]


class SlotResponse(BaseModel):
    date: date
    day_of_week: int
    day_name: str
    start_time: str
    end_time: str
    is_preferred: bool = False


class DailySlotsResponse(BaseModel):
    date: date
    day_of_week: int
    day_name: str
    slot_count: int
    slots: list[SlotResponse]


class DateRangeResponse(BaseModel):
    start: date
    end: date


class AvailableSlotsResponse(BaseModel):
    provider_id: str
    provider_name: str | None = None
    tenant_id: str
    date_range: DateRangeResponse
    duration_minutes: int
    total_slots: int
    days: list[DailySlotsResponse]
    next_available: list[SlotResponse]


class ConflictResponse(BaseModel):
    kind: str
    start_time: str
    end_time: str
    appointment_id: int | None = None
    label: str | None = None
    message: str


class TimeSlotResponse(BaseModel):
    time: str
    end_time: str
    is_available: bool
    conflicts: list[ConflictResponse] = []


class DayTimeSlotsResponse(BaseModel):
    provider_id: str
    date: date
    day_of_week: int
    day_name: str
    time_slots: list[TimeSlotResponse]


def ensure_database_ready() -> None:
    try:
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


def slot_to_response(slot: Slot) -> SlotResponse:
    return SlotResponse(
        date=slot.date,
        day_of_week=slot.day_of_week,
        day_name=slot.day_name,
        start_time=slot.start_time,
        end_time=slot.end_time,
        is_preferred=slot.is_preferred,
    )


def suggestions_to_response(provider, suggestions: SlotSuggestions) -> AvailableSlotsResponse:
    return AvailableSlotsResponse(
        provider_id=provider.id,
        provider_name=provider.full_name,
        tenant_id=provider.tenant_id,
        date_range=DateRangeResponse(start=suggestions.start_date, end=suggestions.end_date),
        duration_minutes=suggestions.duration_minutes,
        total_slots=suggestions.total_slots,
        days=[
            DailySlotsResponse(
                date=day.date,
                day_of_week=day.day_of_week,
                day_name=day.day_name,
                slot_count=day.slot_count,
                slots=[slot_to_response(slot) for slot in day.slots],
            )
            for day in suggestions.days
        ],
        next_available=[slot_to_response(slot) for slot in suggestions.next_available],
    )


def grid_slot_to_response(grid_slot: GridSlot) -> TimeSlotResponse:
    return TimeSlotResponse(
        time=grid_slot.start_time,
        end_time=grid_slot.end_time,
        is_available=grid_slot.is_available,
        conflicts=[ConflictResponse(**reason.as_dict()) for reason in grid_slot.conflicts],
    )


@router.get('/{provider_id}/available-slots', response_model=AvailableSlotsResponse)
def list_available_slots(
    provider_id: str,
    base_date: date | None = Query(default=None),
    duration_minutes: int = Query(
        default=config.DEFAULT_DURATION_MINUTES,
        ge=config.MIN_DURATION_MINUTES,
        le=config.MAX_DURATION_MINUTES,
    ),
    suggestion_type: SuggestionType = Query(default=config.DEFAULT_SUGGESTION_TYPE),
    max_per_day: int = Query(default=config.DEFAULT_MAX_SLOTS_PER_DAY, ge=1, le=config.MAX_SLOTS_PER_DAY_LIMIT),
    tenant_id: str | None = Query(default=None),
    provider_kind: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    request = SlotRequest(
        duration_minutes=duration_minutes,
        base_date=base_date,
        suggestion_type=suggestion_type,
        max_per_day=max_per_day,
    )

    try:
        provider, suggestions = availability_service.suggest_slots(
            db,
            provider_id,
            request,
            tenant_id=tenant_id,
            provider_kind=provider_kind,
        )
        return suggestions_to_response(provider, suggestions)
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{provider_id}/time-slots', response_model=DayTimeSlotsResponse)
def list_day_time_slots(
    provider_id: str,
    date: date = Query(...),
    tenant_id: str | None = Query(default=None),
    step_minutes: int = Query(default=config.DAY_GRID_STEP_MINUTES, ge=5, le=240),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        provider, grid = availability_service.day_grid(db, provider_id, date, tenant_id=tenant_id, step_minutes=step_minutes)
        weekday = day_of_week(date)
        return DayTimeSlotsResponse(
            provider_id=provider.id,
            date=date,
            day_of_week=weekday,
            day_name=DAY_NAMES[weekday],
            time_slots=[grid_slot_to_response(grid_slot) for grid_slot in grid],
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{provider_id}/schedule', response_model=WeeklyScheduleResponse)
def get_weekly_schedule(provider_id: str, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        provider = availability_service.get_provider(db, provider_id)
        windows = db.query(AvailabilityWindow).filter(
            AvailabilityWindow.provider_id == provider.id,
            AvailabilityWindow.is_active.is_(True),
        ).order_by(AvailabilityWindow.day_of_week.asc(), AvailabilityWindow.start_time.asc()).all()
        breaks = db.query(BreakInterval).filter(
            BreakInterval.provider_id == provider.id,
            BreakInterval.is_active.is_(True),
        ).order_by(BreakInterval.day_of_week.asc(), BreakInterval.start_time.asc()).all()

        return WeeklyScheduleResponse(
            provider_id=provider.id,
            provider_kind=provider.kind,
            allow_bookings=bool(provider.allow_bookings),
            windows=[WindowResponse.model_validate(window) for window in windows],
            breaks=[BreakResponse.model_validate(brk) for brk in breaks],
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{provider_id}/windows', response_model=WindowResponse, status_code=status.HTTP_201_CREATED)
def create_availability_window(provider_id: str, data: CreateWindowRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        provider = availability_service.get_provider(db, provider_id)
        window = AvailabilityWindow(
            provider_id=provider.id,
            day_of_week=data.day_of_week,
            start_time=data.start_time,
            end_time=data.end_time,
            is_active=True,
        )
        db.add(window)
        db.commit()
        db.refresh(window)

        return window
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{provider_id}/breaks', response_model=BreakResponse, status_code=status.HTTP_201_CREATED)
def create_break_interval(provider_id: str, data: CreateBreakRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        provider = availability_service.get_provider(db, provider_id)
        break_interval = BreakInterval(
            provider_id=provider.id,
            day_of_week=data.day_of_week,
            start_time=data.start_time,
            end_time=data.end_time,
            kind=data.kind,
            label=data.label,
            is_active=True,
        )
        db.add(break_interval)
        db.commit()
        db.refresh(break_interval)

        return break_interval
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{provider_id}/windows/{window_id}', status_code=status.HTTP_204_NO_CONTENT)
def disable_availability_window(provider_id: str, window_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        window = db.query(AvailabilityWindow).filter(
            AvailabilityWindow.id == window_id,
            AvailabilityWindow.provider_id == provider_id,
            AvailabilityWindow.is_active.is_(True),
        ).first()

        if not window:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Availability window not found.',
            )

        window.is_active = False
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{provider_id}/breaks/{break_id}', status_code=status.HTTP_204_NO_CONTENT)
def disable_break_interval(provider_id: str, break_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        break_interval = db.query(BreakInterval).filter(
            BreakInterval.id == break_id,
            BreakInterval.provider_id == provider_id,
            BreakInterval.is_active.is_(True),
        ).first()

        if not break_interval:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Break not found.',
            )

        break_interval.is_active = False
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
