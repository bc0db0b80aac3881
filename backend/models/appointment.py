"""Appointment model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Time, UniqueConstraint
from backend.database import Base

APPOINTMENT_STATUSES = ('pending', 'confirmed', 'in_progress', 'completed', 'cancelled')
CANCELLED_STATUS = 'cancelled'


class Appointment(Base):
    """Represents a booked appointment occupying [start_time, end_time) on one date."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String, nullable=False)
    provider_id = Column(String, ForeignKey("providers.id"), nullable=False)
    service_id = Column(String, ForeignKey("services.id"))
    appointment_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String, nullable=False, default='pending')
    patient_name = Column(String)
    patient_email = Column(String)
    patient_phone = Column(String)
    notes = Column(String)
    is_overbooked = Column(Boolean, default=False)
    rescheduled_from_id = Column(Integer, ForeignKey("appointments.id"))
    is_rebook = Column(Boolean, default=False)
    series_id = Column(Integer, ForeignKey("appointment_series.id"), index=True)
    series_occurrence = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AppointmentStatusChange(Base):
    """Audit trail entry written for every status transition."""
    __tablename__ = "appointment_status_changes"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    from_status = Column(String)
    to_status = Column(String, nullable=False)
    reason = Column(String)
    changed_by_role = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)


class BookingLedger(Base):
    """One row per provider and date; its version serializes reservations for that day."""
    __tablename__ = "provider_booking_days"
    __table_args__ = (
        UniqueConstraint('provider_id', 'booking_date', name='uq_booking_day_provider_date'),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(String, ForeignKey("providers.id"), nullable=False)
    booking_date = Column(Date, nullable=False)
    version = Column(Integer, nullable=False, default=0)


class AppointmentSeries(Base):
    """A recurring booking rule; each generated occurrence is an ordinary appointment."""
    __tablename__ = "appointment_series"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    provider_id = Column(String, ForeignKey("providers.id"), nullable=False)
    service_id = Column(String, ForeignKey("services.id"))
    recurrence_type = Column(String, nullable=False)
    recurrence_interval = Column(Integer, nullable=False, default=1)
    recurrence_days = Column(String)  # comma separated, 0=Sunday
    base_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    max_occurrences = Column(Integer)
    status = Column(String, nullable=False, default='active')
    patient_name = Column(String)
    patient_email = Column(String)
    patient_phone = Column(String)
    notes = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
