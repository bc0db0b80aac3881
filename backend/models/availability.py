"""Availability model definitions."""

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, String, Time
from backend.database import Base


class AvailabilityWindow(Base):
    """Recurring weekly range during which a provider can be booked."""
    __tablename__ = "availability_windows"
    __table_args__ = (
        CheckConstraint('start_time < end_time', name='ck_window_start_before_end'),
        CheckConstraint('day_of_week BETWEEN 0 AND 6', name='ck_window_day_of_week'),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(String, ForeignKey("providers.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0=Sunday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_active = Column(Boolean, default=True)


class BreakInterval(Base):
    """Recurring weekly range during which an otherwise available provider cannot be booked."""
    __tablename__ = "break_intervals"
    __table_args__ = (
        CheckConstraint('start_time < end_time', name='ck_break_start_before_end'),
        CheckConstraint('day_of_week BETWEEN 0 AND 6', name='ck_break_day_of_week'),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(String, ForeignKey("providers.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    kind = Column(String, default='personal')
    label = Column(String)
    is_active = Column(Boolean, default=True)
