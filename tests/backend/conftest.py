import os
from datetime import time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from backend.database import Base  # noqa: E402
from backend.models.appointment import Appointment  # noqa: E402
from backend.models.availability import AvailabilityWindow, BreakInterval  # noqa: E402
from backend.models.notification import Notification  # noqa: E402,F401
from backend.models.provider import Provider, Service  # noqa: E402

TENANT_ID = 'tenant-1'
PROVIDER_ID = 'dr-house'


@pytest.fixture
def booking_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def add_provider(booking_db):
    def _add_provider(provider_id=PROVIDER_ID, tenant_id=TENANT_ID, kind='doctor', allow_bookings=True, is_active=True):
        provider = Provider(
            id=provider_id,
            tenant_id=tenant_id,
            kind=kind,
            full_name=f'Provider {provider_id}',
            email=f'{provider_id}@clinic.test',
            is_active=is_active,
            allow_bookings=allow_bookings,
        )
        booking_db.add(provider)
        booking_db.commit()
        return provider

    return _add_provider


@pytest.fixture
def add_window(booking_db):
    def _add_window(day_of_week, start, end, provider_id=PROVIDER_ID):
        window = AvailabilityWindow(
            provider_id=provider_id,
            day_of_week=day_of_week,
            start_time=start,
            end_time=end,
            is_active=True,
        )
        booking_db.add(window)
        booking_db.commit()
        return window

    return _add_window


@pytest.fixture
def add_break(booking_db):
    def _add_break(day_of_week, start, end, provider_id=PROVIDER_ID, kind='lunch', label=None):
        break_interval = BreakInterval(
            provider_id=provider_id,
            day_of_week=day_of_week,
            start_time=start,
            end_time=end,
            kind=kind,
            label=label,
            is_active=True,
        )
        booking_db.add(break_interval)
        booking_db.commit()
        return break_interval

    return _add_break


@pytest.fixture
def add_service(booking_db):
    def _add_service(service_id='consult', duration_minutes=45, tenant_id=TENANT_ID, is_active=True):
        service = Service(
            id=service_id,
            tenant_id=tenant_id,
            name=service_id.title(),
            duration_minutes=duration_minutes,
            is_active=is_active,
        )
        booking_db.add(service)
        booking_db.commit()
        return service

    return _add_service


@pytest.fixture
def add_appointment(booking_db):
    def _add_appointment(appointment_date, start, end, provider_id=PROVIDER_ID, status='pending', patient_email=None):
        appointment = Appointment(
            tenant_id=TENANT_ID,
            provider_id=provider_id,
            appointment_date=appointment_date,
            start_time=start,
            end_time=end,
            status=status,
            patient_name='Existing Patient',
            patient_email=patient_email,
        )
        booking_db.add(appointment)
        booking_db.commit()
        booking_db.refresh(appointment)
        return appointment

    return _add_appointment


@pytest.fixture
def monday_clinic(add_provider, add_window):
    """Doctor open Mondays 09:00-12:00."""
    provider = add_provider()
    add_window(1, time(9, 0), time(12, 0))
    return provider
