"""Provider and service model definitions."""

from sqlalchemy import Boolean, Column, Integer, String
from backend.database import Base

PROVIDER_KINDS = ('doctor', 'member')


class Provider(Base):
    """A bookable doctor or member, scoped to one tenant."""
    __tablename__ = "providers"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, index=True, nullable=False)
    kind = Column(String, nullable=False, default='doctor')
    full_name = Column(String)
    email = Column(String)
    is_active = Column(Boolean, default=True)
    allow_bookings = Column(Boolean, default=True)


class Service(Base):
    """A bookable service; its duration sizes the appointment interval."""
    __tablename__ = "services"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True)
