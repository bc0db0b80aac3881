"""Notification model definitions."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from backend.database import Base


class Notification(Base):
    """A queued patient notification. Delivery happens elsewhere."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String, nullable=False)
    appointment_id = Column(Integer, ForeignKey("appointments.id"))
    kind = Column(String, nullable=False)
    recipient_email = Column(String)
    subject = Column(String)
    content = Column(String)
    status = Column(String, default='pending')
    created_at = Column(DateTime, default=datetime.utcnow)
