"""Queue patient notifications for appointment events.

Delivery is somebody else's job; this module only records what should be sent.
Queueing runs after the appointment change has committed, and a failure here
is logged and never propagates back into the booking flow.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.models.appointment import Appointment
from backend.models.notification import Notification

logger = logging.getLogger(__name__)


def queue_notification(
    db: Session,
    appointment: Appointment,
    kind: str,
    subject: str,
    content: str,
) -> Optional[Notification]:
    if not appointment.patient_email:
        logger.info('Appointment %s has no patient email, skipping %s notification', appointment.id, kind)
        return None

    try:
        notification = Notification(
            tenant_id=appointment.tenant_id,
            appointment_id=appointment.id,
            kind=kind,
            recipient_email=appointment.patient_email,
            subject=subject,
            content=content,
            status='pending',
        )
        db.add(notification)
        db.commit()
        return notification
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Failed to queue %s notification for appointment %s', kind, appointment.id)
        return None


def _when(appointment: Appointment) -> str:
    return f'{appointment.appointment_date.isoformat()} at {appointment.start_time.strftime("%H:%M")}'


def queue_booking_confirmation(db: Session, appointment: Appointment) -> Optional[Notification]:
    return queue_notification(
        db,
        appointment,
        kind='appointment_booked',
        subject='Appointment request received',
        content=f'Your appointment on {_when(appointment)} has been booked and is pending confirmation.',
    )


def queue_cancellation_notice(db: Session, appointment: Appointment) -> Optional[Notification]:
    return queue_notification(
        db,
        appointment,
        kind='appointment_cancelled',
        subject='Appointment cancelled',
        content=f'Your appointment on {_when(appointment)} has been cancelled.',
    )


def queue_reschedule_notice(db: Session, appointment: Appointment) -> Optional[Notification]:
    return queue_notification(
        db,
        appointment,
        kind='appointment_rescheduled',
        subject='Appointment rescheduled',
        content=f'Your appointment has been moved to {_when(appointment)}.',
    )
