from datetime import date, datetime, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from backend.core.errors import (
    BookingConflict,
    InvalidBookingRequest,
    PermissionDenied,
    ResourceNotFound,
)
from backend.database import Base
from backend.models.appointment import Appointment, AppointmentStatusChange, BookingLedger
from backend.models.availability import AvailabilityWindow
from backend.models.notification import Notification
from backend.models.provider import Provider
from backend.scheduling.conflicts import OUTSIDE_AVAILABILITY, OVERLAPS_APPOINTMENT, OVERLAPS_BREAK
from backend.services import booking_service
from backend.services.booking_service import ReservationRequest

TENANT_ID = 'tenant-1'
PROVIDER_ID = 'dr-house'
MONDAY = date(2026, 1, 5)
NOW = datetime(2026, 1, 1, 8, 0)


def reservation(start: time, duration_minutes: int | None = 30, **overrides) -> ReservationRequest:
    values = {
        'tenant_id': TENANT_ID,
        'provider_id': PROVIDER_ID,
        'appointment_date': MONDAY,
        'start_time': start,
        'duration_minutes': duration_minutes,
        'patient_name': 'Pat Patient',
        'patient_email': 'pat@example.test',
    }
    values.update(overrides)
    return ReservationRequest(**values)


def active_appointments(db) -> list[Appointment]:
    return db.query(Appointment).filter(Appointment.status != 'cancelled').order_by(Appointment.start_time).all()


def test_check_and_reserve_commits_pending_appointment_and_queues_confirmation(booking_db, monday_clinic) -> None:
    appointment = booking_service.check_and_reserve(booking_db, reservation(time(9, 0)), now=NOW)

    assert appointment.id is not None
    assert appointment.status == 'pending'
    assert appointment.start_time == time(9, 0)
    assert appointment.end_time == time(9, 30)
    assert appointment.is_overbooked is False

    ledger = booking_db.query(BookingLedger).filter(BookingLedger.provider_id == PROVIDER_ID).one()
    assert ledger.booking_date == MONDAY
    assert ledger.version == 1

    notification = booking_db.query(Notification).one()
    assert notification.appointment_id == appointment.id
    assert notification.kind == 'appointment_booked'
    assert notification.recipient_email == 'pat@example.test'


def test_check_and_reserve_rejects_overlap_and_accepts_adjacent_slot(
    booking_db,
    monday_clinic,
    add_appointment,
) -> None:
    existing = add_appointment(MONDAY, time(9, 30), time(10, 0))

    with pytest.raises(BookingConflict) as exception_info:
        booking_service.check_and_reserve(booking_db, reservation(time(9, 30)), now=NOW)

    reasons = exception_info.value.reasons
    assert [reason.kind for reason in reasons] == [OVERLAPS_APPOINTMENT]
    assert reasons[0].appointment_id == existing.id

    appointment = booking_service.check_and_reserve(booking_db, reservation(time(10, 0)), now=NOW)
    assert appointment.start_time == time(10, 0)
    assert len(active_appointments(booking_db)) == 2


def test_check_and_reserve_enforces_availability_and_breaks(booking_db, monday_clinic, add_break) -> None:
    add_break(1, time(10, 0), time(10, 30))

    with pytest.raises(BookingConflict) as outside:
        booking_service.check_and_reserve(booking_db, reservation(time(11, 45)), now=NOW)
    with pytest.raises(BookingConflict) as on_break:
        booking_service.check_and_reserve(booking_db, reservation(time(10, 15)), now=NOW)

    assert [reason.kind for reason in outside.value.reasons] == [OUTSIDE_AVAILABILITY]
    assert [reason.kind for reason in on_break.value.reasons] == [OVERLAPS_BREAK]
    assert active_appointments(booking_db) == []


def test_check_and_reserve_skips_schedule_for_lenient_provider_kinds(
    booking_db,
    monday_clinic,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr('backend.core.config.STRICT_SCHEDULE_PROVIDER_KINDS', frozenset({'member'}))

    appointment = booking_service.check_and_reserve(booking_db, reservation(time(15, 0)), now=NOW)

    assert appointment.start_time == time(15, 0)


def test_check_and_reserve_applies_schedule_to_member_providers(booking_db, add_provider, add_window) -> None:
    add_provider(provider_id='member-1', kind='member')
    add_window(1, time(13, 0), time(17, 0), provider_id='member-1')

    with pytest.raises(BookingConflict):
        booking_service.check_and_reserve(booking_db, reservation(time(9, 0), provider_id='member-1'), now=NOW)

    appointment = booking_service.check_and_reserve(
        booking_db,
        reservation(time(13, 0), provider_id='member-1'),
        now=NOW,
    )
    assert appointment.provider_id == 'member-1'


def test_check_and_reserve_uses_service_duration(booking_db, monday_clinic, add_service) -> None:
    add_service(service_id='consult', duration_minutes=45)

    appointment = booking_service.check_and_reserve(
        booking_db,
        reservation(time(9, 0), duration_minutes=None, service_id='consult'),
        now=NOW,
    )

    assert appointment.end_time == time(9, 45)
    assert appointment.service_id == 'consult'


@pytest.mark.parametrize(
    ('overrides', 'error_type', 'message'),
    [
        ({'service_id': 'missing', 'duration_minutes': None}, ResourceNotFound, 'Service not found.'),
        ({'duration_minutes': None}, InvalidBookingRequest, 'Either service_id or duration_minutes must be provided.'),
        ({'duration_minutes': 4}, InvalidBookingRequest, 'duration_minutes must be between 5 and 480.'),
        ({'provider_id': 'nobody'}, ResourceNotFound, 'Provider not found.'),
        ({'tenant_id': 'tenant-2'}, ResourceNotFound, 'Provider not active in this tenant.'),
        ({'start_time': time(23, 45)}, InvalidBookingRequest, 'Appointments cannot extend past midnight.'),
    ],
)
def test_check_and_reserve_validates_before_writing(
    booking_db,
    monday_clinic,
    overrides: dict,
    error_type: type,
    message: str,
) -> None:
    request_values = {'start': time(9, 0)}
    if 'start_time' in overrides:
        request_values['start'] = overrides.pop('start_time')

    with pytest.raises(error_type) as exception_info:
        booking_service.check_and_reserve(booking_db, reservation(request_values['start'], **overrides), now=NOW)

    assert exception_info.value.message == message
    assert booking_db.query(Appointment).count() == 0


def test_check_and_reserve_rejects_past_start(booking_db, monday_clinic) -> None:
    with pytest.raises(InvalidBookingRequest) as exception_info:
        booking_service.check_and_reserve(booking_db, reservation(time(9, 0)), now=datetime(2026, 1, 5, 9, 0))

    assert exception_info.value.message == 'Appointments must be scheduled in the future.'


def test_check_and_reserve_rejects_provider_not_accepting_bookings(booking_db, add_provider, add_window) -> None:
    add_provider(allow_bookings=False)
    add_window(1, time(9, 0), time(12, 0))

    with pytest.raises(InvalidBookingRequest):
        booking_service.check_and_reserve(booking_db, reservation(time(9, 0)), now=NOW)


def test_overbooking_requires_staff_role(booking_db, monday_clinic, add_appointment) -> None:
    add_appointment(MONDAY, time(9, 0), time(9, 30))

    with pytest.raises(PermissionDenied):
        booking_service.check_and_reserve(
            booking_db,
            reservation(time(9, 0), allow_overbooking=True, requested_by_role='patient'),
            now=NOW,
        )

    appointment = booking_service.check_and_reserve(
        booking_db,
        reservation(time(9, 0), allow_overbooking=True, requested_by_role='Receptionist'),
        now=NOW,
    )

    assert appointment.is_overbooked is True
    assert len(active_appointments(booking_db)) == 2


def test_notification_failure_does_not_roll_back_booking(
    booking_db,
    monday_clinic,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def broken_notification(**kwargs):
        raise SQLAlchemyError('notifications table is gone')

    monkeypatch.setattr('backend.services.notifications.Notification', broken_notification)

    appointment = booking_service.check_and_reserve(booking_db, reservation(time(9, 0)), now=NOW)

    assert booking_db.query(Appointment).filter(Appointment.id == appointment.id).one().status == 'pending'


def file_backed_clinic(tmp_path, *appointments: Appointment):
    """Monday 09:00-12:00 clinic in a SQLite file so two sessions see each other's commits."""
    engine = create_engine(f'sqlite:///{tmp_path / "race.db"}')
    Base.metadata.create_all(bind=engine)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    setup = session_factory()
    setup.add(Provider(id=PROVIDER_ID, tenant_id=TENANT_ID, kind='doctor', is_active=True, allow_bookings=True))
    setup.add(AvailabilityWindow(provider_id=PROVIDER_ID, day_of_week=1, start_time=time(9, 0), end_time=time(12, 0)))
    setup.add_all(appointments)
    setup.commit()
    appointment_ids = [appointment.id for appointment in appointments]
    setup.close()
    return engine, session_factory, appointment_ids


def confirmed_appointment(start: time = time(9, 0), end: time = time(9, 30)) -> Appointment:
    return Appointment(
        tenant_id=TENANT_ID,
        provider_id=PROVIDER_ID,
        appointment_date=MONDAY,
        start_time=start,
        end_time=end,
        status='confirmed',
        patient_name='Pat Patient',
    )


def test_concurrent_reservations_for_same_slot_commit_exactly_once(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    engine, session_factory, _ = file_backed_clinic(tmp_path)

    first, second = session_factory(), session_factory()
    real_load_day_bookings = booking_service.load_day_bookings
    competitor_results = []
    interleaved = False

    def load_then_let_competitor_commit(db, provider_id, booking_date):
        nonlocal interleaved
        bookings = real_load_day_bookings(db, provider_id, booking_date)
        if not interleaved:
            interleaved = True
            competitor_results.append(booking_service.check_and_reserve(second, reservation(time(9, 0)), now=NOW))
        return bookings

    monkeypatch.setattr(booking_service, 'load_day_bookings', load_then_let_competitor_commit)

    try:
        with pytest.raises(BookingConflict):
            booking_service.check_and_reserve(first, reservation(time(9, 0)), now=NOW)

        assert len(competitor_results) == 1

        check = session_factory()
        booked = check.query(Appointment).filter(
            Appointment.provider_id == PROVIDER_ID,
            Appointment.appointment_date == MONDAY,
            Appointment.status != 'cancelled',
        ).all()
        assert [appointment.id for appointment in booked] == [competitor_results[0].id]
        assert check.query(BookingLedger).one().version == 1
        check.close()
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_reschedule_loses_to_completion_committed_mid_reservation(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    engine, session_factory, (appointment_id,) = file_backed_clinic(tmp_path, confirmed_appointment())

    first, second = session_factory(), session_factory()
    real_load_day_bookings = booking_service.load_day_bookings
    interleaved = False

    def load_then_complete_elsewhere(db, provider_id, booking_date):
        nonlocal interleaved
        bookings = real_load_day_bookings(db, provider_id, booking_date)
        if not interleaved:
            interleaved = True
            booking_service.transition_status(second, appointment_id, 'completed', changed_by_role='staff')
        return bookings

    monkeypatch.setattr(booking_service, 'load_day_bookings', load_then_complete_elsewhere)

    try:
        with pytest.raises(InvalidBookingRequest) as exception_info:
            booking_service.reschedule_appointment(first, appointment_id, MONDAY, time(10, 0), reason='running late', now=NOW)

        assert exception_info.value.message == 'Only pending or confirmed appointments can be rescheduled.'

        check = session_factory()
        assert check.get(Appointment, appointment_id).status == 'completed'
        assert check.query(Appointment).filter(Appointment.rescheduled_from_id == appointment_id).count() == 0
        history = check.query(AppointmentStatusChange).filter(
            AppointmentStatusChange.appointment_id == appointment_id,
        ).all()
        assert [(change.from_status, change.to_status) for change in history] == [('confirmed', 'completed')]
        check.close()
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_concurrent_reschedules_of_one_appointment_keep_a_single_replacement(
    tmp_path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    engine, session_factory, (appointment_id,) = file_backed_clinic(tmp_path, confirmed_appointment())

    first, second = session_factory(), session_factory()
    real_load_day_bookings = booking_service.load_day_bookings
    competitor_results = []
    interleaved = False

    def load_then_reschedule_elsewhere(db, provider_id, booking_date):
        nonlocal interleaved
        bookings = real_load_day_bookings(db, provider_id, booking_date)
        if not interleaved:
            interleaved = True
            competitor_results.append(
                booking_service.reschedule_appointment(second, appointment_id, MONDAY, time(11, 0), reason='moved', now=NOW)
            )
        return bookings

    monkeypatch.setattr(booking_service, 'load_day_bookings', load_then_reschedule_elsewhere)

    try:
        with pytest.raises(InvalidBookingRequest):
            booking_service.reschedule_appointment(first, appointment_id, MONDAY, time(10, 0), reason='moved', now=NOW)

        check = session_factory()
        assert check.get(Appointment, appointment_id).status == 'cancelled'
        replacements = check.query(Appointment).filter(Appointment.rescheduled_from_id == appointment_id).all()
        assert [(replacement.id, replacement.start_time) for replacement in replacements] == [
            (competitor_results[0].id, time(11, 0)),
        ]
        assert check.query(AppointmentStatusChange).filter(
            AppointmentStatusChange.appointment_id == appointment_id,
        ).count() == 1
        check.close()
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_transition_status_rereads_status_changed_by_another_session(tmp_path) -> None:
    engine, session_factory, (appointment_id,) = file_backed_clinic(tmp_path, confirmed_appointment())

    first, second = session_factory(), session_factory()
    try:
        assert booking_service.get_appointment(first, appointment_id).status == 'confirmed'
        booking_service.transition_status(second, appointment_id, 'completed')

        with pytest.raises(InvalidBookingRequest) as exception_info:
            booking_service.transition_status(first, appointment_id, 'cancelled', reason='patient request')

        assert exception_info.value.message == "Status transition from 'completed' to 'cancelled' is not allowed."
        check = session_factory()
        assert check.get(Appointment, appointment_id).status == 'completed'
        check.close()
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_apply_transition_refuses_to_overwrite_a_status_it_did_not_read(tmp_path) -> None:
    engine, session_factory, (appointment_id,) = file_backed_clinic(tmp_path, confirmed_appointment())

    first, second = session_factory(), session_factory()
    try:
        stale = first.get(Appointment, appointment_id)
        booking_service.transition_status(second, appointment_id, 'completed')

        with pytest.raises(InvalidBookingRequest) as exception_info:
            booking_service.apply_transition(first, stale, 'cancelled', 'patient request', None)
        first.rollback()

        assert exception_info.value.message == 'Appointment status was changed by another request. Reload and retry.'
        check = session_factory()
        assert check.get(Appointment, appointment_id).status == 'completed'
        assert check.query(AppointmentStatusChange).filter(AppointmentStatusChange.to_status == 'cancelled').count() == 0
        check.close()
    finally:
        first.close()
        second.close()
        engine.dispose()


@pytest.mark.parametrize(
    ('path', 'final_status'),
    [
        (['confirmed'], 'confirmed'),
        (['confirmed', 'in_progress', 'completed'], 'completed'),
        (['confirmed', 'completed'], 'completed'),
        (['cancelled'], 'cancelled'),
    ],
)
def test_transition_status_follows_allowed_paths(
    booking_db,
    monday_clinic,
    add_appointment,
    path: list[str],
    final_status: str,
) -> None:
    appointment = add_appointment(MONDAY, time(9, 0), time(9, 30))

    for new_status in path:
        appointment = booking_service.transition_status(booking_db, appointment.id, new_status, changed_by_role='staff')

    assert appointment.status == final_status
    history = booking_db.query(AppointmentStatusChange).filter(
        AppointmentStatusChange.appointment_id == appointment.id,
    ).order_by(AppointmentStatusChange.id).all()
    assert [change.to_status for change in history] == path


@pytest.mark.parametrize(
    ('current_status', 'new_status', 'message'),
    [
        ('pending', 'completed', "Status transition from 'pending' to 'completed' is not allowed."),
        ('completed', 'cancelled', "Status transition from 'completed' to 'cancelled' is not allowed."),
        ('cancelled', 'confirmed', "Status transition from 'cancelled' to 'confirmed' is not allowed."),
        ('confirmed', 'confirmed', "Appointment is already in 'confirmed' status."),
        ('pending', 'no_show', 'Invalid appointment status.'),
    ],
)
def test_transition_status_rejects_disallowed_moves(
    booking_db,
    monday_clinic,
    add_appointment,
    current_status: str,
    new_status: str,
    message: str,
) -> None:
    appointment = add_appointment(MONDAY, time(9, 0), time(9, 30), status=current_status)

    with pytest.raises(InvalidBookingRequest) as exception_info:
        booking_service.transition_status(booking_db, appointment.id, new_status)

    assert exception_info.value.message == message


def test_transition_status_hides_other_tenants_appointments(booking_db, monday_clinic, add_appointment) -> None:
    appointment = add_appointment(MONDAY, time(9, 0), time(9, 30))

    with pytest.raises(ResourceNotFound):
        booking_service.transition_status(booking_db, appointment.id, 'confirmed', tenant_id='tenant-2')


def test_cancel_frees_the_slot_and_queues_notice(booking_db, monday_clinic) -> None:
    appointment = booking_service.check_and_reserve(booking_db, reservation(time(9, 0)), now=NOW)

    cancelled = booking_service.cancel_appointment(booking_db, appointment.id, reason='patient request')

    assert cancelled.status == 'cancelled'
    kinds = [notification.kind for notification in booking_db.query(Notification).order_by(Notification.id)]
    assert kinds == ['appointment_booked', 'appointment_cancelled']

    rebooked = booking_service.check_and_reserve(booking_db, reservation(time(9, 0)), now=NOW)
    assert rebooked.id != appointment.id


def test_reschedule_moves_appointment_and_cancels_original(booking_db, monday_clinic) -> None:
    original = booking_service.check_and_reserve(booking_db, reservation(time(9, 0)), now=NOW)

    replacement = booking_service.reschedule_appointment(
        booking_db,
        original.id,
        MONDAY,
        time(9, 15),
        tenant_id=TENANT_ID,
        reason='running late',
        now=NOW,
    )

    assert replacement.rescheduled_from_id == original.id
    assert replacement.start_time == time(9, 15)
    assert replacement.end_time == time(9, 45)
    assert booking_db.get(Appointment, original.id).status == 'cancelled'
    assert [appointment.id for appointment in active_appointments(booking_db)] == [replacement.id]


def test_reschedule_still_conflicts_with_other_bookings(booking_db, monday_clinic, add_appointment) -> None:
    original = add_appointment(MONDAY, time(9, 0), time(9, 30))
    add_appointment(MONDAY, time(10, 0), time(10, 30))

    with pytest.raises(BookingConflict):
        booking_service.reschedule_appointment(booking_db, original.id, MONDAY, time(10, 0), now=NOW)

    assert booking_db.get(Appointment, original.id).status == 'pending'


def test_reschedule_rejects_finished_appointments(booking_db, monday_clinic, add_appointment) -> None:
    original = add_appointment(MONDAY, time(9, 0), time(9, 30), status='completed')

    with pytest.raises(InvalidBookingRequest):
        booking_service.reschedule_appointment(booking_db, original.id, MONDAY, time(10, 0), now=NOW)


def test_list_appointments_filters_by_tenant_provider_and_status(booking_db, monday_clinic, add_appointment) -> None:
    add_appointment(MONDAY, time(10, 0), time(10, 30))
    add_appointment(MONDAY, time(9, 0), time(9, 30), status='confirmed')

    everything = booking_service.list_appointments(booking_db, TENANT_ID)
    confirmed = booking_service.list_appointments(booking_db, TENANT_ID, provider_id=PROVIDER_ID, status='confirmed')

    assert [appointment.start_time for appointment in everything] == [time(9, 0), time(10, 0)]
    assert [appointment.status for appointment in confirmed] == ['confirmed']
    assert booking_service.list_appointments(booking_db, 'tenant-2') == []

    with pytest.raises(InvalidBookingRequest):
        booking_service.list_appointments(booking_db, TENANT_ID, status='lost')


@pytest.mark.parametrize('finished_status', ['completed', 'cancelled'])
def test_rebook_creates_linked_booking_and_leaves_original(
    booking_db,
    monday_clinic,
    add_appointment,
    finished_status: str,
) -> None:
    original = add_appointment(MONDAY, time(9, 0), time(9, 45), status=finished_status, patient_email='pat@example.test')
    next_monday = date(2026, 1, 12)

    rebooked = booking_service.rebook_appointment(booking_db, original.id, next_monday, time(10, 0), tenant_id=TENANT_ID, now=NOW)

    assert rebooked.is_rebook is True
    assert rebooked.rescheduled_from_id == original.id
    assert rebooked.status == 'pending'
    assert (rebooked.appointment_date, rebooked.start_time, rebooked.end_time) == (next_monday, time(10, 0), time(10, 45))
    assert rebooked.patient_email == 'pat@example.test'
    assert booking_db.get(Appointment, original.id).status == finished_status
    assert [notification.kind for notification in booking_db.query(Notification)] == ['appointment_booked']


def test_rebook_rejects_appointments_still_in_play(booking_db, monday_clinic, add_appointment) -> None:
    original = add_appointment(MONDAY, time(9, 0), time(9, 30), status='confirmed')

    with pytest.raises(InvalidBookingRequest) as exception_info:
        booking_service.rebook_appointment(booking_db, original.id, MONDAY, time(10, 0), now=NOW)

    assert exception_info.value.message == (
        "Appointments in 'confirmed' status cannot be rebooked. Only completed or cancelled ones can."
    )
    assert booking_db.query(Appointment).count() == 1


def test_rebook_goes_through_conflict_check(booking_db, monday_clinic, add_appointment) -> None:
    original = add_appointment(MONDAY, time(9, 0), time(9, 30), status='completed')
    add_appointment(MONDAY, time(10, 0), time(10, 30))

    with pytest.raises(BookingConflict):
        booking_service.rebook_appointment(booking_db, original.id, MONDAY, time(10, 15), now=NOW)

    assert booking_db.query(Appointment).filter(Appointment.is_rebook.is_(True)).count() == 0
