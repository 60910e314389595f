from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import NOW, caller_for

from carepath.booking import (
    book_appointment,
    cancel_appointment,
    expire_holds,
    record_outcome,
    serialize_appointment,
)
from carepath.db.models import (
    Appointment,
    AppointmentStatus,
    AppointmentStatusEvent,
    NoShowRiskConfig,
    Pool,
    SchedulingOverrideAudit,
    SlotState,
    StepStatus,
    TimeSlot,
)
from carepath.episode_steps import generate_steps, list_steps
from carepath.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    OneHardNextViolation,
    PermissionDeniedError,
    SlotUnavailableError,
    ValidationError,
)


def _no_shows(session, patient, count):
    for offset in range(count):
        session.add(
            Appointment(
                patient_id=patient.id,
                start_time=NOW - timedelta(days=10 + offset),
                duration_minutes=30,
                pool=Pool.WORK,
                appointment_status=AppointmentStatus.NO_SHOW,
            )
        )
    session.commit()


def test_direct_booking_without_episode(session, factory, provider):
    patient = factory.patient()
    slot = factory.slot(provider, days=3)

    result = book_appointment(
        session, caller_for(provider), patient_id=patient.id, time_slot_id=slot.id, now=NOW
    )
    session.commit()

    appointment = result.appointment
    assert appointment.created_via == 'direct'
    assert appointment.duration_minutes == 30
    assert appointment.no_show_risk == pytest.approx(0.05)
    assert appointment.requires_confirmation is False
    assert appointment.hold_expires_at is None
    assert SlotState(session.get(TimeSlot, slot.id).state) == SlotState.BOOKED
    payload = serialize_appointment(appointment)
    assert payload['timeSlotId'] == slot.id
    assert payload['appointmentStatus'] is None
    assert payload['pool'] == 'work'


def test_booking_defaults_to_next_pending_step(session, factory, provider):
    episode = factory.episode(provider=provider, pathway=factory.pathway())
    generate_steps(session, episode.id)
    session.commit()
    slot = factory.slot(provider, days=15)

    result = book_appointment(
        session,
        caller_for(provider),
        patient_id=episode.patient_id,
        episode_id=episode.id,
        time_slot_id=slot.id,
        now=NOW,
    )

    assert (result.appointment.step_code, result.appointment.step_seq) == ('IMPLANT', 0)
    first = list_steps(session, episode.id)[0]
    assert StepStatus(first.status) == StepStatus.SCHEDULED
    assert first.appointment_id == result.appointment.id


def test_risky_patient_gets_confirmation_hold(session, factory, provider):
    patient = factory.patient()
    _no_shows(session, patient, 2)
    slot = factory.slot(provider, days=3)

    appointment = book_appointment(
        session, caller_for(provider), patient_id=patient.id, time_slot_id=slot.id, now=NOW
    ).appointment

    assert appointment.no_show_risk == pytest.approx(0.3)
    assert appointment.requires_confirmation is True
    assert appointment.hold_expires_at == NOW + timedelta(hours=48)


def test_riskiest_bookings_get_the_short_hold(session, factory, provider):
    patient = factory.patient()
    _no_shows(session, patient, 2)
    early = factory.slot(provider, days=3, hour=8)

    appointment = book_appointment(
        session, caller_for(provider), patient_id=patient.id, time_slot_id=early.id, now=NOW
    ).appointment

    assert appointment.no_show_risk == pytest.approx(0.35)
    assert appointment.hold_expires_at == NOW + timedelta(hours=24)


def test_risk_coefficients_come_from_config(session, factory, provider):
    session.add(NoShowRiskConfig(key='base', value=0.25))
    session.commit()
    patient = factory.patient()
    slot = factory.slot(provider, days=3)

    appointment = book_appointment(
        session, caller_for(provider), patient_id=patient.id, time_slot_id=slot.id, now=NOW
    ).appointment

    assert appointment.no_show_risk == pytest.approx(0.25)
    assert appointment.requires_confirmation is True


def test_failing_risk_assessor_books_without_hold(session, factory, provider):
    class Broken:
        def assess(self, session, **kwargs):
            raise RuntimeError('model offline')

    patient = factory.patient()
    slot = factory.slot(provider, days=3)

    appointment = book_appointment(
        session,
        caller_for(provider),
        patient_id=patient.id,
        time_slot_id=slot.id,
        risk_assessor=Broken(),
        now=NOW,
    ).appointment

    assert appointment.no_show_risk is None
    assert appointment.requires_confirmation is False
    assert appointment.hold_expires_at is None


def test_slot_checks(session, factory, provider):
    patient = factory.patient()
    caller = caller_for(provider)
    past = factory.slot(provider, days=-2)

    with pytest.raises(SlotUnavailableError) as exc:
        book_appointment(session, caller, patient_id=patient.id, time_slot_id=past.id, now=NOW)
    assert exc.value.code == 'SLOT_IN_PAST'

    with pytest.raises(NotFoundError) as exc:
        book_appointment(session, caller, patient_id=patient.id, time_slot_id=9999, now=NOW)
    assert exc.value.code == 'SLOT_NOT_FOUND'

    with pytest.raises(NotFoundError) as exc:
        book_appointment(session, caller, patient_id=9999, time_slot_id=past.id, now=NOW)
    assert exc.value.code == 'PATIENT_NOT_FOUND'

    slot = factory.slot(provider, days=3)
    book_appointment(session, caller, patient_id=patient.id, time_slot_id=slot.id, now=NOW)
    with pytest.raises(SlotUnavailableError) as exc:
        book_appointment(session, caller, patient_id=patient.id, time_slot_id=slot.id, now=NOW)
    assert exc.value.code == 'SLOT_ALREADY_BOOKED'


def test_only_assigned_provider_or_admin_may_book(session, factory, provider, admin):
    other = factory.user(name='Dr. Other')
    episode = factory.episode(provider=provider, pathway=factory.pathway())
    slot = factory.slot(provider, days=15)

    with pytest.raises(PermissionDeniedError) as exc:
        book_appointment(
            session,
            caller_for(other),
            patient_id=episode.patient_id,
            episode_id=episode.id,
            time_slot_id=slot.id,
            now=NOW,
        )
    assert exc.value.code == 'ASSIGNED_PROVIDER_ONLY'
    assert exc.value.status_code == 403

    result = book_appointment(
        session,
        caller_for(admin),
        patient_id=episode.patient_id,
        episode_id=episode.id,
        time_slot_id=slot.id,
        now=NOW,
    )
    assert result.appointment.created_by == admin.id


def test_work_booking_needs_a_pathway(session, factory, provider):
    episode = factory.episode(provider=provider)
    slot = factory.slot(provider, days=3)

    with pytest.raises(ConflictError) as exc:
        book_appointment(
            session,
            caller_for(provider),
            patient_id=episode.patient_id,
            episode_id=episode.id,
            time_slot_id=slot.id,
            now=NOW,
        )
    assert exc.value.code == 'NO_CARE_PATHWAY'

    consult = book_appointment(
        session,
        caller_for(provider),
        patient_id=episode.patient_id,
        episode_id=episode.id,
        time_slot_id=slot.id,
        pool='consult',
        now=NOW,
    )
    assert consult.appointment.pool == Pool.CONSULT


def test_second_hard_booking_requires_written_override(session, factory, provider):
    episode = factory.episode(provider=provider, pathway=factory.pathway())
    caller = caller_for(provider)
    first_slot = factory.slot(provider, days=15)
    second_slot = factory.slot(provider, days=30)
    book_appointment(
        session, caller, patient_id=episode.patient_id, episode_id=episode.id,
        time_slot_id=first_slot.id, now=NOW,
    )
    session.commit()

    with pytest.raises(OneHardNextViolation) as exc:
        book_appointment(
            session, caller, patient_id=episode.patient_id, episode_id=episode.id,
            time_slot_id=second_slot.id, now=NOW,
        )
    assert exc.value.details['overrideAllowed'] is True
    session.rollback()

    with pytest.raises(ValidationError) as exc:
        book_appointment(
            session, caller, patient_id=episode.patient_id, episode_id=episode.id,
            time_slot_id=second_slot.id, override_reason='lab', now=NOW,
        )
    assert exc.value.code == 'OVERRIDE_REASON_TOO_SHORT'

    result = book_appointment(
        session, caller, patient_id=episode.patient_id, episode_id=episode.id,
        time_slot_id=second_slot.id, override_reason='Lab needs both visits fixed now', now=NOW,
    )
    session.commit()

    assert result.appointment.requires_precommit is True
    audit = session.get(SchedulingOverrideAudit, result.override_audit_id)
    assert audit.override_reason == 'Lab needs both visits fixed now'
    assert audit.user_id == provider.id


def test_cancel_frees_slot_and_reopens_step(session, factory, provider):
    episode = factory.episode(provider=provider, pathway=factory.pathway())
    generate_steps(session, episode.id)
    slot = factory.slot(provider, days=15)
    appointment = book_appointment(
        session, caller_for(provider), patient_id=episode.patient_id, episode_id=episode.id,
        time_slot_id=slot.id, now=NOW,
    ).appointment
    session.commit()

    cancel_appointment(session, appointment.id, by='patient', user_id=provider.id, now=NOW)
    session.commit()

    assert AppointmentStatus(appointment.appointment_status) == AppointmentStatus.CANCELLED_BY_PATIENT
    assert SlotState(session.get(TimeSlot, slot.id).state) == SlotState.FREE
    first = list_steps(session, episode.id)[0]
    assert StepStatus(first.status) == StepStatus.PENDING
    assert first.appointment_id is None
    event = session.execute(select(AppointmentStatusEvent)).scalars().one()
    assert event.new_status == 'cancelled_by_patient'

    with pytest.raises(InvalidTransitionError) as exc:
        cancel_appointment(session, appointment.id, by='doctor')
    assert exc.value.code == 'APPOINTMENT_NOT_ACTIVE'

    with pytest.raises(ValidationError) as exc:
        cancel_appointment(session, appointment.id, by='nobody')
    assert exc.value.code == 'INVALID_CANCELLATION'


def test_completed_outcome_completes_step(session, factory, provider):
    episode = factory.episode(provider=provider, pathway=factory.pathway())
    generate_steps(session, episode.id)
    slot = factory.slot(provider, days=15)
    appointment = book_appointment(
        session, caller_for(provider), patient_id=episode.patient_id, episode_id=episode.id,
        time_slot_id=slot.id, now=NOW,
    ).appointment

    record_outcome(session, appointment.id, 'completed', notes='uneventful')

    first = list_steps(session, episode.id)[0]
    assert StepStatus(first.status) == StepStatus.COMPLETED
    assert first.completed_at == appointment.start_time
    assert appointment.completion_notes == 'uneventful'

    with pytest.raises(ValidationError) as exc:
        record_outcome(session, appointment.id, 'maybe')
    assert exc.value.code == 'INVALID_OUTCOME'


def test_no_show_reopens_step(session, factory, provider):
    episode = factory.episode(provider=provider, pathway=factory.pathway())
    generate_steps(session, episode.id)
    slot = factory.slot(provider, days=15)
    appointment = book_appointment(
        session, caller_for(provider), patient_id=episode.patient_id, episode_id=episode.id,
        time_slot_id=slot.id, now=NOW,
    ).appointment

    record_outcome(session, appointment.id, 'no_show')

    assert AppointmentStatus(appointment.appointment_status) == AppointmentStatus.NO_SHOW
    assert StepStatus(list_steps(session, episode.id)[0].status) == StepStatus.PENDING


def test_unconfirmed_holds_expire(session, factory, provider):
    patient = factory.patient()
    _no_shows(session, patient, 2)
    slot = factory.slot(provider, days=5)
    appointment = book_appointment(
        session, caller_for(provider), patient_id=patient.id, time_slot_id=slot.id, now=NOW
    ).appointment
    session.commit()

    assert expire_holds(session, now=NOW + timedelta(hours=47)) == []
    expired = expire_holds(session, now=NOW + timedelta(hours=49))
    session.commit()

    assert expired == [appointment.id]
    assert AppointmentStatus(appointment.appointment_status) == AppointmentStatus.CANCELLED_BY_DOCTOR
    assert appointment.completion_notes == 'hold_expired'
    assert SlotState(session.get(TimeSlot, slot.id).state) == SlotState.FREE
