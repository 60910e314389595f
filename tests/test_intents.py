from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import NOW, caller_for

from carepath.booking import book_appointment
from carepath.db import transaction
from carepath.db.models import (
    Appointment,
    IntentState,
    SchedulingOverrideAudit,
    SlotIntent,
    SlotState,
    StepStatus,
    TimeSlot,
)
from carepath.episode_steps import generate_steps, list_steps, transition_step
from carepath.episodes import assign_pathway, close_episode, record_stage_event
from carepath.errors import (
    ConflictError,
    NoFreeSlotError,
    NotFoundError,
    OneHardNextViolation,
    SlotUnavailableError,
)
from carepath.intents import convert_intent, invalidate_intents, list_intents, project_intents
from carepath.invariant import find_one_hard_next_violations
from carepath.next_step import NO_CARE_PATHWAY
from carepath.slots import block_slot

CONSULT_STEPS = [
    {'step_code': 'CONSULT', 'pool': 'consult', 'duration_minutes': 30, 'default_days_offset': 14},
    {'step_code': 'CHECKUP', 'pool': 'control', 'duration_minutes': 30, 'default_days_offset': 14},
]


def _projected(session, factory, provider, *, materialise=False):
    episode = factory.episode(provider=provider, pathway=factory.pathway())
    if materialise:
        generate_steps(session, episode.id)
    intents = project_intents(session, episode.id, now=NOW).intents
    session.commit()
    return episode, intents


def test_projection_creates_one_intent_per_pending_step(session, factory, provider):
    episode, intents = _projected(session, factory, provider)

    assert [(i.step_code, i.step_seq) for i in intents] == [('IMPLANT', 0), ('ABUTMENT', 1), ('CROWN', 2)]
    first = intents[0]
    assert first.window_start == NOW + timedelta(days=14)
    assert first.window_end == NOW + timedelta(days=28)
    assert first.expires_at == NOW + timedelta(days=58)
    assert first.steps_hash
    assert all(IntentState(i.state) == IntentState.OPEN for i in intents)

    again = project_intents(session, episode.id, now=NOW)
    assert again.expired == 0
    assert [i.id for i in again.intents] == [i.id for i in intents]


def test_projection_for_episode_without_pathway_is_blocked(session, factory):
    episode = factory.episode()

    result = project_intents(session, episode.id, now=NOW)

    assert result.intents == []
    assert result.blocked.code == NO_CARE_PATHWAY


def test_conversion_books_a_slot_inside_the_window(session, factory, provider):
    episode, intents = _projected(session, factory, provider)
    too_early = factory.slot(provider, days=10)
    inside = factory.slot(provider, days=17)

    with transaction(session):
        result = convert_intent(session, intents[0].id, caller_for(provider), now=NOW)

    appointment = result.appointment
    assert appointment.time_slot_id == inside.id
    assert appointment.episode_id == episode.id
    assert appointment.step_code == 'IMPLANT'
    assert appointment.slot_intent_id == intents[0].id
    assert appointment.created_via == 'worklist'
    assert appointment.requires_precommit is False
    assert result.override_audit_id is None
    assert SlotState(session.get(TimeSlot, inside.id).state) == SlotState.BOOKED
    assert SlotState(session.get(TimeSlot, too_early.id).state) == SlotState.FREE
    intent = session.get(SlotIntent, intents[0].id)
    assert IntentState(intent.state) == IntentState.CONVERTED
    assert intent.converted_appointment_id == appointment.id


def test_conversion_marks_materialised_step_scheduled(session, factory, provider):
    episode, intents = _projected(session, factory, provider, materialise=True)
    factory.slot(provider, days=17)

    with transaction(session):
        result = convert_intent(session, intents[0].id, caller_for(provider), now=NOW)

    first = list_steps(session, episode.id)[0]
    assert StepStatus(first.status) == StepStatus.SCHEDULED
    assert first.appointment_id == result.appointment.id


def test_converted_intent_cannot_be_converted_again(session, factory, provider):
    _, intents = _projected(session, factory, provider)
    factory.slot(provider, days=17)
    factory.slot(provider, days=18)
    caller = caller_for(provider)

    with transaction(session):
        convert_intent(session, intents[0].id, caller, now=NOW)

    with pytest.raises(ConflictError) as exc:
        with transaction(session):
            convert_intent(session, intents[0].id, caller, now=NOW)
    assert exc.value.code == 'INTENT_NOT_OPEN'
    assert session.execute(select(func.count(Appointment.id))).scalar_one() == 1


def test_second_work_intent_needs_precommit(session, factory, provider):
    episode, intents = _projected(session, factory, provider)
    factory.slot(provider, days=17)
    later = factory.slot(provider, days=31)
    caller = caller_for(provider)

    with transaction(session):
        first = convert_intent(session, intents[0].id, caller, now=NOW)

    with pytest.raises(OneHardNextViolation) as exc:
        with transaction(session):
            convert_intent(session, intents[1].id, caller, now=NOW)
    assert exc.value.status_code == 409
    assert exc.value.code == 'ONE_HARD_NEXT_VIOLATION'
    assert exc.value.details['blockingAppointmentIds'] == [first.appointment.id]
    assert SlotState(session.get(TimeSlot, later.id).state) == SlotState.FREE
    assert IntentState(session.get(SlotIntent, intents[1].id).state) == IntentState.OPEN

    with transaction(session):
        second = convert_intent(session, intents[1].id, caller, requires_precommit=True, now=NOW)

    assert second.appointment.time_slot_id == later.id
    assert second.appointment.requires_precommit is True
    audits = session.execute(select(SchedulingOverrideAudit)).scalars().all()
    assert len(audits) == 1
    assert audits[0].id == second.override_audit_id
    assert audits[0].appointment_id == second.appointment.id
    assert audits[0].override_reason == 'precommit: ABUTMENT'
    assert find_one_hard_next_violations(session, now=NOW) == []


def test_step_flagged_precommit_bypasses_without_request(session, factory, provider):
    pathway = factory.pathway(
        [
            {'step_code': 'IMPLANT', 'pool': 'work', 'default_days_offset': 14},
            {'step_code': 'TEMP_CROWN', 'pool': 'work', 'default_days_offset': 14, 'requires_precommit': True},
        ]
    )
    episode = factory.episode(provider=provider, pathway=pathway)
    intents = project_intents(session, episode.id, now=NOW).intents
    session.commit()
    factory.slot(provider, days=17)
    factory.slot(provider, days=31)
    caller = caller_for(provider)

    with transaction(session):
        convert_intent(session, intents[0].id, caller, now=NOW)
    with transaction(session):
        second = convert_intent(session, intents[1].id, caller, now=NOW)

    assert second.appointment.requires_precommit is True
    assert second.override_audit_id is not None


def test_no_free_slot_in_window(session, factory, provider):
    _, intents = _projected(session, factory, provider)
    factory.slot(provider, days=40)

    with pytest.raises(NoFreeSlotError) as exc:
        with transaction(session):
            convert_intent(session, intents[0].id, caller_for(provider), now=NOW)
    assert exc.value.status_code == 404
    assert exc.value.code == 'SLOT_ALREADY_BOOKED'
    assert IntentState(session.get(SlotIntent, intents[0].id).state) == IntentState.OPEN


def test_search_respects_purpose_and_duration(session, factory, provider):
    _, intents = _projected(session, factory, provider)
    consult_only = factory.slot(provider, days=15, purpose='consult')
    too_short = factory.slot(provider, days=16, duration=15)
    fitting = factory.slot(provider, days=18, purpose='work', duration=60)

    with transaction(session):
        result = convert_intent(session, intents[0].id, caller_for(provider), now=NOW)

    assert result.slot.id == fitting.id
    assert SlotState(session.get(TimeSlot, consult_only.id).state) == SlotState.FREE
    assert SlotState(session.get(TimeSlot, too_short.id).state) == SlotState.FREE


def test_explicit_slot_must_be_free(session, factory, provider):
    _, intents = _projected(session, factory, provider)
    slot = factory.slot(provider, days=17)
    block_slot(session, slot.id)
    session.commit()

    with pytest.raises(SlotUnavailableError) as exc:
        with transaction(session):
            convert_intent(session, intents[0].id, caller_for(provider), time_slot_id=slot.id, now=NOW)
    assert exc.value.status_code == 400
    assert exc.value.code == 'SLOT_ALREADY_BOOKED'

    with pytest.raises(NotFoundError) as exc:
        with transaction(session):
            convert_intent(session, 9999, caller_for(provider), now=NOW)
    assert exc.value.code == 'INTENT_NOT_FOUND'


def test_expired_intent_is_rejected(session, factory, provider):
    _, intents = _projected(session, factory, provider)
    factory.slot(provider, days=17)

    with pytest.raises(ConflictError) as exc:
        convert_intent(
            session,
            intents[0].id,
            caller_for(provider),
            now=intents[0].expires_at + timedelta(minutes=1),
        )
    assert exc.value.code == 'INTENT_EXPIRED'


def test_episode_events_invalidate_open_intents(session, factory, provider):
    episode, intents = _projected(session, factory, provider)

    record_stage_event(session, episode.id, 'STAGE_2', now=NOW)
    session.commit()
    assert {i.expired_reason for i in list_intents(session, episode.id)} == {'stage_changed'}
    assert list_intents(session, episode.id, state='open') == []

    reopened = project_intents(session, episode.id, now=NOW)
    session.commit()
    assert len(reopened.intents) == 3
    assert [i.id for i in reopened.intents] == [i.id for i in intents]

    assign_pathway(session, episode.id, factory.pathway(name='Second').id)
    session.commit()
    assert {i.expired_reason for i in list_intents(session, episode.id)} == {'pathway_changed'}

    project_intents(session, episode.id, now=NOW)
    close_episode(session, episode.id, now=NOW)
    session.commit()
    assert {i.expired_reason for i in list_intents(session, episode.id)} == {'episode_closed'}


def test_closed_episode_intent_cannot_convert(session, factory, provider):
    episode, intents = _projected(session, factory, provider)
    close_episode(session, episode.id, now=NOW)
    session.commit()

    with pytest.raises(ConflictError) as exc:
        convert_intent(session, intents[0].id, caller_for(provider), now=NOW)
    assert exc.value.code == 'INTENT_NOT_OPEN'


def test_skipping_a_step_expires_its_intent(session, factory, provider):
    episode, intents = _projected(session, factory, provider, materialise=True)
    factory.slot(provider, days=17)
    first_step = list_steps(session, episode.id)[0]
    transition_step(session, episode.id, first_step.id, 'skipped', now=NOW)
    session.commit()

    skipped = session.get(SlotIntent, intents[0].id)
    assert IntentState(skipped.state) == IntentState.EXPIRED
    assert skipped.expired_reason == 'step_not_pending'
    with pytest.raises(ConflictError) as exc:
        with transaction(session):
            convert_intent(session, intents[0].id, caller_for(provider), now=NOW)
    assert exc.value.code == 'INTENT_NOT_OPEN'

    result = project_intents(session, episode.id, now=NOW)
    assert result.expired == 0
    assert [i.step_code for i in result.intents] == ['ABUTMENT', 'CROWN']


def test_reactivated_step_gets_its_intent_back(session, factory, provider):
    episode, intents = _projected(session, factory, provider, materialise=True)
    first_step = list_steps(session, episode.id)[0]
    transition_step(session, episode.id, first_step.id, 'skipped', now=NOW)
    transition_step(session, episode.id, first_step.id, 'pending')
    session.commit()

    result = project_intents(session, episode.id, now=NOW)

    assert result.intents[0].id == intents[0].id
    assert IntentState(result.intents[0].state) == IntentState.OPEN


def test_direct_booking_expires_the_intent_of_its_step(session, factory, provider):
    episode = factory.episode(provider=provider, pathway=factory.pathway(CONSULT_STEPS))
    generate_steps(session, episode.id)
    intents = project_intents(session, episode.id, now=NOW).intents
    session.commit()
    booked = factory.slot(provider, days=3)
    factory.slot(provider, days=17)

    book_appointment(
        session,
        caller_for(provider),
        patient_id=episode.patient_id,
        episode_id=episode.id,
        time_slot_id=booked.id,
        pool='consult',
        step_code='CONSULT',
        step_seq=0,
        now=NOW,
    )
    session.commit()

    intent = session.get(SlotIntent, intents[0].id)
    assert IntentState(intent.state) == IntentState.EXPIRED
    assert intent.expired_reason == 'step_not_pending'
    with pytest.raises(ConflictError) as exc:
        with transaction(session):
            convert_intent(session, intents[0].id, caller_for(provider), now=NOW)
    assert exc.value.code == 'INTENT_NOT_OPEN'
    assert session.execute(select(func.count(Appointment.id))).scalar_one() == 1


def test_conversion_refuses_a_step_that_left_pending(session, factory, provider):
    episode = factory.episode(provider=provider, pathway=factory.pathway(CONSULT_STEPS))
    generate_steps(session, episode.id)
    intents = project_intents(session, episode.id, now=NOW).intents
    step = list_steps(session, episode.id)[0]
    step.status = StepStatus.SKIPPED
    session.commit()
    slot = factory.slot(provider, days=17)

    with pytest.raises(ConflictError) as exc:
        with transaction(session):
            convert_intent(session, intents[0].id, caller_for(provider), now=NOW)

    assert exc.value.code == 'STEP_NOT_PENDING'
    assert exc.value.details['stepStatus'] == 'skipped'
    assert SlotState(session.get(TimeSlot, slot.id).state) == SlotState.FREE
    assert session.execute(select(func.count(Appointment.id))).scalar_one() == 0


def test_unknown_invalidation_reason_is_rejected(session, factory):
    episode = factory.episode()
    with pytest.raises(ValueError):
        invalidate_intents(session, episode.id, 'because')
