import pytest

from conftest import THREE_WORK_STEPS

from carepath.db.models import PathwayStatus
from carepath.errors import NotFoundError, ValidationError
from carepath.pathways import (
    StepCatalogIssue,
    list_pathways,
    parse_pathway_steps,
    steps_hash,
    suggest_pathways,
    update_pathway,
)


def test_parse_applies_defaults():
    (step,) = parse_pathway_steps([{'step_code': ' CONSULT ', 'pool': 'consult'}])

    assert step.step_code == 'CONSULT'
    assert step.duration_minutes == 30
    assert step.default_days_offset == 14
    assert step.requires_precommit is False
    assert step.slack_days is None


@pytest.mark.parametrize(
    'entry',
    [
        {'pool': 'work'},
        {'step_code': 'X', 'pool': 'surgery'},
        {'step_code': 'X', 'duration_minutes': 0},
        {'step_code': 'X', 'duration_minutes': True},
        {'step_code': 'X', 'default_days_offset': -1},
        {'step_code': 'X', 'default_days_offset': 2.5},
        {'step_code': 'X', 'requires_precommit': 'false'},
        {'step_code': 'X', 'requires_precommit': 1},
    ],
)
def test_parse_rejects_malformed_steps(entry):
    with pytest.raises(StepCatalogIssue) as exc:
        parse_pathway_steps([{'step_code': 'OK'}, entry], pathway_id=7)
    assert exc.value.code == 'INVALID_STEP_CATALOG'
    assert exc.value.details['index'] == 1
    assert exc.value.details['pathwayId'] == 7


def test_parse_rejects_non_list():
    with pytest.raises(StepCatalogIssue):
        parse_pathway_steps({'step_code': 'X'})


def test_steps_hash_is_order_sensitive():
    steps = parse_pathway_steps([dict(step) for step in THREE_WORK_STEPS])

    assert steps_hash(steps) == steps_hash(list(steps))
    assert steps_hash(steps) != steps_hash(list(reversed(steps)))


def test_unreferenced_pathway_is_edited_in_place(session, factory):
    pathway = factory.pathway()

    updated = update_pathway(session, pathway.id, name='Renamed', window_slack_days=7)

    assert updated.id == pathway.id
    assert updated.version == 1
    assert updated.name == 'Renamed'
    assert updated.window_slack_days == 7


def test_referenced_pathway_forks_a_new_version(session, factory):
    pathway = factory.pathway()
    factory.episode(pathway=pathway)

    updated = update_pathway(session, pathway.id, steps=[dict(THREE_WORK_STEPS[0])])
    session.commit()

    assert updated.id != pathway.id
    assert updated.family_key == pathway.family_key
    assert updated.version == 2
    assert len(updated.steps_json) == 1
    assert PathwayStatus(pathway.status) == PathwayStatus.SUPERSEDED
    assert [p.id for p in list_pathways(session)] == [updated.id]
    assert len(list_pathways(session, include_superseded=True)) == 2

    with pytest.raises(ValidationError) as exc:
        update_pathway(session, pathway.id, name='Stale')
    assert exc.value.code == 'PATHWAY_SUPERSEDED'


def test_update_validates_steps_and_existence(session, factory):
    pathway = factory.pathway()

    with pytest.raises(StepCatalogIssue):
        update_pathway(session, pathway.id, steps=[{'step_code': 'X', 'pool': 'nope'}])
    with pytest.raises(NotFoundError) as exc:
        update_pathway(session, 9999, name='Missing')
    assert exc.value.code == 'PATHWAY_NOT_FOUND'


def test_suggestions_match_reason_case_insensitively(session, factory):
    match = factory.pathway(reason='Missing Tooth')
    factory.pathway(name='Other', reason='Gum disease')
    episode = factory.episode(reason='missing tooth')

    assert suggest_pathways(session, episode) == [match.id]
    assert suggest_pathways(session, factory.episode()) == []
