import pytest

from carepath.step_catalog import LABELS, UNMAPPED, StepCatalogCache, upsert_label


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_unmapped_codes_come_from_active_pathways(session, factory):
    cache = StepCatalogCache()
    factory.pathway()

    assert cache.get(UNMAPPED, session) == ['ABUTMENT', 'CROWN', 'IMPLANT']
    upsert_label(session, 'CROWN', 'Final crown')
    session.commit()
    cache.invalidate_all()
    assert cache.get(UNMAPPED, session) == ['ABUTMENT', 'IMPLANT']
    assert cache.get(LABELS, session) == {'CROWN': 'Final crown'}
    assert cache.label_for('IMPLANT', session) == 'IMPLANT'


def test_entries_expire_after_ttl(session):
    clock = FakeClock()
    cache = StepCatalogCache(ttl_seconds=60, clock=clock)
    assert cache.get(LABELS, session) == {}

    upsert_label(session, 'IMPLANT', 'Implant placement')
    session.commit()

    clock.now += 30
    assert cache.get(LABELS, session) == {}
    clock.now += 31
    assert cache.get(LABELS, session) == {'IMPLANT': 'Implant placement'}


def test_invalidate_drops_cached_values(session):
    cache = StepCatalogCache()
    cache.get(LABELS, session)
    assert cache.peek(LABELS) == {}

    cache.invalidate(LABELS)
    assert cache.peek(LABELS) is None

    cache.get(LABELS, session)
    cache.get(UNMAPPED, session)
    cache.invalidate_all()
    assert cache.peek(LABELS) is None
    assert cache.peek(UNMAPPED) is None


def test_unknown_key(session):
    with pytest.raises(KeyError):
        StepCatalogCache().get('colours', session)


def test_upsert_leaves_the_cache_to_the_caller(session):
    cache = StepCatalogCache()
    assert cache.get(LABELS, session) == {}

    upsert_label(session, 'IMPLANT', 'Implant placement')
    assert cache.peek(LABELS) == {}
    session.rollback()
    cache.invalidate(LABELS)

    assert cache.get(LABELS, session) == {}
