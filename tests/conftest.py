import os
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, Dict, Iterator, List, Optional, Sequence

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from carepath.auth import ROLE_ADMIN, ROLE_SURGEON, Caller, create_access_token
from carepath.db import Base, get_session
from carepath.db.models import CarePathway, Patient, PatientEpisode, TimeSlot, User
from carepath.episodes import open_episode
from carepath.pathways import create_pathway
from carepath.settings import get_scheduling_settings
from carepath.slots import create_slot

# A fixed instant shortly in the future: service calls pass it explicitly,
# HTTP calls run on the wall clock and still see every slot as upcoming.
NOW = datetime.now(timezone.utc).replace(hour=6, minute=0, second=0, microsecond=0) + timedelta(days=1)

THREE_WORK_STEPS = [
    {'step_code': 'IMPLANT', 'pool': 'work', 'duration_minutes': 30, 'default_days_offset': 14},
    {'step_code': 'ABUTMENT', 'pool': 'work', 'duration_minutes': 30, 'default_days_offset': 14},
    {'step_code': 'CROWN', 'pool': 'work', 'duration_minutes': 30, 'default_days_offset': 14},
]


def _env_flag(name: str) -> bool:
    return os.getenv(name, '0').lower() in {'1', 'true', 'yes'}


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        '--run-postgres',
        action='store_true',
        default=_env_flag('RUN_PG_TESTS'),
        dest='run_postgres',
        help='Execute tests marked with @pytest.mark.postgres that require PostgreSQL.',
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        'markers',
        'postgres: Tests that require a PostgreSQL database and are skipped unless '
        'RUN_PG_TESTS=1 or --run-postgres is provided.',
    )


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    if config.getoption('run_postgres'):
        return
    skip_marker = pytest.mark.skip(reason='Requires PostgreSQL. Set RUN_PG_TESTS=1 or pass --run-postgres to enable.')
    for item in items:
        if 'postgres' in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(autouse=True)
def _clear_settings_cache(monkeypatch) -> Iterator[None]:
    monkeypatch.setenv('CAREPATH_JWT_SECRET', 'test-secret')
    monkeypatch.delenv('CAREPATH_NOTIFICATION_WEBHOOK_URL', raising=False)
    get_scheduling_settings.cache_clear()
    yield
    get_scheduling_settings.cache_clear()


@pytest.fixture
def engine() -> Iterator[sa.Engine]:
    engine = sa.create_engine(
        'sqlite+pysqlite:///:memory:',
        future=True,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine: sa.Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture
def session(session_factory: sessionmaker) -> Iterator[Session]:
    db = session_factory()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def client(session_factory: sessionmaker) -> Iterator[TestClient]:
    from carepath.main import app
    from carepath.step_catalog import StepCatalogCache

    app.state.step_catalog = StepCatalogCache()

    def _override_session() -> Iterator[Session]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_session] = _override_session
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_session, None)


def auth_header(user: User) -> Dict[str, str]:
    token = create_access_token(user.id, user.email, user.role)
    return {'Authorization': f'Bearer {token}'}


def caller_for(user: User) -> Caller:
    return Caller(user_id=user.id, email=user.email, role=user.role)


class Factory:
    """Persist the rows a scheduling test needs and commit them."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self._seq = count(1)

    def commit(self) -> None:
        self.session.commit()

    def user(self, *, role: str = ROLE_SURGEON, name: Optional[str] = 'Dr. Test', active: bool = True) -> User:
        number = next(self._seq)
        user = User(email=f'user{number}@clinic.test', name=name, role=role, active=active)
        self.session.add(user)
        self.session.commit()
        return user

    def admin(self) -> User:
        return self.user(role=ROLE_ADMIN, name='Admin')

    def patient(self, name: str = 'Test Patient') -> Patient:
        patient = Patient(name=name)
        self.session.add(patient)
        self.session.commit()
        return patient

    def pathway(
        self,
        steps: Sequence[Dict[str, Any]] = THREE_WORK_STEPS,
        *,
        name: str = 'Implant',
        reason: Optional[str] = None,
        window_slack_days: Optional[int] = None,
    ) -> CarePathway:
        pathway = create_pathway(
            self.session,
            name=name,
            steps=[dict(step) for step in steps],
            reason=reason,
            window_slack_days=window_slack_days,
        )
        self.session.commit()
        return pathway

    def episode(
        self,
        patient: Optional[Patient] = None,
        *,
        provider: Optional[User] = None,
        pathway: Optional[CarePathway] = None,
        reason: Optional[str] = None,
        now: datetime = NOW,
    ) -> PatientEpisode:
        patient = patient or self.patient()
        episode = open_episode(
            self.session,
            patient_id=patient.id,
            reason=reason,
            provider_id=provider.id if provider is not None else None,
            care_pathway_id=pathway.id if pathway is not None else None,
            now=now,
        )
        self.session.commit()
        return episode

    def slot(
        self,
        provider: User,
        *,
        days: int,
        hour: int = 11,
        duration: Optional[int] = 30,
        purpose: Optional[str] = None,
        base: datetime = NOW,
    ) -> TimeSlot:
        start = (base + timedelta(days=days)).replace(hour=hour, minute=0)
        slot = create_slot(
            self.session,
            provider_id=provider.id,
            start_time=start,
            duration_minutes=duration,
            slot_purpose=purpose,
        )
        self.session.commit()
        return slot


@pytest.fixture
def factory(session: Session) -> Factory:
    return Factory(session)


@pytest.fixture
def provider(factory: Factory) -> User:
    return factory.user()


@pytest.fixture
def admin(factory: Factory) -> User:
    return factory.admin()
