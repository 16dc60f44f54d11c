"""
Shared test fixtures.

Sets up an isolated SQLite database so tests never touch the real
one. Tables are created before and dropped after every test.

Time and background work are made deterministic:
- FakeClock stands in for utc_now and only moves when told to
- InlineExecutor runs finalization jobs on the calling thread,
  so a record is final by the time after() returns
"""

import uuid
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from activity_audit.api.deps import get_query_service, get_record_store
from activity_audit.config import Settings, get_settings
from activity_audit.main import app
from activity_audit.models.activity_record import ActivityRecord
from activity_audit.models.base import Base, build_engine, get_db
from activity_audit.models.enums import ActivityKind, ActivityStatus
from activity_audit.services.interceptor import ActivityInterceptor
from activity_audit.services.query_service import ActivityQueryService
from activity_audit.services.record_store import RecordStore


TEST_DATABASE_URL = "sqlite:///./test.db"

engine = build_engine(TEST_DATABASE_URL)

TestSessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
)

START = datetime(2026, 3, 2, 12, 0, 0)


class FakeClock:
    """A clock that only moves when the test advances it."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class InlineExecutor(Executor):
    """Runs submitted jobs immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:
            future.set_exception(exc)
        return future


@pytest.fixture(autouse=True)
def setup_database():
    """
    Create all tables before each test, drop them after.

    autouse=True means every test gets this automatically.
    """
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    """Provide a database session for direct service testing."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def session_factory():
    return TestSessionLocal


@pytest.fixture
def settings():
    return Settings(DATABASE_URL=TEST_DATABASE_URL, REAPER_ENABLED=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(session_factory, settings, clock):
    return RecordStore(session_factory=session_factory, settings=settings, clock=clock)


@pytest.fixture
def executor():
    return InlineExecutor()


@pytest.fixture
def interceptor(store, settings, clock, executor):
    return ActivityInterceptor(
        store=store,
        settings=settings,
        executor=executor,
        clock=clock,
    )


@pytest.fixture
def make_record(db_session, clock):
    """
    Insert a finalized record directly, bypassing the interceptor.

    Used by query and reaper tests that need a lot of rows or rows
    in a particular shape.
    """
    def _make(
        actor_id="user-1",
        kind=ActivityKind.ACCOUNT_UPDATE,
        status=ActivityStatus.SUCCESS,
        occurred_at=None,
        **fields,
    ) -> ActivityRecord:
        occurred_at = occurred_at or clock()
        values = dict(
            id=uuid.uuid4(),
            activity_kind=kind,
            status=status,
            actor_id=actor_id,
            occurred_at=occurred_at,
            completed_at=occurred_at if status != ActivityStatus.PENDING else None,
            changes=[],
            security_reasons=[],
            risk_score=0,
            flagged=False,
            permanent=False,
            expires_at=occurred_at + timedelta(days=730),
        )
        values.update(fields)
        record = ActivityRecord(**values)
        db_session.add(record)
        db_session.commit()
        return record

    return _make


@pytest.fixture
def client(settings, store, clock):
    """
    Provide a test client bound to the test database.

    Each request gets its own session, as in production, and
    services see the test settings and the fake clock.
    """
    def override_get_db():
        db = TestSessionLocal()
        try:
            yield db
        finally:
            db.close()

    def override_get_query_service(db: Session = Depends(get_db)):
        return ActivityQueryService(db, settings, clock)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_record_store] = lambda: store
    app.dependency_overrides[get_query_service] = override_get_query_service
    yield TestClient(app)
    app.dependency_overrides.clear()
