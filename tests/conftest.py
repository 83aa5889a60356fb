import os

# Must be set before app.core.settings is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TOKENS"] = '["test-admin-token"]'
os.environ["ANALYTICS_SINK"] = "database"
os.environ["ASSIGNMENT_STORE"] = "cookie"

import pytest
from fastapi.testclient import TestClient

from app.core.db import SessionLocal, engine, init_db
from app.main import app
from app.models.orm.base import Base
from app.models.schemas.consent import ConsentPreferences, ConsentStateModel
from app.core.context import TrackingContext
from app.repositories.assignment_store import InMemoryAssignmentStore

ADMIN_HEADERS = {"Authorization": "Bearer test-admin-token"}


class RecordingSink:
    def __init__(self):
        self.events = []

    def dispatch(self, event):
        self.events.append(event)


class FailingSink:
    def dispatch(self, event):
        raise ConnectionError("analytics collector is down")


class FixedRandom:
    """Stands in for random.Random; uniform() always lands on the same point."""

    def __init__(self, value):
        self.value = value

    def uniform(self, a, b):
        return self.value


@pytest.fixture(autouse=True)
def reset_db():
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)
    app.dependency_overrides.clear()


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def consenting_client(client):
    response = client.post("/consent", json={"choice": "accept_all"})
    assert response.status_code == 200
    return client


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def store():
    return InMemoryAssignmentStore()


@pytest.fixture
def consented_context(store):
    return TrackingContext(
        consent=ConsentStateModel(
            has_consented=True,
            preferences=ConsentPreferences(analytics=True),
        ),
        store=store,
        visitor_id="visitor-1",
    )


@pytest.fixture
def declined_context(store):
    return TrackingContext(
        consent=ConsentStateModel(has_consented=False, preferences=ConsentPreferences()),
        store=store,
        visitor_id=None,
    )


@pytest.fixture
def failing_sink():
    return FailingSink()


@pytest.fixture
def fixed_random():
    return FixedRandom
