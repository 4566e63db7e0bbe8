"""Shared fixtures: an in-memory database, a private change hub and an API client wired to both."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from campussynq.activity import ActivityStream, get_stream
from campussynq.db import Base, get_db, get_session_factory, make_engine
from campussynq.main import app
from campussynq.models import Profile
from campussynq.progression import ProgressionLedger, get_ledger
from campussynq.realtime import ChangeHub, get_hub
from campussynq.routers.auth import User


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def hub():
    return ChangeHub()


@pytest.fixture
def ledger(hub):
    return ProgressionLedger(hub, xp_per_level=500, privileged=False, write_retries=3, sign_in_path="/auth")


@pytest.fixture
def stream(hub):
    return ActivityStream(hub, limit=20)


@pytest.fixture
def alice():
    return User(id="u-alice", username="alice", full_name="Alice Doe")


@pytest.fixture
def bob():
    return User(id="u-bob", username="bob", full_name="Bob Roe")


@pytest.fixture
def make_profile(db):
    """Insert a profile row directly, as an administrative write would."""
    def _make(user_id, xp=0, level=1, username=None, full_name=None):
        db.add(Profile(id=user_id, xp=xp, level=level, username=username, full_name=full_name))
        db.commit()
    return _make


@pytest.fixture
def client(session_factory, hub, ledger, stream):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_hub] = lambda: hub
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_stream] = lambda: stream
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def signup(client):
    """Register and sign in a user; returns (user_id, auth headers)."""
    def _signup(username="student1", password="correct-horse", full_name=None):
        res = client.post(
            "/auth/register",
            json={"username": username, "password": password, "email": f"{username}@campus.test", "full_name": full_name},
        )
        assert res.status_code == 201, res.text
        user_id = res.json()["id"]
        res = client.post("/auth/token", data={"username": username, "password": password})
        assert res.status_code == 200, res.text
        return user_id, {"Authorization": f"Bearer {res.json()['access_token']}"}
    return _signup
