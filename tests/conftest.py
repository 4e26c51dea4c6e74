import os
from typing import Generator

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

WEBHOOK_SECRET = "test-webhook-secret"
JWT_SECRET = "test-jwt-secret-with-enough-bytes-for-hs256"

# The command-line entry points read configuration from the environment
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("FIREBASE_WEBHOOK_SECRET", WEBHOOK_SECRET)
os.environ.setdefault("USE_IN_MEMORY_IDENTITY", "1")

from peaberry import crud, schemas  # noqa: E402
from peaberry.auth import create_access_token  # noqa: E402
from peaberry.config import Settings  # noqa: E402
from peaberry.db import Base  # noqa: E402
from peaberry.deps import get_db  # noqa: E402
from peaberry.identity import InMemoryIdentityProvider  # noqa: E402
from peaberry.main import create_app  # noqa: E402


def make_settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite://",
        "jwt_secret": JWT_SECRET,
        "firebase_webhook_secret": WEBHOOK_SECRET,
        "use_in_memory_identity": True,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture(scope="function")
def db_session() -> Generator:
    # Use in-memory SQLite with a single connection
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def identity():
    return InMemoryIdentityProvider()


@pytest.fixture(scope="function")
def app(identity):
    return create_app(make_settings(), identity_provider=identity)


@pytest.fixture(scope="function")
def client(app, db_session):
    # Override dependency to use the same session
    def override_get_db():
        try:
            yield db_session
        finally:
            pass
    app.dependency_overrides[get_db] = override_get_db
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_user(db, username="alice", email=None, password="Secret123", role="user"):
    return crud.create_user(
        db,
        schemas.UserCreate(username=username, email=email or f"{username}@example.com", name=username.title(), password=password),
        role=role,
    )


def auth_header(user):
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role, JWT_SECRET)}"}


@pytest.fixture
def admin_headers(db_session):
    admin = make_user(db_session, username="admin", role="admin", password="AdminPass1")
    return auth_header(admin)
