"""Root conftest for all tests.

Every test gets its own in-memory SQLite database. get_session() is patched
in the modules that import it so pipeline code and tests share one session.
"""

import os
from contextlib import contextmanager

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cycleflow.db.models import Base, Integration

SESSION_MODULES = (
    "cycleflow.db.session",
    "cycleflow.integrations.garmin.webhook",
    "cycleflow.integrations.garmin.jobs",
)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs these two hooks for SAVEPOINT (begin_nested) to work
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine, monkeypatch):
    """Session on the per-test database, also returned by get_session()."""
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()

    @contextmanager
    def session_scope():
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise

    for module in SESSION_MODULES:
        monkeypatch.setattr(f"{module}.get_session", session_scope)

    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def reset_webhook_rate_limiter(monkeypatch):
    monkeypatch.setattr("cycleflow.core.rate_limit._limiter", None)


@pytest.fixture
def garmin_integration(db_session) -> Integration:
    integration = Integration(
        user_id="user-1",
        provider="garmin",
        access_token="garmin-token",
        provider_user_id="u1",
    )
    db_session.add(integration)
    db_session.commit()
    return integration


@pytest.fixture
def strava_integration(db_session) -> Integration:
    integration = Integration(
        user_id="user-1",
        provider="strava",
        access_token="strava-token",
        refresh_token="strava-refresh",
        provider_user_id="9001",
    )
    db_session.add(integration)
    db_session.commit()
    return integration
