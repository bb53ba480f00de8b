"""
Test configuration and shared fixtures for the core facility test suite.

Uses SQLite for all tests. Each test gets a fresh in-memory schema; tests
that exercise real thread concurrency use a file-backed database so every
thread can hold its own connection.
"""

import os

# Must be set before any application module builds the engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("ENABLE_BILLING_SCHEDULER", "false")
os.environ.setdefault("LOCK_TIMEOUT_SECONDS", "5")

from typing import Any, Dict, Generator, List, Tuple  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import core.locks  # noqa: E402
import models  # noqa: E402,F401 - registers every table on Base.metadata
from core.database import Base  # noqa: E402
from services.notification_service import set_notification_sink  # noqa: E402


@pytest.fixture(scope="function")
def db_engine() -> Generator[Engine, None, None]:
    """
    In-memory SQLite engine with the full schema.

    StaticPool keeps the single in-memory connection alive for the test.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Database session for a test; matches the application's session settings."""
    TestSession = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    session = TestSession()

    yield session

    session.close()


@pytest.fixture(scope="function")
def file_engine(tmp_path) -> Generator[Engine, None, None]:
    """
    File-backed SQLite engine for multi-threaded tests.

    Each thread opens its own connection; SQLite's busy timeout covers the
    short waits between writers.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=False,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    engine.dispose()


@pytest.fixture(scope="function")
def file_session_factory(file_engine) -> sessionmaker:
    return sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)


class RecordingSink:
    """Notification sink that keeps published events for assertions."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def types(self) -> List[str]:
        return [event_type for event_type, _ in self.events]


@pytest.fixture(autouse=True)
def reset_process_state():
    """Fresh lock registry and default notification sink for every test."""
    core.locks._lock_registry = None
    set_notification_sink(None)

    yield

    core.locks._lock_registry = None
    set_notification_sink(None)


@pytest.fixture
def events() -> RecordingSink:
    """Install a recording notification sink."""
    sink = RecordingSink()
    set_notification_sink(sink)
    return sink
