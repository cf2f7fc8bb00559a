"""
Shared fixtures for the clinic queue tests.

Every test gets its own SQLite file database and its own notifier, so no
state leaks between tests.
"""

import asyncio
import time
from typing import Any, Dict, List, Tuple

import pytest
from sqlmodel import Session, create_engine

import notifier
import services
from notifier import LocalNotifier


class RecordingNotifier:
    """Notifier that only remembers what was published."""

    def __init__(self):
        self.published: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, channel: str, payload: Dict[str, Any]) -> int:
        self.published.append((channel, payload))
        return 0

    def status(self) -> str:
        return "recording"


@pytest.fixture
def engine(tmp_path):
    """SQLite file database with all tables created."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'queue.db'}",
        connect_args={"check_same_thread": False},
    )
    services.set_engine(engine)
    services.init_db(engine)
    yield engine
    services.set_engine(None)
    engine.dispose()


@pytest.fixture
def local_notifier():
    """In-process notifier installed as the process-wide notifier."""
    instance = LocalNotifier()
    notifier.set_notifier(instance)
    yield instance
    notifier.set_notifier(None)


@pytest.fixture
def recorder():
    """Recording notifier installed as the process-wide notifier."""
    instance = RecordingNotifier()
    notifier.set_notifier(instance)
    yield instance
    notifier.set_notifier(None)


@pytest.fixture
def db(engine):
    with Session(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def clinic(db, local_notifier):
    return services.create_clinic(db, "city-health", "City Health")


@pytest.fixture
def morning(db, clinic):
    return services.add_session(db, clinic.id, "Morning")


@pytest.fixture
def active_morning(db, morning):
    services.start_session(db, morning.id)
    return morning


@pytest.fixture
def wait_until():
    """Async helper: poll ``predicate`` until it holds or fail after ``timeout``."""

    async def _wait_until(predicate, timeout: float = 3.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.01)

    return _wait_until


def fresh_state(engine, clinic_id: int, session_id: int):
    """Read the stored token state through a brand new DB session."""
    with Session(engine, expire_on_commit=False) as session:
        return services.read_token_state(session, clinic_id, session_id)


@pytest.fixture
def read_state(engine):
    return lambda clinic_id, session_id: fresh_state(engine, clinic_id, session_id)
