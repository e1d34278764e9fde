"""
Pytest configuration and shared fixtures.
"""

import os
import sys
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

# Ensure project root is in path
sys.path.insert(0, str(Path(__file__).parent.parent))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["ENABLE_SCHEDULER"] = "false"

from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine
from sqlmodel.pool import StaticPool

from clock import FixedClock
from models import Standup

CHICAGO = ZoneInfo("America/Chicago")


def chicago(*args) -> datetime:
    return datetime(*args, tzinfo=CHICAGO)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def clock():
    """8:00am on 2001-01-01 in Chicago, an hour before the default standup."""
    return FixedClock(chicago(2001, 1, 1, 8, 0))


@pytest.fixture
def make_standup(session):
    def _make(**kwargs):
        fields = {
            "title": "Chicago Standup",
            "to_address": "standup@example.com",
            "subject_prefix": "[Standup]",
            "closing_message": "STRETCH!",
            "time_zone_name": "America/Chicago",
            "start_time_string": "9:00am",
        }
        fields.update(kwargs)
        standup = Standup(**fields)
        session.add(standup)
        session.commit()
        session.refresh(standup)
        return standup

    return _make


@pytest.fixture
def client(session, clock, monkeypatch):
    """FastAPI test client bound to the in-memory session and fixed clock."""
    import main

    monkeypatch.delenv("DIGEST_WEBHOOK_URL", raising=False)
    main.app.dependency_overrides[main.get_session] = lambda: session
    main.app.dependency_overrides[main.get_clock] = lambda: clock
    with TestClient(main.app) as client:
        yield client
    main.app.dependency_overrides.clear()
