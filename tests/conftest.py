import copy
import os
from datetime import date, datetime, time, timedelta

# Point the package at SQLite before anything imports the engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_FILE", os.devnull)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleet_compliance.config import config
from fleet_compliance.db import get_db
from fleet_compliance.main import app
from fleet_compliance.models import Base
from fleet_compliance.persistence import OrgContext, create_driver
from fleet_compliance.rest import record_daily_rest

TODAY = date(2025, 6, 2)
# Week of Monday 26 May 2025; compensation for it is due by 22 June 2025
WEEK = date(2025, 5, 26)


def add_rest(db, ctx, driver_id, day, hours):
    """Record a daily rest of ``hours`` starting at 20:00 on ``day``."""
    start = datetime.combine(day, time(20, 0))
    return record_daily_rest(db, ctx, driver_id, day, start, start + timedelta(hours=hours))


@pytest.fixture(autouse=True)
def restore_config():
    """Undo runtime policy overrides made by a test."""
    saved = copy.deepcopy(vars(config))
    yield
    config.__dict__.clear()
    config.__dict__.update(saved)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def ctx():
    return OrgContext("org-a", acting_user_id="tester", as_of_date=TODAY)


@pytest.fixture
def other_ctx():
    return OrgContext("org-b", as_of_date=TODAY)


@pytest.fixture
def driver(db, ctx):
    return create_driver(db, ctx, "drv-001", "Alex Driver")


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
