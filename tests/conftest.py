import os

# database.py builds its engine at import time; keep it off any real server
os.environ.setdefault("DATABASE_URL", "sqlite://")

import base64
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from access_control import AccessEvaluator
from config import AccessControlConfig
from database import Base
from store import AccessStore
import models


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture()
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture()
def config(clock):
    return AccessControlConfig(clock=clock)


@pytest.fixture()
def store(db):
    return AccessStore(db)


@pytest.fixture()
def evaluator(store, config):
    return AccessEvaluator(store, config)


def seed_legacy_share(db, clock, password: str, group_id: str = "LEGACY1"):
    """A group whose permission still stores base64(password) with no salt."""
    expiration = clock() + timedelta(days=5)
    db.add(models.FileGroup(
        group_id=group_id,
        owner_id="owner-1",
        created_at=clock(),
        expiration_date=expiration,
        is_password_protected=True,
        access_permission_id=f"perm-{group_id}",
    ))
    db.add(models.AccessPermission(
        permission_id=f"perm-{group_id}",
        group_id=group_id,
        expiration_date=expiration,
        password_hash=base64.b64encode(password.encode()).decode(),
        password_salt=None,
    ))
    db.commit()
    return group_id, f"perm-{group_id}"
