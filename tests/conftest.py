"""Shared fixtures: in-memory SQLite store, fakeredis cache, fan-out registry."""

from typing import List

import fakeredis
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from collabit.db import session as db
from collabit.db.crud import seed_reference_data
from collabit.survey.contributors import register_project
from collabit.survey.fanout import NotificationFanout
from collabit.survey.notifications import NotificationCache
from collabit.survey.schemas import ContributorIn, RegisterProjectRequest


@pytest.fixture
def engine():
    eng = db.init_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT to nest correctly
    @event.listens_for(eng, "connect")
    def _no_autobegin(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    db.ensure_tables()
    yield eng
    db.Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session(engine):
    s = db.SessionLocal()
    seed_reference_data(s)
    s.commit()
    yield s
    s.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """Session factory over an on-disk SQLite file: one connection per thread, writers serialized."""
    eng = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'survey.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(eng, "connect")
    def _no_autobegin(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    db.Base.metadata.create_all(eng)
    factory = sessionmaker(bind=eng, expire_on_commit=False)
    with factory() as s:
        seed_reference_data(s)
        s.commit()
    yield factory
    eng.dispose()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache(redis_client):
    return NotificationCache(redis_client)


@pytest.fixture
def fanout():
    return NotificationFanout()


class RecordingChannel:
    """Push channel test double that records events and can be told to fail."""

    def __init__(self, fail: bool = False):
        self.events: List[tuple] = []
        self.fail = fail
        self.closed = False

    def send(self, event_name, payload):
        if self.fail:
            raise IOError("broken pipe")
        self.events.append((event_name, payload))
        return True

    def close(self):
        self.closed = True


@pytest.fixture
def channel_factory():
    return RecordingChannel


def make_request(title, organization, handles, image=None):
    return RegisterProjectRequest(
        title=title,
        organization=organization,
        organization_image=image,
        contributors=[ContributorIn(handle=h, profile_image=f"https://img/{h}.png") for h in handles],
    )


@pytest.fixture
def register(session):
    """register(owner, title, org, handles) -> survey record id; the owner's handle equals its id."""

    def _register(owner, title, organization, handles, **kwargs):
        record_id = register_project(session, owner, make_request(title, organization, handles), **kwargs)
        session.commit()
        return record_id

    return _register
