"""Pytest configuration and fixtures."""
import itertools
import uuid
from datetime import timedelta
from typing import Generator

import fakeredis
import pytest
import structlog

from datacollector import create_app, db
from datacollector.cancellation import CancellationToken
from datacollector.jobs.base import JobContext
from datacollector.models import Job, JobData, JobType, utcnow
from datacollector.services import Config, ServiceRegistry


class FakeWorkerHandle:
    """Stands in for a worker process; stubborn handles ignore SIGTERM."""

    _pids = itertools.count(40000)

    def __init__(self, stubborn=False):
        self.pid = next(self._pids)
        self.alive = True
        self.stubborn = stubborn
        self.terminated = False
        self.killed = False

    def is_alive(self):
        return self.alive

    def terminate(self):
        self.terminated = True
        if not self.stubborn:
            self.alive = False

    def join(self, timeout=None):
        pass

    def kill(self):
        self.killed = True
        self.alive = False


class FakeLauncher:

    def __init__(self):
        self.launched = []
        self.stubborn = False

    def __call__(self, job_type, queue_names, name):
        handle = FakeWorkerHandle(stubborn=self.stubborn)
        self.launched.append((job_type, list(queue_names), name, handle))
        return handle


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def app(tmp_path, redis_client, launcher) -> Generator:
    """Application on a throwaway sqlite file and in-memory Redis."""
    app = create_app(
        {
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'jobs.db'}",
            'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'check_same_thread': False, 'timeout': 30}},
            'APP_ENV': 'test',
            'LOG_LEVEL': 'WARNING',
            'WORKER_LAUNCHER': launcher,
        },
        redis_client=redis_client,
    )
    yield app
    with app.app_context():
        db.engine.dispose()


@pytest.fixture
def engine(app):
    return app.extensions['datacollector']


@pytest.fixture
def store(engine):
    return engine.state_store


@pytest.fixture
def events_for(engine):
    """Buffered events for a job, optionally filtered by event type."""

    def _events(job_id, event_type=None):
        events = engine.notifier.get_events(job_id)
        if event_type is not None:
            events = [e for e in events if e['type'] == event_type]
        return events

    return _events


@pytest.fixture
def make_job(engine):
    """Persist a PENDING record and build a job instance for it."""

    def _make(job_class, job_type=JobType.SEARCH, query='test query', metadata=None,
              services=None, config=None, token=None):
        job_id = str(uuid.uuid4())
        record = engine.state_store.create_job(job_id, job_type, query, metadata=metadata)
        context = JobContext(
            job_data=JobData.from_payload(record.to_payload()),
            logger=structlog.get_logger('tests'),
            notifier=engine.notifier,
            services=services or ServiceRegistry(),
            config=Config(config if config is not None else {'APP_ENV': 'test'}),
            state_store=engine.state_store,
            token=token or CancellationToken(job_id),
        )
        return job_class(context)

    return _make


@pytest.fixture
def backdate(app):
    """Shift a record's timestamps into the past."""

    def _backdate(job_id, days=0, hours=0, column='created_at'):
        with app.app_context():
            job = db.session.get(Job, job_id)
            setattr(job, column, utcnow() - timedelta(days=days, hours=hours))
            db.session.commit()

    return _backdate
