import threading
from datetime import datetime, timedelta

import pytest

from config import TestConfig
from signal_loader import create_app, db
from signal_loader.jobs.common.config_provider import ConfigPlanProvider, Tunables
from signal_loader.jobs.executor import LoadExecutor
from signal_loader.models import Job, JobStatus, PurgeStrategy

NOW = datetime(2024, 1, 27, 15, 0, 0)

DEFAULT_QUERY = (
    "SELECT ts, seg1, cnt, max_val FROM events "
    "WHERE ts >= ':fromTime' AND ts < ':toTime'"
)


class FakeClock:
    """Controllable replacement for utcnow"""

    def __init__(self, now: datetime):
        self.now = now
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs):
        with self._lock:
            self.now = self.now + timedelta(**kwargs)

    def set(self, value: datetime):
        with self._lock:
            self.now = value


class FakeSourceManager:
    """Stands in for DatabaseManager: canned rows per source ref"""

    def __init__(self):
        self.rows = {}
        self.errors = {}
        self.queries = []
        self.on_query = None

    def execute_query(self, source_ref, query, params=None):
        self.queries.append((source_ref, query))
        if self.on_query is not None:
            self.on_query(source_ref, query)
        if source_ref in self.errors:
            raise self.errors[source_ref]
        rows = self.rows.get(source_ref, [])
        if callable(rows):
            return rows(query)
        return [dict(row) for row in rows]

    def ping(self, source_ref):
        ok = source_ref in self.rows and source_ref not in self.errors
        return {'source_ref': source_ref, 'ok': ok, 'error': None if ok else 'unreachable', 'latency_ms': 1}

    def close_all_connections(self):
        pass


@pytest.fixture()
def clock():
    return FakeClock(NOW)


@pytest.fixture()
def source():
    return FakeSourceManager()


@pytest.fixture()
def app(tmp_path, clock, source):
    # File-backed so worker threads share the database
    class _Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = 'sqlite:///' + str(tmp_path / 'loader.db')
        SQLALCHEMY_ENGINE_OPTIONS = {'connect_args': {'timeout': 30, 'check_same_thread': False}}

    app = create_app(_Config, source_manager=source, clock=clock)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def loader_scheduler(app):
    return app.extensions['loader_scheduler']


@pytest.fixture()
def make_job(app):
    def _make(code='job_a', **overrides):
        values = dict(
            code=code,
            query_text=DEFAULT_QUERY,
            source_ref='sales',
            min_interval_seconds=60,
            max_interval_seconds=300,
            max_query_period_seconds=5 * 3600,
            max_parallel_executions=1,
            status=JobStatus.IDLE,
            consecutive_empty_runs=0,
            source_tz_offset_hours=0,
            purge_strategy=PurgeStrategy.FAIL_ON_DUPLICATE,
            enabled=True,
        )
        values.update(overrides)
        job = Job(**values)
        db.session.add(job)
        db.session.commit()
        return job

    return _make


@pytest.fixture()
def executor(app, source, clock):
    return LoadExecutor(
        db.session,
        source,
        holder='test-replica',
        clock=clock,
        tunables_provider=ConfigPlanProvider(Tunables()),
    )


def fresh_job(code):
    """Re-read a job, dropping anything cached in the test session"""
    db.session.expire_all()
    return Job.query.filter_by(code=code).one()
