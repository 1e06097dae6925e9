"""
Shared pytest fixtures for dbackup tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- An in-memory storage backend and a fake dump handler
- Controllable clock and worker pools for the scheduler
- Resolved job and configuration file factories
- Mock fixtures for external services (S3)
"""

import os
import threading
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone

import pytest
import boto3
import yaml
from moto import mock_aws

from dbackup import create_app, db as _db
from dbackup.backup.compression import artifact_extension
from dbackup.backup.cron import CronSchedule
from dbackup.backup.dump import DumpResult
from dbackup.backup.executor import RunOutcome
from dbackup.backup.resolver import ConnectionConfig, ResolvedJob, StorageSpec
from dbackup.backup.retention import RetentionReport
from dbackup.backup.storage import Artifact, StorageBackend, StorageError


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')

    app.config.update({
        'DBACKUP_CONFIG': str(tmp_path / 'backup.yml'),
    })

    yield app

    from dbackup.scheduler import get_scheduler
    scheduler = get_scheduler(app)
    if scheduler is not None:
        scheduler.shutdown(wait=False)


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced clock; call it to get the current time."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, moment):
        self.now = moment


class MemoryStorage(StorageBackend):
    """
    Storage backend keeping artifacts in a dict.

    Artifacts are stamped with ``clock()`` when stored, so retention can be
    exercised on simulated time.
    """

    driver = 'memory'

    def __init__(self, clock=None, name='memory'):
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.name = name
        self.objects = {}
        self.fail_put = False
        self.fail_list = False
        self.fail_delete = set()
        self.extra_listing = []
        self.put_calls = []
        self.delete_calls = []

    def put(self, key, stream):
        self.put_calls.append(key)
        if self.fail_put:
            raise StorageError("Simulated upload failure")
        data = stream.read()
        artifact = Artifact(key=key, size=len(data), created_at=self.clock())
        self.objects[key] = (data, artifact)
        return artifact

    def add(self, key, created_at, data=b'dump'):
        self.objects[key] = (data, Artifact(key=key, size=len(data), created_at=created_at))

    def list_artifacts(self, prefix=''):
        if self.fail_list:
            raise StorageError("Simulated list failure")
        artifacts = [artifact for _, artifact in self.objects.values() if artifact.key.startswith(prefix)]
        return sorted(artifacts + list(self.extra_listing), key=lambda a: (a.created_at, a.key))

    def delete(self, key):
        self.delete_calls.append(key)
        if key in self.fail_delete:
            raise StorageError(f"Simulated delete failure for {key}")
        self.objects.pop(key, None)

    def describe(self):
        return f"memory://{self.name}"

    def keys(self):
        return sorted(self.objects)


class FakeDumper:
    """Dump handler writing fixed bytes instead of running a dump tool."""

    def __init__(self, data=b'-- fake dump --\n', error=None, gate=None, on_dump=None):
        self.data = data
        self.error = error
        self.gate = gate
        self.on_dump = on_dump
        self.calls = []

    def dump(self, job, work_dir):
        self.calls.append(job.name)
        if self.on_dump:
            self.on_dump(job)
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.error is not None:
            raise self.error
        path = os.path.join(work_dir, f"dump{artifact_extension(job.mode)}")
        with open(path, 'wb') as f:
            f.write(self.data)
        return DumpResult(path=path, size=len(self.data), mode=job.mode)


class ImmediatePool:
    """Executor running submitted work inline."""

    def __init__(self):
        self.submitted = 0
        self.shutdown_calls = []

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True):
        self.shutdown_calls.append(wait)


class DeferredPool:
    """Executor holding submitted work until the test runs it."""

    def __init__(self):
        self.pending = []
        self.shutdown_calls = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_next(self):
        future, fn, args, kwargs = self.pending.pop(0)
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def run_all(self):
        futures = []
        while self.pending:
            futures.append(self.run_next())
        return futures

    def shutdown(self, wait=True):
        self.shutdown_calls.append(wait)


@pytest.fixture
def clock():
    """Clock starting at 2024-01-15 00:00 UTC."""
    return FakeClock(datetime(2024, 1, 15, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_storage(clock):
    return MemoryStorage(clock=clock)


@pytest.fixture
def fake_dumper():
    return FakeDumper()


@pytest.fixture
def immediate_pool():
    return ImmediatePool()


@pytest.fixture
def deferred_pool():
    return DeferredPool()


@pytest.fixture
def make_job(memory_storage):
    """
    Factory for ResolvedJob instances.

    Defaults to a basic PostgreSQL job stored in ``memory_storage``.
    """
    def _make_job(
        name='orders',
        cron='0 2 * * *',
        storage=None,
        retention=None,
        mode='basic',
        parallel_jobs=None,
        filename_prefix=None,
        driver='postgresql',
        timezone_name='UTC'
    ):
        return ResolvedJob(
            name=name,
            driver=driver,
            connection=ConnectionConfig(
                host='localhost',
                port=5432,
                username='app',
                password='s3cret',
                database=name
            ),
            mode=mode,
            parallel_jobs=parallel_jobs,
            schedule=CronSchedule(cron, timezone=timezone_name) if cron else None,
            storage=storage if storage is not None else memory_storage,
            storage_spec=StorageSpec(driver='local', path='/unused'),
            filename_prefix=filename_prefix if filename_prefix is not None else f'{name}_',
            retention=retention
        )

    return _make_job


@pytest.fixture
def sample_config(tmp_path):
    """A valid configuration dict using a local storage under tmp_path."""
    return {
        'settings': {'concurrency': 2, 'timezone': 'UTC'},
        'storages': {
            'local': {'driver': 'local', 'path': str(tmp_path / 'backups')},
            'offsite': {'driver': 's3', 'bucket': 'test-bucket', 'region': 'us-east-1', 'prefix': 'prod/'},
        },
        'backups': [
            {
                'name': 'orders',
                'driver': 'postgresql',
                'connection': {
                    'host': 'db', 'port': 5432, 'username': 'app',
                    'password': 's3cret', 'database': 'orders'
                },
                'mode': 'parallel',
                'parallel_jobs': 4,
                'schedule': {'cron': '0 2 * * *'},
                'storage': {'ref': 'offsite', 'filename_prefix': 'orders_'},
                'retention': '7d',
            },
            {
                'name': 'accounts',
                'driver': 'mysql',
                'connection': {
                    'host': 'db', 'username': 'backup', 'database': 'accounts'
                },
                'schedule': {'cron': '*/30 * * * *'},
                'storage': 'local',
            },
        ],
    }


@pytest.fixture
def write_config(tmp_path):
    """Write a configuration dict as YAML and return its path."""
    def _write_config(data, name='backup.yml'):
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return str(path)

    return _write_config


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def aws_credentials(monkeypatch):
    """Dummy credentials so boto3 never reads the real environment."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def gate():
    """Event used to hold a fake dump until the test releases it."""
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def make_storage(clock):
    """Factory for additional in-memory storages sharing the test clock."""
    def _make_storage(name='memory'):
        return MemoryStorage(clock=clock, name=name)

    return _make_storage


@pytest.fixture
def make_dumper():
    """Factory for FakeDumper instances."""
    return FakeDumper


@pytest.fixture
def make_outcome():
    """
    Factory for terminal RunOutcome instances.

    Successful outcomes carry an artifact and an optional retention report;
    failed ones carry the failed step and error.
    """
    def _make_outcome(
        job_name='orders',
        status='success',
        started_at=datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc),
        duration=timedelta(seconds=95),
        trigger='schedule',
        size=3 * 1024 * 1024,
        failed_step='dump',
        error='pg_dump failed with exit status 1',
        deleted=(),
        logs=('[02:00:00] Starting dump', '[02:01:35] Done')
    ):
        outcome = RunOutcome(job_name=job_name, started_at=started_at, trigger=trigger)
        outcome.logs = list(logs)
        completed_at = started_at + duration

        if status == 'success':
            key = f"{job_name}_{started_at.strftime('%Y%m%d_%H%M%S')}.dump.gz"
            outcome.status = 'success'
            outcome.completed_at = completed_at
            outcome.artifact = Artifact(key=key, size=size, created_at=completed_at)
            outcome.location = f"memory://memory/{key}"
            outcome.retention = RetentionReport(
                location='memory://memory',
                prefix=f'{job_name}_',
                max_age=timedelta(days=7),
                deleted=list(deleted)
            )
        else:
            outcome.fail(failed_step, error, diagnostics='FATAL: connection refused', completed_at=completed_at)

        return outcome

    return _make_outcome
