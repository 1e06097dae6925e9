"""
Unit tests for the HTTP API (dbackup/routes/status_routes.py and /health).
"""

from datetime import datetime, timedelta, timezone

import pytest

from dbackup.limiter import ConcurrencyLimiter
from dbackup.models import BackupRun
from dbackup.scheduler import EXTENSION_KEY, BackupScheduler


@pytest.fixture
def attach_scheduler(app, clock, make_dumper, deferred_pool):
    """Attach a scheduler with a deferred pool to the app."""
    from dbackup.backup.executor import BackupExecutor

    def _attach(jobs, capacity=2):
        scheduler = BackupScheduler(
            jobs,
            limiter=ConcurrencyLimiter(capacity),
            clock=clock,
            pool=deferred_pool,
            executor_factory=lambda job: BackupExecutor(job, dumper=make_dumper(), clock=clock)
        )
        app.extensions[EXTENSION_KEY] = scheduler
        return scheduler

    return _attach


@pytest.fixture
def history(db, make_outcome):
    """Five recorded runs: orders and accounts, newest last."""
    base = datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)
    outcomes = [
        make_outcome('orders', started_at=base),
        make_outcome('accounts', started_at=base + timedelta(minutes=30)),
        make_outcome('orders', status='failed', started_at=base + timedelta(days=1)),
        make_outcome('accounts', started_at=base + timedelta(days=1, minutes=30)),
        make_outcome('orders', started_at=base + timedelta(days=2), trigger='manual'),
    ]
    runs = [BackupRun.from_outcome(outcome) for outcome in outcomes]
    db.session.add_all(runs)
    db.session.commit()
    return runs


class TestHealth:

    def test_health_without_scheduler(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.json == {'status': 'healthy', 'scheduler': None}

    def test_health_with_scheduler(self, client, attach_scheduler, make_job):
        attach_scheduler([make_job('orders')], capacity=3)

        data = client.get('/health').json

        assert data['scheduler']['concurrency'] == 3
        assert data['scheduler']['job_count'] == 1
        assert data['scheduler']['accepting'] is True


class TestJobs:
    """Test job state and manual runs."""

    def test_list_jobs_without_scheduler(self, client):
        response = client.get('/api/jobs')

        assert response.status_code == 503

    def test_list_jobs(self, client, attach_scheduler, make_job):
        attach_scheduler([make_job('orders'), make_job('adhoc', cron=None)])

        response = client.get('/api/jobs')

        assert response.status_code == 200
        names = [job['name'] for job in response.json]
        assert names == ['orders', 'adhoc']
        assert response.json[0]['schedule'] == '0 2 * * *'
        assert response.json[0]['running'] is False

    def test_run_job(self, client, attach_scheduler, make_job, deferred_pool):
        scheduler = attach_scheduler([make_job('orders')])

        response = client.post('/api/jobs/orders/run')

        assert response.status_code == 202
        assert 'dispatched' in response.json['message']
        assert len(deferred_pool.pending) == 1
        assert scheduler.state['orders'].running is True

    def test_run_unknown_job(self, client, attach_scheduler, make_job):
        attach_scheduler([make_job('orders')])

        response = client.post('/api/jobs/missing/run')

        assert response.status_code == 404

    def test_run_job_already_running(self, client, attach_scheduler, make_job):
        attach_scheduler([make_job('orders')])
        client.post('/api/jobs/orders/run')

        response = client.post('/api/jobs/orders/run')

        assert response.status_code == 409
        assert 'already running' in response.json['error']

    def test_run_job_without_free_slot(self, client, attach_scheduler, make_job):
        attach_scheduler([make_job('orders'), make_job('accounts')], capacity=1)
        client.post('/api/jobs/orders/run')

        response = client.post('/api/jobs/accounts/run')

        assert response.status_code == 503

    def test_run_job_after_shutdown(self, client, attach_scheduler, make_job):
        scheduler = attach_scheduler([make_job('orders')])
        scheduler.shutdown()

        response = client.post('/api/jobs/orders/run')

        assert response.status_code == 503

    def test_run_job_without_scheduler(self, client):
        assert client.post('/api/jobs/orders/run').status_code == 503


class TestRuns:
    """Test run history endpoints."""

    def test_list_runs_newest_first(self, client, history):
        response = client.get('/api/runs')

        data = response.json
        assert response.status_code == 200
        assert data['total'] == 5
        assert data['limit'] == 50
        assert data['offset'] == 0
        assert [r['id'] for r in data['records']] == [run.id for run in reversed(history)]
        assert 'logs' not in data['records'][0]

    def test_filter_by_job(self, client, history):
        data = client.get('/api/runs?job=accounts').json

        assert data['total'] == 2
        assert {r['job_name'] for r in data['records']} == {'accounts'}

    def test_filter_by_status(self, client, history):
        data = client.get('/api/runs?status=failed&job=orders').json

        assert data['total'] == 1
        assert data['records'][0]['failed_step'] == 'dump'

    def test_invalid_status_filter(self, client, history):
        response = client.get('/api/runs?status=running')

        assert response.status_code == 400

    def test_pagination(self, client, history):
        data = client.get('/api/runs?limit=2&offset=1').json

        assert data['total'] == 5
        assert [r['id'] for r in data['records']] == [history[3].id, history[2].id]

    @pytest.mark.parametrize('query, expected_limit, expected_offset', [
        ('limit=1000', 200, 0),
        ('limit=0', 1, 0),
        ('offset=-5', 50, 0),
    ])
    def test_limits_are_clamped(self, client, history, query, expected_limit, expected_offset):
        data = client.get(f'/api/runs?{query}').json

        assert data['limit'] == expected_limit
        assert data['offset'] == expected_offset

    def test_get_run_includes_logs(self, client, history):
        response = client.get(f'/api/runs/{history[2].id}')

        assert response.status_code == 200
        assert response.json['status'] == 'failed'
        assert response.json['logs'].startswith('[02:00:00]')
        assert response.json['diagnostics'] == 'FATAL: connection refused'

    def test_get_missing_run(self, client, db):
        assert client.get('/api/runs/999').status_code == 404
