"""
Status routes - job state, run history and manual runs.
"""

from flask import Blueprint, current_app, jsonify, request

from dbackup.limiter import NoSlotAvailable
from dbackup.models import BackupRun
from dbackup.scheduler import JobAlreadyRunning, get_scheduler


bp = Blueprint('status', __name__, url_prefix='/api')

RUN_STATUSES = ('success', 'failed')


def _scheduler_unavailable():
    return jsonify({'error': 'Scheduler is not running in this process'}), 503


@bp.route('/jobs', methods=['GET'])
def list_jobs():
    """
    Get the state of every configured job.

    Returns:
        JSON array with schedule, running flag, missed ticks and next run per job
    """
    scheduler = get_scheduler()
    if scheduler is None:
        return _scheduler_unavailable()

    return jsonify(scheduler.snapshot())


@bp.route('/jobs/<name>/run', methods=['POST'])
def run_job(name):
    """
    Manually trigger a backup job to run immediately.

    Args:
        name: Job name

    Returns:
        202 when dispatched, 404 for an unknown job, 409 while it is
        running, 503 when no slot is free or no scheduler is running
    """
    scheduler = get_scheduler()
    if scheduler is None:
        return _scheduler_unavailable()

    try:
        scheduler.trigger(name)
    except KeyError:
        return jsonify({'error': f"Unknown backup '{name}'"}), 404
    except JobAlreadyRunning as e:
        return jsonify({'error': str(e)}), 409
    except NoSlotAvailable as e:
        return jsonify({'error': str(e)}), 503
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({
        'message': f"Backup '{name}' has been dispatched for immediate execution"
    }), 202


@bp.route('/runs', methods=['GET'])
def list_runs():
    """
    Get backup run history with filtering and pagination.

    Query params:
        - job: Filter by job name
        - status: Filter by status (success/failed)
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records (newest first) and metadata
    """
    job_filter = request.args.get('job')
    status_filter = request.args.get('status')
    limit = request.args.get('limit', current_app.config['RUNS_DEFAULT_LIMIT'], type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(1, min(limit, current_app.config['RUNS_MAX_LIMIT']))
    if offset < 0:
        offset = 0

    query = BackupRun.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if job_filter:
        query = query.filter(BackupRun.job_name == job_filter)

    total_count = query.count()

    records = query.order_by(
        BackupRun.started_at.desc(), BackupRun.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [record.to_dict() for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/runs/<int:run_id>', methods=['GET'])
def get_run(run_id):
    """
    Get a single run including its logs.

    Args:
        run_id: BackupRun ID
    """
    record = BackupRun.query.get_or_404(run_id)
    return jsonify(record.to_dict(include_logs=True))
