from datetime import datetime, timezone

from dbackup import db


def _utc_naive(value):
    """Store datetimes as naive UTC, the way SQLite round-trips them."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _isoformat(value):
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


class BackupRun(db.Model):
    """Backup execution history and logs"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(255), nullable=False, index=True)
    trigger = db.Column(db.String(20), nullable=False)  # schedule, manual
    status = db.Column(db.String(20), nullable=False)  # success, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    failed_step = db.Column(db.String(20))  # dump, upload, internal
    artifact_key = db.Column(db.String(500))
    location = db.Column(db.String(1000))
    file_size_bytes = db.Column(db.BigInteger)
    retention_deleted = db.Column(db.Integer, default=0, nullable=False)
    retention_failures = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    diagnostics = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    @classmethod
    def from_outcome(cls, outcome):
        """Build a history row from a terminal RunOutcome."""
        retention = outcome.retention
        return cls(
            job_name=outcome.job_name,
            trigger=outcome.trigger,
            status=outcome.status,
            started_at=_utc_naive(outcome.started_at),
            completed_at=_utc_naive(outcome.completed_at),
            failed_step=outcome.failed_step,
            artifact_key=outcome.artifact.key if outcome.artifact else None,
            location=outcome.location if outcome.artifact else None,
            file_size_bytes=outcome.artifact.size if outcome.artifact else None,
            retention_deleted=len(retention.deleted) if retention else 0,
            retention_failures=len(retention.failures) if retention else 0,
            error_message=outcome.error,
            diagnostics=outcome.diagnostics,
            logs='\n'.join(outcome.logs) if outcome.logs else None
        )

    def to_dict(self, include_logs=False):
        duration_seconds = None
        if self.completed_at and self.started_at:
            duration_seconds = int((self.completed_at - self.started_at).total_seconds())

        data = {
            'id': self.id,
            'job_name': self.job_name,
            'trigger': self.trigger,
            'status': self.status,
            'started_at': _isoformat(self.started_at),
            'completed_at': _isoformat(self.completed_at),
            'duration_seconds': duration_seconds,
            'failed_step': self.failed_step,
            'artifact_key': self.artifact_key,
            'location': self.location,
            'file_size_bytes': self.file_size_bytes,
            'file_size_mb': round(self.file_size_bytes / 1024 / 1024, 2) if self.file_size_bytes else None,
            'retention_deleted': self.retention_deleted,
            'retention_failures': self.retention_failures,
            'error_message': self.error_message,
            'has_logs': bool(self.logs)
        }

        if include_logs:
            data['diagnostics'] = self.diagnostics
            data['logs'] = self.logs

        return data

    def __repr__(self):
        return f'<BackupRun job={self.job_name} status={self.status}>'
