"""
Retention policy enforcement for backups.

Deletes artifacts older than a job's retention duration. The storage
backend's listing is the only input; deletions are best-effort, so one failed
delete never prevents the others.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from .compression import is_artifact_of
from .duration import format_duration
from .storage import StorageBackend, StorageError


logger = logging.getLogger(__name__)


class RetentionDeleteFailed(Exception):
    """Recorded when a single artifact could not be deleted."""

    def __init__(self, key: str, error):
        super().__init__(f"Failed to delete {key}: {error}")
        self.key = key
        self.error = str(error)


@dataclass
class RetentionReport:
    """Result of one retention pass over a storage prefix."""

    location: str
    prefix: str
    max_age: timedelta
    examined: int = 0
    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    outside_prefix: List[str] = field(default_factory=list)
    foreign: List[str] = field(default_factory=list)  # Under the prefix, not named like our artifacts
    failures: List[RetentionDeleteFailed] = field(default_factory=list)
    list_error: Optional[str] = None

    @property
    def complete(self) -> bool:
        return self.list_error is None and not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            'location': self.location,
            'prefix': self.prefix,
            'max_age': format_duration(self.max_age),
            'examined': self.examined,
            'deleted': list(self.deleted),
            'kept': len(self.kept),
            'foreign': len(self.foreign),
            'failures': [{'key': f.key, 'error': f.error} for f in self.failures],
            'list_error': self.list_error,
        }


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class RetentionManager:
    """
    Applies age-based retention to storage backends.

    Only keys named exactly ``{prefix}{YYYYMMDD_HHMMSS}{extension}`` are ever
    deleted, even if the backend returns a broader listing. Another job's
    longer prefix (``orders_archive_`` next to ``orders_``) never matches.
    """

    def __init__(self):
        """Initialize retention manager."""
        self.logs = []

    def enforce(
        self,
        backend: StorageBackend,
        prefix: str,
        max_age: timedelta,
        now: Optional[datetime] = None
    ) -> RetentionReport:
        """
        Delete every artifact under ``prefix`` older than ``max_age``.

        Args:
            backend: Storage backend to clean up
            prefix: Key prefix owned by the job
            max_age: Maximum artifact age to keep
            now: Reference time (default: current UTC time)

        Returns:
            RetentionReport describing what was deleted and what failed.
            Listing and deletion failures are reported, not raised.

        Raises:
            ValueError: If max_age is not strictly positive
        """
        if max_age <= timedelta(0):
            raise ValueError(f"Retention max age must be positive, got {max_age}")

        now = _as_utc(now or datetime.now(timezone.utc))
        report = RetentionReport(location=backend.describe(), prefix=prefix, max_age=max_age)

        self._log(f"Applying retention policy {format_duration(max_age)} to {report.location} (prefix '{prefix}')")

        try:
            artifacts = backend.list_artifacts(prefix)
        except StorageError as e:
            report.list_error = str(e)
            self._log(f"Failed to list artifacts: {e}", logging.WARNING)
            return report

        for artifact in artifacts:
            if not artifact.key.startswith(prefix):
                report.outside_prefix.append(artifact.key)
                self._log(f"Ignoring artifact outside prefix: {artifact.key}", logging.WARNING)
                continue

            if not is_artifact_of(prefix, artifact.key):
                report.foreign.append(artifact.key)
                self._log(f"Skipping file not created by this job: {artifact.key}", logging.DEBUG)
                continue

            report.examined += 1
            age = now - _as_utc(artifact.created_at)

            if age <= max_age:
                report.kept.append(artifact.key)
                continue

            try:
                backend.delete(artifact.key)
                report.deleted.append(artifact.key)
                self._log(f"Deleted old backup: {artifact.key} (age {age})")
            except StorageError as e:
                failure = RetentionDeleteFailed(artifact.key, e)
                report.failures.append(failure)
                self._log(str(failure), logging.WARNING)

        self._log(
            f"Retention cleanup removed {len(report.deleted)} backup(s), "
            f"kept {len(report.kept)}, failures {len(report.failures)}"
        )
        return report

    def enforce_job(self, job, now: Optional[datetime] = None) -> Optional[RetentionReport]:
        """
        Enforce the retention policy of a resolved job.

        Returns:
            RetentionReport, or None if the job has no retention configured
        """
        if job.retention is None:
            self._log(f"Retention not configured for job {job.name}, skipping")
            return None

        return self.enforce(job.storage, job.filename_prefix, job.retention, now)

    def enforce_all(self, jobs: Iterable, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Enforce retention policies for all jobs.

        Returns:
            Dict with summary of cleanup operations:
            {
                'jobs_processed': int,
                'deleted': int,
                'failures': int,
                'reports': Dict[str, RetentionReport]
            }
        """
        summary = {
            'jobs_processed': 0,
            'deleted': 0,
            'failures': 0,
            'reports': {}
        }

        for job in jobs:
            report = self.enforce_job(job, now)
            if report is None:
                continue

            summary['jobs_processed'] += 1
            summary['deleted'] += len(report.deleted)
            summary['failures'] += len(report.failures) + (1 if report.list_error else 0)
            summary['reports'][job.name] = report

        self._log(
            f"Retention enforcement complete. "
            f"Jobs: {summary['jobs_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Failures: {summary['failures']}"
        )
        return summary

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def enforce_retention(
    backend: StorageBackend,
    prefix: str,
    max_age: timedelta,
    now: Optional[datetime] = None
) -> RetentionReport:
    """Run a single retention pass with a fresh RetentionManager."""
    return RetentionManager().enforce(backend, prefix, max_age, now)
