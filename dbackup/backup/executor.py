"""
Backup executor - orchestrates the workflow of a single job run.

Workflow:
1. Dump the database into a temporary directory
2. Upload the compressed dump to the job's storage
3. Apply the job's retention policy (if configured)
4. Cleanup temporary files

Every run ends in a RunOutcome; failures are reported in it, never raised.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .compression import artifact_key
from .dump import DumpFailed, create_dumper
from .retention import RetentionManager, RetentionReport
from .storage import Artifact, StorageError


logger = logging.getLogger(__name__)


class UploadFailed(Exception):
    """Raised when a dump could not be stored."""
    pass


STEP_DUMP = 'dump'
STEP_UPLOAD = 'upload'
STEP_INTERNAL = 'internal'


@dataclass
class RunOutcome:
    """Terminal event of one job run."""

    job_name: str
    started_at: datetime
    trigger: str = 'schedule'
    status: str = 'running'
    completed_at: Optional[datetime] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
    diagnostics: Optional[str] = None
    artifact: Optional[Artifact] = None
    location: Optional[str] = None
    retention: Optional[RetentionReport] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    def fail(self, step: str, error, diagnostics: Optional[str] = None, completed_at: Optional[datetime] = None):
        self.status = 'failed'
        self.failed_step = step
        self.error = str(error)
        self.diagnostics = diagnostics or None
        self.completed_at = completed_at or datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job': self.job_name,
            'trigger': self.trigger,
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'failed_step': self.failed_step,
            'error': self.error,
            'diagnostics': self.diagnostics,
            'artifact': {
                'key': self.artifact.key,
                'size': self.artifact.size,
                'location': self.location,
            } if self.artifact else None,
            'retention': self.retention.to_dict() if self.retention else None,
        }


class BackupExecutor:
    """
    Runs one backup of a resolved job: dump, upload, retention.
    """

    def __init__(
        self,
        job,
        dumper=None,
        retention: Optional[RetentionManager] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize backup executor.

        Args:
            job: ResolvedJob to execute
            dumper: Dump handler (default: chosen from the job's driver)
            retention: RetentionManager used after a successful upload
            clock: Returns the current time, used for retention and timestamps
        """
        self.job = job
        self.dumper = dumper or create_dumper(job.driver, job.binary_path)
        self.retention = retention or RetentionManager()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.temp_dir = None
        self.logs = []

    def execute(self, started_at: Optional[datetime] = None, trigger: str = 'schedule') -> RunOutcome:
        """
        Execute the backup job.

        Args:
            started_at: Dispatch time; names the artifact (default: now)
            trigger: 'schedule' or 'manual'

        Returns:
            RunOutcome with execution results
        """
        started_at = started_at or self.clock()
        outcome = RunOutcome(job_name=self.job.name, started_at=started_at, trigger=trigger, logs=self.logs)

        self._log(f"Starting backup job: {self.job.name} ({self.job.driver}, {self.job.mode} mode)")

        try:
            self._execute_workflow(outcome)
        except DumpFailed as e:
            self._log(f"Dump failed: {e}", logging.ERROR)
            if e.diagnostics:
                self._log(f"Dump diagnostics:\n{e.diagnostics}", logging.ERROR)
            outcome.fail(STEP_DUMP, e, e.diagnostics, self.clock())
        except UploadFailed as e:
            self._log(f"Upload failed: {e}", logging.ERROR)
            outcome.fail(STEP_UPLOAD, e, completed_at=self.clock())
        finally:
            self._cleanup()

        if outcome.status == 'running':
            outcome.status = 'success'
            outcome.completed_at = self.clock()
            self._log("Backup completed successfully")

        return outcome

    def _execute_workflow(self, outcome: RunOutcome):
        """Execute the main backup workflow steps."""
        # Step 1: Dump into a private temporary directory
        self.temp_dir = tempfile.mkdtemp(prefix='dbackup_')
        self._log(f"Temporary directory: {self.temp_dir}")

        dump = self.dumper.dump(self.job, self.temp_dir)
        self._log(f"Dump created ({dump.size / 1024 / 1024:.2f} MB)")

        # Step 2: Upload
        key = artifact_key(self.job.filename_prefix, outcome.started_at, self.job.mode)
        outcome.location = f"{self.job.storage.describe().rstrip('/')}/{key}"
        self._log(f"Uploading to {outcome.location}")

        try:
            with dump.open() as stream:
                outcome.artifact = self.job.storage.put(key, stream)
        except StorageError as e:
            raise UploadFailed(str(e))
        except OSError as e:
            raise UploadFailed(f"Failed to read dump output: {e}")

        self._log(f"Stored artifact {key} ({outcome.artifact.size} bytes)")

        # Step 3: Retention (never fails the run)
        if self.job.retention is not None:
            outcome.retention = self.retention.enforce(
                self.job.storage,
                self.job.filename_prefix,
                self.job.retention,
                self.clock()
            )
            for failure in outcome.retention.failures:
                self._log(f"Retention: {failure}", logging.WARNING)
            if outcome.retention.list_error:
                self._log(f"Retention skipped: {outcome.retention.list_error}", logging.WARNING)
            self._log(f"Retention removed {len(outcome.retention.deleted)} old backup(s)")
        else:
            self._log("Retention not configured, skipping")

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            self.temp_dir = None

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, "[%s] %s", self.job.name, message)


def run_job_now(job, trigger: str = 'manual', **kwargs) -> RunOutcome:
    """
    Run a resolved job synchronously, outside the scheduler.

    Args:
        job: ResolvedJob to execute
        trigger: Recorded trigger of the run
        **kwargs: Passed to BackupExecutor

    Returns:
        RunOutcome of the run
    """
    executor = BackupExecutor(job, **kwargs)
    return executor.execute(trigger=trigger)
