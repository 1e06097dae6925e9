"""
Database dump handlers.

Supports:
- PostgresDumper: pg_dump, custom format (basic) or directory format with
  parallel jobs (parallel)
- MySQLDumper: mysqldump (basic only)

Each handler writes one compressed file into a caller-provided working
directory and reports its path and size. The dump tool's stderr is captured
and attached to DumpFailed as diagnostics.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .compression import (
    CompressionError,
    archive_directory,
    artifact_extension,
    get_archive_size,
    gzip_stream,
)


logger = logging.getLogger(__name__)

# Keep the tail of the tool's stderr, that's where the error is
MAX_DIAGNOSTICS_CHARS = 4000


class DumpFailed(Exception):
    """Raised when the dump tool fails or produces no output."""

    def __init__(self, message: str, diagnostics: str = ''):
        super().__init__(message)
        self.diagnostics = diagnostics


@dataclass(frozen=True)
class DumpResult:
    """A finished, compressed dump waiting to be uploaded."""

    path: str
    size: int
    mode: str

    def open(self):
        return open(self.path, 'rb')


class Dumper:
    """Base class for dump handlers."""

    driver = None
    default_binary = None

    def __init__(self, binary: Optional[str] = None):
        self.binary = str(binary) if binary else self.default_binary

    def dump(self, job, work_dir: str) -> DumpResult:
        """
        Dump the job's database into ``work_dir``.

        Args:
            job: ResolvedJob (connection, mode and parallel_jobs are used)
            work_dir: Existing temporary directory owned by the caller

        Returns:
            DumpResult pointing at the compressed output

        Raises:
            DumpFailed: If the dump cannot be produced
        """
        output_path = os.path.join(work_dir, f"dump{artifact_extension(job.mode)}")

        if job.mode == 'parallel':
            self._dump_parallel(job, work_dir, output_path)
        else:
            self._dump_basic(job, output_path)

        try:
            size = get_archive_size(output_path)
        except CompressionError as e:
            raise DumpFailed(str(e))

        return DumpResult(path=output_path, size=size, mode=job.mode)

    def _dump_basic(self, job, output_path: str):
        raise NotImplementedError

    def _dump_parallel(self, job, work_dir: str, output_path: str):
        raise DumpFailed(f"Parallel mode is not supported for {self.driver}")

    def _executable(self) -> str:
        executable = shutil.which(self.binary)
        if not executable:
            raise DumpFailed(f"Dump binary not found: {self.binary}")
        return executable

    def _run_to_gzip(self, command: List[str], env: Dict[str, str], output_path: str):
        """
        Run a dump command and gzip its stdout into ``output_path``.

        Raises:
            DumpFailed: On spawn failure, non-zero exit status or empty output
        """
        logger.debug("Executing %s", self._redact(command))

        with tempfile.TemporaryFile() as stderr_file:
            try:
                process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=stderr_file, env=env)
            except OSError as e:
                raise DumpFailed(f"Failed to spawn {self.binary}: {e}")

            try:
                raw_bytes = gzip_stream(process.stdout, output_path)
            except CompressionError as e:
                process.kill()
                process.wait()
                raise DumpFailed(str(e), diagnostics=self._read_diagnostics(stderr_file))
            finally:
                process.stdout.close()

            returncode = process.wait()
            diagnostics = self._read_diagnostics(stderr_file)

        if returncode != 0:
            self._discard(output_path)
            raise DumpFailed(f"{self.binary} failed with exit status {returncode}", diagnostics)

        if raw_bytes == 0:
            self._discard(output_path)
            raise DumpFailed(f"{self.binary} produced no output", diagnostics)

    def _run(self, command: List[str], env: Dict[str, str]):
        """Run a dump command that writes its own output files."""
        logger.debug("Executing %s", self._redact(command))

        try:
            completed = subprocess.run(
                command,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env=env
            )
        except OSError as e:
            raise DumpFailed(f"Failed to spawn {self.binary}: {e}")

        if completed.returncode != 0:
            diagnostics = completed.stderr.decode('utf-8', errors='replace')[-MAX_DIAGNOSTICS_CHARS:]
            raise DumpFailed(f"{self.binary} failed with exit status {completed.returncode}", diagnostics)

    @staticmethod
    def _read_diagnostics(stderr_file) -> str:
        stderr_file.seek(0)
        return stderr_file.read().decode('utf-8', errors='replace')[-MAX_DIAGNOSTICS_CHARS:]

    @staticmethod
    def _redact(command: List[str]) -> str:
        # URIs may embed credentials
        return ' '.join('***' if '://' in arg and '@' in arg else arg for arg in command)

    @staticmethod
    def _discard(path: str):
        if os.path.exists(path):
            os.remove(path)


class PostgresDumper(Dumper):
    """
    Handler for PostgreSQL databases via pg_dump.

    basic:    pg_dump -Fc --compress=9, gzipped
    parallel: pg_dump -Fd -j N into a directory, archived as tar.gz
    """

    driver = 'postgresql'
    default_binary = 'pg_dump'

    @staticmethod
    def _connection_args(connection) -> List[str]:
        if connection.uri:
            return ['--dbname', connection.uri]
        return [
            '--host', connection.host,
            '--port', str(connection.port),
            '--username', connection.username,
            '--dbname', connection.database,
        ]

    @staticmethod
    def _env(connection) -> Dict[str, str]:
        env = os.environ.copy()
        if connection.password:
            env['PGPASSWORD'] = connection.password
        return env

    def _dump_basic(self, job, output_path: str):
        command = [self._executable()] + self._connection_args(job.connection) + [
            '-Fc',
            '--compress=9',
            '--no-owner',
            '--verbose',
        ]
        logger.info("Running pg_dump for %s (custom format)", job.name)
        self._run_to_gzip(command, self._env(job.connection), output_path)

    def _dump_parallel(self, job, work_dir: str, output_path: str):
        dump_dir = os.path.join(work_dir, 'dump.dir')
        command = [self._executable()] + self._connection_args(job.connection) + [
            '-Fd',
            '-j', str(job.parallel_jobs),
            '-f', dump_dir,
            '--no-owner',
            '--verbose',
        ]
        logger.info("Running pg_dump for %s (directory format, %s jobs)", job.name, job.parallel_jobs)

        try:
            self._run(command, self._env(job.connection))

            if not os.path.isdir(dump_dir) or not any(Path(dump_dir).iterdir()):
                raise DumpFailed(f"{self.binary} produced no output")

            try:
                archive_directory(dump_dir, output_path)
            except CompressionError as e:
                raise DumpFailed(str(e))
        finally:
            shutil.rmtree(dump_dir, ignore_errors=True)


class MySQLDumper(Dumper):
    """Handler for MySQL/MariaDB databases via mysqldump (basic mode only)."""

    driver = 'mysql'
    default_binary = 'mysqldump'

    def _dump_basic(self, job, output_path: str):
        connection = job.connection
        command = [
            self._executable(),
            '--host', connection.host,
            '--port', str(connection.port),
            '--user', connection.username,
            '--single-transaction',
            '--routines',
            '--triggers',
            connection.database,
        ]

        env = os.environ.copy()
        if connection.password:
            env['MYSQL_PWD'] = connection.password

        logger.info("Running mysqldump for %s", job.name)
        self._run_to_gzip(command, env, output_path)


DUMPERS = {
    PostgresDumper.driver: PostgresDumper,
    MySQLDumper.driver: MySQLDumper,
}


def create_dumper(driver: str, binary: Optional[str] = None) -> Dumper:
    """
    Factory function to create the dump handler for a database driver.

    Args:
        driver: 'postgresql' or 'mysql'
        binary: Optional path to the dump binary

    Returns:
        Dumper instance

    Raises:
        ValueError: If driver is invalid
    """
    try:
        return DUMPERS[driver](binary)
    except KeyError:
        raise ValueError(f"Invalid database driver: {driver}")
