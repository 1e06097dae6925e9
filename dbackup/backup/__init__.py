"""
Backup module for dbackup.

This module handles the core backup functionality including:
- Configuration loading and job resolution
- Database dumps (PostgreSQL, MySQL)
- Storage (local directory and S3)
- Execution of a single job run
- Retention policy enforcement
"""

from .executor import BackupExecutor, RunOutcome, run_job_now
from .dump import DumpFailed, create_dumper
from .storage import Artifact, LocalStorage, S3Storage, StorageError, create_storage
from .retention import RetentionManager
from .resolver import ConfigError, ResolvedJob, load_config, resolve_jobs

__all__ = [
    'BackupExecutor',
    'RunOutcome',
    'run_job_now',
    'DumpFailed',
    'create_dumper',
    'Artifact',
    'LocalStorage',
    'S3Storage',
    'StorageError',
    'create_storage',
    'RetentionManager',
    'ConfigError',
    'ResolvedJob',
    'load_config',
    'resolve_jobs'
]
