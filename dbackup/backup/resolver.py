"""
Backup configuration loading and job resolution.

The YAML file has three top-level sections:

    settings:   global settings (concurrency, timezone, dump binaries, notifications)
    storages:   registry of named storage locations
    backups:    list of backup jobs

``load_config`` parses the file into plain dataclasses and
``resolve_jobs`` validates them and turns every job into a ResolvedJob with a
concrete storage backend. Any problem aborts the whole load; nothing is
partially activated.
"""

import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import yaml
from apscheduler.util import astimezone

from .compression import default_filename_prefix
from .cron import CronError, CronSchedule
from .duration import DurationError, parse_duration
from .storage import StorageBackend, create_storage


class ConfigError(Exception):
    """Raised when the backup configuration is invalid."""
    pass


class DuplicateJobName(ConfigError):
    pass


class InvalidDriver(ConfigError):
    pass


class InvalidMode(ConfigError):
    pass


class InvalidReference(ConfigError):
    """A job references a storage key missing from the registry."""
    pass


class MissingStorage(ConfigError):
    pass


class InvalidDuration(ConfigError):
    pass


class InvalidCronExpression(ConfigError):
    pass


DRIVERS = ('postgresql', 'mysql')
MODES = ('basic', 'parallel')
STORAGE_DRIVERS = ('local', 's3')
NOTIFY_ON = ('all', 'failure')

DEFAULT_PORTS = {
    'postgresql': 5432,
    'mysql': 3306,
}

# Settings key under settings.binary for each driver
BINARY_SETTINGS = {
    'postgresql': 'pg_dump',
    'mysql': 'mysqldump',
}


@dataclass(frozen=True)
class ConnectionConfig:
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: str = ''
    database: Optional[str] = None
    uri: Optional[str] = None


@dataclass(frozen=True)
class StorageSpec:
    driver: str
    path: Optional[str] = None
    prefix: Optional[str] = None
    bucket: Optional[str] = None
    region: Optional[str] = None
    endpoint: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    filename_prefix: Optional[str] = None


@dataclass(frozen=True)
class JobConfig:
    name: str
    driver: str
    connection: ConnectionConfig
    mode: str = 'basic'
    parallel_jobs: Optional[int] = None
    schedule: Optional[str] = None
    storage: Optional[StorageSpec] = None
    storage_ref: Optional[str] = None
    prefix: Optional[str] = None
    filename_prefix: Optional[str] = None
    retention: Optional[str] = None
    binary_path: Optional[str] = None


@dataclass(frozen=True)
class Settings:
    concurrency: int = 2
    timezone: str = 'UTC'
    binaries: Dict[str, str] = field(default_factory=dict)
    webhook_url: Optional[str] = None
    notify_on: str = 'all'


@dataclass(frozen=True)
class BackupConfig:
    settings: Settings
    storages: Dict[str, StorageSpec]
    jobs: Tuple[JobConfig, ...]


@dataclass(frozen=True)
class ResolvedJob:
    """A validated job with its storage reference expanded to a backend."""

    name: str
    driver: str
    connection: ConnectionConfig
    mode: str
    parallel_jobs: Optional[int]
    schedule: Optional[CronSchedule]
    storage: StorageBackend
    storage_spec: StorageSpec
    filename_prefix: str
    retention: Optional[timedelta]
    binary_path: Optional[str] = None

    @property
    def is_scheduled(self) -> bool:
        return self.schedule is not None

    def describe(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'driver': self.driver,
            'mode': self.mode,
            'parallel_jobs': self.parallel_jobs,
            'schedule': self.schedule.expression if self.schedule else None,
            'storage': self.storage.describe(),
            'filename_prefix': self.filename_prefix,
            'retention': str(self.retention) if self.retention else None,
        }


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def load_config(path: str) -> BackupConfig:
    """
    Load a backup configuration file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Parsed (not yet validated) BackupConfig

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse configuration file {path}: {e}")

    return parse_config(data)


def parse_config(data: Any) -> BackupConfig:
    """
    Build a BackupConfig from already-loaded YAML data.

    Only the shape of the document is checked here; semantic validation
    happens in resolve_jobs().

    Raises:
        ConfigError: If the document structure is invalid
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping with a 'backups' list")

    backups = data.get('backups')
    if not isinstance(backups, list):
        raise ConfigError("Configuration must contain a 'backups' list")

    storages = data.get('storages') or {}
    if not isinstance(storages, dict):
        raise ConfigError("'storages' must be a mapping of name to storage configuration")

    registry = {}
    for key, raw in storages.items():
        if not isinstance(raw, dict):
            raise ConfigError(f"Storage '{key}' must be a mapping")
        registry[str(key)] = _parse_storage_spec(raw, f"storage '{key}'")

    jobs = tuple(_parse_job(raw, index) for index, raw in enumerate(backups))

    return BackupConfig(
        settings=_parse_settings(data.get('settings') or {}),
        storages=registry,
        jobs=jobs
    )


def _parse_settings(raw: Any) -> Settings:
    if not isinstance(raw, dict):
        raise ConfigError("'settings' must be a mapping")

    binaries = raw.get('binary') or {}
    if not isinstance(binaries, dict):
        raise ConfigError("'settings.binary' must be a mapping")

    notifications = raw.get('notifications') or {}
    if not isinstance(notifications, dict):
        raise ConfigError("'settings.notifications' must be a mapping")

    return Settings(
        concurrency=raw.get('concurrency', 2),
        timezone=str(raw.get('timezone', 'UTC')),
        binaries={str(k): str(v) for k, v in binaries.items() if v},
        webhook_url=notifications.get('webhook_url'),
        notify_on=str(notifications.get('on', 'all'))
    )


def _parse_storage_spec(raw: Dict[str, Any], where: str) -> StorageSpec:
    driver = raw.get('driver')
    if not driver:
        raise ConfigError(f"{where}: missing 'driver'")

    return StorageSpec(
        driver=str(driver).lower(),
        path=_optional_str(raw.get('path')),
        prefix=_optional_str(raw.get('prefix')),
        bucket=_optional_str(raw.get('bucket')),
        region=_optional_str(raw.get('region')),
        endpoint=_optional_str(raw.get('endpoint')),
        access_key_id=_optional_str(raw.get('access_key_id')),
        secret_access_key=_optional_str(raw.get('secret_access_key')),
        filename_prefix=_optional_str(raw.get('filename_prefix'))
    )


def _parse_job(raw: Any, index: int) -> JobConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Backup #{index + 1} must be a mapping")

    name = raw.get('name')
    if not name or not isinstance(name, str):
        raise ConfigError(f"Backup #{index + 1}: missing 'name'")

    where = f"Backup '{name}'"

    connection = raw.get('connection')
    if not isinstance(connection, dict):
        raise ConfigError(f"{where}: missing 'connection'")

    schedule = raw.get('schedule')
    if isinstance(schedule, dict):
        schedule = schedule.get('cron')
    elif schedule is not None and not isinstance(schedule, str):
        raise ConfigError(f"{where}: 'schedule' must be a mapping with a 'cron' key")

    storage, storage_ref, prefix, filename_prefix = _parse_storage_selection(raw.get('storage'), where)

    return JobConfig(
        name=name,
        driver=str(raw.get('driver', '')).lower(),
        connection=ConnectionConfig(
            host=_optional_str(connection.get('host')),
            port=connection.get('port'),
            username=_optional_str(connection.get('username')),
            password=str(connection.get('password') or ''),
            database=_optional_str(connection.get('database')),
            uri=_optional_str(connection.get('uri'))
        ),
        mode=str(raw.get('mode', 'basic')).lower(),
        parallel_jobs=raw.get('parallel_jobs'),
        schedule=schedule,
        storage=storage,
        storage_ref=storage_ref,
        prefix=prefix,
        filename_prefix=filename_prefix,
        retention=_optional_str(raw.get('retention')),
        binary_path=_optional_str(raw.get('binary_path'))
    )


def _parse_storage_selection(raw: Any, where: str):
    """Split a job's storage entry into (inline spec, reference, prefix, filename_prefix)."""
    if raw is None:
        return None, None, None, None

    if isinstance(raw, str):
        return None, raw, None, None

    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: 'storage' must be a mapping or a storage name")

    ref = raw.get('ref') or raw.get('use')
    if ref and raw.get('driver'):
        raise ConfigError(f"{where}: 'storage' cannot have both 'ref' and 'driver'")

    prefix = _optional_str(raw.get('prefix'))
    filename_prefix = _optional_str(raw.get('filename_prefix'))

    if ref:
        return None, str(ref), prefix, filename_prefix

    if not raw.get('driver'):
        return None, None, prefix, filename_prefix

    return _parse_storage_spec(raw, f"{where} storage"), None, None, None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


# ---------------------------------------------------------------------------
# Validation and resolution
# ---------------------------------------------------------------------------

def validate_settings(settings: Settings):
    """
    Validate global settings.

    Raises:
        ConfigError: On invalid concurrency, timezone or notification settings
    """
    concurrency = settings.concurrency
    if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
        raise ConfigError(f"settings.concurrency must be a positive integer, got {concurrency!r}")

    try:
        astimezone(settings.timezone)
    except (KeyError, ValueError, TypeError) as e:
        raise ConfigError(f"Unknown timezone '{settings.timezone}': {e}")

    if settings.notify_on not in NOTIFY_ON:
        raise ConfigError(
            f"settings.notifications.on must be one of {list(NOTIFY_ON)}, got '{settings.notify_on}'"
        )


def validate_storage_spec(spec: StorageSpec, where: str):
    """
    Check that a storage spec names a known driver and has its required fields.

    Raises:
        ConfigError: If the spec is incomplete
    """
    if spec.driver not in STORAGE_DRIVERS:
        raise ConfigError(
            f"{where}: unsupported storage driver '{spec.driver}'. Valid options: {list(STORAGE_DRIVERS)}"
        )

    if spec.driver == 'local':
        if not spec.path:
            raise ConfigError(f"{where}: local storage requires 'path'")
        # Artifacts are plain files directly inside path/prefix
        if spec.filename_prefix and any(sep in spec.filename_prefix for sep in ('/', os.sep)):
            raise ConfigError(
                f"{where}: filename_prefix '{spec.filename_prefix}' cannot contain a path separator "
                f"for local storage (use 'prefix' for a subdirectory)"
            )

    if spec.driver == 's3':
        if not spec.bucket:
            raise ConfigError(f"{where}: s3 storage requires 'bucket'")
        if not spec.region:
            raise ConfigError(f"{where}: s3 storage requires 'region'")
        if bool(spec.access_key_id) != bool(spec.secret_access_key):
            raise ConfigError(f"{where}: 'access_key_id' and 'secret_access_key' must be given together")


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _validate_connection(job: JobConfig, where: str) -> ConnectionConfig:
    connection = job.connection

    if connection.uri and job.driver == 'postgresql':
        return connection

    missing = [name for name in ('host', 'username', 'database') if not getattr(connection, name)]
    if missing:
        raise ConfigError(f"{where}: connection requires {', '.join(missing)}")

    port = connection.port if connection.port is not None else DEFAULT_PORTS[job.driver]
    if not _is_positive_int(port) or port > 65535:
        raise ConfigError(f"{where}: invalid connection port {connection.port!r}")

    return replace(connection, port=port)


def _select_storage(job: JobConfig, registry: Dict[str, StorageSpec], where: str) -> StorageSpec:
    if job.storage_ref is not None:
        if job.storage_ref not in registry:
            raise InvalidReference(f"{where}: unknown storage reference '{job.storage_ref}'")
        spec = registry[job.storage_ref]
    elif job.storage is not None:
        spec = job.storage
    else:
        raise MissingStorage(f"{where}: no storage configured (inline 'driver' or 'ref' required)")

    if job.prefix is not None:
        spec = replace(spec, prefix=job.prefix)
    if job.filename_prefix is not None:
        spec = replace(spec, filename_prefix=job.filename_prefix)

    validate_storage_spec(spec, where)
    return spec


def resolve_job(job: JobConfig, config: BackupConfig, storage_factory=create_storage) -> ResolvedJob:
    """
    Validate one job and expand its storage into a backend.

    Raises:
        ConfigError: Or one of its subclasses on any validation failure
    """
    where = f"Backup '{job.name}'"

    if job.driver not in DRIVERS:
        raise InvalidDriver(f"{where}: unsupported driver '{job.driver}'. Valid options: {list(DRIVERS)}")

    if job.mode not in MODES:
        raise InvalidMode(f"{where}: unsupported mode '{job.mode}'. Valid options: {list(MODES)}")

    if job.parallel_jobs is not None and not _is_positive_int(job.parallel_jobs):
        raise InvalidMode(f"{where}: parallel_jobs must be a positive integer, got {job.parallel_jobs!r}")

    if job.mode == 'parallel':
        if job.parallel_jobs is None:
            raise InvalidMode(f"{where}: mode 'parallel' requires parallel_jobs >= 1")
        if job.driver == 'mysql':
            raise InvalidMode(f"{where}: mode 'parallel' is only supported for postgresql")

    connection = _validate_connection(job, where)
    spec = _select_storage(job, config.storages, where)

    retention = None
    if job.retention is not None:
        try:
            retention = parse_duration(job.retention)
        except DurationError as e:
            raise InvalidDuration(f"{where}: invalid retention: {e}")

    schedule = None
    if job.schedule is not None:
        try:
            schedule = CronSchedule(job.schedule, timezone=config.settings.timezone)
        except CronError as e:
            raise InvalidCronExpression(f"{where}: {e}")

    try:
        backend = storage_factory(spec)
    except ValueError as e:
        raise ConfigError(f"{where}: {e}")

    binary_path = job.binary_path or config.settings.binaries.get(BINARY_SETTINGS[job.driver])

    return ResolvedJob(
        name=job.name,
        driver=job.driver,
        connection=connection,
        mode=job.mode,
        parallel_jobs=job.parallel_jobs,
        schedule=schedule,
        storage=backend,
        storage_spec=spec,
        filename_prefix=spec.filename_prefix if spec.filename_prefix is not None else default_filename_prefix(job.name),
        retention=retention,
        binary_path=binary_path
    )


def resolve_jobs(config: BackupConfig, storage_factory=create_storage) -> List[ResolvedJob]:
    """
    Validate a configuration and resolve every job.

    Args:
        config: Parsed BackupConfig
        storage_factory: Callable building a backend from a StorageSpec

    Returns:
        List of ResolvedJob in configuration order

    Raises:
        ConfigError: Or one of its subclasses; nothing is returned on failure
    """
    validate_settings(config.settings)

    for key, spec in config.storages.items():
        validate_storage_spec(spec, f"Storage '{key}'")

    seen = set()
    for job in config.jobs:
        if job.name in seen:
            raise DuplicateJobName(f"Duplicate backup name: '{job.name}'")
        seen.add(job.name)

    return [resolve_job(job, config, storage_factory) for job in config.jobs]


def load_jobs(path: str) -> Tuple[BackupConfig, List[ResolvedJob]]:
    """Load a configuration file and resolve its jobs in one step."""
    config = load_config(path)
    return config, resolve_jobs(config)
