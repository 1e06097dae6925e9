"""
Compression and naming helpers for backup artifacts.

Artifacts are named {filename_prefix}{YYYYMMDD_HHMMSS}{extension}:
- basic mode:    .dump.gz     (single gzipped dump stream)
- parallel mode: .dir.tar.gz  (directory-format dump archived as tar.gz)
"""

import gzip
import os
import re
import shutil
import tarfile
from datetime import datetime
from pathlib import Path
from typing import BinaryIO


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'

MODE_EXTENSIONS = {
    'basic': '.dump.gz',
    'parallel': '.dir.tar.gz',
}

# 1MB read size when streaming dump output
CHUNK_SIZE = 1024 * 1024


def artifact_extension(mode: str) -> str:
    """
    Get the artifact extension for a backup mode.

    Args:
        mode: 'basic' or 'parallel'

    Returns:
        Extension including the leading dot

    Raises:
        ValueError: If mode is unknown
    """
    try:
        return MODE_EXTENSIONS[mode]
    except KeyError:
        raise ValueError(
            f"Invalid backup mode: {mode}. "
            f"Valid options: {list(MODE_EXTENSIONS.keys())}"
        )


def artifact_key(filename_prefix: str, timestamp: datetime, mode: str) -> str:
    """
    Generate the storage key for a backup artifact.

    Args:
        filename_prefix: Job's filename prefix (may be empty)
        timestamp: Dispatch time of the run, formatted to second precision
        mode: Backup mode, selects the extension

    Returns:
        Key such as 'orders_20240115_020000.dump.gz'
    """
    return f"{filename_prefix}{timestamp.strftime(TIMESTAMP_FORMAT)}{artifact_extension(mode)}"


def default_filename_prefix(job_name: str) -> str:
    """
    Derive a filename prefix from a job name.

    Spaces and special characters are replaced with underscores and a
    trailing underscore separates the prefix from the timestamp.
    """
    safe_job_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in job_name
    )
    return f"{safe_job_name}_"


def is_artifact_of(filename_prefix: str, key: str) -> bool:
    """
    Check whether a key is an artifact name generated for a filename prefix.

    A plain prefix match is not enough: with prefixes 'orders_' and
    'orders_archive_' on the same storage, 'orders_archive_20240101_020000.dump.gz'
    starts with 'orders_' but belongs to the other job.

    Args:
        filename_prefix: Job's filename prefix
        key: Storage key relative to the storage prefix

    Returns:
        True if key is exactly {filename_prefix}{YYYYMMDD_HHMMSS}{extension}
    """
    extensions = '|'.join(re.escape(ext) for ext in MODE_EXTENSIONS.values())
    pattern = f"{re.escape(filename_prefix)}\\d{{8}}_\\d{{6}}(?:{extensions})"
    return re.fullmatch(pattern, key) is not None


def gzip_stream(source: BinaryIO, output_path: str) -> int:
    """
    Gzip a byte stream into a file.

    Args:
        source: Readable binary stream (e.g. a dump process' stdout)
        output_path: Destination .gz file

    Returns:
        Number of uncompressed bytes read from the stream

    Raises:
        CompressionError: If the output cannot be written
    """
    total = 0
    try:
        with gzip.open(output_path, 'wb', compresslevel=9) as out:
            while True:
                chunk = source.read(CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
                total += len(chunk)
        return total
    except OSError as e:
        _remove_partial(output_path)
        raise CompressionError(f"Failed to write compressed output: {e}")


def archive_directory(source_dir: str, output_path: str) -> str:
    """
    Archive a directory as tar.gz with its contents at the archive root.

    Args:
        source_dir: Directory to archive
        output_path: Full path of the .tar.gz file to create

    Returns:
        Path to the created archive

    Raises:
        CompressionError: If the directory is missing or archiving fails
    """
    source = Path(source_dir)
    if not source.is_dir():
        raise CompressionError(f"Directory does not exist: {source_dir}")

    try:
        with tarfile.open(output_path, 'w:gz') as tar:
            for item in sorted(source.iterdir()):
                tar.add(item, arcname=item.name, recursive=True)
        return output_path
    except (OSError, tarfile.TarError) as e:
        _remove_partial(output_path)
        raise CompressionError(f"Failed to create archive: {e}")


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")


def _remove_partial(path: str):
    # Partial output must never be mistaken for a finished dump
    if os.path.isdir(path):
        shutil.rmtree(path, ignore_errors=True)
    elif os.path.exists(path):
        try:
            os.remove(path)
        except OSError:
            pass
