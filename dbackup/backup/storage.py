"""
Storage backends for backup artifacts.

Supports:
- LocalStorage: Store artifacts in a local directory
- S3Storage: Store artifacts in an S3 (or S3-compatible) bucket

Both expose the same capability: put an artifact, list artifacts under a key
prefix, delete an artifact. Listing is the only source of truth used by
retention, so neither backend exposes partially written artifacts.
"""

import io
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class PathNotWritable(StorageError):
    """Raised when a local storage directory cannot be created or written."""
    pass


@dataclass(frozen=True)
class Artifact:
    """A stored backup object."""

    key: str
    size: int
    created_at: datetime


PARTIAL_SUFFIX = '.partial'

# Streams above 100MB (or of unknown length) use multipart upload
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024

COPY_BUFFER_SIZE = 1024 * 1024


class StorageBackend(ABC):
    """Capability interface shared by all storage backends."""

    driver = None

    @abstractmethod
    def put(self, key: str, stream: BinaryIO) -> Artifact:
        """
        Store a stream under ``key``.

        The artifact becomes visible to ``list_artifacts`` only once it is
        complete.

        Raises:
            StorageError: If the artifact cannot be stored
        """

    @abstractmethod
    def list_artifacts(self, prefix: str = '') -> List[Artifact]:
        """
        List complete artifacts whose key starts with ``prefix``.

        Raises:
            StorageError: If listing fails
        """

    @abstractmethod
    def delete(self, key: str):
        """
        Delete an artifact.

        Raises:
            StorageError: If deletion fails
        """

    @abstractmethod
    def describe(self) -> str:
        """Human readable location, used in logs."""

    def check(self) -> bool:
        """Verify the storage location is usable."""
        return True


class LocalStorage(StorageBackend):
    """
    Handler for storing backups in the local filesystem.

    Artifacts are written to {base_path}/{prefix}/{key}. Each put goes to a
    hidden ``.{key}.partial`` file first and is renamed into place when the
    stream has been fully written.
    """

    driver = 'local'

    def __init__(self, base_path: str, prefix: str = ''):
        """
        Initialize local storage handler.

        The directory is created on first write, not here.

        Args:
            base_path: Base directory for backups
            prefix: Optional sub-directory below base_path
        """
        self.base_path = Path(base_path).expanduser()
        self.prefix = (prefix or '').strip('/')
        self.directory = self.base_path / self.prefix if self.prefix else self.base_path

    def _ensure_directory(self):
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PathNotWritable(f"Failed to create local storage directory {self.directory}: {e}")

        if not os.access(self.directory, os.W_OK):
            raise PathNotWritable(f"Local storage directory is not writable: {self.directory}")

    def _path_for(self, key: str) -> Path:
        if not key or '/' in key or os.sep in key or key in ('.', '..'):
            raise StorageError(f"Invalid artifact key for local storage: '{key}'")
        return self.directory / key

    def put(self, key: str, stream: BinaryIO) -> Artifact:
        """
        Write a stream to local storage.

        Args:
            key: Artifact file name
            stream: Readable binary stream

        Returns:
            The stored Artifact

        Raises:
            PathNotWritable: If the directory cannot be created or written
            StorageError: If writing fails for another reason
        """
        dest_path = self._path_for(key)
        self._ensure_directory()
        partial_path = self.directory / f".{key}{PARTIAL_SUFFIX}"

        try:
            with open(partial_path, 'wb') as f:
                shutil.copyfileobj(stream, f, COPY_BUFFER_SIZE)
            os.replace(partial_path, dest_path)
        except PermissionError as e:
            self._discard(partial_path)
            raise PathNotWritable(f"Permission denied writing to {dest_path}: {e}")
        except Exception as e:
            self._discard(partial_path)
            raise StorageError(f"Failed to store locally: {e}")

        return self._artifact(dest_path)

    def list_artifacts(self, prefix: str = '') -> List[Artifact]:
        """
        List artifacts in the storage directory.

        Hidden files, in-progress writes and sub-directories are skipped.
        """
        if not self.directory.exists():
            return []

        try:
            artifacts = []
            for entry in self.directory.iterdir():
                name = entry.name
                if name.startswith('.') or name.endswith(PARTIAL_SUFFIX):
                    continue
                if not name.startswith(prefix) or not entry.is_file():
                    continue
                artifacts.append(self._artifact(entry))

            return sorted(artifacts, key=lambda a: (a.created_at, a.key))

        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def delete(self, key: str):
        """
        Delete a file from local storage.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self._path_for(key)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def describe(self) -> str:
        return str(self.directory)

    def check(self) -> bool:
        self._ensure_directory()
        return True

    @staticmethod
    def _artifact(path: Path) -> Artifact:
        stat = path.stat()
        return Artifact(
            key=path.name,
            size=stat.st_size,
            created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        )

    @staticmethod
    def _discard(path: Path):
        try:
            path.unlink()
        except OSError:
            pass


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage(StorageBackend):
    """
    Handler for uploading backups to S3.

    Objects are stored under {prefix}{key}. Credentials given explicitly take
    precedence; otherwise boto3's default chain (environment, shared config,
    instance profile) is used.
    """

    driver = 's3'

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        prefix: str = 'backups/',
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        client=None
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            prefix: Key prefix for all objects (default: backups/)
            endpoint_url: Custom endpoint for S3-compatible services
            access_key: Explicit access key ID (optional)
            secret_key: Explicit secret access key (optional)
            client: Pre-built boto3 S3 client (optional)
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix or ''
        self.endpoint_url = endpoint_url

        if client is not None:
            self.s3_client = client
            return

        client_kwargs = {'region_name': region}

        if endpoint_url:
            # S3-compatible services generally need path-style URLs
            client_kwargs['endpoint_url'] = endpoint_url
            client_kwargs['config'] = BotoConfig(s3={'addressing_style': 'path'})

        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _object_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def put(self, key: str, stream: BinaryIO) -> Artifact:
        """
        Upload a stream to S3.

        Small streams of known length use a single put_object; anything else
        goes through a multipart upload which is aborted on failure, so a
        failed upload never leaves a visible object.

        Returns:
            The stored Artifact

        Raises:
            StorageError: If upload fails
        """
        object_key = self._object_key(key)

        try:
            size = self._stream_size(stream)

            if size is not None and size <= MULTIPART_THRESHOLD:
                self._simple_upload(stream, object_key)
            else:
                self._multipart_upload(stream, object_key)

            head = self.s3_client.head_object(Bucket=self.bucket_name, Key=object_key)
            return Artifact(
                key=key,
                size=head['ContentLength'],
                created_at=head['LastModified']
            )

        except ClientError as e:
            raise StorageError(f"S3 upload failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except Exception as e:
            raise StorageError(f"Failed to upload to S3: {e}")

    @staticmethod
    def _stream_size(stream: BinaryIO) -> Optional[int]:
        try:
            return os.fstat(stream.fileno()).st_size - stream.tell()
        except (AttributeError, OSError, io.UnsupportedOperation):
            return None

    def _simple_upload(self, stream: BinaryIO, object_key: str):
        self.s3_client.put_object(
            Bucket=self.bucket_name,
            Key=object_key,
            Body=stream
        )

    def _multipart_upload(self, stream: BinaryIO, object_key: str):
        """
        Upload a stream in 10MB parts.

        Args:
            stream: Readable binary stream
            object_key: Full S3 object key
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=object_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            part_number = 1

            while True:
                data = stream.read(MULTIPART_CHUNK_SIZE)
                if not data and parts:
                    break

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=object_key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )

                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })

                if not data:
                    break

                part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=object_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=object_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def list_artifacts(self, prefix: str = '') -> List[Artifact]:
        """
        List objects under {storage prefix}{prefix}.

        Returned keys are relative to the storage prefix, so they can be fed
        back to ``delete``.

        Raises:
            StorageError: If listing fails
        """
        try:
            artifacts = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self._object_key(prefix)):
                for obj in page.get('Contents', []):
                    if obj['Key'].endswith('/'):
                        continue
                    artifacts.append(Artifact(
                        key=obj['Key'][len(self.prefix):],
                        size=obj['Size'],
                        created_at=obj['LastModified']
                    ))

            return sorted(artifacts, key=lambda a: (a.created_at, a.key))

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def delete(self, key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=self._object_key(key)
            )
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def describe(self) -> str:
        return f"s3://{self.bucket_name}/{self.prefix}"

    def check(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('404', 'NoSuchBucket'):
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


def create_storage(spec) -> StorageBackend:
    """
    Factory function to create the storage backend for a storage spec.

    Args:
        spec: StorageSpec with a 'local' or 's3' driver

    Returns:
        LocalStorage or S3Storage instance

    Raises:
        ValueError: If the driver is unknown
    """
    if spec.driver == 'local':
        return LocalStorage(spec.path, prefix=spec.prefix or '')
    elif spec.driver == 's3':
        return S3Storage(
            bucket_name=spec.bucket,
            region=spec.region,
            prefix=spec.prefix if spec.prefix is not None else 'backups/',
            endpoint_url=spec.endpoint,
            access_key=spec.access_key_id,
            secret_key=spec.secret_access_key
        )
    else:
        raise ValueError(f"Unsupported storage driver: {spec.driver}")
