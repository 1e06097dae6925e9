"""
Unit tests for storage backends (dbackup/backup/storage.py).

Tests LocalStorage on a temporary directory and S3Storage against moto.
"""

import io
import os
from datetime import datetime, timezone

import pytest

from dbackup.backup.resolver import StorageSpec
from dbackup.backup.storage import (
    LocalStorage,
    PathNotWritable,
    S3Storage,
    StorageError,
    create_storage,
)


class FailingStream(io.RawIOBase):
    """Stream that yields some bytes, then raises."""

    def __init__(self, chunks=1):
        self.chunks = chunks

    def readable(self):
        return True

    def read(self, size=-1):
        if self.chunks == 0:
            raise OSError("connection reset by dump tool")
        self.chunks -= 1
        return b'partial data'

    def readinto(self, buffer):
        data = self.read(len(buffer))
        buffer[:len(data)] = data
        return len(data)


def set_mtime(path, moment):
    timestamp = moment.timestamp()
    os.utime(path, (timestamp, timestamp))


class TestLocalStorage:
    """Test LocalStorage for local filesystem operations."""

    def test_put(self, tmp_path):
        storage = LocalStorage(str(tmp_path / 'backups'))

        artifact = storage.put('orders_20240115_020000.dump.gz', io.BytesIO(b'dump data'))

        stored = tmp_path / 'backups' / 'orders_20240115_020000.dump.gz'
        assert stored.read_bytes() == b'dump data'
        assert artifact.key == 'orders_20240115_020000.dump.gz'
        assert artifact.size == 9
        assert artifact.created_at.tzinfo is not None
        assert os.listdir(tmp_path / 'backups') == ['orders_20240115_020000.dump.gz']

    def test_put_with_prefix_directory(self, tmp_path):
        storage = LocalStorage(str(tmp_path), prefix='prod/')

        storage.put('a.dump.gz', io.BytesIO(b'x'))

        assert (tmp_path / 'prod' / 'a.dump.gz').exists()
        assert storage.describe() == str(tmp_path / 'prod')

    def test_failed_put_leaves_nothing(self, tmp_path):
        """Test an interrupted write never becomes visible."""
        storage = LocalStorage(str(tmp_path))

        with pytest.raises(StorageError):
            storage.put('orders_20240115_020000.dump.gz', FailingStream())

        assert os.listdir(tmp_path) == []
        assert storage.list_artifacts() == []

    def test_list_skips_partial_hidden_and_directories(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        (tmp_path / 'orders_1.dump.gz').write_bytes(b'1')
        (tmp_path / '.orders_2.dump.gz.partial').write_bytes(b'2')
        (tmp_path / '.hidden').write_bytes(b'3')
        (tmp_path / 'orders_dir').mkdir()

        keys = [artifact.key for artifact in storage.list_artifacts()]

        assert keys == ['orders_1.dump.gz']

    def test_list_filters_by_prefix_and_sorts_by_age(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        for name, day in (('orders_b', 3), ('orders_a', 5), ('accounts_a', 1)):
            path = tmp_path / name
            path.write_bytes(b'x')
            set_mtime(path, datetime(2024, 1, day, tzinfo=timezone.utc))

        artifacts = storage.list_artifacts('orders_')

        assert [a.key for a in artifacts] == ['orders_b', 'orders_a']
        assert artifacts[0].created_at == datetime(2024, 1, 3, tzinfo=timezone.utc)

    def test_list_missing_directory(self, tmp_path):
        storage = LocalStorage(str(tmp_path / 'not-created-yet'))

        assert storage.list_artifacts() == []

    def test_delete(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.put('old.dump.gz', io.BytesIO(b'x'))

        storage.delete('old.dump.gz')
        storage.delete('old.dump.gz')  # Already gone

        assert storage.list_artifacts() == []

    @pytest.mark.parametrize('key', ['', '..', '../escape.dump.gz', 'nested/key.dump.gz'])
    def test_invalid_keys(self, tmp_path, key):
        storage = LocalStorage(str(tmp_path))

        with pytest.raises(StorageError):
            storage.put(key, io.BytesIO(b'x'))

    def test_path_not_writable(self, tmp_path):
        blocker = tmp_path / 'file'
        blocker.write_text('not a directory')
        storage = LocalStorage(str(blocker / 'backups'))

        with pytest.raises(PathNotWritable):
            storage.put('a.dump.gz', io.BytesIO(b'x'))

    def test_check_creates_directory(self, tmp_path):
        storage = LocalStorage(str(tmp_path / 'new'))

        assert storage.check() is True
        assert (tmp_path / 'new').is_dir()


class TestS3Storage:
    """Test S3Storage against moto."""

    def test_put_small_object(self, mock_s3):
        storage = S3Storage('test-bucket', region='us-east-1', prefix='prod/')

        artifact = storage.put('orders_20240115_020000.dump.gz', io.BytesIO(b'x' * 1024))

        obj = mock_s3.Object('test-bucket', 'prod/orders_20240115_020000.dump.gz')
        assert obj.content_length == 1024
        assert artifact.key == 'orders_20240115_020000.dump.gz'
        assert artifact.size == 1024
        assert artifact.created_at.tzinfo is not None

    def test_put_file_stream(self, mock_s3, tmp_path):
        path = tmp_path / 'dump.gz'
        path.write_bytes(b'file contents')
        storage = S3Storage('test-bucket')

        with open(path, 'rb') as stream:
            artifact = storage.put('a.dump.gz', stream)

        assert artifact.size == len(b'file contents')
        assert mock_s3.Object('test-bucket', 'backups/a.dump.gz').get()['Body'].read() == b'file contents'

    def test_unknown_length_uses_multipart(self, mock_s3):
        """Test a stream without a known size goes through multipart upload."""
        storage = S3Storage('test-bucket', prefix='')

        class Unsized(io.BytesIO):
            def fileno(self):
                raise io.UnsupportedOperation('fileno')

        artifact = storage.put('big.dump.gz', Unsized(b'y' * 2048))

        assert artifact.size == 2048
        assert mock_s3.Object('test-bucket', 'big.dump.gz').content_length == 2048

    def test_failed_multipart_is_aborted(self, mock_s3):
        """Test a failed upload leaves neither an object nor a pending upload."""
        storage = S3Storage('test-bucket', prefix='')

        with pytest.raises(StorageError):
            storage.put('broken.dump.gz', FailingStream(chunks=1))

        client = mock_s3.meta.client
        assert 'Contents' not in client.list_objects_v2(Bucket='test-bucket')
        assert not client.list_multipart_uploads(Bucket='test-bucket').get('Uploads')

    def test_list_keys_relative_to_prefix(self, mock_s3):
        storage = S3Storage('test-bucket', prefix='prod/')
        client = mock_s3.meta.client
        client.put_object(Bucket='test-bucket', Key='prod/orders_1.dump.gz', Body=b'1')
        client.put_object(Bucket='test-bucket', Key='prod/accounts_1.dump.gz', Body=b'2')
        client.put_object(Bucket='test-bucket', Key='staging/orders_2.dump.gz', Body=b'3')
        client.put_object(Bucket='test-bucket', Key='prod/folder/', Body=b'')

        assert sorted(a.key for a in storage.list_artifacts()) == ['accounts_1.dump.gz', 'orders_1.dump.gz']
        assert [a.key for a in storage.list_artifacts('orders_')] == ['orders_1.dump.gz']

    def test_delete(self, mock_s3):
        storage = S3Storage('test-bucket', prefix='prod/')
        storage.put('old.dump.gz', io.BytesIO(b'x'))

        storage.delete('old.dump.gz')

        assert storage.list_artifacts() == []

    def test_describe(self, mock_s3):
        assert S3Storage('test-bucket', prefix='prod/').describe() == 's3://test-bucket/prod/'

    def test_check(self, mock_s3):
        assert S3Storage('test-bucket').check() is True

        with pytest.raises(StorageError, match='does not exist'):
            S3Storage('missing-bucket').check()

    def test_list_missing_bucket(self, mock_s3):
        with pytest.raises(StorageError):
            S3Storage('missing-bucket').list_artifacts()

    def test_custom_endpoint_uses_path_style(self, aws_credentials):
        storage = S3Storage('test-bucket', endpoint_url='http://minio.local:9000')

        assert storage.s3_client.meta.endpoint_url == 'http://minio.local:9000'
        assert storage.s3_client.meta.config.s3['addressing_style'] == 'path'


class TestCreateStorage:
    """Test the storage factory."""

    def test_local(self, tmp_path):
        storage = create_storage(StorageSpec(driver='local', path=str(tmp_path), prefix='nightly'))

        assert isinstance(storage, LocalStorage)
        assert storage.directory == tmp_path / 'nightly'

    def test_s3(self, aws_credentials):
        storage = create_storage(StorageSpec(driver='s3', bucket='b', region='eu-west-1'))

        assert isinstance(storage, S3Storage)
        assert storage.prefix == 'backups/'
        assert storage.region == 'eu-west-1'

    def test_unknown_driver(self):
        with pytest.raises(ValueError):
            create_storage(StorageSpec(driver='ftp'))
