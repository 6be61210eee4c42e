"""
Unit tests for storage handler (pgbackups/backup/storage.py).

Tests S3Storage against moto's S3 mock.
"""

from datetime import date
from unittest.mock import MagicMock

import pytest
import boto3
from botocore.exceptions import ClientError
from moto import mock_aws

from pgbackups.backup import storage as storage_module
from pgbackups.backup.storage import (
    S3Storage,
    StorageError,
    generate_backup_key,
    create_storage,
)


class TestGenerateBackupKey:
    """Test the wire-visible key format."""

    def test_key_format(self):
        assert generate_backup_key('shop', date(2025, 1, 5)) == 'backups/2025/01/05/shop.sql.gz'

    def test_key_is_zero_padded(self):
        assert generate_backup_key('blog', date(987, 11, 30)) == 'backups/0987/11/30/blog.sql.gz'


class TestS3StorageBuckets:
    """Test bucket existence and creation."""

    @mock_aws
    def test_ensure_bucket_creates_missing_bucket(self):
        storage = S3Storage(access_key='test_key', secret_key='test_secret', region='us-east-1')

        assert storage.bucket_exists('new-bucket') is False
        storage.ensure_bucket('new-bucket')
        assert storage.bucket_exists('new-bucket') is True

    @mock_aws
    def test_ensure_bucket_outside_us_east_1(self):
        storage = S3Storage(access_key='test_key', secret_key='test_secret', region='eu-west-1')

        storage.ensure_bucket('eu-bucket')

        s3 = boto3.client('s3', region_name='eu-west-1')
        location = s3.get_bucket_location(Bucket='eu-bucket')['LocationConstraint']
        assert location == 'eu-west-1'

    def test_ensure_bucket_existing_is_not_an_error(self, mock_s3, s3_storage):
        mock_s3.Bucket('test-bucket').put_object(Key='backups/keep.txt', Body=b'x')

        s3_storage.ensure_bucket('test-bucket')
        s3_storage.ensure_bucket('test-bucket')

        assert s3_storage.list_keys('test-bucket') == ['backups/keep.txt']

    def test_bucket_exists_access_denied(self):
        storage = S3Storage(access_key='k', secret_key='s', region='us-east-1')
        storage.s3_client = MagicMock()
        storage.s3_client.head_bucket.side_effect = ClientError(
            {'Error': {'Code': '403', 'Message': 'Forbidden'}}, 'HeadBucket'
        )

        with pytest.raises(StorageError, match='Access denied'):
            storage.ensure_bucket('locked-bucket')

    def test_ensure_bucket_create_failure(self):
        storage = S3Storage(access_key='k', secret_key='s', region='us-east-1')
        storage.s3_client = MagicMock()
        storage.s3_client.head_bucket.side_effect = ClientError(
            {'Error': {'Code': '404', 'Message': 'Not Found'}}, 'HeadBucket'
        )
        storage.s3_client.create_bucket.side_effect = ClientError(
            {'Error': {'Code': 'BucketAlreadyExists', 'Message': 'taken'}}, 'CreateBucket'
        )

        with pytest.raises(StorageError, match='BucketAlreadyExists'):
            storage.ensure_bucket('someone-elses-bucket')


class TestS3StorageObjects:
    """Test object operations."""

    def test_upload_and_head(self, s3_storage, tmp_path):
        local_file = tmp_path / 'shop.sql.gz'
        local_file.write_bytes(b'x' * 2048)

        key = s3_storage.upload('test-bucket', 'backups/2025/01/20/shop.sql.gz', str(local_file))

        assert key == 'backups/2025/01/20/shop.sql.gz'
        assert s3_storage.head('test-bucket', key) == 2048

    def test_upload_missing_file(self, s3_storage, tmp_path):
        with pytest.raises(StorageError, match='Local file not found'):
            s3_storage.upload('test-bucket', 'backups/x.sql.gz', str(tmp_path / 'missing.sql.gz'))

    def test_upload_to_missing_bucket(self, s3_storage, tmp_path):
        local_file = tmp_path / 'shop.sql.gz'
        local_file.write_bytes(b'data')

        with pytest.raises(StorageError, match='NoSuchBucket'):
            s3_storage.upload('no-such-bucket', 'backups/x.sql.gz', str(local_file))

    def test_multipart_upload(self, s3_storage, tmp_path, monkeypatch):
        monkeypatch.setattr(storage_module, 'MULTIPART_THRESHOLD', 10)
        local_file = tmp_path / 'big.sql.gz'
        local_file.write_bytes(b'y' * 500)

        s3_storage.upload('test-bucket', 'backups/2025/01/20/big.sql.gz', str(local_file))

        assert s3_storage.head('test-bucket', 'backups/2025/01/20/big.sql.gz') == 500

    def test_multipart_upload_aborts_on_failure(self, tmp_path, monkeypatch):
        monkeypatch.setattr(storage_module, 'MULTIPART_THRESHOLD', 10)
        local_file = tmp_path / 'big.sql.gz'
        local_file.write_bytes(b'y' * 500)

        storage = S3Storage(access_key='k', secret_key='s', region='us-east-1')
        storage.s3_client = MagicMock()
        storage.s3_client.create_multipart_upload.return_value = {'UploadId': 'abc'}
        storage.s3_client.upload_part.side_effect = ClientError(
            {'Error': {'Code': 'InternalError', 'Message': 'boom'}}, 'UploadPart'
        )

        with pytest.raises(StorageError, match='InternalError'):
            storage.upload('test-bucket', 'backups/big.sql.gz', str(local_file))

        storage.s3_client.abort_multipart_upload.assert_called_once_with(
            Bucket='test-bucket', Key='backups/big.sql.gz', UploadId='abc'
        )

    def test_get_range_returns_prefix_only(self, mock_s3, s3_storage):
        mock_s3.Bucket('test-bucket').put_object(Key='backups/a.sql.gz', Body=b'0123456789' * 300)

        data = s3_storage.get_range('test-bucket', 'backups/a.sql.gz', 0, 1023)

        assert len(data) == 1024
        assert data.startswith(b'0123456789')

    def test_get_range_missing_object(self, s3_storage):
        with pytest.raises(StorageError):
            s3_storage.get_range('test-bucket', 'backups/missing.sql.gz', 0, 1023)

    def test_list_keys_with_prefix(self, mock_s3, s3_storage):
        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key='backups/2025/01/01/a.sql.gz', Body=b'1')
        bucket.put_object(Key='backups/2025/01/02/a.sql.gz', Body=b'2')
        bucket.put_object(Key='test/permission-check.txt', Body=b'3')

        keys = s3_storage.list_keys('test-bucket', prefix='backups/')

        assert sorted(keys) == ['backups/2025/01/01/a.sql.gz', 'backups/2025/01/02/a.sql.gz']

    def test_list_keys_missing_bucket(self, s3_storage):
        with pytest.raises(StorageError, match='NoSuchBucket'):
            s3_storage.list_keys('no-such-bucket', prefix='backups/')

    def test_delete(self, mock_s3, s3_storage):
        mock_s3.Bucket('test-bucket').put_object(Key='backups/old.sql.gz', Body=b'1')

        s3_storage.delete('test-bucket', 'backups/old.sql.gz')

        assert s3_storage.list_keys('test-bucket') == []

    def test_head_missing_object(self, s3_storage):
        with pytest.raises(StorageError):
            s3_storage.head('test-bucket', 'backups/missing.sql.gz')

    def test_test_permissions_leaves_no_test_object_behind(self, s3_storage):
        assert s3_storage.test_permissions('perm-bucket') is True
        assert s3_storage.list_keys('perm-bucket') == []


class TestCreateStorage:
    """Test building S3Storage from config."""

    def test_create_storage_uses_config_region(self):
        storage = create_storage({
            'AWS_ACCESS_KEY_ID': 'key',
            'AWS_SECRET_ACCESS_KEY': 'secret',
            'AWS_DEFAULT_REGION': 'eu-central-1',
        })

        assert storage.region == 'eu-central-1'

    def test_create_storage_default_region(self):
        assert create_storage({}).region == 'us-east-2'
