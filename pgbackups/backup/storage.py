"""
S3 object store client for backup dumps.

Objects are addressed by (bucket, key). Backups are stored under
backups/{YYYY}/{MM}/{DD}/{site}.sql.gz, one bucket per site.
"""

import logging
import os
import time
from datetime import date
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def generate_backup_key(site_id: str, day: date) -> str:
    """
    Build the storage key for a site's backup on a given day.

    Format: backups/{YYYY}/{MM}/{DD}/{site_id}.sql.gz
    """
    return f"backups/{day.year:04d}/{day.month:02d}/{day.day:02d}/{site_id}.sql.gz"


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for storing backups in AWS S3.

    One client serves every site; the bucket is passed to each call.
    """

    def __init__(self, access_key: Optional[str], secret_key: Optional[str], region: str = 'us-east-2'):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID (None uses the default credential chain)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-2)
        """
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def bucket_exists(self, bucket: str) -> bool:
        """
        Check whether a bucket exists and is reachable.

        Raises:
            StorageError: If access is denied or the check itself fails
        """
        try:
            self.s3_client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('404', 'NoSuchBucket', 'NotFound'):
                return False
            if error_code == '403':
                raise StorageError(f"Access denied to bucket: {bucket}")
            raise StorageError(f"S3 bucket check failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")

    def ensure_bucket(self, bucket: str):
        """
        Create the bucket if it does not exist yet.

        An existing bucket is not an error.

        Raises:
            StorageError: If the bucket cannot be created
        """
        if self.bucket_exists(bucket):
            logger.info(f"Bucket {bucket} already exists")
            return

        logger.info(f"Creating bucket: {bucket}")

        kwargs = {'Bucket': bucket}
        # us-east-1 rejects an explicit LocationConstraint
        if self.region != 'us-east-1':
            kwargs['CreateBucketConfiguration'] = {'LocationConstraint': self.region}

        try:
            self.s3_client.create_bucket(**kwargs)
            logger.info(f"Bucket {bucket} created")
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == 'BucketAlreadyOwnedByYou':
                return
            raise StorageError(f"Failed to create bucket {bucket} ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to create bucket {bucket}: {e}")

    def upload(self, bucket: str, key: str, local_path: str) -> str:
        """
        Upload a local file to bucket/key.

        Args:
            bucket: Destination bucket
            key: Destination key
            local_path: Path to local file

        Returns:
            The key that was written

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        logger.info(f"Uploading to s3://{bucket}/{key}...")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(bucket, key, local_path)
            else:
                self._simple_upload(bucket, key, local_path)

            logger.info(f"Upload complete: s3://{bucket}/{key}")
            return key

        except ClientError as e:
            raise StorageError(f"S3 upload failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

    def _simple_upload(self, bucket: str, key: str, local_path: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(Bucket=bucket, Key=key, Body=f)

    def _multipart_upload(self, bucket: str, key: str, local_path: str):
        """
        Upload a large file in MULTIPART_CHUNK_SIZE parts.

        The multipart upload is aborted if any part fails.
        """
        response = self.s3_client.create_multipart_upload(Bucket=bucket, Key=key)
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=bucket,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=bucket,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def get_range(self, bucket: str, key: str, start: int, end: int) -> bytes:
        """
        Fetch bytes start..end (inclusive) of an object.

        Raises:
            StorageError: If the object cannot be read
        """
        try:
            response = self.s3_client.get_object(
                Bucket=bucket,
                Key=key,
                Range=f"bytes={start}-{end}"
            )
            return response['Body'].read()
        except ClientError as e:
            raise StorageError(f"S3 read failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to read s3://{bucket}/{key}: {e}")

    def list_keys(self, bucket: str, prefix: str = '') -> List[str]:
        """
        List object keys in bucket with given prefix.

        Raises:
            StorageError: If listing fails
        """
        try:
            keys = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get('Contents', []):
                    keys.append(obj['Key'])

            return keys

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def delete(self, bucket: str, key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        logger.info(f"Deleting s3://{bucket}/{key}")

        try:
            self.s3_client.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def head(self, bucket: str, key: str) -> int:
        """
        Get the size of an object in bytes.

        Raises:
            StorageError: If the object cannot be found
        """
        try:
            response = self.s3_client.head_object(Bucket=bucket, Key=key)
            return response['ContentLength']
        except ClientError as e:
            raise StorageError(f"S3 head failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to stat s3://{bucket}/{key}: {e}")

    def test_permissions(self, bucket: str) -> bool:
        """
        Check that we can create, write, read and delete in a bucket.

        Returns:
            True if every check succeeds

        Raises:
            StorageError: On the first check that fails
        """
        test_key = f"test/permission-check-{int(time.time())}.txt"
        logger.info(f"Testing S3 permissions for bucket: {bucket}")

        self.ensure_bucket(bucket)

        try:
            self.s3_client.put_object(Bucket=bucket, Key=test_key, Body=b'pgbackups permission test')
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to upload test file: {e}")

        try:
            self.s3_client.get_object(Bucket=bucket, Key=test_key)['Body'].read()
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to read test file: {e}")

        self.delete(bucket, test_key)

        logger.info(f"S3 permissions OK for bucket: {bucket}")
        return True


def create_storage(config) -> S3Storage:
    """
    Build the S3 client from app configuration.

    Args:
        config: Flask config mapping
    """
    return S3Storage(
        access_key=config.get('AWS_ACCESS_KEY_ID') or None,
        secret_key=config.get('AWS_SECRET_ACCESS_KEY') or None,
        region=config.get('AWS_DEFAULT_REGION') or 'us-east-2'
    )
