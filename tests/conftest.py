"""
Shared pytest fixtures for pgbackups tests.

This module provides fixtures for:
- Flask app, CLI runner and test client with temporary directories
- Fake container data source (no Docker needed)
- Status ledger
- Mock fixtures for external services (S3, SES) via moto
"""

import gzip
import os
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from pgbackups import create_app
from pgbackups.backup.errors import CredentialsUnavailable
from pgbackups.backup.sources import Credentials, SourceError
from pgbackups.backup.storage import S3Storage
from pgbackups.config import Site
from pgbackups.status import StatusRecorder


SAMPLE_DUMP = (
    b"--\n"
    b"-- PostgreSQL database dump\n"
    b"--\n\n"
    b"SET statement_timeout = 0;\n"
    b"SET client_encoding = 'UTF8';\n"
    b"CREATE TABLE public.users (id integer NOT NULL, email text);\n"
    b"COPY public.users (id, email) FROM stdin;\n"
    b"1\talice@example.com\n"
    b"\\.\n"
)


class FakeSource:
    """
    Stand-in for DockerPostgresSource.

    Writes a canned dump into the sink and remembers what it was asked.
    """

    def __init__(self, dump=SAMPLE_DUMP, running=True, fail_dump=False, tables=None):
        self.dump = dump
        self.running = running
        self.fail_dump = fail_dump
        self.tables = tables if tables is not None else ['users']
        self.dumped = []
        self.sink_modes = []

    def resolve_credentials(self, container):
        if not self.running:
            raise CredentialsUnavailable(f"Container {container} is not running")
        return Credentials(user='app', database='app_db', password='secret')

    def run_dump(self, container, credentials, sink):
        self.sink_modes.append(os.fstat(sink.fileno()).st_mode & 0o777)
        self.dumped.append(container)
        sink.write(self.dump)
        if self.fail_dump:
            raise SourceError(f"pg_dump failed for {credentials.database} (exit 1): connection refused")

    def list_tables(self, container, credentials):
        return self.tables


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so nothing can reach a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Every directory and file lives under tmp_path.
    """
    config_dir = tmp_path / 'config'
    config_dir.mkdir()
    log_dir = tmp_path / 'logs'

    app = create_app('testing', overrides={
        'CONFIG_DIR': str(config_dir),
        'SITES_FILE': str(config_dir / 'sites.conf'),
        'BACKUP_DIR': str(tmp_path / 'backups'),
        'LOG_DIR': str(log_dir),
        'STATUS_FILE': str(log_dir / 'backup_status.log'),
        'AWS_ACCESS_KEY_ID': 'test_access_key',
        'AWS_SECRET_ACCESS_KEY': 'test_secret_key',
        'AWS_DEFAULT_REGION': 'us-east-1',
        'EMAIL_ENABLED': False,
    })

    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def sites_file(app):
    """Write a three-site sites.conf and return its path."""
    path = app.config['SITES_FILE']
    with open(path, 'w') as f:
        f.write(
            "# container:bucket\n"
            "shop-postgres:shop-backups\n"
            "\n"
            "blog-postgres:blog-backups\n"
            "wiki_postgres:wiki-backups\n"
        )
    return path


@pytest.fixture
def site():
    return Site(source_ref='shop-postgres', store_ref='test-bucket')


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def make_source():
    """Factory for FakeSource with non-default behaviour."""
    return FakeSource


@pytest.fixture
def recorder(tmp_path):
    return StatusRecorder(str(tmp_path / 'logs' / 'backup_status.log'))


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / 'work'
    path.mkdir()
    return path


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_storage(mock_s3):
    """S3Storage bound to the mocked S3 service."""
    return S3Storage(access_key='test_key', secret_key='test_secret', region='us-east-1')


@pytest.fixture
def mock_storage():
    """
    MagicMock object store that serves a valid dump header.
    """
    storage = MagicMock()
    storage.get_range.return_value = gzip.compress(SAMPLE_DUMP)[:1024]
    storage.list_keys.return_value = []
    storage.head.return_value = 321
    return storage
