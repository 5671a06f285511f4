"""
Shared pytest fixtures for backup service tests.

This module provides fixtures for:
- Environment/config dictionaries
- A snapshot file standing in for dump.rdb
- Mock Redis client with scripted INFO persistence replies
- Mock S3 via moto
- In-memory storage backend for executor tests
"""

import os
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from redis_backup.backup.redis_client import RedisClient
from redis_backup.backup.storage import DeleteError, StorageKind


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches real accounts."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def base_env(tmp_path):
    """Minimal valid environment for a local-storage service."""
    return {
        'BACKUP_CRON': '0 0 * * *',
        'STORAGE_TYPE': 'local',
        'LOCAL_BACKUP_PATH': str(tmp_path / 'backups'),
        'REDIS_DATA_PATH': str(tmp_path / 'data'),
    }


@pytest.fixture
def rdb_file(tmp_path):
    """
    Create a fake dump.rdb in tmp_path/data.
    """
    data_dir = tmp_path / 'data'
    data_dir.mkdir(exist_ok=True)
    path = data_dir / 'dump.rdb'
    path.write_bytes(b'REDIS0011' + b'\x00' * 1024)
    return path


def persistence_info(in_progress=False, status='ok'):
    return {
        'rdb_bgsave_in_progress': 1 if in_progress else 0,
        'rdb_last_bgsave_status': status,
    }


@pytest.fixture
def mock_redis():
    """
    MagicMock standing in for redis.Redis.

    INFO persistence reports no save in progress unless a test changes
    info.side_effect / info.return_value.
    """
    client = MagicMock()
    client.ping.return_value = True
    client.bgsave.return_value = True
    client.info.return_value = persistence_info()
    return client


@pytest.fixture
def redis_client(mock_redis):
    """RedisClient wrapping the mock redis client."""
    return RedisClient(mock_redis)


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


class MemoryStorage:
    """Storage backend keeping artifacts in a dict, for executor tests."""

    kind = StorageKind.LOCAL

    def __init__(self, names=()):
        self.objects = {name: b'' for name in names}
        self.uploads = []
        self.fail_delete = set()

    def describe(self):
        return 'memory'

    def upload(self, source_path, artifact_name, ctx=None):
        with open(source_path, 'rb') as f:
            self.objects[artifact_name] = f.read()
        self.uploads.append(artifact_name)

    def list(self, ctx=None):
        return sorted(name for name in self.objects if name.endswith('.rdb'))

    def delete(self, artifact_name, ctx=None):
        if artifact_name in self.fail_delete or artifact_name not in self.objects:
            raise DeleteError(f"Backup not found: {artifact_name}", artifact_name)
        del self.objects[artifact_name]


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def sample_names():
    """Five artifact names, one per day, oldest first."""
    return [f'b_2024-01-0{day}_00-00-00.rdb' for day in range(1, 6)]


@pytest.fixture
def info_reply():
    """Factory for INFO persistence replies."""
    return persistence_info
