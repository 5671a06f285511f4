"""
Unit tests for configuration loading (redis_backup/config.py).
"""

import os

import pytest

from redis_backup.config import Config, ConfigValidationError, load_config, parse_gcs_uri


class TestConfigDefaults:
    """Test default values."""

    def test_defaults(self):
        config = Config({'BACKUP_CRON': '0 0 * * *'})

        assert config.redis_host == 'localhost'
        assert config.redis_port == 6379
        assert config.redis_password is None
        assert config.redis_db == 0
        assert config.storage_type == 'local'
        assert config.local_backup_path == '/backups'
        assert config.s3_region == 'us-east-1'
        assert config.s3_path_style is False
        assert config.retention_count == 0
        assert config.backup_on_start is False
        assert config.backup_timeout == 1800
        assert config.poll_interval == 1.0
        assert config.rdb_path == os.path.join('/data', 'dump.rdb')

    def test_booleans(self):
        config = Config({'BACKUP_ON_START': 'TRUE', 'S3_PATH_STYLE': 'false'})

        assert config.backup_on_start is True
        assert config.s3_path_style is False

    def test_summary_has_no_secrets(self):
        config = Config({'REDIS_PASSWORD': 'hunter2', 'S3_SECRET_KEY': 'topsecret', 'BACKUP_CRON': '@daily'})

        summary = str(config.summary())

        assert 'hunter2' not in summary
        assert 'topsecret' not in summary


class TestParseGcsUri:

    @pytest.mark.parametrize('uri,expected', [
        ('gs://bucket', ('bucket', '')),
        ('gs://bucket/', ('bucket', '')),
        ('gs://bucket/redis/prod', ('bucket', 'redis/prod')),
        ('bucket/prefix', ('bucket', 'prefix')),
    ])
    def test_parse(self, uri, expected):
        assert parse_gcs_uri(uri) == expected

    def test_config_parses_gcs_bucket(self):
        config = Config({'GCS_BUCKET': 'gs://my-bucket/backups'})

        assert config.gcp_bucket == 'my-bucket'
        assert config.gcp_backup_prefix == 'backups'


class TestValidation:
    """Test validation of required fields per storage type."""

    def test_local_is_valid(self, base_env):
        Config(base_env).validate()

    def test_missing_cron(self, base_env):
        del base_env['BACKUP_CRON']

        with pytest.raises(ConfigValidationError, match='BACKUP_CRON'):
            Config(base_env).validate()

    @pytest.mark.parametrize('expression', ['whenever', '0 2 * * 8', '@fortnightly'])
    def test_malformed_cron(self, base_env, expression):
        base_env['BACKUP_CRON'] = expression

        with pytest.raises(ConfigValidationError, match='BACKUP_CRON'):
            Config(base_env).validate()

    def test_malformed_cron_rejected_on_load(self, base_env):
        base_env['BACKUP_CRON'] = '61 * * * *'

        with pytest.raises(ConfigValidationError, match='BACKUP_CRON'):
            load_config(base_env)

    def test_s3_requires_bucket(self, base_env):
        base_env['STORAGE_TYPE'] = 's3'

        with pytest.raises(ConfigValidationError, match='S3_BUCKET'):
            Config(base_env).validate()

    def test_s3_with_bucket(self, base_env):
        base_env.update({'STORAGE_TYPE': 's3', 'S3_BUCKET': 'backups'})

        Config(base_env).validate()

    def test_gcp_requires_bucket(self, base_env):
        base_env['STORAGE_TYPE'] = 'gcp'

        with pytest.raises(ConfigValidationError, match='GCS_BUCKET'):
            Config(base_env).validate()

    def test_unknown_storage_type(self, base_env):
        base_env['STORAGE_TYPE'] = 'ftp'

        with pytest.raises(ConfigValidationError, match='STORAGE_TYPE'):
            Config(base_env).validate()

    def test_negative_retention(self, base_env):
        base_env['RETENTION_COUNT'] = '-1'

        with pytest.raises(ConfigValidationError, match='RETENTION_COUNT'):
            Config(base_env).validate()

    def test_non_integer(self, base_env):
        base_env['REDIS_PORT'] = 'abc'

        with pytest.raises(ConfigValidationError, match='REDIS_PORT'):
            Config(base_env)

    def test_non_positive_timeout(self, base_env):
        base_env['BACKUP_TIMEOUT'] = '0'

        with pytest.raises(ConfigValidationError, match='BACKUP_TIMEOUT'):
            Config(base_env).validate()


class TestLoadConfig:

    def test_load_from_mapping(self, base_env):
        config = load_config(base_env)

        assert config.backup_cron == '0 0 * * *'

    def test_load_reads_env_file(self, tmp_path, monkeypatch):
        env_file = tmp_path / '.env'
        env_file.write_text('BACKUP_CRON=*/5 * * * *\nRETENTION_COUNT=4\n')
        monkeypatch.delenv('BACKUP_CRON', raising=False)
        monkeypatch.delenv('RETENTION_COUNT', raising=False)

        try:
            config = load_config(env_file=str(env_file))
        finally:
            os.environ.pop('BACKUP_CRON', None)
            os.environ.pop('RETENTION_COUNT', None)

        assert config.backup_cron == '*/5 * * * *'
        assert config.retention_count == 4

    def test_load_invalid(self):
        with pytest.raises(ConfigValidationError):
            load_config({'STORAGE_TYPE': 's3', 'BACKUP_CRON': '@daily'})
