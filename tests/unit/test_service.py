"""
Unit tests for service bootstrap (redis_backup/service.py).
"""

import logging
from unittest.mock import MagicMock, patch

import pytest

from redis_backup import configure_logging
from redis_backup.backup.executor import BackupExecutor
from redis_backup.backup.redis_client import StoreConnectionError
from redis_backup.backup.storage import LocalStorage
from redis_backup.config import Config, ConfigValidationError
from redis_backup.service import create_service, main


class TestCreateService:

    def test_builds_executor(self, base_env, redis_client, rdb_file):
        config = Config(base_env)
        connect = MagicMock(return_value=redis_client)

        executor, client = create_service(config, connect=connect)

        assert isinstance(executor, BackupExecutor)
        assert isinstance(executor.storage, LocalStorage)
        assert client is redis_client
        assert executor.rdb_path == str(rdb_file)
        connect.assert_called_once_with(host='localhost', port=6379, password=None, db=0)

    def test_warns_when_rdb_missing(self, base_env, redis_client, caplog):
        config = Config(base_env)

        with caplog.at_level(logging.WARNING):
            create_service(config, connect=MagicMock(return_value=redis_client))

        assert 'RDB file not found' in caplog.text

    def test_connection_failure_propagates(self, base_env):
        connect = MagicMock(side_effect=StoreConnectionError('unreachable'))

        with pytest.raises(StoreConnectionError):
            create_service(Config(base_env), connect=connect)


class TestMain:

    def test_invalid_config_exits(self):
        with patch('redis_backup.service.load_config', side_effect=ConfigValidationError('bad')):
            assert main() == 1

    @patch('redis_backup.service.configure_logging')
    @patch('redis_backup.service.load_config')
    @patch('redis_backup.service.create_service')
    def test_connection_failure_exits(self, mock_create, mock_load, mock_logging, base_env):
        mock_load.return_value = Config(base_env)
        mock_create.side_effect = StoreConnectionError('unreachable')

        assert main() == 1


def test_configure_logging_with_log_dir(tmp_path, base_env):
    base_env.update({'LOG_DIR': str(tmp_path / 'logs'), 'LOG_LEVEL': 'DEBUG'})

    configure_logging(Config(base_env))

    assert (tmp_path / 'logs').is_dir()
    assert logging.getLogger().level == logging.DEBUG

    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)
    root.setLevel(logging.WARNING)
