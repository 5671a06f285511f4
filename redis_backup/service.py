"""
Service entry point: wires configuration, Redis, storage and the scheduler.
"""

import logging
import signal
import sys
import threading

from redis_backup import configure_logging
from redis_backup import scheduler as backup_scheduler
from redis_backup.backup.executor import BackupExecutor
from redis_backup.backup.redis_client import RedisClient, StoreConnectionError
from redis_backup.backup.storage import StorageError, create_storage
from redis_backup.config import ConfigValidationError, load_config

logger = logging.getLogger(__name__)


def create_service(config, connect=RedisClient.connect):
    """
    Build the backup executor for a validated configuration.

    Storage is created before connecting to Redis so that storage
    misconfiguration fails fast.

    Returns:
        (BackupExecutor, RedisClient)

    Raises:
        StorageError: If the storage backend cannot be initialized
        StoreConnectionError: If Redis stays unreachable
    """
    storage = create_storage(config)
    logger.info(f"Storage initialized: {storage.describe()}")

    redis_client = connect(
        host=config.redis_host,
        port=config.redis_port,
        password=config.redis_password,
        db=config.redis_db,
    )

    executor = BackupExecutor.from_config(config, redis_client, storage)

    if not executor.check_source_file():
        logger.warning(
            f"RDB file not found at {config.rdb_path} - ensure REDIS_DATA_PATH points at the Redis data directory"
        )

    return executor, redis_client


def main() -> int:
    try:
        config = load_config()
    except ConfigValidationError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"Failed to load configuration: {e}")
        return 1

    configure_logging(config)
    logger.info("Starting Redis Backup Service...")
    for key, value in config.summary().items():
        logger.info(f"  {key}: {value}")

    try:
        executor, redis_client = create_service(config)
    except (StorageError, StoreConnectionError) as e:
        logger.error(f"Failed to initialize backup service: {e}")
        return 1

    try:
        backup_scheduler.init_scheduler(executor, config)
    except ConfigValidationError as e:
        logger.error(f"Failed to schedule backups: {e}")
        redis_client.close()
        return 1

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down...")
        stop_event.set()
        backup_scheduler.cancel_active_cycle()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    if config.backup_on_start:
        logger.info("Running initial backup on startup...")
        backup_scheduler.run_backup_cycle()

    if not stop_event.is_set():
        backup_scheduler.start_scheduler()

    while not stop_event.wait(1):
        pass

    backup_scheduler.stop_scheduler()
    redis_client.close()
    logger.info("Shutdown complete")
    return 0


if __name__ == '__main__':
    sys.exit(main())
