"""
Redis connection used to produce snapshots.

Issues BGSAVE and polls INFO persistence until the background save
finishes. The connection is opened once at startup and reused by every
backup cycle.
"""

import logging
import time
from typing import Optional

import redis
from redis.exceptions import RedisError, ResponseError

from redis_backup.utils.cancellation import CycleContext, ensure_context

logger = logging.getLogger(__name__)

MAX_CONNECT_ATTEMPTS = 10
MAX_BACKOFF_SECONDS = 30
SOCKET_TIMEOUT_SECONDS = 5


class StoreConnectionError(Exception):
    """Raised when Redis cannot be reached at startup."""
    pass


class TriggerError(Exception):
    """Raised when BGSAVE cannot be started."""
    pass


class WaitError(Exception):
    """Raised when snapshot progress cannot be determined or the save failed."""
    pass


def backoff_delay(attempt: int) -> int:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    return min(attempt * 2, MAX_BACKOFF_SECONDS)


class RedisClient:
    """
    Thin wrapper around a redis-py client for snapshot operations.

    Safe for sequential reuse across cycles, not for concurrent cycles.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def connect(
        cls,
        host: str = 'localhost',
        port: int = 6379,
        password: Optional[str] = None,
        db: int = 0,
        max_attempts: int = MAX_CONNECT_ATTEMPTS,
        sleep=time.sleep,
        client_factory=redis.Redis,
    ) -> 'RedisClient':
        """
        Connect to Redis, retrying with linear backoff capped at 30 seconds.

        Args:
            host: Redis host
            port: Redis port
            password: Redis password (optional)
            db: Database index
            max_attempts: Number of PING attempts before giving up
            sleep: Sleep function (injectable for tests)
            client_factory: redis-py client class

        Returns:
            Connected RedisClient

        Raises:
            StoreConnectionError: If every attempt fails
        """
        client = client_factory(
            host=host,
            port=port,
            password=password,
            db=db,
            socket_timeout=SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=SOCKET_TIMEOUT_SECONDS,
        )

        last_error = None
        for attempt in range(1, max_attempts + 1):
            try:
                client.ping()
                logger.info(f"Connected to Redis at {host}:{port} (db {db})")
                return cls(client)
            except RedisError as e:
                last_error = e

            if attempt < max_attempts:
                delay = backoff_delay(attempt)
                logger.warning(
                    f"Failed to connect to Redis (attempt {attempt}/{max_attempts}): {last_error}. "
                    f"Retrying in {delay}s..."
                )
                sleep(delay)

        try:
            client.close()
        except RedisError:
            pass

        raise StoreConnectionError(
            f"Failed to connect to Redis at {host}:{port} after {max_attempts} attempts: {last_error}"
        )

    def _persistence_info(self) -> dict:
        return self.client.info('persistence')

    def is_snapshot_in_progress(self) -> bool:
        """
        Check whether a background save is running.

        Raises:
            RedisError: If INFO persistence fails
        """
        info = self._persistence_info()
        return int(info.get('rdb_bgsave_in_progress', 0)) == 1

    def trigger_snapshot(self, ctx: Optional[CycleContext] = None) -> bool:
        """
        Start a background save unless one is already running.

        Returns:
            True if BGSAVE was issued, False if a save was already in progress

        Raises:
            TriggerError: If the status check or BGSAVE fails
            CycleCancelled: If the cycle is cancelled or expired
        """
        ensure_context(ctx).check()

        try:
            if self.is_snapshot_in_progress():
                logger.info("BGSAVE already in progress, waiting for it instead")
                return False
        except RedisError as e:
            raise TriggerError(f"Failed to get persistence info: {e}")

        logger.info("Triggering BGSAVE")
        try:
            self.client.bgsave()
        except ResponseError as e:
            # Another save may have started between the check and the command
            if 'already in progress' in str(e).lower():
                logger.info("BGSAVE already in progress, waiting for it instead")
                return False
            raise TriggerError(f"BGSAVE command failed: {e}")
        except RedisError as e:
            raise TriggerError(f"BGSAVE command failed: {e}")

        return True

    def await_snapshot_complete(self, ctx: Optional[CycleContext] = None, poll_interval: float = 1.0):
        """
        Poll until the background save finishes.

        Args:
            ctx: Cycle context; cancellation wakes the poll loop immediately
            poll_interval: Seconds between status checks

        Raises:
            WaitError: If status cannot be read or the save reported an error
            CycleCancelled: If the cycle is cancelled
            CycleTimeout: If the cycle deadline passes
        """
        ctx = ensure_context(ctx)
        logger.info("Waiting for BGSAVE to complete")

        while True:
            ctx.sleep(poll_interval)

            try:
                info = self._persistence_info()
            except RedisError as e:
                raise WaitError(f"Failed to get persistence info: {e}")

            if int(info.get('rdb_bgsave_in_progress', 0)) == 1:
                continue

            status = info.get('rdb_last_bgsave_status', 'ok')
            if status != 'ok':
                raise WaitError(f"BGSAVE finished with status '{status}'")

            logger.info("BGSAVE completed")
            return

    def close(self):
        try:
            self.client.close()
        except RedisError as e:
            logger.warning(f"Error closing Redis connection: {e}")
