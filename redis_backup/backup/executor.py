"""
Backup executor - orchestrates one backup cycle.

Workflow:
1. Trigger BGSAVE (no-op if a save is already running)
2. Wait for the save to complete
3. Generate the artifact name
4. Upload dump.rdb to the storage backend
5. Apply the retention policy (if configured)

Failures in steps 1-4 fail the cycle. Retention failures only degrade it:
the backup itself has already been delivered.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from redis_backup.utils.cancellation import CycleCancelled, CycleContext, CycleTimeout, ensure_context
from .redis_client import RedisClient, TriggerError, WaitError
from .retention import RetentionManager
from .storage import BACKUP_EXTENSION, StorageError

logger = logging.getLogger(__name__)

BACKUP_NAME_PREFIX = 'redis-backup'
TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'


class CycleStage(str, Enum):
    IDLE = 'idle'
    TRIGGERING = 'triggering'
    WAITING = 'waiting'
    NAMING = 'naming'
    UPLOADING = 'uploading'
    RETAINING = 'retaining'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class CycleResult:
    """
    Outcome of one backup cycle.

    status is 'success', 'degraded' (backup delivered, retention failed) or
    'failed'. cancelled is set when the cycle stopped because of
    cancellation or its deadline rather than an operation error.
    """

    status: str = 'running'
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    artifact_name: Optional[str] = None
    failed_stage: Optional[CycleStage] = None
    error: Optional[str] = None
    cancelled: bool = False
    timed_out: bool = False
    snapshot_triggered: bool = False
    deleted: List[str] = field(default_factory=list)
    retention_failures: int = 0
    logs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in ('success', 'degraded')

    @property
    def degraded(self) -> bool:
        return self.status == 'degraded'


def generate_backup_name(now: Optional[datetime] = None) -> str:
    """
    Generate a backup artifact name.

    Format: redis-backup_{YYYY-MM-DD_HH-MM-SS}.rdb (UTC)

    Names sort lexically in creation order.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    return f"{BACKUP_NAME_PREFIX}_{now.strftime(TIMESTAMP_FORMAT)}{BACKUP_EXTENSION}"


class BackupExecutor:
    """
    Runs backup cycles against one Redis connection and one storage backend.

    Cycles must not overlap on the same instance; the scheduler runs them
    one at a time.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        storage,
        rdb_path: str,
        retention_count: int = 0,
        poll_interval: float = 1.0,
    ):
        """
        Initialize backup executor.

        Args:
            redis_client: Connected RedisClient
            storage: Storage backend (LocalStorage, S3Storage or GCSStorage)
            rdb_path: Path of the dump.rdb file produced by Redis
            retention_count: Number of backups to keep (0 = unlimited)
            poll_interval: Seconds between BGSAVE status checks
        """
        self.redis_client = redis_client
        self.storage = storage
        self.rdb_path = rdb_path
        self.retention_count = retention_count
        self.poll_interval = poll_interval
        self.stage = CycleStage.IDLE
        self.result = None

    @classmethod
    def from_config(cls, config, redis_client: RedisClient, storage) -> 'BackupExecutor':
        return cls(
            redis_client=redis_client,
            storage=storage,
            rdb_path=config.rdb_path,
            retention_count=config.retention_count,
            poll_interval=config.poll_interval,
        )

    def check_source_file(self) -> bool:
        """Return True if the snapshot file exists at rdb_path."""
        return os.path.isfile(self.rdb_path)

    def run_cycle(self, ctx: Optional[CycleContext] = None) -> CycleResult:
        """
        Execute one backup cycle.

        Never raises for trigger, wait, upload or retention failures, nor
        for cancellation; the outcome is reported in the returned result.

        Args:
            ctx: Cycle context carrying the deadline and cancel signal

        Returns:
            CycleResult describing the outcome
        """
        ctx = ensure_context(ctx)
        self.result = CycleResult(status='running', started_at=datetime.now(timezone.utc))
        self.stage = CycleStage.IDLE

        self._log(f"Starting backup cycle (storage: {self.storage.kind.value})")

        try:
            self._execute_workflow(ctx)

        except CycleCancelled as e:
            self.result.cancelled = True
            self.result.timed_out = isinstance(e, CycleTimeout)
            self._fail(e)

        except (TriggerError, WaitError, StorageError) as e:
            self._fail(e)

        except Exception as e:
            logger.exception(f"Unexpected error during {self.stage.value}")
            self._fail(e)

        finally:
            self.result.completed_at = datetime.now(timezone.utc)

        return self.result

    def _execute_workflow(self, ctx: CycleContext):
        """Execute the cycle stages in order."""
        # Step 1: Trigger BGSAVE
        self._enter(CycleStage.TRIGGERING)
        self.result.snapshot_triggered = self.redis_client.trigger_snapshot(ctx)

        # Step 2: Wait for the snapshot
        self._enter(CycleStage.WAITING)
        self.redis_client.await_snapshot_complete(ctx, self.poll_interval)

        # Step 3: Name the artifact
        self._enter(CycleStage.NAMING)
        artifact_name = generate_backup_name()
        self.result.artifact_name = artifact_name

        # Step 4: Upload
        self._enter(CycleStage.UPLOADING)
        self.storage.upload(self.rdb_path, artifact_name, ctx)
        self._log(f"Backup uploaded: {artifact_name} (storage: {self.storage.kind.value})")

        # Step 5: Retention
        if self.retention_count > 0:
            self._enter(CycleStage.RETAINING)
            self._apply_retention(ctx)

        self._enter(CycleStage.DONE)
        if self.result.status == 'running':
            self.result.status = 'success'
        self._log(f"Backup cycle finished with status: {self.result.status}")

    def _apply_retention(self, ctx: CycleContext):
        """Apply retention; any failure here degrades the cycle instead of failing it."""
        manager = RetentionManager(self.storage, self.retention_count)

        try:
            retention = manager.enforce(ctx)
        except (StorageError, CycleCancelled) as e:
            self.result.status = 'degraded'
            self.result.error = f"retention: {e}"
            self._log(f"Warning: failed to apply retention policy: {e}", level=logging.WARNING)
            return

        self.result.deleted = list(retention.deleted)
        self.result.retention_failures = retention.failure_count

        if retention.failure_count:
            self.result.status = 'degraded'
            self.result.error = f"retention: {retention.failure_count} deletion(s) failed"
            self._log(
                f"Warning: {retention.failure_count} old backup(s) could not be deleted",
                level=logging.WARNING
            )

    def _enter(self, stage: CycleStage):
        self.stage = stage
        logger.debug(f"Backup cycle stage: {stage.value}")

    def _fail(self, error: Exception):
        failed_stage = self.stage
        self.result.status = 'failed'
        self.result.failed_stage = failed_stage
        self.result.error = f"{failed_stage.value}: {error}"
        self.stage = CycleStage.FAILED
        self._log(f"Backup failed during {failed_stage.value}: {error}", level=logging.ERROR)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a timestamped message to the cycle log and the service log.
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
