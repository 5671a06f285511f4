"""
Retention policy enforcement for backups.

Keeps the newest N artifacts on a storage backend and deletes the rest,
oldest first. Artifact names embed a sortable UTC timestamp, so the
backend listing order is also the age order.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from redis_backup.utils.cancellation import CycleContext, ensure_context
from .storage import StorageError

logger = logging.getLogger(__name__)


def select_for_deletion(names: List[str], retention_count: int) -> List[str]:
    """
    Pick the artifacts that exceed the retention count.

    Args:
        names: Artifact names (any order)
        retention_count: Number of artifacts to keep (0 = unlimited)

    Returns:
        Names to delete, oldest first
    """
    if retention_count <= 0:
        return []

    ordered = sorted(names)
    excess = len(ordered) - retention_count
    if excess <= 0:
        return []
    return ordered[:excess]


@dataclass
class RetentionResult:
    listed: int = 0
    deleted: List[str] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failures)


class RetentionManager:
    """
    Enforces a count-based retention policy on one storage backend.
    """

    def __init__(self, storage, retention_count: int):
        """
        Initialize retention manager.

        Args:
            storage: Storage backend (LocalStorage, S3Storage or GCSStorage)
            retention_count: Number of artifacts to keep (0 = unlimited)
        """
        self.storage = storage
        self.retention_count = retention_count

    def enforce(self, ctx: Optional[CycleContext] = None) -> RetentionResult:
        """
        Delete the oldest artifacts beyond the retention count.

        Individual delete failures are logged and collected; the remaining
        deletions still run.

        Returns:
            RetentionResult with counts and failures

        Raises:
            ListError: If the backend listing fails
            CycleCancelled: If the cycle is cancelled mid-way
        """
        ctx = ensure_context(ctx)
        result = RetentionResult()

        if self.retention_count <= 0:
            logger.info("Retention not configured, keeping all backups")
            return result

        logger.info(f"Applying retention policy (keeping {self.retention_count} backups)")

        names = self.storage.list(ctx)
        result.listed = len(names)

        to_delete = select_for_deletion(names, self.retention_count)
        if not to_delete:
            logger.info(f"Current backup count ({len(names)}) within retention limit")
            return result

        for name in to_delete:
            ctx.check()
            try:
                self.storage.delete(name, ctx)
                result.deleted.append(name)
                logger.info(f"Deleted old backup: {name}")
            except StorageError as e:
                result.failures.append((name, str(e)))
                logger.warning(f"Failed to delete {name}: {e}")

        logger.info(
            f"Retention policy applied: deleted {len(result.deleted)} of {len(to_delete)} old backup(s), "
            f"{result.failure_count} failure(s)"
        )
        return result
