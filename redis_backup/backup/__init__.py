"""
Backup module for the Redis backup service.

This module handles the core backup functionality including:
- Snapshot triggering on Redis (BGSAVE)
- Storage (local, S3-compatible and Google Cloud Storage)
- Cycle orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, CycleResult, CycleStage, generate_backup_name
from .redis_client import RedisClient, StoreConnectionError, TriggerError, WaitError
from .storage import (
    LocalStorage,
    S3Storage,
    GCSStorage,
    StorageKind,
    StorageError,
    UploadError,
    ListError,
    DeleteError,
    create_storage,
)
from .retention import RetentionManager, select_for_deletion

__all__ = [
    'BackupExecutor',
    'CycleResult',
    'CycleStage',
    'generate_backup_name',
    'RedisClient',
    'StoreConnectionError',
    'TriggerError',
    'WaitError',
    'LocalStorage',
    'S3Storage',
    'GCSStorage',
    'StorageKind',
    'StorageError',
    'UploadError',
    'ListError',
    'DeleteError',
    'create_storage',
    'RetentionManager',
    'select_for_deletion',
]
