"""
Storage backends for backup artifacts.

Supports:
- LocalStorage: Store in a local directory
- S3Storage: Upload to AWS S3 or any S3-compatible service (MinIO, ...)
- GCSStorage: Upload to Google Cloud Storage through its native client

All backends share one contract: upload(), list(), delete() and kind.
Artifacts live directly under the backend's base path or prefix and are
recognized by their .rdb extension.
"""

import logging
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError
from google.api_core.exceptions import GoogleAPIError, NotFound
from google.cloud import storage as gcs

from redis_backup.utils.cancellation import CycleContext, ensure_context

logger = logging.getLogger(__name__)

BACKUP_EXTENSION = '.rdb'

# Copy/upload chunk size
CHUNK_SIZE = 10 * 1024 * 1024

# Files above this size go through S3 multipart upload
MULTIPART_THRESHOLD = 100 * 1024 * 1024

# Request timeout for GCS calls when the cycle has no deadline
GCS_DEFAULT_TIMEOUT = 60


class StorageKind(str, Enum):
    LOCAL = 'local'
    S3 = 's3'
    GCP = 'gcp'


class StorageError(Exception):
    """Raised when storage operation fails."""

    operation = 'storage'

    def __init__(self, message: str, artifact_name: Optional[str] = None):
        super().__init__(message)
        self.artifact_name = artifact_name


class UploadError(StorageError):
    operation = 'upload'


class ListError(StorageError):
    operation = 'list'


class DeleteError(StorageError):
    operation = 'delete'


def _is_backup_name(name: str) -> bool:
    return name.endswith(BACKUP_EXTENSION)


def _join_prefix(prefix: str, artifact_name: str) -> str:
    """Object key for an artifact: 'prefix/name', or the bare name without prefix."""
    prefix = prefix.rstrip('/')
    if not prefix:
        return artifact_name
    return f"{prefix}/{artifact_name}"


def _scope_prefix(prefix: str) -> str:
    """Listing prefix, always ending with '/' unless empty."""
    prefix = prefix.rstrip('/')
    return f"{prefix}/" if prefix else ''


def _names_in_scope(keys, scope: str) -> List[str]:
    """
    Keep keys that sit directly under `scope` and carry the backup extension.

    Returns bare artifact names sorted oldest first.
    """
    names = []
    for key in keys:
        if not key.startswith(scope):
            continue
        name = key[len(scope):]
        if '/' in name or not _is_backup_name(name):
            continue
        names.append(name)
    return sorted(names)


class LocalStorage:
    """
    Handler for storing backups in a local directory.

    Stores artifacts as {base_path}/{artifact_name}. Uploads are written to a
    hidden temporary file in the same directory and renamed into place once
    the data is flushed, so a failed or cancelled upload never leaves a
    listable artifact behind.
    """

    kind = StorageKind.LOCAL

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups (created if missing)
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory {self.base_path}: {e}")

    def describe(self) -> str:
        return f"local ({self.base_path})"

    def _path_for(self, artifact_name: str, error_class) -> Path:
        if not artifact_name or artifact_name in ('.', '..') or os.sep in artifact_name or '/' in artifact_name:
            raise error_class(f"Invalid backup name: {artifact_name!r}", artifact_name)
        return self.base_path / artifact_name

    def upload(self, source_path: str, artifact_name: str, ctx: Optional[CycleContext] = None):
        """
        Copy a file into local storage.

        Args:
            source_path: Path to the snapshot file
            artifact_name: Name to store it under
            ctx: Cycle context checked between chunks

        Raises:
            UploadError: If the copy fails
            CycleCancelled: If the cycle is cancelled or expires mid-copy
        """
        ctx = ensure_context(ctx)
        dest_path = self._path_for(artifact_name, UploadError)

        if not os.path.isfile(source_path):
            raise UploadError(f"Source file not found: {source_path}", artifact_name)

        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{artifact_name}.", suffix='.partial', dir=str(self.base_path)
            )
            with os.fdopen(fd, 'wb') as dst, open(source_path, 'rb') as src:
                while True:
                    ctx.check()
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    dst.write(chunk)

                dst.flush()
                os.fsync(dst.fileno())

            os.replace(tmp_path, dest_path)
            tmp_path = None

        except PermissionError as e:
            raise UploadError(f"Permission denied writing {dest_path}: {e}", artifact_name)
        except OSError as e:
            raise UploadError(f"Failed to copy {source_path} to {dest_path}: {e}", artifact_name)
        finally:
            if tmp_path is not None:
                self._discard(tmp_path)

    def _discard(self, tmp_path: str):
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove partial upload {tmp_path}: {e}")

    def list(self, ctx: Optional[CycleContext] = None) -> List[str]:
        """
        List backup artifacts in the base directory, oldest first.

        Raises:
            ListError: If the directory cannot be read
        """
        ensure_context(ctx).check()

        try:
            with os.scandir(self.base_path) as entries:
                return sorted(
                    entry.name for entry in entries
                    if entry.is_file() and _is_backup_name(entry.name)
                )
        except OSError as e:
            raise ListError(f"Failed to read backup directory {self.base_path}: {e}")

    def delete(self, artifact_name: str, ctx: Optional[CycleContext] = None):
        """
        Delete one artifact.

        Raises:
            DeleteError: If the artifact does not exist or cannot be removed
        """
        ensure_context(ctx).check()
        full_path = self._path_for(artifact_name, DeleteError)

        try:
            full_path.unlink()
        except FileNotFoundError:
            raise DeleteError(f"Backup not found: {full_path}", artifact_name)
        except PermissionError as e:
            raise DeleteError(f"Permission denied deleting {full_path}: {e}", artifact_name)
        except OSError as e:
            raise DeleteError(f"Failed to delete local file {full_path}: {e}", artifact_name)


class S3Storage:
    """
    Handler for storing backups in an S3-compatible bucket.

    Objects are stored as {prefix}/{artifact_name}, or {artifact_name} when
    no prefix is configured.
    """

    kind = StorageKind.S3

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        endpoint: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        path_style: bool = False,
        prefix: str = '',
        page_size: Optional[int] = None,
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: Bucket region (default: us-east-1)
            endpoint: Custom endpoint URL for non-AWS providers
            access_key: Static access key ID (optional)
            secret_key: Static secret access key (optional)
            path_style: Use path-style addressing instead of virtual hosts
            prefix: Key prefix for stored backups
            page_size: Listing page size (default: service maximum)
        """
        if not bucket_name:
            raise StorageError("S3 bucket name is required")

        self.bucket_name = bucket_name
        self.region = region
        self.endpoint = endpoint
        self.prefix = prefix or ''
        self.page_size = page_size

        client_kwargs = {'region_name': region}
        if endpoint:
            client_kwargs['endpoint_url'] = endpoint
        # Without static keys boto3 falls back to its default credential chain
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key
        if path_style:
            client_kwargs['config'] = BotoConfig(s3={'addressing_style': 'path'})

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def describe(self) -> str:
        location = f"s3://{self.bucket_name}/{_scope_prefix(self.prefix)}"
        if self.endpoint:
            location += f" via {self.endpoint}"
        return f"s3 ({location})"

    def key_for(self, artifact_name: str) -> str:
        return _join_prefix(self.prefix, artifact_name)

    def upload(self, source_path: str, artifact_name: str, ctx: Optional[CycleContext] = None):
        """
        Upload a file to S3.

        Args:
            source_path: Path to the snapshot file
            artifact_name: Name to store it under
            ctx: Cycle context checked between parts

        Raises:
            UploadError: If upload fails
            CycleCancelled: If the cycle is cancelled or expires mid-upload
        """
        ctx = ensure_context(ctx)

        if not os.path.isfile(source_path):
            raise UploadError(f"Source file not found: {source_path}", artifact_name)

        s3_key = self.key_for(artifact_name)

        try:
            file_size = os.path.getsize(source_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(source_path, s3_key, ctx)
            else:
                ctx.check()
                self._simple_upload(source_path, s3_key)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadError(f"S3 upload of {s3_key} failed ({error_code}): {e}", artifact_name)
        except BotoCoreError as e:
            raise UploadError(f"S3 upload of {s3_key} failed: {e}", artifact_name)
        except OSError as e:
            raise UploadError(f"Failed to read {source_path}: {e}", artifact_name)

    def _simple_upload(self, source_path: str, s3_key: str):
        with open(source_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, source_path: str, s3_key: str, ctx: CycleContext):
        """
        Upload a large file in parts, checking for cancellation between parts.

        The upload is aborted on any error so no partial object is committed.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(source_path, 'rb') as f:
                part_number = 1

                while True:
                    ctx.check()

                    data = f.read(CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
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
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id} for {s3_key}: {abort_error}")
            raise

    def list(self, ctx: Optional[CycleContext] = None) -> List[str]:
        """
        List backup artifacts under the prefix, oldest first.

        Follows continuation tokens until the listing is exhausted.

        Raises:
            ListError: If listing fails
        """
        ctx = ensure_context(ctx)
        scope = _scope_prefix(self.prefix)

        paginate_kwargs = {'Bucket': self.bucket_name, 'Prefix': scope}
        if self.page_size:
            paginate_kwargs['PaginationConfig'] = {'PageSize': self.page_size}

        try:
            keys = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(**paginate_kwargs):
                ctx.check()
                for obj in page.get('Contents', []):
                    keys.append(obj['Key'])

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise ListError(f"S3 list of s3://{self.bucket_name}/{scope} failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise ListError(f"S3 list of s3://{self.bucket_name}/{scope} failed: {e}")

        return _names_in_scope(keys, scope)

    def delete(self, artifact_name: str, ctx: Optional[CycleContext] = None):
        """
        Delete one artifact.

        S3 deletes are idempotent, so existence is checked first to report
        missing artifacts.

        Raises:
            DeleteError: If the object does not exist or deletion fails
        """
        ensure_context(ctx).check()
        s3_key = self.key_for(artifact_name)

        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=s3_key)
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=s3_key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                raise DeleteError(f"Backup not found: s3://{self.bucket_name}/{s3_key}", artifact_name)
            raise DeleteError(f"S3 delete of {s3_key} failed ({error_code}): {e}", artifact_name)
        except BotoCoreError as e:
            raise DeleteError(f"S3 delete of {s3_key} failed: {e}", artifact_name)


class GCSStorage:
    """
    Handler for storing backups in Google Cloud Storage.

    Objects are stored as {prefix}/{artifact_name}. Authenticates with a
    service-account JSON file when given, otherwise with application default
    credentials.
    """

    kind = StorageKind.GCP

    def __init__(
        self,
        bucket_name: str,
        prefix: str = '',
        credentials_file: Optional[str] = None,
        client=None,
    ):
        """
        Initialize GCS storage handler.

        Args:
            bucket_name: GCS bucket name
            prefix: Object name prefix for stored backups
            credentials_file: Service-account JSON file (optional)
            client: Pre-built google.cloud.storage.Client (optional)
        """
        if not bucket_name:
            raise StorageError("GCS bucket name is required")

        self.bucket_name = bucket_name
        self.prefix = prefix or ''

        if client is None:
            try:
                if credentials_file:
                    client = gcs.Client.from_service_account_json(credentials_file)
                else:
                    client = gcs.Client()
            except Exception as e:
                raise StorageError(f"Failed to create GCS client: {e}")

        self.client = client
        self.bucket = client.bucket(bucket_name)

    def describe(self) -> str:
        return f"gcp (gs://{self.bucket_name}/{_scope_prefix(self.prefix)})"

    def object_name_for(self, artifact_name: str) -> str:
        return _join_prefix(self.prefix, artifact_name)

    @staticmethod
    def _timeout(ctx: CycleContext) -> float:
        remaining = ctx.remaining()
        return GCS_DEFAULT_TIMEOUT if remaining is None else max(remaining, 1.0)

    def upload(self, source_path: str, artifact_name: str, ctx: Optional[CycleContext] = None):
        """
        Upload a file to GCS.

        GCS creates the object only once the upload completes.

        Raises:
            UploadError: If upload fails
            CycleCancelled: If the cycle is already cancelled or expired
        """
        ctx = ensure_context(ctx)

        if not os.path.isfile(source_path):
            raise UploadError(f"Source file not found: {source_path}", artifact_name)

        object_name = self.object_name_for(artifact_name)
        ctx.check()

        try:
            blob = self.bucket.blob(object_name)
            blob.upload_from_filename(source_path, timeout=self._timeout(ctx))
        except GoogleAPIError as e:
            raise UploadError(f"GCS upload of {object_name} failed: {e}", artifact_name)
        except OSError as e:
            raise UploadError(f"Failed to read {source_path}: {e}", artifact_name)

    def list(self, ctx: Optional[CycleContext] = None) -> List[str]:
        """
        List backup artifacts under the prefix, oldest first.

        Raises:
            ListError: If listing fails
        """
        ctx = ensure_context(ctx)
        scope = _scope_prefix(self.prefix)

        try:
            keys = []
            for blob in self.client.list_blobs(self.bucket_name, prefix=scope, timeout=self._timeout(ctx)):
                keys.append(blob.name)
            ctx.check()
        except GoogleAPIError as e:
            raise ListError(f"GCS list of gs://{self.bucket_name}/{scope} failed: {e}")

        return _names_in_scope(keys, scope)

    def delete(self, artifact_name: str, ctx: Optional[CycleContext] = None):
        """
        Delete one artifact.

        Raises:
            DeleteError: If the object does not exist or deletion fails
        """
        ctx = ensure_context(ctx)
        ctx.check()
        object_name = self.object_name_for(artifact_name)

        try:
            self.bucket.blob(object_name).delete(timeout=self._timeout(ctx))
        except NotFound:
            raise DeleteError(f"Backup not found: gs://{self.bucket_name}/{object_name}", artifact_name)
        except GoogleAPIError as e:
            raise DeleteError(f"GCS delete of {object_name} failed: {e}", artifact_name)


def create_storage(config):
    """
    Factory function to create the configured storage backend.

    Args:
        config: Validated Config instance

    Returns:
        LocalStorage, S3Storage or GCSStorage instance

    Raises:
        ValueError: If storage_type is invalid
        StorageError: If the backend cannot be initialized
    """
    if config.storage_type == StorageKind.LOCAL.value:
        return LocalStorage(config.local_backup_path)
    elif config.storage_type == StorageKind.S3.value:
        return S3Storage(
            bucket_name=config.s3_bucket,
            region=config.s3_region,
            endpoint=config.s3_endpoint,
            access_key=config.s3_access_key,
            secret_key=config.s3_secret_key,
            path_style=config.s3_path_style,
            prefix=config.s3_backup_prefix,
        )
    elif config.storage_type == StorageKind.GCP.value:
        return GCSStorage(
            bucket_name=config.gcp_bucket,
            prefix=config.gcp_backup_prefix,
            credentials_file=config.gcp_credentials_file,
        )
    else:
        raise ValueError(f"Invalid storage type: {config.storage_type}")
