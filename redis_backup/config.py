import os
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv


STORAGE_TYPES = ('local', 's3', 'gcp')


class ConfigValidationError(Exception):
    """Raised when the environment does not describe a usable configuration."""
    pass


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == '':
        return default
    return value.lower() == 'true'


def _parse_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigValidationError(f"{name} must be an integer, got {value!r}")


def _parse_float(environ: Mapping[str, str], name: str, default: float) -> float:
    value = environ.get(name)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigValidationError(f"{name} must be a number, got {value!r}")


def parse_gcs_uri(uri: str) -> Tuple[str, str]:
    """
    Split a GCS URI into bucket and prefix.

    'gs://bucket-name/path/to/prefix' -> ('bucket-name', 'path/to/prefix')
    """
    if uri.startswith('gs://'):
        uri = uri[len('gs://'):]

    bucket, _, prefix = uri.partition('/')
    return bucket, prefix


class Config:
    """Service configuration, read once from the environment."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ

        # Redis
        self.redis_host = env.get('REDIS_HOST') or 'localhost'
        self.redis_port = _parse_int(env, 'REDIS_PORT', 6379)
        self.redis_password = env.get('REDIS_PASSWORD') or None
        self.redis_db = _parse_int(env, 'REDIS_DB', 0)
        self.redis_data_path = env.get('REDIS_DATA_PATH') or '/data'

        # Backup schedule
        self.backup_cron = env.get('BACKUP_CRON', '').strip()
        self.backup_on_start = _parse_bool(env.get('BACKUP_ON_START'))
        self.backup_timeout = _parse_float(env, 'BACKUP_TIMEOUT', 30 * 60)
        self.poll_interval = _parse_float(env, 'POLL_INTERVAL', 1.0)
        self.retention_count = _parse_int(env, 'RETENTION_COUNT', 0)

        # Storage
        self.storage_type = (env.get('STORAGE_TYPE') or 'local').lower()
        self.local_backup_path = env.get('LOCAL_BACKUP_PATH') or '/backups'

        # S3-compatible storage (AWS S3, MinIO, ...)
        self.s3_endpoint = env.get('S3_ENDPOINT') or None
        self.s3_region = env.get('S3_REGION') or 'us-east-1'
        self.s3_bucket = env.get('S3_BUCKET', '')
        self.s3_access_key = env.get('S3_ACCESS_KEY') or None
        self.s3_secret_key = env.get('S3_SECRET_KEY') or None
        self.s3_path_style = _parse_bool(env.get('S3_PATH_STYLE'))
        self.s3_backup_prefix = env.get('S3_BACKUP_PREFIX', '')

        # Google Cloud Storage (native client)
        self.gcs_bucket = env.get('GCS_BUCKET', '')
        self.gcp_credentials_file = env.get('GCP_CREDENTIALS_FILE') or None
        self.gcp_bucket, self.gcp_backup_prefix = parse_gcs_uri(self.gcs_bucket) if self.gcs_bucket else ('', '')

        # Logging
        self.log_level = (env.get('LOG_LEVEL') or 'INFO').upper()
        self.log_dir = env.get('LOG_DIR') or None

    @property
    def rdb_path(self) -> str:
        """Path of the snapshot file written by Redis."""
        return os.path.join(self.redis_data_path, 'dump.rdb')

    def validate(self):
        """
        Check that the selected storage type has what it needs.

        Raises:
            ConfigValidationError: If the configuration is unusable
        """
        if not self.backup_cron:
            raise ConfigValidationError("BACKUP_CRON is required")

        from redis_backup.scheduler import build_trigger
        build_trigger(self.backup_cron)

        if self.retention_count < 0:
            raise ConfigValidationError("RETENTION_COUNT must be 0 (unlimited) or a positive integer")

        if self.backup_timeout <= 0:
            raise ConfigValidationError("BACKUP_TIMEOUT must be positive")

        if self.poll_interval <= 0:
            raise ConfigValidationError("POLL_INTERVAL must be positive")

        if self.storage_type == 's3':
            if not self.s3_bucket:
                raise ConfigValidationError("S3_BUCKET is required when STORAGE_TYPE is 's3'")
        elif self.storage_type == 'gcp':
            if not self.gcp_bucket:
                raise ConfigValidationError(
                    "GCS_BUCKET is required when STORAGE_TYPE is 'gcp' (format: gs://bucket-name/prefix)"
                )
        elif self.storage_type == 'local':
            pass
        else:
            raise ConfigValidationError("STORAGE_TYPE must be 'local', 's3', or 'gcp'")

    def summary(self) -> dict:
        """Non-secret settings for the startup log."""
        return {
            'redis': f"{self.redis_host}:{self.redis_port}/{self.redis_db}",
            'backup_cron': self.backup_cron,
            'storage_type': self.storage_type,
            'retention_count': self.retention_count,
            'rdb_path': self.rdb_path,
        }


def load_config(environ: Optional[Mapping[str, str]] = None, env_file: Optional[str] = '.env') -> Config:
    """
    Load and validate configuration.

    Values from `env_file` are merged into os.environ first (existing
    variables win). Pass an explicit `environ` to bypass os.environ.

    Raises:
        ConfigValidationError: If the configuration is unusable
    """
    if environ is None and env_file and os.path.exists(env_file):
        load_dotenv(env_file, override=False)

    config = Config(environ)
    config.validate()
    return config
