import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'


def configure_logging(config):
    """Configure service logging"""

    log_level = getattr(logging, config.log_level, logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (only when a log directory is configured)
    if config.log_dir:
        os.makedirs(config.log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(config.log_dir, 'redis-backup.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # boto and google clients are noisy at DEBUG
    for noisy in ('botocore', 'boto3', 's3transfer', 'urllib3', 'google'):
        logging.getLogger(noisy).setLevel(max(log_level, logging.INFO))

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")
