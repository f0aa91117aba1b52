"""
Configuration Management

Handles engine configuration with environment variable support.
Provides centralized access to connection, batching and logging settings.
"""

import os
import logging
from pathlib import Path
from typing import Optional, Any, Dict, List

from dotenv import load_dotenv
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

logger = logging.getLogger(__name__)

TRUE_VALUES = ('true', '1', 'yes')


class Config:
    """
    Configuration management with environment variable handling

    Loads configuration from environment variables and .env files.
    Provides type-safe access to configuration values with defaults.
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration

        Args:
            env_file: Path to .env file (optional, defaults to .env in current directory)
        """
        if env_file:
            env_path = Path(env_file)
            if env_path.exists():
                load_dotenv(env_path)
                logger.info(f"Loaded configuration from {env_file}")
            else:
                logger.warning(f"Configuration file {env_file} not found")
        else:
            # Try to load from default locations
            default_paths = [Path('.env'), Path('.env.local')]
            for path in default_paths:
                if path.exists():
                    load_dotenv(path)
                    logger.info(f"Loaded configuration from {path}")
                    break

    # Database Configuration
    @property
    def source_database_url(self) -> Optional[str]:
        """
        Get legacy (source) database URL

        Returns:
            SOURCE_DATABASE_URL, or a URL built from SOURCE_DB_* variables
        """
        return self._database_url('SOURCE')

    @property
    def target_database_url(self) -> Optional[str]:
        """
        Get target database URL

        Returns:
            TARGET_DATABASE_URL, or a URL built from TARGET_DB_* variables
        """
        return self._database_url('TARGET')

    @property
    def database_pool_size(self) -> int:
        """
        Get database connection pool size

        Returns:
            Number of connections in pool
        """
        return int(os.getenv('DATABASE_POOL_SIZE', '10'))

    @property
    def database_max_overflow(self) -> int:
        """
        Get database connection pool max overflow

        Returns:
            Maximum overflow connections
        """
        return int(os.getenv('DATABASE_MAX_OVERFLOW', '10'))

    @property
    def statement_timeout(self) -> int:
        """
        Get per-statement timeout in seconds

        Returns:
            Statement timeout in seconds
        """
        return int(os.getenv('DB_STATEMENT_TIMEOUT', '300'))

    @property
    def connect_timeout(self) -> int:
        """
        Get connection establishment timeout in seconds

        Returns:
            Connection timeout in seconds
        """
        return int(os.getenv('DB_CONNECTION_TIMEOUT', '30'))

    # Migration Configuration
    @property
    def batch_size(self) -> int:
        """
        Get default batch size

        Returns:
            Number of source rows per batch
        """
        return int(os.getenv('MIGRATION_BATCH_SIZE', '1000'))

    @property
    def max_retries(self) -> int:
        """
        Get attempts per query for transient errors

        Returns:
            Maximum attempts
        """
        return int(os.getenv('MIGRATION_MAX_RETRIES', '3'))

    @property
    def retry_delay(self) -> float:
        """
        Get delay before the first retry

        Returns:
            Delay in seconds, doubled on every further attempt
        """
        return float(os.getenv('MIGRATION_RETRY_DELAY', '1.0'))

    @property
    def max_memory_mb(self) -> int:
        """
        Get maximum resident memory in MB

        Returns:
            Memory limit checked after every batch
        """
        return int(os.getenv('MIGRATION_MAX_MEMORY_MB', '1792'))

    @property
    def checkpoint_stale_after(self) -> int:
        """
        Get the age after which an in_progress checkpoint may be taken over

        Returns:
            Seconds since the checkpoint's last update
        """
        return int(os.getenv('CHECKPOINT_STALE_AFTER', '900'))

    # Logging and output
    @property
    def log_level(self) -> str:
        """
        Get logging level

        Returns:
            Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        return os.getenv('LOG_LEVEL', 'INFO').upper()

    @property
    def log_directory(self) -> str:
        """
        Get log directory path

        Returns:
            Path to log directory
        """
        return os.getenv('LOG_DIR', 'logs')

    @property
    def log_json(self) -> bool:
        """
        Check if logs should be written as JSON lines

        Returns:
            True if JSON formatting is enabled
        """
        return os.getenv('LOG_JSON', 'false').lower() in TRUE_VALUES

    @property
    def report_directory(self) -> str:
        """
        Get output directory for run reports

        Returns:
            Path to report directory
        """
        return os.getenv('REPORT_DIR', 'reports')

    # Helper Methods
    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by key

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value
        """
        return os.getenv(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """
        Export configuration as dictionary, passwords masked

        Returns:
            Dictionary containing all configuration values
        """
        return {
            # Database
            'source_database_url': _mask(self.source_database_url),
            'target_database_url': _mask(self.target_database_url),
            'database_pool_size': self.database_pool_size,
            'database_max_overflow': self.database_max_overflow,
            'statement_timeout': self.statement_timeout,
            'connect_timeout': self.connect_timeout,

            # Migration
            'batch_size': self.batch_size,
            'max_retries': self.max_retries,
            'retry_delay': self.retry_delay,
            'max_memory_mb': self.max_memory_mb,
            'checkpoint_stale_after': self.checkpoint_stale_after,

            # Logging
            'log_level': self.log_level,
            'log_directory': self.log_directory,
            'log_json': self.log_json,
            'report_directory': self.report_directory,
        }

    def validate(self) -> List[str]:
        """
        Validate configuration

        Returns:
            List of problems, empty when the configuration is usable
        """
        problems = []

        try:
            if not self.source_database_url:
                problems.append("SOURCE_DATABASE_URL or SOURCE_DB_HOST/SOURCE_DB_NAME is required")
            if not self.target_database_url:
                problems.append("TARGET_DATABASE_URL or TARGET_DB_HOST/TARGET_DB_NAME is required")
        except ValueError as e:
            problems.append(str(e))

        valid_log_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if self.log_level not in valid_log_levels:
            problems.append(f"Invalid LOG_LEVEL: {self.log_level}. Must be one of {sorted(valid_log_levels)}")

        numeric = {
            'MIGRATION_BATCH_SIZE': lambda: self.batch_size,
            'MIGRATION_MAX_RETRIES': lambda: self.max_retries,
            'MIGRATION_RETRY_DELAY': lambda: self.retry_delay,
            'MIGRATION_MAX_MEMORY_MB': lambda: self.max_memory_mb,
            'DATABASE_POOL_SIZE': lambda: self.database_pool_size,
            'DB_STATEMENT_TIMEOUT': lambda: self.statement_timeout,
            'DB_CONNECTION_TIMEOUT': lambda: self.connect_timeout,
            'CHECKPOINT_STALE_AFTER': lambda: self.checkpoint_stale_after,
        }
        for key, read in numeric.items():
            try:
                value = read()
            except ValueError:
                problems.append(f"{key} must be a number")
                continue
            if value <= 0:
                problems.append(f"{key} must be positive")

        try:
            if self.database_max_overflow < 0:
                problems.append("DATABASE_MAX_OVERFLOW cannot be negative")
        except ValueError:
            problems.append("DATABASE_MAX_OVERFLOW must be a number")

        if not problems:
            logger.info("Configuration validation passed")
        return problems

    def _database_url(self, prefix: str) -> Optional[str]:
        url = os.getenv(f'{prefix}_DATABASE_URL')
        if url:
            return url

        host = os.getenv(f'{prefix}_DB_HOST')
        database = os.getenv(f'{prefix}_DB_NAME')
        if not host or not database:
            return None

        port = os.getenv(f'{prefix}_DB_PORT', '5432')
        if not port.isdigit():
            raise ValueError(f"{prefix}_DB_PORT must be a number, got {port!r}")

        return URL.create(
            "postgresql+psycopg2",
            username=os.getenv(f'{prefix}_DB_USER'),
            password=os.getenv(f'{prefix}_DB_PASSWORD'),
            host=host,
            port=int(port),
            database=database,
        ).render_as_string(hide_password=False)


def _mask(url: Optional[str]) -> Optional[str]:
    if not url:
        return url
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return "<unparseable url>"
