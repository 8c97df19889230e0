"""Configuration management for Archive Backup."""

import hashlib
import json
import logging
import os
import sys
import threading
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)

DATABASE_PATH_PLACEHOLDER = '{{database_path}}'


def generate_password() -> str:
    """Generate a repository password: SHA-256 hex digest of a random UUID."""
    return hashlib.sha256(str(uuid.uuid4()).encode('utf-8')).hexdigest()


class PathConfig(BaseModel):
    """File and directory paths configuration."""
    bin_dir: str
    data_dir: str
    config_dir: str

    @field_validator('*', mode='before')
    @classmethod
    def expand_paths(cls, v):
        """Expand environment variables and user home directory."""
        return os.path.expanduser(os.path.expandvars(v))

    @property
    def repository_dir(self) -> Path:
        return Path(self.data_dir) / 'restic' / 'repo'

    @property
    def cache_dir(self) -> Path:
        return Path(self.data_dir) / 'restic' / 'cache'

    @property
    def database_path(self) -> Path:
        return Path(self.data_dir) / 'archive.sqlite'


class ResticConfig(BaseModel):
    """Backup tool configuration.

    ``use_fs_snapshot`` (VSS) is only supported by restic on Windows.
    """
    password: str = ''
    use_fs_snapshot: bool = sys.platform == 'win32'
    vss_timeout: str = '30s'


class DatabaseConfig(BaseModel):
    """Database configuration."""
    type: str = 'sqlite'
    connection_string: str = f'sqlite:///{DATABASE_PATH_PLACEHOLDER}'


class PoolConfig(BaseModel):
    """Sizing of the output transcript buffer pool."""
    max_retain: int = 8
    min_retain: int = 2
    cleanup_interval_seconds: float = 300.0
    transcript_lines: int = 200


class SchedulerConfig(BaseModel):
    """Periodic task configuration. An interval of 0 disables the task."""
    cache_refresh_interval_seconds: int = 600
    auto_backup_interval_seconds: int = 0
    run_immediately: bool = False


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: str = "archive_backup.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5


class Config(BaseModel):
    """Main configuration model."""
    paths: PathConfig
    restic: ResticConfig = ResticConfig()
    database: DatabaseConfig = DatabaseConfig()
    pool: PoolConfig = PoolConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    logging: LoggingConfig = LoggingConfig()


class ResticSettings:
    """Thread-safe snapshot of the settings every restic invocation needs.

    Command construction reads the snapshot under the lock; a reloaded
    configuration is swapped in with ``update()``.
    """

    def __init__(self, config: Config):
        self._lock = threading.Lock()
        self._config = config

    def update(self, config: Config) -> None:
        with self._lock:
            self._config = config

    def snapshot(self) -> Tuple[PathConfig, ResticConfig]:
        """Return the (paths, restic) pair currently in effect."""
        with self._lock:
            return self._config.paths, self._config.restic


def create_directories_if_needed(config: Config) -> None:
    """Create missing directories without prompting."""
    paths_to_check = [
        Path(config.paths.bin_dir),
        Path(config.paths.config_dir),
        config.paths.repository_dir.parent,
        config.paths.cache_dir,
        config.paths.database_path.parent,
    ]

    for path in paths_to_check:
        if not path.exists():
            try:
                path.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created directory: {path}")
            except OSError as e:
                logger.warning(f"Could not create directory {path}: {e}")


def _write_config(config_path: Path, data: dict) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        json.dump(data, f, indent=2)


def load_config(config_path: str = "config.json") -> Config:
    """Load configuration from a JSON file.

    A missing repository password is generated once and written back to the
    file so the repository stays readable across runs.
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, 'r') as f:
        config_data = json.load(f)

    config = Config(**config_data)

    if not config.restic.password:
        config.restic.password = generate_password()
        config_data.setdefault('restic', {})['password'] = config.restic.password
        _write_config(config_file, config_data)
        logger.info(f"Generated repository password and saved it to {config_file}")

    if DATABASE_PATH_PLACEHOLDER in config.database.connection_string:
        config.database.connection_string = config.database.connection_string.replace(
            DATABASE_PATH_PLACEHOLDER,
            config.paths.database_path.as_posix()
        )

    create_directories_if_needed(config)

    return config


def create_default_config(config_path: str = "config.json", base_dir: Optional[str] = None) -> None:
    """Create a default configuration file rooted at ``base_dir``."""
    base = Path(base_dir).expanduser() if base_dir else Path("~/.archive_backup").expanduser()
    default_config = {
        "paths": {
            "bin_dir": str(base / "bin"),
            "data_dir": str(base / "data"),
            "config_dir": str(base / "config"),
        },
        "restic": {
            "password": generate_password(),
            "use_fs_snapshot": sys.platform == 'win32',
            "vss_timeout": "30s"
        },
        "database": {
            "type": "sqlite",
            "connection_string": f"sqlite:///{DATABASE_PATH_PLACEHOLDER}"
        },
        "pool": {
            "max_retain": 8,
            "min_retain": 2,
            "cleanup_interval_seconds": 300,
            "transcript_lines": 200
        },
        "scheduler": {
            "cache_refresh_interval_seconds": 600,
            "auto_backup_interval_seconds": 0,
            "run_immediately": False
        },
        "logging": {
            "level": "INFO",
            "file": str(base / "archive_backup.log"),
            "max_bytes": 10485760,
            "backup_count": 5
        }
    }

    _write_config(Path(config_path), default_config)
    logger.info(f"Created default configuration file: {config_path}")


def setup_logging(config: Config, verbose: bool = False):
    """Setup logging based on configuration.

    Logs go to a rotating file; the console only gets them with ``verbose``.
    """
    log_level = logging.DEBUG if verbose else getattr(logging, config.logging.level.upper(), logging.INFO)

    handlers = []
    file_error = None
    try:
        log_file = Path(config.logging.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            log_file,
            maxBytes=config.logging.max_bytes,
            backupCount=config.logging.backup_count,
            encoding='utf-8'
        ))
    except OSError as e:
        file_error = e

    if verbose or not handlers:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    if file_error is not None:
        logger.warning(f"Could not open log file {config.logging.file}: {file_error}")
