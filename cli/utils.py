"""Shared utilities for CLI commands."""

import sys
from typing import Optional

import click

from archive_cache import ArchiveCache
from archive_manager import ArchiveManager
from config import Config, ResticSettings, load_config, setup_logging
from models import DatabaseManager, DatabaseService
from restic_backup import ResticClient, ResticCommandBuilder, create_transcript_pool, ensure_repository


def load_app_config(config_path: str) -> Config:
    """Load application configuration.

    Args:
        config_path: Path to configuration file

    Returns:
        Validated Config

    Raises:
        FileNotFoundError: If the configuration file does not exist
    """
    return load_config(config_path)


def get_db_service(config: Config) -> DatabaseService:
    """Get database service instance with tables created."""
    db_manager = DatabaseManager(config.database.connection_string)
    db_manager.create_tables()  # no-op if already created
    return DatabaseService(db_manager)


def get_builder(config: Config) -> ResticCommandBuilder:
    return ResticCommandBuilder(ResticSettings(config))


def get_manager(config: Config, db_service: Optional[DatabaseService] = None) -> ArchiveManager:
    """Wire database, archive cache and restic client into an ArchiveManager.

    The cache is filled from the database before the manager is returned.
    """
    db_service = db_service or get_db_service(config)
    cache = ArchiveCache(db_service)
    cache.refresh()

    transcript_pool = create_transcript_pool(
        max_retain=config.pool.max_retain,
        min_retain=config.pool.min_retain,
        cleanup_interval=config.pool.cleanup_interval_seconds,
        lines=config.pool.transcript_lines,
    )
    client = ResticClient(get_builder(config), transcript_pool=transcript_pool)
    return ArchiveManager(db_service, cache, client)


def require_repository(manager: ArchiveManager) -> None:
    """Make sure the restic repository exists before running restic commands."""
    ensure_repository(manager.client.builder)


def open_manager(ctx: click.Context, needs_repository: bool = False) -> ArchiveManager:
    """Load config from the click context, set up logging and build the manager."""
    config = load_app_config(ctx.obj['config_path'])
    setup_logging(config, ctx.obj['verbose'])
    manager = get_manager(config)
    if needs_repository:
        require_repository(manager)
    return manager


def handle_error(error: Exception, verbose: bool = False):
    """Handle and display errors consistently.

    Args:
        error: Exception to handle
        verbose: Whether to show full traceback
    """
    # ResticError carries the user-facing text separately from the raw output.
    message = getattr(error, 'message', None) or str(error)
    click.echo(f"Error: {message}", err=True)
    if verbose:
        import traceback
        click.echo(traceback.format_exc(), err=True)
    sys.exit(1)


def confirm_action(message: str, default: bool = False) -> bool:
    """Prompt user for confirmation."""
    return click.confirm(message, default=default)


def format_size(bytes_size: int) -> str:
    """Format bytes as human-readable size.

    Args:
        bytes_size: Size in bytes

    Returns:
        Formatted string (e.g., "1.50 GB")
    """
    bytes_size = float(bytes_size or 0)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_size < 1024.0:
            return f"{bytes_size:.2f} {unit}"
        bytes_size /= 1024.0
    return f"{bytes_size:.2f} PB"


def format_time(seconds: float) -> str:
    """Format seconds as human-readable duration (e.g., "2h 30m 45s")."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = int(seconds % 60)
        return f"{hours}h {minutes}m {secs}s"


def format_timestamp(value) -> str:
    return value.strftime('%Y-%m-%d %H:%M:%S') if value else '-'
