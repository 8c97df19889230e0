"""Setup commands: configuration file, database and restic repository."""

from pathlib import Path

import click

from config import create_default_config
from cli.utils import (
    load_app_config,
    setup_logging,
    handle_error,
    get_db_service,
    get_builder,
    confirm_action
)
from restic_backup import ResticNotFoundError, ensure_repository


def register_commands(cli):
    """Register setup commands with main CLI."""

    @cli.command('init')
    @click.option('--base-dir', '-d', help='Directory holding data, binaries and logs (default: ~/.archive_backup)')
    @click.option('--skip-repository', is_flag=True, help='Do not create the restic repository')
    @click.option('--force', is_flag=True, help='Overwrite an existing configuration file')
    @click.pass_context
    def init(ctx, base_dir, skip_repository, force):
        """Create configuration, database and restic repository.

        Safe to run again: an existing configuration is kept unless --force
        is given, and an existing repository is detected and left alone.

        Examples:
            python -m main init
            python -m main --config my_config.json init --base-dir D:\\Backups
        """
        config_path = ctx.obj['config_path']
        verbose = ctx.obj['verbose']

        try:
            if Path(config_path).exists() and not force:
                click.echo(f"Configuration file already exists: {config_path}")
            elif Path(config_path).exists() and not confirm_action("Overwrite existing configuration?"):
                return
            else:
                create_default_config(config_path, base_dir)
                click.echo(f"✓ Created configuration file: {config_path}")

            config = load_app_config(config_path)
            setup_logging(config, verbose)

            get_db_service(config)
            click.echo(f"✓ Database ready: {config.paths.database_path}")

            if skip_repository:
                return

            try:
                ensure_repository(get_builder(config))
                click.echo(f"✓ restic repository ready: {config.paths.repository_dir}")
            except ResticNotFoundError as e:
                click.echo(f"⚠ {e.message}")
                click.echo(f"  Place the restic executable in {config.paths.bin_dir} and run init again.")

        except Exception as e:
            handle_error(e, verbose)
