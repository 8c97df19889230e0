"""Main CLI entry point - Root command group with global options."""

import click

from version import __version__


@click.group()
@click.option('--config', '-c', default='config.json', help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Show debug logging and tracebacks')
@click.version_option(version=__version__, prog_name='Archive Backup')
@click.pass_context
def cli(ctx, config, verbose):
    """Archive Backup - versioned backups of directories with restic.

    Register the directories you care about as archives, then back them up
    and restore any earlier snapshot:

    \b
        python -m main init
        python -m main archive add "World 1" "C:\\Saves\\World 1"
        python -m main backup "World 1" --comment "before the update"
        python -m main history "World 1"
        python -m main restore "World 1" 3
    """
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose


def register_all_commands():
    """Register all command modules with the main CLI."""
    from cli import (
        config_commands,
        archive_commands,
        backup_commands,
        stats_commands,
        schedule_commands,
    )

    config_commands.register_commands(cli)
    archive_commands.register_commands(cli)
    backup_commands.register_commands(cli)
    stats_commands.register_commands(cli)
    schedule_commands.register_commands(cli)


# Register all commands when module is imported
register_all_commands()
