"""Foreground scheduler command."""

import time

import click

from archive_manager import AutoBackupTask, CacheRefreshTask
from cli.utils import (
    load_app_config,
    setup_logging,
    handle_error,
    get_manager,
    require_repository
)
from task_scheduler import TaskScheduler


def register_commands(cli):
    """Register the schedule command with main CLI."""

    @cli.command('schedule')
    @click.option('--backup-interval', type=int,
                  help='Seconds between automatic backups (overrides config, 0 disables)')
    @click.option('--now', is_flag=True, help='Run every task once right away')
    @click.pass_context
    def schedule(ctx, backup_interval, now):
        """Run periodic tasks in the foreground until interrupted.

        Refreshes the archive cache and, if enabled, backs up every archive
        on a fixed interval. Stop with Ctrl+C.
        """
        verbose = ctx.obj['verbose']

        try:
            config = load_app_config(ctx.obj['config_path'])
            setup_logging(config, verbose)
            manager = get_manager(config)

            settings = config.scheduler
            run_immediately = now or settings.run_immediately
            if backup_interval is None:
                backup_interval = settings.auto_backup_interval_seconds

            scheduler = TaskScheduler()
            if settings.cache_refresh_interval_seconds > 0:
                scheduler.add_task(CacheRefreshTask(
                    manager.cache, settings.cache_refresh_interval_seconds, run_immediately
                ))
            if backup_interval > 0:
                require_repository(manager)
                scheduler.add_task(AutoBackupTask(manager, backup_interval, run_immediately))

            tasks = scheduler.tasks()
            if not tasks:
                click.echo("No periodic tasks enabled.")
                return

            for task in tasks:
                click.echo(f"• {task.key}: every {task.interval}s")

            scheduler.start()
            click.echo("Scheduler running. Press Ctrl+C to stop.")
            try:
                while True:
                    time.sleep(1)
            except KeyboardInterrupt:
                click.echo("\nStopping scheduler...")
            finally:
                scheduler.stop(timeout=5)
                manager.client.transcript_pool.close()
        except Exception as e:
            handle_error(e, verbose)
