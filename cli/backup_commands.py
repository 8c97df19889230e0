"""Backup, restore and backup history commands."""

import click
from tabulate import tabulate
from tqdm import tqdm

from cli.utils import (
    open_manager,
    handle_error,
    confirm_action,
    format_size,
    format_time,
    format_timestamp
)
from restic_backup.messages import STATUS, SUMMARY, BackupMessage


class ProgressPrinter:
    """Renders a run's events: a tqdm bar for status, plain lines for the rest."""

    def __init__(self, desc: str, show_info: bool = False):
        self.bar = tqdm(total=100, desc=desc, unit='%', bar_format='{l_bar}{bar}| {n:.0f}% [{elapsed}]')
        self.show_info = show_info

    def __call__(self, event: BackupMessage):
        if event.message_type == STATUS:
            done = min(100.0, event.percent_done * 100)
            self.bar.update(max(0.0, done - self.bar.n))
            if event.total_bytes:
                self.bar.set_postfix_str(f"{format_size(event.bytes_done)} / {format_size(event.total_bytes)}")
        elif event.is_error:
            self.bar.write(f"✗ {event.message}")
        elif self.show_info and event.message:
            self.bar.write(event.message)

    def close(self):
        self.bar.close()


def _print_summary(event: BackupMessage):
    click.echo(f"  Files:     {event.files_new} new, {event.files_changed} changed, "
               f"{event.files_unmodified} unmodified")
    click.echo(f"  Processed: {event.total_files_processed} files, {format_size(event.total_bytes_processed)}")
    click.echo(f"  Added:     {format_size(event.data_added)}")
    if event.total_duration:
        click.echo(f"  Duration:  {format_time(event.total_duration)}")


def register_commands(cli):
    """Register backup commands with main CLI."""

    @cli.command('backup')
    @click.argument('archive')
    @click.option('--comment', '-m', default='', help='Comment stored with the backup record')
    @click.pass_context
    def backup(ctx, archive, comment):
        """Back up an archive into a new restic snapshot.

        ARCHIVE: Archive id or name

        Examples:
            python -m main backup "World 1"
            python -m main backup 3 --comment "before the update"
        """
        verbose = ctx.obj['verbose']

        try:
            manager = open_manager(ctx, needs_repository=True)
            found = manager.find_archive(archive)

            progress = ProgressPrinter(f"Backing up {found.name}", show_info=verbose)
            summary = []

            def on_event(event: BackupMessage):
                progress(event)
                if event.message_type == SUMMARY:
                    summary.append(event)

            try:
                record = manager.run_backup(found.id, comment=comment, on_event=on_event)
            finally:
                progress.close()

            if record is None:
                click.echo("⚠ Backup finished but restic reported no snapshot; nothing was recorded.")
                return

            click.echo(f"✓ Backup {record.id} created: snapshot {record.snapshot[:8]}")
            if summary:
                _print_summary(summary[-1])
        except Exception as e:
            handle_error(e, verbose)

    @cli.command('restore')
    @click.argument('archive')
    @click.argument('record_id', type=int)
    @click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
    @click.pass_context
    def restore(ctx, archive, record_id, yes):
        """Restore an archive directory from one of its backups.

        Files present in the snapshot are overwritten in place.

        ARCHIVE: Archive id or name
        RECORD_ID: Backup record id (see `history`)
        """
        verbose = ctx.obj['verbose']

        try:
            manager = open_manager(ctx, needs_repository=True)
            found = manager.find_archive(archive)
            if not yes and not confirm_action(
                    f"Restore backup {record_id} over {found.path}? Existing files will be overwritten"):
                click.echo("Cancelled.")
                return

            progress = ProgressPrinter(f"Restoring {found.name}", show_info=verbose)
            try:
                manager.run_restore(found.id, record_id, on_event=progress)
            finally:
                progress.close()

            click.echo(f"✓ Restored backup {record_id} to {found.path}")
        except Exception as e:
            handle_error(e, verbose)

    @cli.command('history')
    @click.argument('archive')
    @click.pass_context
    def history(ctx, archive):
        """List the backups of an archive, newest first.

        ARCHIVE: Archive id or name
        """
        verbose = ctx.obj['verbose']

        try:
            manager = open_manager(ctx)
            found = manager.find_archive(archive)
            records = manager.history(found.id)
            if not records:
                click.echo(f"No backups for {found.name}.")
                return

            table_data = [
                [r.id, r.snapshot[:8], format_timestamp(r.created_at), (r.comment or '')[:50]]
                for r in records
            ]
            headers = ['ID', 'Snapshot', 'Created', 'Comment']
            click.echo(f"\n{len(table_data)} backup(s) of {found.name}:\n")
            click.echo(tabulate(table_data, headers=headers, tablefmt='grid'))
        except Exception as e:
            handle_error(e, verbose)

    @cli.command('forget')
    @click.argument('record_id', type=int)
    @click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
    @click.pass_context
    def forget(ctx, record_id, yes):
        """Delete one backup: forget its snapshot and drop the record.

        RECORD_ID: Backup record id (see `history`)
        """
        verbose = ctx.obj['verbose']

        try:
            manager = open_manager(ctx, needs_repository=True)
            record = manager.get_backup(record_id)
            if not yes and not confirm_action(
                    f"Forget snapshot {record.snapshot[:8]} of {record.archive.name}?"):
                click.echo("Cancelled.")
                return

            manager.delete_backup(record_id)
            click.echo(f"✓ Deleted backup {record_id} (snapshot {record.snapshot[:8]})")
        except Exception as e:
            handle_error(e, verbose)
