"""Repository statistics commands."""

import click
from tabulate import tabulate

from cli.utils import (
    open_manager,
    handle_error,
    format_size
)


def register_commands(cli):
    """Register stats commands with main CLI."""

    @cli.command('stats')
    @click.argument('archive')
    @click.option('--snapshot', '-s', 'record_id', type=int, help='Only this backup record')
    @click.pass_context
    def stats(ctx, archive, record_id):
        """Show how much space an archive's backups use.

        "Stored" is the deduplicated, compressed size in the repository;
        "Restore size" is what the snapshots expand to when restored.

        ARCHIVE: Archive id or name

        Examples:
            python -m main stats "World 1"
            python -m main stats "World 1" --snapshot 12
        """
        verbose = ctx.obj['verbose']

        try:
            manager = open_manager(ctx, needs_repository=True)
            found = manager.find_archive(archive)

            if record_id is not None:
                record = manager.get_backup(record_id)
                if record.archive_id != found.id:
                    raise ValueError(f"Backup record {record_id} does not belong to {found.name}")
                snapshots = [record.snapshot]
            else:
                snapshots = [r.snapshot for r in manager.history(found.id)]

            if not snapshots:
                click.echo(f"No backups for {found.name}.")
                return

            raw = manager.client.raw_data_stats(*snapshots)
            restore = manager.client.restore_size_stats(*snapshots)

            table_data = [
                ['Snapshots', len(snapshots)],
                ['Stored', format_size(raw.total_size)],
                ['Uncompressed', format_size(raw.total_uncompressed_size)],
                ['Compression ratio', f"{raw.compression_ratio:.2f}x" if raw.compression_ratio else '-'],
                ['Restore size', format_size(restore.total_size)],
                ['Files', restore.total_file_count],
            ]
            click.echo(f"\nStatistics for {found.name}:\n")
            click.echo(tabulate(table_data, tablefmt='grid'))

            if record_id is not None:
                info = manager.client.snapshot_info(snapshots[0])
                if info is not None:
                    click.echo(f"\nSnapshot {info.short_id or info.id[:8]} taken {info.time} on {info.hostname}")
                    if info.summary is not None:
                        click.echo(f"  {info.summary.total_files_processed} files, "
                                   f"{format_size(info.summary.total_bytes_processed)} processed")
        except Exception as e:
            handle_error(e, verbose)
