"""Commands for managing archives (backed-up directories)."""

import click
from tabulate import tabulate

from cli.utils import (
    open_manager,
    handle_error,
    confirm_action,
    format_timestamp
)


def register_commands(cli):
    """Register archive commands with main CLI."""

    @cli.group('archive')
    @click.pass_context
    def archive_group(ctx):
        """Manage archives.

        An archive is a directory tracked by Archive Backup. Each backup of
        an archive creates one restic snapshot and one backup record.
        """
        pass

    @archive_group.command('add')
    @click.argument('name')
    @click.argument('path', type=click.Path(file_okay=False))
    @click.option('--comment', '-m', default='', help='Free-form description')
    @click.pass_context
    def add(ctx, name, path, comment):
        """Register a directory as an archive.

        Examples:
            python -m main archive add "World 1" "C:\\Saves\\World 1"
            python -m main archive add docs ~/Documents --comment "weekly"
        """
        verbose = ctx.obj['verbose']

        try:
            manager = open_manager(ctx)
            archive = manager.create_archive(name, path, comment)
            click.echo(f"✓ Created archive {archive.id}: {archive.name}")
            click.echo(f"  Path: {archive.path}")
        except Exception as e:
            handle_error(e, verbose)

    @archive_group.command('list')
    @click.pass_context
    def list_archives(ctx):
        """List all archives."""
        verbose = ctx.obj['verbose']

        try:
            manager = open_manager(ctx)
            archives = manager.list_archives()
            if not archives:
                click.echo("No archives found.")
                return

            table_data = [
                [a.id, a.name, a.path, (a.comment or '')[:40], format_timestamp(a.created_at)]
                for a in archives
            ]
            headers = ['ID', 'Name', 'Path', 'Comment', 'Created']
            click.echo(f"\n{len(table_data)} archive(s):\n")
            click.echo(tabulate(table_data, headers=headers, tablefmt='grid'))
        except Exception as e:
            handle_error(e, verbose)

    @archive_group.command('show')
    @click.argument('archive')
    @click.pass_context
    def show(ctx, archive):
        """Show an archive and its latest backups.

        ARCHIVE: Archive id or name
        """
        verbose = ctx.obj['verbose']

        try:
            manager = open_manager(ctx)
            found = manager.find_archive(archive)
            records = manager.history(found.id)

            click.echo(f"Archive {found.id}: {found.name}")
            click.echo(f"  Path:    {found.path}")
            click.echo(f"  Comment: {found.comment or '-'}")
            click.echo(f"  Created: {format_timestamp(found.created_at)}")
            click.echo(f"  Updated: {format_timestamp(found.updated_at)}")
            click.echo(f"  Backups: {len(records)}")
            if records:
                click.echo(f"  Latest:  {records[0].snapshot[:8]} ({format_timestamp(records[0].created_at)})")
        except Exception as e:
            handle_error(e, verbose)

    @archive_group.command('edit')
    @click.argument('archive')
    @click.option('--name', help='New name')
    @click.option('--path', 'new_path', help='New directory')
    @click.option('--comment', '-m', help='New comment')
    @click.pass_context
    def edit(ctx, archive, name, new_path, comment):
        """Change an archive's name, path or comment.

        ARCHIVE: Archive id or name
        """
        verbose = ctx.obj['verbose']

        try:
            if name is None and new_path is None and comment is None:
                click.echo("Nothing to change. Use --name, --path or --comment.")
                return

            manager = open_manager(ctx)
            found = manager.find_archive(archive)
            updated = manager.update_archive(found.id, name=name, path=new_path, comment=comment)
            click.echo(f"✓ Updated archive {updated.id}: {updated.name}")
        except Exception as e:
            handle_error(e, verbose)

    @archive_group.command('remove')
    @click.argument('archive')
    @click.option('--keep-snapshots', is_flag=True, help='Leave the restic snapshots in the repository')
    @click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
    @click.pass_context
    def remove(ctx, archive, keep_snapshots, yes):
        """Delete an archive and its backup history.

        Unless --keep-snapshots is given, the archive's snapshots are also
        forgotten and pruned from the repository. Files in the archive
        directory are never touched.

        ARCHIVE: Archive id or name
        """
        verbose = ctx.obj['verbose']

        try:
            manager = open_manager(ctx)
            found = manager.find_archive(archive)
            if not yes and not confirm_action(f"Delete archive '{found.name}' and its backup history?"):
                click.echo("Cancelled.")
                return

            manager.delete_archive(found.id, forget_snapshots=not keep_snapshots)
            click.echo(f"✓ Deleted archive {found.id}: {found.name}")
        except Exception as e:
            handle_error(e, verbose)
