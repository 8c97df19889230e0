#!/usr/bin/env python3
"""Archive Backup - command line entry point.

Examples:
    # Get help
    python -m main --help
    python -m main archive --help

    # Basic workflow
    python -m main init                               # Config, database, repository
    python -m main archive add docs ~/Documents       # Track a directory
    python -m main backup docs                        # New snapshot
    python -m main history docs                       # List backups
    python -m main restore docs 4                     # Roll back to backup 4

    # Background work
    python -m main schedule --backup-interval 3600
"""

from cli.main import cli

if __name__ == '__main__':
    cli()
