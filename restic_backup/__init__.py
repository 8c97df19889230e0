"""restic integration for Archive Backup.

Builds restic invocations, streams their ``--json`` progress as typed
events, and classifies failures into user-facing errors.
"""

from .client import ResticClient, RawDataStats, RestoreSizeStats, SnapshotInfo
from .command import ResticCommand, ResticCommandBuilder, ensure_repository, to_unix_path
from .errors import (
    ResticError,
    PermissionDeniedError,
    PathNotFoundError,
    UnclassifiedError,
    ResticCommandError,
    ResticNotFoundError,
    RepositoryInitError,
    classify_error,
)
from .messages import BackupMessage, parse_line
from .runner import BackupRun, RunState, create_transcript_pool

__all__ = [
    'ResticClient',
    'RawDataStats',
    'RestoreSizeStats',
    'SnapshotInfo',
    'ResticCommand',
    'ResticCommandBuilder',
    'ensure_repository',
    'to_unix_path',
    'ResticError',
    'PermissionDeniedError',
    'PathNotFoundError',
    'UnclassifiedError',
    'ResticCommandError',
    'ResticNotFoundError',
    'RepositoryInitError',
    'classify_error',
    'BackupMessage',
    'parse_line',
    'BackupRun',
    'RunState',
    'create_transcript_pool',
]
