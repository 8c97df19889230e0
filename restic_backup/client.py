"""restic operations used by the archive manager."""

import json
import logging
import subprocess
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional

from object_pool import ObjectPool
from restic_backup.command import RAW_DATA, RESTORE_SIZE, ResticCommand, ResticCommandBuilder
from restic_backup.errors import ResticCommandError, classify_error
from restic_backup.runner import DEFAULT_QUEUE_SIZE, BackupRun

logger = logging.getLogger(__name__)


def _from_json(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known and v is not None})


@dataclass
class RawDataStats:
    """Space the snapshots actually occupy in the repository."""
    total_size: int = 0
    total_uncompressed_size: int = 0
    compression_ratio: float = 0.0
    compression_progress: float = 0.0
    compression_space_saving: float = 0.0
    total_blob_count: int = 0
    snapshots_count: int = 0


@dataclass
class RestoreSizeStats:
    """Size the snapshots would take once restored."""
    total_size: int = 0
    total_file_count: int = 0
    snapshots_count: int = 0


@dataclass
class SnapshotSummary:
    backup_start: str = ''
    backup_end: str = ''
    files_new: int = 0
    files_changed: int = 0
    files_unmodified: int = 0
    dirs_new: int = 0
    dirs_changed: int = 0
    dirs_unmodified: int = 0
    data_blobs: int = 0
    tree_blobs: int = 0
    data_added: int = 0
    data_added_packed: int = 0
    total_files_processed: int = 0
    total_bytes_processed: int = 0


@dataclass
class SnapshotInfo:
    id: str = ''
    short_id: str = ''
    time: str = ''
    parent: str = ''
    tree: str = ''
    paths: List[str] = field(default_factory=list)
    hostname: str = ''
    username: str = ''
    program_version: str = ''
    summary: Optional[SnapshotSummary] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'SnapshotInfo':
        info = _from_json(cls, {k: v for k, v in data.items() if k != 'summary'})
        if isinstance(data.get('summary'), dict):
            info.summary = _from_json(SnapshotSummary, data['summary'])
        return info


class ResticClient:
    """Streams backups/restores and runs one-shot repository commands.

    Args:
        builder: Command builder bound to the configured repository.
        transcript_pool: Pool passed to every BackupRun for its output tail.
        run: ``subprocess.run`` compatible callable for one-shot commands.
    """

    def __init__(self, builder: ResticCommandBuilder, transcript_pool: Optional[ObjectPool] = None,
                 queue_size: int = DEFAULT_QUEUE_SIZE,
                 run: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.builder = builder
        self.transcript_pool = transcript_pool
        self.queue_size = queue_size
        self._run = run

    # Streaming runs

    def start(self, command: ResticCommand) -> BackupRun:
        return BackupRun(command, queue_size=self.queue_size,
                         transcript_pool=self.transcript_pool).start()

    def backup(self, archive) -> BackupRun:
        """Start backing up ``archive.path``."""
        return self.start(self.builder.backup(archive.path))

    def restore(self, archive, record) -> BackupRun:
        """Start restoring ``record.snapshot`` over ``archive.path``."""
        return self.start(self.builder.restore(record.snapshot, archive.path))

    # One-shot commands

    def _execute(self, command: ResticCommand, action: str) -> str:
        """Run to completion and return stdout; stderr is only used for errors."""
        try:
            result = self._run(
                command.argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding='utf-8',
                errors='replace',
                **command.popen_kwargs()
            )
        except OSError as e:
            logger.error(f"Could not start {command}: {e}")
            raise ResticCommandError(f"{action} failed: could not run restic: {e}") from e
        if result.returncode != 0:
            output = '\n'.join(part for part in (result.stdout, result.stderr) if part)
            cause = classify_error(output)
            logger.error(f"{action} failed with status {result.returncode}: {output.strip()}")
            raise ResticCommandError(
                f"{action} failed: {cause.message}",
                raw_output=output,
                returncode=result.returncode,
                cause=cause,
            )
        return result.stdout or ''

    def _execute_json(self, command: ResticCommand, action: str):
        output = self._execute(command, action)
        try:
            return json.loads(output)
        except ValueError as e:
            raise ResticCommandError(f"{action} returned invalid JSON: {e}", raw_output=output) from e

    def forget(self, *snapshots: str) -> None:
        """Forget snapshots and prune the data only they referenced."""
        if not snapshots:
            raise ValueError("At least one snapshot is required")
        self._execute(self.builder.forget(*snapshots), "Forgetting snapshots")
        logger.info(f"Forgot {len(snapshots)} snapshot(s)")

    def raw_data_stats(self, *snapshots: str) -> RawDataStats:
        data = self._execute_json(self.builder.stats(RAW_DATA, *snapshots), "Reading raw data size")
        return _from_json(RawDataStats, data)

    def restore_size_stats(self, *snapshots: str) -> RestoreSizeStats:
        data = self._execute_json(self.builder.stats(RESTORE_SIZE, *snapshots), "Reading restore size")
        return _from_json(RestoreSizeStats, data)

    def snapshot_info(self, snapshot_id: str) -> Optional[SnapshotInfo]:
        """Details of one snapshot, or None if restic does not list it."""
        if not snapshot_id:
            raise ValueError("A snapshot id is required")
        data = self._execute_json(self.builder.snapshots(snapshot_id), "Reading snapshot")
        if not data:
            return None
        return SnapshotInfo.from_json(data[0])
