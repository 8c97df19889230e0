"""Archive management: cache-backed CRUD plus backup/restore orchestration."""

import logging
from typing import Callable, List, Optional

from archive_cache import ArchiveCache, CacheError, CacheNotFoundError
from archive_paths import SESSION_LOCK_NAME, ArchiveInUseError, is_archive_in_use, is_valid_path_format
from models import Archive, ArchiveNotFoundError, BackupRecord, BackupRecordNotFoundError, DatabaseService
from restic_backup.client import ResticClient
from restic_backup.errors import ResticError, UnclassifiedError
from restic_backup.messages import SUMMARY, BackupMessage
from restic_backup.runner import BackupRun
from task_scheduler import Task

logger = logging.getLogger(__name__)

EventCallback = Callable[[BackupMessage], None]


class ArchiveManager:
    """Manages archives, their backup history and restic runs.

    Writes always go to the database first; the cache is updated afterwards.
    """

    def __init__(self, db_service: DatabaseService, cache: ArchiveCache, client: ResticClient):
        self.db_service = db_service
        self.cache = cache
        self.client = client

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    def list_archives(self) -> List[Archive]:
        """All cached archives ordered by name."""
        return sorted(self.cache.get_all().values(), key=lambda a: a.name.lower())

    def get_archive(self, archive_id: int) -> Archive:
        """Return an archive, falling back to the database on a cache miss."""
        try:
            return self.cache.get(archive_id)
        except CacheNotFoundError:
            archive = self.db_service.get_archive_by_id(archive_id)
            if archive is None:
                raise ArchiveNotFoundError(f"Archive {archive_id} does not exist")
            return self.cache.get_or_create(archive.id, lambda: archive)

    def find_archive(self, name_or_id: str) -> Archive:
        """Look an archive up by id, then by exact name."""
        name_or_id = str(name_or_id)
        if name_or_id.isdigit():
            try:
                return self.get_archive(int(name_or_id))
            except ArchiveNotFoundError:
                pass
        for archive in self.cache.get_all().values():
            if archive.name == name_or_id:
                return archive
        raise ArchiveNotFoundError(f"No archive named '{name_or_id}'")

    def create_archive(self, name: str, path: str, comment: str = '') -> Archive:
        name = name.strip()
        path = path.strip()
        if not name:
            raise ValueError("Archive name must not be empty")
        if not path:
            raise ValueError("Archive path must not be empty")
        if not is_valid_path_format(path):
            raise ValueError(f"Invalid archive path: {path!r}")

        archive = self.cache.get_or_create(
            0,
            lambda: self.db_service.create_archive(Archive(name=name, path=path, comment=comment))
        )
        logger.info(f"Created archive {archive.id}: {archive.name} ({archive.path})")
        return archive

    def update_archive(self, archive_id: int, name: Optional[str] = None,
                       path: Optional[str] = None, comment: Optional[str] = None) -> Archive:
        """Update archive fields; None leaves a field unchanged."""
        current = self.get_archive(archive_id)
        # Cached archives are shared with other readers, so update a copy.
        changed = Archive(
            id=current.id,
            name=name.strip() if name is not None else current.name,
            path=path.strip() if path is not None else current.path,
            comment=comment if comment is not None else current.comment,
            created_at=current.created_at,
        )
        if not changed.name or not changed.path:
            raise ValueError("Archive name and path must not be empty")
        if path is not None and not is_valid_path_format(changed.path):
            raise ValueError(f"Invalid archive path: {changed.path!r}")

        updated = self.db_service.update_archive(changed)
        self.cache.put(updated)
        logger.info(f"Updated archive {updated.id}")
        return updated

    def delete_archive(self, archive_id: int, forget_snapshots: bool = True) -> None:
        """Delete an archive and its records; optionally forget its snapshots."""
        records = self.db_service.get_backup_records_by_archive_id(archive_id)
        self.db_service.delete_archive(archive_id)

        try:
            self.cache.delete(archive_id)
        except CacheError as e:
            logger.warning(f"Could not drop archive {archive_id} from cache: {e}")

        snapshots = [r.snapshot for r in records]
        if forget_snapshots and snapshots:
            try:
                self.client.forget(*snapshots)
            except ResticError as e:
                logger.warning(f"Archive {archive_id} deleted but forgetting its snapshots failed: {e}")
        logger.info(f"Deleted archive {archive_id} ({len(records)} backup record(s))")

    # ------------------------------------------------------------------
    # Backup history
    # ------------------------------------------------------------------

    def history(self, archive_id: int) -> List[BackupRecord]:
        return self.db_service.get_backup_records_by_archive_id(archive_id)

    def get_backup(self, record_id: int) -> BackupRecord:
        record = self.db_service.get_backup_record_by_id(record_id)
        if record is None:
            raise BackupRecordNotFoundError(f"Backup record {record_id} does not exist")
        return record

    def record_backup(self, archive_id: int, snapshot_id: str, comment: str = '') -> BackupRecord:
        record = self.db_service.create_backup_record(
            BackupRecord(archive_id=archive_id, snapshot=snapshot_id, comment=comment)
        )
        logger.info(f"Recorded snapshot {snapshot_id} for archive {archive_id}")
        return record

    def delete_backup(self, record_id: int) -> None:
        """Forget a snapshot in the repository, then delete its record."""
        record = self.get_backup(record_id)
        self.client.forget(record.snapshot)
        self.db_service.delete_backup_record(record_id)
        logger.info(f"Deleted backup record {record_id} (snapshot {record.snapshot})")

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def start_backup(self, archive_id: int) -> BackupRun:
        return self.client.backup(self.get_archive(archive_id))

    def start_restore(self, archive_id: int, record_id: int) -> BackupRun:
        archive = self.get_archive(archive_id)
        record = self.get_backup(record_id)
        if record.archive_id != archive.id:
            raise ValueError(f"Backup record {record_id} does not belong to archive {archive_id}")
        if is_archive_in_use(archive.path):
            raise ArchiveInUseError(
                f"Archive {archive.name} is in use ({SESSION_LOCK_NAME} is locked); "
                f"close the program using it before restoring"
            )
        return self.client.restore(archive, record)

    @staticmethod
    def _drive(run: BackupRun, on_event: Optional[EventCallback]) -> BackupMessage:
        with run:
            for event in run:
                if on_event is not None:
                    on_event(event)
        terminal = run.terminal_event
        if terminal is not None and terminal.is_error:
            raise run.classify_failure() or UnclassifiedError(terminal.message, run.output_tail)
        return terminal

    def run_backup(self, archive_id: int, comment: str = '',
                   on_event: Optional[EventCallback] = None) -> Optional[BackupRecord]:
        """Back up an archive and record the snapshot it produced.

        Returns the new BackupRecord, or None if restic finished without
        reporting a snapshot id.

        Raises:
            ResticError: The run failed; the error is classified from its output.
        """
        terminal = self._drive(self.start_backup(archive_id), on_event)
        if terminal is None or terminal.message_type != SUMMARY or not terminal.snapshot_id:
            logger.warning(f"Backup of archive {archive_id} finished without a snapshot id")
            return None
        return self.record_backup(archive_id, terminal.snapshot_id, comment)

    def run_restore(self, archive_id: int, record_id: int,
                    on_event: Optional[EventCallback] = None) -> BackupMessage:
        """Restore a snapshot over the archive directory."""
        return self._drive(self.start_restore(archive_id, record_id), on_event)


class CacheRefreshTask(Task):
    """Rebuilds the archive cache from the database."""

    def __init__(self, cache: ArchiveCache, interval: float, execute_immediately: bool = False):
        self.cache = cache
        self._interval = interval
        self._execute_immediately = execute_immediately

    @property
    def key(self) -> str:
        return 'archive-cache-refresh'

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def execute_immediately(self) -> bool:
        return self._execute_immediately

    def run(self) -> None:
        self.cache.refresh()


class AutoBackupTask(Task):
    """Backs up every archive in turn."""

    def __init__(self, manager: ArchiveManager, interval: float, execute_immediately: bool = False):
        self.manager = manager
        self._interval = interval
        self._execute_immediately = execute_immediately

    @property
    def key(self) -> str:
        return 'auto-backup'

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def execute_immediately(self) -> bool:
        return self._execute_immediately

    def run(self) -> None:
        for archive in self.manager.list_archives():
            try:
                record = self.manager.run_backup(archive.id, comment='Automatic backup')
            except ResticError as e:
                logger.error(f"Automatic backup of {archive.name} failed: {e.message}")
                continue
            if record is not None:
                logger.info(f"Automatic backup of {archive.name}: snapshot {record.snapshot}")
