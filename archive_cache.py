"""In-memory archive cache.

Mirrors the archive table so lookups do not hit the database. The database
stays the source of truth: callers persist first, then update the cache with
``put``/``delete``, or rebuild it with ``refresh``. Entries never expire on
their own.
"""

import logging
from typing import Callable, Dict, List, Optional

from locks import ReadWriteLock
from models import Archive

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """Base class for archive cache errors."""


class CacheNotFoundError(CacheError):
    """No cached archive under the requested id."""


class InvalidKeyError(CacheError):
    """Id 0 is reserved for archives that have not been persisted."""


class InvalidValueError(CacheError):
    """Attempt to cache a missing archive."""


class CacheRefreshError(CacheError):
    """Bulk reload from the database failed; the cache was left unchanged."""


class ArchiveCache:
    """Concurrent read-through mirror of archive records keyed by id.

    Args:
        db_service: Persistence collaborator providing ``get_all_archives()``.
    """

    def __init__(self, db_service):
        self.db_service = db_service
        self._lock = ReadWriteLock()
        self._archives: Dict[int, Archive] = {}
        # Point writes made while a refresh is reading; None marks a delete.
        self._journals: List[Dict[int, Optional[Archive]]] = []

    def refresh(self) -> None:
        """Reload every archive from the database and replace the cache.

        Writes that land while the database is being read are applied on top
        of the loaded archives, since they were persisted no earlier than the
        read started.
        """
        journal: Dict[int, Optional[Archive]] = {}
        with self._lock.write_locked():
            self._journals.append(journal)
        try:
            archives = self.db_service.get_all_archives()
        except Exception as e:
            with self._lock.write_locked():
                self._journals.remove(journal)
            raise CacheRefreshError(f"Failed to load archives into cache: {e}") from e

        fresh = {archive.id: archive for archive in archives if archive.id}
        with self._lock.write_locked():
            self._journals.remove(journal)
            for archive_id, archive in journal.items():
                if archive is None:
                    fresh.pop(archive_id, None)
                else:
                    fresh[archive_id] = archive
            self._archives = fresh
        logger.debug(f"Archive cache refreshed with {len(fresh)} archive(s)")

    def get(self, archive_id: int) -> Archive:
        """Return the cached archive.

        The returned object is shared with every other reader; treat it as
        read-only.
        """
        if not archive_id:
            raise InvalidKeyError("Archive id 0 is not a valid cache key")

        with self._lock.read_locked():
            archive = self._archives.get(archive_id)

        if archive is None:
            raise CacheNotFoundError(f"Archive {archive_id} is not cached")
        return archive

    def get_all(self) -> Dict[int, Archive]:
        """Return a copy of the id -> archive map."""
        with self._lock.read_locked():
            return dict(self._archives)

    def put(self, archive: Optional[Archive]) -> None:
        if archive is None:
            raise InvalidValueError("Cannot cache a missing archive")
        if not archive.id:
            raise InvalidKeyError("Cannot cache an archive without an id")

        with self._lock.write_locked():
            self._archives[archive.id] = archive
            self._journal_write(archive.id, archive)

    def delete(self, archive_id: int) -> None:
        """Drop an archive from the cache. Unknown ids are ignored."""
        if not archive_id:
            raise InvalidKeyError("Archive id 0 is not a valid cache key")

        with self._lock.write_locked():
            self._archives.pop(archive_id, None)
            self._journal_write(archive_id, None)

    def exists(self, archive_id: int) -> bool:
        if not archive_id:
            return False

        with self._lock.read_locked():
            return archive_id in self._archives

    def get_or_create(self, archive_id: int, create_fn: Callable[[], Archive]) -> Archive:
        """Return the cached archive, creating and caching it on a miss.

        Pass ``archive_id=0`` to always create. ``create_fn`` persists the new
        archive and returns it with its assigned id; it runs without any lock
        held and its exceptions propagate unchanged. If another caller cached
        the same id while ``create_fn`` ran, that entry wins and the value just
        created is discarded.
        """
        if archive_id:
            with self._lock.read_locked():
                existing = self._archives.get(archive_id)
            if existing is not None:
                return existing

        archive = create_fn()
        if archive is None:
            raise InvalidValueError("create_fn returned no archive")
        if not archive.id:
            raise InvalidKeyError("create_fn returned an archive without an id")

        with self._lock.write_locked():
            existing = self._archives.get(archive.id)
            if existing is not None:
                logger.debug(f"Archive {archive.id} was cached concurrently, keeping existing entry")
                return existing
            self._archives[archive.id] = archive
            self._journal_write(archive.id, archive)
            return archive

    def _journal_write(self, archive_id: int, archive: Optional[Archive]) -> None:
        # Caller holds the write lock.
        for journal in self._journals:
            journal[archive_id] = archive

    def clear(self) -> None:
        """Empty the cache. Copies already returned by get_all() are unaffected."""
        with self._lock.write_locked():
            self._archives = {}

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._archives)

    def __contains__(self, archive_id) -> bool:
        return self.exists(archive_id)
