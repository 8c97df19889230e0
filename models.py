"""Database models and persistence service for Archive Backup."""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import (
    Column, DateTime, ForeignKey, Integer, String, Text,
    create_engine, event
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, joinedload, relationship, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Archive(Base):
    """A tracked backup source directory."""
    __tablename__ = 'archives'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    comment = Column(Text)
    path = Column(String(1024), unique=True, nullable=False)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    backup_records = relationship(
        'BackupRecord',
        back_populates='archive',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Archive(id={self.id}, name='{self.name}', path='{self.path}')>"


class BackupRecord(Base):
    """Pointer from an archive to one snapshot taken by restic."""
    __tablename__ = 'backup_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    archive_id = Column(
        Integer,
        ForeignKey('archives.id', ondelete='CASCADE'),
        nullable=False,
        index=True
    )
    snapshot = Column(String(64), unique=True, nullable=False)
    comment = Column(Text)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    archive = relationship('Archive', back_populates='backup_records')

    def __repr__(self):
        return f"<BackupRecord(id={self.id}, archive_id={self.archive_id}, snapshot='{self.snapshot}')>"


class DatabaseError(Exception):
    """Base class for persistence errors raised by DatabaseService."""


class UniqueConstraintError(DatabaseError):
    """A unique column already holds the submitted value."""

    def __init__(self, field: str, friendly_name: str):
        self.field = field
        self.friendly_name = friendly_name
        super().__init__(
            f"{friendly_name} already exists, please use a different {friendly_name.lower()}"
        )


class ArchiveNotFoundError(DatabaseError):
    """The referenced archive does not exist."""


class BackupRecordNotFoundError(DatabaseError):
    """The referenced backup record does not exist."""


# Field name -> user facing name
FIELD_FRIENDLY_NAMES: Dict[str, str] = {
    'archives.name': 'Archive name',
    'archives.path': 'Archive path',
    'backup_records.snapshot': 'Snapshot',
}

_UNIQUE_MARKER = 'UNIQUE constraint failed:'


def wrap_unique_constraint_error(error: Exception) -> Exception:
    """Translate a SQLite unique violation into UniqueConstraintError.

    SQLite reports ``UNIQUE constraint failed: archives.name``. Anything that
    is not a unique violation is returned unchanged.
    """
    message = str(getattr(error, 'orig', None) or error)
    if _UNIQUE_MARKER not in message:
        return error

    field = message.split(_UNIQUE_MARKER, 1)[1].strip().split(',')[0].strip()
    friendly = FIELD_FRIENDLY_NAMES.get(field)
    if friendly is None:
        friendly = field.split('.', 1)[1] if '.' in field else field
    return UniqueConstraintError(field, friendly)


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self, connection_string: str):
        self.engine = create_engine(connection_string, echo=False)

        if 'sqlite' in connection_string:
            @event.listens_for(self.engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        # Cached archives outlive their session, so keep attributes loaded.
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_tables(self):
        """Create all tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self):
        """Get a database session."""
        return self.SessionLocal()

    def close(self):
        """Close the database connection."""
        self.engine.dispose()


class DatabaseService:
    """High-level database operations."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    def create_archive(self, archive: Archive) -> Archive:
        """Insert an archive and return it with its assigned id."""
        session = self.db_manager.get_session()
        try:
            session.add(archive)
            session.commit()
            session.refresh(archive)
            session.expunge(archive)
            logger.debug(f"Created archive {archive.id} ({archive.name})")
            return archive
        except IntegrityError as e:
            session.rollback()
            raise wrap_unique_constraint_error(e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def update_archive(self, archive: Archive) -> Archive:
        """Persist changes to an existing archive."""
        session = self.db_manager.get_session()
        try:
            if session.get(Archive, archive.id) is None:
                raise ArchiveNotFoundError(f"Archive {archive.id} does not exist")
            merged = session.merge(archive)
            session.commit()
            session.refresh(merged)
            session.expunge(merged)
            return merged
        except IntegrityError as e:
            session.rollback()
            raise wrap_unique_constraint_error(e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def delete_archive(self, archive_id: int) -> None:
        """Delete an archive and all of its backup records in one transaction."""
        session = self.db_manager.get_session()
        try:
            session.query(BackupRecord).filter_by(archive_id=archive_id).delete(
                synchronize_session=False
            )
            session.query(Archive).filter_by(id=archive_id).delete(synchronize_session=False)
            session.commit()
            logger.debug(f"Deleted archive {archive_id}")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_all_archives(self) -> List[Archive]:
        """Get all archives."""
        session = self.db_manager.get_session()
        try:
            return session.query(Archive).order_by(Archive.id).all()
        finally:
            session.close()

    def get_archive_by_id(self, archive_id: int) -> Optional[Archive]:
        """Get an archive by primary key, or None."""
        session = self.db_manager.get_session()
        try:
            return session.get(Archive, archive_id)
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Backup records
    # ------------------------------------------------------------------

    def create_backup_record(self, record: BackupRecord) -> BackupRecord:
        """Insert a backup record; its archive must already exist."""
        session = self.db_manager.get_session()
        try:
            if session.get(Archive, record.archive_id) is None:
                raise ArchiveNotFoundError(
                    f"Archive {record.archive_id} does not exist"
                )
            session.add(record)
            session.commit()
            session.refresh(record)
            session.expunge(record)
            return record
        except IntegrityError as e:
            session.rollback()
            raise wrap_unique_constraint_error(e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def update_backup_record(self, record: BackupRecord) -> BackupRecord:
        """Persist changes to an existing backup record."""
        session = self.db_manager.get_session()
        try:
            if session.get(BackupRecord, record.id) is None:
                raise BackupRecordNotFoundError(f"Backup record {record.id} does not exist")
            merged = session.merge(record)
            session.commit()
            session.refresh(merged)
            session.expunge(merged)
            return merged
        except IntegrityError as e:
            session.rollback()
            raise wrap_unique_constraint_error(e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def delete_backup_record(self, record_id: int) -> None:
        session = self.db_manager.get_session()
        try:
            session.query(BackupRecord).filter_by(id=record_id).delete(synchronize_session=False)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_backup_records_by_archive_id(self, archive_id: int) -> List[BackupRecord]:
        """Get all backup records of an archive, newest first."""
        session = self.db_manager.get_session()
        try:
            return (
                session.query(BackupRecord)
                .filter_by(archive_id=archive_id)
                .order_by(BackupRecord.created_at.desc(), BackupRecord.id.desc())
                .all()
            )
        finally:
            session.close()

    def get_backup_record_by_id(self, record_id: int) -> Optional[BackupRecord]:
        """Get a backup record with its archive loaded, or None."""
        session = self.db_manager.get_session()
        try:
            return (
                session.query(BackupRecord)
                .options(joinedload(BackupRecord.archive))
                .filter_by(id=record_id)
                .first()
            )
        finally:
            session.close()
