"""Archive directory checks: path syntax and whether another program has it open."""

import logging
import ntpath
import os
import posixpath
from typing import Optional

import portalocker

logger = logging.getLogger(__name__)

# Held by the program that has the archive directory open.
SESSION_LOCK_NAME = 'session.lock'

WINDOWS_ILLEGAL_CHARS = '<>"|?*'
WINDOWS_RESERVED_NAMES = {
    'con', 'prn', 'aux', 'nul',
    *(f'com{i}' for i in range(1, 10)),
    *(f'lpt{i}' for i in range(1, 10)),
}


class ArchiveInUseError(Exception):
    """The archive directory is locked by another program."""


def is_valid_path_format(path: str, windows: Optional[bool] = None) -> bool:
    """Check that ``path`` is syntactically usable as an archive directory.

    Args:
        path: Path as typed by the user
        windows: Apply Windows rules; defaults to the running platform

    Returns:
        False for empty paths, NUL bytes, and on Windows for illegal
        characters, misplaced colons, reserved device names or a trailing dot.
    """
    if not path or '\x00' in path:
        return False
    if windows is None:
        windows = os.name == 'nt'

    clean = ntpath.normpath(path) if windows else posixpath.normpath(path)
    if windows:
        return _is_valid_windows_path(clean)
    return True


def _is_valid_windows_path(path: str) -> bool:
    for index, char in enumerate(path):
        if char in WINDOWS_ILLEGAL_CHARS:
            return False
        # Only the drive separator, as in "C:"
        if char == ':' and (index != 1 or not path[0].isascii() or not path[0].isalpha()):
            return False

    base = ntpath.basename(path).lower()
    stem = base[:base.rindex('.')] if base.rfind('.') > 0 else base
    if stem in WINDOWS_RESERVED_NAMES:
        return False

    return not path.rstrip(' ').endswith('.')


def is_archive_in_use(archive_path: str) -> bool:
    """True when another process holds the archive's session lock.

    A missing lock file means the directory is free. Errors while probing the
    lock are logged and treated as not in use.
    """
    lock_path = os.path.join(archive_path, SESSION_LOCK_NAME)
    if not os.path.exists(lock_path):
        return False

    try:
        with open(lock_path, 'rb+') as lock_file:
            try:
                portalocker.lock(lock_file, portalocker.LockFlags.EXCLUSIVE | portalocker.LockFlags.NON_BLOCKING)
            except portalocker.exceptions.LockException:
                return True
            portalocker.unlock(lock_file)
            return False
    except OSError as e:
        logger.warning(f"Could not check {lock_path}: {e}")
        return False
