"""Tests for archive path checks."""

import subprocess
import sys

import pytest

from archive_paths import SESSION_LOCK_NAME, is_archive_in_use, is_valid_path_format

TIMEOUT = 15

HOLD_LOCK_SCRIPT = (
    "import sys, time\n"
    "import portalocker\n"
    "handle = open(sys.argv[1], 'rb+')\n"
    "portalocker.lock(handle, portalocker.LockFlags.EXCLUSIVE)\n"
    "print('locked', flush=True)\n"
    "time.sleep(60)\n"
)


@pytest.mark.parametrize('path', [
    '/data/saves/world',
    'relative/world',
    '/data/odd <name>?',
])
def test_unix_paths(path):
    assert is_valid_path_format(path, windows=False)


@pytest.mark.parametrize('path', ['', '/data/bad\x00name'])
def test_empty_and_nul_paths_are_invalid(path):
    assert not is_valid_path_format(path, windows=False)
    assert not is_valid_path_format(path, windows=True)


@pytest.mark.parametrize('path', [
    'C:\\Games\\saves\\world',
    'd:/saves/world',
    'saves\\world',
    '\\\\server\\share\\world',
])
def test_valid_windows_paths(path):
    assert is_valid_path_format(path, windows=True)


@pytest.mark.parametrize('path', [
    'C:\\saves\\wor|ld',
    'C:\\saves\\what?',
    'C:\\saves\\<world>',
    'C:\\saves\\a:b',
    '1:\\saves',
    'C:\\saves\\con',
    'C:\\saves\\LPT1.txt',
    'C:\\saves\\world.',
    'C:\\saves\\world. ',
])
def test_invalid_windows_paths(path):
    assert not is_valid_path_format(path, windows=True)


def test_directory_without_lock_file_is_free(tmp_path):
    assert not is_archive_in_use(str(tmp_path))


def test_unlocked_lock_file_is_free(tmp_path):
    (tmp_path / SESSION_LOCK_NAME).write_bytes(b'\xe2\x98\x83')

    assert not is_archive_in_use(str(tmp_path))
    assert (tmp_path / SESSION_LOCK_NAME).read_bytes() == b'\xe2\x98\x83'


def test_lock_held_by_another_process(tmp_path):
    lock_path = tmp_path / SESSION_LOCK_NAME
    lock_path.write_bytes(b'')
    holder = subprocess.Popen(
        [sys.executable, '-c', HOLD_LOCK_SCRIPT, str(lock_path)],
        stdout=subprocess.PIPE, text=True,
    )
    try:
        assert holder.stdout.readline().strip() == 'locked'
        assert is_archive_in_use(str(tmp_path))
    finally:
        holder.kill()
        holder.wait(timeout=TIMEOUT)
        holder.stdout.close()

    assert not is_archive_in_use(str(tmp_path))
