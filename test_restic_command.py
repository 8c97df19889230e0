"""Tests for restic command construction and repository setup."""

import subprocess
from pathlib import Path

import pytest

from config import ResticSettings
from restic_backup import command as command_module
from restic_backup.command import (
    EXECUTABLE_NAME,
    RAW_DATA,
    ResticCommandBuilder,
    ensure_repository,
    to_unix_path,
)
from restic_backup.errors import RepositoryInitError, ResticNotFoundError


@pytest.fixture
def builder(config):
    config.restic.use_fs_snapshot = False
    return ResticCommandBuilder(ResticSettings(config))


@pytest.fixture(autouse=True)
def forget_initialized_repositories():
    command_module._initialized_repositories.clear()
    yield
    command_module._initialized_repositories.clear()


@pytest.mark.parametrize('path,expected', [
    ('C:\\Saves\\World', '/C/Saves/World'),
    ('D:', '/D'),
    ('C:/Saves', '/C/Saves'),
    ('/home/user/docs', '/home/user/docs'),
    ('relative\\dir', 'relative/dir'),
])
def test_to_unix_path(path, expected):
    assert to_unix_path(path) == expected


def test_environment_points_at_configured_repository(builder, config, monkeypatch):
    monkeypatch.setenv('RESTIC_PASSWORD_FILE', '/elsewhere/password')
    monkeypatch.setenv('RESTIC_REPOSITORY', '/elsewhere/repo')

    cmd = builder.snapshots()

    assert cmd.env['RESTIC_REPOSITORY'] == str(config.paths.repository_dir)
    assert cmd.env['RESTIC_PASSWORD'] == config.restic.password
    assert cmd.env['RESTIC_CACHE_DIR'] == str(config.paths.cache_dir)
    assert 'RESTIC_PASSWORD_FILE' not in cmd.env
    assert cmd.argv[0] == str(Path(config.paths.bin_dir) / EXECUTABLE_NAME)


def test_popen_kwargs_never_read_stdin(builder):
    kwargs = builder.snapshots().popen_kwargs()
    assert kwargs['stdin'] == subprocess.DEVNULL
    assert 'env' in kwargs


def test_backup_arguments(builder):
    assert builder.backup('/data/docs').argv[1:] == ['backup', '/data/docs', '--json']


def test_backup_with_fs_snapshot(config):
    config.restic.use_fs_snapshot = True
    config.restic.vss_timeout = '2m'
    cmd = ResticCommandBuilder(ResticSettings(config)).backup('C:\\Saves')

    assert cmd.argv[1:] == ['backup', 'C:\\Saves', '--json', '--use-fs-snapshot', '-o', 'vss.timeout=2m']


def test_restore_arguments(builder):
    cmd = builder.restore('4f2a1c9e', 'C:\\Saves\\World')

    assert cmd.argv[1:] == [
        'restore', '--json', '4f2a1c9e:/C/Saves/World', '--target', 'C:\\Saves\\World'
    ]


def test_forget_arguments(builder):
    assert builder.forget('a', 'b').argv[1:] == ['forget', '--json', '--prune', 'a', 'b']
    with pytest.raises(ValueError):
        builder.forget()


def test_stats_arguments(builder):
    assert builder.stats(RAW_DATA, 'a').argv[1:] == ['stats', '--json', '--mode', 'raw-data', 'a']
    with pytest.raises(ValueError):
        builder.stats('blobs-per-file')


def test_settings_update_is_picked_up(config, builder):
    new_config = config.model_copy(deep=True)
    new_config.restic.password = 'rotated'
    builder.settings.update(new_config)

    assert builder.build('snapshots').env['RESTIC_PASSWORD'] == 'rotated'


class FakeRun:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def __call__(self, argv, **kwargs):
        self.calls.append(argv[1:])
        returncode, output = self.results.pop(0)
        return subprocess.CompletedProcess(argv, returncode, stdout=output, stderr='')


@pytest.fixture
def executable(builder):
    path = builder.executable
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text('')
    return path


def test_existing_repository_is_not_initialized(builder, executable):
    run = FakeRun((0, '{"version":2}'))
    ensure_repository(builder, run=run)

    assert run.calls == [['cat', 'config']]


def test_missing_repository_is_initialized_once(builder, executable, config):
    run = FakeRun((1, 'Fatal: unable to open config file'), (0, 'created restic repository'))
    ensure_repository(builder, run=run)
    ensure_repository(builder, run=run)

    assert run.calls == [['cat', 'config'], ['init']]
    assert config.paths.repository_dir.is_dir()
    assert config.paths.cache_dir.is_dir()


def test_already_initialized_counts_as_success(builder, executable):
    run = FakeRun((1, ''), (1, 'Fatal: create repository failed: config file already exists'))
    ensure_repository(builder, run=run)

    assert run.calls == [['cat', 'config'], ['init']]


def test_init_failure_raises(builder, executable):
    run = FakeRun((1, ''), (1, 'Fatal: permission denied'))

    with pytest.raises(RepositoryInitError, match='permission denied'):
        ensure_repository(builder, run=run)


def test_missing_executable(builder):
    with pytest.raises(ResticNotFoundError):
        ensure_repository(builder, run=FakeRun())
