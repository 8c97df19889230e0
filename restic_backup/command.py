"""Construction of restic invocations."""

import logging
import os
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from config import ResticSettings
from restic_backup.errors import RepositoryInitError, ResticNotFoundError

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == 'win32'
EXECUTABLE_NAME = 'restic.exe' if IS_WINDOWS else 'restic'

RAW_DATA = 'raw-data'
RESTORE_SIZE = 'restore-size'
STATS_MODES = (RAW_DATA, RESTORE_SIZE)

_ALREADY_INITIALIZED = "config file already exists"


@dataclass
class ResticCommand:
    """A fully configured restic invocation."""
    argv: List[str]
    env: Dict[str, str]
    creationflags: int = 0
    startupinfo: Any = None
    cwd: Optional[str] = None
    description: str = field(default='', compare=False)

    def popen_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for subprocess.Popen / subprocess.run."""
        kwargs: Dict[str, Any] = {
            'env': self.env,
            'stdin': subprocess.DEVNULL,
            'cwd': self.cwd,
        }
        if IS_WINDOWS:
            kwargs['creationflags'] = self.creationflags
            kwargs['startupinfo'] = self.startupinfo
        return kwargs

    def __str__(self):
        return ' '.join(self.argv)


def to_unix_path(path: str) -> str:
    """Convert a Windows path to the form restic uses inside snapshots.

    ``C:\\Saves\\World`` becomes ``/C/Saves/World`` and ``C:`` becomes ``/C``.
    Paths without a drive letter only have their separators normalized.
    """
    unix_path = path.replace('\\', '/')
    if len(unix_path) >= 2 and unix_path[1] == ':' and unix_path[0].isalpha():
        if len(unix_path) == 2:
            return f"/{unix_path[0]}"
        if unix_path[2] == '/':
            return f"/{unix_path[0]}{unix_path[2:]}"
    return unix_path


def _hidden_window_flags():
    """creationflags/startupinfo that keep restic from opening a console."""
    if not IS_WINDOWS:
        return 0, None
    startupinfo = subprocess.STARTUPINFO()
    startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
    startupinfo.wShowWindow = 0  # SW_HIDE
    return subprocess.CREATE_NO_WINDOW, startupinfo


class ResticCommandBuilder:
    """Builds restic commands bound to the configured repository."""

    def __init__(self, settings: ResticSettings):
        self.settings = settings

    @property
    def executable(self) -> Path:
        paths, _ = self.settings.snapshot()
        return Path(paths.bin_dir) / EXECUTABLE_NAME

    def build(self, *args: str, description: str = '') -> ResticCommand:
        """Build ``restic <args>`` with the repository environment set."""
        paths, restic = self.settings.snapshot()

        # Inherited RESTIC_* variables must not override the configured repository.
        env = {k: v for k, v in os.environ.items() if not k.startswith('RESTIC_')}
        env.update({
            'RESTIC_REPOSITORY': str(paths.repository_dir),
            'RESTIC_PASSWORD': restic.password,
            'RESTIC_CACHE_DIR': str(paths.cache_dir),
        })

        creationflags, startupinfo = _hidden_window_flags()
        return ResticCommand(
            argv=[str(Path(paths.bin_dir) / EXECUTABLE_NAME), *args],
            env=env,
            creationflags=creationflags,
            startupinfo=startupinfo,
            description=description or (args[0] if args else ''),
        )

    def backup(self, path: str) -> ResticCommand:
        _, restic = self.settings.snapshot()
        args = ['backup', path, '--json']
        if restic.use_fs_snapshot:
            args.append('--use-fs-snapshot')
            if restic.vss_timeout:
                args.extend(['-o', f'vss.timeout={restic.vss_timeout}'])
        return self.build(*args, description=f'backup {path}')

    def restore(self, snapshot: str, path: str) -> ResticCommand:
        return self.build(
            'restore', '--json',
            f'{snapshot}:{to_unix_path(path)}',
            '--target', path,
            description=f'restore {snapshot}',
        )

    def forget(self, *snapshots: str) -> ResticCommand:
        if not snapshots:
            raise ValueError("At least one snapshot is required")
        return self.build('forget', '--json', '--prune', *snapshots)

    def stats(self, mode: str, *snapshots: str) -> ResticCommand:
        if mode not in STATS_MODES:
            raise ValueError(f"Unknown stats mode: {mode}")
        return self.build('stats', '--json', '--mode', mode, *snapshots)

    def snapshots(self, *snapshot_ids: str) -> ResticCommand:
        return self.build('snapshots', '--json', *snapshot_ids)

    def cat_config(self) -> ResticCommand:
        return self.build('cat', 'config')

    def init(self) -> ResticCommand:
        return self.build('init')


_init_lock = threading.Lock()
_initialized_repositories: Set[str] = set()


def ensure_repository(builder: ResticCommandBuilder,
                      run: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> None:
    """Create the repository unless it already exists.

    Runs once per repository per process. ``restic cat config`` succeeding
    means the repository is ready; otherwise ``restic init`` is run, and an
    "already exists" answer from it is also treated as success.

    Raises:
        ResticNotFoundError: The restic executable is missing.
        RepositoryInitError: The repository could not be initialized.
    """
    paths, _ = builder.settings.snapshot()
    repository = str(paths.repository_dir)

    with _init_lock:
        if repository in _initialized_repositories:
            return

        executable = builder.executable
        if not executable.exists():
            raise ResticNotFoundError(f"restic executable not found: {executable}")

        paths.repository_dir.mkdir(parents=True, exist_ok=True)
        paths.cache_dir.mkdir(parents=True, exist_ok=True)

        check = builder.cat_config()
        result = run(check.argv, capture_output=True, text=True, **check.popen_kwargs())
        if result.returncode == 0:
            logger.info(f"restic repository already exists: {repository}")
            _initialized_repositories.add(repository)
            return

        logger.info(f"Initializing restic repository: {repository}")
        init = builder.init()
        result = run(init.argv, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                     text=True, **init.popen_kwargs())
        output = result.stdout or ''
        if result.returncode != 0 and _ALREADY_INITIALIZED not in output:
            raise RepositoryInitError(
                f"Failed to initialize repository {repository}: {output.strip()}", output
            )

        logger.info("restic repository ready")
        _initialized_repositories.add(repository)
