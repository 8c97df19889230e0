"""Shared pytest fixtures."""

import logging
import os
import sys

import pytest

from config import create_default_config, load_config
from models import Archive, DatabaseManager, DatabaseService
from restic_backup.command import ResticCommand


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Undo handlers installed by setup_logging() inside a test."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / 'config.json'
    create_default_config(str(path), str(tmp_path / 'home'))
    return path


@pytest.fixture
def config(config_path):
    return load_config(str(config_path))


@pytest.fixture
def db_service(tmp_path):
    db_manager = DatabaseManager(f"sqlite:///{(tmp_path / 'test.sqlite').as_posix()}")
    db_manager.create_tables()
    yield DatabaseService(db_manager)
    db_manager.close()


@pytest.fixture
def make_archive(db_service):
    """Persist an archive directly through the database service."""
    def _make(name='docs', path=None, comment=''):
        return db_service.create_archive(
            Archive(name=name, path=path or f'/data/{name}', comment=comment)
        )
    return _make


@pytest.fixture
def python_command():
    """Build a command that runs ``script`` with the current interpreter."""
    def _command(script: str) -> ResticCommand:
        return ResticCommand(
            argv=[sys.executable, '-c', script],
            env=dict(os.environ),
            description='python',
        )
    return _command
