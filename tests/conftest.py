"""
Shared pytest fixtures for pg_backup tests.

This module provides fixtures for:
- A temporary backup directory
- A mocked Docker client (container listing, exec)
- Backup settings pointing at the temporary directory
- A helper to create backup files with a given age
"""

import os
import logging
from datetime import datetime
from unittest.mock import MagicMock

import pytest

import pg_backup
from pg_backup import BackupSettings, RetentionPolicy, Target


NOW = datetime(2024, 1, 15, 12, 0, 0)


@pytest.fixture
def now():
    """Fixed 'current time' used by the tests."""
    return NOW


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / 'pg_backups'
    path.mkdir()
    return path


@pytest.fixture
def settings(backup_dir):
    return BackupSettings(
        targets=(Target('app-db', 'postgres'), Target('shop-db', 'shop')),
        backup_dir=backup_dir,
        retention=RetentionPolicy(7),
        command_timeout=30,
    )


@pytest.fixture
def make_container():
    """Build a mock container with a name and a pg_isready exit code."""
    def _make(name, ready_exit_code=0):
        container = MagicMock()
        container.name = name
        container.exec_run.return_value = MagicMock(exit_code=ready_exit_code, output=b'')
        return container
    return _make


@pytest.fixture
def docker_client(make_container):
    """
    Mock docker.DockerClient.

    By default one running container 'app-db' is ready, and pg_dumpall
    streams a small dump and exits 0.
    """
    client = MagicMock()
    container = make_container('app-db')
    client.containers.list.return_value = [container]
    client.containers.get.return_value = container

    client.api.exec_create.return_value = {'Id': 'exec-1'}
    client.api.exec_start.side_effect = lambda *args, **kwargs: iter([
        (b'-- PostgreSQL database cluster dump\n', None),
        (b'CREATE ROLE postgres;\n' * 50, None),
    ])
    client.api.exec_inspect.return_value = {'ExitCode': 0}
    return client


@pytest.fixture
def make_backup(backup_dir, now):
    """Create a file in the backup directory with mtime `age` before now."""
    def _make(filename, age, content=b'data'):
        path = backup_dir / filename
        path.write_bytes(content)
        timestamp = (now - age).timestamp()
        os.utime(path, (timestamp, timestamp))
        return path
    return _make


@pytest.fixture
def info_logs(caplog):
    caplog.set_level(logging.DEBUG, logger='pg_backup')
    return caplog


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by configure_logging during a test."""
    yield
    for handler in pg_backup._installed_handlers:
        pg_backup.logger.removeHandler(handler)
        handler.close()
    pg_backup._installed_handlers.clear()
