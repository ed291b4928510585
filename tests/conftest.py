# tests/conftest.py

from pathlib import Path

import pytest

from vidq.app.manager import TaskManager
from vidq.core.config import ConfigRepository
from vidq.infra.persistence.sqlite import SqliteTaskRepository
from vidq.infra.persistence.task_log import TaskLogStore

from fakes import FakePopenFactory, FakeResolver, RecordingSink


@pytest.fixture()
def download_dir(tmp_path: Path) -> Path:
    path = tmp_path / "downloads"
    path.mkdir()
    return path


@pytest.fixture()
def config(tmp_path: Path, download_dir: Path) -> ConfigRepository:
    cfg = ConfigRepository(tmp_path / "app")
    cfg.set("download_dir", str(download_dir))
    return cfg


@pytest.fixture()
def repo(tmp_path: Path) -> SqliteTaskRepository:
    return SqliteTaskRepository(tmp_path / "app" / "tasks.db")


@pytest.fixture()
def log_store(tmp_path: Path) -> TaskLogStore:
    return TaskLogStore(tmp_path / "app")


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def make_manager(repo, config, log_store, sink):
    """
    Builds a TaskManager over the real sqlite store. Child processes are
    scripted Python interpreters, never the real downloader.
    """
    managers = []

    def factory(popen_factory=None, resolver=None, metadata=None, toolkit=None, start=True):
        manager = TaskManager(
            repo, config, log_store, resolver or FakeResolver(),
            sink=sink,
            metadata=metadata,
            toolkit=toolkit,
            popen_factory=popen_factory or FakePopenFactory(),
            poll_interval=0.05,
            cleanup_delay=0.01,
        )
        manager.load()
        if start:
            manager.start()
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        manager.shutdown(timeout=5)
