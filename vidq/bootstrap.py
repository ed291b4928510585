import os
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from vidq.app.commands import (
    CommandBus, AddTask, AddPlaylist, ListTasks, PauseTask, ResumeTask, RetryTask, RemoveTask, ShowLogs,
)
from vidq.app.manager import TaskManager
from vidq.core.config import ConfigRepository
from vidq.core.entities import AddPlaylistTaskInput, AddTaskInput
from vidq.core.interfaces import EventSink
from vidq.infra.deps import PathDependencyResolver
from vidq.infra.media.ffmpeg import MediaToolkit
from vidq.infra.media.metadata import YtDlpMetadataFetcher
from vidq.infra.persistence.sqlite import SqliteTaskRepository
from vidq.infra.persistence.task_log import TaskLogStore
from vidq.interface.console import display_order

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_app_dir() -> Path:
    """$VIDQ_HOME (a .env file is honoured) or ~/.vidq."""
    load_dotenv()
    root = os.environ.get("VIDQ_HOME")
    return Path(root).expanduser() if root else Path.home() / ".vidq"


def setup_logging(app_dir: Path, level: int = logging.INFO) -> None:
    app_dir.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(level)

    file_handler = logging.FileHandler(app_dir / "vidq.log", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)

    # keep the terminal for task output
    console = logging.StreamHandler()
    console.setLevel(logging.WARNING)
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    root.addHandler(console)

    # yt_dlp and urllib3 are chatty at INFO
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def create_container(app_dir: Optional[Path] = None, sink: Optional[EventSink] = None) -> dict:
    app_dir = app_dir or get_app_dir()
    app_dir.mkdir(parents=True, exist_ok=True)

    # 1. Config
    config = ConfigRepository(app_dir)

    # 2. Infra
    repo = SqliteTaskRepository(app_dir / "tasks.db")
    migrated = repo.migrate_from_json(app_dir / "tasks.json")
    if migrated:
        logger.info("Imported %d tasks from legacy store", migrated)
    log_store = TaskLogStore(app_dir)
    resolver = PathDependencyResolver(config, bin_dir=app_dir / "bin")
    metadata = YtDlpMetadataFetcher(config)
    toolkit = MediaToolkit(resolver)

    # 3. Engine
    manager = TaskManager(
        repo, config, log_store, resolver,
        sink=sink, metadata=metadata, toolkit=toolkit,
    )
    manager.load()

    def resolve_task_id(selector: str) -> str:
        """A list index (as printed by 'ls') or a task id."""
        if selector.isdigit() and len(selector) < 10:
            order = display_order(manager.list())
            index = int(selector)
            if 1 <= index <= len(order):
                return order[index - 1].id
            raise ValueError(f"No task at index {index}")
        return selector

    # 4. Handlers
    def handle_add_task(cmd: AddTask):
        return manager.create(AddTaskInput(
            url=cmd.url,
            quality=cmd.quality,
            format=cmd.format,
            format_id=cmd.format_id,
            dir=cmd.dir,
            title=cmd.title,
            trim_start=cmd.trim_start,
            trim_end=cmd.trim_end,
            trim_mode=cmd.trim_mode,
        ))

    def handle_add_playlist(cmd: AddPlaylist):
        info = metadata.fetch_playlist(cmd.url)
        if not info.is_playlist:
            return manager.create(AddTaskInput(url=cmd.url, dir=cmd.dir, title=info.title, thumbnail=info.thumbnail))
        return manager.create_playlist(AddPlaylistTaskInput(
            url=cmd.url,
            dir=cmd.dir,
            title=info.title,
            thumbnail=info.thumbnail,
            items=info.entries,
        ))

    def handle_list_tasks(cmd: ListTasks):
        return display_order(manager.list())

    def handle_pause_task(cmd: PauseTask):
        return manager.pause(resolve_task_id(cmd.id))

    def handle_resume_task(cmd: ResumeTask):
        return manager.resume(resolve_task_id(cmd.id))

    def handle_retry_task(cmd: RetryTask):
        return manager.retry(resolve_task_id(cmd.id))

    def handle_remove_task(cmd: RemoveTask):
        return manager.delete(resolve_task_id(cmd.id), delete_artifacts=cmd.delete_files)

    def handle_show_logs(cmd: ShowLogs):
        return manager.get_task_logs(resolve_task_id(cmd.id))

    # 5. Bus
    bus = CommandBus()
    bus.register(AddTask, handle_add_task)
    bus.register(AddPlaylist, handle_add_playlist)
    bus.register(ListTasks, handle_list_tasks)
    bus.register(PauseTask, handle_pause_task)
    bus.register(ResumeTask, handle_resume_task)
    bus.register(RetryTask, handle_retry_task)
    bus.register(RemoveTask, handle_remove_task)
    bus.register(ShowLogs, handle_show_logs)

    return {
        "bus": bus,
        "manager": manager,
        "config": config,
        "app_dir": app_dir,
        "resolve_task_id": resolve_task_id,
    }
