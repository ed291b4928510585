import copy
import logging
import os
import subprocess
import threading
import time
from typing import Callable, Dict, List, Optional, Set

from vidq.app.runner import RunOutcome, TaskRunner, refresh_file_entries
from vidq.app.scheduler import select_admissions
from vidq.core.config import ConfigRepository
from vidq.core.entities import (
    AddPlaylistTaskInput, AddTaskInput, PAUSABLE_STATUSES, Task, TaskStatus, TrimMode,
)
from vidq.core.errors import InvalidRequestError, PersistenceError, TaskBusyError, TaskNotFoundError
from vidq.core.interfaces import (
    DependencyResolver, EventSink, MediaToolkitAdapter, MetadataFetcher, NullEventSink, TaskObserver,
)
from vidq.core.repositories import TaskRepository
from vidq.infra.persistence.task_log import TaskLogStore
from vidq.utils.format import format_bytes, parse_timestamp

logger = logging.getLogger(__name__)


class TaskManager:
    """
    Owns the task registry. All task state, the cancel-event map and the
    deleted-id set are guarded by one re-entrant lock.

    Scheduling is off until start() is called, so one-shot commands can
    inspect and edit the store without spawning downloads.
    """

    def __init__(
        self,
        repository: TaskRepository,
        config: ConfigRepository,
        log_store: TaskLogStore,
        resolver: DependencyResolver,
        sink: Optional[EventSink] = None,
        metadata: Optional[MetadataFetcher] = None,
        toolkit: Optional[MediaToolkitAdapter] = None,
        popen_factory: Callable[..., subprocess.Popen] = subprocess.Popen,
        poll_interval: float = 0.25,
        cleanup_delay: float = 1.0,
    ):
        self.repository = repository
        self.config = config
        self.log_store = log_store
        self.sink = sink or NullEventSink()
        self.lock = threading.RLock()
        self.runner = TaskRunner(
            self, resolver, config,
            metadata=metadata, toolkit=toolkit,
            popen_factory=popen_factory, poll_interval=poll_interval,
        )
        self.cleanup_delay = cleanup_delay

        self._tasks: Dict[str, Task] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._deleted_ids: Set[str] = set()
        self._observers: List[TaskObserver] = []
        self._started = False

    # --- Lifecycle ---

    def load(self) -> int:
        """Load persisted tasks, demoting any that claim to be running."""
        tasks = self.repository.get_all()
        reconciled = []
        with self.lock:
            for task in tasks:
                if task.reconcile_after_restart():
                    reconciled.append(task)
                refresh_file_entries(task, completed=task.status == TaskStatus.COMPLETED)
                self._tasks[task.id] = task
            for task in reconciled:
                logger.info("Task %s was interrupted, marked paused", task.id)
                self._persist_locked(task)
        return len(tasks)

    def start(self) -> None:
        with self.lock:
            self._started = True
        self.schedule_tasks()

    def shutdown(self, timeout: float = 10.0) -> None:
        """Pause interruptible tasks and wait for runner threads to finish."""
        paused = []
        with self.lock:
            self._started = False
            for task in self._tasks.values():
                if task.status in PAUSABLE_STATUSES:
                    self._cancel_locked(task.id)
                    task.transition_to(TaskStatus.PAUSED)
                    task.speed = ""
                    task.eta = ""
                    self._persist_locked(task)
                    paused.append(task)
            threads = list(self._threads.values())

        for task in paused:
            self.emit_task_update(task)

        deadline = time.monotonic() + timeout
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in threads if t.is_alive()]
        if alive:
            logger.warning("Runners still busy at shutdown: %s", ", ".join(alive))

    def subscribe(self, observer: TaskObserver) -> None:
        with self.lock:
            self._observers.append(observer)

    # --- Create ---

    def create(self, request: AddTaskInput) -> str:
        url = (request.url or "").strip()
        if not url:
            raise InvalidRequestError("URL is empty")
        if request.trim_mode != TrimMode.NONE:
            self._validate_trim(request.trim_start, request.trim_end)

        task = Task(
            url=url,
            dir=request.dir or str(self.config.download_dir),
            quality=request.quality or "best",
            format=request.format or "original",
            format_id=request.format_id,
            title=request.title or url,
            thumbnail=request.thumbnail,
            total_bytes=request.total_bytes,
            total_size=format_bytes(request.total_bytes),
            trim_start=request.trim_start,
            trim_end=request.trim_end,
            trim_mode=request.trim_mode,
        )
        task.log_path = str(self.log_store.path_for(task.id))

        with self.lock:
            self._tasks[task.id] = task
            self._persist_locked(task)
        logger.info("Created task %s for %s", task.id, url)
        self.emit_task_update(task)
        self.schedule_tasks()
        return task.id

    def create_playlist(self, request: AddPlaylistTaskInput) -> str:
        url = (request.url or "").strip()
        if not url:
            raise InvalidRequestError("URL is empty")
        if not request.items:
            raise InvalidRequestError("Playlist has no items")

        directory = request.dir or str(self.config.download_dir)
        parent = Task(
            url=url,
            dir=directory,
            is_playlist=True,
            status=TaskStatus.COMPLETED,
            progress=100.0,
            title=request.title or url,
            thumbnail=request.thumbnail,
            total_size=format_bytes(0),
            playlist_items=[item.index for item in request.items],
            total_items=len(request.items),
            current_item=len(request.items),
        )
        parent.log_path = str(self.log_store.path_for(parent.id))

        children = []
        for i, item in enumerate(request.items):
            child = Task(
                url=item.url,
                id=f"{parent.id}_{i}",
                dir=directory,
                parent_id=parent.id,
                quality="best",
                format="original",
                title=item.title or item.url,
                thumbnail=item.thumbnail,
            )
            child.log_path = str(self.log_store.path_for(child.id))
            children.append(child)

        with self.lock:
            self._tasks[parent.id] = parent
            self._persist_locked(parent)
            for child in children:
                self._tasks[child.id] = child
                self._persist_locked(child)
        logger.info("Created playlist %s with %d items", parent.id, len(children))

        for t in [parent] + children:
            self.emit_task_update(t)
        self.schedule_tasks()
        return parent.id

    @staticmethod
    def _validate_trim(start: str, end: str) -> None:
        if not start and not end:
            raise InvalidRequestError("Trim requested without start or end marker")
        try:
            start_s = parse_timestamp(start) if start else 0.0
            end_s = parse_timestamp(end) if end else None
        except ValueError as e:
            raise InvalidRequestError(str(e)) from e
        if end_s is not None and end_s <= start_s:
            raise InvalidRequestError(f"Trim end {end} must be after start {start or '0'}")

    # --- Queries ---

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def get(self, task_id: str) -> Task:
        with self.lock:
            return copy.deepcopy(self._require(task_id))

    def list(self) -> List[Task]:
        with self.lock:
            tasks = [copy.deepcopy(t) for t in self._tasks.values()]
        tasks.sort(key=lambda t: (t.created_at, t.id))
        return tasks

    def get_task_logs(self, task_id: str) -> List[str]:
        return self.log_store.read(task_id)

    def is_deleted(self, task_id: str) -> bool:
        with self.lock:
            return task_id in self._deleted_ids

    def is_idle(self) -> bool:
        with self.lock:
            if self._threads:
                return False
            return not any(t.status == TaskStatus.PENDING and not t.is_playlist for t in self._tasks.values())

    def wait_idle(self, timeout: Optional[float] = None, interval: float = 0.1) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.is_idle():
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(interval)
        return True

    # --- Control plane ---

    def pause(self, task_id: str) -> bool:
        with self.lock:
            task = self._require(task_id)
            # merging/trimming cannot be interrupted
            if task.status not in PAUSABLE_STATUSES:
                return False
            self._cancel_locked(task_id)
            task.transition_to(TaskStatus.PAUSED)
            task.speed = ""
            task.eta = ""
            self._persist_locked(task)
        logger.info("Paused task %s", task_id)
        self.emit_task_log(task_id, "Paused")
        self.emit_task_update(task)
        self.schedule_tasks()
        return True

    def resume(self, task_id: str) -> bool:
        with self.lock:
            task = self._require(task_id)
            if task.status not in (TaskStatus.PAUSED, TaskStatus.ERROR):
                return False
            task.transition_to(TaskStatus.PENDING)
            task.error_message = None
            self._persist_locked(task)
        self.emit_task_update(task)
        self.schedule_tasks()
        return True

    def retry(self, task_id: str) -> bool:
        with self.lock:
            task = self._require(task_id)
            if task.status not in (TaskStatus.ERROR, TaskStatus.TRIM_FAILED):
                return False
            task.transition_to(TaskStatus.PENDING)
            task.reset_progress()
            self._persist_locked(task)
        self.emit_task_log(task_id, "Retrying from scratch")
        self.emit_task_update(task)
        self.schedule_tasks()
        return True

    def delete(self, task_id: str, delete_artifacts: bool = False) -> List[str]:
        """
        Delete a task plus its cascade. A playlist parent takes all its
        children; the last child of a playlist takes the parent. Returns the
        deleted ids. Raises TaskBusyError, deleting nothing, when any of them
        is merging or trimming.
        """
        with self.lock:
            task = self._require(task_id)
            ids = [task_id]
            if task.is_playlist:
                ids += [t.id for t in self._tasks.values() if t.parent_id == task_id]
            if task.parent_id:
                siblings = [t for t in self._tasks.values() if t.parent_id == task.parent_id and t.id != task_id]
                if not siblings and task.parent_id in self._tasks:
                    ids.append(task.parent_id)

            targets = [self._tasks[i] for i in ids]
            busy = [t for t in targets if t.is_critical]
            if busy:
                raise TaskBusyError(f"Task {busy[0].id} is {busy[0].status.value}, try again later")

            artifacts: List[str] = []
            for t in targets:
                self._cancel_locked(t.id)
                # a runner still owns this id: keep its late events out of the sink
                if t.id in self._threads:
                    self._deleted_ids.add(t.id)
                del self._tasks[t.id]
                if delete_artifacts:
                    artifacts += self._artifact_paths(t)
                try:
                    self.repository.delete(t.id)
                except PersistenceError as e:
                    logger.warning("%s", e)

        for t in targets:
            self.log_store.delete(t.id)
        if artifacts:
            threading.Thread(target=self._async_cleanup, args=(artifacts,), daemon=True).start()
        logger.info("Deleted tasks %s", ", ".join(ids))
        self.schedule_tasks()
        return ids

    @staticmethod
    def _artifact_paths(task: Task) -> List[str]:
        paths = []
        for p in [task.file_path] + [f.path for f in task.files]:
            if p and p not in paths:
                paths += [p, p + ".part", p + ".ytdl"]
        return paths

    def _async_cleanup(self, paths: List[str], retries: int = 10):
        """Delete files with retries (background thread); a dying process may still hold them."""
        remaining = list(paths)
        for _ in range(retries):
            left = []
            for p in remaining:
                try:
                    if os.path.exists(p):
                        os.remove(p)
                except OSError:
                    left.append(p)
            remaining = left
            if not remaining:
                return
            time.sleep(self.cleanup_delay)
        logger.warning("Could not delete %s", ", ".join(remaining))

    def _cancel_locked(self, task_id: str) -> None:
        event = self._cancel_events.pop(task_id, None)
        if event is not None:
            event.set()

    # --- Scheduling ---

    def schedule_tasks(self) -> None:
        """Admit pending tasks while below the concurrency ceiling. Never blocks on a task."""
        to_start = []
        with self.lock:
            if not self._started:
                return
            admitted = select_admissions(
                self._tasks.values(),
                self.config.concurrency_limit,
                is_busy=lambda t: t.id in self._threads,
            )
            for task in admitted:
                task.transition_to(TaskStatus.STARTING)
                event = threading.Event()
                self._cancel_events[task.id] = event
                thread = threading.Thread(
                    target=self.runner.run, args=(task, event),
                    name=f"vidq-task-{task.id}", daemon=True,
                )
                self._threads[task.id] = thread
                to_start.append(thread)
        for thread in to_start:
            thread.start()

    def finish_run(self, task: Task, outcome: RunOutcome) -> None:
        """Called by the runner thread on exit, whatever the outcome."""
        parent = None
        with self.lock:
            self._threads.pop(task.id, None)
            self._cancel_events.pop(task.id, None)
            deleted = task.id in self._deleted_ids
            self._deleted_ids.discard(task.id)
            if not deleted and task.parent_id in self._tasks:
                parent = self._tasks[task.parent_id]
                done = sum(1 for t in self._tasks.values()
                           if t.parent_id == parent.id and t.status == TaskStatus.COMPLETED)
                if parent.current_item != done:
                    parent.current_item = done
                    self._persist_locked(parent)
                else:
                    parent = None
            snapshot = copy.deepcopy(task)

        if parent is not None:
            self.emit_task_update(parent)
        if not deleted and outcome != RunOutcome.CANCELLED:
            self._publish(snapshot)
        self.schedule_tasks()

    def _publish(self, task: Task) -> None:
        with self.lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                if task.status == TaskStatus.COMPLETED:
                    observer.on_task_completed(task)
                elif task.status in (TaskStatus.ERROR, TaskStatus.TRIM_FAILED):
                    observer.on_task_failed(task)
            except Exception:
                logger.exception("Observer %r failed for task %s", observer, task.id)

    # --- Persistence and events ---

    def _persist_locked(self, task: Task) -> None:
        try:
            self.repository.save(task)
        except PersistenceError as e:
            logger.warning("%s", e)

    def save_task(self, task: Task) -> None:
        with self.lock:
            if task.id in self._deleted_ids or task.id not in self._tasks:
                return
            self._persist_locked(task)

    def emit_task_update(self, task: Task) -> None:
        with self.lock:
            if task.id in self._deleted_ids:
                return
            snapshot = copy.deepcopy(task)
        try:
            self.sink.emit_task_snapshot(snapshot)
        except Exception:
            logger.exception("Event sink failed on task %s", task.id)

    def emit_task_log(self, task_id: str, message: str, ephemeral: bool = False) -> None:
        if self.is_deleted(task_id):
            return
        if not ephemeral:
            self.log_store.append(task_id, message)
        try:
            self.sink.emit_log_line(task_id, message, ephemeral)
        except Exception:
            logger.exception("Event sink failed on log line of task %s", task_id)
