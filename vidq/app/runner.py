import os
import logging
import subprocess
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, TYPE_CHECKING

from vidq.app.arguments import build_downloader_args
from vidq.app.progress import ParseResult, ProgressParser, is_progress_line
from vidq.app.trim import trim_download
from vidq.core.config import ConfigRepository
from vidq.core.entities import Task, TaskStatus, TrimMode, DownloadFile
from vidq.core.errors import LaunchError, MetadataError, ProcessExitError, ResolutionError, TrimError
from vidq.core.interfaces import DependencyResolver, MediaToolkitAdapter, MetadataFetcher
from vidq.infra.process import terminate_process_tree
from vidq.utils.format import format_bytes, normalize_path

if TYPE_CHECKING:
    from vidq.app.manager import TaskManager

logger = logging.getLogger(__name__)

# yt-dlp exits with 101 when --max-downloads (or a similar self-imposed limit) stops it
LIMIT_REACHED_EXIT_CODE = 101


class RunOutcome(Enum):
    COMPLETED = "completed"
    LIMIT_REACHED = "limit_reached"
    CANCELLED = "cancelled"
    FAILED = "failed"


def refresh_file_entries(task: Task, completed: bool) -> None:
    """Re-probe every known output file on disk and recompute file_exists."""
    if completed and task.file_path and task.find_file(task.file_path) is None:
        task.files.append(DownloadFile(path=task.file_path))

    task.file_exists = False
    for entry in task.files:
        if entry.path:
            entry.path = normalize_path(task.dir, entry.path)
        try:
            size = os.stat(entry.path).st_size
        except OSError:
            continue
        entry.size_bytes = size
        entry.size = format_bytes(size)
        if completed:
            entry.progress = 100.0
            task.file_exists = True

    if completed and not task.file_exists and task.file_path:
        task.file_exists = os.path.exists(task.file_path)


class TaskRunner:
    """
    Runs one task: pre-flight, downloader process with two reader threads,
    exit classification and the optional trim stage.

    Every write to the task goes through the manager lock. Once the task's
    cancel event is set (pause or delete), the runner stops mutating the task
    and only drains the process output.
    """

    def __init__(
        self,
        manager: "TaskManager",
        resolver: DependencyResolver,
        config: ConfigRepository,
        metadata: Optional[MetadataFetcher] = None,
        toolkit: Optional[MediaToolkitAdapter] = None,
        popen_factory: Callable[..., subprocess.Popen] = subprocess.Popen,
        poll_interval: float = 0.25,
    ):
        self.manager = manager
        self.resolver = resolver
        self.config = config
        self.metadata = metadata
        self.toolkit = toolkit
        self.popen_factory = popen_factory
        self.poll_interval = poll_interval

    @property
    def lock(self):
        return self.manager.lock

    def run(self, task: Task, cancel_event: threading.Event) -> RunOutcome:
        """Thread entry point. Never raises."""
        outcome = RunOutcome.FAILED
        try:
            outcome = self._run(task, cancel_event)
        except Exception as e:
            logger.exception("Runner for task %s crashed", task.id)
            with self.lock:
                if task.status == TaskStatus.TRIMMING:
                    task.transition_to(TaskStatus.TRIM_FAILED)
                    task.error_message = str(e)
                elif task.status in (TaskStatus.STARTING, TaskStatus.DOWNLOADING, TaskStatus.MERGING) \
                        and not cancel_event.is_set():
                    task.fail(f"Internal error: {e}")
            self.manager.emit_task_log(task.id, f"Error: {e}")
            self.manager.save_task(task)
            self.manager.emit_task_update(task)
        finally:
            self.manager.finish_run(task, outcome)
        return outcome

    def _run(self, task: Task, cancel_event: threading.Event) -> RunOutcome:
        if cancel_event.is_set():
            return RunOutcome.CANCELLED

        with self.lock:
            task.speed = ""
            task.eta = ""
        self.manager.emit_task_log(task.id, "Starting download engine...")
        self.manager.save_task(task)
        self.manager.emit_task_update(task)

        try:
            downloader = self.resolver.resolve_downloader_path()
            media_toolkit = self.resolver.resolve_media_toolkit_path()
        except ResolutionError as e:
            return self._fail(task, cancel_event, f"Error: {e}")

        if not task.format_id and task.quality in ("", "best"):
            self._preflight(task, cancel_event)
            if cancel_event.is_set():
                return RunOutcome.CANCELLED

        with self.lock:
            cmd = [downloader] + build_downloader_args(task, self.config, media_toolkit)
        os.makedirs(task.dir, exist_ok=True)

        try:
            proc = self._spawn(cmd)
        except LaunchError as e:
            return self._fail(task, cancel_event, f"Start Error: {e}")

        logger.info("Task %s: spawned pid %s", task.id, proc.pid)
        with self.lock:
            if not cancel_event.is_set() and task.status == TaskStatus.STARTING:
                task.transition_to(TaskStatus.DOWNLOADING)
        self.manager.emit_task_log(task.id, "Download engine started, parsing output...")
        self.manager.save_task(task)
        self.manager.emit_task_update(task)

        parser = ProgressParser(task)
        readers = [
            threading.Thread(
                target=self._read_stream, args=(task, parser, stream, cancel_event),
                name=f"vidq-{name}-{task.id}", daemon=True,
            )
            for name, stream in (("stdout", proc.stdout), ("stderr", proc.stderr))
        ]
        for r in readers:
            r.start()

        while proc.poll() is None:
            if cancel_event.wait(self.poll_interval):
                logger.info("Task %s: cancellation requested, stopping pid %s", task.id, proc.pid)
                terminate_process_tree(proc)
                break
        returncode = proc.wait()
        for r in readers:
            r.join()

        outcome = self._classify(task, cancel_event, returncode)
        logger.info("Task %s: exit code %s -> %s", task.id, returncode, outcome.value)
        if outcome == RunOutcome.CANCELLED:
            return outcome
        if outcome == RunOutcome.FAILED:
            err = ProcessExitError(returncode)
            return self._fail(task, cancel_event, f"Exit Error: {err}")

        # the trim stage is entered under the same lock that ends the download,
        # so the task never leaves the active set in between
        with self.lock:
            if cancel_event.is_set() or self.manager.is_deleted(task.id):
                return RunOutcome.CANCELLED
            trimming = outcome == RunOutcome.COMPLETED and task.wants_trim
            task.speed = ""
            task.eta = ""
            refresh_file_entries(task, completed=True)
            if trimming:
                task.progress = 100.0
                task.transition_to(TaskStatus.TRIMMING)
            else:
                task.complete()
        if outcome == RunOutcome.LIMIT_REACHED:
            self.manager.emit_task_log(task.id, "Download limit reached (expected)")
        else:
            self.manager.emit_task_log(task.id, "Download completed")

        if trimming:
            self._trim(task)

        self.manager.save_task(task)
        self.manager.emit_task_update(task)
        return outcome

    def _spawn(self, cmd) -> subprocess.Popen:
        try:
            return self.popen_factory(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise LaunchError(str(e)) from e

    def _preflight(self, task: Task, cancel_event: threading.Event) -> None:
        """Pick the best available format before spawning. Falls back to the default selector."""
        if self.metadata is None:
            return
        self.manager.emit_task_log(task.id, "Fetching media info to select the best resolution...")
        try:
            info = self.metadata.fetch(task.url)
        except MetadataError as e:
            logger.warning("Task %s: metadata fetch failed: %s", task.id, e)
            self.manager.emit_task_log(task.id, f"Could not fetch media info ({e}), using default best format")
            return

        best = info.best
        if best is None or not best.format_id:
            self.manager.emit_task_log(task.id, "No format list available, using default best format")
            return
        if not best.video_bytes:
            # sized video formats are missing (common for HLS/DASH), only audio was ranked
            self.manager.emit_task_log(task.id, "No sized video format found, using default best format")
            return

        with self.lock:
            if cancel_event.is_set():
                return
            task.format_id = best.format_id
            task.total_bytes = best.total_bytes
            task.total_size = format_bytes(best.total_bytes)
            if not task.title or task.title == task.url:
                task.title = info.title or task.title
            if not task.thumbnail:
                task.thumbnail = info.thumbnail
        self.manager.emit_task_log(
            task.id, f"Selected best resolution: {best.label} ({format_bytes(best.total_bytes)})"
        )
        self.manager.save_task(task)
        self.manager.emit_task_update(task)

    def _read_stream(self, task: Task, parser: ProgressParser, stream, cancel_event: threading.Event) -> None:
        for raw in stream:
            line = raw.rstrip("\r\n")
            if not line:
                continue
            with self.lock:
                if cancel_event.is_set() or self.manager.is_deleted(task.id):
                    result = ParseResult(ephemeral=is_progress_line(line))
                else:
                    try:
                        result = parser.feed(line)
                    except Exception:
                        logger.exception("Task %s: failed to parse line %r", task.id, line)
                        result = ParseResult()
            self.manager.emit_task_log(task.id, line, result.ephemeral and not result.persist_log)
            if result.changed:
                self.manager.emit_task_update(task)
        stream.close()

    def _classify(self, task: Task, cancel_event: threading.Event, returncode: int) -> RunOutcome:
        with self.lock:
            cancelled = (
                cancel_event.is_set()
                or self.manager.is_deleted(task.id)
                or task.status == TaskStatus.PAUSED
            )
        if cancelled:
            return RunOutcome.CANCELLED
        if returncode == 0:
            return RunOutcome.COMPLETED
        if returncode == LIMIT_REACHED_EXIT_CODE:
            return RunOutcome.LIMIT_REACHED
        return RunOutcome.FAILED

    def _fail(self, task: Task, cancel_event: threading.Event, message: str) -> RunOutcome:
        with self.lock:
            if cancel_event.is_set() or task.status == TaskStatus.PAUSED:
                return RunOutcome.CANCELLED
            task.fail(message)
        logger.warning("Task %s failed: %s", task.id, message)
        self.manager.emit_task_log(task.id, message)
        self.manager.save_task(task)
        self.manager.emit_task_update(task)
        return RunOutcome.FAILED

    def _trim(self, task: Task) -> None:
        """Runs with the task already in TRIMMING; ends in COMPLETED or TRIM_FAILED."""
        self.manager.emit_task_log(
            task.id, f"Trimming {task.trim_start or '0'} - {task.trim_end or 'end'} ({task.trim_mode.value})"
        )
        self.manager.save_task(task)
        self.manager.emit_task_update(task)

        try:
            if self.toolkit is None:
                raise TrimError("Media toolkit is not available")
            target = trim_download(task, self.toolkit)
        except TrimError as e:
            with self.lock:
                task.transition_to(TaskStatus.TRIM_FAILED)
                task.error_message = str(e)
            logger.warning("Task %s: trim failed: %s", task.id, e)
            self.manager.emit_task_log(task.id, f"Trim Error: {e}")
            return

        with self.lock:
            if task.trim_mode == TrimMode.KEEP_BOTH:
                task.files.append(DownloadFile(path=str(target)))
            refresh_file_entries(task, completed=True)
            task.transition_to(TaskStatus.COMPLETED)
        self.manager.emit_task_log(task.id, f"Trim completed: {Path(target).name}")
