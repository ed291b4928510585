import sys
import threading
from typing import List

import colorama
from colorama import Fore, Style

from vidq.core.entities import Task, TaskStatus
from vidq.core.interfaces import EventSink

STATUS_COLORS = {
    TaskStatus.PENDING: Fore.WHITE,
    TaskStatus.STARTING: Fore.CYAN,
    TaskStatus.DOWNLOADING: Fore.CYAN,
    TaskStatus.MERGING: Fore.MAGENTA,
    TaskStatus.TRIMMING: Fore.MAGENTA,
    TaskStatus.PAUSED: Fore.YELLOW,
    TaskStatus.COMPLETED: Fore.GREEN,
    TaskStatus.TRIM_FAILED: Fore.RED,
    TaskStatus.ERROR: Fore.RED,
}


def truncate_middle(text: str, max_width: int) -> str:
    """Truncate text from the middle, preserving extension."""
    if len(text) <= max_width:
        return text

    ellipsis = "..."
    if max_width <= len(ellipsis):
        return text[:max_width]

    last_dot = text.rfind('.')
    ext = text[last_dot:] if last_dot > 0 else ""
    base = text[:last_dot] if ext else text

    available = max_width - len(ellipsis)
    if len(ext) >= available:
        return text[:available] + ellipsis

    remaining = available - len(ext)
    start_len = remaining // 2 + remaining % 2
    end_len = remaining // 2
    end = base[len(base) - end_len:] if end_len > 0 else ""
    return base[:start_len] + ellipsis + end + ext


def status_label(status: TaskStatus, width: int = 0) -> str:
    return f"{STATUS_COLORS.get(status, '')}{status.value.ljust(width)}{Style.RESET_ALL}"


def display_order(tasks: List[Task]) -> List[Task]:
    """Top-level tasks in creation order, each playlist followed by its children."""
    children = {}
    for t in tasks:
        if t.parent_id:
            children.setdefault(t.parent_id, []).append(t)
    order = []
    for t in tasks:
        if t.parent_id:
            continue
        order.append(t)
        order += children.pop(t.id, [])
    # orphans whose parent is already gone
    for kids in children.values():
        order += kids
    return order


def format_task_table(tasks: List[Task]) -> List[str]:
    lines = [f"{'#':<4} {'Title':<40} {'State':<12} {'Progress':>8}  {'Size':>10}", "_" * 80]
    for index, t in enumerate(display_order(tasks), start=1):
        indent = "  " if t.parent_id else ""
        title = truncate_middle(indent + (t.title or t.url), 38)
        if t.is_playlist:
            progress = f"{t.current_item}/{t.total_items}"
        else:
            progress = f"{t.progress:.1f}%"
        lines.append(f"{index:<4} {title:<40} {status_label(t.status, 12)} {progress:>8}  {t.total_size:>10}")
    return lines


class ConsoleEventSink(EventSink):
    """
    Prints task transitions and log lines. Percentage lines overwrite each
    other on the same terminal row.
    """

    def __init__(self, stream=None, verbose: bool = False):
        colorama.init()
        self.stream = stream or sys.stdout
        self.verbose = verbose
        self._lock = threading.Lock()
        self._last_status = {}
        self._on_progress_row = False

    def _write(self, text: str, ephemeral: bool = False) -> None:
        with self._lock:
            if ephemeral:
                self.stream.write("\r\033[K" + text)
                self._on_progress_row = True
            else:
                if self._on_progress_row:
                    self.stream.write("\n")
                    self._on_progress_row = False
                self.stream.write(text + "\n")
            self.stream.flush()

    def emit_task_snapshot(self, task: Task) -> None:
        if self._last_status.get(task.id) == task.status:
            return
        self._last_status[task.id] = task.status
        title = truncate_middle(task.title or task.url, 50)
        line = f"[{task.id}] {status_label(task.status)} {title}"
        if task.error_message and task.status in (TaskStatus.ERROR, TaskStatus.TRIM_FAILED):
            line += f" {Fore.RED}({task.error_message}){Style.RESET_ALL}"
        self._write(line)

    def emit_log_line(self, task_id: str, message: str, ephemeral: bool) -> None:
        if ephemeral:
            self._write(f"{Style.DIM}[{task_id}]{Style.RESET_ALL} {message.strip()}", ephemeral=True)
        elif self.verbose:
            self._write(f"{Style.DIM}[{task_id}] {message}{Style.RESET_ALL}")
