"""
Incremental parser for downloader output.

The downloader prints one event per line on two streams. Line categories can
interleave between the streams, so every matcher is tried independently on
every line rather than driving a strict state machine.

Overall progress is byte-weighted across parts:

    progress = 100 * (completed_bytes + current_part_downloaded) / total_bytes

with the raw percentage of the last progress line as a fallback when the total
is unknown.
"""
import os
import re
from dataclasses import dataclass
from typing import Optional

from vidq.core.entities import DownloadFile, Task, TaskStatus
from vidq.utils.format import format_bytes, normalize_path, parse_size

# [download]  25.0% of 10.00MiB at  1.00MiB/s ETA 00:05
# [download]  25.0% of ~  10.00MiB at  1.00MiB/s ETA 00:05 (frag 3/40)
PROGRESS_RE = re.compile(
    r"\[download\]\s+(\d+\.?\d*)%\s+of\s+(~?\s*[\d\.]+\w*)(?:\s+at\s+([~\d\.\w/]+)\s+ETA\s+([\d:]+))?"
)
DESTINATION_RE = re.compile(r"\[download\] Destination: (.+)")
ALREADY_DOWNLOADED_RE = re.compile(r"\[download\] (.+) has already been downloaded")
MERGER_RE = re.compile(r"\[Merger\] Merging formats into \"(.+)\"")
DELETING_RE = re.compile(r"Deleting original file (.+?)(?: \(pass -k to keep\))?$")


def is_progress_line(line: str) -> bool:
    return line.startswith("[download]") and "%" in line


@dataclass
class ProgressAccumulator:
    """Byte counters for one run of the downloader."""
    completed_bytes: int = 0
    current_part_bytes: int = 0
    current_part_downloaded: int = 0
    current_part_path: str = ""
    # first 100% line of the part was written to the text log
    current_part_logged: bool = False
    # part size already counted in completed_bytes
    current_part_settled: bool = False
    last_percent: float = 0.0

    def fold_current(self) -> None:
        if self.current_part_bytes > 0 and not self.current_part_settled:
            self.completed_bytes += self.current_part_bytes
        self.current_part_bytes = 0
        self.current_part_downloaded = 0
        self.current_part_settled = True

    def start_part(self, path: str) -> None:
        self.fold_current()
        self.current_part_path = path
        self.current_part_logged = False
        self.current_part_settled = False

    def settle_existing(self, path: str, size: int) -> None:
        """A part found complete on disk: count its real size exactly once."""
        if self.current_part_path and path != self.current_part_path:
            self.fold_current()
            self.current_part_path = path
            self.current_part_logged = False
        else:
            # discard any estimate taken from a progress line for this part
            self.current_part_path = path
            self.current_part_bytes = 0
            self.current_part_downloaded = 0
        self.completed_bytes += size
        self.current_part_settled = True

    def observe(self, percent: float, size: int) -> None:
        self.last_percent = percent
        if self.current_part_settled or size <= 0:
            return
        self.current_part_bytes = size
        self.current_part_downloaded = int(percent / 100 * size)

    @property
    def downloaded(self) -> int:
        return self.completed_bytes + self.current_part_downloaded

    def progress(self, total_bytes: int) -> float:
        if total_bytes <= 0:
            return self.last_percent
        return max(0.0, min(100.0, self.downloaded / total_bytes * 100))


@dataclass
class ParseResult:
    changed: bool = False
    ephemeral: bool = False
    persist_log: bool = False


class ProgressParser:
    """
    Applies downloader output lines to a task. Not thread-safe: the caller
    feeds lines from both streams while holding the manager lock.
    """

    def __init__(self, task: Task, accumulator: Optional[ProgressAccumulator] = None):
        self.task = task
        self.acc = accumulator or ProgressAccumulator()

    def feed(self, line: str) -> ParseResult:
        line = line.rstrip("\r\n")
        result = ParseResult(ephemeral=is_progress_line(line))
        task = self.task

        m = ALREADY_DOWNLOADED_RE.search(line)
        if m:
            path = normalize_path(task.dir, m.group(1))
            size = self._stat_size(path)
            if size is not None:
                self.acc.settle_existing(path, size)
                self._update_file(path, size, 100.0)
                task.file_path = path
            if task.total_bytes > 0:
                task.progress = self.acc.progress(task.total_bytes)
            result.changed = True

        m = DESTINATION_RE.search(line)
        if m:
            path = normalize_path(task.dir, m.group(1))
            self.acc.start_part(path)
            task.file_path = path
            self._update_file(path, 0, 0.0)
            result.changed = True

        m = MERGER_RE.search(line)
        if m:
            merged = normalize_path(task.dir, m.group(1))
            self.acc.fold_current()
            self.acc.current_part_path = merged
            task.file_path = merged
            self._update_file(merged, 0, 0.0)
            if task.total_bytes > 0:
                task.progress = self.acc.progress(task.total_bytes)
            result.changed = True

        m = DELETING_RE.search(line)
        if m:
            self._remove_file(normalize_path(task.dir, m.group(1)))
            result.changed = True

        if line.startswith("[Merger]") and task.status == TaskStatus.DOWNLOADING:
            task.transition_to(TaskStatus.MERGING)
            result.changed = True

        m = PROGRESS_RE.search(line)
        if m:
            self._apply_progress(m, result)

        return result

    def _apply_progress(self, m, result: ParseResult) -> None:
        task = self.task
        percent = float(m.group(1))
        task.speed = m.group(3) or ""
        task.eta = m.group(4) or ""

        try:
            size = int(parse_size(m.group(2)))
        except ValueError:
            size = 0
        self.acc.observe(percent, size)

        if self.acc.current_part_path:
            part_size = 0 if self.acc.current_part_settled else self.acc.current_part_bytes
            self._update_file(self.acc.current_part_path, part_size, percent)

        task.progress = self.acc.progress(task.total_bytes)

        if percent >= 100 and not self.acc.current_part_logged:
            self.acc.current_part_logged = True
            result.persist_log = True
        result.changed = True

    @staticmethod
    def _stat_size(path: str) -> Optional[int]:
        try:
            return os.stat(path).st_size
        except OSError:
            return None

    def _update_file(self, path: str, size_bytes: int, progress: float) -> None:
        if not path:
            return
        entry = self.task.find_file(path)
        if entry is None:
            entry = DownloadFile(path=path)
            self.task.files.append(entry)
        if size_bytes > 0:
            entry.size_bytes = size_bytes
            entry.size = format_bytes(size_bytes)
        if progress >= 0:
            entry.progress = progress

    def _remove_file(self, path: str) -> None:
        self.task.files = [f for f in self.task.files if f.path != path]
