from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from datetime import datetime
import threading
import time

from vidq.core.errors import InvalidTransitionError


class TaskStatus(Enum):
    PENDING = "pending"
    STARTING = "starting"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    TRIMMING = "trimming"
    PAUSED = "paused"
    COMPLETED = "completed"
    TRIM_FAILED = "trim_failed"
    ERROR = "error"


# Statuses counted against the concurrency ceiling.
ACTIVE_STATUSES: FrozenSet[TaskStatus] = frozenset({
    TaskStatus.STARTING,
    TaskStatus.DOWNLOADING,
    TaskStatus.MERGING,
    TaskStatus.TRIMMING,
})

# Non-interruptible sub-stages: no pause, no delete.
CRITICAL_STATUSES: FrozenSet[TaskStatus] = frozenset({
    TaskStatus.MERGING,
    TaskStatus.TRIMMING,
})

PAUSABLE_STATUSES: FrozenSet[TaskStatus] = frozenset({
    TaskStatus.STARTING,
    TaskStatus.DOWNLOADING,
})

TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.STARTING}),
    TaskStatus.STARTING: frozenset({
        TaskStatus.DOWNLOADING, TaskStatus.PAUSED, TaskStatus.ERROR,
    }),
    TaskStatus.DOWNLOADING: frozenset({
        TaskStatus.MERGING, TaskStatus.TRIMMING, TaskStatus.PAUSED, TaskStatus.COMPLETED, TaskStatus.ERROR,
    }),
    TaskStatus.MERGING: frozenset({TaskStatus.TRIMMING, TaskStatus.COMPLETED, TaskStatus.ERROR}),
    TaskStatus.TRIMMING: frozenset({TaskStatus.COMPLETED, TaskStatus.TRIM_FAILED}),
    TaskStatus.PAUSED: frozenset({TaskStatus.PENDING}),
    TaskStatus.ERROR: frozenset({TaskStatus.PENDING}),
    TaskStatus.TRIM_FAILED: frozenset({TaskStatus.PENDING}),
}


class TrimMode(Enum):
    NONE = "none"
    OVERWRITE = "overwrite"
    KEEP_BOTH = "keep_both"


_id_lock = threading.Lock()
_last_id = 0


def new_task_id() -> str:
    """Time-ordered unique id (nanosecond clock, strictly increasing per process)."""
    global _last_id
    with _id_lock:
        now = time.time_ns()
        if now <= _last_id:
            now = _last_id + 1
        _last_id = now
        return str(now)


@dataclass
class DownloadFile:
    """One output part (or the merged output) of a task."""
    path: str
    size: str = ""
    size_bytes: int = 0
    progress: float = 0.0

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "size": self.size,
            "size_bytes": self.size_bytes,
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DownloadFile":
        return cls(
            path=data.get("path", ""),
            size=data.get("size", ""),
            size_bytes=int(data.get("size_bytes") or 0),
            progress=float(data.get("progress") or 0.0),
        )


@dataclass
class PlaylistItem:
    url: str
    index: int = 0
    title: str = ""
    thumbnail: str = ""
    duration: float = 0.0


@dataclass
class AddTaskInput:
    url: str
    quality: str = "best"
    format: str = "original"
    format_id: str = ""
    dir: str = ""
    title: str = ""
    thumbnail: str = ""
    total_bytes: int = 0
    trim_start: str = ""
    trim_end: str = ""
    trim_mode: TrimMode = TrimMode.NONE


@dataclass
class AddPlaylistTaskInput:
    url: str
    dir: str = ""
    title: str = ""
    thumbnail: str = ""
    items: List[PlaylistItem] = field(default_factory=list)


@dataclass
class Task:
    """Aggregate root for one requested download (and its optional trim)."""
    url: str
    id: str = field(default_factory=new_task_id)
    dir: str = ""
    quality: str = "best"
    format: str = "original"
    format_id: str = ""
    parent_id: str = ""
    is_playlist: bool = False
    playlist_items: List[int] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    progress: float = 0.0
    title: str = ""
    thumbnail: str = ""
    total_size: str = ""
    speed: str = ""
    eta: str = ""
    current_item: int = 1
    total_items: int = 1
    log_path: str = ""
    file_exists: bool = False
    file_path: str = ""
    total_bytes: int = 0
    files: List[DownloadFile] = field(default_factory=list)
    trim_start: str = ""
    trim_end: str = ""
    trim_mode: TrimMode = TrimMode.NONE
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_critical(self) -> bool:
        return self.status in CRITICAL_STATUSES

    @property
    def wants_trim(self) -> bool:
        return self.trim_mode != TrimMode.NONE and bool(self.trim_start or self.trim_end)

    def can_transition_to(self, status: TaskStatus) -> bool:
        return status in TRANSITIONS.get(self.status, frozenset())

    def transition_to(self, status: TaskStatus) -> None:
        if not self.can_transition_to(status):
            raise InvalidTransitionError(
                f"Task {self.id}: {self.status.value} -> {status.value} is not allowed"
            )
        self.status = status

    def fail(self, message: str) -> None:
        self.transition_to(TaskStatus.ERROR)
        self.error_message = message

    def complete(self) -> None:
        self.transition_to(TaskStatus.COMPLETED)
        self.progress = 100.0

    def reset_progress(self) -> None:
        """Reset all progress-related fields for a fresh start."""
        self.progress = 0.0
        self.speed = ""
        self.eta = ""
        self.error_message = None
        self.files = []
        self.file_exists = False

    def reconcile_after_restart(self) -> bool:
        """Demote a status frozen by an unclean shutdown. Returns True if changed."""
        if self.status in ACTIVE_STATUSES:
            self.status = TaskStatus.PAUSED
            self.speed = ""
            self.eta = ""
            return True
        return False

    def find_file(self, path: str) -> Optional[DownloadFile]:
        for f in self.files:
            if f.path == path:
                return f
        return None
