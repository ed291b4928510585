from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional
from pathlib import Path

from .entities import PlaylistItem, Task


@dataclass
class FormatChoice:
    """A downloader format selector together with its expected byte count."""
    label: str
    format_id: str
    video_bytes: int = 0
    audio_bytes: int = 0

    @property
    def total_bytes(self) -> int:
        return self.video_bytes + self.audio_bytes


@dataclass
class MediaInfo:
    title: str = ""
    thumbnail: str = ""
    duration: float = 0.0
    formats: List[FormatChoice] = field(default_factory=list)  # best first
    is_playlist: bool = False
    entries: List[PlaylistItem] = field(default_factory=list)

    @property
    def best(self) -> Optional[FormatChoice]:
        return self.formats[0] if self.formats else None


class EventSink(ABC):
    """Receives task snapshots and log lines for display."""

    @abstractmethod
    def emit_task_snapshot(self, task: Task) -> None:
        pass

    @abstractmethod
    def emit_log_line(self, task_id: str, message: str, ephemeral: bool) -> None:
        """`ephemeral` lines (percentage updates) may overwrite the previous one."""
        pass


class NullEventSink(EventSink):
    def emit_task_snapshot(self, task: Task) -> None:
        pass

    def emit_log_line(self, task_id: str, message: str, ephemeral: bool) -> None:
        pass


class DependencyResolver(ABC):
    @abstractmethod
    def resolve_downloader_path(self) -> str:
        """Absolute path of the downloader executable. Raises ResolutionError."""
        pass

    @abstractmethod
    def resolve_media_toolkit_path(self) -> str:
        """Absolute path of the media toolkit executable. Raises ResolutionError."""
        pass


class MetadataFetcher(ABC):
    @abstractmethod
    def fetch(self, url: str) -> MediaInfo:
        """Metadata of a single item, formats sorted best first."""
        pass

    @abstractmethod
    def fetch_playlist(self, url: str) -> MediaInfo:
        """Flat playlist listing (entries only, no per-item formats)."""
        pass


class MediaToolkitAdapter(ABC):
    @abstractmethod
    def probe_duration(self, path: Path) -> float:
        pass

    @abstractmethod
    def extract_clip(self, source: Path, start: str, end: str, target: Path) -> None:
        """Stream-copy [start, end] of `source` into `target`. Raises TrimError."""
        pass


class TaskObserver:
    """
    Completion hooks for collaborators outside the engine (feed items, library
    entries). Called after the terminal state has been persisted; exceptions are
    logged and never affect the task.
    """

    def on_task_completed(self, task: Task) -> None:
        pass

    def on_task_failed(self, task: Task) -> None:
        pass
