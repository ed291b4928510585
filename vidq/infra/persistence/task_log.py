import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


class TaskLogStore:
    """Append-only text log per task, stored as logs/task_<id>.log."""

    def __init__(self, root_path: Path):
        self.log_dir = root_path / "logs"
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def path_for(self, task_id: str) -> Path:
        return self.log_dir / f"task_{task_id}.log"

    def append(self, task_id: str, message: str) -> None:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        line = f"[{timestamp}] {message}\n"
        with self._lock:
            try:
                with open(self.path_for(task_id), 'a', encoding='utf-8') as f:
                    f.write(line)
            except OSError as e:
                logger.warning("Failed to append to log of task %s: %s", task_id, e)

    def read(self, task_id: str) -> List[str]:
        path = self.path_for(task_id)
        if not path.exists():
            return []
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return [line.rstrip("\n") for line in f]

    def delete(self, task_id: str) -> None:
        with self._lock:
            try:
                self.path_for(task_id).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to delete log of task %s: %s", task_id, e)
