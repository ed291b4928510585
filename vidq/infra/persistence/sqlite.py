import sqlite3
import json
import logging
import threading
from typing import List, Optional
from pathlib import Path
from datetime import datetime as dt
from vidq.core.entities import Task, TaskStatus, TrimMode, DownloadFile
from vidq.core.errors import PersistenceError
from vidq.core.repositories import TaskRepository

logger = logging.getLogger(__name__)

# Columns added after the first release. Older databases get them via ALTER TABLE
# and rows written before the migration load with the defaults below.
_ADDED_COLUMNS = [
    ("trim_start", "TEXT"),
    ("trim_end", "TEXT"),
    ("trim_mode", "TEXT"),
    ("error_message", "TEXT"),
    ("created_at", "TEXT"),
]


class SqliteTaskRepository(TaskRepository):
    def __init__(self, db_path: Path):
        self.db_path = db_path.resolve()
        # sqlite3 connections are per call; this only orders writers inside the process
        self._write_lock = threading.Lock()
        self._ensure_db_exists()

    def _ensure_db_exists(self):
        """Ensure database and table exist before any operation."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path))
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    url TEXT,
                    dir TEXT,
                    quality TEXT,
                    format TEXT,
                    format_id TEXT,
                    parent_id TEXT,
                    is_playlist INTEGER,
                    status TEXT,
                    progress REAL,
                    title TEXT,
                    thumbnail TEXT,
                    total_size TEXT,
                    speed TEXT,
                    eta TEXT,
                    current_item INTEGER,
                    total_items INTEGER,
                    log_path TEXT,
                    file_exists INTEGER,
                    file_path TEXT,
                    total_bytes INTEGER,
                    files TEXT,
                    playlist_items TEXT
                )
            """)
            conn.commit()

            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            conn.commit()

            # Check for missing columns and add them
            cursor.execute("PRAGMA table_info(tasks)")
            columns = [info[1] for info in cursor.fetchall()]
            for name, decl in _ADDED_COLUMNS:
                if name not in columns:
                    cursor.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot initialise {self.db_path}: {e}") from e
        finally:
            conn.close()

    def _get_connection(self):
        return sqlite3.connect(str(self.db_path))

    def save(self, task: Task) -> None:
        files_json = json.dumps([f.to_dict() for f in task.files])
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    INSERT OR REPLACE INTO tasks (
                        id, url, dir, quality, format, format_id, parent_id, is_playlist,
                        status, progress, title, thumbnail, total_size, speed, eta,
                        current_item, total_items, log_path, file_exists, file_path,
                        total_bytes, files, playlist_items, trim_start, trim_end, trim_mode,
                        error_message, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    task.id,
                    task.url,
                    task.dir,
                    task.quality,
                    task.format,
                    task.format_id,
                    task.parent_id,
                    1 if task.is_playlist else 0,
                    task.status.value,
                    task.progress,
                    task.title,
                    task.thumbnail,
                    task.total_size,
                    task.speed,
                    task.eta,
                    task.current_item,
                    task.total_items,
                    task.log_path,
                    1 if task.file_exists else 0,
                    task.file_path,
                    task.total_bytes,
                    files_json,
                    json.dumps(task.playlist_items),
                    task.trim_start,
                    task.trim_end,
                    task.trim_mode.value,
                    task.error_message,
                    task.created_at.isoformat(),
                ))
                conn.commit()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to save task {task.id}: {e}") from e
            finally:
                conn.close()

    def get(self, task_id: str) -> Optional[Task]:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
            row = cursor.fetchone()
            if not row:
                return None
            cols = [c[0] for c in cursor.description]
            return self._row_to_entity(row, cols)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to load task {task_id}: {e}") from e
        finally:
            conn.close()

    def get_all(self) -> List[Task]:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM tasks")
            rows = cursor.fetchall()
            if not rows:
                return []
            cols = [c[0] for c in cursor.description]
            tasks = []
            for row in rows:
                try:
                    tasks.append(self._row_to_entity(row, cols))
                except (ValueError, KeyError) as e:
                    logger.warning("Skipping unreadable task row %r: %s", row[0], e)
            tasks.sort(key=lambda t: t.created_at)
            return tasks
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to query tasks: {e}") from e
        finally:
            conn.close()

    def delete(self, task_id: str) -> None:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
                conn.commit()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to delete task {task_id}: {e}") from e
            finally:
                conn.close()

    def count(self) -> int:
        conn = self._get_connection()
        try:
            return conn.execute("SELECT COUNT(*) FROM tasks").fetchone()[0]
        finally:
            conn.close()

    def migrate_from_json(self, json_path: Path) -> int:
        """
        One-off import of a legacy tasks.json store (a mapping of id -> task
        record). Runs only while the table is empty; the file is renamed to
        '.bak' afterwards. Returns the number of imported tasks.
        """
        if not json_path.exists() or self.count() > 0:
            return 0

        try:
            with open(json_path, 'r', encoding='utf-8') as f:
                records = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Failed to read legacy store %s: %s", json_path, e)
            return 0

        imported = 0
        for record in (records or {}).values():
            try:
                self.save(self._dict_to_entity(record))
                imported += 1
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping legacy record %r: %s", record.get("id"), e)

        backup = json_path.with_name(json_path.name + ".bak")
        try:
            json_path.rename(backup)
        except OSError as e:
            logger.warning("Failed to rename %s: %s", json_path, e)
        logger.info("Migrated %d tasks from %s", imported, json_path)
        return imported

    def _row_to_entity(self, row, cols) -> Task:
        # Map by name since schema might evolve
        return self._dict_to_entity(dict(zip(cols, row)))

    @staticmethod
    def _dict_to_entity(data: dict) -> Task:
        files_data = data.get("files")
        if isinstance(files_data, str):
            files_data = json.loads(files_data) if files_data else []
        playlist_items = data.get("playlist_items")
        if isinstance(playlist_items, str):
            playlist_items = json.loads(playlist_items) if playlist_items else []

        t = Task(url=data.get("url") or "", id=str(data["id"]))
        t.dir = data.get("dir") or ""
        t.quality = data.get("quality") or "best"
        t.format = data.get("format") or "original"
        t.format_id = data.get("format_id") or ""
        t.parent_id = data.get("parent_id") or ""
        t.is_playlist = bool(data.get("is_playlist"))
        t.playlist_items = list(playlist_items or [])
        t.status = TaskStatus(data.get("status") or TaskStatus.PENDING.value)
        t.progress = float(data.get("progress") or 0.0)
        t.title = data.get("title") or ""
        t.thumbnail = data.get("thumbnail") or ""
        t.total_size = data.get("total_size") or ""
        t.speed = data.get("speed") or ""
        t.eta = data.get("eta") or ""
        t.current_item = int(data.get("current_item") or 0)
        t.total_items = int(data.get("total_items") or 0)
        t.log_path = data.get("log_path") or ""
        t.file_exists = bool(data.get("file_exists"))
        t.file_path = data.get("file_path") or ""
        t.total_bytes = int(data.get("total_bytes") or 0)
        t.files = [DownloadFile.from_dict(f) for f in (files_data or [])]
        t.trim_start = data.get("trim_start") or ""
        t.trim_end = data.get("trim_end") or ""
        t.trim_mode = TrimMode(data.get("trim_mode") or TrimMode.NONE.value)
        t.error_message = data.get("error_message")
        created_at = data.get("created_at")
        if created_at:
            try:
                t.created_at = dt.fromisoformat(created_at)
            except ValueError:
                logger.debug("Task %s has a malformed created_at %r", t.id, created_at)
        return t
