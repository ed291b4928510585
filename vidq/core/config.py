import json
import logging
import threading
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3

DEFAULTS = {
    "concurrency_limit": DEFAULT_CONCURRENCY,
    "download_dir": None,
    "max_download_speed": None,  # MB/s
    "proxy_url": "",
    "user_agent": "",
    "referer": "",
    "geo_bypass": True,
    "cookie": {"enabled": False, "source": "", "browser": "", "file": ""},
    "ytdlp_path": "",
    "ffmpeg_path": "",
}


def default_download_dir() -> Path:
    return Path.home() / "Downloads"


class ConfigRepository:
    """
    Manages application settings.
    Saves to 'config.json' in the app directory.
    """
    def __init__(self, root_path: Path):
        root_path.mkdir(parents=True, exist_ok=True)
        self.config_path = root_path / "config.json"
        self._lock = threading.RLock()
        self._cache = {}
        self._load()

    def _load(self):
        if not self.config_path.exists():
            self._cache = {}
            return

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            self._cache = data if isinstance(data, dict) else {}
        except (OSError, ValueError) as e:
            # Corrupt or unreadable file: fall back to defaults
            logger.warning("Ignoring unreadable config %s: %s", self.config_path, e)
            self._cache = {}

    def save(self):
        with self._lock:
            data_str = json.dumps(self._cache, indent=2)
        try:
            with open(self.config_path, 'w', encoding='utf-8') as f:
                f.write(data_str)
        except OSError as e:
            logger.warning("Failed to save config: %s", e)

    def get(self, key: str, default=None):
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        if default is None:
            return DEFAULTS.get(key)
        return default

    def set(self, key: str, value):
        with self._lock:
            self._cache[key] = value
        self.save()

    def as_dict(self) -> dict:
        with self._lock:
            merged = dict(DEFAULTS)
            merged.update(self._cache)
            return merged

    @property
    def concurrency_limit(self) -> int:
        try:
            value = int(self.get("concurrency_limit", DEFAULT_CONCURRENCY))
        except (TypeError, ValueError):
            return DEFAULT_CONCURRENCY
        return value if value > 0 else DEFAULT_CONCURRENCY

    @property
    def download_dir(self) -> Path:
        value = self.get("download_dir")
        return Path(value).expanduser() if value else default_download_dir()

    def rate_limit(self) -> str:
        """Downloader rate-limit token, e.g. '5M'; empty when unlimited."""
        value = self.get("max_download_speed")
        try:
            speed = int(value) if value is not None else 0
        except (TypeError, ValueError):
            return ""
        return f"{speed}M" if speed > 0 else ""

    @property
    def proxy_url(self) -> str:
        return self.get("proxy_url") or ""

    @property
    def user_agent(self) -> str:
        return self.get("user_agent") or ""

    @property
    def referer(self) -> str:
        return self.get("referer") or ""

    @property
    def geo_bypass(self) -> bool:
        return bool(self.get("geo_bypass"))

    def cookie_args(self) -> List[str]:
        cookie = self.get("cookie") or {}
        if not cookie.get("enabled"):
            return []
        if cookie.get("source") == "browser" and cookie.get("browser"):
            return ["--cookies-from-browser", cookie["browser"]]
        if cookie.get("source") == "file" and cookie.get("file"):
            return ["--cookies", cookie["file"]]
        return []

    def executable_override(self, key: str) -> Optional[str]:
        value = self.get(key)
        return value or None
