import os
import shutil
import logging
from pathlib import Path
from typing import Optional

from vidq.core.config import ConfigRepository
from vidq.core.errors import ResolutionError
from vidq.core.interfaces import DependencyResolver

logger = logging.getLogger(__name__)


class PathDependencyResolver(DependencyResolver):
    """
    Looks up executables in order: explicit config override, the app's own
    bin/ directory, then PATH.
    """

    def __init__(self, config: ConfigRepository, bin_dir: Optional[Path] = None):
        self.config = config
        self.bin_dir = bin_dir

    def resolve_downloader_path(self) -> str:
        return self._resolve("ytdlp_path", "yt-dlp")

    def resolve_media_toolkit_path(self) -> str:
        return self._resolve("ffmpeg_path", "ffmpeg")

    def _resolve(self, config_key: str, name: str) -> str:
        override = self.config.executable_override(config_key)
        if override:
            path = Path(override).expanduser()
            if path.is_file() and os.access(path, os.X_OK):
                return str(path.resolve())
            logger.warning("Configured %s=%s is not an executable, searching elsewhere", config_key, override)

        if self.bin_dir:
            found = shutil.which(name, path=str(self.bin_dir))
            if found:
                return str(Path(found).resolve())

        found = shutil.which(name)
        if found:
            return str(Path(found).resolve())
        raise ResolutionError(f"{name} not found (set '{config_key}' or install it on PATH)")
