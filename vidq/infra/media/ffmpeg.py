import re
import subprocess
import logging
from pathlib import Path

from vidq.core.errors import ResolutionError, TrimError
from vidq.core.interfaces import DependencyResolver, MediaToolkitAdapter

logger = logging.getLogger(__name__)

DURATION_RE = re.compile(r"Duration:\s+(\d+):(\d+):(\d+(?:\.\d+)?)")


class MediaToolkit(MediaToolkitAdapter):
    """ffmpeg invoked as a subprocess with combined output capture."""

    def __init__(self, resolver: DependencyResolver):
        self.resolver = resolver

    def _binary(self) -> str:
        try:
            return self.resolver.resolve_media_toolkit_path()
        except ResolutionError as e:
            raise TrimError(str(e)) from e

    def probe_duration(self, path: Path) -> float:
        """Duration in seconds parsed from `ffmpeg -i`; 0.0 when unknown."""
        # ffmpeg exits 1 without an output file; the banner still carries the duration
        result = subprocess.run(
            [self._binary(), "-hide_banner", "-i", str(path)],
            stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
            text=True, encoding="utf-8", errors="replace",
        )
        m = DURATION_RE.search(result.stdout or "")
        if not m:
            return 0.0
        hours, minutes, seconds = m.groups()
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)

    def extract_clip(self, source: Path, start: str, end: str, target: Path) -> None:
        cmd = [self._binary(), "-y", "-i", str(source)]
        if start:
            cmd += ["-ss", start]
        if end:
            cmd += ["-to", end]
        cmd += ["-c", "copy", "-map", "0", str(target)]

        logger.info("Cutting %s [%s, %s] -> %s", source, start or "0", end or "end", target)
        result = subprocess.run(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
            text=True, encoding="utf-8", errors="replace",
        )
        if result.returncode != 0:
            tail = "\n".join((result.stdout or "").strip().splitlines()[-5:])
            raise TrimError(f"ffmpeg failed with code {result.returncode}: {tail}")
        if not target.exists() or target.stat().st_size == 0:
            raise TrimError("Output file is empty (0 bytes)")
