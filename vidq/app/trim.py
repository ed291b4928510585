import os
import logging
from pathlib import Path

from vidq.core.entities import Task, TrimMode
from vidq.core.errors import TrimError
from vidq.core.interfaces import MediaToolkitAdapter
from vidq.utils.format import parse_timestamp

logger = logging.getLogger(__name__)


def _marker_label(marker: str, fallback: str) -> str:
    return marker.strip().replace(":", "-").replace(".", "_") if marker else fallback


def keep_both_path(source: Path, start: str, end: str) -> Path:
    return source.with_name(
        f"{source.stem}_trim_{_marker_label(start, '0')}_{_marker_label(end, 'end')}{source.suffix}"
    )


def _temp_path(source: Path) -> Path:
    # same directory so the final os.replace stays on one filesystem
    return source.with_name(f".{source.stem}.trimming{source.suffix}")


def _fsync(path: Path) -> None:
    with open(path, 'rb+') as f:
        os.fsync(f.fileno())


def validate_markers(start: str, end: str, duration: float) -> None:
    try:
        start_s = parse_timestamp(start) if start else 0.0
        end_s = parse_timestamp(end) if end else None
    except ValueError as e:
        raise TrimError(str(e)) from e

    if start_s < 0 or (end_s is not None and end_s <= start_s):
        raise TrimError(f"Invalid trim range {start or '0'} - {end or 'end'}")
    if duration > 0 and start_s >= duration:
        raise TrimError(f"Trim start {start} is beyond the media duration ({duration:.1f}s)")


def trim_download(task: Task, toolkit: MediaToolkitAdapter) -> Path:
    """
    Cut the finished download to [trim_start, trim_end].

    OVERWRITE writes the clip to a hidden sibling, fsyncs it and atomically
    replaces the original; a crash at any point leaves either the original
    or the complete clip in place. KEEP_BOTH writes a new sibling file.
    Returns the path of the resulting clip. Raises TrimError; the original
    file is untouched on failure.
    """
    if not task.file_path:
        raise TrimError("No output file to trim")
    source = Path(task.file_path)
    if not source.exists():
        raise TrimError(f"Output file missing: {source}")

    validate_markers(task.trim_start, task.trim_end, toolkit.probe_duration(source))

    if task.trim_mode == TrimMode.KEEP_BOTH:
        target = keep_both_path(source, task.trim_start, task.trim_end)
        try:
            toolkit.extract_clip(source, task.trim_start, task.trim_end, target)
        except TrimError:
            target.unlink(missing_ok=True)
            raise
        return target

    temp = _temp_path(source)
    try:
        toolkit.extract_clip(source, task.trim_start, task.trim_end, temp)
        _fsync(temp)
        os.replace(temp, source)
    except (TrimError, OSError) as e:
        temp.unlink(missing_ok=True)
        if isinstance(e, TrimError):
            raise
        raise TrimError(f"Failed to replace {source}: {e}") from e
    logger.info("Trimmed %s in place", source)
    return source
