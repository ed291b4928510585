import os
import re
from typing import Optional

_SIZE_UNITS = {
    "": 1,
    "B": 1,
    "KiB": 1024, "K": 1024, "k": 1024,
    "MiB": 1024 ** 2, "M": 1024 ** 2, "m": 1024 ** 2,
    "GiB": 1024 ** 3, "G": 1024 ** 3, "g": 1024 ** 3,
    "TiB": 1024 ** 4, "T": 1024 ** 4, "t": 1024 ** 4,
    "KB": 1000, "kB": 1000,
    "MB": 1000 ** 2,
    "GB": 1000 ** 3,
    "TB": 1000 ** 4,
}

_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([A-Za-z]*)$")


def parse_size(size_str: str) -> float:
    """
    Parse a downloader size token ('10.00MiB', '~ 1.5GB', '512KiB') into bytes.
    A leading '~' marks an estimate and is ignored.
    """
    text = (size_str or "").strip().lstrip("~").strip()
    if not text:
        raise ValueError("empty size string")
    m = _SIZE_RE.match(text)
    if not m:
        raise ValueError(f"invalid size format: {size_str}")
    unit = m.group(2)
    if unit not in _SIZE_UNITS:
        raise ValueError(f"unknown unit: {unit}")
    return float(m.group(1)) * _SIZE_UNITS[unit]


def format_bytes(num: int) -> str:
    if num < 1024:
        return f"{num} B"
    value = float(num)
    for suffix in "KMGTPE":
        value /= 1024
        if value < 1024:
            break
    return f"{value:.1f} {suffix}B"


def parse_timestamp(ts: str) -> float:
    """'01:02:03.5' / '02:03' / '45' -> seconds."""
    parts = ts.strip().split(':')
    if not ts.strip() or len(parts) > 3:
        raise ValueError(f"invalid time marker: {ts!r}")
    return sum(float(x) * 60 ** i for i, x in enumerate(reversed(parts)))


def normalize_path(base_dir: str, path: Optional[str]) -> str:
    if not path:
        return ""
    path = path.strip().strip('"')
    if os.path.isabs(path):
        return path
    return os.path.join(base_dir, path)
