import os
from typing import List

from vidq.core.config import ConfigRepository
from vidq.core.entities import Task

DEFAULT_SELECTOR = "bestvideo+bestaudio/best"
AUDIO_SELECTOR = "bestaudio/best"
OUTPUT_TEMPLATE = "%(title)s.%(ext)s"

QUALITY_HEIGHTS = {
    "4k": 2160,
    "2k": 1440,
    "1080p": 1080,
    "720p": 720,
    "480p": 480,
    "360p": 360,
    "240p": 240,
    "144p": 144,
}


def build_format_selector(task: Task) -> str:
    if task.format_id:
        return task.format_id
    if task.quality == "audio":
        return AUDIO_SELECTOR
    height = QUALITY_HEIGHTS.get(task.quality)
    if height is None:
        return DEFAULT_SELECTOR
    return f"bestvideo[height<={height}]+bestaudio/best[height<={height}]"


def build_downloader_args(task: Task, config: ConfigRepository, media_toolkit_path: str) -> List[str]:
    """Argument vector for the downloader, without the executable itself."""
    args = [
        "--newline",  # one progress event per line
        "--encoding", "utf-8",
        "--ffmpeg-location", os.path.dirname(media_toolkit_path),
        "-o", OUTPUT_TEMPLATE,
        "-P", task.dir,
        "-f", build_format_selector(task),
    ]

    limit = config.rate_limit()
    if limit:
        args += ["-r", limit]
    if config.proxy_url:
        args += ["--proxy", config.proxy_url]
    if config.user_agent:
        args += ["--user-agent", config.user_agent]
    if config.referer:
        args += ["--referer", config.referer]
    if config.geo_bypass:
        args.append("--geo-bypass")
    args += config.cookie_args()

    if task.format and task.format != "original":
        args += ["--merge-output-format", task.format]

    args.append(task.url)
    return args
