import logging
from typing import Any, Dict, List, Optional, Tuple

import yt_dlp
from yt_dlp.utils import YoutubeDLError

from vidq.core.config import ConfigRepository
from vidq.core.entities import PlaylistItem
from vidq.core.errors import MetadataError
from vidq.core.interfaces import FormatChoice, MediaInfo, MetadataFetcher

logger = logging.getLogger(__name__)


def _size_of(fmt: Dict[str, Any]) -> int:
    return int(fmt.get("filesize") or fmt.get("filesize_approx") or 0)


def _pick_thumbnail(info: Dict[str, Any]) -> str:
    thumb = info.get("thumbnail") or ""
    if not thumb:
        for entry in reversed(info.get("thumbnails") or []):
            if entry.get("url"):
                thumb = entry["url"]
                break
    thumb = thumb.strip()
    if thumb.startswith("http://"):
        thumb = "https://" + thumb[len("http://"):]
    return thumb


def pick_formats(formats: List[Dict[str, Any]]) -> List[FormatChoice]:
    """
    Build the quality list from raw extractor formats, best first.

    For each height, a video-only stream paired with the best audio-only
    stream is preferred over a combined one. Formats without a known size
    are ignored so the target byte count stays meaningful. The list ends
    with an 'Audio Only' choice.
    """
    audio_id, audio_size = "", 0
    for f in formats:
        if f.get("vcodec") != "none" or f.get("acodec") in (None, "none"):
            continue
        size = _size_of(f)
        if size > 0:
            audio_size = size
            if f.get("format_id"):
                audio_id = f["format_id"]

    video_only: Dict[int, Tuple[str, int]] = {}
    combined: Dict[int, Tuple[str, int]] = {}
    for f in formats:
        vcodec = f.get("vcodec")
        is_video = (vcodec not in (None, "", "none")) or "width" in f
        if not is_video:
            continue
        height = f.get("height")
        size = _size_of(f)
        format_id = f.get("format_id") or ""
        if not height or height <= 0 or size == 0 or not format_id:
            continue
        # extractors list formats worst to best, so the last one per height wins
        if f.get("acodec") in (None, "", "none"):
            video_only[int(height)] = (format_id, size)
        else:
            combined[int(height)] = (format_id, size)

    choices = []
    for height in sorted(set(video_only) | set(combined), reverse=True):
        if height in video_only and audio_id and audio_size > 0:
            vid, vsize = video_only[height]
            choices.append(FormatChoice(f"{height}p", f"{vid}+{audio_id}", vsize, audio_size))
        elif height in combined:
            cid, csize = combined[height]
            choices.append(FormatChoice(f"{height}p", cid, csize, 0))
        else:
            vid, vsize = video_only[height]
            choices.append(FormatChoice(f"{height}p", vid, vsize, 0))

    choices.append(FormatChoice("Audio Only", audio_id, 0, audio_size))
    return choices


class YtDlpMetadataFetcher(MetadataFetcher):
    """Metadata through the yt_dlp library (no download)."""

    def __init__(self, config: Optional[ConfigRepository] = None):
        self.config = config

    def _opts(self, **extra) -> dict:
        opts = {
            'quiet': True,
            'no_warnings': True,
            'skip_download': True,
        }
        if self.config:
            if self.config.proxy_url:
                opts['proxy'] = self.config.proxy_url
            if self.config.geo_bypass:
                opts['geo_bypass'] = True
            headers = {}
            if self.config.user_agent:
                headers['User-Agent'] = self.config.user_agent
            if self.config.referer:
                headers['Referer'] = self.config.referer
            if headers:
                opts['http_headers'] = headers
        opts.update(extra)
        return opts

    def _extract(self, url: str, **extra) -> Dict[str, Any]:
        try:
            with yt_dlp.YoutubeDL(self._opts(**extra)) as ydl:
                info = ydl.extract_info(url, download=False)
                return ydl.sanitize_info(info) or {}
        except YoutubeDLError as e:
            raise MetadataError(str(e)) from e

    def fetch(self, url: str) -> MediaInfo:
        info = self._extract(url, noplaylist=True)
        return MediaInfo(
            title=info.get("title") or "",
            thumbnail=_pick_thumbnail(info),
            duration=float(info.get("duration") or 0),
            formats=pick_formats(info.get("formats") or []),
        )

    def fetch_playlist(self, url: str) -> MediaInfo:
        info = self._extract(url, extract_flat='in_playlist')

        if info.get('_type') != 'playlist':
            return MediaInfo(
                title=info.get("title") or "",
                thumbnail=_pick_thumbnail(info),
                duration=float(info.get("duration") or 0),
                formats=pick_formats(info.get("formats") or []),
            )

        entries = []
        for i, entry in enumerate(info.get("entries") or []):
            if not entry:
                continue
            entry_url = entry.get("webpage_url") or entry.get("url")
            if not entry_url:
                continue
            entries.append(PlaylistItem(
                url=entry_url,
                index=int(entry.get("playlist_index") or i + 1),
                title=entry.get("title") or "",
                thumbnail=_pick_thumbnail(entry),
                duration=float(entry.get("duration") or 0),
            ))
        logger.info("Playlist %s: %d entries", url, len(entries))
        return MediaInfo(
            title=info.get("title") or "",
            thumbnail=_pick_thumbnail(info),
            is_playlist=True,
            entries=entries,
        )
