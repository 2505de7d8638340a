"""Format selection, filenames and the public ``/info`` payload."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import InvalidInput

MEDIA_TYPES = ("video", "audio")
QUALITY_TIERS = ("best", "1080", "720", "480")


@dataclass(frozen=True)
class FormatSpec:
    media: str = "video"
    quality: str = "best"

    @property
    def is_audio(self) -> bool:
        return self.media == "audio"

    @property
    def extension(self) -> str:
        return "mp3" if self.is_audio else "mp4"

    @property
    def content_type(self) -> str:
        return "audio/mpeg" if self.is_audio else "video/mp4"

    def selector(self) -> str:
        """yt-dlp ``-f`` expression, most preferred format first.

        Video: exact mp4 container under the height ceiling, then any
        container under the ceiling, then the best combined audio+video mp4,
        then whatever is best. Only single-file formats are selected since
        the output is piped and cannot be muxed.
        """
        if self.is_audio:
            return "bestaudio[ext=m4a]/bestaudio/best"
        if self.quality == "best":
            return "best[ext=mp4]/best"
        height = self.quality
        return f"best[ext=mp4][height<={height}]/best[height<={height}]/best[ext=mp4]/best"


def parse_format(media: Optional[str], quality: Optional[str]) -> FormatSpec:
    media = (media or "video").strip().lower()
    quality = (quality or "best").strip().lower()
    if quality.endswith("p"):
        quality = quality[:-1]
    if media not in MEDIA_TYPES:
        raise InvalidInput(f"Invalid format '{media}'. Use one of: video, audio.")
    if quality not in QUALITY_TIERS:
        raise InvalidInput(f"Invalid quality '{quality}'. Use one of: best, 1080, 720, 480.")
    return FormatSpec(media=media, quality=quality)


def sanitize_filename(title: str, ext: str) -> str:
    """Turn a video title into the ``filename=`` value of a download.

    Path separators, shell/Windows-reserved characters and line breaks are
    dropped, then anything outside ASCII, since ASGI header values are
    latin-1. A title with nothing left becomes ``download``.
    """
    stem = re.sub(r'[\\/*?:"<>|]', "", title)
    stem = re.sub(r"[\r\n]+", " ", stem)
    stem = stem.encode("ascii", "ignore").decode("ascii").strip() or "download"
    suffix = ext.encode("ascii", "ignore").decode("ascii") or "bin"
    return f"{stem}.{suffix}"


def download_headers(fmt: FormatSpec, title: Optional[str], video_id: str) -> Dict[str, str]:
    filename = sanitize_filename(title or video_id, fmt.extension)
    return {
        "Content-Type": fmt.content_type,
        "Content-Disposition": f'attachment; filename="{filename}"',
        "Cache-Control": "no-store",
    }


def _format_size(fmt: Dict[str, Any], duration: Optional[float]) -> Optional[int]:
    size = fmt.get("filesize") or fmt.get("filesize_approx")
    if size:
        return int(size)
    tbr = fmt.get("tbr")
    if tbr and duration:
        return int(tbr * 1000 / 8 * duration)
    return None


def summarize_formats(info: Dict[str, Any], audio_bitrate: str = "192k") -> List[Dict[str, Any]]:
    """Collapse yt-dlp's format list into the tiers ``/download`` offers."""
    duration = info.get("duration")
    formats = [f for f in info.get("formats") or [] if f.get("format_note") != "storyboard"]
    combined = [
        f
        for f in formats
        if (f.get("vcodec") or "none") != "none" and (f.get("acodec") or "none") != "none"
    ]

    summary: List[Dict[str, Any]] = []
    tiers = [int(t) for t in QUALITY_TIERS[1:]]
    for index, ceiling in enumerate(tiers):
        floor = tiers[index + 1] if index + 1 < len(tiers) else 0
        # Each tier only reports formats above the next tier down.
        fitting = [f for f in combined if floor < (f.get("height") or 0) <= ceiling]
        if not fitting:
            continue
        best = max(fitting, key=lambda f: (f["height"], f.get("ext") == "mp4", f.get("tbr") or 0))
        summary.append(
            {
                "type": "video",
                "quality": f"{ceiling}p",
                "height": best.get("height"),
                "size": _format_size(best, duration),
            }
        )

    kbps = int(re.sub(r"\D", "", audio_bitrate) or 192)
    summary.append(
        {
            "type": "audio",
            "quality": f"{kbps}kbps",
            "size": int(kbps * 1000 / 8 * duration) if duration else None,
        }
    )
    return summary


def info_payload(info: Dict[str, Any], audio_bitrate: str = "192k") -> Dict[str, Any]:
    return {
        "success": True,
        "id": info.get("id"),
        "title": info.get("title") or "Unknown Title",
        "duration": info.get("duration") or 0,
        "formats": summarize_formats(info, audio_bitrate),
        "thumbnail": info.get("thumbnail"),
        "uploader": info.get("uploader") or info.get("uploader_id"),
        "view_count": info.get("view_count"),
        "upload_date": info.get("upload_date"),
    }
