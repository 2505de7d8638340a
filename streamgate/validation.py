from __future__ import annotations

import re
import urllib.parse
from typing import Optional

from .errors import InvalidInput

SUPPORTED_SITES = {
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtu.be",
    "www.youtu.be",
}
VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_PATH_PREFIXES = ("/shorts/", "/embed/", "/live/", "/v/")
MAX_URL_LENGTH = 500


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def _id_from_url(url: str) -> Optional[str]:
    try:
        parsed = urllib.parse.urlparse(url)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https"):
        return None
    host = (parsed.hostname or "").lower()
    if host not in SUPPORTED_SITES:
        return None
    if host.endswith("youtu.be"):
        candidate = parsed.path.lstrip("/").split("/", 1)[0]
    elif parsed.path == "/watch":
        candidate = (urllib.parse.parse_qs(parsed.query).get("v") or [""])[0]
    else:
        candidate = ""
        for prefix in _PATH_PREFIXES:
            if parsed.path.startswith(prefix):
                candidate = parsed.path[len(prefix):].split("/", 1)[0]
                break
    return candidate if VIDEO_ID_RE.match(candidate) else None


def validate(value: Optional[str]) -> str:
    """Return the 11-character video id for a YouTube URL or a bare id.

    Raises :class:`InvalidInput` for anything else; such requests are never
    queued.
    """
    value = (value or "").strip()
    if not value or len(value) > MAX_URL_LENGTH:
        raise InvalidInput()
    if VIDEO_ID_RE.match(value):
        return value
    video_id = _id_from_url(value)
    if video_id is None:
        raise InvalidInput(f"Not a recognised YouTube URL: {value[:100]}")
    return video_id
