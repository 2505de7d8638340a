"""streamgate: a queueing, rate-limited HTTP gateway in front of yt-dlp."""

__version__ = "1.0.0"
