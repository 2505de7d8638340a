"""Runtime configuration for the streamgate service.

Every knob is read from the environment once at startup; components receive
the resulting :class:`Settings` instance explicitly instead of reading
module-level globals.
"""
from __future__ import annotations

import logging
import os
import shlex
import sys
from typing import List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 256
DEFAULT_COOKIES_PATH = "cookies.txt"


def _env_truthy(value: Optional[str], *, default: bool = False) -> bool:
    """Parse common truthy/falsey strings from environment variables."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def _env_int(value: Optional[str], *, default: int, minimum: int = 0) -> int:
    """Parse an integer from an environment variable, falling back to default."""
    if value is None or not value.strip():
        return default
    try:
        return max(int(value), minimum)
    except ValueError:
        return default


def _env_float(value: Optional[str], *, default: float, minimum: float = 0.0) -> float:
    """Parse a float from an environment variable, falling back to default."""
    if value is None or not value.strip():
        return default
    try:
        return max(float(value), minimum)
    except ValueError:
        return default


def _default_ytdlp_command() -> List[str]:
    # Run the yt_dlp package installed alongside this service.
    return [sys.executable, "-m", "yt_dlp"]


class Settings(BaseModel):
    """Service configuration.

    Download concurrency defaults lower than metadata concurrency because a
    download holds a subprocess (and possibly ffmpeg) for minutes while a
    metadata probe finishes in seconds.
    """

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    log_level: str = Field(default="INFO")

    download_concurrency: int = Field(default=6, ge=1)
    metadata_concurrency: int = Field(default=10, ge=1)
    download_queue_capacity: int = Field(default=1000, ge=0)
    metadata_queue_capacity: int = Field(default=1000, ge=0)

    download_timeout: float = Field(default=900.0, gt=0)
    metadata_timeout: float = Field(default=60.0, gt=0)
    request_timeout: float = Field(default=300.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)

    rate_limit_window: float = Field(default=60.0, gt=0)
    rate_limit_max: int = Field(default=100, ge=1)
    memory_limit_mb: float = Field(default=400.0, gt=0)
    memory_limit_percent: float = Field(default=85.0, gt=0, le=100)

    cache_ttl: float = Field(default=3600.0, gt=0)
    cache_capacity: int = Field(default=1000, ge=1)
    sweep_interval: float = Field(default=30.0, gt=0)

    info_wait: float = Field(default=25.0, ge=0)
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=1024)
    audio_bitrate: str = Field(default="192k")
    terminate_grace: float = Field(default=5.0, ge=0)

    cookies_file: Optional[str] = Field(default=None)
    ytdlp_command: List[str] = Field(default_factory=_default_ytdlp_command)
    ffmpeg_binary: str = Field(default="ffmpeg")
    trust_forwarded_for: bool = Field(default=False)

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        cookies_file = env.get("COOKIES_FILE") or None
        if cookies_file is None and os.path.isfile(DEFAULT_COOKIES_PATH):
            cookies_file = DEFAULT_COOKIES_PATH
        ytdlp_command = env.get("YTDLP_COMMAND")

        settings = cls(
            host=env.get("HOST", "0.0.0.0"),
            port=_env_int(env.get("PORT"), default=8000, minimum=1),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            download_concurrency=_env_int(env.get("MAX_CONCURRENT_DOWNLOADS"), default=6, minimum=1),
            metadata_concurrency=_env_int(env.get("MAX_CONCURRENT_METADATA"), default=10, minimum=1),
            download_queue_capacity=_env_int(env.get("DOWNLOAD_QUEUE_CAPACITY"), default=1000),
            metadata_queue_capacity=_env_int(env.get("METADATA_QUEUE_CAPACITY"), default=1000),
            download_timeout=_env_float(env.get("DOWNLOAD_TIMEOUT"), default=900.0, minimum=1.0),
            metadata_timeout=_env_float(env.get("METADATA_TIMEOUT"), default=60.0, minimum=1.0),
            request_timeout=_env_float(env.get("REQUEST_TIMEOUT"), default=300.0, minimum=1.0),
            max_retries=_env_int(env.get("MAX_RETRIES"), default=3),
            retry_base_delay=_env_float(env.get("RETRY_BASE_DELAY"), default=1.0),
            rate_limit_window=_env_float(env.get("RATE_LIMIT_WINDOW"), default=60.0, minimum=1.0),
            rate_limit_max=_env_int(env.get("RATE_LIMIT_MAX"), default=100, minimum=1),
            memory_limit_mb=_env_float(env.get("MEMORY_LIMIT_MB"), default=400.0, minimum=1.0),
            memory_limit_percent=min(_env_float(env.get("MEMORY_LIMIT_PERCENT"), default=85.0, minimum=1.0), 100.0),
            cache_ttl=_env_float(env.get("CACHE_TTL"), default=3600.0, minimum=1.0),
            cache_capacity=_env_int(env.get("CACHE_CAPACITY"), default=1000, minimum=1),
            sweep_interval=_env_float(env.get("SWEEP_INTERVAL"), default=30.0, minimum=1.0),
            info_wait=_env_float(env.get("INFO_WAIT"), default=25.0),
            chunk_size=_env_int(env.get("CHUNK_SIZE"), default=DEFAULT_CHUNK_SIZE, minimum=1024),
            audio_bitrate=env.get("AUDIO_BITRATE", "192k"),
            terminate_grace=_env_float(env.get("TERMINATE_GRACE"), default=5.0),
            cookies_file=cookies_file,
            ytdlp_command=shlex.split(ytdlp_command) if ytdlp_command else _default_ytdlp_command(),
            ffmpeg_binary=env.get("FFMPEG_BINARY", "ffmpeg"),
            trust_forwarded_for=_env_truthy(env.get("TRUST_FORWARDED_FOR"), default=False),
        )
        logger.info(
            "Settings loaded downloads=%d/%d metadata=%d/%d rate_limit=%d/%.0fs memory_limit=%.0fMB/%.0f%% cookies=%s",
            settings.download_concurrency,
            settings.download_queue_capacity,
            settings.metadata_concurrency,
            settings.metadata_queue_capacity,
            settings.rate_limit_max,
            settings.rate_limit_window,
            settings.memory_limit_mb,
            settings.memory_limit_percent,
            bool(settings.cookies_file),
        )
        return settings
