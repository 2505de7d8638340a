"""yt-dlp subprocess management.

Two operations spawn the external tool:

- :meth:`ExternalResolver.resolve_metadata` buffers ``--dump-json`` output
  and parses it.
- :meth:`ExternalResolver.open_stream` runs yt-dlp with ``-o -`` (and, for
  audio, pipes it through ffmpeg) and hands back a
  :class:`ByteStreamHandle` that exposes stdout chunk by chunk.

Every spawned process is owned by exactly one handle or call frame that
guarantees termination (SIGTERM, then SIGKILL after a grace period) on all
exit paths.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence

from .config import Settings
from .errors import (
    AuthenticationRequired,
    FetchError,
    GenericFailure,
    ParseError,
    PrivateVideo,
    RequestTimeout,
    TransientFailure,
    VideoUnavailable,
)
from .formats import FormatSpec
from .validation import watch_url

logger = logging.getLogger(__name__)

STDERR_TAIL = 20

_PRIVATE_MARKERS = ("private video", "video is private")
_AUTH_MARKERS = (
    "sign in to confirm",
    "confirm your age",
    "age-restricted",
    "login required",
    "use --cookies",
    "cookies-from-browser",
    "members-only",
    "join this channel",
)
_UNAVAILABLE_MARKERS = (
    "video unavailable",
    "is not available",
    "no longer available",
    "has been removed",
    "does not exist",
    "unsupported url",
)
_TRANSIENT_MARKERS = (
    "http error 5",
    "http error 429",
    "timed out",
    "connection reset",
    "connection refused",
    "temporary failure",
    "network is unreachable",
    "remote end closed",
    "unable to download webpage",
    "read timed out",
)


def _error_line(stderr: str) -> str:
    """Pick the most useful line out of yt-dlp's stderr."""
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    for line in reversed(lines):
        if "ERROR:" in line:
            return line.split("ERROR:", 1)[1].strip()
    return lines[-1] if lines else ""


def classify_failure(stderr: str, returncode: Optional[int]) -> FetchError:
    """Map a failed yt-dlp run onto the error taxonomy."""
    lowered = stderr.lower()
    detail = _error_line(stderr)[:300]
    if any(marker in lowered for marker in _PRIVATE_MARKERS):
        return PrivateVideo(detail or None)
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthenticationRequired(detail or None)
    if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        return VideoUnavailable(detail or None)
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return TransientFailure(detail or None)
    return GenericFailure(detail or f"yt-dlp exited with code {returncode}")


async def terminate_processes(
    processes: Sequence[asyncio.subprocess.Process], grace: float
) -> None:
    """SIGTERM every live process, then SIGKILL whatever outlives ``grace``."""
    alive = [proc for proc in processes if proc.returncode is None]
    if not alive:
        return
    # Signals go out before the first await so a cancelled caller still
    # leaves no orphan behind.
    for proc in alive:
        try:
            proc.terminate()
        except ProcessLookupError:
            pass
    try:
        await asyncio.wait_for(asyncio.gather(*(proc.wait() for proc in alive)), timeout=grace)
        return
    except asyncio.TimeoutError:
        pass
    for proc in alive:
        if proc.returncode is None:
            logger.warning("Process %s ignored SIGTERM for %.1fs, killing", proc.pid, grace)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
    await asyncio.gather(*(proc.wait() for proc in alive), return_exceptions=True)


class ByteStreamHandle:
    """Incremental view over a running extraction pipeline.

    ``processes`` is ordered upstream first; the last process's stdout is the
    media stream. Stderr of every process is drained in the background into
    bounded buffers so a chatty tool can never block on a full pipe.
    """

    def __init__(
        self,
        processes: List[asyncio.subprocess.Process],
        stdout: asyncio.StreamReader,
        grace: float = 5.0,
    ) -> None:
        self._processes = processes
        self._stdout = stdout
        self._grace = grace
        self._stderr: Dict[int, Deque[str]] = {
            id(proc): deque(maxlen=STDERR_TAIL) for proc in processes
        }
        self._drainers = [
            asyncio.create_task(self._drain_stderr(proc)) for proc in processes if proc.stderr is not None
        ]
        self._returncode: Optional[int] = None
        self._failed_index: Optional[int] = None

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        sink = self._stderr[id(proc)]
        while True:
            line = await proc.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", "ignore").strip()
            if text:
                sink.append(text)

    @property
    def pids(self) -> List[int]:
        return [proc.pid for proc in self._processes]

    @property
    def running(self) -> bool:
        return any(proc.returncode is None for proc in self._processes)

    async def read(self, size: int) -> bytes:
        return await self._stdout.read(size)

    async def wait(self) -> int:
        """Wait for the whole pipeline; returns the first non-zero exit code."""
        codes = [await proc.wait() for proc in self._processes]
        if self._drainers:
            await asyncio.wait(self._drainers, timeout=1)
        self._returncode = 0
        for index, code in enumerate(codes):
            if code != 0:
                self._returncode = code
                self._failed_index = index
                break
        return self._returncode

    def stderr_tail(self) -> str:
        index = self._failed_index if self._failed_index is not None else 0
        return "\n".join(self._stderr[id(self._processes[index])])

    def error(self) -> FetchError:
        return classify_failure(self.stderr_tail(), self._returncode)

    async def terminate(self) -> None:
        await terminate_processes(self._processes, self._grace)
        for task in self._drainers:
            if not task.done():
                task.cancel()

    async def __aenter__(self) -> "ByteStreamHandle":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.terminate()


class ExternalResolver:
    def __init__(
        self,
        ytdlp_command: Sequence[str],
        ffmpeg_binary: str = "ffmpeg",
        metadata_timeout: float = 60.0,
        terminate_grace: float = 5.0,
        cookies_file: Optional[str] = None,
        audio_bitrate: str = "192k",
    ) -> None:
        self.ytdlp_command = list(ytdlp_command)
        self.ffmpeg_binary = ffmpeg_binary
        self.metadata_timeout = metadata_timeout
        self.terminate_grace = terminate_grace
        self.cookies_file = cookies_file
        self.audio_bitrate = audio_bitrate

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExternalResolver":
        return cls(
            ytdlp_command=settings.ytdlp_command,
            ffmpeg_binary=settings.ffmpeg_binary,
            metadata_timeout=settings.metadata_timeout,
            terminate_grace=settings.terminate_grace,
            cookies_file=settings.cookies_file,
            audio_bitrate=settings.audio_bitrate,
        )

    def _cookie_args(self) -> List[str]:
        if self.cookies_file and os.path.isfile(self.cookies_file):
            return ["--cookies", self.cookies_file]
        return []

    def metadata_command(self, video_id: str) -> List[str]:
        return [
            *self.ytdlp_command,
            "--dump-json",
            "--no-playlist",
            "--no-warnings",
            "--skip-download",
            *self._cookie_args(),
            watch_url(video_id),
        ]

    def stream_command(self, video_id: str, fmt: FormatSpec) -> List[str]:
        return [
            *self.ytdlp_command,
            "-f",
            fmt.selector(),
            "-o",
            "-",
            "--no-playlist",
            "--no-warnings",
            "--no-part",
            "--quiet",
            *self._cookie_args(),
            watch_url(video_id),
        ]

    def transcode_command(self) -> List[str]:
        return [
            self.ffmpeg_binary,
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            "pipe:0",
            "-vn",
            "-acodec",
            "libmp3lame",
            "-b:a",
            self.audio_bitrate,
            "-f",
            "mp3",
            "pipe:1",
        ]

    async def _spawn(self, cmd: List[str], **kwargs: Any) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(*cmd, **kwargs)
        except OSError as exc:
            logger.error("Failed to spawn %s: %s", cmd[0], exc)
            raise TransientFailure(f"Could not start {os.path.basename(cmd[0])}: {exc}") from exc

    async def resolve_metadata(self, video_id: str) -> Dict[str, Any]:
        cmd = self.metadata_command(video_id)
        logger.debug("yt-dlp metadata cmd: %s", " ".join(cmd))
        proc = await self._spawn(
            cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.metadata_timeout)
        except asyncio.TimeoutError:
            await terminate_processes([proc], self.terminate_grace)
            raise RequestTimeout(f"yt-dlp metadata probe timed out after {self.metadata_timeout:.0f}s")
        finally:
            if proc.returncode is None:
                await terminate_processes([proc], self.terminate_grace)

        stderr_text = stderr.decode("utf-8", "ignore")
        if proc.returncode != 0:
            error = classify_failure(stderr_text, proc.returncode)
            logger.info("Metadata lookup for %s failed (%s): %s", video_id, error.kind.value, error.message)
            raise error
        try:
            info = json.loads(stdout)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ParseError() from exc
        if not isinstance(info, dict):
            raise ParseError()
        return info

    async def open_stream(self, video_id: str, fmt: FormatSpec) -> ByteStreamHandle:
        cmd = self.stream_command(video_id, fmt)
        logger.debug("yt-dlp stream cmd: %s", " ".join(cmd))
        if not fmt.is_audio:
            proc = await self._spawn(
                cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            assert proc.stdout is not None
            return ByteStreamHandle([proc], proc.stdout, self.terminate_grace)

        # Audio: yt-dlp -> os pipe -> ffmpeg (mp3) -> us.
        read_fd, write_fd = os.pipe()
        try:
            downloader = await self._spawn(
                cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=write_fd,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                transcoder = await self._spawn(
                    self.transcode_command(),
                    stdin=read_fd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FetchError:
                await terminate_processes([downloader], self.terminate_grace)
                raise
        finally:
            # The children hold their own copies; ours must go so EOF propagates.
            os.close(read_fd)
            os.close(write_fd)
        assert transcoder.stdout is not None
        return ByteStreamHandle([downloader, transcoder], transcoder.stdout, self.terminate_grace)
