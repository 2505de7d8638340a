"""FastAPI front end for the streamgate media-fetch gateway.

This service exposes:
- GET /info?url=          : metadata for a YouTube URL (or /info/{id})
- GET /download?url=      : streams the video (mp4) or audio (mp3) bytes
- GET /api/health         : readiness, memory and queue state
- GET /api/stats          : queue depth, cache and request counters

Run with:
    uvicorn streamgate.server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, FastAPI, Query
from fastapi import Request as HttpRequest
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import Response
from starlette.types import Receive, Scope, Send
from yt_dlp.version import __version__ as YT_DLP_VERSION

from . import __version__
from .config import Settings
from .errors import FetchError
from .formats import info_payload, parse_format
from .gateway import Gateway
from .log import configure_logging
from .relay import AsgiSink
from .scheduler import Request, RequestKind
from .validation import validate

logger = logging.getLogger(__name__)

router = APIRouter()


def probe_ffmpeg(binary: str) -> Optional[str]:
    """Return the first line of ``ffmpeg -version``, or None when missing."""
    try:
        proc = subprocess.run([binary, "-version"], capture_output=True, text=True, timeout=2)
    except (OSError, subprocess.SubprocessError):
        return None
    if proc.returncode != 0 or not proc.stdout:
        return None
    return proc.stdout.splitlines()[0]


def client_id(http_request: HttpRequest, settings: Settings) -> str:
    if settings.trust_forwarded_for:
        forwarded = http_request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",", 1)[0].strip()
    return http_request.client.host if http_request.client else "unknown"


class RelayResponse(Response):
    """Response whose body is written by a queued download worker.

    Nothing is sent while the request waits in the queue. The worker that
    picks it up writes status, headers and body through the bound sink; this
    object only waits for the request to finish.
    """

    def __init__(self, gateway: Gateway, request: Request) -> None:
        super().__init__(status_code=200)
        self.gateway = gateway
        self.request = request

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        sink = AsgiSink(send, receive)
        self.request.sink = sink
        ticket = self.gateway.submit(self.request)
        if not ticket.accepted:
            error = self.gateway.queue_full(ticket)
            logger.info("Download queue full (depth=%d)", ticket.depth)
            await JSONResponse(error.to_payload(), status_code=error.status_code, headers=error.headers())(
                scope, receive, send
            )
            return

        watcher = asyncio.create_task(sink.watch_disconnect())
        try:
            await self.request.wait()
        finally:
            watcher.cancel()
        if self.background is not None:
            await self.background()


def queued_response(position: int, estimated: float, request_id: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "status": "queued"}
    if request_id is not None:
        body["request_id"] = request_id
    body.update({"queue_position": position, "estimated_wait": round(estimated, 1)})
    return JSONResponse(body, status_code=202, headers={"Retry-After": str(max(int(estimated), 1))})


def _gateway(http_request: HttpRequest) -> Gateway:
    return http_request.app.state.gateway


@router.get("/")
async def root() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/api/health")
async def healthcheck(http_request: HttpRequest) -> JSONResponse:
    """Return service readiness, memory pressure and tool versions."""
    gateway = _gateway(http_request)
    settings = gateway.settings
    report: Dict[str, Any] = gateway.health()
    report.update(
        {
            "yt_dlp": YT_DLP_VERSION,
            "ffmpeg": http_request.app.state.ffmpeg or "missing",
            "cookies": bool(settings.cookies_file),
            "max_concurrent_downloads": settings.download_concurrency,
            "max_concurrent_metadata": settings.metadata_concurrency,
        }
    )
    return JSONResponse(report, status_code=200 if report["status"] == "ok" else 503)


@router.get("/api/stats")
async def stats(http_request: HttpRequest) -> Dict[str, Any]:
    return _gateway(http_request).stats()


async def _info(http_request: HttpRequest, value: Optional[str]) -> Any:
    gateway = _gateway(http_request)
    settings = gateway.settings
    video_id = validate(value)
    caller = client_id(http_request, settings)
    gateway.admit(caller, RequestKind.METADATA)

    cached = gateway.cached_info(video_id)
    if cached is not None:
        return {**info_payload(cached, settings.audio_bitrate), "cached": True}

    request, ticket = gateway.lookup(video_id, caller)
    if ticket is not None and not ticket.accepted:
        raise gateway.queue_full(ticket)
    try:
        result = await asyncio.wait_for(asyncio.shield(request.future), timeout=settings.info_wait)
    except asyncio.TimeoutError:
        # Still queued or running: the result lands in the cache, so a retry
        # after estimated_wait is answered from there.
        return queued_response(
            gateway.position(request), gateway.estimated_wait(request), request_id=request.id
        )
    if result.error is not None:
        raise result.error
    return {**info_payload(result.value, settings.audio_bitrate), "cached": False}


@router.get("/info")
async def fetch_info(
    http_request: HttpRequest,
    url: Optional[str] = Query(None, description="YouTube URL or video id"),
) -> Any:
    """Return metadata for the provided URL using yt-dlp."""
    return await _info(http_request, url)


@router.get("/info/{video_id}")
async def fetch_info_by_id(http_request: HttpRequest, video_id: str) -> Any:
    return await _info(http_request, video_id)


def _download(
    http_request: HttpRequest, value: Optional[str], media: str, quality: str, wait: bool
) -> Response:
    gateway = _gateway(http_request)
    video_id = validate(value)
    fmt = parse_format(media, quality)
    caller = client_id(http_request, gateway.settings)
    gateway.admit(caller, RequestKind.DOWNLOAD)
    if not wait:
        position, estimated = gateway.download_backlog()
        if position:
            # Nothing is queued on the caller's behalf; they come back later.
            return queued_response(position, estimated)
    request = Request(kind=RequestKind.DOWNLOAD, video_id=video_id, fmt=fmt, client_id=caller)
    return RelayResponse(gateway, request)


@router.get("/download")
async def download(
    http_request: HttpRequest,
    url: Optional[str] = Query(None, description="YouTube URL or video id"),
    format: str = Query("video", description="video or audio"),
    quality: str = Query("best", description="best, 1080, 720 or 480"),
    wait: bool = Query(True, description="hold the connection while queued; false answers 202 instead"),
) -> Response:
    """
    Stream the selected format back to the client.

    - the request waits in the download queue until a worker slot frees up,
      unless wait=false, which answers 202 with the queue position instead
    - yt-dlp (piped through ffmpeg for audio) writes media bytes to stdout
    - chunks are forwarded as they arrive; a client disconnect stops yt-dlp
    """
    return _download(http_request, url, format, quality, wait)


@router.get("/download/{video_id}")
async def download_by_id(
    http_request: HttpRequest,
    video_id: str,
    format: str = Query("video"),
    quality: str = Query("best"),
    wait: bool = Query(True),
) -> Response:
    return _download(http_request, video_id, format, quality, wait)


async def fetch_error_handler(http_request: HttpRequest, exc: FetchError) -> JSONResponse:
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=exc.headers())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    gateway: Gateway = app.state.gateway
    settings = gateway.settings
    app.state.ffmpeg = await asyncio.to_thread(probe_ffmpeg, settings.ffmpeg_binary)
    if not settings.cookies_file:
        logger.warning(
            "No cookies file configured or found; some videos may fail with 403 or a sign-in prompt."
        )
    if app.state.ffmpeg is None:
        logger.warning("ffmpeg not found (%s); audio downloads will fail", settings.ffmpeg_binary)
    gateway.start()
    try:
        yield
    finally:
        await gateway.stop()


def create_app(settings: Optional[Settings] = None, gateway: Optional[Gateway] = None) -> FastAPI:
    if gateway is not None:
        settings = gateway.settings
    settings = settings or Settings.from_env()
    gateway = gateway or Gateway(settings)

    app = FastAPI(title="streamgate", version=__version__, lifespan=lifespan)
    app.state.gateway = gateway
    app.state.ffmpeg = None

    # Allow browser frontends to call the API from any origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition", "Retry-After"],
    )
    app.add_exception_handler(FetchError, fetch_error_handler)
    app.include_router(router)
    return app


configure_logging(os.getenv("LOG_LEVEL", "INFO"))
app = create_app()


def main() -> None:
    import uvicorn

    settings: Settings = app.state.gateway.settings
    uvicorn.run("streamgate.server:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
