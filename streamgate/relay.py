"""Streaming relay from a subprocess pipeline to an HTTP response.

The relay forwards one chunk at a time, so memory stays bounded by the chunk
size however long the media is. Status and headers go out lazily with the
first chunk; from then on a failure can only cut the stream short, because
HTTP offers no way to take a status back.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, MutableMapping, Optional

from starlette.requests import ClientDisconnect
from starlette.responses import JSONResponse

from .errors import Cancelled, FetchError, GenericFailure, RequestTimeout

logger = logging.getLogger(__name__)

Message = MutableMapping[str, Any]
Send = Callable[[Message], Awaitable[None]]
Receive = Callable[[], Awaitable[Message]]


class SinkClosed(Exception):
    """Raised when writing to a sink whose peer has gone away."""


class AsgiSink:
    """Write side of one ASGI HTTP response, owned by a single worker."""

    def __init__(self, send: Send, receive: Receive) -> None:
        self._send = send
        self._receive = receive
        self.started = False
        self.closed = False
        self.aborted = False
        self.status: Optional[int] = None
        self.bytes_sent = 0
        self.disconnected = asyncio.Event()

    async def watch_disconnect(self) -> None:
        while not self.disconnected.is_set():
            message = await self._receive()
            if message["type"] == "http.disconnect":
                self.disconnected.set()

    async def _safe_send(self, message: Message) -> None:
        try:
            await self._send(message)
        except (OSError, RuntimeError, ClientDisconnect) as exc:
            self.disconnected.set()
            raise SinkClosed(str(exc)) from exc

    async def start(self, status: int, headers: Mapping[str, str]) -> None:
        if self.started:
            raise RuntimeError("response already started")
        self.started = True
        self.status = status
        raw_headers = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers.items()]
        await self._safe_send({"type": "http.response.start", "status": status, "headers": raw_headers})

    async def write(self, chunk: bytes) -> None:
        if self.closed or self.disconnected.is_set():
            raise SinkClosed("sink is closed")
        await self._safe_send({"type": "http.response.body", "body": chunk, "more_body": True})
        self.bytes_sent += len(chunk)

    async def finish(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._safe_send({"type": "http.response.body", "body": b"", "more_body": False})

    async def fail(self, error: FetchError) -> None:
        """Send ``error`` as a JSON response, or cut the stream if that is too late."""
        if self.closed:
            return
        if self.started or self.disconnected.is_set():
            self.abort()
            return
        response = JSONResponse(error.to_payload(), status_code=error.status_code, headers=error.headers())
        self.started = True
        self.status = response.status_code
        self.closed = True
        try:
            await self._safe_send(
                {"type": "http.response.start", "status": response.status_code, "headers": response.raw_headers}
            )
            await self._safe_send({"type": "http.response.body", "body": response.body, "more_body": False})
        except SinkClosed:
            logger.info("Client left before error %s could be delivered", error.kind.value)

    def abort(self) -> None:
        """Stop writing without completing the response body."""
        self.closed = True
        self.aborted = True


class RelayState(str, Enum):
    SPAWNED = "spawned"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


_TERMINAL = {RelayState.COMPLETED, RelayState.FAILED, RelayState.TIMED_OUT, RelayState.CANCELLED}
_TRANSITIONS: Dict[RelayState, set] = {
    RelayState.SPAWNED: {RelayState.STREAMING} | _TERMINAL,
    RelayState.STREAMING: set(_TERMINAL),
}


@dataclass
class RelayOutcome:
    state: RelayState
    bytes_transferred: int = 0
    started: bool = False
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.state is RelayState.COMPLETED


class _Relay:
    """State machine for one in-flight stream."""

    def __init__(self) -> None:
        self.state = RelayState.SPAWNED
        self.bytes = 0

    def move(self, state: RelayState) -> None:
        if state not in _TRANSITIONS.get(self.state, ()):
            raise RuntimeError(f"illegal relay transition {self.state.value} -> {state.value}")
        self.state = state

    def outcome(self, state: RelayState, sink: Any, error: Optional[FetchError] = None) -> RelayOutcome:
        self.move(state)
        return RelayOutcome(state=state, bytes_transferred=self.bytes, started=sink.started, error=error)


class StreamRelay:
    def __init__(self, chunk_size: int = 1024 * 256) -> None:
        self.chunk_size = chunk_size

    async def relay(
        self,
        handle: Any,
        sink: Any,
        deadline: float,
        headers: Mapping[str, str],
        status: int = 200,
    ) -> RelayOutcome:
        """Pump ``handle`` into ``sink`` until EOF, failure, disconnect or ``deadline``.

        ``deadline`` is on the running loop's clock. The handle's processes
        are terminated on every exit path. Errors are only reported in the
        outcome when nothing has been sent yet; after that the sink is
        aborted and the outcome carries no error.
        """
        loop = asyncio.get_running_loop()
        run = _Relay()
        disconnected = asyncio.ensure_future(sink.disconnected.wait())
        try:
            async with handle:
                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return self._timed_out(run, sink)
                    read = asyncio.ensure_future(handle.read(self.chunk_size))
                    done, _ = await asyncio.wait(
                        {read, disconnected}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                    )
                    if disconnected in done:
                        read.cancel()
                        return self._cancelled(run, sink)
                    if read not in done:
                        read.cancel()
                        return self._timed_out(run, sink)
                    chunk = read.result()
                    if not chunk:
                        break
                    try:
                        if not sink.started:
                            await sink.start(status, headers)
                            run.move(RelayState.STREAMING)
                        await asyncio.wait_for(sink.write(chunk), timeout=max(deadline - loop.time(), 0.001))
                    except SinkClosed:
                        return self._cancelled(run, sink)
                    except asyncio.TimeoutError:
                        return self._timed_out(run, sink)
                    run.bytes += len(chunk)

                try:
                    returncode = await asyncio.wait_for(
                        handle.wait(), timeout=max(deadline - loop.time(), 0.001)
                    )
                except asyncio.TimeoutError:
                    return self._timed_out(run, sink)

                if returncode != 0:
                    error = handle.error()
                    if sink.started:
                        logger.warning(
                            "Stream ended with exit %s after %d bytes; truncating", returncode, run.bytes
                        )
                        sink.abort()
                        return run.outcome(RelayState.FAILED, sink)
                    return run.outcome(RelayState.FAILED, sink, error)
                if run.bytes == 0:
                    return run.outcome(RelayState.FAILED, sink, GenericFailure("yt-dlp produced no data"))
                try:
                    await sink.finish()
                except SinkClosed:
                    return self._cancelled(run, sink)
                return run.outcome(RelayState.COMPLETED, sink)
        finally:
            disconnected.cancel()

    def _timed_out(self, run: _Relay, sink: Any) -> RelayOutcome:
        if sink.started:
            logger.warning("Stream deadline hit after %d bytes; truncating", run.bytes)
            sink.abort()
            return run.outcome(RelayState.TIMED_OUT, sink)
        return run.outcome(RelayState.TIMED_OUT, sink, RequestTimeout("Download timed out"))

    def _cancelled(self, run: _Relay, sink: Any) -> RelayOutcome:
        logger.info("Client disconnected after %d bytes; stopping yt-dlp", run.bytes)
        sink.abort()
        return run.outcome(RelayState.CANCELLED, sink, Cancelled())
