"""The gateway wires admission, queueing, resolution, caching and relay.

One :class:`Gateway` owns one instance of every component. The HTTP layer
talks to nothing else.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import Any, Dict, Optional, Tuple

from .admission import AdmissionController, HealthMonitor, SlidingWindowRateLimiter
from .cache import MetadataCache
from .config import Settings
from .errors import ErrorKind, GenericFailure, QueueFull, RequestTimeout
from .formats import download_headers
from .relay import RelayOutcome, RelayState, StreamRelay
from .resolver import ExternalResolver
from .scheduler import Lane, Request, RequestKind, Scheduler, Ticket

logger = logging.getLogger(__name__)

# Admission cost per request kind, in rate-limit units.
REQUEST_COST = {RequestKind.METADATA: 1, RequestKind.DOWNLOAD: 1}


class Gateway:
    def __init__(
        self,
        settings: Settings,
        *,
        resolver: Optional[Any] = None,
        cache: Optional[MetadataCache] = None,
        admission: Optional[AdmissionController] = None,
        relay: Optional[StreamRelay] = None,
    ) -> None:
        self.settings = settings
        self.resolver = resolver or ExternalResolver.from_settings(settings)
        self.cache = cache or MetadataCache(capacity=settings.cache_capacity, ttl=settings.cache_ttl)
        self.admission = admission or AdmissionController(
            SlidingWindowRateLimiter(settings.rate_limit_max, settings.rate_limit_window),
            HealthMonitor(settings.memory_limit_mb, settings.memory_limit_percent),
        )
        self.relay = relay or StreamRelay(settings.chunk_size)
        lanes = {
            RequestKind.DOWNLOAD: Lane(
                RequestKind.DOWNLOAD,
                capacity=settings.download_queue_capacity,
                concurrency=settings.download_concurrency,
                typical_duration=120.0,
            ),
            RequestKind.METADATA: Lane(
                RequestKind.METADATA,
                capacity=settings.metadata_queue_capacity,
                concurrency=settings.metadata_concurrency,
                typical_duration=5.0,
            ),
        }
        self.scheduler = Scheduler(
            lanes,
            {RequestKind.DOWNLOAD: self._download, RequestKind.METADATA: self._lookup},
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
            request_timeout=settings.request_timeout,
        )
        self.counters: Counter = Counter()
        self._lookups: Dict[str, Request] = {}
        self._housekeeper: Optional[asyncio.Task] = None
        self.started_at = time.time()

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        self.scheduler.start()
        if self._housekeeper is None or self._housekeeper.done():
            self._housekeeper = asyncio.create_task(self._housekeeping(), name="housekeeping")
        logger.info(
            "Gateway started (downloads=%d, metadata=%d)",
            self.settings.download_concurrency,
            self.settings.metadata_concurrency,
        )

    async def stop(self) -> None:
        if self._housekeeper is not None:
            self._housekeeper.cancel()
            await asyncio.gather(self._housekeeper, return_exceptions=True)
            self._housekeeper = None
        await self.scheduler.stop()
        logger.info("Gateway stopped")

    async def _housekeeping(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval)
            try:
                await self.sweep()
            except Exception as exc:
                logger.warning("Housekeeping error: %s", exc)

    async def sweep(self) -> Dict[str, int]:
        result = {
            "requests": await self.scheduler.sweep(),
            "cache": self.cache.sweep(),
            "rate_windows": self.admission.sweep(),
        }
        if any(result.values()):
            logger.debug("Sweep removed %s", result)
        return result

    # -- intake -----------------------------------------------------------

    def admit(self, client_id: str, kind: RequestKind) -> None:
        """Raise RateLimited or Overloaded unless the client may proceed."""
        self.counters["requests"] += 1
        admission = self.admission.admit(client_id, REQUEST_COST[kind])
        if not admission.allowed:
            assert admission.reason is not None
            key = "rate_limited" if admission.reason.kind is ErrorKind.RATE_LIMITED else "overloaded"
            self.counters[key] += 1
            raise admission.reason
        self.counters["admitted"] += 1

    def submit(self, request: Request) -> Ticket:
        return self.scheduler.enqueue(request)

    def queue_full(self, ticket: Ticket) -> QueueFull:
        return QueueFull(
            retry_after=max(ticket.estimated_wait, 1.0),
            queue_depth=ticket.depth,
        )

    def cached_info(self, video_id: str) -> Optional[Dict[str, Any]]:
        info = self.cache.get(video_id)
        if info is not None:
            self.counters["cache_hits"] += 1
        return info

    def lookup(self, video_id: str, client_id: str) -> Tuple[Request, Optional[Ticket]]:
        """Queue a metadata lookup, or join one already in flight for this id."""
        existing = self._lookups.get(video_id)
        if existing is not None and not existing.finished:
            return existing, None
        request = Request(kind=RequestKind.METADATA, video_id=video_id, client_id=client_id)
        ticket = self.submit(request)
        if ticket.accepted:
            self._lookups[video_id] = request
            request.future.add_done_callback(lambda _: self._forget_lookup(request))
        return request, ticket

    def _forget_lookup(self, request: Request) -> None:
        if self._lookups.get(request.video_id) is request:
            del self._lookups[request.video_id]

    def download_backlog(self) -> Tuple[int, float]:
        """Queue position and wait a new download would get; (0, 0.0) if a worker is free."""
        lane = self.scheduler.lanes[RequestKind.DOWNLOAD]
        if len(lane.active) < lane.concurrency and not lane.pending:
            return 0, 0.0
        position = len(lane) + 1
        return position, lane.estimated_wait(position)

    def position(self, request: Request) -> int:
        return self.scheduler.position(request)

    def estimated_wait(self, request: Request) -> float:
        lane = self.scheduler.lanes[request.kind]
        return lane.estimated_wait(lane.position(request))

    # -- handlers ---------------------------------------------------------

    async def _lookup(self, request: Request) -> Dict[str, Any]:
        cached = self.cached_info(request.video_id)
        if cached is not None:
            return cached
        info = await self.resolver.resolve_metadata(request.video_id)
        # Only successes are cached; failures are re-resolved next time.
        self.cache.put(request.video_id, info)
        return info

    async def _download(self, request: Request) -> RelayOutcome:
        entry = self.cache.peek(request.video_id)
        title = entry.metadata.get("title") if entry is not None else None
        headers = download_headers(request.fmt, title, request.video_id)
        handle = await self.resolver.open_stream(request.video_id, request.fmt)
        deadline = asyncio.get_running_loop().time() + self.settings.download_timeout
        outcome = await self.relay.relay(handle, request.sink, deadline, headers)
        self.counters["bytes_sent"] += outcome.bytes_transferred
        logger.info(
            "Download %s %s: %s (%d bytes)",
            request.video_id,
            request.fmt.media,
            outcome.state.value,
            outcome.bytes_transferred,
        )
        if outcome.error is not None:
            raise outcome.error
        # Cut short after the headers went out: the sink is already aborted,
        # raising only records the failure.
        if outcome.state is RelayState.TIMED_OUT:
            raise RequestTimeout(f"Download timed out after {outcome.bytes_transferred} bytes")
        if not outcome.ok:
            raise GenericFailure(f"Stream ended early after {outcome.bytes_transferred} bytes")
        return outcome

    # -- reporting --------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        snapshot = self.admission.health.snapshot()
        problem = self.admission.health.overloaded(snapshot)
        return {
            "status": "degraded" if problem else "ok",
            "reason": problem,
            "memory_usage": snapshot.as_dict(),
            "queue_stats": self.scheduler.stats(),
        }

    def stats(self) -> Dict[str, Any]:
        counters = Counter(self.counters)
        counters.update(self.scheduler.counters)
        return {
            "queues": self.scheduler.stats(),
            "queue_depth": sum(len(lane) for lane in self.scheduler.lanes.values()),
            "cache": self.cache.stats(),
            "memory": self.admission.health.snapshot().as_dict(),
            "rate_limited_clients": len(self.admission.limiter),
            "counters": dict(counters),
            "uptime_seconds": round(time.time() - self.started_at, 1),
        }
