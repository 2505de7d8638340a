"""Bounded FIFO work queues drained by bounded worker pools.

There is one :class:`Lane` per :class:`RequestKind`. Each lane has its own
queue capacity and its own pool of worker slots (an ``asyncio.Semaphore``).
A drain loop per lane takes a slot first and only then pops the oldest
request, so requests leave the queue strictly in arrival order and never
wait inside a worker. The slot is released in ``finally`` whatever the
handler does.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from .errors import Cancelled, FetchError, GenericFailure, Overloaded, RequestTimeout
from .formats import FormatSpec
from .log import bind_request_id, reset_request_id

logger = logging.getLogger(__name__)


class RequestKind(str, Enum):
    DOWNLOAD = "download"
    METADATA = "metadata"


@dataclass
class RequestResult:
    value: Any = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(eq=False)
class Request:
    """One unit of work.

    ``sink`` is the HTTP response a download writes to; metadata lookups have
    none and report through :attr:`future` only. A request is finished
    exactly once, by :meth:`complete` or :meth:`fail`.
    """

    kind: RequestKind
    video_id: str
    fmt: FormatSpec = field(default_factory=FormatSpec)
    client_id: str = "-"
    sink: Optional[Any] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    submitted_at: float = field(default_factory=time.monotonic)
    retries: int = 0
    enqueued_at: Optional[float] = None
    finished: bool = False
    _future: Optional["asyncio.Future[RequestResult]"] = field(default=None, repr=False)

    @property
    def future(self) -> "asyncio.Future[RequestResult]":
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
        return self._future

    @property
    def started(self) -> bool:
        return bool(self.sink is not None and self.sink.started)

    def _settle(self, result: RequestResult) -> None:
        if not self.future.done():
            self.future.set_result(result)

    def complete(self, value: Any = None) -> bool:
        if self.finished:
            return False
        self.finished = True
        self._settle(RequestResult(value=value))
        return True

    async def fail(self, error: FetchError) -> bool:
        if self.finished:
            return False
        self.finished = True
        try:
            if self.sink is not None:
                await self.sink.fail(error)
        finally:
            self._settle(RequestResult(error=error))
        return True

    async def wait(self) -> RequestResult:
        return await self.future


@dataclass(frozen=True)
class Ticket:
    accepted: bool
    request_id: str
    position: int
    depth: int
    estimated_wait: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "queue_position": self.position,
            "queue_depth": self.depth,
            "estimated_wait": round(self.estimated_wait, 1),
        }


class Lane:
    """Queue, worker slots and bookkeeping for one request kind."""

    def __init__(
        self,
        kind: RequestKind,
        capacity: int,
        concurrency: int,
        typical_duration: float = 30.0,
    ) -> None:
        self.kind = kind
        self.capacity = capacity
        self.concurrency = concurrency
        self.pending: Deque[Request] = deque()
        self.active: Dict[str, Request] = {}
        self.slots = asyncio.Semaphore(concurrency)
        self._ready = asyncio.Event()
        self.avg_duration = typical_duration
        self.peak_active = 0
        self.enqueued = 0
        self.dequeued = 0

    def __len__(self) -> int:
        return len(self.pending)

    @property
    def full(self) -> bool:
        return len(self.pending) >= self.capacity

    def push(self, request: Request) -> None:
        self.pending.append(request)
        self.enqueued += 1
        self._ready.set()

    def push_front(self, request: Request) -> None:
        self.pending.appendleft(request)
        self._ready.set()

    async def pop(self) -> Request:
        while not self.pending:
            self._ready.clear()
            await self._ready.wait()
        self.dequeued += 1
        return self.pending.popleft()

    def remove(self, request: Request) -> bool:
        try:
            self.pending.remove(request)
        except ValueError:
            return False
        return True

    def position(self, request: Request) -> int:
        """1-based place in the queue; 0 once it is running or gone."""
        for index, queued in enumerate(self.pending):
            if queued is request:
                return index + 1
        return 0

    def mark_active(self, request: Request) -> None:
        self.active[request.id] = request
        self.peak_active = max(self.peak_active, len(self.active))

    def record_duration(self, seconds: float) -> None:
        self.avg_duration = 0.8 * self.avg_duration + 0.2 * seconds

    def estimated_wait(self, position: int) -> float:
        if position <= 0:
            return 0.0
        return math.ceil(position / self.concurrency) * self.avg_duration

    def stats(self) -> Dict[str, Any]:
        return {
            "queued": len(self.pending),
            "active": len(self.active),
            "capacity": self.capacity,
            "concurrency": self.concurrency,
            "peak_active": self.peak_active,
            "enqueued_total": self.enqueued,
            "dequeued_total": self.dequeued,
            "avg_duration": round(self.avg_duration, 2),
        }


Handler = Callable[[Request], Awaitable[Any]]


class Scheduler:
    def __init__(
        self,
        lanes: Dict[RequestKind, Lane],
        handlers: Dict[RequestKind, Handler],
        *,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        request_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.lanes = lanes
        self.handlers = handlers
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.request_timeout = request_timeout
        self._clock = clock
        self._drainers: List[asyncio.Task] = []
        self._workers: Set[asyncio.Task] = set()
        # Requests sitting out a retry delay are in no lane, only here.
        self._retries: Dict[asyncio.Task, Request] = {}
        self.counters: Counter = Counter()

    # -- intake -----------------------------------------------------------

    def enqueue(self, request: Request) -> Ticket:
        lane = self.lanes[request.kind]
        if lane.full:
            self.counters["queue_full"] += 1
            depth = len(lane)
            return Ticket(False, request.id, 0, depth, lane.estimated_wait(depth))
        request.enqueued_at = self._clock()
        lane.push(request)
        position = len(lane)
        logger.debug("Queued %s %s at position %d", request.kind.value, request.id, position)
        return Ticket(True, request.id, position, len(lane), lane.estimated_wait(position))

    def position(self, request: Request) -> int:
        return self.lanes[request.kind].position(request)

    # -- lifecycle --------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._drainers)

    def start(self) -> None:
        if self.running:
            return
        self._drainers = [
            asyncio.create_task(self._drain(lane), name=f"drain-{lane.kind.value}")
            for lane in self.lanes.values()
        ]

    async def stop(self) -> None:
        waiting = list(self._retries.values())
        tasks = [*self._drainers, *self._retries, *self._workers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._drainers = []
        shutdown = Overloaded("Server is shutting down")
        for request in waiting:
            await request.fail(shutdown)
        for lane in self.lanes.values():
            while lane.pending:
                await lane.pending.popleft().fail(shutdown)

    # -- draining ---------------------------------------------------------

    async def _drain(self, lane: Lane) -> None:
        while True:
            await lane.slots.acquire()
            try:
                request = await lane.pop()
            except BaseException:
                lane.slots.release()
                raise
            if request.finished:
                lane.slots.release()
                continue
            if request.sink is not None and request.sink.disconnected.is_set():
                lane.slots.release()
                self.counters["cancelled"] += 1
                await request.fail(Cancelled())
                continue
            task = asyncio.create_task(self._execute(lane, request), name=f"{lane.kind.value}-{request.id}")
            self._workers.add(task)
            task.add_done_callback(self._workers.discard)

    async def _execute(self, lane: Lane, request: Request) -> None:
        token = bind_request_id(request.id)
        lane.mark_active(request)
        began = self._clock()
        retry = False
        logger.debug("Running %s for %s (attempt %d)", lane.kind.value, request.video_id, request.retries + 1)
        try:
            result = await self.handlers[request.kind](request)
        except FetchError as exc:
            retry = self._should_retry(request, exc)
            if not retry:
                self._count_failure(exc)
                await request.fail(self._terminal(request, exc))
        except asyncio.CancelledError:
            await request.fail(Overloaded("Server is shutting down"))
            raise
        except Exception as exc:
            logger.exception("Unexpected error handling %s", request.id)
            self.counters["failed"] += 1
            await request.fail(GenericFailure(f"Unexpected error: {exc}"))
        else:
            self.counters["completed"] += 1
            request.complete(result)
        finally:
            lane.active.pop(request.id, None)
            lane.slots.release()
            lane.record_duration(self._clock() - began)
            reset_request_id(token)
        if retry:
            self._schedule_retry(lane, request)

    def _should_retry(self, request: Request, error: FetchError) -> bool:
        return error.retryable and not request.started and request.retries < self.max_retries

    def _terminal(self, request: Request, error: FetchError) -> FetchError:
        if not error.retryable:
            return error
        return GenericFailure(f"{error.message} (gave up after {request.retries} retries)")

    def _count_failure(self, error: FetchError) -> None:
        if isinstance(error, Cancelled):
            self.counters["cancelled"] += 1
        elif isinstance(error, RequestTimeout):
            self.counters["timeouts"] += 1
        else:
            self.counters["failed"] += 1

    def _schedule_retry(self, lane: Lane, request: Request) -> None:
        request.retries += 1
        self.counters["retries"] += 1
        delay = request.retries * self.retry_base_delay
        logger.warning(
            "Retrying %s %s in %.1fs (attempt %d of %d)",
            lane.kind.value,
            request.id,
            delay,
            request.retries + 1,
            self.max_retries + 1,
        )
        task = asyncio.create_task(self._requeue_later(lane, request, delay))
        self._retries[task] = request
        task.add_done_callback(lambda done: self._retries.pop(done, None))

    async def _requeue_later(self, lane: Lane, request: Request, delay: float) -> None:
        await asyncio.sleep(delay)
        if request.finished:
            return
        # Retried work goes ahead of newer arrivals.
        request.enqueued_at = self._clock()
        lane.push_front(request)

    # -- housekeeping -----------------------------------------------------

    async def sweep(self, now: Optional[float] = None) -> int:
        """Drop queued requests that waited too long or whose client left."""
        now = self._clock() if now is None else now
        expired: List[Request] = []
        abandoned: List[Request] = []
        for lane in self.lanes.values():
            for request in list(lane.pending):
                queued_at = request.enqueued_at if request.enqueued_at is not None else request.submitted_at
                if request.sink is not None and request.sink.disconnected.is_set():
                    lane.remove(request)
                    abandoned.append(request)
                elif now - queued_at > self.request_timeout:
                    lane.remove(request)
                    expired.append(request)
        for request in expired:
            self.counters["timeouts"] += 1
            logger.info("Request %s expired after waiting in the queue", request.id)
            await request.fail(
                RequestTimeout(f"Request waited more than {self.request_timeout:.0f}s in the queue")
            )
        for request in abandoned:
            self.counters["cancelled"] += 1
            await request.fail(Cancelled())
        return len(expired) + len(abandoned)

    def stats(self) -> Dict[str, Any]:
        return {kind.value: lane.stats() for kind, lane in self.lanes.items()}
