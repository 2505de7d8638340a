import asyncio
import random

import pytest

from streamgate.errors import (
    ErrorKind,
    GenericFailure,
    ParseError,
    RequestTimeout,
    TransientFailure,
)
from streamgate.scheduler import Lane, Request, RequestKind, Scheduler

from fakes import FakeSink


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_scheduler(handler, concurrency=1, capacity=10, **kwargs):
    lanes = {
        RequestKind.DOWNLOAD: Lane(RequestKind.DOWNLOAD, capacity=capacity, concurrency=concurrency),
        RequestKind.METADATA: Lane(RequestKind.METADATA, capacity=capacity, concurrency=concurrency),
    }
    kwargs.setdefault("retry_base_delay", 0.0)
    return Scheduler(lanes, {RequestKind.DOWNLOAD: handler, RequestKind.METADATA: handler}, **kwargs)


def download(video_id="dQw4w9WgXcQ", sink=None):
    return Request(kind=RequestKind.DOWNLOAD, video_id=video_id, sink=sink)


async def wait_all(requests, timeout=5):
    return await asyncio.wait_for(asyncio.gather(*(r.wait() for r in requests)), timeout)


@pytest.mark.asyncio
async def test_requests_are_dequeued_in_arrival_order():
    order = []

    async def handler(request):
        order.append(request.video_id)
        await asyncio.sleep(0)
        return request.video_id

    scheduler = make_scheduler(handler, concurrency=1)
    requests = [download(video_id=name) for name in ("a", "b", "c", "d")]
    tickets = [scheduler.enqueue(r) for r in requests]
    assert [t.position for t in tickets] == [1, 2, 3, 4]

    scheduler.start()
    results = await wait_all(requests)
    await scheduler.stop()

    assert order == ["a", "b", "c", "d"]
    assert [r.value for r in results] == ["a", "b", "c", "d"]


@pytest.mark.asyncio
async def test_enqueue_rejects_when_queue_is_full():
    async def handler(request):
        return None

    scheduler = make_scheduler(handler, capacity=2)
    assert scheduler.enqueue(download()).accepted
    assert scheduler.enqueue(download()).accepted
    ticket = scheduler.enqueue(download())
    assert not ticket.accepted
    assert ticket.depth == 2
    assert scheduler.counters["queue_full"] == 1


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_slot_limit_even_with_failures():
    active = 0
    peak = 0

    async def handler(request):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        try:
            await asyncio.sleep(random.uniform(0, 0.01))
            roll = random.random()
            if roll < 0.3:
                raise GenericFailure("boom")
            if roll < 0.4:
                raise RuntimeError("unexpected")
            return "ok"
        finally:
            active -= 1

    scheduler = make_scheduler(handler, concurrency=3, capacity=100)
    requests = [download(sink=FakeSink()) for _ in range(40)]
    for r in requests:
        assert scheduler.enqueue(r).accepted
    scheduler.start()
    await wait_all(requests)
    await scheduler.stop()

    lane = scheduler.lanes[RequestKind.DOWNLOAD]
    assert peak <= 3
    assert lane.peak_active <= 3
    assert lane.active == {}
    assert not lane.slots.locked()
    assert all(r.finished for r in requests)


@pytest.mark.asyncio
async def test_transient_failure_is_retried_at_front_of_queue():
    order = []
    gate = asyncio.Event()
    attempts = {"r": 0}

    async def handler(request):
        order.append(request.video_id)
        if request.video_id == "r":
            attempts["r"] += 1
            if attempts["r"] == 1:
                raise TransientFailure("connection reset")
        if request.video_id == "b":
            await gate.wait()
        return request.video_id

    scheduler = make_scheduler(handler, concurrency=1)
    r, b, c = download(video_id="r"), download(video_id="b"), download(video_id="c")
    for request in (r, b, c):
        scheduler.enqueue(request)
    scheduler.start()

    while len(order) < 2:
        await asyncio.sleep(0.001)
    await asyncio.sleep(0.01)
    gate.set()
    await wait_all([r, b, c])
    await scheduler.stop()

    # the retried request overtakes c, which arrived before the retry
    assert order.count("r") == 2
    assert len(order) - 1 - order[::-1].index("r") < order.index("c")
    assert r.retries == 1
    assert scheduler.counters["retries"] == 1


@pytest.mark.asyncio
async def test_retry_budget_exhaustion_surfaces_generic_failure():
    calls = 0

    async def handler(request):
        nonlocal calls
        calls += 1
        raise TransientFailure("HTTP Error 503")

    scheduler = make_scheduler(handler, max_retries=3)
    sink = FakeSink()
    request = download(sink=sink)
    scheduler.enqueue(request)
    scheduler.start()
    result = (await wait_all([request]))[0]
    await scheduler.stop()

    assert calls == 4
    assert request.retries == 3
    assert result.error.kind is ErrorKind.GENERIC_FAILURE
    assert "gave up after 3 retries" in result.error.message
    assert sink.status == 500


@pytest.mark.asyncio
async def test_terminal_errors_are_not_retried():
    calls = 0

    async def handler(request):
        nonlocal calls
        calls += 1
        raise ParseError()

    scheduler = make_scheduler(handler)
    request = download()
    scheduler.enqueue(request)
    scheduler.start()
    result = (await wait_all([request]))[0]
    await scheduler.stop()

    assert calls == 1
    assert result.error.kind is ErrorKind.PARSE_ERROR


@pytest.mark.asyncio
async def test_no_retry_once_bytes_were_sent():
    calls = 0

    async def handler(request):
        nonlocal calls
        calls += 1
        await request.sink.start(200, {})
        await request.sink.write(b"partial")
        raise TransientFailure("connection reset")

    scheduler = make_scheduler(handler)
    sink = FakeSink()
    request = download(sink=sink)
    scheduler.enqueue(request)
    scheduler.start()
    await wait_all([request])
    await scheduler.stop()

    assert calls == 1
    assert sink.status == 200
    assert sink.aborted
    assert sink.errors == []


@pytest.mark.asyncio
async def test_sweep_times_out_requests_that_waited_too_long():
    clock = FakeClock()

    async def handler(request):
        return None

    scheduler = make_scheduler(handler, request_timeout=300, clock=clock)
    stale_sink, fresh_sink = FakeSink(), FakeSink()
    stale = download(sink=stale_sink)
    scheduler.enqueue(stale)
    clock.now += 200
    fresh = download(sink=fresh_sink)
    scheduler.enqueue(fresh)
    clock.now += 101

    assert await scheduler.sweep() == 1
    result = await stale.wait()
    assert isinstance(result.error, RequestTimeout)
    assert stale_sink.status == 408
    assert not fresh.finished
    assert scheduler.position(fresh) == 1


@pytest.mark.asyncio
async def test_queued_request_of_departed_client_is_never_run():
    ran = []

    async def handler(request):
        ran.append(request.id)

    scheduler = make_scheduler(handler)
    sink = FakeSink()
    request = download(sink=sink)
    scheduler.enqueue(request)
    sink.disconnected.set()
    scheduler.start()
    result = await asyncio.wait_for(request.wait(), 1)
    await scheduler.stop()

    assert ran == []
    assert result.error.kind is ErrorKind.CANCELLED
    assert sink.status is None


@pytest.mark.asyncio
async def test_request_completes_exactly_once():
    sink = FakeSink()
    request = download(sink=sink)
    assert request.complete("done")
    assert not request.complete("again")
    assert not await request.fail(GenericFailure("late"))
    assert (await request.wait()).value == "done"
    assert sink.errors == []


@pytest.mark.asyncio
async def test_stop_fails_queued_requests():
    gate = asyncio.Event()

    async def handler(request):
        await gate.wait()

    scheduler = make_scheduler(handler, concurrency=1)
    running, queued = download(sink=FakeSink()), download(sink=FakeSink())
    scheduler.enqueue(running)
    scheduler.enqueue(queued)
    scheduler.start()
    while not scheduler.lanes[RequestKind.DOWNLOAD].active:
        await asyncio.sleep(0.001)
    await scheduler.stop()

    for request in (running, queued):
        result = await request.wait()
        assert result.error.kind is ErrorKind.OVERLOADED


@pytest.mark.asyncio
async def test_stop_fails_request_waiting_out_its_retry_delay():
    async def handler(request):
        raise TransientFailure("connection reset")

    scheduler = make_scheduler(handler, retry_base_delay=10.0)
    sink = FakeSink()
    request = download(sink=sink)
    scheduler.enqueue(request)
    scheduler.start()
    while scheduler.counters["retries"] < 1:
        await asyncio.sleep(0.001)
    lane = scheduler.lanes[RequestKind.DOWNLOAD]
    assert lane.position(request) == 0
    assert not lane.active

    await scheduler.stop()

    assert request.finished
    result = await asyncio.wait_for(request.wait(), timeout=1)
    assert result.error.kind is ErrorKind.OVERLOADED
    assert sink.status == 503
