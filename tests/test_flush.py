"""
Tests for telemetry_relay.client.flush module.

Tests the backoff schedule, sequential FIFO delivery, outcome handling,
single-flight protection and offline behavior.
"""

import threading
from collections.abc import Callable

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from telemetry_relay.client import (
    ConnectivityMonitor,
    DurableQueue,
    FlushEngine,
    FlushReport,
    IngestTransport,
    compute_backoff_seconds,
)
from telemetry_relay.models import QueueItem

from .conftest import INGEST_URL, FakeClock, RecordingHandler


def _fill(queue: DurableQueue, clock: FakeClock, *keys: str) -> None:
    for key in keys:
        clock.advance(1.0)
        queue.enqueue(INGEST_URL, {'jobs': [{'eventId': key}]}, key, f'req-{key}')


def _engine(
    queue: DurableQueue,
    transport: IngestTransport,
    connectivity: ConnectivityMonitor,
    clock: FakeClock,
) -> FlushEngine:
    return FlushEngine(
        queue,
        transport,
        connectivity,
        backoff_base_seconds=2.0,
        backoff_cap_seconds=300.0,
        clock=clock,
    )


class TestComputeBackoff:
    """Test the exponential backoff schedule."""

    def test_schedule_doubles_from_base(self) -> None:
        """Should produce base * 2^(n-1)."""
        delays: list[float] = [compute_backoff_seconds(n, 2.0, 300.0) for n in range(1, 6)]

        assert delays == [2.0, 4.0, 8.0, 16.0, 32.0]

    def test_schedule_is_monotonic_and_capped(self) -> None:
        """Should never decrease and never exceed the cap."""
        delays: list[float] = [compute_backoff_seconds(n, 2.0, 300.0) for n in range(1, 200)]

        assert delays == sorted(delays)
        assert max(delays) == 300.0

    def test_huge_attempt_counts_return_cap(self) -> None:
        """Should not overflow for very large attempt counts."""
        assert compute_backoff_seconds(10_000, 2.0, 300.0) == 300.0


class TestFlushEngineOutcomes:
    """Test how each delivery outcome changes the queue."""

    def test_delivered_items_are_removed_in_fifo_order(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should deliver oldest first and empty the queue."""
        _fill(queue, clock, 'a', 'b', 'c')
        handler = RecordingHandler(200)
        engine: FlushEngine = _engine(queue, make_transport(handler), connectivity, clock)

        report: FlushReport = engine.flush()

        assert report.delivered == 3
        assert queue.count() == 0
        assert [request.headers['Idempotency-Key'] for request in handler.requests] == [
            'a',
            'b',
            'c',
        ]

    def test_rejected_items_are_dropped(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should remove items the server rejects with 4xx."""
        _fill(queue, clock, 'bad')
        engine: FlushEngine = _engine(queue, make_transport(RecordingHandler(400)), connectivity, clock)

        report: FlushReport = engine.flush()

        assert report.rejected == 1
        assert queue.count() == 0
        assert engine.last_error == 'HTTP 400'

    def test_retry_reschedules_with_backoff(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should keep the item, bump attempts and push next_attempt_at out."""
        _fill(queue, clock, 'flaky')
        engine: FlushEngine = _engine(queue, make_transport(RecordingHandler(503)), connectivity, clock)

        report: FlushReport = engine.flush()

        item: QueueItem | None = queue.get('flaky')
        assert report.retried == 1
        assert item is not None
        assert item.attempts == 1
        assert item.next_attempt_at == clock.now + 2.0
        assert item.last_error == 'HTTP 503'

    def test_item_not_retried_before_backoff_elapses(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should skip items whose retry time has not arrived."""
        _fill(queue, clock, 'flaky')
        handler = RecordingHandler(503)
        engine: FlushEngine = _engine(queue, make_transport(handler), connectivity, clock)

        engine.flush()
        clock.advance(1.0)
        second: FlushReport = engine.flush()
        clock.advance(1.5)
        third: FlushReport = engine.flush()

        item: QueueItem | None = queue.get('flaky')
        assert second.processed == 0
        assert third.retried == 1
        assert len(handler.requests) == 2
        assert item is not None
        assert item.attempts == 2

    def test_rate_limited_items_are_retried(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should treat 429 as retryable and keep the item."""
        _fill(queue, clock, 'busy')
        engine: FlushEngine = _engine(queue, make_transport(RecordingHandler(429)), connectivity, clock)

        report: FlushReport = engine.flush()

        assert report.retried == 1
        assert queue.count() == 1


class TestFlushEngineScheduling:
    """Test single-flight and connectivity handling."""

    def test_offline_flush_is_skipped(
        self,
        queue: DurableQueue,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should not attempt delivery while offline."""
        _fill(queue, clock, 'a')
        handler = RecordingHandler(200)
        offline = ConnectivityMonitor(initial=False)
        engine: FlushEngine = _engine(queue, make_transport(handler), offline, clock)

        report: FlushReport = engine.flush()

        assert report.skipped is True
        assert handler.requests == []
        assert queue.count() == 1

    def test_connectivity_loss_aborts_flush(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should stop after the item during which connectivity was lost."""
        _fill(queue, clock, 'a', 'b', 'c')

        def go_offline_after_first(request: httpx.Request) -> httpx.Response:
            connectivity.set_online(False)
            return httpx.Response(200)

        engine: FlushEngine = _engine(
            queue, make_transport(go_offline_after_first), connectivity, clock
        )

        report: FlushReport = engine.flush()

        assert report.delivered == 1
        assert report.aborted is True
        assert [item.id for item in queue.list_pending()] == ['b', 'c']
        assert all(item.attempts == 0 for item in queue.list_pending())

    def test_concurrent_flush_is_skipped(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should return immediately while another flush holds the lock."""
        _fill(queue, clock, 'a')
        entered = threading.Event()
        release = threading.Event()

        def slow(request: httpx.Request) -> httpx.Response:
            entered.set()
            release.wait(timeout=5.0)
            return httpx.Response(200)

        engine: FlushEngine = _engine(queue, make_transport(slow), connectivity, clock)
        reports: list[FlushReport] = []
        worker = threading.Thread(target=lambda: reports.append(engine.flush()))
        worker.start()
        assert entered.wait(timeout=5.0)

        concurrent: FlushReport = engine.flush()
        assert engine.is_flushing is True
        release.set()
        worker.join(timeout=5.0)

        assert concurrent.skipped is True
        assert reports[0].delivered == 1
        assert engine.is_flushing is False


@pytest.mark.parametrize('status', [500, 502, 504])
def test_server_errors_never_remove_items(
    queue: DurableQueue,
    connectivity: ConnectivityMonitor,
    clock: FakeClock,
    make_transport: Callable[..., IngestTransport],
    status: int,
) -> None:
    """Should keep items on any 5xx."""
    _fill(queue, clock, 'x')
    engine: FlushEngine = _engine(queue, make_transport(RecordingHandler(status)), connectivity, clock)

    engine.flush()

    assert queue.count() == 1


class TestFlushEngineStorageFailures:
    """Test flushes over an unreadable queue."""

    def test_unreadable_queue_aborts_flush(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Should report the storage error instead of raising it."""
        _fill(queue, clock, 'a')
        handler = RecordingHandler(200)
        engine: FlushEngine = _engine(queue, make_transport(handler), connectivity, clock)

        def broken_session() -> None:
            raise OperationalError('SELECT', {}, Exception('disk I/O error'))

        monkeypatch.setattr(queue, '_session_factory', broken_session)

        report: FlushReport = engine.flush()

        assert report.aborted is True
        assert report.error is not None
        assert 'disk I/O error' in report.error
        assert engine.last_error == report.error
        assert handler.requests == []
