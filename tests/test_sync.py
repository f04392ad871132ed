"""
Tests for telemetry_relay.client.sync module.

Tests TelemetrySender online-first delivery with durable fallback, and the
QueueSync triggers around the flush engine.
"""

import logging
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
    QueueSync,
    TelemetrySender,
    build_client,
)
from telemetry_relay.config import ClientConfig
from telemetry_relay.models import QueueItem, SyncStatus

from .conftest import INGEST_URL, FakeClock, RecordingHandler


class TestTelemetrySender:
    """Test event submission."""

    def test_online_delivery_skips_queue(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should deliver directly and leave the queue empty."""
        handler = RecordingHandler(200)
        sender = TelemetrySender(INGEST_URL, queue, make_transport(handler), connectivity)

        assert sender.send_gps_log({'lat': 1.0, 'lng': 2.0}) is True

        assert queue.count() == 0
        assert len(handler.requests) == 1

    def test_events_are_stamped_with_event_id(
        self,
        queue: DurableQueue,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should add an eventId to events without one and keep existing ones."""
        offline = ConnectivityMonitor(initial=False)
        sender = TelemetrySender(INGEST_URL, queue, make_transport(RecordingHandler(200)), offline)

        sender.send({'jobs': [{'jobId': 'J1'}, {'jobId': 'J2', 'eventId': 'given'}]})

        item: QueueItem = queue.list_pending()[0]
        events = item.payload['jobs']
        assert events[0]['eventId']
        assert events[1]['eventId'] == 'given'

    def test_offline_submission_is_queued(
        self,
        queue: DurableQueue,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should enqueue without touching the network while offline."""
        handler = RecordingHandler(200)
        offline = ConnectivityMonitor(initial=False)
        sender = TelemetrySender(INGEST_URL, queue, make_transport(handler), offline)

        assert sender.send_shift({'shiftId': 'S1'}) is True

        assert handler.requests == []
        item: QueueItem = queue.list_pending()[0]
        assert item.payload == {'shifts': [item.payload['shifts'][0]]}
        assert item.id != item.request_id

    def test_retryable_failure_falls_back_to_queue(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should queue under the same idempotency key after a 503."""
        handler = RecordingHandler(503)
        sender = TelemetrySender(INGEST_URL, queue, make_transport(handler), connectivity)

        assert sender.send_job_update({'jobId': 'J1'}) is True

        item: QueueItem = queue.list_pending()[0]
        assert item.id == handler.requests[0].headers['Idempotency-Key']
        assert item.request_id == handler.requests[0].headers['X-Request-Id']

    def test_rejected_submission_is_not_queued(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should report False and not queue a payload the server rejected."""
        sender = TelemetrySender(
            INGEST_URL, queue, make_transport(RecordingHandler(400)), connectivity
        )

        assert sender.send_intended_route([{'lat': 1.0}, {'lat': 2.0}]) is False
        assert queue.count() == 0

    def test_each_submission_gets_a_new_key(
        self,
        queue: DurableQueue,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should never reuse an idempotency key across logical submissions."""
        offline = ConnectivityMonitor(initial=False)
        sender = TelemetrySender(INGEST_URL, queue, make_transport(RecordingHandler(200)), offline)

        sender.send_gps_log({'lat': 1.0})
        sender.send_gps_log({'lat': 1.0})

        assert len({item.id for item in queue.list_pending()}) == 2


class TestQueueSync:
    """Test scheduling of flushes."""

    def _sync(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        transport: IngestTransport,
    ) -> QueueSync:
        engine = FlushEngine(queue, transport, connectivity, clock=clock)
        return QueueSync(
            engine,
            queue,
            connectivity,
            flush_interval_seconds=60.0,
            status_poll_seconds=60.0,
        )

    def test_flush_now_drains_queue(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should deliver queued items and refresh the status."""
        queue.enqueue(INGEST_URL, {'jobs': [{'eventId': 'e'}]}, 'k', 'r')
        sync: QueueSync = self._sync(queue, connectivity, clock, make_transport(RecordingHandler(200)))

        report: FlushReport = sync.flush_now().result(timeout=5.0)
        sync.stop()

        status: SyncStatus = sync.status
        assert report.delivered == 1
        assert status.queued == 0
        assert status.online is True
        assert status.last_flush_at == clock.now

    def test_reconnect_triggers_flush(
        self,
        queue: DurableQueue,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should flush when connectivity goes from offline to online."""
        queue.enqueue(INGEST_URL, {'jobs': [{'eventId': 'e'}]}, 'k', 'r')
        monitor = ConnectivityMonitor(initial=False)
        delivered: list[str] = []

        def record(request: httpx.Request) -> httpx.Response:
            delivered.append(request.headers['Idempotency-Key'])
            return httpx.Response(200)

        sync: QueueSync = self._sync(queue, monitor, clock, make_transport(record))

        monitor.set_online(True)
        sync.stop(wait=True)

        assert delivered == ['k']
        assert queue.count() == 0

    def test_status_reports_offline_and_evictions(
        self,
        queue: DurableQueue,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
    ) -> None:
        """Should expose queue depth, evictions and connectivity."""
        monitor = ConnectivityMonitor(initial=False)
        for index in range(queue.max_items + 1):
            clock.advance(1.0)
            queue.enqueue(INGEST_URL, {'jobs': []}, f'k{index}', f'r{index}')
        sync: QueueSync = self._sync(queue, monitor, clock, make_transport(RecordingHandler(200)))

        status: SyncStatus = sync.refresh_status()
        sync.stop()

        assert status.queued == queue.max_items
        assert status.evicted == 1
        assert status.online is False
        assert status.is_flushing is False

    def test_failed_background_flush_is_logged_and_reported(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Should surface a flush failure in the log and in SyncStatus.last_error."""
        queue.enqueue(INGEST_URL, {'jobs': [{'eventId': 'e'}]}, 'k', 'r')
        sync: QueueSync = self._sync(queue, connectivity, clock, make_transport(RecordingHandler(200)))

        def broken_session() -> None:
            raise OperationalError('SELECT', {}, Exception('database is locked'))

        monkeypatch.setattr(queue, '_session_factory', broken_session)

        with caplog.at_level(logging.ERROR, logger='telemetry_relay'):
            report: FlushReport = sync.flush_now().result(timeout=5.0)
        sync.stop()

        assert report.aborted is True
        assert sync.status.last_error is not None
        assert 'database is locked' in sync.status.last_error
        assert any(record.levelno >= logging.ERROR for record in caplog.records)

    def test_unexpected_flush_exception_is_contained(
        self,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        clock: FakeClock,
        make_transport: Callable[..., IngestTransport],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Should log and record errors the engine itself did not handle."""
        engine = FlushEngine(queue, make_transport(RecordingHandler(200)), connectivity, clock=clock)
        sync = QueueSync(engine, queue, connectivity, flush_interval_seconds=60.0, status_poll_seconds=60.0)

        def explode() -> FlushReport:
            raise RuntimeError('transport pool exhausted')

        engine.flush = explode  # type: ignore[method-assign]

        with caplog.at_level(logging.ERROR, logger='telemetry_relay'):
            report: FlushReport = sync.flush_now().result(timeout=5.0)
        sync.stop()

        assert report.aborted is True
        assert sync.status.last_error == 'RuntimeError: transport pool exhausted'
        assert 'Background flush failed' in caplog.text


class TestBuildClient:
    """Test wiring from configuration."""

    def test_build_client_returns_unstarted_pair(self, client_config: ClientConfig) -> None:
        """Should construct a sender and a sync sharing one queue."""
        monitor = ConnectivityMonitor(initial=False)

        sender, sync = build_client(client_config, connectivity=monitor)

        assert sender.send_gps_log({'lat': 1.0}) is True
        assert sync.refresh_status().queued == 1
        sync.stop()
        assert client_config.queue.database_path.exists()
