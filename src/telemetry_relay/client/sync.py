# telemetry_relay/client/sync.py
"""
Producer-facing sender and the background sync scheduler.

TelemetrySender is what application code calls. Each submission gets a fresh
idempotency key and request id; every event without an eventId is stamped
with one. While online the sender tries a direct delivery first and falls
back to the durable queue when the server is unreachable or asks to retry.

QueueSync drives the flush engine:

- a periodic flush timer that fires while online with items queued,
- a status poll timer that refreshes the observable SyncStatus,
- a flush triggered by every offline-to-online transition,
- flush_now() for on-demand flushes.

Flushes always run on a single background worker so producers never block
on the network.
"""

import logging
import threading
import uuid
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Final

from telemetry_relay.client.connectivity import ConnectivityMonitor
from telemetry_relay.client.flush import FlushEngine, FlushReport
from telemetry_relay.client.queue import DurableQueue
from telemetry_relay.client.transport import IngestTransport
from telemetry_relay.config import ClientConfig
from telemetry_relay.models import DeliveryOutcome, DeliveryResult, SyncStatus

__all__: list[str] = ['EVENT_ID_FIELD', 'QueueSync', 'TelemetrySender', 'build_client']

logger: logging.Logger = logging.getLogger(__name__)

EVENT_ID_FIELD: Final[str] = 'eventId'

STREAM_JOBS: Final[str] = 'jobs'
STREAM_GPS_LOGS: Final[str] = 'gps_logs'
STREAM_SHIFTS: Final[str] = 'shifts'
STREAM_INTENDED_ROUTE: Final[str] = 'intended_route'


# =============================================================================
# Sender
# =============================================================================


class TelemetrySender:
    """
    Submit event batches with online-first delivery and durable fallback.

    Example:
        >>> sender = TelemetrySender(config.client.ingest_url, queue, transport, monitor)
        >>> sender.send_gps_log({'lat': 51.5, 'lng': -0.12, 'timestamp': '...'})
        True
    """

    def __init__(
        self,
        ingest_url: str,
        queue: DurableQueue,
        transport: IngestTransport,
        connectivity: ConnectivityMonitor,
    ) -> None:
        self._ingest_url: str = ingest_url
        self._queue: DurableQueue = queue
        self._transport: IngestTransport = transport
        self._connectivity: ConnectivityMonitor = connectivity

    def send(self, batch: Mapping[str, Sequence[Mapping[str, Any]]]) -> bool:
        """
        Submit one batch of events.

        Args:
            batch: Stream name to list of events.

        Returns:
            True if the batch was delivered or durably queued. False if the
            server rejected it as malformed or it could not be queued; in that
            case the events are not captured.
        """
        payload: dict[str, list[dict[str, Any]]] = {
            stream: [_with_event_id(event) for event in events]
            for stream, events in batch.items()
        }
        idempotency_key: str = str(uuid.uuid4())
        request_id: str = str(uuid.uuid4())

        if not self._connectivity.is_online:
            logger.debug('Offline, queueing request %s', idempotency_key)
            return self._queue.enqueue(
                self._ingest_url, payload, idempotency_key, request_id
            )

        result: DeliveryResult = self._transport.deliver(
            self._ingest_url, payload, idempotency_key, request_id
        )

        if result.outcome is DeliveryOutcome.DELIVERED:
            return True

        if result.outcome is DeliveryOutcome.REJECTED:
            logger.error(
                'Request %s rejected by server (HTTP %s), not queued',
                idempotency_key,
                result.status_code,
            )
            return False

        logger.info(
            'Direct delivery of %s failed (%s), falling back to queue',
            idempotency_key,
            result.error,
        )
        return self._queue.enqueue(self._ingest_url, payload, idempotency_key, request_id)

    def send_job_update(self, event: Mapping[str, Any]) -> bool:
        return self.send({STREAM_JOBS: [event]})

    def send_gps_log(self, event: Mapping[str, Any]) -> bool:
        return self.send({STREAM_GPS_LOGS: [event]})

    def send_shift(self, event: Mapping[str, Any]) -> bool:
        return self.send({STREAM_SHIFTS: [event]})

    def send_intended_route(self, points: Sequence[Mapping[str, Any]]) -> bool:
        """Submit the breadcrumb points of a planned route as one batch."""
        return self.send({STREAM_INTENDED_ROUTE: points})


def _with_event_id(event: Mapping[str, Any]) -> dict[str, Any]:
    stamped: dict[str, Any] = dict(event)
    if not stamped.get(EVENT_ID_FIELD):
        stamped[EVENT_ID_FIELD] = str(uuid.uuid4())
    return stamped


# =============================================================================
# Scheduler
# =============================================================================


class QueueSync:
    """
    Background timers and triggers around a FlushEngine.

    Thread Safety:
        Timers run on daemon threads; flushes run on a single-worker executor.
        The engine's own single-flight lock still guards against overlap with
        flushes started elsewhere.

    Example:
        >>> sync = QueueSync(engine, queue, monitor, flush_interval_seconds=30)
        >>> sync.start()
        >>> print(sync.status.queued)
        >>> sync.stop()
    """

    def __init__(
        self,
        engine: FlushEngine,
        queue: DurableQueue,
        connectivity: ConnectivityMonitor,
        flush_interval_seconds: float = 30.0,
        status_poll_seconds: float = 2.0,
    ) -> None:
        self._engine: FlushEngine = engine
        self._queue: DurableQueue = queue
        self._connectivity: ConnectivityMonitor = connectivity
        self._flush_interval_seconds: float = flush_interval_seconds
        self._status_poll_seconds: float = status_poll_seconds

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='queue-flush')
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._status: SyncStatus = SyncStatus(online=connectivity.is_online)
        self._status_lock = threading.Lock()

        connectivity.subscribe(self._on_connectivity_change)

    @property
    def status(self) -> SyncStatus:
        with self._status_lock:
            return self._status

    def refresh_status(self) -> SyncStatus:
        """Recompute SyncStatus from the queue and the engine."""
        status = SyncStatus(
            queued=self._queue.count(),
            is_flushing=self._engine.is_flushing,
            online=self._connectivity.is_online,
            evicted=self._queue.evicted_count,
            last_flush_at=self._engine.last_flush_at,
            last_error=self._engine.last_error,
        )
        with self._status_lock:
            self._status = status
        return status

    def flush_now(self) -> Future[FlushReport]:
        """Schedule a flush on the background worker."""
        future: Future[FlushReport] = self._executor.submit(self._run_flush)
        return future

    def _run_flush(self) -> FlushReport:
        try:
            return self._engine.flush()
        except Exception as flush_error:
            # Callers discard the future, so this is the only place the failure surfaces
            logger.exception('Background flush failed')
            self._engine.last_error = f'{type(flush_error).__name__}: {flush_error}'
            return FlushReport(aborted=True, error=self._engine.last_error)
        finally:
            self.refresh_status()

    def _on_connectivity_change(self, online: bool) -> None:
        self.refresh_status()
        if online:
            logger.info('Back online, flushing queue')
            self.flush_now()

    def _flush_tick(self) -> None:
        # A transition to online triggers its own flush through the subscription
        self._connectivity.probe()
        if self._connectivity.is_online and self._queue.count() > 0:
            self.flush_now()

    def _ticker(
        self, interval_seconds: float, tick_name: str, tick: Callable[[], object]
    ) -> None:
        while not self._stop_event.wait(interval_seconds):
            try:
                tick()
            except Exception:
                logger.exception('%s tick failed', tick_name)

    def start(self) -> None:
        """Start the flush and status timers, and flush once if online."""
        if self._threads:
            return

        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._ticker,
                args=(self._flush_interval_seconds, 'Flush', self._flush_tick),
                name='queue-sync-flush',
                daemon=True,
            ),
            threading.Thread(
                target=self._ticker,
                args=(self._status_poll_seconds, 'Status', self.refresh_status),
                name='queue-sync-status',
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

        logger.info(
            'QueueSync started: flush every %.0fs, status every %.0fs',
            self._flush_interval_seconds,
            self._status_poll_seconds,
        )
        self.refresh_status()
        if self._connectivity.is_online:
            self.flush_now()

    def stop(self, wait: bool = True) -> None:
        """Stop the timers and the flush worker. A stopped QueueSync cannot be restarted."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=5.0)
        self._threads = []
        self._executor.shutdown(wait=wait)
        logger.info('QueueSync stopped')


# =============================================================================
# Wiring
# =============================================================================


def build_client(
    config: ClientConfig, connectivity: ConnectivityMonitor | None = None
) -> tuple[TelemetrySender, QueueSync]:
    """
    Construct the client stack from configuration.

    Args:
        config: Client configuration.
        connectivity: Monitor fed by the host platform's network callbacks.
            When omitted, one polling `config.probe_url` is created.

    Returns:
        (sender, sync). The sync is not started; call `sync.start()`.
    """
    if connectivity is None:
        connectivity = ConnectivityMonitor(probe_url=config.probe_url)

    queue = DurableQueue(config.queue)
    transport = IngestTransport(config)
    engine = FlushEngine(
        queue,
        transport,
        connectivity,
        backoff_base_seconds=config.queue.backoff_base_seconds,
        backoff_cap_seconds=config.queue.backoff_cap_seconds,
    )
    sender = TelemetrySender(config.ingest_url, queue, transport, connectivity)
    sync = QueueSync(
        engine,
        queue,
        connectivity,
        flush_interval_seconds=config.queue.flush_interval_seconds,
        status_poll_seconds=config.queue.status_poll_seconds,
    )
    return sender, sync
