# telemetry_relay/client/flush.py
"""
Flush engine: drains the durable queue through the transport.

A flush processes due items strictly one at a time, oldest first. Each
attempt has exactly one of three effects on the queue:

- DELIVERED or REJECTED: the item is removed. Rejected items are terminal;
  retrying a 4xx would only repeat the rejection.
- RETRY: attempts is incremented and next_attempt_at is pushed out by an
  exponential backoff capped at `backoff_cap_seconds`.

At most one flush runs at a time. A flush requested while another is running
returns immediately without touching the queue. Losing connectivity mid-flush
stops the flush; untouched items keep their state.
"""

import logging
import threading
import time
from collections.abc import Callable

from pydantic import BaseModel

from telemetry_relay.client.connectivity import ConnectivityMonitor
from telemetry_relay.client.queue import DurableQueue, QueueStorageError
from telemetry_relay.client.transport import IngestTransport
from telemetry_relay.models import DeliveryOutcome, DeliveryResult, QueueItem

__all__: list[str] = ['FlushEngine', 'FlushReport', 'compute_backoff_seconds']

logger: logging.Logger = logging.getLogger(__name__)


def compute_backoff_seconds(attempts: int, base_seconds: float, cap_seconds: float) -> float:
    """
    Delay before the next attempt after `attempts` failed attempts.

    delay = min(base * 2^(attempts - 1), cap)

    Args:
        attempts: Failed attempts so far, including the one just made (>= 1).
        base_seconds: Delay after the first failure.
        cap_seconds: Upper bound on the delay.

    Returns:
        Delay in seconds.

    Example:
        >>> compute_backoff_seconds(1, 2.0, 300.0)
        2.0
        >>> compute_backoff_seconds(4, 2.0, 300.0)
        16.0
        >>> compute_backoff_seconds(20, 2.0, 300.0)
        300.0
    """
    exponent: int = max(attempts - 1, 0)
    # Bound the exponent so huge attempt counts cannot overflow the float
    if exponent >= 64:  # noqa: PLR2004
        return cap_seconds
    return min(base_seconds * (2**exponent), cap_seconds)


class FlushReport(BaseModel):
    """Summary of one flush invocation."""

    delivered: int = 0
    rejected: int = 0
    retried: int = 0
    skipped: bool = False
    aborted: bool = False
    error: str | None = None

    @property
    def processed(self) -> int:
        return self.delivered + self.rejected + self.retried


class FlushEngine:
    """
    Sequential, single-flight delivery of queued items.

    Example:
        >>> engine = FlushEngine(queue, transport, connectivity)
        >>> report = engine.flush()
        >>> print(report.delivered, report.retried)
    """

    def __init__(  # noqa: PLR0913
        self,
        queue: DurableQueue,
        transport: IngestTransport,
        connectivity: ConnectivityMonitor,
        backoff_base_seconds: float = 2.0,
        backoff_cap_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._queue: DurableQueue = queue
        self._transport: IngestTransport = transport
        self._connectivity: ConnectivityMonitor = connectivity
        self._backoff_base_seconds: float = backoff_base_seconds
        self._backoff_cap_seconds: float = backoff_cap_seconds
        self._clock: Callable[[], float] = clock
        self._flush_lock = threading.Lock()
        self.last_flush_at: float | None = None
        self.last_error: str | None = None

    @property
    def is_flushing(self) -> bool:
        return self._flush_lock.locked()

    def flush(self) -> FlushReport:
        """
        Attempt delivery of every due item, oldest first.

        Returns:
            FlushReport. `skipped` is set when another flush was already
            running or the client is offline; `aborted` when connectivity was
            lost or the queue storage failed part-way.
        """
        if not self._flush_lock.acquire(blocking=False):
            logger.debug('Flush already in progress, skipping')
            return FlushReport(skipped=True)

        try:
            return self._flush_locked()
        finally:
            self.last_flush_at = self._clock()
            self._flush_lock.release()

    def _flush_locked(self) -> FlushReport:
        report = FlushReport()

        if not self._connectivity.is_online:
            logger.debug('Offline, flush skipped')
            report.skipped = True
            return report

        try:
            due_items: list[QueueItem] = self._queue.list_due(self._clock())
        except QueueStorageError as storage_error:
            logger.error('Queue storage unreadable, flush aborted: %s', storage_error)
            report.aborted = True
            report.error = str(storage_error)
            self.last_error = report.error
            return report

        if not due_items:
            return report

        logger.info('Flushing %d due item(s)', len(due_items))

        for item in due_items:
            if not self._connectivity.is_online:
                logger.warning(
                    'Connectivity lost during flush, %d item(s) left for later',
                    len(due_items) - report.processed,
                )
                report.aborted = True
                break

            result: DeliveryResult = self._transport.send(item)

            try:
                self._apply_result(item, result, report)
            except QueueStorageError as storage_error:
                logger.error('Queue storage failed during flush: %s', storage_error)
                report.aborted = True
                report.error = str(storage_error)
                self.last_error = report.error
                break

        logger.info(
            'Flush complete: delivered=%d, rejected=%d, retried=%d, aborted=%s',
            report.delivered,
            report.rejected,
            report.retried,
            report.aborted,
        )
        return report

    def _apply_result(
        self, item: QueueItem, result: DeliveryResult, report: FlushReport
    ) -> None:
        if result.outcome is DeliveryOutcome.DELIVERED:
            self._queue.remove(item.id)
            report.delivered += 1
            return

        if result.outcome is DeliveryOutcome.REJECTED:
            self._queue.remove(item.id)
            report.rejected += 1
            self.last_error = result.error
            logger.error(
                'Dropping rejected request %s after %d attempt(s): %s',
                item.id,
                item.attempts + 1,
                result.error,
            )
            return

        attempts: int = item.attempts + 1
        delay: float = compute_backoff_seconds(
            attempts, self._backoff_base_seconds, self._backoff_cap_seconds
        )
        rescheduled: QueueItem = item.model_copy(
            update={
                'attempts': attempts,
                'next_attempt_at': self._clock() + delay,
                'last_error': result.error,
            }
        )
        self._queue.update(rescheduled)
        report.retried += 1
        self.last_error = result.error
        logger.warning(
            'Request %s failed (attempt %d), retrying in %.1fs: %s',
            item.id,
            attempts,
            delay,
            result.error,
        )
