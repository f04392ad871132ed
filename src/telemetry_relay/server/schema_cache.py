# telemetry_relay/server/schema_cache.py
"""
Per-table schema cache with stale-while-revalidate refresh.

Freshness policy:
-----------------
- fresh (younger than ttl_seconds): served directly.
- stale: served immediately; one background refresh per table is scheduled.
- absent: fetched synchronously. If the fetch fails the table has no schema
  and get_schema() returns None.

A failed refresh never discards a snapshot: the last successfully fetched
schema stays authoritative until a later refresh succeeds. Only refresh()
writes to the cache.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from telemetry_relay.models import FieldSpec, TableSchema
from telemetry_relay.warehouse import WarehouseError, WarehouseSink

__all__: list[str] = ['SchemaCache']

logger: logging.Logger = logging.getLogger(__name__)

RETRY_WAIT_MAX_SECONDS: float = 5.0


class SchemaCache:
    """
    Shared, read-mostly cache of warehouse table schemas.

    Thread Safety:
        Readers take no lock on the hot path beyond a dict lookup; refresh
        bookkeeping (which tables have a refresh in flight) is guarded by a
        lock so a table is never refreshed twice concurrently in the
        background.

    Example:
        >>> cache = SchemaCache(sink, ttl_seconds=600)
        >>> cache.warm(['Jobs', 'gps_logs'])
        >>> schema = cache.get_schema('Jobs')
    """

    def __init__(  # noqa: PLR0913
        self,
        warehouse: WarehouseSink,
        ttl_seconds: float = 600.0,
        refresh_attempts: int = 3,
        retry_wait_seconds: float = 0.5,
        executor: ThreadPoolExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize an empty cache.

        Args:
            warehouse: Sink used to fetch table schemas.
            ttl_seconds: Age after which an entry is stale.
            refresh_attempts: Fetch attempts per refresh.
            retry_wait_seconds: Base of the exponential wait between attempts.
            executor: Pool for background refreshes. One is created (and
                owned) when not given.
            clock: Monotonic clock used for entry ages.
        """
        self._warehouse: WarehouseSink = warehouse
        self._ttl_seconds: float = ttl_seconds
        self._refresh_attempts: int = refresh_attempts
        self._retry_wait_seconds: float = retry_wait_seconds
        self._clock: Callable[[], float] = clock

        self._owns_executor: bool = executor is None
        self._executor: ThreadPoolExecutor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix='schema-refresh'
        )

        self._entries: dict[str, TableSchema] = {}
        self._refreshing: dict[str, Future[TableSchema | None]] = {}
        self._lock = threading.Lock()

    def get_schema(self, table: str) -> TableSchema | None:
        """
        Return the schema for `table`, or None if none was ever fetched.

        Never blocks on the warehouse when any snapshot exists.
        """
        cached: TableSchema | None = self._entries.get(table)

        if cached is None:
            return self.refresh(table)

        if self._clock() - cached.fetched_at >= self._ttl_seconds:
            self._schedule_refresh(table)

        return cached

    def _schedule_refresh(self, table: str) -> None:
        with self._lock:
            if table in self._refreshing:
                return
            future: Future[TableSchema | None] = self._executor.submit(
                self._background_refresh, table
            )
            self._refreshing[table] = future
        future.add_done_callback(lambda _: self._refresh_done(table))
        logger.debug('Schema for %s is stale, refreshing in background', table)

    def _background_refresh(self, table: str) -> TableSchema | None:
        try:
            return self.refresh(table)
        except Exception:
            logger.exception('Background schema refresh for %s failed', table)
            return self._entries.get(table)

    def _refresh_done(self, table: str) -> None:
        with self._lock:
            self._refreshing.pop(table, None)

    def _fetch(self, table: str) -> dict[str, FieldSpec]:
        retrying = Retrying(
            retry=retry_if_exception_type(WarehouseError),
            stop=stop_after_attempt(self._refresh_attempts),
            wait=wait_exponential(
                multiplier=self._retry_wait_seconds, max=RETRY_WAIT_MAX_SECONDS
            ),
        )
        return retrying(self._warehouse.get_table_schema, table)

    def refresh(self, table: str) -> TableSchema | None:
        """
        Fetch the schema of `table` and replace the cached entry.

        Returns:
            The new snapshot, or, if every attempt failed, the previous
            snapshot (None when there never was one).
        """
        try:
            fields: dict[str, FieldSpec] = self._fetch(table)
        except RetryError as retry_error:
            previous: TableSchema | None = self._entries.get(table)
            logger.error(
                'Failed to fetch schema for %s after %d attempt(s): %s; %s',
                table,
                self._refresh_attempts,
                retry_error.last_attempt.exception(),
                'keeping previous snapshot' if previous else 'no schema available',
            )
            return previous

        schema = TableSchema(table=table, fields=fields, fetched_at=self._clock())
        self._entries[table] = schema
        logger.info(
            'Cached schema for %s (%d fields): %s',
            table,
            len(fields),
            ', '.join(fields),
        )
        return schema

    def warm(self, tables: Iterable[str]) -> dict[str, bool]:
        """Fetch each table once; returns which tables now have a schema."""
        return {table: self.refresh(table) is not None for table in tables}

    def wait_for_refreshes(self, timeout: float | None = None) -> None:
        """Block until background refreshes scheduled so far have finished."""
        with self._lock:
            pending: list[Future[TableSchema | None]] = list(self._refreshing.values())
        for future in pending:
            future.result(timeout=timeout)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)
