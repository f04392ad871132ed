"""
Tests for telemetry_relay.server.ingest module.

Tests loss-tolerant versus strict streams, schema unavailability, unknown
streams, warehouse outages, partial warehouse rejections and row-error
correlation.
"""

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import pytest

from telemetry_relay.config import StreamConfig
from telemetry_relay.models import DeadLetterEntry, StreamResult
from telemetry_relay.server import (
    DataIntegrityError,
    DeadLetterSink,
    IngestionService,
    MalformedBatchError,
    SchemaCache,
    correlate_row_errors,
)
from telemetry_relay.server.ingest import (
    SCHEMA_UNAVAILABLE_MESSAGE,
    UNKNOWN_STREAM_MESSAGE,
    WAREHOUSE_UNAVAILABLE_MESSAGE,
)
from telemetry_relay.warehouse import WarehouseUnavailableError

from .conftest import FakeClock, FakeWarehouse

STREAMS: dict[str, StreamConfig] = {
    'jobs': StreamConfig(table='Jobs'),
    'gps_logs': StreamConfig(table='gps_logs', loss_tolerant=True),
    'shifts': StreamConfig(table='Shifts'),
}


def _gps(event_id: str, lat: Any = 51.5) -> dict[str, Any]:
    return {'eventId': event_id, 'lat': lat, 'lng': -0.1, 'timestamp': '2025-03-01T08:00:00Z'}


def _job(event_id: str, job_id: Any = 'J1') -> dict[str, Any]:
    return {'eventId': event_id, 'jobId': job_id, 'status': 'done'}


@pytest.fixture
def dead_letters(tmp_path: Path) -> DeadLetterSink:
    return DeadLetterSink(tmp_path / 'dl.jsonl')


@pytest.fixture
def service(
    fake_warehouse: FakeWarehouse, clock: FakeClock, dead_letters: DeadLetterSink
) -> IngestionService:
    cache = SchemaCache(
        fake_warehouse,
        refresh_attempts=1,
        retry_wait_seconds=0.0,
        executor=ThreadPoolExecutor(max_workers=1),
        clock=clock,
    )
    return IngestionService(STREAMS, cache, fake_warehouse, dead_letters)


def _dead_lettered(dead_letters: DeadLetterSink) -> list[DeadLetterEntry]:
    dead_letters.flush(timeout=5.0)
    return dead_letters.read_entries()


class TestLossTolerantStreams:
    """Test drop-and-continue behavior."""

    def test_invalid_rows_are_dropped_and_dead_lettered(
        self,
        service: IngestionService,
        fake_warehouse: FakeWarehouse,
        dead_letters: DeadLetterSink,
    ) -> None:
        """Should insert valid rows and dead-letter the invalid one without raising."""
        results: dict[str, StreamResult] = service.ingest(
            {'gps_logs': [_gps('g1'), _gps('g2', lat=None), _gps('g3')]}, request_id='r1'
        )

        assert results['gps_logs'].to_response() == {'inserted': 2, 'dropped': 1}
        assert [row['eventId'] for row in fake_warehouse.inserted['gps_logs']] == ['g1', 'g3']
        entries: list[DeadLetterEntry] = _dead_lettered(dead_letters)
        assert [(entry.insert_id, entry.request_id) for entry in entries] == [('g2', 'r1')]
        assert entries[0].errors == 'Missing REQUIRED fields: lat'
        assert entries[0].payload == _gps('g2', lat=None)

    def test_insert_ids_are_event_ids(
        self, service: IngestionService, fake_warehouse: FakeWarehouse
    ) -> None:
        """Should pass each row's eventId as its warehouse insert id."""
        service.ingest({'gps_logs': [_gps('g1'), _gps('g2')]})

        _, _, row_ids = fake_warehouse.insert_calls[0]
        assert row_ids == ['g1', 'g2']


class TestStrictStreams:
    """Test whole-request rejection."""

    def test_missing_required_rejects_entire_request(
        self,
        service: IngestionService,
        fake_warehouse: FakeWarehouse,
        dead_letters: DeadLetterSink,
    ) -> None:
        """Should insert nothing from any stream and dead-letter every row."""
        with pytest.raises(DataIntegrityError) as raised:
            service.ingest(
                {
                    'gps_logs': [_gps('g1')],
                    'jobs': [_job('j1'), _job('j2', job_id='  ')],
                }
            )

        assert raised.value.stream == 'jobs'
        assert raised.value.event_id == 'j2'
        assert 'Data Integrity Error' in str(raised.value)
        assert fake_warehouse.insert_calls == []
        entries: list[DeadLetterEntry] = _dead_lettered(dead_letters)
        assert sorted(entry.insert_id for entry in entries) == ['g1', 'j1', 'j2']

    def test_valid_strict_stream_inserts(
        self, service: IngestionService, fake_warehouse: FakeWarehouse
    ) -> None:
        """Should insert a fully valid strict batch."""
        results: dict[str, StreamResult] = service.ingest({'jobs': [_job('j1'), _job('j2')]})

        assert results['jobs'].inserted == 2
        assert results['jobs'].dropped == 0
        assert len(fake_warehouse.inserted['Jobs']) == 2

    def test_non_list_stream_is_malformed(self, service: IngestionService) -> None:
        """Should refuse a stream whose value is not an array."""
        with pytest.raises(MalformedBatchError):
            service.ingest({'jobs': {'eventId': 'j1'}})


class TestSchemaUnavailable:
    """Test refusal to insert without a schema."""

    def test_no_schema_means_no_insert_and_full_dead_letter(
        self,
        service: IngestionService,
        fake_warehouse: FakeWarehouse,
        dead_letters: DeadLetterSink,
    ) -> None:
        """Should perform zero inserts and dead-letter every row of the table."""
        results: dict[str, StreamResult] = service.ingest(
            {'shifts': [{'eventId': 's1'}, {'shiftId': 'S2'}]}
        )

        assert results['shifts'].inserted == 0
        assert results['shifts'].dropped == 2
        assert results['shifts'].error == SCHEMA_UNAVAILABLE_MESSAGE
        assert fake_warehouse.insert_calls == []
        entries: list[DeadLetterEntry] = _dead_lettered(dead_letters)
        assert len(entries) == 2
        assert all(entry.errors == SCHEMA_UNAVAILABLE_MESSAGE for entry in entries)
        assert entries[1].insert_id.startswith('server-')

    def test_other_streams_still_ingest(
        self, service: IngestionService, fake_warehouse: FakeWarehouse
    ) -> None:
        """Should not block streams whose schema is available."""
        results: dict[str, StreamResult] = service.ingest(
            {'shifts': [{'eventId': 's1'}], 'jobs': [_job('j1')]}
        )

        assert results['jobs'].inserted == 1
        assert 'Jobs' in fake_warehouse.inserted


class TestUnknownStreams:
    """Test handling of stream names without configuration."""

    def test_unknown_stream_is_dead_lettered_and_reported(
        self,
        service: IngestionService,
        fake_warehouse: FakeWarehouse,
        dead_letters: DeadLetterSink,
    ) -> None:
        """Should dead-letter every event of the unknown stream and report it."""
        results: dict[str, StreamResult] = service.ingest(
            {'job': [_job('x1'), _job('x2')], 'jobs': [_job('j1')]}, request_id='r1'
        )

        assert results['job'].to_response() == {
            'inserted': 0,
            'dropped': 2,
            'error': UNKNOWN_STREAM_MESSAGE,
        }
        assert results['jobs'].inserted == 1
        assert [call[0] for call in fake_warehouse.insert_calls] == ['Jobs']
        entries: list[DeadLetterEntry] = _dead_lettered(dead_letters)
        assert [(entry.table, entry.insert_id) for entry in entries] == [
            ('job', 'x1'),
            ('job', 'x2'),
        ]
        assert all(entry.errors == UNKNOWN_STREAM_MESSAGE for entry in entries)
        assert entries[0].payload == _job('x1')

    def test_unknown_stream_does_not_fail_request(
        self, service: IngestionService, dead_letters: DeadLetterSink
    ) -> None:
        """Should not treat unknown events as a strict-stream integrity fault."""
        results: dict[str, StreamResult] = service.ingest({'trips': ['not-an-object']})

        assert results['trips'].dropped == 1
        entries: list[DeadLetterEntry] = _dead_lettered(dead_letters)
        assert entries[0].insert_id.startswith('server-')

    def test_unknown_stream_must_still_be_an_array(self, service: IngestionService) -> None:
        """Should refuse a non-array value regardless of the stream name."""
        with pytest.raises(MalformedBatchError):
            service.ingest({'job': {'eventId': 'x1'}})


class TestPartialInsert:
    """Test per-row warehouse rejections."""

    @pytest.mark.parametrize('row_error_key', ['row_index', 'rowIndex', 'index'])
    def test_rejected_rows_are_dead_lettered(
        self,
        service: IngestionService,
        fake_warehouse: FakeWarehouse,
        dead_letters: DeadLetterSink,
        row_error_key: str,
    ) -> None:
        """Should dead-letter exactly the rows the warehouse reported."""
        fake_warehouse.reject_indices = {1}
        fake_warehouse.row_error_key = row_error_key

        results: dict[str, StreamResult] = service.ingest(
            {'gps_logs': [_gps('g1'), _gps('g2'), _gps('g3')]}
        )

        assert results['gps_logs'].inserted == 2
        assert results['gps_logs'].dropped == 1
        entries: list[DeadLetterEntry] = _dead_lettered(dead_letters)
        assert [entry.insert_id for entry in entries] == ['g2']
        assert entries[0].errors == [{'reason': 'invalid'}]

    def test_warehouse_unavailable_propagates(
        self, service: IngestionService, fake_warehouse: FakeWarehouse
    ) -> None:
        """Should raise so the endpoint can answer with a retryable status."""
        fake_warehouse.unavailable = True

        with pytest.raises(WarehouseUnavailableError):
            service.ingest({'jobs': [_job('j1')]})


class TestWarehouseOutage:
    """Test unavailability part-way through a multi-stream request."""

    def test_outage_before_any_commit_leaves_no_trace(
        self,
        service: IngestionService,
        fake_warehouse: FakeWarehouse,
        dead_letters: DeadLetterSink,
    ) -> None:
        """Should raise without dead-lettering so a retry starts from scratch."""
        fake_warehouse.unavailable_tables = {'Jobs'}
        body: dict[str, Any] = {'jobs': [_job('j1')], 'gps_logs': [_gps('g1'), _gps('g2', lat=None)]}

        with pytest.raises(WarehouseUnavailableError):
            service.ingest(body)

        assert fake_warehouse.inserted == {}
        assert _dead_lettered(dead_letters) == []

        fake_warehouse.unavailable_tables = set()
        service.ingest(body)

        assert len(fake_warehouse.inserted['Jobs']) == 1
        assert [entry.insert_id for entry in _dead_lettered(dead_letters)] == ['g2']

    def test_outage_after_commit_completes_request(
        self,
        service: IngestionService,
        fake_warehouse: FakeWarehouse,
        dead_letters: DeadLetterSink,
    ) -> None:
        """Should keep committed streams and dead-letter the unavailable one once."""
        fake_warehouse.unavailable_tables = {'gps_logs'}

        results: dict[str, StreamResult] = service.ingest(
            {'jobs': [_job('j1')], 'gps_logs': [_gps('g1'), _gps('g2', lat=None)]},
            request_id='r1',
        )

        assert results['jobs'].to_response() == {'inserted': 1, 'dropped': 0}
        assert results['gps_logs'].to_response() == {
            'inserted': 0,
            'dropped': 2,
            'error': WAREHOUSE_UNAVAILABLE_MESSAGE,
        }
        assert [row['eventId'] for row in fake_warehouse.inserted['Jobs']] == ['j1']
        assert 'gps_logs' not in fake_warehouse.inserted

        entries: list[DeadLetterEntry] = _dead_lettered(dead_letters)
        assert sorted(entry.insert_id for entry in entries) == ['g1', 'g2']
        by_id: dict[str, DeadLetterEntry] = {entry.insert_id: entry for entry in entries}
        assert by_id['g1'].errors.startswith('Warehouse unavailable: ')
        assert by_id['g2'].errors == 'Missing REQUIRED fields: lat'
        assert all(entry.request_id == 'r1' for entry in entries)


class TestCorrelateRowErrors:
    """Test the row-error correlation order."""

    def test_explicit_index_preferred(self) -> None:
        """Should use row_index, then rowIndex, then index."""
        rejected: dict[int, Any] = correlate_row_errors(
            [
                {'row_index': 2, 'index': 0, 'errors': ['a']},
                {'rowIndex': 0, 'errors': ['b']},
            ],
            row_count=3,
        )

        assert rejected == {2: ['a'], 0: ['b']}

    def test_positional_fallback(self) -> None:
        """Should fall back to the error's position when no index is usable."""
        rejected: dict[int, Any] = correlate_row_errors(
            [{'errors': ['a']}, {'index': 'bogus', 'errors': ['b']}], row_count=2
        )

        assert rejected == {0: ['a'], 1: ['b']}

    def test_out_of_range_index_falls_back_to_position(self) -> None:
        """Should not trust an index beyond the batch."""
        rejected: dict[int, Any] = correlate_row_errors(
            [{'index': 99, 'errors': ['a']}], row_count=2
        )

        assert rejected == {0: ['a']}

    def test_errors_for_same_row_are_combined(self) -> None:
        """Should merge several reports for one row."""
        rejected: dict[int, Any] = correlate_row_errors(
            [{'index': 1, 'errors': ['a']}, {'index': 1, 'errors': ['b']}], row_count=2
        )

        assert rejected == {1: ['a', 'b']}

    def test_uncorrelatable_errors_are_skipped(self) -> None:
        """Should skip errors that cannot be placed on any row."""
        rejected: dict[int, Any] = correlate_row_errors(
            [{'index': 0, 'errors': ['a']}, {'index': 0, 'errors': ['b']}, {'errors': ['c']}],
            row_count=1,
        )

        assert rejected == {0: ['a', 'b']}

    def test_out_of_range_key_falls_through_to_next_key(self) -> None:
        """Should try rowIndex and index after an unusable row_index."""
        rejected: dict[int, Any] = correlate_row_errors(
            [{'row_index': 99, 'index': 1, 'errors': ['a']}], row_count=2
        )

        assert rejected == {1: ['a']}
