# telemetry_relay/server/app.py
"""
FastAPI application exposing the ingestion endpoint.

Routes:
-------
    GET  /        health check, {"status": "ok"}
    GET  /config  static client configuration (version, feature flags, env)
    POST /        ingest a batch; see below

Ingest request handling:
------------------------
1. X-API-Key must match the configured key (401 otherwise). When a key is
   required but none can be resolved the service answers 503.
2. With an Idempotency-Key header, a completed ledger entry for the key is
   replayed verbatim and nothing else happens.
3. The key is reserved. If another request holds the reservation the answer
   is 429 with Retry-After, which clients treat as retryable.
4. The batch is ingested. 200 and 400 outcomes are recorded in the ledger;
   on 503 (warehouse unavailable) or an unexpected error the reservation is
   released so the client's retry is processed.

All components are built once in create_app() and stored on `app.state`.
Request handlers are plain functions and run in FastAPI's thread pool since
every component is synchronous.
"""

import hmac
import logging
import sys
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Final

from fastapi import Body, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from telemetry_relay.common import setup_logger
from telemetry_relay.config import ServerConfig, load_config
from telemetry_relay.models import IdempotencyRecord, StreamResult
from telemetry_relay.server.dead_letter import DeadLetterSink
from telemetry_relay.server.idempotency import IdempotencyLedger
from telemetry_relay.server.ingest import IngestError, IngestionService
from telemetry_relay.server.schema_cache import SchemaCache
from telemetry_relay.server.secrets import SecretFetcher, get_secret
from telemetry_relay.warehouse import (
    WarehouseSink,
    WarehouseUnavailableError,
    create_warehouse_sink,
)

__all__: list[str] = ['RequestIdMiddleware', 'create_app', 'main']

logger: logging.Logger = logging.getLogger(__name__)

REQUEST_ID_HEADER: Final[str] = 'X-Request-Id'
REPLAYED_HEADER: Final[str] = 'Idempotent-Replayed'
IN_FLIGHT_RETRY_AFTER_SECONDS: Final[int] = 5


# =============================================================================
# Middleware
# =============================================================================


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Propagate X-Request-Id (generated when absent) and log each request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id: str = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        started: float = time.perf_counter()
        response: Response = await call_next(request)
        elapsed_ms: float = (time.perf_counter() - started) * 1000.0

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            '[%s] %s %s -> %d (%.1fms)',
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response


# =============================================================================
# Helpers
# =============================================================================


def _error_response(
    status_code: int, message: str, headers: dict[str, str] | None = None
) -> JSONResponse:
    return JSONResponse(
        {'status': 'error', 'message': message}, status_code=status_code, headers=headers
    )


class _ApiKeyResolver:
    """Resolve the expected ingest key once, retrying until it is found."""

    def __init__(self, config: ServerConfig, secret_fetcher: SecretFetcher | None) -> None:
        self._config: ServerConfig = config
        self._secret_fetcher: SecretFetcher | None = secret_fetcher
        self._resolved: str | None = (
            config.api_key.get_secret_value() if config.api_key is not None else None
        )

    def expected_key(self) -> str | None:
        if self._resolved is None:
            self._resolved = get_secret(
                self._config.api_key_secret_name, self._secret_fetcher
            )
        return self._resolved


def _check_api_key(request: Request, provided: str | None) -> JSONResponse | None:
    config: ServerConfig = request.app.state.config
    if not config.require_api_key:
        return None

    expected: str | None = request.app.state.api_keys.expected_key()
    if expected is None:
        logger.error('Ingest API key %s could not be resolved', config.api_key_secret_name)
        return _error_response(503, 'Ingest API key not configured')

    if provided is None or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning('Rejected ingest request with invalid API key')
        return _error_response(401, 'Invalid API key')

    return None


def _replay(record: IdempotencyRecord) -> JSONResponse:
    logger.info(
        'Replaying recorded outcome %s for idempotency key %s',
        record.status,
        record.idempotency_key,
    )
    return JSONResponse(
        record.body, status_code=record.status or 200, headers={REPLAYED_HEADER: 'true'}
    )


def _process_batch(
    service: IngestionService, body: dict[str, Any], request_id: str
) -> tuple[int, dict[str, Any]]:
    """Run ingestion and map the outcome to (status, response body)."""
    try:
        results: dict[str, StreamResult] = service.ingest(body, request_id=request_id)
    except IngestError as ingest_error:
        return 400, {'status': 'error', 'message': str(ingest_error)}
    except WarehouseUnavailableError as unavailable_error:
        logger.error('Warehouse unavailable for request %s: %s', request_id, unavailable_error)
        return 503, {'status': 'error', 'message': 'Warehouse unavailable, retry later'}

    return 200, {
        'status': 'success',
        'data': {stream: result.to_response() for stream, result in results.items()},
    }


# =============================================================================
# Application Factory
# =============================================================================


def create_app(  # noqa: PLR0913
    config: ServerConfig,
    *,
    warehouse: WarehouseSink | None = None,
    ledger: IdempotencyLedger | None = None,
    schema_cache: SchemaCache | None = None,
    dead_letters: DeadLetterSink | None = None,
    secret_fetcher: SecretFetcher | None = None,
) -> FastAPI:
    """
    Build the ingestion application.

    Components not passed in are constructed from `config`.

    Args:
        config: Server configuration.
        warehouse: Warehouse sink; defaults to the configured backend.
        ledger: Idempotency ledger; defaults to the configured SQLite file.
        schema_cache: Schema cache; defaults to one over `warehouse`.
        dead_letters: Dead-letter sink; defaults to the configured file.
        secret_fetcher: External secret store lookup for the API key.

    Returns:
        Configured FastAPI application. Schemas are warmed when the
        application starts (lifespan), if enabled.
    """
    warehouse = warehouse or create_warehouse_sink(config.warehouse)
    ledger = ledger or IdempotencyLedger(config.idempotency)
    schema_cache = schema_cache or SchemaCache(
        warehouse,
        ttl_seconds=config.schema_cache.ttl_seconds,
        refresh_attempts=config.schema_cache.refresh_attempts,
    )
    dead_letters = dead_letters or DeadLetterSink(config.dead_letter.path)
    service = IngestionService(config.streams, schema_cache, warehouse, dead_letters)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if config.schema_cache.warm_on_startup:
            warmed: dict[str, bool] = schema_cache.warm(service.tables)
            missing: list[str] = [table for table, ok in warmed.items() if not ok]
            if missing:
                logger.warning('No schema at startup for: %s', ', '.join(missing))
        purged: int = ledger.purge_expired()
        logger.info(
            'Ingestion service started (version=%s, env=%s, purged=%d)',
            config.service_version,
            config.environment,
            purged,
        )
        yield
        dead_letters.close()
        schema_cache.close()
        ledger.close()
        warehouse.close()
        logger.info('Ingestion service stopped')

    app = FastAPI(
        title='Telemetry Relay Ingest',
        version=config.service_version,
        lifespan=lifespan,
    )
    app.add_middleware(RequestIdMiddleware)

    app.state.config = config
    app.state.api_keys = _ApiKeyResolver(config, secret_fetcher)
    app.state.ledger = ledger
    app.state.schema_cache = schema_cache
    app.state.dead_letters = dead_letters
    app.state.warehouse = warehouse
    app.state.ingestion = service

    @app.get('/')
    def health() -> dict[str, str]:
        return {'status': 'ok'}

    @app.get('/config')
    def client_config() -> dict[str, Any]:
        return {
            'version': config.service_version,
            'flags': {'offlineMode': True, 'enableOptimization': False},
            'env': config.environment,
        }

    @app.post('/')
    def ingest(
        request: Request,
        body: dict[str, Any] | None = Body(default=None),
        idempotency_key: str | None = Header(default=None, alias='Idempotency-Key'),
        api_key: str | None = Header(default=None, alias='X-API-Key'),
    ) -> JSONResponse:
        auth_failure: JSONResponse | None = _check_api_key(request, api_key)
        if auth_failure is not None:
            return auth_failure

        request_id: str = request.state.request_id
        endpoint: str = request.url.path

        if not idempotency_key:
            logger.warning('Request %s has no Idempotency-Key; processing without ledger', request_id)
            status_code, response_body = _process_batch(service, body or {}, request_id)
            return JSONResponse(response_body, status_code=status_code)

        recorded: IdempotencyRecord | None = ledger.lookup(endpoint, idempotency_key)
        if recorded is not None:
            return _replay(recorded)

        if not ledger.reserve(endpoint, idempotency_key):
            # The holder may have finished between lookup and reserve
            recorded = ledger.lookup(endpoint, idempotency_key)
            if recorded is not None:
                return _replay(recorded)
            logger.info('Idempotency key %s is in flight, asking client to retry', idempotency_key)
            return _error_response(
                429,
                'A request with this Idempotency-Key is already being processed',
                headers={'Retry-After': str(IN_FLIGHT_RETRY_AFTER_SECONDS)},
            )

        try:
            status_code, response_body = _process_batch(service, body or {}, request_id)
        except Exception:
            ledger.release(endpoint, idempotency_key)
            raise

        if status_code >= 500:  # noqa: PLR2004
            ledger.release(endpoint, idempotency_key)
        else:
            ledger.record(endpoint, idempotency_key, status_code, response_body)

        return JSONResponse(response_body, status_code=status_code)

    return app


def main() -> None:
    """
    Run the ingestion service with uvicorn.

    Usage: python -m telemetry_relay.server.app [config_path]
    """
    import uvicorn  # noqa: PLC0415

    config_path: Path | None = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    relay_config = load_config(config_path)
    setup_logger(config=relay_config.logging)

    if relay_config.server is None:
        logger.error('Configuration has no server section')
        raise SystemExit(1)

    uvicorn.run(create_app(relay_config.server), host='0.0.0.0', port=8080)  # noqa: S104


if __name__ == '__main__':
    main()
