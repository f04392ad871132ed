# telemetry_relay/client/transport.py
"""
HTTP transport that delivers queued telemetry batches to the ingest endpoint.

Each call performs exactly one attempt and classifies its result. Retrying is
not done here: a failed item is rescheduled by the flush engine, which owns
the per-item backoff schedule and persists it across restarts.

Classification:
---------------
- 2xx: DELIVERED
- 4xx except 429: REJECTED (terminal; the server will not accept this payload)
- 429, 5xx: RETRY
- Timeouts and connection errors: RETRY

SSL/TLS Handling:
-----------------
Supports the same verification modes as the rest of the relay:
standard verification, disabled verification, a custom CA bundle, or the
operating system trust store (use_truststore=True).
"""

import logging
import ssl
from ssl import SSLContext
from types import TracebackType
from typing import Any, Final, Self

import httpx

from telemetry_relay.config import ClientConfig
from telemetry_relay.models import DeliveryOutcome, DeliveryResult, QueueItem

__all__: list[str] = ['IngestTransport', 'build_truststore_ssl_context', 'classify_status']

logger: logging.Logger = logging.getLogger(__name__)

HTTP_STATUS_RATE_LIMITED: Final[int] = 429
HTTP_STATUS_CLIENT_ERROR_MIN: Final[int] = 400
HTTP_STATUS_SERVER_ERROR_MIN: Final[int] = 500

IDEMPOTENCY_KEY_HEADER: Final[str] = 'Idempotency-Key'
REQUEST_ID_HEADER: Final[str] = 'X-Request-Id'
API_KEY_HEADER: Final[str] = 'X-API-Key'


def build_truststore_ssl_context() -> SSLContext:
    """
    Create an SSLContext backed by the operating system certificate store.

    Field laptops on managed networks often reach the ingest endpoint through
    a TLS-inspecting proxy whose root CA is only installed in the OS store.
    The truststore import is deferred so the dependency stays optional.

    Raises:
        RuntimeError: If truststore is not installed.
    """
    try:
        import truststore  # noqa: PLC0415
    except ImportError as import_error:
        raise RuntimeError(
            'truststore is required when use_truststore=True; '
            'install it with: pip install truststore'
        ) from import_error

    return truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)


def classify_status(status_code: int) -> DeliveryOutcome:
    """Map an HTTP status code to a delivery outcome."""
    if status_code == HTTP_STATUS_RATE_LIMITED or status_code >= HTTP_STATUS_SERVER_ERROR_MIN:
        return DeliveryOutcome.RETRY
    if status_code >= HTTP_STATUS_CLIENT_ERROR_MIN:
        return DeliveryOutcome.REJECTED
    if 200 <= status_code < 300:  # noqa: PLR2004
        return DeliveryOutcome.DELIVERED
    # 1xx/3xx are unexpected from the ingest endpoint; try again later
    return DeliveryOutcome.RETRY


class IngestTransport:
    """
    Single-attempt HTTP sender for telemetry batches.

    Thread Safety:
        The underlying httpx.Client is thread-safe. In practice one flush runs
        at a time, and the sender may use the same transport for direct
        (online) submissions.

    Example:
        >>> with IngestTransport(config.client) as transport:
        ...     result = transport.send(item)
        ...     print(result.outcome)
    """

    def __init__(
        self,
        config: ClientConfig,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Initialize the transport.

        Args:
            config: Client configuration (timeouts, SSL mode, API key).
            http_transport: Optional httpx transport, e.g. httpx.MockTransport
                in tests.

        Raises:
            RuntimeError: If use_truststore=True and truststore is missing.
        """
        self._config: ClientConfig = config

        ssl_verify: SSLContext | bool | str = (
            build_truststore_ssl_context() if config.use_truststore else config.verify_ssl
        )

        connect_timeout, read_timeout = config.request_timeout
        self._http_client: httpx.Client = httpx.Client(
            timeout=httpx.Timeout(
                connect=connect_timeout,
                read=read_timeout,
                write=connect_timeout,
                pool=connect_timeout,
            ),
            verify=ssl_verify,
            transport=http_transport,
        )

        logger.info(
            'Initialized IngestTransport: ingest_url=%r, timeout=%r',
            config.ingest_url,
            config.request_timeout,
        )

    def close(self) -> None:
        """Close the HTTP client. Safe to call multiple times."""
        self._http_client.close()
        logger.debug('IngestTransport closed')

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def _build_headers(self, idempotency_key: str, request_id: str) -> dict[str, str]:
        headers: dict[str, str] = {
            'Content-Type': 'application/json',
            IDEMPOTENCY_KEY_HEADER: idempotency_key,
            REQUEST_ID_HEADER: request_id,
        }
        if self._config.api_key is not None:
            headers[API_KEY_HEADER] = self._config.api_key.get_secret_value()
        return headers

    def send(self, item: QueueItem) -> DeliveryResult:
        """Deliver a queued item once, using its id as the idempotency key."""
        return self.deliver(
            destination=item.destination,
            payload=item.payload,
            idempotency_key=item.id,
            request_id=item.request_id,
        )

    def deliver(
        self,
        destination: str,
        payload: dict[str, Any],
        idempotency_key: str,
        request_id: str,
    ) -> DeliveryResult:
        """
        POST a payload once and classify the result.

        Never raises for HTTP or transport failures; those are reported in the
        returned DeliveryResult.

        Args:
            destination: Endpoint URL.
            payload: JSON event batch.
            idempotency_key: Sent as Idempotency-Key.
            request_id: Sent as X-Request-Id.

        Returns:
            DeliveryResult with the outcome, status code (if any) and an error
            description for failed attempts.
        """
        try:
            response: httpx.Response = self._http_client.post(
                destination,
                json=payload,
                headers=self._build_headers(idempotency_key, request_id),
            )
        except httpx.TimeoutException as error:
            logger.warning('Delivery timeout for %s (will retry): %s', idempotency_key, error)
            return DeliveryResult(
                outcome=DeliveryOutcome.RETRY,
                error=f'Request timeout: {error}',
            )
        except httpx.RequestError as error:
            logger.warning(
                'Connection error for %s (will retry): %s', idempotency_key, error
            )
            return DeliveryResult(
                outcome=DeliveryOutcome.RETRY,
                error=f'Connection error: {error}',
            )

        status_code: int = response.status_code
        outcome: DeliveryOutcome = classify_status(status_code)

        if outcome is DeliveryOutcome.DELIVERED:
            logger.debug('Delivered %s (HTTP %d)', idempotency_key, status_code)
            return DeliveryResult(outcome=outcome, status_code=status_code)

        if outcome is DeliveryOutcome.REJECTED:
            logger.error(
                'Ingest rejected %s (HTTP %d, not retryable): %s',
                idempotency_key,
                status_code,
                response.text[:500],
            )
        else:
            logger.warning(
                'Ingest unavailable for %s (HTTP %d, will retry): %s',
                idempotency_key,
                status_code,
                response.text[:200],
            )

        return DeliveryResult(
            outcome=outcome,
            status_code=status_code,
            error=f'HTTP {status_code}',
        )

