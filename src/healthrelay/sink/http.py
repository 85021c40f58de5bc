"""
HTTP Ingest Sink

POSTs record batches to a downstream ingestion endpoint with service
authentication and an ``Idempotency-Key`` header.
"""

import httpx
import structlog

from healthrelay.config import SinkSettings
from healthrelay.retry import RetryPolicy, is_transient_error, run_with_retry
from healthrelay.sink.base import PushResult, Sink, SinkBatch

logger = structlog.get_logger(__name__)


class HttpIngestSink(Sink):
    """
    Push to a backend ingestion endpoint.

    Transient failures (timeouts, transport errors, retryable statuses)
    are retried; anything else, or exhaustion, becomes an unsuccessful
    ``PushResult``.
    """

    name = "http"

    def __init__(
        self,
        settings: SinkSettings,
        source: str = "fasten-connect",
        client: httpx.AsyncClient | None = None,
    ):
        if not settings.ingest_url:
            raise ValueError("HttpIngestSink requires an ingest URL")
        self.settings = settings
        self.url = settings.ingest_url
        self.source = source
        self.policy = RetryPolicy(
            max_retries=settings.max_retries,
            delay_seconds=settings.retry_delay_seconds,
        )
        self._client = client
        self._owns_client = client is None

    def _headers(self, batch: SinkBatch) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": batch.idempotency_key,
            "X-Correlation-ID": f"relay-{batch.idempotency_key[:16]}",
        }
        if self.settings.service_secret:
            headers["X-Service-Secret"] = self.settings.service_secret.get_secret_value()
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.timeout_seconds)
        return self._client

    async def push(self, batch: SinkBatch) -> PushResult:
        attempts = 0
        client = self._get_client()

        async def send() -> httpx.Response:
            nonlocal attempts
            attempts += 1
            response = await client.post(
                self.url,
                json=batch.payload(self.source),
                headers=self._headers(batch),
            )
            response.raise_for_status()
            return response

        try:
            response = await run_with_retry(
                send,
                self.policy,
                is_retryable=is_transient_error,
                operation_name="sink_push",
                connection_id=batch.connection_id,
            )
        except httpx.HTTPStatusError as e:
            logger.error(
                "Sink push rejected",
                connection_id=batch.connection_id,
                status_code=e.response.status_code,
                attempts=attempts,
            )
            return PushResult(
                success=False,
                idempotency_key=batch.idempotency_key,
                records=len(batch.records),
                status_code=e.response.status_code,
                error=str(e),
                attempts=attempts,
            )
        except httpx.HTTPError as e:
            logger.error(
                "Sink push failed",
                connection_id=batch.connection_id,
                error=str(e) or e.__class__.__name__,
                attempts=attempts,
            )
            return PushResult(
                success=False,
                idempotency_key=batch.idempotency_key,
                records=len(batch.records),
                error=str(e) or e.__class__.__name__,
                attempts=attempts,
            )

        logger.info(
            "Records pushed downstream",
            connection_id=batch.connection_id,
            user_id=batch.user_id,
            records=len(batch.records),
            attempts=attempts,
        )
        return PushResult(
            success=True,
            idempotency_key=batch.idempotency_key,
            records=len(batch.records),
            status_code=response.status_code,
            attempts=attempts,
        )

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
