"""
Export Trigger

Issues the provider export request for a connection with retry, keeping
at most one request in flight per connection.
"""

from contextlib import nullcontext
from enum import Enum
from typing import Optional
import threading

import httpx
import structlog
from pydantic import BaseModel

from healthrelay.connections.registry import ConnectionRegistry
from healthrelay.errors import ProviderNotConfiguredError, ProviderRequestError
from healthrelay.observability.metrics import MetricsCollector
from healthrelay.provider.client import ProviderClient
from healthrelay.retry import RetryPolicy, is_transient_error, run_with_retry

logger = structlog.get_logger(__name__)


class TriggerStatus(str, Enum):
    TRIGGERED = "triggered"
    IN_FLIGHT = "in_flight"
    NOT_CONFIGURED = "not_configured"
    FAILED = "failed"


class TriggerResult(BaseModel):
    connection_id: str
    status: TriggerStatus
    task_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0


class ExportTrigger:
    """
    Requests EHI exports.

    Expected failures come back as a ``TriggerResult`` status and never
    raise: missing credentials, a concurrent trigger for the same
    connection, and provider errors after retries are exhausted.
    """

    def __init__(
        self,
        client: ProviderClient,
        registry: ConnectionRegistry,
        policy: RetryPolicy | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.client = client
        self.registry = registry
        self.policy = policy or RetryPolicy()
        self.metrics = metrics

        self._in_flight: set[str] = set()
        self._guard = threading.Lock()

    def is_in_flight(self, connection_id: str) -> bool:
        with self._guard:
            return connection_id in self._in_flight

    def _claim(self, connection_id: str) -> bool:
        with self._guard:
            if connection_id in self._in_flight:
                return False
            self._in_flight.add(connection_id)
            return True

    def _release(self, connection_id: str) -> None:
        with self._guard:
            self._in_flight.discard(connection_id)

    async def trigger(self, connection_id: str) -> TriggerResult:
        if not self.client.is_configured:
            logger.warning(
                "Cannot trigger export, provider credentials not configured",
                connection_id=connection_id,
            )
            return self._finish(TriggerResult(connection_id=connection_id, status=TriggerStatus.NOT_CONFIGURED))

        if not self._claim(connection_id):
            logger.info("Export trigger already in flight", connection_id=connection_id)
            return self._finish(TriggerResult(connection_id=connection_id, status=TriggerStatus.IN_FLIGHT))

        try:
            timed = (
                self.metrics.timer.time("export_trigger", connection_id=connection_id)
                if self.metrics else nullcontext()
            )
            with timed:
                result = await self._request(connection_id)
        finally:
            self._release(connection_id)

        return self._finish(result)

    async def _request(self, connection_id: str) -> TriggerResult:
        await self.registry.mark_export_requested(connection_id)

        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            return await self.client.request_export(connection_id)

        try:
            response = await run_with_retry(
                attempt,
                self.policy,
                is_retryable=is_transient_error,
                operation_name="export_trigger",
                connection_id=connection_id,
            )
        except ProviderNotConfiguredError as exc:
            logger.warning("Export trigger skipped", connection_id=connection_id, error=str(exc))
            await self.registry.mark_export_request_failed(connection_id, str(exc))
            return TriggerResult(
                connection_id=connection_id,
                status=TriggerStatus.NOT_CONFIGURED,
                error=str(exc),
                attempts=attempts,
            )
        except (ProviderRequestError, httpx.HTTPError) as exc:
            error = str(exc) or exc.__class__.__name__
            logger.error(
                "Export trigger failed",
                connection_id=connection_id,
                attempts=attempts,
                retryable=is_transient_error(exc),
                error=error,
                response_body=getattr(exc, "body", None),
            )
            await self.registry.mark_export_request_failed(connection_id, error)
            return TriggerResult(
                connection_id=connection_id,
                status=TriggerStatus.FAILED,
                error=error,
                attempts=attempts,
            )

        if response.task_id:
            await self.registry.mark_export_in_progress(connection_id, response.task_id)
        else:
            logger.warning("Export acknowledged without a task id", connection_id=connection_id)
        logger.info(
            "Export triggered",
            connection_id=connection_id,
            task_id=response.task_id,
            provider_status=response.status,
            attempts=attempts,
        )
        return TriggerResult(
            connection_id=connection_id,
            status=TriggerStatus.TRIGGERED,
            task_id=response.task_id,
            attempts=attempts,
        )

    def _finish(self, result: TriggerResult) -> TriggerResult:
        if self.metrics:
            self.metrics.export_triggers.inc(labels={"status": result.status.value})
        return result
