"""
Webhook Event Handlers

One handler per provider event type. Handlers apply state changes
through the connection registry and the timeout monitor, and hand
long-running work (export requests, download and ingestion) to the
background runner.
"""

from typing import Any

import structlog
from pydantic import BaseModel, Field

from healthrelay.background import BackgroundRunner
from healthrelay.connections.monitor import TimeoutMonitor
from healthrelay.connections.registry import ConnectionRegistry
from healthrelay.ingestion.pipeline import FHIRTransformPipeline
from healthrelay.models.connections import ExportRecord
from healthrelay.models.events import (
    AuthorizationRevokedEvent,
    ConnectionSuccessEvent,
    EventType,
    ExportFailedEvent,
    ExportSuccessEvent,
    InboundEvent,
    ProcessingOutcome,
    WebhookTestEvent,
)
from healthrelay.observability.metrics import MetricsCollector
from healthrelay.provider.trigger import ExportTrigger
from healthrelay.sink.base import NullSink, Sink, SinkBatch

logger = structlog.get_logger(__name__)


class HandlerResult(BaseModel):
    outcome: ProcessingOutcome = ProcessingOutcome.SUCCEEDED
    detail: dict[str, Any] = Field(default_factory=dict)


class EventHandler:
    """Base event handler."""

    def __init__(self, name: str, event_types: list[EventType]):
        self.name = name
        self.event_types = event_types

    async def handle(self, event: InboundEvent) -> HandlerResult:
        """Handle event. Override in subclasses."""
        raise NotImplementedError

    def can_handle(self, event: InboundEvent) -> bool:
        return event.type in {t.value for t in self.event_types}


class ConnectionSuccessHandler(EventHandler):
    """
    Records the connection, starts export monitoring and schedules the
    export request.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        monitor: TimeoutMonitor,
        trigger: ExportTrigger,
        runner: BackgroundRunner,
        auto_trigger: bool = True,
    ):
        super().__init__("connection_success", [EventType.CONNECTION_SUCCESS])
        self.registry = registry
        self.monitor = monitor
        self.trigger = trigger
        self.runner = runner
        self.auto_trigger = auto_trigger

    async def handle(self, event: ConnectionSuccessEvent) -> HandlerResult:
        data = event.data
        connection_id = data.org_connection_id

        connection = await self.registry.upsert_on_connection_success(
            connection_id,
            user_id=data.external_id,
            platform_type=data.platform_type,
            endpoint_id=data.endpoint_id,
            brand_id=data.brand_id,
            portal_id=data.portal_id,
            provider_status=data.connection_status,
        )
        if connection is None:
            return HandlerResult(
                outcome=ProcessingOutcome.IGNORED,
                detail={"connection_id": connection_id, "reason": "connection revoked"},
            )

        logger.info(
            "Connection established",
            connection_id=connection_id,
            user_id=connection.user_id,
            platform_type=connection.platform_type,
            api_mode=event.api_mode,
        )
        await self.monitor.start(connection_id, connection.monitoring_context())

        export_trigger = "disabled"
        if self.auto_trigger:
            self.runner.submit(self.trigger.trigger(connection_id), name=f"export-trigger-{connection_id}")
            export_trigger = "scheduled"

        return HandlerResult(detail={
            "connection_id": connection_id,
            "user_id": connection.user_id,
            "export_trigger": export_trigger,
        })


class ExportSuccessHandler(EventHandler):
    """Stores the export, stops monitoring and schedules ingestion."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        monitor: TimeoutMonitor,
        pipeline: FHIRTransformPipeline,
        runner: BackgroundRunner,
        sink: Sink | None = None,
        metrics: MetricsCollector | None = None,
    ):
        super().__init__("export_success", [EventType.EXPORT_SUCCESS])
        self.registry = registry
        self.monitor = monitor
        self.pipeline = pipeline
        self.runner = runner
        self.sink = sink or NullSink()
        self.metrics = metrics

    async def handle(self, event: ExportSuccessEvent) -> HandlerResult:
        data = event.data
        connection_id = data.org_connection_id
        export = ExportRecord.succeeded(
            connection_id,
            download_link=data.download_link,
            stats=data.stats,
            task_id=data.task_id,
            org_id=data.org_id,
        )

        applied = await self.registry.apply_export_success(connection_id, export)
        await self.monitor.stop(connection_id)

        if not applied.export_stored:
            return HandlerResult(
                outcome=ProcessingOutcome.IGNORED,
                detail={"connection_id": connection_id, "reason": "connection revoked"},
            )

        logger.info(
            "Export succeeded",
            connection_id=connection_id,
            task_id=data.task_id,
            stats=data.stats,
        )

        user_id = applied.connection.user_id if applied.connection else None
        if not data.download_link:
            logger.warning("Export success without download link", connection_id=connection_id)
            ingestion = "skipped"
        elif not user_id:
            logger.warning("Export has no owning user, records not ingested", connection_id=connection_id)
            ingestion = "skipped"
        else:
            self.runner.submit(
                self.ingest(connection_id, user_id, data.download_link),
                name=f"export-ingest-{connection_id}",
            )
            ingestion = "scheduled"

        return HandlerResult(detail={
            "connection_id": connection_id,
            "connection_updated": applied.connection_updated,
            "ingestion": ingestion,
        })

    async def ingest(self, connection_id: str, user_id: str, download_link: str) -> None:
        """Download and transform the export, then push it downstream."""
        result = await self.pipeline.run(connection_id, user_id, download_link)
        if not result.records:
            return

        pushed = await self.sink.push(SinkBatch.build(user_id, connection_id, result.records))
        if pushed.skipped:
            outcome = "skipped"
        else:
            outcome = "success" if pushed.success else "failure"
        if self.metrics:
            self.metrics.sink_pushes.inc(labels={"sink": self.sink.name, "outcome": outcome})
        if not pushed.success:
            logger.warning(
                "Downstream push failed, records retained locally",
                connection_id=connection_id,
                user_id=user_id,
                error=pushed.error,
            )


class ExportFailedHandler(EventHandler):
    """Stores the failed export and stops monitoring."""

    def __init__(self, registry: ConnectionRegistry, monitor: TimeoutMonitor):
        super().__init__("export_failed", [EventType.EXPORT_FAILED])
        self.registry = registry
        self.monitor = monitor

    async def handle(self, event: ExportFailedEvent) -> HandlerResult:
        data = event.data
        connection_id = data.org_connection_id
        export = ExportRecord.failed(
            connection_id,
            failure_reason=data.failure_reason,
            task_id=data.task_id,
            org_id=data.org_id,
        )

        applied = await self.registry.apply_export_failure(connection_id, export)
        await self.monitor.stop(connection_id)

        if not applied.export_stored:
            return HandlerResult(
                outcome=ProcessingOutcome.IGNORED,
                detail={"connection_id": connection_id, "reason": "connection revoked"},
            )

        logger.warning(
            "Export failed",
            connection_id=connection_id,
            failure_reason=data.failure_reason,
            task_id=data.task_id,
        )
        return HandlerResult(detail={
            "connection_id": connection_id,
            "connection_updated": applied.connection_updated,
            "failure_reason": data.failure_reason,
        })


class AuthorizationRevokedHandler(EventHandler):
    """Revokes the connection and drops its export."""

    def __init__(self, registry: ConnectionRegistry, monitor: TimeoutMonitor):
        super().__init__("authorization_revoked", [EventType.AUTHORIZATION_REVOKED])
        self.registry = registry
        self.monitor = monitor

    async def handle(self, event: AuthorizationRevokedEvent) -> HandlerResult:
        data = event.data
        connection_id = data.org_connection_id

        connection = await self.registry.revoke(connection_id, provider_status=data.connection_status)
        await self.monitor.stop(connection_id)

        return HandlerResult(detail={
            "connection_id": connection_id,
            "known_connection": connection is not None,
        })


class WebhookTestHandler(EventHandler):
    """Acknowledges provider test deliveries."""

    def __init__(self):
        super().__init__("webhook_test", [EventType.WEBHOOK_TEST])

    async def handle(self, event: WebhookTestEvent) -> HandlerResult:
        logger.info("Webhook test received", event_id=event.id, api_mode=event.api_mode)
        return HandlerResult(detail={"message": "Webhook test received"})
