"""
Relay Service

Wires the relay's components together from settings. One instance backs
one API process; tests build their own with fakes injected.
"""

from datetime import datetime, timezone
from typing import Any

import structlog

from healthrelay import __version__
from healthrelay.background import BackgroundRunner
from healthrelay.config import Settings, get_settings
from healthrelay.connections.monitor import TimeoutMonitor
from healthrelay.connections.registry import ConnectionRegistry
from healthrelay.events.dispatcher import EventDispatcher
from healthrelay.events.handlers import (
    AuthorizationRevokedHandler,
    ConnectionSuccessHandler,
    ExportFailedHandler,
    ExportSuccessHandler,
    WebhookTestHandler,
)
from healthrelay.events.store import EventStore
from healthrelay.events.verification import WebhookVerifier
from healthrelay.ingestion.cache import RecordCache
from healthrelay.ingestion.pipeline import Downloader, FHIRTransformPipeline
from healthrelay.ingestion.store import RecordStore
from healthrelay.observability.metrics import MetricsCollector
from healthrelay.provider.client import ProviderClient
from healthrelay.provider.downloader import ExportDownloader
from healthrelay.provider.trigger import ExportTrigger
from healthrelay.retry import RetryPolicy
from healthrelay.sink import Sink, build_sink

logger = structlog.get_logger(__name__)

SERVICE_NAME = "healthrelay"


class RelayService:
    """
    Container for the relay's components.

    Usage:
        service = RelayService(get_settings())
        await service.start()
        result = await service.dispatcher.dispatch(body)
        await service.close()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        provider: ProviderClient | None = None,
        downloader: Downloader | None = None,
        sink: Sink | None = None,
        use_timers: bool = True,
    ):
        self.settings = settings or get_settings()
        app = self.settings.app
        pipeline_settings = self.settings.pipeline
        monitor_settings = self.settings.monitor

        self.started_at = datetime.now(timezone.utc)
        self.metrics = MetricsCollector(slow_operation_ms=pipeline_settings.slow_operation_ms)
        self.runner = BackgroundRunner()

        self.events = EventStore(
            archive_limit=app.event_archive_limit,
            seen_ttl_seconds=app.seen_id_ttl_seconds,
            max_seen_ids=app.max_seen_ids,
        )
        self.verifier = WebhookVerifier(
            app.webhook_secret.get_secret_value() if app.webhook_secret else None
        )

        self.registry = ConnectionRegistry()
        self.monitor = TimeoutMonitor(
            self.registry,
            export_timeout_minutes=monitor_settings.export_timeout_minutes,
            slow_platform_timeout_minutes=monitor_settings.slow_platform_timeout_minutes,
            slow_platforms=monitor_settings.slow_platforms,
            diagnostics_limit=monitor_settings.diagnostics_limit,
            finished_limit=monitor_settings.finished_entries_limit,
            metrics=self.metrics,
            use_timers=use_timers,
        )

        retry_policy = RetryPolicy(
            max_retries=self.settings.provider.max_retries,
            delay_seconds=self.settings.provider.retry_delay_seconds,
        )
        self.provider = provider or ProviderClient(self.settings.provider)
        self.downloader = downloader or ExportDownloader(
            self.provider,
            chunk_size=pipeline_settings.chunk_size,
        )
        self.trigger = ExportTrigger(self.provider, self.registry, retry_policy, self.metrics)

        self.cache = RecordCache(ttl_seconds=pipeline_settings.cache_ttl_seconds)
        self.records = RecordStore(self.cache, history_limit=pipeline_settings.history_limit)
        self.pipeline = FHIRTransformPipeline(
            self.downloader,
            self.records,
            batch_size=pipeline_settings.batch_size,
            source_tag=pipeline_settings.source_tag,
            policy=retry_policy,
            metrics=self.metrics,
        )
        self.sink = sink or build_sink(self.settings.sink, source=pipeline_settings.source_tag)

        self.dispatcher = EventDispatcher(
            self.events,
            handlers=[
                ConnectionSuccessHandler(
                    self.registry,
                    self.monitor,
                    self.trigger,
                    self.runner,
                    auto_trigger=app.auto_trigger_export,
                ),
                ExportSuccessHandler(
                    self.registry,
                    self.monitor,
                    self.pipeline,
                    self.runner,
                    sink=self.sink,
                    metrics=self.metrics,
                ),
                ExportFailedHandler(self.registry, self.monitor),
                AuthorizationRevokedHandler(self.registry, self.monitor),
                WebhookTestHandler(),
            ],
            metrics=self.metrics,
        )

    async def start(self) -> None:
        logger.info(
            "Starting relay service",
            env=self.settings.app.env,
            provider_base_url=self.provider.base_url,
            provider_configured=self.provider.is_configured,
            sink=self.sink.name,
            auto_trigger_export=self.settings.app.auto_trigger_export,
        )
        if not self.provider.is_configured:
            logger.warning("Provider credentials not configured, exports will not be triggered automatically")
        if not self.verifier.enabled:
            logger.warning("No webhook secret configured, signature verification is disabled")

    async def close(self) -> None:
        logger.info("Shutting down relay service", pending_tasks=self.runner.pending)
        await self.runner.close()
        await self.monitor.close()
        await self.sink.close()

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        registry = self.registry.stats()
        events = self.events.stats()
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "version": __version__,
            "provider_configured": self.provider.is_configured,
            "stats": {
                "total_events": events["archived_events"],
                "processed_events": events["seen_event_ids"],
                "duplicates_skipped": events["duplicates_skipped"],
                "connections": registry["connections"],
                "exports": registry["exports"],
                "unique_users": registry["users"],
                "records": self.records.stats()["records"],
                "background": self.runner.stats(),
            },
        }

    def connection_view(self, connection_id: str, include_monitoring: bool = False) -> dict[str, Any] | None:
        connection = self.registry.get(connection_id)
        if connection is None:
            return None
        view = connection.model_dump(mode="json")
        view["has_export"] = self.registry.has_export(connection_id)
        if include_monitoring:
            entry = self.monitor.entry(connection_id)
            if entry is not None:
                view["monitoring"] = {
                    "status": entry.status.value,
                    "started_at": entry.started_at.isoformat(),
                    "deadline": entry.deadline.isoformat(),
                    "timed_out_at": entry.timed_out_at.isoformat() if entry.timed_out_at else None,
                }
        return view

    def user_summary(self, user_id: str) -> dict[str, Any]:
        connections = [
            self.connection_view(connection_id)
            for connection_id in self.registry.connection_ids_for_user(user_id)
        ]
        connections = [c for c in connections if c is not None]
        exports = [e.model_dump(mode="json") for e in self.registry.exports_for_user(user_id)]
        return {
            "user_id": user_id,
            "total_connections": len(connections),
            "total_exports": len(exports),
            "total_records": len(self.records.for_user(user_id)),
            "connections": connections,
            "exports": exports,
        }
