"""
Event Dispatcher

Receives raw webhook bodies, deduplicates them by event id, validates them
into typed events and routes each to exactly one handler. Every delivery
that gets past deduplication is archived with its outcome, and dispatch
always returns so the webhook can be acknowledged.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
import time

import structlog
from pydantic import BaseModel, Field

from healthrelay.errors import MalformedEventError
from healthrelay.events.handlers import EventHandler
from healthrelay.events.store import EventStore
from healthrelay.models.events import (
    ProcessingOutcome,
    WebhookEvent,
    event_id_of,
    parse_event,
)
from healthrelay.observability.metrics import MetricsCollector

logger = structlog.get_logger(__name__)


class DispatchStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    MALFORMED = "malformed"
    ERRORED = "errored"


class DispatchResult(BaseModel):
    status: DispatchStatus
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    archive_id: Optional[str] = None
    handler: Optional[str] = None
    detail: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    processing_time_ms: int = 0


class EventDispatcher:
    """
    Routes webhook events to handlers.

    Usage:
        dispatcher = EventDispatcher(store, handlers=[...])
        result = await dispatcher.dispatch(body)
    """

    def __init__(
        self,
        store: EventStore,
        handlers: list[EventHandler] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.store = store
        self.metrics = metrics
        self._handlers: list[EventHandler] = []
        self._routes: dict[str, EventHandler] = {}
        for handler in handlers or []:
            self.register_handler(handler)

    def register_handler(self, handler: EventHandler) -> None:
        """Register a handler; each event type routes to exactly one."""
        for event_type in handler.event_types:
            existing = self._routes.get(event_type.value)
            if existing is not None:
                raise ValueError(
                    f"{event_type.value} is already handled by {existing.name}"
                )
        for event_type in handler.event_types:
            self._routes[event_type.value] = handler
        self._handlers.append(handler)

    @property
    def handlers(self) -> list[EventHandler]:
        return list(self._handlers)

    async def dispatch(self, body: Any, received_at: datetime | None = None) -> DispatchResult:
        event_id = event_id_of(body)
        event_type = body.get("type") if isinstance(body, dict) else None
        event_type = event_type if isinstance(event_type, str) else None

        if not self.store.record_if_new(event_id):
            logger.info("Duplicate webhook skipped", event_id=event_id, event_type=event_type)
            self._count(event_type, DispatchStatus.DUPLICATE)
            return DispatchResult(
                status=DispatchStatus.DUPLICATE,
                event_id=event_id,
                event_type=event_type,
            )

        record = WebhookEvent.from_body(body, received_at=received_at)
        self.store.archive(record)
        logger.info(
            "Webhook received",
            event_id=event_id,
            event_type=event_type,
            archive_id=record.archive_id,
            api_mode=record.api_mode,
        )

        try:
            event = parse_event(body)
        except MalformedEventError as e:
            logger.warning("Malformed webhook", event_id=event_id, event_type=event_type, error=str(e))
            record.record_outcome(ProcessingOutcome.ERRORED, str(e))
            self._count(event_type, DispatchStatus.MALFORMED)
            return DispatchResult(
                status=DispatchStatus.MALFORMED,
                event_id=event_id,
                event_type=event_type,
                archive_id=record.archive_id,
                error=str(e),
            )

        handler = self._routes.get(event.type)
        if handler is None:
            logger.info("Unhandled webhook event type", event_id=event_id, event_type=event.type)
            record.record_outcome(ProcessingOutcome.IGNORED)
            self._count(event.type, DispatchStatus.IGNORED)
            return DispatchResult(
                status=DispatchStatus.IGNORED,
                event_id=event_id,
                event_type=event.type,
                archive_id=record.archive_id,
            )

        start = time.perf_counter()
        try:
            result = await handler.handle(event)
        except Exception as e:
            elapsed = int((time.perf_counter() - start) * 1000)
            logger.exception(
                "Webhook handler failed",
                event_id=event_id,
                event_type=event.type,
                handler=handler.name,
            )
            record.record_outcome(ProcessingOutcome.ERRORED, str(e) or e.__class__.__name__)
            self._count(event.type, DispatchStatus.ERRORED)
            return DispatchResult(
                status=DispatchStatus.ERRORED,
                event_id=event_id,
                event_type=event.type,
                archive_id=record.archive_id,
                handler=handler.name,
                error=str(e) or e.__class__.__name__,
                processing_time_ms=elapsed,
            )

        elapsed = int((time.perf_counter() - start) * 1000)
        record.record_outcome(result.outcome)
        status = (
            DispatchStatus.IGNORED
            if result.outcome == ProcessingOutcome.IGNORED
            else DispatchStatus.PROCESSED
        )
        self._count(event.type, status)
        return DispatchResult(
            status=status,
            event_id=event_id,
            event_type=event.type,
            archive_id=record.archive_id,
            handler=handler.name,
            detail=result.detail,
            processing_time_ms=elapsed,
        )

    def _count(self, event_type: str | None, status: DispatchStatus) -> None:
        if self.metrics:
            self.metrics.webhook_events.inc(
                labels={"type": event_type or "unknown", "outcome": status.value}
            )
