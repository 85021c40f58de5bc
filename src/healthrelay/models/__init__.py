"""
Relay Data Models
"""

from healthrelay.models.connections import (
    Connection,
    ConnectionStatus,
    ExportApplyResult,
    ExportRecord,
    ExportStatus,
)
from healthrelay.models.events import (
    EventType,
    InboundEvent,
    ProcessingOutcome,
    WebhookEvent,
    parse_event,
)
from healthrelay.models.records import IngestionBatch, NormalizedRecord

__all__ = [
    "Connection",
    "ConnectionStatus",
    "ExportApplyResult",
    "ExportRecord",
    "ExportStatus",
    "EventType",
    "InboundEvent",
    "ProcessingOutcome",
    "WebhookEvent",
    "parse_event",
    "IngestionBatch",
    "NormalizedRecord",
]
