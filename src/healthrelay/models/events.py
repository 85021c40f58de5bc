"""
Webhook Event Models

Inbound provider webhooks are validated at the boundary into a closed set
of typed events (five known types plus an unknown fallback). The archived
``WebhookEvent`` keeps the raw body and the processing outcome.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from healthrelay.errors import MalformedEventError


class EventType(str, Enum):
    """Provider webhook event types."""
    CONNECTION_SUCCESS = "patient.connection_success"
    EXPORT_SUCCESS = "patient.ehi_export_success"
    EXPORT_FAILED = "patient.ehi_export_failed"
    AUTHORIZATION_REVOKED = "patient.authorization_revoked"
    WEBHOOK_TEST = "webhook.test"


# =============================================================================
# Event payloads
# =============================================================================

class _EventData(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


class ConnectionSuccessData(_EventData):
    """Payload of ``patient.connection_success``."""
    org_connection_id: str = Field(min_length=1)
    endpoint_id: Optional[str] = None
    brand_id: Optional[str] = None
    portal_id: Optional[str] = None
    connection_status: Optional[str] = None
    platform_type: Optional[str] = None
    external_id: Optional[str] = None


class ExportSuccessData(_EventData):
    """Payload of ``patient.ehi_export_success``."""
    org_connection_id: str = Field(min_length=1)
    download_link: Optional[str] = None
    stats: dict[str, Any] = Field(default_factory=dict)
    task_id: Optional[str] = None
    org_id: Optional[str] = None

    @field_validator("stats", mode="before")
    @classmethod
    def _null_stats(cls, v):
        return {} if v is None else v


class ExportFailedData(_EventData):
    """Payload of ``patient.ehi_export_failed``."""
    org_connection_id: str = Field(min_length=1)
    failure_reason: Optional[str] = None
    task_id: Optional[str] = None
    org_id: Optional[str] = None


class AuthorizationRevokedData(_EventData):
    """Payload of ``patient.authorization_revoked``."""
    org_connection_id: str = Field(min_length=1)
    connection_status: Optional[str] = None


# =============================================================================
# Typed events
# =============================================================================

class _InboundEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: Optional[str] = None
    api_mode: Optional[str] = None


class ConnectionSuccessEvent(_InboundEvent):
    type: Literal["patient.connection_success"] = "patient.connection_success"
    data: ConnectionSuccessData


class ExportSuccessEvent(_InboundEvent):
    type: Literal["patient.ehi_export_success"] = "patient.ehi_export_success"
    data: ExportSuccessData


class ExportFailedEvent(_InboundEvent):
    type: Literal["patient.ehi_export_failed"] = "patient.ehi_export_failed"
    data: ExportFailedData


class AuthorizationRevokedEvent(_InboundEvent):
    type: Literal["patient.authorization_revoked"] = "patient.authorization_revoked"
    data: AuthorizationRevokedData


class WebhookTestEvent(_InboundEvent):
    type: Literal["webhook.test"] = "webhook.test"
    data: dict[str, Any] = Field(default_factory=dict)


class UnknownEvent(_InboundEvent):
    """Any event type the relay does not handle."""
    type: str
    data: Any = None


InboundEvent = Union[
    ConnectionSuccessEvent,
    ExportSuccessEvent,
    ExportFailedEvent,
    AuthorizationRevokedEvent,
    WebhookTestEvent,
    UnknownEvent,
]

EVENT_MODELS: dict[str, type[_InboundEvent]] = {
    EventType.CONNECTION_SUCCESS.value: ConnectionSuccessEvent,
    EventType.EXPORT_SUCCESS.value: ExportSuccessEvent,
    EventType.EXPORT_FAILED.value: ExportFailedEvent,
    EventType.AUTHORIZATION_REVOKED.value: AuthorizationRevokedEvent,
    EventType.WEBHOOK_TEST.value: WebhookTestEvent,
}


def event_id_of(body: Any) -> Optional[str]:
    """The idempotency key of a raw body, if it carries one."""
    if not isinstance(body, dict):
        return None
    value = body.get("id")
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int)):
        return str(value) or None
    return None


def parse_event(body: Any) -> InboundEvent:
    """
    Validate a webhook body into a typed event.

    Raises:
        MalformedEventError: body is not an object, has no string ``type``,
            or the payload does not match the declared type.
    """
    if not isinstance(body, dict):
        raise MalformedEventError("Webhook body must be a JSON object")

    event_type = body.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("Webhook body is missing an event type")

    model = EVENT_MODELS.get(event_type, UnknownEvent)
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise MalformedEventError(
            f"Invalid {event_type} payload: {e.error_count()} validation error(s)"
        ) from e


# =============================================================================
# Archive record
# =============================================================================

class ProcessingOutcome(str, Enum):
    """What happened to an archived webhook."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    IGNORED = "ignored"
    ERRORED = "errored"


class WebhookEvent(BaseModel):
    """One inbound webhook as received, plus its processing outcome."""
    archive_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_id: Optional[str] = None
    type: Optional[str] = None
    api_mode: Optional[str] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Any = None

    outcome: ProcessingOutcome = ProcessingOutcome.PENDING
    error: Optional[str] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_body(cls, body: Any, received_at: datetime | None = None) -> "WebhookEvent":
        fields = body if isinstance(body, dict) else {}
        event_type = fields.get("type")
        api_mode = fields.get("api_mode")
        return cls(
            event_id=event_id_of(fields),
            type=event_type if isinstance(event_type, str) else None,
            api_mode=api_mode if isinstance(api_mode, str) else None,
            received_at=received_at or datetime.now(timezone.utc),
            payload=body,
        )

    def record_outcome(self, outcome: ProcessingOutcome, error: str | None = None) -> None:
        self.outcome = outcome
        self.error = error
        self.processed_at = datetime.now(timezone.utc)
