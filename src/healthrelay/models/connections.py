"""
Connection and Export Models

A Connection is one provider-side authorization linking an end user to a
source-system data feed. An ExportRecord is the current bulk export job
for a connection; only the latest one is kept.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

EXPORT_LINK_LIFETIME = timedelta(hours=24)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionStatus(str, Enum):
    """Connection lifecycle states."""
    PENDING = "pending"
    CONNECTED = "connected"
    EXPORT_REQUESTED = "export_requested"
    EXPORT_IN_PROGRESS = "export_in_progress"
    EXPORT_SUCCEEDED = "export_succeeded"
    EXPORT_FAILED = "export_failed"
    REVOKED = "revoked"


# Allowed lifecycle edges. REVOKED is terminal.
TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.PENDING: frozenset({ConnectionStatus.CONNECTED}),
    ConnectionStatus.CONNECTED: frozenset({
        ConnectionStatus.CONNECTED,
        ConnectionStatus.EXPORT_REQUESTED,
        ConnectionStatus.EXPORT_IN_PROGRESS,
        ConnectionStatus.EXPORT_SUCCEEDED,
        ConnectionStatus.EXPORT_FAILED,
        ConnectionStatus.REVOKED,
    }),
    ConnectionStatus.EXPORT_REQUESTED: frozenset({
        ConnectionStatus.CONNECTED,
        ConnectionStatus.EXPORT_IN_PROGRESS,
        ConnectionStatus.EXPORT_SUCCEEDED,
        ConnectionStatus.EXPORT_FAILED,
        ConnectionStatus.REVOKED,
    }),
    ConnectionStatus.EXPORT_IN_PROGRESS: frozenset({
        ConnectionStatus.CONNECTED,
        ConnectionStatus.EXPORT_SUCCEEDED,
        ConnectionStatus.EXPORT_FAILED,
        ConnectionStatus.REVOKED,
    }),
    ConnectionStatus.EXPORT_SUCCEEDED: frozenset({
        ConnectionStatus.CONNECTED,
        ConnectionStatus.EXPORT_REQUESTED,
        ConnectionStatus.EXPORT_SUCCEEDED,
        ConnectionStatus.EXPORT_FAILED,
        ConnectionStatus.REVOKED,
    }),
    ConnectionStatus.EXPORT_FAILED: frozenset({
        ConnectionStatus.CONNECTED,
        ConnectionStatus.EXPORT_REQUESTED,
        ConnectionStatus.EXPORT_IN_PROGRESS,
        ConnectionStatus.EXPORT_SUCCEEDED,
        ConnectionStatus.EXPORT_FAILED,
        ConnectionStatus.REVOKED,
    }),
    ConnectionStatus.REVOKED: frozenset(),
}


def can_transition(current: ConnectionStatus, target: ConnectionStatus) -> bool:
    return target in TRANSITIONS[current]


class Connection(BaseModel):
    """Authoritative state for one provider connection."""
    connection_id: str
    user_id: Optional[str] = None
    platform_type: Optional[str] = None
    endpoint_id: Optional[str] = None
    brand_id: Optional[str] = None
    portal_id: Optional[str] = None
    provider_status: Optional[str] = None

    status: ConnectionStatus = ConnectionStatus.PENDING

    connected_at: Optional[datetime] = None
    last_export_requested_at: Optional[datetime] = None
    last_export_success_at: Optional[datetime] = None
    last_export_failure_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    last_error: Optional[str] = None
    pending_task_id: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.status == ConnectionStatus.REVOKED

    def monitoring_context(self) -> dict[str, Any]:
        """Fields the timeout monitor reports when a deadline elapses."""
        return {
            "platform_type": self.platform_type,
            "endpoint_id": self.endpoint_id,
            "brand_id": self.brand_id,
            "portal_id": self.portal_id,
            "user_id": self.user_id,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
        }


class ExportStatus(str, Enum):
    """Bulk export job states."""
    REQUESTED = "requested"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExportRecord(BaseModel):
    """The current export for one connection."""
    connection_id: str
    status: ExportStatus
    download_link: Optional[str] = None
    stats: dict[str, Any] = Field(default_factory=dict)
    task_id: Optional[str] = None
    org_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @classmethod
    def succeeded(
        cls,
        connection_id: str,
        download_link: str | None,
        stats: dict[str, Any] | None = None,
        task_id: str | None = None,
        org_id: str | None = None,
    ) -> "ExportRecord":
        created = utcnow()
        return cls(
            connection_id=connection_id,
            status=ExportStatus.SUCCEEDED,
            download_link=download_link,
            stats=stats or {},
            task_id=task_id,
            org_id=org_id,
            created_at=created,
            expires_at=created + EXPORT_LINK_LIFETIME,
        )

    @classmethod
    def failed(
        cls,
        connection_id: str,
        failure_reason: str | None,
        task_id: str | None = None,
        org_id: str | None = None,
    ) -> "ExportRecord":
        return cls(
            connection_id=connection_id,
            status=ExportStatus.FAILED,
            failure_reason=failure_reason,
            task_id=task_id,
            org_id=org_id,
        )


class ExportApplyResult(BaseModel):
    """What an export success/failure event changed."""
    export_stored: bool
    connection_updated: bool
    connection: Optional[Connection] = None
    export: Optional[ExportRecord] = None
