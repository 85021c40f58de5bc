"""
Normalized Record Models
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from healthrelay.models.connections import utcnow


class NormalizedRecord(BaseModel):
    """One exported FHIR resource tagged with ownership and provenance."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    connection_id: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    ingested_at: datetime
    resource: dict[str, Any]
    source: str = "fasten-connect"

    @classmethod
    def from_resource(
        cls,
        resource: dict[str, Any],
        user_id: str,
        connection_id: str,
        ingested_at: datetime,
        source: str = "fasten-connect",
    ) -> "NormalizedRecord":
        resource_type = resource.get("resourceType")
        resource_id = resource.get("id")
        return cls(
            user_id=user_id,
            connection_id=connection_id,
            resource_type=resource_type if isinstance(resource_type, str) else None,
            resource_id=str(resource_id) if resource_id is not None else None,
            ingested_at=ingested_at,
            resource=resource,
            source=source,
        )


class IngestionBatch(BaseModel):
    """Snapshot of one committed export ingestion."""
    user_id: str
    connection_id: str
    ingested_at: datetime = Field(default_factory=utcnow)
    record_count: int
    resource_types: dict[str, int] = Field(default_factory=dict)
    raw_payload_preview: Optional[str] = None
