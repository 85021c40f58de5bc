"""
Downstream Sink

Delivery of ingested records to the downstream platform. Pushing is best
effort: a sink reports failure through ``PushResult`` and local records
are kept either way.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional
import hashlib

from pydantic import BaseModel, Field

from healthrelay.models.connections import utcnow
from healthrelay.models.records import NormalizedRecord


def resource_key(record: NormalizedRecord) -> str:
    return f"{record.resource_type or 'Unknown'}/{record.resource_id or ''}"


class SinkBatch(BaseModel):
    """Records from one ingestion, keyed so repeated pushes are recognizable."""
    user_id: str
    connection_id: str
    records: list[NormalizedRecord]
    idempotency_key: str
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def build(cls, user_id: str, connection_id: str, records: list[NormalizedRecord]) -> "SinkBatch":
        digest = hashlib.sha256()
        digest.update(connection_id.encode("utf-8"))
        for key in sorted(resource_key(r) for r in records):
            digest.update(b"\n")
            digest.update(key.encode("utf-8"))
        return cls(
            user_id=user_id,
            connection_id=connection_id,
            records=records,
            idempotency_key=digest.hexdigest(),
        )

    def payload(self, source: str) -> dict[str, Any]:
        return {
            "records": [r.resource for r in self.records],
            "user_id": self.user_id,
            "metadata": {
                "ingestion_run_id": self.idempotency_key,
                "org_connection_id": self.connection_id,
                "source": source,
                "timestamp": self.created_at.isoformat(),
                "total_records": len(self.records),
            },
        }


class PushResult(BaseModel):
    success: bool
    idempotency_key: str
    records: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 0
    skipped: bool = False


class Sink(ABC):
    """Abstract downstream delivery."""

    name: str = "sink"

    @abstractmethod
    async def push(self, batch: SinkBatch) -> PushResult:
        """Deliver a batch. Must not raise for delivery failures."""

    async def close(self) -> None:
        return None


class NullSink(Sink):
    """Keeps records local; they stay available through the pull API."""

    name = "null"

    async def push(self, batch: SinkBatch) -> PushResult:
        return PushResult(
            success=True,
            idempotency_key=batch.idempotency_key,
            records=len(batch.records),
            skipped=True,
        )
