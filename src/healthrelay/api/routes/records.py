"""
Record Routes

Pull API for normalized records, used by the downstream platform.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from healthrelay.api.deps import get_service
from healthrelay.service import RelayService

router = APIRouter(prefix="/records", tags=["Records"])


class ClearRequest(BaseModel):
    """Clear one user's records, or everything when no user is given."""
    user_id: Optional[str] = None


@router.get("")
async def get_all_records(service: RelayService = Depends(get_service)):
    records = service.records.all_records()
    return {
        "data": [r.model_dump(mode="json") for r in records],
        "metadata": {
            "total_records": len(records),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": service.settings.pipeline.source_tag,
        },
    }


@router.get("/stats")
async def get_record_stats(service: RelayService = Depends(get_service)):
    return service.records.stats()


@router.get("/history")
async def get_ingestion_history(
    user_id: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=100),
    service: RelayService = Depends(get_service),
):
    batches = service.records.history(user_id=user_id, limit=limit)
    return {"history": [b.model_dump(mode="json") for b in batches], "total": len(batches)}


@router.get("/users/{user_id}")
async def get_user_records(user_id: str, service: RelayService = Depends(get_service)):
    records = service.records.for_user(user_id)
    return {
        "user_id": user_id,
        "data": [r.model_dump(mode="json") for r in records],
        "metadata": {
            "total_records": len(records),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


@router.post("/clear")
async def clear_records(
    body: Optional[ClearRequest] = None,
    service: RelayService = Depends(get_service),
):
    user_id = body.user_id if body else None
    removed = service.records.clear(user_id)
    return {
        "message": f"Cleared data for user: {user_id}" if user_id else "Cleared all processed data",
        "removed": removed,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
