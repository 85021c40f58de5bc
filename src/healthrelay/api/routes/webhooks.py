"""
Webhook Routes

Provider webhook intake. Signature failures are rejected with 401 and
unparseable bodies with 400; everything else is acknowledged with 200,
including handler failures, which are recorded on the archived event.
"""

from datetime import datetime, timezone
from typing import Any, Optional
import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from healthrelay.api.deps import get_service
from healthrelay.errors import WebhookVerificationError
from healthrelay.service import RelayService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhook", tags=["Webhooks"])


class WebhookAck(BaseModel):
    """Acknowledgment returned to the provider."""
    received: bool = True
    archive_id: Optional[str] = None
    event_id: Optional[str] = None
    status: str
    timestamp: datetime


def _decode(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body is not valid JSON",
        )


@router.post("/fasten", response_model=WebhookAck)
async def receive_provider_webhook(
    request: Request,
    service: RelayService = Depends(get_service),
):
    """Receive a provider webhook event."""
    raw = await request.body()

    try:
        service.verifier.verify(request.headers, raw)
    except WebhookVerificationError as e:
        logger.warning(
            "Webhook rejected",
            reason=str(e),
            webhook_id=request.headers.get("webhook-id"),
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    body = _decode(raw)
    result = await service.dispatcher.dispatch(body)

    return WebhookAck(
        archive_id=result.archive_id,
        event_id=result.event_id,
        status=result.status.value,
        timestamp=datetime.now(timezone.utc),
    )


@router.post("/test")
async def receive_test_webhook(request: Request):
    """Echo acknowledgment for manual delivery tests."""
    raw = await request.body()
    logger.info("Test webhook received", body_bytes=len(raw), headers=dict(request.headers))
    return {
        "received": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "message": "Test webhook received successfully",
    }


@router.post("/{path:path}")
async def receive_unknown_webhook(path: str, request: Request):
    """Acknowledge deliveries to paths the relay does not serve."""
    raw = await request.body()
    logger.warning("Webhook received at unknown path", path=f"/webhook/{path}", body_bytes=len(raw))
    return {
        "received": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": f"/webhook/{path}",
        "message": "Webhook received at unknown path",
    }
