"""
Diagnostics Routes

Operational visibility: export timeout report, monitoring stats, recent
webhook events and metrics.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse

from healthrelay.api.deps import get_service
from healthrelay.service import RelayService

router = APIRouter(prefix="/diagnostics", tags=["Diagnostics"])


@router.get("/report")
async def get_diagnostic_report(service: RelayService = Depends(get_service)):
    report = service.monitor.report()
    report["diagnostics"] = [d.model_dump(mode="json") for d in service.monitor.diagnostics()]
    return report


@router.get("/stats")
async def get_diagnostic_stats(service: RelayService = Depends(get_service)):
    return service.monitor.stats()


@router.post("/sweep")
async def sweep_export_deadlines(service: RelayService = Depends(get_service)):
    """Fire every overdue export deadline now."""
    fired = await service.monitor.sweep()
    return {"timed_out": fired, "count": len(fired)}


@router.get("/events")
async def get_recent_events(
    limit: int = Query(default=20, ge=1, le=500),
    service: RelayService = Depends(get_service),
):
    events = service.events.recent(limit)
    return {
        "events": [e.model_dump(mode="json") for e in events],
        "stats": service.events.stats(),
    }


@router.get("/events/{archive_id}")
async def get_event(archive_id: str, service: RelayService = Depends(get_service)):
    event = service.events.get(archive_id)
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Event {archive_id} not found",
        )
    return event.model_dump(mode="json")


@router.get("/metrics")
async def get_metrics_summary(service: RelayService = Depends(get_service)):
    return service.metrics.get_summary()


@router.get("/metrics/prometheus", response_class=PlainTextResponse)
async def get_prometheus_metrics(service: RelayService = Depends(get_service)):
    return service.metrics.to_prometheus()
