"""
Connection Routes

Read-only views of connections, exports and per-user summaries.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from healthrelay.api.deps import get_service
from healthrelay.service import RelayService

router = APIRouter(tags=["Connections"])


@router.get("/connections")
async def list_connections(service: RelayService = Depends(get_service)):
    """All known connections."""
    connections = [
        service.connection_view(c.connection_id)
        for c in service.registry.all()
    ]
    return {"connections": connections, "total": len(connections)}


@router.get("/connections/detailed")
async def list_connections_detailed(service: RelayService = Depends(get_service)):
    """Connections with their export monitoring state."""
    connections = [
        service.connection_view(c.connection_id, include_monitoring=True)
        for c in service.registry.all()
    ]
    return {
        "connections": connections,
        "diagnostics": service.monitor.stats(),
        "total_connections": len(connections),
    }


@router.get("/connections/{connection_id}/status")
async def get_connection_status(
    connection_id: str,
    service: RelayService = Depends(get_service),
):
    view = service.connection_view(connection_id, include_monitoring=True)
    if view is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Connection {connection_id} not found",
        )
    return view


@router.get("/connections/{connection_id}/export")
async def get_connection_export(
    connection_id: str,
    service: RelayService = Depends(get_service),
):
    export = service.registry.get_export(connection_id)
    if export is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Export for connection {connection_id} not found",
        )
    return export.model_dump(mode="json")


@router.get("/users/{user_id}/connections")
async def get_user_connections(user_id: str, service: RelayService = Depends(get_service)):
    connections = [
        service.connection_view(connection_id)
        for connection_id in service.registry.connection_ids_for_user(user_id)
    ]
    return {"user_id": user_id, "connections": [c for c in connections if c is not None]}


@router.get("/users/{user_id}/exports")
async def get_user_exports(user_id: str, service: RelayService = Depends(get_service)):
    exports = service.registry.exports_for_user(user_id)
    return {"user_id": user_id, "exports": [e.model_dump(mode="json") for e in exports]}


@router.get("/users/{user_id}/summary")
async def get_user_summary(user_id: str, service: RelayService = Depends(get_service)):
    return service.user_summary(user_id)
