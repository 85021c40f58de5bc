"""
healthrelay API Routes
"""

from healthrelay.api.routes.connections import router as connections_router
from healthrelay.api.routes.diagnostics import router as diagnostics_router
from healthrelay.api.routes.records import router as records_router
from healthrelay.api.routes.webhooks import router as webhooks_router

__all__ = [
    "connections_router",
    "diagnostics_router",
    "records_router",
    "webhooks_router",
]
