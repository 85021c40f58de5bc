"""
API dependencies
"""

from fastapi import Request

from healthrelay.service import RelayService


def get_service(request: Request) -> RelayService:
    """The RelayService attached to the running app."""
    return request.app.state.service
