"""
Provider API Client

Authenticated access to the Fasten Connect API:
- EHI export requests
- URL resolution for relative download references
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
import json

import httpx
import structlog
from pydantic import BaseModel, Field

from healthrelay.config import ProviderSettings
from healthrelay.errors import ProviderNotConfiguredError, ProviderRequestError

logger = structlog.get_logger(__name__)

EXPORT_PATH = "/v1/bridge/fhir/ehi-export"


class ExportTaskResponse(BaseModel):
    """Provider acknowledgment of an export request."""
    status: Optional[str] = None
    task_id: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


def decode_body(text: str) -> dict[str, Any]:
    """Empty body -> {}, non-JSON (or non-object) body -> {"raw": text}."""
    if not text:
        return {}
    try:
        payload = json.loads(text)
    except ValueError:
        return {"raw": text}
    if not isinstance(payload, dict):
        return {"raw": text}
    return payload


class ProviderClient:
    """
    Client for the provider's bridge API using HTTP Basic auth with the
    public/private key pair.

    An ``httpx.AsyncClient`` may be injected (tests use one backed by
    ``httpx.MockTransport``); otherwise a client is opened per call.
    """

    def __init__(
        self,
        settings: ProviderSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or ProviderSettings()
        self._client = client

    @property
    def is_configured(self) -> bool:
        return self.settings.is_configured

    @property
    def base_url(self) -> str:
        return self.settings.api_base_url

    def auth(self) -> httpx.BasicAuth:
        credentials = self.settings.credentials
        if credentials is None:
            raise ProviderNotConfiguredError()
        return httpx.BasicAuth(*credentials)

    def resolve(self, path_or_url: str) -> str:
        """Absolute URLs pass through; paths are joined to the API base URL."""
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        path = path_or_url if path_or_url.startswith("/") else f"/{path_or_url}"
        return f"{self.base_url}{path}"

    @asynccontextmanager
    async def session(self, timeout: float | None = None) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=timeout or self.settings.request_timeout_seconds) as client:
            yield client

    async def request_export(self, connection_id: str) -> ExportTaskResponse:
        """
        Ask the provider to start an EHI export for a connection.

        Raises:
            ProviderNotConfiguredError: credentials are missing
            ProviderRequestError: non-2xx response
            httpx.TransportError: network failure or timeout
        """
        auth = self.auth()
        url = self.resolve(EXPORT_PATH)

        async with self.session() as client:
            response = await client.post(
                url,
                json={"org_connection_id": connection_id},
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self.settings.request_timeout_seconds,
            )

        if response.is_error:
            raise ProviderRequestError(url, response.status_code, response.text)

        payload = decode_body(response.text)
        task_id = payload.get("task_id")
        logger.info(
            "Export requested",
            connection_id=connection_id,
            status=payload.get("status"),
            task_id=task_id,
        )
        return ExportTaskResponse(
            status=payload.get("status"),
            task_id=str(task_id) if task_id is not None else None,
            raw=payload,
        )
