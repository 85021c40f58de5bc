"""
Connection Registry

Authoritative connection and export state with a user index.

Every mutation of a connection (and of its export record) runs under that
connection's ``asyncio.Lock``. There is no registry-wide lock; different
connections proceed independently. Reads return copies so callers never
hold references into registry state.
"""

from collections import Counter as TallyCounter
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator
import asyncio
import threading

import structlog

from healthrelay.models.connections import (
    Connection,
    ConnectionStatus,
    ExportApplyResult,
    ExportRecord,
    ExportStatus,
    can_transition,
)

logger = structlog.get_logger(__name__)


class KeyedLocks:
    """
    One asyncio.Lock per key.

    A key's lock lives only while some caller holds or waits on it, so the
    table stays as small as the number of connections being mutated right
    now rather than every id ever seen.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}
        self._guard = threading.Lock()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = asyncio.Lock()
            self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            with self._guard:
                self._holders[key] -= 1
                if not self._holders[key]:
                    del self._holders[key]
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class ConnectionRegistry:
    """
    In-memory store of connections, current exports and user ownership.

    Mutations are coroutines because they serialize on the per-connection
    lock; reads are plain methods.
    """

    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._exports: dict[str, ExportRecord] = {}
        # user id -> connection ids in insertion order
        self._user_connections: dict[str, dict[str, None]] = {}
        self._locks = KeyedLocks()

    def lock(self, connection_id: str) -> AbstractAsyncContextManager[None]:
        """Hold the lock serializing mutations of one connection."""
        return self._locks.hold(connection_id)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def upsert_on_connection_success(
        self,
        connection_id: str,
        *,
        user_id: str | None = None,
        platform_type: str | None = None,
        endpoint_id: str | None = None,
        brand_id: str | None = None,
        portal_id: str | None = None,
        provider_status: str | None = None,
    ) -> Connection | None:
        """
        Create or overwrite a connection in status ``connected``.

        Returns None when the connection is already revoked, since nothing
        leaves ``revoked``.
        """
        async with self.lock(connection_id):
            existing = self._connections.get(connection_id)
            if existing is not None and existing.is_revoked:
                logger.warning(
                    "Ignoring connection success for revoked connection",
                    connection_id=connection_id,
                )
                return None

            owner = user_id or (existing.user_id if existing else None)
            if existing is not None and existing.user_id and existing.user_id != owner:
                self._detach(existing.user_id, connection_id)

            connection = Connection(
                connection_id=connection_id,
                user_id=owner,
                platform_type=platform_type,
                endpoint_id=endpoint_id,
                brand_id=brand_id,
                portal_id=portal_id,
                provider_status=provider_status,
                status=ConnectionStatus.CONNECTED,
                connected_at=_now(),
            )
            self._connections[connection_id] = connection

            if owner:
                self._user_connections.setdefault(owner, {})[connection_id] = None
                logger.info(
                    "Connection attached to user",
                    connection_id=connection_id,
                    user_id=owner,
                    user_connections=len(self._user_connections[owner]),
                )
            else:
                logger.info("Connection has no owning user yet", connection_id=connection_id)

            return connection.model_copy()

    async def mark_export_requested(self, connection_id: str) -> bool:
        """Record that an export request is being issued."""
        async with self.lock(connection_id):
            connection = self._connections.get(connection_id)
            if connection is None or not self._transition(connection, ConnectionStatus.EXPORT_REQUESTED):
                return False
            connection.last_export_requested_at = _now()
            connection.last_error = None
            self._exports[connection_id] = ExportRecord(
                connection_id=connection_id,
                status=ExportStatus.REQUESTED,
            )
            return True

    async def mark_export_in_progress(self, connection_id: str, task_id: str | None) -> bool:
        """The provider acknowledged an export task."""
        async with self.lock(connection_id):
            connection = self._connections.get(connection_id)
            if not self._awaiting_request(connection, "in_progress"):
                return False
            if not self._transition(connection, ConnectionStatus.EXPORT_IN_PROGRESS):
                return False
            connection.pending_task_id = task_id
            current = self._exports.get(connection_id)
            if current is not None and current.status == ExportStatus.REQUESTED:
                self._exports[connection_id] = current.model_copy(
                    update={"status": ExportStatus.IN_PROGRESS, "task_id": task_id}
                )
            return True

    async def mark_export_request_failed(self, connection_id: str, error: str) -> bool:
        """The export request could not be issued."""
        async with self.lock(connection_id):
            connection = self._connections.get(connection_id)
            if not self._awaiting_request(connection, "request_failed"):
                return False
            if not self._transition(connection, ConnectionStatus.EXPORT_FAILED):
                return False
            connection.last_error = error
            connection.last_export_failure_at = _now()
            current = self._exports.get(connection_id)
            if current is not None and current.status == ExportStatus.REQUESTED:
                self._exports[connection_id] = current.model_copy(
                    update={"status": ExportStatus.FAILED, "failure_reason": error}
                )
            return True

    async def apply_export_success(self, connection_id: str, export: ExportRecord) -> ExportApplyResult:
        """Store a successful export and advance the connection if known."""
        return await self._apply_export(connection_id, export, ConnectionStatus.EXPORT_SUCCEEDED)

    async def apply_export_failure(self, connection_id: str, export: ExportRecord) -> ExportApplyResult:
        """Store a failed export and advance the connection if known."""
        return await self._apply_export(connection_id, export, ConnectionStatus.EXPORT_FAILED)

    async def _apply_export(
        self,
        connection_id: str,
        export: ExportRecord,
        target: ConnectionStatus,
    ) -> ExportApplyResult:
        async with self.lock(connection_id):
            connection = self._connections.get(connection_id)

            if connection is not None and connection.is_revoked:
                logger.info(
                    "Export event for revoked connection ignored",
                    connection_id=connection_id,
                    export_status=export.status.value,
                )
                return ExportApplyResult(
                    export_stored=False,
                    connection_updated=False,
                    connection=connection.model_copy(),
                )

            self._exports[connection_id] = export

            if connection is None:
                logger.warning(
                    "Export event for unknown connection, export stored without connection update",
                    connection_id=connection_id,
                    export_status=export.status.value,
                )
                return ExportApplyResult(
                    export_stored=True,
                    connection_updated=False,
                    export=export.model_copy(),
                )

            updated = self._transition(connection, target)
            if updated:
                connection.pending_task_id = None
                if target == ConnectionStatus.EXPORT_SUCCEEDED:
                    connection.last_export_success_at = export.created_at
                    connection.last_error = None
                else:
                    connection.last_export_failure_at = export.created_at
                    connection.last_error = export.failure_reason

            return ExportApplyResult(
                export_stored=True,
                connection_updated=updated,
                connection=connection.model_copy(),
                export=export.model_copy(),
            )

    async def revoke(self, connection_id: str, provider_status: str | None = None) -> Connection | None:
        """
        Revoke a connection: terminal status, user index detached, export
        deleted. Returns None for unknown connections.
        """
        async with self.lock(connection_id):
            removed_export = self._exports.pop(connection_id, None)
            connection = self._connections.get(connection_id)

            if connection is None:
                logger.info(
                    "Revocation for unknown connection",
                    connection_id=connection_id,
                    export_removed=removed_export is not None,
                )
                return None

            if connection.is_revoked:
                return connection.model_copy()

            if not self._transition(connection, ConnectionStatus.REVOKED):
                return connection.model_copy()

            connection.revoked_at = _now()
            connection.pending_task_id = None
            if provider_status:
                connection.provider_status = provider_status
            if connection.user_id:
                self._detach(connection.user_id, connection_id)

            logger.info(
                "Connection revoked",
                connection_id=connection_id,
                user_id=connection.user_id,
                export_removed=removed_export is not None,
            )
            return connection.model_copy()

    def _transition(self, connection: Connection, target: ConnectionStatus) -> bool:
        if not can_transition(connection.status, target):
            logger.info(
                "Connection transition not allowed",
                connection_id=connection.connection_id,
                current=connection.status.value,
                target=target.value,
            )
            return False
        connection.status = target
        return True

    def _awaiting_request(self, connection: Connection | None, mark: str) -> bool:
        # trigger outcomes only land on the request they belong to
        if connection is None:
            return False
        if connection.status != ConnectionStatus.EXPORT_REQUESTED:
            logger.info(
                "Stale export request outcome ignored",
                connection_id=connection.connection_id,
                current=connection.status.value,
                mark=mark,
            )
            return False
        return True

    def _detach(self, user_id: str, connection_id: str) -> None:
        owned = self._user_connections.get(user_id)
        if owned is None:
            return
        owned.pop(connection_id, None)
        if not owned:
            del self._user_connections[user_id]

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, connection_id: str) -> Connection | None:
        connection = self._connections.get(connection_id)
        return connection.model_copy() if connection else None

    def get_export(self, connection_id: str) -> ExportRecord | None:
        export = self._exports.get(connection_id)
        return export.model_copy() if export else None

    def has_export(self, connection_id: str) -> bool:
        return connection_id in self._exports

    def all(self) -> list[Connection]:
        return [c.model_copy() for c in list(self._connections.values())]

    def all_exports(self) -> list[ExportRecord]:
        return [e.model_copy() for e in list(self._exports.values())]

    def connection_ids_for_user(self, user_id: str) -> list[str]:
        return list(self._user_connections.get(user_id, {}))

    def all_for_user(self, user_id: str) -> list[Connection]:
        return [
            self._connections[cid].model_copy()
            for cid in self.connection_ids_for_user(user_id)
            if cid in self._connections
        ]

    def exports_for_user(self, user_id: str) -> list[ExportRecord]:
        return [
            self._exports[cid].model_copy()
            for cid in self.connection_ids_for_user(user_id)
            if cid in self._exports
        ]

    def user_ids(self) -> list[str]:
        return list(self._user_connections)

    def stats(self) -> dict:
        by_status = TallyCounter(c.status.value for c in list(self._connections.values()))
        return {
            "connections": len(self._connections),
            "exports": len(self._exports),
            "users": len(self._user_connections),
            "by_status": dict(by_status),
            "held_locks": len(self._locks),
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)
