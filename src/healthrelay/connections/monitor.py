"""
Export Timeout Monitor

Diagnoses silent export failures: when neither an export success nor an
export failure webhook arrives within the deadline, the connection's
monitoring entry is marked timed out, a diagnostic is recorded and a
read-only health probe runs. Connection and export state are never
changed here because the terminal webhook may still arrive late.

Deadlines fire and are cancelled under the registry's per-connection
lock, so a terminal webhook racing a firing deadline is handled cleanly.
"""

from collections import deque
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional
import asyncio

import structlog
from pydantic import BaseModel, Field

from healthrelay.connections.registry import ConnectionRegistry
from healthrelay.models.connections import utcnow
from healthrelay.observability.metrics import MetricsCollector

logger = structlog.get_logger(__name__)


# =============================================================================
# Known Provider Issues
# =============================================================================

PLATFORM_NOTES: dict[str, list[str]] = {
    "epic": [
        "Epic systems can be slow, especially large health systems",
        "Some Epic instances have export delays of 30+ minutes",
        "Epic may silently fail if patient has no records",
    ],
}

PROBLEM_PORTALS: dict[str, str] = {
    "20cad42b-0e5d-44a6-ba0b-fc20a6a24fef": "Denver Health - Known for slow/unreliable exports",
}


def known_issues(context: dict[str, Any]) -> list[str]:
    """Annotations for platforms and portals with a history of slow exports."""
    issues = list(PLATFORM_NOTES.get((context.get("platform_type") or "").lower(), []))
    portal = context.get("portal_id")
    if portal and portal in PROBLEM_PORTALS:
        issues.append(PROBLEM_PORTALS[portal])
    return issues


# =============================================================================
# Models
# =============================================================================

class MonitoringStatus(str, Enum):
    MONITORING = "monitoring"
    TIMED_OUT = "timed_out"
    COMPLETED = "completed"


class MonitorEntry(BaseModel):
    """One connection's export deadline."""
    connection_id: str
    status: MonitoringStatus = MonitoringStatus.MONITORING
    started_at: datetime
    deadline: datetime
    timeout_minutes: float
    context: dict[str, Any] = Field(default_factory=dict)
    timed_out_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TimeoutDiagnostic(BaseModel):
    """Recorded when a deadline elapses without a terminal webhook."""
    connection_id: str
    detected_at: datetime
    timeout_minutes: float
    context: dict[str, Any] = Field(default_factory=dict)
    known_issues: list[str] = Field(default_factory=list)


class HealthCheck(BaseModel):
    """Result of the read-only probe run after a timeout."""
    connection_id: str
    checked_at: datetime
    status: str = "timeout_detected"
    connection_status: Optional[str] = None
    has_export: bool = False


# =============================================================================
# Monitor
# =============================================================================

class TimeoutMonitor:
    """
    Per-connection export deadlines.

    Usage:
        monitor = TimeoutMonitor(registry)
        await monitor.start("c1", {"platform_type": "epic"})
        await monitor.stop("c1")

    With ``use_timers=False`` no asyncio timers are scheduled and deadlines
    only fire through ``sweep``.

    Only the newest ``finished_limit`` completed or timed-out entries are
    kept; active deadlines are never pruned.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        export_timeout_minutes: float = 30.0,
        slow_platform_timeout_minutes: float = 60.0,
        slow_platforms: list[str] | tuple[str, ...] = ("epic",),
        diagnostics_limit: int = 200,
        finished_limit: int = 1000,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = utcnow,
        use_timers: bool = True,
    ):
        self.registry = registry
        self.export_timeout_minutes = export_timeout_minutes
        self.slow_platform_timeout_minutes = slow_platform_timeout_minutes
        self.slow_platforms = {p.lower() for p in slow_platforms}
        self.metrics = metrics
        self.finished_limit = finished_limit
        self.use_timers = use_timers
        self._clock = clock

        self._entries: dict[str, MonitorEntry] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._diagnostics: deque[TimeoutDiagnostic] = deque(maxlen=diagnostics_limit)
        self._health_checks: dict[str, HealthCheck] = {}

    def timeout_for(self, platform_type: str | None) -> float:
        """Deadline length in minutes for a platform."""
        if platform_type and platform_type.lower() in self.slow_platforms:
            return self.slow_platform_timeout_minutes
        return self.export_timeout_minutes

    async def start(self, connection_id: str, context: dict[str, Any] | None = None) -> MonitorEntry:
        """Start (or restart) the export deadline for a connection."""
        context = dict(context or {})
        async with self.registry.lock(connection_id):
            self._cancel_timer(connection_id)

            now = self._clock()
            minutes = self.timeout_for(context.get("platform_type"))
            entry = MonitorEntry(
                connection_id=connection_id,
                started_at=now,
                deadline=now + timedelta(minutes=minutes),
                timeout_minutes=minutes,
                context=context,
            )
            # re-insert so finished entries are pruned oldest first
            self._entries.pop(connection_id, None)
            self._entries[connection_id] = entry

            if self.use_timers:
                self._timers[connection_id] = asyncio.create_task(
                    self._wait(connection_id, entry),
                    name=f"export-deadline-{connection_id}",
                )

            logger.info(
                "Export timeout monitoring started",
                connection_id=connection_id,
                platform_type=context.get("platform_type"),
                timeout_minutes=minutes,
            )
            return entry.model_copy()

    async def stop(self, connection_id: str) -> bool:
        """
        Cancel the deadline. Returns False when there was nothing to stop:
        never started, already stopped, or already fired.
        """
        async with self.registry.lock(connection_id):
            entry = self._entries.get(connection_id)
            if entry is None or entry.status != MonitoringStatus.MONITORING:
                return False

            self._cancel_timer(connection_id)
            entry.status = MonitoringStatus.COMPLETED
            entry.completed_at = self._clock()
            self._prune()
            logger.info("Export monitoring stopped", connection_id=connection_id)
            return True

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Fire every overdue deadline. Returns the connection ids that fired."""
        now = now or self._clock()
        overdue = [
            (connection_id, entry)
            for connection_id, entry in list(self._entries.items())
            if entry.status == MonitoringStatus.MONITORING and entry.deadline <= now
        ]

        fired = []
        for connection_id, entry in overdue:
            if await self._fire(connection_id, entry, now):
                fired.append(connection_id)
        return fired

    async def _wait(self, connection_id: str, entry: MonitorEntry) -> None:
        delay = (entry.deadline - self._clock()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        await self._fire(connection_id, entry, self._clock())

    async def _fire(self, connection_id: str, entry: MonitorEntry, now: datetime) -> bool:
        async with self.registry.lock(connection_id):
            # A stop or restart may have won the lock first
            if self._entries.get(connection_id) is not entry or entry.status != MonitoringStatus.MONITORING:
                return False

            timer = self._timers.pop(connection_id, None)
            if timer is not None and timer is not asyncio.current_task():
                timer.cancel()

            entry.status = MonitoringStatus.TIMED_OUT
            entry.timed_out_at = now

            issues = known_issues(entry.context)
            diagnostic = TimeoutDiagnostic(
                connection_id=connection_id,
                detected_at=now,
                timeout_minutes=entry.timeout_minutes,
                context=dict(entry.context),
                known_issues=issues,
            )
            self._diagnostics.append(diagnostic)

            logger.warning(
                "Export timeout detected",
                connection_id=connection_id,
                platform_type=entry.context.get("platform_type"),
                endpoint_id=entry.context.get("endpoint_id"),
                brand_id=entry.context.get("brand_id"),
                portal_id=entry.context.get("portal_id"),
                user_id=entry.context.get("user_id") or "MISSING",
                connected_at=entry.context.get("connected_at"),
                timeout_minutes=entry.timeout_minutes,
                known_issues=issues,
            )
            if self.metrics:
                self.metrics.export_timeouts.inc(
                    labels={"platform": entry.context.get("platform_type") or "unknown"}
                )

            self._probe(connection_id, now)
            self._prune()
            return True

    def _probe(self, connection_id: str, now: datetime) -> None:
        connection = self.registry.get(connection_id)
        check = HealthCheck(
            connection_id=connection_id,
            checked_at=now,
            connection_status=connection.status.value if connection else None,
            has_export=self.registry.has_export(connection_id),
        )
        self._health_checks[connection_id] = check
        logger.info(
            "Connection health probed",
            connection_id=connection_id,
            connection_status=check.connection_status,
            has_export=check.has_export,
        )

    def _prune(self) -> None:
        finished = [
            connection_id
            for connection_id, entry in self._entries.items()
            if entry.status != MonitoringStatus.MONITORING
        ]
        for connection_id in finished[: max(0, len(finished) - self.finished_limit)]:
            del self._entries[connection_id]
            self._health_checks.pop(connection_id, None)

    def _cancel_timer(self, connection_id: str) -> None:
        timer = self._timers.pop(connection_id, None)
        if timer is not None and not timer.done():
            timer.cancel()

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def entry(self, connection_id: str) -> MonitorEntry | None:
        entry = self._entries.get(connection_id)
        return entry.model_copy() if entry else None

    def health_check(self, connection_id: str) -> HealthCheck | None:
        return self._health_checks.get(connection_id)

    def diagnostics(self, limit: int | None = None) -> list[TimeoutDiagnostic]:
        """Recorded timeout diagnostics, newest first."""
        items = list(reversed(self._diagnostics))
        return items[:limit] if limit is not None else items

    def report(self) -> dict:
        buckets: dict[MonitoringStatus, list[dict]] = {status: [] for status in MonitoringStatus}
        for entry in list(self._entries.values()):
            buckets[entry.status].append(entry.model_dump(mode="json"))

        return {
            "timestamp": self._clock().isoformat(),
            "active_monitoring": buckets[MonitoringStatus.MONITORING],
            "timed_out_connections": buckets[MonitoringStatus.TIMED_OUT],
            "completed_connections": buckets[MonitoringStatus.COMPLETED],
            "total_connections": len(self._entries),
        }

    def stats(self) -> dict:
        entries = list(self._entries.values())
        return {
            "total_connections": len(entries),
            "active_monitoring": sum(1 for e in entries if e.status == MonitoringStatus.MONITORING),
            "timed_out": sum(1 for e in entries if e.status == MonitoringStatus.TIMED_OUT),
            "completed": sum(1 for e in entries if e.status == MonitoringStatus.COMPLETED),
            "health_checks": len(self._health_checks),
            "diagnostics": len(self._diagnostics),
        }

    async def close(self) -> None:
        """Cancel all pending timers."""
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
