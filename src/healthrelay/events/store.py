"""
Webhook Event Store

Idempotency ledger and bounded archive of inbound webhooks.

Seen ids are kept in insertion order with their first-seen time so that
expired ids can be dropped from the front; the ledger is also capped in
size. Both bounds exist because the ledger is process memory.
"""

from collections import OrderedDict, deque
from typing import Callable
import threading
import time

import structlog

from healthrelay.models.events import WebhookEvent

logger = structlog.get_logger(__name__)


class EventStore:
    """
    In-memory event ledger.

    Usage:
        store = EventStore(archive_limit=500)
        if store.record_if_new(body.get("id")):
            ...
        store.archive(event)
        store.recent(10)
    """

    def __init__(
        self,
        archive_limit: int = 500,
        seen_ttl_seconds: float = 7 * 24 * 60 * 60,
        max_seen_ids: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.archive_limit = archive_limit
        self.seen_ttl_seconds = seen_ttl_seconds
        self.max_seen_ids = max_seen_ids
        self._clock = clock

        self._lock = threading.Lock()
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._archive: deque[WebhookEvent] = deque(maxlen=archive_limit)
        self._duplicates = 0

    def record_if_new(self, event_id: str | None) -> bool:
        """
        Mark an event id as seen.

        Returns True on first observation and False afterwards. Events
        without an id cannot be deduplicated and are always new.
        """
        if not event_id:
            return True

        with self._lock:
            now = self._clock()
            self._expire(now)
            if event_id in self._seen:
                self._duplicates += 1
                return False
            self._seen[event_id] = now
            while len(self._seen) > self.max_seen_ids:
                self._seen.popitem(last=False)
            return True

    def _expire(self, now: float) -> None:
        cutoff = now - self.seen_ttl_seconds
        while self._seen:
            _, seen_at = next(iter(self._seen.items()))
            if seen_at > cutoff:
                break
            self._seen.popitem(last=False)

    def archive(self, event: WebhookEvent) -> None:
        """Append to the archive, evicting the oldest entry when full."""
        with self._lock:
            self._archive.append(event)

    def recent(self, n: int = 20) -> list[WebhookEvent]:
        """The ``n`` most recent archived events, newest first."""
        if n <= 0:
            return []
        with self._lock:
            events = list(self._archive)
        return list(reversed(events))[:n]

    def get(self, archive_id: str) -> WebhookEvent | None:
        with self._lock:
            for event in self._archive:
                if event.archive_id == archive_id:
                    return event
        return None

    def stats(self) -> dict:
        with self._lock:
            return {
                "archived_events": len(self._archive),
                "archive_limit": self.archive_limit,
                "seen_event_ids": len(self._seen),
                "duplicates_skipped": self._duplicates,
            }
