"""
Record Store

Per-user collections of normalized records, the source of truth behind
the pull API. Aggregate reads go through the record cache; every append
or clear invalidates it.
"""

from collections import Counter as TallyCounter, deque
from typing import Iterable
import threading

import structlog

from healthrelay.ingestion.cache import RecordCache
from healthrelay.models.records import IngestionBatch, NormalizedRecord

logger = structlog.get_logger(__name__)

ALL_RECORDS_KEY = "records:all"
PREVIEW_CHARS = 2048


def user_records_key(user_id: str) -> str:
    return f"records:user:{user_id}"


class RecordStore:
    """
    In-memory record collections with an ingestion history.

    Usage:
        store = RecordStore(RecordCache(ttl_seconds=300))
        store.append("u1", "c1", records, raw_preview=text[:2048])
        store.for_user("u1")
    """

    def __init__(self, cache: RecordCache | None = None, history_limit: int = 100):
        self.cache = cache or RecordCache()
        self.history_limit = history_limit
        self._records: dict[str, list[NormalizedRecord]] = {}
        self._history: deque[IngestionBatch] = deque(maxlen=history_limit)
        self._lock = threading.Lock()

    def append(
        self,
        user_id: str,
        connection_id: str,
        records: Iterable[NormalizedRecord],
        raw_preview: str | None = None,
    ) -> IngestionBatch:
        """Append one committed ingestion and record its snapshot."""
        records = list(records)
        types = TallyCounter(r.resource_type or "Unknown" for r in records)
        batch = IngestionBatch(
            user_id=user_id,
            connection_id=connection_id,
            record_count=len(records),
            resource_types=dict(types),
            raw_payload_preview=raw_preview[:PREVIEW_CHARS] if raw_preview else None,
        )

        with self._lock:
            self._records.setdefault(user_id, []).extend(records)
            self._history.append(batch)
            total = len(self._records[user_id])

        self._invalidate(user_id)
        logger.info(
            "Records appended",
            user_id=user_id,
            connection_id=connection_id,
            appended=len(records),
            user_total=total,
        )
        return batch

    def all_records(self) -> list[NormalizedRecord]:
        cached = self.cache.get(ALL_RECORDS_KEY)
        if cached is not None:
            return list(cached)
        with self._lock:
            records = [r for user_records in self._records.values() for r in user_records]
        self.cache.set(ALL_RECORDS_KEY, records)
        return list(records)

    def for_user(self, user_id: str) -> list[NormalizedRecord]:
        key = user_records_key(user_id)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)
        with self._lock:
            records = list(self._records.get(user_id, []))
        self.cache.set(key, records)
        return list(records)

    def history(self, user_id: str | None = None, limit: int | None = None) -> list[IngestionBatch]:
        """Ingestion snapshots, newest first."""
        with self._lock:
            batches = [b for b in reversed(self._history) if user_id is None or b.user_id == user_id]
        return batches[:limit] if limit is not None else batches

    def clear(self, user_id: str | None = None) -> int:
        """
        Drop records (and matching history) for one user, or for everyone.
        Returns the number of records removed.
        """
        with self._lock:
            if user_id is None:
                removed = sum(len(v) for v in self._records.values())
                self._records.clear()
                self._history.clear()
            else:
                removed = len(self._records.pop(user_id, []))
                kept = [b for b in self._history if b.user_id != user_id]
                self._history = deque(kept, maxlen=self.history_limit)

        if user_id is None:
            self.cache.clear()
        else:
            self._invalidate(user_id)
        logger.info("Records cleared", user_id=user_id or "all", removed=removed)
        return removed

    def _invalidate(self, user_id: str) -> None:
        self.cache.invalidate(ALL_RECORDS_KEY)
        self.cache.invalidate(user_records_key(user_id))

    def resource_type_counts(self, user_id: str | None = None) -> dict[str, int]:
        records = self.for_user(user_id) if user_id else self.all_records()
        return dict(TallyCounter(r.resource_type or "Unknown" for r in records))

    def stats(self) -> dict:
        with self._lock:
            users = len(self._records)
            total = sum(len(v) for v in self._records.values())
            batches = len(self._history)
        return {
            "users": users,
            "records": total,
            "resource_types": self.resource_type_counts(),
            "history_batches": batches,
            "cache": self.cache.stats(),
        }
