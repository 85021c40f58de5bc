"""
Metrics Collection

Features:
- Counters and Histograms with labels
- Prometheus-compatible text export
- Operation timing with slow-operation alerts
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from enum import Enum
from collections import defaultdict
import threading
import time
import json

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


# =============================================================================
# Metric Types
# =============================================================================

class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    HISTOGRAM = "histogram"


class MetricValue(BaseModel):
    """A metric data point."""
    name: str
    type: MetricType
    value: float
    labels: Dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def _labels_key(labels: Dict[str, str] = None) -> str:
    if not labels:
        return ""
    return json.dumps(labels, sort_keys=True)


# =============================================================================
# Counter
# =============================================================================

class Counter:
    """
    A monotonically increasing counter.

    Usage:
        events = Counter("relay_webhook_events_total", "Webhook events received")
        events.inc()
        events.inc(labels={"type": "patient.connection_success"})
    """

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._values: Dict[str, float] = defaultdict(float)
        self._lock = threading.Lock()

    def inc(self, value: float = 1.0, labels: Dict[str, str] = None):
        """Increment the counter."""
        key = _labels_key(labels)
        with self._lock:
            self._values[key] += value

    def get(self, labels: Dict[str, str] = None) -> float:
        """Get current counter value."""
        return self._values.get(_labels_key(labels), 0.0)

    def total(self) -> float:
        """Sum across every label set."""
        with self._lock:
            return sum(self._values.values())

    def collect(self) -> List[MetricValue]:
        """Collect all metric values."""
        with self._lock:
            items = list(self._values.items())
        return [
            MetricValue(
                name=self.name,
                type=MetricType.COUNTER,
                value=value,
                labels=json.loads(key) if key else {},
            )
            for key, value in items
        ]


# =============================================================================
# Histogram
# =============================================================================

class Histogram:
    """
    A metric that tracks value distributions.

    Usage:
        duration = Histogram("relay_operation_duration_seconds", buckets=[0.1, 1.0, 10.0])
        duration.observe(0.25, labels={"operation": "export_trigger"})
    """

    DEFAULT_BUCKETS = [0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]

    def __init__(
        self,
        name: str,
        description: str = "",
        buckets: List[float] = None,
    ):
        self.name = name
        self.description = description
        self.buckets = sorted(buckets or self.DEFAULT_BUCKETS)

        self._lock = threading.Lock()
        # label_key -> {bucket counts, sum, count, min, max}
        self._data: Dict[str, Dict] = defaultdict(lambda: {
            "buckets": {b: 0 for b in self.buckets},
            "sum": 0.0,
            "count": 0,
            "min": None,
            "max": None,
        })

    def observe(self, value: float, labels: Dict[str, str] = None):
        """Observe a value."""
        key = _labels_key(labels)
        with self._lock:
            data = self._data[key]
            data["sum"] += value
            data["count"] += 1
            data["min"] = value if data["min"] is None else min(data["min"], value)
            data["max"] = value if data["max"] is None else max(data["max"], value)
            for bucket in self.buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    def summary(self, labels: Dict[str, str] = None) -> dict:
        """Count, average, min and max for one label set."""
        data = self._data.get(_labels_key(labels))
        if not data or data["count"] == 0:
            return {"count": 0, "avg": 0.0, "min": 0.0, "max": 0.0}
        return {
            "count": data["count"],
            "avg": data["sum"] / data["count"],
            "min": data["min"],
            "max": data["max"],
        }

    def collect(self) -> List[MetricValue]:
        """Collect all metric values."""
        values = []
        with self._lock:
            items = [(key, dict(data, buckets=dict(data["buckets"]))) for key, data in self._data.items()]

        for key, data in items:
            labels = json.loads(key) if key else {}
            for bucket in self.buckets:
                values.append(MetricValue(
                    name=f"{self.name}_bucket",
                    type=MetricType.HISTOGRAM,
                    value=data["buckets"][bucket],
                    labels={**labels, "le": str(bucket)},
                ))
            values.append(MetricValue(
                name=f"{self.name}_bucket",
                type=MetricType.HISTOGRAM,
                value=data["count"],
                labels={**labels, "le": "+Inf"},
            ))
            values.append(MetricValue(
                name=f"{self.name}_sum",
                type=MetricType.HISTOGRAM,
                value=data["sum"],
                labels=labels,
            ))
            values.append(MetricValue(
                name=f"{self.name}_count",
                type=MetricType.HISTOGRAM,
                value=data["count"],
                labels=labels,
            ))
        return values


# =============================================================================
# Operation Timer
# =============================================================================

class OperationTimer:
    """
    Times named operations and warns when one exceeds the alert threshold.

    Usage:
        timer = OperationTimer(collector.operation_duration, alert_threshold_ms=30000)
        with timer.time("export_trigger", connection_id="c1"):
            ...
    """

    def __init__(self, histogram: Histogram, alert_threshold_ms: float = 30_000.0):
        self.histogram = histogram
        self.alert_threshold_ms = alert_threshold_ms

    def time(self, operation: str, **context: Any) -> "_TimedOperation":
        return _TimedOperation(self, operation, context)

    def record(self, operation: str, duration_ms: float, **context: Any) -> None:
        self.histogram.observe(duration_ms / 1000.0, labels={"operation": operation})
        if duration_ms > self.alert_threshold_ms:
            logger.warning(
                "Slow operation",
                operation=operation,
                duration_ms=round(duration_ms, 1),
                threshold_ms=self.alert_threshold_ms,
                **context,
            )

    def summary(self, operation: str) -> dict:
        stats = self.histogram.summary(labels={"operation": operation})
        return {
            "count": stats["count"],
            "avg_ms": round(stats["avg"] * 1000, 1),
            "min_ms": round(stats["min"] * 1000, 1),
            "max_ms": round(stats["max"] * 1000, 1),
        }


class _TimedOperation:
    def __init__(self, timer: OperationTimer, operation: str, context: dict):
        self._timer = timer
        self._operation = operation
        self._context = context
        self._start = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self._start) * 1000
        context = dict(self._context)
        if exc_val is not None:
            context["error"] = str(exc_val)
        self._timer.record(self._operation, duration_ms, **context)
        return False


# =============================================================================
# Metrics Collector
# =============================================================================

class MetricsCollector:
    """
    Central metrics collector for the relay.

    Manages all metrics and provides Prometheus-compatible output.
    """

    def __init__(self, slow_operation_ms: float = 30_000.0):
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()

        self.webhook_events = self.counter(
            "relay_webhook_events_total",
            "Webhook events by type and outcome",
        )
        self.export_triggers = self.counter(
            "relay_export_triggers_total",
            "Export trigger attempts by result",
        )
        self.records_ingested = self.counter(
            "relay_records_ingested_total",
            "Normalized records committed",
        )
        self.malformed_lines = self.counter(
            "relay_malformed_lines_total",
            "Export lines skipped because they did not parse",
        )
        self.sink_pushes = self.counter(
            "relay_sink_pushes_total",
            "Downstream sink pushes by outcome",
        )
        self.export_timeouts = self.counter(
            "relay_export_timeouts_total",
            "Connections whose export deadline elapsed",
        )
        self.operation_duration = self.histogram(
            "relay_operation_duration_seconds",
            "Duration of trigger and ingest operations",
        )
        self.timer = OperationTimer(self.operation_duration, alert_threshold_ms=slow_operation_ms)

    def counter(self, name: str, description: str = "") -> Counter:
        """Create or get a counter."""
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = Counter(name, description)
            return self._metrics[name]

    def histogram(
        self,
        name: str,
        description: str = "",
        buckets: List[float] = None,
    ) -> Histogram:
        """Create or get a histogram."""
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = Histogram(name, description, buckets)
            return self._metrics[name]

    def collect_all(self) -> List[MetricValue]:
        """Collect all metrics."""
        values = []
        for metric in list(self._metrics.values()):
            values.extend(metric.collect())
        return values

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus format."""
        lines = []

        for name, metric in list(self._metrics.items()):
            lines.append(f"# HELP {name} {metric.description}")
            if isinstance(metric, Counter):
                lines.append(f"# TYPE {name} counter")
            elif isinstance(metric, Histogram):
                lines.append(f"# TYPE {name} histogram")

            for value in metric.collect():
                if value.labels:
                    labels_str = ",".join(f'{k}="{v}"' for k, v in value.labels.items())
                    lines.append(f"{value.name}{{{labels_str}}} {value.value}")
                else:
                    lines.append(f"{value.name} {value.value}")

        return "\n".join(lines)

    def get_summary(self) -> dict:
        """Get a summary of key metrics."""
        return {
            "webhook_events": self.webhook_events.total(),
            "export_triggers": self.export_triggers.total(),
            "records_ingested": self.records_ingested.total(),
            "malformed_lines": self.malformed_lines.total(),
            "sink_pushes": self.sink_pushes.total(),
            "export_timeouts": self.export_timeouts.total(),
            "operations": {
                "export_trigger": self.timer.summary("export_trigger"),
                "process_export": self.timer.summary("process_export"),
            },
        }
