"""
Logging and metrics.
"""

from healthrelay.observability.logging import configure_logging
from healthrelay.observability.metrics import MetricsCollector

__all__ = ["MetricsCollector", "configure_logging"]
