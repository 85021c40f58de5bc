"""
Downstream delivery of ingested records.
"""

from healthrelay.config import SinkSettings
from healthrelay.sink.base import NullSink, PushResult, Sink, SinkBatch
from healthrelay.sink.http import HttpIngestSink


def build_sink(settings: SinkSettings, source: str = "fasten-connect") -> Sink:
    """HTTP sink when an ingest URL is configured, otherwise the null sink."""
    if settings.ingest_url:
        return HttpIngestSink(settings, source=source)
    return NullSink()


__all__ = [
    "HttpIngestSink",
    "NullSink",
    "PushResult",
    "Sink",
    "SinkBatch",
    "build_sink",
]
