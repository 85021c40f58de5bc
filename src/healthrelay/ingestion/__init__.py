"""
Bulk export transform and the local record store.
"""

from healthrelay.ingestion.cache import RecordCache
from healthrelay.ingestion.pipeline import FHIRTransformPipeline
from healthrelay.ingestion.store import RecordStore

__all__ = ["FHIRTransformPipeline", "RecordCache", "RecordStore"]
