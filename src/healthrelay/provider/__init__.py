"""
Provider API access: export requests and bulk downloads.
"""

from healthrelay.provider.client import ExportTaskResponse, ProviderClient
from healthrelay.provider.downloader import ExportDownloader
from healthrelay.provider.trigger import ExportTrigger, TriggerResult, TriggerStatus

__all__ = [
    "ExportDownloader",
    "ExportTaskResponse",
    "ExportTrigger",
    "ProviderClient",
    "TriggerResult",
    "TriggerStatus",
]
