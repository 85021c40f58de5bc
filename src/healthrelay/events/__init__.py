"""
Inbound webhook intake: deduplication, verification and dispatch.
"""

from healthrelay.events.dispatcher import DispatchResult, DispatchStatus, EventDispatcher
from healthrelay.events.store import EventStore
from healthrelay.events.verification import WebhookVerifier

__all__ = [
    "DispatchResult",
    "DispatchStatus",
    "EventDispatcher",
    "EventStore",
    "WebhookVerifier",
]
