# src/chatcore/events/__init__.py
"""
Event coordination for ChatCore.

Exports the EventBus, its namespace view, and the closed catalogue of event
names with their payload schemas.
"""

from .bus import EventBus, EventCallback, EventNamespace, Subscription, Unsubscribe
from .catalog import PAYLOAD_SCHEMAS, EventName, event_name, is_known_event, validate_payload

__all__ = [
    "EventBus",
    "EventCallback",
    "EventName",
    "EventNamespace",
    "PAYLOAD_SCHEMAS",
    "Subscription",
    "Unsubscribe",
    "event_name",
    "is_known_event",
    "validate_payload",
]
