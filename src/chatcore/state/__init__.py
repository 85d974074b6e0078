# src/chatcore/state/__init__.py
"""
State management for ChatCore.

The StateStore composes a generic key/value bag, the chat-history projection
and the provider registry, and persists each as its own document.
"""

from .chat_history import ChatHistoryState
from .health import HealthProbe, probe_provider
from .providers import AUTO_SWITCH_REASON, ProviderRegistry
from .store import StateStore

__all__ = [
    "AUTO_SWITCH_REASON",
    "ChatHistoryState",
    "HealthProbe",
    "ProviderRegistry",
    "StateStore",
    "probe_provider",
]
