# src/chatcore/config/__init__.py
"""
Configuration module for the ChatCore library.

Settings are pydantic models composed into :class:`ChatCoreSettings`, a
``pydantic-settings`` class reading, in order of precedence, explicit
overrides, ``CHATCORE_`` environment variables, a ``.env`` file and an
optional TOML file.

Environment variables:
    - Prefix: CHATCORE_
    - Nested keys use double underscores: CHATCORE_PROVIDERS__AUTO_SWITCH=true
"""

from .models import (
    AnalyticsConfig,
    ChatHistoryConfig,
    ConversationConfig,
    EventBusConfig,
    LoggingConfig,
    ProviderRegistryConfig,
    StateStoreConfig,
    SyncConfig,
)
from .settings import ChatCoreSettings, load_settings

__all__ = [
    "AnalyticsConfig",
    "ChatHistoryConfig",
    "ChatCoreSettings",
    "ConversationConfig",
    "EventBusConfig",
    "LoggingConfig",
    "ProviderRegistryConfig",
    "StateStoreConfig",
    "SyncConfig",
    "load_settings",
]
