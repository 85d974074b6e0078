# src/chatcore/__init__.py
"""
ChatCore - session and conversation state management for chat applications.

An in-process store for conversations and sessions that layers caching,
search indexing, eviction, provider-switch and cost accounting, and a
publish/subscribe event bus over an unreliable asynchronous persistence
service.
"""

from importlib.metadata import PackageNotFoundError, version

from .analytics import SessionAnalytics
from .api import ChatCore
from .config import ChatCoreSettings, load_settings
from .conversations import ConversationManager
from .events import EventBus, EventName
from .exceptions import (
    ChatCoreError,
    ConfigError,
    ConversationNotFoundError,
    EventTimeoutError,
    ImportFormatError,
    InvalidMessageError,
    NoActiveConversationError,
    NotFoundError,
    PersistenceError,
    PolicyViolation,
    ProviderNotConfiguredError,
    ProviderNotFoundError,
    SessionNotFoundError,
    TransportError,
)
from .models import (
    Conversation,
    ConversationSummary,
    EventRecord,
    Message,
    ProviderRecord,
    Role,
    SessionMetadata,
)
from .persistence import BasePersistenceBridge, InMemoryPersistenceBridge, JsonPersistenceBridge
from .state import ChatHistoryState, ProviderRegistry, StateStore
from .sync import HistorySyncManager, SyncResult, SyncStatus

try:
    __version__ = version("chatcore")
except PackageNotFoundError:
    __version__ = "0.0.0"


__all__ = [
    # Facade
    "ChatCore",
    "ChatCoreSettings",
    "load_settings",
    # Components
    "EventBus",
    "EventName",
    "StateStore",
    "ChatHistoryState",
    "ProviderRegistry",
    "ConversationManager",
    "HistorySyncManager",
    "SyncResult",
    "SyncStatus",
    "SessionAnalytics",
    # Persistence
    "BasePersistenceBridge",
    "InMemoryPersistenceBridge",
    "JsonPersistenceBridge",
    # Models
    "Conversation",
    "ConversationSummary",
    "EventRecord",
    "Message",
    "ProviderRecord",
    "Role",
    "SessionMetadata",
    # Exceptions
    "ChatCoreError",
    "ConfigError",
    "ConversationNotFoundError",
    "EventTimeoutError",
    "ImportFormatError",
    "InvalidMessageError",
    "NoActiveConversationError",
    "NotFoundError",
    "PersistenceError",
    "PolicyViolation",
    "ProviderNotConfiguredError",
    "ProviderNotFoundError",
    "SessionNotFoundError",
    "TransportError",
    # Version
    "__version__",
]
