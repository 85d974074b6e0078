# src/chatcore/api.py
"""
Core API facade for the ChatCore library.

:class:`ChatCore` is the composition root: it builds one event bus and one
periodic scheduler and hands them to every component, so all components
coordinate through the same bus and share one background loop.

Example:
    async with await ChatCore.create(bridge=JsonPersistenceBridge("~/.local/share/chatcore")) as core:
        result = await core.sync.create_conversation("Release planning")
        await core.sync.add_message({"role": "user", "content": "Where are we?"})
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .analytics import SessionAnalytics
from .config import ChatCoreSettings, load_settings
from .conversations import ConversationManager, ConversationSummarizer
from .events import EventBus
from .exceptions import NotInitializedError
from .logging_config import configure_logging
from .persistence import BasePersistenceBridge
from .scheduling import PeriodicScheduler
from .state import HealthProbe, StateStore
from .sync import HistorySyncManager

logger = logging.getLogger(__name__)


class ChatCore:
    """
    Wires the Event Bus, State Store, Conversation Manager, History Sync
    Manager and Session Analytics together. Use :meth:`create`.

    Without a persistence bridge everything runs in local-only mode and
    :attr:`sync` is None.
    """

    bus: EventBus
    scheduler: PeriodicScheduler
    store: StateStore
    conversations: ConversationManager
    sync: HistorySyncManager | None
    analytics: SessionAnalytics

    def __init__(
        self,
        settings: ChatCoreSettings,
        bridge: BasePersistenceBridge | None = None,
        summarizer: ConversationSummarizer | None = None,
        health_probe: HealthProbe | None = None,
    ) -> None:
        """Private constructor. Use ``ChatCore.create()`` for initialization."""
        self.settings = settings
        self.bridge = bridge
        self.bus = EventBus(settings.events)
        self.scheduler = PeriodicScheduler()
        self.store = StateStore(
            self.bus,
            bridge=bridge,
            config=settings.state,
            chat_history_config=settings.chat_history,
            provider_config=settings.providers,
            scheduler=self.scheduler,
            health_probe=health_probe,
        )
        self.conversations = ConversationManager(
            self.bus,
            config=settings.conversations,
            bridge=bridge,
            summarizer=summarizer,
            scheduler=self.scheduler,
        )
        self.sync = (
            HistorySyncManager(self.bus, self.conversations, bridge, settings.sync, scheduler=self.scheduler)
            if bridge is not None
            else None
        )
        self.analytics = SessionAnalytics(self.bus, settings.analytics, store=self.store, scheduler=self.scheduler)
        self._initialized = False

    @classmethod
    async def create(
        cls,
        settings: ChatCoreSettings | None = None,
        bridge: BasePersistenceBridge | None = None,
        summarizer: ConversationSummarizer | None = None,
        health_probe: HealthProbe | None = None,
        config_file: str | Path | None = None,
        overrides: dict[str, Any] | None = None,
        setup_logging: bool = False,
    ) -> ChatCore:
        """
        Asynchronously create and initialize a ChatCore instance.

        Args:
            settings: Ready settings; built with :func:`load_settings` from
                ``config_file`` and ``overrides`` when omitted.
            bridge: Persistence bridge; None runs in local-only mode.
            summarizer: Collaborator producing compaction summaries.
            health_probe: Provider health probe used by the periodic health check.
            config_file: Optional TOML settings file.
            overrides: Section dictionaries overriding every other settings source.
            setup_logging: Configure console/file logging from ``settings.logging``.

        Raises:
            ConfigError: If the settings are invalid.
        """
        if settings is None:
            settings = load_settings(config_file, overrides)
        if setup_logging:
            configure_logging("chatcore", settings.logging)
        instance = cls(settings, bridge=bridge, summarizer=summarizer, health_probe=health_probe)
        await instance.initialize()
        return instance

    async def initialize(self) -> None:
        if self._initialized:
            return
        logger.info("Initializing ChatCore components...")
        self.bus.initialize()
        if self.bridge is not None:
            await self.bridge.initialize()
        await self.store.initialize()
        await self.conversations.initialize()
        if self.sync is not None:
            await self.sync.initialize()
        await self.analytics.initialize()
        await self.store.start()
        await self.scheduler.start()
        self._initialized = True
        logger.info(f"ChatCore ready ({'persistent' if self.bridge else 'local-only'} mode)")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("ChatCore")

    def get_status(self) -> dict[str, Any]:
        """Aggregate status of every component."""
        self._require_initialized()
        return {
            "bus": self.bus.get_subscription_stats(),
            "scheduler": self.scheduler.get_status(),
            "state": self.store.get_stats(),
            "conversations": len(self.conversations.list_sessions()),
            "current_conversation_id": self.conversations.get_current_conversation_id(),
            "sync": self.sync.get_status() if self.sync is not None else None,
            "analytics": self.analytics.get_status(),
        }

    async def close(self) -> None:
        """Stop periodic work, flush state to the bridge and release every subscription."""
        if not self._initialized:
            return
        logger.info("Closing ChatCore resources...")
        await self.scheduler.stop()
        await self.analytics.destroy()
        if self.sync is not None:
            await self.sync.destroy()
        await self.conversations.destroy()
        await self.store.destroy()
        await self.bus.drain()
        if self.bridge is not None:
            await self.bridge.close()
        self.bus.destroy()
        self._initialized = False
        logger.info("ChatCore resources cleanup complete.")

    async def __aenter__(self) -> ChatCore:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = ["ChatCore"]
