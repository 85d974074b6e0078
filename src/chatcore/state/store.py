# src/chatcore/state/store.py
"""
State Store: generic key/value bag plus the chat-history and provider projections.

The three parts are persisted as separate documents on the persistence
bridge (``globalState``, ``chatHistoryState`` and ``providerState`` by
default) so each can be loaded and saved independently. Saving happens on a
periodic tick and only for documents that changed; a failed save is logged
and the document stays dirty so the next tick retries it. Mutating calls
never see persistence errors.

Example:
    store = StateStore(bus, bridge, settings.state)
    await store.initialize()
    await store.start()

    store.set("ui.theme", "dark")
    store.chat_history.set_active_conversation("conv_...")
    store.providers.track_usage("openai", tokens=120, cost=0.002)

    await store.destroy()
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import Any

from ..config.models import ChatHistoryConfig, ProviderRegistryConfig, StateStoreConfig
from ..events import EventBus, EventCallback, EventName, Unsubscribe
from ..persistence.base import BasePersistenceBridge
from ..scheduling import PeriodicScheduler, PeriodicTask
from .chat_history import ChatHistoryState
from .health import HealthProbe
from .providers import ProviderRegistry

logger = logging.getLogger(__name__)

_MISSING = object()


class StateStore:
    """Generic state bag composed with the chat-history projection and the provider registry."""

    def __init__(
        self,
        bus: EventBus,
        bridge: BasePersistenceBridge | None = None,
        config: StateStoreConfig | None = None,
        chat_history_config: ChatHistoryConfig | None = None,
        provider_config: ProviderRegistryConfig | None = None,
        scheduler: PeriodicScheduler | None = None,
        health_probe: HealthProbe | None = None,
    ) -> None:
        self.bus = bus
        self.bridge = bridge
        self.config = config or StateStoreConfig()
        self.chat_history = ChatHistoryState(bus, chat_history_config)
        self.providers = ProviderRegistry(bus, provider_config)
        self.health_probe = health_probe

        self._state: dict[str, Any] = {}
        self._dirty = False
        self._initialized = False
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or PeriodicScheduler()
        self._task_names: list[str] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Attach the projections to the bus and load the persisted documents."""
        if self._initialized:
            return
        self.chat_history.attach()
        self.providers.attach()
        await self.load()
        self._initialized = True
        logger.info("StateStore initialized")

    async def start(self) -> None:
        """Register the periodic tasks: auto-save, retention cleanup and, with a probe, health checks."""
        tasks = [
            PeriodicTask(
                name="state_retention_cleanup",
                callback=self.chat_history.run_retention_cleanup,
                interval=self.chat_history.config.cleanup_interval,
                description="Drop expired chat-history summaries",
            )
        ]
        if self.config.auto_save and self.bridge is not None:
            tasks.append(
                PeriodicTask(
                    name="state_auto_save",
                    callback=self.save,
                    interval=self.config.save_interval,
                    description="Persist dirty state documents",
                )
            )
        if self.health_probe is not None:
            probe = self.health_probe
            tasks.append(
                PeriodicTask(
                    name="provider_health_check",
                    callback=lambda: self.providers.check_health(probe),
                    interval=self.providers.config.health_check_interval,
                    description="Probe configured providers",
                )
            )
        for task in tasks:
            self.scheduler.register(task)
            self._task_names.append(task.name)
        if self._owns_scheduler:
            await self.scheduler.start()

    async def destroy(self) -> None:
        """Stop periodic tasks, save once, and detach from the bus."""
        for name in self._task_names:
            self.scheduler.unregister(name)
        self._task_names.clear()
        if self._owns_scheduler:
            await self.scheduler.stop()
        await self.save()
        self.chat_history.detach()
        self.providers.detach()
        self._initialized = False
        logger.info("StateStore destroyed")

    # ------------------------------------------------------------------
    # Generic bag
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._state:
            return default
        return copy.deepcopy(self._state[key])

    def has(self, key: str) -> bool:
        return key in self._state

    def get_all(self) -> dict[str, Any]:
        return copy.deepcopy(self._state)

    def set(self, key: str, value: Any) -> None:
        """
        Store a value and publish ``state-changed`` plus ``state-changed:<key>``.

        Both events carry ``key``, ``value`` and ``previous_value``.
        """
        previous = self._state.get(key)
        self._state[key] = copy.deepcopy(value)
        self._dirty = True
        payload = {"key": key, "value": copy.deepcopy(self._state[key]), "previous_value": previous}
        self.bus.publish(EventName.STATE_CHANGED, payload)
        self.bus.publish(f"{EventName.STATE_CHANGED.value}:{key}", payload)

    def update(self, key: str, partial: dict[str, Any]) -> None:
        """
        Shallow-merge ``partial`` into the mapping stored under ``key``.

        Raises:
            TypeError: If the stored value is not a mapping.
        """
        current = self._state.get(key, {})
        if not isinstance(current, dict):
            raise TypeError(f"Cannot merge into non-mapping state value at '{key}'")
        self.set(key, {**current, **partial})

    def remove(self, key: str) -> bool:
        previous = self._state.pop(key, _MISSING)
        if previous is _MISSING:
            return False
        self._dirty = True
        self.bus.publish(EventName.STATE_REMOVED, {"key": key, "previous_value": previous})
        return True

    def clear(self) -> None:
        count = len(self._state)
        self._state.clear()
        self._dirty = True
        self.bus.publish(EventName.STATE_CLEARED, {"cleared_count": count})

    def subscribe(self, key: str, callback: EventCallback, owner: str | None = None) -> Unsubscribe:
        """Listen for changes of one key only."""
        return self.bus.subscribe(f"{EventName.STATE_CHANGED.value}:{key}", callback, owner=owner)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _documents(self) -> list[tuple[str, Callable[[], bool], Callable[[], Any], Callable[[], None]]]:
        return [
            (self.config.state_key, lambda: self._dirty, lambda: copy.deepcopy(self._state), self._mark_state_clean),
            (
                self.config.chat_history_key,
                lambda: self.chat_history.dirty,
                self.chat_history.to_document,
                lambda: setattr(self.chat_history, "dirty", False),
            ),
            (
                self.config.provider_key,
                lambda: self.providers.dirty,
                self.providers.to_document,
                lambda: setattr(self.providers, "dirty", False),
            ),
        ]

    def _mark_state_clean(self) -> None:
        self._dirty = False

    @property
    def dirty_documents(self) -> list[str]:
        return [key for key, is_dirty, _, _ in self._documents() if is_dirty()]

    async def save(self, force: bool = False) -> list[str]:
        """
        Write dirty documents to the bridge.

        Failures are logged; the failed document stays dirty and is retried
        on the next call.

        Returns:
            Keys of the documents written.
        """
        if self.bridge is None or not self.config.persist_state:
            return []
        saved: list[str] = []
        for key, is_dirty, build, mark_clean in self._documents():
            if not (force or is_dirty()):
                continue
            try:
                await self.bridge.set(key, build())
            except Exception as e:
                logger.error(f"Failed to save state document '{key}', will retry: {e}")
                continue
            mark_clean()
            saved.append(key)
        if saved:
            logger.debug(f"State documents saved: {saved}")
            self.bus.publish(EventName.STATE_SAVED, {"keys": saved})
        return saved

    async def load(self) -> list[str]:
        """Read the three documents from the bridge; unreadable ones are logged and skipped."""
        if self.bridge is None or not self.config.persist_state:
            return []
        loaded: list[str] = []
        restorers: dict[str, Callable[[Any], None]] = {
            self.config.state_key: self._restore_state,
            self.config.chat_history_key: self.chat_history.restore,
            self.config.provider_key: self.providers.restore,
        }
        for key, restore in restorers.items():
            try:
                document = await self.bridge.get(key)
                if document is None:
                    continue
                restore(document)
            except Exception as e:
                logger.error(f"Failed to load state document '{key}': {e}")
                continue
            loaded.append(key)
        self.bus.publish(EventName.STATE_LOADED, {"keys": loaded})
        return loaded

    def _restore_state(self, document: Any) -> None:
        if not isinstance(document, dict):
            raise TypeError(f"State document must be a mapping, got {type(document).__name__}")
        self._state = copy.deepcopy(document)
        self._dirty = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "keys": len(self._state),
            "cached_conversations": self.chat_history.total_conversations,
            "active_conversation_id": self.chat_history.active_conversation_id,
            "providers": len(self.providers.list_providers()),
            "active_provider_id": self.providers.active_provider_id,
            "dirty_documents": self.dirty_documents,
            "scheduled_tasks": list(self._task_names),
        }


__all__ = ["StateStore"]
