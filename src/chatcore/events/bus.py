# src/chatcore/events/bus.py
"""
Event Bus for cross-component coordination.

One EventBus instance is created at startup and handed to every component
that publishes or consumes events. Publishing is synchronous: subscribers of
an event name run in subscription order before ``publish`` returns, and a
subscriber that raises is logged without affecting its siblings. Subscribers
may also be coroutine functions; their coroutines are scheduled as tasks on
the running loop and can be awaited with :meth:`EventBus.drain`.

Features:
    - Bounded event history (replay/debugging only, never authoritative)
    - Generic ``event-published`` notification for global observers
    - Per-owner bookkeeping so an owner's subscriptions can be removed at once
    - ``wait_for`` with a timeout that always deregisters its listener
    - Request/response helper with correlation ids
    - Namespaces that prefix event names

Example:
    bus = EventBus()
    bus.initialize()

    unsubscribe = bus.subscribe("message-added", on_message, owner="ui")
    bus.publish("message-added", {"conversation_id": "conv_1", "message": {...}})

    record = await bus.wait_for("conversation-created", timeout=2.0)

    bus.unsubscribe_owner("ui")
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from ..config.models import EventBusConfig
from ..exceptions import EventTimeoutError
from ..models import EventRecord
from .catalog import EventName, event_name, is_known_event, validate_payload

logger = logging.getLogger(__name__)

EventCallback = Callable[[EventRecord], Any]
Unsubscribe = Callable[[], None]

_subscription_ids = itertools.count(1)


@dataclass(eq=False)
class Subscription:
    """A single registration of a callback for one event name."""

    name: str
    callback: EventCallback
    owner: str | None = None
    once: bool = False
    id: int = 0

    def __post_init__(self) -> None:
        if not self.id:
            self.id = next(_subscription_ids)


class EventBus:
    """
    Publish/subscribe hub with bounded history and owner bookkeeping.

    The bus has two states, initialized and destroyed. Publishing before
    :meth:`initialize` (or after :meth:`destroy`) is logged and ignored.
    """

    def __init__(self, config: EventBusConfig | None = None) -> None:
        self.config = config or EventBusConfig()
        self._listeners: dict[str, list[Subscription]] = {}
        self._owners: dict[str, set[str]] = {}
        self._history: deque[EventRecord] = deque(maxlen=self.config.max_history)
        self._tasks: set[asyncio.Task] = set()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        logger.info("EventBus initialized")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def destroy(self) -> None:
        """Remove every registration, clear history and mark the bus uninitialized."""
        self._listeners.clear()
        self._owners.clear()
        self._history.clear()
        self._initialized = False
        logger.info("EventBus destroyed")

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(self, name: str | EventName, payload: dict[str, Any] | None = None) -> EventRecord | None:
        """
        Publish an event.

        Wraps the payload in an EventRecord, appends it to history, then
        dispatches it to the subscribers of ``name`` and to the subscribers
        of ``event-published``.

        Args:
            name: Event name (an EventName member or any string).
            payload: Event data; copied shallowly into the record.

        Returns:
            The published record, or None if the bus is not initialized.

        Raises:
            EventPayloadError: In validation mode, for a payload that does
                not match the schema of its event kind.
        """
        name = event_name(name)
        if not self._initialized:
            logger.warning(f"EventBus not initialized, dropping event '{name}'")
            return None

        data = dict(payload or {})
        if self.config.validate_payloads:
            validate_payload(name, data)
        elif not is_known_event(name):
            logger.debug(f"Publishing event outside the catalogue: '{name}'")

        record = EventRecord(name=name, payload=data)
        self._history.append(record)

        self._dispatch(name, record)
        if name != EventName.EVENT_PUBLISHED.value:
            self._dispatch(EventName.EVENT_PUBLISHED.value, record)
        return record

    def _dispatch(self, name: str, record: EventRecord) -> None:
        # snapshot: callbacks may subscribe or unsubscribe while we iterate
        for subscription in list(self._listeners.get(name, ())):
            if subscription.once:
                self._remove(subscription)
            try:
                result = subscription.callback(record)
                if inspect.isawaitable(result):
                    self._schedule(result, name)
            except Exception as e:
                logger.error(f"Subscriber of '{name}' raised: {e}", exc_info=True)

    def _schedule(self, awaitable: Any, name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop for async subscriber of '{name}'; skipped")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._task_done(t, name))

    def _task_done(self, task: asyncio.Task, name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async subscriber of '{name}' raised: {error}", exc_info=error)

    async def drain(self) -> None:
        """Wait until all scheduled async subscriber tasks have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    def subscribe(
        self,
        name: str | EventName,
        callback: EventCallback,
        owner: str | None = None,
        once: bool = False,
    ) -> Unsubscribe:
        """
        Register a callback for an event name.

        Args:
            name: Event name to listen for.
            callback: Called with the EventRecord; may be a coroutine function.
            owner: Optional tag grouping subscriptions for :meth:`unsubscribe_owner`.
            once: Remove the subscription after its first dispatch.

        Returns:
            A callable removing exactly this subscription.
        """
        name = event_name(name)
        subscription = Subscription(name=name, callback=callback, owner=owner, once=once)
        listeners = self._listeners.setdefault(name, [])
        listeners.append(subscription)
        if len(listeners) > self.config.max_listeners:
            logger.warning(f"Event '{name}' has {len(listeners)} listeners (limit {self.config.max_listeners})")
        if owner is not None:
            self._owners.setdefault(owner, set()).add(name)
        logger.debug(f"Subscribed to '{name}'" + (f" by '{owner}'" if owner else ""))
        return lambda: self._remove(subscription)

    def subscribe_once(self, name: str | EventName, callback: EventCallback, owner: str | None = None) -> Unsubscribe:
        return self.subscribe(name, callback, owner=owner, once=True)

    def subscribe_multiple(
        self,
        names: Iterable[str | EventName],
        callback: EventCallback,
        owner: str | None = None,
    ) -> Unsubscribe:
        """Subscribe one callback to several names; the returned callable removes all of them."""
        unsubscribers = [self.subscribe(name, callback, owner=owner) for name in names]

        def unsubscribe_all() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return unsubscribe_all

    def unsubscribe(self, name: str | EventName, callback: EventCallback) -> int:
        """Remove every registration of ``callback`` for ``name``. Returns the number removed."""
        name = event_name(name)
        matches = [s for s in self._listeners.get(name, ()) if s.callback == callback]
        for subscription in matches:
            self._remove(subscription)
        return len(matches)

    def unsubscribe_owner(self, owner: str) -> int:
        """Remove every live registration made with ``owner``. Returns the number removed."""
        names = self._owners.pop(owner, set())
        removed = 0
        for name in names:
            listeners = self._listeners.get(name, [])
            kept = [s for s in listeners if s.owner != owner]
            removed += len(listeners) - len(kept)
            if kept:
                self._listeners[name] = kept
            else:
                self._listeners.pop(name, None)
        if removed:
            logger.debug(f"Removed {removed} subscriptions of owner '{owner}'")
        return removed

    def _remove(self, subscription: Subscription) -> None:
        listeners = self._listeners.get(subscription.name)
        if not listeners or subscription not in listeners:
            return
        listeners.remove(subscription)
        if not listeners:
            del self._listeners[subscription.name]
        owner = subscription.owner
        if owner is not None and owner in self._owners:
            still_used = any(s.owner == owner for s in self._listeners.get(subscription.name, ()))
            if not still_used:
                self._owners[owner].discard(subscription.name)
                if not self._owners[owner]:
                    del self._owners[owner]

    def listener_count(self, name: str | EventName | None = None) -> int:
        if name is None:
            return sum(len(listeners) for listeners in self._listeners.values())
        return len(self._listeners.get(event_name(name), ()))

    # ------------------------------------------------------------------
    # Awaiting events
    # ------------------------------------------------------------------

    def _register_waiter(
        self,
        name: str,
        predicate: Callable[[EventRecord], bool] | None = None,
    ) -> tuple[asyncio.Future, Unsubscribe]:
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def resolve(record: EventRecord) -> None:
            if future.done():
                return
            if predicate is not None and not predicate(record):
                return
            future.set_result(record)

        return future, self.subscribe(name, resolve)

    async def _await_waiter(
        self,
        name: str,
        future: asyncio.Future,
        unsubscribe: Unsubscribe,
        timeout: float | None,
    ) -> EventRecord:
        timeout = self.config.default_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise EventTimeoutError(name, timeout) from None
        finally:
            unsubscribe()

    async def wait_for(self, name: str | EventName, timeout: float | None = None) -> EventRecord:
        """
        Wait for the next event with the given name.

        Args:
            name: Event name.
            timeout: Seconds to wait; defaults to ``config.default_timeout``.

        Returns:
            The matching EventRecord.

        Raises:
            EventTimeoutError: If no matching event arrives in time. The
                temporary listener is removed on every exit path.
        """
        name = event_name(name)
        future, unsubscribe = self._register_waiter(name)
        return await self._await_waiter(name, future, unsubscribe, timeout)

    async def publish_and_wait_for_response(
        self,
        name: str | EventName,
        payload: dict[str, Any] | None = None,
        response_name: str | None = None,
        timeout: float | None = None,
    ) -> EventRecord:
        """
        Publish a request and wait for its correlated response.

        The request payload gets a ``request_id``; responders echo it in the
        response payload. Responses carrying a different ``request_id`` are
        ignored, responses without one are accepted.

        Args:
            name: Request event name.
            payload: Request payload.
            response_name: Defaults to ``"<name>-response"``.
            timeout: Seconds to wait for the response.
        """
        name = event_name(name)
        response_name = response_name or f"{name}-response"
        data = dict(payload or {})
        request_id = data.setdefault("request_id", f"req_{next(_subscription_ids)}")

        def correlated(record: EventRecord) -> bool:
            return record.payload.get("request_id", request_id) == request_id

        # listen before publishing so a synchronous responder is not missed
        future, unsubscribe = self._register_waiter(response_name, correlated)
        self.publish(name, data)
        return await self._await_waiter(response_name, future, unsubscribe, timeout)

    # ------------------------------------------------------------------
    # History and introspection
    # ------------------------------------------------------------------

    def get_event_history(self, name: str | EventName | None = None, limit: int = 50) -> list[EventRecord]:
        records = list(self._history)
        if name is not None:
            wanted = event_name(name)
            records = [r for r in records if r.name == wanted]
        return records[-limit:] if limit > 0 else []

    def clear_history(self) -> None:
        self._history.clear()
        logger.debug("Event history cleared")

    def get_subscription_stats(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "total_events": len(self._listeners),
            "total_listeners": self.listener_count(),
            "events": {name: len(listeners) for name, listeners in self._listeners.items()},
            "modules": {owner: sorted(names) for owner, names in self._owners.items()},
            "history_size": len(self._history),
            "pending_async_subscribers": len(self._tasks),
        }

    def create_namespace(self, namespace: str) -> EventNamespace:
        return EventNamespace(self, namespace)


class EventNamespace:
    """View on an EventBus that prefixes every event name with ``"<namespace>:"``."""

    def __init__(self, bus: EventBus, namespace: str) -> None:
        self.bus = bus
        self.namespace = namespace

    def _scoped(self, name: str | EventName) -> str:
        return f"{self.namespace}:{event_name(name)}"

    def publish(self, name: str | EventName, payload: dict[str, Any] | None = None) -> EventRecord | None:
        return self.bus.publish(self._scoped(name), payload)

    def subscribe(self, name: str | EventName, callback: EventCallback, owner: str | None = None) -> Unsubscribe:
        return self.bus.subscribe(self._scoped(name), callback, owner=owner)

    def subscribe_once(self, name: str | EventName, callback: EventCallback, owner: str | None = None) -> Unsubscribe:
        return self.bus.subscribe_once(self._scoped(name), callback, owner=owner)

    async def wait_for(self, name: str | EventName, timeout: float | None = None) -> EventRecord:
        return await self.bus.wait_for(self._scoped(name), timeout)


__all__ = ["EventBus", "EventNamespace", "Subscription", "EventCallback", "Unsubscribe"]
