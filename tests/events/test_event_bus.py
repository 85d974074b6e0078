# tests/events/test_event_bus.py
"""
Test suite for the EventBus.

Tests cover:
    - Lifecycle: publishing before initialize/after destroy
    - Dispatch order, error isolation and the event-published notification
    - Subscription bookkeeping: unsubscribe handles, owners, once
    - Bounded history
    - wait_for with timeouts and listener cleanup
    - Request/response correlation, namespaces, async subscribers
    - Payload validation mode
"""

import asyncio

import pytest

from chatcore.config.models import EventBusConfig
from chatcore.events import EventBus, EventName
from chatcore.exceptions import EventPayloadError, EventTimeoutError

# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for initialize/destroy."""

    def test_publish_before_initialize_is_dropped(self):
        """Events published before initialize are ignored."""
        bus = EventBus()
        received = []
        bus.subscribe("ping", received.append)
        assert bus.publish("ping") is None
        assert received == []
        assert bus.get_event_history() == []

    def test_destroy_clears_everything(self, bus):
        """destroy removes subscriptions and history and stops publishing."""
        bus.subscribe("ping", lambda r: None, owner="ui")
        bus.publish("ping")
        bus.destroy()
        assert bus.listener_count() == 0
        assert bus.get_event_history() == []
        assert bus.publish("ping") is None


# =============================================================================
# Dispatch
# =============================================================================


class TestDispatch:
    """Tests for publish and subscriber invocation."""

    def test_subscribers_called_in_subscription_order(self, bus):
        """Every subscriber of a name is called, in subscription order."""
        calls = []
        for i in range(5):
            bus.subscribe("ordered", lambda r, i=i: calls.append(i))
        bus.publish("ordered", {"x": 1})
        assert calls == [0, 1, 2, 3, 4]

    def test_record_passed_to_subscriber(self, bus):
        """Subscribers receive an EventRecord carrying a copy of the payload."""
        received = []
        bus.subscribe("data", received.append)
        payload = {"conversation_id": "conv_1"}
        record = bus.publish("data", payload)
        payload["conversation_id"] = "changed"

        assert received[0] is record
        assert record.name == "data"
        assert record.payload == {"conversation_id": "conv_1"}
        assert record.id.startswith("evt_")

    def test_failing_subscriber_does_not_stop_siblings(self, bus):
        """A raising subscriber is logged; later subscribers still run."""
        calls = []

        def bad(record):
            raise RuntimeError("subscriber failure")

        bus.subscribe("e", lambda r: calls.append("first"))
        bus.subscribe("e", bad)
        bus.subscribe("e", lambda r: calls.append("third"))

        bus.publish("e")

        assert calls == ["first", "third"]

    def test_event_published_notification(self, bus):
        """Global observers see every event through event-published."""
        seen = []
        bus.subscribe(EventName.EVENT_PUBLISHED, lambda r: seen.append(r.name))
        bus.publish("a")
        bus.publish(EventName.MESSAGE_ADDED, {"conversation_id": "c", "message": {}})
        assert seen == ["a", "message-added"]

    def test_enum_and_string_names_are_equivalent(self, bus):
        """EventName members and their string values address the same listeners."""
        received = []
        bus.subscribe(EventName.CONVERSATION_CREATED, received.append)
        bus.publish("conversation-created", {"conversation_id": "c"})
        assert len(received) == 1

    def test_subscriber_may_unsubscribe_during_dispatch(self, bus):
        """Removing subscriptions while dispatching does not skip remaining subscribers."""
        calls = []
        handles = {}

        def first(record):
            calls.append("first")
            handles["second"]()

        bus.subscribe("e", first)
        handles["second"] = bus.subscribe("e", lambda r: calls.append("second"))
        bus.publish("e")
        bus.publish("e")

        assert calls == ["first", "second", "first"]


# =============================================================================
# Subscriptions
# =============================================================================


class TestSubscriptions:
    """Tests for unsubscribe handles, owners and once-subscriptions."""

    def test_unsubscribe_handle_removes_exactly_one(self, bus):
        """The returned handle removes only its own registration."""
        calls = []
        cb = lambda r: calls.append(1)  # noqa: E731
        unsubscribe = bus.subscribe("e", cb)
        bus.subscribe("e", cb)
        unsubscribe()
        unsubscribe()
        bus.publish("e")
        assert calls == [1]

    def test_unsubscribe_by_callback(self, bus):
        """unsubscribe(name, callback) removes every registration of the callback."""
        cb = lambda r: None  # noqa: E731
        bus.subscribe("e", cb)
        bus.subscribe("e", cb)
        assert bus.unsubscribe("e", cb) == 2
        assert bus.listener_count("e") == 0

    def test_unsubscribe_owner(self, bus):
        """All live registrations of an owner are removed; others stay."""
        bus.subscribe("a", lambda r: None, owner="ui")
        bus.subscribe("b", lambda r: None, owner="ui")
        bus.subscribe("b", lambda r: None, owner="analytics")

        assert bus.unsubscribe_owner("ui") == 2
        assert bus.listener_count("a") == 0
        assert bus.listener_count("b") == 1
        assert "ui" not in bus.get_subscription_stats()["modules"]

    def test_unsubscribe_owner_after_handles_used(self, bus):
        """Owner bookkeeping stays accurate when some handles were already used."""
        handle = bus.subscribe("a", lambda r: None, owner="ui")
        bus.subscribe("b", lambda r: None, owner="ui")
        handle()
        assert bus.get_subscription_stats()["modules"]["ui"] == ["b"]
        assert bus.unsubscribe_owner("ui") == 1

    def test_subscribe_once(self, bus):
        """A once-subscription fires a single time."""
        calls = []
        bus.subscribe_once("e", lambda r: calls.append(r.payload["n"]))
        bus.publish("e", {"n": 1})
        bus.publish("e", {"n": 2})
        assert calls == [1]
        assert bus.listener_count("e") == 0

    def test_subscribe_multiple(self, bus):
        """One handle removes a callback registered for several names."""
        calls = []
        unsubscribe = bus.subscribe_multiple(["a", "b"], lambda r: calls.append(r.name))
        bus.publish("a")
        bus.publish("b")
        unsubscribe()
        bus.publish("a")
        assert calls == ["a", "b"]

    def test_listener_warning_threshold_does_not_reject(self):
        """Exceeding max_listeners only warns."""
        bus = EventBus(EventBusConfig(max_listeners=1))
        bus.initialize()
        bus.subscribe("e", lambda r: None)
        bus.subscribe("e", lambda r: None)
        assert bus.listener_count("e") == 2


# =============================================================================
# History
# =============================================================================


class TestHistory:
    """Tests for the bounded event history."""

    def test_history_is_bounded(self):
        """Only the most recent max_history records are kept, oldest dropped first."""
        bus = EventBus(EventBusConfig(max_history=3))
        bus.initialize()
        for i in range(5):
            bus.publish("tick", {"i": i})
        assert [r.payload["i"] for r in bus.get_event_history(limit=10)] == [2, 3, 4]

    def test_history_filter_and_limit(self, bus):
        """History can be filtered by name and limited."""
        bus.publish("a", {"i": 1})
        bus.publish("b")
        bus.publish("a", {"i": 2})
        assert [r.payload["i"] for r in bus.get_event_history("a")] == [1, 2]
        assert [r.name for r in bus.get_event_history(limit=1)] == ["a"]
        bus.clear_history()
        assert bus.get_event_history() == []


# =============================================================================
# wait_for and request/response
# =============================================================================


class TestWaitFor:
    """Tests for awaiting events."""

    @pytest.mark.asyncio
    async def test_wait_for_resolves(self, bus):
        """wait_for returns the next matching record."""

        async def publish_later():
            await asyncio.sleep(0.01)
            bus.publish("ready", {"ok": True})

        task = asyncio.create_task(publish_later())
        record = await bus.wait_for("ready", timeout=1.0)
        await task
        assert record.payload == {"ok": True}
        assert bus.listener_count("ready") == 0

    @pytest.mark.asyncio
    async def test_wait_for_timeout_restores_listener_count(self, bus):
        """A timed-out wait raises and leaves no listener behind."""
        bus.subscribe("never", lambda r: None)
        before = bus.listener_count("never")

        with pytest.raises(EventTimeoutError) as exc_info:
            await bus.wait_for("never", timeout=0.05)

        assert exc_info.value.event_name == "never"
        assert bus.listener_count("never") == before

    @pytest.mark.asyncio
    async def test_wait_for_cancelled_removes_listener(self, bus):
        """Cancelling a wait also deregisters its listener."""
        task = asyncio.create_task(bus.wait_for("never", timeout=10))
        await asyncio.sleep(0)
        assert bus.listener_count("never") == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert bus.listener_count("never") == 0

    @pytest.mark.asyncio
    async def test_request_response_correlation(self, bus):
        """Responses with a different request_id are ignored."""

        def responder(record):
            bus.publish("lookup-response", {"request_id": "someone-else", "value": "wrong"})
            bus.publish("lookup-response", {"request_id": record.payload["request_id"], "value": "right"})

        bus.subscribe("lookup", responder)
        record = await bus.publish_and_wait_for_response("lookup", {"key": "k"}, timeout=1.0)

        assert record.payload["value"] == "right"
        assert bus.listener_count("lookup-response") == 0

    @pytest.mark.asyncio
    async def test_request_without_response_times_out(self, bus):
        """An unanswered request raises EventTimeoutError."""
        with pytest.raises(EventTimeoutError):
            await bus.publish_and_wait_for_response("lookup", timeout=0.05)
        assert bus.listener_count("lookup-response") == 0


# =============================================================================
# Async subscribers, namespaces, validation
# =============================================================================


class TestAsyncSubscribers:
    """Tests for coroutine subscribers."""

    @pytest.mark.asyncio
    async def test_async_subscriber_scheduled_and_drained(self, bus):
        """Coroutine subscribers run as tasks; drain waits for them."""
        done = []

        async def handler(record):
            await asyncio.sleep(0.01)
            done.append(record.payload["n"])

        bus.subscribe("work", handler)
        bus.publish("work", {"n": 1})
        assert done == []
        await bus.drain()
        assert done == [1]

    @pytest.mark.asyncio
    async def test_async_subscriber_failure_is_contained(self, bus):
        """A failing async subscriber does not propagate out of drain."""

        async def handler(record):
            raise RuntimeError("async failure")

        bus.subscribe("work", handler)
        bus.publish("work")
        await bus.drain()
        assert bus.get_subscription_stats()["pending_async_subscribers"] == 0


class TestNamespaces:
    """Tests for EventNamespace."""

    def test_namespace_prefixes_names(self, bus):
        """Namespaced events are published as '<namespace>:<name>'."""
        workflow = bus.create_namespace("workflow")
        received = []
        workflow.subscribe("step-done", received.append)
        workflow.publish("step-done", {"step": 1})

        assert received[0].name == "workflow:step-done"
        assert bus.listener_count("workflow:step-done") == 1
        assert bus.listener_count("step-done") == 0


class TestPayloadValidation:
    """Tests for validation mode."""

    def test_invalid_payload_rejected(self):
        """In validation mode a malformed known payload raises EventPayloadError."""
        bus = EventBus(EventBusConfig(validate_payloads=True))
        bus.initialize()
        with pytest.raises(EventPayloadError):
            bus.publish(EventName.MESSAGE_ADDED, {"message": {}})
        assert bus.get_event_history() == []

    def test_unknown_names_not_validated(self):
        """Names outside the catalogue pass unchecked."""
        bus = EventBus(EventBusConfig(validate_payloads=True))
        bus.initialize()
        assert bus.publish("custom-event", {"anything": 1}) is not None

    def test_extra_keys_allowed(self):
        """Known payloads may carry extra keys."""
        bus = EventBus(EventBusConfig(validate_payloads=True))
        bus.initialize()
        record = bus.publish(EventName.CONVERSATION_SWITCHED, {"conversation_id": "c", "extra": 1})
        assert record is not None
