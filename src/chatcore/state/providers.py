# src/chatcore/state/providers.py
"""
Provider registry.

Keeps one :class:`~chatcore.models.ProviderRecord` per configured AI backend,
the active provider, an immutable switch history, session/lifetime usage
counters and the most recent health snapshot per provider.

Cost and token ceilings are advisory: crossing a threshold publishes a
``cost-limit-warning`` event and never blocks the call that crossed it.
Enforcing a hard stop is up to the subscribers.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Any

from ..config.models import ProviderRegistryConfig
from ..events import EventBus, EventName
from ..exceptions import ProviderNotConfiguredError, ProviderNotFoundError
from ..models import HealthSnapshot, ProviderRecord, ProviderStatus, SwitchRecord, utc_now
from .health import HealthProbe, probe_provider

logger = logging.getLogger(__name__)

AUTO_SWITCH_REASON = "auto-switch"


class ProviderRegistry:
    """
    Registry of providers with usage accounting and health-based failover.

    The registry listens to ``conversation-provider-sync-required`` so that
    activating a conversation also activates the provider it was using.
    """

    def __init__(
        self,
        bus: EventBus,
        config: ProviderRegistryConfig | None = None,
        owner: str = "provider_registry",
    ) -> None:
        self.bus = bus
        self.config = config or ProviderRegistryConfig()
        self.owner = owner

        self._providers: dict[str, ProviderRecord] = {}
        self._active_provider_id: str | None = None
        self._switch_history: deque[SwitchRecord] = deque(maxlen=self.config.max_switch_history)
        self._health: dict[str, HealthSnapshot] = {}
        self._warnings_sent: set[tuple[str, str]] = set()

        self.session_cost = 0.0
        self.total_cost = 0.0
        self.session_tokens = 0
        self.total_tokens = 0
        self.request_count = 0

        self.dirty = False

    # ------------------------------------------------------------------
    # Event wiring
    # ------------------------------------------------------------------

    def attach(self) -> None:
        self.bus.subscribe(EventName.CONVERSATION_PROVIDER_SYNC_REQUIRED, self._on_provider_sync, owner=self.owner)

    def detach(self) -> None:
        self.bus.unsubscribe_owner(self.owner)

    def _on_provider_sync(self, record) -> None:
        provider_id = record.payload.get("provider_id")
        if not provider_id or provider_id == self._active_provider_id:
            return
        provider = self._providers.get(provider_id)
        if provider is None or not provider.configured:
            logger.debug(f"Conversation provider '{provider_id}' not available, keeping '{self._active_provider_id}'")
            return
        self.switch_active_provider(
            provider_id, reason="conversation-sync", conversation_id=record.payload.get("conversation_id")
        )

    # ------------------------------------------------------------------
    # Registration and lookup
    # ------------------------------------------------------------------

    def register(self, provider_id: str, **fields: Any) -> ProviderRecord:
        """
        Register (or replace) a provider.

        Args:
            provider_id: Unique provider id, e.g. ``"openai"``.
            **fields: Any other ProviderRecord field (``name``, ``model``,
                ``available_models``, ``configured``, ``status``).

        Returns:
            A copy of the stored record.
        """
        fields.setdefault("name", provider_id)
        record = ProviderRecord(id=provider_id, **fields)
        self._providers[provider_id] = record
        self.dirty = True
        logger.info(f"Provider registered: {provider_id} (configured={record.configured})")
        self.bus.publish(
            EventName.PROVIDER_REGISTERED,
            {"provider_id": provider_id, "configured": record.configured, "model": record.model},
        )
        return record.model_copy(deep=True)

    def _require(self, provider_id: str) -> ProviderRecord:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id)
        return provider

    def get(self, provider_id: str) -> ProviderRecord:
        return self._require(provider_id).model_copy(deep=True)

    def has(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def list_providers(self) -> list[ProviderRecord]:
        return [p.model_copy(deep=True) for p in self._providers.values()]

    @property
    def active_provider_id(self) -> str | None:
        return self._active_provider_id

    def get_active_provider(self) -> ProviderRecord | None:
        if self._active_provider_id is None:
            return None
        return self.get(self._active_provider_id)

    # ------------------------------------------------------------------
    # Status and switching
    # ------------------------------------------------------------------

    def update_status(self, provider_id: str, status: ProviderStatus | str, error: str | None = None) -> None:
        provider = self._require(provider_id)
        new_status = ProviderStatus(status)
        previous = ProviderStatus(provider.status)
        provider.status = new_status.value
        if error:
            provider.last_error = error
            provider.last_failure_at = utc_now()
        self.dirty = True
        if previous != new_status:
            logger.info(f"Provider '{provider_id}' status: {previous.value} -> {new_status.value}")
        self.bus.publish(
            EventName.PROVIDER_STATUS_CHANGED,
            {
                "provider_id": provider_id,
                "status": new_status.value,
                "previous_status": previous.value,
                "error": error,
            },
        )

    def switch_active_provider(
        self, provider_id: str, reason: str = "manual", conversation_id: str | None = None
    ) -> SwitchRecord:
        """
        Make ``provider_id`` the active provider.

        Records an immutable switch entry, updates ``last_used`` and publishes
        ``active-provider-changed``; the conversation manager reacts to that
        event by tagging the referenced (or current) conversation.

        Raises:
            ProviderNotFoundError: If the provider is not registered.
            ProviderNotConfiguredError: If the provider lacks configuration.
        """
        provider = self._require(provider_id)
        if not provider.configured:
            raise ProviderNotConfiguredError(provider_id)

        previous = self._active_provider_id
        entry = SwitchRecord(
            from_provider=previous,
            to_provider=provider_id,
            reason=reason,
            conversation_id=conversation_id,
        )
        self._switch_history.append(entry)
        self._active_provider_id = provider_id
        provider.last_used = entry.timestamp
        self.dirty = True

        logger.info(f"Active provider switched: {previous} -> {provider_id} ({reason})")
        self.bus.publish(
            EventName.ACTIVE_PROVIDER_CHANGED,
            {
                "provider_id": provider_id,
                "previous_provider": previous,
                "reason": reason,
                "conversation_id": conversation_id,
                "model": provider.model,
            },
        )
        return entry

    def get_switch_history(self, limit: int | None = None) -> list[SwitchRecord]:
        history = list(self._switch_history)
        return history[-limit:] if limit else history

    # ------------------------------------------------------------------
    # Usage and cost ceilings
    # ------------------------------------------------------------------

    def track_usage(self, provider_id: str, tokens: int = 0, cost: float = 0.0) -> None:
        """
        Account one completed request against a provider and the global counters.

        Raises:
            ProviderNotFoundError: If the provider is not registered.
        """
        provider = self._require(provider_id)
        provider.cost_tracking.session += cost
        provider.cost_tracking.total += cost
        provider.session_tokens += tokens
        provider.total_tokens += tokens
        provider.request_count += 1
        provider.last_used = utc_now()

        self.session_cost += cost
        self.total_cost += cost
        self.session_tokens += tokens
        self.total_tokens += tokens
        self.request_count += 1
        self.dirty = True

        logger.debug(f"Usage tracked for '{provider_id}': {tokens} tokens, ${cost:.4f}")
        self.bus.publish(
            EventName.PROVIDER_USAGE_TRACKED,
            {
                "provider_id": provider_id,
                "tokens": tokens,
                "cost": cost,
                "session_cost": self.session_cost,
                "session_tokens": self.session_tokens,
            },
        )
        self._check_limits()

    def _check_limits(self) -> None:
        self._maybe_warn("cost", self.session_cost, self.config.session_cost_limit)
        self._maybe_warn("tokens", self.session_tokens, self.config.session_token_limit)

    def _maybe_warn(self, kind: str, current: float, limit: float) -> None:
        ratio = current / limit
        if ratio > self.config.critical_threshold:
            severity = "critical"
        elif ratio >= self.config.warning_threshold:
            severity = "warning"
        else:
            return
        if (kind, severity) in self._warnings_sent:
            return
        self._warnings_sent.add((kind, severity))

        percentage = round(ratio * 100, 1)
        if severity == "critical":
            recommendation = f"Session {kind} nearly exhausted; switch to a cheaper provider or reset the session."
        else:
            recommendation = f"Session {kind} above {self.config.warning_threshold:.0%} of the limit; monitor usage."
        logger.warning(f"Session {kind} at {percentage}% of limit ({current} / {limit})")
        self.bus.publish(
            EventName.COST_LIMIT_WARNING,
            {
                "type": kind,
                "percentage": percentage,
                "severity": severity,
                "recommendation": recommendation,
                "current": current,
                "limit": limit,
            },
        )

    def reset_session_costs(self) -> dict[str, Any]:
        """Zero session counters on every provider and globally; lifetime totals are kept."""
        previous = {"previous_session_cost": self.session_cost, "previous_session_tokens": self.session_tokens}
        for provider in self._providers.values():
            provider.cost_tracking.session = 0.0
            provider.session_tokens = 0
        self.session_cost = 0.0
        self.session_tokens = 0
        self._warnings_sent.clear()
        self.dirty = True
        logger.info(f"Session costs reset (was ${previous['previous_session_cost']:.4f})")
        self.bus.publish(EventName.SESSION_COST_RESET, previous)
        return previous

    def get_usage_summary(self) -> dict[str, Any]:
        return {
            "session_cost": self.session_cost,
            "total_cost": self.total_cost,
            "session_tokens": self.session_tokens,
            "total_tokens": self.total_tokens,
            "request_count": self.request_count,
            "cost_limit_percentage": round(self.session_cost / self.config.session_cost_limit * 100, 1),
            "token_limit_percentage": round(self.session_tokens / self.config.session_token_limit * 100, 1),
            "providers": {
                pid: {
                    "session_cost": p.cost_tracking.session,
                    "total_cost": p.cost_tracking.total,
                    "session_tokens": p.session_tokens,
                    "total_tokens": p.total_tokens,
                    "request_count": p.request_count,
                }
                for pid, p in self._providers.items()
            },
        }

    # ------------------------------------------------------------------
    # Health checks and failover
    # ------------------------------------------------------------------

    async def check_health(self, probe: HealthProbe) -> dict[str, HealthSnapshot]:
        """
        Probe every configured provider and update statuses.

        A failed probe increments ``consecutive_failures``; the provider is
        marked degraded, or error once the failure threshold is reached. A
        successful probe resets the counter and marks it connected. With
        auto-switch enabled, an active provider at or past the threshold is
        replaced by the least-recently-failed healthy alternative.
        """
        results: dict[str, HealthSnapshot] = {}
        for provider_id in [pid for pid, p in self._providers.items() if p.configured]:
            snapshot = await probe_provider(probe, provider_id, self.config.health_check_timeout)
            provider = self._providers.get(provider_id)
            if provider is None:
                # unregistered while the probe was in flight
                continue
            results[provider_id] = snapshot
            self._health[provider_id] = snapshot
            if snapshot.healthy:
                provider.consecutive_failures = 0
                if provider.status != ProviderStatus.CONNECTED:
                    self.update_status(provider_id, ProviderStatus.CONNECTED)
            else:
                provider.consecutive_failures += 1
                failed_hard = provider.consecutive_failures >= self.config.failure_threshold
                status = ProviderStatus.ERROR if failed_hard else ProviderStatus.DEGRADED
                self.update_status(provider_id, status, error=snapshot.error)
        self.dirty = True

        healthy = sum(1 for s in results.values() if s.healthy)
        self.bus.publish(
            EventName.PROVIDER_HEALTH_CHECK_COMPLETED,
            {
                "results": {pid: s.model_dump(mode="json") for pid, s in results.items()},
                "healthy_providers": healthy,
                "total_providers": len(results),
            },
        )

        active = self._providers.get(self._active_provider_id or "")
        if (
            self.config.auto_switch
            and active is not None
            and active.consecutive_failures >= self.config.failure_threshold
        ):
            self._auto_switch(active.id)
        return results

    def _auto_switch(self, failed_id: str) -> None:
        candidates = [
            p
            for p in self._providers.values()
            if p.id != failed_id and p.configured and self._is_healthy(p.id)
        ]
        if not candidates:
            logger.error(f"Auto-switch away from '{failed_id}' failed: no healthy alternative")
            self.bus.publish(
                EventName.PROVIDER_AUTO_SWITCH_FAILED,
                {"provider_id": failed_id, "reason": "No healthy alternative provider"},
            )
            return

        # never-failed providers first, then the one whose last failure is oldest
        candidates.sort(key=lambda p: (p.last_failure_at is not None, p.last_failure_at or datetime.min))
        target = candidates[0]
        self.switch_active_provider(target.id, reason=AUTO_SWITCH_REASON)
        self.bus.publish(
            EventName.PROVIDER_AUTO_SWITCHED,
            {"from_provider": failed_id, "to_provider": target.id, "reason": AUTO_SWITCH_REASON},
        )

    def _is_healthy(self, provider_id: str) -> bool:
        snapshot = self._health.get(provider_id)
        if snapshot is not None:
            return snapshot.healthy
        return self._providers[provider_id].status == ProviderStatus.CONNECTED

    def get_health_snapshots(self) -> dict[str, HealthSnapshot]:
        return dict(self._health)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_document(self) -> dict[str, Any]:
        return {
            "providers": {pid: p.model_dump(mode="json") for pid, p in self._providers.items()},
            "active_provider_id": self._active_provider_id,
            "switch_history": [s.model_dump(mode="json") for s in self._switch_history],
            "health": {pid: s.model_dump(mode="json") for pid, s in self._health.items()},
            "usage": {
                "session_cost": self.session_cost,
                "total_cost": self.total_cost,
                "session_tokens": self.session_tokens,
                "total_tokens": self.total_tokens,
                "request_count": self.request_count,
            },
            "warnings_sent": sorted([list(w) for w in self._warnings_sent]),
            "saved_at": utc_now().isoformat(),
        }

    def restore(self, document: dict[str, Any]) -> None:
        """Load a document produced by :meth:`to_document`, replacing current state."""
        self._providers = {
            pid: ProviderRecord.model_validate(data) for pid, data in document.get("providers", {}).items()
        }
        active = document.get("active_provider_id")
        self._active_provider_id = active if active in self._providers else None
        self._switch_history = deque(
            (SwitchRecord.model_validate(s) for s in document.get("switch_history", [])),
            maxlen=self.config.max_switch_history,
        )
        self._health = {pid: HealthSnapshot.model_validate(s) for pid, s in document.get("health", {}).items()}
        usage = document.get("usage", {})
        self.session_cost = float(usage.get("session_cost", 0.0))
        self.total_cost = float(usage.get("total_cost", 0.0))
        self.session_tokens = int(usage.get("session_tokens", 0))
        self.total_tokens = int(usage.get("total_tokens", 0))
        self.request_count = int(usage.get("request_count", 0))
        self._warnings_sent = {(w[0], w[1]) for w in document.get("warnings_sent", [])}
        self.dirty = False
        logger.info(f"Provider registry restored: {len(self._providers)} providers, active={self._active_provider_id}")


__all__ = ["AUTO_SWITCH_REASON", "ProviderRegistry"]
