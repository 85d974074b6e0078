# src/chatcore/state/health.py
"""
Provider health probing.

The provider registry does not talk to AI backends itself. A health probe
collaborator is injected instead: an async callable taking a provider id and
returning True when the provider answers. Each probe runs under a bounded
timeout; the outcome is captured as a :class:`~chatcore.models.HealthSnapshot`.

Usage:
    async def ping(provider_id: str) -> bool:
        return await clients[provider_id].ping()

    snapshot = await probe_provider(ping, "openai", timeout=5.0)
    if not snapshot.healthy:
        print(snapshot.error)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

from ..models import HealthSnapshot

logger = logging.getLogger(__name__)


class HealthProbe(Protocol):
    """Async callable reporting whether a provider is reachable."""

    async def __call__(self, provider_id: str) -> bool: ...


async def probe_provider(probe: HealthProbe, provider_id: str, timeout: float) -> HealthSnapshot:
    """
    Run one health probe with a timeout.

    Never raises for probe failures: timeouts, exceptions and a False answer
    all produce an unhealthy snapshot carrying the error message.
    """
    start_time = time.perf_counter()
    try:
        healthy = bool(await asyncio.wait_for(probe(provider_id), timeout=timeout))
        error = None if healthy else "Probe reported provider unhealthy"
    except TimeoutError:
        healthy = False
        error = f"Health check timed out after {timeout}s"
    except Exception as e:
        healthy = False
        error = str(e) or type(e).__name__
        logger.debug(f"Health probe for '{provider_id}' raised: {e}", exc_info=True)

    latency_ms = (time.perf_counter() - start_time) * 1000
    level = logging.DEBUG if healthy else logging.WARNING
    logger.log(level, f"Health check {provider_id}: healthy={healthy}, latency={latency_ms:.0f}ms")
    return HealthSnapshot(provider_id=provider_id, healthy=healthy, latency_ms=latency_ms, error=error)


__all__ = ["HealthProbe", "probe_provider"]
