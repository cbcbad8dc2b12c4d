"""
Unitwatch — Adaptive Timeout

Per-call timeout from a static category baseline, the learned P95 latency
of that category, and the current health status. The caller enforces it.

Usage:
    decision = AdaptiveTimeout(config, store).get_timeout("query", HealthStatus.HEALTHY)
    await asyncio.wait_for(call(), timeout=decision.timeout_sec)
"""
import logging
from typing import Optional

from resilience.models import Category, HealthStatus, TimeoutDecision
from resilience.settings import SupervisorConfig
from resilience.store import SupervisorStore

logger = logging.getLogger("unitwatch.resilience.adaptive_timeout")

LEARNED_BUFFER = 1.5   # P95 + 50%

HEALTH_MULTIPLIERS = {
    HealthStatus.HEALTHY: 1.0,
    HealthStatus.DEGRADED: 0.5,     # fail fast while investigating
    HealthStatus.UNHEALTHY: 0.25,   # the circuit should already be blocking
}


class AdaptiveTimeout:
    def __init__(self, config: SupervisorConfig, store: SupervisorStore):
        self._config = config
        self._store = store

    def base_timeout(self, category: Category) -> int:
        category = Category(category)
        return {
            Category.STATUS: self._config.status_timeout_ms,
            Category.QUERY: self._config.query_timeout_ms,
            Category.ACTION: self._config.action_timeout_ms,
            Category.HEAVY: self._config.heavy_timeout_ms,
            Category.DIAGNOSTIC: self._config.diagnostic_timeout_ms,
        }[category]

    def get_timeout(self, category: Category, health_status: HealthStatus,
                    override_ms: Optional[float] = None) -> TimeoutDecision:
        """
        Rules, in order:
          1. caller override wins outright
          2. category baseline
          3. learned P95 * 1.5 when adaptive, never below the baseline
          4. health multiplier
        """
        if override_ms is not None:
            return TimeoutDecision(timeout_ms=override_ms, rules=["user override"])

        category = Category(category)
        timeout = self.base_timeout(category)
        rules = [f"{category.value} base: {timeout}ms"]

        if self._config.adaptive_timeout:
            p95 = self._store.query_p95(category.value)
            if p95 is not None:
                learned = p95 * LEARNED_BUFFER
                if learned > timeout:
                    timeout = learned
                    rules.append(f"learned P95+50%: {learned:g}ms")

        status = HealthStatus(health_status)
        multiplier = HEALTH_MULTIPLIERS[status]
        if status != HealthStatus.HEALTHY:
            rules.append(f"{status.value} ({multiplier:g}x)")

        return TimeoutDecision(timeout_ms=timeout * multiplier, rules=rules)
