"""
Unitwatch — Supervisor

Single contract for the command-dispatch layer:
  "may I proceed"         -> can_execute()
  "how long may I take"   -> get_timeout()
  "record what happened"  -> record_success() / record_failure()
  "report current state"  -> get_stats() / get_database_stats()

Usage:
    supervisor = Supervisor.create(probe=systemctl_version_probe())
    async with supervisor:
        decision = supervisor.can_execute()
        ...
"""
import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from resilience.adaptive_timeout import AdaptiveTimeout
from resilience.circuit_breaker import CircuitBreaker
from resilience.errors import FailureKind, StoreError
from resilience.health_monitor import HealthMonitor
from resilience.models import Category, ExecutionDecision, TimeoutDecision, now_ms
from resilience.settings import SupervisorConfig, load_supervisor_config
from resilience.store import DAY_MS, HOUR_MS, SupervisorStore

logger = logging.getLogger("unitwatch.resilience.supervisor")

# Never the subsystem's fault: refused by us, or abandoned by the caller
_BREAKER_EXEMPT_KINDS = (FailureKind.CIRCUIT_OPEN, FailureKind.CANCELLED)


async def _noop_probe():
    return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Supervisor:
    """Owns one circuit breaker, one health monitor and one timeout calculator."""

    def __init__(self, config: SupervisorConfig, store: SupervisorStore,
                 probe: Optional[Callable] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.config = config
        self.store = store
        self._clock = clock or now_ms
        self._exempt_categories = tuple(Category(c).value for c in config.circuit_exempt_categories)

        self.circuit = CircuitBreaker(
            config, store, clock=self._clock,
            exempt_categories=self._exempt_categories,
            exempt_error_types=[k.value for k in _BREAKER_EXEMPT_KINDS],
        )
        self.health = HealthMonitor(config, store, probe or _noop_probe)
        self.timeout = AdaptiveTimeout(config, store)

        self._total_commands = 0
        self._successful_commands = 0

    @classmethod
    def create(cls, config: Optional[SupervisorConfig] = None,
               probe: Optional[Callable] = None,
               db_path: Optional[Path] = None,
               clock: Optional[Callable[[], int]] = None) -> "Supervisor":
        """
        Open the durable store and build a supervisor on it.
        If the store cannot be opened (or another process owns it),
        fall back to an in-memory store rather than fail.
        """
        if config is None:
            config = load_supervisor_config()
        if db_path is None:
            from config import DB_PATH
            db_path = DB_PATH

        try:
            store = SupervisorStore(db_path, clock=clock).init()
        except StoreError as e:
            logger.warning(f"Durable store unavailable, running ephemeral: {e}")
            store = SupervisorStore.ephemeral_store(clock=clock)

        return cls(config, store, probe=probe, clock=clock)

    # ────────────────────── Lifecycle ──────────────────────

    async def start(self):
        await self.health.start()

    async def stop(self):
        await self.health.stop()

    def close(self):
        self.store.close()

    async def __aenter__(self) -> "Supervisor":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
        self.close()

    # ────────────────────── Gate ──────────────────────

    def can_execute(self) -> ExecutionDecision:
        if not self.circuit.can_execute():
            time_left = self.circuit.time_until_half_open_ms() or 0
            return ExecutionDecision(
                allowed=False,
                reason=f"Circuit open. Retry in {math.ceil(time_left / 1000)}s",
            )
        return ExecutionDecision(allowed=True)

    def get_timeout(self, category: Category, override_ms: Optional[float] = None) -> TimeoutDecision:
        return self.timeout.get_timeout(category, self.health.status, override_ms)

    # ────────────────────── Outcomes ──────────────────────

    def record_success(self, name: str, category: Category, duration_ms: float):
        category = Category(category)
        self._total_commands += 1
        self._successful_commands += 1
        self.circuit.record_success()
        self.store.append_outcome(name, category.value, duration_ms, True)

    def record_failure(self, name: str, category: Category, duration_ms: float,
                       failure_kind: FailureKind):
        category = Category(category)
        kind = FailureKind(failure_kind)
        self._total_commands += 1

        exempt = category.value in self._exempt_categories or kind in _BREAKER_EXEMPT_KINDS
        self.circuit.record_failure(exclude_from_circuit=exempt)
        self.store.append_outcome(name, category.value, duration_ms, False, kind.value)
        logger.debug(f"{name} failed: {kind.value} after {duration_ms:.0f}ms (exempt={exempt})")

    # ────────────────────── Reporting ──────────────────────

    def success_rate(self, window_ms: int = HOUR_MS) -> float:
        return self.store.query_recent_success_rate(window_ms)

    def uptime_percent(self) -> int:
        """Success percentage of protected calls since this process started."""
        if self._total_commands == 0:
            return 100
        return round(self._successful_commands / self._total_commands * 100)

    def get_stats(self) -> dict:
        health = self.health.get_health()
        return {
            "status": health.status.value,
            "circuit_state": self.circuit.get_state().value,
            "opens_in": self.circuit.time_until_half_open_ms(),
            "latency": round(health.latency_ms, 1),
            "p95_latency": round(self.health.latency_p95(), 1),
            "recent_failures": self.circuit.recent_failures(),
            "last_success": _iso(health.last_success),
            "last_failure": _iso(health.last_failure),
            "ephemeral": self.store.ephemeral,
            "uptime_percent": self.uptime_percent(),
            "success_rate": round(self.success_rate(), 3),
        }

    def get_database_stats(self, window_ms: int = DAY_MS) -> dict:
        return self.store.query_stats(window_ms)
