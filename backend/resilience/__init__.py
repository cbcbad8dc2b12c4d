"""
Unitwatch — Resilience Supervisor

Persistent circuit breaker, health monitor, adaptive timeouts and the
SQLite store behind them, composed by the Supervisor façade.
"""
from resilience.adaptive_timeout import AdaptiveTimeout
from resilience.circuit_breaker import CircuitBreaker
from resilience.errors import FailureKind, StoreError, StoreLockedError, SupervisorError
from resilience.health_monitor import HealthMonitor, HealthState
from resilience.models import (
    Category,
    CircuitPatch,
    CircuitRecord,
    CircuitState,
    ExecutionDecision,
    HealthStatus,
    TimeoutDecision,
)
from resilience.settings import SupervisorConfig, load_supervisor_config
from resilience.store import SupervisorStore
from resilience.supervisor import Supervisor

__all__ = [
    "AdaptiveTimeout",
    "Category",
    "CircuitBreaker",
    "CircuitPatch",
    "CircuitRecord",
    "CircuitState",
    "ExecutionDecision",
    "FailureKind",
    "HealthMonitor",
    "HealthState",
    "HealthStatus",
    "StoreError",
    "StoreLockedError",
    "Supervisor",
    "SupervisorConfig",
    "SupervisorError",
    "SupervisorStore",
    "TimeoutDecision",
    "load_supervisor_config",
]
