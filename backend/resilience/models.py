"""
Unitwatch — Supervisor Data Models

Enums and records shared by the store, circuit breaker, health monitor
and timeout calculator. Timestamps are epoch milliseconds.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds (survives restarts, unlike monotonic)."""
    return int(time.time() * 1000)


class CircuitState(str, Enum):
    CLOSED = "closed"          # commands pass
    OPEN = "open"              # commands refused without spawning
    HALF_OPEN = "half_open"    # trial commands decide recovery


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class Category(str, Enum):
    """Operation class by expected duration and risk."""
    STATUS = "status"            # fast reads
    QUERY = "query"              # journal / dependency queries
    ACTION = "action"            # mutating start/stop/restart
    HEAVY = "heavy"              # daemon-reload
    DIAGNOSTIC = "diagnostic"    # AI-assisted analysis


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Marks a patch field the caller did not supply (None means "clear it")
UNSET: Any = _Unset()


@dataclass
class CircuitRecord:
    """The persisted singleton circuit row."""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_at: Optional[int] = None
    opened_at: Optional[int] = None
    recovery_successes: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_at": self.last_failure_at,
            "opened_at": self.opened_at,
            "recovery_successes": self.recovery_successes,
            "updated_at": self.updated_at,
        }


@dataclass
class CircuitPatch:
    """Partial update for CircuitRecord. UNSET fields keep their stored value."""
    state: Any = UNSET
    failure_count: Any = UNSET
    last_failure_at: Any = UNSET
    opened_at: Any = UNSET
    recovery_successes: Any = UNSET

    def apply_to(self, record: CircuitRecord, updated_at: int) -> CircuitRecord:
        def pick(value, current):
            return current if value is UNSET else value

        return CircuitRecord(
            state=CircuitState(pick(self.state, record.state)),
            failure_count=pick(self.failure_count, record.failure_count),
            last_failure_at=pick(self.last_failure_at, record.last_failure_at),
            opened_at=pick(self.opened_at, record.opened_at),
            recovery_successes=pick(self.recovery_successes, record.recovery_successes),
            updated_at=updated_at,
        )


@dataclass
class ProbeResult:
    """Outcome of a single health probe."""
    ok: bool
    latency_ms: float
    error: str = ""


@dataclass
class ExecutionDecision:
    allowed: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"allowed": self.allowed}
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class TimeoutDecision:
    """Effective timeout for one call plus the rules that produced it."""
    timeout_ms: float
    rules: list = field(default_factory=list)

    @property
    def reason(self) -> str:
        return ", ".join(self.rules)

    @property
    def timeout_sec(self) -> float:
        return self.timeout_ms / 1000.0

    def to_dict(self) -> dict:
        return {"timeout_ms": self.timeout_ms, "reason": self.reason}
