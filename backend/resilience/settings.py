"""
Unitwatch — Supervisor Settings

Defaults for the circuit breaker, health monitor and adaptive timeouts.
config.json "supervisor" overrides these.
"""
import logging
from dataclasses import dataclass, fields
from typing import Optional

from config import _cfg
from resilience.models import Category

logger = logging.getLogger("unitwatch.resilience.settings")


def _exempt_categories(values) -> tuple:
    """Category values from config; unknown names are dropped with a warning."""
    categories = []
    for value in values:
        try:
            categories.append(Category(value).value)
        except ValueError:
            logger.warning(f"Unknown exempt category ignored: {value}")
    return tuple(categories)


@dataclass
class SupervisorConfig:
    # Baseline timeouts by category
    status_timeout_ms: int = 5000
    query_timeout_ms: int = 10000
    action_timeout_ms: int = 30000
    heavy_timeout_ms: int = 60000
    diagnostic_timeout_ms: int = 90000

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_failure_window_ms: int = 60000
    circuit_open_duration_ms: int = 30000
    circuit_recovery_threshold: int = 2
    # Failures in these categories come from optional auxiliary calls
    circuit_exempt_categories: tuple = ("diagnostic",)

    # Health monitor
    health_check_interval_ms: int = 30000
    health_degraded_interval_ms: int = 5000
    health_check_timeout_ms: int = 2000
    health_initial_delay_ms: int = 5000

    # Adaptive timeout
    adaptive_timeout: bool = True

    @classmethod
    def from_dict(cls, overrides: Optional[dict]) -> "SupervisorConfig":
        """Build a config from defaults plus a (possibly partial) override dict."""
        if not isinstance(overrides, dict):
            return cls()

        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in overrides.items():
            if key not in known:
                logger.warning(f"Unknown supervisor setting ignored: {key}")
                continue
            if key == "circuit_exempt_categories":
                value = _exempt_categories(value)
            values[key] = value
        return cls(**values)


def load_supervisor_config() -> SupervisorConfig:
    """Load supervisor settings from config.json."""
    return SupervisorConfig.from_dict(_cfg("supervisor", {}))
