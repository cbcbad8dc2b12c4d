"""
Unitwatch — Health Monitor

Periodic cheap probe of the protected subsystem (e.g. `systemctl --version`),
independent of command traffic. Classifies health and adapts its own cadence:
slow polling while healthy, fast polling while anything is wrong.

Usage:
    monitor = HealthMonitor(config, store, probe)
    await monitor.start()
    # ...later:
    await monitor.stop()
"""
import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Optional

from resilience.models import HealthStatus, ProbeResult
from resilience.settings import SupervisorConfig
from resilience.store import SupervisorStore

logger = logging.getLogger("unitwatch.resilience.health_monitor")

LATENCY_SAMPLES = 10
DEGRADE_AFTER_FAILURES = 3
RECOVER_AFTER_SUCCESSES = 3


@dataclass
class HealthState:
    """In-memory only. Rebuilt as HEALTHY on every process start."""
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    latency_samples: deque = field(default_factory=lambda: deque(maxlen=LATENCY_SAMPLES))
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    last_check: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None


class HealthMonitor:
    """
    - HEALTHY -> DEGRADED on the first probe failure
    - DEGRADED -> UNHEALTHY after 3 consecutive failures
    - UNHEALTHY -> DEGRADED on the first success
    - DEGRADED -> HEALTHY after 3 consecutive successes
    """

    def __init__(self, config: SupervisorConfig, store: SupervisorStore, probe: Callable):
        self._config = config
        self._store = store
        self._probe = probe
        self._state = HealthState()
        self._task: Optional[asyncio.Task] = None

    @property
    def status(self) -> HealthStatus:
        return self._state.status

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ────────────────────── Probe ──────────────────────

    async def _call_probe(self):
        result = self._probe()
        if inspect.isawaitable(result):
            await result

    async def ping(self) -> ProbeResult:
        """Run one probe, bounded by health_check_timeout_ms, and update state."""
        start = time.monotonic()
        try:
            await asyncio.wait_for(
                self._call_probe(),
                timeout=self._config.health_check_timeout_ms / 1000.0,
            )
        except Exception as e:
            latency = (time.monotonic() - start) * 1000
            error = str(e) or type(e).__name__
            logger.debug(f"Health probe failed: {error}")
            self._record_failure()
            return ProbeResult(ok=False, latency_ms=latency, error=error)

        latency = (time.monotonic() - start) * 1000
        self._record_success(latency)
        return ProbeResult(ok=True, latency_ms=latency)

    def _record_success(self, latency_ms: float):
        state = self._state
        now = datetime.now()
        state.last_check = now
        state.last_success = now
        state.latency_ms = latency_ms
        state.consecutive_failures = 0
        state.consecutive_successes += 1
        state.latency_samples.append(latency_ms)

        # Sample carries the status in force when the probe ran
        self._store.append_health_sample(state.status.value, latency_ms, True)

        if state.status == HealthStatus.UNHEALTHY:
            self._set_status(HealthStatus.DEGRADED)
        elif (state.status == HealthStatus.DEGRADED
              and state.consecutive_successes >= RECOVER_AFTER_SUCCESSES):
            self._set_status(HealthStatus.HEALTHY)

    def _record_failure(self):
        state = self._state
        now = datetime.now()
        state.last_check = now
        state.last_failure = now
        state.consecutive_successes = 0
        state.consecutive_failures += 1

        self._store.append_health_sample(state.status.value, None, False)

        if state.status == HealthStatus.HEALTHY:
            self._set_status(HealthStatus.DEGRADED)
        elif (state.status == HealthStatus.DEGRADED
              and state.consecutive_failures >= DEGRADE_AFTER_FAILURES):
            self._set_status(HealthStatus.UNHEALTHY)

    def _set_status(self, new_status: HealthStatus):
        old = self._state.status
        self._state.status = new_status
        logger.info(f"Health: {old.value} -> {new_status.value}")

    # ────────────────────── Background loop ──────────────────────

    def next_interval_ms(self) -> int:
        """Poll interval for the current status."""
        if self._state.status == HealthStatus.HEALTHY:
            return self._config.health_check_interval_ms
        return self._config.health_degraded_interval_ms

    async def start(self):
        """Start the self-rescheduling probe loop as a background task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._health_loop())
        logger.info(
            f"Health monitor started (interval: {self._config.health_check_interval_ms}ms, "
            f"degraded: {self._config.health_degraded_interval_ms}ms)"
        )

    async def stop(self):
        """Stop the probe loop."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Health monitor stopped")

    async def _health_loop(self):
        await asyncio.sleep(self._config.health_initial_delay_ms / 1000.0)
        while True:
            try:
                await self.ping()
            except asyncio.CancelledError:
                break
            except Exception as e:
                # ping() contains probe errors; this catches store/logging faults
                logger.warning(f"Health check error: {e}")
            # Status after this probe decides the next cadence
            await asyncio.sleep(self.next_interval_ms() / 1000.0)

    # ────────────────────── Introspection ──────────────────────

    def get_health(self) -> HealthState:
        """A copy of the current health state."""
        return replace(self._state, latency_samples=deque(
            self._state.latency_samples, maxlen=LATENCY_SAMPLES))

    def latency_p95(self) -> float:
        samples = sorted(self._state.latency_samples)
        if not samples:
            return 0.0
        idx = int(len(samples) * 0.95)
        return samples[min(idx, len(samples) - 1)]

    def get_status(self) -> dict:
        state = self._state
        return {
            "status": state.status.value,
            "latency_ms": round(state.latency_ms, 1),
            "p95_latency_ms": round(self.latency_p95(), 1),
            "consecutive_successes": state.consecutive_successes,
            "consecutive_failures": state.consecutive_failures,
            "last_check": state.last_check.isoformat() if state.last_check else None,
            "next_check_ms": self.next_interval_ms(),
            "running": self.running,
        }
