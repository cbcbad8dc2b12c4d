"""
Unitwatch — Circuit Breaker

Three-state circuit breaker: CLOSED -> OPEN -> HALF_OPEN -> CLOSED.
State is persisted through the supervisor store, so a restart neither
forgets an open circuit nor freezes it open forever.

Usage:
    cb = CircuitBreaker(config, store)
    if cb.can_execute():
        ...
        cb.record_success()   # or cb.record_failure()
"""
import logging
from typing import Callable, Optional

from resilience.models import CircuitPatch, CircuitRecord, CircuitState, now_ms
from resilience.settings import SupervisorConfig
from resilience.store import SupervisorStore

logger = logging.getLogger("unitwatch.resilience.circuit_breaker")


class CircuitBreaker:
    """
    Persistent circuit breaker over a sliding failure window.

    - CLOSED: all calls pass. Failures inside the window are counted;
      reaching the threshold opens the circuit.
    - OPEN: all calls fast-fail. Once open_duration has elapsed the next
      can_execute() moves to HALF_OPEN (lazily, no timer).
    - HALF_OPEN: trial calls pass. recovery_threshold successes close the
      circuit, a single failure reopens it.
    """

    def __init__(self, config: SupervisorConfig, store: SupervisorStore,
                 clock: Optional[Callable[[], int]] = None,
                 exempt_categories=(), exempt_error_types=()):
        self._config = config
        self._store = store
        self._clock = clock or now_ms

        self.state = CircuitState.CLOSED
        self._failures: list[int] = []
        self._opened_at: Optional[int] = None
        self._half_open_successes = 0

        self._hydrate(store.load_circuit(), exempt_categories, exempt_error_types)

    def _hydrate(self, saved: CircuitRecord, exempt_categories, exempt_error_types):
        """Rebuild in-memory state from the persisted record."""
        now = self._clock()

        if saved.state == CircuitState.OPEN and saved.opened_at is not None:
            if now - saved.opened_at >= self._config.circuit_open_duration_ms:
                logger.info("Circuit: was open, cooldown passed -> half_open")
                self.state = CircuitState.HALF_OPEN
                self._persist()
                return

        self.state = saved.state
        self._opened_at = saved.opened_at
        self._half_open_successes = saved.recovery_successes

        # Only the failures still counted at last persist are rebuilt
        if saved.failure_count > 0:
            recent = self._store.recent_failure_times(
                self._config.circuit_failure_window_ms,
                exclude_categories=exempt_categories,
                exclude_error_types=exempt_error_types,
            )
            self._failures = recent[-saved.failure_count:]

        if self.state != CircuitState.CLOSED or self._failures:
            logger.info(
                f"Circuit restored: {self.state.value} "
                f"({len(self._failures)} recent failures)"
            )

    def _persist(self):
        self._store.save_circuit(CircuitPatch(
            state=self.state,
            failure_count=len(self._failures),
            last_failure_at=self._failures[-1] if self._failures else None,
            opened_at=self._opened_at,
            recovery_successes=self._half_open_successes,
        ))

    def _transition(self, new_state: CircuitState, why: str):
        old = self.state
        self.state = new_state
        logger.info(f"Circuit: {old.value} -> {new_state.value} ({why})")

    def _clean_old_failures(self):
        cutoff = self._clock() - self._config.circuit_failure_window_ms
        self._failures = [t for t in self._failures if t > cutoff]

    # ────────────────────── Gate ──────────────────────

    def can_execute(self) -> bool:
        """Whether a call may proceed. May move OPEN -> HALF_OPEN."""
        self._clean_old_failures()

        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self._opened_at is not None:
                elapsed = self._clock() - self._opened_at
                if elapsed >= self._config.circuit_open_duration_ms:
                    self._transition(CircuitState.HALF_OPEN, "testing")
                    self._half_open_successes = 0
                    self._persist()
                    return True
            return False

        return True  # HALF_OPEN: trial calls allowed

    # ────────────────────── Outcomes ──────────────────────

    def record_success(self):
        if self.state != CircuitState.HALF_OPEN:
            return

        self._half_open_successes += 1
        if self._half_open_successes >= self._config.circuit_recovery_threshold:
            self._transition(CircuitState.CLOSED, "recovered")
            self._failures = []
            self._opened_at = None
            self._half_open_successes = 0
        self._persist()

    def record_failure(self, exclude_from_circuit: bool = False):
        """Count a failure. Exempt failures never move the breaker."""
        if exclude_from_circuit:
            return

        self._failures.append(self._clock())
        self._clean_old_failures()

        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, "test failed")
            self._opened_at = self._clock()
            self._half_open_successes = 0
        elif (self.state == CircuitState.CLOSED
              and len(self._failures) >= self._config.circuit_failure_threshold):
            self._transition(CircuitState.OPEN, f"{len(self._failures)} failures")
            self._opened_at = self._clock()

        self._persist()

    def reset(self):
        """Force the circuit closed and forget recent failures."""
        self._failures = []
        self._opened_at = None
        self._half_open_successes = 0
        self._transition(CircuitState.CLOSED, "manual reset")
        self._persist()

    # ────────────────────── Introspection ──────────────────────

    def get_state(self) -> CircuitState:
        self._clean_old_failures()
        return self.state

    def time_open_ms(self) -> Optional[int]:
        """How long the circuit has been OPEN, or None."""
        if self.state != CircuitState.OPEN or self._opened_at is None:
            return None
        return self._clock() - self._opened_at

    def time_until_half_open_ms(self) -> Optional[int]:
        """Milliseconds remaining before OPEN -> HALF_OPEN, or None when not open."""
        elapsed = self.time_open_ms()
        if elapsed is None:
            return None
        return max(0, self._config.circuit_open_duration_ms - elapsed)

    def recent_failures(self) -> int:
        self._clean_old_failures()
        return len(self._failures)

    def get_status(self) -> dict:
        return {
            "state": self.get_state().value,
            "failures": len(self._failures),
            "recovery_successes": self._half_open_successes,
            "opened_at": self._opened_at,
            "time_until_half_open_ms": self.time_until_half_open_ms(),
        }
