"""
Tests for the Supervisor façade, failure taxonomy and settings loading.
"""
import os
import sqlite3
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from resilience.errors import FailureKind, SupervisorError, is_retryable, suggestion_for
from resilience.models import Category, CircuitState, HealthStatus
from resilience.settings import SupervisorConfig
from resilience.supervisor import Supervisor


# ──────────────────────────── Fixtures ──────────────────────────

@pytest.fixture
def supervisor(config, memory_store, clock):
    return Supervisor(config, memory_store, clock=clock)


def _fail(supervisor, count, category=Category.QUERY, kind=FailureKind.TIMEOUT):
    for _ in range(count):
        supervisor.record_failure("systemd_journal_query", category, 10000, kind)


# ──────────────────────────── Gate ──────────────────────────

class TestGate:
    def test_allowed_when_closed(self, supervisor):
        decision = supervisor.can_execute()
        assert decision.allowed is True
        assert decision.reason is None
        assert decision.to_dict() == {"allowed": True}

    def test_blocked_with_retry_hint(self, supervisor):
        _fail(supervisor, 5)
        decision = supervisor.can_execute()
        assert decision.allowed is False
        assert decision.reason == "Circuit open. Retry in 30s"

    def test_retry_hint_rounds_up(self, supervisor, clock):
        _fail(supervisor, 5)
        clock.advance(10_500)
        assert supervisor.can_execute().reason == "Circuit open. Retry in 20s"

    def test_reopens_for_trial_after_cooldown(self, supervisor, clock):
        _fail(supervisor, 5)
        clock.advance(30_000)
        assert supervisor.can_execute().allowed is True
        assert supervisor.circuit.state == CircuitState.HALF_OPEN

    def test_recovery_via_successes(self, supervisor, clock):
        _fail(supervisor, 5)
        clock.advance(30_000)
        supervisor.can_execute()
        supervisor.record_success("systemd_status", Category.STATUS, 120)
        supervisor.record_success("systemd_status", Category.STATUS, 110)
        assert supervisor.circuit.state == CircuitState.CLOSED


# ──────────────────────────── Exemptions ──────────────────────────

class TestExemptions:
    def test_diagnostic_failures_never_trip(self, supervisor):
        _fail(supervisor, 10, category=Category.DIAGNOSTIC, kind=FailureKind.COMMAND_ERROR)
        assert supervisor.can_execute().allowed is True

    def test_circuit_open_rejections_never_count(self, supervisor):
        _fail(supervisor, 10, kind=FailureKind.CIRCUIT_OPEN)
        assert supervisor.circuit.recent_failures() == 0

    def test_cancellations_never_count(self, supervisor):
        _fail(supervisor, 10, kind=FailureKind.CANCELLED)
        assert supervisor.circuit.state == CircuitState.CLOSED

    def test_exempt_failures_still_recorded(self, supervisor, memory_store):
        _fail(supervisor, 3, category=Category.DIAGNOSTIC, kind=FailureKind.COMMAND_ERROR)
        stats = memory_store.query_stats()
        assert stats["categories"]["diagnostic"]["total"] == 3
        assert stats["categories"]["diagnostic"]["successes"] == 0

    def test_exempt_categories_given_as_enum_members(self, memory_store, clock):
        config = SupervisorConfig(circuit_exempt_categories=(Category.DIAGNOSTIC,))
        supervisor = Supervisor(config, memory_store, clock=clock)
        _fail(supervisor, 5, category=Category.DIAGNOSTIC)
        assert supervisor.circuit.state == CircuitState.CLOSED

    def test_enum_exemption_survives_restart(self, tmp_path, clock):
        config = SupervisorConfig(circuit_exempt_categories=(Category.DIAGNOSTIC,))
        db = tmp_path / "supervisor.db"
        first = Supervisor.create(config, db_path=db, clock=clock)
        _fail(first, 2)
        _fail(first, 4, category=Category.DIAGNOSTIC)
        first.close()

        second = Supervisor.create(config, db_path=db, clock=clock)
        try:
            assert second.circuit.recent_failures() == 2
        finally:
            second.close()

    def test_custom_exempt_categories(self, memory_store, clock):
        config = SupervisorConfig(circuit_exempt_categories=("heavy",))
        supervisor = Supervisor(config, memory_store, clock=clock)
        _fail(supervisor, 5, category=Category.HEAVY)
        assert supervisor.circuit.state == CircuitState.CLOSED
        _fail(supervisor, 5, category=Category.DIAGNOSTIC)
        assert supervisor.circuit.state == CircuitState.OPEN


# ──────────────────────────── Timeouts ──────────────────────────

class TestTimeouts:
    def test_uses_live_health_status(self, supervisor):
        assert supervisor.get_timeout(Category.ACTION).timeout_ms == 30000
        supervisor.health._state.status = HealthStatus.DEGRADED
        decision = supervisor.get_timeout(Category.ACTION)
        assert decision.timeout_ms == 15000
        assert "degraded (0.5x)" in decision.reason

    def test_override(self, supervisor):
        assert supervisor.get_timeout(Category.HEAVY, override_ms=500).timeout_ms == 500

    def test_learns_from_recorded_successes(self, supervisor):
        for _ in range(20):
            supervisor.record_success("systemd_journal_query", Category.QUERY, 20000)
        assert supervisor.get_timeout(Category.QUERY).timeout_ms == 30000


# ──────────────────────────── Reporting ──────────────────────────

class TestStats:
    def test_stats_shape(self, supervisor):
        stats = supervisor.get_stats()
        assert set(stats) == {
            "status", "circuit_state", "opens_in", "latency", "p95_latency",
            "recent_failures", "last_success", "last_failure", "ephemeral",
            "uptime_percent", "success_rate",
        }
        assert stats["status"] == "healthy"
        assert stats["circuit_state"] == "closed"
        assert stats["opens_in"] is None
        assert stats["uptime_percent"] == 100
        assert stats["success_rate"] == 1.0

    def test_uptime_and_success_rate(self, supervisor):
        for _ in range(3):
            supervisor.record_success("systemd_status", Category.STATUS, 50)
        _fail(supervisor, 1)
        stats = supervisor.get_stats()
        assert stats["uptime_percent"] == 75
        assert stats["success_rate"] == 0.75
        assert stats["recent_failures"] == 1

    def test_open_circuit_reports_remaining_time(self, supervisor, clock):
        _fail(supervisor, 5)
        clock.advance(5_000)
        stats = supervisor.get_stats()
        assert stats["circuit_state"] == "open"
        assert stats["opens_in"] == 25_000

    def test_database_stats(self, supervisor):
        supervisor.record_success("systemd_restart", Category.ACTION, 800)
        stats = supervisor.get_database_stats()
        assert stats["commands"] == 1
        assert stats["avg_latency_by_category"] == {"action": 800}


# ──────────────────────────── Persistence ──────────────────────────

class TestRestart:
    def test_stale_open_circuit_resumes_half_open(self, tmp_path, clock, config):
        db = tmp_path / "supervisor.db"
        first = Supervisor.create(config, db_path=db, clock=clock)
        _fail(first, 5)
        first.close()

        clock.advance(31_000)
        second = Supervisor.create(config, db_path=db, clock=clock)
        try:
            assert second.circuit.state == CircuitState.HALF_OPEN
            assert second.can_execute().allowed is True
            assert second.store.ephemeral is False
        finally:
            second.close()

    def test_health_does_not_survive_restart(self, tmp_path, clock, config):
        db = tmp_path / "supervisor.db"
        first = Supervisor.create(config, db_path=db, clock=clock)
        first.health._state.status = HealthStatus.UNHEALTHY
        _fail(first, 5)
        first.close()

        second = Supervisor.create(config, db_path=db, clock=clock)
        try:
            # Circuit state is durable, health is rebuilt from scratch
            assert second.circuit.state == CircuitState.OPEN
            assert second.health.status == HealthStatus.HEALTHY
        finally:
            second.close()

    def test_recent_failures_rebuilt_without_exempt_ones(self, tmp_path, clock, config):
        db = tmp_path / "supervisor.db"
        first = Supervisor.create(config, db_path=db, clock=clock)
        _fail(first, 3)
        _fail(first, 4, kind=FailureKind.CANCELLED)
        _fail(first, 4, category=Category.DIAGNOSTIC)
        first.close()

        second = Supervisor.create(config, db_path=db, clock=clock)
        try:
            assert second.circuit.recent_failures() == 3
            _fail(second, 2)
            assert second.circuit.state == CircuitState.OPEN
        finally:
            second.close()


class TestStoreFallback:
    def test_unopenable_path_runs_ephemeral(self, tmp_path, clock, config):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        supervisor = Supervisor.create(config, db_path=blocker / "supervisor.db", clock=clock)
        assert supervisor.store.ephemeral is True
        assert supervisor.can_execute().allowed is True
        supervisor.close()

    def test_foreign_owner_runs_ephemeral(self, tmp_path, clock, config):
        db = tmp_path / "supervisor.db"
        db.with_name(db.name + ".lock").write_text(str(os.getppid()))
        supervisor = Supervisor.create(config, db_path=db, clock=clock)
        assert supervisor.store.ephemeral is True
        assert supervisor.get_stats()["ephemeral"] is True
        supervisor.close()

    def test_runtime_store_failure_keeps_serving(self, tmp_path, clock, config):
        supervisor = Supervisor.create(config, db_path=tmp_path / "supervisor.db", clock=clock)
        broken = MagicMock()
        broken.execute.side_effect = sqlite3.OperationalError("disk I/O error")
        supervisor.store._conn = broken

        supervisor.record_success("systemd_status", Category.STATUS, 40)
        _fail(supervisor, 5)

        assert supervisor.store.ephemeral is True
        assert supervisor.can_execute().allowed is False
        assert supervisor.get_database_stats()["commands"] == 6
        supervisor.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_async_context_manager(self, memory_store, clock):
        config = SupervisorConfig(health_initial_delay_ms=60_000)
        probe = AsyncMock(return_value=None)
        async with Supervisor(config, memory_store, probe=probe, clock=clock) as supervisor:
            assert supervisor.health.running is True
        assert supervisor.health.running is False
        assert memory_store._conn is None

    def test_outcomes_after_close_are_dropped(self, supervisor):
        supervisor.close()
        supervisor.record_success("systemd_status", Category.STATUS, 40)
        supervisor.record_failure("systemd_restart", Category.ACTION, 900, FailureKind.TIMEOUT)
        assert supervisor.get_stats()["circuit_state"] == "closed"

    @pytest.mark.asyncio
    async def test_default_probe(self, memory_store, clock, config):
        supervisor = Supervisor(config, memory_store, clock=clock)
        result = await supervisor.health.ping()
        assert result.ok is True


# ──────────────────────────── Failure taxonomy ──────────────────────────

class TestFailureKinds:
    @pytest.mark.parametrize("kind,retryable", [
        (FailureKind.TIMEOUT, True),
        (FailureKind.CONNECTION_FAILED, True),
        (FailureKind.AUTH_FAILED, True),
        (FailureKind.CIRCUIT_OPEN, True),
        (FailureKind.CANCELLED, True),
        (FailureKind.COMMAND_ERROR, False),
        (FailureKind.PERMISSION_DENIED, False),
    ])
    def test_retryable(self, kind, retryable):
        assert is_retryable(kind) is retryable

    def test_every_kind_has_suggestion(self):
        for kind in FailureKind:
            assert suggestion_for(kind) != "Unknown error occurred."

    def test_error_to_json(self):
        err = SupervisorError(FailureKind.TIMEOUT, "systemd_status timed out after 5000ms", 5000.04)
        assert err.to_json() == {
            "type": "timeout",
            "message": "systemd_status timed out after 5000ms",
            "duration_ms": 5000.0,
            "retryable": True,
            "suggestion": suggestion_for(FailureKind.TIMEOUT),
        }
        assert str(err) == "systemd_status timed out after 5000ms"

    def test_kind_from_string(self):
        err = SupervisorError("permission_denied", "Access denied")
        assert err.kind == FailureKind.PERMISSION_DENIED
        assert err.retryable is False


# ──────────────────────────── Settings ──────────────────────────

class TestSettings:
    def test_defaults(self):
        config = SupervisorConfig()
        assert config.circuit_failure_threshold == 5
        assert config.circuit_open_duration_ms == 30000
        assert config.circuit_exempt_categories == ("diagnostic",)

    def test_partial_override(self):
        config = SupervisorConfig.from_dict({"query_timeout_ms": 15000, "adaptive_timeout": False})
        assert config.query_timeout_ms == 15000
        assert config.adaptive_timeout is False
        assert config.status_timeout_ms == 5000

    def test_unknown_keys_ignored(self):
        config = SupervisorConfig.from_dict({"bogus": 1, "circuit_recovery_threshold": 3})
        assert config.circuit_recovery_threshold == 3
        assert not hasattr(config, "bogus")

    def test_exempt_list_becomes_tuple(self):
        config = SupervisorConfig.from_dict({"circuit_exempt_categories": ["diagnostic", "heavy"]})
        assert config.circuit_exempt_categories == ("diagnostic", "heavy")

    def test_unknown_exempt_category_dropped(self):
        config = SupervisorConfig.from_dict({"circuit_exempt_categories": ["heavy", "reboot"]})
        assert config.circuit_exempt_categories == ("heavy",)

    def test_non_dict_gives_defaults(self):
        assert SupervisorConfig.from_dict(None) == SupervisorConfig()
        assert SupervisorConfig.from_dict("nope") == SupervisorConfig()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
