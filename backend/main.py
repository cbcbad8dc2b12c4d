"""
Unitwatch — FastAPI Server

Status surface for the resilience supervisor: current health and circuit
state, command/health history, effective timeouts, manual circuit reset.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query

from config import (
    DB_PATH,
    HOST,
    PORT,
    SYSTEMD_HOST,
    SYSTEMD_SSH_KEY,
    SYSTEMD_SSH_PORT,
    SYSTEMD_USER,
)
from dispatch.probe import systemctl_version_probe
from resilience.models import Category
from resilience.settings import load_supervisor_config
from resilience.store import HOUR_MS
from resilience.supervisor import Supervisor

# ──────────────────────────── Logging ────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-20s | %(levelname)-7s | %(message)s",
    datefmt="%H:%M:%S"
)
logger = logging.getLogger("unitwatch.server")


def build_supervisor() -> Supervisor:
    """Supervisor wired to config.json and the configured systemd target."""
    probe = systemctl_version_probe(
        host=SYSTEMD_HOST,
        user=SYSTEMD_USER,
        ssh_port=SYSTEMD_SSH_PORT,
        ssh_key=SYSTEMD_SSH_KEY,
    )
    return Supervisor.create(load_supervisor_config(), probe=probe, db_path=DB_PATH)


# ──────────────────────────── Lifecycle ────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    supervisor: Optional[Supervisor] = getattr(app.state, "supervisor", None)
    if supervisor is None:
        supervisor = build_supervisor()
        app.state.supervisor = supervisor

    target = SYSTEMD_HOST or "localhost"
    logger.info(f"Unitwatch supervising systemd on {target}")
    await supervisor.start()

    yield

    await supervisor.stop()
    supervisor.close()
    app.state.supervisor = None
    logger.info("Unitwatch stopped")


app = FastAPI(
    title="Unitwatch",
    description="Resilience supervisor for systemd command execution",
    version="1.0.0",
    lifespan=lifespan,
)


def _supervisor() -> Supervisor:
    supervisor = getattr(app.state, "supervisor", None)
    if supervisor is None:
        raise HTTPException(status_code=503, detail="Supervisor not running")
    return supervisor


# ──────────────────────────── Endpoints ────────────────────────────
@app.get("/health")
async def health_check():
    """Live health classification and circuit state."""
    supervisor = _supervisor()
    return {
        "status": "ok",
        "data": supervisor.get_stats(),
        "gate": supervisor.can_execute().to_dict(),
    }


@app.get("/health/history")
async def health_history(hours: float = Query(24, gt=0, le=24 * 7)):
    """Per-category command stats and recent health checks."""
    return {"status": "ok", "data": _supervisor().get_database_stats(int(hours * HOUR_MS))}


@app.get("/health/timeouts")
async def effective_timeouts():
    """Timeout each category would get right now, with the rules that fired."""
    supervisor = _supervisor()
    return {
        "status": "ok",
        "data": {c.value: supervisor.get_timeout(c).to_dict() for c in Category},
    }


@app.post("/health/circuit/reset")
async def reset_circuit():
    """Force the circuit back to closed."""
    supervisor = _supervisor()
    supervisor.circuit.reset()
    return {"status": "ok", "data": supervisor.circuit.get_status()}


# ──────────────────────────── Entry Point ────────────────────────────
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=HOST,
        port=PORT,
        log_level="info"
    )
