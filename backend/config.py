"""
Unitwatch — Central Configuration

Supports optional config.json override for user-customizable settings.
Supervisor tunables live under the "supervisor" key, the systemd target
under "systemd".
"""
import json
import logging
from pathlib import Path

logger = logging.getLogger("unitwatch.config")

# ──────────────────────────── Paths ────────────────────────────
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = PROJECT_ROOT / "data"

DATA_DIR.mkdir(parents=True, exist_ok=True)

# ──────────────────────────── User Config Override ────────────────────────────
# Optional, next to backend/
_user_config = {}
_config_path = PROJECT_ROOT / "config.json"
if _config_path.exists():
    try:
        _user_config = json.loads(_config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable {_config_path}: {e}")


def _cfg(key: str, default):
    """Get a config value, preferring user override from config.json."""
    return _user_config.get(key, default)


# ──────────────────────────── Server ────────────────────────────
HOST = _cfg("host", "127.0.0.1")
PORT = _cfg("port", 8766)

# ──────────────────────────── Persistence ────────────────────────────
DB_PATH = Path(_cfg("supervisor_db", str(DATA_DIR / "supervisor.db")))

# ──────────────────────────── systemd target ────────────────────────────
_systemd_cfg = _cfg("systemd", {})
if not isinstance(_systemd_cfg, dict):
    _systemd_cfg = {}

SYSTEMD_HOST = _systemd_cfg.get("host", "")         # empty = run locally
SYSTEMD_USER = _systemd_cfg.get("user", "")
SYSTEMD_SSH_PORT = _systemd_cfg.get("ssh_port", 22)
SYSTEMD_SSH_KEY = _systemd_cfg.get("ssh_key", "")
