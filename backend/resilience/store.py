"""
Unitwatch — Supervisor Store

SQLite-backed persistence for the supervisor:
- Circuit breaker state survives restarts
- Command history for adaptive timeout learning
- Health check log for trend analysis

Retention keeps it lean (swept in bulk at startup):
- Command history: 7 days
- Health checks: 24 hours

One owning process per file. A second live process is refused via a PID
lock file next to the database. If the database breaks at runtime the store
switches to an in-memory copy: durability is lost, availability is not.

Usage:
    store = SupervisorStore(DB_PATH).init()
    store.append_outcome("systemd_restart", "action", 812.0, True)
    p95 = store.query_p95("action")   # None until 10 samples exist
"""
import contextlib
import logging
import os
import sqlite3
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from resilience.errors import StoreError, StoreLockedError
from resilience.models import CircuitPatch, CircuitRecord, CircuitState, now_ms

logger = logging.getLogger("unitwatch.resilience.store")

SCHEMA_VERSION = 1

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

COMMAND_RETENTION_MS = 7 * DAY_MS
HEALTH_RETENTION_MS = DAY_MS

P95_WINDOW = 100        # most recent successful outcomes considered
P95_MIN_SAMPLES = 10    # below this the store reports "insufficient data"

MEMORY = ":memory:"

# An empty lock file this young is still being written by its owner
LOCK_WRITE_GRACE_SEC = 5

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS circuit_state (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        state TEXT NOT NULL DEFAULT 'closed',
        failure_count INTEGER DEFAULT 0,
        last_failure_at INTEGER,
        opened_at INTEGER,
        recovery_successes INTEGER DEFAULT 0,
        updated_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS command_history (
        id INTEGER PRIMARY KEY,
        tool_name TEXT NOT NULL,
        category TEXT NOT NULL,
        duration_ms INTEGER NOT NULL,
        success INTEGER NOT NULL,
        error_type TEXT,
        executed_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS health_checks (
        id INTEGER PRIMARY KEY,
        status TEXT NOT NULL,
        latency_ms INTEGER,
        ping_success INTEGER NOT NULL,
        checked_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY
    );

    CREATE INDEX IF NOT EXISTS idx_history_executed ON command_history(executed_at);
    CREATE INDEX IF NOT EXISTS idx_health_checked ON health_checks(checked_at);
    CREATE INDEX IF NOT EXISTS idx_history_category ON command_history(category);
"""


def _column(value) -> str:
    """Stored text for an enum member or a plain string."""
    return value.value if isinstance(value, Enum) else str(value)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by someone else
    except OSError:
        return False
    return True


class SupervisorStore:
    """Sole persistence and retention authority for the supervisor."""

    def __init__(self, db_path, clock: Optional[Callable[[], int]] = None):
        self._in_memory = str(db_path) == MEMORY
        self._db_path = Path(db_path) if not self._in_memory else None
        self._clock = clock or now_ms
        self._conn: Optional[sqlite3.Connection] = None
        self._lock_path: Optional[Path] = None
        self._circuit_cache = CircuitRecord()
        self._closed = False
        self.ephemeral = self._in_memory

    @classmethod
    def ephemeral_store(cls, clock: Optional[Callable[[], int]] = None) -> "SupervisorStore":
        """An initialised in-memory store. Nothing survives the process."""
        return cls(MEMORY, clock=clock).init()

    @property
    def path(self) -> str:
        return MEMORY if self._in_memory else str(self._db_path)

    # ────────────────────── Lifecycle ──────────────────────

    def init(self) -> "SupervisorStore":
        """
        Open the database, create the schema, ensure the circuit row exists
        and sweep expired rows.

        Raises StoreError only when the file cannot be opened at all
        (StoreLockedError when another live process owns it).
        """
        conn = None
        try:
            if not self._in_memory:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                self._acquire_owner_lock()
            conn = self._connect()
            self._prepare(conn)
        except StoreLockedError:
            raise
        except (sqlite3.Error, OSError, StoreError) as e:
            if conn is not None:
                conn.close()
            self._release_owner_lock()
            raise StoreError(f"Cannot open supervisor store {self.path}: {e}") from e

        self._conn = conn
        self._closed = False
        self._circuit_cache = self._read_circuit(conn)
        self.cleanup_old_data()
        logger.info(f"Supervisor store initialized: {self.path}")
        return self

    def close(self):
        """Close the database and release the owner lock."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Supervisor store closed")
        self._closed = True
        self._release_owner_lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if not self._in_memory:
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _prepare(self, conn: sqlite3.Connection):
        conn.executescript(_SCHEMA)

        row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
        version = row["version"]
        if version is None:
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        elif version > SCHEMA_VERSION:
            raise StoreError(
                f"Schema version {version} is newer than supported ({SCHEMA_VERSION})"
            )

        conn.execute(
            "INSERT OR IGNORE INTO circuit_state (id, state, updated_at) VALUES (1, 'closed', ?)",
            (self._clock(),),
        )
        conn.commit()

    # ────────────────────── Owner lock ──────────────────────

    def _acquire_owner_lock(self):
        """Create <db>.lock exclusively; an existing lock is taken over only if stale."""
        lock_path = self._db_path.with_name(self._db_path.name + ".lock")
        for _ in range(2):
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                self._check_stale_lock(lock_path)
                with contextlib.suppress(FileNotFoundError):
                    lock_path.unlink()
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self._lock_path = lock_path
            return

        raise StoreLockedError(f"{lock_path} was claimed by another process during startup")

    def _check_stale_lock(self, lock_path: Path):
        """Raise StoreLockedError unless the existing lock belongs to no live process."""
        try:
            text = lock_path.read_text().strip()
            age = time.time() - lock_path.stat().st_mtime
        except FileNotFoundError:
            return  # released between our open and read
        except OSError:
            text, age = "", LOCK_WRITE_GRACE_SEC

        if not text:
            if age < LOCK_WRITE_GRACE_SEC:
                raise StoreLockedError(f"{lock_path} is being claimed by another process")
            logger.info(f"Taking over empty store lock {lock_path}")
            return

        try:
            pid = int(text)
        except ValueError:
            pid = 0
        if pid and pid != os.getpid() and _pid_alive(pid):
            raise StoreLockedError(
                f"{self._db_path} is owned by live process {pid}; "
                f"concurrent multi-process use is not supported"
            )
        if pid and pid != os.getpid():
            logger.info(f"Taking over stale store lock from dead process {pid}")

    def _release_owner_lock(self):
        if self._lock_path is None:
            return
        with contextlib.suppress(OSError):
            if self._lock_path.read_text().strip() == str(os.getpid()):
                self._lock_path.unlink()
        self._lock_path = None

    # ────────────────────── Degradation ──────────────────────

    def _run(self, op: Callable[[sqlite3.Connection], object], default=None):
        """Run op against the connection, falling back to memory on sqlite errors."""
        if self._conn is None:
            if self._closed:
                # Late outcomes from calls still in flight at shutdown
                logger.warning("Supervisor store closed; operation dropped")
                return default
            raise StoreError("Supervisor store used before init()")
        try:
            return op(self._conn)
        except sqlite3.Error as e:
            if self.ephemeral:
                logger.warning(f"In-memory store operation failed: {e}")
                return default
            self._degrade(e)

        try:
            return op(self._conn)
        except sqlite3.Error as e:
            logger.warning(f"In-memory store operation failed: {e}")
            return default

    def _degrade(self, error: Exception):
        logger.warning(
            f"Supervisor store failed ({error}); continuing in memory only, "
            f"history will not survive a restart"
        )
        with contextlib.suppress(sqlite3.Error):
            self._conn.close()
        self._release_owner_lock()

        conn = sqlite3.connect(MEMORY, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        self._prepare(conn)
        self._write_circuit(conn, self._circuit_cache)
        self._conn = conn
        self.ephemeral = True

    # ────────────────────── Circuit state ──────────────────────

    @staticmethod
    def _read_circuit(conn: sqlite3.Connection) -> CircuitRecord:
        row = conn.execute("SELECT * FROM circuit_state WHERE id = 1").fetchone()
        return CircuitRecord(
            state=CircuitState(row["state"]),
            failure_count=row["failure_count"] or 0,
            last_failure_at=row["last_failure_at"],
            opened_at=row["opened_at"],
            recovery_successes=row["recovery_successes"] or 0,
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _write_circuit(conn: sqlite3.Connection, record: CircuitRecord):
        conn.execute(
            """UPDATE circuit_state SET
                   state = ?, failure_count = ?, last_failure_at = ?,
                   opened_at = ?, recovery_successes = ?, updated_at = ?
               WHERE id = 1""",
            (record.state.value, record.failure_count, record.last_failure_at,
             record.opened_at, record.recovery_successes, record.updated_at),
        )
        conn.commit()

    def load_circuit(self) -> CircuitRecord:
        record = self._run(self._read_circuit, default=self._circuit_cache)
        self._circuit_cache = record
        return record

    def save_circuit(self, patch: CircuitPatch) -> CircuitRecord:
        """Merge patch into the stored record and write it. updated_at always refreshes."""
        merged = patch.apply_to(self.load_circuit(), updated_at=self._clock())
        self._circuit_cache = merged
        self._run(lambda conn: self._write_circuit(conn, merged))
        return merged

    # ────────────────────── Appends ──────────────────────

    def append_outcome(self, tool_name: str, category: str, duration_ms: float,
                       success: bool, error_type: Optional[str] = None):
        row = (tool_name, _column(category), int(round(duration_ms)), int(success),
               error_type, self._clock())

        def op(conn):
            conn.execute(
                """INSERT INTO command_history
                   (tool_name, category, duration_ms, success, error_type, executed_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                row,
            )
            conn.commit()

        self._run(op)

    def append_health_sample(self, status: str, latency_ms: Optional[float], ping_success: bool):
        latency = int(round(latency_ms)) if latency_ms is not None else None
        row = (_column(status), latency, int(ping_success), self._clock())

        def op(conn):
            conn.execute(
                """INSERT INTO health_checks (status, latency_ms, ping_success, checked_at)
                   VALUES (?, ?, ?, ?)""",
                row,
            )
            conn.commit()

        self._run(op)

    # ────────────────────── Queries ──────────────────────

    def query_p95(self, category: str) -> Optional[float]:
        """
        P95 duration over the last 100 successful outcomes of a category.
        Returns None (insufficient data, not zero) below 10 samples.
        """
        def op(conn):
            return conn.execute(
                """SELECT duration_ms FROM command_history
                   WHERE category = ? AND success = 1
                   ORDER BY executed_at DESC, id DESC
                   LIMIT ?""",
                (_column(category), P95_WINDOW),
            ).fetchall()

        rows = self._run(op, default=[])
        if len(rows) < P95_MIN_SAMPLES:
            return None
        durations = sorted(r["duration_ms"] for r in rows)
        return durations[int(len(durations) * 0.95)]

    def query_recent_success_rate(self, window_ms: int = HOUR_MS) -> float:
        """Successes / total inside the window. No samples means 1.0."""
        cutoff = self._clock() - window_ms

        def op(conn):
            return conn.execute(
                """SELECT COUNT(*) AS total, COALESCE(SUM(success), 0) AS successes
                   FROM command_history WHERE executed_at > ?""",
                (cutoff,),
            ).fetchone()

        row = self._run(op)
        if row is None or row["total"] == 0:
            return 1.0
        return row["successes"] / row["total"]

    def recent_failure_times(self, window_ms: int,
                             exclude_categories: Iterable[str] = (),
                             exclude_error_types: Iterable[str] = ()) -> list[int]:
        """Failure timestamps inside the window, oldest first."""
        cutoff = self._clock() - window_ms
        categories = [_column(c) for c in exclude_categories]
        error_types = [_column(e) for e in exclude_error_types]

        sql = "SELECT executed_at FROM command_history WHERE success = 0 AND executed_at > ?"
        params: list = [cutoff]
        if categories:
            sql += f" AND category NOT IN ({', '.join('?' * len(categories))})"
            params.extend(categories)
        if error_types:
            sql += (f" AND (error_type IS NULL OR error_type NOT IN "
                    f"({', '.join('?' * len(error_types))}))")
            params.extend(error_types)
        sql += " ORDER BY executed_at ASC, id ASC"

        rows = self._run(lambda conn: conn.execute(sql, params).fetchall(), default=[])
        return [r["executed_at"] for r in rows]

    def query_stats(self, window_ms: int = DAY_MS, health_limit: int = 10) -> dict:
        """Per-category aggregates over the window plus the recent health trend."""
        now = self._clock()
        cutoff = now - window_ms

        def op(conn):
            categories = conn.execute(
                """SELECT category,
                          COUNT(*) AS total,
                          COALESCE(SUM(success), 0) AS successes,
                          AVG(duration_ms) AS avg_duration
                   FROM command_history
                   WHERE executed_at > ?
                   GROUP BY category
                   ORDER BY category""",
                (cutoff,),
            ).fetchall()
            trend = conn.execute(
                """SELECT status, latency_ms, ping_success, checked_at
                   FROM health_checks
                   ORDER BY checked_at DESC, id DESC
                   LIMIT ?""",
                (health_limit,),
            ).fetchall()
            return categories, trend

        categories, trend = self._run(op, default=([], []))

        total = sum(c["total"] for c in categories)
        successes = sum(c["successes"] for c in categories)

        return {
            "window_ms": window_ms,
            "commands": total,
            "success_rate": successes / total if total else 1.0,
            "categories": {
                c["category"]: {
                    "total": c["total"],
                    "successes": c["successes"],
                    "success_rate": c["successes"] / c["total"],
                    "avg_duration_ms": round(c["avg_duration"]),
                }
                for c in categories
            },
            "avg_latency_by_category": {
                c["category"]: round(c["avg_duration"]) for c in categories
            },
            "health_trend": [
                {
                    "status": h["status"],
                    "latency_ms": h["latency_ms"],
                    "ping_success": bool(h["ping_success"]),
                    "ago": f"{round((now - h['checked_at']) / MINUTE_MS)}m",
                }
                for h in trend
            ],
        }

    # ────────────────────── Retention ──────────────────────

    def cleanup_old_data(self) -> tuple[int, int]:
        """
        Delete command history older than 7 days and health checks older than 24h.
        A failed sweep is logged and skipped.
        """
        now = self._clock()
        try:
            commands = self._conn.execute(
                "DELETE FROM command_history WHERE executed_at < ?",
                (now - COMMAND_RETENTION_MS,),
            ).rowcount
            health = self._conn.execute(
                "DELETE FROM health_checks WHERE checked_at < ?",
                (now - HEALTH_RETENTION_MS,),
            ).rowcount
            self._conn.commit()
        except sqlite3.Error as e:
            logger.warning(f"Retention sweep skipped: {e}")
            return 0, 0

        if commands or health:
            logger.info(f"Cleanup: removed {commands} old commands, {health} old health checks")
        return commands, health
