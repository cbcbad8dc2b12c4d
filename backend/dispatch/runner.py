"""
Unitwatch — Guarded Command Runner

Runs systemctl/journalctl commands, locally or over SSH, under the
supervisor's contract:
  1. ask can_execute(); an open circuit fails fast, nothing is spawned
  2. ask get_timeout() for the tool's category
  3. race the process against that deadline
  4. report the outcome (success or classified failure) back

Usage:
    runner = CommandRunner(supervisor, host="web-01", user="ops")
    result = await runner.run("systemd_unit_status", ["systemctl", "status", "nginx"])
"""
import asyncio
import contextlib
import logging
import shlex
import time
from pathlib import Path
from typing import Optional, Sequence

from dispatch.categories import classify_command
from dispatch.models import CommandResult
from resilience.errors import FailureKind, SupervisorError
from resilience.supervisor import Supervisor

logger = logging.getLogger("unitwatch.dispatch.runner")

SSH_CONNECT_TIMEOUT = 5
_MAX_OUTPUT = 64_000

_AUTH_MARKERS = (
    "permission denied (publickey",
    "host key verification failed",
    "too many authentication failures",
)
_PERMISSION_MARKERS = (
    "access denied",
    "permission denied",
    "interactive authentication required",
    "operation not permitted",
)


def ssh_wrap(argv: Sequence[str], host: str = "", user: str = "",
             ssh_port: int = 22, ssh_key: str = "") -> list[str]:
    """Command line for argv, wrapped in a non-interactive ssh call when host is set."""
    if not host:
        return list(argv)

    ssh_cmd = [
        "ssh",
        "-o", f"ConnectTimeout={SSH_CONNECT_TIMEOUT}",
        "-o", "StrictHostKeyChecking=accept-new",
        "-o", "BatchMode=yes",
        "-p", str(ssh_port),
    ]
    if ssh_key:
        ssh_cmd.extend(["-i", str(Path(ssh_key).expanduser())])

    ssh_cmd.append(f"{user}@{host}" if user else host)
    ssh_cmd.append(shlex.join(argv))
    return ssh_cmd


def classify_failure(returncode: int, stderr: str, remote: bool) -> FailureKind:
    """Map a non-zero exit to the failure taxonomy."""
    text = stderr.lower()

    # ssh reserves 255 for its own errors
    if remote and returncode == 255:
        if any(marker in text for marker in _AUTH_MARKERS):
            return FailureKind.AUTH_FAILED
        return FailureKind.CONNECTION_FAILED

    if any(marker in text for marker in _PERMISSION_MARKERS):
        return FailureKind.PERMISSION_DENIED
    return FailureKind.COMMAND_ERROR


async def kill_and_reap(proc):
    """Kill and reap a child process."""
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    await proc.wait()


class CommandRunner:
    """Executes protected commands on behalf of the tool layer."""

    def __init__(self, supervisor: Supervisor, host: str = "", user: str = "",
                 ssh_port: int = 22, ssh_key: str = ""):
        self._supervisor = supervisor
        self.host = host
        self.user = user
        self.ssh_port = ssh_port
        self.ssh_key = ssh_key

    def build_command(self, argv: Sequence[str]) -> list[str]:
        return ssh_wrap(argv, self.host, self.user, self.ssh_port, self.ssh_key)

    async def run(self, tool_name: str, argv: Sequence[str],
                  timeout_override_ms: Optional[float] = None) -> CommandResult:
        """
        Run one protected command.

        Raises SupervisorError for every failure kind; CancelledError is
        recorded as "cancelled" and re-raised.
        """
        category = classify_command(tool_name)

        decision = self._supervisor.can_execute()
        if not decision.allowed:
            self._supervisor.record_failure(tool_name, category, 0, FailureKind.CIRCUIT_OPEN)
            raise SupervisorError(FailureKind.CIRCUIT_OPEN, decision.reason)

        timeout = self._supervisor.get_timeout(category, timeout_override_ms)
        cmd = self.build_command(argv)
        logger.info(f"{tool_name} ({category.value}, timeout {timeout.timeout_ms:.0f}ms: {timeout.reason})")

        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            # Missing ssh/systemctl binary or fork failure
            kind = FailureKind.CONNECTION_FAILED if self.host else FailureKind.COMMAND_ERROR
            raise self._fail(tool_name, category, kind, f"Cannot start {cmd[0]}: {e}", start) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout.timeout_sec)
        except asyncio.TimeoutError:
            await kill_and_reap(proc)
            raise self._fail(
                tool_name, category, FailureKind.TIMEOUT,
                f"{tool_name} timed out after {timeout.timeout_ms:.0f}ms", start,
            )
        except asyncio.CancelledError:
            await kill_and_reap(proc)
            elapsed = (time.monotonic() - start) * 1000
            self._supervisor.record_failure(tool_name, category, elapsed, FailureKind.CANCELLED)
            raise

        elapsed = (time.monotonic() - start) * 1000
        out = stdout.decode(errors="replace")[:_MAX_OUTPUT]
        err = stderr.decode(errors="replace")[:_MAX_OUTPUT]

        if proc.returncode != 0:
            kind = classify_failure(proc.returncode, err, remote=bool(self.host))
            message = err.strip()[:500] or f"{tool_name} exited with {proc.returncode}"
            raise self._fail(tool_name, category, kind, message, start)

        self._supervisor.record_success(tool_name, category, elapsed)
        return CommandResult(
            tool_name=tool_name,
            ok=True,
            stdout=out,
            stderr=err,
            exit_code=proc.returncode,
            elapsed_ms=elapsed,
            timeout_ms=timeout.timeout_ms,
        )

    def _fail(self, tool_name, category, kind: FailureKind, message: str,
              start: float) -> SupervisorError:
        """Record a classified failure and build the error to raise."""
        elapsed = (time.monotonic() - start) * 1000
        self._supervisor.record_failure(tool_name, category, elapsed, kind)
        logger.warning(f"{tool_name} failed ({kind.value}): {message}")
        return SupervisorError(kind, message, elapsed)
