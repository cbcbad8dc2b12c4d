"""
Unitwatch — Health Probe

Cheap liveness check of the managed systemd: `systemctl --version`,
locally or over SSH. Used only by the health monitor, never on the
command path, so it bypasses the supervisor's gate.
"""
import asyncio

from dispatch.runner import kill_and_reap, ssh_wrap


def systemctl_version_probe(host: str = "", user: str = "", ssh_port: int = 22,
                            ssh_key: str = ""):
    """Build a zero-argument async probe. It raises when systemd does not answer."""
    cmd = ssh_wrap(["systemctl", "--version"], host, user, ssh_port, ssh_key)

    async def probe():
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # The monitor's probe timeout cancels us; don't leave the process behind
            await kill_and_reap(proc)
            raise

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[:200]
            raise RuntimeError(f"systemctl --version exited {proc.returncode}: {detail}")

    return probe
