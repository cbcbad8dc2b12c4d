"""
Unitwatch — Command Dispatch

Caller side of the supervisor contract: classifies systemd tools, runs
them under the supervisor's gate and deadline, and supplies the health probe.
"""
from dispatch.categories import classify_command
from dispatch.models import CommandResult
from dispatch.probe import systemctl_version_probe
from dispatch.runner import CommandRunner

__all__ = [
    "classify_command",
    "CommandResult",
    "CommandRunner",
    "systemctl_version_probe",
]
