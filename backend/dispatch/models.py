"""
Unitwatch — Dispatch Data Models
Result contract between the guarded runner and its callers.
"""
from dataclasses import dataclass


@dataclass
class CommandResult:
    """Result of a successful protected command."""
    tool_name: str
    ok: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    elapsed_ms: float = 0
    timeout_ms: float = 0

    def to_json(self) -> dict:
        return {
            "tool_name": self.tool_name,
            "ok": self.ok,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "elapsed_ms": round(self.elapsed_ms, 1),
            "timeout_ms": self.timeout_ms,
        }
