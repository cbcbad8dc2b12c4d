"""
Unitwatch — Failure Taxonomy

Every failed protected call is reported with one of these kinds.
Each kind carries a retryable flag and a remediation hint for the caller.
"""
from enum import Enum


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION_FAILED = "connection_failed"
    AUTH_FAILED = "auth_failed"
    CIRCUIT_OPEN = "circuit_open"
    COMMAND_ERROR = "command_error"
    PERMISSION_DENIED = "permission_denied"
    CANCELLED = "cancelled"


# Retrying these cannot help without a change on the caller's side
_NOT_RETRYABLE = {FailureKind.PERMISSION_DENIED, FailureKind.COMMAND_ERROR}

_SUGGESTIONS = {
    FailureKind.TIMEOUT: "Check SSH connectivity and systemd responsiveness. Try: ssh <host> systemctl --version",
    FailureKind.CONNECTION_FAILED: "Verify the SSH host is reachable: ping <host>",
    FailureKind.AUTH_FAILED: "Check SSH key configuration: ssh -v <host>",
    FailureKind.CIRCUIT_OPEN: "System marked unhealthy. Automatic retry pending.",
    FailureKind.COMMAND_ERROR: "Check the unit name and systemd logs.",
    FailureKind.PERMISSION_DENIED: "Verify systemd permissions for the executing user.",
    FailureKind.CANCELLED: "Command was cancelled.",
}


def is_retryable(kind: FailureKind) -> bool:
    return FailureKind(kind) not in _NOT_RETRYABLE


def suggestion_for(kind: FailureKind) -> str:
    return _SUGGESTIONS.get(FailureKind(kind), "Unknown error occurred.")


class SupervisorError(Exception):
    """A classified failure of a protected call."""

    def __init__(self, kind: FailureKind, message: str, duration_ms: float = 0):
        super().__init__(message)
        self.kind = FailureKind(kind)
        self.message = message
        self.duration_ms = duration_ms
        self.retryable = is_retryable(self.kind)
        self.suggestion = suggestion_for(self.kind)

    def to_json(self) -> dict:
        return {
            "type": self.kind.value,
            "message": self.message,
            "duration_ms": round(self.duration_ms, 1),
            "retryable": self.retryable,
            "suggestion": self.suggestion,
        }


class StoreError(Exception):
    """The durable store could not be opened."""
    pass


class StoreLockedError(StoreError):
    """Another live process owns the store file."""
    pass
