"""Exceptions and the result type returned at operation boundaries."""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class TrakError(Exception):
    """Base exception for all trak errors"""

    pass


class TaskNotFoundError(TrakError):
    """Raised when a task, convoy or lock holder does not exist"""

    def __init__(self, message: str):
        super().__init__(message)


class InvalidTransitionError(TrakError):
    """Raised when a state change is not allowed from the current state"""

    pass


class LockConflictError(TrakError):
    """Raised when a different task holds the workspace lock"""

    def __init__(self, holder: dict[str, Any]):
        super().__init__(
            f"Workspace locked by {holder.get('taskId')} (agent: {holder.get('agent')})"
        )
        self.holder = holder


class GatewayError(TrakError):
    """Raised when the execution gateway rejects or fails a call"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayUnreachableError(GatewayError):
    """Raised when the gateway cannot be contacted at all"""

    def __init__(self, message: str = "Gateway not reachable"):
        super().__init__(message)


class ImportParseError(TrakError):
    """Raised for a portable log line that is not a valid task record"""

    def __init__(self, line_no: int, message: str):
        super().__init__(f"line {line_no}: {message}")
        self.line_no = line_no


class ErrorKind(Enum):
    """Discriminator for failed results."""
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    LOCK_CONFLICT = "lock_conflict"
    GATEWAY_UNREACHABLE = "gateway_unreachable"
    GATEWAY_ERROR = "gateway_error"
    IMPORT_PARSE_ERROR = "import_parse_error"
    VCS_ERROR = "vcs_error"
    CONFIG_ERROR = "config_error"


_KIND_BY_ERROR: list[tuple[type[TrakError], ErrorKind]] = [
    (TaskNotFoundError, ErrorKind.NOT_FOUND),
    (InvalidTransitionError, ErrorKind.INVALID_TRANSITION),
    (LockConflictError, ErrorKind.LOCK_CONFLICT),
    (GatewayUnreachableError, ErrorKind.GATEWAY_UNREACHABLE),
    (GatewayError, ErrorKind.GATEWAY_ERROR),
    (ImportParseError, ErrorKind.IMPORT_PARSE_ERROR),
]


@dataclass
class Result:
    """Outcome of a public operation.

    ``ok=True`` carries ``value``; ``ok=False`` carries ``kind`` and
    ``message`` so batch callers can aggregate failures without unwinding.
    """
    ok: bool
    value: Any = None
    kind: ErrorKind | None = None
    message: str = ""

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, value: Any = None) -> "Result":
        return cls(ok=False, value=value, kind=kind, message=message)

    @classmethod
    def from_error(cls, error: TrakError) -> "Result":
        """Map a trak exception onto a failed result."""
        for error_type, kind in _KIND_BY_ERROR:
            if isinstance(error, error_type):
                value = error.holder if isinstance(error, LockConflictError) else None
                return cls.failure(kind, str(error), value=value)
        raise TypeError(f"No result kind for {type(error).__name__}")

    def __bool__(self) -> bool:
        return self.ok
