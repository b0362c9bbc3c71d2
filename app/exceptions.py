from typing import Any, Dict, Optional


class ServerManagerError(Exception):
    """Base class for every error the server manager reports to callers.

    ``kind`` is the stable name clients switch on, ``status_code`` is the
    HTTP status the API layer maps it to.
    """

    kind = "ServerManagerError"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, "details": self.details}


class ValidationError(ServerManagerError):
    kind = "ValidationError"
    status_code = 400

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        self.errors = dict(errors or {})
        super().__init__(message, {"fields": self.errors} if self.errors else None)


class CommandRejectedError(ValidationError):
    """A console command was refused by the black/white list."""

    def __init__(self, command: str, reason: str):
        self.command = command
        super().__init__(f"Command '{command}' rejected: {reason}", {"command": reason})


class NotFoundError(ServerManagerError):
    kind = "NotFoundError"
    status_code = 404


class ConflictError(ServerManagerError):
    kind = "ConflictError"
    status_code = 409


class InvalidStateError(ServerManagerError):
    kind = "InvalidStateError"
    status_code = 409

    def __init__(self, message: str, state: Optional[str] = None):
        super().__init__(message, {"state": state} if state else None)
        self.state = state


class ServerTimeoutError(ServerManagerError):
    kind = "TimeoutError"
    status_code = 503


class DisabledError(ServerManagerError):
    kind = "DisabledError"
    status_code = 422


class NotRunningError(ServerManagerError):
    kind = "NotRunningError"
    status_code = 503


class ResourceExhaustedError(ServerManagerError):
    kind = "ResourceExhaustedError"
    status_code = 503


class ServerProcessError(ServerManagerError):
    """The managed process failed in a way the supervisor cannot recover from."""

    kind = "ProcessError"
    status_code = 500


class WorkshopError(ServerManagerError):
    """The workshop could not be reached or answered with something unusable."""

    kind = "WorkshopError"
    status_code = 502
