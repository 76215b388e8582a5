"""Preview orchestrator error types.

Error codes are stable strings for programmatic handling. Every error is
rendered by one FastAPI exception handler as::

    {"error": "<message>", "code": "<code>", "requestId": "..."}
"""

from __future__ import annotations

from typing import Any


class PreviewError(Exception):
    """Base error for all orchestrator exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        if request_id:
            body["requestId"] = request_id
        return body


class ValidationError(PreviewError):
    """Request validation error (400)."""

    code = "validation_error"
    message = "Validation error"
    status_code = 400


class InvalidPathError(ValidationError):
    """A file path is empty, absolute, or escapes the project root (400)."""

    code = "invalid_path"
    message = "Invalid file path"


class NotFoundError(PreviewError):
    """Resource not found (404)."""

    code = "not_found"
    message = "Resource not found"
    status_code = 404


class NoActiveSessionError(PreviewError):
    """The workspace has no running preview session (409)."""

    code = "no_active_session"
    message = "No active preview session"
    status_code = 409


class ProvisioningError(PreviewError):
    """Starting a preview session failed (500)."""

    code = "provisioning_failed"
    message = "Failed to start preview"
    status_code = 500


class StartTimeoutError(ProvisioningError):
    """Starting a preview session exceeded the start timeout (500)."""

    code = "start_timeout"
    message = "Preview start timed out"


class SyncAgentError(PreviewError):
    """The sync agent rejected a request or could not be reached (500)."""

    code = "sync_agent_error"
    message = "Sync agent error"
    status_code = 500


class RequestTimeoutError(PreviewError):
    """Operation timed out (504).

    Note: Named to avoid shadowing Python's builtin TimeoutError.
    """

    code = "timeout"
    message = "Operation timed out"
    status_code = 504
