"""
Domain error taxonomy.

Every refused operation raises one of these; the FastAPI handlers in
``app.main`` turn them into ``{"error", "kind", "details"}`` responses.
"""
from typing import Any, Optional

from fastapi import status


class DispatchError(Exception):
    kind: str = "internal"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "kind": self.kind}
        if self.details:
            body["details"] = self.details
        return body


class InvalidInput(DispatchError):
    """Malformed or missing fields, bad coordinates, or a transition from the wrong state."""
    kind = "invalid_input"
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthenticated(DispatchError):
    kind = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(DispatchError):
    """Wrong role, non-owner, or an account that is not active."""
    kind = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(DispatchError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(DispatchError):
    """Duplicate open trip, or a transition lost to a concurrent writer."""
    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT


class Unavailable(DispatchError):
    """No eligible driver near the pickup point; the request was not stored."""
    kind = "unavailable"
    status_code = status.HTTP_404_NOT_FOUND


class Internal(DispatchError):
    kind = "internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, error_id: str, message: str = "Internal server error"):
        super().__init__(message, details={"error_id": error_id})
        self.error_id = error_id
