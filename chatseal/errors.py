"""
Error types surfaced to dashboard-facing endpoints.

Every ServiceError becomes a JSON body of the form
``{"error": <message>, **extra}`` with the error's status code.
"""

from typing import Any, Dict, Optional

from fastapi import status


class ServiceError(Exception):
    """Base class for errors that map directly to an HTTP response."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: Any, **extra: Any):
        super().__init__(message if isinstance(message, str) else repr(message))
        self.message = message
        self.extra: Dict[str, Any] = {k: v for k, v in extra.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


class BadRequestError(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(ServiceError):
    status_code = status.HTTP_409_CONFLICT


class NotConfiguredError(ServiceError):
    status_code = status.HTTP_501_NOT_IMPLEMENTED


class UpstreamError(ServiceError):
    """A load-bearing call to the Graph API failed; carries the platform detail."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class MissingScopesError(ForbiddenError):
    def __init__(self, missing: list, hint: Optional[str] = None):
        super().__init__("Missing required scopes", missing=missing, hint=hint)
        self.missing = missing
