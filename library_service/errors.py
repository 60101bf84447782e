"""Domain errors raised by the circulation services.

Each error carries a machine-readable ``error`` code and the HTTP status the
API layer answers with. Handlers in ``library_service.middleware.errors``
turn them into ``{"error": ..., "details": ...}`` payloads.
"""
from fastapi import status


class LibraryError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "InternalError"

    def __init__(self, details: str, error: str | None = None):
        super().__init__(details)
        self.details = details
        if error is not None:
            self.error = error


class NotFound(LibraryError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "NotFound"


class Forbidden(LibraryError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Forbidden"


class Conflict(LibraryError):
    status_code = status.HTTP_409_CONFLICT
    error = "Conflict"


class PolicyViolation(LibraryError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "PolicyViolation"


class InternalError(LibraryError):
    pass
