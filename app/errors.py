"""
Service-level exceptions.

Service and helper modules raise these instead of ``HTTPException`` so
they stay usable outside a request (scripts, background jobs).  The
handlers registered in ``app.main`` turn them into JSON responses.
"""


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP status code."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message}


class ValidationError(ServiceError):
    """Client input was malformed; *field* names the offending parameter."""

    status_code = 400

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        return {"detail": self.message, "field": self.field}


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class AuthenticationRequired(ServiceError):
    status_code = 401


class PermissionDenied(ServiceError):
    status_code = 403
