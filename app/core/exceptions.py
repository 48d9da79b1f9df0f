"""Domain exceptions raised by the permission services.

Routes do not translate these by hand: app.main registers a handler that maps
each class to its HTTP status code.
"""
from fastapi import status


class PermissionEngineError(Exception):
    """Base exception for the permission engine."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class NotFoundError(PermissionEngineError):
    """Raised when a user, role, permission or override does not exist."""
    status_code = status.HTTP_404_NOT_FOUND


class ValidationError(PermissionEngineError):
    """Raised when input validation fails. Always raised before any write."""
    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(PermissionEngineError):
    """Raised when the actor lacks the authority to perform a mutation."""
    status_code = status.HTTP_403_FORBIDDEN
