"""Error taxonomy shared by the HTTP and realtime surfaces"""

from fastapi import status


class ChatServiceError(Exception):
    """Base error carrying a stable code, a user-facing message and an HTTP status."""

    code = "SERVICE_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Service error"

    def __init__(self, message: str = None, details: dict = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class Unauthenticated(ChatServiceError):
    code = "UNAUTHENTICATED"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Not authenticated"


class Unauthorized(ChatServiceError):
    code = "UNAUTHORIZED"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not authorized to access this resource"


class NotFound(ChatServiceError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class InvalidArgument(ChatServiceError):
    code = "INVALID_ARGUMENT"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class Conflict(ChatServiceError):
    # Reserved for optimistic-concurrency failures.
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflicting update"


class Internal(ChatServiceError):
    code = "INTERNAL"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An unexpected error occurred. Please try again later."
