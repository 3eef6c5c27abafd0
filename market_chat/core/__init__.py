"""Core utilities for the application"""

from market_chat.core.security import verify_token, extract_bearer_token
from market_chat.core.exceptions import (
    ChatServiceError,
    Unauthenticated,
    Unauthorized,
    NotFound,
    InvalidArgument,
    Conflict,
    Internal,
)

__all__ = [
    "verify_token",
    "extract_bearer_token",
    "ChatServiceError",
    "Unauthenticated",
    "Unauthorized",
    "NotFound",
    "InvalidArgument",
    "Conflict",
    "Internal",
]
