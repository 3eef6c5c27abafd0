"""User and identity models"""

from pydantic import BaseModel
from typing import Optional
from enum import Enum


class UserRole(str, Enum):
    """User role enumeration"""
    CLIENT = "client"
    SUPPORT = "support"
    PRODUCT_MANAGER = "product_manager"
    ADMIN = "admin"


class ChatRole(str, Enum):
    """Side of a conversation an identity speaks for"""
    USER = "user"
    ADMIN = "admin"


# Account roles that answer customers as the admin side of a chat
STAFF_ROLES = {UserRole.ADMIN.value, UserRole.SUPPORT.value}


class Identity(BaseModel):
    """Authenticated caller as seen by the chat subsystem"""
    id: str
    role: ChatRole
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ChatRole.ADMIN

    @classmethod
    def from_user(cls, user: dict) -> "Identity":
        """Build an identity from a ``users`` document."""
        role = ChatRole.ADMIN if user.get("role") in STAFF_ROLES else ChatRole.USER
        return cls(
            id=str(user["_id"]),
            role=role,
            name=user.get("name"),
            email=user.get("email"),
        )
