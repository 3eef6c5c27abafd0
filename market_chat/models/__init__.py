"""MongoDB models using Pydantic"""

from market_chat.models.user import UserRole, ChatRole, Identity, STAFF_ROLES
from market_chat.models.chat import Chat, Message, MessageSender, AttachmentRef

__all__ = [
    "UserRole",
    "ChatRole",
    "Identity",
    "STAFF_ROLES",
    "Chat",
    "Message",
    "MessageSender",
    "AttachmentRef",
]
