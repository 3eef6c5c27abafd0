"""Pydantic schemas for request/response validation and realtime events"""

from market_chat.schemas.chat_schema import (
    AttachmentResponse,
    MessageResponse,
    ChatResponse,
    ChatWithMessagesResponse,
    SendMessageResponse,
    MarkReadResponse,
    UnreadSummaryResponse,
    PollResponse,
)
from market_chat.schemas.events import (
    EventModel,
    parse_event,
    NewMessageOut,
    ChatNotificationOut,
    MessagesReadOut,
    TypingOut,
    ChatStatusOut,
    ErrorOut,
)

__all__ = [
    "AttachmentResponse",
    "MessageResponse",
    "ChatResponse",
    "ChatWithMessagesResponse",
    "SendMessageResponse",
    "MarkReadResponse",
    "UnreadSummaryResponse",
    "PollResponse",
    "EventModel",
    "parse_event",
    "NewMessageOut",
    "ChatNotificationOut",
    "MessagesReadOut",
    "TypingOut",
    "ChatStatusOut",
    "ErrorOut",
]
