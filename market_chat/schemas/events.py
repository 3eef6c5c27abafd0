"""Realtime event payloads

Inbound payloads accept camelCase keys (``chatId``) as well as snake_case.
Outbound payloads are dumped with camelCase keys.
"""

import base64
import binascii
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ValidationError
from pydantic.alias_generators import to_camel

from market_chat.core.exceptions import InvalidArgument
from market_chat.models.chat import Chat, Message
from market_chat.services.attachment_store import AttachmentUpload


class EventModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def parse_event(model, data) -> "EventModel":
    """Validate an inbound payload, turning validation errors into ``InvalidArgument``."""
    try:
        return model.model_validate(data if data is not None else {})
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "payload"
        raise InvalidArgument(f"Invalid '{field}': {first.get('msg')}") from e


# Inbound

class AuthenticateIn(EventModel):
    token: str


class AttachmentIn(EventModel):
    filename: str
    content_type: str = "application/octet-stream"
    data: str  # base64

    def to_upload(self) -> AttachmentUpload:
        try:
            raw = base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidArgument(f"Attachment '{self.filename}' is not valid base64") from e
        return AttachmentUpload(filename=self.filename, content_type=self.content_type, data=raw)


class ChatTargetIn(EventModel):
    chat_id: Optional[str] = None
    order_id: Optional[str] = None


class NewMessageIn(ChatTargetIn):
    content: str = ""
    attachments: List[AttachmentIn] = []


class TypingIn(ChatTargetIn):
    is_typing: bool = True


class MarkReadIn(EventModel):
    chat_id: str


class LeaveChatIn(EventModel):
    chat_id: str


# Outbound

class SenderOut(EventModel):
    id: Optional[str] = None
    role: str


class AttachmentOut(EventModel):
    filename: str
    content_type: str
    size: int


class NewMessageOut(EventModel):
    chat_id: str
    order_id: Optional[str] = None
    message_id: str
    sender: SenderOut
    content: str
    attachments: List[AttachmentOut] = []
    timestamp: datetime

    @classmethod
    def build(cls, chat: Chat, message: Message) -> "NewMessageOut":
        return cls(
            chat_id=chat.id,
            order_id=chat.order_id,
            message_id=message.id,
            sender=SenderOut(id=message.sender_id, role=message.sender.value),
            content=message.content,
            attachments=[
                AttachmentOut(filename=a.filename, content_type=a.content_type, size=a.size)
                for a in message.attachments
            ],
            timestamp=message.timestamp,
        )


class ChatNotificationOut(EventModel):
    chat_id: str
    order_id: Optional[str] = None
    subject: Optional[str] = None
    is_order_chat: bool
    customer_id: str
    sender: SenderOut
    preview: str
    timestamp: datetime

    @classmethod
    def build(cls, chat: Chat, message: Message) -> "ChatNotificationOut":
        preview = message.content[:100]
        if not preview and message.attachments:
            preview = f"[{len(message.attachments)} attachment(s)]"
        return cls(
            chat_id=chat.id,
            order_id=chat.order_id,
            subject=chat.subject,
            is_order_chat=chat.is_order_chat,
            customer_id=chat.customer_id,
            sender=SenderOut(id=message.sender_id, role=message.sender.value),
            preview=preview,
            timestamp=message.timestamp,
        )


class MessagesReadOut(EventModel):
    chat_id: str
    read_by: str
    user_id: str
    count: int


class TypingOut(EventModel):
    chat_id: str
    user_id: str
    role: str
    is_typing: bool


class ChatStatusOut(EventModel):
    chat_id: str
    open: bool


class ChatMembershipOut(EventModel):
    chat_id: str


class ErrorOut(EventModel):
    message: str
