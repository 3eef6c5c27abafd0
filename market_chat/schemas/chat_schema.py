"""Chat HTTP schemas"""

from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from market_chat.models.chat import Chat, Message, MessageSender


class AttachmentResponse(BaseModel):
    """Attachment metadata, without the stored bytes"""
    filename: str
    content_type: str
    size: int


class MessageResponse(BaseModel):
    """Response schema for message"""
    id: str
    sender: MessageSender
    sender_id: Optional[str] = None
    content: str
    attachments: List[AttachmentResponse] = []
    timestamp: datetime
    read: bool

    @classmethod
    def from_message(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            sender=message.sender,
            sender_id=message.sender_id,
            content=message.content,
            attachments=[
                AttachmentResponse(filename=a.filename, content_type=a.content_type, size=a.size)
                for a in message.attachments
            ],
            timestamp=message.timestamp,
            read=message.read,
        )


class ChatResponse(BaseModel):
    """Response schema for chat"""
    id: str
    customer_id: str
    admin_id: Optional[str] = None
    order_id: Optional[str] = None
    subject: Optional[str] = None
    is_order_chat: bool
    open: bool
    last_message: Optional[MessageResponse] = None
    unread_count: int = 0
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_chat(cls, chat: Chat, unread_count: int = 0) -> "ChatResponse":
        last = chat.last_message
        return cls(
            id=chat.id,
            customer_id=chat.customer_id,
            admin_id=chat.admin_id,
            order_id=chat.order_id,
            subject=chat.subject,
            is_order_chat=chat.is_order_chat,
            open=chat.open,
            last_message=MessageResponse.from_message(last) if last else None,
            unread_count=unread_count,
            created_at=chat.created_at,
            updated_at=chat.updated_at,
        )


class ChatWithMessagesResponse(ChatResponse):
    """Chat response with a page of messages, oldest first"""
    messages: List[MessageResponse]
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def from_page(cls, window: dict) -> "ChatWithMessagesResponse":
        chat: Chat = window["chat"]
        base = ChatResponse.from_chat(chat).model_dump()
        if window["page"] != 1:
            base["last_message"] = None
        return cls(
            **base,
            messages=[MessageResponse.from_message(m) for m in chat.messages],
            total=window["total"],
            page=window["page"],
            limit=window["limit"],
            pages=window["pages"],
        )


class SendMessageResponse(BaseModel):
    """Response after a message is stored"""
    success: bool = True
    chat_id: str
    created: bool = False
    message: MessageResponse


class MarkReadResponse(BaseModel):
    success: bool = True
    chat_id: str
    count: int


class UnreadSummaryResponse(BaseModel):
    success: bool = True
    total_unread: int
    chats_with_unread: int


class PollResponse(BaseModel):
    success: bool = True
    has_updates: bool
    count: int
    chat_ids: List[str]
