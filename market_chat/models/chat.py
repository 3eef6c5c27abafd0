"""Chat thread and message models"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
from enum import Enum


class MessageSender(str, Enum):
    """Message sender type"""
    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"


class AttachmentRef(BaseModel):
    """Reference to attachment bytes held by the attachment store"""
    filename: str
    content_type: str
    size: int  # bytes
    handle: str


class Message(BaseModel):
    """Entry in a chat's append-only message log"""
    id: str = Field(alias="_id")
    sender: MessageSender
    sender_id: Optional[str] = None
    content: str = ""
    attachments: List[AttachmentRef] = []
    timestamp: datetime
    read: bool = False

    class Config:
        populate_by_name = True


class Chat(BaseModel):
    """Chat thread, either tied to an order or standalone"""
    id: str = Field(alias="_id")
    customer_id: str
    admin_id: Optional[str] = None
    order_id: Optional[str] = None
    subject: Optional[str] = None
    is_order_chat: bool = False
    open: bool = True
    messages: List[Message] = []
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "customer_id": "507f1f77bcf86cd799439011",
                "order_id": "507f191e810c19729de860ea",
                "is_order_chat": True,
                "open": True,
                "messages": []
            }
        }

    @classmethod
    def from_document(cls, doc: dict) -> "Chat":
        """Build a chat from a MongoDB document, converting the ObjectId."""
        data = dict(doc)
        data["_id"] = str(data["_id"])
        return cls(**data)

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None
