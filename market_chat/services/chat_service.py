"""Chat operations shared by the HTTP routes and the realtime session

Every mutation follows the same order: access check, store write, then
broadcast. Nothing is broadcast unless the write returned.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from fastapi import Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from market_chat.core.exceptions import ChatServiceError, InvalidArgument, NotFound, Unauthorized
from market_chat.database import get_database
from market_chat.models.chat import AttachmentRef, Chat, Message
from market_chat.models.user import Identity
from market_chat.realtime.gateway import ADMIN_ROOM, Gateway, chat_room, get_gateway, user_room
from market_chat.schemas.events import (
    ChatNotificationOut,
    ChatStatusOut,
    MessagesReadOut,
    NewMessageOut,
    TypingOut,
)
from market_chat.services.access_guard import AccessGuard
from market_chat.services.attachment_store import AttachmentStore, AttachmentUpload, validate_uploads
from market_chat.services.chat_store import ChatStore, sender_for

logger = logging.getLogger(__name__)


@dataclass
class SentMessage:
    chat: Chat
    message: Message
    created: bool = False


class ChatService:
    """Access-checked chat operations with realtime notification"""

    def __init__(self, db: AsyncIOMotorDatabase, gateway: Gateway):
        self.store = ChatStore(db)
        self.guard = AccessGuard(db, self.store)
        self.attachments = AttachmentStore(db)
        self.gateway = gateway

    # Reads

    async def list_chats(self, identity: Identity) -> List[Chat]:
        return await self.store.list_for_customer(identity.id)

    async def list_admin_chats(self, identity: Identity, open: Optional[bool] = None) -> List[Chat]:
        self.guard.require_admin(identity)
        return await self.store.list_for_admin(open=open)

    async def get_chat(self, identity: Identity, chat_id: str, page: int = 1, limit: int = None) -> dict:
        await self.guard.authorize_chat(identity, chat_id)
        return await self.store.get_by_id(chat_id, page=page, page_size=limit)

    async def get_order_chat(self, identity: Identity, order_id: str, page: int = 1, limit: int = None) -> dict:
        chat = await self.guard.authorize_order_chat(identity, order_id)
        return await self.store.get_by_id(chat.id, page=page, page_size=limit)

    async def get_attachment(
        self, identity: Identity, chat_id: str, message_id: str, index: int
    ) -> Tuple[AttachmentRef, bytes]:
        chat = await self.guard.authorize_chat(identity, chat_id)
        message = next((m for m in chat.messages if m.id == message_id), None)
        if message is None or not 0 <= index < len(message.attachments):
            raise NotFound("Attachment not found")
        return await self.attachments.load(message.attachments[index].handle)

    async def resolve_chat(
        self, identity: Identity, chat_id: Optional[str] = None, order_id: Optional[str] = None
    ) -> Chat:
        """The chat addressed by id, or by its order, that ``identity`` may access."""
        if chat_id:
            return await self.guard.authorize_chat(identity, chat_id)
        if order_id:
            return await self.guard.authorize_order_chat(identity, order_id)
        raise InvalidArgument("chatId or orderId is required")

    # Writes

    async def start_general_chat(
        self,
        identity: Identity,
        subject: str,
        content: str,
        uploads: Sequence[AttachmentUpload] = (),
    ) -> SentMessage:
        if identity.is_admin:
            raise Unauthorized("Only customers can start a chat")
        self._check_message(content, uploads)
        if not subject or not subject.strip():
            raise InvalidArgument("Subject is required")

        refs = await self.attachments.admit(uploads, identity.id)
        try:
            chat = await self.store.create_general_chat(identity.id, subject, content, refs)
        except ChatServiceError:
            await self.attachments.discard(refs)
            raise

        logger.info(f"Customer {identity.id} started chat {chat.id}")
        sent = SentMessage(chat=chat, message=chat.messages[-1], created=True)
        await self.publish_message(sent, identity)
        return sent

    async def start_order_chat(
        self,
        identity: Identity,
        order_id: str,
        content: Optional[str] = None,
        uploads: Sequence[AttachmentUpload] = (),
    ) -> Chat:
        """
        Create-or-get the chat of an order.

        Without a first message a new chat gets a system notice so the
        thread is never empty.
        """
        if (content and content.strip()) or uploads:
            sent = await self.send_message(identity, content, uploads, order_id=order_id)
            return sent.chat

        order = await self.guard.authorize_order(identity, order_id)
        chat, created = await self.store.open_order_chat(order)
        if created:
            await self.gateway.broadcast(
                ADMIN_ROOM, "new-chat-notification", ChatNotificationOut.build(chat, chat.messages[-1]).dump()
            )
        return chat

    async def send_message(
        self,
        identity: Identity,
        content: Optional[str],
        uploads: Sequence[AttachmentUpload] = (),
        chat_id: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> SentMessage:
        """
        Append a message to a chat, addressed by chat id or by order id.

        Addressing an order with no chat yet creates the order chat together
        with this message. Uploads are admitted before anything is written
        and discarded again if the write fails.
        """
        self._check_message(content, uploads)

        chat = order = None
        if chat_id:
            chat = await self.guard.authorize_chat(identity, chat_id)
        elif order_id:
            order = await self.guard.authorize_order(identity, order_id)
        else:
            raise InvalidArgument("chatId or orderId is required")

        refs = await self.attachments.admit(uploads, identity.id)
        created = False
        try:
            if chat is not None:
                message = await self.store.append_message(
                    chat.id, sender_for(identity), content, refs, sender_id=identity.id
                )
                chat.messages.append(message)
            else:
                chat, message, created = await self.store.post_to_order(
                    str(order["_id"]), str(order["user_id"]), sender_for(identity), content, refs,
                    sender_id=identity.id,
                )
        except ChatServiceError:
            await self.attachments.discard(refs)
            raise

        sent = SentMessage(chat=chat, message=message, created=created)
        await self.publish_message(sent, identity)
        return sent

    async def mark_read(self, identity: Identity, chat_id: str) -> int:
        chat = await self.guard.authorize_chat(identity, chat_id)
        count = await self.store.mark_read(chat.id, identity.role)
        if count > 0:
            await self.gateway.broadcast(
                chat_room(chat.id),
                "messages-read",
                MessagesReadOut(
                    chat_id=chat.id, read_by=identity.role.value, user_id=identity.id, count=count
                ).dump(),
            )
        return count

    async def set_open(self, identity: Identity, chat_id: str, open: bool) -> Chat:
        self.guard.require_admin(identity)
        chat, changed = await self.store.set_open(chat_id, open)
        if not changed:
            return chat

        notice = "Chat reopened by support" if open else "Chat closed by support"
        message = await self.store.append_system_message(chat.id, notice)
        chat.messages.append(message)

        room = chat_room(chat.id)
        await self.gateway.broadcast(room, "chat-status", ChatStatusOut(chat_id=chat.id, open=open).dump())
        await self.gateway.broadcast(room, "new-message", NewMessageOut.build(chat, message).dump())
        return chat

    async def relay_typing(
        self,
        identity: Identity,
        is_typing: bool,
        chat_id: Optional[str] = None,
        order_id: Optional[str] = None,
        exclude: Optional[str] = None,
    ) -> Chat:
        chat = await self.resolve_chat(identity, chat_id=chat_id, order_id=order_id)
        await self.gateway.broadcast(
            chat_room(chat.id),
            "typing",
            TypingOut(
                chat_id=chat.id, user_id=identity.id, role=identity.role.value, is_typing=is_typing
            ).dump(),
            exclude=exclude,
        )
        return chat

    async def publish_message(self, sent: SentMessage, identity: Identity):
        """Broadcast a stored message to its room plus a discovery notification."""
        chat, message = sent.chat, sent.message
        await self.gateway.broadcast(chat_room(chat.id), "new-message", NewMessageOut.build(chat, message).dump())

        target = user_room(chat.customer_id) if identity.is_admin else ADMIN_ROOM
        await self.gateway.broadcast(
            target, "new-chat-notification", ChatNotificationOut.build(chat, message).dump()
        )

    @staticmethod
    def _check_message(content: Optional[str], uploads: Sequence[AttachmentUpload]):
        if not (content and content.strip()) and not uploads:
            raise InvalidArgument("Message content or an attachment is required")
        validate_uploads(uploads)


def get_chat_service(
    db: AsyncIOMotorDatabase = Depends(get_database),
    gateway: Gateway = Depends(get_gateway),
) -> ChatService:
    """Dependency to get a chat service bound to the request's database"""
    return ChatService(db, gateway)
