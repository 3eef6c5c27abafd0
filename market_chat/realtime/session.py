"""Per-connection chat protocol: handshake, room bootstrap and event handling"""

import asyncio
import logging
from enum import Enum
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError

from market_chat.config import settings
from market_chat.core.exceptions import ChatServiceError, Internal, InvalidArgument, Unauthenticated, Unauthorized
from market_chat.models.user import Identity
from market_chat.realtime.gateway import ADMIN_ROOM, Connection, Gateway, chat_room, user_room
from market_chat.schemas.events import (
    AuthenticateIn,
    ChatMembershipOut,
    ChatTargetIn,
    ErrorOut,
    LeaveChatIn,
    MarkReadIn,
    NewMessageIn,
    NewMessageOut,
    TypingIn,
    parse_event,
)
from market_chat.services.chat_service import ChatService
from market_chat.services.identity import resolve_identity

logger = logging.getLogger(__name__)

# Close code sent when the handshake fails
CLOSE_UNAUTHENTICATED = 4401


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    REJECTED = "rejected"


class ChatSession:
    """
    State machine for one realtime connection.

    connecting -> authenticated -> active -> disconnected, or
    connecting -> rejected when the handshake fails.
    """

    def __init__(self, db: AsyncIOMotorDatabase, gateway: Gateway, connection: Connection):
        self.db = db
        self.gateway = gateway
        self.connection = connection
        self.chats = ChatService(db, gateway)
        self.state = SessionState.CONNECTING
        self.handlers = {
            "new-message": self.on_new_message,
            "mark-as-read": self.on_mark_as_read,
            "typing": self.on_typing,
            "join-order-chat": self.on_join_chat,
            "leave-chat": self.on_leave_chat,
        }

    @property
    def identity(self) -> Optional[Identity]:
        return self.connection.identity

    # Handshake

    async def authenticate(self, token: Optional[str]) -> Identity:
        """Resolve the credential and bind the identity, or reject the session."""
        try:
            identity = await resolve_identity(self.db, token)
        except Unauthenticated:
            self.state = SessionState.REJECTED
            raise
        except Unauthorized as e:
            # Inactive accounts fail the handshake like bad credentials
            self.state = SessionState.REJECTED
            raise Unauthenticated(e.message) from e
        self.gateway.bind(self.connection, identity)
        self.state = SessionState.AUTHENTICATED
        logger.info(f"Connection {self.connection.id} authenticated as {identity.role.value} {identity.id}")
        return identity

    async def wait_for_credentials(self, receive, timeout: float = None) -> Optional[str]:
        """
        Read the first frame and return the token of an ``authenticate`` event.

        ``receive`` is a coroutine function returning one decoded JSON frame.
        """
        timeout = timeout if timeout is not None else settings.handshake_timeout_seconds
        try:
            frame = await asyncio.wait_for(receive(), timeout=timeout)
        except asyncio.TimeoutError:
            raise Unauthenticated("Authentication timed out")
        except (KeyError, ValueError):
            # KeyError: a binary frame has no text to decode
            raise Unauthenticated("Malformed authentication frame")

        if not isinstance(frame, dict) or frame.get("event") != "authenticate":
            raise Unauthenticated("Authenticate first")
        try:
            return AuthenticateIn.model_validate(frame.get("data") or {}).token
        except ValidationError:
            raise Unauthenticated("Malformed authentication frame")

    async def bootstrap(self):
        """Join personal, admin and chat rooms. Each join stands on its own."""
        identity = self.identity
        self.gateway.join(self.connection, user_room(identity.id))
        if identity.is_admin:
            self.gateway.join(self.connection, ADMIN_ROOM)

        try:
            chat_ids = await self.chats.store.chat_ids_for(identity)
        except Exception as e:
            logger.error(f"Listing chats for {identity.id} during bootstrap failed: {e}")
            chat_ids = []

        for chat_id in chat_ids:
            try:
                self.gateway.join(self.connection, chat_room(chat_id))
            except Exception as e:
                logger.warning(f"Could not join {chat_room(chat_id)}: {e}")

        self.state = SessionState.ACTIVE
        logger.debug(f"Connection {self.connection.id} joined {len(self.connection.rooms)} room(s)")

    # Events

    async def dispatch(self, frame):
        """Handle one inbound frame, reporting failures to this connection only."""
        event = frame.get("event") if isinstance(frame, dict) else None
        try:
            if self.state != SessionState.ACTIVE:
                raise Unauthenticated("Not authenticated")
            if event == "authenticate":
                raise InvalidArgument("Already authenticated")
            handler = self.handlers.get(event)
            if handler is None:
                raise InvalidArgument(f"Unknown event '{event}'")
            await handler(frame.get("data"))
        except ChatServiceError as e:
            self.emit_error(e.message)
        except Exception:
            logger.exception(f"Handler for '{event}' failed on connection {self.connection.id}")
            self.emit_error(Internal.default_message)

    async def on_new_message(self, data):
        payload = parse_event(NewMessageIn, data)
        uploads = [a.to_upload() for a in payload.attachments]
        sent = await self.chats.send_message(
            self.identity,
            payload.content,
            uploads,
            chat_id=payload.chat_id,
            order_id=payload.order_id,
        )
        room = chat_room(sent.chat.id)
        if room not in self.connection.rooms:
            # The chat was just created, or the sender never joined it
            self.gateway.join(self.connection, room)
            self.gateway.send_to(self.connection, "new-message", NewMessageOut.build(sent.chat, sent.message).dump())

    async def on_mark_as_read(self, data):
        payload = parse_event(MarkReadIn, data)
        await self.chats.mark_read(self.identity, payload.chat_id)

    async def on_typing(self, data):
        payload = parse_event(TypingIn, data)
        await self.chats.relay_typing(
            self.identity,
            payload.is_typing,
            chat_id=payload.chat_id,
            order_id=payload.order_id,
            exclude=self.connection.id,
        )

    async def on_join_chat(self, data):
        payload = parse_event(ChatTargetIn, data)
        chat = await self.chats.resolve_chat(self.identity, chat_id=payload.chat_id, order_id=payload.order_id)
        self.gateway.join(self.connection, chat_room(chat.id))
        self.gateway.send_to(self.connection, "chat-joined", ChatMembershipOut(chat_id=chat.id).dump())

    async def on_leave_chat(self, data):
        payload = parse_event(LeaveChatIn, data)
        self.gateway.leave(self.connection, chat_room(payload.chat_id))
        self.gateway.send_to(self.connection, "chat-left", ChatMembershipOut(chat_id=payload.chat_id).dump())

    def emit_error(self, message: str):
        self.gateway.send_to(self.connection, "error", ErrorOut(message=message).dump())

    def close(self):
        if self.state != SessionState.REJECTED:
            self.state = SessionState.DISCONNECTED
        self.gateway.unregister(self.connection)
        if self.identity is not None:
            logger.info(f"Connection {self.connection.id} of {self.identity.id} disconnected")
