"""Persistence for chat threads and their message logs"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from market_chat.config import settings
from market_chat.core.exceptions import Conflict, Internal, InvalidArgument, NotFound
from market_chat.models.chat import AttachmentRef, Chat, Message, MessageSender
from market_chat.models.user import ChatRole, Identity
from market_chat.utils.locks import KeyedLock
from market_chat.utils.pagination import paginate_from_end
from market_chat.utils.validators import to_object_id

logger = logging.getLogger(__name__)

# Serialize appends and read-receipt updates per chat within this process
_append_locks = KeyedLock()
_read_locks = KeyedLock()

APPEND_ATTEMPTS = 5
MARK_READ_ATTEMPTS = 5
POLL_LIMIT = 50


def _stamp() -> datetime:
    """Current UTC time at the millisecond precision BSON dates keep."""
    now = datetime.utcnow()
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def other_side(role: ChatRole) -> MessageSender:
    """Sender whose messages ``role`` reads."""
    return MessageSender.ADMIN if role == ChatRole.USER else MessageSender.USER


def sender_for(identity: Identity) -> MessageSender:
    return MessageSender.ADMIN if identity.is_admin else MessageSender.USER


def unread_for(chat: Chat, reader_role: ChatRole) -> int:
    """Number of messages in ``chat`` that ``reader_role`` has not read yet."""
    sender = other_side(reader_role)
    return sum(1 for m in chat.messages if m.sender == sender and not m.read)


class ChatStore:
    """
    Single writer for chat documents.

    Appends are one atomic ``$push`` per message, so concurrent senders never
    overwrite each other and the array order is the append order. Read
    receipts are written as positional updates guarded by a compare-and-swap
    filter, which is safe because messages never move once appended.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.chats = db.chats

    async def ensure_indexes(self):
        # General chats omit order_id entirely, so a sparse index only
        # constrains order chats.
        await self.chats.create_index("order_id", unique=True, sparse=True)
        await self.chats.create_index([("customer_id", ASCENDING), ("updated_at", DESCENDING)])
        await self.chats.create_index([("updated_at", DESCENDING)])

    # Lookups

    async def get(self, chat_id: str) -> Chat:
        object_id = to_object_id(chat_id)
        doc = await self.chats.find_one({"_id": object_id}) if object_id else None
        if not doc:
            raise NotFound("Chat not found")
        return Chat.from_document(doc)

    async def find_by_order(self, order_id: str) -> Optional[Chat]:
        doc = await self.chats.find_one({"order_id": str(order_id)})
        return Chat.from_document(doc) if doc else None

    async def get_by_id(self, chat_id: str, page: int = 1, page_size: int = None) -> dict:
        """
        Return the chat with a window of its messages.

        Pages count back from the newest message: page 1 is the newest
        ``page_size`` messages. The window itself is oldest first.
        """
        page_size = page_size or settings.default_page_size
        if page < 1 or page_size < 1:
            raise InvalidArgument("page and page size must be positive")

        chat = await self.get(chat_id)
        window = paginate_from_end(chat.messages, page=page, limit=page_size)
        chat.messages = window.pop("data")
        return {"chat": chat, **window}

    async def list_for_customer(self, customer_id: str) -> List[Chat]:
        cursor = self.chats.find({"customer_id": customer_id}).sort("updated_at", -1)
        return [Chat.from_document(doc) async for doc in cursor]

    async def list_for_admin(self, open: Optional[bool] = None) -> List[Chat]:
        query = {}
        if open is not None:
            query["open"] = open
        cursor = self.chats.find(query).sort("updated_at", -1)
        return [Chat.from_document(doc) async for doc in cursor]

    async def chat_ids_for(self, identity: Identity) -> List[str]:
        """Ids of every chat ``identity`` is a party to (all chats for admins)."""
        query = {} if identity.is_admin else {"customer_id": identity.id}
        cursor = self.chats.find(query, {"_id": 1})
        return [str(doc["_id"]) async for doc in cursor]

    async def chats_updated_since(self, since: datetime, customer_id: Optional[str] = None) -> List[str]:
        query = {"updated_at": {"$gt": since}}
        if customer_id is not None:
            query["customer_id"] = customer_id
        cursor = self.chats.find(query, {"_id": 1}).sort("updated_at", -1).limit(POLL_LIMIT)
        return [str(doc["_id"]) async for doc in cursor]

    async def unread_summary(self, identity: Identity) -> dict:
        chats = (
            await self.list_for_admin()
            if identity.is_admin
            else await self.list_for_customer(identity.id)
        )
        counts = [unread_for(chat, identity.role) for chat in chats]
        return {
            "total_unread": sum(counts),
            "chats_with_unread": sum(1 for c in counts if c > 0),
        }

    # Creation

    async def create_or_get_order_chat(self, order_id: str, customer_id: str) -> Tuple[Chat, bool]:
        """
        Return the order's chat, creating an empty one if none exists.

        Returns:
            (chat, created)
        """
        existing = await self.find_by_order(order_id)
        if existing:
            return existing, False

        chat = await self._insert_order_chat(order_id, customer_id)
        if chat is None:
            return await self._order_chat_after_race(order_id), False
        return chat, True

    async def open_order_chat(self, order: dict) -> Tuple[Chat, bool]:
        """Create-or-get the chat for an order document; a new chat opens with a notice."""
        order_id = str(order["_id"])
        existing = await self.find_by_order(order_id)
        if existing:
            return existing, False

        number = order.get("order_number") or order_id
        notice = self._new_message(MessageSender.SYSTEM, None, f"Chat started for order #{number}", ())
        chat = await self._insert_order_chat(order_id, str(order["user_id"]), notice)
        if chat is None:
            return await self._order_chat_after_race(order_id), False
        return chat, True

    async def post_to_order(
        self,
        order_id: str,
        customer_id: str,
        sender: MessageSender,
        content: str,
        attachments: Sequence[AttachmentRef] = (),
        sender_id: Optional[str] = None,
    ) -> Tuple[Chat, Message, bool]:
        """
        Append a message to an order's chat, creating the chat around it.

        A new chat is inserted together with its first message, so a failed
        write leaves nothing behind.

        Returns:
            (chat, message, created)
        """
        chat = await self.find_by_order(order_id)
        if chat is None:
            message = self._new_message(sender, sender_id, content, attachments)
            admin_id = sender_id if sender == MessageSender.ADMIN else None
            chat = await self._insert_order_chat(order_id, customer_id, message, admin_id)
            if chat is not None:
                return chat, chat.messages[-1], True
            chat = await self._order_chat_after_race(order_id)

        message = await self.append_message(chat.id, sender, content, attachments, sender_id=sender_id)
        chat.messages.append(message)
        return chat, message, False

    async def _insert_order_chat(
        self,
        order_id: str,
        customer_id: str,
        first_message: Optional[dict] = None,
        admin_id: Optional[str] = None,
    ) -> Optional[Chat]:
        """Insert an order chat; None when another writer created it first."""
        now = first_message["timestamp"] if first_message else _stamp()
        doc = {
            "customer_id": customer_id,
            "admin_id": admin_id,
            "order_id": str(order_id),
            "subject": None,
            "is_order_chat": True,
            "open": True,
            "messages": [first_message] if first_message else [],
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = await self.chats.insert_one(doc)
        except DuplicateKeyError:
            return None
        except PyMongoError as e:
            logger.error(f"Creating chat for order {order_id} failed: {e}")
            raise Internal("Failed to create chat") from e

        doc["_id"] = result.inserted_id
        logger.info(f"Created order chat {result.inserted_id} for order {order_id}")
        return Chat.from_document(doc)

    async def _order_chat_after_race(self, order_id: str) -> Chat:
        # Lost the unique-index race against another first write for this order
        existing = await self.find_by_order(order_id)
        if existing is None:
            raise Internal("Order chat vanished during creation")
        return existing

    async def create_general_chat(
        self,
        customer_id: str,
        subject: str,
        first_message: str,
        attachments: Sequence[AttachmentRef] = (),
    ) -> Chat:
        if not subject or not subject.strip():
            raise InvalidArgument("Subject is required")
        message = self._new_message(MessageSender.USER, customer_id, first_message, attachments)

        now = message["timestamp"]
        doc = {
            "customer_id": customer_id,
            "admin_id": None,
            "subject": subject.strip(),
            "is_order_chat": False,
            "open": True,
            "messages": [message],
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = await self.chats.insert_one(doc)
        except PyMongoError as e:
            logger.error(f"Creating general chat for {customer_id} failed: {e}")
            raise Internal("Failed to create chat") from e

        doc["_id"] = result.inserted_id
        return Chat.from_document(doc)

    # Mutation

    async def append_message(
        self,
        chat_id: str,
        sender: MessageSender,
        content: str,
        attachments: Sequence[AttachmentRef] = (),
        sender_id: Optional[str] = None,
    ) -> Message:
        """
        Append a message to the chat's log.

        A customer message reopens a closed chat. The first admin message
        assigns the chat to that admin.

        The timestamp is taken under a per-chat lock and the push only lands
        when every stored message is older, so array order and timestamp
        order agree even across processes. A push that loses is restamped
        past the newest stored message and retried.
        """
        object_id = to_object_id(chat_id)
        if object_id is None:
            raise NotFound("Chat not found")

        message = self._new_message(sender, sender_id, content, attachments)
        try:
            async with _append_locks.hold(str(object_id)):
                await self._push_in_order(object_id, message)

            if sender == MessageSender.ADMIN and sender_id:
                await self.chats.update_one(
                    {"_id": object_id, "admin_id": None},
                    {"$set": {"admin_id": sender_id}},
                )
        except PyMongoError as e:
            logger.error(f"Appending to chat {chat_id} failed: {e}")
            raise Internal("Failed to save message") from e

        return Message(**message)

    async def _push_in_order(self, object_id: ObjectId, message: dict):
        stamp = _stamp()
        for _ in range(APPEND_ATTEMPTS):
            message["timestamp"] = stamp
            update = {
                "$push": {"messages": message},
                "$set": {"updated_at": stamp},
            }
            if message["sender"] == MessageSender.USER.value:
                update["$set"]["open"] = True

            result = await self.chats.update_one(
                {"_id": object_id, "messages": {"$not": {"$elemMatch": {"timestamp": {"$gte": stamp}}}}},
                update,
            )
            if result.matched_count:
                return

            # Another process appended first, or its clock runs ahead of ours
            doc = await self.chats.find_one({"_id": object_id}, {"messages": 1})
            if not doc:
                raise NotFound("Chat not found")
            newest = max((m["timestamp"] for m in doc.get("messages", []) if "timestamp" in m), default=datetime.min)
            stamp = max(_stamp(), newest + timedelta(milliseconds=1))

        raise Conflict("Chat is being updated concurrently, please retry")

    async def append_system_message(self, chat_id: str, content: str) -> Message:
        return await self.append_message(chat_id, MessageSender.SYSTEM, content)

    async def mark_read(self, chat_id: str, reader_role: ChatRole) -> int:
        """
        Mark every unread message from the other party as read.

        Returns:
            Number of messages flipped; 0 when there was nothing to flip
        """
        object_id = to_object_id(chat_id)
        if object_id is None:
            raise NotFound("Chat not found")
        sender = other_side(reader_role).value

        async with _read_locks.hold(chat_id):
            for _ in range(MARK_READ_ATTEMPTS):
                doc = await self.chats.find_one({"_id": object_id}, {"messages": 1})
                if not doc:
                    raise NotFound("Chat not found")

                positions = [
                    i for i, m in enumerate(doc.get("messages", []))
                    if m.get("sender") == sender and not m.get("read", False)
                ]
                if not positions:
                    return 0

                guard = {"_id": object_id}
                guard.update({f"messages.{i}.read": False for i in positions})
                result = await self.chats.update_one(
                    guard,
                    {"$set": {f"messages.{i}.read": True for i in positions}},
                )
                if result.modified_count:
                    return len(positions)
                # Another process flipped some of them first; recompute

        raise Conflict("Chat is being updated concurrently, please retry")

    async def set_open(self, chat_id: str, open: bool) -> Tuple[Chat, bool]:
        """
        Open or close an order chat. Idempotent.

        Returns:
            (chat, changed)
        """
        chat = await self.get(chat_id)
        if not chat.is_order_chat:
            raise InvalidArgument("Only order chats can be closed or reopened")
        if chat.open == open:
            return chat, False

        now = datetime.utcnow()
        await self.chats.update_one(
            {"_id": ObjectId(chat.id)},
            {"$set": {"open": open, "updated_at": now}},
        )
        chat.open = open
        chat.updated_at = now
        return chat, True

    @staticmethod
    def _new_message(
        sender: MessageSender,
        sender_id: Optional[str],
        content: Optional[str],
        attachments: Sequence[AttachmentRef],
    ) -> dict:
        content = (content or "").strip()
        if not content and not attachments:
            raise InvalidArgument("Message content or an attachment is required")
        return {
            "_id": str(ObjectId()),
            "sender": MessageSender(sender).value,
            "sender_id": sender_id,
            "content": content,
            "attachments": [a.model_dump() for a in attachments],
            "timestamp": _stamp(),
            "read": False,
        }
