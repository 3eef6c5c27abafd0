"""Authorization checks for chats and the orders they belong to"""

from motor.motor_asyncio import AsyncIOMotorDatabase

from market_chat.core.exceptions import NotFound, Unauthorized
from market_chat.models.chat import Chat
from market_chat.models.user import Identity
from market_chat.services.chat_store import ChatStore
from market_chat.utils.validators import to_object_id


def can_access_chat(identity: Identity, chat: Chat) -> bool:
    """Admins can access every chat, customers only their own."""
    return identity.is_admin or identity.id == chat.customer_id


def can_access_order(identity: Identity, order: dict) -> bool:
    """Only the customer who placed the order passes this check."""
    return identity.id == str(order.get("user_id"))


class AccessGuard:
    """
    Enforcing wrappers around the predicates.

    A missing chat or order is ``NotFound``; one that exists but belongs to
    another customer is ``Unauthorized``. Nothing is filtered silently.
    """

    def __init__(self, db: AsyncIOMotorDatabase, store: ChatStore):
        self.orders = db.orders
        self.store = store

    async def authorize_chat(self, identity: Identity, chat_id: str) -> Chat:
        chat = await self.store.get(chat_id)
        if not can_access_chat(identity, chat):
            raise Unauthorized("Not authorized to access this chat")
        return chat

    async def authorize_order(self, identity: Identity, order_id: str) -> dict:
        object_id = to_object_id(order_id)
        order = await self.orders.find_one({"_id": object_id}) if object_id else None
        if not order:
            raise NotFound("Order not found")
        if not identity.is_admin and not can_access_order(identity, order):
            raise Unauthorized("Unauthorized access to this order")
        return order

    async def authorize_order_chat(self, identity: Identity, order_id: str) -> Chat:
        """The existing chat of an order the caller may access."""
        await self.authorize_order(identity, order_id)
        chat = await self.store.find_by_order(order_id)
        if chat is None:
            raise NotFound("Chat not found for this order")
        return chat

    @staticmethod
    def require_admin(identity: Identity) -> Identity:
        if not identity.is_admin:
            raise Unauthorized("Not enough permissions. Admin role required.")
        return identity
