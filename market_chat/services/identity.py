"""Resolve bearer credentials to chat identities"""

from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from market_chat.core.exceptions import Unauthenticated, Unauthorized
from market_chat.core.security import verify_token
from market_chat.models.user import Identity
from market_chat.utils.validators import to_object_id


async def resolve_identity(db: AsyncIOMotorDatabase, token: Optional[str]) -> Identity:
    """
    Turn a JWT into the identity of an existing, active account.

    Raises:
        Unauthenticated: missing, malformed or expired token, or unknown account
        Unauthorized: the account exists but is inactive
    """
    if not token:
        raise Unauthenticated("Not authenticated")

    payload = verify_token(token)
    if not payload:
        raise Unauthenticated("Invalid or expired token")

    user_id = to_object_id(payload.get("sub"))
    if user_id is None:
        raise Unauthenticated("Invalid token payload")

    user = await db.users.find_one({"_id": user_id})
    if not user:
        raise Unauthenticated("User not found")

    if not user.get("active", True):
        raise Unauthorized("User account is inactive")

    return Identity.from_user(user)
