"""FastAPI dependencies for authentication"""

from fastapi import Depends, HTTPException, status, Header
from motor.motor_asyncio import AsyncIOMotorDatabase
from market_chat.database import get_database
from market_chat.core.exceptions import Unauthenticated, Unauthorized
from market_chat.core.security import extract_bearer_token
from market_chat.models.user import Identity
from market_chat.services.identity import resolve_identity


async def get_current_identity(
    authorization: str = Header(None),
    db: AsyncIOMotorDatabase = Depends(get_database)
) -> Identity:
    """
    Dependency to get the authenticated caller from the JWT bearer token

    Args:
        authorization: Authorization header with Bearer token
        db: Database instance

    Returns:
        Identity of an existing, active account

    Raises:
        HTTPException: 401 if authentication fails, 403 for an inactive account
    """
    try:
        return await resolve_identity(db, extract_bearer_token(authorization))
    except Unauthenticated as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    except Unauthorized as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.message)


async def require_admin(
    identity: Identity = Depends(get_current_identity)
) -> Identity:
    """
    Dependency to require a staff role (admin or support)

    Raises:
        HTTPException: If the caller answers chats as a customer
    """
    if not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Admin role required.",
        )

    return identity
