"""Custom validators"""

from typing import Optional
from bson import ObjectId
from bson.errors import InvalidId


def validate_object_id(id_str: str) -> bool:
    """
    Validate if a string is a valid MongoDB ObjectId

    Args:
        id_str: String to validate

    Returns:
        True if valid ObjectId, False otherwise
    """
    return to_object_id(id_str) is not None


def to_object_id(id_str) -> Optional[ObjectId]:
    """Parse ``id_str`` into an ObjectId, or return None when it is not one."""
    if isinstance(id_str, ObjectId):
        return id_str
    # ObjectId(None) would mint a new id
    if not isinstance(id_str, str):
        return None
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None
