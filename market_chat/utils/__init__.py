"""Utility functions"""

from market_chat.utils.pagination import paginate_from_end
from market_chat.utils.validators import validate_object_id
from market_chat.utils.locks import KeyedLock

__all__ = ["paginate_from_end", "validate_object_id", "KeyedLock"]
