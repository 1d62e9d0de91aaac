"""Database models"""

from taskbridge.models.base import Base
from taskbridge.models.kv_entry import KVEntry

__all__ = [
    "Base",
    "KVEntry",
]
