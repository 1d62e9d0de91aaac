"""API routes"""

from taskbridge.api import sync

__all__ = ["sync"]
