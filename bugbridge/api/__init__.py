"""API routes"""

from bugbridge.api import bridge

__all__ = ["bridge"]
