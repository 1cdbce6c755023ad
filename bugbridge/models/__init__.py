"""Database models"""

from bugbridge.models.base import Base
from bugbridge.models.bug import BugRecord, OperationRecord
from bugbridge.models.identity import Identity, IdentityMetadata
from bugbridge.models.sync_log import SyncLog

__all__ = [
    "Base",
    "BugRecord",
    "OperationRecord",
    "Identity",
    "IdentityMetadata",
    "SyncLog",
]
