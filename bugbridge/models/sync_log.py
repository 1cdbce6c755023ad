"""Sync log model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum
from datetime import datetime
import enum
from bugbridge.models.base import Base


class SyncStatus(str, enum.Enum):
    """Sync status enumeration"""
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncDirection(str, enum.Enum):
    """Sync direction enumeration"""
    IMPORT = "import"
    EXPORT = "export"


class SyncLog(Base):
    """Log of import/export passes"""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)

    # Remote target
    base_url = Column(String, nullable=False)
    project = Column(String, nullable=False)

    # Pass details
    status = Column(Enum(SyncStatus), nullable=False)
    direction = Column(Enum(SyncDirection), nullable=False)
    message = Column(Text, nullable=True)
    details = Column(Text, nullable=True)  # JSON counts per result kind

    # Timestamp
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<SyncLog(status={self.status}, direction={self.direction})>"
