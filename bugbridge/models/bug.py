"""Bug and operation log models"""
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from bugbridge.models.base import Base
from bugbridge.models.identity import new_entity_id


class BugRecord(Base):
    """A bug: nothing more than an ordered, append-only operation log"""

    __tablename__ = "bugs"

    id = Column(String, primary_key=True, default=new_entity_id)
    created_at = Column(DateTime, default=datetime.utcnow)

    operations = relationship(
        "OperationRecord",
        back_populates="bug",
        order_by="OperationRecord.seq",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<BugRecord(id='{self.id}')>"


class OperationRecord(Base):
    """One committed operation of a bug log"""

    __tablename__ = "operations"
    __table_args__ = (
        UniqueConstraint("bug_id", "seq", name="uq_operations_bug_seq"),
    )

    id = Column(String, primary_key=True)
    bug_id = Column(String, ForeignKey("bugs.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False, index=True)

    kind = Column(String, nullable=False, index=True)
    author_id = Column(String, ForeignKey("identities.id"), nullable=False)
    unix_time = Column(Integer, nullable=False)
    payload = Column(Text, nullable=False)  # JSON, kind-specific
    op_metadata = Column("metadata", Text, nullable=True)  # JSON string map

    bug = relationship("BugRecord", back_populates="operations")
    author = relationship("Identity")

    def __repr__(self):
        return f"<OperationRecord(kind={self.kind}, seq={self.seq})>"
