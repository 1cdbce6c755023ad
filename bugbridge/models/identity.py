"""Identity model"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from bugbridge.models.base import Base


def new_entity_id() -> str:
    return uuid4().hex


class Identity(Base):
    """Local actor record"""

    __tablename__ = "identities"

    id = Column(String, primary_key=True, default=new_entity_id)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    login = Column(String, nullable=True, index=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    immutable_metadata = relationship(
        "IdentityMetadata",
        back_populates="identity",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def get_metadata(self, key: str):
        for row in self.immutable_metadata:
            if row.key == key:
                return row.value
        return None

    def __repr__(self):
        return f"<Identity(login='{self.login}', id='{self.id}')>"


class IdentityMetadata(Base):
    """Immutable key/value tag attached to an identity at creation"""

    __tablename__ = "identity_metadata"
    __table_args__ = (
        UniqueConstraint("identity_id", "key", name="uq_identity_metadata_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    identity_id = Column(String, ForeignKey("identities.id"), nullable=False, index=True)
    key = Column(String, nullable=False, index=True)
    value = Column(String, nullable=False, index=True)

    identity = relationship("Identity", back_populates="immutable_metadata")

    def __repr__(self):
        return f"<IdentityMetadata({self.key}={self.value})>"
