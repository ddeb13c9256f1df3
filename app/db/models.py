"""
SQLAlchemy ORM models for the Swapply chat database.
Defines the entities read or written by the messaging core: User, Product,
Conversation and Message.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text, Boolean, JSON,
    UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from db.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def participant_key(user_a: int, user_b: int, product_id: Optional[int]) -> tuple:
    """
    Normalize a conversation identity.

    (A, B) and (B, A) map to the same key, and a missing product maps to 0 so
    the "no item" case is covered by the unique constraint as well.
    """
    low, high = sorted((user_a, user_b))
    return low, high, product_id or 0


# Models owned by the account and catalog subsystems (read-only here)
class User(Base):
    """User entity - display fields used for conversation listings."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    picture = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Product(Base):
    """Listed item - anchors a negotiation to something being bartered."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    images = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    owner = relationship("User")


# Models owned by the messaging core
class Conversation(Base):
    """Negotiation thread between exactly two participants."""
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "participant_low_id", "participant_high_id", "subject_key",
            name="uq_conversation_participants_subject"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user1_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user2_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    participant_low_id = Column(Integer, nullable=False)
    participant_high_id = Column(Integer, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    subject_key = Column(Integer, nullable=False, default=0)
    last_message = Column(String(200), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    # Relationships
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.id"
    )
    product = relationship("Product")

    def has_participant(self, user_id: int) -> bool:
        """Check whether a user is one of the two participants."""
        return user_id in (self.user1_id, self.user2_id)

    def counterpart_of(self, user_id: int) -> int:
        """Return the other participant's ID."""
        return self.user2_id if self.user1_id == user_id else self.user1_id


class Message(Base):
    """Immutable utterance within one conversation."""
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_id_id", "conversation_id", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User")

    def to_dict(self) -> dict:
        """Wire representation broadcast as ``new-message``."""
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "content": self.content,
            "read": self.read,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
