"""
Repository layer for database operations.
Provides high-level methods for the conversation and message tables and
read access to the users and products owned by other subsystems.
"""
from typing import List, Optional, Tuple
from sqlalchemy import or_
from sqlalchemy.orm import Session
from db.models import User, Product, Conversation, Message, participant_key, utcnow


class Repository:
    """Repository class for database operations."""

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    # Transaction control
    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    # User and product lookups
    def get_user_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        return self.db.query(User).filter(User.id == user_id).first()

    def get_product_by_id(self, product_id: int) -> Optional[Product]:
        """Get product by ID."""
        return self.db.query(Product).filter(Product.id == product_id).first()

    # Conversation operations
    def get_conversation_by_id(self, conversation_id: int) -> Optional[Conversation]:
        """Get conversation by ID."""
        return self.db.query(Conversation).filter(Conversation.id == conversation_id).first()

    def find_conversation(
        self,
        user_a: int,
        user_b: int,
        product_id: Optional[int] = None
    ) -> Optional[Conversation]:
        """Find the conversation for an unordered participant pair and subject item."""
        low, high, subject_key = participant_key(user_a, user_b, product_id)
        return self.db.query(Conversation).filter(
            Conversation.participant_low_id == low,
            Conversation.participant_high_id == high,
            Conversation.subject_key == subject_key
        ).first()

    def insert_conversation(
        self,
        user_a: int,
        user_b: int,
        product_id: Optional[int] = None
    ) -> Conversation:
        """
        Insert a new conversation and commit it.

        Raises:
            sqlalchemy.exc.IntegrityError: the normalized triple already exists
        """
        low, high, subject_key = participant_key(user_a, user_b, product_id)
        now = utcnow()
        conversation = Conversation(
            user1_id=user_a,
            user2_id=user_b,
            participant_low_id=low,
            participant_high_id=high,
            product_id=product_id,
            subject_key=subject_key,
            created_at=now,
            updated_at=now
        )
        self.db.add(conversation)
        self.db.commit()
        self.db.refresh(conversation)
        return conversation

    def touch_conversation(self, conversation: Conversation, preview: str) -> Conversation:
        """Set the inbox preview and bump updated_at (caller commits)."""
        conversation.last_message = preview
        conversation.updated_at = utcnow()
        return conversation

    def list_user_conversations(self, user_id: int) -> List[dict]:
        """
        List a user's conversations, most recently active first.

        Each item is denormalized with the counterpart's display fields and
        the subject product's title and images.
        """
        conversations = self.db.query(Conversation).filter(
            or_(Conversation.user1_id == user_id, Conversation.user2_id == user_id)
        ).order_by(Conversation.updated_at.desc(), Conversation.id.desc()).all()

        items = []
        for conversation in conversations:
            other_user_id = conversation.counterpart_of(user_id)
            other_user = self.get_user_by_id(other_user_id)
            product = conversation.product
            items.append({
                "id": conversation.id,
                "user1_id": conversation.user1_id,
                "user2_id": conversation.user2_id,
                "other_user_id": other_user_id,
                "other_user_name": other_user.name if other_user else None,
                "other_user_picture": other_user.picture if other_user else None,
                "product_id": conversation.product_id,
                "product_title": product.title if product else None,
                "product_images": product.images if product else None,
                "last_message": conversation.last_message,
                "created_at": conversation.created_at,
                "updated_at": conversation.updated_at,
            })
        return items

    # Message operations
    def create_message(self, conversation_id: int, sender_id: int, content: str) -> Message:
        """
        Stage a new message and flush it to obtain its ID.

        The caller commits, so the message and the conversation recency
        update land in the same transaction.
        """
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            read=False,
            created_at=utcnow()
        )
        self.db.add(message)
        self.db.flush()
        return message

    def get_conversation_messages(
        self,
        conversation_id: int,
        limit: int = 50
    ) -> List[Tuple[Message, Optional[User]]]:
        """Get the latest ``limit`` messages of a conversation, oldest first, with their senders."""
        rows = self.db.query(Message, User).outerjoin(
            User, Message.sender_id == User.id
        ).filter(
            Message.conversation_id == conversation_id
        ).order_by(Message.id.desc()).limit(limit).all()
        return list(reversed(rows))

    def mark_messages_as_read(self, conversation_id: int, reader_id: int) -> int:
        """
        Mark the counterpart's unread messages in a conversation as read.

        Args:
            conversation_id: Conversation ID
            reader_id: Participant reading the conversation

        Returns:
            Number of messages marked as read
        """
        updated_count = self.db.query(Message).filter(
            Message.conversation_id == conversation_id,
            Message.sender_id != reader_id,
            Message.read.is_(False)
        ).update({"read": True}, synchronize_session=False)

        self.db.commit()
        return updated_count
