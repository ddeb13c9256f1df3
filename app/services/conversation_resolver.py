"""
Find-or-create for negotiation threads.

Two "express interest" requests for the same item can race. The unique
constraint on the normalized (participant pair, subject item) triple lets
exactly one insert win; the loser re-reads and returns the winner's row.
"""
import logging
from typing import Optional
from sqlalchemy.exc import IntegrityError
from db.models import Conversation
from db.repository import Repository

logger = logging.getLogger(__name__)


class ConversationResolver:
    """Resolves the single conversation for a participant pair and subject item."""

    def __init__(self, repository: Repository):
        self.repository = repository

    def find_or_create(
        self,
        participant_a: int,
        participant_b: int,
        subject_item_id: Optional[int] = None
    ) -> Conversation:
        """
        Return the conversation between two users about an item, creating it if needed.

        Args:
            participant_a: One participant (order does not matter)
            participant_b: The other participant
            subject_item_id: Product the negotiation is about, or None

        Returns:
            The existing or newly created Conversation

        Raises:
            ValueError: both participants are the same user
        """
        if participant_a == participant_b:
            raise ValueError("A conversation needs two distinct participants")

        existing = self.repository.find_conversation(participant_a, participant_b, subject_item_id)
        if existing:
            return existing

        try:
            conversation = self.repository.insert_conversation(
                participant_a, participant_b, subject_item_id
            )
        except IntegrityError:
            self.repository.rollback()
            existing = self.repository.find_conversation(participant_a, participant_b, subject_item_id)
            if existing is None:
                # Constraint violation other than the expected race
                raise
            logger.info(
                f"Conversation {existing.id} created concurrently for users "
                f"{participant_a}/{participant_b} (product={subject_item_id}), reusing it"
            )
            return existing

        logger.info(
            f"Conversation {conversation.id} created for users "
            f"{participant_a}/{participant_b} (product={subject_item_id})"
        )
        return conversation
