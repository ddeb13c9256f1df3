"""
Participant check shared by room joins, live sends and the REST handlers.
"""
from enum import Enum
from typing import Optional, Tuple
from db.models import Conversation
from db.repository import Repository


class Access(str, Enum):
    """Result of checking a user against a conversation."""
    GRANTED = "granted"
    NOT_FOUND = "not_found"
    DENIED = "denied"


def check_conversation_access(
    repository: Repository,
    conversation_id: int,
    user_id: int
) -> Tuple[Access, Optional[Conversation]]:
    """
    Look up a conversation and check that a user participates in it.

    Returns:
        (Access.GRANTED, conversation) for participants, otherwise
        (Access.NOT_FOUND, None) or (Access.DENIED, None)
    """
    conversation = repository.get_conversation_by_id(conversation_id)
    if conversation is None:
        return Access.NOT_FOUND, None
    if not conversation.has_participant(user_id):
        return Access.DENIED, None
    return Access.GRANTED, conversation
