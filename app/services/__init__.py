"""Services package initialization."""
from services.conversation_resolver import ConversationResolver
from services.conversation_access import Access, check_conversation_access

__all__ = ["ConversationResolver", "Access", "check_conversation_access"]
