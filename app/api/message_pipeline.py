"""
Message pipeline: the single "send" operation behind both the live
``send-message`` event and ``POST /api/chat/messages``.

Steps, in order:
    1. reject empty content
    2. check the sender participates in the conversation
    3. persist the message and the conversation's inbox preview in one transaction
    4. broadcast the persisted message to the conversation room

The broadcast only happens after the commit succeeded. Sends for the same
conversation are serialized inside this process, so the room sees messages
in the order they were persisted.
"""
import asyncio
import logging
import time
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from core.config import settings
from core.security import Principal
from db.database import SessionLocal
from db.repository import Repository
from services.conversation_access import Access, check_conversation_access
from api.metrics import chat_operations_total, message_send_duration_seconds
from api.websocket_manager import ConnectionManager, conversation_room

logger = logging.getLogger(__name__)

MAX_CLIENT_TOKEN_LENGTH = 64


class SendStatus(str, Enum):
    """Outcome of a send-intent."""
    SENT = "sent"
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    DENIED = "denied"
    FAILED = "failed"


_ACCESS_TO_STATUS = {
    Access.NOT_FOUND: SendStatus.NOT_FOUND,
    Access.DENIED: SendStatus.DENIED,
}


@dataclass
class SendResult:
    status: SendStatus
    message: Optional[dict] = None

    @property
    def ok(self) -> bool:
        return self.status is SendStatus.SENT


def build_preview(content: str, max_length: Optional[int] = None) -> str:
    """Truncate content for the conversation list, marking the cut with '...'."""
    max_length = max_length or settings.preview_max_length
    if len(content) > max_length:
        return content[:max_length] + "..."
    return content


class MessagePipeline:
    """Authorizes, persists and broadcasts chat messages."""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        session_factory: Callable[[], Session] = SessionLocal
    ):
        self.connection_manager = connection_manager
        self.session_factory = session_factory
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, conversation_id: int) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def send(
        self,
        principal: Principal,
        conversation_id: int,
        content,
        client_token: Optional[str] = None,
        transport: str = "websocket"
    ) -> SendResult:
        """
        Run a send-intent through the pipeline.

        Args:
            principal: Authenticated sender
            conversation_id: Target conversation
            content: Message text
            client_token: Correlation token echoed back in the broadcast
            transport: "websocket" or "rest", for metrics

        Returns:
            SendResult with the broadcast message record when status is SENT
        """
        started = time.perf_counter()
        result = await self._send(principal, conversation_id, content, client_token)

        chat_operations_total.labels(
            operation="send", outcome=result.status.value, transport=transport
        ).inc()
        message_send_duration_seconds.labels(outcome=result.status.value).observe(
            time.perf_counter() - started
        )
        return result

    async def _send(
        self,
        principal: Principal,
        conversation_id: int,
        content,
        client_token: Optional[str]
    ) -> SendResult:
        if not isinstance(content, str) or not content.strip():
            return SendResult(SendStatus.INVALID)
        if client_token is not None and (
            not isinstance(client_token, str) or len(client_token) > MAX_CLIENT_TOKEN_LENGTH
        ):
            return SendResult(SendStatus.INVALID)

        text = content.strip()

        async with self._lock_for(conversation_id):
            try:
                status, message = await asyncio.to_thread(
                    self._persist, principal.id, conversation_id, text
                )
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to persist message from user {principal.id} "
                    f"in conversation {conversation_id}: {e}"
                )
                return SendResult(SendStatus.FAILED)

            if status is not SendStatus.SENT:
                return SendResult(status)

            if client_token is not None:
                message["clientToken"] = client_token

            await self.connection_manager.broadcast(
                conversation_room(conversation_id), "new-message", message
            )

        logger.info(
            f"Message {message['id']} from user {principal.id} "
            f"broadcast to conversation {conversation_id}"
        )
        return SendResult(SendStatus.SENT, message)

    def _persist(self, sender_id: int, conversation_id: int, content: str) -> Tuple[SendStatus, Optional[dict]]:
        with self.session_factory() as db:
            repository = Repository(db)
            access, conversation = check_conversation_access(repository, conversation_id, sender_id)
            if access is not Access.GRANTED:
                return _ACCESS_TO_STATUS[access], None

            try:
                message = repository.create_message(conversation_id, sender_id, content)
                repository.touch_conversation(conversation, build_preview(content))
                repository.commit()
            except SQLAlchemyError:
                repository.rollback()
                raise

            return SendStatus.SENT, message.to_dict()
