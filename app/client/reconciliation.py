"""
Client-side message timeline for the open conversation.

Keeps at most one rendered copy per logical message:
- a submitted message is shown at once as an optimistic entry with a
  negative local id and a fresh correlation token
- the server's ``new-message`` echo carries the same token back and
  replaces the optimistic entry in place
- any other message already present by server id is ignored, so replays
  after a reconnect or overlaps with the REST history are harmless
"""
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional
from uuid import uuid4


def normalize_message(record: dict) -> dict:
    """
    Convert a REST history record (snake_case) to the live wire shape (camelCase).

    Records already in wire shape are returned as a copy.
    """
    if "conversationId" in record:
        return dict(record)
    message = {
        "id": record["id"],
        "conversationId": record["conversation_id"],
        "senderId": record["sender_id"],
        "content": record["content"],
        "read": record.get("read", False),
        "createdAt": record.get("created_at"),
    }
    if record.get("sender_name") is not None:
        message["senderName"] = record["sender_name"]
    if record.get("client_token") is not None:
        message["clientToken"] = record["client_token"]
    return message


class MessageTimeline:
    """Ordered list of messages rendered for one conversation."""

    def __init__(self, conversation_id: int, user_id: int):
        self.conversation_id = conversation_id
        self.user_id = user_id
        self._messages: List[dict] = []
        self._pending: Dict[str, dict] = {}
        self._next_local_id = -1

    def __iter__(self) -> Iterator[dict]:
        return iter(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> List[dict]:
        return list(self._messages)

    @property
    def pending_tokens(self) -> List[str]:
        return list(self._pending)

    def _find_by_id(self, message_id: int) -> Optional[dict]:
        for message in self._messages:
            if message["id"] == message_id:
                return message
        return None

    def submit(self, content: str) -> dict:
        """
        Append an optimistic copy of a message the user is sending.

        Returns:
            The optimistic entry; its ``clientToken`` must be sent with the
            send-intent so the echo can replace it
        """
        token = uuid4().hex
        entry = {
            "id": self._next_local_id,
            "conversationId": self.conversation_id,
            "senderId": self.user_id,
            "content": content,
            "read": False,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "clientToken": token,
            "pending": True,
        }
        self._next_local_id -= 1
        self._messages.append(entry)
        self._pending[token] = entry
        return entry

    def receive(self, record: dict) -> bool:
        """
        Merge a message broadcast by the server.

        Returns:
            True if the rendered list changed
        """
        message = normalize_message(record)
        if message["conversationId"] != self.conversation_id:
            return False
        token = message.get("clientToken")
        optimistic = self._pending.pop(token, None) if token else None

        if self._find_by_id(message["id"]) is not None:
            # Already rendered from history; the optimistic copy is now redundant
            if optimistic is not None:
                self._messages.remove(optimistic)
                return True
            return False

        if optimistic is not None:
            index = self._messages.index(optimistic)
            self._messages[index] = message
            return True

        self._messages.append(message)
        return True

    def fail(self, client_token: str) -> Optional[dict]:
        """Drop an optimistic entry the server refused to store."""
        entry = self._pending.pop(client_token, None)
        if entry is not None:
            self._messages.remove(entry)
        return entry

    def load_history(self, records: List[dict]) -> None:
        """
        Merge REST history into the timeline.

        Confirmed messages are ordered by server id; optimistic entries still
        waiting for their echo stay at the end in submission order.
        """
        confirmed = {m["id"]: m for m in self._messages if not m.get("pending")}
        for record in records:
            message = normalize_message(record)
            if message["conversationId"] == self.conversation_id:
                confirmed.setdefault(message["id"], message)

        pending = [m for m in self._messages if m.get("pending")]
        self._messages = [confirmed[i] for i in sorted(confirmed)] + pending
