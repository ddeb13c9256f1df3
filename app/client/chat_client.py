#!/usr/bin/env python3
"""
Swapply Chat Command Line Client

Explicit client session for the Swapply chat API: one live WebSocket
connection plus the REST helpers the chat window needs (inbox, history,
send fallback). Outgoing messages are shown optimistically and reconciled
with the server echo by correlation token.

Usage:
    python -m client.chat_client --token <jwt> --conversation <id>

Example:
    # Terminal 1 - User 1
    python -m client.chat_client --token $TOKEN_USER1 --conversation 42

    # Terminal 2 - User 2
    python -m client.chat_client --token $TOKEN_USER2 --conversation 42
"""

import argparse
import asyncio
import json
from typing import AsyncIterator, List, Optional

import requests
from colorama import init, Fore, Style
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus

from client.reconciliation import MessageTimeline

COOKIE_NAME = "swapply_token"


class AuthenticationRejected(Exception):
    """The server refused the WebSocket handshake."""


class ChatSession:
    """
    One authenticated connection to the chat server.

    Created by :func:`connect` and owned by the caller; nothing here is a
    process-wide singleton.
    """

    def __init__(self, connection, base_url: str, token: str):
        self.connection = connection
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.user_id: Optional[int] = None

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _emit(self, event: str, data) -> None:
        await self.connection.send(json.dumps({"event": event, "data": data}))

    async def join_chat(self, conversation_id: int) -> None:
        await self._emit("join-chat", conversation_id)

    async def leave_chat(self, conversation_id: int) -> None:
        await self._emit("leave-chat", conversation_id)

    async def send_message(self, conversation_id: int, content: str, client_token: Optional[str] = None) -> None:
        data = {"conversationId": conversation_id, "content": content}
        if client_token:
            data["clientToken"] = client_token
        await self._emit("send-message", data)

    async def notify_interest(self, product_id: int, product_owner_id: int) -> None:
        await self._emit("interest-in-product", {"productId": product_id, "productOwnerId": product_owner_id})

    async def receive(self) -> dict:
        """
        Wait for the next server event.

        Heartbeat pings are answered here and never returned.
        """
        while True:
            frame = json.loads(await self.connection.recv())
            event = frame.get("event")
            if event == "ping":
                await self._emit("pong", None)
                continue
            if event == "connected":
                self.user_id = frame["data"]["userId"]
            return frame

    async def events(self) -> AsyncIterator[dict]:
        """Iterate over server events until the connection closes."""
        try:
            while True:
                yield await self.receive()
        except ConnectionClosed:
            return

    async def close(self) -> None:
        await self.connection.close()

    # REST helpers
    def _cookies(self) -> dict:
        return {COOKIE_NAME: self.token}

    def _fetch_conversations(self) -> List[dict]:
        response = requests.get(
            f"{self.base_url}/api/chat/conversations",
            cookies=self._cookies(),
            timeout=10
        )
        response.raise_for_status()
        return response.json()

    def _fetch_history(self, conversation_id: int) -> List[dict]:
        response = requests.get(
            f"{self.base_url}/api/chat/conversations/{conversation_id}/messages",
            cookies=self._cookies(),
            timeout=10
        )
        response.raise_for_status()
        return response.json()

    def _post_message(self, conversation_id: int, content: str, client_token: Optional[str]) -> dict:
        response = requests.post(
            f"{self.base_url}/api/chat/messages",
            json={"conversation_id": conversation_id, "content": content, "client_token": client_token},
            cookies=self._cookies(),
            timeout=10
        )
        response.raise_for_status()
        return response.json()

    async def fetch_conversations(self) -> List[dict]:
        return await asyncio.to_thread(self._fetch_conversations)

    async def fetch_history(self, conversation_id: int) -> List[dict]:
        return await asyncio.to_thread(self._fetch_history, conversation_id)

    async def post_message(self, conversation_id: int, content: str, client_token: Optional[str] = None) -> dict:
        return await asyncio.to_thread(self._post_message, conversation_id, content, client_token)


async def connect(base_url: str, token: str) -> ChatSession:
    """
    Open a chat session.

    The credential travels as the ``swapply_token`` cookie, the same way a
    browser on the marketplace origin would send it.

    Raises:
        AuthenticationRejected: if the server refuses the handshake
    """
    ws_url = base_url.rstrip("/").replace("http://", "ws://").replace("https://", "wss://")
    try:
        connection = await ws_connect(
            f"{ws_url}/ws",
            additional_headers={"Cookie": f"{COOKIE_NAME}={token}"}
        )
    except InvalidStatus as e:
        raise AuthenticationRejected(f"Handshake rejected with HTTP {e.response.status_code}") from e
    return ChatSession(connection, base_url, token)


class ConversationView:
    """
    Chat window state for one conversation.

    Ties a :class:`ChatSession` to a :class:`MessageTimeline` so that each
    logical message is rendered once.
    """

    def __init__(self, session: ChatSession, conversation_id: int, user_id: int):
        self.session = session
        self.conversation_id = conversation_id
        self.timeline = MessageTimeline(conversation_id, user_id)

    async def open(self) -> None:
        # Join before loading history so nothing sent in between is missed;
        # duplicates are dropped by id.
        await self.session.join_chat(self.conversation_id)
        self.timeline.load_history(await self.session.fetch_history(self.conversation_id))

    async def submit(self, content: str) -> Optional[dict]:
        content = content.strip()
        if not content:
            return None
        entry = self.timeline.submit(content)
        await self.session.send_message(self.conversation_id, content, entry["clientToken"])
        return entry

    def apply(self, frame: dict) -> bool:
        """Apply a server event to the timeline. Returns True if it changed."""
        event = frame.get("event")
        data = frame.get("data") or {}
        if event == "new-message":
            return self.timeline.receive(data)
        if event == "request-denied" and data.get("action") == "send-message" and data.get("clientToken"):
            return self.timeline.fail(data["clientToken"]) is not None
        return False

    async def close(self) -> None:
        await self.session.leave_chat(self.conversation_id)


def print_message(message: dict, user_id: Optional[int]):
    """Print one timeline entry."""
    is_me = message.get("senderId") == user_id
    color = Fore.GREEN if is_me else Fore.CYAN
    sender = "You" if is_me else message.get("senderName") or f"User {message.get('senderId')}"
    suffix = f" {Style.DIM}(sending){Style.RESET_ALL}" if message.get("pending") else ""
    print(f"{color}[{sender}]{Style.RESET_ALL} {message.get('content')}{suffix}")


async def run(base_url: str, token: str, conversation_id: int):
    try:
        session = await connect(base_url, token)
    except AuthenticationRejected as e:
        print(f"{Fore.RED}✗ {e}{Style.RESET_ALL}")
        return

    async with session:
        connected = await session.receive()
        view = ConversationView(session, conversation_id, connected["data"]["userId"])
        await view.open()
        for message in view.timeline:
            print_message(message, session.user_id)

        async def read_input():
            while True:
                line = await asyncio.to_thread(input)
                if line.strip() == "/quit":
                    await view.close()
                    await session.close()
                    return
                entry = await view.submit(line)
                if entry:
                    print_message(entry, session.user_id)

        input_task = asyncio.create_task(read_input())
        try:
            async for frame in session.events():
                if view.apply(frame) and frame["event"] == "new-message":
                    if frame["data"].get("senderId") != session.user_id:
                        print_message(frame["data"], session.user_id)
                elif frame["event"] == "request-denied":
                    print(f"{Fore.RED}✗ {frame['data']['action']}: {frame['data']['reason']}{Style.RESET_ALL}")
                elif frame["event"] == "new-interest-notification":
                    print(f"{Fore.YELLOW}★ User {frame['data']['fromUserId']} is interested in "
                          f"product {frame['data']['productId']}{Style.RESET_ALL}")
        finally:
            input_task.cancel()


def main():
    init(autoreset=True)

    parser = argparse.ArgumentParser(description="Swapply - Real-time chat client")
    parser.add_argument("-t", "--token", required=True, help="Access token (JWT) of the user")
    parser.add_argument("-c", "--conversation", required=True, type=int, help="Conversation to open")
    parser.add_argument(
        "--url",
        default="http://localhost:3000",
        help="API base URL (default: http://localhost:3000)"
    )
    args = parser.parse_args()

    try:
        asyncio.run(run(args.url, args.token, args.conversation))
    except KeyboardInterrupt:
        print(f"\n{Fore.YELLOW}Bye.{Style.RESET_ALL}")


if __name__ == "__main__":
    main()
