"""
API endpoint implementations.
Defines the chat REST endpoints (inbox, history, send fallback), the
"express interest" endpoint and the WebSocket endpoint for live chat.
"""
import asyncio
import json
import logging
from typing import List, Optional, Tuple
from fastapi import APIRouter, Depends, HTTPException, status, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.orm import Session
from api.dependencies import get_db, get_current_principal, authenticate_websocket
from api.message_pipeline import MessagePipeline, SendStatus, build_preview
from api.metrics import (
    chat_operations_total, websocket_events_received_total, websocket_handshakes_rejected_total
)
from api.schemas import (
    ConversationListItem, MessageCreate, MessageResponse, InterestResponse,
    WSSendMessage, WSProductInterest, WSRequestDenied, WSError
)
from api.websocket_manager import ConnectionSession, connection_manager, user_room
from core.audit_logger import audit_logger
from core.config import settings
from core.security import Principal
from db.database import SessionLocal
from db.repository import Repository
from services.conversation_access import Access, check_conversation_access
from services.conversation_resolver import ConversationResolver

logger = logging.getLogger(__name__)

message_pipeline = MessagePipeline(connection_manager)

# Create routers
chat_router = APIRouter()
products_router = APIRouter()
websocket_router = APIRouter()


def _message_response(message: dict) -> MessageResponse:
    return MessageResponse(
        id=message["id"],
        conversation_id=message["conversationId"],
        sender_id=message["senderId"],
        content=message["content"],
        read=message["read"],
        created_at=message["createdAt"],
        client_token=message.get("clientToken")
    )


def _require_participant(repository: Repository, conversation_id: int, principal: Principal, action: str):
    access, conversation = check_conversation_access(repository, conversation_id, principal.id)
    if access is Access.NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found"
        )
    if access is Access.DENIED:
        audit_logger.log_authorization_denied(
            user_id=principal.id,
            resource=f"conversation:{conversation_id}",
            action=action,
            reason="not a participant"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a participant of this conversation"
        )
    return conversation


# Conversation Endpoints
@chat_router.get("/conversations", response_model=List[ConversationListItem])
def list_conversations(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db)
):
    """
    List the caller's conversations, most recently active first.

    Each item carries the counterpart's name and picture and the title and
    images of the product being negotiated, if any.
    """
    repository = Repository(db)
    return repository.list_user_conversations(principal.id)


@chat_router.get("/conversations/{conversation_id}/messages", response_model=List[MessageResponse])
def get_conversation_messages(
    conversation_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db)
):
    """
    Get the message history of a conversation, oldest first.

    Returns the latest ``history_limit`` messages. Fetching the history marks
    the counterpart's messages as read for the caller.

    Raises:
        HTTPException: 401 Unauthorized if the credential is invalid
        HTTPException: 403 Forbidden if the caller is not a participant
        HTTPException: 404 Not Found if the conversation does not exist
    """
    repository = Repository(db)
    _require_participant(repository, conversation_id, principal, action="read")

    marked = repository.mark_messages_as_read(conversation_id, principal.id)
    if marked:
        logger.info(f"User {principal.id} read {marked} messages in conversation {conversation_id}")

    rows = repository.get_conversation_messages(conversation_id, settings.history_limit)
    return [
        MessageResponse(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            content=message.content,
            read=message.read,
            created_at=message.created_at,
            sender_name=sender.name if sender else None,
            sender_picture=sender.picture if sender else None
        )
        for message, sender in rows
    ]


# Message Endpoints
@chat_router.post("/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    request: MessageCreate,
    principal: Principal = Depends(get_current_principal)
):
    """
    Send a message without a live connection.

    Runs the same pipeline as the ``send-message`` WebSocket event, so the
    message is also broadcast to the conversation room.

    Example Request:
        ```json
        POST /api/chat/messages
        {
            "conversation_id": 42,
            "content": "Still available?"
        }
        ```

    Raises:
        HTTPException: 400 Bad Request if content is empty
        HTTPException: 403 Forbidden if the caller is not a participant
        HTTPException: 404 Not Found if the conversation does not exist
        HTTPException: 500 if the message could not be stored
    """
    result = await message_pipeline.send(
        principal,
        request.conversation_id,
        request.content,
        client_token=request.client_token,
        transport="rest"
    )

    if result.status is SendStatus.SENT:
        return _message_response(result.message)
    if result.status is SendStatus.INVALID:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message content is empty")
    if result.status is SendStatus.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    if result.status is SendStatus.DENIED:
        audit_logger.log_authorization_denied(
            user_id=principal.id,
            resource=f"conversation:{request.conversation_id}",
            action="send",
            reason="not a participant"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a participant of this conversation"
        )
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Failed to process message"
    )


# Product interest
def _register_interest(db: Session, product_id: int, user_id: int) -> Tuple[str, int, int]:
    repository = Repository(db)

    product = repository.get_product_by_id(product_id)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    if product.owner_id == user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot express interest in your own product"
        )

    conversation = ConversationResolver(repository).find_or_create(user_id, product.owner_id, product.id)
    repository.touch_conversation(conversation, build_preview(f"Interest shown in: {product.title}"))
    repository.commit()

    return product.title, product.owner_id, conversation.id


@products_router.post("/{product_id}/interest", response_model=InterestResponse)
async def express_interest(
    product_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db)
):
    """
    Express interest in a listed product.

    Finds or creates the conversation between the caller and the owner about
    this product, primes its inbox preview and notifies the owner's private
    room. Repeated calls return the same conversation.

    Raises:
        HTTPException: 400 Bad Request if the caller owns the product
        HTTPException: 404 Not Found if the product does not exist
    """
    title, owner_id, conversation_id = await asyncio.to_thread(
        _register_interest, db, product_id, principal.id
    )

    await connection_manager.broadcast(
        user_room(owner_id),
        "new-interest-notification",
        {"productId": product_id, "fromUserId": principal.id, "conversationId": conversation_id}
    )

    return InterestResponse(
        message="Interest expressed successfully",
        conversation_id=conversation_id,
        product_id=product_id,
        product_title=title
    )


# WebSocket event handlers
def _parse_conversation_id(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


async def _deny(
    session: ConnectionSession,
    action: str,
    reason: str,
    conversation_id: Optional[int] = None,
    client_token: Optional[str] = None
) -> None:
    await session.send_event("request-denied", WSRequestDenied(
        action=action,
        reason=reason,
        conversationId=conversation_id,
        clientToken=client_token
    ).model_dump())


async def handle_join_chat(session: ConnectionSession, data) -> None:
    conversation_id = _parse_conversation_id(data)
    if conversation_id is None:
        await _deny(session, "join-chat", "invalid")
        return

    access = await connection_manager.join_conversation(session, conversation_id)
    chat_operations_total.labels(operation="join", outcome=access.value, transport="websocket").inc()

    if access is Access.GRANTED:
        await session.send_event("joined-chat", {"conversationId": conversation_id})
        return

    audit_logger.log_authorization_denied(
        user_id=session.user_id,
        resource=f"conversation:{conversation_id}",
        action="join",
        reason=access.value
    )
    await _deny(session, "join-chat", "denied", conversation_id)


async def handle_leave_chat(session: ConnectionSession, data) -> None:
    conversation_id = _parse_conversation_id(data)
    if conversation_id is None:
        await _deny(session, "leave-chat", "invalid")
        return

    connection_manager.leave_conversation(session, conversation_id)
    await session.send_event("left-chat", {"conversationId": conversation_id})


async def handle_send_message(session: ConnectionSession, data) -> None:
    try:
        intent = WSSendMessage.model_validate(data)
    except ValidationError:
        client_token = data.get("clientToken") if isinstance(data, dict) else None
        await _deny(session, "send-message", "invalid",
                    client_token=client_token if isinstance(client_token, str) else None)
        return

    result = await message_pipeline.send(
        session.principal, intent.conversationId, intent.content, client_token=intent.clientToken
    )
    if result.ok:
        return

    if result.status in (SendStatus.NOT_FOUND, SendStatus.DENIED):
        audit_logger.log_authorization_denied(
            user_id=session.user_id,
            resource=f"conversation:{intent.conversationId}",
            action="send",
            reason=result.status.value
        )
        reason = "denied"
    elif result.status is SendStatus.INVALID:
        reason = "invalid"
    else:
        reason = "failed"

    await _deny(session, "send-message", reason, intent.conversationId, intent.clientToken)


def _product_owned_by(product_id: int, owner_id: int) -> bool:
    with SessionLocal() as db:
        product = Repository(db).get_product_by_id(product_id)
        return product is not None and product.owner_id == owner_id


async def handle_interest_in_product(session: ConnectionSession, data) -> None:
    try:
        interest = WSProductInterest.model_validate(data)
    except ValidationError:
        await _deny(session, "interest-in-product", "invalid")
        return

    if interest.productOwnerId == session.user_id:
        await _deny(session, "interest-in-product", "invalid")
        return

    if not await asyncio.to_thread(_product_owned_by, interest.productId, interest.productOwnerId):
        await _deny(session, "interest-in-product", "denied")
        return

    await connection_manager.broadcast(
        user_room(interest.productOwnerId),
        "new-interest-notification",
        {"productId": interest.productId, "fromUserId": session.user_id}
    )


async def handle_pong(session: ConnectionSession, data) -> None:
    connection_manager.update_heartbeat(session)


EVENT_HANDLERS = {
    "join-chat": handle_join_chat,
    "leave-chat": handle_leave_chat,
    "send-message": handle_send_message,
    "interest-in-product": handle_interest_in_product,
    "pong": handle_pong,
}


async def handle_client_frame(session: ConnectionSession, raw: str) -> None:
    """
    Decode one client frame and dispatch it to its event handler.

    Failures are reported to the sending connection only; the connection
    stays open.
    """
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        await session.send_event("error", WSError(error="Invalid JSON format", code="INVALID_JSON").model_dump())
        return

    event = frame.get("event") if isinstance(frame, dict) else None
    handler = EVENT_HANDLERS.get(event)
    if handler is None:
        await session.send_event("error", WSError(error=f"Unknown event: {event}", code="INVALID_EVENT").model_dump())
        return

    websocket_events_received_total.labels(event=event, instance="api").inc()

    try:
        await handler(session, frame.get("data"))
    except WebSocketDisconnect:
        raise
    except Exception as e:
        logger.error(f"Error processing {event} for user {session.user_id}: {e}")
        await session.send_event("error", WSError(error="Internal server error", code="INTERNAL_ERROR").model_dump())


# WebSocket Endpoint
@websocket_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for live chat.

    Connection Flow:
        1. Browser connects to ws://api/ws carrying the ``swapply_token`` cookie
        2. Server verifies the token before accepting; invalid credentials
           close the handshake with code 4001
        3. The connection joins its user's private room automatically
        4. Client joins conversation rooms: {"event": "join-chat", "data": 42}
        5. Client sends: {"event": "send-message",
                          "data": {"conversationId": 42, "content": "hi", "clientToken": "t1"}}
        6. Room members receive {"event": "new-message", "data": {...}}

    Client events: join-chat, leave-chat, send-message, interest-in-product, pong
    Server events: connected, joined-chat, left-chat, new-message,
                   new-interest-notification, request-denied, ping, error

    Close Codes:
        - 4001: Authentication failed (missing, invalid or expired token)
        - 4002: Connection limit reached
        - 1001: Connection timeout (no heartbeat)
    """
    principal = authenticate_websocket(websocket)
    if principal is None:
        websocket_handshakes_rejected_total.labels(reason="unauthenticated", instance="api").inc()
        await websocket.close(code=4001, reason="Authentication failed")
        return

    session = await connection_manager.connect(websocket, principal)
    if session is None:
        websocket_handshakes_rejected_total.labels(reason="connection_limit", instance="api").inc()
        await websocket.close(code=4002, reason="Connection limit reached")
        return

    try:
        await session.send_event("connected", {"userId": principal.id})

        while True:
            raw = await websocket.receive_text()
            await handle_client_frame(session, raw)

    except WebSocketDisconnect:
        logger.info(f"User {principal.id} disconnected from WebSocket")
    except Exception as e:
        logger.error(f"WebSocket error for user {principal.id}: {e}")
    finally:
        connection_manager.disconnect(session)
