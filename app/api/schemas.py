"""
Pydantic schemas for request/response validation.
Defines the REST DTOs and the payloads of the WebSocket events.
"""
from datetime import datetime
from typing import Any, List, Literal, Optional
from pydantic import BaseModel, Field


# Conversation Schemas
class ConversationListItem(BaseModel):
    """
    Conversation entry in the caller's inbox.

    Denormalized with the counterpart's display fields and the product the
    negotiation is about.
    """
    id: int
    user1_id: int
    user2_id: int
    other_user_id: int
    other_user_name: Optional[str] = None
    other_user_picture: Optional[str] = None
    product_id: Optional[int] = None
    product_title: Optional[str] = None
    product_images: Optional[List[Any]] = None
    last_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# Message Schemas
class MessageCreate(BaseModel):
    """
    REST send request.

    Example:
        ```json
        {
            "conversation_id": 42,
            "content": "Would you swap it for my bike?",
            "client_token": "c1a7e0"
        }
        ```
    """
    conversation_id: int = Field(..., description="Target conversation ID")
    content: str = Field(..., description="Message text")
    client_token: Optional[str] = Field(
        None, max_length=64, description="Correlation token echoed back in the broadcast"
    )


class MessageResponse(BaseModel):
    """Persisted message as returned by the REST endpoints."""
    id: int
    conversation_id: int
    sender_id: int
    content: str
    read: bool
    created_at: datetime
    sender_name: Optional[str] = None
    sender_picture: Optional[str] = None
    client_token: Optional[str] = None


# Product interest
class InterestResponse(BaseModel):
    """Result of expressing interest in a product."""
    success: bool = True
    message: str
    conversation_id: int
    product_id: int
    product_title: str


# WebSocket client events
class WSSendMessage(BaseModel):
    """``send-message`` payload."""
    conversationId: int
    content: str
    clientToken: Optional[str] = None


class WSProductInterest(BaseModel):
    """``interest-in-product`` payload."""
    productId: int
    productOwnerId: int


# WebSocket server events
class WSRequestDenied(BaseModel):
    """
    ``request-denied`` payload, sent only to the requesting connection.

    ``reason`` never says whether a conversation exists: unknown
    conversations and non-participants both report "denied".
    """
    action: str
    reason: Literal["denied", "invalid", "failed"]
    conversationId: Optional[int] = None
    clientToken: Optional[str] = None


class WSError(BaseModel):
    """``error`` payload for frames that could not be processed."""
    error: str
    code: str
