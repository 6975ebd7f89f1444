"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming REST bodies
- Response models for API responses

Wire names are camelCase (receiverId, isOutgoing, ...); Python attributes stay
snake_case and map through aliases. Real-time frames live in protocol.py.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(_CamelModel):
    """
    Body of POST /messages.

    Both fields are optional at the schema level so that a missing receiver
    or blank content surfaces as a 400 from the send path itself.
    """
    receiver_id: Optional[int] = Field(
        None,
        alias="receiverId",
        description="Id of the receiving user"
    )
    content: Optional[str] = Field(
        None,
        description="Message text, must not be blank"
    )

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [{"receiverId": 2, "content": "hi"}]
        },
    )


class AddContactRequest(_CamelModel):
    contact_id: Optional[int] = Field(None, alias="contactId", description="User id to add")
    nickname: Optional[str] = Field(
        None,
        max_length=100,
        description="Display name; defaults to the peer's phone number"
    )


class UpdateContactRequest(_CamelModel):
    nickname: Optional[str] = Field(None, max_length=100, description="New display name")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class MessageData(_CamelModel):
    """One message as seen by the requesting user."""
    id: int = Field(..., description="Server-assigned message id")
    content: str = Field(..., description="Message text")
    timestamp: str = Field(..., description="Server timestamp (ISO-8601 UTC)")
    is_outgoing: bool = Field(..., alias="isOutgoing", description="True when the requester sent it")


class SendMessageResponse(_CamelModel):
    message: str = Field(default="Message sent successfully")
    message_data: MessageData = Field(..., alias="messageData")


class HistoryResponse(_CamelModel):
    """GET /messages/{peer_id}: the whole thread, oldest first."""
    messages: list[MessageData] = Field(default_factory=list)


class InboundMessage(_CamelModel):
    """A message received since the client's last poll."""
    id: int
    content: str
    timestamp: str
    sender_id: int = Field(..., alias="senderId")
    sender_name: str = Field(..., alias="senderName")
    sender_phone: Optional[str] = Field(None, alias="senderPhone")


class CheckNewResponse(_CamelModel):
    messages: list[InboundMessage] = Field(default_factory=list)


class ConversationSummary(_CamelModel):
    """
    Latest-message view of one one-to-one thread.

    display_name is the requester's nickname for the peer when one exists,
    otherwise the peer's username.
    """
    id: int = Field(..., description="Id of the latest message")
    peer_id: int = Field(..., alias="peerId")
    display_name: str = Field(..., alias="displayName")
    last_message: str = Field(..., alias="lastMessage")
    timestamp: str
    is_outgoing: bool = Field(..., alias="isOutgoing")
    avatar: Optional[str] = None


class ConversationsResponse(_CamelModel):
    conversations: list[ConversationSummary] = Field(default_factory=list)


class ContactResponse(_CamelModel):
    id: int = Field(..., description="Contact row id")
    contact_id: int = Field(..., alias="contactId", description="Peer user id")
    nickname: Optional[str] = None
    username: str
    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    avatar: Optional[str] = None
    last_seen: Optional[str] = Field(None, alias="lastSeen")
    created_at: str = Field(..., alias="createdAt")
    online: bool = False


class ContactsListResponse(_CamelModel):
    contacts: list[ContactResponse] = Field(default_factory=list)


class ContactMutationResponse(_CamelModel):
    message: str
    contact: ContactResponse


class ContactRenameResponse(_CamelModel):
    message: str = "Contact updated successfully"
    id: int
    nickname: str


class StatusMessageResponse(BaseModel):
    message: str
