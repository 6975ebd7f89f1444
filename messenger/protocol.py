"""
Real-time wire protocol.

One JSON object per WebSocket text frame, tagged by ``type``. Inbound frames
form a closed set validated before dispatch; anything else is rejected at
the boundary.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# Clients generate these; some use strings, some use counters
TempId = Union[str, int]


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Client -> Server
# =============================================================================

class AuthenticateFrame(_Frame):
    type: Literal["authenticate"]
    token: Optional[str] = None


class SendMessageFrame(_Frame):
    """
    A send request. temp_id is the client's correlation id for optimistic UI;
    it is echoed on the ack/error and never stored.
    """
    type: Literal["send_message"]
    receiver_id: Optional[int] = Field(None, alias="receiverId")
    content: Optional[str] = None
    temp_id: Optional[TempId] = Field(None, alias="tempId")


InboundFrame = Annotated[
    Union[AuthenticateFrame, SendMessageFrame],
    Field(discriminator="type"),
]

inbound_adapter = TypeAdapter(InboundFrame)


def parse_inbound(raw: Any):
    """
    Validate a decoded JSON frame.

    Raises:
        pydantic.ValidationError: unknown type or malformed fields
    """
    return inbound_adapter.validate_python(raw)


def extract_temp_id(raw: Any) -> Optional[TempId]:
    """Best-effort tempId from a frame that failed validation."""
    if isinstance(raw, dict):
        temp_id = raw.get("tempId")
        if isinstance(temp_id, (str, int)) and not isinstance(temp_id, bool):
            return temp_id
    return None


# =============================================================================
# Server -> Client
# =============================================================================

class MessagePayload(_Frame):
    id: int
    sender_id: int = Field(..., alias="senderId")
    receiver_id: int = Field(..., alias="receiverId")
    content: str
    timestamp: str
    is_outgoing: bool = Field(..., alias="isOutgoing")

    @classmethod
    def from_model(cls, message, is_outgoing: bool) -> "MessagePayload":
        return cls(
            id=message.id,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            content=message.content,
            timestamp=message.timestamp,
            is_outgoing=is_outgoing,
        )


class AuthenticatedEvent(_Frame):
    type: Literal["authenticated"] = "authenticated"
    user_id: int = Field(..., alias="userId")
    ack_timeout_seconds: int = Field(..., alias="ackTimeoutSeconds")


class AuthErrorEvent(_Frame):
    type: Literal["auth_error"] = "auth_error"
    message: str = "Authentication failed"


class MessageSentEvent(_Frame):
    """Acknowledgment to the sending connection only."""
    type: Literal["message_sent"] = "message_sent"
    temp_id: Optional[TempId] = Field(None, alias="tempId")
    message: MessagePayload


class MessageErrorEvent(_Frame):
    type: Literal["message_error"] = "message_error"
    temp_id: Optional[TempId] = Field(None, alias="tempId")
    error: str


class NewMessageEvent(_Frame):
    """Fan-out to the receiver's connections; never carries the sender's tempId."""
    type: Literal["new_message"] = "new_message"
    message: MessagePayload


class ErrorEvent(_Frame):
    type: Literal["error"] = "error"
    error: str


OutboundEvent = Union[
    AuthenticatedEvent,
    AuthErrorEvent,
    MessageSentEvent,
    MessageErrorEvent,
    NewMessageEvent,
    ErrorEvent,
]


def dump_event(event: OutboundEvent) -> dict:
    return event.model_dump(mode="json", by_alias=True)
