"""
Message delivery: the send path shared by REST and real-time clients, and the
per-connection protocol state machine.

A connection starts UNAUTHENTICATED, becomes AUTHENTICATED after a valid
token and ends DISCONNECTED when the transport closes. Failed operations are
reported as events; the socket stays open and reusable.

Sends are not deduplicated by tempId. A client that retries after its ack
timeout may store the same text twice; tempId only lets it avoid rendering
the copy twice.
"""

import enum
import json
import logging
import uuid
from typing import Any, Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as FrameValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from messenger.config import settings
from messenger.contacts import ensure_contact_quietly
from messenger.errors import AppError, AuthError, NotFoundError, StoreError, ValidationError
from messenger.identity import user_exists
from messenger.logging_utils import connection_id_ctx
from messenger.metrics import record_fanout, record_send_outcome
from messenger.protocol import (
    AuthenticatedEvent,
    AuthenticateFrame,
    AuthErrorEvent,
    ErrorEvent,
    MessageErrorEvent,
    MessagePayload,
    MessageSentEvent,
    NewMessageEvent,
    OutboundEvent,
    SendMessageFrame,
    dump_event,
    extract_temp_id,
    parse_inbound,
)
from messenger.registry import ConnectionRegistry
from messenger.storage import SessionLocal, append_message
from messenger.tokens import verify_token

logger = logging.getLogger(__name__)


# =============================================================================
# Send path
# =============================================================================

def send_message(db: Session, sender_id: int, receiver_id: Optional[int], content: Optional[str]):
    """
    Validate and persist one message. Nothing is written unless every check passes.

    Returns:
        The persisted Message with server id and server timestamp

    Raises:
        ValidationError: missing receiver or blank content
        NotFoundError: receiver is not a known user
        StoreError: backing store failure
    """
    if not receiver_id or content is None or not content.strip():
        raise ValidationError("Receiver ID and message content are required")

    if not user_exists(db, receiver_id):
        raise NotFoundError("Receiver not found")

    return append_message(db, sender_id, receiver_id, content)


def outcome_label(exc: AppError) -> str:
    if isinstance(exc, ValidationError):
        return "validation_error"
    if isinstance(exc, NotFoundError):
        return "not_found"
    return "store_error"


async def fan_out(registry: ConnectionRegistry, message) -> int:
    """
    Push new_message to every live connection of the receiver.

    Best effort: an offline receiver gets the message on the next history
    fetch or poll, and one failing connection does not stop the others.

    Returns:
        Number of connections the event was written to
    """
    event = NewMessageEvent(message=MessagePayload.from_model(message, is_outgoing=False))
    delivered = 0
    for handle in registry.handles_for(message.receiver_id):
        try:
            await handle.send_event(event)
        except Exception as e:
            record_fanout(False)
            logger.warning(f"Fan-out of message {message.id} to connection {handle.id} failed: {e}")
            continue
        record_fanout(True)
        delivered += 1
    logger.debug(f"Message {message.id} fanned out to {delivered} connection(s)")
    return delivered


# =============================================================================
# Real-time connection
# =============================================================================

class ConnectionState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


class Connection:
    """Registry handle for one WebSocket. Hashes by identity."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex
        self.websocket = websocket

    async def send_event(self, event: OutboundEvent) -> None:
        await self.websocket.send_json(dump_event(event))

    def __repr__(self) -> str:
        return f"<Connection {self.id}>"


class DeliverySession:
    """Protocol state machine for a single connection."""

    def __init__(
        self,
        connection: Connection,
        registry: ConnectionRegistry,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.connection = connection
        self.registry = registry
        self.session_factory = session_factory
        self.state = ConnectionState.UNAUTHENTICATED
        self.user_id: Optional[int] = None

    async def run(self) -> None:
        """Receive frames until the transport closes."""
        token = connection_id_ctx.set(self.connection.id)
        logger.info("Real-time connection opened")
        try:
            while True:
                frame = await self.connection.websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(frame.get("code", 1000))
                if frame.get("text") is None:
                    await self._emit(ErrorEvent(error="Binary frames are not supported"))
                    continue
                await self.handle_text(frame["text"])
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect()
            connection_id_ctx.reset(token)

    async def handle_text(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            await self._emit(ErrorEvent(error="Frame is not valid JSON"))
            return
        await self.handle_frame(data)

    async def handle_frame(self, data: Any) -> None:
        try:
            frame = parse_inbound(data)
        except FrameValidationError:
            temp_id = extract_temp_id(data)
            if isinstance(data, dict) and data.get("type") == "send_message":
                await self._emit(MessageErrorEvent(temp_id=temp_id, error="Invalid message payload"))
            else:
                await self._emit(ErrorEvent(error="Unknown or malformed frame"))
            return

        if isinstance(frame, AuthenticateFrame):
            await self.authenticate(frame.token)
        elif isinstance(frame, SendMessageFrame):
            await self.send(frame)

    async def authenticate(self, token: Optional[str]) -> None:
        if self.state is ConnectionState.DISCONNECTED:
            return

        try:
            user_id = verify_token(token)
        except AuthError as e:
            logger.info(f"Real-time authentication failed: {e.message}")
            await self._emit(AuthErrorEvent())
            return

        if self.user_id is not None and self.user_id != user_id:
            self.registry.unregister(self.user_id, self.connection)

        self.registry.register(user_id, self.connection)
        self.user_id = user_id
        self.state = ConnectionState.AUTHENTICATED
        logger.info(f"User {user_id} authenticated on connection {self.connection.id}")

        await self._emit(AuthenticatedEvent(user_id=user_id, ack_timeout_seconds=settings.ACK_TIMEOUT_SECONDS))

    async def send(self, frame: SendMessageFrame) -> None:
        temp_id = frame.temp_id

        if self.state is not ConnectionState.AUTHENTICATED:
            await self._emit(MessageErrorEvent(temp_id=temp_id, error="Not authenticated"))
            return

        sender_id = self.user_id
        try:
            message = await run_in_threadpool(self._persist, sender_id, frame.receiver_id, frame.content)
        except AppError as e:
            record_send_outcome("realtime", outcome_label(e))
            logger.info(f"Send from {sender_id} to {frame.receiver_id} rejected: {e.message}")
            await self._emit(MessageErrorEvent(temp_id=temp_id, error=e.message))
            return
        except Exception:
            record_send_outcome("realtime", "store_error")
            logger.exception(f"Send from {sender_id} to {frame.receiver_id} failed")
            await self._emit(MessageErrorEvent(temp_id=temp_id, error=StoreError().message))
            return

        record_send_outcome("realtime", "sent")

        await self._emit(
            MessageSentEvent(temp_id=temp_id, message=MessagePayload.from_model(message, is_outgoing=True))
        )

        await fan_out(self.registry, message)

        await run_in_threadpool(self._ensure_receiver_contact, message.receiver_id, sender_id)

    def disconnect(self) -> None:
        if self.state is ConnectionState.DISCONNECTED:
            return
        if self.user_id is not None:
            self.registry.unregister(self.user_id, self.connection)
            logger.info(f"User {self.user_id} disconnected from connection {self.connection.id}")
        else:
            logger.info(f"Unauthenticated connection {self.connection.id} closed")
        self.state = ConnectionState.DISCONNECTED

    def _persist(self, sender_id: int, receiver_id: Optional[int], content: Optional[str]):
        with self.session_factory() as db:
            return send_message(db, sender_id, receiver_id, content)

    def _ensure_receiver_contact(self, owner_id: int, peer_id: int) -> None:
        with self.session_factory() as db:
            ensure_contact_quietly(db, owner_id, peer_id)

    async def _emit(self, event: OutboundEvent) -> None:
        try:
            await self.connection.send_event(event)
        except Exception as e:
            # late response on a closing socket; the client has given up on it
            logger.debug(f"Dropped {event.type} for connection {self.connection.id}: {e}")
