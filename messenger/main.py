import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, Response, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from messenger.config import settings
from messenger.contacts import add_contact, ensure_contacts_in_background, get_contacts, remove_contact, rename_contact
from messenger.conversations import check_new, get_history, list_conversations
from messenger.delivery import Connection, DeliverySession, fan_out, outcome_label, send_message
from messenger.errors import AppError, AuthError, StoreError, register_exception_handlers
from messenger.logging_utils import RequestLoggingMiddleware, log_delivery_data, setup_logging
from messenger.metrics import get_metrics, get_metrics_content_type, record_send_outcome
from messenger.registry import ConnectionRegistry
from messenger.schemas import (
    AddContactRequest,
    CheckNewResponse,
    ContactMutationResponse,
    ContactRenameResponse,
    ContactResponse,
    ContactsListResponse,
    ConversationsResponse,
    ErrorResponse,
    HealthResponse,
    HistoryResponse,
    MessageData,
    SendMessageRequest,
    SendMessageResponse,
    StatusMessageResponse,
    UpdateContactRequest,
)
from messenger.storage import check_db_health, get_db, init_db, touch_last_seen
from messenger.tokens import verify_token


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    - Shutdown: Nothing to flush; live connections are memory only
    """
    init_db()
    yield


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Real-time one-to-one messaging: delivery, conversations and contacts",
    version=settings.VERSION,
    lifespan=lifespan,
)

# One registry per process, rebuilt empty on every start
app.state.registry = ConnectionRegistry()

app.add_middleware(RequestLoggingMiddleware)

register_exception_handlers(app)

bearer_scheme = HTTPBearer(auto_error=False)


# =============================================================================
# Dependencies
# =============================================================================

def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry


def get_current_user_id(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
    db: Session = Depends(get_db),
) -> int:
    """
    Resolve the caller from the Authorization: Bearer header.

    Also stamps the caller's last_seen; a failure there never fails the request.
    """
    if credentials is None:
        raise AuthError("Access token required")

    user_id = verify_token(credentials.credentials)

    try:
        touch_last_seen(db, user_id)
    except StoreError:
        logger.warning(f"Could not update last_seen for user {user_id}")

    return user_id


CurrentUser = Annotated[int, Depends(get_current_user_id)]


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. TOKEN_SECRET is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.TOKEN_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="TOKEN_SECRET not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations", response_model=ConversationsResponse)
@app.get("/messages/conversations", response_model=ConversationsResponse, include_in_schema=False)
def get_conversations(
    user_id: CurrentUser,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> ConversationsResponse:
    """
    List the caller's conversations, one per peer, newest first.

    Peers whose latest message is inbound and who are not yet in the caller's
    contacts get a contact row created after the response is sent.
    """
    summaries, missing_contacts = list_conversations(db, user_id)

    if missing_contacts:
        background_tasks.add_task(ensure_contacts_in_background, user_id, missing_contacts)

    logger.info(f"GET /conversations: user={user_id}, returned {len(summaries)} conversations")
    return ConversationsResponse(conversations=summaries)


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/messages/check-new", response_model=CheckNewResponse)
def get_new_messages(
    user_id: CurrentUser,
    background_tasks: BackgroundTasks,
    last_message_id: Annotated[
        Optional[int],
        Query(alias="lastMessageId", ge=0, description="Only return messages with a greater id")
    ] = None,
    db: Session = Depends(get_db),
) -> CheckNewResponse:
    """
    Polling fallback: inbound messages since lastMessageId, oldest first.

    Every sender gets a contact row for the caller if it lacks one.
    """
    messages, senders = check_new(db, user_id, last_message_id)

    if senders:
        background_tasks.add_task(ensure_contacts_in_background, user_id, senders)

    logger.debug(f"GET /messages/check-new: user={user_id}, since={last_message_id}, new={len(messages)}")
    return CheckNewResponse(messages=messages)


@app.get(
    "/messages/{peer_id}",
    response_model=HistoryResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown peer"}},
)
def get_messages_with(
    peer_id: int,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> HistoryResponse:
    """Full history between the caller and peer_id, oldest first."""
    messages = get_history(db, user_id, peer_id)
    logger.info(f"GET /messages/{peer_id}: user={user_id}, returned {len(messages)} messages")
    return HistoryResponse(messages=messages)


@app.post(
    "/messages",
    status_code=status.HTTP_201_CREATED,
    response_model=SendMessageResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing receiver or empty content"},
        404: {"model": ErrorResponse, "description": "Unknown receiver"},
    },
)
async def post_message(
    request: Request,
    payload: SendMessageRequest,
    user_id: CurrentUser,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> SendMessageResponse:
    """
    Send a message over REST.

    The message is persisted exactly once, echoed back, and pushed to the
    receiver's live connections if any.
    """
    try:
        message = await run_in_threadpool(send_message, db, user_id, payload.receiver_id, payload.content)
    except AppError as e:
        result = outcome_label(e)
        record_send_outcome("rest", result)
        log_delivery_data(request, receiver_id=payload.receiver_id, result=result)
        raise

    record_send_outcome("rest", "sent")
    log_delivery_data(request, message_id=message.id, receiver_id=message.receiver_id, result="sent")

    await fan_out(get_registry(request), message)
    background_tasks.add_task(ensure_contacts_in_background, message.receiver_id, [user_id])

    return SendMessageResponse(
        message_data=MessageData(
            id=message.id,
            content=message.content,
            timestamp=message.timestamp,
            is_outgoing=True,
        )
    )


# =============================================================================
# Contact Routes
# =============================================================================

@app.get("/contacts", response_model=ContactsListResponse)
def list_contacts(
    user_id: CurrentUser,
    db: Session = Depends(get_db),
    registry: ConnectionRegistry = Depends(get_registry),
) -> ContactsListResponse:
    return ContactsListResponse(contacts=get_contacts(db, user_id, registry))


@app.post(
    "/contacts",
    status_code=status.HTTP_201_CREATED,
    response_model=ContactMutationResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing contact id"},
        404: {"model": ErrorResponse, "description": "Unknown user"},
        409: {"model": ErrorResponse, "description": "Contact already exists"},
    },
)
def create_contact(
    payload: AddContactRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
    registry: ConnectionRegistry = Depends(get_registry),
) -> ContactMutationResponse:
    contact = add_contact(db, user_id, payload.contact_id, payload.nickname)
    contact["online"] = registry.is_online(contact["contact_id"])
    return ContactMutationResponse(
        message="Contact added successfully",
        contact=ContactResponse(**contact),
    )


@app.put(
    "/contacts/{contact_id}",
    response_model=ContactRenameResponse,
    responses={404: {"model": ErrorResponse, "description": "Contact not found"}},
)
def update_contact(
    contact_id: int,
    payload: UpdateContactRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ContactRenameResponse:
    contact = rename_contact(db, user_id, contact_id, payload.nickname)
    return ContactRenameResponse(id=contact.id, nickname=contact.nickname)


@app.delete(
    "/contacts/{contact_id}",
    response_model=StatusMessageResponse,
    responses={404: {"model": ErrorResponse, "description": "Contact not found"}},
)
def delete_contact(
    contact_id: int,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> StatusMessageResponse:
    remove_contact(db, user_id, contact_id)
    return StatusMessageResponse(message="Contact deleted successfully")


# =============================================================================
# Real-time Route
# =============================================================================

@app.websocket("/ws")
async def realtime(websocket: WebSocket) -> None:
    """
    Real-time channel. The client authenticates with an ``authenticate`` frame,
    then sends ``send_message`` frames; see messenger.protocol.
    """
    await websocket.accept()
    session = DeliverySession(Connection(websocket), websocket.app.state.registry)
    await session.run()


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("messenger.main:app", host=settings.HOST, port=settings.PORT)
