"""
Contact Directory operations.

Contacts are directional: owner A keeping peer B says nothing about B's
address book. Rows appear either through an explicit add or implicitly
through ensure_contact when messages arrive from an unknown peer.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from messenger.errors import ConflictError, NotFoundError, ValidationError
from messenger.identity import get_user_by_id
from messenger.metrics import record_contact_autocreated
from messenger.registry import ConnectionRegistry
from messenger.storage import (
    SessionLocal,
    delete_contact,
    get_contact,
    insert_contact,
    list_contacts,
    update_contact_nickname,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Auto-creation
# =============================================================================

def ensure_contact(db: Session, owner_id: int, peer_id: int):
    """
    Return owner_id's contact row for peer_id, creating it when absent.

    An existing row is returned untouched, so a nickname the owner chose is
    never overwritten. New rows take the peer's phone number as nickname, or
    the username when no phone number is set.

    Safe to race: the (owner_id, peer_id) unique constraint lets exactly one
    insert win; the loser re-reads the winner's row.

    Raises:
        NotFoundError: peer_id is not a known user
        StoreError: backing store failure
    """
    existing = get_contact(db, owner_id, peer_id)
    if existing is not None:
        return existing

    peer = get_user_by_id(db, peer_id)

    try:
        contact = insert_contact(db, owner_id, peer_id, peer.default_nickname)
    except ConflictError:
        contact = get_contact(db, owner_id, peer_id)
        if contact is None:
            # the winning row was deleted between our insert and re-read
            raise
        return contact

    record_contact_autocreated()
    logger.info(f"Auto-created contact {owner_id}->{peer_id} ({contact.nickname})")
    return contact


def ensure_contact_quietly(db: Session, owner_id: int, peer_id: int) -> None:
    """ensure_contact for side-effect callers: failures are logged, never raised."""
    try:
        ensure_contact(db, owner_id, peer_id)
    except Exception:
        logger.exception(f"Could not ensure contact {owner_id}->{peer_id}")


def ensure_contacts_in_background(owner_id: int, peer_ids: List[int]) -> None:
    """
    Background-task entry point.

    Runs after the response has gone out, so it opens its own session.
    """
    with SessionLocal() as db:
        for peer_id in peer_ids:
            ensure_contact_quietly(db, owner_id, peer_id)


# =============================================================================
# Explicit directory operations
# =============================================================================

def add_contact(db: Session, owner_id: int, peer_id: Optional[int], nickname: Optional[str] = None) -> dict:
    if not peer_id:
        raise ValidationError("Contact ID is required")

    peer = get_user_by_id(db, peer_id)

    if get_contact(db, owner_id, peer_id) is not None:
        raise ConflictError("Contact already exists")

    contact = insert_contact(db, owner_id, peer_id, (nickname or "").strip() or peer.default_nickname)
    return {
        "id": contact.id,
        "contact_id": peer.id,
        "nickname": contact.nickname,
        "username": peer.username,
        "phone_number": peer.phone_number,
        "avatar": peer.avatar_ref,
        "last_seen": peer.last_seen,
        "created_at": contact.created_at,
    }


def get_contacts(db: Session, owner_id: int, registry: ConnectionRegistry) -> List[dict]:
    return [
        {
            "id": contact.id,
            "contact_id": user.id,
            "nickname": contact.nickname,
            "username": user.username,
            "phone_number": user.phone_number,
            "avatar": user.avatar_ref,
            "last_seen": user.last_seen,
            "created_at": contact.created_at,
            "online": registry.is_online(user.id),
        }
        for contact, user in list_contacts(db, owner_id)
    ]


def rename_contact(db: Session, owner_id: int, contact_id: int, nickname: Optional[str]):
    if not nickname or not nickname.strip():
        raise ValidationError("Nickname is required")

    contact = update_contact_nickname(db, owner_id, contact_id, nickname.strip())
    if contact is None:
        raise NotFoundError("Contact not found or not owned by you")
    return contact


def remove_contact(db: Session, owner_id: int, contact_id: int) -> None:
    """Drop the address-book entry only; the message log is untouched."""
    if not delete_contact(db, owner_id, contact_id):
        raise NotFoundError("Contact not found or not owned by you")
