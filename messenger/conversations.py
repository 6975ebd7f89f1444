"""
Read-side views over the message log: the conversation list, one thread's
history and the polling feed.

Contact auto-creation triggered from here is a side effect: the list and the
poll hand back the peers that still need a contact row so the caller can
create them after responding. A client that refreshes right away may see a
peer without a nickname once; the next read shows it.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from messenger.contacts import ensure_contact_quietly
from messenger.identity import get_user_by_id
from messenger.schemas import ConversationSummary, InboundMessage, MessageData
from messenger.storage import get_conversation_messages, get_inbound_since, get_latest_per_peer

logger = logging.getLogger(__name__)


def list_conversations(db: Session, user_id: int) -> Tuple[List[ConversationSummary], List[int]]:
    """
    One summary per distinct peer, newest first.

    Each summary reflects the highest-id message between user_id and that
    peer. Ids are assigned at persistence time, so under clock skew this can
    differ from the highest timestamp; the id wins.

    Returns:
        (summaries, peer ids whose latest message is inbound and who have no
        contact row for user_id yet)
    """
    summaries = []
    missing_contacts = []

    for message, peer, nickname in get_latest_per_peer(db, user_id):
        is_outgoing = message.sender_id == user_id

        if not is_outgoing and not nickname:
            missing_contacts.append(peer.id)

        summaries.append(
            ConversationSummary(
                id=message.id,
                peer_id=peer.id,
                display_name=nickname or peer.username,
                last_message=message.content,
                timestamp=message.timestamp,
                is_outgoing=is_outgoing,
                avatar=peer.avatar_ref,
            )
        )

    logger.debug(f"Conversations for user {user_id}: {len(summaries)} peers, {len(missing_contacts)} without contact")
    return summaries, missing_contacts


def get_history(db: Session, user_id: int, peer_id: int) -> List[MessageData]:
    """
    The full thread between user_id and peer_id, oldest first.

    Makes sure user_id has peer_id as a contact; a failure there is logged
    and the history is still returned.

    Raises:
        NotFoundError: peer_id is not a known user
    """
    get_user_by_id(db, peer_id)

    ensure_contact_quietly(db, user_id, peer_id)

    return [
        MessageData(
            id=message.id,
            content=message.content,
            timestamp=message.timestamp,
            is_outgoing=message.sender_id == user_id,
        )
        for message in get_conversation_messages(db, user_id, peer_id)
    ]


def check_new(db: Session, user_id: int, last_message_id: Optional[int] = None) -> Tuple[List[InboundMessage], List[int]]:
    """
    Messages received since last_message_id (everything inbound when None), oldest first.

    Returns:
        (messages, distinct sender ids in first-seen order)
    """
    messages = []
    senders = []

    for message, sender in get_inbound_since(db, user_id, last_message_id):
        if sender.id not in senders:
            senders.append(sender.id)
        messages.append(
            InboundMessage(
                id=message.id,
                content=message.content,
                timestamp=message.timestamp,
                sender_id=sender.id,
                sender_name=sender.username,
                sender_phone=sender.phone_number,
            )
        )

    return messages, senders
