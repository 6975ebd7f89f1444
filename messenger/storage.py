import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Iterator, List, Optional, Tuple

from sqlalchemy import and_, case, create_engine, func, or_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from messenger.config import settings
from messenger.errors import ConflictError, StoreError

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite: sessions are handed to
# Starlette's threadpool from the event loop
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False},
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def iso_now() -> str:
    """Server clock as ISO-8601 UTC with millisecond precision and Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from messenger import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            for table in ("users", "messages", "contacts"):
                found = db.execute(
                    text("SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name=:name"),
                    {"name": table},
                ).scalar()
                if not found:
                    logger.error(f"Database schema not applied: '{table}' table not found")
                    return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


@contextmanager
def store_errors(db: Session, action: str) -> Iterator[None]:
    """
    Roll back and convert SQLAlchemy failures into an opaque StoreError.

    The underlying cause is logged here with context and never reaches the caller.
    """
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Store failure while trying to {action}: {e}")
        raise StoreError() from e


# =============================================================================
# Identity Records
# =============================================================================

def create_user(
    db: Session,
    username: str,
    phone_number: Optional[str] = None,
    avatar_ref: Optional[str] = None,
):
    """Insert a user record. Seeding helper; registration lives in the identity service."""
    from messenger.models import User

    user = User(
        username=username,
        phone_number=phone_number,
        avatar_ref=avatar_ref,
        created_at=iso_now(),
    )
    with store_errors(db, "create user"):
        try:
            db.add(user)
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ConflictError("Username or phone number already registered") from e
        db.refresh(user)
    logger.info(f"User created: id={user.id}, username={username}")
    return user


def get_user(db: Session, user_id: int):
    from messenger.models import User

    with store_errors(db, f"look up user {user_id}"):
        return db.query(User).filter(User.id == user_id).first()


def touch_last_seen(db: Session, user_id: int) -> None:
    from messenger.models import User

    with store_errors(db, f"update last_seen for user {user_id}"):
        db.query(User).filter(User.id == user_id).update({User.last_seen: iso_now()})
        db.commit()


# =============================================================================
# Message Log
# =============================================================================

def append_message(db: Session, sender_id: int, receiver_id: int, content: str):
    """
    Persist one message with a server-assigned id and server timestamp.

    A single INSERT, so a failure never leaves a partial row behind.
    """
    from messenger.models import Message

    message = Message(
        sender_id=sender_id,
        receiver_id=receiver_id,
        content=content,
        timestamp=iso_now(),
    )
    with store_errors(db, f"save message {sender_id}->{receiver_id}"):
        db.add(message)
        db.commit()
        db.refresh(message)
    logger.info(f"Message saved: id={message.id}, from={sender_id}, to={receiver_id}")
    return message


def get_conversation_messages(db: Session, user_id: int, peer_id: int) -> list:
    """Every message exchanged between the two users, oldest first."""
    from messenger.models import Message

    with store_errors(db, f"load history {user_id}<->{peer_id}"):
        return (
            db.query(Message)
            .filter(
                or_(
                    and_(Message.sender_id == user_id, Message.receiver_id == peer_id),
                    and_(Message.sender_id == peer_id, Message.receiver_id == user_id),
                )
            )
            .order_by(Message.timestamp.asc(), Message.id.asc())
            .all()
        )


def get_inbound_since(db: Session, user_id: int, last_message_id: Optional[int] = None) -> List[Tuple]:
    """
    Inbound messages for user_id with id > last_message_id, oldest first.

    Returns:
        List of (Message, sender User) tuples
    """
    from messenger.models import Message, User

    with store_errors(db, f"poll inbound messages for user {user_id}"):
        query = (
            db.query(Message, User)
            .join(User, User.id == Message.sender_id)
            .filter(Message.receiver_id == user_id)
        )
        if last_message_id is not None:
            query = query.filter(Message.id > last_message_id)
        return query.order_by(Message.timestamp.asc(), Message.id.asc()).all()


def get_latest_per_peer(db: Session, user_id: int) -> List[Tuple]:
    """
    The highest-id message for every peer user_id has talked to, newest first.

    Ids grow with insertion order, so max(id) stands in for "most recent".

    Returns:
        List of (Message, peer User, nickname or None) tuples
    """
    from messenger.models import Contact, Message, User

    peer_id = case((Message.sender_id == user_id, Message.receiver_id), else_=Message.sender_id)

    with store_errors(db, f"aggregate conversations for user {user_id}"):
        latest = (
            db.query(func.max(Message.id).label("max_id"), peer_id.label("peer_id"))
            .filter(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
            .group_by(peer_id)
            .subquery()
        )
        return (
            db.query(Message, User, Contact.nickname)
            .join(latest, Message.id == latest.c.max_id)
            .join(User, User.id == latest.c.peer_id)
            .outerjoin(Contact, and_(Contact.owner_id == user_id, Contact.peer_id == User.id))
            .order_by(Message.timestamp.desc(), Message.id.desc())
            .all()
        )


# =============================================================================
# Contact Directory
# =============================================================================

def get_contact(db: Session, owner_id: int, peer_id: int):
    from messenger.models import Contact

    with store_errors(db, f"look up contact {owner_id}->{peer_id}"):
        return (
            db.query(Contact)
            .filter(Contact.owner_id == owner_id, Contact.peer_id == peer_id)
            .first()
        )


def insert_contact(db: Session, owner_id: int, peer_id: int, nickname: Optional[str]):
    """
    Insert a contact row.

    Raises:
        ConflictError: a row for (owner_id, peer_id) already exists
    """
    from messenger.models import Contact

    contact = Contact(
        owner_id=owner_id,
        peer_id=peer_id,
        nickname=nickname,
        created_at=iso_now(),
    )
    with store_errors(db, f"add contact {owner_id}->{peer_id}"):
        try:
            db.add(contact)
            db.commit()
        except IntegrityError as e:
            db.rollback()
            logger.info(f"Contact already exists: {owner_id}->{peer_id}")
            raise ConflictError("Contact already exists") from e
        db.refresh(contact)
    logger.info(f"Contact created: id={contact.id}, {owner_id}->{peer_id} ({nickname})")
    return contact


def list_contacts(db: Session, owner_id: int) -> List[Tuple]:
    """
    Returns:
        List of (Contact, peer User) tuples ordered by nickname
    """
    from messenger.models import Contact, User

    with store_errors(db, f"list contacts for user {owner_id}"):
        return (
            db.query(Contact, User)
            .join(User, User.id == Contact.peer_id)
            .filter(Contact.owner_id == owner_id)
            .order_by(Contact.nickname.asc(), Contact.id.asc())
            .all()
        )


def update_contact_nickname(db: Session, owner_id: int, contact_id: int, nickname: str):
    """Returns the updated Contact, or None when owner_id does not own contact_id."""
    from messenger.models import Contact

    with store_errors(db, f"update contact {contact_id}"):
        contact = (
            db.query(Contact)
            .filter(Contact.id == contact_id, Contact.owner_id == owner_id)
            .first()
        )
        if contact is None:
            return None
        contact.nickname = nickname
        db.commit()
        db.refresh(contact)
        return contact


def delete_contact(db: Session, owner_id: int, contact_id: int) -> bool:
    from messenger.models import Contact

    with store_errors(db, f"delete contact {contact_id}"):
        deleted = (
            db.query(Contact)
            .filter(Contact.id == contact_id, Contact.owner_id == owner_id)
            .delete()
        )
        db.commit()
    return deleted > 0
