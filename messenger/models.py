"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, ForeignKey, Integer, String, Text, UniqueConstraint

from messenger.storage import Base


class User(Base):
    """
    Identity record owned by the credential service.

    Table: users
    The messaging core only reads it (plus the last_seen activity stamp).
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, unique=True, nullable=False)
    phone_number = Column(String, unique=True, nullable=True)
    avatar_ref = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    last_seen = Column(String, nullable=True)


class Message(Base):
    """
    Append-only directed message.

    Table: messages
    Primary Key: id, assigned by the engine so it grows with insertion order
    """
    __tablename__ = "messages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    timestamp = Column(String, nullable=False, index=True)  # Server time ISO-8601


class Contact(Base):
    """
    Directional address-book entry: owner_id keeps peer_id under a nickname.

    Table: contacts
    Unique (owner_id, peer_id); the constraint is what makes concurrent
    auto-creation safe.
    """
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("owner_id", "peer_id", name="uq_contacts_owner_peer"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    peer_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    nickname = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
