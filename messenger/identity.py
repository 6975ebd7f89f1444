"""
Read-only view of the identity service's user records.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from messenger.errors import NotFoundError
from messenger.storage import get_user


@dataclass(frozen=True)
class UserRecord:
    id: int
    username: str
    phone_number: Optional[str]
    avatar_ref: Optional[str]
    last_seen: Optional[str] = None

    @classmethod
    def from_model(cls, user) -> "UserRecord":
        return cls(
            id=user.id,
            username=user.username,
            phone_number=user.phone_number,
            avatar_ref=user.avatar_ref,
            last_seen=user.last_seen,
        )

    @property
    def default_nickname(self) -> str:
        """Phone number, falling back to the username when none is set."""
        return self.phone_number or self.username


def get_user_by_id(db: Session, user_id: int) -> UserRecord:
    """
    Raises:
        NotFoundError: no such user
    """
    user = get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return UserRecord.from_model(user)


def user_exists(db: Session, user_id: int) -> bool:
    return get_user(db, user_id) is not None
