"""
Registry of foreign keys that point at a user.

Order matters: the merge committer moves references in this order and
the rollback engine reverses it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Type

from sqlalchemy import DateTime, func
from sqlalchemy.orm import Session

from rental_admin.core.models import Base, Booking, Payment, Message, KycDocument, Favorite, Property, User


@dataclass(frozen=True)
class UserReference:
    """One movable user foreign key."""

    label: str
    model: Type[Base]
    field: str

    @property
    def model_name(self) -> str:
        return self.model.__name__

    @property
    def column(self):
        return getattr(self.model, self.field)

    def count(self, session: Session, user_id: int) -> int:
        return session.query(func.count(self.model.id)).filter(self.column == user_id).scalar() or 0

    def ids(self, session: Session, user_id: int) -> List[int]:
        rows = session.query(self.model.id).filter(self.column == user_id).order_by(self.model.id).all()
        return [row[0] for row in rows]


USER_REFERENCES: List[UserReference] = [
    UserReference("bookings_as_renter", Booking, "renter_id"),
    UserReference("payments_as_renter", Payment, "renter_id"),
    UserReference("messages_sent", Message, "sender_id"),
    UserReference("messages_received", Message, "receiver_id"),
    UserReference("kyc_documents", KycDocument, "user_id"),
    UserReference("favorites", Favorite, "user_id"),
]

# Model name -> class, for resolving stored moved_refs entries
REFERENCE_MODELS: Dict[str, Type[Base]] = {ref.model_name: ref.model for ref in USER_REFERENCES}


def count_user_references(session: Session, user_id: int) -> Dict[str, int]:
    """Reference count per label for one user."""
    return {ref.label: ref.count(session, user_id) for ref in USER_REFERENCES}


def count_owned_properties(session: Session, user_id: int) -> int:
    """Listings owned by the user (not moved by merges)."""
    return session.query(func.count(Property.id)).filter(Property.owner_id == user_id).scalar() or 0


# User columns captured in merge snapshots and restored on rollback
SNAPSHOT_EXCLUDED_COLUMNS = {"id", "created_at", "updated_at"}


def snapshot_user(user: User) -> Dict[str, object]:
    """JSON-safe dict of the user's columns."""
    snapshot = {}
    for column in User.__table__.columns:
        value = getattr(user, column.key)
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        snapshot[column.key] = value
    return snapshot


def restore_user(user: User, snapshot: Dict[str, object]) -> None:
    """Write snapshot values back onto the user, parsing datetimes."""
    for column in User.__table__.columns:
        if column.key in SNAPSHOT_EXCLUDED_COLUMNS or column.key not in snapshot:
            continue
        value = snapshot[column.key]
        if value is not None and isinstance(column.type, DateTime):
            value = datetime.fromisoformat(value)
        setattr(user, column.key, value)
