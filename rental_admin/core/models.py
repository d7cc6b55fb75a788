"""
SQLAlchemy models for the marketplace tables the admin console works on.

The renter/owner app owns these rows; the duplicate hub only reads them,
reassigns their user foreign keys during a merge, and soft-deletes users.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Text, JSON, Boolean, Float,
    ForeignKey, Index,
)
from sqlalchemy.ext.declarative import declarative_base

Base = declarative_base()


class User(Base):
    """
    Renter/owner accounts.

    merge_status values: NULL (normal), merging (merge in flight),
    partial (merge stopped part way), merged, deactivated.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    phone = Column(String(50), nullable=True)
    citizenship_number = Column(String(100), nullable=True, index=True)
    role = Column(String(20), nullable=False, default="renter")  # owner, renter, admin
    is_active = Column(Boolean, nullable=False, default=True)
    kyc_status = Column(String(20), nullable=False, default="unsubmitted")
    last_login_at = Column(DateTime, nullable=True)

    # Soft-delete / merge markers
    merge_status = Column(String(20), nullable=True, index=True)
    merged_into_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    merged_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, is_active={self.is_active})>"


class Property(Base):
    """Rental listings."""
    __tablename__ = "properties"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    location = Column(String(255), nullable=False)
    price = Column(Float, nullable=False)
    bedrooms = Column(Integer, nullable=False, default=0)
    bathrooms = Column(Integer, nullable=False, default=0)
    type = Column(String(20), nullable=False, default="Apartment")  # Apartment, House, Condo
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="Pending")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Property(id={self.id}, title={self.title}, owner_id={self.owner_id})>"


class Booking(Base):
    """Rental bookings made by renters."""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False)
    renter_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    from_date = Column(Date, nullable=False)
    to_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default="Pending")  # Pending, Approved, Rejected
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_bookings_renter_status", "renter_id", "status"),
        Index("ix_bookings_property_status", "property_id", "status"),
    )


class Payment(Base):
    """Payments for bookings."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)
    renter_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    amount = Column(Float, nullable=False)
    payment_method = Column(String(50), nullable=False, default="Unknown")
    status = Column(String(20), nullable=False, default="Pending")  # Pending, Paid, Failed, Refunded
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Message(Base):
    """Chat messages between users."""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)
    content = Column(Text, nullable=False, default="")
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Favorite(Base):
    """Saved listings."""
    __tablename__ = "favorites"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class KycDocument(Base):
    """
    Identity documents uploaded for KYC review.

    image_url/public_id point at the external object store; the hub never
    deletes those assets, it only records them when documents move.
    """
    __tablename__ = "kyc_documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    image_url = Column(String(1000), nullable=False)
    public_id = Column(String(255), nullable=True)
    file_hash = Column(String(128), nullable=True, index=True)
    doc_type = Column(String(100), nullable=False, default="Government ID")
    status = Column(String(20), nullable=False, default="pending")  # pending, verified, rejected
    uploaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Admin(Base):
    """
    Admin console operators.

    permissions overrides the role defaults when non-empty.
    """
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), nullable=False, unique=True)
    display_name = Column(String(255), nullable=False, default="")
    role = Column(String(30), nullable=False, default="ops_admin")
    permissions = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Admin(id={self.id}, username={self.username}, role={self.role})>"


class AdminAuditLog(Base):
    """
    Audit trail of admin actions.

    One row per mutating admin action (case updates, merges, rollbacks, resolves).
    """
    __tablename__ = "admin_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    admin_id = Column(Integer, ForeignKey("admins.id"), nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    def __repr__(self) -> str:
        return (
            f"<AdminAuditLog(id={self.id}, action={self.action}, "
            f"entity={self.entity_type}:{self.entity_id})>"
        )
