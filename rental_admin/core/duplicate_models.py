"""
Duplicate Hub - Database Models.

Tables:
- duplicatecases: triaged duplicate groups with operator workflow state
- duplicatemergeoperations: committed user merges and the data needed to undo them
"""

import enum
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, JSON, ForeignKey, Index, UniqueConstraint,
)

from rental_admin.core.models import Base


class DuplicateEntityType(str, enum.Enum):
    """Entity kinds the scanner groups."""
    USER = "user"
    PROPERTY = "property"
    KYC_DOCUMENT = "kyc_document"


class CaseStatus(str, enum.Enum):
    """Duplicate case workflow status."""
    NEW = "new"
    REVIEWING = "reviewing"
    MERGED = "merged"
    IGNORED = "ignored"
    FALSE_POSITIVE = "false_positive"


RESOLVED_CASE_STATUSES = {
    CaseStatus.MERGED.value,
    CaseStatus.IGNORED.value,
    CaseStatus.FALSE_POSITIVE.value,
}


class MergeOperationStatus(str, enum.Enum):
    """
    Merge operation status.

    EXPIRED is reported lazily (completed + deadline passed); rows are not
    rewritten when the window closes.
    """
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    EXPIRED = "expired"


class DuplicateCase(Base):
    """
    A triaged duplicate group.

    One row per (entity_type, key). Never hard-deleted; resolved cases are
    the audit trail of operator decisions. primary/duplicates are snapshots
    of the candidate records at detection time.
    """
    __tablename__ = "duplicatecases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(20), nullable=False)
    key = Column(String(500), nullable=False)
    reason = Column(Text, nullable=False, default="")
    confidence = Column(Integer, nullable=False, default=0)  # 0-100

    # Evidence
    signals = Column(JSON, nullable=False, default=dict)
    primary = Column(JSON, nullable=False, default=dict)
    duplicates = Column(JSON, nullable=False, default=list)
    suggested_action = Column(String(100), nullable=False, default="")

    # Workflow
    status = Column(String(20), nullable=False, default=CaseStatus.NEW.value)
    assignee_id = Column(Integer, ForeignKey("admins.id"), nullable=True)
    reviewed_by_id = Column(Integer, ForeignKey("admins.id"), nullable=True)
    notes = Column(Text, nullable=False, default="")
    resolution_summary = Column(Text, nullable=False, default="")
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("entity_type", "key", name="uq_duplicate_case_entity_key"),
        Index("ix_duplicatecases_status_updated", "status", "updated_at"),
        Index("ix_duplicatecases_assignee_status", "assignee_id", "status", "updated_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "key": self.key,
            "reason": self.reason,
            "confidence": self.confidence,
            "signals": self.signals or {},
            "primary": self.primary or {},
            "duplicates": self.duplicates or [],
            "suggested_action": self.suggested_action,
            "status": self.status,
            "assignee_id": self.assignee_id,
            "reviewed_by_id": self.reviewed_by_id,
            "notes": self.notes,
            "resolution_summary": self.resolution_summary,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<DuplicateCase {self.entity_type}:{self.key} ({self.status})>"


class DuplicateMergeOperation(Base):
    """
    A committed user-into-user merge.

    The only source of truth for undoing that merge: moved_refs is the
    ordered list of {label, model, field, ids} actually reassigned, and
    source_snapshot holds the pre-merge user columns.
    """
    __tablename__ = "duplicatemergeoperations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    target_user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    performed_by_id = Column(Integer, ForeignKey("admins.id"), nullable=False)
    duplicate_case_id = Column(Integer, ForeignKey("duplicatecases.id"), nullable=True)
    note = Column(Text, nullable=False, default="")

    status = Column(
        String(20), nullable=False, default=MergeOperationStatus.IN_PROGRESS.value, index=True,
    )
    rollback_expires_at = Column(DateTime, nullable=False, index=True)
    rolled_back_at = Column(DateTime, nullable=True)
    rolled_back_by_id = Column(Integer, ForeignKey("admins.id"), nullable=True)

    # Undo data
    source_snapshot = Column(JSON, nullable=False, default=dict)
    target_snapshot = Column(JSON, nullable=False, default=dict)
    moved_refs = Column(JSON, nullable=False, default=list)
    moved_doc_public_ids = Column(JSON, nullable=False, default=list)
    moved_doc_image_urls = Column(JSON, nullable=False, default=list)
    partial_failure = Column(JSON, nullable=True)  # {"label": ..., "error": ...}

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def effective_status(self, now: datetime = None) -> str:
        """Status with lazy expiry applied."""
        now = now or datetime.utcnow()
        if (
            self.status == MergeOperationStatus.COMPLETED.value
            and self.rollback_expires_at is not None
            and now >= self.rollback_expires_at
        ):
            return MergeOperationStatus.EXPIRED.value
        return self.status

    def to_dict(self, now: datetime = None) -> dict:
        return {
            "id": self.id,
            "source_user_id": self.source_user_id,
            "target_user_id": self.target_user_id,
            "performed_by_id": self.performed_by_id,
            "duplicate_case_id": self.duplicate_case_id,
            "note": self.note,
            "status": self.effective_status(now),
            "rollback_expires_at": self.rollback_expires_at.isoformat() if self.rollback_expires_at else None,
            "rolled_back_at": self.rolled_back_at.isoformat() if self.rolled_back_at else None,
            "rolled_back_by_id": self.rolled_back_by_id,
            "moved_refs": self.moved_refs or [],
            "moved_doc_public_ids": self.moved_doc_public_ids or [],
            "moved_doc_image_urls": self.moved_doc_image_urls or [],
            "partial_failure": self.partial_failure,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (
            f"<DuplicateMergeOperation {self.source_user_id} -> "
            f"{self.target_user_id} ({self.status})>"
        )
