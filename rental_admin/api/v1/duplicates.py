"""
Duplicate Hub API.

Scan, triage, case workflow, merge preview/commit/rollback and
user-level resolution for duplicate accounts, listings and documents.

Read endpoints require duplicates:read, mutating endpoints
duplicates:write.
"""
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from rental_admin.auth.admin_auth import require_permission
from rental_admin.core.config import get_settings
from rental_admin.core.database import get_db
from rental_admin.core.duplicate_models import CaseStatus, DuplicateEntityType, MergeOperationStatus
from rental_admin.core.models import Admin
from rental_admin.core.permissions import DUPLICATES_READ, DUPLICATES_WRITE
from rental_admin.notifications.email_sender import EmailSender
from rental_admin.services import merge_history, user_resolution
from rental_admin.services.case_store import CaseStore
from rental_admin.services.merge_committer import MergeCommitter
from rental_admin.services.merge_preview import MergePreviewEngine
from rental_admin.services.rollback_engine import RollbackEngine
from rental_admin.services.triage import build_hub_view

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/duplicates", tags=["Duplicate Hub"])

CaseStatusLiteral = Literal["new", "reviewing", "merged", "ignored", "false_positive"]


# =============================================================================
# Request Models
# =============================================================================


class _Evidence(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int


class UserEvidence(_Evidence):
    email: Optional[str] = None
    name: Optional[str] = None


class PropertyEvidence(_Evidence):
    owner_id: Optional[int] = None
    title: Optional[str] = None


class DocumentEvidence(_Evidence):
    user_id: Optional[int] = None
    image_url: Optional[str] = None


EVIDENCE_MODELS = {
    DuplicateEntityType.USER.value: UserEvidence,
    DuplicateEntityType.PROPERTY.value: PropertyEvidence,
    DuplicateEntityType.KYC_DOCUMENT.value: DocumentEvidence,
}


class CaseUpsertRequest(BaseModel):
    """Create or update the case for a suggestion."""
    entity_type: DuplicateEntityType
    key: str = Field(..., min_length=1, max_length=500)
    reason: str = ""
    confidence: int = Field(0, ge=0, le=100)
    signals: Dict[str, Any] = Field(default_factory=dict)
    primary: Dict[str, Any] = Field(default_factory=dict)
    duplicates: List[Dict[str, Any]] = Field(default_factory=list)
    suggested_action: str = ""
    status: CaseStatusLiteral = "new"

    @model_validator(mode="after")
    def validate_evidence(self):
        evidence_model = EVIDENCE_MODELS[self.entity_type.value]
        members = ([self.primary] if self.primary else []) + list(self.duplicates)
        for member in members:
            try:
                evidence_model.model_validate(member)
            except PydanticValidationError as e:
                raise ValueError(f"invalid {self.entity_type.value} evidence: {e.errors()[0]['msg']}")
        return self


class CasePatchRequest(BaseModel):
    """Only fields sent are changed; assignee_id null unassigns."""
    status: Optional[CaseStatusLiteral] = None
    assignee_id: Optional[int] = None
    notes: Optional[str] = None
    resolution_summary: Optional[str] = None


class BulkUpdateRequest(BaseModel):
    ids: List[int] = Field(..., min_length=1, max_length=500)
    status: CaseStatusLiteral


class ResolveRequest(BaseModel):
    action: Literal["deactivate", "hard_delete_if_safe", "merge_into_primary"]
    target_user_id: Optional[int] = None
    note: str = ""


class MergeCommitRequest(BaseModel):
    target_user_id: int
    confirmed: bool = False
    note: str = Field("", max_length=2000)
    duplicate_case_id: Optional[int] = None
    suggestion_entity_type: Optional[DuplicateEntityType] = None
    suggestion_key: Optional[str] = None


def get_email_sender() -> EmailSender:
    """Dependency for the merge notification sender."""
    return EmailSender(get_settings())


# =============================================================================
# Hub and cases
# =============================================================================


@router.get("/hub")
def get_duplicate_hub(
    entity_type: Optional[DuplicateEntityType] = Query(None, description="user, property or kyc_document"),
    min_confidence: int = Query(0, ge=0, le=100),
    include_resolved: bool = Query(False, description="Include groups whose case is resolved"),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_READ)),
):
    """
    Scan for duplicate groups and rank them for triage.

    Each suggestion carries its persisted workflow state (if a case
    exists) and a computed smart block.
    """
    settings = get_settings()
    return build_hub_view(
        db,
        entity_type=entity_type.value if entity_type else None,
        min_confidence=min_confidence,
        include_resolved=include_resolved,
        limit=limit,
        scan_limit=settings.scan_limit,
        stale_case_hours=settings.stale_case_hours,
    )


@router.get("/cases")
def list_cases(
    status: Optional[CaseStatus] = Query(None),
    entity_type: Optional[DuplicateEntityType] = Query(None),
    assignee_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_READ)),
):
    return CaseStore(db).list_cases(
        status=status.value if status else None,
        entity_type=entity_type.value if entity_type else None,
        assignee_id=assignee_id,
        page=page,
        limit=limit,
    )


@router.post("/cases", status_code=201)
def upsert_case(
    request: CaseUpsertRequest,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_WRITE)),
):
    """Create the case for a suggestion, or update it if one exists."""
    suggestion = request.model_dump()
    suggestion["entity_type"] = request.entity_type.value
    case = CaseStore(db).upsert_from_suggestion(suggestion, status=request.status, admin=admin)
    return {"case": case.to_dict()}


@router.patch("/cases/{case_id}")
def update_case(
    case_id: int,
    request: CasePatchRequest,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_WRITE)),
):
    case = CaseStore(db).update_case(case_id, request.model_dump(exclude_unset=True), admin=admin)
    return {"case": case.to_dict()}


@router.post("/cases/bulk-update")
def bulk_update_cases(
    request: BulkUpdateRequest,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_WRITE)),
):
    return CaseStore(db).bulk_update_status(request.ids, request.status, admin=admin)


# =============================================================================
# Users
# =============================================================================


@router.get("/users/{user_id}/impact")
def get_user_impact(
    user_id: int,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_READ)),
):
    return user_resolution.user_impact(db, user_id)


@router.post("/users/{user_id}/resolve")
def resolve_user(
    user_id: int,
    request: ResolveRequest,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_WRITE)),
    email_sender: EmailSender = Depends(get_email_sender),
):
    """Deactivate, hard-delete (when unreferenced) or merge one account."""
    return user_resolution.resolve_user(
        db,
        user_id,
        request.action,
        admin,
        target_user_id=request.target_user_id,
        note=request.note,
        committer=MergeCommitter(db, email_sender=email_sender),
    )


@router.get("/users/{user_id}/merge-preview")
def merge_preview(
    user_id: int,
    target_user_id: int = Query(..., description="User that survives the merge"),
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_READ)),
):
    """Dry run: reference counts that would move and conflicts. Writes nothing."""
    settings = get_settings()
    engine = MergePreviewEngine(db, rollback_window_minutes=settings.rollback_window_minutes)
    return engine.preview(user_id, target_user_id)


@router.post("/users/{user_id}/merge-commit")
def merge_commit(
    user_id: int,
    request: MergeCommitRequest,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_WRITE)),
    email_sender: EmailSender = Depends(get_email_sender),
):
    """
    Merge this user into target_user_id.

    Requires confirmed=true. A partial failure is reported in the body
    (partial_failure) with HTTP 200 so the operator can roll it back.
    """
    committer = MergeCommitter(db, email_sender=email_sender)
    return committer.commit(
        user_id,
        request.target_user_id,
        admin,
        confirmed=request.confirmed,
        note=request.note,
        duplicate_case_id=request.duplicate_case_id,
        suggestion_entity_type=request.suggestion_entity_type.value if request.suggestion_entity_type else None,
        suggestion_key=request.suggestion_key,
    )


# =============================================================================
# Merge operations
# =============================================================================


@router.post("/merge-operations/{operation_id}/rollback")
def rollback_merge(
    operation_id: int,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_WRITE)),
):
    return RollbackEngine(db).rollback(operation_id, admin)


@router.get("/merge-history")
def get_merge_history(
    status: Optional[MergeOperationStatus] = Query(None),
    user_id: Optional[int] = Query(None, description="Match either side of the merge"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_READ)),
):
    return merge_history.list_merge_operations(
        db,
        status=status.value if status else None,
        user_id=user_id,
        page=page,
        limit=limit,
    )


@router.get("/soft-deleted-users")
def get_soft_deleted_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_permission(DUPLICATES_READ)),
):
    return user_resolution.list_soft_deleted_users(db, page=page, limit=limit)
