"""
Duplicate Case Store.

Persists triaged duplicate groups as cases keyed by (entity_type, key)
and manages their operator workflow state.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rental_admin.core import audit_service
from rental_admin.core.api_errors import NotFoundError, ValidationError
from rental_admin.core.duplicate_models import (
    DuplicateCase,
    DuplicateEntityType,
    CaseStatus,
    RESOLVED_CASE_STATUSES,
)
from rental_admin.core.models import Admin
from rental_admin.core.pagination import paginate

logger = logging.getLogger(__name__)

CASE_STATUSES = [s.value for s in CaseStatus]
ENTITY_TYPES = [e.value for e in DuplicateEntityType]

# Current status -> statuses an operator may move to. Any-to-any for now;
# tighten here without changing the API.
ALLOWED_TRANSITIONS: Dict[str, set] = {
    status: set(CASE_STATUSES) for status in CASE_STATUSES
}

PATCHABLE_FIELDS = ("status", "assignee_id", "notes", "resolution_summary")


class CaseStore:
    """
    Core case logic: upsert from suggestion, update, bulk status, listing.
    """

    def __init__(self, session: Session):
        self.session = session

    def _validate_status(self, status: str) -> None:
        if status not in CASE_STATUSES:
            raise ValidationError(
                f"status must be one of: {CASE_STATUSES}",
                invalid_params={"status": status},
            )

    def _apply_status(self, case: DuplicateCase, status: str, admin: Optional[Admin]) -> None:
        """Set status, stamping or clearing resolution fields."""
        if status not in ALLOWED_TRANSITIONS.get(case.status or CaseStatus.NEW.value, set()):
            raise ValidationError(f"Cannot move case from {case.status} to {status}")
        case.status = status
        if status in RESOLVED_CASE_STATUSES:
            case.resolved_at = datetime.utcnow()
            if admin is not None:
                case.reviewed_by_id = admin.id
        else:
            case.resolved_at = None

    def upsert_from_suggestion(
        self,
        suggestion: Dict[str, Any],
        status: str = CaseStatus.NEW.value,
        admin: Optional[Admin] = None,
    ) -> DuplicateCase:
        """
        Create or update the case for a suggestion's (entity_type, key).

        Idempotent: a second call with the same key updates the existing
        case. An insert that loses a race on the unique index is retried
        as an update.
        """
        entity_type = suggestion.get("entity_type")
        key = (suggestion.get("key") or "").strip()
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(
                f"entity_type must be one of: {ENTITY_TYPES}",
                invalid_params={"entity_type": str(entity_type)},
            )
        if not key:
            raise ValidationError("key is required", invalid_params={"key": ""})
        self._validate_status(status)

        case = self._find(entity_type, key)
        created = case is None
        if created:
            case = DuplicateCase(entity_type=entity_type, key=key, status=CaseStatus.NEW.value)
            self.session.add(case)

        self._fill_from_suggestion(case, suggestion)
        self._apply_status(case, status, admin)

        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            logger.info(f"Case {entity_type}:{key} created concurrently, updating instead")
            case = self._find(entity_type, key)
            if case is None:
                raise
            created = False
            self._fill_from_suggestion(case, suggestion)
            self._apply_status(case, status, admin)

        audit_service.log_admin_action(
            self.session,
            action="duplicate.case_create" if created else "duplicate.case_upsert",
            entity_type="duplicate_case",
            entity_id=case.id,
            admin_id=admin.id if admin else None,
            details={"entity_type": entity_type, "key": key, "status": status},
            commit=False,
        )
        self.session.commit()
        self.session.refresh(case)
        return case

    def _find(self, entity_type: str, key: str) -> Optional[DuplicateCase]:
        return (
            self.session.query(DuplicateCase)
            .filter(DuplicateCase.entity_type == entity_type, DuplicateCase.key == key)
            .first()
        )

    def _fill_from_suggestion(self, case: DuplicateCase, suggestion: Dict[str, Any]) -> None:
        case.reason = suggestion.get("reason") or case.reason or ""
        confidence = suggestion.get("confidence")
        if confidence is not None:
            case.confidence = max(0, min(100, int(confidence)))
        if suggestion.get("signals") is not None:
            case.signals = dict(suggestion["signals"])
        if suggestion.get("primary") is not None:
            case.primary = dict(suggestion["primary"])
        if suggestion.get("duplicates") is not None:
            case.duplicates = list(suggestion["duplicates"])
        if suggestion.get("suggested_action"):
            case.suggested_action = suggestion["suggested_action"]

    def get_case(self, case_id: int) -> DuplicateCase:
        case = self.session.get(DuplicateCase, case_id)
        if not case:
            raise NotFoundError("Duplicate case not found", resource_id=case_id)
        return case

    def find_case(self, entity_type: str, key: str) -> Optional[DuplicateCase]:
        """Case for (entity_type, key), or None."""
        return self._find(entity_type, key)

    def update_case(
        self,
        case_id: int,
        patch: Dict[str, Any],
        admin: Optional[Admin] = None,
    ) -> DuplicateCase:
        """
        Apply a status/assignee/notes patch.

        Only keys present in the patch are touched; assignee_id may be
        None to unassign.
        """
        case = self.get_case(case_id)
        changes = {k: patch[k] for k in PATCHABLE_FIELDS if k in patch}
        if not changes:
            raise ValidationError("Nothing to update")

        if "status" in changes:
            self._validate_status(changes["status"])
            self._apply_status(case, changes["status"], admin)

        if "assignee_id" in changes:
            assignee_id = changes["assignee_id"]
            if assignee_id is not None and not self.session.get(Admin, assignee_id):
                raise NotFoundError("Assignee not found", resource_id=assignee_id)
            case.assignee_id = assignee_id

        if "notes" in changes:
            case.notes = changes["notes"] or ""

        if "resolution_summary" in changes:
            case.resolution_summary = changes["resolution_summary"] or ""

        audit_service.log_admin_action(
            self.session,
            action="duplicate.case_update",
            entity_type="duplicate_case",
            entity_id=case.id,
            admin_id=admin.id if admin else None,
            details=changes,
            commit=False,
        )
        self.session.commit()
        self.session.refresh(case)
        return case

    def mark_merged(self, case: DuplicateCase, admin: Optional[Admin], summary: str) -> None:
        """Flip a case to merged without committing (caller owns the transaction)."""
        self._apply_status(case, CaseStatus.MERGED.value, admin)
        case.resolution_summary = summary

    def bulk_update_status(
        self,
        ids: List[int],
        status: str,
        admin: Optional[Admin] = None,
    ) -> Dict[str, Any]:
        """
        Apply one status to many cases in one UPDATE.

        Unknown ids do not abort the batch.

        Returns:
            {"requested": n, "modified": m, "missing_ids": [...]}
        """
        self._validate_status(status)
        if not ids:
            raise ValidationError("ids must be a non-empty list")

        unique_ids = list(dict.fromkeys(ids))
        existing_ids = {
            row[0] for row in self.session.query(DuplicateCase.id).filter(DuplicateCase.id.in_(unique_ids)).all()
        }

        now = datetime.utcnow()
        values: Dict[Any, Any] = {
            DuplicateCase.status: status,
            DuplicateCase.updated_at: now,
        }
        if status in RESOLVED_CASE_STATUSES:
            values[DuplicateCase.resolved_at] = now
            if admin is not None:
                values[DuplicateCase.reviewed_by_id] = admin.id
        else:
            values[DuplicateCase.resolved_at] = None

        modified = (
            self.session.query(DuplicateCase)
            .filter(DuplicateCase.id.in_(unique_ids))
            .update(values, synchronize_session=False)
        )

        audit_service.log_admin_action(
            self.session,
            action="duplicate.case_bulk_update",
            entity_type="duplicate_case",
            entity_id="bulk",
            admin_id=admin.id if admin else None,
            details={
                "status": status,
                "ids": sorted(existing_ids),
                "requested": len(ids),
                "modified": modified,
            },
            commit=False,
        )
        self.session.commit()

        logger.info(f"Bulk case update to {status}: {modified}/{len(ids)} modified")
        return {
            "requested": len(ids),
            "modified": modified,
            "missing_ids": [i for i in unique_ids if i not in existing_ids],
            "status": status,
        }

    def list_cases(
        self,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        assignee_id: Optional[int] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """Paged case listing, most recently touched first."""
        query = self.session.query(DuplicateCase)
        if status:
            self._validate_status(status)
            query = query.filter(DuplicateCase.status == status)
        if entity_type:
            query = query.filter(DuplicateCase.entity_type == entity_type)
        if assignee_id is not None:
            query = query.filter(DuplicateCase.assignee_id == assignee_id)

        query = query.order_by(DuplicateCase.updated_at.desc(), DuplicateCase.id.desc())
        return paginate(query, page, limit, lambda c: c.to_dict())
