"""
Rollback Engine.

Undoes a committed merge while its rollback window is open by replaying
the operation's moved_refs in reverse and restoring the source user from
its pre-merge snapshot. Unlike the committer, the whole undo runs in one
transaction.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rental_admin.core import audit_service
from rental_admin.core.api_errors import (
    NotFoundError,
    RollbackAlreadyAppliedError,
    RollbackConflictError,
    RollbackExpiredError,
    ValidationError,
)
from rental_admin.core.duplicate_models import (
    CaseStatus,
    DuplicateCase,
    DuplicateMergeOperation,
    MergeOperationStatus,
)
from rental_admin.core.models import Admin, User
from rental_admin.services.references import REFERENCE_MODELS, restore_user

logger = logging.getLogger(__name__)


class RollbackEngine:
    """
    Reverses merge operations.
    """

    def __init__(self, session: Session):
        self.session = session

    def _load(self, operation_id: int) -> DuplicateMergeOperation:
        operation = self.session.get(DuplicateMergeOperation, operation_id)
        if not operation:
            raise NotFoundError("Merge operation not found", resource_id=operation_id)
        return operation

    def _check_rollbackable(self, operation: DuplicateMergeOperation, now: datetime) -> None:
        status = operation.effective_status(now)
        if status == MergeOperationStatus.ROLLED_BACK.value:
            raise RollbackAlreadyAppliedError(operation_id=operation.id)
        if status == MergeOperationStatus.EXPIRED.value:
            raise RollbackExpiredError(operation_id=operation.id)
        if status == MergeOperationStatus.IN_PROGRESS.value:
            raise ValidationError("Merge operation is still in progress")

    def rollback(self, operation_id: int, admin: Admin, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Roll back one merge operation.

        Raises:
            NotFoundError: unknown operation
            RollbackAlreadyAppliedError: already rolled back
            RollbackExpiredError: window closed
            RollbackConflictError: recorded rows were reassigned after the merge
            ValidationError: merge still in progress

        Returns:
            Dict with merge_operation_id, status, restored_refs, total_restored
        """
        now = now or datetime.utcnow()
        operation = self._load(operation_id)
        self._check_rollbackable(operation, now)

        try:
            claimed = (
                self.session.query(DuplicateMergeOperation)
                .filter(
                    DuplicateMergeOperation.id == operation.id,
                    DuplicateMergeOperation.status == MergeOperationStatus.COMPLETED.value,
                    DuplicateMergeOperation.rollback_expires_at > now,
                )
                .update(
                    {
                        DuplicateMergeOperation.status: MergeOperationStatus.ROLLED_BACK.value,
                        DuplicateMergeOperation.rolled_back_at: now,
                        DuplicateMergeOperation.rolled_back_by_id: admin.id,
                    },
                    synchronize_session=False,
                )
            )
            if not claimed:
                # Lost a race with another rollback, or the deadline passed meanwhile
                self.session.rollback()
                self.session.refresh(operation)
                self._check_rollbackable(operation, now)
                raise RollbackExpiredError(operation_id=operation.id)

            drifted = self._drifted_references(operation)
            if drifted:
                raise RollbackConflictError(operation_id=operation.id, drifted_refs=drifted)

            restored_refs: Dict[str, int] = {}
            for entry in reversed(operation.moved_refs or []):
                restored_refs[entry["label"]] = self._restore_reference(
                    entry, operation.source_user_id, operation.target_user_id
                )

            source = self.session.get(User, operation.source_user_id)
            # Snapshot predates the claim, so this also clears the merge markers
            restore_user(source, operation.source_snapshot or {})

            reopened_case_id = self._reopen_case(operation.duplicate_case_id)

            total_restored = sum(restored_refs.values())
            audit_service.log_admin_action(
                self.session,
                action="duplicate.merge_rollback",
                entity_type="merge_operation",
                entity_id=operation.id,
                admin_id=admin.id,
                details={
                    "source_user_id": operation.source_user_id,
                    "target_user_id": operation.target_user_id,
                    "restored_refs": restored_refs,
                    "reopened_case_id": reopened_case_id,
                },
                commit=False,
            )
            self.session.commit()
        except RollbackConflictError as e:
            self.session.rollback()
            logger.warning(f"Rollback of merge operation {operation_id} refused: moved rows changed {e.drifted_refs}")
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Rollback of merge operation {operation_id} failed: {e}")
            raise

        logger.info(
            f"Merge operation {operation_id} rolled back by admin {admin.id}: "
            f"{total_restored} refs restored to user {operation.source_user_id}"
        )
        return {
            "merge_operation_id": operation.id,
            "status": MergeOperationStatus.ROLLED_BACK.value,
            "rolled_back_at": now.isoformat(),
            "source_user_id": operation.source_user_id,
            "target_user_id": operation.target_user_id,
            "restored_refs": restored_refs,
            "total_restored": total_restored,
            "reopened_case_id": reopened_case_id,
        }

    def _drifted_references(self, operation: DuplicateMergeOperation) -> Dict[str, List[int]]:
        """Recorded ids that still exist but no longer point at the target."""
        drifted: Dict[str, List[int]] = {}
        for entry in operation.moved_refs or []:
            ids = entry.get("ids") or []
            if not ids:
                continue
            model = REFERENCE_MODELS[entry["model"]]
            column = getattr(model, entry["field"])
            moved_away = [
                row[0]
                for row in self.session.query(model.id)
                .filter(model.id.in_(ids), or_(column.is_(None), column != operation.target_user_id))
                .order_by(model.id)
            ]
            if moved_away:
                drifted[entry["label"]] = moved_away
        return drifted

    def _restore_reference(self, entry: Dict[str, Any], source_id: int, target_id: int) -> int:
        """Point recorded ids back at the source. Rows deleted since the merge are skipped."""
        ids = entry.get("ids") or []
        if not ids:
            return 0
        model = REFERENCE_MODELS[entry["model"]]
        column = getattr(model, entry["field"])
        return (
            self.session.query(model)
            .filter(model.id.in_(ids), column == target_id)
            .update({column: source_id}, synchronize_session=False)
        )

    def _reopen_case(self, case_id: Optional[int]) -> Optional[int]:
        if case_id is None:
            return None
        case = self.session.get(DuplicateCase, case_id)
        if case is None or case.status != CaseStatus.MERGED.value:
            return None
        case.status = CaseStatus.REVIEWING.value
        case.resolved_at = None
        return case.id
