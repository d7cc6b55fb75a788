"""
Merge Committer.

Moves every reference from a source user to a target user and
soft-deletes the source. Reference moves are committed one step at a
time; the DuplicateMergeOperation row is the compensation log the
rollback engine replays in reverse.

Commit sequence:
1. re-validate with a fresh preview (blocking conflict -> MergeBlockedError)
2. claim the source user (conditional UPDATE on merge_status) and insert
   the in_progress operation with both snapshots
3. one bulk UPDATE + commit per registered reference
4. flip the source to merged (or partial when a step failed)
5. complete the operation and open the rollback window
6. resolve the linked duplicate case
7. notify both account holders
8. audit

A failure after the claim still leaves the operation completed, with
the failure recorded and the source partial, so it can be rolled back.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rental_admin.core import audit_service
from rental_admin.core.api_errors import MergeBlockedError, NotFoundError, ValidationError
from rental_admin.core.config import Settings, get_settings
from rental_admin.core.duplicate_models import (
    DuplicateCase,
    DuplicateMergeOperation,
    MergeOperationStatus,
)
from rental_admin.core.models import Admin, KycDocument, User
from rental_admin.notifications.email_sender import EmailSender
from rental_admin.services.case_store import CaseStore
from rental_admin.services.merge_preview import (
    MERGE_LOCKED_STATUSES,
    MergePreviewEngine,
)
from rental_admin.services.references import USER_REFERENCES, UserReference, snapshot_user
from rental_admin.services.similarity_scanner import user_summary

logger = logging.getLogger(__name__)


class MergeCommitter:
    """
    Commits user-into-user merges.

    Partial failures are returned in the result, not raised: the
    operation row records what moved so it can still be rolled back.
    """

    def __init__(
        self,
        session: Session,
        email_sender: Optional[EmailSender] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.email_sender = email_sender or EmailSender(self.settings)

    def commit(
        self,
        source_user_id: Any,
        target_user_id: Any,
        admin: Admin,
        confirmed: bool = False,
        note: str = "",
        duplicate_case_id: Optional[int] = None,
        suggestion_entity_type: Optional[str] = None,
        suggestion_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Merge source into target.

        Raises:
            ValidationError: not confirmed, bad ids
            NotFoundError: unknown user
            MergeBlockedError: blocking conflict, or another merge claimed the source

        Returns:
            Dict with merge_operation_id, status, rollback_expires_at,
            moved_refs, total_modified, partial_failure, email_delivery
        """
        if not confirmed:
            raise ValidationError(
                "Merge must be explicitly confirmed",
                invalid_params={"confirmed": str(confirmed)},
            )

        window = self.settings.rollback_window_minutes
        preview = MergePreviewEngine(self.session, rollback_window_minutes=window).preview(
            source_user_id, target_user_id
        )
        if not preview["can_merge"]:
            blocking = [c for c in preview["conflicts"] if c["severity"] == "blocking"]
            logger.warning(
                f"Merge {preview['source_user_id']} -> {preview['target_user_id']} blocked: "
                f"{[c['code'] for c in blocking]}"
            )
            raise MergeBlockedError(conflicts=preview["conflicts"])

        if duplicate_case_id is not None and self.session.get(DuplicateCase, duplicate_case_id) is None:
            raise NotFoundError("Duplicate case not found", resource_id=duplicate_case_id)

        source_id = preview["source_user_id"]
        target_id = preview["target_user_id"]
        operation = self._claim_and_open(source_id, target_id, admin, note, duplicate_case_id)
        logger.info(f"Merge operation {operation.id} started: user {source_id} -> {target_id}")

        operation_id = operation.id
        try:
            moved_refs, partial_failure = self._move_references(operation, source_id, target_id)
            operation = self._finalize(
                operation_id, source_id, target_id, admin, partial_failure,
                duplicate_case_id, suggestion_entity_type, suggestion_key,
            )
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Merge operation {operation_id} failed to finalize: {e}")
            partial_failure = {"label": "finalize", "error": str(e)}
            operation = self._record_interrupted(operation_id, source_id, partial_failure)
            moved_refs = list(operation.moved_refs or [])
        except Exception as e:
            self.session.rollback()
            logger.error(f"Merge operation {operation_id} interrupted: {e}")
            self._record_interrupted(operation_id, source_id, {"label": "interrupted", "error": str(e)})
            raise

        if partial_failure is None:
            email_delivery = self._notify(source_id, target_id, operation.rollback_expires_at)
        else:
            skipped = {"sent": False, "provider": self.settings.email_provider, "reason": "merge_incomplete"}
            email_delivery = {"source": dict(skipped), "target": dict(skipped)}

        total_modified = sum(len(ref["ids"]) for ref in moved_refs)
        audit_service.log_admin_action(
            self.session,
            action="duplicate.merge_commit",
            entity_type="merge_operation",
            entity_id=operation.id,
            admin_id=admin.id,
            details={
                "source_user_id": source_id,
                "target_user_id": target_id,
                "total_modified": total_modified,
                "partial_failure": partial_failure,
                "duplicate_case_id": operation.duplicate_case_id,
            },
        )

        if partial_failure:
            logger.warning(
                f"Merge operation {operation.id} stopped at {partial_failure['label']}: "
                f"{total_modified} refs moved before failure"
            )
        else:
            logger.info(f"Merge operation {operation.id} completed: {total_modified} refs moved")

        return {
            "merge_operation_id": operation.id,
            "source_user_id": source_id,
            "target_user_id": target_id,
            "status": operation.status,
            "rollback_expires_at": operation.rollback_expires_at.isoformat(),
            "moved_refs": moved_refs,
            "total_modified": total_modified,
            "partial_failure": partial_failure,
            "email_delivery": email_delivery,
        }

    def _claim_and_open(
        self,
        source_id: int,
        target_id: int,
        admin: Admin,
        note: str,
        duplicate_case_id: Optional[int],
    ) -> DuplicateMergeOperation:
        """Claim the source user and insert the in_progress operation in one commit."""
        source = self.session.get(User, source_id)
        target = self.session.get(User, target_id)
        source_snapshot = snapshot_user(source)
        target_snapshot = snapshot_user(target)

        claimed = (
            self.session.query(User)
            .filter(
                User.id == source_id,
                or_(User.merge_status.is_(None), User.merge_status.notin_(sorted(MERGE_LOCKED_STATUSES))),
            )
            .update({User.merge_status: "merging"}, synchronize_session=False)
        )
        if not claimed:
            self.session.rollback()
            raise MergeBlockedError(
                "Source account was claimed by another merge",
                conflicts=[{
                    "code": "SOURCE_ALREADY_MERGED",
                    "severity": "blocking",
                    "message": "Source account is being merged by another operation",
                }],
            )

        operation = DuplicateMergeOperation(
            source_user_id=source_id,
            target_user_id=target_id,
            performed_by_id=admin.id,
            duplicate_case_id=duplicate_case_id,
            note=note or "",
            status=MergeOperationStatus.IN_PROGRESS.value,
            rollback_expires_at=datetime.utcnow() + timedelta(minutes=self.settings.rollback_window_minutes),
            source_snapshot=source_snapshot,
            target_snapshot=target_snapshot,
            moved_refs=[],
            moved_doc_public_ids=[],
            moved_doc_image_urls=[],
        )
        self.session.add(operation)
        self.session.commit()
        return operation

    def _finalize(
        self,
        operation_id: int,
        source_id: int,
        target_id: int,
        admin: Admin,
        partial_failure: Optional[Dict[str, Any]],
        duplicate_case_id: Optional[int],
        suggestion_entity_type: Optional[str],
        suggestion_key: Optional[str],
    ) -> DuplicateMergeOperation:
        """Flip the source, complete the operation and resolve the linked case in one commit."""
        now = datetime.utcnow()
        source = self.session.get(User, source_id)
        if partial_failure is None:
            source.is_active = False
            source.merge_status = "merged"
            source.merged_into_user_id = target_id
            source.merged_at = now
        else:
            source.merge_status = "partial"

        operation = self.session.get(DuplicateMergeOperation, operation_id)
        operation.status = MergeOperationStatus.COMPLETED.value
        operation.rollback_expires_at = now + timedelta(minutes=self.settings.rollback_window_minutes)
        operation.partial_failure = partial_failure

        if partial_failure is None:
            case = self._linked_case(duplicate_case_id, suggestion_entity_type, suggestion_key)
            if case is not None:
                CaseStore(self.session).mark_merged(
                    case, admin, f"Merged user {source_id} into user {target_id} (operation {operation_id})"
                )
                operation.duplicate_case_id = case.id

        self.session.commit()
        return operation

    def _record_interrupted(
        self,
        operation_id: int,
        source_id: int,
        failure: Dict[str, Any],
    ) -> DuplicateMergeOperation:
        """
        Close out a merge that stopped before finalizing.

        The operation becomes completed with the failure recorded and the
        source is left partial, so the moves already committed can be
        rolled back.
        """
        (
            self.session.query(User)
            .filter(User.id == source_id)
            .update({User.merge_status: "partial"}, synchronize_session=False)
        )
        operation = self.session.get(DuplicateMergeOperation, operation_id)
        operation.status = MergeOperationStatus.COMPLETED.value
        operation.rollback_expires_at = datetime.utcnow() + timedelta(
            minutes=self.settings.rollback_window_minutes
        )
        operation.partial_failure = failure
        self.session.commit()
        return operation

    def _move_references(self, operation: DuplicateMergeOperation, source_id: int, target_id: int):
        """
        Run the per-reference steps, committing after each.

        Returns:
            (moved_refs, partial_failure)
        """
        operation_id = operation.id
        moved_refs: List[Dict[str, Any]] = []
        public_ids: List[str] = []
        image_urls: List[str] = []

        for ref in USER_REFERENCES:
            try:
                ids = self._move_reference(ref, source_id, target_id)
                if not ids:
                    continue

                moved_refs.append({"label": ref.label, "model": ref.model_name, "field": ref.field, "ids": ids})
                if ref.model is KycDocument:
                    for public_id, image_url in (
                        self.session.query(KycDocument.public_id, KycDocument.image_url)
                        .filter(KycDocument.id.in_(ids))
                        .order_by(KycDocument.id)
                    ):
                        if public_id:
                            public_ids.append(public_id)
                        image_urls.append(image_url)

                op = self.session.get(DuplicateMergeOperation, operation_id)
                op.moved_refs = list(moved_refs)
                op.moved_doc_public_ids = list(public_ids)
                op.moved_doc_image_urls = list(image_urls)
                self.session.commit()
                logger.debug(f"Merge operation {operation_id}: moved {len(ids)} {ref.label}")
            except SQLAlchemyError as e:
                self.session.rollback()
                if moved_refs and moved_refs[-1]["label"] == ref.label:
                    moved_refs.pop()
                logger.error(f"Merge operation {operation_id} failed moving {ref.label}: {e}")
                return moved_refs, {"label": ref.label, "error": str(e)}

        return moved_refs, None

    def _move_reference(self, ref: UserReference, source_id: int, target_id: int) -> List[int]:
        """Reassign one reference column from source to target; returns the moved ids."""
        ids = ref.ids(self.session, source_id)
        if ids:
            (
                self.session.query(ref.model)
                .filter(ref.model.id.in_(ids))
                .update({ref.column: target_id}, synchronize_session=False)
            )
        return ids

    def _linked_case(
        self,
        duplicate_case_id: Optional[int],
        entity_type: Optional[str],
        key: Optional[str],
    ) -> Optional[DuplicateCase]:
        if duplicate_case_id is not None:
            return self.session.get(DuplicateCase, duplicate_case_id)
        if entity_type and key:
            return CaseStore(self.session).find_case(entity_type, key)
        return None

    def _notify(self, source_id: int, target_id: int, rollback_expires_at: datetime) -> Dict[str, Any]:
        source = user_summary(self.session.get(User, source_id))
        target = user_summary(self.session.get(User, target_id))
        try:
            return self.email_sender.send_merge_notifications(
                source, target, rollback_expires_at.isoformat()
            )
        except Exception as e:
            logger.warning(f"Merge notification failed for users {source_id}/{target_id}: {e}")
            failed = {"sent": False, "provider": self.settings.email_provider, "reason": str(e)}
            return {"source": dict(failed), "target": dict(failed)}
