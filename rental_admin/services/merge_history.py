"""
Merge operation history listing.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from rental_admin.core.api_errors import ValidationError
from rental_admin.core.duplicate_models import DuplicateMergeOperation, MergeOperationStatus
from rental_admin.core.pagination import paginate

MERGE_OPERATION_STATUSES = [s.value for s in MergeOperationStatus]


def list_merge_operations(
    session: Session,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    page: int = 1,
    limit: int = 20,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Paged merge operations, newest first.

    status filters on the effective status: "completed" only matches
    operations whose window is still open, "expired" matches completed
    operations past their deadline. user_id matches either side.
    """
    now = now or datetime.utcnow()
    query = session.query(DuplicateMergeOperation)

    if status:
        if status not in MERGE_OPERATION_STATUSES:
            raise ValidationError(
                f"status must be one of: {MERGE_OPERATION_STATUSES}",
                invalid_params={"status": status},
            )
        if status == MergeOperationStatus.EXPIRED.value:
            query = query.filter(
                DuplicateMergeOperation.status == MergeOperationStatus.COMPLETED.value,
                DuplicateMergeOperation.rollback_expires_at <= now,
            )
        elif status == MergeOperationStatus.COMPLETED.value:
            query = query.filter(
                DuplicateMergeOperation.status == MergeOperationStatus.COMPLETED.value,
                DuplicateMergeOperation.rollback_expires_at > now,
            )
        else:
            query = query.filter(DuplicateMergeOperation.status == status)

    if user_id is not None:
        query = query.filter(
            or_(
                DuplicateMergeOperation.source_user_id == user_id,
                DuplicateMergeOperation.target_user_id == user_id,
            )
        )

    query = query.order_by(DuplicateMergeOperation.created_at.desc(), DuplicateMergeOperation.id.desc())
    return paginate(query, page, limit, lambda op: op.to_dict(now))
