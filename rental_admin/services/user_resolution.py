"""
User-level duplicate resolution.

Impact report for a single account, the resolve actions operators apply
from a duplicate group, and the soft-deleted account listing.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from rental_admin.core import audit_service
from rental_admin.core.api_errors import NotFoundError, PartialFailureError, ValidationError
from rental_admin.core.duplicate_models import DuplicateMergeOperation
from rental_admin.core.models import Admin, User
from rental_admin.core.pagination import paginate
from rental_admin.services.merge_committer import MergeCommitter
from rental_admin.services.merge_preview import MERGE_LOCKED_STATUSES
from rental_admin.services.references import count_owned_properties, count_user_references

logger = logging.getLogger(__name__)

RESOLVE_ACTIONS = ("deactivate", "hard_delete_if_safe", "merge_into_primary")


def _get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found", resource_id=user_id)
    return user


def user_impact(session: Session, user_id: int) -> Dict[str, Any]:
    """
    Everything that still points at a user.

    safe_to_hard_delete is true only when nothing references the account:
    no movable references, no owned listings, no merge history and no
    accounts merged into it.
    """
    user = _get_user(session, user_id)
    counts = count_user_references(session, user.id)
    owned_properties = count_owned_properties(session, user.id)
    merge_operations = (
        session.query(func.count(DuplicateMergeOperation.id))
        .filter(
            or_(
                DuplicateMergeOperation.source_user_id == user.id,
                DuplicateMergeOperation.target_user_id == user.id,
            )
        )
        .scalar()
    ) or 0
    merged_accounts = (
        session.query(func.count(User.id)).filter(User.merged_into_user_id == user.id).scalar()
    ) or 0

    total_refs = sum(counts.values()) + owned_properties
    return {
        "user_id": user.id,
        "is_active": bool(user.is_active),
        "merge_status": user.merge_status,
        "counts": counts,
        "owned_properties": owned_properties,
        "merge_operations": merge_operations,
        "merged_accounts": merged_accounts,
        "total_refs": total_refs,
        "safe_to_hard_delete": total_refs == 0 and merge_operations == 0 and merged_accounts == 0,
    }


def resolve_user(
    session: Session,
    user_id: int,
    action: str,
    admin: Admin,
    target_user_id: Optional[int] = None,
    note: str = "",
    committer: Optional[MergeCommitter] = None,
) -> Dict[str, Any]:
    """
    Apply a resolve action to one account.

    Actions:
        deactivate: soft delete (is_active false, merge_status deactivated)
        hard_delete_if_safe: delete the row when nothing references it
        merge_into_primary: merge into target_user_id (confirmation implied)

    Raises:
        ValidationError: unknown action, unsafe delete, missing target
        PartialFailureError: the merge stopped part way
    """
    if action not in RESOLVE_ACTIONS:
        raise ValidationError(
            f"action must be one of: {list(RESOLVE_ACTIONS)}",
            invalid_params={"action": str(action)},
        )

    if action == "merge_into_primary":
        if target_user_id is None:
            raise ValidationError(
                "target_user_id is required for merge_into_primary",
                invalid_params={"target_user_id": "missing"},
            )
        committer = committer or MergeCommitter(session)
        result = committer.commit(user_id, target_user_id, admin, confirmed=True, note=note)
        if result["partial_failure"]:
            raise PartialFailureError(
                f"Merge stopped at {result['partial_failure']['label']}; roll back operation "
                f"{result['merge_operation_id']} and retry",
                merge_operation_id=result["merge_operation_id"],
                moved_refs=result["moved_refs"],
            )
        return {"action": action, "user_id": user_id, **result}

    user = _get_user(session, user_id)

    if action == "deactivate":
        if user.merge_status in MERGE_LOCKED_STATUSES:
            raise ValidationError(f"User is {user.merge_status}; resolve the merge first")
        user.is_active = False
        user.merge_status = "deactivated"
        audit_service.log_admin_action(
            session,
            action="duplicate.user_deactivate",
            entity_type="user",
            entity_id=user.id,
            admin_id=admin.id,
            details={"note": note} if note else None,
            commit=False,
        )
        session.commit()
        logger.info(f"User {user_id} deactivated by admin {admin.id}")
        return {"action": action, "user_id": user_id, "is_active": False, "merge_status": "deactivated"}

    impact = user_impact(session, user_id)
    if not impact["safe_to_hard_delete"]:
        raise ValidationError(
            "User still has linked records; deactivate or merge instead",
            invalid_params={"total_refs": str(impact["total_refs"])},
        )
    snapshot = {"email": user.email, "name": user.name}
    session.delete(user)
    audit_service.log_admin_action(
        session,
        action="duplicate.user_hard_delete",
        entity_type="user",
        entity_id=user_id,
        admin_id=admin.id,
        details={**snapshot, "note": note} if note else snapshot,
        commit=False,
    )
    session.commit()
    logger.info(f"User {user_id} hard-deleted by admin {admin.id}")
    return {"action": action, "user_id": user_id, "deleted": True}


def _soft_deleted_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "merge_status": user.merge_status,
        "merged_into_user_id": user.merged_into_user_id,
        "merged_at": user.merged_at.isoformat() if user.merged_at else None,
        "updated_at": user.updated_at.isoformat() if user.updated_at else None,
    }


def list_soft_deleted_users(session: Session, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    """Inactive accounts with their merge status and successor pointer."""
    query = (
        session.query(User)
        .filter(User.is_active.is_(False))
        .order_by(User.updated_at.desc(), User.id.desc())
    )
    return paginate(query, page, limit, _soft_deleted_dict)
