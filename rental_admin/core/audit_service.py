"""
Admin audit trail service.

Logs every mutating duplicate-hub action (case updates, merges,
rollbacks, user resolutions) for accountability.
"""
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List

from sqlalchemy.orm import Session

from rental_admin.core.models import AdminAuditLog

logger = logging.getLogger(__name__)


def log_admin_action(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: Any,
    admin_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> AdminAuditLog:
    """
    Create an audit trail entry for an admin action.

    Args:
        db: Database session
        action: Dotted action name, e.g. "duplicate.merge_commit"
        entity_type: "duplicate_case", "merge_operation", "user"
        entity_id: Id of the affected entity
        admin_id: Acting admin
        details: Action-specific context
        commit: Commit immediately (False when the caller owns the transaction)

    Returns:
        Created audit log entry
    """
    entry = AdminAuditLog(
        admin_id=admin_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        details=details,
    )
    db.add(entry)
    if commit:
        db.commit()
        db.refresh(entry)

    logger.debug(f"Audit: {action} on {entity_type}:{entity_id} by admin {admin_id}")
    return entry


def get_audit_trail(
    db: Session,
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[Any] = None,
    limit: int = 50,
    since: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Query the audit trail with optional filters.

    Args:
        db: Database session
        action: Filter by action
        entity_type: Filter by entity type
        entity_id: Filter by entity id
        limit: Maximum results
        since: Only entries after this timestamp

    Returns:
        List of audit log entries, newest first
    """
    query = db.query(AdminAuditLog)

    if action:
        query = query.filter(AdminAuditLog.action == action)
    if entity_type:
        query = query.filter(AdminAuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AdminAuditLog.entity_id == str(entity_id))
    if since:
        query = query.filter(AdminAuditLog.created_at >= since)

    rows = query.order_by(AdminAuditLog.created_at.desc(), AdminAuditLog.id.desc()).limit(limit).all()

    return [
        {
            "id": row.id,
            "admin_id": row.admin_id,
            "action": row.action,
            "entity_type": row.entity_type,
            "entity_id": row.entity_id,
            "details": row.details,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]
