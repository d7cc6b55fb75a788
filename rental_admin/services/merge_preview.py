"""
Merge Preview Engine.

Given a source and a target user, counts the rows that would move from
source to target and lists conflicts. Pure read: safe to call repeatedly,
and the committer re-runs it right before writing.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from rental_admin.core.api_errors import NotFoundError, ValidationError
from rental_admin.core.duplicate_models import DuplicateMergeOperation, MergeOperationStatus
from rental_admin.core.models import User, Booking, Payment, Favorite
from rental_admin.matching.identity import normalize_citizenship_number
from rental_admin.services.references import count_user_references, count_owned_properties

logger = logging.getLogger(__name__)

BLOCKING = "blocking"
WARNING = "warning"

# merge_status values that mean a user is already taken by a merge
MERGE_LOCKED_STATUSES = {"merging", "merged", "partial"}

OPEN_BOOKING_STATUSES = ("Pending", "Approved")
RECENT_LOGIN_WINDOW = timedelta(hours=24)


def _conflict(code: str, severity: str, message: str, **details) -> Dict[str, Any]:
    conflict = {"code": code, "severity": severity, "message": message}
    if details:
        conflict["details"] = details
    return conflict


def load_merge_pair(session: Session, source_user_id: Any, target_user_id: Any):
    """
    Validate ids and load both users.

    Raises:
        ValidationError: ids missing/invalid or equal
        NotFoundError: either user does not exist
    """
    try:
        source_id = int(source_user_id)
        target_id = int(target_user_id)
    except (TypeError, ValueError):
        raise ValidationError(
            "source and target user ids must be integers",
            invalid_params={"source_user_id": str(source_user_id), "target_user_id": str(target_user_id)},
        )

    if source_id == target_id:
        raise ValidationError("Cannot merge a user into itself")

    source = session.get(User, source_id)
    if not source:
        raise NotFoundError("Source user not found", resource_id=source_id)
    target = session.get(User, target_id)
    if not target:
        raise NotFoundError("Target user not found", resource_id=target_id)
    return source, target


class MergePreviewEngine:
    """
    Computes move counts and conflicts for a prospective merge.
    """

    def __init__(self, session: Session, rollback_window_minutes: int = 30):
        self.session = session
        self.rollback_window_minutes = rollback_window_minutes

    def preview(self, source_user_id: Any, target_user_id: Any) -> Dict[str, Any]:
        """
        Preview merging source into target.

        Returns:
            Dict with move_counts, total_moves, conflicts, can_merge,
            rollback_window_minutes
        """
        source, target = load_merge_pair(self.session, source_user_id, target_user_id)

        move_counts = count_user_references(self.session, source.id)
        conflicts = self._blocking_conflicts(source, target) + self._warnings(source, target)
        can_merge = not any(c["severity"] == BLOCKING for c in conflicts)

        logger.debug(
            f"Merge preview {source.id} -> {target.id}: "
            f"{sum(move_counts.values())} moves, {len(conflicts)} conflicts, can_merge={can_merge}"
        )
        return {
            "source_user_id": source.id,
            "target_user_id": target.id,
            "move_counts": move_counts,
            "total_moves": sum(move_counts.values()),
            "conflicts": conflicts,
            "can_merge": can_merge,
            "rollback_window_minutes": self.rollback_window_minutes,
        }

    def _blocking_conflicts(self, source: User, target: User, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or datetime.utcnow()
        conflicts = []

        # Rows recorded by an open merge must stay where that merge put them
        open_ids = self._open_operation_ids(
            now,
            DuplicateMergeOperation.source_user_id == source.id,
            DuplicateMergeOperation.target_user_id == source.id,
            DuplicateMergeOperation.source_user_id == target.id,
        )
        if open_ids:
            conflicts.append(_conflict(
                "OPEN_MERGE_WINDOW", BLOCKING,
                f"Merge operation(s) {open_ids} involving these accounts can still be rolled back; "
                "roll back or wait for the window to close",
                operation_ids=open_ids,
            ))

        if source.merge_status in MERGE_LOCKED_STATUSES:
            conflicts.append(_conflict(
                "SOURCE_ALREADY_MERGED", BLOCKING,
                f"Source account is already {source.merge_status}"
                + (f" into user {source.merged_into_user_id}" if source.merged_into_user_id else ""),
            ))

        if target.merge_status == "merged":
            conflicts.append(_conflict(
                "TARGET_MERGED", BLOCKING,
                f"Target account was merged into user {target.merged_into_user_id}; merge into that account instead",
            ))
        elif target.merge_status in MERGE_LOCKED_STATUSES:
            conflicts.append(_conflict(
                "TARGET_MERGE_IN_PROGRESS", BLOCKING,
                "Target account has an unfinished merge; roll it back first",
            ))
        elif not target.is_active:
            conflicts.append(_conflict(
                "TARGET_INACTIVE", BLOCKING,
                "Target account is inactive",
            ))

        owned = count_owned_properties(self.session, source.id)
        if owned:
            conflicts.append(_conflict(
                "SOURCE_OWNS_LISTINGS", BLOCKING,
                f"Source account owns {owned} listing(s); listings are not moved by a merge",
                count=owned,
            ))

        overlaps = self._overlapping_bookings(source.id, target.id)
        if overlaps:
            conflicts.append(_conflict(
                "OVERLAPPING_BOOKINGS", BLOCKING,
                f"Both accounts hold {len(overlaps)} overlapping open booking(s) on the same property",
                booking_pairs=overlaps,
            ))

        source_cn = normalize_citizenship_number(source.citizenship_number)
        target_cn = normalize_citizenship_number(target.citizenship_number)
        if (
            source.kyc_status == "verified"
            and target.kyc_status == "verified"
            and source_cn and target_cn
            and source_cn != target_cn
        ):
            conflicts.append(_conflict(
                "CONFLICTING_VERIFIED_KYC", BLOCKING,
                "Both accounts passed KYC with different citizenship numbers",
            ))

        return conflicts

    def _open_operation_ids(self, now: datetime, *conditions) -> List[int]:
        rows = (
            self.session.query(DuplicateMergeOperation.id)
            .filter(or_(*conditions))
            .filter(or_(
                DuplicateMergeOperation.status == MergeOperationStatus.IN_PROGRESS.value,
                and_(
                    DuplicateMergeOperation.status == MergeOperationStatus.COMPLETED.value,
                    DuplicateMergeOperation.rollback_expires_at > now,
                ),
            ))
            .order_by(DuplicateMergeOperation.id)
            .all()
        )
        return [row[0] for row in rows]

    def _overlapping_bookings(self, source_id: int, target_id: int) -> List[List[int]]:
        source_bookings = self._open_bookings(source_id)
        if not source_bookings:
            return []
        target_bookings = self._open_bookings(target_id)

        pairs = []
        for sb in source_bookings:
            for tb in target_bookings:
                if (
                    sb.property_id == tb.property_id
                    and sb.from_date <= tb.to_date
                    and tb.from_date <= sb.to_date
                ):
                    pairs.append([sb.id, tb.id])
        return pairs

    def _open_bookings(self, user_id: int) -> List[Booking]:
        return (
            self.session.query(Booking)
            .filter(Booking.renter_id == user_id, Booking.status.in_(OPEN_BOOKING_STATUSES))
            .all()
        )

    def _warnings(self, source: User, target: User, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or datetime.utcnow()
        warnings = []

        pending_payments = (
            self.session.query(Payment)
            .filter(Payment.renter_id == source.id, Payment.status == "Pending")
            .count()
        )
        if pending_payments:
            warnings.append(_conflict(
                "PENDING_PAYMENTS", WARNING,
                f"Source account has {pending_payments} pending payment(s); they will move to the target",
                count=pending_payments,
            ))

        pending_bookings = (
            self.session.query(Booking)
            .filter(Booking.renter_id == source.id, Booking.status == "Pending")
            .count()
        )
        if pending_bookings:
            warnings.append(_conflict(
                "PENDING_BOOKINGS", WARNING,
                f"Source account has {pending_bookings} pending booking(s)",
                count=pending_bookings,
            ))

        if source.last_login_at and now - source.last_login_at < RECENT_LOGIN_WINDOW:
            warnings.append(_conflict(
                "RECENT_SOURCE_LOGIN", WARNING,
                "Source account signed in within the last 24 hours and may still be in use",
            ))

        if source.role != target.role:
            warnings.append(_conflict(
                "ROLE_MISMATCH", WARNING,
                f"Source role '{source.role}' differs from target role '{target.role}'; target role is kept",
            ))

        shared_favorites = (
            self.session.query(Favorite.property_id)
            .filter(Favorite.user_id == source.id)
            .filter(
                Favorite.property_id.in_(
                    select(Favorite.property_id).where(Favorite.user_id == target.id)
                )
            )
            .count()
        )
        if shared_favorites:
            warnings.append(_conflict(
                "SHARED_FAVORITES", WARNING,
                f"{shared_favorites} listing(s) are saved by both accounts; target will hold duplicate favorites",
                count=shared_favorites,
            ))

        return warnings
