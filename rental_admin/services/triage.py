"""
Duplicate Hub triage.

Joins scanner suggestions with their persisted cases and derives the
"smart" block operators sort by: severity tier, priority score,
staleness, recommended status and next step. Nothing here is persisted.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from rental_admin.core.duplicate_models import DuplicateCase, CaseStatus, RESOLVED_CASE_STATUSES
from rental_admin.services.similarity_scanner import SimilarityScanner

logger = logging.getLogger(__name__)


def severity_for(confidence: int) -> str:
    if confidence >= 90:
        return "critical"
    if confidence >= 75:
        return "high"
    if confidence >= 50:
        return "medium"
    return "low"


def _newest_member_time(suggestion: Dict[str, Any]) -> Optional[datetime]:
    stamps = []
    for member in [suggestion.get("primary")] + list(suggestion.get("duplicates") or []):
        raw = (member or {}).get("created_at")
        if raw:
            stamps.append(datetime.fromisoformat(raw))
    return max(stamps) if stamps else None


def _next_step(suggestion: Dict[str, Any], workflow_status: str) -> str:
    if workflow_status in RESOLVED_CASE_STATUSES:
        return "No action needed"
    entity_type = suggestion["entity_type"]
    signals = suggestion.get("signals") or {}
    if entity_type == "user":
        if signals.get("single_canonical_entity"):
            return "Confirm inactive duplicates and close the case"
        if suggestion["confidence"] >= 75:
            return "Preview merge into the primary account"
        return "Compare account details before merging"
    if entity_type == "property":
        return "Review listings with the owner and hide duplicates"
    if entity_type == "kyc_document":
        if signals.get("cross_account"):
            return "Check both accounts for identity reuse"
        return "Reject the duplicate upload"
    return "Review evidence and assign an owner"


def build_smart_block(
    suggestion: Dict[str, Any],
    case: Optional[DuplicateCase] = None,
    now: Optional[datetime] = None,
    stale_case_hours: int = 48,
) -> Dict[str, Any]:
    """
    Derive triage fields for one suggestion.

    priority_score (0-100) weighs confidence, group size, untouched
    workflow and staleness; resolved groups score 0.
    """
    now = now or datetime.utcnow()
    confidence = int(suggestion.get("confidence") or 0)
    signals = suggestion.get("signals") or {}
    workflow_status = case.status if case else CaseStatus.NEW.value

    touched_at = case.updated_at if case else _newest_member_time(suggestion)
    stale_hours = int((now - touched_at).total_seconds() // 3600) if touched_at else 0
    stale_hours = max(stale_hours, 0)
    is_stale = stale_hours >= stale_case_hours and workflow_status not in RESOLVED_CASE_STATUSES

    member_count = 1 + len(suggestion.get("duplicates") or [])
    if workflow_status in RESOLVED_CASE_STATUSES:
        priority = 0
    else:
        priority = confidence * 0.6
        priority += min(20, 5 * (member_count - 1))
        priority += 10 if workflow_status == CaseStatus.NEW.value else 0
        priority += 10 if is_stale else 0
        priority = min(100, round(priority))

    if signals.get("single_canonical_entity"):
        recommended = CaseStatus.IGNORED.value
    elif confidence < 40:
        recommended = CaseStatus.FALSE_POSITIVE.value
    else:
        recommended = CaseStatus.REVIEWING.value

    return {
        "severity": severity_for(confidence),
        "priority_score": priority,
        "stale_hours": stale_hours,
        "is_stale": is_stale,
        "recommended_status": recommended,
        "next_step": _next_step(suggestion, workflow_status),
    }


def build_hub_view(
    session: Session,
    entity_type: Optional[str] = None,
    min_confidence: int = 0,
    include_resolved: bool = False,
    limit: int = 200,
    scan_limit: int = 5000,
    stale_case_hours: int = 48,
) -> Dict[str, Any]:
    """
    Scan, attach workflow state from existing cases, and rank suggestions.

    Suggestions whose case is merged/ignored/false_positive are hidden
    unless include_resolved is set.
    """
    scan = SimilarityScanner(session, scan_limit=scan_limit).scan(
        entity_type=entity_type,
        min_confidence=min_confidence,
    )

    cases = {}
    keys = {(s["entity_type"], s["key"]) for s in scan["suggestions"]}
    if keys:
        for case in session.query(DuplicateCase).filter(
            DuplicateCase.key.in_([k for _, k in keys])
        ).all():
            cases[(case.entity_type, case.key)] = case

    now = datetime.utcnow()
    suggestions: List[Dict[str, Any]] = []
    for suggestion in scan["suggestions"]:
        case = cases.get((suggestion["entity_type"], suggestion["key"]))
        if case and case.status in RESOLVED_CASE_STATUSES and not include_resolved:
            continue
        suggestion["workflow"] = (
            {"case_id": case.id, "status": case.status, "assignee_id": case.assignee_id}
            if case else None
        )
        suggestion["smart"] = build_smart_block(suggestion, case, now, stale_case_hours)
        suggestions.append(suggestion)

    suggestions.sort(key=lambda s: (-s["smart"]["priority_score"], -s["confidence"]))

    smart_summary = {
        "critical": sum(1 for s in suggestions if s["smart"]["severity"] == "critical"),
        "high": sum(1 for s in suggestions if s["smart"]["severity"] == "high"),
        "stale": sum(1 for s in suggestions if s["smart"]["is_stale"]),
    }

    return {
        "scanned": scan["scanned"],
        "totals": scan["totals"],
        "smart_summary": smart_summary,
        "suggestions": suggestions[:limit],
        "errors": scan["errors"],
    }
