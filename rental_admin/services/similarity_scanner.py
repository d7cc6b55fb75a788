"""
Duplicate Similarity Scanner.

Scans users, property listings and KYC documents for duplicate groups
and scores each group 0-100 from a weighted rule set:

Users
- same normalized citizenship number ............ 95
- same normalized email ......................... 85
- same phone + similar name (>= 0.85) ........... 60-75
Groups with identical members found by several rules fold into one
group, +5 per extra corroborating rule.

Properties
- same owner + same normalized title/location ... 80 (+10 price, +5 bedrooms)

KYC documents
- same file hash ................................ 95 (70 within one account)
- same image url ................................ 90 (65 within one account)
- owners share a citizenship number ............ 85 (different accounts only)

A failure while scanning one entity type is logged and reported; the
other entity types are still scanned.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from rental_admin.core.models import User, Property, KycDocument
from rental_admin.core.duplicate_models import DuplicateEntityType
from rental_admin.matching.fuzzy_matcher import normalize_text
from rental_admin.matching.identity import (
    PersonNameMatcher,
    normalize_citizenship_number,
    normalize_email,
    normalize_phone,
)

logger = logging.getLogger(__name__)

CONFIDENCE_CITIZENSHIP = 95
CONFIDENCE_EMAIL = 85
CONFIDENCE_PHONE_NAME_MIN = 60
CONFIDENCE_PHONE_NAME_SPAN = 15
CONFIDENCE_LISTING = 80
CONFIDENCE_DOC_HASH = 95
CONFIDENCE_DOC_HASH_SAME_USER = 70
CONFIDENCE_DOC_URL = 90
CONFIDENCE_DOC_URL_SAME_USER = 65
CONFIDENCE_DOC_CITIZENSHIP = 85
CORROBORATION_BONUS = 5


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def user_summary(user: User) -> Dict[str, Any]:
    """Snapshot of a user as stored in suggestions and cases."""
    return {
        "id": user.id,
        "label": user.name,
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "role": user.role,
        "citizenship_number": user.citizenship_number,
        "is_active": bool(user.is_active),
        "kyc_status": user.kyc_status,
        "merge_status": user.merge_status,
        "created_at": _iso(user.created_at),
    }


def property_summary(prop: Property) -> Dict[str, Any]:
    return {
        "id": prop.id,
        "label": prop.title,
        "title": prop.title,
        "location": prop.location,
        "price": prop.price,
        "bedrooms": prop.bedrooms,
        "owner_id": prop.owner_id,
        "status": prop.status,
        "created_at": _iso(prop.created_at),
    }


def document_summary(doc: KycDocument) -> Dict[str, Any]:
    return {
        "id": doc.id,
        "label": f"{doc.doc_type} #{doc.id}",
        "user_id": doc.user_id,
        "doc_type": doc.doc_type,
        "status": doc.status,
        "image_url": doc.image_url,
        "public_id": doc.public_id,
        "file_hash": doc.file_hash,
        "created_at": _iso(doc.uploaded_at),
    }


def _group_by(items: List[Any], key_fn: Callable[[Any], str]) -> Dict[str, List[Any]]:
    groups: Dict[str, List[Any]] = {}
    for item in items:
        key = key_fn(item)
        if key:
            groups.setdefault(key, []).append(item)
    return {k: v for k, v in groups.items() if len(v) >= 2}


class _GroupFolder:
    """
    Folds groups that cover the same member set.

    The highest-confidence rule keeps the key and reason; every extra
    rule adds CORROBORATION_BONUS.
    """

    def __init__(self):
        self._groups: Dict[frozenset, Dict[str, Any]] = {}

    def add(self, members: List[Any], key: str, reason: str, confidence: int, rule: str, signals: Dict[str, Any]):
        member_ids = frozenset(m.id for m in members)
        existing = self._groups.get(member_ids)
        if existing is None:
            self._groups[member_ids] = {
                "members": members,
                "key": key,
                "reason": reason,
                "base_confidence": confidence,
                "rules": [rule],
                "signals": dict(signals),
            }
            return

        existing["rules"].append(rule)
        existing["signals"].update(signals)
        if confidence > existing["base_confidence"]:
            existing["key"] = key
            existing["reason"] = reason
            existing["base_confidence"] = confidence

    def groups(self) -> List[Dict[str, Any]]:
        folded = []
        for group in self._groups.values():
            bonus = CORROBORATION_BONUS * (len(group["rules"]) - 1)
            group["confidence"] = min(100, group["base_confidence"] + bonus)
            group["signals"]["matched_rules"] = list(group["rules"])
            folded.append(group)
        return folded


class SimilarityScanner:
    """
    Full-collection duplicate scan across users, listings and KYC documents.
    """

    def __init__(self, session: Session, scan_limit: int = 5000):
        self.session = session
        self.scan_limit = scan_limit
        self.name_matcher = PersonNameMatcher(threshold=0.85)

    def scan(
        self,
        entity_type: Optional[str] = None,
        min_confidence: int = 0,
    ) -> Dict[str, Any]:
        """
        Scan for duplicate groups.

        Args:
            entity_type: Restrict to "user", "property" or "kyc_document"
            min_confidence: Drop groups scoring below this

        Returns:
            Dict with scanned counts, totals, suggestions (highest confidence
            first) and per-entity-type errors
        """
        scanners: List[Tuple[str, str, Callable[[], Tuple[int, List[Dict[str, Any]]]]]] = [
            (DuplicateEntityType.USER.value, "users", self._scan_users),
            (DuplicateEntityType.PROPERTY.value, "properties", self._scan_properties),
            (DuplicateEntityType.KYC_DOCUMENT.value, "kyc_documents", self._scan_kyc_documents),
        ]

        scanned = {"users": 0, "properties": 0, "kyc_documents": 0}
        suggestions: List[Dict[str, Any]] = []
        errors: List[Dict[str, str]] = []

        for kind, scanned_key, scan_fn in scanners:
            if entity_type and entity_type != kind:
                continue
            try:
                count, groups = scan_fn()
            except Exception as e:
                logger.error(f"Duplicate scan failed for {kind}: {e}")
                self.session.rollback()
                errors.append({"entity_type": kind, "error": str(e)})
                continue
            scanned[scanned_key] = count
            suggestions.extend(g for g in groups if g["confidence"] >= min_confidence)

        suggestions.sort(key=lambda s: (-s["confidence"], s["entity_type"], s["key"]))

        totals = {
            "user_duplicate_groups": sum(1 for s in suggestions if s["entity_type"] == "user"),
            "property_duplicate_groups": sum(1 for s in suggestions if s["entity_type"] == "property"),
            "doc_duplicate_groups": sum(1 for s in suggestions if s["entity_type"] == "kyc_document"),
        }
        totals["all_groups"] = sum(totals.values())

        logger.info(
            f"Duplicate scan complete: {totals['all_groups']} groups "
            f"({scanned['users']} users, {scanned['properties']} properties, "
            f"{scanned['kyc_documents']} documents scanned, {len(errors)} errors)"
        )
        return {
            "scanned": scanned,
            "totals": totals,
            "suggestions": suggestions,
            "errors": errors,
        }

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _scan_users(self) -> Tuple[int, List[Dict[str, Any]]]:
        users = (
            self.session.query(User)
            .filter((User.merge_status.is_(None)) | (User.merge_status != "merged"))
            .order_by(User.id)
            .limit(self.scan_limit)
            .all()
        )
        folder = _GroupFolder()

        for norm, members in _group_by(users, lambda u: normalize_citizenship_number(u.citizenship_number)).items():
            folder.add(
                members,
                key=f"citizenship:{norm}",
                reason="Same citizenship number",
                confidence=CONFIDENCE_CITIZENSHIP,
                rule="citizenship_match",
                signals={"citizenship_match": True, "citizenship_number": norm},
            )

        for norm, members in _group_by(users, lambda u: normalize_email(u.email)).items():
            folder.add(
                members,
                key=f"email:{norm}",
                reason="Same normalized email",
                confidence=CONFIDENCE_EMAIL,
                rule="email_match",
                signals={"email_match": True, "normalized_email": norm},
            )

        for phone, members in _group_by(users, lambda u: normalize_phone(u.phone)).items():
            for cluster, similarity in self._name_clusters(members):
                confidence = CONFIDENCE_PHONE_NAME_MIN + round(
                    CONFIDENCE_PHONE_NAME_SPAN * (similarity - 0.85) / 0.15
                )
                # Anchored on the cluster, so unrelated accounts sharing the phone leave the key alone
                folder.add(
                    cluster,
                    key=f"phone:{phone}:{cluster[0].id}",
                    reason="Same phone number and similar name",
                    confidence=confidence,
                    rule="phone_name_match",
                    signals={"phone_match": True, "phone": phone, "name_similarity": round(similarity, 3)},
                )

        suggestions = [
            self._build_user_suggestion(group) for group in folder.groups()
        ]
        return len(users), suggestions

    def _name_clusters(self, members: List[User]) -> List[Tuple[List[User], float]]:
        """
        Connected clusters of name-matching users within one phone group.

        Returns (cluster, mean pairwise similarity over matched edges).
        """
        parent = {u.id: u.id for u in members}

        def find(x):
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        edge_scores: Dict[int, List[float]] = {}
        for i in range(len(members)):
            for j in range(i + 1, len(members)):
                result = self.name_matcher.compare(members[i].name, members[j].name)
                if not result.matched:
                    continue
                root_a, root_b = find(members[i].id), find(members[j].id)
                parent[root_b] = root_a
                edge_scores.setdefault(members[i].id, []).append(result.similarity)

        clusters: Dict[int, List[User]] = {}
        for user in members:
            clusters.setdefault(find(user.id), []).append(user)

        results = []
        for cluster in clusters.values():
            if len(cluster) < 2:
                continue
            scores = [s for u in cluster for s in edge_scores.get(u.id, [])]
            mean = sum(scores) / len(scores) if scores else 0.85
            results.append((sorted(cluster, key=lambda u: u.id), mean))
        return results

    def _pick_primary_user(self, members: List[User]) -> User:
        """
        Pick which account to keep.

        Prefers: active > KYC verified > oldest > lower ID.
        """
        def rank(u: User) -> tuple:
            return (
                0 if u.is_active else 1,
                0 if u.kyc_status == "verified" else 1,
                u.created_at or datetime.max,
                u.id,
            )

        return sorted(members, key=rank)[0]

    def _build_user_suggestion(self, group: Dict[str, Any]) -> Dict[str, Any]:
        members: List[User] = group["members"]
        primary = self._pick_primary_user(members)
        active_count = sum(1 for u in members if u.is_active)
        signals = group["signals"]
        signals["member_count"] = len(members)
        signals["active_count"] = active_count
        signals["single_canonical_entity"] = active_count == 1

        return {
            "entity_type": DuplicateEntityType.USER.value,
            "key": group["key"],
            "reason": group["reason"],
            "confidence": group["confidence"],
            "primary": user_summary(primary),
            "duplicates": [user_summary(u) for u in members if u.id != primary.id],
            "signals": signals,
            "suggested_action": "merge_into_primary" if active_count > 1 else "review_inactive",
        }

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    def _scan_properties(self) -> Tuple[int, List[Dict[str, Any]]]:
        properties = self.session.query(Property).order_by(Property.id).limit(self.scan_limit).all()

        def listing_key(p: Property) -> str:
            title = normalize_text(p.title)
            location = normalize_text(p.location)
            if not title or not location:
                return ""
            return f"{p.owner_id}:{title}|{location}"

        suggestions = []
        for key, members in _group_by(properties, listing_key).items():
            same_price = len({m.price for m in members}) == 1
            same_bedrooms = len({m.bedrooms for m in members}) == 1
            confidence = CONFIDENCE_LISTING + (10 if same_price else 0) + (5 if same_bedrooms else 0)
            primary = sorted(members, key=lambda p: (0 if p.status == "Approved" else 1, p.id))[0]

            suggestions.append({
                "entity_type": DuplicateEntityType.PROPERTY.value,
                "key": key,
                "reason": "Same owner, title and location",
                "confidence": min(100, confidence),
                "primary": property_summary(primary),
                "duplicates": [property_summary(p) for p in members if p.id != primary.id],
                "signals": {
                    "owner_id": primary.owner_id,
                    "title_location_match": True,
                    "same_price": same_price,
                    "same_bedrooms": same_bedrooms,
                    "member_count": len(members),
                    "matched_rules": ["owner_title_location_match"],
                },
                "suggested_action": "hide_duplicate_listings",
            })
        return len(properties), suggestions

    # ------------------------------------------------------------------
    # KYC documents
    # ------------------------------------------------------------------

    def _scan_kyc_documents(self) -> Tuple[int, List[Dict[str, Any]]]:
        documents = self.session.query(KycDocument).order_by(KycDocument.id).limit(self.scan_limit).all()
        folder = _GroupFolder()

        for file_hash, members in _group_by(documents, lambda d: (d.file_hash or "").strip().lower()).items():
            cross_account = len({d.user_id for d in members}) > 1
            folder.add(
                members,
                key=f"hash:{file_hash}",
                reason="Same document file across accounts" if cross_account else "Same document uploaded twice",
                confidence=CONFIDENCE_DOC_HASH if cross_account else CONFIDENCE_DOC_HASH_SAME_USER,
                rule="file_hash_match",
                signals={"file_hash_match": True, "cross_account": cross_account},
            )

        for url, members in _group_by(documents, lambda d: (d.image_url or "").strip()).items():
            cross_account = len({d.user_id for d in members}) > 1
            folder.add(
                members,
                key=f"url:{url}",
                reason="Same document image across accounts" if cross_account else "Same document image uploaded twice",
                confidence=CONFIDENCE_DOC_URL if cross_account else CONFIDENCE_DOC_URL_SAME_USER,
                rule="image_url_match",
                signals={"image_url_match": True, "cross_account": cross_account},
            )

        owner_citizenship = self._owner_citizenship_numbers({d.user_id for d in documents})
        for norm, members in _group_by(documents, lambda d: owner_citizenship.get(d.user_id, "")).items():
            if len({d.user_id for d in members}) < 2:
                continue
            folder.add(
                members,
                key=f"citizenship:{norm}",
                reason="Documents from accounts sharing a citizenship number",
                confidence=CONFIDENCE_DOC_CITIZENSHIP,
                rule="citizenship_match",
                signals={"citizenship_match": True, "citizenship_number": norm, "cross_account": True},
            )

        suggestions = []
        for group in folder.groups():
            members: List[KycDocument] = group["members"]
            primary = sorted(members, key=lambda d: (0 if d.status == "verified" else 1, d.id))[0]
            signals = group["signals"]
            signals["member_count"] = len(members)
            signals["user_ids"] = sorted({d.user_id for d in members})

            suggestions.append({
                "entity_type": DuplicateEntityType.KYC_DOCUMENT.value,
                "key": group["key"],
                "reason": group["reason"],
                "confidence": group["confidence"],
                "primary": document_summary(primary),
                "duplicates": [document_summary(d) for d in members if d.id != primary.id],
                "signals": signals,
                "suggested_action": (
                    "investigate_shared_document" if signals.get("cross_account") else "reject_duplicate_document"
                ),
            })
        return len(documents), suggestions

    def _owner_citizenship_numbers(self, user_ids) -> Dict[int, str]:
        if not user_ids:
            return {}
        rows = (
            self.session.query(User.id, User.citizenship_number)
            .filter(User.id.in_(sorted(user_ids)))
            .all()
        )
        return {user_id: normalize_citizenship_number(number) for user_id, number in rows}
