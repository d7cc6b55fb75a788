"""
Account identity normalization and person-name matching.

Normalizers turn citizenship numbers, emails and phone numbers into
stable grouping keys. PersonNameMatcher compares account holder names
with smart normalization:
- Handles "Last, First" format
- Strips honorifics (Mr, Mrs, Dr)
- Compares first+last only (drops middle names)
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from rental_admin.matching.fuzzy_matcher import similarity_ratio

logger = logging.getLogger(__name__)

HONORIFIC_PATTERN = re.compile(r"^(mr|mrs|ms|miss|dr|er|prof)\.?\s+", re.IGNORECASE)

# Providers that ignore dots in the local part
DOTLESS_EMAIL_DOMAINS = {"gmail.com", "googlemail.com"}


def normalize_citizenship_number(value: Optional[str]) -> str:
    """Uppercase alphanumerics only: "ka-12/345 6" -> "KA123456"."""
    if not value:
        return ""
    return re.sub(r"[^0-9A-Za-z]", "", value).upper()


def normalize_email(value: Optional[str]) -> str:
    """
    Normalize an email for duplicate grouping.

    Lowercases, strips "+tag" suffixes, and drops dots in the local part
    for providers that ignore them.
    """
    if not value or "@" not in value:
        return ""
    local, _, domain = value.strip().lower().rpartition("@")
    local = local.split("+", 1)[0]
    if domain == "googlemail.com":
        domain = "gmail.com"
    if domain in DOTLESS_EMAIL_DOMAINS:
        local = local.replace(".", "")
    if not local:
        return ""
    return f"{local}@{domain}"


def normalize_phone(value: Optional[str]) -> str:
    """Digits only, last 10 kept so country-code variants collide."""
    if not value:
        return ""
    digits = re.sub(r"\D", "", value)
    if len(digits) < 7:
        return ""
    return digits[-10:]


@dataclass
class PersonMatchResult:
    """Result of comparing two person names."""

    matched: bool
    similarity: float  # 0.0 to 1.0
    match_type: str  # "name_exact", "name_fuzzy", "no_match"
    notes: Optional[str] = None


class PersonNameMatcher:
    """
    Fuzzy person name matcher for account deduplication.

    A pair matches when first+last similarity reaches the threshold.
    """

    def __init__(self, threshold: float = 0.85):
        self.threshold = threshold

    def normalize_name(self, name: str) -> str:
        """
        Normalize a person name for comparison.

        - Lowercase
        - Handle "Last, First" format
        - Strip honorifics
        - Remove punctuation
        - Collapse whitespace
        """
        if not name:
            return ""

        name = name.strip().lower()
        name = HONORIFIC_PATTERN.sub("", name)

        if "," in name:
            parts = [p.strip() for p in name.split(",", 1)]
            if len(parts) == 2 and parts[1]:
                name = f"{parts[1]} {parts[0]}"

        name = re.sub(r"[^\w\s\-]", "", name)
        name = re.sub(r"\s+", " ", name).strip()

        return name

    def _extract_first_last(self, normalized_name: str) -> Tuple[str, str]:
        """Extract first and last name, dropping middle names."""
        parts = normalized_name.split()
        if not parts:
            return ("", "")
        if len(parts) == 1:
            return (parts[0], "")
        return (parts[0], parts[-1])

    def compare(self, name1: str, name2: str) -> PersonMatchResult:
        """
        Compare two person names and return match result.

        Performs multi-level comparison:
        1. Exact normalized match
        2. First+last only match (drop middle names)
        3. Fuzzy similarity on first+last
        """
        norm1 = self.normalize_name(name1)
        norm2 = self.normalize_name(name2)

        if not norm1 or not norm2:
            return PersonMatchResult(
                matched=False,
                similarity=0.0,
                match_type="no_match",
                notes="Empty name",
            )

        if norm1 == norm2:
            return PersonMatchResult(matched=True, similarity=1.0, match_type="name_exact")

        first1, last1 = self._extract_first_last(norm1)
        first2, last2 = self._extract_first_last(norm2)

        if first1 == first2 and last1 == last2:
            return PersonMatchResult(
                matched=True,
                similarity=1.0,
                match_type="name_exact",
                notes="Exact match after dropping middle names",
            )

        similarity = similarity_ratio(f"{first1} {last1}".strip(), f"{first2} {last2}".strip())
        matched = similarity >= self.threshold

        return PersonMatchResult(
            matched=matched,
            similarity=round(similarity, 3),
            match_type="name_fuzzy" if matched else "no_match",
            notes=f"Fuzzy: {similarity:.3f}",
        )
