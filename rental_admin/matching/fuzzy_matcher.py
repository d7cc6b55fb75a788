"""
Fuzzy string matching utilities.

Uses Levenshtein distance to score names and listing titles that may
refer to the same entity despite minor differences in spelling,
punctuation, or word order noise.

Example matches:
- "Ram Bahadur Thapa" vs "Ram Bahadur Thapaa"
- "2BHK Flat, Baneshwor" vs "2 BHK flat Baneshwor"
"""

import logging
import re

logger = logging.getLogger(__name__)


def levenshtein_distance(s1: str, s2: str) -> int:
    """
    Calculate the Levenshtein (edit) distance between two strings.

    The Levenshtein distance is the minimum number of single-character
    edits (insertions, deletions, substitutions) needed to transform
    one string into another.

    Args:
        s1: First string
        s2: Second string

    Returns:
        Edit distance (0 = identical)
    """
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)

    if len(s2) == 0:
        return len(s1)

    previous_row = range(len(s2) + 1)

    for i, c1 in enumerate(s1):
        current_row = [i + 1]

        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)

            current_row.append(min(insertions, deletions, substitutions))

        previous_row = current_row

    return previous_row[-1]


def similarity_ratio(s1: str, s2: str) -> float:
    """
    Calculate similarity ratio between two strings.

    Returns a value between 0.0 and 1.0, where 1.0 means identical
    and 0.0 means completely different.
    """
    if not s1 and not s2:
        return 1.0

    if not s1 or not s2:
        return 0.0

    distance = levenshtein_distance(s1, s2)
    max_len = max(len(s1), len(s2))

    return 1.0 - (distance / max_len)


def normalize_text(value: str) -> str:
    """
    Normalize free text (titles, locations) for grouping.

    Lowercase, punctuation removed, whitespace collapsed. Digits glued to
    letters are split ("2bhk" -> "2 bhk") so spacing variants collide.
    """
    if not value:
        return ""
    normalized = value.lower().strip()
    normalized = re.sub(r"(\d)([a-z])", r"\1 \2", normalized)
    normalized = re.sub(r"[^\w\s]", " ", normalized)
    return re.sub(r"\s+", " ", normalized).strip()
