# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.similarity",
#   "purpose": "Bounded 0-100 string similarity used by fuzzy and fallback matching",
#   "sections": [
#     {"id": "normalize", "name": "normalize_for_compare", "anchor": "NRM", "kind": "helpers"},
#     {"id": "distance", "name": "Edit Distance & Common Substring", "anchor": "DST", "kind": "helpers"},
#     {"id": "score", "name": "similarity_score", "anchor": "SCR", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""String similarity scoring for catalog candidate ranking.

Scores are integers in ``[0, 100]``:

- identical non-empty inputs score 100;
- inputs equal after :func:`normalize_for_compare` score 100;
- one normalised input containing the other scores 90;
- otherwise the larger of the Levenshtein ratio and the longest common
  substring ratio, both relative to the longer normalised input.
"""

from __future__ import annotations

import math
import re
from typing import Optional

__all__ = [
    "CONTAINMENT_SCORE",
    "levenshtein_distance",
    "longest_common_substring",
    "normalize_for_compare",
    "similarity_score",
]

CONTAINMENT_SCORE = 90

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def normalize_for_compare(value: Optional[str]) -> str:
    """Lowercase and strip everything that is not ``[a-z0-9]``."""
    if not value:
        return ""
    return _NON_ALNUM_RE.sub("", str(value).lower())


def levenshtein_distance(a: str, b: str) -> int:
    """Return the edit distance between ``a`` and ``b`` using two rolling rows."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            insert = current[j - 1] + 1
            remove = previous[j] + 1
            replace = previous[j - 1] + (char_a != char_b)
            current.append(min(insert, remove, replace))
        previous = current
    return previous[-1]


def longest_common_substring(a: str, b: str) -> int:
    """Return the length of the longest substring shared by ``a`` and ``b``."""
    if not a or not b:
        return 0
    best = 0
    previous = [0] * (len(b) + 1)
    for char_a in a:
        current = [0] * (len(b) + 1)
        for j, char_b in enumerate(b, start=1):
            if char_a == char_b:
                current[j] = previous[j - 1] + 1
                if current[j] > best:
                    best = current[j]
        previous = current
    return best


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def similarity_score(a: Optional[str], b: Optional[str]) -> int:
    """Score how alike two names are on a 0-100 scale.

    Args:
        a: First name (raw, un-normalised).
        b: Second name (raw, un-normalised).

    Returns:
        Integer similarity; 0 when either side is empty after normalisation.
    """
    if a and b and a == b:
        return 100
    left = normalize_for_compare(a)
    right = normalize_for_compare(b)
    if not left or not right:
        return 0
    if left == right:
        return 100
    if left in right or right in left:
        return CONTAINMENT_SCORE

    max_len = max(len(left), len(right))
    lev_percent = _round_half_up(100 * (1 - levenshtein_distance(left, right) / max_len))
    lcs_percent = _round_half_up(100 * longest_common_substring(left, right) / max_len)
    return max(0, min(100, max(lev_percent, lcs_percent)))
