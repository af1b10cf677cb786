"""
Stdlib text similarity for fossil deduplication.

Provides two measures:
- **Edit similarity**: Levenshtein distance normalized to a 0-100 score,
  used for fuzzy duplicate detection between entries with the same title.
- **Token Jaccard**: set-overlap of lowercase word tokens (order-insensitive),
  used by keyword enrichment to relate entries.

No external dependency.
"""

from __future__ import annotations

from typing import Set

# ---------------------------------------------------------------------------
# Edit distance
# ---------------------------------------------------------------------------


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute each cost 1).

    Runs in O(len(a) * len(b)) time with a two-row table.
    """
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    # Keep the shorter string on the inner loop
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            cost = 0 if ca == cb else 1
            current.append(min(
                previous[j] + 1,         # deletion
                current[j - 1] + 1,      # insertion
                previous[j - 1] + cost,  # substitution
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Edit similarity as a percentage.

        sim = (max_len - distance) / max_len * 100

    Rounded to 2 decimals. Symmetric, bounded in [0, 100], and
    ``similarity(x, x) == 100``. Two empty strings are identical (100.0).
    """
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 100.0
    distance = levenshtein_distance(a, b)
    return round((max_len - distance) / max_len * 100, 2)


def is_similar(a: str, b: str, threshold: float = 60.0) -> bool:
    """True if ``similarity(a, b) >= threshold``."""
    return similarity(a, b) >= threshold


# ---------------------------------------------------------------------------
# Token overlap
# ---------------------------------------------------------------------------


def tokenize(text: str) -> Set[str]:
    """Lowercase whitespace tokens as a set. Empty input gives an empty set."""
    if not text:
        return set()
    return set(text.lower().split())


def token_jaccard(a: str, b: str) -> float:
    """Token-level Jaccard similarity between two texts.

    J(A, B) = |A ∩ B| / |A ∪ B|

    Returns 1.0 if both are empty (vacuous similarity), 0.0 if one is empty
    and the other is not.
    """
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)

    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0

    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)
