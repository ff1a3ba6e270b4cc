"""
String similarity

Edit-distance similarity in the range 0..1, shared by the column mapper
(header matching) and the typo / unknown-department checks.
"""
from typing import Iterable, Optional, Tuple

from rapidfuzz.distance import Levenshtein


def similarity_score(a: str, b: str) -> float:
    """
    Case-insensitive Levenshtein similarity.

    1 - distance / max(len(a), len(b)); two empty strings are identical.
    """
    return Levenshtein.normalized_similarity(
        str(a).lower().strip(), str(b).lower().strip()
    )


def best_match(value: str, candidates: Iterable[str]) -> Tuple[Optional[str], float]:
    """
    Find the most similar candidate.

    Returns:
        (candidate, score), or (None, 0.0) when there are no candidates.
        Ties keep the first candidate seen.
    """
    best, best_score = None, 0.0
    for candidate in candidates:
        score = similarity_score(value, candidate)
        if score > best_score:
            best, best_score = candidate, score
    return best, best_score
