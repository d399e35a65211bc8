"""
Name-based match suggestions between local and remote people.

Scoring for an unmapped local/remote pair (case/whitespace-normalized):

    identical                          0.95  "Exact match"
    same tokens, different order       0.90  "Name reordered"
    one is a prefix of the other       0.80  "Prefix match"
    character-set Jaccard > 0.65       min(j, 0.75)  "N% similar"
    otherwise                          0.0
"""
import re
from dataclasses import dataclass
from typing import Optional

from rapidfuzz import utils

EXACT_SCORE = 0.95
REORDERED_SCORE = 0.90
PREFIX_SCORE = 0.80
JACCARD_THRESHOLD = 0.65
JACCARD_CAP = 0.75

# Minimum score for a pair to be suggested
SUGGESTION_THRESHOLD = 0.6


@dataclass
class NameScore:
    score: float
    reason: Optional[str] = None


def normalize_name(name: str) -> str:
    """Lowercase and collapse whitespace."""
    return re.sub(r"\s+", " ", (name or "").strip().lower())


def _char_jaccard(a: str, b: str) -> float:
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def name_similarity(a: str, b: str) -> NameScore:
    """Score how likely two display names refer to the same person."""
    la, lb = normalize_name(a), normalize_name(b)
    if not la or not lb:
        return NameScore(0.0)

    if la == lb:
        return NameScore(EXACT_SCORE, "Exact match")

    # Punctuation is dropped before comparing tokens ("Garcia, Maria")
    ta, tb = utils.default_process(la).split(), utils.default_process(lb).split()
    if ta != tb and sorted(ta) == sorted(tb):
        return NameScore(REORDERED_SCORE, "Name reordered")

    if la.startswith(lb) or lb.startswith(la):
        return NameScore(PREFIX_SCORE, "Prefix match")

    jaccard = _char_jaccard(la, lb)
    if jaccard > JACCARD_THRESHOLD:
        return NameScore(min(jaccard, JACCARD_CAP), f"{round(jaccard * 100)}% similar")

    return NameScore(0.0)


def best_match(name: str, candidates: list[tuple[str, str]]) -> Optional[tuple[str, NameScore]]:
    """
    Highest-scoring candidate at or above the suggestion threshold.

    Args:
        name: Name to match
        candidates: (key, name) pairs, in encounter order

    Returns:
        (key, score) or None. The first-encountered candidate wins ties.
    """
    best: Optional[tuple[str, NameScore]] = None
    for key, candidate_name in candidates:
        result = name_similarity(name, candidate_name)
        if result.score < SUGGESTION_THRESHOLD:
            continue
        if best is None or result.score > best[1].score:
            best = (key, result)
    return best
