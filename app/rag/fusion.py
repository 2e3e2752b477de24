"""
Result Fusion

Deterministic merging of evidence lists coming from different retrieval
strategies. No model calls in this module.

- merge_results: ordered fold that deduplicates by evidence key, keeping
  the first occurrence (semantic hits are passed first so they win).
- reciprocal_rank_fusion: weighted RRF blend of a semantic ranking and a
  keyword ranking.
"""

from typing import Dict, List, Sequence, Tuple, TypeVar

T = TypeVar("T")

RRF_K = 60
DEFAULT_SEMANTIC_WEIGHT = 0.7


def merge_results(*result_sets: Sequence[T]) -> List[T]:
    """
    Concatenate result sets, dropping items whose key was already seen.

    Earlier sets take precedence, so pass the most trusted strategy first.
    """
    seen = set()
    merged: List[T] = []
    for results in result_sets:
        for item in results or []:
            key = (getattr(item, "kind", ""), item.key)
            if key in seen:
                continue
            seen.add(key)
            merged.append(item)
    return merged


def reciprocal_rank_fusion(
    semantic: Sequence[T],
    keyword: Sequence[T],
    semantic_weight: float = DEFAULT_SEMANTIC_WEIGHT,
    k: int = RRF_K,
) -> List[Tuple[T, float]]:
    """
    Blend two rankings of the same item type.

    score(item) = w / (k + rank_sem) + (1 - w) / (k + rank_kw), with ranks
    starting at 1 and the missing term omitted when an item appears in one
    list only. The semantic instance is kept when both lists hold the item.

    Returns:
        (item, fused score) sorted by descending score
    """
    weight = min(max(semantic_weight, 0.0), 1.0)
    scores: Dict[str, float] = {}
    items: Dict[str, T] = {}

    for rank, item in enumerate(semantic, start=1):
        scores[item.key] = scores.get(item.key, 0.0) + weight / (k + rank)
        items.setdefault(item.key, item)

    for rank, item in enumerate(keyword, start=1):
        scores[item.key] = scores.get(item.key, 0.0) + (1.0 - weight) / (k + rank)
        items.setdefault(item.key, item)

    ranked = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
    return [(items[key], score) for key, score in ranked]
