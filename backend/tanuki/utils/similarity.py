"""
Tag-set similarity helpers shared by the tracer and the personalization scorer.
"""
from typing import Iterable, List


def jaccard_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """|A & B| / |A | B| over tag values; 0.0 when both sets are empty."""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def shared_tags(a: Iterable[str], b: Iterable[str]) -> List[str]:
    """Tag values present in both, in the order they appear in ``a``."""
    set_b = set(b)
    seen = set()
    out = []
    for value in a:
        if value in set_b and value not in seen:
            seen.add(value)
            out.append(value)
    return out
