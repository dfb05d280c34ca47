"""Lexical and vector similarity used by hybrid retrieval."""
from __future__ import annotations

from typing import List, Sequence
import math
import re

_TOKEN_SPLIT = re.compile(r"[\s,，。；;]+")


def tokenize(text: str) -> List[str]:
    return [token for token in _TOKEN_SPLIT.split((text or "").lower()) if token]


def keyword_similarity(query: str, text: str) -> float:
    """Fraction of query tokens that occur as substrings of ``text``."""
    tokens = tokenize(query)
    haystack = (text or "").lower()
    if not tokens or not haystack:
        return 0.0
    hits = sum(1 for token in tokens if token in haystack)
    return hits / len(tokens)


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if not norm_a or not norm_b:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def clamp_weight(weight: float) -> float:
    return min(1.0, max(0.0, float(weight)))


def clamp_top_k(top_k: float) -> int:
    return max(1, min(10, int(math.floor(top_k))))


def hybrid_score(lexical: float, vector: float, keyword_weight: float) -> float:
    weight = clamp_weight(keyword_weight)
    return weight * lexical + (1.0 - weight) * vector
