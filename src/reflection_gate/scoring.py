"""Composite retrieval scoring.

score = relevance * recency_weight * reference_boost

Relevance is the strongest single syntactic match between the query and a
learning. Strategies change which learnings are admitted and how many are
returned, never the formula.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Mapping

import numpy as np

from .models import Learning, SearchQuery, utcnow

TAG_EXACT = 1.0
TAG_PARTIAL = 0.5
FILE_OVERLAP = 0.8
KEYWORD_SUMMARY = 0.3

# Weight falls to 0.3 at 90 days.
LAMBDA = math.log(1 / 0.3) / 90
AGGRESSIVE_RECENT_DAYS = 30


class Strategy(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"

    @property
    def cap(self) -> int:
        return {Strategy.CONSERVATIVE: 3, Strategy.MODERATE: 5, Strategy.AGGRESSIVE: 10}[self]

    @property
    def min_relevance(self) -> float:
        # Conservative admits only exact tag or file matches.
        return FILE_OVERLAP if self is Strategy.CONSERVATIVE else 0.0

    def effective_limit(self, max_injections: int | None) -> int:
        if max_injections is None:
            return self.cap
        return max(0, min(max_injections, self.cap))


def _tag_score(query_tags: list[str], learning_tags: list[str]) -> float:
    best = 0.0
    for q in query_tags:
        q = q.lower()
        if not q:
            continue
        for t in learning_tags:
            t = t.lower()
            if not t:
                continue
            if q == t:
                return TAG_EXACT
            if q in t or t in q:
                best = TAG_PARTIAL
    return best


def files_overlap(a: str, b: str) -> bool:
    """Equal paths, equal basenames, or one path a suffix of the other."""
    if not a or not b:
        return False
    if a == b:
        return True
    name_a, name_b = a.rsplit("/", 1)[-1], b.rsplit("/", 1)[-1]
    if name_a and name_a == name_b:
        return True
    a, b = a.lstrip("/"), b.lstrip("/")
    return a.endswith(b) or b.endswith(a)


def _file_score(query_files: list[str], context_files: list[str]) -> float:
    for q in query_files:
        for c in context_files:
            if files_overlap(q, c):
                return FILE_OVERLAP
    return 0.0


def _keyword_score(keywords: list[str], summary: str) -> float:
    summary = summary.lower()
    for keyword in keywords:
        if keyword and keyword.lower() in summary:
            return KEYWORD_SUMMARY
    return 0.0


def relevance(query: SearchQuery, learning: Learning) -> float:
    """Maximum over the independent match signals, in [0, 1]."""
    if query.is_empty():
        return 0.0
    return max(
        _tag_score(query.tags, learning.tags),
        _file_score(query.files, learning.context_files),
        _keyword_score(query.keywords, learning.summary),
    )


def _age_days(created_at: datetime, now: datetime) -> int:
    return max(0, (now - created_at).days)


def recency_weight(created_at: datetime, now: datetime) -> float:
    return math.exp(-LAMBDA * _age_days(created_at, now))


def reference_boost(hit_rate: float) -> float:
    return 0.5 + 0.5 * min(1.0, max(0.0, hit_rate))


@dataclass
class ScoredLearning:
    learning: Learning
    relevance: float
    recency: float
    reference: float
    score: float


def rank(
    query: SearchQuery,
    learnings: list[Learning],
    hit_rates: Mapping[str, float],
    strategy: Strategy = Strategy.MODERATE,
    now: datetime | None = None,
    max_injections: int | None = None,
) -> list[ScoredLearning]:
    """Rank learnings for injection, best first.

    Ties on score go to the more recently created learning.
    """
    now = now or utcnow()
    admitted: list[Learning] = []
    relevances: list[float] = []
    for learning in learnings:
        rel = relevance(query, learning)
        if rel > 0.0 and rel >= strategy.min_relevance:
            admitted.append(learning)
            relevances.append(rel)
        elif strategy is Strategy.AGGRESSIVE and _age_days(learning.created_at, now) <= AGGRESSIVE_RECENT_DAYS:
            admitted.append(learning)
            relevances.append(rel)
    limit = strategy.effective_limit(max_injections)
    if not admitted or limit == 0:
        return []

    rel_arr = np.array(relevances, dtype=np.float64)
    ages = np.array([_age_days(l.created_at, now) for l in admitted], dtype=np.float64)
    rec_arr = np.exp(-LAMBDA * ages)
    hits = np.clip(np.array([hit_rates.get(l.id, 0.0) for l in admitted], dtype=np.float64), 0.0, 1.0)
    ref_arr = 0.5 + 0.5 * hits
    scores = rel_arr * rec_arr * ref_arr
    created = np.array([l.created_at.timestamp() for l in admitted], dtype=np.float64)

    # lexsort orders by the last key first.
    order = np.lexsort((-created, -scores))[:limit]
    return [
        ScoredLearning(
            learning=admitted[i],
            relevance=float(rel_arr[i]),
            recency=float(rec_arr[i]),
            reference=float(ref_arr[i]),
            score=float(scores[i]),
        )
        for i in order
    ]
