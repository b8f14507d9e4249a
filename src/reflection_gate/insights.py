"""Tuning diagnostics derived from the stats cache.

Every rule is a pure function of the cache; nothing here is persisted.
Lower priority numbers are more urgent.
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel

from .cache import StatsCache
from .config import Config, DecayConfig, InsightConfig
from .decay import last_verified
from .models import utcnow


class InsightKind(str, Enum):
    DECAY_WARNING = "decay_warning"
    CROSS_POLLINATION = "cross_pollination"
    STALE_TOP_LEARNING = "stale_top_learning"
    LOW_HIT_CATEGORY = "low_hit_category"
    HIGH_VALUE_RARE = "high_value_rare"
    RUBBER_STAMPING = "rubber_stamping"
    GATE_TOO_STRICT = "gate_too_strict"
    GATE_TOO_LOOSE = "gate_too_loose"
    RETROSPECTIVE_MISS = "retrospective_miss"
    SKIP_MISS = "skip_miss"


class Insight(BaseModel):
    kind: InsightKind
    message: str
    suggestion: str
    priority: int


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def decay_warning(cache: StatsCache, decay: DecayConfig, now: datetime) -> Insight | None:
    window = min(decay.warning_days, decay.passive_duration_days)
    warn_after = timedelta(days=decay.passive_duration_days - window)
    decay_after = timedelta(days=decay.passive_duration_days)
    count = 0
    for stats in cache.learnings.values():
        if stats.archived or stats.superseded_by or stats.created_at is None:
            continue
        if stats.hit_rate >= decay.immunity_hit_rate:
            continue
        age = now - last_verified(stats, stats.created_at)
        if warn_after < age <= decay_after:
            count += 1
    if not count:
        return None
    return Insight(
        kind=InsightKind.DECAY_WARNING,
        message=f"{_plural(count, 'learning')} approaching {decay.passive_duration_days}-day archive threshold",
        suggestion="Run `reflection-gate maintain` to review stale learnings",
        priority=2,
    )


def cross_pollination(cache: StatsCache, config: InsightConfig) -> Insight | None:
    count = len(cache.cross_pollination)
    if count < config.min_cross_pollination:
        return None
    return Insight(
        kind=InsightKind.CROSS_POLLINATION,
        message=f"{_plural(count, 'cross-ticket reference')} to learnings outside their originating ticket",
        suggestion="Learnings are proving valuable across work units",
        priority=3,
    )


def stale_top_learning(cache: StatsCache, config: InsightConfig, now: datetime) -> Insight | None:
    live = [
        (learning_id, stats)
        for learning_id, stats in cache.learnings.items()
        if not stats.archived and not stats.superseded_by and stats.surfaced > 0
    ]
    if not live:
        return None
    learning_id, stats = max(live, key=lambda item: item[1].hit_rate)
    if stats.last_referenced is None or stats.hit_rate < config.stale_top_learning_hit_rate:
        return None
    days = (now - stats.last_referenced).days
    if days < config.stale_top_learning_days:
        return None
    return Insight(
        kind=InsightKind.STALE_TOP_LEARNING,
        message=(
            f"Top learning '{learning_id}' hasn't been referenced in {days} days "
            f"(hit rate: {stats.hit_rate:.0%})"
        ),
        suggestion="Verify this learning is still accurate and relevant",
        priority=2,
    )


def low_hit_category(cache: StatsCache, config: InsightConfig) -> Insight | None:
    weak = [
        (name, rollup)
        for name, rollup in cache.categories.items()
        if rollup.learnings >= config.low_hit_min_learnings and rollup.hit_rate < config.low_hit_threshold
    ]
    if not weak:
        return None
    name, rollup = min(weak, key=lambda item: item[1].hit_rate)
    return Insight(
        kind=InsightKind.LOW_HIT_CATEGORY,
        message=f"{name} category has {rollup.hit_rate:.0%} hit rate across {rollup.learnings} learnings",
        suggestion="Capture more specific learnings in this category, or fewer of them",
        priority=2,
    )


def high_value_rare(cache: StatsCache, config: InsightConfig) -> Insight | None:
    strong = [
        (name, rollup)
        for name, rollup in cache.categories.items()
        if 0 < rollup.learnings < config.rare_valuable_max_learnings
        and rollup.hit_rate > config.rare_valuable_hit_rate
    ]
    if not strong:
        return None
    name, rollup = max(strong, key=lambda item: item[1].hit_rate)
    return Insight(
        kind=InsightKind.HIGH_VALUE_RARE,
        message=f"{name} category has {rollup.hit_rate:.0%} hit rate with only {_plural(rollup.learnings, 'learning')}",
        suggestion="Consider capturing more learnings in this high-value category",
        priority=3,
    )


def rubber_stamping(cache: StatsCache, config: InsightConfig) -> Insight | None:
    accepted = [stats for stats in cache.learnings.values() if stats.criteria]
    total = len(accepted)
    single = Counter(stats.criteria[0] for stats in accepted if len(stats.criteria) == 1)
    if total < config.rubber_stamp_min_accepted or not single:
        return None
    criterion, count = max(sorted(single.items()), key=lambda item: item[1])
    share = count / total
    if share <= config.rubber_stamp_ratio:
        return None
    return Insight(
        kind=InsightKind.RUBBER_STAMPING,
        message=f"{share:.0%} of learnings claim only '{criterion}' ({count}/{total})",
        suggestion="Evaluate each learning's criterion individually instead of picking one by default",
        priority=1,
    )


def gate_too_strict(cache: StatsCache, config: InsightConfig) -> Insight | None:
    gate = cache.write_gate
    if gate.evaluated < config.write_gate_min_evaluations or gate.pass_rate >= config.too_strict_pass_rate:
        return None
    return Insight(
        kind=InsightKind.GATE_TOO_STRICT,
        message=f"Write gate pass rate is {gate.pass_rate:.0%} ({gate.accepted}/{gate.evaluated} accepted)",
        suggestion="Improve candidate quality or review the most common rejection reasons",
        priority=2,
    )


def gate_too_loose(cache: StatsCache, config: InsightConfig) -> Insight | None:
    gate = cache.write_gate
    if gate.evaluated < config.write_gate_min_evaluations or gate.pass_rate <= config.too_loose_pass_rate:
        return None
    surfaced = [stats.hit_rate for stats in cache.learnings.values() if stats.surfaced > 0]
    if not surfaced:
        return None
    average = sum(surfaced) / len(surfaced)
    if average >= config.too_loose_hit_rate:
        return None
    return Insight(
        kind=InsightKind.GATE_TOO_LOOSE,
        message=f"Write gate pass rate is {gate.pass_rate:.0%} but average hit rate is only {average:.0%}",
        suggestion="Tighten what gets captured; most accepted learnings are not being used",
        priority=2,
    )


def retrospective_miss(cache: StatsCache) -> Insight | None:
    misses = cache.write_gate.retrospective_misses
    if misses <= 0:
        return None
    return Insight(
        kind=InsightKind.RETROSPECTIVE_MISS,
        message=f"{_plural(misses, 'accepted learning')} matched a topic rejected earlier",
        suggestion="Rejected candidates may have been worth keeping; review rejection reasons",
        priority=2,
    )


def skip_miss(cache: StatsCache, config: InsightConfig) -> Insight | None:
    misses = cache.skip_misses
    if len(misses) < max(1, config.skip_miss_min):
        return None
    by_ticket = sum(1 for miss in misses if miss.skipped_ticket)
    by_files = sum(1 for miss in misses if miss.overlapping_files)
    parts = []
    if by_ticket:
        parts.append(f"{by_ticket} by ticket")
    if by_files:
        parts.append(f"{by_files} by file overlap")
    return Insight(
        kind=InsightKind.SKIP_MISS,
        message=f"{_plural(len(misses), 'skip')} later produced learnings ({', '.join(parts)})",
        suggestion="Skips may have been premature; reflect before skipping work that touches these areas",
        priority=2,
    )


def generate_insights(cache: StatsCache, config: Config | None = None, now: datetime | None = None) -> list[Insight]:
    """All applicable insights, most urgent first."""
    config = config or Config()
    now = now or utcnow()
    rules = config.insights
    candidates = [
        decay_warning(cache, config.decay, now),
        cross_pollination(cache, rules),
        stale_top_learning(cache, rules, now),
        low_hit_category(cache, rules),
        high_value_rare(cache, rules),
        rubber_stamping(cache, rules),
        gate_too_strict(cache, rules),
        gate_too_loose(cache, rules),
        retrospective_miss(cache),
        skip_miss(cache, rules),
    ]
    insights = [insight for insight in candidates if insight is not None]
    insights.sort(key=lambda insight: insight.priority)
    return insights
