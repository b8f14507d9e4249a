from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable

from .backends import StatusUpdate
from .cache import LearningStats, StatsCache, StatsCacheManager
from .config import DecayConfig
from .errors import BackendUnavailable, EventLogError
from .events import ArchivedEvent
from .models import Learning, LearningStatus, utcnow

logger = logging.getLogger(__name__)

DECAY_REASON = "passive_decay"


class DecayOutcome(str, Enum):
    ACTIVE = "active"
    DECAYED = "decayed"
    IMMUNE = "immune"
    ALREADY_ARCHIVED = "already_archived"


def last_verified(stats: LearningStats, created_at: datetime) -> datetime:
    candidates = [created_at]
    if stats.last_referenced is not None:
        candidates.append(stats.last_referenced)
    if stats.last_surfaced is not None:
        candidates.append(stats.last_surfaced)
    return max(candidates)


def evaluate(stats: LearningStats, created_at: datetime, config: DecayConfig, now: datetime) -> DecayOutcome:
    """Decide one learning's fate. Immunity wins regardless of age."""
    if stats.archived:
        return DecayOutcome.ALREADY_ARCHIVED
    if stats.hit_rate >= config.immunity_hit_rate:
        return DecayOutcome.IMMUNE
    if now - last_verified(stats, created_at) > timedelta(days=config.passive_duration_days):
        return DecayOutcome.DECAYED
    return DecayOutcome.ACTIVE


def should_run(last_check: datetime | None, now: datetime, interval_hours: int = 24) -> bool:
    return last_check is None or now - last_check > timedelta(hours=interval_hours)


def _stats_for(cache: StatsCache, learning: Learning) -> LearningStats:
    stats = cache.learnings.get(learning.id)
    if stats is None:
        return LearningStats(archived=learning.status != LearningStatus.ACTIVE)
    if learning.status != LearningStatus.ACTIVE:
        return stats.model_copy(update={"archived": True})
    return stats


def find_decayed(cache: StatsCache, learnings: Iterable[Learning], config: DecayConfig, now: datetime) -> list[str]:
    return [
        learning.id
        for learning in learnings
        if evaluate(_stats_for(cache, learning), learning.created_at, config, now) == DecayOutcome.DECAYED
    ]


def run_decay(
    cache: StatsCache,
    learnings: Iterable[Learning],
    config: DecayConfig,
    manager: StatsCacheManager,
    backends,
    now: datetime | None = None,
    force: bool = False,
) -> list[str]:
    """Archive every decayed learning and log it. Throttled unless forced.

    Returns the ids archived in this run.
    """
    now = now or utcnow()
    if not force and not should_run(cache.last_decay_check, now, config.check_interval_hours):
        return []

    archived: list[str] = []
    for learning_id in find_decayed(cache, learnings, config, now):
        try:
            result = backends.update_status(learning_id, LearningStatus.ARCHIVED)
        except BackendUnavailable as exc:
            logger.warning("Could not archive %s: %s", learning_id, exc)
            continue
        if result != StatusUpdate.CHANGED:
            continue
        try:
            manager.record(cache, ArchivedEvent(learning_id=learning_id, reason=DECAY_REASON, timestamp=now))
        except EventLogError as exc:
            logger.warning("Archived %s but could not log it: %s", learning_id, exc)
        stats = cache.learnings.get(learning_id)
        if stats is not None:
            stats.archived = True
        archived.append(learning_id)

    cache.last_decay_check = now
    manager.save(cache)
    if archived:
        logger.info("Passive decay archived %d learning(s)", len(archived))
    return archived


def decay_warnings(
    cache: StatsCache,
    learnings: Iterable[Learning],
    config: DecayConfig,
    now: datetime | None = None,
) -> list[str]:
    """Learnings that will decay within ``config.warning_days``."""
    now = now or utcnow()
    window = min(config.warning_days, config.passive_duration_days)
    warn_after = timedelta(days=config.passive_duration_days - window)
    decay_after = timedelta(days=config.passive_duration_days)
    warnings = []
    for learning in learnings:
        stats = _stats_for(cache, learning)
        if stats.archived or stats.hit_rate >= config.immunity_hit_rate:
            continue
        age = now - last_verified(stats, learning.created_at)
        if warn_after < age <= decay_after:
            warnings.append(learning.id)
    return warnings
