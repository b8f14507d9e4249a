"""Materialized stats cache folded from the event log.

The cache is disposable: it records how many log lines it has folded and is
rebuilt from scratch whenever that count differs from the log's.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field, ValidationError

from .events import (
    ArchivedEvent,
    CheckpointEvent,
    CorrectedEvent,
    DismissedEvent,
    EventLog,
    ReferencedEvent,
    ReflectionEvent,
    RestoredEvent,
    SkipEvent,
    SurfacedEvent,
)
from .errors import EventLogError
from .fsutil import atomic_write_text
from .models import RejectedCandidate, UtcDatetime, utcnow
from .validation import claim_distribution

logger = logging.getLogger(__name__)

MAX_RECENT_REJECTED = 100
SUMMARY_OVERLAP_RATIO = 0.3


class LearningStats(BaseModel):
    """Usage counters and metadata for one learning."""

    surfaced: int = 0
    referenced: int = 0
    dismissed: int = 0
    corrected: int = 0
    hit_rate: float = 0.0
    last_surfaced: Optional[UtcDatetime] = None
    last_referenced: Optional[UtcDatetime] = None
    summary: str = ""
    category: Optional[str] = None
    scope: Optional[str] = None
    created_at: Optional[UtcDatetime] = None
    criteria: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)
    origin_ticket: Optional[str] = None
    referencing_tickets: list[str] = Field(default_factory=list)
    archived: bool = False
    superseded_by: Optional[str] = None


class CategoryStats(BaseModel):
    learnings: int = 0
    surfaced: int = 0
    referenced: int = 0
    hit_rate: float = 0.0


class ReflectionStats(BaseModel):
    completed: int = 0
    skipped: int = 0
    by_backend: dict[str, int] = Field(default_factory=dict)
    skips_by_decider: dict[str, int] = Field(default_factory=dict)


class WriteGateStats(BaseModel):
    evaluated: int = 0
    accepted: int = 0
    rejected: int = 0
    pass_rate: float = 0.0
    rejection_reasons: dict[str, int] = Field(default_factory=dict)
    criteria_claims: dict[str, int] = Field(default_factory=dict)
    retrospective_misses: int = 0


class CrossPollinationEdge(BaseModel):
    learning_id: str
    origin_ticket: str
    referenced_in: str


class SkipMiss(BaseModel):
    """A skipped work unit whose ticket or files later produced a learning."""

    learning_id: str
    skipped_ticket: Optional[str] = None
    overlapping_files: list[str] = Field(default_factory=list)


class AggregateStats(BaseModel):
    total_learnings: int = 0
    active: int = 0
    archived: int = 0
    superseded: int = 0
    total_surfaced: int = 0
    total_referenced: int = 0
    average_hit_rate: float = 0.0
    cross_pollination_count: int = 0


def words_overlap(a: str, b: str) -> bool:
    """At least 30% of the shorter text's words appear in the other."""
    words_a = {w.lower() for w in a.split()}
    words_b = {w.lower() for w in b.split()}
    if not words_a or not words_b:
        return False
    common = len(words_a & words_b)
    return common / min(len(words_a), len(words_b)) >= SUMMARY_OVERLAP_RATIO


def paths_overlap(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return a == b or b.endswith("/" + a) or a.endswith("/" + b)


def _clamped_ratio(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return min(1.0, numerator / denominator)


class StatsCache(BaseModel):
    log_entries_processed: int = 0
    generated_at: Optional[UtcDatetime] = None
    last_decay_check: Optional[UtcDatetime] = None
    learnings: dict[str, LearningStats] = Field(default_factory=dict)
    categories: dict[str, CategoryStats] = Field(default_factory=dict)
    reflections: ReflectionStats = Field(default_factory=ReflectionStats)
    write_gate: WriteGateStats = Field(default_factory=WriteGateStats)
    cross_pollination: list[CrossPollinationEdge] = Field(default_factory=list)
    skip_misses: list[SkipMiss] = Field(default_factory=list)
    skipped_tickets: list[str] = Field(default_factory=list)
    skipped_files: list[str] = Field(default_factory=list)
    recent_rejected: list[RejectedCandidate] = Field(default_factory=list)
    aggregates: AggregateStats = Field(default_factory=AggregateStats)

    @classmethod
    def from_events(cls, events: Iterable, line_count: int) -> "StatsCache":
        cache = cls()
        for event in events:
            cache._fold(event)
        cache._recompute()
        cache.log_entries_processed = line_count
        return cache

    def apply(self, event) -> None:
        """Fold one freshly appended event without a rebuild."""
        self._fold(event)
        self._recompute()
        self.log_entries_processed += 1

    def is_stale(self, line_count: int) -> bool:
        return self.log_entries_processed != line_count

    def _stats(self, learning_id: str) -> LearningStats:
        stats = self.learnings.get(learning_id)
        if stats is None:
            stats = self.learnings[learning_id] = LearningStats()
        return stats

    def _fold(self, event) -> None:
        if isinstance(event, SurfacedEvent):
            stats = self._stats(event.learning_id)
            stats.surfaced += 1
            stats.last_surfaced = event.timestamp
        elif isinstance(event, ReferencedEvent):
            self._fold_referenced(event)
        elif isinstance(event, DismissedEvent):
            self._stats(event.learning_id).dismissed += 1
        elif isinstance(event, CorrectedEvent):
            stats = self._stats(event.learning_id)
            stats.corrected += 1
            if event.superseded_by:
                stats.superseded_by = event.superseded_by
        elif isinstance(event, ReflectionEvent):
            self._fold_reflection(event)
        elif isinstance(event, SkipEvent):
            self._fold_skip(event)
        elif isinstance(event, ArchivedEvent):
            self._stats(event.learning_id).archived = True
        elif isinstance(event, RestoredEvent):
            self._stats(event.learning_id).archived = False
        elif isinstance(event, CheckpointEvent):
            self._fold_checkpoint(event)

    def _fold_referenced(self, event: ReferencedEvent) -> None:
        stats = self._stats(event.learning_id)
        stats.referenced += 1
        stats.last_referenced = event.timestamp
        ticket = event.ticket_id
        if not ticket:
            return
        if ticket not in stats.referencing_tickets:
            stats.referencing_tickets.append(ticket)
        origin = stats.origin_ticket
        if origin and origin != ticket:
            edge = CrossPollinationEdge(learning_id=event.learning_id, origin_ticket=origin, referenced_in=ticket)
            if edge not in self.cross_pollination:
                self.cross_pollination.append(edge)

    def _fold_reflection(self, event: ReflectionEvent) -> None:
        self.reflections.completed += 1
        backend = event.backend or "unknown"
        self.reflections.by_backend[backend] = self.reflections.by_backend.get(backend, 0) + 1

        gate = self.write_gate
        gate.evaluated += event.candidates
        gate.accepted += event.accepted
        gate.rejected += max(0, event.candidates - event.accepted)

        for meta in event.learnings:
            if self.check_retrospective_miss(meta.summary, meta.tags):
                gate.retrospective_misses += 1
            self._check_skip_miss(meta.id, meta.ticket_id or event.ticket_id, meta.context_files)

            stats = self._stats(meta.id)
            stats.summary = meta.summary
            stats.category = meta.category
            stats.scope = meta.scope
            stats.created_at = meta.created_at or event.timestamp
            stats.criteria = list(meta.criteria)
            stats.tags = list(meta.tags)
            stats.context_files = list(meta.context_files)
            stats.origin_ticket = meta.ticket_id or event.ticket_id

        for criterion, count in claim_distribution(meta.criteria for meta in event.learnings).items():
            gate.criteria_claims[criterion] = gate.criteria_claims.get(criterion, 0) + count

        for rejected in event.rejected:
            gate.rejection_reasons[rejected.stage] = gate.rejection_reasons.get(rejected.stage, 0) + 1
            self.recent_rejected.append(rejected)
        if len(self.recent_rejected) > MAX_RECENT_REJECTED:
            self.recent_rejected = self.recent_rejected[-MAX_RECENT_REJECTED:]

    def _fold_skip(self, event: SkipEvent) -> None:
        self.reflections.skipped += 1
        decider = event.decider.value
        self.reflections.skips_by_decider[decider] = self.reflections.skips_by_decider.get(decider, 0) + 1
        if event.ticket_id and event.ticket_id not in self.skipped_tickets:
            self.skipped_tickets.append(event.ticket_id)
        for path in event.context_files:
            if path and path not in self.skipped_files:
                self.skipped_files.append(path)

    def _check_skip_miss(self, learning_id: str, ticket_id: str | None, context_files: list[str]) -> None:
        skipped_ticket = ticket_id if ticket_id and ticket_id in self.skipped_tickets else None
        overlapping = [
            path for path in context_files
            if any(paths_overlap(path, skipped) for skipped in self.skipped_files)
        ]
        if skipped_ticket or overlapping:
            self.skip_misses.append(
                SkipMiss(learning_id=learning_id, skipped_ticket=skipped_ticket, overlapping_files=overlapping)
            )

    def _fold_checkpoint(self, event: CheckpointEvent) -> None:
        """A checkpoint replaces everything folded so far with its aggregate."""
        try:
            restored = StatsCache.model_validate(event.aggregate)
        except ValidationError as exc:
            logger.warning("Ignoring unreadable checkpoint aggregate: %s", exc.error_count())
            return
        for name in _FOLDED_FIELDS:
            setattr(self, name, getattr(restored, name))

    def check_retrospective_miss(self, summary: str, tags: list[str]) -> bool:
        """True when an accepted topic matches one rejected earlier."""
        wanted = {t.lower() for t in tags if t}
        for rejected in self.recent_rejected:
            if wanted & {t.lower() for t in rejected.tags}:
                return True
            if words_overlap(summary, rejected.summary):
                return True
        return False

    def has_skipped_file_overlap(self, context_files: list[str]) -> bool:
        return any(paths_overlap(path, skipped) for path in context_files for skipped in self.skipped_files)

    def _recompute(self) -> None:
        categories: dict[str, CategoryStats] = {}
        agg = AggregateStats()
        hit_rates: list[float] = []
        for stats in self.learnings.values():
            stats.hit_rate = _clamped_ratio(stats.referenced, stats.surfaced)
            agg.total_learnings += 1
            agg.total_surfaced += stats.surfaced
            agg.total_referenced += stats.referenced
            if stats.superseded_by:
                agg.superseded += 1
            elif stats.archived:
                agg.archived += 1
            else:
                agg.active += 1
            if stats.surfaced > 0:
                hit_rates.append(stats.hit_rate)
            if stats.category:
                rollup = categories.setdefault(stats.category, CategoryStats())
                rollup.learnings += 1
                rollup.surfaced += stats.surfaced
                rollup.referenced += stats.referenced
        for rollup in categories.values():
            rollup.hit_rate = _clamped_ratio(rollup.referenced, rollup.surfaced)
        agg.average_hit_rate = sum(hit_rates) / len(hit_rates) if hit_rates else 0.0
        agg.cross_pollination_count = len(self.cross_pollination)
        self.categories = dict(sorted(categories.items()))
        self.write_gate.pass_rate = _clamped_ratio(self.write_gate.accepted, self.write_gate.evaluated)
        self.aggregates = agg

    def checkpoint_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", include=set(_FOLDED_FIELDS))

    def aggregate_json(self) -> str:
        """Serialization of everything derived from the log, for comparisons."""
        return json.dumps(
            self.model_dump(mode="json", exclude={"generated_at", "last_decay_check"}),
            sort_keys=True,
        )


_FOLDED_FIELDS = (
    "learnings",
    "categories",
    "reflections",
    "write_gate",
    "cross_pollination",
    "skip_misses",
    "skipped_tickets",
    "skipped_files",
    "recent_rejected",
    "aggregates",
)


class StatsCacheManager:
    """Loads, saves and rebuilds the cache file next to an event log."""

    def __init__(self, cache_path: str | Path, log: EventLog):
        self.cache_path = Path(cache_path)
        self.log = log

    def load(self) -> StatsCache | None:
        try:
            raw = self.cache_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Stats cache unreadable at %s: %s", self.cache_path, exc)
            return None
        try:
            return StatsCache.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding corrupt stats cache at %s", self.cache_path)
            return None

    def save(self, cache: StatsCache) -> None:
        try:
            atomic_write_text(self.cache_path, cache.model_dump_json(indent=2))
        except OSError as exc:
            logger.warning("Could not write stats cache %s: %s", self.cache_path, exc)

    def rebuild(self, previous: StatsCache | None = None, now: datetime | None = None) -> StatsCache:
        snapshot = self.log.read()
        cache = StatsCache.from_events(snapshot.events, line_count=snapshot.line_count)
        cache.generated_at = now or utcnow()
        if previous is not None:
            cache.last_decay_check = previous.last_decay_check
        self.save(cache)
        return cache

    def load_or_rebuild(self, now: datetime | None = None) -> StatsCache:
        cached = self.load()
        if cached is not None and not cached.is_stale(self.log.count_lines()):
            return cached
        return self.rebuild(previous=cached, now=now)

    def record(self, cache: StatsCache, event) -> None:
        """Append ``event`` to the log and fold it into an up-to-date cache."""
        fresh = not cache.is_stale(self.log.count_lines())
        self.log.append(event)
        if fresh:
            cache.apply(event)
            self.save(cache)

    def load_quietly(self, now: datetime | None = None) -> StatsCache | None:
        """Like ``load_or_rebuild`` but returns None when the log is unusable."""
        try:
            return self.load_or_rebuild(now=now)
        except EventLogError as exc:
            logger.warning("Stats unavailable: %s", exc)
            return None

    def record_quietly(self, cache: StatsCache | None, event) -> bool:
        """Append ``event``; a failed write is logged and dropped."""
        try:
            if cache is None:
                self.log.append(event)
            else:
                self.record(cache, event)
        except EventLogError as exc:
            logger.warning("Dropped %s event: %s", event.kind, exc)
            return False
        return True
