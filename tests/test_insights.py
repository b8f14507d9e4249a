from datetime import timedelta

from reflection_gate.cache import CategoryStats, CrossPollinationEdge, LearningStats, SkipMiss, StatsCache
from reflection_gate.insights import InsightKind, generate_insights


def _kinds(cache, now):
    return [insight.kind for insight in generate_insights(cache, now=now)]


class TestGenerateInsights:
    def test_empty_cache_has_no_insights(self, now):
        assert generate_insights(StatsCache(), now=now) == []

    def test_rubber_stamping(self, now):
        cache = StatsCache()
        for i in range(10):
            cache.learnings[f"cl_{i}"] = LearningStats(criteria=["stable_fact"])
        cache.write_gate.criteria_claims = {"stable_fact": 10}
        insights = generate_insights(cache, now=now)
        assert insights[0].kind == InsightKind.RUBBER_STAMPING
        assert "'stable_fact' (10/10)" in insights[0].message

    def test_multi_criterion_claims_are_not_rubber_stamping(self, now):
        cache = StatsCache()
        for i in range(5):
            cache.learnings[f"cl_single_{i}"] = LearningStats(criteria=["stable_fact"])
            cache.learnings[f"cl_multi_{i}"] = LearningStats(criteria=["stable_fact", "decision_rationale"])
        cache.write_gate.criteria_claims = {"stable_fact": 10, "decision_rationale": 5}
        assert InsightKind.RUBBER_STAMPING not in _kinds(cache, now)

    def test_rubber_stamping_needs_enough_learnings(self, now):
        cache = StatsCache()
        for i in range(5):
            cache.learnings[f"cl_{i}"] = LearningStats(criteria=["stable_fact"])
        cache.write_gate.criteria_claims = {"stable_fact": 5}
        assert InsightKind.RUBBER_STAMPING not in _kinds(cache, now)

    def test_gate_too_strict(self, now):
        cache = StatsCache()
        cache.write_gate.evaluated = 20
        cache.write_gate.accepted = 4
        cache.write_gate.pass_rate = 0.2
        assert InsightKind.GATE_TOO_STRICT in _kinds(cache, now)

    def test_gate_too_loose(self, now):
        cache = StatsCache()
        cache.write_gate.evaluated = 20
        cache.write_gate.accepted = 20
        cache.write_gate.pass_rate = 1.0
        cache.learnings["cl_1"] = LearningStats(surfaced=10, referenced=1, hit_rate=0.1)
        assert InsightKind.GATE_TOO_LOOSE in _kinds(cache, now)

    def test_low_hit_and_rare_valuable_categories(self, now):
        cache = StatsCache()
        cache.categories = {
            "process": CategoryStats(learnings=12, surfaced=40, referenced=4, hit_rate=0.1),
            "dependency": CategoryStats(learnings=2, surfaced=10, referenced=9, hit_rate=0.9),
        }
        kinds = _kinds(cache, now)
        assert InsightKind.LOW_HIT_CATEGORY in kinds
        assert InsightKind.HIGH_VALUE_RARE in kinds

    def test_cross_pollination(self, now):
        cache = StatsCache()
        cache.cross_pollination = [
            CrossPollinationEdge(learning_id=f"cl_{i}", origin_ticket="T-1", referenced_in=f"T-{i + 2}")
            for i in range(3)
        ]
        assert InsightKind.CROSS_POLLINATION in _kinds(cache, now)

    def test_stale_top_learning(self, now):
        cache = StatsCache()
        cache.learnings["cl_1"] = LearningStats(
            surfaced=10, referenced=9, hit_rate=0.9, last_referenced=now - timedelta(days=75)
        )
        insights = generate_insights(cache, now=now)
        stale = [i for i in insights if i.kind == InsightKind.STALE_TOP_LEARNING]
        assert "75 days" in stale[0].message

    def test_decay_warning(self, now):
        cache = StatsCache()
        cache.learnings["cl_1"] = LearningStats(created_at=now - timedelta(days=88))
        assert InsightKind.DECAY_WARNING in _kinds(cache, now)

    def test_misses(self, now):
        cache = StatsCache()
        cache.write_gate.retrospective_misses = 2
        cache.skip_misses = [SkipMiss(learning_id="cl_1", skipped_ticket="T-4")]
        kinds = _kinds(cache, now)
        assert InsightKind.RETROSPECTIVE_MISS in kinds
        assert InsightKind.SKIP_MISS in kinds

    def test_sorted_by_priority(self, now):
        cache = StatsCache()
        cache.write_gate.retrospective_misses = 1
        cache.cross_pollination = [
            CrossPollinationEdge(learning_id=f"cl_{i}", origin_ticket="T-1", referenced_in="T-2") for i in range(3)
        ]
        for i in range(10):
            cache.learnings[f"cl_{i}"] = LearningStats(criteria=["explicit_request"])
        cache.write_gate.criteria_claims = {"explicit_request": 10}
        priorities = [i.priority for i in generate_insights(cache, now=now)]
        assert priorities == sorted(priorities)
