from datetime import datetime, timezone

import pytest

from reflection_gate.errors import InvalidTransition
from reflection_gate.models import (
    DecisionKind,
    GateDecision,
    GateState,
    GateStatus,
    InjectedLearning,
    InjectionOutcome,
    Learning,
    LearningCandidate,
    LearningCategory,
    LearningStatus,
    SearchQuery,
    Session,
    TicketContext,
    TraceKind,
    WriteGateCriterion,
    extract_keywords,
)


def _learning(**overrides):
    fields = dict(
        id="cl_20260101_000",
        category=LearningCategory.PATTERN,
        summary="Use the builder for config objects",
        detail="Constructing configs by hand skips validation of nested sections.",
    )
    fields.update(overrides)
    return Learning(**fields)


class TestGateStatus:
    def test_terminal_states(self):
        assert GateStatus.REFLECTED.is_terminal()
        assert GateStatus.SKIPPED.is_terminal()
        assert not GateStatus.BLOCKED.is_terminal()

    def test_requires_reflection(self):
        assert GateStatus.PENDING.requires_reflection()
        assert GateStatus.BLOCKED.requires_reflection()
        assert not GateStatus.ACTIVE.requires_reflection()


class TestGateDecision:
    def test_exit_codes(self):
        assert GateDecision.approve().exit_code == 0
        assert GateDecision.block("x").exit_code == 2
        assert GateDecision.forced("x").exit_code == 3

    def test_kinds(self):
        assert GateDecision.forced("tripped").kind == DecisionKind.APPROVE_FORCED


class TestWriteGateCriterion:
    def test_parse_variants(self):
        assert WriteGateCriterion.parse("behavior-changing") == WriteGateCriterion.BEHAVIOR_CHANGING
        assert WriteGateCriterion.parse("Stable Fact") == WriteGateCriterion.STABLE_FACT
        assert WriteGateCriterion.parse(" decision_rationale ") == WriteGateCriterion.DECISION_RATIONALE

    def test_parse_unknown(self):
        assert WriteGateCriterion.parse("vibes") is None


class TestLearningLifecycle:
    def test_archive_and_restore(self):
        learning = _learning()
        assert learning.archive() is True
        assert learning.status == LearningStatus.ARCHIVED
        learning.restore()
        assert learning.status == LearningStatus.ACTIVE

    def test_archive_twice_is_noop(self):
        learning = _learning()
        learning.archive()
        assert learning.archive() is False
        assert learning.status == LearningStatus.ARCHIVED

    def test_restore_requires_archived(self):
        with pytest.raises(InvalidTransition):
            _learning().restore()

    def test_superseded_cannot_archive(self):
        learning = _learning()
        learning.supersede("cl_20260102_000")
        assert learning.superseded_by == "cl_20260102_000"
        with pytest.raises(InvalidTransition):
            learning.archive()

    def test_only_active_can_be_superseded(self):
        learning = _learning()
        learning.archive()
        with pytest.raises(InvalidTransition):
            learning.supersede("cl_20260102_000")
        assert learning.status == LearningStatus.ARCHIVED
        assert learning.superseded_by is None

    def test_naive_timestamp_read_as_utc(self):
        learning = _learning(created_at=datetime(2026, 1, 1, 9, 0))
        assert learning.created_at.tzinfo == timezone.utc


class TestLearningCandidate:
    def test_lenient_fields(self):
        candidate = LearningCandidate.model_validate({"summary": "x", "category": "not-a-category", "extra": 1})
        assert candidate.category == "not-a-category"
        assert candidate.claimed_criteria == []

    def test_criteria_alias(self):
        candidate = LearningCandidate.model_validate({"criteria_met": ["stable_fact"]})
        assert candidate.claimed_criteria == ["stable_fact"]


class TestGateState:
    def test_pending_injections_and_marking(self):
        state = GateState(
            injected_learnings=[
                InjectedLearning(learning_id="a"),
                InjectedLearning(learning_id="b", outcome=InjectionOutcome.REFERENCED),
            ]
        )
        assert [i.learning_id for i in state.pending_injections()] == ["a"]
        assert state.mark_injection("a", InjectionOutcome.DISMISSED) is True
        assert state.pending_injections() == []
        assert state.mark_injection("missing", InjectionOutcome.DISMISSED) is False


class TestSession:
    def test_add_trace_updates_timestamp(self):
        session = Session(id="s1")
        at = datetime(2026, 2, 2, tzinfo=timezone.utc)
        session.add_trace(TraceKind.SESSION_START, "hello", now=at)
        assert session.trace[-1].kind == TraceKind.SESSION_START
        assert session.updated_at == at

    def test_round_trip_ignores_unknown_fields(self):
        raw = Session(id="s1").model_dump(mode="json")
        raw["future_field"] = True
        assert Session.model_validate(raw).id == "s1"


class TestSearchQuery:
    def test_keywords_skip_short_and_stopwords(self):
        assert extract_keywords("Fix the flaky login redirect", "with retries") == [
            "flaky",
            "login",
            "redirect",
            "retries",
        ]

    def test_from_context(self):
        ticket = TicketContext(id="T-1", title="Cache invalidation on deploy")
        query = SearchQuery.from_context(ticket, files=["src/cache.py"], tags=["cache"])
        assert query.ticket_title == "Cache invalidation on deploy"
        assert "invalidation" in query.keywords
        assert not query.is_empty()

    def test_empty_query(self):
        assert SearchQuery.from_context().is_empty()
