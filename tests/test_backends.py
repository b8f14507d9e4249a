from datetime import timedelta

import pytest

from reflection_gate.backends import (
    BackendRouter,
    MemoryLearningBackend,
    SqliteLearningBackend,
    StatusUpdate,
    learning_id_for,
)
from reflection_gate.errors import BackendUnavailable, InvalidTransition
from reflection_gate.models import (
    Learning,
    LearningCategory,
    LearningScope,
    LearningStatus,
    SearchFilters,
    SearchQuery,
    WriteGateCriterion,
)


def _learning(learning_id, now, scope=LearningScope.PROJECT, days_old=0, **overrides):
    fields = dict(
        id=learning_id,
        category=LearningCategory.DEPENDENCY,
        summary=f"Pin the client library ({learning_id})",
        detail="Minor releases of the client changed retry semantics twice this year.",
        scope=scope,
        criteria=[WriteGateCriterion.STABLE_FACT],
        tags=["deps"],
        context_files=["requirements.txt"],
        session_id="s1",
        created_at=now - timedelta(days=days_old),
    )
    fields.update(overrides)
    return Learning(**fields)


class FailingBackend(MemoryLearningBackend):
    def search(self, query, filters):
        raise BackendUnavailable("down")

    def update_status(self, learning_id, status, superseded_by=None):
        raise BackendUnavailable("down")

    def ping(self):
        return False


class TestSqliteBackend:
    def test_write_and_get(self, tmp_path, now):
        backend = SqliteLearningBackend(tmp_path / "db" / "learnings.db")
        result = backend.write(_learning("cl_20260301_000", now))
        assert result.backend == "sqlite"
        loaded = backend.get("cl_20260301_000")
        assert loaded.criteria == [WriteGateCriterion.STABLE_FACT]
        assert loaded.tags == ["deps"]
        assert loaded.created_at == now
        assert backend.get("missing") is None

    def test_search_filters(self, tmp_path, now):
        backend = SqliteLearningBackend(tmp_path / "learnings.db")
        backend.write(_learning("a", now, days_old=10))
        backend.write(_learning("b", now, days_old=1))
        backend.write(_learning("c", now, scope=LearningScope.TEAM))
        backend.update_status("a", LearningStatus.ARCHIVED)

        active = backend.search(SearchQuery(), SearchFilters())
        assert {l.id for l in active} == {"b", "c"}
        team = backend.search(SearchQuery(), SearchFilters(scope=LearningScope.TEAM))
        assert [l.id for l in team] == ["c"]
        recent = backend.search(SearchQuery(), SearchFilters(status=None, created_after=now - timedelta(days=5)))
        assert {l.id for l in recent} == {"b", "c"}
        limited = backend.search(SearchQuery(), SearchFilters(max_results=1))
        assert len(limited) == 1

    def test_status_transitions(self, tmp_path, now):
        backend = SqliteLearningBackend(tmp_path / "learnings.db")
        backend.write(_learning("a", now))
        assert backend.update_status("a", LearningStatus.SUPERSEDED, "b") == StatusUpdate.CHANGED
        assert backend.get("a").superseded_by == "b"
        with pytest.raises(InvalidTransition):
            backend.update_status("a", LearningStatus.ARCHIVED)
        assert backend.update_status("missing", LearningStatus.ARCHIVED) == StatusUpdate.NOT_FOUND

    def test_repeated_status_is_unchanged(self, tmp_path, now):
        backend = SqliteLearningBackend(tmp_path / "learnings.db")
        backend.write(_learning("a", now))
        assert backend.update_status("a", LearningStatus.ACTIVE) == StatusUpdate.UNCHANGED
        assert backend.update_status("a", LearningStatus.ARCHIVED) == StatusUpdate.CHANGED
        assert backend.update_status("a", LearningStatus.ARCHIVED) == StatusUpdate.UNCHANGED
        assert backend.get("a").status == LearningStatus.ARCHIVED

    def test_prefix_count_and_ping(self, tmp_path, now):
        backend = SqliteLearningBackend(tmp_path / "learnings.db")
        backend.write(_learning("cl_20260301_000", now))
        backend.write(_learning("cl_20260301_001", now))
        backend.write(_learning("cl_20260228_000", now))
        assert backend.id_prefix_count("cl_20260301_") == 2
        assert backend.ping() is True

    def test_unusable_path_is_unavailable(self, tmp_path, now):
        blocker = tmp_path / "file"
        blocker.write_text("")
        backend = SqliteLearningBackend(blocker / "learnings.db")
        with pytest.raises(BackendUnavailable):
            backend.write(_learning("a", now))
        assert backend.ping() is False


class TestRouter:
    def test_scope_routing(self, router, now):
        assert router.write(_learning("p", now, scope=LearningScope.PERSONAL)).backend == "personal"
        assert router.write(_learning("t", now, scope=LearningScope.TEAM)).backend == "project"
        ephemeral = router.write(_learning("e", now, scope=LearningScope.EPHEMERAL))
        assert ephemeral.location == "ephemeral"
        assert router.get("e") is None

    def test_personal_falls_back_to_project(self, now):
        router = BackendRouter(project=MemoryLearningBackend("project"))
        assert router.write(_learning("p", now, scope=LearningScope.PERSONAL)).backend == "project"

    def test_next_id_unique_across_backends(self, router, now):
        assert router.next_id(now) == learning_id_for(now, 0) == "cl_20260301_000"
        router.write(_learning(router.next_id(now), now))
        router.write(_learning(router.next_id(now), now, scope=LearningScope.PERSONAL))
        assert router.next_id(now) == "cl_20260301_002"

    def test_search_all_dedupes_and_skips_failures(self, now):
        healthy = MemoryLearningBackend("project")
        healthy.write(_learning("a", now))
        router = BackendRouter(project=healthy, personal=FailingBackend("personal"))
        assert [l.id for l in router.search_all()] == ["a"]
        assert router.health() == {"project": True, "personal": False}

    def test_update_status_reports_failure_only_when_not_found(self, now):
        healthy = MemoryLearningBackend("project")
        healthy.write(_learning("a", now))
        router = BackendRouter(project=healthy, personal=FailingBackend("personal"))
        assert router.update_status("a", LearningStatus.ARCHIVED) == StatusUpdate.CHANGED
        with pytest.raises(BackendUnavailable):
            router.update_status("missing", LearningStatus.ARCHIVED)
