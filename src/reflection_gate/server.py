from __future__ import annotations

import json
import os
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .backends import BackendRouter, SqliteLearningBackend, StatusUpdate
from .cache import StatsCache, StatsCacheManager
from .config import (
    Config,
    home_dir,
    personal_db_path,
    project_db_path,
    sessions_dir,
    stats_cache_path,
    stats_log_path,
)
from .decay import decay_warnings, run_decay
from .errors import (
    BackendUnavailable,
    EventLogError,
    InvalidTransition,
    ParseFailure,
    ReflectionFailed,
    StateError,
)
from .events import ArchivedEvent, EventLog, RestoredEvent
from .hooks import HookRunner
from .insights import generate_insights
from .models import LearningStatus, SearchFilters, SearchQuery, SkipDecider, TicketContext, utcnow
from .reflect import ReflectionService
from .scoring import Strategy, rank
from .session_store import FileSessionStore, SessionStore


def _split(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()] if value else []


def _error(message: str, **extra) -> str:
    return json.dumps({"success": False, "error": message, **extra}, indent=2)


class ReflectionGateApp:
    """Application wrapper holding shared state for CLI commands and MCP tools."""

    def __init__(
        self,
        config: Config,
        sessions: SessionStore,
        router: BackendRouter,
        stats: StatsCacheManager,
        cwd: str = "",
    ):
        self.config = config
        self.sessions = sessions
        self.router = router
        self.stats_manager = stats
        self.cwd = cwd
        self.reflection = ReflectionService(sessions, router, stats, config, cwd=cwd)
        self.hooks = HookRunner(sessions, router, stats, config, self.reflection)

    def reflect(self, session_id: str, payload: str) -> str:
        try:
            outcome = self.reflection.reflect(session_id, payload)
        except ReflectionFailed as e:
            return _error(str(e), rejected=[r.model_dump() for r in e.rejected])
        except (ParseFailure, InvalidTransition) as e:
            return _error(str(e))
        return outcome.model_dump_json(indent=2)

    def skip(self, session_id: str, reason: str, decider: str = "agent", files: str = "") -> str:
        try:
            chosen = SkipDecider(decider)
        except ValueError:
            return _error(f"unknown decider {decider!r}")
        try:
            decision = self.reflection.skip(session_id, reason, chosen, files=_split(files))
        except (ParseFailure, InvalidTransition) as e:
            return _error(str(e))
        return json.dumps({"success": True, **decision.model_dump(mode="json")}, indent=2)

    def observe(self, session_id: str, text: str, agent: str = "") -> str:
        try:
            count = self.reflection.observe(session_id, text, agent=agent or None)
        except ParseFailure as e:
            return _error(str(e))
        return json.dumps({"success": True, "notes": count}, indent=2)

    def search_learnings(
        self,
        title: str = "",
        description: str = "",
        files: str = "",
        tags: str = "",
        strategy: str = "",
        limit: int = 0,
    ) -> str:
        ticket = None
        if title or description:
            ticket = TicketContext(id="query", title=title, description=description or None)
        query = SearchQuery.from_context(ticket, files=_split(files), tags=_split(tags))
        try:
            chosen = Strategy(strategy) if strategy else self.config.retrieval.strategy
        except ValueError:
            return _error(f"unknown strategy {strategy!r}")
        learnings = self.router.search_all(filters=SearchFilters(max_results=10_000))
        cache = self.stats_manager.load_quietly()
        hit_rates = {k: v.hit_rate for k, v in cache.learnings.items()} if cache is not None else {}
        scored = rank(
            query,
            learnings,
            hit_rates,
            strategy=chosen,
            max_injections=limit or self.config.retrieval.max_injections,
        )
        if not scored:
            return "No matching learnings found."
        output = []
        for s in scored:
            output.append({
                "score": round(s.score, 3),
                "id": s.learning.id,
                "category": s.learning.category.value,
                "summary": s.learning.summary,
                "detail": s.learning.detail,
                "tags": s.learning.tags or None,
            })
        return json.dumps(output, indent=2)

    def stats(self) -> str:
        try:
            cache = self.stats_manager.load_or_rebuild()
        except EventLogError as e:
            return _error(str(e))
        report = cache.model_dump(mode="json", include={"aggregates", "categories", "reflections", "write_gate"})
        report["log_entries_processed"] = cache.log_entries_processed
        return json.dumps(report, indent=2)

    def insights(self) -> str:
        try:
            cache = self.stats_manager.load_or_rebuild()
        except EventLogError as e:
            return _error(str(e))
        found = generate_insights(cache, self.config)
        if not found:
            return "No insights. Nothing needs tuning."
        return json.dumps([i.model_dump(mode="json") for i in found], indent=2)

    def maintain(self, force_decay: bool = False, rotate_days: int | None = None) -> str:
        """Run decay, optional log rotation, and rebuild the cache."""
        now = utcnow()
        rotate_days = rotate_days or self.config.stats.rotate_after_days
        rotated = 0
        try:
            if rotate_days:
                rotated = self.stats_manager.log.rotate(rotate_days, now=now)
            cache = self.stats_manager.load_or_rebuild(now=now)
        except EventLogError as e:
            return _error(str(e))
        learnings = self.router.search_all(filters=SearchFilters(max_results=10_000))
        archived = run_decay(
            cache, learnings, self.config.decay, self.stats_manager, self.router, now=now, force=force_decay
        )
        remaining = [l for l in learnings if l.id not in archived]
        return json.dumps(
            {
                "success": True,
                "archived": archived,
                "rotated": rotated,
                "decay_warnings": decay_warnings(cache, remaining, self.config.decay, now),
                "backends": self.router.health(),
            },
            indent=2,
        )

    def _set_status(self, learning_id: str, status: LearningStatus, event) -> str:
        try:
            result = self.router.update_status(learning_id, status)
        except (BackendUnavailable, InvalidTransition) as e:
            return _error(str(e))
        if result == StatusUpdate.NOT_FOUND:
            return f"Learning {learning_id} not found."
        if result == StatusUpdate.UNCHANGED:
            return f"Learning {learning_id} is already {status.value}."
        self.stats_manager.record_quietly(self.stats_manager.load_quietly(), event)
        return f"Learning {learning_id} is now {status.value}."

    def archive(self, learning_id: str) -> str:
        return self._set_status(learning_id, LearningStatus.ARCHIVED, ArchivedEvent(learning_id=learning_id))

    def restore(self, learning_id: str) -> str:
        return self._set_status(learning_id, LearningStatus.ACTIVE, RestoredEvent(learning_id=learning_id))

    def list_learnings(self, status: str = "active", stale: bool = False, limit: int = 50) -> str:
        """Stored learnings, newest first. ``stale`` keeps only those about to decay."""
        try:
            chosen = None if status == "all" else LearningStatus(status)
        except ValueError:
            return _error(f"unknown status {status!r}")
        learnings = self.router.search_all(filters=SearchFilters(status=chosen, max_results=10_000))
        learnings.sort(key=lambda l: (l.created_at, l.id), reverse=True)
        if stale:
            cache = self.stats_manager.load_quietly() or StatsCache()
            warned = set(decay_warnings(cache, learnings, self.config.decay))
            learnings = [l for l in learnings if l.id in warned]
        if limit:
            learnings = learnings[:limit]
        if not learnings:
            return "No learnings found."
        output = []
        for l in learnings:
            output.append({
                "id": l.id,
                "status": l.status.value,
                "category": l.category.value,
                "scope": l.scope.value,
                "summary": l.summary,
                "created_at": l.created_at.isoformat(),
            })
        return json.dumps(output, indent=2)

    def trace(self, session_id: str) -> str:
        """The session's recorded trace entries, oldest first."""
        try:
            session = self.sessions.get(session_id)
        except StateError as e:
            return _error(str(e))
        if session is None:
            return _error(f"session {session_id!r} not found")
        return json.dumps(
            {
                "session_id": session.id,
                "gate_status": session.gate.status.value,
                "trace": [t.model_dump(mode="json") for t in session.trace],
            },
            indent=2,
        )


def create_app(
    cwd: str | None = None,
    home: str | Path | None = None,
    config: Config | None = None,
) -> ReflectionGateApp:
    cwd = cwd or os.environ.get("CLAUDE_PROJECT_DIR") or os.getcwd()
    home = Path(home) if home is not None else home_dir()
    config = config or Config.from_env()
    sessions = FileSessionStore(sessions_dir(home))
    router = BackendRouter(
        project=SqliteLearningBackend(project_db_path(cwd), name="project"),
        personal=SqliteLearningBackend(personal_db_path(home), name="personal"),
    )
    stats = StatsCacheManager(stats_cache_path(cwd), EventLog(stats_log_path(cwd)))
    return ReflectionGateApp(config=config, sessions=sessions, router=router, stats=stats, cwd=str(cwd))


def create_mcp_server() -> FastMCP:
    mcp = FastMCP("reflection-gate")
    app: ReflectionGateApp | None = None

    def _app() -> ReflectionGateApp:
        nonlocal app
        if app is None:
            app = create_app()
        return app

    @mcp.tool()
    def reflect(session_id: str, payload: str) -> str:
        """Submit candidate learnings for the session. Payload is JSON: a list of candidates, or an object with "candidates", optional "learnings_used" [{id, how}], "corrections" and "reflection_notes". Each candidate needs category, summary, detail, tags and claimed_criteria."""
        return _app().reflect(session_id=session_id, payload=payload)

    @mcp.tool()
    def skip(session_id: str, reason: str, decider: str = "agent", files: str = "") -> str:
        """Record an explicit decision not to reflect on this work unit. Files is a comma-separated list of touched paths."""
        return _app().skip(session_id=session_id, reason=reason, decider=decider, files=files)

    @mcp.tool()
    def observe(session_id: str, text: str, agent: str = "") -> str:
        """Attach a note from a subagent to the session, for use when reflecting."""
        return _app().observe(session_id=session_id, text=text, agent=agent)

    @mcp.tool()
    def search_learnings(
        title: str = "",
        description: str = "",
        files: str = "",
        tags: str = "",
        strategy: str = "",
        limit: int = 0,
    ) -> str:
        """Rank stored learnings against a work unit. Files and tags are comma-separated. Strategy is conservative, moderate or aggressive."""
        return _app().search_learnings(
            title=title, description=description, files=files, tags=tags, strategy=strategy, limit=limit
        )

    @mcp.tool()
    def stats() -> str:
        """Aggregate learning, reflection and write-gate statistics for this project."""
        return _app().stats()

    @mcp.tool()
    def insights() -> str:
        """Tuning suggestions derived from the stats, most urgent first."""
        return _app().insights()

    @mcp.tool()
    def maintain(force_decay: bool = False, rotate_days: int = 0) -> str:
        """Run passive decay and optionally fold stats older than rotate_days into a checkpoint."""
        return _app().maintain(force_decay=force_decay, rotate_days=rotate_days or None)

    @mcp.tool()
    def archive(learning_id: str) -> str:
        """Archive a learning so it is no longer surfaced."""
        return _app().archive(learning_id=learning_id)

    @mcp.tool()
    def restore(learning_id: str) -> str:
        """Restore an archived learning."""
        return _app().restore(learning_id=learning_id)

    @mcp.tool()
    def list_learnings(status: str = "active", stale: bool = False, limit: int = 50) -> str:
        """List stored learnings, newest first. Status is active, archived, superseded or all. Set stale to show only learnings about to decay."""
        return _app().list_learnings(status=status, stale=stale, limit=limit)

    @mcp.tool()
    def trace(session_id: str) -> str:
        """Show the recorded gate and hook trace for a session."""
        return _app().trace(session_id=session_id)

    return mcp


def main():
    mcp = create_mcp_server()
    mcp.run()


if __name__ == "__main__":
    main()
