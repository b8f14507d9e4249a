"""Lifecycle hook handlers.

Each hook receives the host's JSON payload and returns a ``GateDecision``.
Hooks never fail closed: bad input, a missing session or any storage
failure ends in an approval so the host session is never wedged.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from .backends import BackendRouter
from .cache import StatsCache, StatsCacheManager
from .config import Config
from .decay import run_decay
from .diffstat import changed_files, diff_size
from .events import DismissedEvent, SurfacedEvent
from .gate import Gate
from .models import (
    DecisionKind,
    GateDecision,
    GateStatus,
    InjectedLearning,
    InjectionOutcome,
    SearchFilters,
    SearchQuery,
    Session,
    TicketCloseIntent,
    TicketContext,
    TraceKind,
    utcnow,
)
from .reflect import ReflectionService
from .scoring import ScoredLearning, rank
from .session_store import SessionStore, load_or_create, save_quietly

logger = logging.getLogger(__name__)

RETRIEVAL_SCAN_LIMIT = 10_000

CLOSE_PATTERNS = [
    re.compile(r"\btissue\s+status\s+(?P<id>[^\s;&|]+)\s+closed\b"),
    re.compile(r"\bbeads\s+(?:close|complete)\s+(?P<id>[^\s;&|]+)"),
    re.compile(r"\bgh\s+issue\s+close\s+(?P<id>[^\s;&|]+)"),
]


class HookEvent(str, Enum):
    SESSION_START = "session-start"
    TICKET_DETECTED = "ticket-detected"
    PRE_TOOL_USE = "pre-tool-use"
    POST_TOOL_USE = "post-tool-use"
    STOP = "stop"
    SESSION_END = "session-end"

    @classmethod
    def parse(cls, raw: str) -> "HookEvent":
        """Accept ``session-start``, ``session_start`` or ``SessionStart``."""
        key = re.sub(r"(?<=[a-z])(?=[A-Z])", "-", raw.strip()).replace("_", "-").lower()
        return cls(key)


class HookInput(BaseModel):
    """Fields the host may send with any hook. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    session_id: str
    cwd: str = ""
    transcript_path: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_response: Any = None
    diff_size: Optional[int] = None
    reason: Optional[str] = None
    ticket_id: Optional[str] = None
    ticket_title: str = ""
    ticket_description: Optional[str] = None
    ticket_source: str = "unknown"
    files: Optional[list[str]] = None
    tags: list[str] = Field(default_factory=list)


def extract_close_ticket(command: str) -> str | None:
    """Ticket id from a recognized close command, else None."""
    for pattern in CLOSE_PATTERNS:
        match = pattern.search(command)
        if match:
            return match.group("id")
    return None


def tool_succeeded(response: Any) -> bool:
    """Heuristic success check on a tool response of any shape."""
    if isinstance(response, dict):
        if response.get("is_error") or response.get("interrupted"):
            return False
        exit_code = response.get("exit_code", response.get("exitCode"))
        if isinstance(exit_code, int) and exit_code != 0:
            return False
        text = "\n".join(str(value) for value in response.values() if isinstance(value, str))
    elif isinstance(response, str):
        text = response
    else:
        text = json.dumps(response, default=str)
    return "error" not in text.lower() and "exit code" not in text


def format_injection(scored: list[ScoredLearning]) -> str:
    lines = ["Learnings from earlier work that may apply here:"]
    for item in scored:
        learning = item.learning
        lines.append(f"- [{learning.id}] ({learning.category.value}) {learning.summary}")
        lines.append(f"  {learning.detail}")
    lines.append("If one of these helps, mention its id when you reflect.")
    return "\n".join(lines)


class HookRunner:
    def __init__(
        self,
        sessions: SessionStore,
        router: BackendRouter,
        stats: StatsCacheManager,
        config: Config,
        reflection: ReflectionService,
    ):
        self.sessions = sessions
        self.router = router
        self.stats = stats
        self.config = config
        self.reflection = reflection
        self._handlers: dict[HookEvent, Callable[[HookInput, datetime], GateDecision]] = {
            HookEvent.SESSION_START: self.session_start,
            HookEvent.TICKET_DETECTED: self.ticket_detected,
            HookEvent.PRE_TOOL_USE: self.pre_tool_use,
            HookEvent.POST_TOOL_USE: self.post_tool_use,
            HookEvent.STOP: self.stop,
            HookEvent.SESSION_END: self.session_end,
        }

    def run(self, event: str | HookEvent, raw_json: str, now: datetime | None = None) -> GateDecision:
        """Dispatch one hook invocation. Any failure approves."""
        try:
            hook_event = event if isinstance(event, HookEvent) else HookEvent.parse(event)
            payload = HookInput.model_validate_json(raw_json)
            return self._handlers[hook_event](payload, now or utcnow())
        except Exception as e:
            logger.warning("Hook %s failed open: %s", event, e)
            return GateDecision.approve()

    def _session(self, payload: HookInput) -> Session:
        session = load_or_create(self.sessions, payload.session_id, payload.cwd, payload.transcript_path)
        if payload.cwd and not session.cwd:
            session.cwd = payload.cwd
        return session

    def _diff_size(self, payload: HookInput, session: Session) -> int | None:
        if payload.diff_size is not None:
            return payload.diff_size
        return diff_size(payload.cwd or session.cwd)

    def session_start(self, payload: HookInput, now: datetime) -> GateDecision:
        session = self._session(payload)
        session.add_trace(TraceKind.SESSION_START, payload.reason, now=now)
        gate = Gate(session.gate, self.config, session.id, now=now)
        if payload.ticket_id and session.gate.status == GateStatus.IDLE:
            gate.detect_ticket(self._ticket_from(payload, now))
            session.add_trace(TraceKind.TICKET_DETECTED, payload.ticket_id, now=now)

        cache = self.stats.load_quietly(now)
        learnings = self.router.search_all(filters=SearchFilters(max_results=RETRIEVAL_SCAN_LIMIT))
        if cache is not None:
            archived = set(run_decay(cache, learnings, self.config.decay, self.stats, self.router, now=now))
            learnings = [l for l in learnings if l.id not in archived]

        already = {i.learning_id for i in session.gate.injected_learnings}
        files = payload.files if payload.files is not None else changed_files(payload.cwd or session.cwd)
        query = SearchQuery.from_context(session.gate.ticket, files=files, tags=payload.tags)
        scored = rank(
            query,
            [l for l in learnings if l.id not in already],
            self._hit_rates(cache),
            strategy=self.config.retrieval.strategy,
            now=now,
            max_injections=self.config.retrieval.max_injections,
        )
        additional_context = None
        if scored:
            for item in scored:
                session.gate.injected_learnings.append(InjectedLearning(learning_id=item.learning.id, score=item.score))
                self.stats.record_quietly(
                    cache,
                    SurfacedEvent(timestamp=now, learning_id=item.learning.id, session_id=session.id, score=item.score),
                )
            session.add_trace(TraceKind.LEARNINGS_INJECTED, f"count: {len(scored)}", now=now)
            additional_context = format_injection(scored)

        save_quietly(self.sessions, session)
        decision = GateDecision.approve()
        decision.additional_context = additional_context
        return decision

    @staticmethod
    def _hit_rates(cache: StatsCache | None) -> dict[str, float]:
        if cache is None:
            return {}
        return {learning_id: stats.hit_rate for learning_id, stats in cache.learnings.items()}

    @staticmethod
    def _ticket_from(payload: HookInput, now: datetime) -> TicketContext:
        return TicketContext(
            id=payload.ticket_id,
            source=payload.ticket_source,
            title=payload.ticket_title,
            description=payload.ticket_description,
            detected_at=now,
        )

    def ticket_detected(self, payload: HookInput, now: datetime) -> GateDecision:
        if not payload.ticket_id:
            return GateDecision.approve()
        session = self._session(payload)
        gate = Gate(session.gate, self.config, session.id, now=now)
        status = session.gate.status
        if status.is_terminal():
            gate.reset_for_new_ticket()
        elif status == GateStatus.ACTIVE:
            current = session.gate.ticket
            if current is not None and current.id == payload.ticket_id:
                session.gate.ticket = self._ticket_from(payload, now)
                save_quietly(self.sessions, session)
                return GateDecision.approve()
            gate.abandon_ticket()
            session.add_trace(TraceKind.TICKET_ABANDONED, current.id if current else None, now=now)
        elif status.requires_reflection():
            logger.info("Ticket %s ignored until session %s reflects", payload.ticket_id, session.id)
            return GateDecision.approve()
        gate.detect_ticket(self._ticket_from(payload, now))
        session.add_trace(TraceKind.TICKET_DETECTED, payload.ticket_id, now=now)
        save_quietly(self.sessions, session)
        return GateDecision.approve()

    def pre_tool_use(self, payload: HookInput, now: datetime) -> GateDecision:
        command = payload.tool_input.get("command")
        if not isinstance(command, str):
            return GateDecision.approve()
        ticket_id = extract_close_ticket(command)
        if ticket_id is None:
            return GateDecision.approve()
        session = self._session(payload)
        Gate(session.gate, self.config, session.id, now=now).record_close_intent(
            TicketCloseIntent(ticket_id=ticket_id, command=command, detected_at=now)
        )
        session.add_trace(TraceKind.TICKET_CLOSE_DETECTED, f"ticket: {ticket_id}", now=now)
        save_quietly(self.sessions, session)
        return GateDecision.approve()

    def post_tool_use(self, payload: HookInput, now: datetime) -> GateDecision:
        session = self.sessions.get(payload.session_id)
        if session is None or session.gate.ticket_close_intent is None:
            return GateDecision.approve()
        gate = Gate(session.gate, self.config, session.id, now=now)
        intent = session.gate.ticket_close_intent

        if not tool_succeeded(payload.tool_response):
            if session.gate.status == GateStatus.ACTIVE:
                gate.ticket_close_failed()
            else:
                session.gate.ticket_close_intent = None
            session.add_trace(TraceKind.TICKET_CLOSE_FAILED, f"ticket: {intent.ticket_id}", now=now)
            save_quietly(self.sessions, session)
            return GateDecision.approve()

        if session.gate.status.is_terminal():
            gate.reset_for_new_ticket()
        if session.gate.status == GateStatus.IDLE:
            gate.detect_ticket(
                TicketContext(id=intent.ticket_id, source="detected", title="Ticket closed", detected_at=now)
            )
        if session.gate.status == GateStatus.ACTIVE:
            session.gate.cached_diff_size = self._diff_size(payload, session)
            gate.confirm_ticket_close()
            session.add_trace(TraceKind.TICKET_CLOSED, f"ticket: {intent.ticket_id}", now=now)
        else:
            session.gate.ticket_close_intent = None
        save_quietly(self.sessions, session)
        return GateDecision.approve()

    def stop(self, payload: HookInput, now: datetime) -> GateDecision:
        session = self._session(payload)
        session.add_trace(TraceKind.STOP_HOOK_CALLED, now=now)
        state = session.gate
        needs_diff = state.status == GateStatus.PENDING or (
            state.status == GateStatus.IDLE and state.ticket is None
        )
        diff = self._diff_size(payload, session) if needs_diff else payload.diff_size

        was_terminal = state.status.is_terminal()
        decision = Gate(state, self.config, session.id, now=now).exit_attempt(diff)

        if decision.kind == DecisionKind.BLOCK:
            session.add_trace(TraceKind.GATE_BLOCKED, f"blocks: {state.block_count}", now=now)
        elif decision.kind == DecisionKind.APPROVE_FORCED:
            session.add_trace(TraceKind.CIRCUIT_BREAKER_TRIPPED, decision.message, now=now)
            logger.warning("Circuit breaker tripped for session %s", session.id)
        elif not was_terminal and state.status == GateStatus.SKIPPED:
            files = payload.files if payload.files is not None else changed_files(payload.cwd or session.cwd)
            self.reflection.log_skip(session, state.skip, files, now)
        save_quietly(self.sessions, session)
        return decision

    def session_end(self, payload: HookInput, now: datetime) -> GateDecision:
        session = self.sessions.get(payload.session_id)
        if session is None:
            return GateDecision.approve()
        pending = session.gate.pending_injections()
        if pending:
            cache = self.stats.load_quietly(now)
            for injected in pending:
                self.stats.record_quietly(
                    cache,
                    DismissedEvent(timestamp=now, learning_id=injected.learning_id, session_id=session.id),
                )
                injected.outcome = InjectionOutcome.DISMISSED
        if session.gate.status == GateStatus.ACTIVE:
            ticket = session.gate.ticket
            Gate(session.gate, self.config, session.id, now=now).abandon_ticket()
            session.add_trace(TraceKind.TICKET_ABANDONED, ticket.id if ticket else None, now=now)
        session.add_trace(TraceKind.SESSION_END, f"reason: {payload.reason or 'unknown'}", now=now)
        save_quietly(self.sessions, session)
        return GateDecision.approve()
