from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field

from .errors import InvalidTransition

SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _assume_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


# Naive timestamps from older records are read as UTC.
UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


class GateStatus(str, Enum):
    """Gate lifecycle states for one session."""

    IDLE = "idle"
    ACTIVE = "active"
    PENDING = "pending"
    BLOCKED = "blocked"
    REFLECTED = "reflected"
    SKIPPED = "skipped"

    def is_terminal(self) -> bool:
        return self in (GateStatus.REFLECTED, GateStatus.SKIPPED)

    def requires_reflection(self) -> bool:
        return self in (GateStatus.PENDING, GateStatus.BLOCKED)


class LearningCategory(str, Enum):
    """Closed set of learning categories."""

    PATTERN = "pattern"
    PITFALL = "pitfall"
    CONVENTION = "convention"
    DEPENDENCY = "dependency"
    PROCESS = "process"
    DOMAIN = "domain"
    DEBUGGING = "debugging"


class LearningScope(str, Enum):
    """Visibility class that selects where a learning is written."""

    PROJECT = "project"
    TEAM = "team"
    PERSONAL = "personal"
    EPHEMERAL = "ephemeral"


class LearningStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    SUPERSEDED = "superseded"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class WriteGateCriterion(str, Enum):
    """Claims a candidate can make to be eligible for persistence."""

    BEHAVIOR_CHANGING = "behavior_changing"
    DECISION_RATIONALE = "decision_rationale"
    STABLE_FACT = "stable_fact"
    EXPLICIT_REQUEST = "explicit_request"

    @classmethod
    def parse(cls, raw: str) -> Optional["WriteGateCriterion"]:
        """Accept hyphenated or spaced spellings, case-insensitively."""
        key = re.sub(r"[\s-]+", "_", raw.strip().lower())
        try:
            return cls(key)
        except ValueError:
            return None


class SkipDecider(str, Enum):
    AGENT = "agent"
    USER = "user"
    AUTO_THRESHOLD = "auto_threshold"


class InjectionOutcome(str, Enum):
    PENDING = "pending"
    REFERENCED = "referenced"
    DISMISSED = "dismissed"
    CORRECTED = "corrected"


class TraceKind(str, Enum):
    SESSION_START = "session_start"
    TICKET_DETECTED = "ticket_detected"
    TICKET_CLOSE_DETECTED = "ticket_close_detected"
    TICKET_CLOSED = "ticket_closed"
    TICKET_CLOSE_FAILED = "ticket_close_failed"
    TICKET_ABANDONED = "ticket_abandoned"
    STOP_HOOK_CALLED = "stop_hook_called"
    GATE_BLOCKED = "gate_blocked"
    REFLECTION_COMPLETE = "reflection_complete"
    SKIP = "skip"
    CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"
    LEARNINGS_INJECTED = "learnings_injected"
    OBSERVATION_RECORDED = "observation_recorded"
    SESSION_END = "session_end"


class DecisionKind(str, Enum):
    APPROVE = "approve"
    APPROVE_FORCED = "approve_forced"
    BLOCK = "block"


EXIT_CODES = {
    DecisionKind.APPROVE: 0,
    DecisionKind.BLOCK: 2,
    DecisionKind.APPROVE_FORCED: 3,
}
CRASH_EXIT_CODE = 1


class GateDecision(BaseModel):
    """Outcome of a lifecycle call, mapped by the host to a control signal."""

    kind: DecisionKind = DecisionKind.APPROVE
    message: Optional[str] = None
    additional_context: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.kind]

    @classmethod
    def approve(cls, message: str | None = None) -> "GateDecision":
        return cls(kind=DecisionKind.APPROVE, message=message)

    @classmethod
    def block(cls, message: str) -> "GateDecision":
        return cls(kind=DecisionKind.BLOCK, message=message)

    @classmethod
    def forced(cls, message: str) -> "GateDecision":
        return cls(kind=DecisionKind.APPROVE_FORCED, message=message)


class TicketContext(BaseModel):
    """Work-unit metadata attached when a ticket is detected."""

    id: str
    source: str = "unknown"
    title: str = ""
    description: Optional[str] = None
    detected_at: datetime = Field(default_factory=utcnow)


class TicketCloseIntent(BaseModel):
    """A close command seen before its tool call reported a result."""

    ticket_id: str
    command: str
    detected_at: datetime = Field(default_factory=utcnow)


class SkipDecision(BaseModel):
    reason: str
    decider: SkipDecider
    lines_changed: Optional[int] = None
    decided_at: datetime = Field(default_factory=utcnow)


class RejectedCandidate(BaseModel):
    """Summary and reason retained for a rejected candidate."""

    summary: str
    reason: str
    stage: str = "schema"
    tags: list[str] = Field(default_factory=list)


class ReflectionResult(BaseModel):
    candidates: int = 0
    accepted: int = 0
    learning_ids: list[str] = Field(default_factory=list)
    completed_at: datetime = Field(default_factory=utcnow)


class InjectedLearning(BaseModel):
    """A learning surfaced into a session and what became of it."""

    learning_id: str
    score: float = 0.0
    outcome: InjectionOutcome = InjectionOutcome.PENDING


class SubagentNote(BaseModel):
    text: str
    agent: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)


class GateState(BaseModel):
    """Per-session gate record."""

    status: GateStatus = GateStatus.IDLE
    block_count: int = 0
    circuit_breaker_tripped: bool = False
    last_blocked_session_id: Optional[str] = None
    last_blocked_at: Optional[UtcDatetime] = None
    reflection: Optional[ReflectionResult] = None
    skip: Optional[SkipDecision] = None
    injected_learnings: list[InjectedLearning] = Field(default_factory=list)
    subagent_notes: list[SubagentNote] = Field(default_factory=list)
    ticket: Optional[TicketContext] = None
    ticket_close_intent: Optional[TicketCloseIntent] = None
    cached_diff_size: Optional[int] = None

    def pending_injections(self) -> list[InjectedLearning]:
        return [i for i in self.injected_learnings if i.outcome == InjectionOutcome.PENDING]

    def mark_injection(self, learning_id: str, outcome: InjectionOutcome) -> bool:
        for injected in self.injected_learnings:
            if injected.learning_id == learning_id:
                injected.outcome = outcome
                return True
        return False


class TraceEvent(BaseModel):
    kind: TraceKind
    timestamp: datetime = Field(default_factory=utcnow)
    details: Optional[str] = None


class Session(BaseModel):
    """Durable per-session record keyed by the host's session identifier."""

    model_config = ConfigDict(extra="ignore")

    id: str
    cwd: str = ""
    transcript_path: str = ""
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    gate: GateState = Field(default_factory=GateState)
    trace: list[TraceEvent] = Field(default_factory=list)

    def add_trace(self, kind: TraceKind, details: str | None = None, now: datetime | None = None) -> None:
        now = now or utcnow()
        self.trace.append(TraceEvent(kind=kind, timestamp=now, details=details))
        self.updated_at = now


class LearningCandidate(BaseModel):
    """Unvalidated candidate as submitted by the agent.

    Enumerated fields are kept as raw strings so that structural validation
    can report every problem instead of failing at parse time.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    category: str = ""
    summary: str = ""
    detail: str = ""
    scope: str = LearningScope.PROJECT.value
    confidence: str = Confidence.MEDIUM.value
    claimed_criteria: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("claimed_criteria", "criteria_met"),
    )
    tags: list[str] = Field(default_factory=list)
    context_files: Optional[list[str]] = None


class Learning(BaseModel):
    """A persisted learning."""

    model_config = ConfigDict(extra="ignore")

    id: str
    schema_version: int = SCHEMA_VERSION
    category: LearningCategory
    summary: str
    detail: str
    scope: LearningScope = LearningScope.PROJECT
    confidence: Confidence = Confidence.MEDIUM
    criteria: list[WriteGateCriterion] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)
    session_id: str = ""
    ticket_id: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    status: LearningStatus = LearningStatus.ACTIVE
    superseded_by: Optional[str] = None

    def archive(self) -> bool:
        """Active -> Archived. Returns False when already archived."""
        if self.status == LearningStatus.ARCHIVED:
            return False
        if self.status == LearningStatus.SUPERSEDED:
            raise InvalidTransition(f"{self.id} is superseded and cannot be archived")
        self.status = LearningStatus.ARCHIVED
        return True

    def restore(self) -> None:
        if self.status != LearningStatus.ARCHIVED:
            raise InvalidTransition(f"{self.id} is {self.status.value}, only archived learnings can be restored")
        self.status = LearningStatus.ACTIVE

    def supersede(self, by: str) -> None:
        if self.status == LearningStatus.SUPERSEDED:
            raise InvalidTransition(f"{self.id} is already superseded by {self.superseded_by}")
        if self.status != LearningStatus.ACTIVE:
            raise InvalidTransition(f"{self.id} is {self.status.value}, only active learnings can be superseded")
        self.status = LearningStatus.SUPERSEDED
        self.superseded_by = by


_WORD_RE = re.compile(r"[a-z0-9_]+")
_STOPWORDS = frozenset(
    "about after also and from have into that their then there these this those when where which while with will would".split()
)


def extract_keywords(*texts: str | None, min_length: int = 4) -> list[str]:
    """Lowercased distinct words, in first-seen order."""
    seen: list[str] = []
    for text in texts:
        if not text:
            continue
        for word in _WORD_RE.findall(text.lower()):
            if len(word) < min_length or word in _STOPWORDS or word in seen:
                continue
            seen.append(word)
    return seen


class SearchFilters(BaseModel):
    status: Optional[LearningStatus] = LearningStatus.ACTIVE
    scope: Optional[LearningScope] = None
    created_after: Optional[UtcDatetime] = None
    max_results: int = 100


class SearchQuery(BaseModel):
    """Structured retrieval query. Never a free-text string."""

    ticket_title: str = ""
    ticket_description: Optional[str] = None
    files: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)

    @classmethod
    def from_context(
        cls,
        ticket: TicketContext | None = None,
        files: list[str] | None = None,
        tags: list[str] | None = None,
    ) -> "SearchQuery":
        title = ticket.title if ticket else ""
        description = ticket.description if ticket else None
        return cls(
            ticket_title=title,
            ticket_description=description,
            files=list(files or []),
            tags=list(tags or []),
            keywords=extract_keywords(title, description),
        )

    def is_empty(self) -> bool:
        return not (self.files or self.tags or self.keywords)
