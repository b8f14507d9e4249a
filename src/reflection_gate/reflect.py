"""Reflection, skip and observation entry points.

These run outside the hook transport, when the agent submits learnings or
decides to skip. Infrastructure failures while logging or saving are
warned about and skipped; only an unusable submission is reported back as
an error.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .backends import EPHEMERAL_LOCATION, BackendRouter
from .cache import StatsCacheManager
from .config import Config
from .errors import BackendUnavailable, InvalidTransition, ParseFailure, ReflectionFailed
from .events import CorrectedEvent, DismissedEvent, LearningMeta, ReferencedEvent, ReflectionEvent, SkipEvent
from .gate import Gate
from .models import (
    InjectionOutcome,
    Learning,
    LearningCandidate,
    LearningStatus,
    RejectedCandidate,
    ReflectionResult,
    SearchFilters,
    Session,
    SkipDecider,
    SkipDecision,
    SubagentNote,
    TraceKind,
    utcnow,
)
from .session_store import SessionStore, load_or_create, save_quietly
from .validation import validate_batch

logger = logging.getLogger(__name__)

# Large enough to cover every active learning during duplicate checks.
DUPLICATE_SCAN_LIMIT = 100_000


class LearningReference(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    how: Optional[str] = None


class Correction(BaseModel):
    """An existing learning found wrong; optionally replaced by a candidate."""

    model_config = ConfigDict(extra="ignore")

    learning_id: str
    replaced_by: Optional[int] = None
    reason: Optional[str] = None


class ReflectPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    candidates: list[Any] = Field(default_factory=list)
    learnings_used: list[LearningReference] = Field(default_factory=list)
    corrections: list[Correction] = Field(default_factory=list)
    reflection_notes: Optional[str] = None


class AcceptedLearning(BaseModel):
    learning_id: Optional[str] = None
    summary: str
    scope: str
    location: str


class ReflectionOutcome(BaseModel):
    """Per-candidate verdicts for one submission."""

    success: bool = True
    candidates_submitted: int = 0
    accepted: list[AcceptedLearning] = Field(default_factory=list)
    rejected: list[RejectedCandidate] = Field(default_factory=list)
    learning_ids: list[str] = Field(default_factory=list)
    referenced: list[str] = Field(default_factory=list)
    corrected: list[str] = Field(default_factory=list)
    gate_status: str = ""


def parse_payload(payload: Any) -> ReflectPayload:
    """Accept JSON text, a bare candidate list, or an object with ``candidates``."""
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ParseFailure(f"reflection payload is not valid JSON: {exc.msg}") from exc
    if isinstance(payload, list):
        payload = {"candidates": payload}
    if not isinstance(payload, dict):
        raise ParseFailure("reflection payload must be an object or a list of candidates")
    try:
        return ReflectPayload.model_validate(payload)
    except ValidationError as exc:
        raise ParseFailure(f"reflection payload has invalid structure ({exc.error_count()} errors)") from exc


def detect_referenced(payload: ReflectPayload, injected_ids: list[str]) -> list[str]:
    """Injected learnings named explicitly or mentioned in notes and details."""
    found = [ref.id for ref in payload.learnings_used if ref.id in injected_ids]
    corpus = [payload.reflection_notes or ""]
    for raw in payload.candidates:
        if isinstance(raw, dict):
            corpus.append(str(raw.get("detail", "")))
    text = "\n".join(corpus).lower()
    for learning_id in injected_ids:
        if learning_id not in found and learning_id.lower() in text:
            found.append(learning_id)
    return found


class ReflectionService:
    def __init__(
        self,
        sessions: SessionStore,
        router: BackendRouter,
        stats: StatsCacheManager,
        config: Config,
        cwd: str = "",
    ):
        self.sessions = sessions
        self.router = router
        self.stats = stats
        self.config = config
        self.cwd = cwd

    def reflect(self, session_id: str, payload: Any, now: datetime | None = None) -> ReflectionOutcome:
        """Validate, persist and log a batch of candidate learnings.

        Raises ParseFailure for unusable input, ReflectionFailed when no
        candidate passes structural checks and InvalidTransition when the
        session already reflected or skipped. The gate is untouched in each
        of those cases.
        """
        now = now or utcnow()
        parsed = parse_payload(payload)
        session = load_or_create(self.sessions, session_id, cwd=self.cwd)
        gate_state = session.gate
        if gate_state.status.is_terminal():
            raise InvalidTransition(f"session already {gate_state.status.value}")

        candidates: list[LearningCandidate] = []
        malformed: list[RejectedCandidate] = []
        for raw in parsed.candidates:
            try:
                candidates.append(LearningCandidate.model_validate(raw))
            except ValidationError as exc:
                summary = raw.get("summary", "") if isinstance(raw, dict) else ""
                malformed.append(
                    RejectedCandidate(summary=str(summary), reason=f"malformed candidate ({exc.error_count()} errors)")
                )
        if parsed.candidates and not candidates:
            raise ReflectionFailed("all candidates failed structural validation", rejected=malformed)

        try:
            existing = self.router.search_all(filters=SearchFilters(max_results=DUPLICATE_SCAN_LIMIT))
        except BackendUnavailable as exc:
            logger.warning("Duplicate check without existing learnings: %s", exc)
            existing = []
        try:
            report = validate_batch(candidates, existing)
        except ReflectionFailed as exc:
            exc.rejected = malformed + exc.rejected
            raise

        ticket_id = gate_state.ticket.id if gate_state.ticket else None
        outcome = ReflectionOutcome(candidates_submitted=len(parsed.candidates), rejected=malformed + report.rejected)
        metas: list[LearningMeta] = []
        backends_used: list[str] = []
        new_ids_by_index: dict[int, str] = {}

        for validated in report.accepted:
            learning_id = None
            if self.router.destination(validated.scope) is not None:
                learning_id = self.router.next_id(now)
            learning = Learning(
                id=learning_id or EPHEMERAL_LOCATION,
                category=validated.category,
                summary=validated.summary,
                detail=validated.detail,
                scope=validated.scope,
                confidence=validated.confidence,
                criteria=validated.criteria,
                tags=validated.tags,
                context_files=validated.context_files,
                session_id=session_id,
                ticket_id=ticket_id,
                created_at=now,
            )
            try:
                written = self.router.write(learning)
            except BackendUnavailable as exc:
                logger.warning("Could not store learning %r: %s", validated.summary, exc)
                outcome.rejected.append(
                    RejectedCandidate(summary=validated.summary, reason=str(exc), stage="backend", tags=validated.tags)
                )
                continue
            outcome.accepted.append(
                AcceptedLearning(
                    learning_id=learning_id,
                    summary=validated.summary,
                    scope=validated.scope.value,
                    location=written.location,
                )
            )
            if learning_id is None:
                continue
            outcome.learning_ids.append(learning_id)
            if written.backend not in backends_used:
                backends_used.append(written.backend)
            metas.append(
                LearningMeta(
                    id=learning_id,
                    summary=learning.summary,
                    category=learning.category.value,
                    scope=learning.scope.value,
                    criteria=[c.value for c in learning.criteria],
                    tags=learning.tags,
                    context_files=learning.context_files,
                    created_at=now,
                    ticket_id=ticket_id,
                )
            )
            index = self._candidate_index(parsed.candidates, validated.summary)
            if index is not None:
                new_ids_by_index[index] = learning_id

        cache = self.stats.load_quietly(now)
        self.stats.record_quietly(
            cache,
            ReflectionEvent(
                timestamp=now,
                session_id=session_id,
                candidates=len(parsed.candidates),
                accepted=len(outcome.accepted),
                categories=sorted({m.category for m in metas if m.category}),
                ticket_id=ticket_id,
                backend=",".join(backends_used),
                learnings=metas,
                rejected=outcome.rejected,
            ),
        )

        injected_ids = [i.learning_id for i in gate_state.injected_learnings]
        for learning_id in detect_referenced(parsed, injected_ids):
            self.stats.record_quietly(
                cache,
                ReferencedEvent(timestamp=now, learning_id=learning_id, session_id=session_id, ticket_id=ticket_id),
            )
            gate_state.mark_injection(learning_id, InjectionOutcome.REFERENCED)
            outcome.referenced.append(learning_id)

        for correction in parsed.corrections:
            replacement = new_ids_by_index.get(correction.replaced_by) if correction.replaced_by is not None else None
            if replacement is not None:
                try:
                    self.router.update_status(correction.learning_id, LearningStatus.SUPERSEDED, replacement)
                except (BackendUnavailable, InvalidTransition) as exc:
                    logger.warning("Could not supersede %s: %s", correction.learning_id, exc)
            self.stats.record_quietly(
                cache,
                CorrectedEvent(
                    timestamp=now,
                    learning_id=correction.learning_id,
                    session_id=session_id,
                    superseded_by=replacement,
                ),
            )
            gate_state.mark_injection(correction.learning_id, InjectionOutcome.CORRECTED)
            outcome.corrected.append(correction.learning_id)

        result = ReflectionResult(
            candidates=len(parsed.candidates),
            accepted=len(outcome.accepted),
            learning_ids=list(outcome.learning_ids),
            completed_at=now,
        )
        gate = Gate(gate_state, self.config, session_id, now=now)
        if gate_state.status.requires_reflection():
            gate.complete_reflection(result)
        else:
            gate_state.reflection = result
            gate.reset_circuit_breaker()
        session.add_trace(
            TraceKind.REFLECTION_COMPLETE,
            f"{len(outcome.accepted)}/{len(parsed.candidates)} accepted",
            now=now,
        )
        save_quietly(self.sessions, session)
        outcome.gate_status = gate_state.status.value
        return outcome

    @staticmethod
    def _candidate_index(raw: list[Any], summary: str) -> int | None:
        for index, item in enumerate(raw):
            if isinstance(item, dict) and str(item.get("summary", "")).strip() == summary:
                return index
        return None

    def skip(
        self,
        session_id: str,
        reason: str,
        decider: SkipDecider = SkipDecider.AGENT,
        files: list[str] | None = None,
        now: datetime | None = None,
    ) -> SkipDecision:
        """Record an explicit skip. Raises InvalidTransition outside Pending/Blocked."""
        now = now or utcnow()
        if not reason or not reason.strip():
            raise ParseFailure("skip reason must not be empty")
        session = load_or_create(self.sessions, session_id, cwd=self.cwd)
        decision = Gate(session.gate, self.config, session_id, now=now).skip(reason.strip(), decider)
        self.log_skip(session, decision, files or [], now)
        save_quietly(self.sessions, session)
        return decision

    def log_skip(self, session: Session, decision: SkipDecision, files: list[str], now: datetime) -> None:
        """Append the skip record and, when configured, dismiss pending injections."""
        gate_state = session.gate
        cache = self.stats.load_quietly(now)
        self.stats.record_quietly(
            cache,
            SkipEvent(
                timestamp=now,
                session_id=session.id,
                reason=decision.reason,
                decider=decision.decider,
                lines_changed=decision.lines_changed,
                ticket_id=gate_state.ticket.id if gate_state.ticket else None,
                context_files=files,
            ),
        )
        if self.config.gate.skip_counts_as_dismissal:
            for injected in gate_state.pending_injections():
                self.stats.record_quietly(
                    cache,
                    DismissedEvent(timestamp=now, learning_id=injected.learning_id, session_id=session.id),
                )
                injected.outcome = InjectionOutcome.DISMISSED
        session.add_trace(TraceKind.SKIP, f"{decision.decider.value}: {decision.reason}", now=now)

    def observe(self, session_id: str, text: str, agent: str | None = None, now: datetime | None = None) -> int:
        """Attach a subagent note to the session; returns the note count."""
        now = now or utcnow()
        if not text or not text.strip():
            raise ParseFailure("observation must not be empty")
        session = load_or_create(self.sessions, session_id, cwd=self.cwd)
        session.gate.subagent_notes.append(SubagentNote(text=text.strip(), agent=agent, recorded_at=now))
        session.add_trace(TraceKind.OBSERVATION_RECORDED, agent, now=now)
        save_quietly(self.sessions, session)
        return len(session.gate.subagent_notes)
