"""Two-layer validation pipeline for learning candidates.

Layer 1 runs deterministic field checks. Layer 2 (the write gate) requires
at least one recognized criterion claim. A candidate that passes both is
compared against active learnings and earlier batch members for near
duplicates. Rejections are per candidate; the batch fails as a whole only
when nothing survives layer 1.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from pydantic import BaseModel

from .errors import (
    CandidateRejection,
    DuplicateRejection,
    QualityRejection,
    ReflectionFailed,
    StructuralValidationError,
)
from .models import (
    Confidence,
    Learning,
    LearningCandidate,
    LearningCategory,
    LearningScope,
    LearningStatus,
    RejectedCandidate,
    WriteGateCriterion,
)

SUMMARY_MIN, SUMMARY_MAX = 10, 200
DETAIL_MIN, DETAIL_MAX = 20, 2000
TAGS_MIN, TAGS_MAX = 1, 10


class ValidatedCandidate(BaseModel):
    """Candidate that passed every check, with enumerations resolved."""

    category: LearningCategory
    summary: str
    detail: str
    scope: LearningScope
    confidence: Confidence
    criteria: list[WriteGateCriterion]
    tags: list[str]
    context_files: list[str]


@dataclass
class ValidationReport:
    accepted: list[ValidatedCandidate] = field(default_factory=list)
    rejected: list[RejectedCandidate] = field(default_factory=list)


def _enum_value(enum_cls, raw: str):
    try:
        return enum_cls(raw.strip().lower())
    except ValueError:
        return None


def check_structure(candidate: LearningCandidate) -> LearningScope:
    """Layer 1. Returns the resolved scope; an unknown scope becomes project."""
    reasons: list[str] = []

    if _enum_value(LearningCategory, candidate.category) is None:
        reasons.append(f"invalid category: '{candidate.category}'")

    summary = candidate.summary.strip()
    detail = candidate.detail.strip()
    if len(summary) < SUMMARY_MIN:
        reasons.append(f"summary too short: {len(summary)} chars (min: {SUMMARY_MIN})")
    elif len(summary) > SUMMARY_MAX:
        reasons.append(f"summary too long: {len(summary)} chars (max: {SUMMARY_MAX})")
    if len(detail) < DETAIL_MIN:
        reasons.append(f"detail too short: {len(detail)} chars (min: {DETAIL_MIN})")
    elif len(detail) > DETAIL_MAX:
        reasons.append(f"detail too long: {len(detail)} chars (max: {DETAIL_MAX})")
    if summary and summary == detail:
        reasons.append("summary and detail must differ")

    if len(candidate.tags) < TAGS_MIN:
        reasons.append(f"too few tags: {len(candidate.tags)} (min: {TAGS_MIN})")
    elif len(candidate.tags) > TAGS_MAX:
        reasons.append(f"too many tags: {len(candidate.tags)} (max: {TAGS_MAX})")
    for index, tag in enumerate(candidate.tags):
        if not tag.strip():
            reasons.append(f"empty tag at index {index}")

    if not any(c.strip() for c in candidate.claimed_criteria):
        reasons.append("no write gate criteria claimed")

    if reasons:
        raise StructuralValidationError(reasons)
    return _enum_value(LearningScope, candidate.scope) or LearningScope.PROJECT


def check_quality(candidate: LearningCandidate) -> list[WriteGateCriterion]:
    """Layer 2. The claim is trusted, not verified."""
    recognized: list[WriteGateCriterion] = []
    invalid: list[str] = []
    for raw in candidate.claimed_criteria:
        criterion = WriteGateCriterion.parse(raw)
        if criterion is None:
            invalid.append(raw)
        elif criterion not in recognized:
            recognized.append(criterion)
    if not recognized:
        detail = ", ".join(f"invalid criterion: '{c}'" for c in invalid)
        raise QualityRejection(f"no valid criteria claimed ({detail})" if detail else "no valid criteria claimed")
    return recognized


def _overlaps(a: str, b: str) -> bool:
    a, b = a.strip().lower(), b.strip().lower()
    return bool(a) and bool(b) and (a in b or b in a)


def check_duplicate(summary: str, existing: Iterable[Learning]) -> None:
    """Reject when the summary overlaps an active learning's summary."""
    for learning in existing:
        if learning.status != LearningStatus.ACTIVE:
            continue
        if _overlaps(summary, learning.summary):
            raise DuplicateRejection(
                f"duplicate of existing learning: {learning.id}",
                duplicate_of=learning.id,
            )


def _reject(candidate: LearningCandidate, exc: CandidateRejection) -> RejectedCandidate:
    return RejectedCandidate(
        summary=candidate.summary.strip(),
        reason=exc.reason,
        stage=exc.stage,
        tags=[t.strip() for t in candidate.tags if t.strip()],
    )


def validate_batch(candidates: list[LearningCandidate], existing: Iterable[Learning]) -> ValidationReport:
    """Run every candidate through both layers and duplicate rejection.

    Raises ReflectionFailed when no candidate survives layer 1.
    """
    existing = list(existing)
    report = ValidationReport()
    survived_structure = 0
    accepted_positions: list[int] = []

    for position, candidate in enumerate(candidates):
        try:
            scope = check_structure(candidate)
            survived_structure += 1
            criteria = check_quality(candidate)
            summary = candidate.summary.strip()
            check_duplicate(summary, existing)
            for earlier_position, earlier in zip(accepted_positions, report.accepted):
                if _overlaps(summary, earlier.summary):
                    raise DuplicateRejection(f"duplicate within batch: candidate {earlier_position}")
        except CandidateRejection as exc:
            report.rejected.append(_reject(candidate, exc))
            continue

        report.accepted.append(
            ValidatedCandidate(
                category=LearningCategory(candidate.category.strip().lower()),
                summary=summary,
                detail=candidate.detail.strip(),
                scope=scope,
                confidence=_enum_value(Confidence, candidate.confidence) or Confidence.MEDIUM,
                criteria=criteria,
                tags=[t.strip() for t in candidate.tags],
                context_files=list(candidate.context_files or []),
            )
        )
        accepted_positions.append(position)

    if survived_structure == 0:
        message = "no candidates submitted" if not candidates else "all candidates failed structural validation"
        raise ReflectionFailed(message, rejected=report.rejected)
    return report


def claim_distribution(criteria_lists: Iterable[Iterable[WriteGateCriterion | str]]) -> Counter:
    """Count criterion claims across accepted learnings."""
    counts: Counter = Counter()
    for criteria in criteria_lists:
        for criterion in criteria:
            counts[criterion.value if isinstance(criterion, WriteGateCriterion) else str(criterion)] += 1
    return counts
