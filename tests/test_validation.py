import pytest

from conftest import make_candidate
from reflection_gate.errors import DuplicateRejection, QualityRejection, ReflectionFailed, StructuralValidationError
from reflection_gate.models import (
    Learning,
    LearningCandidate,
    LearningCategory,
    LearningScope,
    LearningStatus,
    WriteGateCriterion,
)
from reflection_gate.validation import (
    check_duplicate,
    check_quality,
    check_structure,
    claim_distribution,
    validate_batch,
)


def _candidate(**overrides):
    return LearningCandidate.model_validate(make_candidate(**overrides))


def _existing(summary, status=LearningStatus.ACTIVE, learning_id="cl_20260101_000"):
    return Learning(
        id=learning_id,
        category=LearningCategory.PITFALL,
        summary=summary,
        detail="Some detail that is long enough to be valid.",
        status=status,
    )


class TestStructure:
    def test_valid_candidate(self):
        assert check_structure(_candidate()) == LearningScope.PROJECT

    def test_summary_boundaries(self):
        with pytest.raises(StructuralValidationError) as exc:
            check_structure(_candidate(summary="x" * 9))
        assert "summary too short: 9 chars (min: 10)" in exc.value.reasons
        check_structure(_candidate(summary="x" * 10))
        check_structure(_candidate(summary="x" * 200))
        with pytest.raises(StructuralValidationError) as exc:
            check_structure(_candidate(summary="x" * 201))
        assert "summary too long: 201 chars (max: 200)" in exc.value.reasons

    def test_detail_boundaries(self):
        with pytest.raises(StructuralValidationError):
            check_structure(_candidate(detail="y" * 19))
        check_structure(_candidate(detail="y" * 20))
        check_structure(_candidate(detail="y" * 2000))
        with pytest.raises(StructuralValidationError):
            check_structure(_candidate(detail="y" * 2001))

    def test_whitespace_is_not_content(self):
        with pytest.raises(StructuralValidationError):
            check_structure(_candidate(summary="   short   "))

    def test_tag_bounds(self):
        with pytest.raises(StructuralValidationError):
            check_structure(_candidate(tags=[]))
        with pytest.raises(StructuralValidationError):
            check_structure(_candidate(tags=[f"t{i}" for i in range(11)]))
        with pytest.raises(StructuralValidationError):
            check_structure(_candidate(tags=["ok", "  "]))

    def test_all_reasons_reported(self):
        with pytest.raises(StructuralValidationError) as exc:
            check_structure(_candidate(category="gossip", summary="short", tags=[], claimed_criteria=[]))
        assert len(exc.value.reasons) == 4

    def test_unknown_scope_defaults_to_project(self):
        assert check_structure(_candidate(scope="galaxy")) == LearningScope.PROJECT
        assert check_structure(_candidate(scope="Personal")) == LearningScope.PERSONAL

    def test_summary_equal_to_detail(self):
        text = "Identical text used for both fields here"
        with pytest.raises(StructuralValidationError):
            check_structure(_candidate(summary=text, detail=text))


class TestQuality:
    def test_recognized_criteria(self):
        criteria = check_quality(_candidate(claimed_criteria=["stable-fact", "Stable Fact", "vibes"]))
        assert criteria == [WriteGateCriterion.STABLE_FACT]

    def test_no_recognized_criteria(self):
        with pytest.raises(QualityRejection) as exc:
            check_quality(_candidate(claimed_criteria=["vibes"]))
        assert exc.value.reason == "no valid criteria claimed (invalid criterion: 'vibes')"
        assert exc.value.stage == "write_gate"


class TestDuplicate:
    def test_substring_either_direction(self):
        existing = [_existing("Retry the flaky fixture")]
        with pytest.raises(DuplicateRejection) as exc:
            check_duplicate("retry the flaky fixture with a fresh port", existing)
        assert exc.value.duplicate_of == "cl_20260101_000"
        with pytest.raises(DuplicateRejection):
            check_duplicate("flaky", existing)

    def test_archived_learnings_do_not_block(self):
        check_duplicate("Retry the flaky fixture", [_existing("Retry the flaky fixture", LearningStatus.ARCHIVED)])


class TestValidateBatch:
    def test_mixed_batch(self):
        report = validate_batch(
            [
                _candidate(),
                _candidate(summary="Prefer explicit timeouts on HTTP clients", claimed_criteria=["vibes"]),
                _candidate(summary="x"),
            ],
            existing=[],
        )
        assert len(report.accepted) == 1
        assert [r.stage for r in report.rejected] == ["write_gate", "schema"]
        accepted = report.accepted[0]
        assert accepted.category == LearningCategory.PITFALL
        assert accepted.criteria == [WriteGateCriterion.BEHAVIOR_CHANGING]

    def test_duplicate_within_batch(self):
        report = validate_batch([_candidate(), _candidate(summary="Retry the flaky fixture")], existing=[])
        assert len(report.accepted) == 1
        assert report.rejected[0].stage == "duplicate"
        assert "within batch" in report.rejected[0].reason

    def test_duplicate_reason_names_batch_position(self):
        report = validate_batch(
            [_candidate(summary="x"), _candidate(), _candidate(summary="Retry the flaky fixture")],
            existing=[],
        )
        assert len(report.accepted) == 1
        assert report.rejected[1].reason == "duplicate within batch: candidate 1"

    def test_all_structural_failures_raise(self):
        with pytest.raises(ReflectionFailed) as exc:
            validate_batch([_candidate(summary="x"), _candidate(detail="short")], existing=[])
        assert len(exc.value.rejected) == 2

    def test_empty_batch_raises(self):
        with pytest.raises(ReflectionFailed, match="no candidates submitted"):
            validate_batch([], existing=[])

    def test_quality_failures_do_not_raise(self):
        report = validate_batch([_candidate(claimed_criteria=["vibes"])], existing=[])
        assert report.accepted == []
        assert len(report.rejected) == 1


class TestClaimDistribution:
    def test_counts(self):
        counts = claim_distribution([
            [WriteGateCriterion.STABLE_FACT],
            [WriteGateCriterion.STABLE_FACT, "explicit_request"],
        ])
        assert counts["stable_fact"] == 2
        assert counts["explicit_request"] == 1
