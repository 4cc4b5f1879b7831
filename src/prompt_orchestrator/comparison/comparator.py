"""Index-aligned comparison of two result sets over the same test cases."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, Field

from prompt_orchestrator.errors import MisalignedResultsError, NoCasesError
from prompt_orchestrator.storage.models import PersistedResult, TestCase

Classification = Literal["better", "worse", "same"]

# Score deltas below this are treated as noise.
SCORE_EPSILON = 0.01


class ComparisonSubject(BaseModel):
    """Which template version one side of a comparison came from."""

    template_id: str
    version: str
    label: str | None = None


class ResultSnapshot(BaseModel):
    success: bool
    score: float
    latency_ms: float
    cost: float
    tokens_used: int

    @classmethod
    def from_result(cls, result: PersistedResult) -> ResultSnapshot:
        return cls(
            success=result.success,
            score=result.score,
            latency_ms=result.latency_ms,
            cost=result.cost,
            tokens_used=result.tokens_used,
        )


class CaseComparison(BaseModel):
    test_case_id: str
    test_case_name: str
    baseline: ResultSnapshot
    candidate: ResultSnapshot
    score_delta: float
    classification: Classification


class AggregateDeltas(BaseModel):
    mean_score_delta: float = 0.0
    mean_latency_delta_ms: float = 0.0
    total_cost_delta: float = 0.0
    total_token_delta: int = 0
    success_rate_delta: float = 0.0


class ComparisonReport(BaseModel):
    baseline: ComparisonSubject | None = None
    candidate: ComparisonSubject | None = None
    case_count: int
    cases: list[CaseComparison] = Field(default_factory=list)
    aggregates: AggregateDeltas
    better_count: int = 0
    worse_count: int = 0
    same_count: int = 0


def classify_case(baseline: PersistedResult, candidate: PersistedResult) -> Classification:
    """Classify the candidate result relative to the baseline for one case."""
    score_delta = candidate.score - baseline.score
    if abs(score_delta) < SCORE_EPSILON and baseline.success == candidate.success:
        return "same"
    if score_delta > 0 or (not baseline.success and candidate.success):
        return "better"
    return "worse"


def compare_results(
    cases: Sequence[TestCase],
    results_a: Sequence[PersistedResult],
    results_b: Sequence[PersistedResult],
    *,
    baseline: ComparisonSubject | None = None,
    candidate: ComparisonSubject | None = None,
) -> ComparisonReport:
    """Compare results_b against results_a, where both are aligned with cases by index."""
    case_count = len(cases)
    if case_count == 0:
        raise NoCasesError("Cannot compare an empty case list")
    if len(results_a) != case_count or len(results_b) != case_count:
        raise MisalignedResultsError(
            f"Expected {case_count} results per side, "
            f"got {len(results_a)} and {len(results_b)}"
        )

    rows: list[CaseComparison] = []
    total_score_delta = 0.0
    total_latency_delta = 0.0
    total_cost_delta = 0.0
    total_token_delta = 0
    success_a = 0
    success_b = 0
    for index, case in enumerate(cases):
        result_a = results_a[index]
        result_b = results_b[index]
        for side, result in (("baseline", result_a), ("candidate", result_b)):
            if result.test_case_id != case.test_case_id:
                raise MisalignedResultsError(
                    f"{side} result at index {index} belongs to test case "
                    f"{result.test_case_id}, expected {case.test_case_id}"
                )

        score_delta = result_b.score - result_a.score
        total_score_delta += score_delta
        total_latency_delta += result_b.latency_ms - result_a.latency_ms
        total_cost_delta += result_b.cost - result_a.cost
        total_token_delta += result_b.tokens_used - result_a.tokens_used
        success_a += int(result_a.success)
        success_b += int(result_b.success)
        rows.append(
            CaseComparison(
                test_case_id=case.test_case_id,
                test_case_name=case.name,
                baseline=ResultSnapshot.from_result(result_a),
                candidate=ResultSnapshot.from_result(result_b),
                score_delta=score_delta,
                classification=classify_case(result_a, result_b),
            )
        )

    return ComparisonReport(
        baseline=baseline,
        candidate=candidate,
        case_count=case_count,
        cases=rows,
        aggregates=AggregateDeltas(
            mean_score_delta=total_score_delta / case_count,
            mean_latency_delta_ms=total_latency_delta / case_count,
            total_cost_delta=total_cost_delta,
            total_token_delta=total_token_delta,
            success_rate_delta=(success_b - success_a) / case_count,
        ),
        better_count=sum(1 for row in rows if row.classification == "better"),
        worse_count=sum(1 for row in rows if row.classification == "worse"),
        same_count=sum(1 for row in rows if row.classification == "same"),
    )
