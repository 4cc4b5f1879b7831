"""Summaries, failure listings, and recommendations for a batch of results."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, Field

from prompt_orchestrator.storage.models import AssertionResult, PersistedResult

MIN_SUCCESS_RATE = 0.8
MIN_AVERAGE_SCORE = 0.7
MAX_AVERAGE_LATENCY_MS = 10_000.0
MAX_TOTAL_COST = 1.0


class ReportSummary(BaseModel):
    total_tests: int = 0
    successful_tests: int = 0
    failed_tests: int = 0
    success_rate: float = 0.0
    average_score: float = 0.0
    average_latency_ms: float = 0.0
    total_tokens_used: int = 0
    total_cost: float = 0.0


class ReportFailure(BaseModel):
    test_case_id: str
    variables: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    failed_assertions: list[AssertionResult] = Field(default_factory=list)


class TestReport(BaseModel):
    __test__ = False

    summary: ReportSummary
    failures: list[ReportFailure] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


def summarize_results(results: Sequence[PersistedResult]) -> ReportSummary:
    total = len(results)
    if total == 0:
        return ReportSummary()
    successful = sum(1 for item in results if item.success)
    return ReportSummary(
        total_tests=total,
        successful_tests=successful,
        failed_tests=total - successful,
        success_rate=successful / total,
        average_score=sum(item.score for item in results) / total,
        average_latency_ms=sum(item.latency_ms for item in results) / total,
        total_tokens_used=sum(item.tokens_used for item in results),
        total_cost=sum(item.cost for item in results),
    )


def build_test_report(results: Sequence[PersistedResult]) -> TestReport:
    summary = summarize_results(results)
    failures = [
        ReportFailure(
            test_case_id=item.test_case_id,
            variables=dict(item.metadata.get("variables") or {}),
            error=item.error,
            failed_assertions=[check for check in item.assertions if not check.passed],
        )
        for item in results
        if not item.success
    ]

    recommendations: list[str] = []
    if summary.total_tests == 0:
        return TestReport(summary=summary)
    if summary.success_rate < MIN_SUCCESS_RATE:
        recommendations.append("Consider revising the prompt template to improve success rate")
    if summary.average_score < MIN_AVERAGE_SCORE:
        recommendations.append(
            "Review test assertions to ensure they align with expected outputs"
        )
    if summary.average_latency_ms > MAX_AVERAGE_LATENCY_MS:
        recommendations.append("Consider optimizing the prompt to reduce response time")
    failure_types = Counter(
        check.type for failure in failures for check in failure.failed_assertions
    )
    if failure_types:
        failure_type, occurrences = failure_types.most_common(1)[0]
        recommendations.append(
            f"Address common failure type: {failure_type} ({occurrences} occurrences)"
        )
    if summary.total_cost > MAX_TOTAL_COST:
        recommendations.append(
            "Consider using a more cost-effective model or optimizing prompt length"
        )
    return TestReport(summary=summary, failures=failures, recommendations=recommendations)
