import pytest

from prompt_orchestrator.comparison.report import build_test_report, summarize_results
from prompt_orchestrator.storage.models import AssertionResult
from support import make_result


def test_empty_results_give_empty_report() -> None:
    report = build_test_report([])

    assert report.summary.total_tests == 0
    assert report.failures == []
    assert report.recommendations == []


def test_summary_totals_and_averages() -> None:
    summary = summarize_results(
        [
            make_result("c1", score=1.0, latency_ms=100, cost=0.1, tokens_used=10),
            make_result("c2", success=False, score=0.5, latency_ms=300, cost=0.2, tokens_used=30),
        ]
    )

    assert summary.total_tests == 2
    assert summary.successful_tests == 1
    assert summary.failed_tests == 1
    assert summary.success_rate == pytest.approx(0.5)
    assert summary.average_score == pytest.approx(0.75)
    assert summary.average_latency_ms == pytest.approx(200.0)
    assert summary.total_tokens_used == 40
    assert summary.total_cost == pytest.approx(0.3)


def test_healthy_results_have_no_recommendations() -> None:
    report = build_test_report([make_result(f"c{i}") for i in range(5)])

    assert report.summary.success_rate == 1.0
    assert report.recommendations == []


def test_failures_list_failed_assertions_and_variables() -> None:
    failing = make_result(
        "c2",
        success=False,
        score=0.0,
        error=None,
        metadata={"variables": {"name": "Ada"}},
        assertions=[
            AssertionResult(type="contains", passed=False, reason="missing"),
            AssertionResult(type="regex", passed=True, score=1.0),
        ],
    )

    report = build_test_report([make_result("c1"), failing])

    assert len(report.failures) == 1
    failure = report.failures[0]
    assert failure.test_case_id == "c2"
    assert failure.variables == {"name": "Ada"}
    assert [item.type for item in failure.failed_assertions] == ["contains"]


def test_recommendations_follow_thresholds() -> None:
    failed_check = AssertionResult(type="contains", passed=False)
    results = [
        make_result("c1", success=False, score=0.2, latency_ms=12_000, cost=0.6,
                    assertions=[failed_check]),
        make_result("c2", success=False, score=0.3, latency_ms=12_000, cost=0.6,
                    assertions=[failed_check]),
        make_result("c3", success=True, score=0.9, latency_ms=12_000, cost=0.1),
    ]

    recommendations = build_test_report(results).recommendations

    assert recommendations == [
        "Consider revising the prompt template to improve success rate",
        "Review test assertions to ensure they align with expected outputs",
        "Consider optimizing the prompt to reduce response time",
        "Address common failure type: contains (2 occurrences)",
        "Consider using a more cost-effective model or optimizing prompt length",
    ]
