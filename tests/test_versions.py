import threading
from datetime import UTC, datetime

import pytest

from prompt_orchestrator.comparison.versions import VersionComparisonService
from prompt_orchestrator.errors import (
    AdapterError,
    InvalidInputError,
    NoCasesError,
    NotFoundError,
)
from prompt_orchestrator.execution.orchestrator import ExecutionOrchestrator
from prompt_orchestrator.storage.memory import InMemoryPromptRepository
from support import FakeRunner, make_case, make_result, make_template, passing_result


def _seed_second_template(repository: InMemoryPromptRepository) -> None:
    repository.add_template(
        make_template(
            "tpl-formal",
            name="Formal greeting",
            versions={"2.0.0": "Greet {{name}} formally."},
            primary_version="2.0.0",
        )
    )


def test_compare_versions_diffs_bodies_and_changelogs(
    repository: InMemoryPromptRepository,
) -> None:
    service = VersionComparisonService(repository)

    comparison = service.compare_versions("tpl-greeting", "1.0.0", "1.1.0")

    assert comparison.template_name == "Greeting"
    assert [(line.type, line.content) for line in comparison.template_diff] == [
        ("unchanged", "Say hello to {{name}}."),
        ("added", "Keep it short."),
    ]
    stats = comparison.stats
    assert stats.template_changes.added == 1
    assert stats.changelog_changes.removed == 1
    assert stats.changelog_changes.added == 1
    assert stats.time_difference_ms == 24 * 60 * 60 * 1000
    assert stats.size_change.template == len("\nKeep it short.")
    assert stats.size_change.changelog == 0


def test_compare_versions_time_difference_is_absolute(
    repository: InMemoryPromptRepository,
) -> None:
    service = VersionComparisonService(repository)

    forward = service.compare_versions("tpl-greeting", "1.0.0", "1.1.0")
    backward = service.compare_versions("tpl-greeting", "1.1.0", "1.0.0")

    assert forward.stats.time_difference_ms == backward.stats.time_difference_ms
    assert backward.stats.size_change.template == -forward.stats.size_change.template


def test_versions_without_results_have_zero_metrics(
    repository: InMemoryPromptRepository,
) -> None:
    service = VersionComparisonService(repository)

    comparison = service.compare_versions("tpl-greeting", "1.0.0", "1.1.0")

    assert comparison.version_a.metrics.test_count == 0
    assert comparison.version_a.metrics.success_rate == 0
    assert comparison.metric_deltas.mean_score_delta == 0


def test_metric_deltas_come_from_stored_results(repository: InMemoryPromptRepository) -> None:
    repository.save_result(make_result("c1", version="1.0.0", score=0.5, latency_ms=200))
    repository.save_result(make_result("c2", version="1.0.0", success=False, score=0.0))
    repository.save_result(make_result("c1", version="1.1.0", score=0.9, latency_ms=150))
    service = VersionComparisonService(repository)

    comparison = service.compare_versions("tpl-greeting", "1.0.0", "1.1.0")
    metrics = service.version_metrics("tpl-greeting", "1.0.0")

    assert metrics.test_count == 2
    assert metrics.success_count == 1
    assert metrics.avg_score == pytest.approx(0.25)
    assert comparison.metric_deltas.mean_score_delta == pytest.approx(0.65)
    assert comparison.metric_deltas.success_rate_delta == pytest.approx(0.5)
    assert comparison.metric_deltas.total_token_delta == -10


def test_compare_versions_validates_input(repository: InMemoryPromptRepository) -> None:
    service = VersionComparisonService(repository)

    with pytest.raises(InvalidInputError):
        service.compare_versions("tpl-greeting", "1.0", "1.1.0")
    with pytest.raises(NotFoundError):
        service.compare_versions("missing", "1.0.0", "1.1.0")
    with pytest.raises(NotFoundError):
        service.compare_versions("tpl-greeting", "1.0.0", "3.0.0")
    with pytest.raises(NotFoundError):
        service.version_metrics("tpl-greeting", "3.0.0")


def test_compare_templates_reuses_latest_existing_results(
    repository: InMemoryPromptRepository,
) -> None:
    _seed_second_template(repository)
    old = datetime(2024, 1, 1, tzinfo=UTC)
    for case_id in ("c1", "c2", "c3"):
        env = {"metadata": {"environment": "development"}}
        repository.save_result(
            make_result(case_id, score=0.1, created_at=old, **env)
        )
        repository.save_result(make_result(case_id, score=0.5, **env))
        repository.save_result(
            make_result(case_id, template_id="tpl-formal", version="2.0.0", score=0.9, **env)
        )
    runner = FakeRunner()
    orchestrator = ExecutionOrchestrator(repository, runner)
    service = VersionComparisonService(repository, orchestrator)

    report = service.compare_templates("tpl-greeting", "tpl-formal")

    assert runner.calls == []
    assert report.case_count == 3
    assert report.better_count == 3
    assert report.aggregates.mean_score_delta == pytest.approx(0.4)
    assert report.baseline.label == "Greeting"
    assert report.candidate.version == "2.0.0"
    orchestrator.shutdown()


def test_compare_templates_runs_both_sides_when_results_are_missing(
    repository: InMemoryPromptRepository,
) -> None:
    _seed_second_template(repository)

    def responder(template, _variables, _assertions):
        score = 0.9 if template.startswith("Greet") else 0.6
        return passing_result(score=score)

    runner = FakeRunner(responder)
    orchestrator = ExecutionOrchestrator(repository, runner)
    service = VersionComparisonService(repository, orchestrator, run_timeout_s=5)

    report = service.compare_templates("tpl-greeting", "tpl-formal", test_case_ids=["c2", "c1"])

    assert len(runner.calls) == 4
    assert [row.test_case_id for row in report.cases] == ["c2", "c1"]
    assert all(row.classification == "better" for row in report.cases)
    assert report.aggregates.mean_score_delta == pytest.approx(0.3)
    orchestrator.shutdown()


def test_compare_templates_gives_up_on_runs_that_do_not_finish(
    repository: InMemoryPromptRepository,
) -> None:
    _seed_second_template(repository)
    release = threading.Event()

    def responder(_template, _variables, _assertions):
        release.wait(5)
        return passing_result()

    orchestrator = ExecutionOrchestrator(repository, FakeRunner(responder))
    service = VersionComparisonService(repository, orchestrator, run_timeout_s=0.2)

    with pytest.raises(AdapterError, match="did not finish"):
        service.compare_templates("tpl-greeting", "tpl-formal", test_case_ids=["c1"])
    release.set()
    orchestrator.shutdown()


def test_compare_templates_prefers_cases_with_shared_vars(
    repository: InMemoryPromptRepository,
) -> None:
    _seed_second_template(repository)
    repository.add_test_case(make_case("f1", "tpl-formal", variables={"name": "c2"}))
    env = {"metadata": {"environment": "staging"}}
    repository.save_result(make_result("c2", **env))
    repository.save_result(make_result("c2", template_id="tpl-formal", version="2.0.0", **env))
    service = VersionComparisonService(repository)

    report = service.compare_templates("tpl-greeting", "tpl-formal", environment="staging")

    assert report.case_count == 1
    assert report.cases[0].test_case_id == "c2"
    assert report.same_count == 1


def test_compare_templates_rejects_bad_requests(repository: InMemoryPromptRepository) -> None:
    _seed_second_template(repository)
    service = VersionComparisonService(repository)

    with pytest.raises(InvalidInputError):
        service.compare_templates("tpl-greeting", "tpl-greeting")
    with pytest.raises(NotFoundError):
        service.compare_templates("tpl-greeting", "missing")
    with pytest.raises(NotFoundError):
        service.compare_templates("tpl-greeting", "tpl-formal", test_case_ids=["ghost"])
    with pytest.raises(NoCasesError):
        service.compare_templates("tpl-formal", "tpl-greeting")
    # No stored results and no orchestrator to produce them.
    with pytest.raises(AdapterError):
        service.compare_templates("tpl-greeting", "tpl-formal")
