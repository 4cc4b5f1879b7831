"""Version-to-version and template-to-template comparison reports.

Beginner terms used in this file:
- Version comparison: structural diff of two versions of one template, plus
  the metric deltas of their persisted results.
- Template comparison: the same test cases run through the primary versions of
  two templates, then compared case by case.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from prompt_orchestrator.comparison.comparator import (
    AggregateDeltas,
    ComparisonReport,
    ComparisonSubject,
    compare_results,
)
from prompt_orchestrator.comparison.diff import DiffCounts, DiffLine, diff_text, summarize_diff
from prompt_orchestrator.errors import (
    AdapterError,
    InvalidInputError,
    MisalignedResultsError,
    NoCasesError,
    NotFoundError,
)
from prompt_orchestrator.execution.orchestrator import ExecutionOrchestrator
from prompt_orchestrator.storage.base import PromptRepository
from prompt_orchestrator.storage.models import (
    PersistedResult,
    ResultFilter,
    Template,
    TestCase,
    Version,
    is_semver,
)

logger = logging.getLogger(__name__)


class VersionMetrics(BaseModel):
    test_count: int = 0
    success_count: int = 0
    success_rate: float = 0.0
    avg_score: float = 0.0
    avg_latency_ms: float = 0.0
    total_cost: float = 0.0
    total_tokens: int = 0


class VersionSummary(BaseModel):
    version: str
    created_at: datetime
    changelog: str = ""
    metrics: VersionMetrics


class SizeChange(BaseModel):
    template: int = 0
    changelog: int = 0


class VersionDiffStats(BaseModel):
    template_changes: DiffCounts
    changelog_changes: DiffCounts
    # Absolute gap between the two creation timestamps.
    time_difference_ms: int = 0
    size_change: SizeChange


class VersionComparison(BaseModel):
    template_id: str
    template_name: str
    version_a: VersionSummary
    version_b: VersionSummary
    template_diff: list[DiffLine] = Field(default_factory=list)
    changelog_diff: list[DiffLine] = Field(default_factory=list)
    stats: VersionDiffStats
    metric_deltas: AggregateDeltas


def metrics_from_results(results: Sequence[PersistedResult]) -> VersionMetrics:
    total = len(results)
    if total == 0:
        return VersionMetrics()
    successes = sum(1 for item in results if item.success)
    return VersionMetrics(
        test_count=total,
        success_count=successes,
        success_rate=successes / total,
        avg_score=sum(item.score for item in results) / total,
        avg_latency_ms=sum(item.latency_ms for item in results) / total,
        total_cost=sum(item.cost for item in results),
        total_tokens=sum(item.tokens_used for item in results),
    )


class VersionComparisonService:
    """Reads templates and results from the repository; runs tests only when asked to."""

    def __init__(
        self,
        repository: PromptRepository,
        orchestrator: ExecutionOrchestrator | None = None,
        *,
        environment: str = "development",
        max_comparison_cases: int = 10,
        run_timeout_s: float | None = None,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.environment = environment
        self.max_comparison_cases = max_comparison_cases
        self.run_timeout_s = run_timeout_s

    def version_metrics(self, template_id: str, version: str) -> VersionMetrics:
        _require_semver(version)
        template = self._require_template(template_id)
        _require_version(template, version)
        return self._metrics(template_id, version)

    def compare_versions(
        self, template_id: str, version_a: str, version_b: str
    ) -> VersionComparison:
        _require_semver(version_a)
        _require_semver(version_b)
        template = self._require_template(template_id)
        first = _require_version(template, version_a)
        second = _require_version(template, version_b)

        template_diff = diff_text(first.template, second.template)
        changelog_diff = diff_text(first.changelog, second.changelog)
        metrics_a = self._metrics(template_id, version_a)
        metrics_b = self._metrics(template_id, version_b)
        stats = VersionDiffStats(
            template_changes=summarize_diff(template_diff),
            changelog_changes=summarize_diff(changelog_diff),
            time_difference_ms=abs(
                round((second.created_at - first.created_at).total_seconds() * 1000)
            ),
            size_change=SizeChange(
                template=len(second.template) - len(first.template),
                changelog=len(second.changelog) - len(first.changelog),
            ),
        )
        logger.info(
            "version_compare event=done template_id=%s version_a=%s version_b=%s "
            "template_changes=%d",
            template_id,
            version_a,
            version_b,
            stats.template_changes.added + stats.template_changes.removed,
        )
        return VersionComparison(
            template_id=template.template_id,
            template_name=template.name,
            version_a=_summary(first, metrics_a),
            version_b=_summary(second, metrics_b),
            template_diff=template_diff,
            changelog_diff=changelog_diff,
            stats=stats,
            metric_deltas=AggregateDeltas(
                mean_score_delta=metrics_b.avg_score - metrics_a.avg_score,
                mean_latency_delta_ms=metrics_b.avg_latency_ms - metrics_a.avg_latency_ms,
                total_cost_delta=metrics_b.total_cost - metrics_a.total_cost,
                total_token_delta=metrics_b.total_tokens - metrics_a.total_tokens,
                success_rate_delta=metrics_b.success_rate - metrics_a.success_rate,
            ),
        )

    def compare_templates(
        self,
        template_a: str,
        template_b: str,
        *,
        test_case_ids: Sequence[str] | None = None,
        use_existing_results: bool = True,
        environment: str | None = None,
    ) -> ComparisonReport:
        """Compare the primary versions of two templates over shared test cases."""
        if not template_a or not template_b:
            raise InvalidInputError("Both template ids are required")
        if template_a == template_b:
            raise InvalidInputError("Cannot compare a template with itself")

        first = self._require_template(template_a)
        second = self._require_template(template_b)
        version_a = first.primary()
        version_b = second.primary()
        cases = self._comparison_cases(template_a, template_b, test_case_ids)
        env = environment or self.environment

        logger.info(
            "template_compare event=start template_a=%s template_b=%s cases=%d "
            "use_existing_results=%s",
            template_a,
            template_b,
            len(cases),
            use_existing_results,
        )

        results_a: list[PersistedResult] | None = None
        results_b: list[PersistedResult] | None = None
        if use_existing_results:
            results_a = self._latest_per_case(template_a, version_a.version, cases, env)
            results_b = self._latest_per_case(template_b, version_b.version, cases, env)
            if results_a is None or results_b is None:
                logger.info(
                    "template_compare event=insufficient_results template_a=%s template_b=%s",
                    template_a,
                    template_b,
                )

        if results_a is None or results_b is None:
            results_a, results_b = self._run_both(
                (template_a, version_a.version), (template_b, version_b.version), cases
            )

        report = compare_results(
            cases,
            results_a,
            results_b,
            baseline=ComparisonSubject(
                template_id=template_a, version=version_a.version, label=first.name
            ),
            candidate=ComparisonSubject(
                template_id=template_b, version=version_b.version, label=second.name
            ),
        )
        logger.info(
            "template_compare event=done template_a=%s template_b=%s cases=%d "
            "mean_score_delta=%.4f",
            template_a,
            template_b,
            report.case_count,
            report.aggregates.mean_score_delta,
        )
        return report

    def _metrics(self, template_id: str, version: str) -> VersionMetrics:
        return metrics_from_results(
            self.repository.query_results(template_id, version, ResultFilter())
        )

    def _require_template(self, template_id: str) -> Template:
        template = self.repository.get_template(template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        return template

    def _comparison_cases(
        self,
        template_a: str,
        template_b: str,
        test_case_ids: Sequence[str] | None,
    ) -> list[TestCase]:
        if test_case_ids:
            requested = list(dict.fromkeys(test_case_ids))
            by_id = {
                case.test_case_id: case
                for template_id in (template_a, template_b)
                for case in self.repository.list_test_cases(template_id, requested)
            }
            missing = [case_id for case_id in requested if case_id not in by_id]
            if missing:
                raise NotFoundError(f"Active test cases not found: {', '.join(missing)}")
            return [by_id[case_id] for case_id in requested]

        cases_a = self.repository.list_test_cases(template_a)[: self.max_comparison_cases]
        cases_b = self.repository.list_test_cases(template_b)[: self.max_comparison_cases]
        vars_b = {_vars_key(case.vars) for case in cases_b}
        shared = [case for case in cases_a if _vars_key(case.vars) in vars_b]
        cases = shared or cases_a
        if not cases:
            raise NoCasesError("No suitable test cases found for comparison")
        return cases

    def _latest_per_case(
        self,
        template_id: str,
        version: str,
        cases: list[TestCase],
        environment: str,
    ) -> list[PersistedResult] | None:
        """Newest stored result per case in case order, or None when any case has none."""
        results = self.repository.query_results(
            template_id,
            version,
            ResultFilter(
                test_case_ids=[case.test_case_id for case in cases],
                environment=environment,
            ),
        )
        latest: dict[str, PersistedResult] = {}
        for item in results:
            latest.setdefault(item.test_case_id, item)
        if any(case.test_case_id not in latest for case in cases):
            return None
        return [latest[case.test_case_id] for case in cases]

    def _run_both(
        self,
        side_a: tuple[str, str],
        side_b: tuple[str, str],
        cases: list[TestCase],
    ) -> tuple[list[PersistedResult], list[PersistedResult]]:
        if self.orchestrator is None:
            raise AdapterError("No test runner is configured to produce missing results")

        execution_ids = [
            self.orchestrator.start_with_cases(template_id, cases, version=version)
            for template_id, version in (side_a, side_b)
        ]
        records = [
            self.orchestrator.wait(execution_id, self.run_timeout_s)
            for execution_id in execution_ids
        ]
        if any(not record.is_terminal for record in records):
            raise AdapterError(f"Test executions did not finish within {self.run_timeout_s}s")
        if any(record.status != "completed" for record in records):
            raise AdapterError("One or both test executions failed")

        aligned: list[list[PersistedResult]] = []
        for (template_id, version), execution_id in zip((side_a, side_b), execution_ids):
            stored = self.repository.query_results(
                template_id, version, ResultFilter(execution_id=execution_id)
            )
            by_case = {item.test_case_id: item for item in stored}
            missing = [case.test_case_id for case in cases if case.test_case_id not in by_case]
            if missing:
                raise MisalignedResultsError(
                    f"Execution {execution_id} has no stored result for: {', '.join(missing)}"
                )
            aligned.append([by_case[case.test_case_id] for case in cases])
        return aligned[0], aligned[1]


def _require_semver(version: str) -> None:
    if not is_semver(version):
        raise InvalidInputError(f"Invalid version format: {version!r}")


def _require_version(template: Template, version: str) -> Version:
    resolved = template.get_version(version)
    if resolved is None:
        raise NotFoundError(f"Version {version} of template {template.template_id} not found")
    return resolved


def _summary(version: Version, metrics: VersionMetrics) -> VersionSummary:
    return VersionSummary(
        version=version.version,
        created_at=version.created_at,
        changelog=version.changelog,
        metrics=metrics,
    )


def _vars_key(variables: dict[str, Any]) -> str:
    return json.dumps(variables, sort_keys=True, default=str)
