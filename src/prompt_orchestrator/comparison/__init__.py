"""Diffs, result comparison, version comparison, and test reports."""

from prompt_orchestrator.comparison.comparator import (
    AggregateDeltas,
    CaseComparison,
    ComparisonReport,
    ComparisonSubject,
    classify_case,
    compare_results,
)
from prompt_orchestrator.comparison.diff import DiffCounts, DiffLine, diff_text, summarize_diff
from prompt_orchestrator.comparison.report import TestReport, build_test_report
from prompt_orchestrator.comparison.versions import (
    VersionComparison,
    VersionComparisonService,
    VersionMetrics,
)

__all__ = [
    "AggregateDeltas",
    "CaseComparison",
    "ComparisonReport",
    "ComparisonSubject",
    "DiffCounts",
    "DiffLine",
    "TestReport",
    "VersionComparison",
    "VersionComparisonService",
    "VersionMetrics",
    "build_test_report",
    "classify_case",
    "compare_results",
    "diff_text",
    "summarize_diff",
]
