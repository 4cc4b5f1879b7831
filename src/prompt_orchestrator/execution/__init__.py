"""Execution orchestration: record store, runner adapters, orchestrator."""

from prompt_orchestrator.execution.orchestrator import ExecutionOrchestrator
from prompt_orchestrator.execution.records import (
    CaseOutcome,
    ExecutionRecord,
    ExecutionRecordStore,
)
from prompt_orchestrator.execution.runner import (
    OpenAIChatTestRunner,
    RunnerResult,
    TestRunnerAdapter,
    build_runner_from_settings,
    render_template,
)

__all__ = [
    "CaseOutcome",
    "ExecutionOrchestrator",
    "ExecutionRecord",
    "ExecutionRecordStore",
    "OpenAIChatTestRunner",
    "RunnerResult",
    "TestRunnerAdapter",
    "build_runner_from_settings",
    "render_template",
]
