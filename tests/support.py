from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from prompt_orchestrator.execution.records import CaseOutcome, ExecutionRecordStore
from prompt_orchestrator.execution.runner import RunnerResult
from prompt_orchestrator.storage.models import (
    Assertion,
    PersistedResult,
    Template,
    TestCase,
    Version,
)

Responder = Callable[[str, dict[str, Any], list[Assertion]], RunnerResult]


def passing_result(**overrides: Any) -> RunnerResult:
    payload: dict[str, Any] = {
        "success": True,
        "score": 1.0,
        "latency_ms": 120.0,
        "tokens_used": 40,
        "cost": 0.002,
        "output": "ok",
    }
    payload.update(overrides)
    return RunnerResult(**payload)


class FakeRunner:
    """Test double for TestRunnerAdapter; records every call."""

    def __init__(self, responder: Responder | None = None) -> None:
        self.responder = responder or (lambda _template, _variables, _assertions: passing_result())
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def run(
        self,
        template: str,
        variables: dict[str, Any],
        assertions: list[Assertion],
    ) -> RunnerResult:
        with self._lock:
            self.calls.append({"template": template, "variables": dict(variables)})
        return self.responder(template, variables, list(assertions))


class RecordingStore(ExecutionRecordStore):
    """Captures (status, progress, outcome count) after every outcome write."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.snapshots: list[tuple[str, int, int]] = []

    def append_outcome(self, execution_id: str, outcome: CaseOutcome, *, progress: int) -> None:
        super().append_outcome(execution_id, outcome, progress=progress)
        self._snapshot(execution_id)

    def complete(self, execution_id: str, final_outcome: CaseOutcome | None = None) -> None:
        super().complete(execution_id, final_outcome)
        self._snapshot(execution_id)

    def _snapshot(self, execution_id: str) -> None:
        record = self.require(execution_id)
        self.snapshots.append((record.status, record.progress, len(record.outcomes)))


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_template(
    template_id: str = "tpl-greeting",
    *,
    name: str = "Greeting",
    versions: dict[str, str] | None = None,
    primary_version: str = "1.0.0",
) -> Template:
    bodies = versions or {
        "1.0.0": "Say hello to {{name}}.",
        "1.1.0": "Say hello to {{name}}.\nKeep it short.",
    }
    created = datetime(2024, 1, 1, tzinfo=UTC)
    return Template(
        template_id=template_id,
        name=name,
        primary_version=primary_version,
        versions=[
            Version(
                version=version,
                template=body,
                changelog=f"Release {version}",
                created_at=created + timedelta(days=index),
            )
            for index, (version, body) in enumerate(bodies.items())
        ],
    )


def make_case(
    test_case_id: str,
    template_id: str = "tpl-greeting",
    *,
    variables: dict[str, Any] | None = None,
    is_active: bool = True,
) -> TestCase:
    return TestCase(
        test_case_id=test_case_id,
        template_id=template_id,
        name=f"case {test_case_id}",
        vars=variables if variables is not None else {"name": test_case_id},
        assertions=[Assertion(type="contains", value="hello")],
        is_active=is_active,
    )


def make_result(
    test_case_id: str,
    *,
    template_id: str = "tpl-greeting",
    version: str = "1.0.0",
    success: bool = True,
    score: float = 1.0,
    latency_ms: float = 100.0,
    cost: float = 0.01,
    tokens_used: int = 10,
    **extra: Any,
) -> PersistedResult:
    return PersistedResult(
        template_id=template_id,
        version=version,
        test_case_id=test_case_id,
        success=success,
        score=score,
        latency_ms=latency_ms,
        cost=cost,
        tokens_used=tokens_used,
        **extra,
    )

