"""Drive a test run of one template version from request to persisted results.

Beginner terms used in this file:
- Execution: one asynchronous run of N test cases, tracked by an id.
- Outcome: the per-case entry appended to the execution record.
- Lease: optional guard that allows one in-flight run per template version.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError
from concurrent.futures import wait as wait_for_futures
from dataclasses import dataclass
from typing import Any

from prompt_orchestrator.config.settings import Settings
from prompt_orchestrator.errors import (
    AdapterError,
    ConflictError,
    InvalidInputError,
    NoCasesError,
    NotFoundError,
    StoreError,
)
from prompt_orchestrator.execution.records import (
    CaseOutcome,
    ExecutionRecord,
    ExecutionRecordStore,
)
from prompt_orchestrator.execution.runner import RunnerResult, TestRunnerAdapter
from prompt_orchestrator.storage.base import PromptRepository
from prompt_orchestrator.storage.models import (
    Assertion,
    PersistedResult,
    TestCase,
    Version,
    is_semver,
    utc_now,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Execution cancelled"
EXECUTION_ERROR_MARKER = "test_execution_error"


class _RunCancelled(Exception):
    pass


@dataclass
class _ActiveRun:
    future: Future[None]
    cancel_event: threading.Event


class ExecutionOrchestrator:
    """Starts runs on a bounded worker pool and records their progress."""

    def __init__(
        self,
        repository: PromptRepository,
        runner: TestRunnerAdapter,
        *,
        records: ExecutionRecordStore | None = None,
        environment: str = "development",
        max_workers: int = 4,
        adapter_timeout_s: float | None = None,
        max_cases_per_run: int = 20,
        exclusive_runs: bool = False,
    ) -> None:
        self.repository = repository
        self.runner = runner
        self.records = records if records is not None else ExecutionRecordStore()
        self.environment = environment
        self.adapter_timeout_s = adapter_timeout_s
        self.max_cases_per_run = max_cases_per_run
        self.exclusive_runs = exclusive_runs
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="prompt-execution"
        )
        self._runs: dict[str, _ActiveRun] = {}
        self._leases: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        repository: PromptRepository,
        runner: TestRunnerAdapter,
        settings: Settings,
        *,
        records: ExecutionRecordStore | None = None,
    ) -> ExecutionOrchestrator:
        if records is None:
            records = ExecutionRecordStore(retention_s=settings.record_retention_s)
        return cls(
            repository,
            runner,
            records=records,
            environment=settings.environment,
            max_workers=settings.max_concurrent_executions,
            adapter_timeout_s=settings.adapter_timeout_s,
            max_cases_per_run=settings.max_cases_per_run,
            exclusive_runs=settings.exclusive_runs,
        )

    def start(
        self,
        template_id: str,
        version: str | None = None,
        test_case_ids: Sequence[str] | None = None,
        variables: dict[str, Any] | None = None,
        *,
        adapter_timeout_s: float | None = None,
    ) -> str:
        """Validate the request, queue the run, and return its execution id.

        Every rejection happens before a record is created. Failures that
        occur while the run is in progress land on the record instead.
        """
        resolved = self._resolve_version(template_id, version, adapter_timeout_s)
        cases = self._resolve_cases(template_id, test_case_ids)
        return self._submit(template_id, resolved, cases, variables, adapter_timeout_s)

    def start_with_cases(
        self,
        template_id: str,
        cases: Sequence[TestCase],
        version: str | None = None,
        variables: dict[str, Any] | None = None,
        *,
        adapter_timeout_s: float | None = None,
    ) -> str:
        """Queue a run over cases the caller already resolved, possibly another template's."""
        resolved = self._resolve_version(template_id, version, adapter_timeout_s)
        if not cases:
            raise NoCasesError(f"No test cases given for template {template_id}")
        return self._submit(template_id, resolved, list(cases), variables, adapter_timeout_s)

    def _resolve_version(
        self,
        template_id: str,
        version: str | None,
        adapter_timeout_s: float | None,
    ) -> Version:
        if not template_id or not template_id.strip():
            raise InvalidInputError("template_id must be a non-empty string")
        if version is not None and not is_semver(version):
            raise InvalidInputError(f"Invalid version format: {version!r}")
        if adapter_timeout_s is not None and adapter_timeout_s <= 0:
            raise InvalidInputError("adapter_timeout_s must be positive")

        template = self.repository.get_template(template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        resolved = template.primary() if version is None else template.get_version(version)
        if resolved is None:
            raise NotFoundError(f"Version {version} of template {template_id} not found")
        return resolved

    def _submit(
        self,
        template_id: str,
        resolved: Version,
        cases: list[TestCase],
        variables: dict[str, Any] | None,
        adapter_timeout_s: float | None,
    ) -> str:
        overrides = dict(variables or {})
        timeout_s = adapter_timeout_s if adapter_timeout_s is not None else self.adapter_timeout_s
        lease_key = (template_id, resolved.version)

        with self._lock:
            if self.exclusive_runs and lease_key in self._leases:
                raise ConflictError(
                    f"Template {template_id} version {resolved.version} already has "
                    f"execution {self._leases[lease_key]} in flight"
                )
            record = self.records.create(
                template_id=template_id,
                version=resolved.version,
                total_cases=len(cases),
            )
            execution_id = record.execution_id
            cancel_event = threading.Event()
            if self.exclusive_runs:
                self._leases[lease_key] = execution_id
            try:
                future = self._pool.submit(
                    self._run,
                    execution_id,
                    template_id,
                    resolved.version,
                    cases,
                    overrides,
                    timeout_s,
                    cancel_event,
                )
            except RuntimeError:
                self._leases.pop(lease_key, None)
                self.records.evict(execution_id)
                raise
            self._runs[execution_id] = _ActiveRun(future=future, cancel_event=cancel_event)
        future.add_done_callback(lambda done: self._on_run_done(execution_id, done))

        logger.info(
            "execution event=queued execution_id=%s template_id=%s version=%s total_cases=%d",
            execution_id,
            template_id,
            resolved.version,
            len(cases),
        )
        return execution_id

    def status(self, execution_id: str) -> ExecutionRecord:
        return self.records.require(execution_id)

    def cancel(self, execution_id: str) -> bool:
        """Request cancellation; returns False when the run already finished."""
        record = self.records.require(execution_id)
        if record.is_terminal:
            return False
        with self._lock:
            active = self._runs.get(execution_id)
        if active is None:
            return False
        active.cancel_event.set()
        logger.info("execution event=cancel_requested execution_id=%s", execution_id)
        return True

    def wait(self, execution_id: str, timeout_s: float | None = None) -> ExecutionRecord:
        """Block until the run finishes or the timeout expires, then return its record."""
        with self._lock:
            active = self._runs.get(execution_id)
        if active is not None:
            wait_for_futures([active.future], timeout=timeout_s)
        return self.records.require(execution_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            active_runs = list(self._runs.values())
        if not wait:
            for active in active_runs:
                active.cancel_event.set()
        self._pool.shutdown(wait=wait)

    def _resolve_cases(
        self, template_id: str, test_case_ids: Sequence[str] | None
    ) -> list[TestCase]:
        if test_case_ids:
            requested = list(dict.fromkeys(test_case_ids))
            cases = self.repository.list_test_cases(template_id, requested, active_only=False)
            found = {case.test_case_id for case in cases}
            missing = [case_id for case_id in requested if case_id not in found]
            if missing:
                raise NotFoundError(
                    f"Test cases not found for template {template_id}: {', '.join(missing)}"
                )
        else:
            cases = self.repository.list_test_cases(template_id)[: self.max_cases_per_run]
        if not cases:
            raise NoCasesError(f"No test cases found for template {template_id}")
        return cases

    def _run(
        self,
        execution_id: str,
        template_id: str,
        version: str,
        cases: list[TestCase],
        overrides: dict[str, Any],
        timeout_s: float | None,
        cancel_event: threading.Event,
    ) -> None:
        run_started = time.perf_counter()
        try:
            self._execute(
                execution_id, template_id, version, cases, overrides, timeout_s, cancel_event
            )
        except _RunCancelled:
            logger.info("execution event=cancelled execution_id=%s", execution_id)
            self._fail_record(execution_id, CANCELLED_MESSAGE)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "execution event=failed execution_id=%s template_id=%s version=%s",
                execution_id,
                template_id,
                version,
            )
            self._fail_record(execution_id, str(exc) or exc.__class__.__name__)
        else:
            logger.info(
                "execution event=completed execution_id=%s total_cases=%d duration_ms=%s",
                execution_id,
                len(cases),
                _duration_ms(run_started),
            )
        finally:
            with self._lock:
                if self._leases.get((template_id, version)) == execution_id:
                    self._leases.pop((template_id, version), None)
            self.records.schedule_eviction(execution_id)

    def _execute(
        self,
        execution_id: str,
        template_id: str,
        version: str,
        cases: list[TestCase],
        overrides: dict[str, Any],
        timeout_s: float | None,
        cancel_event: threading.Event,
    ) -> None:
        # The version may have been removed between start() and now.
        resolved = self.repository.get_version(template_id, version)
        if resolved is None:
            raise NotFoundError(f"Version {version} of template {template_id} not found")

        self.records.mark_running(execution_id)
        logger.info(
            "execution event=start execution_id=%s template_id=%s version=%s total_cases=%d",
            execution_id,
            template_id,
            version,
            len(cases),
        )

        total = len(cases)
        for index, case in enumerate(cases):
            if cancel_event.is_set():
                raise _RunCancelled(CANCELLED_MESSAGE)
            outcome = self._run_case(
                execution_id, template_id, resolved, case, overrides, timeout_s
            )
            logger.info(
                "execution event=case_done execution_id=%s test_case_id=%s status=%s "
                "index=%d total=%d",
                execution_id,
                case.test_case_id,
                outcome.status,
                index + 1,
                total,
            )
            if index == total - 1:
                self.records.complete(execution_id, outcome)
            else:
                self.records.append_outcome(
                    execution_id, outcome, progress=_progress(index + 1, total)
                )

    def _run_case(
        self,
        execution_id: str,
        template_id: str,
        version: Version,
        case: TestCase,
        overrides: dict[str, Any],
        timeout_s: float | None,
    ) -> CaseOutcome:
        merged = {**case.vars, **overrides}
        started = time.perf_counter()
        metadata: dict[str, Any] = {
            "execution_id": execution_id,
            "variables": merged,
            "environment": self.environment,
            "timestamp": utc_now().isoformat(),
        }
        try:
            result = self._call_runner(version.template, merged, case.assertions, timeout_s)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or exc.__class__.__name__
            elapsed_ms = _duration_ms(started)
            logger.warning(
                "execution event=case_error execution_id=%s test_case_id=%s error=%s",
                execution_id,
                case.test_case_id,
                message,
            )
            self._save(
                PersistedResult(
                    template_id=template_id,
                    version=version.version,
                    test_case_id=case.test_case_id,
                    success=False,
                    score=0.0,
                    latency_ms=elapsed_ms,
                    error=message,
                    metadata={**metadata, "error": EXECUTION_ERROR_MARKER},
                )
            )
            return CaseOutcome(
                test_case_id=case.test_case_id,
                test_case_name=case.name,
                status="error",
                score=0.0,
                execution_time_ms=elapsed_ms,
                error=message,
            )

        elapsed_ms = _duration_ms(started)
        self._save(_persisted_from_result(template_id, version, case, result, metadata))
        return CaseOutcome(
            test_case_id=case.test_case_id,
            test_case_name=case.name,
            status="passed" if result.success else "failed",
            score=result.score,
            execution_time_ms=elapsed_ms,
            output=result.output,
            error=result.error,
            assertions=result.assertion_results,
        )

    def _call_runner(
        self,
        template: str,
        variables: dict[str, Any],
        assertions: list[Assertion],
        timeout_s: float | None,
    ) -> RunnerResult:
        if timeout_s is None:
            return self.runner.run(template, variables, assertions)

        # A timed-out call keeps running in its thread; the run moves on without it.
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="runner-call")
        try:
            future = pool.submit(self.runner.run, template, variables, assertions)
            try:
                return future.result(timeout=timeout_s)
            except TimeoutError as exc:
                if not future.done():
                    raise AdapterError(
                        f"Runner call timed out after {timeout_s:.2f}s"
                    ) from exc
                raise
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _save(self, result: PersistedResult) -> None:
        try:
            self.repository.save_result(result)
        except StoreError as exc:
            logger.warning(
                "execution event=persist_failed execution_id=%s test_case_id=%s error=%s",
                result.metadata.get("execution_id"),
                result.test_case_id,
                exc,
            )

    def _fail_record(self, execution_id: str, message: str) -> None:
        try:
            self.records.fail(execution_id, message)
        except NotFoundError:
            logger.warning(
                "execution event=record_missing execution_id=%s error=%s", execution_id, message
            )

    def _on_run_done(self, execution_id: str, future: Future[None]) -> None:
        with self._lock:
            self._runs.pop(execution_id, None)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "execution event=worker_crashed execution_id=%s error=%s", execution_id, exc
            )


def _persisted_from_result(
    template_id: str,
    version: Version,
    case: TestCase,
    result: RunnerResult,
    metadata: dict[str, Any],
) -> PersistedResult:
    return PersistedResult(
        template_id=template_id,
        version=version.version,
        test_case_id=case.test_case_id,
        success=result.success,
        score=result.score,
        latency_ms=result.latency_ms,
        tokens_used=result.tokens_used,
        cost=result.cost,
        output=result.output,
        error=result.error,
        assertions=result.assertion_results,
        metadata={**result.metadata, **metadata},
    )


def _progress(done: int, total: int) -> int:
    # Half-up rounding, so 1 of 8 reports 13 rather than 12.
    return int(math.floor(100 * done / total + 0.5))


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
