"""FastAPI app entrypoint for prompt-orchestrator."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from prompt_orchestrator.comparison.comparator import ComparisonReport
from prompt_orchestrator.comparison.report import TestReport, build_test_report
from prompt_orchestrator.comparison.versions import (
    VersionComparison,
    VersionComparisonService,
    VersionMetrics,
)
from prompt_orchestrator.config.settings import Settings, get_settings
from prompt_orchestrator.errors import (
    AdapterError,
    ConflictError,
    InvalidInputError,
    MisalignedResultsError,
    NoCasesError,
    NotFoundError,
    PromptOrchestratorError,
    StoreError,
)
from prompt_orchestrator.execution.orchestrator import ExecutionOrchestrator
from prompt_orchestrator.execution.records import ExecutionRecord
from prompt_orchestrator.execution.runner import TestRunnerAdapter, build_runner_from_settings
from prompt_orchestrator.storage.base import PromptRepository
from prompt_orchestrator.storage.models import ResultFilter
from prompt_orchestrator.storage.postgres import PostgresPromptRepository

_STATUS_BY_ERROR: tuple[tuple[type[PromptOrchestratorError], int], ...] = (
    (InvalidInputError, 400),
    (NoCasesError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (MisalignedResultsError, 422),
    (AdapterError, 502),
    (StoreError, 503),
)


class StartExecutionRequest(BaseModel):
    version: str | None = None
    test_case_ids: list[str] | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    adapter_timeout_s: float | None = Field(default=None, gt=0.0)


class CompareTemplatesRequest(BaseModel):
    test_case_ids: list[str] | None = None
    use_existing_results: bool = True
    environment: str | None = None


class CancelExecutionResponse(BaseModel):
    execution_id: str
    cancelled: bool


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: PromptRepository | None,
    runner_override: TestRunnerAdapter | None,
) -> None:
    if not hasattr(app.state, "storage"):
        database_url = settings.resolved_database_url()
        if storage_override is None and not database_url:
            raise RuntimeError(
                "Missing database URL. Set PROMPT_ORCHESTRATOR_DATABASE_URL "
                "or ORCHESTRATOR_DATABASE_URL before starting the app."
            )
        app.state.storage = storage_override or PostgresPromptRepository(database_url)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "orchestrator"):
        runner = runner_override or build_runner_from_settings(settings)
        app.state.orchestrator = (
            ExecutionOrchestrator.from_settings(app.state.storage, runner, settings)
            if runner is not None
            else None
        )

    if not hasattr(app.state, "comparisons"):
        app.state.comparisons = VersionComparisonService(
            app.state.storage,
            app.state.orchestrator,
            environment=settings.environment,
            max_comparison_cases=settings.max_comparison_cases,
            run_timeout_s=settings.comparison_run_timeout_s,
        )


def create_app(
    *,
    storage: PromptRepository | None = None,
    runner: TestRunnerAdapter | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            runner_override=runner,
        )
        yield
        if app.state.orchestrator is not None:
            app.state.orchestrator.shutdown(wait=False)

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            runner_override=runner,
        )

    def _runtime(request: Request) -> Any:
        if not hasattr(request.app.state, "storage"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                storage_override=storage,
                runner_override=runner,
            )
        return request.app.state

    def _get_orchestrator(request: Request) -> ExecutionOrchestrator:
        orchestrator = _runtime(request).orchestrator
        if orchestrator is None:
            raise HTTPException(status_code=503, detail="No test runner configured")
        return orchestrator

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post(
        "/templates/{template_id}/executions",
        response_model=ExecutionRecord,
        status_code=202,
    )
    def start_execution(
        template_id: str, payload: StartExecutionRequest, request: Request
    ) -> ExecutionRecord:
        orchestrator = _get_orchestrator(request)
        try:
            execution_id = orchestrator.start(
                template_id,
                payload.version,
                payload.test_case_ids,
                payload.variables,
                adapter_timeout_s=payload.adapter_timeout_s,
            )
            return orchestrator.status(execution_id)
        except PromptOrchestratorError as exc:
            raise _http_error(exc) from exc

    @app.get("/executions/{execution_id}", response_model=ExecutionRecord)
    def get_execution(execution_id: str, request: Request) -> ExecutionRecord:
        orchestrator = _get_orchestrator(request)
        try:
            return orchestrator.status(execution_id)
        except PromptOrchestratorError as exc:
            raise _http_error(exc) from exc

    @app.post("/executions/{execution_id}/cancel", response_model=CancelExecutionResponse)
    def cancel_execution(execution_id: str, request: Request) -> CancelExecutionResponse:
        orchestrator = _get_orchestrator(request)
        try:
            cancelled = orchestrator.cancel(execution_id)
        except PromptOrchestratorError as exc:
            raise _http_error(exc) from exc
        return CancelExecutionResponse(execution_id=execution_id, cancelled=cancelled)

    @app.get("/executions/{execution_id}/report", response_model=TestReport)
    def get_execution_report(execution_id: str, request: Request) -> TestReport:
        orchestrator = _get_orchestrator(request)
        try:
            record = orchestrator.status(execution_id)
            results = _runtime(request).storage.query_results(
                record.template_id,
                record.version,
                ResultFilter(execution_id=execution_id),
            )
        except PromptOrchestratorError as exc:
            raise _http_error(exc) from exc
        return build_test_report(results)

    @app.get(
        "/templates/{template_id}/versions/{version_a}/compare/{version_b}",
        response_model=VersionComparison,
    )
    def compare_versions(
        template_id: str, version_a: str, version_b: str, request: Request
    ) -> VersionComparison:
        comparisons: VersionComparisonService = _runtime(request).comparisons
        try:
            return comparisons.compare_versions(template_id, version_a, version_b)
        except PromptOrchestratorError as exc:
            raise _http_error(exc) from exc

    @app.get(
        "/templates/{template_id}/versions/{version}/metrics",
        response_model=VersionMetrics,
    )
    def get_version_metrics(template_id: str, version: str, request: Request) -> VersionMetrics:
        comparisons: VersionComparisonService = _runtime(request).comparisons
        try:
            return comparisons.version_metrics(template_id, version)
        except PromptOrchestratorError as exc:
            raise _http_error(exc) from exc

    @app.post("/templates/{template_a}/compare/{template_b}", response_model=ComparisonReport)
    def compare_templates(
        template_a: str,
        template_b: str,
        payload: CompareTemplatesRequest,
        request: Request,
    ) -> ComparisonReport:
        comparisons: VersionComparisonService = _runtime(request).comparisons
        try:
            return comparisons.compare_templates(
                template_a,
                template_b,
                test_case_ids=payload.test_case_ids,
                use_existing_results=payload.use_existing_results,
                environment=payload.environment,
            )
        except PromptOrchestratorError as exc:
            raise _http_error(exc) from exc

    return app


def _http_error(exc: PromptOrchestratorError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


app = create_app()
