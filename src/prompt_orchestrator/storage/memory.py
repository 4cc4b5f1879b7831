"""In-memory repository for tests and local runs."""

from __future__ import annotations

import threading

from prompt_orchestrator.storage.models import (
    PersistedResult,
    ResultFilter,
    Template,
    TestCase,
    Version,
)


class InMemoryPromptRepository:
    """Simple dict-backed implementation of PromptRepository."""

    def __init__(self) -> None:
        self._templates: dict[str, Template] = {}
        self._test_cases: dict[str, TestCase] = {}
        self._results: list[PersistedResult] = []
        # Results are written from worker threads.
        self._lock = threading.Lock()

    def migrate(self) -> None:
        return None

    def add_template(self, template: Template) -> Template:
        with self._lock:
            self._templates[template.template_id] = template.model_copy(deep=True)
        return template

    def add_test_case(self, test_case: TestCase) -> TestCase:
        with self._lock:
            self._test_cases[test_case.test_case_id] = test_case.model_copy(deep=True)
        return test_case

    def remove_template(self, template_id: str) -> None:
        with self._lock:
            self._templates.pop(template_id, None)

    def get_template(self, template_id: str) -> Template | None:
        with self._lock:
            template = self._templates.get(template_id)
            return template.model_copy(deep=True) if template else None

    def get_version(self, template_id: str, version: str) -> Version | None:
        template = self.get_template(template_id)
        if template is None:
            return None
        return template.get_version(version)

    def list_test_cases(
        self,
        template_id: str,
        ids: list[str] | None = None,
        active_only: bool = True,
    ) -> list[TestCase]:
        with self._lock:
            candidates = [
                case.model_copy(deep=True)
                for case in self._test_cases.values()
                if case.template_id == template_id
            ]
        if ids is not None:
            by_id = {case.test_case_id: case for case in candidates}
            # Keep the caller's ordering for explicit selections.
            candidates = [by_id[case_id] for case_id in ids if case_id in by_id]
        if active_only:
            candidates = [case for case in candidates if case.is_active]
        return candidates

    def save_result(self, result: PersistedResult) -> str:
        with self._lock:
            self._results.append(result.model_copy(deep=True))
        return result.result_id

    def query_results(
        self,
        template_id: str,
        version: str,
        result_filter: ResultFilter | None = None,
    ) -> list[PersistedResult]:
        result_filter = result_filter or ResultFilter()
        with self._lock:
            matches = [
                item.model_copy(deep=True)
                for item in self._results
                if item.template_id == template_id and item.version == version
            ]
        if result_filter.test_case_ids is not None:
            wanted = set(result_filter.test_case_ids)
            matches = [item for item in matches if item.test_case_id in wanted]
        if result_filter.execution_id is not None:
            matches = [
                item
                for item in matches
                if item.metadata.get("execution_id") == result_filter.execution_id
            ]
        if result_filter.environment is not None:
            matches = [
                item
                for item in matches
                if item.metadata.get("environment") == result_filter.environment
            ]
        # Stable sort keeps insertion order for equal timestamps, reversed for newest-first.
        matches = list(reversed(matches))
        matches.sort(key=lambda item: item.created_at, reverse=True)
        if result_filter.limit is not None:
            matches = matches[: result_filter.limit]
        return matches
