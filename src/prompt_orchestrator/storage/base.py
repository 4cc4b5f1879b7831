"""Repository interface consumed by the orchestrator and comparison services."""

from __future__ import annotations

from typing import Protocol

from prompt_orchestrator.storage.models import (
    PersistedResult,
    ResultFilter,
    Template,
    TestCase,
    Version,
)


class PromptRepository(Protocol):
    """Read templates and test cases, write and query test results.

    Implementations raise StoreError for backend failures. query_results
    returns the newest results first.
    """

    def get_template(self, template_id: str) -> Template | None: ...

    def get_version(self, template_id: str, version: str) -> Version | None: ...

    def list_test_cases(
        self,
        template_id: str,
        ids: list[str] | None = None,
        active_only: bool = True,
    ) -> list[TestCase]: ...

    def save_result(self, result: PersistedResult) -> str: ...

    def query_results(
        self,
        template_id: str,
        version: str,
        result_filter: ResultFilter | None = None,
    ) -> list[PersistedResult]: ...
