"""Error taxonomy shared by the orchestrator, comparison services, and storage."""

from __future__ import annotations


class PromptOrchestratorError(Exception):
    """Base class for errors raised by this package."""


class InvalidInputError(PromptOrchestratorError):
    """Malformed identifiers or out-of-range inputs, rejected before any state exists."""


class NotFoundError(PromptOrchestratorError):
    """Unknown template, version, test case, or execution id."""


class NoCasesError(PromptOrchestratorError):
    """The resolved test case set is empty."""


class MisalignedResultsError(PromptOrchestratorError):
    """Comparator inputs are not index-aligned with the case list."""


class ConflictError(PromptOrchestratorError):
    """A run for the same template version is already in flight."""


class StoreError(PromptOrchestratorError):
    """Repository read or write failure."""


class AdapterError(PromptOrchestratorError):
    """The test runner backend failed to evaluate a case."""
