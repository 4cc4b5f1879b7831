"""Repository interface, backends, and models."""

from prompt_orchestrator.storage.base import PromptRepository
from prompt_orchestrator.storage.memory import InMemoryPromptRepository
from prompt_orchestrator.storage.models import (
    Assertion,
    AssertionResult,
    PersistedResult,
    ResultFilter,
    Template,
    TestCase,
    Version,
)
from prompt_orchestrator.storage.postgres import PostgresPromptRepository

__all__ = [
    "Assertion",
    "AssertionResult",
    "InMemoryPromptRepository",
    "PersistedResult",
    "PostgresPromptRepository",
    "PromptRepository",
    "ResultFilter",
    "Template",
    "TestCase",
    "Version",
]
