"""Pydantic models for templates, test cases, and persisted test results.

Beginner terms used in this file:
- Template: a named prompt with one or more versions.
- Primary version: the version used when a caller does not name one.
- Persisted result: one row per executed test case, written once and never updated.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

# Strict major.minor.patch, no pre-release or build suffix.
SEMVER_PATTERN = re.compile(r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$")


def is_semver(value: str) -> bool:
    return bool(SEMVER_PATTERN.match(value))


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class Version(BaseModel):
    """One immutable revision of a template body."""

    version: str
    template: str
    changelog: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def _check_semver(cls, value: str) -> str:
        if not is_semver(value):
            raise ValueError(f"Version must follow semantic versioning (e.g., 1.0.0): {value!r}")
        return value


class Template(BaseModel):
    """A named, versioned prompt template."""

    template_id: str
    name: str
    versions: list[Version] = Field(default_factory=list)
    primary_version: str

    @model_validator(mode="after")
    def _check_versions(self) -> Template:
        seen: set[str] = set()
        for item in self.versions:
            if item.version in seen:
                raise ValueError(f"Duplicate version {item.version} in template {self.template_id}")
            seen.add(item.version)
        if self.primary_version not in seen:
            raise ValueError(
                f"Primary version {self.primary_version} does not exist in template "
                f"{self.template_id}"
            )
        return self

    def get_version(self, version: str) -> Version | None:
        for item in self.versions:
            if item.version == version:
                return item
        return None

    def primary(self) -> Version:
        primary = self.get_version(self.primary_version)
        if primary is None:  # pragma: no cover - guarded by the validator
            raise ValueError(f"Primary version {self.primary_version} is missing")
        return primary


class Assertion(BaseModel):
    """A single check applied to the runner output."""

    type: str = Field(min_length=1)
    value: Any = None
    threshold: float | None = None
    rubric: str | None = None
    metric: str | None = None
    weight: float = Field(default=1.0, ge=0.0)


class TestCase(BaseModel):
    """Variable bindings plus assertions for one scenario of a template."""

    __test__ = False

    test_case_id: str
    template_id: str
    name: str
    vars: dict[str, Any] = Field(default_factory=dict)
    assertions: list[Assertion] = Field(default_factory=list)
    is_active: bool = True
    tags: list[str] = Field(default_factory=list)


class AssertionResult(BaseModel):
    """Grading outcome of one assertion."""

    type: str
    passed: bool
    score: float = 0.0
    reason: str | None = None
    expected: Any = None
    actual: Any = None


class PersistedResult(BaseModel):
    """Stored outcome of one test case executed against one template version."""

    result_id: str = Field(default_factory=lambda: str(uuid4()))
    template_id: str
    version: str
    test_case_id: str
    success: bool
    score: float = 0.0
    latency_ms: float = 0.0
    tokens_used: int = 0
    cost: float = 0.0
    output: str = ""
    error: str | None = None
    assertions: list[AssertionResult] = Field(default_factory=list)
    # execution_id, variables, environment, timestamp, plus backend extras.
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class ResultFilter(BaseModel):
    """Optional narrowing applied by PromptRepository.query_results."""

    test_case_ids: list[str] | None = None
    execution_id: str | None = None
    environment: str | None = None
    limit: int | None = Field(default=None, ge=1)
