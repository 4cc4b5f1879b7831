"""Process-local registry of in-flight and recently finished executions.

Each record has exactly one writer (the worker running that execution);
status readers get deep copies taken under the lock, so they never observe a
half-applied update. Records are not durable: a restart loses them, while the
persisted results in the repository survive.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import datetime
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from prompt_orchestrator.errors import NotFoundError
from prompt_orchestrator.storage.models import AssertionResult, utc_now

ExecutionStatus = Literal["queued", "running", "completed", "failed"]
OutcomeStatus = Literal["passed", "failed", "error"]

DEFAULT_RETENTION_S = 60 * 60.0


class CaseOutcome(BaseModel):
    """Result of one test case inside an execution; appended once, never edited."""

    test_case_id: str
    test_case_name: str
    status: OutcomeStatus
    score: float = 0.0
    execution_time_ms: float = 0.0
    output: str | None = None
    error: str | None = None
    assertions: list[AssertionResult] = Field(default_factory=list)


class ExecutionRecord(BaseModel):
    """Live tracking state of one execution."""

    execution_id: str
    template_id: str
    version: str
    status: ExecutionStatus = "queued"
    progress: int = Field(default=0, ge=0, le=100)
    total_cases: int = 0
    outcomes: list[CaseOutcome] = Field(default_factory=list)
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


class ExecutionRecordStore:
    """Thread-safe in-memory map of execution id to ExecutionRecord."""

    def __init__(
        self,
        *,
        retention_s: float = DEFAULT_RETENTION_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.retention_s = retention_s
        self._clock = clock
        self._records: dict[str, ExecutionRecord] = {}
        # execution_id -> clock value after which the record is dropped.
        self._expires_at: dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._purge_locked()
            return len(self._records)

    def create(self, *, template_id: str, version: str, total_cases: int) -> ExecutionRecord:
        record = ExecutionRecord(
            execution_id=str(uuid4()),
            template_id=template_id,
            version=version,
            total_cases=total_cases,
        )
        with self._lock:
            self._purge_locked()
            self._records[record.execution_id] = record
        return record.model_copy(deep=True)

    def get(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock:
            self._purge_locked()
            record = self._records.get(execution_id)
            return record.model_copy(deep=True) if record else None

    def require(self, execution_id: str) -> ExecutionRecord:
        record = self.get(execution_id)
        if record is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return record

    def mark_running(self, execution_id: str) -> ExecutionRecord:
        with self._lock:
            record = self._require_locked(execution_id)
            record.status = "running"
            record.outcomes = []
            record.progress = 0
            record.started_at = utc_now()
            return record.model_copy(deep=True)

    def append_outcome(self, execution_id: str, outcome: CaseOutcome, *, progress: int) -> None:
        with self._lock:
            record = self._require_locked(execution_id)
            record.outcomes.append(outcome.model_copy(deep=True))
            # 100 is reserved for the completed transition.
            record.progress = max(record.progress, min(progress, 99))

    def complete(self, execution_id: str, final_outcome: CaseOutcome | None = None) -> None:
        """Append the last outcome and mark the run completed in one update."""
        with self._lock:
            record = self._require_locked(execution_id)
            if final_outcome is not None:
                record.outcomes.append(final_outcome.model_copy(deep=True))
            record.status = "completed"
            record.progress = 100
            record.completed_at = utc_now()

    def fail(self, execution_id: str, error: str) -> None:
        with self._lock:
            record = self._require_locked(execution_id)
            record.status = "failed"
            record.error = error
            record.completed_at = utc_now()

    def schedule_eviction(self, execution_id: str, delay_s: float | None = None) -> None:
        delay = self.retention_s if delay_s is None else delay_s
        with self._lock:
            if execution_id in self._records:
                self._expires_at[execution_id] = self._clock() + delay

    def evict(self, execution_id: str) -> bool:
        with self._lock:
            self._expires_at.pop(execution_id, None)
            return self._records.pop(execution_id, None) is not None

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked()

    def _require_locked(self, execution_id: str) -> ExecutionRecord:
        record = self._records.get(execution_id)
        if record is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return record

    def _purge_locked(self) -> int:
        now = self._clock()
        expired = [key for key, deadline in self._expires_at.items() if deadline <= now]
        for key in expired:
            self._expires_at.pop(key, None)
            self._records.pop(key, None)
        return len(expired)
