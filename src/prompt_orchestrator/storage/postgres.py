"""PostgreSQL-backed repository with automatic table migration.

Beginner terms:
- Migration: creating/updating database tables before normal reads/writes.
- JSONB: PostgreSQL JSON type used for variables, assertions, and metadata.
- Row factory: returns query rows as dict-like objects instead of tuples.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from prompt_orchestrator.errors import StoreError
from prompt_orchestrator.storage.models import (
    AssertionResult,
    PersistedResult,
    ResultFilter,
    Template,
    TestCase,
    Version,
)


class PostgresPromptRepository:
    """Thread-safe PostgreSQL implementation of PromptRepository."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("PROMPT_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        # Lock guards DB operations done through this repository instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS templates (
                    template_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    primary_version TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS template_versions (
                    template_id TEXT NOT NULL REFERENCES templates(template_id) ON DELETE CASCADE,
                    version TEXT NOT NULL,
                    template TEXT NOT NULL,
                    changelog TEXT NOT NULL DEFAULT '',
                    metadata_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (template_id, version)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS test_cases (
                    test_case_id TEXT PRIMARY KEY,
                    template_id TEXT NOT NULL REFERENCES templates(template_id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    vars_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    assertions_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    tags_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_test_cases_template_id
                ON test_cases(template_id)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS test_results (
                    result_id UUID PRIMARY KEY,
                    template_id TEXT NOT NULL,
                    version TEXT NOT NULL,
                    test_case_id TEXT NOT NULL,
                    success BOOLEAN NOT NULL,
                    score DOUBLE PRECISION NOT NULL,
                    latency_ms DOUBLE PRECISION NOT NULL,
                    tokens_used INTEGER NOT NULL,
                    cost DOUBLE PRECISION NOT NULL,
                    output TEXT NOT NULL,
                    error TEXT,
                    assertions_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    metadata_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_test_results_template_version
                ON test_results(template_id, version)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_test_results_created_at
                ON test_results(created_at DESC)
                """)
            conn.commit()

    def get_template(self, template_id: str) -> Template | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM templates WHERE template_id = %s",
                (template_id,),
            ).fetchone()
            if row is None:
                return None
            version_rows = conn.execute(
                """
                SELECT *
                FROM template_versions
                WHERE template_id = %s
                ORDER BY created_at ASC
                """,
                (template_id,),
            ).fetchall()
        return Template(
            template_id=str(row["template_id"]),
            name=row["name"],
            primary_version=row["primary_version"],
            versions=[self._row_to_version(item) for item in version_rows],
        )

    def get_version(self, template_id: str, version: str) -> Version | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM template_versions WHERE template_id = %s AND version = %s",
                (template_id, version),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_version(row)

    def list_test_cases(
        self,
        template_id: str,
        ids: list[str] | None = None,
        active_only: bool = True,
    ) -> list[TestCase]:
        query = "SELECT * FROM test_cases WHERE template_id = %s"
        params: list[Any] = [template_id]
        if ids is not None:
            query += " AND test_case_id = ANY(%s)"
            params.append(list(ids))
        if active_only:
            query += " AND is_active"
        query += " ORDER BY created_at ASC, test_case_id ASC"
        with self._session() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        cases = [self._row_to_test_case(row) for row in rows]
        if ids is not None:
            by_id = {case.test_case_id: case for case in cases}
            cases = [by_id[case_id] for case_id in ids if case_id in by_id]
        return cases

    def save_result(self, result: PersistedResult) -> str:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO test_results (
                    result_id,
                    template_id,
                    version,
                    test_case_id,
                    success,
                    score,
                    latency_ms,
                    tokens_used,
                    cost,
                    output,
                    error,
                    assertions_json,
                    metadata_json,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    result.result_id,
                    result.template_id,
                    result.version,
                    result.test_case_id,
                    result.success,
                    result.score,
                    result.latency_ms,
                    result.tokens_used,
                    result.cost,
                    result.output,
                    result.error,
                    self._json_wrapper(
                        [item.model_dump(mode="json") for item in result.assertions]
                    ),
                    self._json_wrapper(result.model_dump(mode="json")["metadata"]),
                    result.created_at,
                ),
            )
            conn.commit()
        return result.result_id

    def query_results(
        self,
        template_id: str,
        version: str,
        result_filter: ResultFilter | None = None,
    ) -> list[PersistedResult]:
        result_filter = result_filter or ResultFilter()
        query = "SELECT * FROM test_results WHERE template_id = %s AND version = %s"
        params: list[Any] = [template_id, version]
        if result_filter.test_case_ids is not None:
            query += " AND test_case_id = ANY(%s)"
            params.append(list(result_filter.test_case_ids))
        if result_filter.execution_id is not None:
            query += " AND metadata_json->>'execution_id' = %s"
            params.append(result_filter.execution_id)
        if result_filter.environment is not None:
            query += " AND metadata_json->>'environment' = %s"
            params.append(result_filter.environment)
        query += " ORDER BY created_at DESC"
        if result_filter.limit is not None:
            query += " LIMIT %s"
            params.append(result_filter.limit)
        with self._session() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_result(row) for row in rows]

    @contextmanager
    def _session(self) -> Iterator[Any]:
        """Open a locked connection and translate driver errors to StoreError."""
        try:
            with self._lock, self._connect() as conn:
                yield conn
        except self._psycopg.Error as exc:
            raise StoreError(f"PostgreSQL operation failed: {exc}") from exc

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL repository requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json(raw: Any, default: Any) -> Any:
        if raw is None:
            return default
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        """Parse datetime value from database driver output."""
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_version(cls, row: Any) -> Version:
        return Version(
            version=row["version"],
            template=row["template"],
            changelog=row["changelog"] or "",
            created_at=cls._parse_datetime(row["created_at"]),
            metadata=cls._parse_json(row["metadata_json"], {}),
        )

    @classmethod
    def _row_to_test_case(cls, row: Any) -> TestCase:
        return TestCase(
            test_case_id=str(row["test_case_id"]),
            template_id=str(row["template_id"]),
            name=row["name"],
            vars=cls._parse_json(row["vars_json"], {}),
            assertions=cls._parse_json(row["assertions_json"], []),
            is_active=bool(row["is_active"]),
            tags=cls._parse_json(row["tags_json"], []),
        )

    @classmethod
    def _row_to_result(cls, row: Any) -> PersistedResult:
        return PersistedResult(
            result_id=str(row["result_id"]),
            template_id=row["template_id"],
            version=row["version"],
            test_case_id=row["test_case_id"],
            success=bool(row["success"]),
            score=float(row["score"]),
            latency_ms=float(row["latency_ms"]),
            tokens_used=int(row["tokens_used"]),
            cost=float(row["cost"]),
            output=row["output"] or "",
            error=row["error"],
            assertions=[
                AssertionResult.model_validate(item)
                for item in cls._parse_json(row["assertions_json"], [])
            ],
            metadata=cls._parse_json(row["metadata_json"], {}),
            created_at=cls._parse_datetime(row["created_at"]),
        )
