"""Test runner adapters: render a template, call the model, grade assertions.

Beginner terms used in this file:
- Adapter: boundary object the orchestrator calls once per test case.
- Assertion grading: turning one assertion plus the model output into a
  pass/fail flag and a 0..1 score.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Sequence
from typing import Any, Protocol
from urllib import error, request

from pydantic import BaseModel, Field

from prompt_orchestrator.config.settings import Settings
from prompt_orchestrator.errors import AdapterError
from prompt_orchestrator.storage.models import Assertion, AssertionResult

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.-]*)\s*\}\}")


class RunnerResult(BaseModel):
    """What the evaluation backend reports for one rendered test case."""

    success: bool
    score: float = 0.0
    latency_ms: float = 0.0
    tokens_used: int = 0
    cost: float = 0.0
    output: str = ""
    assertion_results: list[AssertionResult] = Field(default_factory=list)
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TestRunnerAdapter(Protocol):
    """Interface to the external evaluation backend. May raise instead of returning."""

    def run(
        self,
        template: str,
        variables: dict[str, Any],
        assertions: Sequence[Assertion],
    ) -> RunnerResult: ...


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Substitute {{name}} placeholders; unknown names are left untouched."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        value = variables[name]
        if isinstance(value, str):
            return value
        return json.dumps(value)

    return PLACEHOLDER_PATTERN.sub(_replace, template)


def grade_assertion(
    assertion: Assertion,
    *,
    output: str,
    latency_ms: float,
    cost: float,
) -> AssertionResult:
    kind = assertion.type.lower()
    expected = assertion.value
    text = "" if expected is None else str(expected)

    if kind == "equals":
        passed = output.strip() == text.strip()
        reason = f"Output {'equals' if passed else 'differs from'} expected value"
        return _graded(assertion, passed, output, reason)
    if kind == "contains":
        passed = text in output
        reason = f"Output {'contains' if passed else 'does not contain'} {text!r}"
        return _graded(assertion, passed, output, reason)
    if kind == "icontains":
        passed = text.lower() in output.lower()
        reason = (
            f"Output {'contains' if passed else 'does not contain'} {text!r} "
            "(case-insensitive)"
        )
        return _graded(assertion, passed, output, reason)
    if kind == "not-contains":
        passed = text not in output
        reason = f"Output {'does not contain' if passed else 'contains'} {text!r}"
        return _graded(assertion, passed, output, reason)
    if kind == "starts-with":
        passed = output.startswith(text)
        reason = f"Output {'starts' if passed else 'does not start'} with {text!r}"
        return _graded(assertion, passed, output, reason)
    if kind == "ends-with":
        passed = output.rstrip().endswith(text)
        reason = f"Output {'ends' if passed else 'does not end'} with {text!r}"
        return _graded(assertion, passed, output, reason)
    if kind == "regex":
        try:
            passed = re.search(text, output) is not None
        except re.error as exc:
            return _graded(assertion, False, output, f"Invalid regex {text!r}: {exc}")
        reason = f"Pattern {text!r} {'matched' if passed else 'did not match'}"
        return _graded(assertion, passed, output, reason)
    if kind == "is-json":
        try:
            json.loads(output)
        except ValueError:
            return _graded(assertion, False, output, "Output is not valid JSON")
        return _graded(assertion, True, output, "Output is valid JSON")
    if kind == "latency":
        limit = assertion.threshold if assertion.threshold is not None else _as_float(expected)
        if limit is None:
            return _graded(assertion, False, latency_ms, "Latency assertion needs a threshold")
        passed = latency_ms <= limit
        reason = f"Latency {latency_ms:.0f}ms vs limit {limit:.0f}ms"
        return _graded(assertion, passed, latency_ms, reason)
    if kind == "cost":
        limit = assertion.threshold if assertion.threshold is not None else _as_float(expected)
        if limit is None:
            return _graded(assertion, False, cost, "Cost assertion needs a threshold")
        passed = cost <= limit
        return _graded(assertion, passed, cost, f"Cost {cost:.6f} vs limit {limit:.6f}")
    return AssertionResult(
        type=assertion.type,
        passed=False,
        score=0.0,
        reason=f"Unsupported assertion type: {assertion.type}",
        expected=expected,
        actual=None,
    )


def grade_assertions(
    assertions: Sequence[Assertion],
    *,
    output: str,
    latency_ms: float,
    cost: float,
) -> tuple[list[AssertionResult], bool, float]:
    """Return (results, success, weighted score). No assertions means success with score 1."""
    results = [
        grade_assertion(item, output=output, latency_ms=latency_ms, cost=cost)
        for item in assertions
    ]
    if not results:
        return results, True, 1.0
    total_weight = sum(item.weight for item in assertions)
    if total_weight <= 0:
        score = sum(item.score for item in results) / len(results)
    else:
        score = (
            sum(result.score * item.weight for result, item in zip(results, assertions))
            / total_weight
        )
    return results, all(item.passed for item in results), score


class OpenAIChatTestRunner:
    """Runs a rendered template through the OpenAI chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 60.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        prompt_cost_per_1k: float = 0.0,
        completion_cost_per_1k: float = 0.0,
    ) -> None:
        if not api_key:
            raise ValueError("OPENAI_API_KEY is missing")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.prompt_cost_per_1k = prompt_cost_per_1k
        self.completion_cost_per_1k = completion_cost_per_1k

    def run(
        self,
        template: str,
        variables: dict[str, Any],
        assertions: Sequence[Assertion],
    ) -> RunnerResult:
        rendered = render_template(template, variables)
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": rendered}],
            "temperature": self.temperature,
        }
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens

        started = time.perf_counter()
        response_json = self._request_with_retry(payload)
        latency_ms = round((time.perf_counter() - started) * 1000.0, 2)

        output = self._extract_content(response_json)
        usage = response_json.get("usage") or {}
        prompt_tokens = int(usage.get("prompt_tokens", 0) or 0)
        completion_tokens = int(usage.get("completion_tokens", 0) or 0)
        total_tokens = int(usage.get("total_tokens", prompt_tokens + completion_tokens) or 0)
        cost = (
            prompt_tokens * self.prompt_cost_per_1k
            + completion_tokens * self.completion_cost_per_1k
        ) / 1000.0

        results, success, score = grade_assertions(
            assertions, output=output, latency_ms=latency_ms, cost=cost
        )
        return RunnerResult(
            success=success,
            score=score,
            latency_ms=latency_ms,
            tokens_used=total_tokens,
            cost=cost,
            output=output,
            assertion_results=results,
            metadata={
                "provider": "openai",
                "model": response_json.get("model", self.model),
                "temperature": self.temperature,
                "token_breakdown": {
                    "prompt": prompt_tokens,
                    "completion": completion_tokens,
                },
            },
        )

    def _request_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except (TimeoutError, ValueError, error.URLError) as exc:
                last_error = exc
                logger.warning(
                    "runner request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        raise AdapterError(f"OpenAI request failed for model {self.model}: {last_error}")

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            url=f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"OpenAI API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc
        return json.loads(body)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise AdapterError("OpenAI response did not contain choices")
        content = choices[0].get("message", {}).get("content", "")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        raise AdapterError("OpenAI response content could not be parsed as text")


def _graded(assertion: Assertion, passed: bool, actual: Any, reason: str) -> AssertionResult:
    return AssertionResult(
        type=assertion.type,
        passed=passed,
        score=1.0 if passed else 0.0,
        reason=reason,
        expected=assertion.value if assertion.threshold is None else assertion.threshold,
        actual=actual,
    )


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def build_runner_from_settings(settings: Settings) -> TestRunnerAdapter | None:
    if settings.llm_provider.lower() != "openai":
        return None

    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None

    return OpenAIChatTestRunner(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        prompt_cost_per_1k=settings.llm_prompt_cost_per_1k,
        completion_cost_per_1k=settings.llm_completion_cost_per_1k,
    )
