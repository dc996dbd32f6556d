"""Validation gate for reconstructed tool calls.

Every call is checked against its declared pydantic model before it
reaches a tool. Rejections go back to the model as error results so
it can correct itself; a tool that keeps failing trips a per-tool
circuit breaker that ends the turn loop.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from .errors import CircuitBreakerTrippedError
from .tool_specs import ToolCatalog

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    valid: bool
    arguments: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class ValidationFailureCounter:
    """Consecutive validation failures per tool name.

    Local to one turn loop invocation. Any success for a tool resets
    that tool's count.
    """
    threshold: int = 3
    counts: dict[str, int] = field(default_factory=dict)

    def record_failure(self, tool_name: str) -> int:
        self.counts[tool_name] = self.counts.get(tool_name, 0) + 1
        return self.counts[tool_name]

    def record_success(self, tool_name: str) -> None:
        self.counts.pop(tool_name, None)

    def is_tripped(self, tool_name: str) -> bool:
        return self.threshold > 0 and self.counts.get(tool_name, 0) >= self.threshold


def _preview(raw: str, limit: int = 80) -> str:
    raw = raw.strip()
    return raw if len(raw) <= limit else raw[:limit] + "..."


def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid"))
    return "Validation failed: " + ", ".join(parts)


class ValidationGate:
    """Checks tool calls against the catalog and tracks failures."""

    def __init__(self, catalog: ToolCatalog, threshold: int = 3) -> None:
        self._catalog = catalog
        self.counter = ValidationFailureCounter(threshold=threshold)

    def check(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None,
        raw_arguments: str = "",
    ) -> ValidationResult:
        """Validate without touching the failure counter.

        *raw_arguments* is the streamed JSON buffer; when it is non-empty
        but did not parse, the call is reported as malformed.
        """
        if arguments is None and raw_arguments.strip():
            return ValidationResult(
                valid=False,
                error=f"Malformed tool input JSON: {_preview(raw_arguments)}",
            )
        if not arguments:
            return ValidationResult(valid=False, error="Empty tool input")
        spec = self._catalog.get(tool_name)
        if spec is None:
            return ValidationResult(valid=False, error=f"Unknown tool: {tool_name}")
        try:
            model = spec.args_model.model_validate(arguments)
        except ValidationError as exc:
            return ValidationResult(valid=False, error=format_validation_error(exc))
        return ValidationResult(
            valid=True,
            arguments=model.model_dump(by_alias=True, exclude_none=True),
        )

    def validate(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None,
        raw_arguments: str = "",
    ) -> ValidationResult:
        """Validate and update the failure counter.

        Raises CircuitBreakerTrippedError once *tool_name* reaches the
        failure threshold.
        """
        result = self.check(tool_name, arguments, raw_arguments)
        if result.valid:
            self.counter.record_success(tool_name)
            return result

        failures = self.counter.record_failure(tool_name)
        logger.info(
            "Validation failed for %s (%d/%d): %s",
            tool_name, failures, self.counter.threshold, result.error,
        )
        if self.counter.is_tripped(tool_name):
            logger.warning(
                "Circuit breaker tripped for %s after %d failures",
                tool_name, failures,
            )
            raise CircuitBreakerTrippedError(tool_name, failures, result.error or "")
        return result
