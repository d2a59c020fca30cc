"""Validate raw review-task and gate-probe payloads at the process boundary.

External review tasks hand back JSON. Payloads are checked with pydantic
models first and only then converted into the frozen core dataclasses, so a
malformed payload is rejected with a readable message instead of being
coerced into something that could change the verdict.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models import (
    Assessment,
    Finding,
    GateCheckResult,
    GateStatus,
    MalformedResultError,
    Severity,
    TaskResult,
)


class FindingPayload(BaseModel):
    """One finding as emitted by a review task."""

    model_config = ConfigDict(extra="ignore")

    source: Optional[str] = None
    severity: Severity
    category: str = "general"
    message: str = Field(validation_alias=AliasChoices("message", "summary", "text"))

    @field_validator("severity", mode="before")
    @classmethod
    def _fold_severity(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("category", mode="before")
    @classmethod
    def _strip_category(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class TaskResultPayload(BaseModel):
    """Full output of one review task."""

    model_config = ConfigDict(extra="ignore")

    source: str = Field(min_length=1)
    findings: list[FindingPayload] = Field(default_factory=list)
    local_assessment: Assessment = Field(
        validation_alias=AliasChoices("local_assessment", "assessment"),
    )

    @field_validator("local_assessment", mode="before")
    @classmethod
    def _fold_assessment(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class GateCheckPayload(BaseModel):
    """One prerequisite check result reported by an external probe."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    status: GateStatus
    blocking: bool = True
    detail: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def _fold_status(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


def _summarize_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def parse_task_result(payload: Any, *, expected_source: Optional[str] = None) -> TaskResult:
    """Convert a raw task payload into a :class:`TaskResult`.

    Args:
        payload: Decoded JSON object returned by a review task.
        expected_source: When set, the payload's ``source`` must match it. A
            missing ``source`` is filled from it.

    Returns:
        The validated, immutable result.

    Raises:
        MalformedResultError: If the payload does not satisfy the result contract.
    """
    if not isinstance(payload, dict):
        raise MalformedResultError(f"Task result must be an object, got {type(payload).__name__}")
    data = dict(payload)
    if expected_source and not data.get("source"):
        data["source"] = expected_source
    try:
        parsed = TaskResultPayload.model_validate(data)
    except ValidationError as exc:
        raise MalformedResultError(_summarize_validation_error(exc)) from None

    if expected_source and parsed.source != expected_source:
        raise MalformedResultError(
            f"Task result source {parsed.source!r} does not match task {expected_source!r}"
        )

    findings = []
    for i, item in enumerate(parsed.findings):
        if item.source and item.source != parsed.source:
            raise MalformedResultError(
                f"findings.{i}.source {item.source!r} does not match result source {parsed.source!r}"
            )
        findings.append(
            Finding(
                source=parsed.source,
                severity=item.severity,
                category=item.category,
                message=item.message,
            )
        )
    return TaskResult(
        source=parsed.source,
        findings=tuple(findings),
        local_assessment=parsed.local_assessment,
    )


def parse_gate_check(payload: Any) -> GateCheckResult:
    """Convert a raw probe payload into a :class:`GateCheckResult`.

    Raises:
        MalformedResultError: If the payload does not satisfy the check contract.
    """
    if not isinstance(payload, dict):
        raise MalformedResultError(f"Gate check must be an object, got {type(payload).__name__}")
    try:
        parsed = GateCheckPayload.model_validate(payload)
    except ValidationError as exc:
        raise MalformedResultError(_summarize_validation_error(exc)) from None
    return GateCheckResult(
        name=parsed.name,
        status=parsed.status,
        blocking=parsed.blocking,
        detail=parsed.detail,
    )


_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object from review task output.

    Tolerates markdown fences and text around the outermost ``{...}`` block.

    Raises:
        MalformedResultError: If no JSON object can be recovered.
    """
    candidate = (text or "").strip()
    if not candidate:
        raise MalformedResultError("Review task produced no output")

    m = _JSON_FENCE_RE.search(candidate)
    if m:
        candidate = m.group(1).strip()

    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError:
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start == -1 or end <= start:
            raise MalformedResultError("Review task output is not valid JSON") from None
        try:
            obj = json.loads(candidate[start : end + 1])
        except json.JSONDecodeError:
            raise MalformedResultError("Review task output is not valid JSON") from None

    if not isinstance(obj, dict):
        raise MalformedResultError("Review task output must be a JSON object")
    return obj
