"""Define findings, results, workflow records and the ordered enums they carry."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from .constants import TASK_FAILURE_CATEGORY
from .utils import _now_iso


class MalformedResultError(ValueError):
    """A result or check violates its shape contract and cannot be used."""


# ---------------------------------------------------------------------------
# Ordered enums
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    """Severity of one finding. CRITICAL ranks highest."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise MalformedResultError(
                f"Unknown severity {value!r}; expected one of {[s.value for s in cls]}"
            ) from None

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class Assessment(str, Enum):
    """A review task's own opinion of the input."""

    PASS = "pass"
    NEEDS_CHANGES = "needs_changes"
    FAIL = "fail"


class Verdict(str, Enum):
    """Aggregate decision. BLOCKED dominates NEEDS_CHANGES dominates VERIFIED."""

    VERIFIED = "verified"
    NEEDS_CHANGES = "needs_changes"
    BLOCKED = "blocked"

    @property
    def rank(self) -> int:
        return _VERDICT_RANK[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Verdict):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Verdict):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Verdict):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Verdict):
            return NotImplemented
        return self.rank >= other.rank


_VERDICT_RANK = {
    Verdict.VERIFIED: 0,
    Verdict.NEEDS_CHANGES: 1,
    Verdict.BLOCKED: 2,
}


class GateStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


class WorkflowState(str, Enum):
    """Phase of one planning workflow instance."""

    IDLE = "idle"
    CONTEXT_GATHERING = "context_gathering"
    EXPLORING = "exploring"
    DESIGNING = "designing"
    REVIEWING = "reviewing"
    BLOCKED = "blocked"
    FINALIZED = "finalized"


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


# ---------------------------------------------------------------------------
# Review results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InputSnapshot:
    """Read-only input shared by every review task in one dispatch round."""

    ref: str
    project_dir: Optional[Path] = None
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        if not isinstance(self.ref, str) or not self.ref.strip():
            raise ValueError("InputSnapshot.ref must be a non-empty string")
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class Finding:
    """One reported issue, owned by the TaskResult that produced it."""

    source: str
    severity: Severity
    category: str
    message: str

    def __post_init__(self) -> None:
        if not isinstance(self.source, str) or not self.source.strip():
            raise MalformedResultError("Finding.source must be a non-empty string")
        if not isinstance(self.severity, Severity):
            raise MalformedResultError(f"Finding.severity must be a Severity, got {self.severity!r}")
        if not isinstance(self.category, str):
            raise MalformedResultError("Finding.category must be a string")
        if not isinstance(self.message, str):
            raise MalformedResultError("Finding.message must be a string")

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "severity": self.severity.value,
            "category": self.category,
            "message": self.message,
        }


@dataclass(frozen=True)
class TaskResult:
    """Output of one review task for one dispatch round."""

    source: str
    findings: tuple[Finding, ...] = ()
    local_assessment: Assessment = Assessment.PASS
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def __post_init__(self) -> None:
        if not isinstance(self.source, str) or not self.source.strip():
            raise MalformedResultError("TaskResult.source must be a non-empty string")
        if not isinstance(self.local_assessment, Assessment):
            raise MalformedResultError(
                f"TaskResult.local_assessment must be an Assessment, got {self.local_assessment!r}"
            )
        findings = tuple(self.findings)
        for i, finding in enumerate(findings):
            if not isinstance(finding, Finding):
                raise MalformedResultError(f"{self.source}: findings[{i}] is not a Finding")
            if finding.source != self.source:
                raise MalformedResultError(
                    f"{self.source}: findings[{i}].source is {finding.source!r}"
                )
        object.__setattr__(self, "findings", findings)

    @property
    def failed(self) -> bool:
        return self.local_assessment == Assessment.FAIL

    @classmethod
    def failure(cls, source: str, detail: str, *, timed_out: bool = False) -> "TaskResult":
        """Build the stand-in result for a task that crashed or timed out."""
        prefix = "timed out" if timed_out else "failed"
        message = f"Review task {source} {prefix}: {detail}"
        return cls(
            source=source,
            findings=(
                Finding(
                    source=source,
                    severity=Severity.CRITICAL,
                    category=TASK_FAILURE_CATEGORY,
                    message=message,
                ),
            ),
            local_assessment=Assessment.FAIL,
            error=detail,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "local_assessment": self.local_assessment.value,
            "findings": [f.to_dict() for f in self.findings],
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


# ---------------------------------------------------------------------------
# Gate checks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GateCheckResult:
    """Outcome of one prerequisite probe."""

    name: str
    status: GateStatus
    blocking: bool = True
    detail: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise MalformedResultError("GateCheckResult.name must be a non-empty string")
        if not isinstance(self.status, GateStatus):
            raise MalformedResultError(f"GateCheckResult.status must be a GateStatus, got {self.status!r}")
        if not isinstance(self.blocking, bool):
            raise MalformedResultError("GateCheckResult.blocking must be a bool")

    @property
    def halts_entry(self) -> bool:
        return self.status == GateStatus.FAIL and self.blocking

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "blocking": self.blocking,
            "detail": self.detail,
        }


# ---------------------------------------------------------------------------
# Backlog
# ---------------------------------------------------------------------------


@dataclass
class WorkItem:
    """A unit of backlog work. Lower ``priority`` numbers go first."""

    id: str
    priority: int = 2
    dependents: list[str] = field(default_factory=list)
    claimed_by: Optional[str] = None
    title: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_claimed(self) -> bool:
        return bool(self.claimed_by)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkItem":
        item_id = str(data.get("id") or "").strip()
        if not item_id:
            raise ValueError("Work item is missing an id")
        try:
            priority = int(data.get("priority", 2))
        except (TypeError, ValueError):
            raise ValueError(f"Work item {item_id} has non-integer priority {data.get('priority')!r}") from None
        dependents = data.get("dependents")
        if dependents is None:
            dependents = []
        elif not isinstance(dependents, list):
            raise ValueError(f"Work item {item_id} dependents must be a list, got {type(dependents).__name__}")
        metadata = data.get("metadata")
        if metadata is None:
            metadata = {}
        elif not isinstance(metadata, dict):
            raise ValueError(f"Work item {item_id} metadata must be a mapping, got {type(metadata).__name__}")
        claimed_by = data.get("claimed_by")
        return cls(
            id=item_id,
            priority=priority,
            dependents=sorted({str(d) for d in dependents}),
            claimed_by=str(claimed_by) if claimed_by else None,
            title=str(data.get("title") or ""),
            metadata=dict(metadata),
        )


# ---------------------------------------------------------------------------
# Workflow record
# ---------------------------------------------------------------------------


@dataclass
class WorkflowRecord:
    """Durable state of one planning workflow instance."""

    instance_id: str
    state: WorkflowState = WorkflowState.IDLE
    plan_artifact_ref: Optional[str] = None
    last_review_verdict: Optional[Verdict] = None

    degraded_context: bool = False
    awaiting_approval: bool = False
    aborted: bool = False
    exploration_findings: list[str] = field(default_factory=list)
    partial_findings: list[str] = field(default_factory=list)
    blocking_issues: list[str] = field(default_factory=list)
    last_error: Optional[str] = None
    last_error_type: Optional[str] = None
    review_rounds: int = 0
    approved_by: Optional[str] = None

    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    history: list[dict[str, Any]] = field(default_factory=list)

    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state == WorkflowState.FINALIZED or self.aborted

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        extra = data.pop("extra", {})
        data["state"] = self.state.value
        data["last_review_verdict"] = self.last_review_verdict.value if self.last_review_verdict else None
        data.update(extra)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowRecord":
        """Create a record from its persisted form.

        Unknown keys are preserved in ``extra``.

        Raises:
            ValueError: If the instance id is missing or state/verdict values are unknown.
        """
        extra = dict(data)

        def _pop(key: str, default: Any = None) -> Any:
            return extra.pop(key, default)

        instance_id = str(_pop("instance_id") or "").strip()
        if not instance_id:
            raise ValueError("Workflow record is missing instance_id")
        verdict = _pop("last_review_verdict")
        return cls(
            instance_id=instance_id,
            state=WorkflowState(str(_pop("state", WorkflowState.IDLE.value))),
            plan_artifact_ref=_pop("plan_artifact_ref"),
            last_review_verdict=Verdict(str(verdict)) if verdict else None,
            degraded_context=bool(_pop("degraded_context", False)),
            awaiting_approval=bool(_pop("awaiting_approval", False)),
            aborted=bool(_pop("aborted", False)),
            exploration_findings=_as_str_list(_pop("exploration_findings")),
            partial_findings=_as_str_list(_pop("partial_findings")),
            blocking_issues=_as_str_list(_pop("blocking_issues")),
            last_error=_pop("last_error"),
            last_error_type=_pop("last_error_type"),
            review_rounds=int(_pop("review_rounds", 0) or 0),
            approved_by=_pop("approved_by"),
            created_at=str(_pop("created_at") or _now_iso()),
            updated_at=str(_pop("updated_at") or _now_iso()),
            history=list(_pop("history") or []),
            extra=extra,
        )


def _as_str_list(value: Optional[Iterable[Any]]) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]
