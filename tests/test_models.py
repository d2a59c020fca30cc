"""Test core data types and their contract checks."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from review_gate.models import (
    Assessment,
    Finding,
    GateCheckResult,
    GateStatus,
    InputSnapshot,
    MalformedResultError,
    Severity,
    TaskResult,
    Verdict,
    WorkflowRecord,
    WorkflowState,
    WorkItem,
)


class TestSeverity:
    def test_total_order(self) -> None:
        assert Severity.CRITICAL > Severity.HIGH > Severity.MEDIUM > Severity.LOW
        assert max([Severity.LOW, Severity.CRITICAL, Severity.MEDIUM]) is Severity.CRITICAL
        assert sorted([Severity.HIGH, Severity.LOW, Severity.CRITICAL]) == [
            Severity.LOW,
            Severity.HIGH,
            Severity.CRITICAL,
        ]

    def test_parse_is_case_insensitive(self) -> None:
        assert Severity.parse("HIGH") is Severity.HIGH
        assert Severity.parse(" medium ") is Severity.MEDIUM
        assert Severity.parse(Severity.LOW) is Severity.LOW

    def test_parse_rejects_unknown(self) -> None:
        with pytest.raises(MalformedResultError):
            Severity.parse("blocker")


def test_verdict_order_blocked_dominates() -> None:
    assert Verdict.BLOCKED > Verdict.NEEDS_CHANGES > Verdict.VERIFIED
    assert max([Verdict.VERIFIED, Verdict.BLOCKED, Verdict.NEEDS_CHANGES]) is Verdict.BLOCKED


class TestTaskResult:
    def test_finding_source_must_match(self) -> None:
        stray = Finding("lint", Severity.LOW, "style", "x")
        with pytest.raises(MalformedResultError):
            TaskResult(source="types", findings=(stray,))

    def test_empty_source_rejected(self) -> None:
        with pytest.raises(MalformedResultError):
            TaskResult(source="  ")

    def test_raw_string_severity_rejected(self) -> None:
        with pytest.raises(MalformedResultError):
            Finding("lint", "high", "style", "x")  # type: ignore[arg-type]

    def test_raw_string_assessment_rejected(self) -> None:
        with pytest.raises(MalformedResultError):
            TaskResult(source="lint", local_assessment="pass")  # type: ignore[arg-type]

    def test_failure_builds_synthetic_critical(self) -> None:
        result = TaskResult.failure("security", "boom")
        assert result.failed
        assert result.error == "boom"
        assert len(result.findings) == 1
        finding = result.findings[0]
        assert finding.severity is Severity.CRITICAL
        assert finding.category == "task-failure"
        assert finding.source == "security"

    def test_failure_timed_out_message(self) -> None:
        result = TaskResult.failure("slow", "no result within 1s", timed_out=True)
        assert "timed out" in result.findings[0].message

    def test_findings_list_is_frozen_to_tuple(self) -> None:
        result = TaskResult("lint", [Finding("lint", Severity.LOW, "style", "x")])  # type: ignore[arg-type]
        assert isinstance(result.findings, tuple)


def test_empty_findings_is_not_failure() -> None:
    result = TaskResult("lint")
    assert result.findings == ()
    assert result.local_assessment is Assessment.PASS
    assert not result.failed


def test_snapshot_metadata_is_read_only() -> None:
    snapshot = InputSnapshot("abc123", metadata={"k": "v"})
    with pytest.raises(TypeError):
        snapshot.metadata["k"] = "w"  # type: ignore[index]
    with pytest.raises(ValueError):
        InputSnapshot("")


def test_gate_check_halts_entry_only_when_blocking_fail() -> None:
    assert GateCheckResult("a", GateStatus.FAIL, True).halts_entry
    assert not GateCheckResult("b", GateStatus.FAIL, False).halts_entry
    assert not GateCheckResult("c", GateStatus.WARN, True).halts_entry
    with pytest.raises(MalformedResultError):
        GateCheckResult("d", GateStatus.PASS, "yes")  # type: ignore[arg-type]


def test_work_item_from_dict_normalizes_dependents() -> None:
    item = WorkItem.from_dict({"id": "W1", "priority": "1", "dependents": ["W3", "W2", "W3"]})
    assert item.priority == 1
    assert item.dependents == ["W2", "W3"]
    assert not item.is_claimed
    with pytest.raises(ValueError):
        WorkItem.from_dict({"priority": 1})
    with pytest.raises(ValueError):
        WorkItem.from_dict({"id": "W2", "priority": "high"})


def test_work_item_rejects_scalar_dependents_and_metadata() -> None:
    with pytest.raises(ValueError, match="dependents must be a list"):
        WorkItem.from_dict({"id": "W1", "dependents": "W22"})
    with pytest.raises(ValueError, match="metadata must be a mapping"):
        WorkItem.from_dict({"id": "W1", "metadata": ["team", "core"]})
    assert WorkItem.from_dict({"id": "W1", "dependents": None, "metadata": None}).dependents == []


def test_workflow_record_round_trip_preserves_unknown_keys() -> None:
    record = WorkflowRecord(
        instance_id="wf-1",
        state=WorkflowState.REVIEWING,
        plan_artifact_ref="plans/a.md",
        last_review_verdict=Verdict.NEEDS_CHANGES,
        extra={"owner": "team-a"},
    )
    data = record.to_dict()
    assert data["state"] == "reviewing"
    assert data["last_review_verdict"] == "needs_changes"
    assert data["owner"] == "team-a"

    restored = WorkflowRecord.from_dict(data)
    assert restored.state is WorkflowState.REVIEWING
    assert restored.last_review_verdict is Verdict.NEEDS_CHANGES
    assert restored.extra == {"owner": "team-a"}


def test_workflow_record_rejects_unknown_state() -> None:
    with pytest.raises(ValueError):
        WorkflowRecord.from_dict({"instance_id": "wf-1", "state": "shipping"})
