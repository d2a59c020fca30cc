"""Test the worst-wins verdict reduction and findings grouping."""

from __future__ import annotations

import itertools
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from review_gate.aggregator import aggregate, bucket_for, compute_verdict, group_findings
from review_gate.models import (
    Assessment,
    Finding,
    MalformedResultError,
    Severity,
    TaskResult,
    Verdict,
)


def _result(source: str, *severities: Severity, assessment: Assessment = Assessment.PASS,
            category: str = "style") -> TaskResult:
    findings = tuple(Finding(source, sev, category, f"{sev.value} issue") for sev in severities)
    return TaskResult(source=source, findings=findings, local_assessment=assessment)


@pytest.mark.parametrize(
    ("results", "expected"),
    [
        ([_result("a"), _result("b")], Verdict.VERIFIED),
        ([_result("a", Severity.LOW), _result("b", Severity.LOW)], Verdict.VERIFIED),
        ([_result("a", Severity.LOW), _result("b", Severity.MEDIUM)], Verdict.NEEDS_CHANGES),
        ([_result("a", Severity.MEDIUM), _result("b", Severity.HIGH)], Verdict.BLOCKED),
        ([_result("a", Severity.CRITICAL)], Verdict.BLOCKED),
    ],
)
def test_reduction_table(results: list[TaskResult], expected: Verdict) -> None:
    assert compute_verdict(results) is expected


def test_fail_assessment_blocks_even_without_findings() -> None:
    results = [_result("a"), _result("b", assessment=Assessment.FAIL)]
    assert compute_verdict(results) is Verdict.BLOCKED


def test_fail_assessment_dominates_low_findings() -> None:
    results = [_result("a", Severity.LOW, assessment=Assessment.FAIL)]
    assert compute_verdict(results) is Verdict.BLOCKED


def test_needs_changes_assessment_alone_does_not_block() -> None:
    results = [_result("a", assessment=Assessment.NEEDS_CHANGES)]
    assert compute_verdict(results) is Verdict.VERIFIED


def test_single_medium_is_needs_changes() -> None:
    assert compute_verdict([_result("a", Severity.MEDIUM), _result("b")]) is Verdict.NEEDS_CHANGES


def test_verdict_is_order_independent() -> None:
    results = [
        _result("a", Severity.LOW),
        _result("b", Severity.MEDIUM),
        _result("c", assessment=Assessment.NEEDS_CHANGES),
        _result("d", Severity.LOW, Severity.MEDIUM),
    ]
    verdicts = {compute_verdict(list(p)) for p in itertools.permutations(results)}
    assert verdicts == {Verdict.NEEDS_CHANGES}


def test_aggregate_contributing_lists_every_blocker() -> None:
    results = [
        _result("lint", Severity.LOW),
        _result("security", Severity.HIGH, Severity.CRITICAL, category="security"),
        _result("tests", Severity.MEDIUM, category="tests"),
        TaskResult.failure("types", "crashed"),
    ]
    report = aggregate(results)
    assert report.verdict is Verdict.BLOCKED
    assert report.blocked
    assert report.max_severity is Severity.CRITICAL
    assert report.failed_sources == ("types",)
    assert [f.source for f in report.contributing] == ["security", "security", "types"]
    issues = report.blocking_issues()
    assert len(issues) == 3
    assert any("types" in line for line in issues)


def test_aggregate_lists_fail_task_without_findings() -> None:
    report = aggregate([_result("a", assessment=Assessment.FAIL)])
    assert report.contributing == ()
    assert report.blocking_issues() == ["FAIL [a] task assessed the change as failing"]


def test_aggregate_keeps_roster_order_and_counts() -> None:
    results = [_result("b", Severity.MEDIUM), _result("a", Severity.LOW, Severity.LOW)]
    report = aggregate(results)
    assert report.sources == ("b", "a")
    assert [f.source for f in report.findings] == ["b", "a", "a"]
    assert report.severity_counts == {"critical": 0, "high": 0, "medium": 1, "low": 2}
    assert [f.severity for f in report.contributing] == [Severity.MEDIUM]


def test_aggregate_empty_roster_is_verified() -> None:
    report = aggregate([])
    assert report.verdict is Verdict.VERIFIED
    assert report.max_severity is None


def test_with_advisory_never_changes_verdict() -> None:
    report = aggregate([_result("a")])
    advisory = _result("simplify", Severity.CRITICAL, category="simplification")
    updated = report.with_advisory(advisory)
    assert updated.verdict is Verdict.VERIFIED
    assert updated.advisory_source == "simplify"
    payload = updated.to_dict()
    assert payload["verdict"] == "verified"
    assert payload["advisory"][0]["advisory"] is True
    assert report.advisory == ()


class TestMalformedInput:
    def test_non_task_result_rejected(self) -> None:
        with pytest.raises(MalformedResultError):
            aggregate([_result("a"), {"source": "b"}])  # type: ignore[list-item]

    def test_duplicate_source_rejected(self) -> None:
        with pytest.raises(MalformedResultError, match="Duplicate"):
            compute_verdict([_result("a"), _result("a", Severity.LOW)])


def test_buckets() -> None:
    assert bucket_for("task-failure") == "correctness"
    assert bucket_for("Security") == "security"
    assert bucket_for("docs") == "documentation"
    assert bucket_for("whatever") == "other"

    findings = [
        Finding("a", Severity.LOW, "lint", "1"),
        Finding("a", Severity.LOW, "zzz", "2"),
        Finding("a", Severity.LOW, "bug", "3"),
    ]
    grouped = group_findings(findings)
    assert list(grouped) == ["correctness", "style", "other"]
    assert grouped["style"][0].message == "1"
