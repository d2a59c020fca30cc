"""Test boundary parsing of raw review-task and probe payloads."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from review_gate.models import Assessment, GateStatus, MalformedResultError, Severity
from review_gate.validation import extract_json_object, parse_gate_check, parse_task_result


def test_parse_task_result_fills_source_and_folds_case() -> None:
    result = parse_task_result(
        {
            "assessment": "NEEDS_CHANGES",
            "findings": [
                {"severity": "Medium", "category": "Tests", "summary": "missing test for edge case"},
            ],
        },
        expected_source="coverage",
    )
    assert result.source == "coverage"
    assert result.local_assessment is Assessment.NEEDS_CHANGES
    finding = result.findings[0]
    assert finding.source == "coverage"
    assert finding.severity is Severity.MEDIUM
    assert finding.category == "tests"
    assert finding.message == "missing test for edge case"


def test_parse_task_result_rejects_unknown_severity() -> None:
    with pytest.raises(MalformedResultError, match="severity"):
        parse_task_result(
            {
                "source": "lint",
                "local_assessment": "pass",
                "findings": [{"severity": "blocker", "message": "x"}],
            }
        )


def test_parse_task_result_requires_assessment() -> None:
    with pytest.raises(MalformedResultError):
        parse_task_result({"source": "lint", "findings": []})


def test_parse_task_result_rejects_source_mismatch() -> None:
    with pytest.raises(MalformedResultError, match="does not match"):
        parse_task_result({"source": "other", "local_assessment": "pass"}, expected_source="lint")


def test_parse_task_result_rejects_foreign_finding_source() -> None:
    with pytest.raises(MalformedResultError):
        parse_task_result(
            {
                "source": "lint",
                "local_assessment": "pass",
                "findings": [{"source": "types", "severity": "low", "message": "x"}],
            }
        )


def test_parse_task_result_requires_object() -> None:
    with pytest.raises(MalformedResultError):
        parse_task_result(["not", "a", "dict"])


def test_parse_gate_check() -> None:
    check = parse_gate_check({"name": "disk", "status": "WARN", "blocking": False, "detail": "80% full"})
    assert check.status is GateStatus.WARN
    assert check.blocking is False
    with pytest.raises(MalformedResultError):
        parse_gate_check({"name": "disk", "status": "maybe"})


class TestExtractJsonObject:
    def test_plain(self) -> None:
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_fenced(self) -> None:
        text = 'Here you go:\n```json\n{"source": "lint"}\n```\nthanks'
        assert extract_json_object(text) == {"source": "lint"}

    def test_surrounding_chatter(self) -> None:
        assert extract_json_object('result: {"a": {"b": 2}} done') == {"a": {"b": 2}}

    def test_empty_and_garbage(self) -> None:
        with pytest.raises(MalformedResultError):
            extract_json_object("")
        with pytest.raises(MalformedResultError):
            extract_json_object("no json here")
        with pytest.raises(MalformedResultError):
            extract_json_object("[1, 2, 3]")
