"""Test durable workflow record storage."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from review_gate.models import Verdict, WorkflowRecord, WorkflowState
from review_gate.workflow_store import WorkflowRecordStore, WorkflowStoreError


def test_save_and_load(tmp_path: Path) -> None:
    store = WorkflowRecordStore(tmp_path / ".review_gate")
    record = WorkflowRecord(
        instance_id="wf-a",
        state=WorkflowState.BLOCKED,
        plan_artifact_ref="plans/a.md",
        last_review_verdict=Verdict.BLOCKED,
        blocking_issues=["HIGH [security/auth] token logged"],
    )
    store.save(record)

    loaded = WorkflowRecordStore(tmp_path / ".review_gate").load("wf-a")
    assert loaded.state is WorkflowState.BLOCKED
    assert loaded.plan_artifact_ref == "plans/a.md"
    assert loaded.last_review_verdict is Verdict.BLOCKED
    assert loaded.blocking_issues == record.blocking_issues


def test_missing_and_corrupt_records(tmp_path: Path) -> None:
    store = WorkflowRecordStore(tmp_path)
    with pytest.raises(WorkflowStoreError, match="Unknown"):
        store.load("wf-none")

    store.workflows_dir.mkdir(parents=True)
    (store.workflows_dir / "wf-bad.yaml").write_text("state: [\n", encoding="utf-8")
    with pytest.raises(WorkflowStoreError, match="Unable to read"):
        store.load("wf-bad")
    assert (store.workflows_dir / "wf-bad.yaml").read_text(encoding="utf-8") == "state: [\n"


def test_invalid_instance_id(tmp_path: Path) -> None:
    with pytest.raises(WorkflowStoreError):
        WorkflowRecordStore(tmp_path).load("../escape")


def test_list_records_skips_unreadable(tmp_path: Path) -> None:
    store = WorkflowRecordStore(tmp_path)
    store.save(WorkflowRecord(instance_id="wf-1", created_at="2026-01-01T00:00:00+00:00"))
    store.save(WorkflowRecord(instance_id="wf-2", created_at="2026-01-02T00:00:00+00:00"))
    (store.workflows_dir / "wf-3.yaml").write_text("- nope\n", encoding="utf-8")
    assert [r.instance_id for r in store.list_records()] == ["wf-1", "wf-2"]


def test_latest_ignores_terminal(tmp_path: Path) -> None:
    store = WorkflowRecordStore(tmp_path)
    store.save(WorkflowRecord(instance_id="wf-live", updated_at="2026-01-01T00:00:00+00:00"))
    store.save(
        WorkflowRecord(
            instance_id="wf-done",
            state=WorkflowState.FINALIZED,
            updated_at="2026-02-01T00:00:00+00:00",
        )
    )
    latest = store.latest()
    assert latest is not None and latest.instance_id == "wf-live"


def test_artifacts_and_events(tmp_path: Path) -> None:
    store = WorkflowRecordStore(tmp_path)
    path = store.write_review_artifact("wf-1", 2, {"verdict": "blocked"})
    assert path.name == "round-002.json"
    assert json.loads(path.read_text(encoding="utf-8")) == {"verdict": "blocked"}

    store.append_event({"type": "transition", "instance_id": "wf-1"})
    store.append_event({"type": "transition", "instance_id": "wf-2"})
    events = store.read_events("wf-1")
    assert len(events) == 1
    assert "timestamp" in events[0]
    assert len(store.read_events()) == 2
