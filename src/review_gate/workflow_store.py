"""Durable storage for workflow records, review artifacts and the event log."""

from __future__ import annotations

import json
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from loguru import logger

from .constants import EVENTS_FILE, REVIEWS_DIR, WORKFLOWS_DIR
from .io_utils import FileLock, _append_event, _atomic_write_yaml, _load_yaml_with_error, _read_events
from .models import WorkflowRecord


class WorkflowStoreError(RuntimeError):
    """A persisted workflow record is missing or unreadable."""


class WorkflowRecordStore:
    """One YAML file per workflow instance under ``<state_dir>/workflows/``."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.workflows_dir = state_dir / WORKFLOWS_DIR
        self.reviews_dir = state_dir / REVIEWS_DIR
        self.events_path = state_dir / EVENTS_FILE

    def _record_path(self, instance_id: str) -> Path:
        if not instance_id or "/" in instance_id or "\\" in instance_id or instance_id.startswith("."):
            raise WorkflowStoreError(f"Invalid workflow instance id {instance_id!r}")
        return self.workflows_dir / f"{instance_id}.yaml"

    @contextmanager
    def lock(self, instance_id: str) -> Iterator[None]:
        """Hold the instance's exclusive lock around a read-modify-write."""
        record_path = self._record_path(instance_id)
        with FileLock(record_path.with_suffix(".lock")):
            yield

    def exists(self, instance_id: str) -> bool:
        return self._record_path(instance_id).exists()

    def load(self, instance_id: str) -> WorkflowRecord:
        """Load a record.

        Raises:
            WorkflowStoreError: If the record is missing or corrupt.
        """
        path = self._record_path(instance_id)
        if not path.exists():
            raise WorkflowStoreError(f"Unknown workflow instance {instance_id}")
        data, err = _load_yaml_with_error(path, {})
        if err:
            raise WorkflowStoreError(f"Unable to read workflow {instance_id}: {err}")
        try:
            return WorkflowRecord.from_dict(data)
        except ValueError as exc:
            raise WorkflowStoreError(f"Workflow {instance_id} is invalid: {exc}") from None

    def save(self, record: WorkflowRecord) -> None:
        _atomic_write_yaml(self._record_path(record.instance_id), record.to_dict())

    def list_records(self) -> list[WorkflowRecord]:
        """Return every readable record, oldest first. Unreadable files are logged and skipped."""
        if not self.workflows_dir.exists():
            return []
        records: list[WorkflowRecord] = []
        for path in sorted(self.workflows_dir.glob("*.yaml")):
            try:
                records.append(self.load(path.stem))
            except WorkflowStoreError as exc:
                logger.warning("Skipping workflow record {}: {}", path.name, exc)
        records.sort(key=lambda r: (r.created_at, r.instance_id))
        return records

    def latest(self) -> Optional[WorkflowRecord]:
        """Most recently updated live record, if any."""
        live = [r for r in self.list_records() if not r.is_terminal]
        if not live:
            return None
        return max(live, key=lambda r: r.updated_at)

    def write_review_artifact(self, instance_id: str, round_number: int, payload: dict[str, Any]) -> Path:
        path = self.reviews_dir / instance_id / f"round-{round_number:03d}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2, default=str) + "\n", encoding="utf-8")
        return path

    def append_event(self, event: dict[str, Any]) -> None:
        _append_event(self.events_path, event)

    def read_events(self, instance_id: Optional[str] = None, limit: int = 100) -> list[dict[str, Any]]:
        events = _read_events(self.events_path, limit=limit if instance_id is None else max(limit * 10, limit))
        if instance_id is not None:
            events = [e for e in events if e.get("instance_id") == instance_id][-limit:]
        return events
