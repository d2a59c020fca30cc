"""Drive planning workflow instances: gate, transitions, review rounds, operator signals."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from loguru import logger

from .aggregator import AggregateReport, aggregate
from .config import get_gate_config, get_review_config, load_gate_config
from .constants import STATE_DIR_NAME
from .dispatcher import DispatchCancelled, ReviewDispatcher
from .fsm import (
    Aborted,
    BlockersResolved,
    InvalidTransition,
    OperatorApproved,
    ReviewCompleted,
    RevisionRequested,
    StartRequested,
    WorkflowEvent,
    reduce_workflow,
)
from .gate import GateReport, PrerequisiteGate, build_gate
from .models import InputSnapshot, TaskResult, Verdict, WorkflowRecord, WorkflowState
from .review_tasks import ReviewTask, build_review_task
from .utils import _new_instance_id
from .workflow_store import WorkflowRecordStore, WorkflowStoreError


@dataclass(frozen=True)
class ReviewOutcome:
    """Everything one review round produced."""

    record: WorkflowRecord
    report: AggregateReport
    results: tuple[TaskResult, ...]
    follow_up: Optional[TaskResult] = None
    artifact_path: Optional[Path] = None

    @property
    def verdict(self) -> Verdict:
        return self.report.verdict


class WorkflowService:
    """Persisted workflow instances for one project directory.

    Transitions are serialized per instance with a file lock. Review rounds
    run outside the lock; their results are applied only if the instance is
    still live and in Reviewing once the round completes.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        config: Optional[Mapping[str, Any]] = None,
        gate: Optional[PrerequisiteGate] = None,
        roster: Optional[Sequence[ReviewTask]] = None,
        follow_up: Optional[ReviewTask] = None,
        dispatcher: Optional[ReviewDispatcher] = None,
    ) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.state_dir = self.project_dir / STATE_DIR_NAME

        self.config_errors: list[str] = []
        if config is None:
            loaded, err = load_gate_config(self.project_dir)
            if err:
                self.config_errors.append(err)
            config = loaded
        self.config: dict[str, Any] = dict(config)

        review_cfg, problems = get_review_config(self.config)
        self.config_errors.extend(problems)
        if self.config.get("gate") is not None and not isinstance(self.config["gate"], dict):
            self.config_errors.append("gate: expected a mapping")
        self.review_config = review_cfg

        if roster is not None:
            self.roster: list[ReviewTask] = list(roster)
        else:
            self.roster = [build_review_task(spec, review_cfg.task_timeout_seconds) for spec in review_cfg.roster]
            if not self.roster:
                self.config_errors.append("review.roster: no review tasks configured")
        if follow_up is not None:
            self.follow_up: Optional[ReviewTask] = follow_up
        else:
            self.follow_up = (
                build_review_task(review_cfg.follow_up, review_cfg.task_timeout_seconds)
                if review_cfg.follow_up
                else None
            )

        self.gate = gate if gate is not None else build_gate(get_gate_config(self.config), self.config_errors)
        self.dispatcher = dispatcher or ReviewDispatcher(
            max_workers=review_cfg.max_workers,
            default_timeout_seconds=review_cfg.task_timeout_seconds,
        )
        self.store = WorkflowRecordStore(self.state_dir)

        self._cancel_events: dict[str, threading.Event] = {}
        self._cancel_lock = threading.Lock()

    # -- gate & lifecycle ---------------------------------------------------

    def check_prerequisites(self) -> GateReport:
        return self.gate.evaluate()

    def start(self, instance_id: Optional[str] = None) -> WorkflowRecord:
        """Create an instance and move it into ContextGathering.

        Raises:
            AdmissionDenied: If the gate denies entry. Nothing is persisted.
            WorkflowStoreError: If ``instance_id`` is already taken.
        """
        report = self.gate.evaluate()
        instance_id = instance_id or _new_instance_id()
        with self.store.lock(instance_id):
            if self.store.exists(instance_id):
                raise WorkflowStoreError(f"Workflow instance {instance_id} already exists")
            record = WorkflowRecord(instance_id=instance_id)
            updated = reduce_workflow(record, StartRequested(report.admitted, report.failures))
            if report.warnings:
                updated.extra["gate_warnings"] = [f"{w.name}: {w.detail}" for w in report.warnings]
            self.store.save(updated)
        self._log_transition(record, updated, "StartRequested")
        logger.info("Started workflow {}", instance_id)
        return updated

    def restart(self, instance_id: str) -> WorkflowRecord:
        """Send an Idle instance back through the gate into ContextGathering.

        Partial findings from a failed exploration are kept on the record.

        Raises:
            AdmissionDenied: If the gate denies entry. Nothing is persisted.
            InvalidTransition: If the instance is not Idle or was aborted.
        """
        report = self.gate.evaluate()
        with self.store.lock(instance_id):
            record = self.store.load(instance_id)
            updated = reduce_workflow(record, StartRequested(report.admitted, report.failures))
            updated.extra.pop("gate_warnings", None)
            if report.warnings:
                updated.extra["gate_warnings"] = [f"{w.name}: {w.detail}" for w in report.warnings]
            self.store.save(updated)
        self._log_transition(record, updated, "StartRequested")
        logger.info("Restarted workflow {}", instance_id)
        return updated

    def apply(self, instance_id: str, event: WorkflowEvent) -> WorkflowRecord:
        """Apply one event under the instance lock and persist the result.

        Raises:
            InvalidTransition: If the event is not allowed; nothing is persisted.
            WorkflowStoreError: If the instance does not exist or is unreadable.
        """
        name = type(event).__name__
        with self.store.lock(instance_id):
            record = self.store.load(instance_id)
            try:
                if isinstance(event, StartRequested):
                    raise InvalidTransition(record.state, event, "admission requires the prerequisite gate; use restart")
                updated = reduce_workflow(record, event)
            except InvalidTransition as exc:
                logger.warning("Rejected {} for workflow {}: {}", name, instance_id, exc)
                self.store.append_event(
                    {
                        "type": "transition_rejected",
                        "instance_id": instance_id,
                        "event": name,
                        "state": record.state.value,
                        "reason": str(exc),
                    }
                )
                raise
            self.store.save(updated)
        self._log_transition(record, updated, name)
        return updated

    def _log_transition(self, before: WorkflowRecord, after: WorkflowRecord, event_name: str) -> None:
        logger.info(
            "Workflow {}: {} -> {} ({})",
            after.instance_id,
            before.state.value,
            after.state.value,
            event_name,
        )
        self.store.append_event(
            {
                "type": "transition",
                "instance_id": after.instance_id,
                "event": event_name,
                "from": before.state.value,
                "to": after.state.value,
                "aborted": after.aborted,
            }
        )

    # -- review rounds ------------------------------------------------------

    def _register_cancel(self, instance_id: str) -> threading.Event:
        event = threading.Event()
        with self._cancel_lock:
            self._cancel_events[instance_id] = event
        return event

    def _unregister_cancel(self, instance_id: str, event: threading.Event) -> None:
        with self._cancel_lock:
            if self._cancel_events.get(instance_id) is event:
                del self._cancel_events[instance_id]

    def run_review(
        self,
        instance_id: str,
        snapshot_ref: str,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ReviewOutcome:
        """Run the roster against ``snapshot_ref`` and record the verdict.

        Raises:
            InvalidTransition: If the instance is not in Reviewing.
            DispatchCancelled: If the instance was aborted while the round ran.
        """
        record = self.store.load(instance_id)
        if record.aborted or record.state != WorkflowState.REVIEWING:
            reason = "instance was aborted" if record.aborted else "review requires the reviewing state"
            raise InvalidTransition(record.state, "run_review", reason)

        snapshot = InputSnapshot(
            ref=snapshot_ref,
            project_dir=self.project_dir,
            metadata={
                **dict(metadata or {}),
                "instance_id": instance_id,
                "plan_artifact_ref": record.plan_artifact_ref,
            },
        )
        task_config = dict(self.review_config.task_config)

        cancel = self._register_cancel(instance_id)
        try:
            results = self.dispatcher.dispatch(self.roster, snapshot, config=task_config, cancel_event=cancel)
        finally:
            self._unregister_cancel(instance_id, cancel)

        report = aggregate(results)
        with self.store.lock(instance_id):
            current = self.store.load(instance_id)
            if current.aborted or current.state != WorkflowState.REVIEWING:
                logger.warning(
                    "Discarding review results for workflow {}: instance is {}",
                    instance_id,
                    "aborted" if current.aborted else current.state.value,
                )
                raise DispatchCancelled(f"Workflow {instance_id} changed during review; results discarded")
            updated = reduce_workflow(current, ReviewCompleted(report.verdict, tuple(report.blocking_issues())))
            self.store.save(updated)
        self._log_transition(current, updated, "ReviewCompleted")

        follow_up_result: Optional[TaskResult] = None
        if report.verdict == Verdict.VERIFIED and self.follow_up is not None:
            logger.info("Verdict is verified; running follow-up task {}", self.follow_up.name)
            follow_up_result = self.dispatcher.run_follow_up(self.follow_up, snapshot, config=task_config)
            report = report.with_advisory(follow_up_result)

        artifact = self.store.write_review_artifact(
            instance_id,
            updated.review_rounds,
            {
                "instance_id": instance_id,
                "snapshot_ref": snapshot_ref,
                "plan_artifact_ref": updated.plan_artifact_ref,
                "report": report.to_dict(),
                "results": [r.to_dict() for r in results],
                "follow_up": follow_up_result.to_dict() if follow_up_result else None,
            },
        )
        logger.info("Review round {} for {}: {}", updated.review_rounds, instance_id, report.verdict.value)
        return ReviewOutcome(
            record=updated,
            report=report,
            results=tuple(results),
            follow_up=follow_up_result,
            artifact_path=artifact,
        )

    # -- operator signals ---------------------------------------------------

    def approve(self, instance_id: str, approver: str = "operator") -> WorkflowRecord:
        return self.apply(instance_id, OperatorApproved(approver=approver))

    def request_revision(self, instance_id: str, feedback: str) -> WorkflowRecord:
        if not feedback or not feedback.strip():
            raise ValueError("Revision feedback must not be empty")
        return self.apply(instance_id, RevisionRequested(feedback=feedback.strip()))

    def resolve_blockers(self, instance_id: str, note: str = "") -> WorkflowRecord:
        return self.apply(instance_id, BlockersResolved(note=note))

    def abort(self, instance_id: str, reason: str = "") -> WorkflowRecord:
        """Abort the instance and abandon any review round in flight for it."""
        with self._cancel_lock:
            pending = self._cancel_events.get(instance_id)
        if pending is not None:
            pending.set()
        return self.apply(instance_id, Aborted(reason=reason))

    def status(self, instance_id: Optional[str] = None) -> WorkflowRecord:
        """Load ``instance_id``, or the most recently updated live instance.

        Raises:
            WorkflowStoreError: If there is no such instance.
        """
        if instance_id:
            return self.store.load(instance_id)
        latest = self.store.latest()
        if latest is None:
            raise WorkflowStoreError("No live workflow instances")
        return latest
