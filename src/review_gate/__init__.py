"""Provide the public `review_gate` package exports."""

from __future__ import annotations

from .aggregator import AggregateReport, aggregate, compute_verdict
from .dispatcher import DispatchCancelled, ReviewDispatcher
from .fsm import AdmissionDenied, InvalidTransition, reduce_workflow
from .gate import GateReport, PrerequisiteGate
from .models import (
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
from .review_tasks import CommandReviewTask, FunctionReviewTask, ReviewTask
from .selection import WorkSelectionCoordinator, rank_work_items
from .workflow import ReviewOutcome, WorkflowService

__all__ = [
    "AdmissionDenied",
    "AggregateReport",
    "Assessment",
    "CommandReviewTask",
    "DispatchCancelled",
    "Finding",
    "FunctionReviewTask",
    "GateCheckResult",
    "GateReport",
    "GateStatus",
    "InputSnapshot",
    "InvalidTransition",
    "MalformedResultError",
    "PrerequisiteGate",
    "ReviewDispatcher",
    "ReviewOutcome",
    "ReviewTask",
    "Severity",
    "TaskResult",
    "Verdict",
    "WorkItem",
    "WorkSelectionCoordinator",
    "WorkflowRecord",
    "WorkflowService",
    "WorkflowState",
    "aggregate",
    "compute_verdict",
    "rank_work_items",
    "reduce_workflow",
]
