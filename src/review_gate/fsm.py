"""Planning workflow state machine.

``reduce_workflow`` is a pure function from ``(record, event)`` to a new
record. Every state change it makes is checked against ``TRANSITIONS``; any
other combination raises :class:`InvalidTransition` and leaves the input
record untouched.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Union

from .constants import (
    ERROR_TYPE_CONTEXT_UNAVAILABLE,
    ERROR_TYPE_EXPLORATION_FAILED,
    ERROR_TYPE_PHASE_FAILED,
    ERROR_TYPE_REVIEW_BLOCKED,
    ERROR_TYPE_REVISION_REQUESTED,
)
from .models import GateCheckResult, Verdict, WorkflowRecord, WorkflowState
from .utils import _now_iso

S = WorkflowState

TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    S.IDLE: frozenset({S.CONTEXT_GATHERING}),
    S.CONTEXT_GATHERING: frozenset({S.EXPLORING}),
    S.EXPLORING: frozenset({S.DESIGNING, S.IDLE}),
    S.DESIGNING: frozenset({S.REVIEWING}),
    S.REVIEWING: frozenset({S.FINALIZED, S.BLOCKED}),
    S.BLOCKED: frozenset({S.REVIEWING}),
    S.FINALIZED: frozenset(),
}
# Abort is not an edge: it discards the instance, parking it in IDLE with
# ``aborted`` set so no further event is accepted.


class InvalidTransition(ValueError):
    """An event is not permitted in the record's current state."""

    def __init__(self, state: WorkflowState, event: object, reason: str = ""):
        self.state = state
        self.event = event
        name = event if isinstance(event, str) else type(event).__name__
        message = f"{name} is not allowed in state {state.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class AdmissionDenied(InvalidTransition):
    """The prerequisite gate refused entry. Carries every blocking failure."""

    def __init__(self, state: WorkflowState, event: "StartRequested"):
        self.failures = tuple(event.failures)
        names = ", ".join(f.name for f in self.failures) or "unspecified"
        super().__init__(state, event, f"prerequisite gate denied entry ({names})")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StartRequested:
    admitted: bool
    failures: tuple[GateCheckResult, ...] = ()


@dataclass(frozen=True)
class ContextLoaded:
    summary: str = ""


@dataclass(frozen=True)
class ContextUnavailable:
    reason: str
    acknowledged: bool = False


@dataclass(frozen=True)
class ExplorationCompleted:
    findings: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExplorationFailed:
    error: str
    partial_findings: tuple[str, ...] = ()


@dataclass(frozen=True)
class PlanDrafted:
    plan_artifact_ref: str


@dataclass(frozen=True)
class PhaseFailed:
    error: str
    error_type: str = ERROR_TYPE_PHASE_FAILED


@dataclass(frozen=True)
class ReviewCompleted:
    verdict: Verdict
    blocking_issues: tuple[str, ...] = ()


@dataclass(frozen=True)
class BlockersResolved:
    note: str = ""


@dataclass(frozen=True)
class OperatorApproved:
    approver: str = "operator"


@dataclass(frozen=True)
class RevisionRequested:
    feedback: str


@dataclass(frozen=True)
class Aborted:
    reason: str = ""


WorkflowEvent = Union[
    StartRequested,
    ContextLoaded,
    ContextUnavailable,
    ExplorationCompleted,
    ExplorationFailed,
    PlanDrafted,
    PhaseFailed,
    ReviewCompleted,
    BlockersResolved,
    OperatorApproved,
    RevisionRequested,
    Aborted,
]


# ---------------------------------------------------------------------------
# Helpers (operate on the private copy only)
# ---------------------------------------------------------------------------


def _move(record: WorkflowRecord, target: WorkflowState, event: object) -> None:
    source = record.state
    if target not in TRANSITIONS[source]:
        raise InvalidTransition(source, event, f"no edge to {target.value}")
    record.state = target
    record.history.append(
        {"from": source.value, "to": target.value, "event": type(event).__name__, "at": _now_iso()}
    )


def _set_error(record: WorkflowRecord, error_type: str, detail: str) -> None:
    record.last_error_type = error_type
    record.last_error = detail


def _clear_error(record: WorkflowRecord) -> None:
    record.last_error_type = None
    record.last_error = None


def _note(record: WorkflowRecord, event: object) -> None:
    """Record an event that was accepted without a state change."""
    record.history.append(
        {"from": record.state.value, "to": record.state.value, "event": type(event).__name__, "at": _now_iso()}
    )


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


def reduce_workflow(record: WorkflowRecord, event: WorkflowEvent) -> WorkflowRecord:
    """Apply ``event`` to ``record`` and return the resulting record.

    Raises:
        InvalidTransition: If the event is not permitted in the current state.
        AdmissionDenied: If a start is requested while the gate denied entry.
    """
    state = record.state
    if record.aborted:
        raise InvalidTransition(state, event, "instance was aborted")
    if state == S.FINALIZED:
        raise InvalidTransition(state, event, "instance is finalized")

    updated = copy.deepcopy(record)

    if isinstance(event, Aborted):
        updated.aborted = True
        updated.awaiting_approval = False
        _set_error(updated, "aborted", event.reason or "Aborted by operator")
        updated.history.append(
            {"from": state.value, "to": S.IDLE.value, "event": "Aborted", "at": _now_iso()}
        )
        updated.state = S.IDLE

    elif isinstance(event, StartRequested):
        if state != S.IDLE:
            raise InvalidTransition(state, event)
        if not event.admitted:
            raise AdmissionDenied(state, event)
        updated.exploration_findings = []
        updated.degraded_context = False
        _clear_error(updated)
        _move(updated, S.CONTEXT_GATHERING, event)

    elif isinstance(event, ContextLoaded):
        if state != S.CONTEXT_GATHERING:
            raise InvalidTransition(state, event)
        updated.degraded_context = False
        _clear_error(updated)
        _move(updated, S.EXPLORING, event)

    elif isinstance(event, ContextUnavailable):
        if state != S.CONTEXT_GATHERING:
            raise InvalidTransition(state, event)
        _set_error(updated, ERROR_TYPE_CONTEXT_UNAVAILABLE, event.reason)
        if event.acknowledged:
            updated.degraded_context = True
            _move(updated, S.EXPLORING, event)
        else:
            _note(updated, event)

    elif isinstance(event, ExplorationCompleted):
        if state != S.EXPLORING:
            raise InvalidTransition(state, event)
        updated.exploration_findings = list(event.findings)
        updated.partial_findings = []
        _clear_error(updated)
        _move(updated, S.DESIGNING, event)

    elif isinstance(event, ExplorationFailed):
        if state != S.EXPLORING:
            raise InvalidTransition(state, event)
        updated.partial_findings = list(event.partial_findings)
        _set_error(updated, ERROR_TYPE_EXPLORATION_FAILED, event.error)
        _move(updated, S.IDLE, event)

    elif isinstance(event, PlanDrafted):
        if state != S.DESIGNING:
            raise InvalidTransition(state, event)
        if not event.plan_artifact_ref.strip():
            raise InvalidTransition(state, event, "plan artifact reference is empty")
        updated.plan_artifact_ref = event.plan_artifact_ref
        updated.last_review_verdict = None
        updated.awaiting_approval = False
        updated.blocking_issues = []
        _clear_error(updated)
        _move(updated, S.REVIEWING, event)

    elif isinstance(event, PhaseFailed):
        if state not in (S.DESIGNING, S.REVIEWING):
            raise InvalidTransition(state, event)
        _set_error(updated, event.error_type, event.error)
        _note(updated, event)

    elif isinstance(event, ReviewCompleted):
        if state != S.REVIEWING:
            raise InvalidTransition(state, event)
        updated.review_rounds += 1
        updated.last_review_verdict = event.verdict
        updated.blocking_issues = list(event.blocking_issues)
        if event.verdict == Verdict.BLOCKED:
            updated.awaiting_approval = False
            _set_error(updated, ERROR_TYPE_REVIEW_BLOCKED, f"Review blocked by {len(event.blocking_issues)} issue(s)")
            _move(updated, S.BLOCKED, event)
        elif event.verdict == Verdict.VERIFIED:
            updated.awaiting_approval = True
            _clear_error(updated)
            _note(updated, event)
        else:
            updated.awaiting_approval = False
            _clear_error(updated)
            _note(updated, event)

    elif isinstance(event, OperatorApproved):
        if state != S.REVIEWING:
            raise InvalidTransition(state, event)
        if not updated.awaiting_approval or updated.last_review_verdict != Verdict.VERIFIED:
            raise InvalidTransition(state, event, "no verified review awaiting approval")
        updated.awaiting_approval = False
        updated.approved_by = event.approver
        _clear_error(updated)
        _move(updated, S.FINALIZED, event)

    elif isinstance(event, RevisionRequested):
        if state != S.REVIEWING:
            raise InvalidTransition(state, event)
        updated.awaiting_approval = False
        updated.blocking_issues = [*updated.blocking_issues, f"Operator: {event.feedback}"]
        _set_error(updated, ERROR_TYPE_REVISION_REQUESTED, event.feedback)
        _move(updated, S.BLOCKED, event)

    elif isinstance(event, BlockersResolved):
        if state != S.BLOCKED:
            raise InvalidTransition(state, event)
        updated.awaiting_approval = False
        updated.blocking_issues = []
        _clear_error(updated)
        _move(updated, S.REVIEWING, event)

    else:
        raise InvalidTransition(state, event, "unknown event")

    updated.updated_at = _now_iso()
    return updated
