"""Command-line interface for the review-gate workflow.

Every command is a thin wrapper over :class:`WorkflowService`. Exit codes are
0 for success, 1 for a rejected transition or unverified review, and 2 when
the prerequisite gate or the configuration denies the request.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console

from .backlog import BacklogError, YamlBacklogStore
from .config import get_logging_level, load_gate_config
from .constants import BACKLOG_FILE, STATE_DIR_NAME
from .dispatcher import DispatchCancelled
from .fsm import (
    AdmissionDenied,
    ContextLoaded,
    ContextUnavailable,
    ExplorationCompleted,
    ExplorationFailed,
    InvalidTransition,
    PhaseFailed,
    PlanDrafted,
    WorkflowEvent,
)
from .models import Verdict, WorkflowRecord
from .report import render_gate_report, render_record, render_review_report
from .selection import WorkSelectionCoordinator, rank_work_items
from .workflow import WorkflowService
from .workflow_store import WorkflowStoreError

EXIT_OK = 0
EXIT_REJECTED = 1
EXIT_DENIED = 2


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> - "
            "{message}"
        ),
    )


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _service(args: argparse.Namespace) -> WorkflowService:
    return WorkflowService(_resolve_project_dir(args.project_dir))


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _emit_record(args: argparse.Namespace, record: WorkflowRecord) -> None:
    if getattr(args, "json", False):
        _write_json(record.to_dict())
    else:
        render_record(record, Console())


def _instance_id(service: WorkflowService, args: argparse.Namespace) -> str:
    return args.instance_id or service.status().instance_id


def _apply(args: argparse.Namespace, event: WorkflowEvent) -> int:
    service = _service(args)
    record = service.apply(_instance_id(service, args), event)
    _emit_record(args, record)
    return EXIT_OK


# -- commands ---------------------------------------------------------------


def _doctor(args: argparse.Namespace) -> int:
    report = _service(args).check_prerequisites()
    if args.json:
        _write_json(report.to_dict())
    else:
        render_gate_report(report, Console())
    return EXIT_OK if report.admitted else EXIT_DENIED


def _report_denial(args: argparse.Namespace, exc: AdmissionDenied) -> int:
    if args.json:
        _write_json({"admitted": False, "failures": [f.to_dict() for f in exc.failures]})
    else:
        sys.stderr.write(f"Workflow not started: {len(exc.failures)} blocking check(s) failed\n")
        for failure in exc.failures:
            sys.stderr.write(f"  - {failure.name}: {failure.detail}\n")
    return EXIT_DENIED


def _start(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        record = service.start(args.instance_id)
    except AdmissionDenied as exc:
        return _report_denial(args, exc)
    _emit_record(args, record)
    return EXIT_OK


def _restart(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        record = service.restart(_instance_id(service, args))
    except AdmissionDenied as exc:
        return _report_denial(args, exc)
    _emit_record(args, record)
    return EXIT_OK


def _context(args: argparse.Namespace) -> int:
    if args.unavailable:
        return _apply(args, ContextUnavailable(reason=args.unavailable, acknowledged=args.acknowledge))
    return _apply(args, ContextLoaded(summary=args.summary or ""))


def _explore(args: argparse.Namespace) -> int:
    findings = tuple(args.finding or ())
    if args.failed:
        return _apply(args, ExplorationFailed(error=args.failed, partial_findings=findings))
    return _apply(args, ExplorationCompleted(findings=findings))


def _plan(args: argparse.Namespace) -> int:
    return _apply(args, PlanDrafted(plan_artifact_ref=args.artifact))


def _fail(args: argparse.Namespace) -> int:
    return _apply(args, PhaseFailed(error=args.error))


def _review(args: argparse.Namespace) -> int:
    service = _service(args)
    instance_id = _instance_id(service, args)
    try:
        outcome = service.run_review(instance_id, args.snapshot)
    except ValueError as exc:
        if isinstance(exc, InvalidTransition):
            raise
        sys.stderr.write(f"Cannot run review: {exc}\n")
        return EXIT_DENIED
    if args.json:
        _write_json(
            {
                "record": outcome.record.to_dict(),
                "report": outcome.report.to_dict(),
                "results": [r.to_dict() for r in outcome.results],
                "artifact": str(outcome.artifact_path) if outcome.artifact_path else None,
            }
        )
    else:
        console = Console()
        render_review_report(outcome.report, console)
        render_record(outcome.record, console)
    return EXIT_OK if outcome.verdict == Verdict.VERIFIED else EXIT_REJECTED


def _resolve(args: argparse.Namespace) -> int:
    service = _service(args)
    _emit_record(args, service.resolve_blockers(_instance_id(service, args), note=args.note or ""))
    return EXIT_OK


def _approve(args: argparse.Namespace) -> int:
    service = _service(args)
    _emit_record(args, service.approve(_instance_id(service, args), approver=args.approver))
    return EXIT_OK


def _reject(args: argparse.Namespace) -> int:
    service = _service(args)
    _emit_record(args, service.request_revision(_instance_id(service, args), args.feedback))
    return EXIT_OK


def _abort(args: argparse.Namespace) -> int:
    service = _service(args)
    _emit_record(args, service.abort(_instance_id(service, args), reason=args.reason or ""))
    return EXIT_OK


def _status(args: argparse.Namespace) -> int:
    service = _service(args)
    if args.all:
        records = service.store.list_records()
        if args.json:
            _write_json({"workflows": [r.to_dict() for r in records]})
        else:
            console = Console()
            for record in records:
                render_record(record, console)
        return EXIT_OK
    _emit_record(args, service.status(args.instance_id))
    return EXIT_OK


def _backlog(args: argparse.Namespace) -> YamlBacklogStore:
    if args.backlog:
        return YamlBacklogStore(Path(args.backlog).expanduser().resolve())
    return YamlBacklogStore(_resolve_project_dir(args.project_dir) / STATE_DIR_NAME / BACKLOG_FILE)


def _candidates(args: argparse.Namespace) -> int:
    ranked = rank_work_items(_backlog(args).list_unclaimed())
    if args.limit is not None:
        ranked = ranked[: max(0, args.limit)]
    if args.json:
        _write_json({"candidates": [item.to_dict() for item in ranked]})
        return EXIT_OK
    for i, item in enumerate(ranked, start=1):
        sys.stdout.write(
            f"{i}. {item.id} (priority {item.priority}, unblocks {len(item.dependents)}) {item.title}\n"
        )
    if not ranked:
        sys.stdout.write("No unclaimed work items.\n")
    return EXIT_OK


def _claim(args: argparse.Namespace) -> int:
    coordinator = WorkSelectionCoordinator(_backlog(args), args.holder)
    item = coordinator.claim_next()
    if item is None:
        if args.json:
            _write_json({"claimed": None})
        else:
            sys.stderr.write("Nothing to claim.\n")
        return EXIT_REJECTED
    if args.json:
        _write_json({"claimed": item.to_dict()})
    else:
        sys.stdout.write(f"Claimed {item.id} for {args.holder}\n")
    return EXIT_OK


# -- parser -----------------------------------------------------------------


def _add_instance_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "instance_id",
        nargs="?",
        default=None,
        help="Workflow instance ID (default: most recently updated live instance)",
    )
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Review Gate - gated planning workflow with parallel review",
    )
    parser.add_argument("--project-dir", default=None, help="Project directory (default: current directory)")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level (default: config logging.level or INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    doctor = subparsers.add_parser("doctor", help="Run prerequisite checks without starting anything")
    doctor.add_argument("--json", action="store_true")
    doctor.set_defaults(func=_doctor)

    start = subparsers.add_parser("start", help="Start a new workflow instance")
    start.add_argument("--id", dest="instance_id", default=None, help="Instance ID (default: generated)")
    start.add_argument("--json", action="store_true")
    start.set_defaults(func=_start)

    restart = subparsers.add_parser("restart", help="Re-admit an idle instance through the prerequisite gate")
    _add_instance_args(restart)
    restart.set_defaults(func=_restart)

    context = subparsers.add_parser("context", help="Report the outcome of context gathering")
    _add_instance_args(context)
    context.add_argument("--summary", default=None)
    context.add_argument("--unavailable", metavar="REASON", default=None, help="Context could not be loaded")
    context.add_argument(
        "--acknowledge",
        action="store_true",
        help="Continue with degraded context (with --unavailable)",
    )
    context.set_defaults(func=_context)

    explore = subparsers.add_parser("explore", help="Report the outcome of exploration")
    _add_instance_args(explore)
    explore.add_argument("--finding", action="append", default=[], help="Exploration finding (repeatable)")
    explore.add_argument("--failed", metavar="ERROR", default=None, help="Exploration failed unrecoverably")
    explore.set_defaults(func=_explore)

    plan = subparsers.add_parser("plan", help="Record the drafted plan and enter review")
    plan.add_argument("artifact", help="Plan artifact reference (path or URL)")
    _add_instance_args(plan)
    plan.set_defaults(func=_plan)

    fail = subparsers.add_parser("fail", help="Report a design/review phase failure")
    fail.add_argument("error")
    _add_instance_args(fail)
    fail.set_defaults(func=_fail)

    review = subparsers.add_parser("review", help="Run the review roster against a snapshot")
    review.add_argument("snapshot", help="Snapshot reference (e.g. a commit or change-set id)")
    _add_instance_args(review)
    review.set_defaults(func=_review)

    resolve = subparsers.add_parser("resolve", help="Mark blocking issues resolved and return to review")
    _add_instance_args(resolve)
    resolve.add_argument("--note", default=None)
    resolve.set_defaults(func=_resolve)

    approve = subparsers.add_parser("approve", help="Approve a verified plan and finalize")
    _add_instance_args(approve)
    approve.add_argument("--approver", default="operator")
    approve.set_defaults(func=_approve)

    reject = subparsers.add_parser("reject", help="Reject with a revision request")
    _add_instance_args(reject)
    reject.add_argument("--feedback", required=True)
    reject.set_defaults(func=_reject)

    abort = subparsers.add_parser("abort", help="Abort a workflow instance")
    _add_instance_args(abort)
    abort.add_argument("--reason", default=None)
    abort.set_defaults(func=_abort)

    status = subparsers.add_parser("status", help="Show workflow status")
    _add_instance_args(status)
    status.add_argument("--all", action="store_true", help="Show every instance")
    status.set_defaults(func=_status)

    candidates = subparsers.add_parser("candidates", help="List ranked unclaimed work items")
    candidates.add_argument("--backlog", default=None, help="Backlog YAML path")
    candidates.add_argument("--limit", type=int, default=None)
    candidates.add_argument("--json", action="store_true")
    candidates.set_defaults(func=_candidates)

    claim = subparsers.add_parser("claim", help="Claim the best unclaimed work item")
    claim.add_argument("--holder", required=True)
    claim.add_argument("--backlog", default=None, help="Backlog YAML path")
    claim.add_argument("--json", action="store_true")
    claim.set_defaults(func=_claim)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = args.log_level
    if level is None:
        config, _ = load_gate_config(_resolve_project_dir(args.project_dir))
        level = get_logging_level(config) or "INFO"
    _configure_logging(level)

    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return EXIT_REJECTED
    try:
        return int(handler(args) or 0)
    except AdmissionDenied as exc:
        sys.stderr.write(f"{exc}\n")
        return EXIT_DENIED
    except InvalidTransition as exc:
        sys.stderr.write(f"Rejected: {exc}\n")
        return EXIT_REJECTED
    except DispatchCancelled as exc:
        sys.stderr.write(f"Review discarded: {exc}\n")
        return EXIT_REJECTED
    except WorkflowStoreError as exc:
        sys.stderr.write(f"{exc}\n")
        return EXIT_REJECTED
    except BacklogError as exc:
        sys.stderr.write(f"Backlog error: {exc}\n")
        return EXIT_DENIED
    except KeyError as exc:
        sys.stderr.write(f"Unknown item: {exc}\n")
        return EXIT_REJECTED


if __name__ == "__main__":
    raise SystemExit(main())
