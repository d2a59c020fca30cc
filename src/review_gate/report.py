"""Render verdicts, gate results and workflow records for the operator."""

from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .aggregator import AggregateReport
from .gate import GateReport
from .models import GateStatus, Severity, Verdict, WorkflowRecord, WorkflowState

_VERDICT_STYLE = {
    Verdict.VERIFIED: "bold green",
    Verdict.NEEDS_CHANGES: "bold yellow",
    Verdict.BLOCKED: "bold red",
}

_SEVERITY_STYLE = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "dim",
}

_STATUS_STYLE = {
    GateStatus.PASS: "green",
    GateStatus.WARN: "yellow",
    GateStatus.FAIL: "red",
}

_STATE_STYLE = {
    WorkflowState.FINALIZED: "green",
    WorkflowState.BLOCKED: "red",
    WorkflowState.REVIEWING: "cyan",
}


def render_review_report(report: AggregateReport, console: Optional[Console] = None) -> None:
    """Print the verdict, every contributing finding and the bucketed findings."""
    console = console or Console()
    style = _VERDICT_STYLE[report.verdict]
    worst = report.max_severity.value.upper() if report.max_severity else "NONE"
    console.print(
        Panel(
            f"[{style}]{report.verdict.value.upper()}[/{style}]  "
            f"max severity: {worst}  tasks: {len(report.sources)}",
            title="Review verdict",
        )
    )

    if report.verdict != Verdict.VERIFIED:
        issues = report.blocking_issues()
        console.print(f"[bold]Contributing issues ({len(issues)}):[/bold]")
        for i, line in enumerate(issues, start=1):
            console.print(f"  {i}. {line}", markup=False)
        console.print()

    if report.findings:
        table = Table(title="Findings", show_lines=False)
        table.add_column("Bucket", style="bold")
        table.add_column("Severity")
        table.add_column("Source", style="cyan")
        table.add_column("Category")
        table.add_column("Message", overflow="fold")
        for bucket, findings in report.buckets.items():
            for finding in findings:
                sev_style = _SEVERITY_STYLE[finding.severity]
                table.add_row(
                    bucket,
                    f"[{sev_style}]{finding.severity.value.upper()}[/{sev_style}]",
                    escape(finding.source),
                    escape(finding.category),
                    escape(finding.message),
                )
        console.print(table)
    else:
        console.print("[dim]No findings reported.[/dim]")

    if report.advisory:
        table = Table(title=f"Advisory ({escape(report.advisory_source or '')})")
        table.add_column("Severity")
        table.add_column("Category")
        table.add_column("Message", overflow="fold")
        for finding in report.advisory:
            table.add_row(f"advisory/{finding.severity.value}", escape(finding.category), escape(finding.message))
        console.print(table)
        console.print("[dim]Advisory findings do not affect the verdict.[/dim]")


def render_gate_report(report: GateReport, console: Optional[Console] = None) -> None:
    """Print every check; on denial list all blocking failures together."""
    console = console or Console()
    table = Table(title="Prerequisite checks")
    table.add_column("Check", style="bold")
    table.add_column("Status")
    table.add_column("Blocking")
    table.add_column("Detail", overflow="fold")
    for result in report.results:
        style = _STATUS_STYLE[result.status]
        table.add_row(
            escape(result.name),
            f"[{style}]{result.status.value.upper()}[/{style}]",
            "yes" if result.blocking else "no",
            escape(result.detail),
        )
    console.print(table)

    if report.admitted:
        console.print("[green]✓ Entry admitted[/green]")
        return
    console.print(f"[red]✗ Entry denied by {len(report.failures)} blocking check(s):[/red]")
    for failure in report.failures:
        console.print(f"  - {failure.name}: {failure.detail}", markup=False)


def render_record(record: WorkflowRecord, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="bold")
    table.add_column("Value")

    state_style = _STATE_STYLE.get(record.state, "white")
    state = record.state.value + (" (aborted)" if record.aborted else "")
    table.add_row("Instance", escape(record.instance_id))
    table.add_row("State", f"[{state_style}]{state}[/{state_style}]")
    table.add_row("Plan", escape(record.plan_artifact_ref or "-"))
    table.add_row("Last verdict", record.last_review_verdict.value if record.last_review_verdict else "-")
    table.add_row("Review rounds", str(record.review_rounds))
    if record.awaiting_approval:
        table.add_row("Awaiting", "operator approval")
    if record.degraded_context:
        table.add_row("Context", "[yellow]degraded[/yellow]")
    if record.approved_by:
        table.add_row("Approved by", escape(record.approved_by))
    if record.last_error:
        table.add_row("Last error", escape(f"{record.last_error_type or 'error'}: {record.last_error}"))
    table.add_row("Updated", record.updated_at)
    console.print(Panel(table, title="Workflow"))

    if record.blocking_issues:
        console.print(f"[bold red]Blocking issues ({len(record.blocking_issues)}):[/bold red]")
        for issue in record.blocking_issues:
            console.print(f"  - {issue}", markup=False)
    if record.partial_findings:
        console.print("[bold]Partial findings:[/bold]")
        for finding in record.partial_findings:
            console.print(f"  - {finding}", markup=False)
