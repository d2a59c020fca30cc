"""Reduce per-task review results into one worst-wins verdict."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Optional, Sequence

from .constants import FINDING_BUCKETS, OTHER_BUCKET
from .models import Finding, MalformedResultError, Severity, TaskResult, Verdict

BLOCKING_SEVERITIES = frozenset({Severity.CRITICAL, Severity.HIGH})


def _checked(results: Sequence[TaskResult]) -> list[TaskResult]:
    checked: list[TaskResult] = []
    seen: set[str] = set()
    for i, result in enumerate(results):
        if not isinstance(result, TaskResult):
            raise MalformedResultError(f"results[{i}] is {type(result).__name__}, expected TaskResult")
        if result.source in seen:
            raise MalformedResultError(f"Duplicate task result source {result.source!r}")
        seen.add(result.source)
        checked.append(result)
    return checked


def max_severity(results: Iterable[TaskResult]) -> Optional[Severity]:
    """Return the highest severity across all findings, or None when there are none."""
    worst: Optional[Severity] = None
    for result in results:
        for finding in result.findings:
            if worst is None or finding.severity > worst:
                worst = finding.severity
    return worst


def compute_verdict(results: Sequence[TaskResult]) -> Verdict:
    """Apply the worst-wins reduction.

    A FAIL assessment from any task blocks regardless of severities. Otherwise
    CRITICAL/HIGH blocks, MEDIUM needs changes, and LOW or nothing verifies.
    """
    checked = _checked(results)
    worst = max_severity(checked)
    if any(r.failed for r in checked) or worst in BLOCKING_SEVERITIES:
        return Verdict.BLOCKED
    if worst == Severity.MEDIUM:
        return Verdict.NEEDS_CHANGES
    return Verdict.VERIFIED


def bucket_for(category: str) -> str:
    key = (category or "").strip().lower()
    for bucket, categories in FINDING_BUCKETS.items():
        if key in categories:
            return bucket
    return OTHER_BUCKET


def group_findings(findings: Iterable[Finding]) -> dict[str, tuple[Finding, ...]]:
    """Group findings into presentation buckets, keeping input order inside each bucket."""
    grouped: dict[str, list[Finding]] = {name: [] for name in (*FINDING_BUCKETS, OTHER_BUCKET)}
    for finding in findings:
        grouped[bucket_for(finding.category)].append(finding)
    return {name: tuple(items) for name, items in grouped.items() if items}


@dataclass(frozen=True)
class AggregateReport:
    """Verdict plus the grouped findings that explain it."""

    verdict: Verdict
    max_severity: Optional[Severity]
    findings: tuple[Finding, ...]
    contributing: tuple[Finding, ...]
    failed_sources: tuple[str, ...]
    sources: tuple[str, ...]
    severity_counts: dict[str, int] = field(default_factory=dict, hash=False)
    buckets: dict[str, tuple[Finding, ...]] = field(default_factory=dict, hash=False)
    advisory: tuple[Finding, ...] = ()
    advisory_source: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self.verdict == Verdict.BLOCKED

    def with_advisory(self, result: TaskResult) -> "AggregateReport":
        """Attach follow-up findings. The verdict is left untouched."""
        return replace(self, advisory=tuple(result.findings), advisory_source=result.source)

    def blocking_issues(self) -> list[str]:
        """Human-readable lines for every finding that drove a non-VERIFIED verdict."""
        lines = [f"{f.severity.value.upper()} [{f.source}/{f.category}] {f.message}" for f in self.contributing]
        for source in self.failed_sources:
            if not any(f.source == source for f in self.contributing):
                lines.append(f"FAIL [{source}] task assessed the change as failing")
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "max_severity": self.max_severity.value if self.max_severity else None,
            "sources": list(self.sources),
            "failed_sources": list(self.failed_sources),
            "severity_counts": dict(self.severity_counts),
            "buckets": {name: [f.to_dict() for f in items] for name, items in self.buckets.items()},
            "contributing": [f.to_dict() for f in self.contributing],
            "advisory": [dict(f.to_dict(), advisory=True) for f in self.advisory],
            "advisory_source": self.advisory_source,
        }


def aggregate(results: Sequence[TaskResult]) -> AggregateReport:
    """Reduce roster-ordered task results into an :class:`AggregateReport`.

    Raises:
        MalformedResultError: If an entry is not a TaskResult or a source repeats.
    """
    checked = _checked(results)
    verdict = compute_verdict(checked)
    findings = tuple(f for r in checked for f in r.findings)
    failed_sources = tuple(r.source for r in checked if r.failed)

    if verdict == Verdict.BLOCKED:
        contributing = tuple(
            f for r in checked for f in r.findings if f.severity in BLOCKING_SEVERITIES or r.failed
        )
    elif verdict == Verdict.NEEDS_CHANGES:
        contributing = tuple(f for f in findings if f.severity == Severity.MEDIUM)
    else:
        contributing = ()

    counts = {s.value: 0 for s in Severity}
    for f in findings:
        counts[f.severity.value] += 1

    return AggregateReport(
        verdict=verdict,
        max_severity=max_severity(checked),
        findings=findings,
        contributing=contributing,
        failed_sources=failed_sources,
        sources=tuple(r.source for r in checked),
        severity_counts=counts,
        buckets=group_findings(findings),
    )
