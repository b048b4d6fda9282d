# memsafety/report.py
"""
Report aggregation: merge detector output into one ordered, immutable
:class:`AnalysisResult`.

The aggregator is the only component that imposes an order on findings:
location ascending, then severity descending, with kind and description
breaking the remaining ties so repeated runs are byte-identical.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from memsafety.diagnostics import Finding, FindingKind, Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisResult:
    """
    Ordered findings plus summary counts and diagnostic notes.

    Attributes
    ----------
    findings : findings in report order
    summary  : read-only counts: ``total``, ``by_severity``, ``by_kind`` and the
               ``scopes`` / ``functions`` / ``operations`` statistics
    notes    : anomalies and degraded-analysis messages
    file     : source file name, if the buffer came from one
    """
    findings: Tuple[Finding, ...] = ()
    summary: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    notes: Tuple[str, ...] = ()
    file: str = ""

    def __len__(self) -> int:
        return len(self.findings)

    def __iter__(self):
        return iter(self.findings)

    @property
    def total_count(self) -> int:
        return len(self.findings)

    def by_kind(self, kind: FindingKind) -> List[Finding]:
        return [f for f in self.findings if f.kind is kind]

    def by_severity(self, severity: Severity) -> List[Finding]:
        return [f for f in self.findings if f.severity is severity]

    def at_least(self, severity: Severity) -> List[Finding]:
        return [f for f in self.findings if f.severity.rank >= severity.rank]

    @property
    def has_errors(self) -> bool:
        """True if any finding is ``high`` or ``critical``."""
        return bool(self.at_least(Severity.HIGH))

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [f.to_dict() for f in self.findings]

    def to_json_lines(self) -> str:
        return "\n".join(f.to_json_str() for f in self.findings)

    def to_gcc_format(self) -> str:
        return "\n".join(f.to_gcc_format() for f in self.findings)

    def summary_text(self) -> str:
        """Human-readable summary."""
        name = self.file or "<buffer>"
        by_sev = self.summary.get("by_severity", {})
        counts = ", ".join(
            f"{by_sev.get(s.value, 0)} {s.value}" for s in reversed(list(Severity))
        )
        lines = [f"{name}: {self.total_count} findings ({counts})"]
        for kind, count in sorted(self.summary.get("by_kind", {}).items()):
            lines.append(f"  {kind}: {count}")
        for note in self.notes:
            lines.append(f"  note: {note}")
        return "\n".join(lines)


def _sort_key(finding: Finding) -> Tuple[int, int, str, str]:
    return (
        finding.location.offset,
        -finding.severity.rank,
        finding.kind.value,
        finding.description,
    )


class ReportAggregator:
    """
    Collects findings and notes, then builds the final result.

    Usage
    -----
    >>> agg = ReportAggregator(file="pool.c")
    >>> agg.add_findings(results.findings)
    >>> agg.add_notes(skeleton.anomalies)
    >>> result = agg.build(statistics={"operations": 12})
    """

    def __init__(self, file: str = "") -> None:
        self.file = file
        self._findings: List[Finding] = []
        self._notes: List[str] = []

    def add_findings(self, findings: Iterable[Finding]) -> None:
        self._findings.extend(findings)

    def add_notes(self, notes: Iterable[str]) -> None:
        for note in notes:
            if note not in self._notes:
                self._notes.append(note)

    def build(self, statistics: Optional[Mapping[str, int]] = None) -> AnalysisResult:
        seen = set()
        unique: List[Finding] = []
        for finding in self._findings:
            key = (finding.kind, finding.location, finding.description)
            if key in seen:
                continue
            seen.add(key)
            unique.append(finding)
        if len(unique) != len(self._findings):
            logger.debug("Aggregator: dropped %d duplicate findings",
                         len(self._findings) - len(unique))
        unique.sort(key=_sort_key)

        by_severity = {s.value: 0 for s in Severity}
        by_kind = {k.value: 0 for k in FindingKind}
        for finding in unique:
            by_severity[finding.severity.value] += 1
            by_kind[finding.kind.value] += 1

        summary: Dict[str, Any] = {
            "total": len(unique),
            "by_severity": MappingProxyType(by_severity),
            "by_kind": MappingProxyType(by_kind),
        }
        summary.update(statistics or {})
        return AnalysisResult(
            findings=tuple(unique),
            summary=MappingProxyType(summary),
            notes=tuple(self._notes),
            file=self.file,
        )


def empty_result(note: str = "", file: str = "") -> AnalysisResult:
    """A result with no findings, optionally carrying one note."""
    agg = ReportAggregator(file=file)
    if note:
        agg.add_notes([note])
    return agg.build()


__all__ = ["AnalysisResult", "ReportAggregator", "empty_result"]
