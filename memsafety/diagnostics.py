# memsafety/diagnostics.py
"""
Finding model and suppression handling.

A :class:`Finding` is the one record type that leaves the analyzer.  It
serializes to a JSON object (one per line in the CLI's ``json`` output)
and to a GCC-style line::

    src/pool.c:42:5: high: use of 'buf' after free (freed at line 40) [useAfterFree]

Suppressions
────────────
  1. Inline comments:  ``/* memsafety-suppress useAfterFree */`` on the
     finding's line or the line before it (``*`` matches everything)
  2. Global suppressions from configuration or the command line

Both match either the finding's ``error_id`` or its ``kind``.
"""

from __future__ import annotations

import json
import re
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Set

from memsafety.tokenizer import Token


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Confidence(Enum):
    """
    How certain the finding is.

    HIGH    the defective sequence happens on every path through the code
    MEDIUM  part of the sequence is only possibly executed
    LOW     ambiguous aliasing; may well be a false positive
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FindingKind(Enum):
    LEAK = "leak"
    USE_AFTER_FREE = "use-after-free"
    CORRUPTION = "corruption"


@dataclass(frozen=True)
class SourceLocation:
    """A point in the analyzed buffer."""
    file: str = ""
    line: int = 0
    column: int = 0
    offset: int = 0

    def __str__(self) -> str:
        name = self.file or "<buffer>"
        if self.column:
            return f"{name}:{self.line}:{self.column}"
        return f"{name}:{self.line}"


@dataclass(frozen=True)
class Finding:
    """
    One reported defect candidate.

    Attributes
    ----------
    kind        : FindingKind
    location    : where the defect manifests
    severity    : Severity
    description : human-readable message
    confidence  : Confidence
    error_id    : stable identifier (``memleak``, ``useAfterFree``, ...)
    cwe         : CWE number (0 = none)
    variable    : name of the variable involved
    snippet     : the source line at ``location``
    detector    : name of the detector that produced it
    """
    kind: FindingKind
    location: SourceLocation
    severity: Severity
    description: str
    confidence: Confidence = Confidence.HIGH
    error_id: str = ""
    cwe: int = 0
    variable: str = ""
    snippet: str = ""
    detector: str = ""

    @property
    def offset(self) -> int:
        return self.location.offset

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "kind": self.kind.value,
            "location": {
                "file": self.location.file,
                "line": self.location.line,
                "column": self.location.column,
                "offset": self.location.offset,
            },
            "severity": self.severity.value,
            "description": self.description,
            "confidence": self.confidence.value,
            "errorId": self.error_id,
            "variable": self.variable,
            "detector": self.detector,
        }
        if self.cwe:
            result["cwe"] = self.cwe
        if self.snippet:
            result["snippet"] = self.snippet
        return result

    def to_json_str(self) -> str:
        return json.dumps(self.to_dict())

    def to_gcc_format(self) -> str:
        """GCC-style line: file:line:col: severity: message [id]."""
        return f"{self.location}: {self.severity.value}: {self.description} [{self.error_id}]"


# ═════════════════════════════════════════════════════════════════════════
#  Locations and snippets
# ═════════════════════════════════════════════════════════════════════════

def source_location(text: str, offset: int, file: str = "") -> SourceLocation:
    """Line and 1-based column for a byte offset into *text*."""
    offset = max(0, min(offset, len(text)))
    line = text.count("\n", 0, offset) + 1
    line_start = text.rfind("\n", 0, offset) + 1
    return SourceLocation(file=file, line=line, column=offset - line_start + 1, offset=offset)


def source_snippet(text: str, line: int, context: int = 0) -> str:
    """The source line *line* (1-based), with *context* lines either side."""
    # lines end at "\n" only, as in source_location
    lines = [ln[:-1] if ln.endswith("\r") else ln for ln in text.split("\n")]
    if not 1 <= line <= len(lines):
        return ""
    lo = max(0, line - 1 - context)
    hi = min(len(lines), line + context)
    if context == 0:
        return lines[line - 1].strip()
    return "\n".join(lines[lo:hi])


# ═════════════════════════════════════════════════════════════════════════
#  Suppressions
# ═════════════════════════════════════════════════════════════════════════

# an id is a name or a lone '*'; the '*' of a closing '*/' is not an id
_ID = r"(?:\*(?!/)|[A-Za-z_][A-Za-z0-9_\-]*)"
_SUPPRESS_RE = re.compile(rf"memsafety-suppress\s+({_ID}(?:[\s,]+{_ID})*)")


class SuppressionManager:
    """
    Decides whether a finding is suppressed.

    >>> sm = SuppressionManager()
    >>> sm.add_global_suppression("memleak")
    >>> sm.load_inline_suppressions(tokenize(source).comments())
    >>> findings = sm.filter_findings(findings)
    """

    def __init__(self, global_ids: Iterable[str] = ()) -> None:
        # line → ids suppressed on that line
        self._inline: Dict[int, Set[str]] = defaultdict(set)
        self._global: Set[str] = set(global_ids)

    def load_inline_suppressions(self, comments: Iterable[Token]) -> None:
        """Record ``memsafety-suppress`` markers found in comment tokens."""
        for tok in comments:
            for chunk_no, chunk in enumerate(tok.text.split("\n")):
                m = _SUPPRESS_RE.search(chunk)
                if m is None:
                    continue
                ids = [i for i in re.split(r"[\s,]+", m.group(1)) if i]
                self._inline[tok.line + chunk_no].update(ids)

    def add_global_suppression(self, error_id: str) -> None:
        self._global.add(error_id)

    def _matches(self, ids: Set[str], finding: Finding) -> bool:
        return "*" in ids or finding.error_id in ids or finding.kind.value in ids

    def is_suppressed(self, finding: Finding) -> bool:
        if self._matches(self._global, finding):
            return True
        line = finding.location.line
        for candidate_line in (line, line - 1):
            ids = self._inline.get(candidate_line)
            if ids and self._matches(ids, finding):
                return True
        return False

    def filter_findings(self, findings: Iterable[Finding]) -> List[Finding]:
        return [f for f in findings if not self.is_suppressed(f)]


__all__ = [
    "Severity",
    "Confidence",
    "FindingKind",
    "SourceLocation",
    "Finding",
    "SuppressionManager",
    "source_location",
    "source_snippet",
]
