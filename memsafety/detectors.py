# memsafety/detectors.py
"""
Detector framework and the three production detectors.

Architecture
────────────

  ┌────────────────────────────────────────────────────────────┐
  │                      DetectorRunner                        │
  │   ┌──────────────┐  ┌──────────────┐  ┌──────────────┐     │
  │   │ LeakDetector │  │ UseAfterFree │  │  Corruption  │     │
  │   │              │  │   Detector   │  │   Detector   │     │
  │   └──────┬───────┘  └──────┬───────┘  └──────┬───────┘     │
  │          │   (thread pool, one task each)    │             │
  │   ┌──────▼─────────────────▼─────────────────▼──────────┐  │
  │   │    DetectorContext (immutable snapshot)             │  │
  │   │    scope tree │ operations │ lifecycle table        │  │
  │   └─────────────────────────────────────────────────────┘  │
  └────────────────────────────────────────────────────────────┘

Each Detector follows a four-phase lifecycle:

  1. **configure()**  read what it needs from the context
  2. **collect_evidence()**  pick the lifecycle candidates it owns
  3. **diagnose()**  assign severity and confidence
  4. **report()**  return Findings (filtered by suppressions)

Detectors never write shared state, so the runner can fan them out on a
``ThreadPoolExecutor`` and join them before aggregation.  A detector that
raises contributes no findings and a note; the others still report.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import ClassVar, Dict, FrozenSet, List, Optional, Sequence, Tuple, Type

from memsafety.catalog import OpKind, Operation
from memsafety.config import AnalyzerConfig, DEFAULT_CONFIG
from memsafety.diagnostics import (
    Confidence,
    Finding,
    FindingKind,
    Severity,
    SuppressionManager,
    source_location,
    source_snippet,
)
from memsafety.lifecycle import Candidate, CandidateKind, LifecycleTable
from memsafety.scopes import Scope, ScopeKind, ScopeTree

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — CONTEXT
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DetectorContext:
    """
    Read-only snapshot shared by every detector of one analysis.

    Attributes
    ----------
    text         : decoded buffer (latin-1, offsets are byte offsets)
    tree         : scope tree of the buffer
    operations   : classified operations in discovery order
    lifecycles   : lifecycle table with candidate marks
    config       : configuration the analysis runs under
    suppressions : suppression rules for this buffer
    file         : file name used in locations ("" for anonymous buffers)
    """
    text: str
    tree: ScopeTree
    operations: Tuple[Operation, ...]
    lifecycles: LifecycleTable
    config: AnalyzerConfig = DEFAULT_CONFIG
    suppressions: SuppressionManager = field(default_factory=SuppressionManager)
    file: str = ""

    def possibly_executed(self, op: Optional[Operation], owner_scope_id: int) -> bool:
        """True if *op* sits under a branch or loop below its owner scope."""
        if op is None:
            return False
        return self.tree.is_conditional_between(op.scope_id, owner_scope_id)


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — DETECTOR BASE CLASS
# ═════════════════════════════════════════════════════════════════════════

class Detector(ABC):
    """
    Abstract base class for all detectors.

    Subclass Contract
    ─────────────────
      - Override ``name``, ``description``, ``error_ids``, ``cwe_ids``
      - Implement ``collect_evidence()`` and ``diagnose()``
      - Optionally override ``configure()``
    """

    name: ClassVar[str] = "base-detector"
    description: ClassVar[str] = ""
    error_ids: ClassVar[FrozenSet[str]] = frozenset()
    cwe_ids: ClassVar[Dict[str, int]] = {}

    def __init__(self) -> None:
        self._findings: List[Finding] = []
        self.notes: List[str] = []

    @property
    def findings(self) -> List[Finding]:
        return list(self._findings)

    def configure(self, ctx: DetectorContext) -> None:
        pass

    @abstractmethod
    def collect_evidence(self, ctx: DetectorContext) -> None:
        ...

    @abstractmethod
    def diagnose(self, ctx: DetectorContext) -> None:
        ...

    def report(self, ctx: DetectorContext) -> List[Finding]:
        return ctx.suppressions.filter_findings(self._findings)

    def _emit(
        self,
        ctx: DetectorContext,
        kind: FindingKind,
        error_id: str,
        description: str,
        offset: int,
        severity: Severity,
        confidence: Confidence = Confidence.HIGH,
        variable: str = "",
    ) -> None:
        """Helper to create and store a finding."""
        location = source_location(ctx.text, offset, ctx.file)
        self._findings.append(Finding(
            kind=kind,
            location=location,
            severity=severity,
            description=description,
            confidence=confidence,
            error_id=error_id,
            cwe=self.cwe_ids.get(error_id, 0),
            variable=variable,
            snippet=source_snippet(ctx.text, location.line),
            detector=self.name,
        ))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name}'>"


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — DETECTOR REGISTRY
# ═════════════════════════════════════════════════════════════════════════

class DetectorRegistry:
    """
    Registry of available detectors, kept in registration order.

    Usage
    -----
    >>> registry = DetectorRegistry()
    >>> registry.register(LeakDetector)
    >>> registry.get_by_name("leak")
    <class 'memsafety.detectors.LeakDetector'>
    """

    def __init__(self) -> None:
        self._detectors: Dict[str, Type[Detector]] = {}

    def register(self, detector_cls: Type[Detector]) -> None:
        self._detectors[detector_cls.name] = detector_cls

    def get_all(self) -> List[Type[Detector]]:
        return list(self._detectors.values())

    def get_by_name(self, name: str) -> Optional[Type[Detector]]:
        return self._detectors.get(name)

    @property
    def names(self) -> List[str]:
        return sorted(self._detectors.keys())



# ═════════════════════════════════════════════════════════════════════════
#  PART 4 — PRODUCTION DETECTORS
# ═════════════════════════════════════════════════════════════════════════

def _scope_phrase(scope: Scope) -> str:
    if scope.kind is ScopeKind.FUNCTION:
        return f"function '{scope.name}'" if scope.name else "the function"
    if scope.parent_id is None:
        return "the translation unit"
    return f"the {scope.kind.value} scope at line {scope.line}"


def _free_line(cand: Candidate) -> str:
    return str(cand.origin.line) if cand.origin is not None else "?"


class LeakDetector(Detector):
    """
    Reports allocations still owned when their scope ends, and
    allocations lost by re-binding the variable.

    Severity: ``high`` when the owning scope is a function, ``low`` when the
    allocation sits in a branch or loop, ``medium`` otherwise.
    Candidates from scopes that are never closed are dropped with a note.

    CWE-401: Missing Release of Memory after Effective Lifetime
    """

    name: ClassVar[str] = "leak"
    description: ClassVar[str] = "Memory leak detection"
    error_ids: ClassVar[FrozenSet[str]] = frozenset({"memleak", "memleakOnReassign"})
    cwe_ids: ClassVar[Dict[str, int]] = {"memleak": 401, "memleakOnReassign": 401}

    def __init__(self) -> None:
        super().__init__()
        self._candidates: List[Candidate] = []

    def collect_evidence(self, ctx: DetectorContext) -> None:
        for cand in ctx.lifecycles.candidates(CandidateKind.LEAK):
            if not cand.scope_closed:
                self.notes.append(
                    f"leak candidate for '{cand.variable}' (line {cand.line}) dropped: "
                    f"{cand.reason}"
                )
                continue
            self._candidates.append(cand)

    def diagnose(self, ctx: DetectorContext) -> None:
        for cand in self._candidates:
            owner = ctx.tree[cand.owner_scope_id]
            conditional = ctx.possibly_executed(cand.origin, cand.owner_scope_id)
            if conditional or owner.kind.is_conditional:
                severity = Severity.LOW
            elif owner.kind is ScopeKind.FUNCTION:
                severity = Severity.HIGH
            else:
                severity = Severity.MEDIUM

            callee = cand.origin.callee if cand.origin is not None else "?"
            if cand.trigger is not None:
                error_id = "memleakOnReassign"
                msg = (
                    f"Memory leak: '{cand.variable}' allocated by {callee} is "
                    f"overwritten at line {cand.trigger.line} without being freed"
                )
            else:
                error_id = "memleak"
                msg = (
                    f"Memory leak: '{cand.variable}' allocated by {callee} is not "
                    f"freed before the end of {_scope_phrase(owner)}"
                )
            self._emit(
                ctx, FindingKind.LEAK, error_id, msg, cand.offset, severity,
                confidence=Confidence.MEDIUM if conditional else Confidence.HIGH,
                variable=cand.variable,
            )


class UseAfterFreeDetector(Detector):
    """
    Reports accesses to, and escapes of, freed memory.

    Severity is always ``high``.  Confidence drops to ``medium`` when the
    free only possibly executed or the freed handle merely escapes, and to
    ``low`` when the handle was re-allocated on only one path.

    CWE-416: Use After Free
    """

    name: ClassVar[str] = "use-after-free"
    description: ClassVar[str] = "Use-after-free detection"
    error_ids: ClassVar[FrozenSet[str]] = frozenset({"useAfterFree", "danglingEscape"})
    cwe_ids: ClassVar[Dict[str, int]] = {"useAfterFree": 416, "danglingEscape": 416}

    def __init__(self) -> None:
        super().__init__()
        self._candidates: List[Candidate] = []

    def collect_evidence(self, ctx: DetectorContext) -> None:
        self._candidates = ctx.lifecycles.candidates(CandidateKind.USE_AFTER_FREE)

    def diagnose(self, ctx: DetectorContext) -> None:
        for cand in self._candidates:
            escape = cand.trigger is not None and cand.trigger.kind is OpKind.ESCAPE
            if cand.ambiguous:
                confidence = Confidence.LOW
            elif escape or ctx.possibly_executed(cand.origin, cand.owner_scope_id):
                confidence = Confidence.MEDIUM
            else:
                confidence = Confidence.HIGH

            if cand.ambiguous:
                error_id = "useAfterFree"
                msg = (
                    f"Possible use of '{cand.variable}' after free (freed at line "
                    f"{_free_line(cand)}, {cand.reason})"
                )
            elif escape:
                error_id = "danglingEscape"
                via = cand.trigger.escape_via.value if cand.trigger.escape_via else "call"
                target = f" to {cand.trigger.callee}()" if via == "call" and cand.trigger.callee else ""
                msg = (
                    f"Freed pointer '{cand.variable}' escapes via {via}{target} "
                    f"(freed at line {_free_line(cand)})"
                )
            else:
                error_id = "useAfterFree"
                msg = f"Use of '{cand.variable}' after free (freed at line {_free_line(cand)})"
            self._emit(
                ctx, FindingKind.USE_AFTER_FREE, error_id, msg, cand.offset,
                Severity.HIGH, confidence=confidence, variable=cand.variable,
            )


class CorruptionDetector(Detector):
    """
    Reports double frees and writes past a known allocation size.

    CWE-415: Double Free
    CWE-787: Out-of-bounds Write
    """

    name: ClassVar[str] = "corruption"
    description: ClassVar[str] = "Double free and heap overflow detection"
    error_ids: ClassVar[FrozenSet[str]] = frozenset({"doubleFree", "bufferOverflow"})
    cwe_ids: ClassVar[Dict[str, int]] = {"doubleFree": 415, "bufferOverflow": 787}

    def __init__(self) -> None:
        super().__init__()
        self._double_frees: List[Candidate] = []
        self._overflows: List[Candidate] = []

    def collect_evidence(self, ctx: DetectorContext) -> None:
        self._double_frees = ctx.lifecycles.candidates(CandidateKind.DOUBLE_FREE)
        self._overflows = ctx.lifecycles.candidates(CandidateKind.OVERFLOW)

    def diagnose(self, ctx: DetectorContext) -> None:
        for cand in self._double_frees:
            conditional = (
                ctx.possibly_executed(cand.origin, cand.owner_scope_id)
                or ctx.possibly_executed(cand.trigger, cand.owner_scope_id)
            )
            self._emit(
                ctx, FindingKind.CORRUPTION, "doubleFree",
                f"Double free of '{cand.variable}' (freed at line {_free_line(cand)})",
                cand.offset, Severity.CRITICAL,
                confidence=Confidence.MEDIUM if conditional else Confidence.HIGH,
                variable=cand.variable,
            )

        for cand in self._overflows:
            op = cand.trigger
            if op is not None and op.write_length is not None:
                msg = (
                    f"Buffer overflow: {op.callee or 'write'} writes {op.write_length} "
                    f"bytes into '{cand.variable}' allocated with {cand.size}"
                )
            else:
                index = op.index if op is not None else "?"
                msg = (
                    f"Buffer overflow: index {index} is out of bounds for "
                    f"'{cand.variable}' allocated with {cand.size}"
                )
            self._emit(
                ctx, FindingKind.CORRUPTION, "bufferOverflow", msg, cand.offset,
                Severity.HIGH,
                confidence=Confidence.MEDIUM
                if ctx.possibly_executed(op, cand.owner_scope_id) else Confidence.HIGH,
                variable=cand.variable,
            )


DEFAULT_REGISTRY = DetectorRegistry()
DEFAULT_REGISTRY.register(LeakDetector)
DEFAULT_REGISTRY.register(UseAfterFreeDetector)
DEFAULT_REGISTRY.register(CorruptionDetector)


# ═════════════════════════════════════════════════════════════════════════
#  PART 5 — RUNNER
# ═════════════════════════════════════════════════════════════════════════

@dataclass
class DetectorRunResults:
    """
    Findings and notes from one detector run, in registry order.

    ``stats`` holds ``<name>_elapsed_ms`` per detector.
    """
    findings: List[Finding] = field(default_factory=list)
    findings_by_detector: Dict[str, List[Finding]] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)
    stats: Dict[str, float] = field(default_factory=dict)
    detector_names: List[str] = field(default_factory=list)


def _run_detector(
    cls: Type[Detector], ctx: DetectorContext
) -> Tuple[List[Finding], List[str], float]:
    detector = cls()
    t0 = time.monotonic()
    detector.configure(ctx)
    detector.collect_evidence(ctx)
    detector.diagnose(ctx)
    findings = detector.report(ctx)
    return findings, list(detector.notes), (time.monotonic() - t0) * 1000.0


class DetectorRunner:
    """
    Runs a suite of detectors against one :class:`DetectorContext`.

    Usage
    -----
    >>> runner = DetectorRunner()
    >>> results = runner.run(ctx)
    >>> results = runner.run(ctx, detectors=["leak"])
    """

    def __init__(
        self,
        registry: Optional[DetectorRegistry] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.registry = registry or DEFAULT_REGISTRY
        self.max_workers = max_workers

    def _select(self, detectors: Optional[Sequence[str]]) -> List[Type[Detector]]:
        if detectors is None:
            return self.registry.get_all()
        selected = []
        for name in detectors:
            cls = self.registry.get_by_name(name)
            if cls is not None:
                selected.append(cls)
            else:
                logger.warning("Unknown detector '%s' ignored", name)
        return selected

    def run(
        self,
        ctx: DetectorContext,
        detectors: Optional[Sequence[str]] = None,
    ) -> DetectorRunResults:
        results = DetectorRunResults()
        classes = self._select(detectors)
        if not classes:
            return results

        workers = self.max_workers or len(classes)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="detector") as pool:
            futures = [(cls.name, pool.submit(_run_detector, cls, ctx)) for cls in classes]

            for name, future in futures:
                results.detector_names.append(name)
                try:
                    findings, notes, elapsed_ms = future.result()
                except Exception as exc:
                    # Graceful degradation: the others still report
                    logger.warning("Detector '%s' failed: %s", name, exc)
                    results.notes.append(f"detector '{name}' failed: {exc}")
                    results.findings_by_detector[name] = []
                    continue
                results.findings.extend(findings)
                results.findings_by_detector[name] = findings
                results.notes.extend(notes)
                results.stats[f"{name}_elapsed_ms"] = elapsed_ms

        logger.debug(
            "Detectors: %s → %d findings",
            ", ".join(results.detector_names), len(results.findings),
        )
        return results


__all__ = [
    "DetectorContext",
    "Detector",
    "DetectorRegistry",
    "LeakDetector",
    "UseAfterFreeDetector",
    "CorruptionDetector",
    "DEFAULT_REGISTRY",
    "DetectorRunner",
    "DetectorRunResults",
]
