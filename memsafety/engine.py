# memsafety/engine.py
"""
Public entry points: the analysis pipeline, the process-wide configuration,
and the analyzer-handle registry.

Pipeline
────────

    bytes
      │
      ▼
    ┌──────────────┐
    │  Tokenizer   │   TokenStream (comments / strings opaque)
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ ScopeTracker │   scope tree + scope id per token
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │   Catalog    │   Allocate / Free / Access / Escape / Reassign
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │  Lifecycle   │   per-variable state machine, candidate marks
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │  Detectors   │   leak │ use-after-free │ corruption  (thread pool)
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │  Aggregator  │   dedupe, order → AnalysisResult
    └──────────────┘

The active :class:`AnalyzerConfig` is immutable and swapped as a single
reference by :func:`configure`; an analysis reads it once when it starts.
Handles snapshot the configuration current at :func:`create`.
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

from memsafety.catalog import OperationCatalog
from memsafety.config import AnalyzerConfig, DEFAULT_CONFIG
from memsafety.detectors import DetectorContext, DetectorRegistry, DetectorRunner
from memsafety.diagnostics import SuppressionManager
from memsafety.errors import ErrorCode, HandleInvalidError, InputError
from memsafety.lifecycle import LifecycleMachine
from memsafety.report import AnalysisResult, ReportAggregator, empty_result
from memsafety.scopes import ScopeTracker
from memsafety.tokenizer import TokenKind, tokenize

logger = logging.getLogger(__name__)

Buffer = Union[bytes, bytearray, memoryview, str]


def _coerce(buffer: object) -> bytes:
    if isinstance(buffer, str):
        data = buffer.encode("utf-8")
    elif isinstance(buffer, (bytes, bytearray, memoryview)):
        data = bytes(buffer)
    else:
        raise InputError(
            f"cannot analyze a {type(buffer).__name__}; expected bytes",
            code=ErrorCode.UNREADABLE_INPUT,
        )
    if not data:
        raise InputError("empty buffer", code=ErrorCode.EMPTY_INPUT)
    return data


class Analyzer:
    """
    The analysis pipeline bound to one configuration.

    An ``Analyzer`` holds no per-buffer state, so one instance may analyze
    many buffers, concurrently if need be.
    """

    def __init__(
        self,
        config: Optional[AnalyzerConfig] = None,
        registry: Optional[DetectorRegistry] = None,
        detectors: Optional[Sequence[str]] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.config = config or DEFAULT_CONFIG
        self.detectors = detectors
        self._runner = DetectorRunner(registry=registry, max_workers=max_workers)
        self._catalog = OperationCatalog(self.config)

    def analyze(
        self,
        buffer: Buffer,
        file: str = "",
        suppress: Iterable[str] = (),
    ) -> AnalysisResult:
        try:
            data = _coerce(buffer)
        except InputError as e:
            logger.debug("analyze(%s): %s", file or "<buffer>", e)
            return empty_result(note=e.message, file=file)

        stream = tokenize(data)
        tokens = []
        comments = []
        notes: List[str] = []
        for tok in stream:
            if tok.kind is TokenKind.COMMENT_BLOCK:
                comments.append(tok)
            else:
                tokens.append(tok)
            if not tok.terminated:
                notes.append(f"unterminated {tok.kind.value} starting at line {tok.line}")

        skeleton = ScopeTracker().track(tokens, len(stream.text))
        operations = self._catalog.classify(tokens, skeleton.scope_of)
        table = LifecycleMachine(skeleton.tree).run(operations)

        suppressions = SuppressionManager(self.config.suppressed)
        for error_id in suppress:
            suppressions.add_global_suppression(error_id)
        suppressions.load_inline_suppressions(comments)

        ctx = DetectorContext(
            text=stream.text,
            tree=skeleton.tree,
            operations=tuple(operations),
            lifecycles=table,
            config=self.config,
            suppressions=suppressions,
            file=file,
        )
        results = self._runner.run(ctx, detectors=self.detectors)

        agg = ReportAggregator(file=file)
        agg.add_findings(results.findings)
        agg.add_notes(notes)
        agg.add_notes(skeleton.anomalies)
        agg.add_notes(results.notes)
        return agg.build(statistics={
            "scopes": len(skeleton.tree),
            "functions": len(skeleton.tree.functions()),
            "operations": len(operations),
            "lifecycles": len(table),
        })

    def analyze_file(self, path: Union[str, Path], suppress: Iterable[str] = ()) -> AnalysisResult:
        """Read *path* and analyze it; an unreadable file yields a note."""
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            logger.warning("Cannot read %s: %s", path, e)
            return empty_result(note=f"cannot read file: {e}", file=str(path))
        return self.analyze(data, file=str(path), suppress=suppress)


# ═════════════════════════════════════════════════════════════════════════
#  Process-wide configuration
# ═════════════════════════════════════════════════════════════════════════

_config_lock = threading.Lock()
_active_config: AnalyzerConfig = DEFAULT_CONFIG


def get_config() -> AnalyzerConfig:
    return _active_config


def set_config(config: AnalyzerConfig) -> AnalyzerConfig:
    """Validate and install *config* as the active configuration."""
    global _active_config
    config.check()
    with _config_lock:
        _active_config = config
    logger.debug(
        "Configuration replaced: allocators=%s deallocators=%s",
        sorted(config.allocators), sorted(config.deallocators),
    )
    return config


def configure(
    allocator_names: Iterable[str],
    deallocator_names: Iterable[str],
) -> AnalyzerConfig:
    """
    Replace the allocator and deallocator name sets.

    Raises :class:`~memsafety.errors.ConfigError` for an empty set or for
    names present in both; the previous configuration stays in force.
    """
    with _config_lock:
        current = _active_config
    return set_config(current.with_names(allocator_names, deallocator_names))


def reset_config() -> AnalyzerConfig:
    return set_config(DEFAULT_CONFIG)


def analyze(buffer: Buffer) -> AnalysisResult:
    """Analyze one buffer under the active configuration."""
    return Analyzer(get_config()).analyze(buffer)


def analyze_file(path: Union[str, Path]) -> AnalysisResult:
    return Analyzer(get_config()).analyze_file(path)


def analyze_many(
    buffers: Sequence[Buffer],
    max_workers: Optional[int] = None,
) -> List[AnalysisResult]:
    """Analyze independent buffers in parallel; results keep input order."""
    analyzer = Analyzer(get_config())
    if not buffers:
        return []
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="analyze") as pool:
        return list(pool.map(analyzer.analyze, buffers))


# ═════════════════════════════════════════════════════════════════════════
#  Analyzer handles
# ═════════════════════════════════════════════════════════════════════════

class HandleRegistry:
    """Lock-guarded map from integer handles to configured analyzers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._analyzers: Dict[int, Analyzer] = {}
        self._ids = itertools.count(1)

    def create(self, config: AnalyzerConfig) -> int:
        analyzer = Analyzer(config)
        with self._lock:
            handle = next(self._ids)
            self._analyzers[handle] = analyzer
        logger.debug("Created analyzer handle %d", handle)
        return handle

    def destroy(self, handle: int) -> None:
        with self._lock:
            if self._analyzers.pop(handle, None) is None:
                raise HandleInvalidError(handle)
        logger.debug("Destroyed analyzer handle %d", handle)

    def get(self, handle: int) -> Analyzer:
        with self._lock:
            analyzer = self._analyzers.get(handle)
        if analyzer is None:
            raise HandleInvalidError(handle)
        return analyzer

    def __len__(self) -> int:
        with self._lock:
            return len(self._analyzers)


_handles = HandleRegistry()


def create() -> int:
    """New analyzer handle bound to a snapshot of the active configuration."""
    return _handles.create(get_config())


def destroy(handle: int) -> None:
    _handles.destroy(handle)


def analyze_with(handle: int, buffer: Buffer) -> AnalysisResult:
    return _handles.get(handle).analyze(buffer)


__all__ = [
    "Analyzer",
    "HandleRegistry",
    "analyze",
    "analyze_file",
    "analyze_many",
    "analyze_with",
    "configure",
    "create",
    "destroy",
    "get_config",
    "reset_config",
    "set_config",
]
