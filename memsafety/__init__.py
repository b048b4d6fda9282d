"""
memsafety — static memory-safety analysis for C/C++ source buffers
==================================================================

Reports memory leaks, use-after-free and heap corruption (double free,
writes past a known allocation size) from the raw text of a C-family
source file, without compiling it.

Core modules
------------
tokenizer
    Byte buffer → classified tokens; comments and strings are opaque.
scopes
    Brace-matched scope tree with function / branch / loop / block kinds.
catalog
    Statement classification into Allocate / Free / Access / Escape /
    Reassign operations.
lifecycle
    Per-variable state machine that marks defect candidates.
detectors
    Leak, use-after-free and corruption detectors, run on a thread pool.
report
    Deduplicated, ordered ``AnalysisResult``.
engine
    ``analyze``, ``configure``, analyzer handles, batch analysis.

Quick start
-----------
>>> import memsafety
>>> result = memsafety.analyze(b"p = malloc(10); use(p); free(p); use(p);")
>>> [f.kind.value for f in result.findings]
['use-after-free']
"""

from __future__ import annotations

from memsafety.config import AnalyzerConfig, DEFAULT_CONFIG, load_config, parse_config
from memsafety.diagnostics import Confidence, Finding, FindingKind, Severity, SourceLocation
from memsafety.engine import (
    Analyzer,
    analyze,
    analyze_file,
    analyze_many,
    analyze_with,
    configure,
    create,
    destroy,
    get_config,
    reset_config,
    set_config,
)
from memsafety.errors import (
    ConfigError,
    ErrorCode,
    HandleInvalidError,
    InputError,
    MemsafetyError,
)
from memsafety.report import AnalysisResult

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # analysis
    "Analyzer",
    "AnalysisResult",
    "analyze",
    "analyze_file",
    "analyze_many",
    # handles
    "create",
    "destroy",
    "analyze_with",
    # configuration
    "AnalyzerConfig",
    "DEFAULT_CONFIG",
    "configure",
    "get_config",
    "set_config",
    "reset_config",
    "load_config",
    "parse_config",
    # findings
    "Finding",
    "FindingKind",
    "Severity",
    "Confidence",
    "SourceLocation",
    # errors
    "MemsafetyError",
    "InputError",
    "ConfigError",
    "HandleInvalidError",
    "ErrorCode",
]
