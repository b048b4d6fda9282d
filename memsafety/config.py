# memsafety/config.py
"""
Analyzer configuration: the allocator / deallocator name sets and the
tables the catalog consults.

``AnalyzerConfig`` is an immutable value.  The process-wide active
configuration lives in :mod:`memsafety.engine`; swapping it means
replacing one reference, so readers never observe a half-updated set.

Configuration files use the same S-expression surface syntax as the rest of
the toolchain and are read with ``sexpdata``::

    (memsafety
      (allocators malloc calloc realloc pool_alloc)
      (deallocators free pool_free)
      (accessors memcpy strlen printf)
      (suppress leak doubleFree))

``allocators``, ``deallocators`` and ``accessors`` replace the
corresponding default set; ``suppress`` adds finding ids or kinds to the
global suppression list.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, NamedTuple, Optional

import sexpdata
from sexpdata import Symbol

from memsafety.errors import ConfigError, ErrorCode

logger = logging.getLogger(__name__)


class CopyRoutine(NamedTuple):
    """
    Argument layout of a bounded-copy routine.

    ``dest``    index of the destination buffer argument
    ``length``  index of the byte-count argument, if any
    ``source``  index of a source argument whose string-literal length
                (plus the terminating NUL) bounds the write, if any
    """
    dest: int
    length: Optional[int] = None
    source: Optional[int] = None


DEFAULT_ALLOCATORS: FrozenSet[str] = frozenset({
    "malloc", "calloc", "realloc", "strdup", "strndup",
    "aligned_alloc", "new",
})

DEFAULT_DEALLOCATORS: FrozenSet[str] = frozenset({
    "free", "delete",
})

# Known library routines that read or write through a pointer argument
# without taking ownership of it.
DEFAULT_ACCESSORS: FrozenSet[str] = frozenset({
    "memcpy", "memmove", "memset", "memcmp", "memchr",
    "strcpy", "strncpy", "strcat", "strncat", "strcmp", "strncmp",
    "strlen", "strchr", "strrchr", "strstr",
    "printf", "fprintf", "sprintf", "snprintf", "sscanf",
    "puts", "fputs", "fgets", "fread", "fwrite", "read", "write",
})

DEFAULT_COPY_ROUTINES: Mapping[str, CopyRoutine] = {
    "memcpy": CopyRoutine(dest=0, length=2),
    "memmove": CopyRoutine(dest=0, length=2),
    "memset": CopyRoutine(dest=0, length=2),
    "strncpy": CopyRoutine(dest=0, length=2),
    "snprintf": CopyRoutine(dest=0, length=1),
    "fgets": CopyRoutine(dest=0, length=1),
    "read": CopyRoutine(dest=1, length=2),
    "strcpy": CopyRoutine(dest=0, source=1),
}

_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\Z")


@dataclass(frozen=True)
class AnalyzerConfig:
    """Immutable name sets and tables used by one analysis."""
    allocators: FrozenSet[str] = DEFAULT_ALLOCATORS
    deallocators: FrozenSet[str] = DEFAULT_DEALLOCATORS
    accessors: FrozenSet[str] = DEFAULT_ACCESSORS
    copy_routines: Mapping[str, CopyRoutine] = field(
        default_factory=lambda: dict(DEFAULT_COPY_ROUTINES)
    )
    suppressed: FrozenSet[str] = frozenset()

    def validate(self) -> List[str]:
        """Return a list of problems (empty if the configuration is usable)."""
        problems: List[str] = []
        if not self.allocators:
            problems.append("allocator name set is empty")
        if not self.deallocators:
            problems.append("deallocator name set is empty")
        overlap = self.allocators & self.deallocators
        if overlap:
            problems.append(
                "names are both allocators and deallocators: "
                + ", ".join(sorted(overlap))
            )
        for name in sorted(self.allocators | self.deallocators | self.accessors):
            if not _NAME_RE.match(name):
                problems.append(f"not a valid function name: {name!r}")
        return problems

    def is_allocator(self, name: str) -> bool:
        return name in self.allocators

    def is_deallocator(self, name: str) -> bool:
        return name in self.deallocators

    def with_names(
        self,
        allocators: Iterable[str],
        deallocators: Iterable[str],
    ) -> AnalyzerConfig:
        """Copy with replaced name sets; raises ConfigError if invalid."""
        updated = replace(
            self,
            allocators=frozenset(allocators),
            deallocators=frozenset(deallocators),
        )
        updated.check()
        return updated

    def check(self) -> None:
        problems = self.validate()
        if not problems:
            return
        if not self.allocators or not self.deallocators:
            code = ErrorCode.EMPTY_NAME_SET
        elif self.allocators & self.deallocators:
            code = ErrorCode.CONFLICTING_NAME_SETS
        else:
            code = ErrorCode.INVALID_NAME
        for problem in problems:
            logger.warning("AnalyzerConfig: %s", problem)
        raise ConfigError("; ".join(problems), code=code, problems=problems)


DEFAULT_CONFIG = AnalyzerConfig()


# ═══════════════════════════════════════════════════════════════════════
#  S-expression configuration files
# ═══════════════════════════════════════════════════════════════════════

def _atom_name(item: Any) -> str:
    """Name of a Symbol or string literal atom, or raise."""
    if isinstance(item, Symbol):
        return item.value()
    if isinstance(item, str):
        return item
    raise ConfigError(
        f"expected a name, got {type(item).__name__}: {item!r}",
        code=ErrorCode.MALFORMED_CONFIG,
    )


def _clause_names(clause: list) -> FrozenSet[str]:
    return frozenset(_atom_name(item) for item in clause[1:])


def parse_config(text: str, base: Optional[AnalyzerConfig] = None) -> AnalyzerConfig:
    """
    Parse a ``(memsafety ...)`` form into an :class:`AnalyzerConfig`.

    Clauses not present in *text* keep their value from *base*
    (the defaults when omitted).  The result is validated.
    """
    base = base or DEFAULT_CONFIG
    try:
        raw = sexpdata.loads(text, nil=None, true=None, false=None)
    except Exception as e:
        raise ConfigError(
            f"S-expression syntax error: {e}",
            code=ErrorCode.MALFORMED_CONFIG,
            cause=e,
        ) from e

    if not isinstance(raw, list) or not raw or _atom_name(raw[0]) != "memsafety":
        raise ConfigError(
            "configuration must be a single (memsafety ...) form",
            code=ErrorCode.MALFORMED_CONFIG,
        )

    updates: Dict[str, Any] = {}
    suppressed = set(base.suppressed)
    for clause in raw[1:]:
        if not isinstance(clause, list) or not clause:
            raise ConfigError(
                f"expected a (clause ...) list, got {clause!r}",
                code=ErrorCode.MALFORMED_CONFIG,
            )
        tag = _atom_name(clause[0])
        if tag in ("allocators", "deallocators", "accessors"):
            updates[tag] = _clause_names(clause)
        elif tag == "suppress":
            suppressed.update(_clause_names(clause))
        else:
            raise ConfigError(
                f"unknown configuration clause '{tag}'",
                code=ErrorCode.MALFORMED_CONFIG,
            )

    config = replace(base, suppressed=frozenset(suppressed), **updates)
    config.check()
    logger.debug(
        "Parsed configuration: %d allocators, %d deallocators, %d suppressions",
        len(config.allocators), len(config.deallocators), len(config.suppressed),
    )
    return config


def load_config(path: str, base: Optional[AnalyzerConfig] = None) -> AnalyzerConfig:
    """Read and parse a configuration file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(
            f"cannot read configuration file {path}: {e}",
            code=ErrorCode.MALFORMED_CONFIG,
            cause=e,
        ) from e
    return parse_config(text, base=base)


__all__ = [
    "CopyRoutine",
    "AnalyzerConfig",
    "DEFAULT_CONFIG",
    "DEFAULT_ALLOCATORS",
    "DEFAULT_DEALLOCATORS",
    "DEFAULT_ACCESSORS",
    "DEFAULT_COPY_ROUTINES",
    "parse_config",
    "load_config",
]
