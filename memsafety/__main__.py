#!/usr/bin/env python3
"""
memsafety/__main__.py
=====================

Command-line host for the analyzer.

Usage
-----
    memsafety [options] <path>...
    python -m memsafety [options] <path>...

Directories are searched recursively for C/C++ sources; hidden
directories and ``node_modules`` are skipped.

Exit status
-----------
    0   no high or critical findings
    1   at least one high or critical finding
    2   configuration or usage error
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import textwrap
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from memsafety import __version__
from memsafety.config import DEFAULT_CONFIG, load_config
from memsafety.detectors import DEFAULT_REGISTRY
from memsafety.engine import Analyzer
from memsafety.errors import ConfigError
from memsafety.report import AnalysisResult

logger = logging.getLogger("memsafety")

SOURCE_EXTENSIONS = frozenset({".c", ".cpp", ".cc", ".cxx", ".h", ".hpp", ".hxx"})

_SKIP_DIRS = frozenset({"node_modules"})

EXIT_CLEAN = 0
EXIT_FINDINGS = 1
EXIT_USAGE = 2


def iter_source_files(paths: Sequence[str]) -> Iterator[Path]:
    """Files named directly, then C/C++ sources found under directories."""
    for raw in paths:
        path = Path(raw)
        if path.is_file():
            yield path
            continue
        for root, dirs, files in os.walk(path):
            dirs[:] = sorted(
                d for d in dirs if not d.startswith(".") and d not in _SKIP_DIRS
            )
            for name in sorted(files):
                if Path(name).suffix.lower() in SOURCE_EXTENSIONS:
                    yield Path(root) / name


def _list_detectors() -> None:
    for name in DEFAULT_REGISTRY.names:
        cls = DEFAULT_REGISTRY.get_by_name(name)
        if cls is None:
            continue
        ids = ", ".join(sorted(cls.error_ids))
        cwes = ", ".join(f"CWE-{v}" for v in sorted(set(cls.cwe_ids.values())))
        print(f"  {name:18s} {cls.description}")
        print(f"  {'':18s} IDs: {ids}")
        print(f"  {'':18s} CWEs: {cwes}")
        print()


def _write_results(results: List[AnalysisResult], fmt: str) -> None:
    out = sys.stdout
    if fmt == "json":
        for result in results:
            for finding in result.findings:
                out.write(finding.to_json_str() + "\n")
    elif fmt == "gcc":
        for result in results:
            for finding in result.findings:
                out.write(finding.to_gcc_format() + "\n")
    else:
        total = 0
        for result in results:
            out.write(result.summary_text() + "\n")
            total += result.total_count
        out.write(f"{len(results)} files analyzed, {total} findings\n")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the memsafety CLI."""
    parser = argparse.ArgumentParser(
        prog="memsafety",
        description="Static memory-safety analysis for C/C++ sources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              %(prog)s src/
              %(prog)s --format gcc main.c util.c
              %(prog)s --config memsafety.sexp --suppress memleak src/
              %(prog)s --list-detectors
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "paths",
        nargs="*",
        help="Source files or directories to analyze",
    )
    parser.add_argument(
        "--format",
        choices=["json", "gcc", "summary"],
        default="gcc",
        help="Output format (default: gcc)",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="S-expression configuration file",
    )
    parser.add_argument(
        "--suppress",
        nargs="*",
        default=[],
        metavar="ID",
        help="Error ids or finding kinds to suppress",
    )
    parser.add_argument(
        "--detectors",
        nargs="*",
        default=None,
        metavar="NAME",
        help="Detectors to run (default: all)",
    )
    parser.add_argument(
        "-j", "--jobs",
        type=int,
        default=1,
        help="Number of files analyzed in parallel",
    )
    parser.add_argument(
        "--list-detectors",
        action="store_true",
        default=False,
        help="List available detectors and exit",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        default=False,
        help="Show debug logging and analysis notes",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the memsafety CLI.

    Returns the process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.list_detectors:
        _list_detectors()
        return EXIT_CLEAN

    if not args.paths:
        parser.print_usage(sys.stderr)
        sys.stderr.write("memsafety: error: no input paths given\n")
        return EXIT_USAGE

    missing = [p for p in args.paths if not os.path.exists(p)]
    if missing:
        for p in missing:
            sys.stderr.write(f"memsafety: error: no such file or directory: {p}\n")
        return EXIT_USAGE

    if args.jobs < 1:
        sys.stderr.write("memsafety: error: --jobs must be at least 1\n")
        return EXIT_USAGE

    try:
        config = load_config(args.config) if args.config else DEFAULT_CONFIG
    except ConfigError as e:
        sys.stderr.write(f"memsafety: error: {e}\n")
        for problem in e.problems:
            sys.stderr.write(f"  - {problem}\n")
        return EXIT_USAGE

    analyzer = Analyzer(config, detectors=args.detectors)
    files = list(iter_source_files(args.paths))
    logger.debug("Analyzing %d files with %d jobs", len(files), args.jobs)

    def run(path: Path) -> AnalysisResult:
        return analyzer.analyze_file(path, suppress=args.suppress)

    try:
        if args.jobs > 1:
            with ThreadPoolExecutor(max_workers=args.jobs) as pool:
                results = list(pool.map(run, files))
        else:
            results = [run(path) for path in files]

        for result in results:
            for note in result.notes:
                logger.info("%s: %s", result.file, note)

        _write_results(results, args.format)
    except KeyboardInterrupt:
        sys.stderr.write("\nInterrupted.\n")
        return 130
    except BrokenPipeError:
        # Handle piping to head, etc.
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        return EXIT_CLEAN

    return EXIT_FINDINGS if any(r.has_errors for r in results) else EXIT_CLEAN


if __name__ == "__main__":
    sys.exit(main())
