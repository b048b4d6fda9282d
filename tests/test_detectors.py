# tests/test_detectors.py
"""
Tests for the detector framework (registry, runner, failure isolation) and
for the severity / confidence rules of the three production detectors.
"""

import pytest

import memsafety
from memsafety.config import AnalyzerConfig
from memsafety.detectors import (
    DEFAULT_REGISTRY,
    CorruptionDetector,
    Detector,
    DetectorContext,
    DetectorRegistry,
    DetectorRunner,
    LeakDetector,
    UseAfterFreeDetector,
)
from memsafety.diagnostics import Confidence, FindingKind, Severity
from memsafety.engine import Analyzer
from memsafety.lifecycle import track_lifecycles

from conftest import c_source, classify


def context(src: bytes) -> DetectorContext:
    ops, skeleton = classify(src)
    return DetectorContext(
        text=src.decode("latin-1"),
        tree=skeleton.tree,
        operations=tuple(ops),
        lifecycles=track_lifecycles(skeleton.tree, ops),
    )


def only(src: bytes):
    result = memsafety.analyze(src)
    assert len(result) == 1, result.to_gcc_format()
    return result.findings[0]


class BoomDetector(Detector):
    name = "boom"
    description = "Always fails"

    def collect_evidence(self, ctx):
        pass

    def diagnose(self, ctx):
        raise RuntimeError("kaboom")


# ═════════════════════════════════════════════════════════════════════════
#  Framework
# ═════════════════════════════════════════════════════════════════════════

class TestRegistry:

    def test_default_registry_contents(self):
        assert DEFAULT_REGISTRY.names == ["corruption", "leak", "use-after-free"]
        assert DEFAULT_REGISTRY.get_by_name("use-after-free") is UseAfterFreeDetector

    def test_registration_order_and_lookup(self):
        registry = DetectorRegistry()
        registry.register(LeakDetector)
        registry.register(CorruptionDetector)
        assert registry.get_all() == [LeakDetector, CorruptionDetector]
        assert registry.names == ["corruption", "leak"]
        assert registry.get_by_name("leak") is LeakDetector
        assert registry.get_by_name("missing") is None

    def test_reregistering_replaces(self):
        registry = DetectorRegistry()
        registry.register(LeakDetector)
        registry.register(LeakDetector)
        assert registry.get_all() == [LeakDetector]

    def test_error_ids_are_disjoint(self):
        ids = [cls.error_ids for cls in DEFAULT_REGISTRY.get_all()]
        assert sum(len(i) for i in ids) == len(frozenset().union(*ids))

    def test_repr(self):
        assert repr(LeakDetector()) == "<LeakDetector 'leak'>"


class TestRunner:

    def test_results_follow_registry_order(self, leaky_source):
        results = DetectorRunner().run(context(leaky_source))
        assert results.detector_names == ["leak", "use-after-free", "corruption"]
        assert [f.detector for f in results.findings] == ["leak"]
        assert results.findings_by_detector["corruption"] == []
        assert "leak_elapsed_ms" in results.stats

    def test_select_by_name(self, leaky_source):
        results = DetectorRunner().run(context(leaky_source), detectors=["corruption", "nope"])
        assert results.detector_names == ["corruption"]
        assert results.findings == []

    def test_empty_selection(self, leaky_source):
        results = DetectorRunner().run(context(leaky_source), detectors=[])
        assert results.detector_names == []

    def test_failing_detector_is_isolated(self, leaky_source):
        registry = DetectorRegistry()
        registry.register(LeakDetector)
        registry.register(BoomDetector)
        result = Analyzer(registry=registry).analyze(leaky_source)
        assert [f.error_id for f in result] == ["memleak"]
        assert "detector 'boom' failed: kaboom" in result.notes

    def test_single_worker(self, literal_scenario):
        results = DetectorRunner(max_workers=1).run(context(literal_scenario))
        assert len(results.findings) == 1


# ═════════════════════════════════════════════════════════════════════════
#  Leak detector
# ═════════════════════════════════════════════════════════════════════════

class TestLeakDetector:

    def test_function_scope_leak(self, leaky_source):
        f = only(leaky_source)
        assert f.kind is FindingKind.LEAK
        assert f.error_id == "memleak"
        assert f.severity is Severity.HIGH
        assert f.confidence is Confidence.HIGH
        assert f.cwe == 401
        assert f.variable == "p"
        assert f.location.line == 2
        assert f.snippet == "char *p = malloc(16);"
        assert f.description == (
            "Memory leak: 'p' allocated by malloc is not freed before the end "
            "of function 'f'"
        )

    def test_translation_unit_leak(self):
        f = only(b"char *g = malloc(4);")
        assert f.severity is Severity.MEDIUM
        assert f.description.endswith("the translation unit")

    def test_nested_block_leak(self):
        f = only(b"void f(void) { { char *p = malloc(4); } }")
        assert f.severity is Severity.MEDIUM
        assert f.description.endswith("the block scope at line 1")

    def test_conditional_allocation(self):
        f = only(b"void f(int c) { char *p; if (c) p = malloc(4); }")
        assert f.severity is Severity.LOW
        assert f.confidence is Confidence.MEDIUM

    @pytest.mark.parametrize("header, kind", [
        ("if (c)", "branch"),
        ("while (c--)", "loop"),
    ])
    def test_allocation_declared_in_conditional_scope(self, header, kind):
        f = only(f"void f(int c) {{ {header} {{ char *p = malloc(4); }} }}".encode())
        assert f.severity is Severity.LOW
        assert f.description.endswith(f"the {kind} scope at line 1")

    def test_overwritten_allocation(self):
        f = only(c_source("""
            void f(void) {
                char *p = malloc(4);
                p = malloc(8);
                free(p);
            }
        """))
        assert f.error_id == "memleakOnReassign"
        assert f.severity is Severity.HIGH
        assert f.location.line == 2
        assert "overwritten at line 3" in f.description

    @pytest.mark.parametrize("src", [
        b"void f(void) { char *p = malloc(4); free(p); }",
        b"char *f(void) { char *p = malloc(4); return p; }",
        b"void f(void) { char *p = malloc(4); keep(p); }",
        b"void f(struct s *s) { char *p = malloc(4); s->buf = p; }",
    ])
    def test_released_or_escaped(self, src):
        assert len(memsafety.analyze(src)) == 0

    def test_unclosed_scope_is_a_note(self):
        result = memsafety.analyze(b"void f(void) { char *p = malloc(4);")
        assert len(result) == 0
        assert "function scope opened at line 1 is never closed" in result.notes
        assert any(n.startswith("leak candidate for 'p' (line 1) dropped") for n in result.notes)


# ═════════════════════════════════════════════════════════════════════════
#  Use-after-free detector
# ═════════════════════════════════════════════════════════════════════════

class TestUseAfterFreeDetector:

    def test_definite_use(self):
        f = only(b"void f(void) { char *p = malloc(4); free(p); p[0] = 1; }")
        assert f.kind is FindingKind.USE_AFTER_FREE
        assert f.error_id == "useAfterFree"
        assert f.severity is Severity.HIGH
        assert f.confidence is Confidence.HIGH
        assert f.cwe == 416
        assert f.description == "Use of 'p' after free (freed at line 1)"

    def test_free_on_one_path(self):
        f = only(b"void f(int c) { char *p = malloc(4); if (c) free(p); p[0] = 1; }")
        assert f.kind is FindingKind.USE_AFTER_FREE
        assert f.confidence is Confidence.MEDIUM

    def test_dangling_escape(self, literal_scenario):
        f = only(literal_scenario)
        assert f.error_id == "danglingEscape"
        assert f.confidence is Confidence.MEDIUM
        assert f.description == "Freed pointer 'p' escapes via call to use() (freed at line 1)"
        assert f.offset == literal_scenario.rindex(b"use(p)") + 4

    def test_dangling_return(self):
        f = only(b"char *f(void) { char *p = malloc(4); free(p); return p; }")
        assert f.error_id == "danglingEscape"
        assert "escapes via return" in f.description

    def test_reallocated_on_one_path(self):
        f = only(c_source("""
            void f(int c) {
                char *p = malloc(4);
                free(p);
                if (c) {
                    p = malloc(8);
                }
                p[0] = 1;
                free(p);
            }
        """))
        assert f.confidence is Confidence.LOW
        assert f.description.startswith("Possible use of 'p' after free (freed at line 3")


# ═════════════════════════════════════════════════════════════════════════
#  Corruption detector
# ═════════════════════════════════════════════════════════════════════════

class TestCorruptionDetector:

    def test_double_free(self):
        f = only(b"void f(void) { char *p = malloc(4); free(p); free(p); }")
        assert f.kind is FindingKind.CORRUPTION
        assert f.error_id == "doubleFree"
        assert f.severity is Severity.CRITICAL
        assert f.confidence is Confidence.HIGH
        assert f.cwe == 415

    def test_conditional_double_free(self):
        f = only(b"void f(int c) { char *p = malloc(4); if (c) free(p); free(p); }")
        assert f.error_id == "doubleFree"
        assert f.confidence is Confidence.MEDIUM

    def test_copy_overflow(self):
        f = only(b'void f(void) { char *b = malloc(4); strcpy(b, "hello"); free(b); }')
        assert f.error_id == "bufferOverflow"
        assert f.severity is Severity.HIGH
        assert f.cwe == 787
        assert f.description == "Buffer overflow: strcpy writes 6 bytes into 'b' allocated with 4"

    def test_index_overflow(self):
        f = only(b"void f(void) { char *b = malloc(4); b[4] = 0; free(b); }")
        assert f.description == (
            "Buffer overflow: index 4 is out of bounds for 'b' allocated with 4"
        )

    def test_bounded_copy_within_size(self):
        src = b"void f(void) { char *b = malloc(16); memset(b, 0, 16); free(b); }"
        assert len(memsafety.analyze(src)) == 0


# ═════════════════════════════════════════════════════════════════════════
#  Suppressions through the pipeline
# ═════════════════════════════════════════════════════════════════════════

class TestSuppression:

    def test_inline_on_previous_line(self):
        src = c_source("""
            void f(void) {
                /* memsafety-suppress memleak */
                char *p = malloc(16);
            }
        """)
        assert len(memsafety.analyze(src)) == 0

    def test_inline_on_same_line_by_kind(self):
        src = b"void f(void) { char *p = malloc(16); /* memsafety-suppress leak */ }"
        assert len(memsafety.analyze(src)) == 0

    def test_inline_for_another_id(self, leaky_source):
        src = b"/* memsafety-suppress doubleFree */\n" + leaky_source
        assert len(memsafety.analyze(src)) == 1

    def test_global_from_call(self, literal_scenario):
        result = Analyzer().analyze(literal_scenario, suppress=["danglingEscape"])
        assert len(result) == 0

    def test_global_from_config(self, leaky_source):
        config = AnalyzerConfig(suppressed=frozenset({"memleak"}))
        assert len(Analyzer(config).analyze(leaky_source)) == 0
