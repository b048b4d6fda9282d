# tests/test_engine.py
"""
End-to-end tests of the public entry points: analyze, configure, analyzer
handles and batch analysis.
"""

import pytest

import memsafety
from memsafety import (
    Analyzer,
    ConfigError,
    ErrorCode,
    FindingKind,
    HandleInvalidError,
    Severity,
)

from conftest import c_source

MIXED = c_source("""
    void a(void) {
        char *p = malloc(8);
        free(p);
        free(p);
    }

    void b(void) {
        char *q = malloc(8);
        q[0] = 1;
    }
""")


class TestAnalyze:

    def test_literal_scenario(self, literal_scenario):
        result = memsafety.analyze(literal_scenario)
        assert [f.kind for f in result] == [FindingKind.USE_AFTER_FREE]
        assert result.findings[0].severity is Severity.HIGH
        assert result.by_kind(FindingKind.LEAK) == []
        assert result.by_kind(FindingKind.CORRUPTION) == []

    def test_mixed_buffer_is_ordered(self):
        result = memsafety.analyze(MIXED)
        assert [(f.error_id, f.location.line) for f in result] == [
            ("doubleFree", 4),
            ("memleak", 8),
        ]
        offsets = [f.offset for f in result]
        assert offsets == sorted(offsets)
        assert all(0 <= off <= len(MIXED) for off in offsets)

    def test_repeated_runs_are_identical(self):
        first = memsafety.analyze(MIXED)
        second = memsafety.analyze(MIXED)
        assert first.to_dicts() == second.to_dicts()
        assert first.summary == second.summary

    def test_input_buffer_is_not_mutated(self):
        buf = bytearray(MIXED)
        memsafety.analyze(buf)
        assert bytes(buf) == MIXED

    def test_text_input(self):
        result = memsafety.analyze("void f(void) { char *p = malloc(4); }")
        assert len(result) == 1

    def test_empty_buffer(self):
        result = memsafety.analyze(b"")
        assert len(result) == 0
        assert result.notes == ("empty buffer",)

    def test_unsupported_input_type(self):
        result = memsafety.analyze(42)
        assert len(result) == 0
        assert result.notes[0].startswith("cannot analyze a int")

    @pytest.mark.parametrize("src", [
        b"\x00\xff}{)(*&;",
        b"}}}}",
        b"{{{{",
        b"free(",
        b"p = ; = malloc",
        b"x = 'a",
    ])
    def test_malformed_input_never_raises(self, src):
        memsafety.analyze(src)

    def test_unterminated_string_is_noted(self):
        result = memsafety.analyze(b'x = "abc')
        assert "unterminated string starting at line 1" in result.notes

    def test_summary_statistics(self, leaky_source):
        summary = memsafety.analyze(leaky_source).summary
        assert summary["total"] == 1
        assert summary["functions"] == 1
        assert summary["scopes"] == 2
        assert summary["operations"] == 2
        assert summary["lifecycles"] == 1

    def test_detector_selection(self):
        result = Analyzer(detectors=["leak"]).analyze(MIXED)
        assert [f.error_id for f in result] == ["memleak"]

    def test_analyze_file(self, tmp_path):
        path = tmp_path / "leak.c"
        path.write_bytes(b"void f(void) { char *p = malloc(4); }\n")
        result = memsafety.analyze_file(path)
        assert result.file == str(path)
        assert result.findings[0].location.file == str(path)

    def test_analyze_missing_file(self, tmp_path):
        result = memsafety.analyze_file(tmp_path / "absent.c")
        assert len(result) == 0
        assert result.notes[0].startswith("cannot read file")


class TestConfigure:

    def test_custom_names(self):
        memsafety.configure(["my_alloc"], ["my_free"])
        src = b"void f(void) { char *p = my_alloc(4); my_free(p); my_free(p); }"
        assert [f.error_id for f in memsafety.analyze(src)] == ["doubleFree"]

    def test_replaced_names_are_no_longer_primitives(self):
        memsafety.configure(["my_alloc"], ["my_free"])
        assert len(memsafety.analyze(b"void f(void) { char *q = malloc(4); }")) == 0

    def test_empty_set_is_rejected(self):
        with pytest.raises(ConfigError) as exc:
            memsafety.configure([], ["free"])
        assert exc.value.code is ErrorCode.EMPTY_NAME_SET

    def test_failed_configure_keeps_previous(self):
        memsafety.configure(["my_alloc"], ["my_free"])
        before = memsafety.get_config()
        with pytest.raises(ConfigError) as exc:
            memsafety.configure(["x"], ["x"])
        assert exc.value.code is ErrorCode.CONFLICTING_NAME_SETS
        assert memsafety.get_config() is before

    def test_same_names_change_nothing(self):
        before = memsafety.analyze(MIXED).to_dicts()
        current = memsafety.get_config()
        memsafety.configure(current.allocators, current.deallocators)
        assert memsafety.analyze(MIXED).to_dicts() == before

    def test_reset(self):
        memsafety.configure(["my_alloc"], ["my_free"])
        memsafety.reset_config()
        assert memsafety.get_config() == memsafety.DEFAULT_CONFIG


class TestHandles:

    def test_handles_are_distinct(self):
        a, b = memsafety.create(), memsafety.create()
        assert a != b
        memsafety.destroy(a)
        memsafety.destroy(b)

    def test_handle_snapshots_configuration(self, leaky_source):
        handle = memsafety.create()
        memsafety.configure(["my_alloc"], ["my_free"])
        assert len(memsafety.analyze_with(handle, leaky_source)) == 1
        assert len(memsafety.analyze(leaky_source)) == 0
        memsafety.destroy(handle)

    def test_use_after_destroy(self, leaky_source):
        handle = memsafety.create()
        memsafety.destroy(handle)
        with pytest.raises(HandleInvalidError) as exc:
            memsafety.analyze_with(handle, leaky_source)
        assert exc.value.code is ErrorCode.HANDLE_INVALID
        with pytest.raises(HandleInvalidError):
            memsafety.destroy(handle)

    def test_unknown_handle(self):
        with pytest.raises(HandleInvalidError):
            memsafety.analyze_with(-1, b"x;")


class TestAnalyzeMany:

    def test_order_is_preserved(self, leaky_source, literal_scenario):
        results = memsafety.analyze_many([leaky_source, b"int x;", literal_scenario])
        assert [len(r) for r in results] == [1, 0, 1]
        assert results[2].findings[0].kind is FindingKind.USE_AFTER_FREE

    def test_concurrent_results_match_serial(self):
        serial = memsafety.analyze(MIXED).to_dicts()
        results = memsafety.analyze_many([MIXED] * 16, max_workers=4)
        assert all(r.to_dicts() == serial for r in results)

    def test_empty_batch(self):
        assert memsafety.analyze_many([]) == []
