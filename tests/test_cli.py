# tests/test_cli.py
"""
Tests for the command-line host: argument handling, file discovery, output
formats and exit status.
"""

import json

import pytest

from memsafety.__main__ import build_parser, iter_source_files, main

LEAK = b"void f(void) {\n    char *p = malloc(16);\n}\n"
CLEAN = b"void f(void) {\n    char *p = malloc(16);\n    free(p);\n}\n"


@pytest.fixture
def leak_file(tmp_path):
    path = tmp_path / "leak.c"
    path.write_bytes(LEAK)
    return path


@pytest.fixture
def clean_file(tmp_path):
    path = tmp_path / "clean.c"
    path.write_bytes(CLEAN)
    return path


class TestUsage:

    def test_no_paths(self, capsys):
        assert main([]) == 2
        assert "no input paths" in capsys.readouterr().err

    def test_missing_path(self, tmp_path, capsys):
        assert main([str(tmp_path / "absent.c")]) == 2
        assert "no such file or directory" in capsys.readouterr().err

    def test_bad_jobs(self, leak_file):
        assert main([str(leak_file), "-j", "0"]) == 2

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--version"])
        assert exc.value.code == 0
        assert "memsafety" in capsys.readouterr().out

    def test_list_detectors(self, capsys):
        assert main(["--list-detectors"]) == 0
        out = capsys.readouterr().out
        for name in ("leak", "use-after-free", "corruption"):
            assert name in out
        assert "CWE-401" in out

    def test_parser_defaults(self):
        args = build_parser().parse_args(["a.c"])
        assert args.format == "gcc"
        assert args.jobs == 1
        assert args.suppress == []
        assert args.detectors is None


class TestOutput:

    def test_gcc_format(self, leak_file, capsys):
        assert main([str(leak_file)]) == 1
        out = capsys.readouterr().out.splitlines()
        assert len(out) == 1
        assert out[0].startswith(f"{leak_file}:2:")
        assert out[0].endswith("[memleak]")
        assert ": high: " in out[0]

    def test_json_format(self, leak_file, capsys):
        assert main([str(leak_file), "--format", "json"]) == 1
        records = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
        assert [r["errorId"] for r in records] == ["memleak"]
        assert records[0]["location"]["file"] == str(leak_file)
        assert records[0]["cwe"] == 401

    def test_summary_format(self, leak_file, clean_file, capsys):
        main([str(leak_file), str(clean_file), "--format", "summary"])
        out = capsys.readouterr().out
        assert "2 files analyzed, 1 findings" in out
        assert f"{leak_file}: 1 findings" in out

    def test_clean_file(self, clean_file, capsys):
        assert main([str(clean_file)]) == 0
        assert capsys.readouterr().out == ""

    def test_medium_findings_exit_clean(self, tmp_path, capsys):
        path = tmp_path / "global.c"
        path.write_bytes(b"char *g = malloc(4);\n")
        assert main([str(path)]) == 0
        assert "[memleak]" in capsys.readouterr().out


class TestOptions:

    def test_suppress(self, leak_file, capsys):
        assert main([str(leak_file), "--suppress", "memleak"]) == 0
        assert capsys.readouterr().out == ""

    def test_detector_selection(self, leak_file):
        assert main([str(leak_file), "--detectors", "corruption"]) == 0

    def test_config_file(self, tmp_path, capsys):
        config = tmp_path / "memsafety.sexp"
        config.write_text("(memsafety (allocators pool_alloc) (deallocators pool_free))")
        src = tmp_path / "pool.c"
        src.write_bytes(b"void f(void) { char *p = pool_alloc(4); pool_free(p); pool_free(p); }\n")
        assert main([str(src), "--config", str(config)]) == 1
        assert "[doubleFree]" in capsys.readouterr().out

    def test_rejected_config(self, tmp_path, leak_file, capsys):
        config = tmp_path / "bad.sexp"
        config.write_text("(memsafety (allocators free))")
        assert main([str(leak_file), "--config", str(config)]) == 2
        err = capsys.readouterr().err
        assert "MEMS-1001" in err
        assert "names are both allocators and deallocators: free" in err

    def test_parallel_jobs_keep_order(self, tmp_path, capsys):
        for name in ("a.c", "b.c", "c.c"):
            (tmp_path / name).write_bytes(LEAK)
        assert main([str(tmp_path), "-j", "3"]) == 1
        out = capsys.readouterr().out.splitlines()
        assert [line.split(":")[0].rsplit("/", 1)[-1] for line in out] == ["a.c", "b.c", "c.c"]


class TestSourceDiscovery:

    def test_walk(self, tmp_path):
        (tmp_path / "a.c").write_bytes(b"")
        (tmp_path / "notes.txt").write_bytes(b"")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.h").write_bytes(b"")
        (tmp_path / ".hidden").mkdir()
        (tmp_path / ".hidden" / "c.c").write_bytes(b"")
        (tmp_path / "node_modules").mkdir()
        (tmp_path / "node_modules" / "d.c").write_bytes(b"")
        found = [p.relative_to(tmp_path).as_posix() for p in iter_source_files([str(tmp_path)])]
        assert found == ["a.c", "sub/b.h"]

    def test_named_file_is_always_included(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_bytes(b"")
        assert list(iter_source_files([str(path)])) == [path]
