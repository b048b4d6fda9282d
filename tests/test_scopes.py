# tests/test_scopes.py
"""
Tests for the scope tracker: scope kinds from headers, virtual
single-statement bodies, per-token scope tagging, and anomaly recording
for malformed nesting.
"""

import pytest

from memsafety.scopes import ScopeKind, ScopeTracker
from memsafety.tokenizer import tokenize

from conftest import c_source


def track(src: bytes):
    tokens = list(tokenize(src).significant())
    return tokens, ScopeTracker().track(tokens, len(src))


def scope_of_text(tokens, skeleton, text, nth=0):
    """Scope of the *nth* token whose text is *text*."""
    hits = [i for i, t in enumerate(tokens) if t.text == text]
    return skeleton.tree[skeleton.scope_of[hits[nth]]]


class TestScopeKinds:

    def test_root_is_a_block_spanning_the_buffer(self):
        src = b"int x;"
        _, sk = track(src)
        root = sk.tree.root
        assert root.id == 0
        assert root.parent_id is None
        assert root.kind is ScopeKind.BLOCK
        assert root.end_offset == len(src)

    def test_function_scope_and_name(self):
        _, sk = track(c_source("""
            static char *make_buffer(size_t n) {
                return 0;
            }
        """))
        funcs = sk.tree.functions()
        assert len(funcs) == 1
        assert funcs[0].name == "make_buffer"
        assert funcs[0].parent_id == 0

    @pytest.mark.parametrize("header, kind", [
        ("if (x)", ScopeKind.BRANCH),
        ("switch (x)", ScopeKind.BRANCH),
        ("while (x)", ScopeKind.LOOP),
        ("for (i = 0; i < n; i++)", ScopeKind.LOOP),
    ])
    def test_control_headers(self, header, kind):
        tokens, sk = track(f"void f(void) {{ {header} {{ y = 1; }} }}".encode())
        assert scope_of_text(tokens, sk, "y").kind is kind

    def test_case_labels_share_the_switch_scope(self):
        tokens, sk = track(b"void f(int k) { switch (k) { case 1: x = 1; break; default: y = 2; } }")
        x_scope = scope_of_text(tokens, sk, "x")
        assert x_scope.kind is ScopeKind.BRANCH
        assert scope_of_text(tokens, sk, "y").id == x_scope.id

    def test_else_and_do_bodies(self):
        tokens, sk = track(b"void f(void) { if (a) { x = 1; } else { y = 2; } do { z = 3; } while (b); }")
        assert scope_of_text(tokens, sk, "x").kind is ScopeKind.BRANCH
        assert scope_of_text(tokens, sk, "y").kind is ScopeKind.BRANCH
        assert scope_of_text(tokens, sk, "z").kind is ScopeKind.LOOP

    def test_nested_braces_inside_function_are_blocks(self):
        tokens, sk = track(b"void f(void) { { x = 1; } }")
        inner = scope_of_text(tokens, sk, "x")
        assert inner.kind is ScopeKind.BLOCK
        assert sk.tree[inner.parent_id].kind is ScopeKind.FUNCTION

    def test_struct_and_initializer_are_blocks(self):
        tokens, sk = track(b"struct s { int a; }; int v[] = { 1, 2 };")
        assert sk.tree.functions() == []
        assert scope_of_text(tokens, sk, "a").kind is ScopeKind.BLOCK

    def test_function_with_trailing_const(self):
        _, sk = track(b"int S::get() const { return 1; }")
        assert [f.name for f in sk.tree.functions()] == ["get"]


class TestVirtualScopes:

    def test_braceless_if_body(self):
        tokens, sk = track(b"void f(void) { if (err) free(p); use(p); }")
        body = scope_of_text(tokens, sk, "free")
        assert body.virtual
        assert body.kind is ScopeKind.BRANCH
        semicolon = [t for t in tokens if t.text == ";"][0]
        assert body.end_offset == semicolon.end
        assert scope_of_text(tokens, sk, "use").kind is ScopeKind.FUNCTION

    def test_header_tokens_belong_to_the_enclosing_scope(self):
        tokens, sk = track(b"void f(void) { if (err) free(p); }")
        assert scope_of_text(tokens, sk, "err").kind is ScopeKind.FUNCTION

    def test_else_if_chain(self):
        tokens, sk = track(b"void f(void) { if (a) x = 1; else if (b) y = 2; else z = 3; w = 4; }")
        for name in ("x", "y", "z"):
            assert scope_of_text(tokens, sk, name).kind is ScopeKind.BRANCH
        assert scope_of_text(tokens, sk, "w").kind is ScopeKind.FUNCTION

    def test_nested_virtual_scopes_close_together(self):
        tokens, sk = track(b"void f(void) { for (;;) if (a) free(p); q = 1; }")
        inner = scope_of_text(tokens, sk, "free")
        outer = sk.tree[inner.parent_id]
        assert inner.kind is ScopeKind.BRANCH and inner.virtual
        assert outer.kind is ScopeKind.LOOP and outer.virtual
        assert inner.end_offset == outer.end_offset
        assert scope_of_text(tokens, sk, "q").kind is ScopeKind.FUNCTION

    def test_exits_are_innermost_first(self):
        _, sk = track(b"void f(void) { for (;;) if (a) free(p); }")
        exits = sk.tree.exits()
        kinds = [s.kind for s in exits]
        assert kinds == [ScopeKind.BRANCH, ScopeKind.LOOP, ScopeKind.FUNCTION]


class TestTreeQueries:

    def test_chain_and_is_within(self):
        tokens, sk = track(b"void f(void) { if (a) { x = 1; } }")
        branch = scope_of_text(tokens, sk, "x")
        chain = [s.kind for s in sk.tree.chain(branch.id)]
        assert chain == [ScopeKind.BRANCH, ScopeKind.FUNCTION, ScopeKind.BLOCK]
        func = sk.tree.functions()[0]
        assert sk.tree.is_within(branch.id, func.id)
        assert not sk.tree.is_within(func.id, branch.id)
        assert sk.tree.enclosing_function(branch.id) == func

    def test_is_conditional_between(self):
        tokens, sk = track(b"void f(void) { if (a) { { x = 1; } } y = 2; }")
        func = sk.tree.functions()[0]
        x_scope = scope_of_text(tokens, sk, "x")
        y_scope = scope_of_text(tokens, sk, "y")
        assert sk.tree.is_conditional_between(x_scope.id, func.id)
        assert not sk.tree.is_conditional_between(y_scope.id, func.id)

    def test_contains(self):
        _, sk = track(b"void f(void) { }")
        func = sk.tree.functions()[0]
        assert func.contains(func.start_offset)
        assert not func.contains(func.end_offset)


class TestAnomalies:

    def test_stray_closing_brace_is_ignored(self):
        tokens, sk = track(b"} int x; void f(void) { y = 1; }")
        assert any("unbalanced" in a for a in sk.anomalies)
        assert scope_of_text(tokens, sk, "y").kind is ScopeKind.FUNCTION

    def test_unclosed_scope_keeps_no_end(self):
        _, sk = track(b"void f(void) { x = 1;")
        func = sk.tree.functions()[0]
        assert func.end_offset is None
        assert not func.is_closed
        assert any("never closed" in a for a in sk.anomalies)

    def test_every_token_has_a_scope(self):
        tokens, sk = track(b"void f(void) { if (a) { b(); } else c(); }")
        assert len(sk.scope_of) == len(tokens)
        assert all(0 <= s < len(sk.tree) for s in sk.scope_of)
