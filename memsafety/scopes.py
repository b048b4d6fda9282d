# memsafety/scopes.py
"""
Scope & control-flow skeleton.

A single left-to-right pass over the significant tokens builds a tree of
scopes from matching ``{`` / ``}`` pairs and tags every token with the id of
its innermost enclosing scope.  The tree is coarse on purpose: it is enough
to know which operations share a block, where each block ends (the leak
boundary), and whether an operation sits under a branch or loop.

Scope kinds
───────────
  FUNCTION   body of a function definition (parenthesized header, not
             nested inside another function)
  BRANCH     ``if`` / ``else`` / ``switch`` / ``catch`` bodies
  LOOP       ``for`` / ``while`` / ``do`` bodies
  BLOCK      everything else: the file itself, bare blocks, aggregates,
             namespaces, lambdas

A control header followed by a single statement instead of a brace
(``if (err) free(p);``) gets a *virtual* scope that ends at the statement's
``;``.  Operations inside BRANCH/LOOP scopes are only *possibly executed*;
downstream this lowers confidence and severity but never hides a finding.

Malformed nesting is tolerated: a stray ``}`` at file level is ignored and a
scope that is never closed keeps ``end_offset=None``.  Both are recorded as
anomalies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple

from memsafety.tokenizer import Token, TokenKind

logger = logging.getLogger(__name__)


class ScopeKind(Enum):
    FUNCTION = "function"
    BRANCH = "branch"
    LOOP = "loop"
    BLOCK = "block"

    @property
    def is_conditional(self) -> bool:
        return self in (ScopeKind.BRANCH, ScopeKind.LOOP)


@dataclass(frozen=True)
class Scope:
    id: int
    parent_id: Optional[int]
    start_offset: int
    end_offset: Optional[int]
    kind: ScopeKind
    line: int = 1
    name: str = ""
    virtual: bool = False

    @property
    def is_closed(self) -> bool:
        return self.end_offset is not None

    def contains(self, offset: int) -> bool:
        if offset < self.start_offset:
            return False
        return self.end_offset is None or offset < self.end_offset


class ScopeTree:
    """Read-only tree of scopes indexed by id; the root has id 0."""

    def __init__(self, scopes: Sequence[Scope]) -> None:
        self._scopes: Tuple[Scope, ...] = tuple(scopes)
        self._depth: List[int] = []
        for scope in self._scopes:
            parent = scope.parent_id
            self._depth.append(0 if parent is None else self._depth[parent] + 1)

    def __getitem__(self, scope_id: int) -> Scope:
        return self._scopes[scope_id]

    def __len__(self) -> int:
        return len(self._scopes)

    def __iter__(self) -> Iterator[Scope]:
        return iter(self._scopes)

    @property
    def root(self) -> Scope:
        return self._scopes[0]

    def get(self, scope_id: int) -> Optional[Scope]:
        if 0 <= scope_id < len(self._scopes):
            return self._scopes[scope_id]
        return None

    def chain(self, scope_id: int) -> Iterator[Scope]:
        """The scope itself, then each ancestor up to the root."""
        current: Optional[int] = scope_id
        while current is not None:
            scope = self._scopes[current]
            yield scope
            current = scope.parent_id

    def is_within(self, inner_id: int, outer_id: int) -> bool:
        return any(s.id == outer_id for s in self.chain(inner_id))

    def enclosing_function(self, scope_id: int) -> Optional[Scope]:
        for scope in self.chain(scope_id):
            if scope.kind is ScopeKind.FUNCTION:
                return scope
        return None

    def is_conditional_between(self, inner_id: int, outer_id: int) -> bool:
        """True if a BRANCH/LOOP scope lies on the path from *inner_id* up to
        (but excluding) *outer_id*."""
        for scope in self.chain(inner_id):
            if scope.id == outer_id:
                return False
            if scope.kind.is_conditional:
                return True
        return False

    def functions(self) -> List[Scope]:
        return [s for s in self._scopes if s.kind is ScopeKind.FUNCTION]

    def exits(self) -> List[Scope]:
        """Every non-root scope in the order its end is reached.

        Scopes sharing an end offset (nested virtual scopes) are ordered
        innermost first.  Unclosed scopes come last.
        """
        n = float("inf")
        return sorted(
            (s for s in self._scopes[1:]),
            key=lambda s: (n if s.end_offset is None else s.end_offset, -self._depth[s.id]),
        )


@dataclass(frozen=True)
class ScopeSkeleton:
    """Result of tracking: the tree plus a scope id per significant token."""
    tree: ScopeTree
    scope_of: Tuple[int, ...]
    anomalies: Tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

_PAREN_CONTROL = {
    "if": ScopeKind.BRANCH,
    "switch": ScopeKind.BRANCH,
    "catch": ScopeKind.BRANCH,
    "for": ScopeKind.LOOP,
    "while": ScopeKind.LOOP,
}

_BARE_CONTROL = {
    "else": ScopeKind.BRANCH,
    "do": ScopeKind.LOOP,
}

_AGGREGATE_KEYWORDS = frozenset({"struct", "class", "union", "enum", "namespace"})

_TRAILING_QUALIFIERS = frozenset({"const", "noexcept", "override", "final", "volatile"})


@dataclass
class _Open:
    id: int
    parent_id: Optional[int]
    start: int
    kind: ScopeKind
    line: int
    name: str = ""
    virtual: bool = False
    control_body: bool = False
    end: Optional[int] = None


@dataclass
class _TrackerState:
    scopes: List[_Open] = field(default_factory=list)
    stack: List[_Open] = field(default_factory=list)
    anomalies: List[str] = field(default_factory=list)


class ScopeTracker:
    """
    Builds a :class:`ScopeSkeleton` from a token sequence.

    Only significant tokens are expected (comments removed); strings are
    harmless since they never look like braces.
    """

    def track(self, tokens: Sequence[Token], buffer_length: int) -> ScopeSkeleton:
        st = _TrackerState()
        root = _Open(id=0, parent_id=None, start=0, kind=ScopeKind.BLOCK, line=1)
        st.scopes.append(root)
        st.stack.append(root)

        scope_of: List[int] = []
        header: List[Token] = []
        paren_depth = 0
        pending: Optional[ScopeKind] = None
        pending_from = ""
        pending_paren: Optional[int] = None   # paren depth the header opened at
        awaiting_body = False

        for i, tok in enumerate(tokens):
            if pending is not None and awaiting_body:
                if tok.kind is TokenKind.SCOPE_OPEN:
                    self._open(st, tok, pending, control_body=True)
                    pending = None
                    awaiting_body = False
                    scope_of.append(st.stack[-1].id)
                    header = []
                    continue
                if tok.is_op(";"):
                    # empty body, e.g. the tail of ``do { } while (x);``
                    pending = None
                    awaiting_body = False
                elif pending_from == "else" and tok.text == "if":
                    pending = None
                    awaiting_body = False
                else:
                    self._open(st, tok, pending, virtual=True)
                    pending = None
                    awaiting_body = False

            scope_of.append(st.stack[-1].id)
            kind = tok.kind

            if kind is TokenKind.IDENTIFIER:
                if tok.text in _PAREN_CONTROL:
                    pending = _PAREN_CONTROL[tok.text]
                    pending_from = tok.text
                    pending_paren = None
                    awaiting_body = False
                elif tok.text in _BARE_CONTROL:
                    pending = _BARE_CONTROL[tok.text]
                    pending_from = tok.text
                    awaiting_body = True
                header.append(tok)

            elif kind is TokenKind.CALL_OPEN:
                if pending is not None and not awaiting_body and pending_paren is None:
                    pending_paren = paren_depth
                paren_depth += 1
                header.append(tok)

            elif kind is TokenKind.CALL_CLOSE:
                paren_depth = max(0, paren_depth - 1)
                if (pending is not None and not awaiting_body
                        and pending_paren is not None and paren_depth == pending_paren):
                    awaiting_body = True
                header.append(tok)

            elif kind is TokenKind.SCOPE_OPEN:
                scope_kind, name = self._classify_header(st, header)
                self._open(st, tok, scope_kind, name=name)
                scope_of[-1] = st.stack[-1].id
                header = []

            elif kind is TokenKind.SCOPE_CLOSE:
                closed = self._close_brace(st, tok)
                nxt = tokens[i + 1] if i + 1 < len(tokens) else None
                header = []
                # A braced control body completes the statement of any
                # virtual scope around it, unless an ``else`` continues it.
                if (closed is not None and closed.control_body
                        and (nxt is None or nxt.text != "else")):
                    self._close_virtual(st, tok.end)

            else:
                if tok.is_op(";") and paren_depth == 0:
                    self._close_virtual(st, tok.end)
                    header = []
                else:
                    header.append(tok)

            # A paren-control keyword not followed by '(' is not a header.
            if (pending is not None and not awaiting_body and pending_paren is None
                    and kind is not TokenKind.CALL_OPEN and tok.text != pending_from):
                pending = None

        self._close_virtual(st, buffer_length)
        for scope in st.stack[1:]:
            st.anomalies.append(
                f"{scope.kind.value} scope opened at line {scope.line} is never closed"
            )
        root.end = buffer_length

        tree = ScopeTree([
            Scope(
                id=s.id,
                parent_id=s.parent_id,
                start_offset=s.start,
                end_offset=s.end,
                kind=s.kind,
                line=s.line,
                name=s.name,
                virtual=s.virtual,
            )
            for s in st.scopes
        ])
        logger.debug(
            "Scope tracking: %d scopes, %d functions, %d anomalies",
            len(tree), len(tree.functions()), len(st.anomalies),
        )
        return ScopeSkeleton(tree=tree, scope_of=tuple(scope_of),
                             anomalies=tuple(st.anomalies))

    # ── helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _open(
        st: _TrackerState,
        tok: Token,
        kind: ScopeKind,
        *,
        name: str = "",
        virtual: bool = False,
        control_body: bool = False,
    ) -> None:
        scope = _Open(
            id=len(st.scopes),
            parent_id=st.stack[-1].id,
            start=tok.offset,
            kind=kind,
            line=tok.line,
            name=name,
            virtual=virtual,
            control_body=control_body,
        )
        st.scopes.append(scope)
        st.stack.append(scope)

    @staticmethod
    def _close_virtual(st: _TrackerState, end: int) -> None:
        while len(st.stack) > 1 and st.stack[-1].virtual:
            st.stack.pop().end = end

    def _close_brace(self, st: _TrackerState, tok: Token) -> Optional[_Open]:
        # Virtual scopes still open here belong to an unterminated statement.
        self._close_virtual(st, tok.offset)
        if len(st.stack) == 1:
            st.anomalies.append(f"unbalanced '}}' at line {tok.line}")
            return None
        closed = st.stack.pop()
        closed.end = tok.end
        return closed

    @staticmethod
    def _classify_header(st: _TrackerState, header: List[Token]) -> Tuple[ScopeKind, str]:
        if not header:
            return ScopeKind.BLOCK, ""
        if any(t.text in _AGGREGATE_KEYWORDS for t in header) and not header[-1].text == ")":
            return ScopeKind.BLOCK, ""
        if any(t.is_op("=") for t in header):
            return ScopeKind.BLOCK, ""

        last = len(header) - 1
        while last >= 0 and header[last].text in _TRAILING_QUALIFIERS:
            last -= 1
        if last < 0 or header[last].kind is not TokenKind.CALL_CLOSE:
            return ScopeKind.BLOCK, ""

        inside_function = any(s.kind is ScopeKind.FUNCTION for s in st.stack)
        if inside_function:
            return ScopeKind.BLOCK, ""

        name = ""
        for j, t in enumerate(header):
            if t.kind is TokenKind.CALL_OPEN:
                if j > 0 and header[j - 1].kind is TokenKind.IDENTIFIER:
                    name = header[j - 1].text
                break
        return ScopeKind.FUNCTION, name


__all__ = ["ScopeKind", "Scope", "ScopeTree", "ScopeSkeleton", "ScopeTracker"]
