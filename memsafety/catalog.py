# memsafety/catalog.py
"""
Allocation-site catalog: significant tokens → normalized ``Operation`` records.

The catalog classifies, it never judges.  It walks the token sequence one
statement at a time and recognizes five operation patterns:

  ALLOCATE   ``p = malloc(n)``, ``T *p = (T *) calloc(a, b)``, ``p = new T[n]``
  FREE       ``free(p)``, ``delete p``, ``delete[] p``
  ACCESS     ``*p``, ``p->f``, ``p.f``, ``p[i]``, ``memcpy(p, ...)``
  ESCAPE     ``return p``, ``q = p``, ``s->f = p``, ``unknown(p)``
  REASSIGN   ``p = <anything else>``, ``T *p;``

Which names are allocators, deallocators and known non-owning routines comes
from :class:`memsafety.config.AnalyzerConfig`.  Operations are emitted in
discovery order; inside an assignment the right-hand side is classified
before the binding of the left-hand side.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, NamedTuple, Optional, Sequence, Tuple

from memsafety.config import AnalyzerConfig, CopyRoutine, DEFAULT_CONFIG
from memsafety.tokenizer import Token, TokenKind

logger = logging.getLogger(__name__)


class OpKind(Enum):
    ALLOCATE = "allocate"
    FREE = "free"
    ACCESS = "access"
    REASSIGN = "reassign"
    ESCAPE = "escape"


class EscapeVia(Enum):
    CALL = "call"
    RETURN = "return"
    STORE = "store"


@dataclass(frozen=True)
class Operation:
    """
    One classified memory operation.

    Attributes
    ----------
    kind             : OpKind
    target           : variable name the operation applies to
    offset           : byte offset of the variable's token
    scope_id         : innermost enclosing scope at ``offset``
    line             : 1-based source line
    callee           : primitive or function involved (``malloc``, ``use``)
    escape_via       : how the handle escapes (ESCAPE only)
    declares         : the statement declares ``target``
    size             : literal allocation size in bytes/elements, if known
    write_length     : bytes written by a bounded-copy routine, if known
    index            : literal subscript written (``p[K] = ...``), if any
    self_referential : right-hand side mentions ``target``
    """
    kind: OpKind
    target: str
    offset: int
    scope_id: int
    line: int = 0
    callee: str = ""
    escape_via: Optional[EscapeVia] = None
    declares: bool = False
    size: Optional[int] = None
    write_length: Optional[int] = None
    index: Optional[int] = None
    self_referential: bool = False

    @property
    def is_write(self) -> bool:
        return self.write_length is not None or self.index is not None

    def __str__(self) -> str:
        via = f"/{self.escape_via.value}" if self.escape_via else ""
        return f"{self.kind.value}{via}({self.target})@{self.line}"


# ---------------------------------------------------------------------------
# Lexical tables
# ---------------------------------------------------------------------------

STATEMENT_KEYWORDS: FrozenSet[str] = frozenset({
    "if", "else", "while", "for", "do", "switch", "case", "default",
    "return", "goto", "break", "continue", "sizeof", "alignof", "typedef",
    "new", "delete", "throw", "try", "catch", "co_return",
})

TYPE_KEYWORDS: FrozenSet[str] = frozenset({
    "int", "char", "void", "short", "long", "float", "double", "signed",
    "unsigned", "const", "volatile", "static", "extern", "register", "auto",
    "struct", "union", "enum", "class", "inline", "bool", "_Bool",
    "restrict", "constexpr", "mutable",
})

_CONSTANTS: FrozenSet[str] = frozenset({"NULL", "nullptr", "true", "false"})

_NOT_A_VARIABLE = STATEMENT_KEYWORDS | TYPE_KEYWORDS | _CONSTANTS

_HEADER_KEYWORDS = frozenset({"if", "while", "for", "switch", "catch"})

_BARE_KEYWORDS = frozenset({"else", "do", "try"})

_TYPE_PUNCT = frozenset({"*", "&", "&&", "::", "<", ">", ","})

_INT_RE = re.compile(r"(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)[uUlL]*\Z")

_SIMPLE_ESCAPES = frozenset("abfnrtv\\'\"?e")


def parse_int_literal(text: str) -> Optional[int]:
    m = _INT_RE.match(text)
    if m is None:
        return None
    digits = m.group(1)
    if digits.startswith(("0x", "0X")):
        return int(digits, 16)
    if len(digits) > 1 and digits.startswith("0"):
        return int(digits, 8)
    return int(digits)


def string_literal_length(token: Token) -> Optional[int]:
    """Number of characters a C string literal denotes (without the NUL)."""
    if token.kind is not TokenKind.STRING_LITERAL or not token.terminated:
        return None
    body = token.text[1:-1]
    count = 0
    i = 0
    while i < len(body):
        if body[i] == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            if nxt == "x":
                i += 2
                while i < len(body) and body[i] in "0123456789abcdefABCDEF":
                    i += 1
            elif nxt in "01234567":
                i += 1
                digits = 0
                while i < len(body) and digits < 3 and body[i] in "01234567":
                    i += 1
                    digits += 1
            else:
                i += 2
        else:
            i += 1
        count += 1
    return count


class _Allocation(NamedTuple):
    callee: str
    size: Optional[int]
    args: List[Tuple[int, int]]


Span = Tuple[int, int]


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class OperationCatalog:
    """
    Recognizes allocation, free, access, escape and reassignment patterns.

    >>> from memsafety.tokenizer import tokenize
    >>> toks = list(tokenize(b"p = malloc(10); free(p);").significant())
    >>> [str(op) for op in OperationCatalog().classify(toks, [0] * len(toks))]
    ['allocate(p)@1', 'free(p)@1']
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None) -> None:
        self.config = config or DEFAULT_CONFIG

    def classify(self, tokens: Sequence[Token], scope_of: Sequence[int]) -> List[Operation]:
        ops = _CatalogPass(self.config, tokens, scope_of).run()
        logger.debug("Catalog: %d operations from %d tokens", len(ops), len(tokens))
        return ops


class _CatalogPass:
    """State of one classification pass over one token sequence."""

    def __init__(
        self,
        config: AnalyzerConfig,
        tokens: Sequence[Token],
        scope_of: Sequence[int],
    ) -> None:
        self.cfg = config
        self.toks = tokens
        self.scope_of = scope_of
        self.ops: List[Operation] = []
        self.match = self._match_groups(tokens)

    # ── driver ───────────────────────────────────────────────────────

    def run(self) -> List[Operation]:
        toks = self.toks
        n = len(toks)
        i = start = 0
        while i < n:
            t = toks[i]
            if t.kind in (TokenKind.SCOPE_OPEN, TokenKind.SCOPE_CLOSE) or t.is_op(";"):
                self._statement(start, i)
                i += 1
                start = i
                continue
            if i == start and t.kind is TokenKind.IDENTIFIER:
                if (t.text in _HEADER_KEYWORDS and i + 1 < n
                        and toks[i + 1].kind is TokenKind.CALL_OPEN
                        and (i + 1) in self.match):
                    close = self.match[i + 1]
                    self._header(t.text, i + 2, close)
                    i = close + 1
                    start = i
                    continue
                if t.text in _BARE_KEYWORDS:
                    i += 1
                    start = i
                    continue
            if t.kind is TokenKind.CALL_OPEN and i in self.match:
                i = self.match[i] + 1
                continue
            i += 1
        self._statement(start, n)
        return self.ops

    @staticmethod
    def _match_groups(tokens: Sequence[Token]) -> Dict[int, int]:
        """Map each '(' / '[' index to its closing partner (tolerant)."""
        match: Dict[int, int] = {}
        stack: List[Tuple[str, int]] = []
        pairs = {")": "(", "]": "["}
        for i, t in enumerate(tokens):
            if t.text in ("(", "[") and not t.is_opaque:
                stack.append((t.text, i))
            elif t.text in pairs and not t.is_opaque:
                # discard unmatched openers of the other bracket type
                while stack and stack[-1][0] != pairs[t.text]:
                    stack.pop()
                if stack:
                    match[stack.pop()[1]] = i
            elif t.kind in (TokenKind.SCOPE_OPEN, TokenKind.SCOPE_CLOSE) and stack:
                # a brace never sits inside a group we care about; resync
                if not any(s[0] == "(" for s in stack):
                    stack.clear()
        return match

    # ── statements ───────────────────────────────────────────────────

    def _header(self, keyword: str, lo: int, hi: int) -> None:
        if keyword == "for":
            for seg_lo, seg_hi in self._split(lo, hi, ";"):
                self._statement(seg_lo, seg_hi)
        else:
            self._expression(lo, hi)

    def _statement(self, lo: int, hi: int) -> None:
        lo = self._skip_labels(lo, hi)
        if lo >= hi:
            return
        toks = self.toks
        first = toks[lo].text

        if first == "return" and toks[lo].kind is TokenKind.IDENTIFIER:
            name = self._bare_name(lo + 1, hi)
            if name is not None and not name[1]:
                self._emit(OpKind.ESCAPE, name[0], escape_via=EscapeVia.RETURN)
            else:
                self._expression(lo + 1, hi)
            return

        if first == "delete" and toks[lo].kind is TokenKind.IDENTIFIER:
            j = lo + 1
            if j + 1 < hi and toks[j].text == "[" and toks[j + 1].text == "]":
                j += 2
            name = self._bare_name(j, hi)
            if name is not None and self.cfg.is_deallocator("delete"):
                self._emit(OpKind.FREE, name[0], callee="delete")
            else:
                self._expression(j, hi)
            return

        if first in ("goto", "break", "continue"):
            return

        segments = self._split(lo, hi, ",")
        declares = self._segment(*segments[0], inherited=False)
        for seg_lo, seg_hi in segments[1:]:
            self._segment(seg_lo, seg_hi, inherited=declares)

    def _skip_labels(self, lo: int, hi: int) -> int:
        toks = self.toks
        while lo < hi:
            t = toks[lo]
            if t.text == "case":
                j = lo + 1
                while j < hi and not toks[j].is_op(":"):
                    j += 1
                lo = j + 1
            elif (t.kind is TokenKind.IDENTIFIER and lo + 1 < hi and toks[lo + 1].is_op(":")
                    and (t.text == "default" or t.text not in _NOT_A_VARIABLE)):
                lo += 2
            elif t.kind is TokenKind.IDENTIFIER and t.text in _BARE_KEYWORDS:
                lo += 1
            else:
                break
        return lo

    def _segment(self, lo: int, hi: int, inherited: bool) -> bool:
        """Classify one declarator or expression; returns True if it declares."""
        if lo >= hi:
            return inherited
        toks = self.toks
        eq = self._find_top(lo, hi, "=")

        if eq is None:
            last = toks[hi - 1]
            if self._is_variable(last) and (
                (inherited and self._all_punct(lo, hi - 1))
                or self._is_type_prefix(lo, hi - 1)
            ):
                self._emit(OpKind.REASSIGN, hi - 1, declares=True)
                return True
            self._expression(lo, hi)
            return False

        target = self._simple_target(lo, eq, inherited)
        rlo, rhi = self._strip(eq + 1, hi)
        alloc = self._allocation(rlo, rhi)

        if target is None:
            # field, element or dereference on the left
            if alloc is not None:
                # owned by the enclosing structure from here on
                for a_lo, a_hi in alloc.args:
                    self._expression(a_lo, a_hi)
            else:
                name = self._bare_name(rlo, rhi)
                if name is not None and not name[1]:
                    self._emit(OpKind.ESCAPE, name[0], escape_via=EscapeVia.STORE)
                else:
                    self._expression(rlo, rhi)
            self._expression(lo, eq, write=True)
            return False

        idx, declares = target
        tname = toks[idx].text
        self_ref = self._mentions(rlo, rhi, tname)

        if alloc is not None:
            for pos, (a_lo, a_hi) in enumerate(alloc.args):
                name = self._bare_name(a_lo, a_hi)
                if name is not None and not name[1] and toks[name[0]].text == tname:
                    continue
                if pos == 0 and name is not None and "realloc" in alloc.callee:
                    # the old block moves into the new binding
                    self._emit(OpKind.ESCAPE, name[0], escape_via=EscapeVia.STORE,
                               callee=alloc.callee)
                    continue
                self._expression(a_lo, a_hi)
            self._emit(OpKind.ALLOCATE, idx, callee=alloc.callee, size=alloc.size,
                       declares=declares, self_referential=self_ref)
            return declares

        name = self._bare_name(rlo, rhi)
        if name is not None and not name[1]:
            if toks[name[0]].text != tname:
                self._emit(OpKind.ESCAPE, name[0], escape_via=EscapeVia.STORE)
        else:
            self._expression(rlo, rhi)
        self._emit(OpKind.REASSIGN, idx, declares=declares, self_referential=self_ref)
        return declares

    def _simple_target(self, lo: int, hi: int, inherited: bool) -> Optional[Tuple[int, bool]]:
        if hi <= lo or not self._is_variable(self.toks[hi - 1]):
            return None
        if hi - 1 == lo:
            return hi - 1, inherited
        if inherited and self._all_punct(lo, hi - 1):
            return hi - 1, True
        if self._is_type_prefix(lo, hi - 1):
            return hi - 1, True
        return None

    # ── allocation recognition ───────────────────────────────────────

    def _allocation(self, lo: int, hi: int) -> Optional[_Allocation]:
        if lo >= hi:
            return None
        toks = self.toks
        head = toks[lo]
        if head.kind is not TokenKind.IDENTIFIER or not self.cfg.is_allocator(head.text):
            return None

        if head.text == "new":
            size = None
            for k in range(lo + 1, hi - 2):
                if toks[k].text == "[" and toks[k + 2].text == "]":
                    size = parse_int_literal(toks[k + 1].text)
                    break
            return _Allocation("new", size, [(lo + 1, hi)])

        if lo + 1 < hi and toks[lo + 1].kind is TokenKind.CALL_OPEN \
                and self.match.get(lo + 1) == hi - 1:
            args = self._split(lo + 2, hi - 1, ",")
            return _Allocation(head.text, self._allocation_size(head.text, args), args)
        return None

    def _allocation_size(self, callee: str, args: List[Span]) -> Optional[int]:
        toks = self.toks
        literals: List[Optional[int]] = [
            parse_int_literal(toks[a].text) if b - a == 1 else None for a, b in args
        ]
        if callee == "calloc" and len(literals) == 2:
            if literals[0] is not None and literals[1] is not None:
                return literals[0] * literals[1]
            return None
        if callee == "strdup" and len(args) == 1 and args[0][1] - args[0][0] == 1:
            length = string_literal_length(toks[args[0][0]])
            return None if length is None else length + 1
        if literals and literals[-1] is not None:
            return literals[-1]
        return None

    # ── expressions ──────────────────────────────────────────────────

    def _expression(self, lo: int, hi: int, write: bool = False) -> None:
        toks = self.toks
        i = lo
        while i < hi:
            t = toks[i]
            if t.kind is not TokenKind.IDENTIFIER:
                i += 1
                continue
            if t.text in ("sizeof", "alignof"):
                i = self._skip_operand(i + 1, hi)
                continue
            prev = toks[i - 1] if i > lo else None
            nxt = toks[i + 1] if i + 1 < hi else None
            member = prev is not None and prev.text in (".", "->")

            if nxt is not None and nxt.kind is TokenKind.CALL_OPEN:
                close = self.match.get(i + 1)
                if close is None or close >= hi:
                    close = hi
                self._call(i, i + 2, close, member)
                i = close + 1
                continue
            if member or t.text in _NOT_A_VARIABLE:
                i += 1
                continue
            if nxt is not None and nxt.text in ("->", "."):
                self._emit(OpKind.ACCESS, i)
            elif nxt is not None and nxt.text == "[":
                index = None
                if write and i + 3 < hi and self.match.get(i + 1) == i + 3:
                    index = parse_int_literal(toks[i + 2].text)
                self._emit(OpKind.ACCESS, i, index=index)
            elif prev is not None and prev.text == "*" and self._is_unary(i - 1, lo):
                self._emit(OpKind.ACCESS, i)
            i += 1

    def _call(self, name_idx: int, lo: int, hi: int, member: bool) -> None:
        cfg = self.cfg
        callee = self.toks[name_idx].text
        args = self._split(lo, hi, ",") if lo < hi else []

        if callee in STATEMENT_KEYWORDS or callee in TYPE_KEYWORDS:
            for a_lo, a_hi in args:
                self._expression(a_lo, a_hi)
            return

        if not member and cfg.is_deallocator(callee):
            for pos, (a_lo, a_hi) in enumerate(args):
                name = self._bare_name(a_lo, a_hi)
                if pos == 0 and name is not None and not name[1]:
                    self._emit(OpKind.FREE, name[0], callee=callee)
                else:
                    self._expression(a_lo, a_hi)
            return

        if not member and callee in cfg.copy_routines:
            routine = cfg.copy_routines[callee]
            length = self._write_length(routine, args)
            for pos, (a_lo, a_hi) in enumerate(args):
                name = self._bare_name(a_lo, a_hi)
                if name is None:
                    self._expression(a_lo, a_hi)
                elif pos == routine.dest and not name[1]:
                    self._emit(OpKind.ACCESS, name[0], callee=callee, write_length=length)
                else:
                    self._emit(OpKind.ACCESS, name[0], callee=callee)
            return

        if not member and (cfg.is_allocator(callee) or callee in cfg.accessors):
            known = callee in cfg.accessors
            for a_lo, a_hi in args:
                name = self._bare_name(a_lo, a_hi)
                if name is None:
                    self._expression(a_lo, a_hi)
                elif known:
                    self._emit(OpKind.ACCESS, name[0], callee=callee)
            return

        # unrecognized function: ownership of a bare handle argument transfers
        for a_lo, a_hi in args:
            name = self._bare_name(a_lo, a_hi)
            if name is not None:
                self._emit(OpKind.ESCAPE, name[0], callee=callee, escape_via=EscapeVia.CALL)
            else:
                self._expression(a_lo, a_hi)

    def _write_length(self, routine: CopyRoutine, args: List[Span]) -> Optional[int]:
        toks = self.toks
        if routine.length is not None and routine.length < len(args):
            a_lo, a_hi = args[routine.length]
            if a_hi - a_lo == 1:
                return parse_int_literal(toks[a_lo].text)
            return None
        if routine.source is not None and routine.source < len(args):
            a_lo, a_hi = args[routine.source]
            if a_hi - a_lo == 1:
                length = string_literal_length(toks[a_lo])
                return None if length is None else length + 1
        return None

    # ── token-range helpers ──────────────────────────────────────────

    def _emit(self, kind: OpKind, idx: int, **fields) -> None:
        tok = self.toks[idx]
        self.ops.append(Operation(
            kind=kind,
            target=tok.text,
            offset=tok.offset,
            scope_id=self.scope_of[idx],
            line=tok.line,
            **fields,
        ))

    @staticmethod
    def _is_variable(tok: Token) -> bool:
        return tok.kind is TokenKind.IDENTIFIER and tok.text not in _NOT_A_VARIABLE

    def _is_type_prefix(self, lo: int, hi: int) -> bool:
        toks = self.toks
        if lo >= hi:
            return False
        saw_name = False
        for k in range(lo, hi):
            t = toks[k]
            if t.kind is TokenKind.IDENTIFIER:
                if t.text in STATEMENT_KEYWORDS or t.text in _CONSTANTS:
                    return False
                saw_name = True
            elif not (t.kind is TokenKind.OTHER and t.text in _TYPE_PUNCT):
                return False
        return saw_name and toks[lo].kind is TokenKind.IDENTIFIER

    def _all_punct(self, lo: int, hi: int) -> bool:
        return all(self.toks[k].text in ("*", "&") for k in range(lo, hi))

    def _is_unary(self, star: int, lo: int) -> bool:
        if star <= lo:
            return True
        prev = self.toks[star - 1]
        if prev.kind is TokenKind.IDENTIFIER:
            return prev.text in STATEMENT_KEYWORDS
        if prev.kind in (TokenKind.CALL_CLOSE, TokenKind.STRING_LITERAL):
            return False
        if prev.kind is TokenKind.OTHER and (prev.text == "]" or prev.text[0].isdigit()):
            return False
        return True

    def _find_top(self, lo: int, hi: int, text: str) -> Optional[int]:
        k = lo
        while k < hi:
            t = self.toks[k]
            if t.text in ("(", "[") and not t.is_opaque and k in self.match:
                k = self.match[k] + 1
                continue
            if t.kind is TokenKind.OTHER and t.text == text:
                return k
            k += 1
        return None

    def _split(self, lo: int, hi: int, sep: str) -> List[Span]:
        spans: List[Span] = []
        start = lo
        while True:
            k = self._find_top(start, hi, sep)
            if k is None:
                spans.append((start, hi))
                return spans
            spans.append((start, k))
            start = k + 1

    def _strip(self, lo: int, hi: int) -> Span:
        """Remove wrapping parentheses and leading casts."""
        toks = self.toks
        while lo < hi and toks[lo].kind is TokenKind.CALL_OPEN and lo in self.match:
            close = self.match[lo]
            if close == hi - 1:
                lo, hi = lo + 1, hi - 1
            elif close < hi - 1 and self._is_cast(lo + 1, close):
                lo = close + 1
            else:
                break
        return lo, hi

    def _is_cast(self, lo: int, hi: int) -> bool:
        toks = self.toks
        if lo >= hi or toks[lo].kind is not TokenKind.IDENTIFIER:
            return False
        for k in range(lo, hi):
            t = toks[k]
            if t.kind is TokenKind.IDENTIFIER:
                if t.text in STATEMENT_KEYWORDS:
                    return False
            elif t.text not in ("*", "&", "::", "<", ">"):
                return False
        following = toks[hi + 1] if hi + 1 < len(toks) else None
        if following is None:
            return False
        return (
            following.kind in (TokenKind.IDENTIFIER, TokenKind.CALL_OPEN,
                               TokenKind.STRING_LITERAL)
            or following.text in ("*", "&")
            or following.text[0].isdigit()
        )

    def _bare_name(self, lo: int, hi: int) -> Optional[Tuple[int, bool]]:
        """``(index, address_of)`` if the range is just a (cast) variable name."""
        lo, hi = self._strip(lo, hi)
        toks = self.toks
        if hi - lo == 1 and self._is_variable(toks[lo]):
            return lo, False
        if hi - lo == 2 and toks[lo].is_op("&") and self._is_variable(toks[lo + 1]):
            return lo + 1, True
        return None

    def _mentions(self, lo: int, hi: int, name: str) -> bool:
        """True if *name* is evaluated in the range (member names and
        ``sizeof`` operands do not count)."""
        toks = self.toks
        i = lo
        while i < hi:
            t = toks[i]
            if t.kind is TokenKind.IDENTIFIER and t.text in ("sizeof", "alignof"):
                i = self._skip_operand(i + 1, hi)
                continue
            if (t.kind is TokenKind.IDENTIFIER and t.text == name
                    and not (i > lo and toks[i - 1].text in (".", "->"))):
                return True
            i += 1
        return False

    def _skip_operand(self, i: int, hi: int) -> int:
        """Index just past the operand of ``sizeof``."""
        toks = self.toks
        if i < hi and toks[i].kind is TokenKind.CALL_OPEN and i in self.match:
            return self.match[i] + 1
        while i < hi and toks[i].text in ("*", "&"):
            i += 1
        if i < hi:
            i += 1
        while i < hi:
            if toks[i].text in ("->", ".") and i + 1 < hi:
                i += 2
            elif toks[i].text == "[" and i in self.match:
                i = self.match[i] + 1
            else:
                break
        return i


__all__ = [
    "OpKind",
    "EscapeVia",
    "Operation",
    "OperationCatalog",
    "parse_int_literal",
    "string_literal_length",
    "STATEMENT_KEYWORDS",
    "TYPE_KEYWORDS",
]
