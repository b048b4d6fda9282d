# memsafety/tokenizer.py
"""
Byte buffer → classified lexical units.

The tokenizer is deliberately shallow: it knows just enough C-family lexical
structure to tell identifiers, parentheses, braces and literals apart, and to
skip string and comment content as opaque.  Text that merely *mentions*
``malloc`` in a comment or string therefore never reaches the catalog.

Token kinds
───────────
  IDENTIFIER      names and keywords              ``p``, ``malloc``, ``if``
  CALL_OPEN       opening parenthesis             ``(``
  CALL_CLOSE      closing parenthesis             ``)``
  SCOPE_OPEN      opening brace                   ``{``
  SCOPE_CLOSE     closing brace                   ``}``
  STRING_LITERAL  string or character literal     ``"abc"``, ``'x'``
  COMMENT_BLOCK   comments and preprocessor lines ``/* */``, ``//``, ``#...``
  OTHER           numbers, operators, punctuation ``10``, ``->``, ``;``

The buffer is decoded byte-for-byte (latin-1) so that token offsets are
byte offsets into the original buffer.

Malformed input is tolerated: an unterminated string or comment swallows the
rest of the buffer as a single token with ``terminated=False``.  Nothing in
this module raises on program text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Tuple, Union

BufferLike = Union[bytes, bytearray, memoryview]


class TokenKind(Enum):
    IDENTIFIER = "identifier"
    CALL_OPEN = "call-open"
    CALL_CLOSE = "call-close"
    SCOPE_OPEN = "scope-open"
    SCOPE_CLOSE = "scope-close"
    STRING_LITERAL = "string"
    COMMENT_BLOCK = "comment"
    OTHER = "other"


@dataclass(frozen=True)
class Token:
    """A single lexical unit with its byte offset and 1-based line."""
    kind: TokenKind
    text: str
    offset: int
    line: int
    terminated: bool = True

    @property
    def end(self) -> int:
        return self.offset + len(self.text)

    @property
    def is_opaque(self) -> bool:
        """True for strings and comments, whose content is never inspected."""
        return self.kind in (TokenKind.STRING_LITERAL, TokenKind.COMMENT_BLOCK)

    def is_op(self, text: str) -> bool:
        return self.kind is TokenKind.OTHER and self.text == text

    def __str__(self) -> str:
        return self.text


# ---------------------------------------------------------------------------
# Lexical patterns
# ---------------------------------------------------------------------------

_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

# C preprocessing-number: digits, letters, dots, digit separators, and
# signed exponents.  Over-approximates on purpose.
_NUMBER_RE = re.compile(r"\.?[0-9](?:[eEpP][+-]|[0-9A-Za-z_.'])*")

_OPERATOR_RE = re.compile(
    r"->\*?|\.\.\.|<<=|>>=|::|\+\+|--|&&|\|\||<<|>>|[-+*/%&|^!=<>]="
)

_WHITESPACE = " \t\r\f\v"

_SINGLE_KINDS = {
    "(": TokenKind.CALL_OPEN,
    ")": TokenKind.CALL_CLOSE,
    "{": TokenKind.SCOPE_OPEN,
    "}": TokenKind.SCOPE_CLOSE,
}


def _preprocessor_end(text: str, pos: int) -> int:
    """End of a ``#`` directive, honouring backslash-newline continuations."""
    n = len(text)
    while True:
        nl = text.find("\n", pos)
        if nl < 0:
            return n
        if nl > 0 and text[nl - 1] == "\\":
            pos = nl + 1
            continue
        if nl > 1 and text[nl - 1] == "\r" and text[nl - 2] == "\\":
            pos = nl + 1
            continue
        return nl


def _quoted_end(text: str, pos: int, quote: str) -> Tuple[int, bool]:
    i = pos + 1
    n = len(text)
    while i < n:
        c = text[i]
        if c == "\\":
            i += 2
            continue
        if c == quote:
            return i + 1, True
        i += 1
    return n, False


def _scan(text: str) -> Iterator[Token]:
    pos = 0
    line = 1
    n = len(text)
    line_start = True

    while pos < n:
        ch = text[pos]
        if ch == "\n":
            line += 1
            pos += 1
            line_start = True
            continue
        if ch in _WHITESPACE:
            pos += 1
            continue

        terminated = True
        if ch == "#" and line_start:
            end = _preprocessor_end(text, pos)
            kind = TokenKind.COMMENT_BLOCK
        elif text.startswith("//", pos):
            end = text.find("\n", pos)
            if end < 0:
                end = n
            kind = TokenKind.COMMENT_BLOCK
        elif text.startswith("/*", pos):
            close = text.find("*/", pos + 2)
            if close < 0:
                end, terminated = n, False
            else:
                end = close + 2
            kind = TokenKind.COMMENT_BLOCK
        elif ch == '"' or ch == "'":
            end, terminated = _quoted_end(text, pos, ch)
            kind = TokenKind.STRING_LITERAL
        elif ch in _SINGLE_KINDS:
            end = pos + 1
            kind = _SINGLE_KINDS[ch]
        else:
            m = _IDENT_RE.match(text, pos)
            if m is not None:
                kind = TokenKind.IDENTIFIER
            else:
                m = _NUMBER_RE.match(text, pos) or _OPERATOR_RE.match(text, pos)
                kind = TokenKind.OTHER
            end = m.end() if m is not None else pos + 1

        token = Token(kind, text[pos:end], pos, line, terminated)
        yield token
        line += token.text.count("\n")
        line_start = False
        pos = end


class TokenStream:
    """
    Lazy, restartable token sequence over one immutable buffer.

    Every ``iter()`` starts a fresh scan from offset 0, so the stream can be
    walked by several consumers without being materialized.

    >>> [t.text for t in TokenStream(b"p = malloc(4); /* free(p) */")]
    ['p', '=', 'malloc', '(', '4', ')', ';', '/* free(p) */']
    """

    def __init__(self, buffer: BufferLike) -> None:
        self._text = bytes(buffer).decode("latin-1")

    @property
    def text(self) -> str:
        return self._text

    def __iter__(self) -> Iterator[Token]:
        return _scan(self._text)

    def significant(self) -> Iterator[Token]:
        """Tokens with comments (and preprocessor lines) removed."""
        return (t for t in _scan(self._text) if t.kind is not TokenKind.COMMENT_BLOCK)

    def comments(self) -> Iterator[Token]:
        return (t for t in _scan(self._text) if t.kind is TokenKind.COMMENT_BLOCK)


def tokenize(buffer: BufferLike) -> TokenStream:
    return TokenStream(buffer)


__all__ = ["TokenKind", "Token", "TokenStream", "tokenize"]
