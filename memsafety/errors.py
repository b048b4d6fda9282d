# memsafety/errors.py
"""
Error types for the memsafety analyzer.

Error Hierarchy:
────────────────
┌──────────────────────────────────────────────────────────────────────┐
│  MemsafetyError (base)                                               │
│  ├── InputError          - empty or unreadable buffer                │
│  ├── ConfigError         - rejected allocator/deallocator name sets  │
│  └── HandleInvalidError  - use of a destroyed or unknown handle      │
└──────────────────────────────────────────────────────────────────────┘

Error Codes:
────────────
Each error carries a code of the form MEMS-XXXX:
  - 0001-0999: Input errors
  - 1000-1999: Configuration errors
  - 2000-2999: Handle errors

Only ``ConfigError`` and ``HandleInvalidError`` ever reach a host.
``InputError`` is raised internally while coercing the buffer and turned
into an empty ``AnalysisResult`` with a note by :func:`memsafety.analyze`.
Malformed program text is never an error at all.
"""

from __future__ import annotations

from enum import Enum, unique
from typing import List, Optional, Sequence


@unique
class ErrorCode(Enum):
    """Structured error codes."""

    EMPTY_INPUT = "MEMS-0001"
    UNREADABLE_INPUT = "MEMS-0002"

    EMPTY_NAME_SET = "MEMS-1000"
    CONFLICTING_NAME_SETS = "MEMS-1001"
    INVALID_NAME = "MEMS-1002"
    MALFORMED_CONFIG = "MEMS-1003"

    HANDLE_INVALID = "MEMS-2000"

    def __str__(self) -> str:
        return self.value


class MemsafetyError(Exception):
    """
    Base exception for all memsafety errors.

    Carries a structured :class:`ErrorCode` next to the message so hosts
    can branch on the code rather than on message text.
    """

    default_code: ErrorCode = ErrorCode.UNREADABLE_INPUT

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.cause = cause

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class InputError(MemsafetyError):
    """The buffer handed to the analyzer is empty or cannot be read as bytes."""

    default_code = ErrorCode.UNREADABLE_INPUT


class ConfigError(MemsafetyError):
    """
    Configuration rejected at ``configure`` time.

    ``problems`` lists every validation failure found, not only the first.
    The previously active configuration stays in force.
    """

    default_code = ErrorCode.CONFLICTING_NAME_SETS

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        problems: Sequence[str] = (),
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, code=code, cause=cause)
        self.problems: List[str] = list(problems)


class HandleInvalidError(MemsafetyError):
    """An analyzer handle was used after ``destroy`` (or never existed)."""

    default_code = ErrorCode.HANDLE_INVALID

    def __init__(self, handle: object) -> None:
        super().__init__(f"analyzer handle {handle!r} is not valid")
        self.handle = handle


__all__ = [
    "ErrorCode",
    "MemsafetyError",
    "InputError",
    "ConfigError",
    "HandleInvalidError",
]
