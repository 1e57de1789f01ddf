"""
Error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 3xxx: Source / store
- 4xxx: Parse
- 5xxx: LLM
- 9xxx: Internal
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002

    # Source / store (3xxx)
    SOURCE_UNREADABLE = 3001
    DATABASE_MISSING = 3002
    DATABASE_EMPTY = 3003
    DATABASE_CORRUPT = 3004
    DATABASE_LOCKED = 3005

    # Parse (4xxx)
    PARSE_SYNTAX_ERROR = 4001

    # LLM (5xxx)
    LLM_REQUEST_FAILED = 5001
    LLM_TIMEOUT = 5002
    LLM_MALFORMED_RESPONSE = 5003

    # Internal (9xxx)
    INTERNAL_ERROR = 9001


# eq=False keeps exceptions hashable; not frozen because contextlib
# assigns __traceback__ when re-raising through a generator context manager.
@dataclass(eq=False)
class CodeGraphError(Exception):
    """Base error with structured context."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'DATABASE_LOCKED')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(CodeGraphError):
    """Configuration-related errors."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )


class SourceError(CodeGraphError):
    """The source tree cannot be read. Fatal for a sync."""

    @classmethod
    def unreadable(cls, path: str, reason: str) -> "SourceError":
        return cls(
            code=ErrorCode.SOURCE_UNREADABLE,
            message=f"Cannot read source directory {path}: {reason}",
            details={"path": path, "reason": reason},
        )


class StoreError(CodeGraphError):
    """Database missing, empty or corrupt. Fatal for a sync."""

    @classmethod
    def missing(cls, path: str) -> "StoreError":
        return cls(
            code=ErrorCode.DATABASE_MISSING,
            message=f"No index database at {path}. Run 'codegraph init' first.",
            details={"path": path},
        )

    @classmethod
    def empty(cls, path: str) -> "StoreError":
        return cls(
            code=ErrorCode.DATABASE_EMPTY,
            message=f"Index database at {path} is empty. Run 'codegraph init' first.",
            details={"path": path},
        )

    @classmethod
    def corrupt(cls, path: str, reason: str) -> "StoreError":
        return cls(
            code=ErrorCode.DATABASE_CORRUPT,
            message=f"Index database at {path} is unreadable: {reason}",
            details={"path": path, "reason": reason},
        )


class DatabaseLockedError(StoreError):
    """Another process holds the write lock. Retry later."""

    @classmethod
    def create(cls, path: str, reason: str = "database is locked") -> "DatabaseLockedError":
        return cls(
            code=ErrorCode.DATABASE_LOCKED,
            message=f"Database {path} is locked by another writer",
            retryable=True,
            details={"path": path, "reason": reason},
        )


class ParseError(CodeGraphError):
    """A single file could not be parsed."""

    @classmethod
    def syntax(cls, path: str, line: int | None, reason: str) -> "ParseError":
        return cls(
            code=ErrorCode.PARSE_SYNTAX_ERROR,
            message=f"{path}:{line or 0}: {reason}",
            details={"path": path, "line": line, "reason": reason},
        )


class LLMError(CodeGraphError):
    """LLM call failed. Always retryable; callers fall back to a default."""

    @classmethod
    def request_failed(cls, reason: str) -> "LLMError":
        return cls(
            code=ErrorCode.LLM_REQUEST_FAILED,
            message=f"LLM request failed: {reason}",
            retryable=True,
            details={"reason": reason},
        )

    @classmethod
    def timeout(cls, seconds: float) -> "LLMError":
        return cls(
            code=ErrorCode.LLM_TIMEOUT,
            message=f"LLM request timed out after {seconds:.1f}s",
            retryable=True,
            details={"timeout": seconds},
        )

    @classmethod
    def malformed_response(cls, reason: str) -> "LLMError":
        return cls(
            code=ErrorCode.LLM_MALFORMED_RESPONSE,
            message=f"Malformed LLM response: {reason}",
            retryable=True,
            details={"reason": reason},
        )
