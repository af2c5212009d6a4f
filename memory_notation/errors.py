"""
memory_notation/errors.py
═════════════════════════

Exception hierarchy for the ownership verifier.

┌──────────────────────────────────────────────────────────────────┐
│  MemoryNotationError (base)                                      │
│  ├── AnnotationError        - contract extraction failures       │
│  │   ├── ConflictingAnnotationError                              │
│  │   └── UnknownAnnotationError                                  │
│  ├── InputError             - unreadable / malformed records     │
│  ├── ConfigError            - invalid verifier configuration     │
│  └── SummaryConflictError   - second write into the summary table│
└──────────────────────────────────────────────────────────────────┘

``AnnotationError`` and ``InputError`` never abort a run by themselves:
the checker framework converts them into input diagnostics and skips the
offending declaration.  ``ConfigError`` and unreadable input files abort
the CLI with exit status 2.  ``SummaryConflictError`` signals a broken
write-once discipline and is always an internal error.
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from memory_notation.diagnostics import SourceLocation


class MemoryNotationError(Exception):
    """Base class of every error raised by this package."""

    #: Rule identifier used when the error is turned into a diagnostic.
    rule_id: str = "internalError"

    def __init__(
        self,
        message: str,
        *,
        location: Optional["SourceLocation"] = None,
        declaration: str = "",
        entity: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.declaration = declaration
        self.entity = entity

    def __str__(self) -> str:
        if self.location is not None and self.location.file:
            return f"{self.location}: {self.message}"
        return self.message


class AnnotationError(MemoryNotationError):
    """An annotation set that cannot be turned into a contract."""

    rule_id = "UnknownAnnotation"


class ConflictingAnnotationError(AnnotationError):
    """Mutually exclusive tags attached to one entity."""

    rule_id = "ConflictingAnnotation"


class UnknownAnnotationError(AnnotationError):
    """Unrecognised spelling, missing relation target, or dangling relation."""

    rule_id = "UnknownAnnotation"


class InputError(MemoryNotationError):
    """A declaration record or statement that cannot be decoded."""

    rule_id = "MalformedInput"


class ConfigError(MemoryNotationError):
    """Invalid verifier configuration."""

    rule_id = "MalformedConfig"


class SummaryConflictError(MemoryNotationError):
    """A function summary was published twice."""

    rule_id = "internalError"


__all__ = [
    "MemoryNotationError",
    "AnnotationError",
    "ConflictingAnnotationError",
    "UnknownAnnotationError",
    "InputError",
    "ConfigError",
    "SummaryConflictError",
]
