"""
memory_notation/diagnostics.py
══════════════════════════════

Diagnostic model shared by every analysis layer.

A :class:`Diagnostic` is an immutable record
``{severity, rule, category, location, function, binding, contract,
path, message}``.  Rules are grouped into three categories that the
reporter keeps apart:

  input           malformed or self-contradictory annotation input
  violation       ownership contract violations (the product output)
  analysis-limit  conservative refusals (loop / recursion non-convergence)

Diagnostics flow into a :class:`DiagnosticSink`, which deduplicates,
applies suppressions and severity promotion, and produces the final
deterministically ordered sequence.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — RULE TAXONOMY
# ═════════════════════════════════════════════════════════════════════════

class DiagnosticSeverity(Enum):
    """Severity levels, ordered from most to least severe."""
    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"


class RuleCategory(Enum):
    INPUT = "input"
    VIOLATION = "violation"
    ANALYSIS_LIMIT = "analysis-limit"
    INTERNAL = "internal"


class Rule(Enum):
    """
    Every diagnostic rule the verifier can emit.

    Each member carries ``(rule_id, category, cwe)``.
    """

    # Input errors
    CONFLICTING_ANNOTATION = ("ConflictingAnnotation", RuleCategory.INPUT, 0)
    UNKNOWN_ANNOTATION = ("UnknownAnnotation", RuleCategory.INPUT, 0)
    MALFORMED_INPUT = ("MalformedInput", RuleCategory.INPUT, 0)

    # Ownership violations
    INVALID_RELEASE = ("InvalidRelease", RuleCategory.VIOLATION, 415)
    USE_AFTER_TRANSFER = ("UseAfterTransfer", RuleCategory.VIOLATION, 416)
    LEAKED_OWNERSHIP = ("LeakedOwnership", RuleCategory.VIOLATION, 401)
    USE_AFTER_RELEASE = ("UseAfterRelease", RuleCategory.VIOLATION, 416)
    REFCOUNT_UNDERFLOW = ("RefCountUnderflow", RuleCategory.VIOLATION, 911)
    BORROW_ESCALATION = ("BorrowEscalation", RuleCategory.VIOLATION, 763)
    MISSING_OUTPUT_WRITE = ("MissingOutputWrite", RuleCategory.VIOLATION, 457)
    RELEASE_ORDER_VIOLATION = ("ReleaseOrderViolation", RuleCategory.VIOLATION, 666)
    ALIASED_OWNERSHIP = ("AliasedOwnership", RuleCategory.VIOLATION, 415)

    # Analysis limits
    UNSTABLE_LOOP_OWNERSHIP = ("UnstableLoopOwnership", RuleCategory.ANALYSIS_LIMIT, 0)
    UNRESOLVABLE_RECURSIVE_CONTRACT = (
        "UnresolvableRecursiveContract", RuleCategory.ANALYSIS_LIMIT, 0,
    )

    # Run failures
    INTERNAL_ERROR = ("internalError", RuleCategory.INTERNAL, 0)

    def __init__(self, rule_id: str, category: RuleCategory, cwe: int) -> None:
        self.rule_id = rule_id
        self.category = category
        self.cwe = cwe

    @property
    def default_severity(self) -> DiagnosticSeverity:
        # analysis limits refuse to certify the code: errors in their own category
        return DiagnosticSeverity.ERROR

    @classmethod
    def from_id(cls, rule_id: str) -> "Rule":
        for member in cls:
            if member.rule_id == rule_id:
                return member
        raise KeyError(rule_id)


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — DIAGNOSTIC RECORDS
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SourceLocation:
    """A specific point in source code."""
    file: str = ""
    line: int = 0
    column: int = 0

    def __str__(self) -> str:
        if self.column:
            return f"{self.file}:{self.line}:{self.column}"
        return f"{self.file}:{self.line}"

    def to_dict(self) -> Dict[str, Any]:
        return {"file": self.file, "line": self.line, "column": self.column}


@dataclass(frozen=True)
class Diagnostic:
    """
    A single diagnostic finding.

    Attributes
    ----------
    rule      : Rule that was violated
    message   : Human-readable description
    severity  : DiagnosticSeverity (defaults from the rule)
    location  : Location of the violating operation
    function  : Enclosing function (or struct) name
    binding   : Binding the finding is about (``ex.id`` for fields)
    contract  : Declared contract of the binding, e.g. ``owner char*``
    path      : Exit path as a sequence of scope identifiers
    secondary : Related locations (where a binding was released or moved)
    """
    rule: Rule
    message: str
    location: SourceLocation = field(default_factory=SourceLocation)
    severity: Optional[DiagnosticSeverity] = None
    function: str = ""
    binding: str = ""
    contract: str = ""
    path: Tuple[str, ...] = ()
    secondary: Tuple[SourceLocation, ...] = ()

    def __post_init__(self) -> None:
        if self.severity is None:
            object.__setattr__(self, "severity", self.rule.default_severity)

    @property
    def rule_id(self) -> str:
        return self.rule.rule_id

    @property
    def category(self) -> RuleCategory:
        return self.rule.category

    @property
    def is_error(self) -> bool:
        return self.severity is DiagnosticSeverity.ERROR

    def identity(self) -> Tuple[Any, ...]:
        """Key used for deduplication."""
        return (self.function, self.rule.rule_id, self.binding, self.location, self.path,
                self.message)

    def sort_key(self) -> Tuple[Any, ...]:
        return (
            self.location.file,
            self.location.line,
            self.location.column,
            self.function,
            self.rule.rule_id,
            self.binding,
            self.path,
            self.message,
        )

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the output record format."""
        record: Dict[str, Any] = {
            "severity": self.severity.value,
            "rule": self.rule.rule_id,
            "category": self.rule.category.value,
            "location": self.location.to_dict(),
            "function": self.function,
            "binding": self.binding,
            "contract": self.contract,
            "path": list(self.path),
            "message": self.message,
        }
        if self.rule.cwe:
            record["cwe"] = self.rule.cwe
        return record

    def to_json_str(self) -> str:
        """Single-line JSON string, keys sorted for stable output."""
        return json.dumps(self.to_record(), sort_keys=True)

    def to_gcc_format(self) -> str:
        """GCC-style diagnostic string: file:line:col: severity: message."""
        return f"{self.location}: {self.severity.value}: {self.message} [{self.rule.rule_id}]"


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — SUPPRESSIONS
# ═════════════════════════════════════════════════════════════════════════

class SuppressionManager:
    """
    Manages diagnostic suppressions.

    Entries use the forms:

      ``Rule``            suppress the rule everywhere
      ``function:Rule``   suppress the rule inside one function
                          (``fnmatch`` patterns accepted on both sides)
      ``*``               suppress everything

    Declarations may also carry their own ``suppress`` list, registered
    through :meth:`add_function_suppression`.
    """

    def __init__(self) -> None:
        self._global: Set[str] = set()
        # function pattern → rule patterns
        self._scoped: Dict[str, Set[str]] = defaultdict(set)

    def add(self, entry: str) -> None:
        entry = entry.strip()
        if not entry:
            return
        if ":" in entry:
            function, _, rule = entry.partition(":")
            self.add_function_suppression(function.strip(), rule.strip())
        else:
            self.add_global_suppression(entry)

    def add_global_suppression(self, rule_id: str) -> None:
        """Globally suppress ``rule_id``."""
        self._global.add(rule_id)

    def add_function_suppression(self, function: str, rule_id: str) -> None:
        """Suppress ``rule_id`` for diagnostics attributed to ``function``."""
        self._scoped[function].add(rule_id)

    def is_suppressed(self, diag: Diagnostic) -> bool:
        """Check whether a diagnostic should be suppressed."""
        rid = diag.rule.rule_id
        if diag.rule.category is RuleCategory.INTERNAL:
            return False
        if any(fnmatch(rid, pattern) for pattern in self._global):
            return True
        for func_pattern, rules in self._scoped.items():
            if not fnmatch(diag.function, func_pattern):
                continue
            if any(fnmatch(rid, pattern) for pattern in rules):
                return True
        return False

    def filter_diagnostics(self, diagnostics: Iterable[Diagnostic]) -> List[Diagnostic]:
        """Return only non-suppressed diagnostics."""
        return [d for d in diagnostics if not self.is_suppressed(d)]

    def __len__(self) -> int:
        return len(self._global) + sum(len(v) for v in self._scoped.values())


# ═════════════════════════════════════════════════════════════════════════
#  PART 4 — COLLECTION
# ═════════════════════════════════════════════════════════════════════════

class DiagnosticSink:
    """
    Accumulates diagnostics from all analysis layers.

    Duplicates (same function, rule, binding, location, path and message) are
    dropped on insertion, so fixed-point iterations that revisit a
    program point do not inflate the output.
    """

    def __init__(self) -> None:
        self._items: Dict[Tuple[Any, ...], Diagnostic] = {}

    def add(self, diag: Diagnostic) -> None:
        key = diag.identity()
        if key not in self._items:
            self._items[key] = diag

    def extend(self, diags: Iterable[Diagnostic]) -> None:
        for d in diags:
            self.add(d)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self.sorted())

    def sorted(self) -> List[Diagnostic]:
        return sorted(self._items.values(), key=Diagnostic.sort_key)

    def finalize(
        self,
        suppressions: Optional[SuppressionManager] = None,
        treat_warnings_as_errors: bool = False,
    ) -> List[Diagnostic]:
        """Filter, promote and order the collected diagnostics."""
        result: List[Diagnostic] = []
        dropped = 0
        for diag in self.sorted():
            if suppressions is not None and suppressions.is_suppressed(diag):
                dropped += 1
                continue
            if treat_warnings_as_errors and diag.severity is DiagnosticSeverity.WARNING:
                diag = dataclasses.replace(diag, severity=DiagnosticSeverity.ERROR)
            result.append(diag)
        if dropped:
            logger.debug("suppressed %d diagnostic(s)", dropped)
        return result


__all__ = [
    "DiagnosticSeverity",
    "RuleCategory",
    "Rule",
    "SourceLocation",
    "Diagnostic",
    "SuppressionManager",
    "DiagnosticSink",
]
