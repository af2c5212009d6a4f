"""
memory_notation/checkers.py
═══════════════════════════

Checker framework that composes the analysis layers into one run over a
translation unit.

Architecture
────────────

    TranslationUnit
        │
        ▼
    CheckerContext ── contracts, scope graphs, summaries, call graph
        │
        ├── input              load and annotation errors
        ├── ownership          per-function paths, recursive SCCs
        ├── contracts          call-site BorrowEscalation
        └── struct-invariants  aliased fields, constructor / destructor pairs
        │
        ▼
    DiagnosticSink ── dedupe, suppress, promote warnings, sort

Each Checker follows a four-phase lifecycle:

  1. **configure()**        — read configuration from the context
  2. **collect_evidence()** — run or consume analyses
  3. **diagnose()**         — turn evidence into diagnostics
  4. **report()**           — return diagnostics (filtered by suppressions)

Analyses are shared through :class:`CheckerContext`; a checker that needs
an analysis nobody has run yet computes and stores it itself.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import (
    Any,
    ClassVar,
    Dict,
    FrozenSet,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    Type,
)

from memory_notation.annotations import ContractTable, extract_contracts
from memory_notation.config import VerifierConfig, DEFAULT_CONFIG
from memory_notation.decl_ast import TranslationUnit
from memory_notation.diagnostics import (
    Diagnostic,
    DiagnosticSeverity,
    DiagnosticSink,
    Rule,
    RuleCategory,
    SourceLocation,
    SuppressionManager,
)
from memory_notation.errors import AnnotationError
from memory_notation.interproc import (
    AnalysisContext,
    InterprocResult,
    check_call_sites,
    check_struct_invariants,
    run_interprocedural,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — CHECKER BASE CLASS
# ═════════════════════════════════════════════════════════════════════════

class Checker(ABC):
    """
    Abstract base class for all checkers.

    Lifecycle
    ─────────
      1. ``configure(ctx)``        — receive context
      2. ``collect_evidence(ctx)``  — run or consume analyses
      3. ``diagnose(ctx)``          — correlate evidence into diagnostics
      4. ``report(ctx)``            — yield final diagnostics

    Subclass Contract
    ─────────────────
      - Override ``name``, ``description``, ``rules``
      - Implement ``collect_evidence()`` and ``diagnose()``
    """

    name: ClassVar[str] = "base-checker"
    description: ClassVar[str] = ""
    rules: ClassVar[FrozenSet[Rule]] = frozenset()

    def __init__(self) -> None:
        self._diagnostics: List[Diagnostic] = []

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return list(self._diagnostics)

    def configure(self, ctx: "CheckerContext") -> None:
        """Called before evidence collection.  Default does nothing."""

    @abstractmethod
    def collect_evidence(self, ctx: "CheckerContext") -> None:
        ...

    @abstractmethod
    def diagnose(self, ctx: "CheckerContext") -> None:
        ...

    def report(self, ctx: "CheckerContext") -> List[Diagnostic]:
        return ctx.suppressions.filter_diagnostics(self._diagnostics)

    def _emit(
        self,
        rule: Rule,
        message: str,
        location: Optional[SourceLocation] = None,
        function: str = "",
        binding: str = "",
        contract: str = "",
        path: Tuple[str, ...] = (),
        secondary: Tuple[SourceLocation, ...] = (),
    ) -> None:
        """Helper to create and store a diagnostic."""
        self._diagnostics.append(Diagnostic(
            rule=rule,
            message=message,
            location=location or SourceLocation(),
            function=function,
            binding=binding,
            contract=contract,
            path=path,
            secondary=secondary,
        ))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name}'>"


@dataclass
class CheckerContext:
    """
    Shared context passed to every checker during execution.

    Attributes
    ----------
    unit         : TranslationUnit being checked
    config       : VerifierConfig
    suppressions : SuppressionManager
    analyses     : analysis results shared between checkers (keyed by name)
    stats        : mutable dict for timing / counting statistics
    """
    unit: TranslationUnit
    config: VerifierConfig = DEFAULT_CONFIG
    suppressions: SuppressionManager = field(default_factory=SuppressionManager)
    analyses: Dict[str, Any] = field(default_factory=dict)
    stats: Dict[str, Any] = field(default_factory=dict)

    def get_analysis(self, name: str) -> Any:
        return self.analyses.get(name)

    def set_analysis(self, name: str, result: Any) -> None:
        self.analyses[name] = result

    # ── shared analyses ─────────────────────────────────────────────

    def contracts(self) -> Tuple[ContractTable, List[AnnotationError]]:
        """Contract table and annotation errors of the unit (computed once)."""
        cached = self.get_analysis("contracts")
        if cached is None:
            cached = extract_contracts(self.unit, self.config)
            self.set_analysis("contracts", cached)
        return cached

    def analysis_context(self) -> AnalysisContext:
        cached = self.get_analysis("analysis-context")
        if cached is None:
            table, _ = self.contracts()
            cached = AnalysisContext.build(self.unit.functions, table, self.config)
            self.set_analysis("analysis-context", cached)
        return cached

    def interproc(self) -> InterprocResult:
        """Run the ownership pass over every function once."""
        cached = self.get_analysis("interproc")
        if cached is None:
            cached = run_interprocedural(self.analysis_context(), unit_checks=False)
            self.set_analysis("interproc", cached)
        return cached


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — CHECKER REGISTRY
# ═════════════════════════════════════════════════════════════════════════

class CheckerRegistry:
    """
    Registry of available checkers, run in registration order.

    Usage
    -----
    >>> registry = CheckerRegistry()
    >>> registry.register(InputChecker)
    >>> registry.register(OwnershipChecker)
    >>> registry.disable("ownership")
    >>> [c.name for c in registry.get_enabled()]
    ['input']
    """

    def __init__(self) -> None:
        self._checkers: Dict[str, Type[Checker]] = {}
        self._disabled: Set[str] = set()

    def register(self, checker_cls: Type[Checker]) -> None:
        self._checkers[checker_cls.name] = checker_cls

    def disable(self, name: str) -> None:
        self._disabled.add(name)

    def get_all(self) -> List[Type[Checker]]:
        return list(self._checkers.values())

    def get_enabled(self) -> List[Type[Checker]]:
        return [
            cls for name, cls in self._checkers.items()
            if name not in self._disabled
        ]

    def get_by_name(self, name: str) -> Optional[Type[Checker]]:
        return self._checkers.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._checkers.keys())


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — CHECKERS
# ═════════════════════════════════════════════════════════════════════════

# ─────────────────────────────────────────────────────────────────────────
#  3.1  Input Checker
# ─────────────────────────────────────────────────────────────────────────

class InputChecker(Checker):
    """
    Reports declarations that cannot be analysed: undecodable records and
    annotation sets that do not form a contract.  Those declarations are
    left out of every later analysis; the rest of the unit is still checked.
    """

    name = "input"
    description = "Malformed records and conflicting or unknown annotations"
    rules = frozenset({
        Rule.MALFORMED_INPUT,
        Rule.CONFLICTING_ANNOTATION,
        Rule.UNKNOWN_ANNOTATION,
    })

    def __init__(self) -> None:
        super().__init__()
        self._errors: List[Any] = []

    def collect_evidence(self, ctx: CheckerContext) -> None:
        _, annotation_errors = ctx.contracts()
        self._errors = list(ctx.unit.errors) + list(annotation_errors)

    def diagnose(self, ctx: CheckerContext) -> None:
        for exc in self._errors:
            self._emit(
                Rule.from_id(exc.rule_id),
                exc.message,
                exc.location,
                function=exc.declaration,
                binding=exc.entity,
            )


# ─────────────────────────────────────────────────────────────────────────
#  3.2  Ownership Checker
# ─────────────────────────────────────────────────────────────────────────

class OwnershipChecker(Checker):
    """
    Per-function ownership checking in call-graph order: double and invalid
    releases, uses after release or transfer, leaks on every exit path,
    reference-count underflow, missing output writes, and the loop and
    recursion limits.
    """

    name = "ownership"
    description = "Path-sensitive ownership state of every binding"
    rules = frozenset({
        Rule.INVALID_RELEASE,
        Rule.USE_AFTER_TRANSFER,
        Rule.LEAKED_OWNERSHIP,
        Rule.USE_AFTER_RELEASE,
        Rule.REFCOUNT_UNDERFLOW,
        Rule.BORROW_ESCALATION,
        Rule.MISSING_OUTPUT_WRITE,
        Rule.RELEASE_ORDER_VIOLATION,
        Rule.UNSTABLE_LOOP_OWNERSHIP,
        Rule.UNRESOLVABLE_RECURSIVE_CONTRACT,
        Rule.MALFORMED_INPUT,
    })

    def __init__(self) -> None:
        super().__init__()
        self._result: Optional[InterprocResult] = None

    def collect_evidence(self, ctx: CheckerContext) -> None:
        self._result = ctx.interproc()
        ctx.stats["functions"] = len(ctx.analysis_context().functions)
        ctx.stats["skipped_functions"] = len(self._result.skipped)

    def diagnose(self, ctx: CheckerContext) -> None:
        self._diagnostics.extend(self._result.diagnostics)


# ─────────────────────────────────────────────────────────────────────────
#  3.3  Contract Checker
# ─────────────────────────────────────────────────────────────────────────

class ContractChecker(Checker):
    """Borrowed actual arguments bound to formals that consume them."""

    name = "contracts"
    description = "Call-site unification of actuals against callee contracts"
    rules = frozenset({Rule.BORROW_ESCALATION})

    def collect_evidence(self, ctx: CheckerContext) -> None:
        ctx.interproc()

    def diagnose(self, ctx: CheckerContext) -> None:
        self._diagnostics.extend(check_call_sites(ctx.analysis_context()))


# ─────────────────────────────────────────────────────────────────────────
#  3.4  Struct Invariant Checker
# ─────────────────────────────────────────────────────────────────────────

class StructInvariantChecker(Checker):
    """
    Owning fields must be released before their struct, no two fields may
    own one resource, and a constructed struct needs a destructor.
    """

    name = "struct-invariants"
    description = "Struct contracts against constructor/destructor equivalents"
    rules = frozenset({Rule.LEAKED_OWNERSHIP, Rule.ALIASED_OWNERSHIP})

    def collect_evidence(self, ctx: CheckerContext) -> None:
        ctx.interproc()

    def diagnose(self, ctx: CheckerContext) -> None:
        self._diagnostics.extend(check_struct_invariants(ctx.analysis_context()))


# ═════════════════════════════════════════════════════════════════════════
#  PART 4 — CHECKER RUNNER
# ═════════════════════════════════════════════════════════════════════════

_DEFAULT_REGISTRY = CheckerRegistry()
_DEFAULT_REGISTRY.register(InputChecker)
_DEFAULT_REGISTRY.register(OwnershipChecker)
_DEFAULT_REGISTRY.register(ContractChecker)
_DEFAULT_REGISTRY.register(StructInvariantChecker)


def default_registry(disabled: Sequence[str] = ()) -> CheckerRegistry:
    """The built-in checkers; with *disabled*, a copy with those switched off."""
    if not disabled:
        return _DEFAULT_REGISTRY
    registry = CheckerRegistry()
    for cls in _DEFAULT_REGISTRY.get_all():
        registry.register(cls)
    for name in disabled:
        registry.disable(name)
    return registry


@dataclass
class CheckerRunResults:
    """
    Aggregate results from running a suite of checkers.

    Attributes
    ----------
    diagnostics            : Final, deduplicated and ordered diagnostics
    diagnostics_by_checker : Raw diagnostics grouped by checker name
    stats                  : Timing and counting statistics
    checker_names          : Names of checkers that were run
    """
    diagnostics: List[Diagnostic] = field(default_factory=list)
    diagnostics_by_checker: Dict[str, List[Diagnostic]] = field(
        default_factory=lambda: defaultdict(list)
    )
    stats: Dict[str, Any] = field(default_factory=dict)
    checker_names: List[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return sum(1 for d in self.diagnostics if d.is_error)

    @property
    def warning_count(self) -> int:
        return sum(1 for d in self.diagnostics if d.severity is DiagnosticSeverity.WARNING)

    @property
    def total_count(self) -> int:
        return len(self.diagnostics)

    @property
    def has_internal_error(self) -> bool:
        return any(d.category is RuleCategory.INTERNAL for d in self.diagnostics)

    def by_category(self, category: RuleCategory) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.category is category]

    def exit_status(self) -> int:
        """2 on internal failure, 1 if any error diagnostic, otherwise 0."""
        if self.has_internal_error:
            return 2
        return 1 if self.error_count else 0

    def summary(self) -> str:
        """Human-readable summary."""
        lines = [
            f"Checker run complete: {self.total_count} diagnostics "
            f"({self.error_count} errors, {self.warning_count} warnings)",
        ]
        for category in RuleCategory:
            found = self.by_category(category)
            if found:
                lines.append(f"  {category.value}: {len(found)}")
        for name in self.checker_names:
            count = len(self.diagnostics_by_checker.get(name, []))
            elapsed = self.stats.get(f"{name}_elapsed_ms", 0)
            lines.append(f"  {name}: {count} findings ({elapsed:.1f}ms)")
        return "\n".join(lines)


class CheckerRunner:
    """
    Runs a suite of checkers against one translation unit.

    Usage
    -----
    >>> runner = CheckerRunner(config=VerifierConfig(workers=4))
    >>> results = runner.run(load_path("example.json"))
    >>> print(results.summary())
    >>> sys.exit(results.exit_status())
    """

    def __init__(
        self,
        registry: Optional[CheckerRegistry] = None,
        suppressions: Optional[SuppressionManager] = None,
        config: Optional[VerifierConfig] = None,
    ) -> None:
        self.registry = registry or _DEFAULT_REGISTRY
        self.config = config or DEFAULT_CONFIG
        self.suppressions = suppressions or SuppressionManager()
        for entry in self.config.suppress:
            self.suppressions.add(entry)

    def _load_declaration_suppressions(self, unit: TranslationUnit) -> None:
        for decl in unit.declarations:
            for rule_id in decl.suppress:
                self.suppressions.add_function_suppression(decl.name, rule_id)

    def run(
        self,
        unit: TranslationUnit,
        checkers: Optional[Sequence[str]] = None,
    ) -> CheckerRunResults:
        """
        Run checkers against *unit*.

        Parameters
        ----------
        unit     : TranslationUnit
        checkers : list of checker names to run (None = all enabled)
        """
        results = CheckerRunResults()
        self._load_declaration_suppressions(unit)
        ctx = CheckerContext(unit=unit, config=self.config, suppressions=self.suppressions)

        if checkers is not None:
            checker_classes: List[Type[Checker]] = []
            for name in checkers:
                cls = self.registry.get_by_name(name)
                if cls is not None:
                    checker_classes.append(cls)
        else:
            checker_classes = self.registry.get_enabled()

        sink = DiagnosticSink()
        for cls in checker_classes:
            checker = cls()
            checker_name = cls.name
            results.checker_names.append(checker_name)

            t0 = time.monotonic()
            try:
                checker.configure(ctx)
                checker.collect_evidence(ctx)
                checker.diagnose(ctx)
                diags = checker.report(ctx)
            except Exception as exc:
                logger.exception("checker %s failed", checker_name)
                diags = [Diagnostic(
                    rule=Rule.INTERNAL_ERROR,
                    message=f"Checker '{checker_name}' failed: {exc}",
                    location=SourceLocation(file=unit.source),
                )]
            elapsed_ms = (time.monotonic() - t0) * 1000.0
            logger.debug("%s: %d finding(s) in %.1fms", checker_name, len(diags), elapsed_ms)

            sink.extend(diags)
            results.diagnostics_by_checker[checker_name] = diags
            results.stats[f"{checker_name}_elapsed_ms"] = elapsed_ms

        results.diagnostics = sink.finalize(
            self.suppressions, self.config.treat_warnings_as_errors,
        )
        results.stats.update(ctx.stats)
        return results


def check_unit(unit: TranslationUnit, config: Optional[VerifierConfig] = None) -> CheckerRunResults:
    """Run every default checker over *unit*."""
    return CheckerRunner(config=config).run(unit)


__all__ = [
    "Checker",
    "CheckerContext",
    "CheckerRegistry",
    "InputChecker",
    "OwnershipChecker",
    "ContractChecker",
    "StructInvariantChecker",
    "CheckerRunResults",
    "CheckerRunner",
    "default_registry",
    "check_unit",
]
