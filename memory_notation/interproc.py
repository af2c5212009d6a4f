"""
memory_notation/interproc.py
============================

Interprocedural contract checking.

Drives the intraprocedural checker over the whole unit in call-graph order
and checks the facts no single function can see:

  §1  SummaryTable       write-once store of published function summaries
  §2  AnalysisContext    call graph, contracts, summaries and configuration
                         passed explicitly to every step
  §3  SCC scheduling     strongly connected components are processed
                         callee-first, in waves; the SCCs of one wave may be
                         checked concurrently
  §4  Recursive SCCs     summaries iterated to a fixed point bounded by
                         ``recursion_iteration_limit``
  §5  Call-site checks   borrowed actuals bound to consuming formals
  §6  Struct invariants  aliased owning fields, owning fields pending at a
                         struct release, constructors without destructors

Typical usage
-------------
    >>> ctx = AnalysisContext.build(unit.functions, contracts, config)
    >>> result = run_interprocedural(ctx)
    >>> result.summaries.get("example_delete").param_effects
    (<ParamEffect.CONSUMES: 'consumes'>,)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from memory_notation.annotations import (
    AnnotationKind,
    ContractTable,
    StructContract,
    function_contract,
    local_contracts,
)
from memory_notation.callgraph import CallGraph, CallGraphNode, build_callgraph
from memory_notation.config import VerifierConfig
from memory_notation.decl_ast import FunctionDecl
from memory_notation.diagnostics import Diagnostic, Rule
from memory_notation.errors import InputError, SummaryConflictError
from memory_notation.ownership_check import (
    FunctionCheckResult,
    FunctionSummary,
    check_function,
)
from memory_notation.scope_graph import ScopeGraph, build_scope_graph

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# §1  SUMMARY TABLE
# ═══════════════════════════════════════════════════════════════════════════

class SummaryTable:
    """Published function summaries; each function is published once.

    Reads may happen from worker threads while the main thread publishes
    the previous wave, so every access takes the table lock.
    """

    def __init__(self) -> None:
        self._summaries: Dict[str, FunctionSummary] = {}
        self._lock = threading.Lock()

    def publish(self, summary: FunctionSummary) -> None:
        with self._lock:
            if summary.function in self._summaries:
                raise SummaryConflictError(
                    f"summary of {summary.function!r} published twice",
                    declaration=summary.function,
                )
            self._summaries[summary.function] = summary

    def get(self, name: str) -> Optional[FunctionSummary]:
        with self._lock:
            return self._summaries.get(name)

    def invalidate(self, names: Iterable[str]) -> None:
        with self._lock:
            for name in names:
                self._summaries.pop(name, None)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._summaries

    def __len__(self) -> int:
        with self._lock:
            return len(self._summaries)

    def __iter__(self) -> Iterator[FunctionSummary]:
        with self._lock:
            items = [self._summaries[k] for k in sorted(self._summaries)]
        return iter(items)

    def to_dict(self) -> Dict[str, object]:
        return {s.function: s.to_dict() for s in self}


# ═══════════════════════════════════════════════════════════════════════════
# §2  ANALYSIS CONTEXT
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AnalysisContext:
    """Everything the interprocedural pass needs, passed explicitly."""

    functions: Dict[str, FunctionDecl]
    callgraph: CallGraph
    contracts: ContractTable
    config: VerifierConfig
    summaries: SummaryTable = field(default_factory=SummaryTable)
    graphs: Dict[str, ScopeGraph] = field(default_factory=dict)
    # function name → outcome of its SCC, kept until invalidated
    outcomes: Dict[str, _SccOutcome] = field(default_factory=dict)

    @classmethod
    def build(cls, functions: Iterable[FunctionDecl], contracts: ContractTable,
              config: VerifierConfig) -> "AnalysisContext":
        definitions = {f.name: f for f in functions
                       if f.is_definition and contracts.function(f.name) is not None}
        cg = build_callgraph(definitions.values(), contracts)
        return cls(definitions, cg, contracts, config)

    def summary_of(self, name: str) -> Optional[FunctionSummary]:
        return self.summaries.get(name)

    def invalidate(self, name: str) -> Set[str]:
        """Drop the summaries of *name*'s SCC and of every transitive caller.

        Their scope graphs and cached outcomes go too, so the next
        :func:`run_interprocedural` checks exactly these functions again.
        Returns the names whose summaries were dropped.
        """
        node = self.callgraph.node(name)
        if node is None:
            return set()
        dropped: Set[str] = {name}
        for scc in self.callgraph.strongly_connected_components():
            if node in scc:
                dropped.update(n.name for n in scc)
        for n in list(dropped):
            member = self.callgraph.node(n)
            dropped.update(c.name for c in self.callgraph.transitive_callers(member))
        self.summaries.invalidate(dropped)
        for n in dropped:
            self.graphs.pop(n, None)
            self.outcomes.pop(n, None)
        logger.debug("invalidated %d summaries: %s", len(dropped), sorted(dropped))
        return dropped

    def replace_function(self, decl: FunctionDecl) -> Set[str]:
        """Swap in a changed declaration of ``decl.name``.

        The new contract and locals replace the old ones and the call graph
        is rebuilt.  Everything that depended on the old body or contract,
        under the old call graph or the new one, is invalidated.

        Raises
        ------
        AnnotationError
            The new annotations do not form a contract; the context is
            left unchanged.
        """
        fc = function_contract(decl, self.config)
        locals_ = local_contracts(decl, fc.params, self.config) if decl.is_definition else {}
        dropped = self.invalidate(decl.name)
        self.contracts = self.contracts.replace_function(fc, locals_)
        if decl.is_definition:
            self.functions[decl.name] = decl
        else:
            self.functions.pop(decl.name, None)
        self.callgraph = build_callgraph(self.functions.values(), self.contracts)
        dropped |= self.invalidate(decl.name)
        logger.info("replaced %s; %d function(s) to re-check", decl.name, len(dropped))
        return dropped


@dataclass
class InterprocResult:
    diagnostics: List[Diagnostic] = field(default_factory=list)
    summaries: SummaryTable = field(default_factory=SummaryTable)
    iterations: Dict[str, int] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)


@dataclass
class _SccOutcome:
    names: Tuple[str, ...]
    diagnostics: List[Diagnostic] = field(default_factory=list)
    summaries: List[FunctionSummary] = field(default_factory=list)
    iterations: int = 1
    skipped: List[str] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════
# §3  SCC SCHEDULING
# ═══════════════════════════════════════════════════════════════════════════

def run_interprocedural(ctx: AnalysisContext, unit_checks: bool = True) -> InterprocResult:
    """Check every function of *ctx* and, with *unit_checks*, the unit-wide
    call-site and struct invariants.

    SCCs are processed wave by wave.  With ``config.workers > 1`` the SCCs
    of one wave run on a thread pool; outcomes are merged in SCC order, so
    the result does not depend on the number of workers.

    An SCC already checked by an earlier run on *ctx*, and not invalidated
    since, is not checked again; its earlier outcome is reported as is.
    """
    result = InterprocResult(summaries=ctx.summaries)
    waves = ctx.callgraph.waves()
    workers = ctx.config.workers
    logger.info("interprocedural pass: %d function(s), %d wave(s), %d worker(s)",
                len(ctx.functions), len(waves), workers)

    executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
    try:
        for number, wave in enumerate(waves):
            pending = [scc for scc in wave if not all(n.name in ctx.outcomes for n in scc)]
            logger.debug("wave %d: %s (%d settled)", number,
                         [[n.name for n in scc] for scc in pending], len(wave) - len(pending))
            if executor is not None and len(pending) > 1:
                fresh = list(executor.map(lambda scc: _check_scc(ctx, scc), pending))
            else:
                fresh = [_check_scc(ctx, scc) for scc in pending]
            for outcome in fresh:
                for summary in outcome.summaries:
                    ctx.summaries.publish(summary)
                for name in outcome.names:
                    ctx.outcomes[name] = outcome
            for scc in wave:
                outcome = ctx.outcomes[scc[0].name]
                result.diagnostics.extend(outcome.diagnostics)
                result.skipped.extend(outcome.skipped)
                for name in outcome.names:
                    result.iterations[name] = outcome.iterations
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    if unit_checks:
        result.diagnostics.extend(check_call_sites(ctx))
        result.diagnostics.extend(check_struct_invariants(ctx))
    return result


def _graph_of(ctx: AnalysisContext, decl: FunctionDecl) -> ScopeGraph:
    graph = ctx.graphs.get(decl.name)
    if graph is None:
        graph = build_scope_graph(decl, ctx.config, ctx.contracts)
        ctx.graphs[decl.name] = graph
    return graph


def _malformed(decl: FunctionDecl, exc: InputError) -> Diagnostic:
    return Diagnostic(
        rule=Rule.MALFORMED_INPUT,
        message=exc.message,
        location=exc.location or decl.location,
        function=decl.name,
        binding=exc.entity,
    )


def _check_scc(ctx: AnalysisContext, scc: List[CallGraphNode]) -> _SccOutcome:
    outcome = _SccOutcome(tuple(n.name for n in scc))
    graphs: Dict[str, ScopeGraph] = {}
    for node in scc:
        decl = ctx.functions[node.name]
        try:
            graphs[node.name] = _graph_of(ctx, decl)
        except InputError as exc:
            logger.debug("%s skipped: %s", decl.name, exc)
            outcome.diagnostics.append(_malformed(decl, exc))
            outcome.skipped.append(decl.name)
    members = [n.name for n in scc if n.name in graphs]
    if not members:
        return outcome

    if not ctx.callgraph.is_recursive_scc(scc):
        name = members[0]
        r = check_function(ctx.functions[name], ctx.contracts, ctx.config,
                           ctx.summary_of, graphs[name])
        outcome.diagnostics.extend(r.diagnostics)
        outcome.summaries.append(r.summary)
        return outcome
    return _check_recursive(ctx, members, graphs, outcome)


# ═══════════════════════════════════════════════════════════════════════════
# §4  RECURSIVE SCCs
# ═══════════════════════════════════════════════════════════════════════════

def _check_recursive(ctx: AnalysisContext, members: List[str], graphs: Dict[str, ScopeGraph],
                     outcome: _SccOutcome) -> _SccOutcome:
    provisional: Dict[str, FunctionSummary] = {
        name: FunctionSummary.from_contract(ctx.contracts.function(name)) for name in members
    }

    def lookup(name: str) -> Optional[FunctionSummary]:
        if name in provisional:
            return provisional[name]
        return ctx.summary_of(name)

    limit = ctx.config.recursion_iteration_limit
    results: Dict[str, FunctionCheckResult] = {}
    stable = False
    iteration = 0
    while iteration < limit and not stable:
        iteration += 1
        results = {
            name: check_function(ctx.functions[name], ctx.contracts, ctx.config, lookup,
                                 graphs[name])
            for name in members
        }
        stable = all(
            results[name].summary.effect_key() == provisional[name].effect_key()
            for name in members
        )
        provisional = {name: results[name].summary for name in members}
        logger.debug("SCC %s iteration %d: %s", members, iteration,
                     "stable" if stable else "changed")

    outcome.iterations = iteration
    for name in members:
        outcome.diagnostics.extend(results[name].diagnostics)
        outcome.summaries.append(results[name].summary)
    if not stable:
        cycle = " -> ".join(members + [members[0]])
        for name in members:
            decl = ctx.functions[name]
            outcome.diagnostics.append(Diagnostic(
                rule=Rule.UNRESOLVABLE_RECURSIVE_CONTRACT,
                message=(f"ownership summary of '{name}' does not stabilise after "
                         f"{iteration} iteration(s) over the recursive cycle {cycle}"),
                location=decl.location,
                function=name,
            ))
    return outcome


# ═══════════════════════════════════════════════════════════════════════════
# §5  CALL-SITE CHECKS
# ═══════════════════════════════════════════════════════════════════════════

def check_call_sites(ctx: AnalysisContext) -> List[Diagnostic]:
    """Borrowed actual arguments bound to consuming formals."""
    diagnostics: List[Diagnostic] = []
    for summary in ctx.summaries:
        for site in summary.call_sites:
            if not (site.consuming and site.actual_borrowed):
                continue
            callee = ctx.contracts.function(site.callee)
            formal = callee.param_at(site.index) if callee else None
            contract = formal.describe() if formal else ""
            how = "takes possession of" if site.declared_consuming else "may release"
            diagnostics.append(Diagnostic(
                rule=Rule.BORROW_ESCALATION,
                message=(f"borrowed '{site.actual}' is passed to '{site.callee}', which "
                         f"{how} parameter '{site.formal}'"),
                location=site.location,
                function=site.caller,
                binding=site.actual,
                contract=contract,
                path=site.path,
            ))
    return diagnostics


# ═══════════════════════════════════════════════════════════════════════════
# §6  STRUCT INVARIANTS
# ═══════════════════════════════════════════════════════════════════════════

def _resource_of(field_contract) -> str:
    target = field_contract.target_of(AnnotationKind.OWNER_OF)
    return target or field_contract.name


def check_aliased_fields(sc: StructContract) -> List[Diagnostic]:
    """Two owning fields claiming one resource."""
    diagnostics: List[Diagnostic] = []
    claimed: Dict[str, str] = {}
    for f in sc.owning_fields:
        resource = _resource_of(f)
        if resource in claimed:
            diagnostics.append(Diagnostic(
                rule=Rule.ALIASED_OWNERSHIP,
                message=(f"fields '{claimed[resource]}' and '{f.name}' of struct '{sc.name}' "
                         f"both own '{resource}'; use ref_count for shared ownership"),
                location=f.location if f.location.line else sc.location,
                function=sc.name,
                binding=f"{sc.name}.{f.name}",
                contract=f.describe(),
            ))
        else:
            claimed[resource] = f.name
    return diagnostics


def _destructors(ctx: AnalysisContext) -> Set[str]:
    """Struct names released somewhere, or consumed by some declared function."""
    names: Set[str] = set()
    for summary in ctx.summaries:
        names.update(ev.struct for ev in summary.destructions)
    for fc in ctx.contracts.functions.values():
        if fc.is_definition:
            continue
        for p in fc.params:
            if p.is_consuming and p.struct_name:
                names.add(p.struct_name)
    return names


def check_struct_invariants(ctx: AnalysisContext) -> List[Diagnostic]:
    diagnostics: List[Diagnostic] = []
    for name in sorted(ctx.contracts.structs):
        diagnostics.extend(check_aliased_fields(ctx.contracts.structs[name]))

    for summary in ctx.summaries:
        for ev in summary.destructions:
            for pending in ev.pending:
                sc = ctx.contracts.struct(ev.struct)
                fc = sc.field(pending) if sc else None
                diagnostics.append(Diagnostic(
                    rule=Rule.LEAKED_OWNERSHIP,
                    message=(f"'{ev.binding}' is released while its owning field "
                             f"'{pending}' still holds its resource"),
                    location=ev.location,
                    function=ev.function,
                    binding=f"{ev.struct}.{pending}",
                    contract=fc.describe() if fc else "",
                    path=ev.path,
                ))

    destroyed = _destructors(ctx)
    for fname in sorted(ctx.contracts.functions):
        fc = ctx.contracts.functions[fname]
        struct_name = fc.constructed_struct()
        sc = ctx.contracts.struct(struct_name)
        if sc is None or struct_name in destroyed:
            continue
        for f in sc.owning_fields:
            diagnostics.append(Diagnostic(
                rule=Rule.LEAKED_OWNERSHIP,
                message=(f"'{fname}' constructs '{struct_name}' but no function in the unit "
                         f"releases it; owning field '{f.name}' is never released"),
                location=fc.location,
                function=fname,
                binding=f"{struct_name}.{f.name}",
                contract=f.describe(),
            ))
        # one report per struct
        destroyed.add(struct_name)
    return diagnostics


__all__ = [
    "SummaryTable",
    "AnalysisContext",
    "InterprocResult",
    "run_interprocedural",
    "check_call_sites",
    "check_aliased_fields",
    "check_struct_invariants",
]
