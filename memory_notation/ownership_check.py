"""
memory_notation.ownership_check
===============================

Intraprocedural ownership checker.

Walks one function's :class:`~memory_notation.scope_graph.ScopeGraph`
forward, tracking for every binding a per-path :class:`OwnershipState`:

============== ==========================================================
UNINITIALIZED  not yet bound, or NULL; releasing it is a no-op
BORROWED       held without release responsibility
OWNED          must be released or transferred before its scope exits
MOVED          ownership handed to a callee, structure field or caller
RELEASED       returned to the allocator
REF_COUNTED    shared; carries a liveness flag and a net refcount delta
============== ==========================================================

Paths are explored exhaustively.  After every statement, paths whose
binding states coincide are merged, so the number of live paths is
bounded by the number of distinct states rather than by the number of
branches.  Loops are summarised by iterating the set of loop-head states
to a fixed point (bounded by ``loop_fixpoint_iteration_limit``).

The checker produces diagnostics and a :class:`FunctionSummary`: the
function's externally visible ownership effect, consumed by the
interprocedural pass.

Typical usage::

    result = check_function(decl, contracts, config)
    for diag in result.diagnostics:
        print(diag.to_gcc_format())
    print(result.summary.param_effects)
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from dataclasses import dataclass, field
from typing import (
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
)

from memory_notation.annotations import (
    OWNING_KINDS,
    AnnotationKind,
    ContractTable,
    EntityContract,
    FunctionContract,
    StructContract,
    extract_entity,
)
from memory_notation.config import VerifierConfig
from memory_notation.decl_ast import (
    AllocExpr,
    Assign,
    CallExpr,
    CallStmt,
    ConstExpr,
    DecRef,
    Decl,
    Expr,
    FunctionDecl,
    IncRef,
    NullExpr,
    Release,
    Use,
    VarRef,
    Write,
    is_pointer_type,
    pointee_struct,
)
from memory_notation.diagnostics import Diagnostic, Rule, SourceLocation
from memory_notation.scope_graph import (
    ExitEdge,
    ExitKind,
    ExitPoint,
    FailurePoint,
    ScopedBlock,
    ScopedIf,
    ScopedLoop,
    ScopeGraph,
    ScopeNode,
    build_scope_graph,
)

logger = logging.getLogger(__name__)

# realloc-style allocators consume their first argument
_REALLOCATORS = frozenset({"realloc", "reallocarray", "g_realloc"})


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------


class OwnershipState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    BORROWED = "borrowed"
    OWNED = "owned"
    MOVED = "moved"
    RELEASED = "released"
    REF_COUNTED = "ref-counted"


class RefLiveness(enum.Enum):
    LIVE = "live"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class BindingState:
    """State of one binding (or field) on one path."""

    state: OwnershipState
    kind: Optional[AnnotationKind] = None
    refcount: int = 0
    liveness: Optional[RefLiveness] = None
    fresh: bool = False
    written: bool = False
    since: Optional[SourceLocation] = None

    def replace(self, **changes) -> "BindingState":
        return dataclasses.replace(self, **changes)

    @property
    def is_dead(self) -> bool:
        return self.state in (OwnershipState.MOVED, OwnershipState.RELEASED)

    def __str__(self) -> str:
        if self.state is OwnershipState.REF_COUNTED:
            live = self.liveness.value if self.liveness else "unknown"
            return f"RefCounted({live}, {self.refcount:+d})"
        return self.state.value


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


class ParamEffect(enum.Enum):
    CONSUMES = "consumes"
    BORROWS = "borrows"
    MAYBE_CONSUMES = "maybe-consumes"

    @property
    def consuming(self) -> bool:
        return self is not ParamEffect.BORROWS


class ReturnOwnership(enum.Enum):
    OWNED = "owned"
    REF_COUNTED = "ref-counted"
    BORROWED = "borrowed"
    NONE = "none"


@dataclass(frozen=True)
class CallSite:
    """One actual argument bound to one formal at one call."""

    caller: str
    callee: str
    index: int
    actual: str
    actual_state: str
    actual_borrowed: bool
    formal: str
    consuming: bool
    declared_consuming: bool
    location: SourceLocation
    path: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DestructionEvent:
    """A structure released while some of its owning fields were still held."""

    function: str
    struct: str
    binding: str
    is_param: bool
    pending: Tuple[str, ...]
    location: SourceLocation
    path: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FunctionSummary:
    """Externally visible ownership effect of one function."""

    function: str
    param_names: Tuple[str, ...] = ()
    param_effects: Tuple[ParamEffect, ...] = ()
    refcount_deltas: Tuple[int, ...] = ()
    returns: ReturnOwnership = ReturnOwnership.NONE
    call_sites: Tuple[CallSite, ...] = ()
    destructions: Tuple[DestructionEvent, ...] = ()
    exit_count: int = 0
    exempt_exits: int = 0
    inferred: bool = True

    @classmethod
    def from_contract(cls, contract: FunctionContract) -> "FunctionSummary":
        """Summary implied by the declared contract alone."""
        effects = tuple(
            ParamEffect.CONSUMES if p.is_consuming else ParamEffect.BORROWS
            for p in contract.params
        )
        return cls(
            function=contract.name,
            param_names=tuple(p.name for p in contract.params),
            param_effects=effects,
            refcount_deltas=tuple(0 for _ in contract.params),
            returns=_declared_return(contract.returns),
            inferred=False,
        )

    def effect_of(self, index: int) -> ParamEffect:
        if 0 <= index < len(self.param_effects):
            return self.param_effects[index]
        return ParamEffect.BORROWS

    def refcount_delta(self, index: int) -> int:
        if 0 <= index < len(self.refcount_deltas):
            return self.refcount_deltas[index]
        return 0

    def effect_key(self) -> Tuple[object, ...]:
        """The part of the summary callers depend on."""
        return (self.param_effects, self.refcount_deltas, self.returns)

    def destroys(self) -> Dict[str, Tuple[str, ...]]:
        """struct name → binding names released as that struct."""
        result: Dict[str, Tuple[str, ...]] = {}
        for ev in self.destructions:
            result[ev.struct] = result.get(ev.struct, ()) + (ev.binding,)
        return result

    def to_dict(self) -> Dict[str, object]:
        return {
            "function": self.function,
            "params": {
                name: {"effect": eff.value, "refcount_delta": delta}
                for name, eff, delta in zip(self.param_names, self.param_effects,
                                            self.refcount_deltas)
            },
            "returns": self.returns.value,
            "call_sites": len(self.call_sites),
            "exits": self.exit_count,
            "exempt_exits": self.exempt_exits,
        }


def _declared_return(returns: EntityContract) -> ReturnOwnership:
    if returns.kind in OWNING_KINDS:
        return ReturnOwnership.OWNED
    if returns.kind is AnnotationKind.REF_COUNTED:
        return ReturnOwnership.REF_COUNTED
    if returns.kind is not None:
        return ReturnOwnership.BORROWED
    return ReturnOwnership.NONE


@dataclass
class FunctionCheckResult:
    function: str
    diagnostics: List[Diagnostic] = field(default_factory=list)
    summary: Optional[FunctionSummary] = None
    graph: Optional[ScopeGraph] = None


SummaryLookup = Callable[[str], Optional[FunctionSummary]]


# ---------------------------------------------------------------------------
# Path state
# ---------------------------------------------------------------------------

BindingKey = Tuple[str, str]            # (scope id, name)
FieldKey = Tuple[str, str, str]         # (scope id, name, field)


@dataclass(frozen=True)
class _BindingInfo:
    name: str
    scope_id: str
    contract: EntityContract
    is_param: bool = False
    index: int = -1
    cleanup: Optional[str] = None

    @property
    def key(self) -> BindingKey:
        return (self.scope_id, self.name)

    @property
    def tracked(self) -> bool:
        return self.contract.kind is not None or is_pointer_type(self.contract.type)

    @property
    def struct_name(self) -> Optional[str]:
        return pointee_struct(self.contract.type)


@dataclass(frozen=True)
class _Value:
    """Abstract value of an evaluated expression."""

    kind: str                                   # owned/borrowed/refcounted/null/untracked
    origin: Optional[Tuple[str, str, Optional[str]]] = None
    fresh: bool = False
    text: str = ""

    @property
    def origin_key(self) -> Optional[BindingKey]:
        return (self.origin[0], self.origin[1]) if self.origin else None

    @property
    def origin_field(self) -> Optional[str]:
        return self.origin[2] if self.origin else None


_NULL = _Value("null", text="NULL")
_UNTRACKED = _Value("untracked")


class _Path:
    """Mutable state of one explored path."""

    __slots__ = ("bindings", "fields", "scopes")

    def __init__(self, bindings: Optional[Dict[BindingKey, BindingState]] = None,
                 fields: Optional[Dict[FieldKey, BindingState]] = None,
                 scopes: Tuple[str, ...] = ()) -> None:
        self.bindings: Dict[BindingKey, BindingState] = bindings or {}
        self.fields: Dict[FieldKey, BindingState] = fields or {}
        self.scopes = scopes

    def clone(self) -> "_Path":
        return _Path(dict(self.bindings), dict(self.fields), self.scopes)

    def enter(self, scope_id: str) -> "_Path":
        p = self.clone()
        if scope_id not in p.scopes:
            p.scopes = p.scopes + (scope_id,)
        return p

    def key(self) -> Tuple[object, ...]:
        return (tuple(sorted(self.bindings.items())), tuple(sorted(self.fields.items())))

    def drop(self, key: BindingKey) -> None:
        self.bindings.pop(key, None)
        for fk in [fk for fk in self.fields if fk[:2] == key]:
            del self.fields[fk]


def _dedupe(paths: Iterable[_Path]) -> List[_Path]:
    seen = set()
    result: List[_Path] = []
    for p in paths:
        k = p.key()
        if k not in seen:
            seen.add(k)
            result.append(p)
    return result


class _Flow:
    """Paths leaving a scope, grouped by how they leave."""

    __slots__ = ("normal", "breaks", "continues")

    def __init__(self) -> None:
        self.normal: List[_Path] = []
        self.breaks: Dict[str, List[_Path]] = {}
        self.continues: Dict[str, List[_Path]] = {}

    def absorb(self, other: "_Flow") -> None:
        for loop_id, paths in other.breaks.items():
            self.breaks.setdefault(loop_id, []).extend(paths)
        for loop_id, paths in other.continues.items():
            self.continues.setdefault(loop_id, []).extend(paths)


# ---------------------------------------------------------------------------
# Checker
# ---------------------------------------------------------------------------


class OwnershipChecker:
    """Checks one function definition against its contract.

    Parameters
    ----------
    decl : FunctionDecl
    graph : ScopeGraph
    contracts : ContractTable
    config : VerifierConfig
    summaries : callable, optional
        Returns the current summary of a callee, or ``None``.
    """

    def __init__(self, decl: FunctionDecl, graph: ScopeGraph, contracts: ContractTable,
                 config: VerifierConfig, summaries: Optional[SummaryLookup] = None) -> None:
        self.decl = decl
        self.name = decl.name
        self.graph = graph
        self.contracts = contracts
        self.config = config
        self._summaries = summaries or (lambda name: None)
        contract = contracts.function(decl.name)
        if contract is None:
            raise KeyError(f"no contract for function {decl.name!r}")
        self.contract: FunctionContract = contract
        self._infos: Dict[BindingKey, _BindingInfo] = {}
        self._diagnostics: List[Diagnostic] = []
        self._exits: List[Tuple[ExitKind, Dict[int, BindingState], ReturnOwnership]] = []
        self._exempt = 0
        self._call_sites: Dict[Tuple[object, ...], CallSite] = {}
        self._destructions: Dict[Tuple[object, ...], DestructionEvent] = {}

    # ----- entry ------------------------------------------------------------

    def run(self) -> FunctionCheckResult:
        root = self.graph.root
        entry = _Path()
        for index, pc in enumerate(self.contract.params):
            info = _BindingInfo(pc.name, root.id, pc, is_param=True, index=index)
            self._infos[info.key] = info
            entry.bindings[info.key] = _initial_param_state(pc)
        self._exec_scope(root, [entry])
        summary = self._summary()
        logger.debug("%s: %d diagnostic(s), %d exit(s), %d exempt",
                     self.name, len(self._diagnostics), len(self._exits), self._exempt)
        return FunctionCheckResult(self.name, list(self._diagnostics), summary, self.graph)

    # ----- reporting --------------------------------------------------------

    def _report(self, rule: Rule, p: _Path, binding: str, contract: str,
                location: SourceLocation, message: str,
                since: Optional[SourceLocation] = None) -> None:
        self._diagnostics.append(Diagnostic(
            rule=rule,
            message=message,
            location=location,
            function=self.name,
            binding=binding,
            contract=contract,
            path=p.scopes,
            secondary=(since,) if since is not None else (),
        ))

    def _contract_text(self, info: _BindingInfo, st: Optional[BindingState]) -> str:
        if info.contract.annotations or info.contract.defaulted or st is None or st.kind is None:
            return info.contract.describe()
        return f"{st.kind.value} (inferred) {info.contract.type}".strip()

    def _field_contract(self, info: _BindingInfo, name: str) -> EntityContract:
        sc = self.contracts.struct(info.struct_name)
        fc = sc.field(name) if sc else None
        if fc is None:
            fc = EntityContract(name=name, kind=self.config.default_unannotated_kind,
                                defaulted=True)
        return fc

    # ----- scopes -----------------------------------------------------------

    def _exec_scope(self, scope: ScopeNode, paths: Sequence[_Path]) -> _Flow:
        flow = _Flow()
        current = [p.enter(scope.id) for p in paths]
        for stmt in scope.statements:
            if not current:
                break
            current = _dedupe(self._exec(scope, stmt, current, flow))
        if current:
            edge = scope.normal_exit
            for p in current:
                if edge.leaves_function:
                    self._exit_function(scope, p, edge, None)
                else:
                    self._leave_scopes([scope], p, edge)
            if not edge.leaves_function:
                flow.normal.extend(current)
        return flow

    def _exec(self, scope: ScopeNode, stmt, paths: List[_Path], flow: _Flow) -> List[_Path]:
        if isinstance(stmt, ScopedIf):
            tflow = self._exec_scope(self.graph.scope(stmt.then_scope), paths)
            flow.absorb(tflow)
            out = list(tflow.normal)
            if stmt.else_scope is not None:
                eflow = self._exec_scope(self.graph.scope(stmt.else_scope), paths)
                flow.absorb(eflow)
                out.extend(eflow.normal)
            else:
                out.extend(paths)
            return out

        if isinstance(stmt, ScopedBlock):
            bflow = self._exec_scope(self.graph.scope(stmt.scope), paths)
            flow.absorb(bflow)
            return bflow.normal

        if isinstance(stmt, ScopedLoop):
            return self._exec_loop(stmt, paths, flow)

        if isinstance(stmt, ExitPoint):
            self._exec_exit(scope, stmt, paths, flow)
            return []

        if isinstance(stmt, FailurePoint):
            for p in paths:
                self._exit_function(scope, p.clone(), stmt.edge, None)
            return paths

        for p in paths:
            self._apply(scope, p, stmt)
        return paths

    def _exec_loop(self, stmt: ScopedLoop, paths: List[_Path], flow: _Flow) -> List[_Path]:
        loop = self.graph.scope(stmt.scope)
        limit = self.config.loop_fixpoint_iteration_limit
        heads = _dedupe(paths)
        seen = {h.key() for h in heads}
        exits: List[_Path] = [] if stmt.infinite else list(heads)
        frontier = heads
        iteration = 0
        while frontier:
            if iteration >= limit:
                self._unstable_loop(loop, heads[0], frontier[0], iteration)
                break
            iteration += 1
            body = self._exec_scope(loop, frontier)
            exits.extend(body.breaks.pop(loop.id, []))
            back = body.normal + body.continues.pop(loop.id, [])
            flow.absorb(body)
            fresh: List[_Path] = []
            for q in _dedupe(back):
                k = q.key()
                if k not in seen:
                    seen.add(k)
                    fresh.append(q)
            if not stmt.infinite:
                exits.extend(fresh)
            frontier = fresh
        logger.debug("%s: loop %s settled after %d iteration(s)", self.name, loop.id, iteration)
        return _dedupe(exits)

    def _unstable_loop(self, loop: ScopeNode, first: _Path, last: _Path, iterations: int) -> None:
        changed = sorted({
            key[1] for key in set(first.bindings) | set(last.bindings)
            if first.bindings.get(key) != last.bindings.get(key)
        })
        names = ", ".join(f"'{n}'" for n in changed) or "its bindings"
        self._report(
            Rule.UNSTABLE_LOOP_OWNERSHIP, last, ",".join(changed), "", loop.location,
            f"ownership state of {names} does not converge after {iterations} loop iteration(s)",
        )

    def _exec_exit(self, scope: ScopeNode, stmt: ExitPoint, paths: List[_Path],
                   flow: _Flow) -> None:
        edge = stmt.edge
        for p in paths:
            if edge.kind is ExitKind.NO_RETURN:
                self._exempt += 1
                continue
            if edge.leaves_function:
                self._exit_function(scope, p, edge, stmt.value)
                continue
            self._leave_scopes(self.graph.chain(edge), p, edge)
            bucket = flow.breaks if edge.kind is ExitKind.BREAK else flow.continues
            bucket.setdefault(edge.boundary, []).append(p)

    # ----- exits ------------------------------------------------------------

    def _exit_function(self, scope: ScopeNode, p: _Path, edge: ExitEdge,
                       value_expr: Optional[Expr]) -> None:
        returned = ReturnOwnership.NONE
        if value_expr is not None:
            value = self._eval(scope, p, value_expr, edge.location)
            returned = self._return_value(p, value, edge.location)
        params = {
            info.index: p.bindings[info.key]
            for info in self._infos.values()
            if info.is_param and info.key in p.bindings
        }
        self._leave_scopes(self.graph.chain(edge), p, edge)
        self._exits.append((edge.kind, params, returned))

    def _leave_scopes(self, chain: Sequence[ScopeNode], p: _Path, edge: ExitEdge) -> None:
        for scope in chain:
            for name in reversed(scope.bindings):
                key = (scope.id, name)
                if key not in p.bindings:
                    continue
                info = self._infos[key]
                if info.tracked:
                    self._check_at_exit(p, info, edge)
                p.drop(key)

    def _check_at_exit(self, p: _Path, info: _BindingInfo, edge: ExitEdge) -> None:
        if info.cleanup:
            self._release_binding(p, info, edge.location, info.cleanup, cleanup=True)
        st = p.bindings[info.key]
        where = edge.kind.value
        if st.state is OwnershipState.OWNED and st.kind in OWNING_KINDS:
            if info.is_param and st.kind is AnnotationKind.TAKE_POSSESSION:
                message = (f"parameter '{info.name}' taken into possession is neither released "
                           f"nor transferred on this {where} path")
            else:
                message = f"'{info.name}' is still owned at this {where} exit and is never released"
            self._report(Rule.LEAKED_OWNERSHIP, p, info.name, self._contract_text(info, st),
                         edge.location, message)
        elif (st.state is OwnershipState.REF_COUNTED and st.liveness is RefLiveness.LIVE
              and st.refcount > 0 and not info.is_param):
            self._report(Rule.LEAKED_OWNERSHIP, p, info.name, self._contract_text(info, st),
                         edge.location,
                         f"reference held by '{info.name}' is never released "
                         f"at this {where} exit")
        if not (info.is_param and edge.leaves_function):
            return
        if edge.kind.is_success and info.contract.is_output and not st.written:
            self._report(Rule.MISSING_OUTPUT_WRITE, p, info.name, info.contract.describe(),
                         edge.location,
                         f"output parameter '{info.name}' is not written on this {where} path")
        if st.state is OwnershipState.BORROWED:
            for fk, fst in sorted(p.fields.items()):
                if fk[:2] == info.key and fst.is_dead and fst.kind in OWNING_KINDS:
                    label = f"{info.name}.{fk[2]}"
                    self._report(Rule.INVALID_RELEASE, p, label,
                                 self._field_contract(info, fk[2]).describe(), edge.location,
                                 f"owning field '{label}' of borrowed '{info.name}' is left "
                                 f"{fst.state.value}; its owner will release it again",
                                 fst.since)

    def _return_value(self, p: _Path, value: _Value, loc: SourceLocation) -> ReturnOwnership:
        r = self.contract.returns
        text = value.text or "value"
        if r.kind in OWNING_KINDS:
            if value.kind == "owned":
                self._transfer(p, value, loc)
            elif value.kind == "borrowed":
                self._report(Rule.BORROW_ESCALATION, p, text, r.describe(), loc,
                             f"returns borrowed '{text}' through an owning return")
            elif value.kind == "refcounted" and value.origin_key:
                self._adjust_refcount(p, value.origin_key, -1, loc)
        elif r.kind is AnnotationKind.REF_COUNTED:
            if value.kind == "refcounted" and value.origin_key:
                self._adjust_refcount(p, value.origin_key, -1, loc)
            elif value.kind == "owned":
                self._transfer(p, value, loc)
        elif value.kind == "owned" and value.fresh and value.origin is None:
            self._report(Rule.LEAKED_OWNERSHIP, p, text, r.describe(), loc,
                         f"returns freshly owned '{text}' through a non-owning return; "
                         f"nobody releases it")
        return {
            "owned": ReturnOwnership.OWNED,
            "refcounted": ReturnOwnership.REF_COUNTED,
            "borrowed": ReturnOwnership.BORROWED,
        }.get(value.kind, ReturnOwnership.NONE)

    # ----- statements -------------------------------------------------------

    def _apply(self, scope: ScopeNode, p: _Path, stmt) -> None:
        if isinstance(stmt, Decl):
            self._declare(scope, p, stmt)
        elif isinstance(stmt, Assign):
            value = self._eval(scope, p, stmt.value, stmt.location)
            if stmt.is_store:
                self._store(scope, p, stmt.target, value, stmt.location)
            else:
                self._assign(scope, p, stmt.target, value, stmt.location)
        elif isinstance(stmt, Release):
            self._release(scope, p, stmt.target, stmt.location, stmt.function)
        elif isinstance(stmt, CallStmt):
            value = self._eval_call(scope, p, stmt.call, stmt.location)
            if value.fresh and value.kind in ("owned", "refcounted"):
                self._report(Rule.LEAKED_OWNERSHIP, p, value.text, "", stmt.location,
                             f"owned result of '{stmt.call.callee}' is discarded")
        elif isinstance(stmt, Use):
            self._use(scope, p, stmt.target, stmt.location)
        elif isinstance(stmt, (IncRef, DecRef)):
            self._refcount_op(scope, p, stmt)
        elif isinstance(stmt, Write):
            self._write(scope, p, stmt)

    def _declare(self, scope: ScopeNode, p: _Path, stmt: Decl) -> None:
        contract = self.contracts.local(self.name, stmt)
        if contract is None:
            contract = extract_entity(stmt.name, stmt.annotations, stmt.type, stmt.location,
                                      self.config, owner=self.name, default=None)
        info = _BindingInfo(stmt.name, scope.id, contract, cleanup=stmt.cleanup)
        self._infos[info.key] = info
        value = self._eval(scope, p, stmt.init, stmt.location) if stmt.init is not None else _NULL
        p.bindings[info.key] = BindingState(OwnershipState.UNINITIALIZED, kind=contract.kind)
        if info.tracked:
            self._bind(p, info, value, stmt.location)

    def _assign(self, scope: ScopeNode, p: _Path, target: VarRef, value: _Value,
                loc: SourceLocation) -> None:
        key = self._resolve(scope, p, target.name)
        if key is None or not self._infos[key].tracked:
            return
        info = self._infos[key]
        st = p.bindings[key]
        if (st.state is OwnershipState.OWNED and st.kind in OWNING_KINDS
                and value.origin_key != key):
            self._report(Rule.LEAKED_OWNERSHIP, p, info.name, self._contract_text(info, st), loc,
                         f"'{info.name}' is overwritten while it still owns its resource")
        self._bind(p, info, value, loc)

    def _bind(self, p: _Path, info: _BindingInfo, value: _Value, loc: SourceLocation) -> None:
        """Bind *value* to a binding, resetting its state."""
        key = info.key
        previous = p.bindings.get(key)
        written = previous.written if previous else False
        p.drop(key)
        kind = info.contract.kind
        if kind is None:
            kind = {
                "owned": AnnotationKind.OWNER,
                "borrowed": AnnotationKind.GUARDED,
                "refcounted": AnnotationKind.REF_COUNTED,
            }.get(value.kind)
        base = BindingState(OwnershipState.UNINITIALIZED, kind=kind, written=written)
        text = value.text or "value"

        if value.kind in ("null", "untracked") or kind is None:
            p.bindings[key] = base
            return

        if kind in OWNING_KINDS:
            if value.kind == "owned":
                self._transfer(p, value, loc)
                st = base.replace(state=OwnershipState.OWNED, fresh=value.fresh and not value.origin)
            elif value.kind == "borrowed":
                self._report(Rule.BORROW_ESCALATION, p, info.name, self._contract_text(info, base),
                             loc, f"owning '{info.name}' is bound to borrowed '{text}'")
                st = base.replace(state=OwnershipState.BORROWED)
            else:
                st = base.replace(state=OwnershipState.REF_COUNTED, liveness=RefLiveness.UNKNOWN)
        elif kind is AnnotationKind.REF_COUNTED:
            if value.kind == "owned" or (value.kind == "refcounted" and value.fresh):
                if value.kind == "owned":
                    self._transfer(p, value, loc)
                st = base.replace(state=OwnershipState.REF_COUNTED, liveness=RefLiveness.LIVE,
                                  refcount=1)
            else:
                st = base.replace(state=OwnershipState.REF_COUNTED, liveness=RefLiveness.UNKNOWN)
        else:
            if value.kind == "owned" and value.origin is None:
                self._report(Rule.LEAKED_OWNERSHIP, p, info.name, self._contract_text(info, base),
                             loc, f"fresh resource '{text}' is bound to non-owning "
                                  f"'{info.name}' and is never released")
            st = base.replace(state=OwnershipState.BORROWED)
        p.bindings[key] = st

    def _transfer(self, p: _Path, value: _Value, loc: SourceLocation) -> None:
        """Ownership of *value*'s origin moves elsewhere."""
        if value.origin is None:
            return
        key = value.origin_key
        if value.origin_field is not None:
            fk = (key[0], key[1], value.origin_field)
            fst = p.fields.get(fk)
            if fst is not None:
                p.fields[fk] = fst.replace(state=OwnershipState.MOVED, since=loc)
            return
        st = p.bindings.get(key)
        if st is not None and st.state is OwnershipState.OWNED:
            p.bindings[key] = st.replace(state=OwnershipState.MOVED, since=loc)
            self._invalidate_dependents(p, key[1], loc)

    def _invalidate_dependents(self, p: _Path, name: str, loc: SourceLocation) -> None:
        for key in list(p.bindings):
            info = self._infos.get(key)
            if info is None or info.contract.target_of(AnnotationKind.KEEP_ALIVE) != name:
                continue
            st = p.bindings[key]
            if st.state is OwnershipState.BORROWED:
                p.bindings[key] = st.replace(state=OwnershipState.RELEASED, since=loc)

    # ----- expressions ------------------------------------------------------

    def _resolve(self, scope: ScopeNode, p: _Path, name: str) -> Optional[BindingKey]:
        for s in scope.ancestors():
            if s.declares(name) and (s.id, name) in p.bindings:
                return (s.id, name)
        return None

    def _eval(self, scope: ScopeNode, p: _Path, expr: Optional[Expr],
              loc: SourceLocation) -> _Value:
        if expr is None or isinstance(expr, NullExpr):
            return _NULL
        if isinstance(expr, ConstExpr):
            return _Value("borrowed", text=str(expr))
        if isinstance(expr, AllocExpr):
            return _Value("owned", fresh=True, text=str(expr))
        if isinstance(expr, CallExpr):
            return self._eval_call(scope, p, expr, loc)
        key = self._resolve(scope, p, expr.name)
        if key is None or not self._infos[key].tracked:
            return _Value("untracked", text=str(expr))
        if expr.address_of:
            return _Value("borrowed", text=str(expr))
        if not self._use(scope, p, expr, loc):
            return _Value("untracked", text=str(expr))
        if expr.field is not None:
            st = self._field_state(p, self._infos[key], expr.field)
            origin = (key[0], key[1], expr.field)
        else:
            st = p.bindings[key]
            origin = (key[0], key[1], None)
        kind = {
            OwnershipState.OWNED: "owned",
            OwnershipState.BORROWED: "borrowed",
            OwnershipState.REF_COUNTED: "refcounted",
            OwnershipState.UNINITIALIZED: "null",
        }.get(st.state, "untracked")
        return _Value(kind, origin=origin, text=expr.dotted)

    def _eval_call(self, scope: ScopeNode, p: _Path, call: CallExpr,
                   loc: SourceLocation) -> _Value:
        loc = call.location if call.location.line else loc
        fc = self.contracts.function(call.callee)
        summary = self._summaries(call.callee)
        for index, arg in enumerate(call.args):
            formal = fc.param_at(index) if fc else None
            declared = formal is not None and formal.is_consuming
            consuming = declared or (summary is not None and summary.effect_of(index).consuming)
            if call.callee in _REALLOCATORS and index == 0:
                consuming = True
            if isinstance(arg, VarRef) and arg.address_of:
                self._out_argument(scope, p, arg, formal, loc)
                continue
            value = self._eval(scope, p, arg, loc)
            if isinstance(arg, VarRef) and formal is not None and formal.is_output:
                self._mark_written(scope, p, arg)
            self._record_call_site(p, call, index, arg, value, formal, consuming, declared, loc)
            self._pass_argument(p, value, consuming,
                                summary.refcount_delta(index) if summary else 0, loc, call.callee)
        return self._call_result(call, fc, summary)

    def _call_result(self, call: CallExpr, fc: Optional[FunctionContract],
                     summary: Optional["FunctionSummary"]) -> _Value:
        text = f"{call.callee}(...)"
        if call.callee in self.config.allocation_functions:
            return _Value("owned", fresh=True, text=text)
        if fc is not None and not fc.returns.defaulted:
            returns = _declared_return(fc.returns)
        elif summary is not None and summary.inferred and summary.returns is not ReturnOwnership.NONE:
            returns = summary.returns
        elif fc is not None:
            returns = _declared_return(fc.returns)
        elif self.config.default_unannotated_kind in OWNING_KINDS:
            returns = ReturnOwnership.OWNED
        else:
            returns = ReturnOwnership.BORROWED
        if returns is ReturnOwnership.OWNED:
            return _Value("owned", fresh=True, text=text)
        if returns is ReturnOwnership.REF_COUNTED:
            return _Value("refcounted", fresh=True, text=text)
        if returns is ReturnOwnership.BORROWED:
            return _Value("borrowed", text=text)
        return _Value("untracked", text=text)

    def _pass_argument(self, p: _Path, value: _Value, consuming: bool, delta: int,
                       loc: SourceLocation, callee: str) -> None:
        if value.origin is None:
            if value.kind in ("owned", "refcounted") and value.fresh and not consuming:
                self._report(Rule.LEAKED_OWNERSHIP, p, value.text, "", loc,
                             f"owned temporary '{value.text}' passed to non-consuming "
                             f"parameter of '{callee}' is never released")
            return
        if consuming:
            if value.kind == "owned":
                self._transfer(p, value, loc)
            elif value.kind == "refcounted":
                self._adjust_refcount(p, value.origin_key, -1, loc, value.origin_field)
        elif value.kind == "refcounted" and delta:
            self._adjust_refcount(p, value.origin_key, delta, loc, value.origin_field)

    def _record_call_site(self, p: _Path, call: CallExpr, index: int, arg: Expr, value: _Value,
                          formal: Optional[EntityContract], consuming: bool, declared: bool,
                          loc: SourceLocation) -> None:
        borrowed = value.kind == "borrowed"
        key = (id(call), index, borrowed, consuming)
        if key in self._call_sites:
            return
        self._call_sites[key] = CallSite(
            caller=self.name,
            callee=call.callee,
            index=index,
            actual=str(arg),
            actual_state=value.kind,
            actual_borrowed=borrowed,
            formal=formal.name if formal else f"#{index}",
            consuming=consuming,
            declared_consuming=declared,
            location=loc,
            path=p.scopes,
        )

    def _out_argument(self, scope: ScopeNode, p: _Path, arg: VarRef,
                      formal: Optional[EntityContract], loc: SourceLocation) -> None:
        key = self._resolve(scope, p, arg.name)
        if key is None or formal is None or not formal.is_output:
            return
        info = self._infos[key]
        if not info.tracked or arg.field is not None:
            return
        if formal.is_consuming:
            value = _Value("owned", fresh=True, text=f"*{formal.name}")
        elif formal.is_refcounted:
            value = _Value("refcounted", fresh=True, text=f"*{formal.name}")
        else:
            value = _Value("borrowed", text=f"*{formal.name}")
        self._assign(scope, p, VarRef(arg.name), value, loc)

    def _mark_written(self, scope: ScopeNode, p: _Path, ref: VarRef) -> None:
        key = self._resolve(scope, p, ref.name)
        if key is not None and self._infos[key].contract.is_output:
            p.bindings[key] = p.bindings[key].replace(written=True)

    # ----- uses, releases, stores --------------------------------------------

    def _use(self, scope: ScopeNode, p: _Path, ref: VarRef, loc: SourceLocation) -> bool:
        key = self._resolve(scope, p, ref.name)
        if key is None:
            return True
        info = self._infos[key]
        if not info.tracked:
            return True
        st = p.bindings[key]
        if not self._check_alive(p, info.name, st, info, loc):
            return False
        if ref.field is not None:
            fst = self._field_state(p, info, ref.field)
            return self._check_alive(p, ref.dotted, fst, info, loc, ref.field)
        return True

    def _check_alive(self, p: _Path, label: str, st: BindingState, info: _BindingInfo,
                     loc: SourceLocation, field_name: Optional[str] = None) -> bool:
        contract = (self._field_contract(info, field_name).describe() if field_name
                    else self._contract_text(info, st))
        if st.state is OwnershipState.RELEASED:
            self._report(Rule.USE_AFTER_RELEASE, p, label, contract, loc,
                         f"'{label}' is used after it was released", st.since)
            return False
        if st.state is OwnershipState.MOVED:
            self._report(Rule.USE_AFTER_TRANSFER, p, label, contract, loc,
                         f"'{label}' is used after its ownership was transferred", st.since)
            return False
        return True

    def _field_state(self, p: _Path, info: _BindingInfo, name: str) -> BindingState:
        fk = (info.key[0], info.key[1], name)
        st = p.fields.get(fk)
        if st is not None:
            return st
        base = p.bindings[info.key]
        kind = self._field_contract(info, name).kind
        if base.fresh or base.state is OwnershipState.UNINITIALIZED:
            st = BindingState(OwnershipState.UNINITIALIZED, kind=kind)
        elif kind in OWNING_KINDS:
            st = BindingState(OwnershipState.OWNED, kind=kind)
        elif kind is AnnotationKind.REF_COUNTED:
            st = BindingState(OwnershipState.REF_COUNTED, kind=kind, liveness=RefLiveness.UNKNOWN)
        else:
            st = BindingState(OwnershipState.BORROWED, kind=kind)
        p.fields[fk] = st
        return st

    def _release(self, scope: ScopeNode, p: _Path, ref: VarRef, loc: SourceLocation,
                 via: str) -> None:
        key = self._resolve(scope, p, ref.name)
        if key is None or not self._infos[key].tracked:
            return
        info = self._infos[key]
        if ref.field is None:
            self._release_binding(p, info, loc, via)
            return
        if not self._use(scope, p, VarRef(ref.name), loc):
            return
        self._release_field(p, info, ref.field, loc, via)

    def _release_binding(self, p: _Path, info: _BindingInfo, loc: SourceLocation, via: str,
                         cleanup: bool = False) -> None:
        st = p.bindings[info.key]
        contract = self._contract_text(info, st)
        how = f"cleanup '{via}'" if cleanup else f"'{via}'"
        if st.state is OwnershipState.UNINITIALIZED:
            return
        if st.state is OwnershipState.REF_COUNTED:
            self._adjust_refcount(p, info.key, -1, loc)
            return
        if st.state is OwnershipState.OWNED:
            self._check_release_order(p, info, None, loc)
            self._destroy(p, info, st, loc)
            p.bindings[info.key] = st.replace(state=OwnershipState.RELEASED, since=loc)
            for fk in [fk for fk in p.fields if fk[:2] == info.key]:
                del p.fields[fk]
            self._invalidate_dependents(p, info.name, loc)
            return
        if st.state is OwnershipState.BORROWED:
            message = f"{how} releases borrowed '{info.name}'"
        elif st.state is OwnershipState.RELEASED:
            message = f"{how} releases '{info.name}' a second time"
        else:
            message = f"{how} releases '{info.name}' after its ownership was transferred"
        self._report(Rule.INVALID_RELEASE, p, info.name, contract, loc, message, st.since)

    def _release_field(self, p: _Path, info: _BindingInfo, name: str, loc: SourceLocation,
                       via: str) -> None:
        fst = self._field_state(p, info, name)
        fk = (info.key[0], info.key[1], name)
        label = f"{info.name}.{name}"
        contract = self._field_contract(info, name).describe()
        if fst.state is OwnershipState.UNINITIALIZED:
            return
        if fst.state is OwnershipState.REF_COUNTED:
            self._adjust_refcount(p, info.key, -1, loc, name)
            return
        if fst.state is OwnershipState.OWNED:
            self._check_release_order(p, info, name, loc)
            p.fields[fk] = fst.replace(state=OwnershipState.RELEASED, since=loc)
            return
        if fst.state is OwnershipState.BORROWED:
            message = f"'{via}' releases field '{label}', which the structure only borrows"
        elif fst.state is OwnershipState.RELEASED:
            message = f"'{via}' releases field '{label}' a second time"
        else:
            message = f"'{via}' releases field '{label}' after its ownership was transferred"
        self._report(Rule.INVALID_RELEASE, p, label, contract, loc, message, fst.since)

    def _check_release_order(self, p: _Path, info: _BindingInfo, field_name: Optional[str],
                             loc: SourceLocation) -> None:
        if field_name is None:
            target = info.contract.target_of(AnnotationKind.RELEASE_AFTER_OF)
            if not target:
                return
            key = None
            for k in p.bindings:
                if k[1] == target and k in self._infos:
                    key = k
            if key is None:
                return
            tst = p.bindings[key]
            label, contract = info.name, self._contract_text(info, p.bindings[info.key])
        else:
            target = self._field_contract(info, field_name).target_of(AnnotationKind.RELEASE_AFTER_OF)
            if not target:
                return
            tst = self._field_state(p, info, target)
            label = f"{info.name}.{field_name}"
            contract = self._field_contract(info, field_name).describe()
        if tst.state in (OwnershipState.OWNED, OwnershipState.BORROWED, OwnershipState.REF_COUNTED):
            self._report(Rule.RELEASE_ORDER_VIOLATION, p, label, contract, loc,
                         f"'{label}' is released before '{target}', which it must outlive")

    def _destroy(self, p: _Path, info: _BindingInfo, st: BindingState, loc: SourceLocation) -> None:
        sc: Optional[StructContract] = self.contracts.struct(info.struct_name)
        if sc is None:
            return
        pending = tuple(
            f.name for f in sc.owning_fields
            if self._field_state(p, info, f.name).state is OwnershipState.OWNED
        )
        key = (sc.name, info.name, loc, pending, p.scopes)
        if key not in self._destructions:
            self._destructions[key] = DestructionEvent(
                function=self.name, struct=sc.name, binding=info.name, is_param=info.is_param,
                pending=pending, location=loc, path=p.scopes,
            )

    def _store(self, scope: ScopeNode, p: _Path, target: VarRef, value: _Value,
               loc: SourceLocation) -> None:
        key = self._resolve(scope, p, target.name)
        if key is None or not self._infos[key].tracked:
            return
        if not self._use(scope, p, VarRef(target.name), loc):
            return
        info = self._infos[key]
        fc = self._field_contract(info, target.field)
        fk = (key[0], key[1], target.field)
        fst = self._field_state(p, info, target.field)
        label = target.dotted
        text = value.text or "value"
        if value.kind in ("null", "untracked"):
            if fst.state is OwnershipState.OWNED and value.kind == "null":
                self._report(Rule.LEAKED_OWNERSHIP, p, label, fc.describe(), loc,
                             f"owning field '{label}' is overwritten while it still owns its resource")
            p.fields[fk] = BindingState(OwnershipState.UNINITIALIZED, kind=fc.kind)
            return
        if fc.kind in OWNING_KINDS:
            if value.kind == "owned":
                if fst.state is OwnershipState.OWNED and value.origin != fk:
                    self._report(Rule.LEAKED_OWNERSHIP, p, label, fc.describe(), loc,
                                 f"owning field '{label}' is overwritten while it still "
                                 f"owns its resource")
                self._transfer(p, value, loc)
                p.fields[fk] = BindingState(OwnershipState.OWNED, kind=fc.kind)
            elif value.kind == "borrowed":
                self._report(Rule.BORROW_ESCALATION, p, label, fc.describe(), loc,
                             f"stores borrowed '{text}' into owning field '{label}'")
                p.fields[fk] = BindingState(OwnershipState.BORROWED, kind=fc.kind)
            else:
                if value.origin_key and not value.fresh:
                    self._adjust_refcount(p, value.origin_key, -1, loc, value.origin_field)
                p.fields[fk] = BindingState(OwnershipState.REF_COUNTED, kind=fc.kind,
                                            liveness=RefLiveness.LIVE)
            return
        if fc.kind is AnnotationKind.REF_COUNTED:
            if value.kind == "refcounted" and value.origin_key:
                self._adjust_refcount(p, value.origin_key, -1, loc, value.origin_field)
            elif value.kind == "owned":
                self._transfer(p, value, loc)
            p.fields[fk] = BindingState(OwnershipState.REF_COUNTED, kind=fc.kind,
                                        liveness=RefLiveness.LIVE)
            return
        if value.kind == "owned" and value.origin is None:
            self._report(Rule.LEAKED_OWNERSHIP, p, label, fc.describe(), loc,
                         f"fresh resource '{text}' is stored into non-owning field "
                         f"'{label}' and is never released")
        p.fields[fk] = BindingState(OwnershipState.BORROWED, kind=fc.kind)

    def _write(self, scope: ScopeNode, p: _Path, stmt: Write) -> None:
        value = self._eval(scope, p, stmt.value, stmt.location) if stmt.value is not None else None
        if stmt.target.field is not None:
            if value is not None:
                self._store(scope, p, stmt.target, value, stmt.location)
            return
        key = self._resolve(scope, p, stmt.target.name)
        if key is None:
            return
        info = self._infos[key]
        if not info.contract.is_output:
            self._use(scope, p, stmt.target, stmt.location)
            return
        p.bindings[key] = p.bindings[key].replace(written=True)
        if value is None:
            return
        text = value.text or "value"
        if info.contract.is_consuming:
            if value.kind == "owned":
                self._transfer(p, value, stmt.location)
            elif value.kind == "borrowed":
                self._report(Rule.BORROW_ESCALATION, p, info.name, info.contract.describe(),
                             stmt.location,
                             f"writes borrowed '{text}' through owning output '{info.name}'")
        elif value.kind == "owned" and value.origin is None:
            self._report(Rule.LEAKED_OWNERSHIP, p, info.name, info.contract.describe(),
                         stmt.location,
                         f"fresh resource '{text}' written through non-owning output "
                         f"'{info.name}' is never released")

    # ----- reference counting -----------------------------------------------

    def _refcount_op(self, scope: ScopeNode, p: _Path, stmt) -> None:
        if not self._use(scope, p, stmt.target, stmt.location):
            return
        key = self._resolve(scope, p, stmt.target.name)
        if key is None:
            return
        delta = 1 if isinstance(stmt, IncRef) else -1
        self._adjust_refcount(p, key, delta, stmt.location, stmt.target.field)

    def _adjust_refcount(self, p: _Path, key: BindingKey, delta: int, loc: SourceLocation,
                         field_name: Optional[str] = None) -> None:
        info = self._infos[key]
        if field_name is not None:
            fk = (key[0], key[1], field_name)
            st = self._field_state(p, info, field_name)
            label = f"{info.name}.{field_name}"
            contract = self._field_contract(info, field_name).describe()
        else:
            st = p.bindings[key]
            label = info.name
            contract = self._contract_text(info, st)
        if st.state is not OwnershipState.REF_COUNTED:
            return
        new = st.replace(refcount=st.refcount + delta)
        if field_name is not None:
            p.fields[fk] = new
        else:
            p.bindings[key] = new
        if delta < 0 and new.refcount < 0:
            self._report(Rule.REFCOUNT_UNDERFLOW, p, label, contract, loc,
                         f"reference count of '{label}' drops below its entry count "
                         f"on this path")

    # ----- summary ----------------------------------------------------------

    def _summary(self) -> FunctionSummary:
        params = self.contract.params
        counted = [e for e in self._exits if e[0] is not ExitKind.NO_RETURN]
        effects: List[ParamEffect] = []
        deltas: List[int] = []
        for index, pc in enumerate(params):
            states = [e[1][index] for e in counted if index in e[1]]
            if not states:
                effects.append(ParamEffect.CONSUMES if pc.is_consuming else ParamEffect.BORROWS)
                deltas.append(0)
                continue
            consumed = [s.is_dead for s in states]
            if all(consumed):
                effects.append(ParamEffect.CONSUMES)
            elif any(consumed):
                effects.append(ParamEffect.MAYBE_CONSUMES)
            else:
                effects.append(ParamEffect.BORROWS)
            rc = [s.refcount for s in states if s.state is OwnershipState.REF_COUNTED]
            deltas.append(min(rc) if rc else 0)
        returned = {e[2] for e in counted}
        for candidate in (ReturnOwnership.OWNED, ReturnOwnership.REF_COUNTED,
                          ReturnOwnership.BORROWED):
            if candidate in returned:
                returns = candidate
                break
        else:
            returns = ReturnOwnership.NONE
        return FunctionSummary(
            function=self.name,
            param_names=tuple(pc.name for pc in params),
            param_effects=tuple(effects),
            refcount_deltas=tuple(deltas),
            returns=returns,
            call_sites=tuple(self._call_sites.values()),
            destructions=tuple(self._destructions.values()),
            exit_count=len(self._exits),
            exempt_exits=self._exempt,
        )


def _initial_param_state(pc: EntityContract) -> BindingState:
    if pc.kind in OWNING_KINDS:
        return BindingState(OwnershipState.OWNED, kind=pc.kind)
    if pc.kind is AnnotationKind.REF_COUNTED:
        return BindingState(OwnershipState.REF_COUNTED, kind=pc.kind, liveness=RefLiveness.UNKNOWN)
    if pc.kind is not None:
        return BindingState(OwnershipState.BORROWED, kind=pc.kind)
    return BindingState(OwnershipState.UNINITIALIZED)


def check_function(decl: FunctionDecl, contracts: ContractTable, config: VerifierConfig,
                   summaries: Optional[SummaryLookup] = None,
                   graph: Optional[ScopeGraph] = None) -> FunctionCheckResult:
    """Build the scope graph of *decl* (unless given) and check it.

    Raises
    ------
    InputError
        The body cannot be turned into a scope graph.
    """
    if graph is None:
        graph = build_scope_graph(decl, config, contracts)
    return OwnershipChecker(decl, graph, contracts, config, summaries).run()


__all__ = [
    "OwnershipState",
    "RefLiveness",
    "BindingState",
    "ParamEffect",
    "ReturnOwnership",
    "CallSite",
    "DestructionEvent",
    "FunctionSummary",
    "FunctionCheckResult",
    "OwnershipChecker",
    "check_function",
]
