"""
memory_notation.scope_graph
===========================

Builds the lexical scope tree of one function body.

Every :class:`ScopeNode` records the bindings it introduces, its
statements (lowered to the checker's vocabulary), and the exit edges
through which control can leave it.  The builder's job is exhaustiveness:
every way out of every scope becomes an :class:`ExitEdge`.

Exit kinds
----------
``NORMAL``
    Fall-through at the end of a scope, or ``return`` as the final
    statement of the function body.
``EARLY_RETURN``
    Any other ``return``.
``FAILURE``
    ``fail`` statements and calls marked ``may_fail`` (the failure branch
    leaves the function with the state from before the call).
``BREAK`` / ``CONTINUE``
    Loop jumps, optionally labelled.
``NO_RETURN``
    ``abort`` and calls to non-returning functions; such paths are exempt
    from exit checks.

An exit edge is recorded on *every* scope it leaves: a ``return`` nested
three scopes deep appears on all three and on the function scope.

Lowering
--------
Calls to configured release / increment / decrement functions become
:class:`~memory_notation.decl_ast.Release` / ``IncRef`` / ``DecRef``
statements; calls to non-returning functions become ``NO_RETURN`` exit
points.  Compound statements are replaced by :class:`ScopedIf`,
:class:`ScopedLoop` and :class:`ScopedBlock` references to child scopes.

Typical usage::

    graph = build_scope_graph(decl, config, contracts)
    for edge in graph.function_exits():
        print(edge.kind.value, [s.id for s in graph.chain(edge)])
"""

from __future__ import annotations

import enum
import itertools
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from memory_notation.decl_ast import (
    Abort,
    Assign,
    Block,
    Break,
    CallExpr,
    CallStmt,
    Continue,
    DecRef,
    Decl,
    Expr,
    Fail,
    FunctionDecl,
    If,
    IncRef,
    Loop,
    Release,
    Return,
    Stmt,
    VarRef,
    Write,
)
from memory_notation.diagnostics import SourceLocation
from memory_notation.errors import InputError

if TYPE_CHECKING:
    from memory_notation.annotations import ContractTable
    from memory_notation.config import VerifierConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------


class ScopeKind(enum.Enum):
    FUNCTION = "function"
    BLOCK = "block"
    THEN = "then"
    ELSE = "else"
    LOOP = "loop"


class ExitKind(enum.Enum):
    """Classification of an exit edge."""

    NORMAL = "normal"
    EARLY_RETURN = "early-return"
    FAILURE = "failure"
    BREAK = "break"
    CONTINUE = "continue"
    NO_RETURN = "no-return"

    @property
    def is_success(self) -> bool:
        return self in (ExitKind.NORMAL, ExitKind.EARLY_RETURN)


# ---------------------------------------------------------------------------
# Edges and lowered statements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExitEdge:
    """A way out of a chain of scopes.

    Attributes
    ----------
    kind : ExitKind
    source : str
        Scope holding the exiting statement.
    boundary : str
        Outermost scope left by the edge.
    target : str or None
        Scope where control resumes; ``None`` when the function is left.
    location : SourceLocation
    label : str
        Loop label for labelled ``break`` / ``continue``.
    """

    kind: ExitKind
    source: str
    boundary: str
    target: Optional[str]
    location: SourceLocation = field(default_factory=SourceLocation)
    label: str = ""

    @property
    def leaves_function(self) -> bool:
        return self.target is None


@dataclass(frozen=True)
class ExitPoint:
    """A statement that leaves its scope through *edge*."""

    edge: ExitEdge
    value: Optional[Expr] = None
    stmt: Optional[Stmt] = None

    @property
    def location(self) -> SourceLocation:
        return self.edge.location


@dataclass(frozen=True)
class FailurePoint:
    """The failure branch of a ``may_fail`` call."""

    edge: ExitEdge
    call: CallExpr

    @property
    def location(self) -> SourceLocation:
        return self.edge.location


@dataclass(frozen=True)
class ScopedIf:
    then_scope: str
    else_scope: Optional[str] = None
    condition: str = ""
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class ScopedLoop:
    scope: str
    label: str = ""
    infinite: bool = False
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class ScopedBlock:
    scope: str
    location: SourceLocation = field(default_factory=SourceLocation)


Lowered = Union[Stmt, ExitPoint, FailurePoint, ScopedIf, ScopedLoop, ScopedBlock]


# ---------------------------------------------------------------------------
# ScopeNode / ScopeGraph
# ---------------------------------------------------------------------------


class ScopeNode:
    """A lexical region of a function body.

    Attributes
    ----------
    id : str
        ``"<function>#<n>"``, unique within the graph.
    kind : ScopeKind
    parent : ScopeNode or None
    children : list[ScopeNode]
    bindings : list[str]
        Names introduced in this scope, in declaration order.  The function
        scope lists the parameters first.
    exits : list[ExitEdge]
        Every edge that leaves this scope.
    statements : list
        Lowered statements, in order.
    """

    __slots__ = ("id", "kind", "parent", "children", "bindings", "exits",
                 "statements", "label", "location")

    def __init__(self, id: str, kind: ScopeKind, parent: Optional["ScopeNode"] = None,
                 label: str = "", location: Optional[SourceLocation] = None) -> None:
        self.id = id
        self.kind = kind
        self.parent = parent
        self.children: List[ScopeNode] = []
        self.bindings: List[str] = []
        self.exits: List[ExitEdge] = []
        self.statements: List[Lowered] = []
        self.label = label
        self.location = location or SourceLocation()
        if parent is not None:
            parent.children.append(self)

    @property
    def is_loop(self) -> bool:
        return self.kind is ScopeKind.LOOP

    @property
    def depth(self) -> int:
        d, node = 0, self.parent
        while node is not None:
            d, node = d + 1, node.parent
        return d

    @property
    def normal_exit(self) -> Optional[ExitEdge]:
        for edge in self.exits:
            if edge.kind is ExitKind.NORMAL and edge.source == self.id and edge.boundary == self.id:
                return edge
        return None

    def ancestors(self) -> Iterator["ScopeNode"]:
        node: Optional[ScopeNode] = self
        while node is not None:
            yield node
            node = node.parent

    def declares(self, name: str) -> bool:
        return name in self.bindings

    def lookup(self, name: str) -> Optional["ScopeNode"]:
        """The nearest enclosing scope that declares *name*."""
        for scope in self.ancestors():
            if scope.declares(name):
                return scope
        return None

    def __repr__(self) -> str:
        return f"<ScopeNode {self.id} {self.kind.value} bindings={self.bindings} exits={len(self.exits)}>"


class ScopeGraph:
    """The scope tree of one function."""

    def __init__(self, function: str, root: ScopeNode) -> None:
        self.function = function
        self.root = root
        self.nodes: "OrderedDict[str, ScopeNode]" = OrderedDict()

    def add(self, node: ScopeNode) -> None:
        self.nodes[node.id] = node

    def scope(self, scope_id: str) -> ScopeNode:
        return self.nodes[scope_id]

    def __iter__(self) -> Iterator[ScopeNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def chain(self, edge: ExitEdge) -> List[ScopeNode]:
        """Scopes left by *edge*, innermost first."""
        result: List[ScopeNode] = []
        for scope in self.scope(edge.source).ancestors():
            result.append(scope)
            if scope.id == edge.boundary:
                break
        return result

    def exit_edges(self) -> List[ExitEdge]:
        """Every distinct edge, in discovery order."""
        seen: Dict[ExitEdge, None] = OrderedDict()
        for node in self.nodes.values():
            for edge in node.exits:
                seen.setdefault(edge, None)
        return list(seen)

    def function_exits(self) -> List[ExitEdge]:
        return [e for e in self.root.exits if e.leaves_function]

    def statistics(self) -> Dict[str, int]:
        stats: Dict[str, int] = {"scopes": len(self.nodes), "bindings": 0}
        for node in self.nodes.values():
            stats["bindings"] += len(node.bindings)
        for edge in self.exit_edges():
            key = f"exits_{edge.kind.name.lower()}"
            stats[key] = stats.get(key, 0) + 1
        return stats

    def to_dict(self) -> Dict[str, object]:
        return {
            "function": self.function,
            "scopes": [
                {
                    "id": n.id,
                    "kind": n.kind.value,
                    "parent": n.parent.id if n.parent else None,
                    "bindings": list(n.bindings),
                    "exits": [
                        {
                            "kind": e.kind.value,
                            "source": e.source,
                            "target": e.target,
                            "line": e.location.line,
                        }
                        for e in n.exits
                    ],
                }
                for n in self.nodes.values()
            ],
        }

    def render(self) -> str:
        """Indented text rendering used by ``memnote scopes``."""
        lines = [f"function {self.function}"]
        for node in self.nodes.values():
            pad = "  " * (node.depth + 1)
            label = f" '{node.label}'" if node.label else ""
            lines.append(f"{pad}{node.id} [{node.kind.value}{label}] bindings={node.bindings}")
            for e in node.exits:
                where = e.target or "caller"
                lines.append(f"{pad}  -> {e.kind.value} to {where} (line {e.location.line})")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"<ScopeGraph {self.function}: {len(self.nodes)} scopes>"


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class _ScopeGraphBuilder:
    """Single recursive pass over a function body."""

    def __init__(self, decl: FunctionDecl, config: "VerifierConfig",
                 contracts: Optional["ContractTable"] = None) -> None:
        self.decl = decl
        self.config = config
        self.contracts = contracts
        self._ids = itertools.count()
        self.graph: Optional[ScopeGraph] = None
        # innermost loop last
        self._loops: List[ScopeNode] = []

    # ----- helpers ----------------------------------------------------------

    def _new_scope(self, kind: ScopeKind, parent: Optional[ScopeNode],
                   location: SourceLocation, label: str = "") -> ScopeNode:
        node = ScopeNode(f"{self.decl.name}#{next(self._ids)}", kind, parent, label, location)
        if self.graph is None:
            self.graph = ScopeGraph(self.decl.name, node)
        self.graph.add(node)
        return node

    def _add_exit(self, source: ScopeNode, edge: ExitEdge) -> None:
        for scope in source.ancestors():
            scope.exits.append(edge)
            if scope.id == edge.boundary:
                break

    def _leave_function(self, scope: ScopeNode, kind: ExitKind, location: SourceLocation) -> ExitEdge:
        edge = ExitEdge(kind, scope.id, self.graph.root.id, None, location)
        self._add_exit(scope, edge)
        return edge

    def _error(self, message: str, location: SourceLocation) -> InputError:
        return InputError(f"'{self.decl.name}': {message}", location=location,
                          declaration=self.decl.name)

    def _is_noreturn(self, callee: str) -> bool:
        if self.config.is_noreturn(callee):
            return True
        if self.contracts is not None:
            fc = self.contracts.function(callee)
            return fc is not None and fc.noreturn
        return False

    # ----- entry ------------------------------------------------------------

    def build(self) -> ScopeGraph:
        root = self._new_scope(ScopeKind.FUNCTION, None, self.decl.location)
        for param in self.decl.params:
            root.bindings.append(param.name)
        if self._build_body(root, self.decl.body or (), function_body=True):
            root.exits.append(ExitEdge(ExitKind.NORMAL, root.id, root.id, None,
                                       self._end_location(self.decl.body)))
        for node in self.graph:
            # a function that never returns keeps an empty exit list
            if not node.exits and node.parent is not None:
                target = node.id if node.is_loop else node.parent.id
                node.exits.append(ExitEdge(ExitKind.NORMAL, node.id, node.id, target, node.location))
        logger.debug("%r: %s", self.graph, self.graph.statistics())
        return self.graph

    def _end_location(self, body: Optional[Sequence[Stmt]]) -> SourceLocation:
        if body:
            return getattr(body[-1], "location", self.decl.location)
        return self.decl.location

    # ----- statements -------------------------------------------------------

    def _build_body(self, scope: ScopeNode, stmts: Sequence[Stmt],
                    function_body: bool = False) -> bool:
        """Lower *stmts* into *scope*; return whether the end is reachable."""
        reachable = True
        for index, stmt in enumerate(stmts):
            if not reachable:
                logger.debug("%s: unreachable statement at %s ignored",
                             self.decl.name, getattr(stmt, "location", "?"))
                break
            last = function_body and index == len(stmts) - 1
            reachable = self._build_stmt(scope, stmt, last)
        return reachable

    def _build_stmt(self, scope: ScopeNode, stmt: Stmt, last: bool) -> bool:
        for call in _may_fail_calls(stmt):
            loc = call.location if call.location.line else stmt.location
            edge = self._leave_function(scope, ExitKind.FAILURE, loc)
            scope.statements.append(FailurePoint(edge, call))

        if isinstance(stmt, Decl):
            if scope.declares(stmt.name):
                raise self._error(f"'{stmt.name}' is declared twice in the same scope", stmt.location)
            scope.bindings.append(stmt.name)
            scope.statements.append(stmt)
            return True

        if isinstance(stmt, Return):
            kind = ExitKind.NORMAL if last else ExitKind.EARLY_RETURN
            edge = self._leave_function(scope, kind, stmt.location)
            scope.statements.append(ExitPoint(edge, stmt.value, stmt))
            return False

        if isinstance(stmt, Fail):
            edge = self._leave_function(scope, ExitKind.FAILURE, stmt.location)
            scope.statements.append(ExitPoint(edge, stmt.value, stmt))
            return False

        if isinstance(stmt, Abort):
            edge = self._leave_function(scope, ExitKind.NO_RETURN, stmt.location)
            scope.statements.append(ExitPoint(edge, None, stmt))
            return False

        if isinstance(stmt, CallStmt):
            return self._build_call(scope, stmt)

        if isinstance(stmt, (Break, Continue)):
            return self._build_jump(scope, stmt)

        if isinstance(stmt, If):
            then_scope = self._new_scope(ScopeKind.THEN, scope, stmt.location)
            then_falls = self._build_child(then_scope, stmt.then, scope.id)
            else_id = None
            else_falls = True
            if stmt.orelse:
                else_scope = self._new_scope(ScopeKind.ELSE, scope, stmt.location)
                else_falls = self._build_child(else_scope, stmt.orelse, scope.id)
                else_id = else_scope.id
            scope.statements.append(ScopedIf(then_scope.id, else_id, stmt.condition, stmt.location))
            return then_falls or else_falls

        if isinstance(stmt, Loop):
            loop = self._new_scope(ScopeKind.LOOP, scope, stmt.location, stmt.label)
            self._loops.append(loop)
            try:
                self._build_child(loop, stmt.body, loop.id)
            finally:
                self._loops.pop()
            scope.statements.append(ScopedLoop(loop.id, stmt.label, stmt.infinite, stmt.location))
            if not stmt.infinite:
                return True
            return any(e.kind is ExitKind.BREAK and e.boundary == loop.id for e in loop.exits)

        if isinstance(stmt, Block):
            block = self._new_scope(ScopeKind.BLOCK, scope, stmt.location)
            falls = self._build_child(block, stmt.body, scope.id)
            scope.statements.append(ScopedBlock(block.id, stmt.location))
            return falls

        scope.statements.append(stmt)
        return True

    def _build_child(self, child: ScopeNode, stmts: Sequence[Stmt], resume: str) -> bool:
        falls = self._build_body(child, stmts)
        if falls:
            child.exits.append(ExitEdge(ExitKind.NORMAL, child.id, child.id, resume,
                                        self._end_location(stmts) if stmts else child.location))
        return falls

    def _build_call(self, scope: ScopeNode, stmt: CallStmt) -> bool:
        call = stmt.call
        first = call.args[0] if call.args else None
        if self._is_noreturn(call.callee):
            edge = self._leave_function(scope, ExitKind.NO_RETURN, stmt.location)
            scope.statements.append(ExitPoint(edge, None, stmt))
            return False
        if isinstance(first, VarRef) and not first.address_of:
            if call.callee in self.config.release_functions:
                scope.statements.append(Release(first, call.callee, stmt.location))
                return True
            if call.callee in self.config.increment_functions:
                scope.statements.append(IncRef(first, call.callee, stmt.location))
                return True
            if call.callee in self.config.decrement_functions:
                scope.statements.append(DecRef(first, call.callee, stmt.location))
                return True
        scope.statements.append(stmt)
        return True

    def _build_jump(self, scope: ScopeNode, stmt: Union[Break, Continue]) -> bool:
        what = "break" if isinstance(stmt, Break) else "continue"
        if not self._loops:
            raise self._error(f"'{what}' outside of a loop", stmt.location)
        if stmt.label:
            matches = [loop for loop in self._loops if loop.label == stmt.label]
            if not matches:
                raise self._error(f"'{what} {stmt.label}' names no enclosing loop", stmt.location)
            loop = matches[-1]
        else:
            loop = self._loops[-1]
        if isinstance(stmt, Break):
            edge = ExitEdge(ExitKind.BREAK, scope.id, loop.id, loop.parent.id,
                            stmt.location, stmt.label)
        else:
            edge = ExitEdge(ExitKind.CONTINUE, scope.id, loop.id, loop.id,
                            stmt.location, stmt.label)
        self._add_exit(scope, edge)
        scope.statements.append(ExitPoint(edge, None, stmt))
        return False


def _may_fail_calls(stmt: Stmt) -> List[CallExpr]:
    exprs: List[Optional[Expr]] = []
    if isinstance(stmt, CallStmt):
        exprs.append(stmt.call)
    elif isinstance(stmt, Decl):
        exprs.append(stmt.init)
    elif isinstance(stmt, (Assign, Write, Return, Fail)):
        exprs.append(stmt.value)
    found: List[CallExpr] = []

    def visit(expr: Optional[Expr]) -> None:
        if isinstance(expr, CallExpr):
            for arg in expr.args:
                visit(arg)
            if expr.may_fail:
                found.append(expr)

    for expr in exprs:
        visit(expr)
    return found


def build_scope_graph(decl: FunctionDecl, config: "VerifierConfig",
                      contracts: Optional["ContractTable"] = None) -> ScopeGraph:
    """Build the :class:`ScopeGraph` of a function definition.

    Raises
    ------
    InputError
        Jumps outside a loop, unknown labels, duplicate bindings.
    """
    if decl.body is None:
        raise InputError(f"'{decl.name}' has no body", location=decl.location,
                         declaration=decl.name)
    return _ScopeGraphBuilder(decl, config, contracts).build()


__all__ = [
    "ScopeKind",
    "ExitKind",
    "ExitEdge",
    "ExitPoint",
    "FailurePoint",
    "ScopedIf",
    "ScopedLoop",
    "ScopedBlock",
    "ScopeNode",
    "ScopeGraph",
    "build_scope_graph",
]
