"""
memory_notation.callgraph
=========================

Call graph over the function definitions of one unit.

The call graph is a directed graph where:
- **Nodes** are functions: definitions from the unit, prototypes with a
  declared contract but no body, and external callees known only by name.
- **Edges** are call relationships, annotated with the call site location.

The interprocedural pass walks the strongly connected components of this
graph callee-first, so every callee summary is available when its callers
are checked.  A component with more than one node (or a self edge) is a
recursive cycle whose summaries are iterated to a fixed point.

Typical usage::

    from memory_notation.callgraph import build_callgraph

    cg = build_callgraph(unit.functions, contracts)
    for scc in cg.strongly_connected_components():
        print([n.name for n in scc])
    print(cg.to_dot())
"""

from __future__ import annotations

import enum
from collections import OrderedDict, deque
from typing import (
    Any,
    Deque,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
)

from memory_notation.annotations import ContractTable
from memory_notation.decl_ast import FunctionDecl, called_functions
from memory_notation.diagnostics import SourceLocation


# ---------------------------------------------------------------------------
# Node kinds
# ---------------------------------------------------------------------------

class NodeKind(enum.Enum):
    FUNCTION = "function"      # defined in the unit
    DECLARED = "declared"      # prototype only; its contract is trusted
    EXTERNAL = "external"      # no declaration at all; configured defaults apply


# ---------------------------------------------------------------------------
# CallGraphNode
# ---------------------------------------------------------------------------

class CallGraphNode:
    """A node in the call graph.

    Attributes
    ----------
    name : str
        Function name; unique within the unit.
    kind : NodeKind
        What this node represents.
    decl : FunctionDecl or None
        The definition (``None`` for declared and external nodes).
    out_edges : list[CallGraphEdge]
        Outgoing call edges (this function calls …).
    in_edges : list[CallGraphEdge]
        Incoming call edges (… calls this function).
    """

    __slots__ = ("name", "kind", "decl", "out_edges", "in_edges")

    def __init__(self, name: str, kind: NodeKind = NodeKind.FUNCTION,
                 decl: Optional[FunctionDecl] = None) -> None:
        self.name = name
        self.kind = kind
        self.decl = decl
        self.out_edges: List[CallGraphEdge] = []
        self.in_edges: List[CallGraphEdge] = []

    @property
    def callees(self) -> List["CallGraphNode"]:
        return [e.callee for e in self.out_edges]

    @property
    def callers(self) -> List["CallGraphNode"]:
        return [e.caller for e in self.in_edges]

    @property
    def is_leaf(self) -> bool:
        return len(self.out_edges) == 0

    @property
    def is_root(self) -> bool:
        return len(self.in_edges) == 0

    @property
    def is_recursive(self) -> bool:
        """Does this function call itself (directly)?"""
        return any(e.callee is self for e in self.out_edges)

    def __repr__(self) -> str:
        return f"CallGraphNode({self.name!r}, kind={self.kind.value})"

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphNode):
            return self.name == other.name
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraphEdge
# ---------------------------------------------------------------------------

class CallGraphEdge:
    """A call site: *caller* calls *callee* at *location*."""

    __slots__ = ("caller", "callee", "location")

    def __init__(self, caller: CallGraphNode, callee: CallGraphNode,
                 location: Optional[SourceLocation] = None) -> None:
        self.caller = caller
        self.callee = callee
        self.location = location or SourceLocation()

    def __repr__(self) -> str:
        loc = f" @ {self.location}" if self.location.line else ""
        return f"CallGraphEdge({self.caller.name} -> {self.callee.name}{loc})"


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Whole-unit call graph.

    Attributes
    ----------
    nodes : OrderedDict[str, CallGraphNode]
        All nodes, keyed by function name, in insertion order.
    edges : list[CallGraphEdge]
        All edges.
    """

    def __init__(self) -> None:
        self.nodes: "OrderedDict[str, CallGraphNode]" = OrderedDict()
        self.edges: List[CallGraphEdge] = []

    # ----- node / edge management ------------------------------------------

    def get_or_create_node(self, name: str, kind: NodeKind = NodeKind.EXTERNAL,
                           decl: Optional[FunctionDecl] = None) -> CallGraphNode:
        """Return the node for *name*, creating it with *kind* if absent."""
        node = self.nodes.get(name)
        if node is None:
            node = CallGraphNode(name, kind, decl)
            self.nodes[name] = node
        return node

    def add_edge(self, caller: CallGraphNode, callee: CallGraphNode,
                 location: Optional[SourceLocation] = None) -> CallGraphEdge:
        edge = CallGraphEdge(caller, callee, location)
        self.edges.append(edge)
        caller.out_edges.append(edge)
        callee.in_edges.append(edge)
        return edge

    def node(self, name: str) -> Optional[CallGraphNode]:
        return self.nodes.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    @property
    def functions(self) -> List[CallGraphNode]:
        """Nodes defined in the unit."""
        return [n for n in self.nodes.values() if n.kind is NodeKind.FUNCTION]

    @property
    def roots(self) -> List[CallGraphNode]:
        return [n for n in self.functions if n.is_root]

    @property
    def leaves(self) -> List[CallGraphNode]:
        return [n for n in self.functions if n.is_leaf]

    # ----- whole-graph queries ----------------------------------------------

    def transitive_callees(self, node: CallGraphNode) -> Set[CallGraphNode]:
        """Return all functions transitively reachable from *node*."""
        visited: Set[CallGraphNode] = set()
        worklist: Deque[CallGraphNode] = deque([node])
        while worklist:
            n = worklist.popleft()
            if n in visited:
                continue
            visited.add(n)
            for e in n.out_edges:
                worklist.append(e.callee)
        visited.discard(node)
        return visited

    def transitive_callers(self, node: CallGraphNode) -> Set[CallGraphNode]:
        """Return all functions that transitively call *node*."""
        visited: Set[CallGraphNode] = set()
        worklist: Deque[CallGraphNode] = deque([node])
        while worklist:
            n = worklist.popleft()
            if n in visited:
                continue
            visited.add(n)
            for e in n.in_edges:
                worklist.append(e.caller)
        visited.discard(node)
        return visited

    def strongly_connected_components(self) -> List[List[CallGraphNode]]:
        """Compute SCCs using Tarjan's algorithm.

        Returns a list of SCCs in reverse topological order (callees before
        callers).  Only functions defined in the unit take part; calls to
        declared or external functions never close a cycle.  Nodes inside
        one SCC are sorted by name so the order is stable across runs.
        """
        index_counter = [0]
        stack: List[CallGraphNode] = []
        lowlink: Dict[str, int] = {}
        index: Dict[str, int] = {}
        on_stack: Set[str] = set()
        result: List[List[CallGraphNode]] = []

        def strongconnect(v: CallGraphNode) -> None:
            index[v.name] = index_counter[0]
            lowlink[v.name] = index_counter[0]
            index_counter[0] += 1
            stack.append(v)
            on_stack.add(v.name)

            for e in v.out_edges:
                w = e.callee
                if w.kind is not NodeKind.FUNCTION:
                    continue
                if w.name not in index:
                    strongconnect(w)
                    lowlink[v.name] = min(lowlink[v.name], lowlink[w.name])
                elif w.name in on_stack:
                    lowlink[v.name] = min(lowlink[v.name], index[w.name])

            if lowlink[v.name] == index[v.name]:
                scc: List[CallGraphNode] = []
                while True:
                    w = stack.pop()
                    on_stack.discard(w.name)
                    scc.append(w)
                    if w.name == v.name:
                        break
                result.append(sorted(scc, key=lambda n: n.name))

        for v in self.functions:
            if v.name not in index:
                strongconnect(v)

        return result

    def is_recursive_scc(self, scc: List[CallGraphNode]) -> bool:
        return len(scc) > 1 or scc[0].is_recursive

    def waves(self) -> List[List[List[CallGraphNode]]]:
        """Group SCCs into waves.

        Every SCC in a wave only calls SCCs of earlier waves (or itself), so
        the SCCs of one wave can be checked independently of each other.
        """
        sccs = self.strongly_connected_components()
        scc_of: Dict[str, int] = {}
        for i, scc in enumerate(sccs):
            for n in scc:
                scc_of[n.name] = i
        level: Dict[int, int] = {}
        for i, scc in enumerate(sccs):
            deps = {
                scc_of[e.callee.name]
                for n in scc for e in n.out_edges
                if e.callee.name in scc_of and scc_of[e.callee.name] != i
            }
            level[i] = 1 + max((level[d] for d in deps), default=-1)
        result: List[List[List[CallGraphNode]]] = []
        for i, scc in enumerate(sccs):
            while len(result) <= level[i]:
                result.append([])
            result[level[i]].append(scc)
        return result

    # ----- statistics -------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        sccs = self.strongly_connected_components()
        return {
            "functions": len(self.functions),
            "declared_functions": sum(1 for n in self.nodes.values()
                                      if n.kind is NodeKind.DECLARED),
            "external_functions": sum(1 for n in self.nodes.values()
                                      if n.kind is NodeKind.EXTERNAL),
            "total_edges": len(self.edges),
            "sccs": len(sccs),
            "recursive_sccs": sum(1 for scc in sccs if self.is_recursive_scc(scc)),
            "waves": len(self.waves()),
            "root_functions": len(self.roots),
            "leaf_functions": len(self.leaves),
        }

    # ----- serialisation ----------------------------------------------------

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation."""
        lines = ["digraph CallGraph {"]
        lines.append("  rankdir=TB;")
        if title:
            lines.append(f'  label="{title}";')
        lines.append('  node [shape=box, fontname="Helvetica", fontsize=10];')

        kind_attrs = {
            NodeKind.FUNCTION: 'style=filled, fillcolor="#ddeeff"',
            NodeKind.DECLARED: 'style=filled, fillcolor="#eeeeee", shape=component',
            NodeKind.EXTERNAL: 'style=filled, fillcolor="#fff3cd", shape=ellipse',
        }
        for n in self.nodes.values():
            escaped = n.name.replace('"', '\\"')
            lines.append(f'  "{escaped}" [{kind_attrs[n.kind]}];')
        for e in self.edges:
            label = f' [label="{e.location.line}"]' if e.location.line else ""
            lines.append(f'  "{e.caller.name}" -> "{e.callee.name}"{label};')
        lines.append("}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"CallGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def build_callgraph(functions: Iterable[FunctionDecl],
                    contracts: Optional[ContractTable] = None) -> CallGraph:
    """Build the call graph of the given function definitions.

    Parameters
    ----------
    functions : iterable of FunctionDecl
        Function records; only definitions become ``FUNCTION`` nodes.
    contracts : ContractTable, optional
        Callees with a contract but no definition become ``DECLARED`` nodes;
        every other unknown callee is ``EXTERNAL``.
    """
    cg = CallGraph()
    definitions = [f for f in functions if f.is_definition]
    for decl in definitions:
        node = cg.get_or_create_node(decl.name, NodeKind.FUNCTION, decl)
        node.kind, node.decl = NodeKind.FUNCTION, decl
    for decl in definitions:
        caller = cg.nodes[decl.name]
        for callee, loc in called_functions(decl.body):
            kind = NodeKind.EXTERNAL
            if contracts is not None and contracts.function(callee) is not None:
                kind = NodeKind.DECLARED
            cg.add_edge(caller, cg.get_or_create_node(callee, kind), loc)
    return cg


def callgraph_summary(cg: CallGraph) -> str:
    """Return a human-readable multi-line summary."""
    stats = cg.statistics()
    lines = [
        "Call Graph Summary",
        f"  Functions (defined):  {stats['functions']}",
        f"  Declared only:        {stats['declared_functions']}",
        f"  External functions:   {stats['external_functions']}",
        f"  Total edges:          {stats['total_edges']}",
        f"  SCCs:                 {stats['sccs']}",
        f"  Recursive SCCs:       {stats['recursive_sccs']}",
        f"  Waves:                {stats['waves']}",
        "",
        "Functions:",
    ]
    for node in cg.functions:
        callee_names = [e.callee.name for e in node.out_edges]
        caller_names = [e.caller.name for e in node.in_edges]
        lines.append(
            f"  {node.name}: calls [{', '.join(callee_names)}], "
            f"called by [{', '.join(caller_names)}]"
        )
    return "\n".join(lines)


__all__ = [
    "NodeKind",
    "CallGraphNode",
    "CallGraphEdge",
    "CallGraph",
    "build_callgraph",
    "callgraph_summary",
]
