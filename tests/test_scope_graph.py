# tests/test_scope_graph.py
"""
Tests for scope tree construction and exit-edge enumeration.
"""

import pytest

from builders import alloc, call, decl, fn, free, if_, loop, param, ret, simple, use
from memory_notation.annotations import extract_contracts
from memory_notation.config import DEFAULT_CONFIG
from memory_notation.decl_ast import CallStmt, DecRef, Release
from memory_notation.errors import InputError
from memory_notation.scope_graph import (
    ExitKind,
    FailurePoint,
    ScopedIf,
    ScopeKind,
    build_scope_graph,
)


@pytest.fixture
def graph_of(unit_of):
    """Build the scope graph of the first function in *records*."""
    def _graph(records, config=DEFAULT_CONFIG, with_contracts=False):
        unit = unit_of(records)
        contracts = extract_contracts(unit, config)[0] if with_contracts else None
        return build_scope_graph(unit.functions[-1], config, contracts)
    return _graph


def kinds(edges):
    return [e.kind for e in edges]


class TestExits:

    def test_early_return_before_release(self, graph_of):
        g = graph_of([fn("f", [param("id", "owner")], body=[
            if_([ret(line=3)], line=2),
            free("id", line=4),
        ])])
        assert [n.id for n in g] == ["f#0", "f#1"]
        assert g.scope("f#1").kind is ScopeKind.THEN
        assert kinds(g.function_exits()) == [ExitKind.EARLY_RETURN, ExitKind.NORMAL]

        early = g.function_exits()[0]
        assert early.source == "f#1"
        assert early.boundary == "f#0"
        assert early.leaves_function
        assert early.location.line == 3
        assert [s.id for s in g.chain(early)] == ["f#1", "f#0"]
        # the then-branch never falls through
        assert kinds(g.scope("f#1").exits) == [ExitKind.EARLY_RETURN]

    def test_final_return_is_normal(self, graph_of):
        g = graph_of([fn("f", [param("id", "owner")], body=[free("id"), ret()])])
        assert kinds(g.function_exits()) == [ExitKind.NORMAL]

    def test_empty_body_has_one_normal_exit(self, graph_of):
        g = graph_of([fn("f", body=[])])
        assert kinds(g.function_exits()) == [ExitKind.NORMAL]
        assert g.root.normal_exit is not None

    def test_may_fail_call_adds_failure_edge(self, graph_of):
        g = graph_of([fn("f", body=[
            decl("buf", alloc()),
            call("parse", "buf", may_fail=True, line=5),
            free("buf"),
        ])])
        assert kinds(g.function_exits()) == [ExitKind.FAILURE, ExitKind.NORMAL]
        failure, parse_call = g.root.statements[1:3]
        assert isinstance(failure, FailurePoint)
        assert failure.call.callee == "parse"
        assert failure.location.line == 5
        assert isinstance(parse_call, CallStmt)

    def test_fail_statement(self, graph_of):
        g = graph_of([fn("f", body=[if_([simple("fail")]), use("x")])])
        assert kinds(g.function_exits()) == [ExitKind.FAILURE, ExitKind.NORMAL]

    def test_abort_is_no_return(self, graph_of):
        g = graph_of([fn("f", body=[call("abort")])])
        assert kinds(g.function_exits()) == [ExitKind.NO_RETURN]
        assert not ExitKind.NO_RETURN.is_success

    def test_declared_noreturn_callee(self, graph_of):
        records = [
            fn("die", noreturn=True),
            fn("f", body=[if_([call("die")]), use("x")]),
        ]
        g = graph_of(records, with_contracts=True)
        assert kinds(g.function_exits()) == [ExitKind.NO_RETURN, ExitKind.NORMAL]

    def test_nested_return_is_recorded_on_every_scope(self, graph_of):
        g = graph_of([fn("f", body=[
            {"op": "block", "body": [if_([ret()])]},
        ])])
        block, then = g.scope("f#1"), g.scope("f#2")
        assert block.kind is ScopeKind.BLOCK
        edge = g.function_exits()[0]
        assert edge in then.exits
        assert edge in block.exits
        assert edge in g.root.exits


class TestLoops:

    def test_break_and_continue(self, graph_of):
        g = graph_of([fn("f", body=[
            loop(if_([simple("break")]), simple("continue")),
            use("x"),
        ])])
        body, then = g.scope("f#1"), g.scope("f#2")
        assert body.is_loop
        brk = [e for e in body.exits if e.kind is ExitKind.BREAK][0]
        assert brk.source == then.id
        assert brk.boundary == body.id
        assert brk.target == "f#0"
        cont = [e for e in body.exits if e.kind is ExitKind.CONTINUE][0]
        assert cont.target == body.id
        # jumps never leave the function
        assert kinds(g.function_exits()) == [ExitKind.NORMAL]

    def test_labelled_break(self, graph_of):
        g = graph_of([fn("f", body=[
            loop(loop(simple("break", label="outer")), label="outer"),
        ])])
        outer, inner = g.scope("f#1"), g.scope("f#2")
        assert outer.label == "outer"
        edge = [e for e in inner.exits if e.kind is ExitKind.BREAK][0]
        assert edge.boundary == outer.id
        assert edge.target == "f#0"
        assert edge.label == "outer"
        assert [s.id for s in g.chain(edge)] == [inner.id, outer.id]

    def test_infinite_loop_without_break_does_not_fall_through(self, graph_of):
        g = graph_of([fn("f", [param("p")], body=[loop(use("p"), infinite=True), use("p")])])
        assert g.function_exits() == []
        body = g.scope("f#1")
        assert kinds(body.exits) == [ExitKind.NORMAL]
        assert body.exits[0].target == body.id

    def test_infinite_loop_with_break_falls_through(self, graph_of):
        g = graph_of([fn("f", body=[loop(simple("break"), infinite=True)])])
        assert kinds(g.function_exits()) == [ExitKind.NORMAL]


class TestLowering:

    def test_release_and_refcount_calls(self, graph_of):
        g = graph_of([fn("f", [param("o", "ref_count")], body=[
            call("decref", "o"),
            free("o"),
            call("free", "&o"),
        ])])
        dec, rel, addr = g.root.statements
        assert isinstance(dec, DecRef)
        assert isinstance(rel, Release)
        assert rel.function == "free"
        # an address argument is not a release
        assert isinstance(addr, CallStmt)

    def test_configured_release_function(self, graph_of):
        config = DEFAULT_CONFIG.with_overrides(release_functions=["my_free"])
        g = graph_of([fn("f", [param("p", "owner")], body=[call("my_free", "p")])], config=config)
        assert isinstance(g.root.statements[0], Release)
        assert g.root.statements[0].function == "my_free"

    def test_if_becomes_scoped_reference(self, graph_of):
        g = graph_of([fn("f", body=[if_([use("x")], [use("y")], cond="x != NULL")])])
        stmt = g.root.statements[0]
        assert isinstance(stmt, ScopedIf)
        assert stmt.condition == "x != NULL"
        assert g.scope(stmt.else_scope).kind is ScopeKind.ELSE

    def test_bindings_and_lookup(self, graph_of):
        g = graph_of([fn("f", [param("a"), param("b")], body=[
            decl("x"),
            if_([decl("y")]),
        ])])
        assert g.root.bindings == ["a", "b", "x"]
        then = g.scope("f#1")
        assert then.bindings == ["y"]
        assert then.lookup("a") is g.root
        assert then.lookup("missing") is None
        assert then.depth == 1

    def test_statements_after_return_are_ignored(self, graph_of):
        g = graph_of([fn("f", body=[ret(), use("x")])])
        assert len(g.root.statements) == 1


class TestMalformed:

    @pytest.mark.parametrize("body", [
        [simple("break")],
        [simple("continue")],
        [loop(simple("break", label="nowhere"))],
        [decl("x"), decl("x")],
    ])
    def test_rejected(self, graph_of, body):
        with pytest.raises(InputError) as info:
            graph_of([fn("f", body=body)])
        assert info.value.declaration == "f"

    def test_shadowing_in_child_scope_is_allowed(self, graph_of):
        g = graph_of([fn("f", body=[decl("x"), if_([decl("x")])])])
        assert g.scope("f#1").bindings == ["x"]

    def test_prototype_has_no_graph(self, graph_of):
        with pytest.raises(InputError):
            graph_of([fn("f")])


class TestOutput:

    RECORDS = [fn("f", [param("id", "owner")], body=[if_([ret(line=3)]), free("id", line=4)])]

    def test_statistics(self, graph_of):
        assert graph_of(self.RECORDS).statistics() == {
            "scopes": 2,
            "bindings": 1,
            "exits_early_return": 1,
            "exits_normal": 1,
        }

    def test_to_dict(self, graph_of):
        data = graph_of(self.RECORDS).to_dict()
        assert data["function"] == "f"
        assert data["scopes"][1]["parent"] == "f#0"
        assert data["scopes"][1]["exits"][0]["kind"] == "early-return"

    def test_render(self, graph_of):
        text = graph_of(self.RECORDS).render()
        assert text.splitlines()[0] == "function f"
        assert "-> early-return to caller (line 3)" in text
