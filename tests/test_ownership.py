# tests/test_ownership.py
"""
Tests for the path-sensitive ownership checker.

Most tests run the full checker suite over a handful of records and look
at the rule ids that come out; a few call ``check_function`` directly to
inspect the inferred summary.
"""

import pytest

from builders import (
    alloc,
    assign,
    call,
    const,
    decl,
    example_records,
    field,
    fn,
    free,
    if_,
    invoke,
    loop,
    param,
    ret,
    simple,
    struct,
    use,
    write,
)
from memory_notation.annotations import extract_contracts
from memory_notation.config import DEFAULT_CONFIG
from memory_notation.diagnostics import DiagnosticSeverity, RuleCategory
from memory_notation.ownership_check import (
    BindingState,
    OwnershipState,
    ParamEffect,
    RefLiveness,
    ReturnOwnership,
    check_function,
)


@pytest.fixture
def summary_of(unit_of):
    """Check the last function in *records* on its own and return its summary."""
    def _summary(records):
        unit = unit_of(records)
        table, errors = extract_contracts(unit, DEFAULT_CONFIG)
        assert errors == []
        return check_function(unit.functions[-1], table, DEFAULT_CONFIG).summary
    return _summary


class TestRelease:

    def test_owner_released(self, check, rules):
        results = check([fn("f", [param("id", "owner")], body=[free("id")])])
        assert rules(results) == []
        assert results.exit_status() == 0

    def test_early_return_leaks(self, check, rules):
        results = check([fn("f", [param("id", "owner")], body=[
            if_([ret(line=3)], line=2),
            free("id", line=4),
        ])])
        assert rules(results) == ["LeakedOwnership"]
        diag = results.diagnostics[0]
        assert diag.function == "f"
        assert diag.binding == "id"
        assert diag.location.line == 3
        assert diag.path == ("f#0", "f#1")
        assert diag.contract == "owner char*"
        assert "early-return" in diag.message
        assert results.exit_status() == 1

    def test_every_leaking_branch_is_reported(self, check, rules):
        # no statement lines: both exits sit on the function's line
        results = check([fn("f", [param("p", "owner")], body=[if_([ret()], [ret()])])])
        assert rules(results) == ["LeakedOwnership", "LeakedOwnership"]
        assert [d.path for d in results.diagnostics] == [("f#0", "f#1"), ("f#0", "f#2")]
        assert {d.binding for d in results.diagnostics} == {"p"}

    def test_release_of_guarded_parameter(self, check, rules):
        results = check([fn("g", [param("name", "guarded")], body=[free("name", line=2)])])
        assert rules(results) == ["InvalidRelease"]
        assert "borrowed 'name'" in results.diagnostics[0].message

    def test_releases_through_different_functions_are_kept_apart(self, check, rules):
        results = check([fn("g", [param("p", "guarded")], body=[
            free("p"),
            call("g_free", "p"),
        ])], release_functions=["free", "g_free"])
        assert rules(results) == ["InvalidRelease", "InvalidRelease"]
        assert [d.message for d in results.diagnostics] == [
            "'free' releases borrowed 'p'",
            "'g_free' releases borrowed 'p'",
        ]

    def test_release_through_borrowed_alias(self, check, rules):
        results = check([fn("g", [param("name", "guarded")], body=[
            decl("alias", "name"),
            free("alias"),
        ])])
        assert rules(results) == ["InvalidRelease"]
        assert results.diagnostics[0].binding == "alias"

    def test_double_release(self, check, rules):
        results = check([fn("f", [param("p", "owner")], body=[
            free("p", line=2),
            free("p", line=3),
        ])])
        assert rules(results) == ["InvalidRelease"]
        diag = results.diagnostics[0]
        assert "second time" in diag.message
        assert diag.location.line == 3
        # the first release is attached as the related location
        assert diag.secondary[0].line == 2

    def test_use_after_release(self, check, rules):
        results = check([fn("f", [param("p", "owner")], body=[free("p"), use("p", line=5)])])
        assert rules(results) == ["UseAfterRelease"]
        assert results.diagnostics[0].location.line == 5

    def test_owner_overwritten(self, check, rules):
        results = check([fn("f", body=[
            decl("p", alloc(), line=2),
            assign("p", alloc(), line=3),
            free("p", line=4),
        ])])
        assert rules(results) == ["LeakedOwnership"]
        assert "overwritten" in results.diagnostics[0].message

    def test_discarded_allocation(self, check, rules):
        results = check([fn("f", body=[call("malloc", 16)])])
        assert rules(results) == ["LeakedOwnership"]
        assert "discarded" in results.diagnostics[0].message

    def test_fresh_value_in_guarded_local(self, check, rules):
        results = check([fn("f", body=[decl("p", alloc(), annotation="guarded")])])
        assert rules(results) == ["LeakedOwnership"]


class TestTransfer:

    CONSUME = fn("consume", [param("p", "take_possession")])

    def test_use_after_transfer(self, check, rules):
        results = check([self.CONSUME, fn("f", [param("q", "owner")], body=[
            call("consume", "q", line=2),
            use("q", line=3),
        ])])
        assert rules(results) == ["UseAfterTransfer"]
        assert results.diagnostics[0].secondary[0].line == 2

    def test_transfer_satisfies_owner(self, check, rules):
        results = check([self.CONSUME, fn("f", [param("q", "owner")], body=[call("consume", "q")])])
        assert rules(results) == []

    def test_borrowed_argument_to_consuming_formal(self, check, rules):
        results = check([self.CONSUME, fn("caller", [param("name", "guarded")], body=[
            call("consume", "name", line=7),
        ])])
        assert rules(results) == ["BorrowEscalation"]
        diag = results.diagnostics[0]
        assert diag.function == "caller"
        assert diag.location.line == 7
        assert "takes possession of" in diag.message

    def test_escalation_is_reported_at_the_consuming_position(self, check, rules):
        consume = fn("put", [param("a"), param("b", "take_possession"), param("c")])
        results = check([consume, fn("caller", [param("name", "guarded")], body=[
            call("put", const("x"), "name", const("y")),
        ])])
        assert rules(results) == ["BorrowEscalation"]
        assert results.diagnostics[0].binding == "name"
        assert "parameter 'b'" in results.diagnostics[0].message

    def test_every_escalating_call_is_reported(self, check, rules):
        # calls without lines share the function's location
        results = check([self.CONSUME, fn("g", [param("a", "guarded"), param("b", "guarded")],
                                          body=[call("consume", "a"), call("consume", "b")])])
        assert rules(results) == ["BorrowEscalation", "BorrowEscalation"]
        assert [d.binding for d in results.diagnostics] == ["a", "b"]

    def test_escalation_on_each_branch(self, check, rules):
        results = check([self.CONSUME, fn("g", [param("a", "guarded")], body=[
            if_([call("consume", "a")], [call("consume", "a")]),
        ])])
        assert rules(results) == ["BorrowEscalation", "BorrowEscalation"]
        assert [d.path for d in results.diagnostics] == [("g#0", "g#1"), ("g#0", "g#2")]

    def test_owned_temporary_to_borrowing_parameter(self, check, rules):
        results = check([
            fn("show", [param("p", "guarded")]),
            fn("f", body=[call("show", invoke("malloc", 16))]),
        ])
        assert rules(results) == ["LeakedOwnership"]
        assert "temporary" in results.diagnostics[0].message

    def test_return_owned_local(self, check, rules):
        results = check([fn("mk", returns="owner", body=[decl("buf", alloc()), ret("buf")])])
        assert rules(results) == []

    def test_return_borrowed_through_owning_return(self, check, rules):
        results = check([fn("f", [param("p", "guarded")], returns="owner", body=[ret("p")])])
        assert rules(results) == ["BorrowEscalation"]

    def test_worked_example_is_clean(self, check, rules):
        assert rules(check(example_records())) == []


class TestRefCounting:

    def test_underflow(self, check, rules):
        results = check([fn("f", [param("o", "ref_count")], body=[
            call("incref", "o"),
            call("decref", "o", line=3),
            call("decref", "o", line=4),
        ])])
        assert rules(results) == ["RefCountUnderflow"]
        assert results.diagnostics[0].location.line == 4

    def test_acquired_reference_must_be_dropped(self, check, rules):
        get = fn("get", returns="ref_count", return_type="obj*")
        leaky = fn("f", body=[decl("o", invoke("get"), type="obj*")])
        results = check([get, leaky])
        assert rules(results) == ["LeakedOwnership"]
        assert "reference held by 'o'" in results.diagnostics[0].message

        balanced = fn("f", body=[decl("o", invoke("get"), type="obj*"), call("decref", "o")])
        assert rules(check([get, balanced])) == []

    def test_summary_records_net_delta(self, summary_of):
        summary = summary_of([fn("f", [param("o", "ref_count")], body=[call("decref", "o")])])
        assert summary.refcount_deltas == (-1,)
        assert summary.param_effects == (ParamEffect.BORROWS,)

    def test_binding_state_text(self):
        st = BindingState(OwnershipState.REF_COUNTED, refcount=1, liveness=RefLiveness.LIVE)
        assert str(st) == "RefCounted(live, +1)"
        assert str(BindingState(OwnershipState.MOVED)) == "moved"


class TestCleanupAndExits:

    def test_cleanup_releases_on_every_exit(self, check, rules):
        results = check([fn("f", body=[
            decl("buf", alloc(), cleanup="free"),
            if_([ret()]),
            use("buf"),
        ])])
        assert rules(results) == []

    def test_explicit_release_with_cleanup(self, check, rules):
        results = check([fn("f", body=[decl("buf", alloc(), cleanup="free"), free("buf")])])
        assert rules(results) == ["InvalidRelease"]
        assert "cleanup 'free'" in results.diagnostics[0].message

    def test_abort_path_is_exempt(self, check, rules):
        results = check([fn("f", body=[
            decl("buf", alloc()),
            if_([call("abort")]),
            free("buf"),
        ])])
        assert rules(results) == []

    def test_failing_call_leaks_earlier_allocation(self, check, rules):
        results = check([fn("f", body=[
            decl("buf", alloc(), line=2),
            decl("r", invoke("parse", "buf", may_fail=True), line=3),
            free("buf", line=4),
        ])])
        assert rules(results) == ["LeakedOwnership"]
        diag = results.diagnostics[0]
        assert diag.binding == "buf"
        assert diag.location.line == 3
        assert "failure" in diag.message

    def test_fail_statement_is_checked(self, check, rules):
        results = check([fn("f", [param("p", "owner")], body=[
            if_([simple("fail")]),
            free("p"),
        ])])
        assert rules(results) == ["LeakedOwnership"]


class TestLoops:

    def test_balanced_body_converges(self, check, rules):
        results = check([fn("f", body=[loop(decl("tmp", alloc()), free("tmp"))])])
        assert rules(results) == []

    def test_leak_inside_body(self, check, rules):
        results = check([fn("f", body=[loop(decl("tmp", alloc()))])])
        assert rules(results) == ["LeakedOwnership"]
        assert results.diagnostics[0].binding == "tmp"

    def test_unstable_refcount_fails_the_run(self, check, rules):
        records = [fn("f", [param("o", "ref_count")], body=[loop(call("incref", "o"))])]
        results = check(records, loop_fixpoint_iteration_limit=4)
        assert rules(results) == ["UnstableLoopOwnership"]
        diag = results.diagnostics[0]
        assert diag.severity is DiagnosticSeverity.ERROR
        assert diag.category is RuleCategory.ANALYSIS_LIMIT
        assert diag.binding == "o"
        assert results.exit_status() == 1
        assert results.by_category(RuleCategory.VIOLATION) == []

    def test_break_path_is_checked(self, check, rules):
        results = check([fn("f", body=[
            loop(decl("tmp", alloc()), if_([simple("break")]), free("tmp")),
        ])])
        assert rules(results) == ["LeakedOwnership"]


class TestRecursion:

    def test_consuming_recursion_is_stable(self, check, rules):
        results = check([fn("rec", [param("p", "take_possession")], body=[
            if_([free("p"), ret()]),
            call("rec", "p"),
        ])])
        assert rules(results) == []

    def test_mutual_recursion_with_borrowed_parameters(self, check, rules):
        results = check([
            fn("ping", [param("p", "guarded")], body=[if_([ret()]), call("pong", "p")]),
            fn("pong", [param("p", "guarded")], body=[call("ping", "p")]),
        ])
        assert rules(results) == []

    def test_diverging_refcount_recursion(self, check, rules):
        results = check([fn("rec", [param("o", "ref_count")], body=[
            if_([ret()]),
            call("decref", "o"),
            call("rec", "o"),
        ])], recursion_iteration_limit=3)
        found = [d for d in results.diagnostics if d.rule_id == "UnresolvableRecursiveContract"]
        assert len(found) == 1
        assert found[0].severity is DiagnosticSeverity.ERROR
        assert results.exit_status() == 1
        assert "3 iteration(s)" in found[0].message


class TestOutputParameters:

    def test_missing_write_on_early_return(self, check, rules):
        results = check([fn("f", [param("out", "ptr_out", type="char**")], body=[
            if_([ret(line=2)]),
            write("out", line=3),
        ])])
        assert rules(results) == ["MissingOutputWrite"]
        assert results.diagnostics[0].location.line == 2

    def test_failure_path_need_not_write(self, check, rules):
        results = check([fn("f", [param("out", "ptr_out", type="char**")], body=[
            if_([simple("fail")]),
            write("out"),
        ])])
        assert rules(results) == []

    def test_owned_output_argument(self, check, rules):
        make = fn("make", [param("out", ["owner", "ptr_out"], type="char**")])
        freed = fn("f", body=[decl("p"), call("make", "&p"), free("p")])
        assert rules(check([make, freed])) == []

        leaked = fn("f", body=[decl("p"), call("make", "&p")])
        results = check([make, leaked])
        assert rules(results) == ["LeakedOwnership"]
        assert results.diagnostics[0].binding == "p"


class TestRelations:

    PARAMS = [param("buf", "owner"), param("hdr", ["owner", "release_after_of(buf)"])]

    def test_release_order_violation(self, check, rules):
        results = check([fn("f", self.PARAMS, body=[free("hdr"), free("buf")])])
        assert rules(results) == ["ReleaseOrderViolation"]
        assert results.diagnostics[0].binding == "hdr"

    def test_release_order_respected(self, check, rules):
        assert rules(check([fn("f", self.PARAMS, body=[free("buf"), free("hdr")])])) == []

    def test_keep_alive_view_dies_with_its_owner(self, check, rules):
        results = check([fn("f", [param("buf", "owner")], body=[
            decl("view", "buf", annotation="keep_alive(buf)"),
            free("buf", line=3),
            use("view", line=4),
        ])])
        assert rules(results) == ["UseAfterRelease"]
        assert results.diagnostics[0].binding == "view"


class TestStructFields:

    S = struct("S", [field("data", "owner")])

    def test_struct_released_with_owned_field(self, check, rules):
        results = check([self.S, fn("destroy", [param("s", "take_possession", type="struct S*")],
                                    body=[free("s")])])
        assert rules(results) == ["LeakedOwnership"]
        assert results.diagnostics[0].binding == "S.data"

    def test_fields_released_first(self, check, rules):
        results = check([self.S, fn("destroy", [param("s", "take_possession", type="struct S*")],
                                    body=[free("s.data"), free("s")])])
        assert rules(results) == []

    def test_field_of_borrowed_struct_left_dangling(self, check, rules):
        results = check([self.S, fn("reset", [param("s", "guarded", type="struct S*")],
                                    body=[free("s.data")])])
        assert rules(results) == ["InvalidRelease"]
        assert results.diagnostics[0].binding == "s.data"

    def test_field_of_borrowed_struct_replaced(self, check, rules):
        results = check([self.S, fn("reset", [param("s", "guarded", type="struct S*")],
                                    body=[free("s.data"), assign("s.data", alloc())])])
        assert rules(results) == []

    def test_borrowed_value_stored_in_owning_field(self, check, rules):
        results = check([self.S, fn("fill", [param("s", "guarded", type="struct S*"),
                                             param("name", "guarded")],
                                    body=[assign("s.data", "name")])])
        assert rules(results) == ["BorrowEscalation"]


class TestSummaries:

    def test_destructor_consumes(self, summary_of):
        summary = summary_of(example_records()[:3])
        assert summary.function == "example_delete"
        assert summary.param_effects == (ParamEffect.CONSUMES,)
        assert summary.returns is ReturnOwnership.NONE
        assert summary.destroys() == {"Example": ("ex",)}

    def test_constructor_returns_owned(self, summary_of):
        summary = summary_of(example_records()[:2])
        assert summary.returns is ReturnOwnership.OWNED
        assert summary.param_effects == (ParamEffect.BORROWS, ParamEffect.CONSUMES)
        assert summary.to_dict()["params"]["id"]["effect"] == "consumes"

    def test_exits_are_counted(self, summary_of):
        summary = summary_of([fn("f", body=[if_([call("abort")]), if_([ret()])])])
        assert summary.exit_count == 2
        assert summary.exempt_exits == 1
