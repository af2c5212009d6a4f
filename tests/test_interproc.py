# tests/test_interproc.py
"""
Tests for summary publication, SCC scheduling and the unit-wide checks.
"""

import pytest

from builders import (
    alloc,
    call,
    decl,
    example_records,
    field,
    fn,
    free,
    if_,
    param,
    ret,
    simple,
    struct,
    use,
)
from memory_notation.annotations import AnnotationKind, extract_contracts
from memory_notation.config import DEFAULT_CONFIG
from memory_notation.errors import SummaryConflictError
from memory_notation.interproc import (
    AnalysisContext,
    SummaryTable,
    check_aliased_fields,
    check_call_sites,
    check_struct_invariants,
    run_interprocedural,
)
from memory_notation.ownership_check import FunctionSummary, ParamEffect


@pytest.fixture
def context_of(unit_of):
    """Build an AnalysisContext; keyword args override config."""
    def _context(records, **overrides):
        config = DEFAULT_CONFIG.with_overrides(**overrides)
        unit = unit_of(records)
        contracts, _ = extract_contracts(unit, config)
        return AnalysisContext.build(unit.functions, contracts, config)
    return _context


def rule_ids(diagnostics):
    return [d.rule_id for d in diagnostics]


class TestSummaryTable:

    def test_publish_once(self):
        table = SummaryTable()
        table.publish(FunctionSummary("f"))
        assert "f" in table
        assert table.get("f").function == "f"
        with pytest.raises(SummaryConflictError):
            table.publish(FunctionSummary("f"))

    def test_iteration_is_sorted(self):
        table = SummaryTable()
        for name in ("zeta", "alpha", "mid"):
            table.publish(FunctionSummary(name))
        assert [s.function for s in table] == ["alpha", "mid", "zeta"]
        assert len(table) == 3
        assert list(table.to_dict()) == ["alpha", "mid", "zeta"]

    def test_invalidate_allows_republishing(self):
        table = SummaryTable()
        table.publish(FunctionSummary("f"))
        table.invalidate(["f", "unknown"])
        assert table.get("f") is None
        table.publish(FunctionSummary("f"))


class TestScheduling:

    def test_example_unit(self, context_of):
        ctx = context_of(example_records())
        result = run_interprocedural(ctx)
        assert result.diagnostics == []
        assert result.skipped == []
        assert result.iterations == {"example_new": 1, "example_delete": 1, "h": 1}
        delete = result.summaries.get("example_delete")
        assert delete.param_effects == (ParamEffect.CONSUMES,)
        assert delete.inferred

    def test_prototypes_are_not_checked(self, context_of):
        ctx = context_of([fn("proto", [param("p", "owner")]), fn("f", body=[])])
        assert list(ctx.functions) == ["f"]

    def test_malformed_body_is_skipped(self, context_of):
        ctx = context_of([
            fn("bad", body=[simple("break")]),
            fn("good", [param("p", "owner")], body=[free("p")]),
        ])
        result = run_interprocedural(ctx)
        assert result.skipped == ["bad"]
        assert rule_ids(result.diagnostics) == ["MalformedInput"]
        assert result.diagnostics[0].function == "bad"
        assert "good" in result.summaries

    def test_callee_summary_is_published(self, context_of):
        ctx = context_of([
            fn("sink", [param("p", "owner")], body=[free("p")]),
            fn("f", body=[decl("buf", alloc()), call("sink", "buf")]),
        ])
        result = run_interprocedural(ctx)
        assert result.diagnostics == []
        assert result.summaries.get("sink").param_effects == (ParamEffect.CONSUMES,)

    def test_workers_do_not_change_the_result(self, context_of):
        records = [
            fn(f"leak{i}", [param("p", "owner")], line=10 * i + 1,
               body=[if_([ret()]), free("p")])
            for i in range(6)
        ]
        serial = run_interprocedural(context_of(records))
        parallel = run_interprocedural(context_of(records, workers=4))
        assert len(serial.diagnostics) == 6
        assert [d.to_record() for d in parallel.diagnostics] == \
            [d.to_record() for d in serial.diagnostics]


class TestRecursion:

    def test_stable_consuming_recursion(self, context_of):
        ctx = context_of([fn("rec", [param("p", "take_possession")], body=[
            if_([free("p"), ret()]),
            call("rec", "p"),
        ])])
        result = run_interprocedural(ctx)
        assert result.iterations["rec"] == 1
        assert result.diagnostics == []

    def test_diverging_summary_hits_the_limit(self, context_of):
        ctx = context_of([fn("rec", [param("o", "ref_count")], body=[
            if_([ret()]),
            call("decref", "o"),
            call("rec", "o"),
        ])], recursion_iteration_limit=3)
        result = run_interprocedural(ctx)
        assert result.iterations["rec"] == 3
        assert "UnresolvableRecursiveContract" in rule_ids(result.diagnostics)
        # the last iteration's summary is still published
        assert "rec" in result.summaries

    def test_cycle_is_named(self, context_of):
        ctx = context_of([
            fn("ping", [param("o", "ref_count")], body=[if_([ret()]), call("decref", "o"),
                                                        call("pong", "o")]),
            fn("pong", [param("o", "ref_count")], body=[call("ping", "o")]),
        ], recursion_iteration_limit=2)
        result = run_interprocedural(ctx)
        found = [d for d in result.diagnostics if d.rule_id == "UnresolvableRecursiveContract"]
        assert [d.function for d in found] == ["ping", "pong"]
        assert "ping -> pong -> ping" in found[0].message


class TestInvalidation:

    def test_drops_callers(self, context_of):
        ctx = context_of(example_records())
        run_interprocedural(ctx)
        dropped = ctx.invalidate("example_new")
        assert dropped == {"example_new", "h"}
        assert ctx.summary_of("example_new") is None
        assert ctx.summary_of("example_delete") is not None

    def test_unknown_function(self, context_of):
        ctx = context_of(example_records())
        assert ctx.invalidate("nowhere") == set()

    LAYERS = [
        fn("leaf", [param("p", "take_possession")], body=[free("p")]),
        fn("top", [param("q", "owner")], body=[call("leaf", "q")]),
        fn("other", [param("r", "guarded")], body=[free("r")]),
    ]

    def test_rerun_checks_only_what_was_dropped(self, context_of):
        ctx = context_of(self.LAYERS)
        first = run_interprocedural(ctx)
        other, top = ctx.summary_of("other"), ctx.summary_of("top")
        assert ctx.invalidate("leaf") == {"leaf", "top"}
        assert "leaf" not in ctx.graphs

        second = run_interprocedural(ctx)
        assert ctx.summary_of("other") is other
        assert ctx.summary_of("top") is not top
        assert ctx.summary_of("leaf") is not None
        assert rule_ids(second.diagnostics) == rule_ids(first.diagnostics) == ["InvalidRelease"]

    def test_repeated_run_reuses_everything(self, context_of):
        ctx = context_of(self.LAYERS)
        first = run_interprocedural(ctx)
        second = run_interprocedural(ctx)
        assert second.diagnostics == first.diagnostics
        assert len(ctx.summaries) == 3

    def test_replace_function_swaps_body_and_contract(self, unit_of, context_of):
        ctx = context_of(self.LAYERS)
        run_interprocedural(ctx)
        changed = unit_of([fn("leaf", [param("p", "guarded")], body=[use("p")])]).functions[0]
        assert ctx.replace_function(changed) == {"leaf", "top"}
        assert ctx.contracts.function("leaf").params[0].kind is AnnotationKind.GUARDED

        result = run_interprocedural(ctx)
        found = sorted((d.function, d.rule_id) for d in result.diagnostics)
        # 'top' still owns 'q' now that 'leaf' only borrows it
        assert found == [("other", "InvalidRelease"), ("top", "LeakedOwnership")]
        assert ctx.summary_of("leaf").param_effects == (ParamEffect.BORROWS,)


class TestUnitChecks:

    def test_call_site_escalation(self, context_of):
        ctx = context_of([
            fn("consume", [param("p", "take_possession")]),
            fn("caller", [param("name", "guarded")], body=[call("consume", "name")]),
        ])
        run_interprocedural(ctx, unit_checks=False)
        found = check_call_sites(ctx)
        assert rule_ids(found) == ["BorrowEscalation"]
        assert found[0].contract == "take_possession char*"

    def test_aliased_owning_fields(self, unit_of):
        unit = unit_of([struct("S", [
            field("buf", "guarded"),
            field("a", "owner_of(buf)"),
            field("b", "owner_of(buf)"),
        ])])
        contracts, errors = extract_contracts(unit, DEFAULT_CONFIG)
        assert errors == []
        found = check_aliased_fields(contracts.struct("S"))
        assert rule_ids(found) == ["AliasedOwnership"]
        assert found[0].binding == "S.b"

    def test_distinct_resources_are_not_aliased(self, unit_of):
        unit = unit_of([struct("S", [field("a", "owner"), field("b", "owner")])])
        contracts, _ = extract_contracts(unit, DEFAULT_CONFIG)
        assert check_aliased_fields(contracts.struct("S")) == []

    S = struct("S", [field("data", "owner"), field("name", "guarded")])
    MAKE = fn("make", returns="owner", return_type="struct S*", line=5, body=[
        decl("s", alloc(), annotation="owner", type="struct S*"),
        ret("s"),
    ])

    def test_constructor_without_destructor(self, context_of):
        ctx = context_of([self.S, self.MAKE])
        run_interprocedural(ctx, unit_checks=False)
        found = check_struct_invariants(ctx)
        assert rule_ids(found) == ["LeakedOwnership"]
        assert found[0].function == "make"
        assert found[0].binding == "S.data"
        assert found[0].location.line == 5

    def test_declared_destructor_satisfies_constructor(self, context_of):
        destroy = fn("destroy", [param("s", "take_possession", type="struct S*")])
        ctx = context_of([self.S, self.MAKE, destroy])
        run_interprocedural(ctx, unit_checks=False)
        assert check_struct_invariants(ctx) == []

    def test_pending_field_on_each_branch(self, context_of):
        destroy = fn("destroy", [param("s", "take_possession", type="struct S*")], body=[
            if_([free("s")], [free("s")]),
        ])
        ctx = context_of([self.S, destroy])
        run_interprocedural(ctx, unit_checks=False)
        found = [d for d in check_struct_invariants(ctx) if d.function == "destroy"]
        assert rule_ids(found) == ["LeakedOwnership", "LeakedOwnership"]
        assert sorted(d.path for d in found) == [("destroy#0", "destroy#1"),
                                                 ("destroy#0", "destroy#2")]
        assert {d.binding for d in found} == {"S.data"}

    def test_unit_checks_are_included_by_default(self, context_of):
        ctx = context_of([self.S, self.MAKE])
        assert rule_ids(run_interprocedural(ctx).diagnostics) == ["LeakedOwnership"]
