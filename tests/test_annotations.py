# tests/test_annotations.py
"""
Tests for the annotation vocabulary and contract extraction.
"""

import pytest

from builders import decl, fn, param, struct, field, free
from memory_notation.annotations import (
    AnnotationKind,
    check_conflicts,
    extract_contracts,
    parse_annotation,
    parse_kind_name,
    primary_kind,
)
from memory_notation.config import DEFAULT_CONFIG, VerifierConfig
from memory_notation.errors import ConflictingAnnotationError, UnknownAnnotationError


class TestSpellings:
    """Every documented spelling resolves to one kind."""

    @pytest.mark.parametrize("spelling,kind", [
        ("guarded", AnnotationKind.GUARDED),
        ("memory_guarded", AnnotationKind.GUARDED),
        ("m_g", AnnotationKind.GUARDED),
        ("Guarded", AnnotationKind.GUARDED),
        ("owner", AnnotationKind.OWNER),
        ("m_o", AnnotationKind.OWNER),
        ("TakePossession", AnnotationKind.TAKE_POSSESSION),
        ("memory_take_possession", AnnotationKind.TAKE_POSSESSION),
        ("m_t", AnnotationKind.TAKE_POSSESSION),
        ("keep_alive", AnnotationKind.KEEP_ALIVE),
        ("ref_count", AnnotationKind.REF_COUNTED),
        ("RefCounted", AnnotationKind.REF_COUNTED),
        ("m_rc", AnnotationKind.REF_COUNTED),
        ("ptr_inout", AnnotationKind.PTR_IN_OUT),
        ("m_io", AnnotationKind.PTR_IN_OUT),
        ("PtrOut", AnnotationKind.PTR_OUT),
        ("m_out", AnnotationKind.PTR_OUT),
    ])
    def test_kind_names(self, spelling, kind):
        assert parse_kind_name(spelling) is kind

    def test_relation_with_target(self):
        ann = parse_annotation("memory_owner_of(buf)")
        assert ann.kind is AnnotationKind.OWNER_OF
        assert ann.target == "buf"
        assert str(ann) == "owner_of(buf)"

    def test_short_owner_of(self):
        assert parse_annotation("m_o_(mem)").kind is AnnotationKind.OWNER_OF

    def test_camel_case_release_after_of(self):
        ann = parse_annotation("ReleaseAfterOf(mem)")
        assert ann.kind is AnnotationKind.RELEASE_AFTER_OF
        assert ann.target == "mem"

    def test_keep_alive_target_is_optional(self):
        assert parse_annotation("keep_alive").target is None
        assert parse_annotation("keep_alive(owner)").target == "owner"

    @pytest.mark.parametrize("text", ["bogus", "owner_of", "release_after_of()", "owner(x)", "o w"])
    def test_rejected(self, text):
        with pytest.raises(UnknownAnnotationError):
            parse_annotation(text)


class TestConflicts:

    @pytest.mark.parametrize("a,b", [
        ("guarded", "owner"),
        ("guarded", "take_possession"),
        ("guarded", "ref_count"),
        ("keep_alive", "owner"),
        ("take_possession", "ref_count"),
        ("ptr_out", "ptr_inout"),
    ])
    def test_conflicting_pairs(self, a, b):
        anns = [parse_annotation(a), parse_annotation(b)]
        assert check_conflicts(anns) is not None

    def test_compatible_tags(self):
        anns = [parse_annotation("owner"), parse_annotation("ptr_out")]
        assert check_conflicts(anns) is None

    def test_reconciled_pair_is_accepted(self):
        config = VerifierConfig.from_mapping(
            {"reconciled_pairs": [["take_possession", "ref_count"]]}
        )
        anns = [parse_annotation("take_possession"), parse_annotation("ref_count")]
        assert check_conflicts(anns, config) is None
        assert primary_kind(anns, config) is AnnotationKind.REF_COUNTED

    def test_take_possession_wins_over_owner(self):
        anns = [parse_annotation("owner"), parse_annotation("take_possession")]
        assert primary_kind(anns) is AnnotationKind.TAKE_POSSESSION


class TestExtraction:
    """Contract tables built from declaration records."""

    def test_unannotated_pointer_defaults_to_guarded(self, unit_of):
        table, errors = extract_contracts(unit_of([fn("f", [param("p")])]), DEFAULT_CONFIG)
        assert errors == []
        p = table.function("f").param("p")
        assert p.kind is AnnotationKind.GUARDED
        assert p.defaulted
        assert not p.is_consuming
        assert p.is_borrowing
        assert p.describe() == "guarded (default) char*"

    def test_configured_default_owner(self, unit_of):
        config = DEFAULT_CONFIG.with_overrides(default_unannotated_kind="owner")
        table, _ = extract_contracts(unit_of([fn("f", [param("p")])]), config)
        p = table.function("f").param("p")
        assert p.kind is AnnotationKind.OWNER
        assert p.is_consuming
        assert not p.is_borrowing

    def test_non_pointer_is_untracked(self, unit_of):
        table, _ = extract_contracts(unit_of([fn("f", [param("n", type="int")])]), DEFAULT_CONFIG)
        assert table.function("f").param("n").kind is None

    def test_output_flag_keeps_default_kind(self, unit_of):
        table, _ = extract_contracts(
            unit_of([fn("f", [param("out", "ptr_out", type="char**")])]), DEFAULT_CONFIG)
        out = table.function("f").param("out")
        assert out.is_output
        assert out.kind is AnnotationKind.GUARDED

    def test_conflict_skips_only_that_declaration(self, unit_of):
        records = [
            fn("bad", [param("p", ["guarded", "owner"])]),
            fn("good", [param("p", "owner")]),
        ]
        table, errors = extract_contracts(unit_of(records), DEFAULT_CONFIG)
        assert "bad" not in table
        assert "good" in table
        assert len(errors) == 1
        assert isinstance(errors[0], ConflictingAnnotationError)
        assert errors[0].declaration == "bad"
        assert errors[0].entity == "p"

    def test_relation_must_name_a_parameter(self, unit_of):
        records = [fn("f", [param("a", "release_after_of(missing)")])]
        table, errors = extract_contracts(unit_of(records), DEFAULT_CONFIG)
        assert "f" not in table
        assert isinstance(errors[0], UnknownAnnotationError)

    def test_relations_are_recorded(self, unit_of):
        records = [fn("f", [param("buf", "owner"), param("hdr", ["owner", "release_after_of(buf)"])])]
        table, _ = extract_contracts(unit_of(records), DEFAULT_CONFIG)
        rel = table.function("f").relations
        assert [str(r) for r in rel] == ["hdr release_after_of buf"]

    def test_struct_owning_fields(self, unit_of):
        records = [struct("S", [
            field("buf", "guarded"),
            field("a", "owner"),
            field("b", "owner_of(buf)"),
            field("rc", "ref_count"),
        ])]
        table, _ = extract_contracts(unit_of(records), DEFAULT_CONFIG)
        assert [f.name for f in table.struct("S").owning_fields] == ["a", "b"]

    def test_prototype_and_definition_must_agree(self, unit_of):
        records = [
            fn("f", [param("p", "owner")]),
            fn("f", [param("p", "guarded")], body=[]),
        ]
        table, errors = extract_contracts(unit_of(records), DEFAULT_CONFIG)
        assert "f" not in table
        assert isinstance(errors[0], ConflictingAnnotationError)

    def test_definition_is_kept_over_prototype(self, unit_of):
        records = [
            fn("f", [param("p", "owner")]),
            fn("f", [param("p", "owner")], body=[free("p")]),
        ]
        table, errors = extract_contracts(unit_of(records), DEFAULT_CONFIG)
        assert errors == []
        assert table.function("f").is_definition

    def test_local_contracts(self, unit_of):
        records = [fn("f", [param("buf", "owner")], body=[
            decl("view", "buf", annotation="keep_alive(buf)"),
            decl("tmp"),
        ])]
        unit = unit_of(records)
        table, _ = extract_contracts(unit, DEFAULT_CONFIG)
        body = unit.functions[0].body
        view = table.local("f", body[0])
        assert view.kind is AnnotationKind.KEEP_ALIVE
        assert view.target_of(AnnotationKind.KEEP_ALIVE) == "buf"
        # unannotated locals infer their kind later
        assert table.local("f", body[1]).kind is None

    def test_to_dict_is_sorted(self, unit_of):
        records = [fn("b", [param("p", "owner")]), fn("a", [param("q")])]
        table, _ = extract_contracts(unit_of(records), DEFAULT_CONFIG)
        dumped = table.to_dict()
        assert list(dumped["functions"]) == ["a", "b"]
        assert dumped["functions"]["b"]["params"][0]["kind"] == "owner"
