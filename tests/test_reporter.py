# tests/test_reporter.py
"""
Tests for the output formats of the diagnostic reporter.
"""

import io
import json

import pytest

from memory_notation.diagnostics import Diagnostic, DiagnosticSeverity, Rule, SourceLocation
from memory_notation.reporter import Reporter, ReporterStats, render


LEAK = Diagnostic(
    rule=Rule.LEAKED_OWNERSHIP,
    message="'id' is still owned at this early-return exit and is never released",
    location=SourceLocation("unit.c", 3),
    function="f",
    binding="id",
    contract="owner char*",
    path=("f#0", "f#1"),
    secondary=(SourceLocation("unit.c", 2),),
)

LOOP = Diagnostic(
    rule=Rule.UNSTABLE_LOOP_OWNERSHIP,
    message="ownership state of 'o' does not converge after 4 loop iteration(s)",
    location=SourceLocation("unit.c", 9, 5),
    function="g",
    binding="o",
)


class TestLineFormats:

    def test_json(self):
        lines = render([LEAK, LOOP], fmt="json").splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["rule"] == "LeakedOwnership"
        assert first["severity"] == "error"
        assert first["category"] == "violation"
        assert first["cwe"] == 401
        assert first["path"] == ["f#0", "f#1"]
        assert first["location"] == {"file": "unit.c", "line": 3, "column": 0}
        second = json.loads(lines[1])
        assert second["severity"] == "error"
        assert second["category"] == "analysis-limit"
        assert "cwe" not in second

    def test_gcc(self):
        assert render([LEAK, LOOP], fmt="gcc").splitlines() == [
            "unit.c:3: error: 'id' is still owned at this early-return exit and is never "
            "released [LeakedOwnership]",
            "unit.c:9:5: error: ownership state of 'o' does not converge after 4 loop "
            "iteration(s) [UnstableLoopOwnership]",
        ]

    def test_plain_text(self):
        out = render([LEAK], fmt="text", colour=False)
        first, note = out.splitlines()
        assert first.endswith(
            "[LeakedOwnership] (function=f, binding=id, contract='owner char*', path=f#0>f#1)"
        )
        assert note == "  note: see unit.c:2"


class TestTerminal:

    def test_groups_by_category(self):
        out = render([LOOP, LEAK], fmt="text", colour=True)
        assert "ownership violations" in out
        assert "analysis limits" in out
        # violations are printed before analysis limits
        assert out.index("ownership violations") < out.index("analysis limits")
        assert out.index("LeakedOwnership") < out.index("UnstableLoopOwnership")

    def test_details(self):
        out = render([LEAK], fmt="text", colour=True)
        assert "unit.c:3" in out
        assert "f#0 > f#1" in out
        assert "id (owner char*)" in out
        assert "see unit.c:2" in out
        assert "https://cwe.mitre.org/data/definitions/401.html" in out


class TestSarif:

    def test_document(self):
        doc = json.loads(render([LEAK, LOOP], fmt="sarif", tool_version="1.2.3"))
        assert doc["version"] == "2.1.0"
        run = doc["runs"][0]
        driver = run["tool"]["driver"]
        assert driver["name"] == "memory-notation"
        assert driver["version"] == "1.2.3"
        assert [r["id"] for r in driver["rules"]] == ["LeakedOwnership", "UnstableLoopOwnership"]
        assert driver["rules"][0]["relationships"][0]["target"]["id"] == "401"

        leak, loop = run["results"]
        assert leak["level"] == "error"
        assert leak["locations"][0]["physicalLocation"]["region"] == {"startLine": 3}
        assert leak["relatedLocations"][0]["physicalLocation"]["region"]["startLine"] == 2
        assert leak["properties"]["binding"] == "id"
        assert loop["level"] == "error"
        assert loop["locations"][0]["physicalLocation"]["region"]["startColumn"] == 5

    def test_empty_run(self):
        doc = json.loads(render([], fmt="sarif"))
        assert doc["runs"][0]["results"] == []


class TestReporter:

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            Reporter(io.StringIO(), fmt="xml")

    def test_summary_stream(self):
        out, summary = io.StringIO(), io.StringIO()
        with Reporter(out, fmt="gcc", summary_stream=summary) as rep:
            rep.emit_all([LEAK, LOOP])
        assert rep.stats.total == 2
        assert summary.getvalue() == "  2 errors (2 total)\n"

    @pytest.mark.parametrize("counts,line", [
        ({}, "no diagnostics emitted"),
        ({"error": 2}, "2 errors (2 total)"),
        ({"warning": 1, "information": 3}, "1 warning; 3 info (4 total)"),
    ])
    def test_summary_line(self, counts, line):
        assert ReporterStats(**counts).summary_line() == line

    def test_record(self):
        stats = ReporterStats()
        for severity in DiagnosticSeverity:
            stats.record(severity)
        assert (stats.error, stats.warning, stats.information) == (1, 1, 1)
