"""
memory_notation/reporter.py
═══════════════════════════

Diagnostic reporter.

Output formats
──────────────
  • text  : colourful terminal rendering on a TTY, plain lines otherwise
  • json  : one JSON object per line, keys sorted
  • gcc   : ``file:line:col: severity: message [Rule]``
  • sarif : a SARIF 2.1.0 document

Input problems, ownership violations and analysis limits are printed in
separate groups by the text renderer, so a reader never mistakes an
"analysis gave up" error for a confirmed violation.

Usage
─────
    with Reporter(sys.stdout, fmt="text") as rep:
        rep.emit_all(results.diagnostics)
"""

from __future__ import annotations

import io
import json
import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, TextIO, Union

from termcolor import colored

from memory_notation.diagnostics import (
    Diagnostic,
    DiagnosticSeverity,
    RuleCategory,
)

FORMATS = ("text", "json", "gcc", "sarif")

_SEVERITY_COLOURS = {
    DiagnosticSeverity.ERROR: "red",
    DiagnosticSeverity.WARNING: "yellow",
    DiagnosticSeverity.INFORMATION: "white",
}

_SARIF_LEVELS = {
    DiagnosticSeverity.ERROR: "error",
    DiagnosticSeverity.WARNING: "warning",
    DiagnosticSeverity.INFORMATION: "note",
}

_CATEGORY_TITLES = {
    RuleCategory.INPUT: "input problems",
    RuleCategory.VIOLATION: "ownership violations",
    RuleCategory.ANALYSIS_LIMIT: "analysis limits",
    RuleCategory.INTERNAL: "internal errors",
}


# ═════════════════════════════════════════════════════════════════════════
#  STATS
# ═════════════════════════════════════════════════════════════════════════

@dataclass
class ReporterStats:
    """Aggregate counts per severity."""
    error: int = 0
    warning: int = 0
    information: int = 0

    def record(self, severity: DiagnosticSeverity) -> None:
        attr = severity.value
        setattr(self, attr, getattr(self, attr) + 1)

    @property
    def total(self) -> int:
        return self.error + self.warning + self.information

    def summary_line(self) -> str:
        parts: List[str] = []
        if self.error:
            parts.append(f"{self.error} error{'s' if self.error != 1 else ''}")
        if self.warning:
            parts.append(f"{self.warning} warning{'s' if self.warning != 1 else ''}")
        if self.information:
            parts.append(f"{self.information} info")
        if not parts:
            return "no diagnostics emitted"
        return "; ".join(parts) + f" ({self.total} total)"


# ═════════════════════════════════════════════════════════════════════════
#  TERMINAL RENDERER
# ═════════════════════════════════════════════════════════════════════════

class _TerminalRenderer:
    """Render diagnostics to a terminal with colours."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._category: Optional[RuleCategory] = None

    def render(self, diag: Diagnostic) -> None:
        lines: List[str] = []
        if diag.category is not self._category:
            self._category = diag.category
            title = _CATEGORY_TITLES[diag.category]
            lines.append(colored(f"── {title} ──", "magenta", attrs=["bold"]))

        colour = _SEVERITY_COLOURS[diag.severity]
        sev_str = colored(f"{diag.severity.value}[{diag.rule_id}]", colour, attrs=["bold"])
        lines.append(f"{sev_str}: {colored(diag.message, 'white', attrs=['bold'])}")

        arrow = colored("-->", "blue", attrs=["bold"])
        lines.append(f"  {arrow} {diag.location}")

        if diag.function:
            lines.append(f"  = {colored('in', 'cyan', attrs=['bold'])}: {diag.function}")
        if diag.binding:
            contract = f" ({diag.contract})" if diag.contract else ""
            lines.append(f"  = {colored('binding', 'cyan', attrs=['bold'])}: "
                         f"{diag.binding}{contract}")
        if diag.path:
            lines.append(f"  = {colored('path', 'cyan', attrs=['bold'])}: "
                         f"{' > '.join(diag.path)}")
        for loc in diag.secondary:
            lines.append(f"  = {colored('note', 'cyan', attrs=['bold'])}: see {loc}")

        if diag.rule.cwe:
            cwe_str = colored(f"CWE-{diag.rule.cwe}", "blue", attrs=["underline"])
            lines.append(f"  = {cwe_str}: https://cwe.mitre.org/data/definitions/"
                         f"{diag.rule.cwe}.html")

        lines.append("")
        self._stream.write("\n".join(lines) + "\n")


class _PlainRenderer:
    """Non-coloured renderer — one line per diagnostic plus notes."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    def render(self, diag: Diagnostic) -> None:
        extra = []
        if diag.function:
            extra.append(f"function={diag.function}")
        if diag.binding:
            extra.append(f"binding={diag.binding}")
        if diag.contract:
            extra.append(f"contract={diag.contract!r}")
        if diag.path:
            extra.append(f"path={'>'.join(diag.path)}")
        suffix = f" ({', '.join(extra)})" if extra else ""
        self._stream.write(diag.to_gcc_format() + suffix + "\n")
        for loc in diag.secondary:
            self._stream.write(f"  note: see {loc}\n")


class _JsonRenderer:
    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    def render(self, diag: Diagnostic) -> None:
        self._stream.write(diag.to_json_str() + "\n")


class _GccRenderer:
    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    def render(self, diag: Diagnostic) -> None:
        self._stream.write(diag.to_gcc_format() + "\n")


# ═════════════════════════════════════════════════════════════════════════
#  SARIF 2.1.0 BUILDER
# ═════════════════════════════════════════════════════════════════════════

class SarifBuilder:
    """Accumulates diagnostics into a SARIF 2.1.0 document."""

    SARIF_VERSION = "2.1.0"
    SARIF_SCHEMA = (
        "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/"
        "Schemata/sarif-schema-2.1.0.json"
    )

    def __init__(self) -> None:
        self._results: List[Dict[str, Any]] = []
        self._rules: Dict[str, Dict[str, Any]] = {}

    def add(self, diag: Diagnostic) -> None:
        if diag.rule_id not in self._rules:
            rule: Dict[str, Any] = {
                "id": diag.rule_id,
                "properties": {"category": diag.category.value},
            }
            if diag.rule.cwe:
                rule["relationships"] = [{
                    "target": {"id": str(diag.rule.cwe), "toolComponent": {"name": "CWE"}},
                    "kinds": ["superset"],
                }]
            self._rules[diag.rule_id] = rule

        phys: Dict[str, Any] = {
            "artifactLocation": {"uri": diag.location.file},
            "region": {"startLine": max(diag.location.line, 1)},
        }
        if diag.location.column:
            phys["region"]["startColumn"] = diag.location.column
        result: Dict[str, Any] = {
            "ruleId": diag.rule_id,
            "level": _SARIF_LEVELS[diag.severity],
            "message": {"text": diag.message},
            "locations": [{"physicalLocation": phys}],
            "properties": {
                "function": diag.function,
                "binding": diag.binding,
                "contract": diag.contract,
                "path": list(diag.path),
            },
        }
        if diag.secondary:
            result["relatedLocations"] = [
                {
                    "id": idx,
                    "physicalLocation": {
                        "artifactLocation": {"uri": loc.file},
                        "region": {"startLine": max(loc.line, 1)},
                    },
                }
                for idx, loc in enumerate(diag.secondary)
            ]
        self._results.append(result)

    def to_json(self, tool_name: str, version: str) -> str:
        sarif: Dict[str, Any] = {
            "$schema": self.SARIF_SCHEMA,
            "version": self.SARIF_VERSION,
            "runs": [
                {
                    "tool": {
                        "driver": {
                            "name": tool_name,
                            "version": version,
                            "rules": [self._rules[k] for k in sorted(self._rules)],
                        }
                    },
                    "results": self._results,
                }
            ],
        }
        return json.dumps(sarif, indent=2, sort_keys=True)


# ═════════════════════════════════════════════════════════════════════════
#  REPORTER  (main entry point)
# ═════════════════════════════════════════════════════════════════════════

class Reporter:
    """
    Central diagnostic dispatcher.

    Use as a context manager::

        with Reporter(sys.stdout, fmt="gcc") as rep:
            rep.emit_all(diagnostics)
        # finish() is called automatically
    """

    def __init__(
        self,
        stream: TextIO = sys.stdout,
        fmt: str = "text",
        colour: Optional[bool] = None,
        summary_stream: Optional[TextIO] = None,
        tool_name: str = "memory-notation",
        tool_version: str = "",
    ) -> None:
        if fmt not in FORMATS:
            raise ValueError(f"unknown output format {fmt!r}")
        self.fmt = fmt
        self.stream = stream
        self.summary_stream = summary_stream
        self.tool_name = tool_name
        self.tool_version = tool_version
        self.stats = ReporterStats()
        self._sarif: Optional[SarifBuilder] = SarifBuilder() if fmt == "sarif" else None
        self._renderer: Union[_TerminalRenderer, _PlainRenderer, _JsonRenderer,
                              _GccRenderer, None] = None
        if fmt == "text":
            use_colour = colour if colour is not None else (
                hasattr(stream, "isatty") and stream.isatty()
            )
            self._renderer = _TerminalRenderer(stream) if use_colour else _PlainRenderer(stream)
        elif fmt == "json":
            self._renderer = _JsonRenderer(stream)
        elif fmt == "gcc":
            self._renderer = _GccRenderer(stream)

    def __enter__(self) -> "Reporter":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.finish()

    def emit(self, diag: Diagnostic) -> None:
        self.stats.record(diag.severity)
        if self._renderer is not None:
            self._renderer.render(diag)
        if self._sarif is not None:
            self._sarif.add(diag)

    def emit_all(self, diagnostics: Iterable[Diagnostic]) -> None:
        diagnostics = list(diagnostics)
        if isinstance(self._renderer, _TerminalRenderer):
            order = list(_CATEGORY_TITLES)
            diagnostics.sort(key=lambda d: order.index(d.category))
        for diag in diagnostics:
            self.emit(diag)

    def finish(self) -> ReporterStats:
        """Write the SARIF document (if any) and the summary line."""
        if self._sarif is not None:
            self.stream.write(self._sarif.to_json(self.tool_name, self.tool_version) + "\n")
        self.stream.flush()
        if self.summary_stream is not None:
            summary = self.stats.summary_line()
            if isinstance(self._renderer, _TerminalRenderer):
                colour = "red" if self.stats.error else ("yellow" if self.stats.total else "green")
                self.summary_stream.write(colored(f"  ╰─ {summary}", colour, attrs=["bold"]) + "\n")
            else:
                self.summary_stream.write(f"  {summary}\n")
        return self.stats


def render(diagnostics: Iterable[Diagnostic], fmt: str = "text", colour: bool = False,
           tool_version: str = "") -> str:
    """Render *diagnostics* to a string."""
    buf = io.StringIO()
    with Reporter(buf, fmt=fmt, colour=colour, tool_version=tool_version) as rep:
        rep.emit_all(diagnostics)
    return buf.getvalue()


__all__ = ["FORMATS", "ReporterStats", "SarifBuilder", "Reporter", "render"]
