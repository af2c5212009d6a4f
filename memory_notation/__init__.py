"""
memory_notation — Ownership Verifier for Memory-Notation Annotated C
====================================================================

This package checks C function and struct declarations carrying the
memory-notation annotation vocabulary (``owner``, ``guarded``,
``ref_count``, ``take_possession``, ``release_after_of`` and friends)
against their bodies, and reports ownership violations with
deterministic, sorted diagnostics.

Core modules
------------
decl_ast
    Declaration records and the small statement IR of function bodies.
loader
    JSON and S-expression front ends producing a ``TranslationUnit``.
annotations
    Annotation vocabulary and per-entity contract extraction.
scope_graph
    Lexical scopes and exit edges of one function body.
ownership_check
    Path-sensitive per-function ownership checking and summaries.
callgraph
    Call graph with Tarjan SCCs and bottom-up waves.
interproc
    Summary table, recursive SCC iteration, call-site and struct checks.
checkers
    Checker lifecycle, registry and runner.
diagnostics / reporter
    Rule catalogue, suppressions, and text / JSON / gcc / SARIF output.

Quick start
-----------
>>> from memory_notation import load_path, check_unit
>>> results = check_unit(load_path("examples/example.json"))
>>> results.exit_status()
0
"""

from __future__ import annotations

import logging

__version__ = "0.1.0"
__author__ = "memory-notation contributors"
__license__ = "MIT"

logging.getLogger(__name__).addHandler(logging.NullHandler())

from memory_notation.annotations import (  # noqa: E402
    AnnotationKind,
    ContractTable,
    EntityContract,
    FunctionContract,
    StructContract,
    extract_contracts,
)
from memory_notation.checkers import (  # noqa: E402
    CheckerRunResults,
    CheckerRunner,
    check_unit,
)
from memory_notation.config import DEFAULT_CONFIG, VerifierConfig  # noqa: E402
from memory_notation.decl_ast import TranslationUnit  # noqa: E402
from memory_notation.diagnostics import (  # noqa: E402
    Diagnostic,
    DiagnosticSeverity,
    Rule,
    SourceLocation,
)
from memory_notation.errors import (  # noqa: E402
    AnnotationError,
    ConfigError,
    InputError,
    MemoryNotationError,
)
from memory_notation.loader import load_path, load_paths  # noqa: E402
from memory_notation.ownership_check import FunctionSummary, check_function  # noqa: E402
from memory_notation.reporter import Reporter, render  # noqa: E402

__all__ = [
    "__version__",
    "AnnotationKind",
    "ContractTable",
    "EntityContract",
    "FunctionContract",
    "StructContract",
    "extract_contracts",
    "CheckerRunResults",
    "CheckerRunner",
    "check_unit",
    "DEFAULT_CONFIG",
    "VerifierConfig",
    "TranslationUnit",
    "Diagnostic",
    "DiagnosticSeverity",
    "Rule",
    "SourceLocation",
    "AnnotationError",
    "ConfigError",
    "InputError",
    "MemoryNotationError",
    "load_path",
    "load_paths",
    "FunctionSummary",
    "check_function",
    "Reporter",
    "render",
]
