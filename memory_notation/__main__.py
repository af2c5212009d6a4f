#!/usr/bin/env python3
"""
memory_notation/__main__.py
===========================

Entry point for the ``memnote`` command-line verifier.

Usage
-----
    memnote <command> [options] <input>...

Commands
--------
    check        Verify annotated declarations and report violations
    contracts    Print the extracted ownership contracts as JSON
    scopes       Print the scope graph (scopes and exit edges) of each function
    callgraph    Print the call graph (summary, Graphviz DOT, or what one function reaches)
    init-config  Write a configuration file holding the defaults

Pipeline
--------
    .json / .sexp records
        │
        ▼
    ┌──────────────┐
    │   Loader      │   json / sexpdata → declaration records
    └────┬─────────┘
         ▼
    ┌──────────────┐
    │  Contracts    │   annotations → per-entity contracts
    └────┬─────────┘
         ▼
    ┌──────────────┐
    │  Scope graph  │   bodies → scopes + exit edges
    └────┬─────────┘
         ▼
    ┌──────────────┐
    │  Ownership    │   per-function paths, SCC summaries,
    │  checking     │   call-site and struct invariants
    └────┬─────────┘
         ▼
    diagnostics (text / json / gcc / sarif)

Exit status: 0 clean, 1 error diagnostics, 2 unreadable input,
malformed configuration or internal failure, 130 interrupted.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
import traceback
from typing import List, Optional, Sequence

from termcolor import colored

from memory_notation import __version__
from memory_notation.annotations import extract_contracts
from memory_notation.callgraph import build_callgraph, callgraph_summary
from memory_notation.checkers import CheckerRunner, default_registry
from memory_notation.config import DEFAULT_CONFIG, VerifierConfig
from memory_notation.decl_ast import TranslationUnit
from memory_notation.errors import ConfigError, InputError
from memory_notation.loader import load_json_text, load_paths
from memory_notation.reporter import FORMATS, Reporter
from memory_notation.scope_graph import build_scope_graph

__description__ = "memnote — ownership verifier for memory-notation annotated C declarations"

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# SHARED HELPERS
# ═══════════════════════════════════════════════════════════════════════════

def _configure_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load_config(args: argparse.Namespace) -> VerifierConfig:
    config = DEFAULT_CONFIG
    if getattr(args, "config", None):
        config = VerifierConfig.from_file(args.config)
    overrides = {
        "default_unannotated_kind": getattr(args, "default_kind", None),
        "loop_fixpoint_iteration_limit": getattr(args, "loop_limit", None),
        "recursion_iteration_limit": getattr(args, "recursion_limit", None),
        "workers": getattr(args, "workers", None),
    }
    if getattr(args, "werror", False):
        overrides["treat_warnings_as_errors"] = True
    suppress = list(getattr(args, "suppress", None) or [])
    if suppress:
        overrides["suppress"] = tuple(config.suppress) + tuple(suppress)
    return config.with_overrides(**overrides)


def _load_unit(inputs: Sequence[str]) -> TranslationUnit:
    if list(inputs) == ["-"]:
        return load_json_text(sys.stdin.read(), source="<stdin>")
    return load_paths(inputs)


def _error(message: str) -> None:
    use_colour = sys.stderr.isatty() and os.environ.get("NO_COLOR") is None
    prefix = colored("error:", "red", attrs=["bold"]) if use_colour else "error:"
    sys.stderr.write(f"memnote: {prefix} {message}\n")


# ═══════════════════════════════════════════════════════════════════════════
# COMMAND HANDLERS
# ═══════════════════════════════════════════════════════════════════════════

def cmd_check(args: argparse.Namespace) -> int:
    """Handle the 'check' command."""
    config = _load_config(args)
    unit = _load_unit(args.inputs)
    registry = default_registry(args.disable or ())
    results = CheckerRunner(registry, config=config).run(unit)

    colour = None if args.color == "auto" else args.color == "always"
    summary_stream = None if args.quiet or args.format != "text" else sys.stderr
    with Reporter(sys.stdout, fmt=args.format, colour=colour,
                  summary_stream=summary_stream, tool_version=__version__) as rep:
        rep.emit_all(results.diagnostics)

    if args.verbose:
        sys.stderr.write(results.summary() + "\n")
    return results.exit_status()


def cmd_contracts(args: argparse.Namespace) -> int:
    """Handle the 'contracts' command."""
    config = _load_config(args)
    unit = _load_unit(args.inputs)
    table, errors = extract_contracts(unit, config)
    for exc in list(unit.errors) + list(errors):
        _error(str(exc))
    json.dump(table.to_dict(), sys.stdout, indent=2, sort_keys=True)
    sys.stdout.write("\n")
    return 1 if unit.errors or errors else 0


def cmd_scopes(args: argparse.Namespace) -> int:
    """Handle the 'scopes' command."""
    config = _load_config(args)
    unit = _load_unit(args.inputs)
    table, _ = extract_contracts(unit, config)
    status = 0
    graphs = []
    for decl in unit.functions:
        if not decl.is_definition or (args.function and decl.name not in args.function):
            continue
        try:
            graphs.append(build_scope_graph(decl, config, table))
        except InputError as exc:
            _error(str(exc))
            status = 1
    if args.json:
        json.dump([g.to_dict() for g in graphs], sys.stdout, indent=2, sort_keys=True)
        sys.stdout.write("\n")
    else:
        for g in graphs:
            sys.stdout.write(g.render() + "\n\n")
    return status


def cmd_callgraph(args: argparse.Namespace) -> int:
    """Handle the 'callgraph' command."""
    config = _load_config(args)
    unit = _load_unit(args.inputs)
    table, _ = extract_contracts(unit, config)
    cg = build_callgraph(unit.functions, table)
    if args.function:
        node = cg.node(args.function)
        if node is None:
            _error(f"no function named {args.function!r} in the call graph")
            return 1
        for callee in sorted(cg.transitive_callees(node), key=lambda n: n.name):
            sys.stdout.write(f"{callee.name} ({callee.kind.value})\n")
        return 0
    if args.dot:
        sys.stdout.write(cg.to_dot(title=unit.source) + "\n")
    else:
        sys.stdout.write(callgraph_summary(cg) + "\n")
    return 0


def cmd_init_config(args: argparse.Namespace) -> int:
    """Handle the 'init-config' command."""
    text = json.dumps(DEFAULT_CONFIG.to_dict(), indent=2, sort_keys=True) + "\n"
    if args.output == "-":
        sys.stdout.write(text)
        return 0
    if os.path.exists(args.output) and not args.force:
        _error(f"{args.output} already exists (use --force to overwrite)")
        return 1
    with open(args.output, "w", encoding="utf-8") as fh:
        fh.write(text)
    if not args.quiet:
        sys.stderr.write(f"wrote {args.output}\n")
    return 0


# ═══════════════════════════════════════════════════════════════════════════
# ARGUMENT PARSER
# ═══════════════════════════════════════════════════════════════════════════

def _add_common(p: argparse.ArgumentParser, inputs: bool = True) -> None:
    if inputs:
        p.add_argument(
            "inputs", nargs="+", metavar="INPUT",
            help="Declaration files (.json, .jsonl, .sexp); '-' reads JSON from stdin",
        )
        p.add_argument("--config", help="JSON configuration file")
        p.add_argument(
            "--default-kind", dest="default_kind", choices=["guarded", "owner"],
            help="Kind given to unannotated pointer parameters, fields and returns",
        )
    p.add_argument("-v", "--verbose", action="count", default=0,
                   help="Debug logging (and per-checker timings for 'check')")
    p.add_argument("-q", "--quiet", action="store_true", default=False,
                   help="Only warnings and errors on stderr")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the memnote CLI."""
    parser = argparse.ArgumentParser(
        prog="memnote",
        description=__description__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              %(prog)s check example.json
              %(prog)s check --format sarif --workers 4 src/*.json
              %(prog)s check --werror --suppress 'legacy_*:LeakedOwnership' unit.sexp
              %(prog)s contracts example.sexp
              %(prog)s scopes example.json --function example_new
              %(prog)s callgraph --dot example.json
              %(prog)s init-config memnote.json
        """),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        description="available commands",
        metavar="<command>",
    )

    # ── check ────────────────────────────────────────────────────────────
    p_check = subparsers.add_parser(
        "check",
        help="Verify ownership contracts and report violations",
        description="Check every function and struct of the given unit against "
                    "its memory-notation contract.",
    )
    _add_common(p_check)
    p_check.add_argument("--format", choices=FORMATS, default="text",
                         help="Output format (default: text)")
    p_check.add_argument("--color", choices=["auto", "always", "never"], default="auto",
                         help="Colour the text output (default: auto)")
    p_check.add_argument("--workers", type=int,
                         help="Threads used to check independent functions")
    p_check.add_argument("--loop-limit", dest="loop_limit", type=int,
                         help="Loop fixed-point iteration limit")
    p_check.add_argument("--recursion-limit", dest="recursion_limit", type=int,
                         help="Recursive summary iteration limit")
    p_check.add_argument("--werror", action="store_true", default=False,
                         help="Treat warnings as errors")
    p_check.add_argument("--suppress", action="append", metavar="[FUNC:]RULE",
                         help="Suppress a rule, optionally inside matching functions")
    p_check.add_argument("--disable", action="append", metavar="CHECKER",
                         choices=default_registry().names,
                         help="Skip a checker (repeatable)")
    p_check.set_defaults(func=cmd_check)

    # ── contracts ────────────────────────────────────────────────────────
    p_contracts = subparsers.add_parser(
        "contracts", help="Print the extracted contracts as JSON",
    )
    _add_common(p_contracts)
    p_contracts.set_defaults(func=cmd_contracts)

    # ── scopes ───────────────────────────────────────────────────────────
    p_scopes = subparsers.add_parser(
        "scopes", help="Print scope graphs and their exit edges",
    )
    _add_common(p_scopes)
    p_scopes.add_argument("--function", action="append",
                          help="Only this function (repeatable)")
    p_scopes.add_argument("--json", action="store_true", default=False,
                          help="JSON instead of the indented text rendering")
    p_scopes.set_defaults(func=cmd_scopes)

    # ── callgraph ────────────────────────────────────────────────────────
    p_cg = subparsers.add_parser(
        "callgraph", help="Print the call graph",
    )
    _add_common(p_cg)
    p_cg.add_argument("--dot", action="store_true", default=False,
                      help="Graphviz DOT instead of a text summary")
    p_cg.add_argument("--function", metavar="NAME",
                      help="List the functions NAME reaches instead")
    p_cg.set_defaults(func=cmd_callgraph)

    # ── init-config ──────────────────────────────────────────────────────
    p_init = subparsers.add_parser(
        "init-config", help="Write a configuration file holding the defaults",
    )
    _add_common(p_init, inputs=False)
    p_init.add_argument("output", nargs="?", default="memnote.json",
                        help="Output path, '-' for stdout (default: memnote.json)")
    p_init.add_argument("--force", action="store_true", default=False,
                        help="Overwrite an existing file")
    p_init.set_defaults(func=cmd_init_config)

    return parser


# ═══════════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════════

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the memnote CLI.

    Parameters
    ----------
    argv : sequence of str, optional
        Command-line arguments. Defaults to sys.argv[1:].

    Returns
    -------
    int
        Exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    _configure_logging(args.verbose, args.quiet)
    try:
        return args.func(args)
    except (ConfigError, InputError) as exc:
        _error(str(exc))
        return 2
    except KeyboardInterrupt:
        sys.stderr.write("\nInterrupted.\n")
        return 130
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        return 0
    except Exception as e:
        _error(f"internal error: {e}")
        traceback.print_exc()
        return 2


if __name__ == "__main__":
    sys.exit(main())
