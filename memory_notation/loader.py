"""
memory_notation/loader.py
═════════════════════════

Decodes annotated declaration records into :mod:`memory_notation.decl_ast`.

Two surface syntaxes are accepted and lowered to the same record shape:

JSON
    A list of records, an object ``{"declarations": [...]}``, a single
    record, or JSON lines::

        {"kind": "function", "name": "f",
         "params": [{"name": "id", "annotation": "owner", "type": "char*"}],
         "returns": null,
         "body": [{"op": "if", "then": [{"op": "return"}]},
                  {"op": "free", "target": "id"}]}

S-expressions (``.sexp``), parsed with :mod:`sexpdata`::

    (struct Example
      (field name guarded "char*")
      (field id owner "char*"))

    (function example_delete
      (param ex owner "struct Example*")
      (body
        (free ex.id)
        (free ex)))

A record that cannot be decoded becomes an :class:`InputError` on the
resulting :class:`TranslationUnit`; the rest of the unit still loads.  A
file that is not syntactically valid at all raises :class:`InputError`.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import sexpdata
from sexpdata import Symbol

from memory_notation.decl_ast import (
    Abort,
    AllocExpr,
    Assign,
    Block,
    Break,
    CallExpr,
    CallStmt,
    ConstExpr,
    Continue,
    DecRef,
    Decl,
    Declaration,
    Expr,
    Fail,
    FunctionDecl,
    If,
    IncRef,
    Loop,
    MemberDecl,
    NullExpr,
    Release,
    Return,
    Stmt,
    StructDecl,
    TranslationUnit,
    Use,
    VarRef,
    Write,
)
from memory_notation.diagnostics import SourceLocation
from memory_notation.errors import InputError

logger = logging.getLogger(__name__)

SEXP_SUFFIXES = frozenset({".sexp", ".sx", ".lisp"})

_NULL_SPELLINGS = frozenset({"NULL", "null", "nullptr", "nil"})
_REF_RE = re.compile(r"^(&)?\s*([A-Za-z_]\w*)(?:\s*(?:\.|->)\s*([A-Za-z_]\w*))?$")
_TAG_RE = re.compile(r"[A-Za-z_]\w*(?:\s*\([^)]*\))?")

Record = Mapping[str, Any]


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — ENTRY POINTS
# ═════════════════════════════════════════════════════════════════════════

def load_path(path: Union[str, Path]) -> TranslationUnit:
    """
    Load one input file, choosing the syntax from its suffix.

    Raises
    ------
    InputError
        The file cannot be read or is not valid JSON / S-expression text.
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise InputError(f"cannot read {p}: {exc}") from exc
    if p.suffix.lower() in SEXP_SUFFIXES:
        unit = load_sexp_text(text, source=str(p))
    else:
        unit = load_json_text(text, source=str(p))
    logger.debug("%s: %d declaration(s), %d input error(s)",
                 p, len(unit.declarations), len(unit.errors))
    return unit


def load_paths(paths: Iterable[Union[str, Path]]) -> TranslationUnit:
    """Load several files into a single compilation unit."""
    unit = TranslationUnit(source="<unit>")
    for path in paths:
        unit.merge(load_path(path))
    return unit


def load_json_text(text: str, source: str = "<input>") -> TranslationUnit:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        data = _json_lines(text, source, exc)
    if isinstance(data, Mapping) and "declarations" in data:
        records = data["declarations"]
    elif isinstance(data, Mapping):
        records = [data]
    else:
        records = data
    if not isinstance(records, list):
        raise InputError(f"{source}: expected a list of declaration records")
    return decode_records(records, source=source)


def _json_lines(text: str, source: str, first_error: json.JSONDecodeError) -> List[Any]:
    records: List[Any] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            raise InputError(
                f"{source}:{first_error.lineno}: invalid JSON: {first_error.msg}",
                location=SourceLocation(source, first_error.lineno, first_error.colno),
            ) from first_error
    return records


def load_sexp_text(text: str, source: str = "<input>") -> TranslationUnit:
    # sexpdata reads one form; wrap the stream so every top-level form is read
    try:
        forms = sexpdata.loads(f"({text}\n)", nil=None, true=None, false=None)
    except Exception as exc:
        raise InputError(f"{source}: S-expression syntax error: {exc}") from exc
    unit = TranslationUnit(source=source)
    for index, form in enumerate(forms):
        try:
            record = _sexp_declaration(form)
        except InputError as exc:
            exc.location = exc.location or SourceLocation(source)
            unit.errors.append(exc)
            continue
        _decode_into(unit, record, source, index)
    return unit


def decode_records(records: Iterable[Any], source: str = "<input>") -> TranslationUnit:
    """Decode already-parsed records."""
    unit = TranslationUnit(source=source)
    for index, record in enumerate(records):
        _decode_into(unit, record, source, index)
    return unit


def _decode_into(unit: TranslationUnit, record: Any, source: str, index: int) -> None:
    try:
        unit.declarations.append(decode_declaration(record, source=source))
    except InputError as exc:
        if not exc.declaration and isinstance(record, Mapping):
            exc.declaration = str(record.get("name", ""))
        if exc.location is None:
            exc.location = SourceLocation(source)
        logger.debug("%s: record %d rejected: %s", source, index, exc.message)
        unit.errors.append(exc)


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — RECORD DECODING
# ═════════════════════════════════════════════════════════════════════════

def decode_declaration(record: Any, source: str = "<input>") -> Declaration:
    """
    Decode one ``{kind: function|struct, ...}`` record.

    Raises
    ------
    InputError
    """
    if not isinstance(record, Mapping):
        raise InputError(f"declaration record must be an object, got {type(record).__name__}")
    kind = record.get("kind")
    name = record.get("name")
    loc = _location(record, SourceLocation(source))
    if not isinstance(name, str) or not name:
        raise InputError("declaration record without a name", location=loc)
    members = _first(record, "fields_or_params", "params", "fields", default=[])
    if not isinstance(members, list):
        raise InputError(f"'{name}': parameters/fields must be a list", location=loc, declaration=name)
    decoded = tuple(_member(m, loc, name) for m in members)
    suppress = tuple(_strings(record.get("suppress", []), "suppress", loc, name))

    if kind == "struct":
        return StructDecl(name=name, fields=decoded, suppress=suppress, location=loc)
    if kind != "function":
        raise InputError(f"'{name}': unknown declaration kind {kind!r}", location=loc, declaration=name)

    returns, return_type = _returns(record, loc, name)
    body: Optional[Tuple[Stmt, ...]] = None
    if record.get("body") is not None:
        body = _block(record["body"], loc, name)
    return FunctionDecl(
        name=name,
        params=decoded,
        returns=returns,
        return_type=return_type,
        body=body,
        noreturn=bool(record.get("noreturn", False)),
        suppress=suppress,
        location=loc,
    )


def _first(record: Record, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in record:
            return record[key]
    return default


def _location(record: Record, parent: SourceLocation) -> SourceLocation:
    try:
        line = int(record.get("line", parent.line if "file" not in record else 0))
        column = int(record.get("column", 0))
    except (TypeError, ValueError) as exc:
        raise InputError(f"invalid line/column in record: {exc}", location=parent) from exc
    return SourceLocation(file=str(record.get("file", parent.file)), line=line, column=column)


def _annotations(value: Any, loc: SourceLocation, owner: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(m.group(0) for m in _TAG_RE.finditer(value))
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return tuple(v.strip() for v in value if v.strip())
    raise InputError(f"'{owner}': annotation must be a string or list of strings, got {value!r}",
                     location=loc, declaration=owner)


def _strings(value: Any, what: str, loc: SourceLocation, owner: str) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise InputError(f"'{owner}': {what} must be a list of strings", location=loc, declaration=owner)


def _member(record: Any, parent: SourceLocation, owner: str) -> MemberDecl:
    if isinstance(record, str):
        return MemberDecl(name=record, location=parent)
    if not isinstance(record, Mapping) or not isinstance(record.get("name"), str):
        raise InputError(f"'{owner}': malformed parameter/field {record!r}",
                         location=parent, declaration=owner)
    return MemberDecl(
        name=record["name"],
        annotations=_annotations(_first(record, "annotation", "annotations"), parent, owner),
        type=str(record.get("type") or ""),
        location=_location(record, parent),
    )


def _returns(record: Record, loc: SourceLocation, owner: str) -> Tuple[Tuple[str, ...], str]:
    value = record.get("returns")
    return_type = str(record.get("return_type") or "")
    if isinstance(value, Mapping):
        return_type = str(value.get("type") or return_type)
        value = _first(value, "annotation", "annotations")
    return _annotations(value, loc, owner), return_type


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — STATEMENTS AND EXPRESSIONS
# ═════════════════════════════════════════════════════════════════════════

def _block(value: Any, parent: SourceLocation, owner: str) -> Tuple[Stmt, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise InputError(f"'{owner}': statement list expected, got {value!r}",
                         location=parent, declaration=owner)
    return tuple(_statement(s, parent, owner) for s in value)


def _ref(value: Any, loc: SourceLocation, owner: str) -> VarRef:
    expr = _expr(value, loc, owner)
    if not isinstance(expr, VarRef):
        raise InputError(f"'{owner}': binding reference expected, got {value!r}",
                         location=loc, declaration=owner)
    return expr


def _expr(value: Any, loc: SourceLocation, owner: str) -> Expr:
    if value is None:
        return NullExpr()
    if isinstance(value, bool):
        return ConstExpr(str(value).lower())
    if isinstance(value, (int, float)):
        return NullExpr() if value == 0 else ConstExpr(str(value))
    if isinstance(value, str):
        text = value.strip()
        if text in _NULL_SPELLINGS:
            return NullExpr()
        m = _REF_RE.match(text)
        if m:
            return VarRef(name=m.group(2), field=m.group(3), address_of=bool(m.group(1)))
        return ConstExpr(text)
    if isinstance(value, Mapping):
        if "var" in value:
            base = _ref(value["var"], loc, owner)
            return VarRef(name=base.name, field=value.get("field", base.field),
                          address_of=bool(value.get("address_of", base.address_of)))
        if "addr" in value:
            base = _ref(value["addr"], loc, owner)
            return VarRef(name=base.name, field=base.field, address_of=True)
        if "alloc" in value:
            return AllocExpr(allocator=str(value["alloc"] or "malloc"))
        if "call" in value:
            args = value.get("args", [])
            if not isinstance(args, list):
                raise InputError(f"'{owner}': call arguments must be a list", location=loc,
                                 declaration=owner)
            call_loc = _location(value, loc)
            return CallExpr(
                callee=str(value["call"]),
                args=tuple(_expr(a, call_loc, owner) for a in args),
                may_fail=bool(value.get("may_fail", False)),
                location=call_loc,
            )
        if "const" in value:
            return ConstExpr(str(value["const"]))
        if "null" in value:
            return NullExpr()
    raise InputError(f"'{owner}': cannot decode expression {value!r}", location=loc,
                     declaration=owner)


def _statement(record: Any, parent: SourceLocation, owner: str) -> Stmt:
    if not isinstance(record, Mapping) or not isinstance(record.get("op"), str):
        raise InputError(f"'{owner}': statement must be an object with an 'op', got {record!r}",
                         location=parent, declaration=owner)
    op = _OP_ALIASES.get(record["op"], record["op"])
    handler = _STATEMENT_HANDLERS.get(op)
    if handler is None:
        raise InputError(f"'{owner}': unknown statement op {record['op']!r}",
                         location=parent, declaration=owner)
    loc = _location(record, parent)
    try:
        return handler(record, loc, owner)
    except KeyError as exc:
        raise InputError(f"'{owner}': '{op}' statement is missing {exc}",
                         location=loc, declaration=owner) from exc


def _s_decl(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    init = _first(r, "init", "value", default=_MISSING)
    return Decl(
        name=str(r["name"]),
        annotations=_annotations(_first(r, "annotation", "annotations"), loc, owner),
        type=str(r.get("type") or ""),
        init=None if init is _MISSING else _expr(init, loc, owner),
        cleanup=r.get("cleanup") or None,
        location=loc,
    )


def _s_assign(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return Assign(target=_ref(r["target"], loc, owner), value=_expr(r.get("value"), loc, owner),
                  location=loc)


def _s_release(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return Release(target=_ref(r["target"], loc, owner), function=str(r.get("function", "free")),
                   location=loc)


def _s_call(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    callee = _first(r, "callee", "function", "call")
    if not isinstance(callee, str):
        raise KeyError("callee")
    call = _expr({"call": callee, "args": r.get("args", []), "may_fail": r.get("may_fail", False),
                  "file": loc.file, "line": loc.line, "column": loc.column}, loc, owner)
    return CallStmt(call=call, location=loc)


def _s_use(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return Use(target=_ref(r["target"], loc, owner), location=loc)


def _s_incref(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return IncRef(target=_ref(r["target"], loc, owner), function=str(r.get("function", "incref")),
                  location=loc)


def _s_decref(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return DecRef(target=_ref(r["target"], loc, owner), function=str(r.get("function", "decref")),
                  location=loc)


def _s_write(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    value = r.get("value", _MISSING)
    return Write(target=_ref(r["target"], loc, owner),
                 value=None if value is _MISSING else _expr(value, loc, owner), location=loc)


def _s_return(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return Return(value=_expr(r["value"], loc, owner) if "value" in r else None, location=loc)


def _s_fail(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return Fail(value=_expr(r["value"], loc, owner) if "value" in r else None, location=loc)


def _s_abort(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return Abort(function=str(r.get("function", "abort")), location=loc)


def _s_if(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return If(
        then=_block(r.get("then", []), loc, owner),
        orelse=_block(r.get("else", []), loc, owner),
        condition=str(_first(r, "cond", "condition", default="") or ""),
        location=loc,
    )


def _s_loop(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return Loop(body=_block(r.get("body", []), loc, owner), label=str(r.get("label") or ""),
                infinite=bool(r.get("infinite", False)), location=loc)


def _s_block(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return Block(body=_block(r.get("body", []), loc, owner), location=loc)


def _s_break(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return Break(label=str(r.get("label") or ""), location=loc)


def _s_continue(r: Record, loc: SourceLocation, owner: str) -> Stmt:
    return Continue(label=str(r.get("label") or ""), location=loc)


_MISSING = object()

_STATEMENT_HANDLERS: Dict[str, Callable[[Record, SourceLocation, str], Stmt]] = {
    "decl": _s_decl,
    "assign": _s_assign,
    "release": _s_release,
    "call": _s_call,
    "use": _s_use,
    "incref": _s_incref,
    "decref": _s_decref,
    "write": _s_write,
    "return": _s_return,
    "fail": _s_fail,
    "abort": _s_abort,
    "if": _s_if,
    "loop": _s_loop,
    "block": _s_block,
    "break": _s_break,
    "continue": _s_continue,
}

_OP_ALIASES: Dict[str, str] = {
    "store": "assign",
    "free": "release",
    "while": "loop",
    "for": "loop",
    "raise": "fail",
    "throw": "fail",
    "exit": "abort",
}


# ═════════════════════════════════════════════════════════════════════════
#  PART 4 — S-EXPRESSION SURFACE
# ═════════════════════════════════════════════════════════════════════════

Sexp = Any  # Union[list, Symbol, str, int, float]


def _sym_name(s: Sexp) -> str:
    """Extract the string name from a ``sexpdata.Symbol``, or raise."""
    if isinstance(s, Symbol):
        return str(s)
    raise InputError(f"expected symbol, got {type(s).__name__}: {s!r}")


def _head(s: Sexp) -> str:
    if not isinstance(s, list) or not s:
        raise InputError(f"expected a (form ...), got {s!r}")
    return _sym_name(s[0])


def _is_form(s: Sexp, *heads: str) -> bool:
    return isinstance(s, list) and bool(s) and isinstance(s[0], Symbol) and str(s[0]) in heads


def _is_keyword(s: Sexp, name: str) -> bool:
    return isinstance(s, Symbol) and str(s) == f":{name}"


def _split_meta(items: List[Sexp], record: Dict[str, Any]) -> List[Sexp]:
    """Move ``(line N)`` / ``(column N)`` / ``(file "x")`` forms into *record*."""
    rest: List[Sexp] = []
    for item in items:
        if _is_form(item, "line", "column", "file") and len(item) == 2:
            record[_head(item)] = item[1]
        else:
            rest.append(item)
    return rest


def _sexp_annotation(s: Sexp) -> str:
    if isinstance(s, Symbol):
        return str(s)
    if isinstance(s, list) and len(s) == 2:
        return f"{_sym_name(s[0])}({_sym_name(s[1])})"
    raise InputError(f"malformed annotation {s!r}")


def _sexp_member(form: Sexp) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    items = _split_meta(form[1:], record)
    if not items:
        raise InputError(f"({_head(form)}) without a name")
    record["name"] = _sym_name(items[0])
    annotations: List[str] = []
    for item in items[1:]:
        if isinstance(item, str) and not isinstance(item, Symbol):
            record["type"] = item
        else:
            annotations.append(_sexp_annotation(item))
    record["annotation"] = annotations
    return record


def _sexp_declaration(form: Sexp) -> Dict[str, Any]:
    head = _head(form)
    if head not in ("struct", "function"):
        raise InputError(f"unknown top-level form ({head} ...)")
    if len(form) < 2:
        raise InputError(f"({head}) without a name")
    record: Dict[str, Any] = {"kind": head, "name": _sym_name(form[1])}
    items = _split_meta(form[2:], record)
    members: List[Dict[str, Any]] = []
    for item in items:
        if _is_keyword(item, "noreturn"):
            record["noreturn"] = True
        elif _is_form(item, "field", "param"):
            members.append(_sexp_member(item))
        elif _is_form(item, "returns"):
            returns = _sexp_member([item[0], Symbol("return")] + list(item[1:]))
            record["returns"] = returns["annotation"]
            record["return_type"] = returns.get("type", "")
        elif _is_form(item, "body"):
            record["body"] = [_sexp_statement(s) for s in item[1:]]
        elif _is_form(item, "suppress"):
            record["suppress"] = [_sym_name(s) if isinstance(s, Symbol) else str(s) for s in item[1:]]
        else:
            raise InputError(f"'{record['name']}': unexpected form {item!r}")
    record["fields_or_params"] = members
    return record


def _sexp_expr(s: Sexp) -> Any:
    if isinstance(s, Symbol):
        return str(s)
    if isinstance(s, str):
        return {"const": s}
    if isinstance(s, (int, float)):
        return s
    head = _head(s)
    if head == "alloc":
        return {"alloc": _sym_name(s[1]) if len(s) > 1 else "malloc"}
    if head == "call":
        return _sexp_call(s)
    if head == "addr":
        return {"addr": _sym_name(s[1])}
    if head == "null":
        return None
    if head == "const":
        return {"const": str(s[1])}
    raise InputError(f"cannot decode expression {s!r}")


def _sexp_call(s: Sexp) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    items = _split_meta(s[1:], record)
    if not items:
        raise InputError("(call) without a callee")
    record["call"] = _sym_name(items[0])
    args: List[Any] = []
    for item in items[1:]:
        if _is_keyword(item, "may_fail"):
            record["may_fail"] = True
        else:
            args.append(_sexp_expr(item))
    record["args"] = args
    return record


def _sexp_statement(s: Sexp) -> Dict[str, Any]:
    try:
        return _sexp_statement_form(s)
    except IndexError as exc:
        raise InputError(f"incomplete statement {sexpdata.dumps(s)}") from exc


def _sexp_statement_form(s: Sexp) -> Dict[str, Any]:
    op = _head(s)
    record: Dict[str, Any] = {"op": op}
    items = _split_meta(s[1:], record)
    if op == "decl":
        if not items:
            raise InputError("(decl) without a name")
        record["name"] = _sym_name(items[0])
        annotations: List[str] = []
        for item in items[1:]:
            if _is_form(item, "init"):
                record["init"] = _sexp_expr(item[1])
            elif _is_form(item, "cleanup"):
                record["cleanup"] = _sym_name(item[1])
            elif isinstance(item, str) and not isinstance(item, Symbol):
                record["type"] = item
            else:
                annotations.append(_sexp_annotation(item))
        record["annotation"] = annotations
    elif op in ("assign", "store"):
        record["target"], record["value"] = _sexp_expr(items[0]), _sexp_expr(items[1])
    elif op in ("release", "free", "incref", "decref"):
        record["target"] = _sexp_expr(items[0])
        if len(items) > 1:
            record["function"] = _sym_name(items[1])
    elif op == "call":
        call = _sexp_call(s)
        record.update({"callee": call["call"], "args": call["args"],
                       "may_fail": call.get("may_fail", False)})
    elif op == "use":
        record["target"] = _sexp_expr(items[0])
    elif op == "write":
        record["target"] = _sexp_expr(items[0])
        if len(items) > 1:
            record["value"] = _sexp_expr(items[1])
    elif op in ("return", "fail", "raise", "throw"):
        if items:
            record["value"] = _sexp_expr(items[0])
    elif op in ("abort", "exit"):
        if items:
            record["function"] = _sym_name(items[0])
    elif op == "if":
        for item in items:
            if _is_form(item, "then"):
                record["then"] = [_sexp_statement(x) for x in item[1:]]
            elif _is_form(item, "else"):
                record["else"] = [_sexp_statement(x) for x in item[1:]]
            else:
                record["cond"] = _sym_name(item) if isinstance(item, Symbol) else str(item)
    elif op in ("loop", "while", "for"):
        body: List[Dict[str, Any]] = []
        for item in items:
            if _is_keyword(item, "infinite"):
                record["infinite"] = True
            elif _is_form(item, "label"):
                record["label"] = _sym_name(item[1])
            else:
                body.append(_sexp_statement(item))
        record["body"] = body
    elif op == "block":
        record["body"] = [_sexp_statement(x) for x in items]
    elif op in ("break", "continue"):
        if items:
            record["label"] = _sym_name(items[0])
    else:
        raise InputError(f"unknown statement ({op} ...)")
    return record


__all__ = [
    "load_path",
    "load_paths",
    "load_json_text",
    "load_sexp_text",
    "decode_records",
    "decode_declaration",
]
