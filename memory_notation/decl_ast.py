"""
memory_notation/decl_ast.py
═══════════════════════════

Typed declaration records consumed by the verifier.

The upstream C front-end is an external collaborator; what reaches us is a
stream of declarations already annotated with memory-notation tags.  The
loader decodes those records into the frozen dataclasses below:

  Declarations   FunctionDecl, StructDecl (with MemberDecl params/fields)
  Statements     Decl, Assign, Release, CallStmt, Use, IncRef, DecRef,
                 Write, Return, Fail, Abort, If, Loop, Block, Break, Continue
  Expressions    VarRef, AllocExpr, CallExpr, NullExpr, ConstExpr

Annotations stay as raw strings here; :mod:`memory_notation.annotations`
turns them into typed facts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from memory_notation.diagnostics import SourceLocation
from memory_notation.errors import InputError


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — EXPRESSIONS
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class VarRef:
    """A named binding, optionally one of its fields (``ex->id``)."""
    name: str
    field: Optional[str] = None
    address_of: bool = False

    @property
    def dotted(self) -> str:
        return f"{self.name}.{self.field}" if self.field else self.name

    def __str__(self) -> str:
        prefix = "&" if self.address_of else ""
        return prefix + self.dotted


@dataclass(frozen=True)
class AllocExpr:
    """A fresh allocation (``malloc(...)`` and friends)."""
    allocator: str = "malloc"

    def __str__(self) -> str:
        return f"{self.allocator}(...)"


@dataclass(frozen=True)
class CallExpr:
    callee: str
    args: Tuple["Expr", ...] = ()
    may_fail: bool = False
    location: SourceLocation = field(default_factory=SourceLocation)

    def __str__(self) -> str:
        return f"{self.callee}({', '.join(str(a) for a in self.args)})"


@dataclass(frozen=True)
class NullExpr:
    def __str__(self) -> str:
        return "NULL"


@dataclass(frozen=True)
class ConstExpr:
    """A literal; string literals have static storage and are borrowed."""
    value: str = ""

    def __str__(self) -> str:
        return repr(self.value)


Expr = Union[VarRef, AllocExpr, CallExpr, NullExpr, ConstExpr]


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — STATEMENTS
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Decl:
    name: str
    annotations: Tuple[str, ...] = ()
    type: str = ""
    init: Optional[Expr] = None
    cleanup: Optional[str] = None
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class Assign:
    """``target = value``; a field target is a store into a structure."""
    target: VarRef
    value: Expr
    location: SourceLocation = field(default_factory=SourceLocation)

    @property
    def is_store(self) -> bool:
        return self.target.field is not None


@dataclass(frozen=True)
class Release:
    target: VarRef
    function: str = "free"
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class CallStmt:
    call: CallExpr
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class Use:
    target: VarRef
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class IncRef:
    target: VarRef
    function: str = "incref"
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class DecRef:
    target: VarRef
    function: str = "decref"
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class Write:
    """``*target = value`` through an output parameter."""
    target: VarRef
    value: Optional[Expr] = None
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class Return:
    value: Optional[Expr] = None
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class Fail:
    """Propagated failure (error return / exception-equivalent)."""
    value: Optional[Expr] = None
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class Abort:
    function: str = "abort"
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class If:
    then: Tuple["Stmt", ...] = ()
    orelse: Tuple["Stmt", ...] = ()
    condition: str = ""
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class Loop:
    body: Tuple["Stmt", ...] = ()
    label: str = ""
    infinite: bool = False
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class Block:
    body: Tuple["Stmt", ...] = ()
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class Break:
    label: str = ""
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class Continue:
    label: str = ""
    location: SourceLocation = field(default_factory=SourceLocation)


Stmt = Union[
    Decl, Assign, Release, CallStmt, Use, IncRef, DecRef, Write,
    Return, Fail, Abort, If, Loop, Block, Break, Continue,
]


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — DECLARATIONS
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MemberDecl:
    """A parameter or struct field."""
    name: str
    annotations: Tuple[str, ...] = ()
    type: str = ""
    location: SourceLocation = field(default_factory=SourceLocation)


@dataclass(frozen=True)
class FunctionDecl:
    name: str
    params: Tuple[MemberDecl, ...] = ()
    returns: Tuple[str, ...] = ()
    return_type: str = ""
    body: Optional[Tuple[Stmt, ...]] = None
    noreturn: bool = False
    suppress: Tuple[str, ...] = ()
    location: SourceLocation = field(default_factory=SourceLocation)

    @property
    def is_definition(self) -> bool:
        return self.body is not None


@dataclass(frozen=True)
class StructDecl:
    name: str
    fields: Tuple[MemberDecl, ...] = ()
    suppress: Tuple[str, ...] = ()
    location: SourceLocation = field(default_factory=SourceLocation)


Declaration = Union[FunctionDecl, StructDecl]


@dataclass
class TranslationUnit:
    """Everything decoded from one input source."""
    source: str = "<input>"
    declarations: List[Declaration] = field(default_factory=list)
    errors: List[InputError] = field(default_factory=list)

    @property
    def functions(self) -> List[FunctionDecl]:
        return [d for d in self.declarations if isinstance(d, FunctionDecl)]

    @property
    def structs(self) -> List[StructDecl]:
        return [d for d in self.declarations if isinstance(d, StructDecl)]

    def merge(self, other: "TranslationUnit") -> None:
        self.declarations.extend(other.declarations)
        self.errors.extend(other.errors)


# ═════════════════════════════════════════════════════════════════════════
#  PART 4 — TYPE HELPERS
# ═════════════════════════════════════════════════════════════════════════

_STRUCT_PTR_RE = re.compile(r"^\s*(?:const\s+)?(?:struct\s+)?([A-Za-z_]\w*)\s*\*\s*(?:const\s*)?$")


def is_pointer_type(ctype: str) -> bool:
    """Pointer-typed, or of unknown type (treated as a pointer)."""
    if not ctype:
        return True
    return "*" in ctype or "[" in ctype


def pointee_struct(ctype: str) -> Optional[str]:
    """``struct Example *`` → ``Example``; ``None`` for other types."""
    m = _STRUCT_PTR_RE.match(ctype or "")
    return m.group(1) if m else None


def walk_statements(stmts: Tuple[Stmt, ...]):
    """Yield every statement, depth first, including nested bodies."""
    for stmt in stmts:
        yield stmt
        if isinstance(stmt, If):
            yield from walk_statements(stmt.then)
            yield from walk_statements(stmt.orelse)
        elif isinstance(stmt, (Loop, Block)):
            yield from walk_statements(stmt.body)


def called_functions(stmts: Tuple[Stmt, ...]) -> List[Tuple[str, SourceLocation]]:
    """Every callee named in *stmts*, in source order."""
    result: List[Tuple[str, SourceLocation]] = []

    def visit_expr(expr: Optional[Expr], loc: SourceLocation) -> None:
        if isinstance(expr, CallExpr):
            result.append((expr.callee, expr.location if expr.location.line else loc))
            for arg in expr.args:
                visit_expr(arg, loc)

    for stmt in walk_statements(stmts):
        if isinstance(stmt, CallStmt):
            visit_expr(stmt.call, stmt.location)
        elif isinstance(stmt, Decl):
            visit_expr(stmt.init, stmt.location)
        elif isinstance(stmt, (Assign, Write, Return, Fail)):
            visit_expr(stmt.value, stmt.location)
        elif isinstance(stmt, (Release, IncRef, DecRef)):
            result.append((stmt.function, stmt.location))
        elif isinstance(stmt, Abort):
            result.append((stmt.function, stmt.location))
    return result


__all__ = [
    "VarRef", "AllocExpr", "CallExpr", "NullExpr", "ConstExpr", "Expr",
    "Decl", "Assign", "Release", "CallStmt", "Use", "IncRef", "DecRef",
    "Write", "Return", "Fail", "Abort", "If", "Loop", "Block", "Break",
    "Continue", "Stmt",
    "MemberDecl", "FunctionDecl", "StructDecl", "Declaration", "TranslationUnit",
    "is_pointer_type", "pointee_struct", "walk_statements", "called_functions",
]
