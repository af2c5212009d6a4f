"""
memory_notation/annotations.py
══════════════════════════════

Ownership fact model.

Turns the raw annotation strings attached to parameters, returns, struct
fields and locals into typed facts, and builds the read-only contract
tables the analyses consume.

Accepted spellings
──────────────────

  canonical          memory_* macro             short macro
  ─────────────────  ─────────────────────────  ────────────
  guarded            memory_guarded             m_g
  owner              memory_owner               m_o
  take_possession    memory_take_possession     m_t
  keep_alive[(x)]    memory_keep_alive[(x)]
  release_after_of(x) memory_release_after_of(x)
  owner_of(x)        memory_owner_of(x)         m_o_(x)
  ref_count          memory_ref_count           m_rc
  ptr_inout          memory_ptr_inout           m_io
  ptr_out            memory_ptr_out             m_out

CamelCase forms (``TakePossession``, ``OwnerOf(x)``, ``PtrInOut``) are
accepted as well.

Primary kind
────────────
An entity may carry several tags.  Its *primary* ownership kind drives
the state machine and is resolved by precedence::

    REF_COUNTED (when reconciled with TAKE_POSSESSION)
    TAKE_POSSESSION > OWNER > OWNER_OF > REF_COUNTED > KEEP_ALIVE > GUARDED

``PTR_OUT`` / ``PTR_IN_OUT`` and ``RELEASE_AFTER_OF`` are orthogonal
flags that never decide the primary kind.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from memory_notation.decl_ast import (
    Decl,
    FunctionDecl,
    StructDecl,
    TranslationUnit,
    is_pointer_type,
    pointee_struct,
    walk_statements,
)
from memory_notation.diagnostics import SourceLocation
from memory_notation.errors import (
    AnnotationError,
    ConflictingAnnotationError,
    UnknownAnnotationError,
)

if TYPE_CHECKING:
    from memory_notation.config import VerifierConfig

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — ANNOTATION KINDS
# ═════════════════════════════════════════════════════════════════════════

class AnnotationKind(enum.Enum):
    GUARDED = "guarded"
    OWNER = "owner"
    TAKE_POSSESSION = "take_possession"
    KEEP_ALIVE = "keep_alive"
    RELEASE_AFTER_OF = "release_after_of"
    OWNER_OF = "owner_of"
    REF_COUNTED = "ref_count"
    PTR_IN_OUT = "ptr_inout"
    PTR_OUT = "ptr_out"

    @property
    def requires_target(self) -> bool:
        return self in (AnnotationKind.RELEASE_AFTER_OF, AnnotationKind.OWNER_OF)

    @property
    def accepts_target(self) -> bool:
        return self.requires_target or self is AnnotationKind.KEEP_ALIVE

    @property
    def is_owning(self) -> bool:
        return self in OWNING_KINDS


OWNING_KINDS = frozenset({
    AnnotationKind.OWNER,
    AnnotationKind.TAKE_POSSESSION,
    AnnotationKind.OWNER_OF,
})

BORROWING_KINDS = frozenset({AnnotationKind.GUARDED, AnnotationKind.KEEP_ALIVE})

OUTPUT_KINDS = frozenset({AnnotationKind.PTR_OUT, AnnotationKind.PTR_IN_OUT})

_PRECEDENCE: Tuple[AnnotationKind, ...] = (
    AnnotationKind.TAKE_POSSESSION,
    AnnotationKind.OWNER,
    AnnotationKind.OWNER_OF,
    AnnotationKind.REF_COUNTED,
    AnnotationKind.KEEP_ALIVE,
    AnnotationKind.GUARDED,
)

CONFLICTING_PAIRS: Tuple[Tuple[AnnotationKind, AnnotationKind], ...] = (
    (AnnotationKind.GUARDED, AnnotationKind.OWNER),
    (AnnotationKind.GUARDED, AnnotationKind.TAKE_POSSESSION),
    (AnnotationKind.GUARDED, AnnotationKind.OWNER_OF),
    (AnnotationKind.GUARDED, AnnotationKind.REF_COUNTED),
    (AnnotationKind.KEEP_ALIVE, AnnotationKind.OWNER),
    (AnnotationKind.KEEP_ALIVE, AnnotationKind.TAKE_POSSESSION),
    (AnnotationKind.KEEP_ALIVE, AnnotationKind.OWNER_OF),
    (AnnotationKind.TAKE_POSSESSION, AnnotationKind.REF_COUNTED),
    (AnnotationKind.PTR_OUT, AnnotationKind.PTR_IN_OUT),
)

_SPELLINGS: Dict[str, AnnotationKind] = {
    "guarded": AnnotationKind.GUARDED,
    "m_g": AnnotationKind.GUARDED,
    "owner": AnnotationKind.OWNER,
    "m_o": AnnotationKind.OWNER,
    "take_possession": AnnotationKind.TAKE_POSSESSION,
    "m_t": AnnotationKind.TAKE_POSSESSION,
    "keep_alive": AnnotationKind.KEEP_ALIVE,
    "release_after_of": AnnotationKind.RELEASE_AFTER_OF,
    "owner_of": AnnotationKind.OWNER_OF,
    "m_o_": AnnotationKind.OWNER_OF,
    "ref_count": AnnotationKind.REF_COUNTED,
    "ref_counted": AnnotationKind.REF_COUNTED,
    "m_rc": AnnotationKind.REF_COUNTED,
    "ptr_inout": AnnotationKind.PTR_IN_OUT,
    "ptr_in_out": AnnotationKind.PTR_IN_OUT,
    "m_io": AnnotationKind.PTR_IN_OUT,
    "ptr_out": AnnotationKind.PTR_OUT,
    "m_out": AnnotationKind.PTR_OUT,
}

_ANNOTATION_RE = re.compile(
    r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*(?:\(\s*([A-Za-z_][A-Za-z0-9_]*)?\s*\))?\s*$"
)
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _normalise_spelling(name: str) -> str:
    snake = _CAMEL_RE.sub("_", name).lower()
    if snake.startswith("memory_"):
        snake = snake[len("memory_"):]
    return snake


def parse_kind_name(name: str) -> AnnotationKind:
    """Resolve a bare tag name (no target) to its kind."""
    kind = _SPELLINGS.get(_normalise_spelling(name.strip()))
    if kind is None:
        raise UnknownAnnotationError(f"unknown annotation {name!r}")
    return kind


@dataclass(frozen=True)
class Annotation:
    """A single parsed tag, e.g. ``owner_of(buf)``."""
    kind: AnnotationKind
    target: Optional[str] = None

    def __str__(self) -> str:
        if self.target:
            return f"{self.kind.value}({self.target})"
        return self.kind.value


def parse_annotation(text: str) -> Annotation:
    """
    Parse one annotation spelling.

    Raises
    ------
    UnknownAnnotationError
        Unrecognised spelling, or a relation tag without its target.
    """
    m = _ANNOTATION_RE.match(text or "")
    if not m:
        raise UnknownAnnotationError(f"malformed annotation {text!r}")
    kind = parse_kind_name(m.group(1))
    target = m.group(2)
    if kind.requires_target and not target:
        raise UnknownAnnotationError(f"annotation {kind.value!r} requires a target, e.g. {kind.value}(mem)")
    if target and not kind.accepts_target:
        raise UnknownAnnotationError(f"annotation {kind.value!r} does not take a target")
    return Annotation(kind=kind, target=target)


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — CONTRACTS
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class EntityContract:
    """
    Contract of one parameter, return value, field or local.

    ``kind`` is ``None`` for untracked entities (unannotated non-pointers).
    """
    name: str
    annotations: Tuple[Annotation, ...] = ()
    kind: Optional[AnnotationKind] = None
    type: str = ""
    location: SourceLocation = field(default_factory=SourceLocation)
    defaulted: bool = False

    def has(self, kind: AnnotationKind) -> bool:
        return any(a.kind is kind for a in self.annotations)

    def target_of(self, kind: AnnotationKind) -> Optional[str]:
        for a in self.annotations:
            if a.kind is kind:
                return a.target
        return None

    @property
    def tracked(self) -> bool:
        return self.kind is not None

    @property
    def is_owning(self) -> bool:
        return self.kind in OWNING_KINDS

    @property
    def is_borrowing(self) -> bool:
        return self.kind in BORROWING_KINDS

    @property
    def is_refcounted(self) -> bool:
        return self.kind is AnnotationKind.REF_COUNTED

    @property
    def is_consuming(self) -> bool:
        """Does a call site hand ownership over when binding this formal?"""
        return any(a.kind in OWNING_KINDS for a in self.annotations) or (
            self.defaulted and self.kind in OWNING_KINDS
        )

    @property
    def is_output(self) -> bool:
        return any(a.kind in OUTPUT_KINDS for a in self.annotations)

    @property
    def struct_name(self) -> Optional[str]:
        return pointee_struct(self.type)

    def describe(self) -> str:
        """``take_possession char*`` style rendering used in diagnostics."""
        if self.annotations:
            tags = " ".join(str(a) for a in self.annotations)
        elif self.kind is not None:
            tags = f"{self.kind.value} (default)"
        else:
            tags = "untracked"
        return f"{tags} {self.type}".strip()


@dataclass(frozen=True)
class Relation:
    """``subject`` is KEEP_ALIVE / RELEASE_AFTER_OF / OWNER_OF ``target``."""
    kind: AnnotationKind
    subject: str
    target: str

    def __str__(self) -> str:
        return f"{self.subject} {self.kind.value} {self.target}"


@dataclass(frozen=True)
class FunctionContract:
    name: str
    params: Tuple[EntityContract, ...] = ()
    returns: EntityContract = field(default_factory=lambda: EntityContract(name="return"))
    relations: Tuple[Relation, ...] = ()
    noreturn: bool = False
    is_definition: bool = False
    location: SourceLocation = field(default_factory=SourceLocation)

    def param(self, name: str) -> Optional[EntityContract]:
        for p in self.params:
            if p.name == name:
                return p
        return None

    def param_at(self, index: int) -> Optional[EntityContract]:
        if 0 <= index < len(self.params):
            return self.params[index]
        return None

    @property
    def returns_owned(self) -> bool:
        return self.returns.is_owning

    def constructed_struct(self) -> Optional[str]:
        """Struct name when this is a constructor-equivalent."""
        if self.returns_owned:
            return self.returns.struct_name
        return None

    def signature(self) -> Tuple[Tuple[str, Tuple[Annotation, ...]], ...]:
        return tuple((p.name, p.annotations) for p in self.params) + (
            ("return", self.returns.annotations),
        )


@dataclass(frozen=True)
class StructContract:
    name: str
    fields: Tuple[EntityContract, ...] = ()
    relations: Tuple[Relation, ...] = ()
    location: SourceLocation = field(default_factory=SourceLocation)

    def field(self, name: str) -> Optional[EntityContract]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def owning_fields(self) -> Tuple[EntityContract, ...]:
        return tuple(
            f for f in self.fields
            if f.kind in (AnnotationKind.OWNER, AnnotationKind.OWNER_OF, AnnotationKind.TAKE_POSSESSION)
        )


class ContractTable:
    """
    Read-only contract tables for one compilation unit.

    Build with :func:`extract_contracts`.
    """

    def __init__(
        self,
        functions: Mapping[str, FunctionContract],
        structs: Mapping[str, StructContract],
        locals_: Mapping[str, Mapping[Decl, EntityContract]],
    ) -> None:
        self.functions: Mapping[str, FunctionContract] = MappingProxyType(dict(functions))
        self.structs: Mapping[str, StructContract] = MappingProxyType(dict(structs))
        self._locals = MappingProxyType({k: MappingProxyType(dict(v)) for k, v in locals_.items()})

    def function(self, name: str) -> Optional[FunctionContract]:
        return self.functions.get(name)

    def struct(self, name: Optional[str]) -> Optional[StructContract]:
        if name is None:
            return None
        return self.structs.get(name)

    def local(self, function: str, decl: Decl) -> Optional[EntityContract]:
        """Contract of the local introduced by *decl* inside *function*."""
        return self._locals.get(function, {}).get(decl)

    def replace_function(
        self,
        contract: FunctionContract,
        locals_: Mapping[Decl, EntityContract],
    ) -> "ContractTable":
        """A copy of this table with *contract* and its locals swapped in."""
        functions = dict(self.functions)
        functions[contract.name] = contract
        all_locals = dict(self._locals)
        all_locals[contract.name] = locals_
        return ContractTable(functions, self.structs, all_locals)

    def __contains__(self, name: str) -> bool:
        return name in self.functions

    def __len__(self) -> int:
        return len(self.functions) + len(self.structs)

    def to_dict(self) -> Dict[str, object]:
        """JSON-friendly dump used by ``memnote contracts``."""
        def entity(e: EntityContract) -> Dict[str, object]:
            return {
                "name": e.name,
                "type": e.type,
                "kind": e.kind.value if e.kind else None,
                "annotations": [str(a) for a in e.annotations],
                "defaulted": e.defaulted,
            }

        return {
            "functions": {
                name: {
                    "params": [entity(p) for p in fc.params],
                    "returns": entity(fc.returns),
                    "relations": [str(r) for r in fc.relations],
                    "noreturn": fc.noreturn,
                    "definition": fc.is_definition,
                }
                for name, fc in sorted(self.functions.items())
            },
            "structs": {
                name: {
                    "fields": [entity(f) for f in sc.fields],
                    "relations": [str(r) for r in sc.relations],
                }
                for name, sc in sorted(self.structs.items())
            },
        }


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — EXTRACTION
# ═════════════════════════════════════════════════════════════════════════

def primary_kind(
    annotations: Iterable[Annotation],
    config: Optional["VerifierConfig"] = None,
) -> Optional[AnnotationKind]:
    """Resolve the primary ownership kind of an annotation set."""
    kinds = {a.kind for a in annotations}
    if (
        config is not None
        and AnnotationKind.TAKE_POSSESSION in kinds
        and AnnotationKind.REF_COUNTED in kinds
        and config.is_reconciled(AnnotationKind.TAKE_POSSESSION, AnnotationKind.REF_COUNTED)
    ):
        return AnnotationKind.REF_COUNTED
    for kind in _PRECEDENCE:
        if kind in kinds:
            return kind
    return None


def check_conflicts(
    annotations: Sequence[Annotation],
    config: Optional["VerifierConfig"] = None,
) -> Optional[Tuple[AnnotationKind, AnnotationKind]]:
    """Return the first conflicting pair, or ``None``."""
    kinds = {a.kind for a in annotations}
    for a, b in CONFLICTING_PAIRS:
        if a in kinds and b in kinds:
            if config is not None and config.is_reconciled(a, b):
                continue
            return (a, b)
    return None


def extract_entity(
    name: str,
    raw: Sequence[str],
    ctype: str,
    location: SourceLocation,
    config: "VerifierConfig",
    *,
    owner: str = "",
    default: Optional[AnnotationKind] = None,
) -> EntityContract:
    """
    Build the contract of one entity.

    ``default`` is applied to unannotated pointer-typed entities; pass
    ``None`` to leave them kind-less (locals infer their kind later).

    Raises
    ------
    ConflictingAnnotationError, UnknownAnnotationError
    """
    annotations: List[Annotation] = []
    for text in raw:
        try:
            ann = parse_annotation(text)
        except UnknownAnnotationError as exc:
            raise UnknownAnnotationError(
                f"{owner or name}: {exc.message}", location=location,
                declaration=owner, entity=name,
            ) from exc
        if ann not in annotations:
            annotations.append(ann)

    conflict = check_conflicts(annotations, config)
    if conflict is not None:
        a, b = conflict
        raise ConflictingAnnotationError(
            f"'{name}' in '{owner}' is annotated both {a.value} and {b.value}",
            location=location, declaration=owner, entity=name,
        )

    annotations.sort(key=str)
    kind = primary_kind(annotations, config)
    defaulted = False
    # only orthogonal flags (ptr_out, release_after_of) leave the kind open
    if kind is None and is_pointer_type(ctype):
        kind = default
        defaulted = kind is not None
    return EntityContract(
        name=name,
        annotations=tuple(annotations),
        kind=kind,
        type=ctype,
        location=location,
        defaulted=defaulted,
    )


def _relations(
    owner: str,
    entities: Sequence[EntityContract],
    known: Set[str],
) -> Tuple[Relation, ...]:
    result: List[Relation] = []
    for e in entities:
        for a in e.annotations:
            if not a.kind.accepts_target or not a.target:
                continue
            if a.target == e.name or a.target not in known:
                raise UnknownAnnotationError(
                    f"{a.kind.value}({a.target}) on '{e.name}' in '{owner}' "
                    f"does not name another entity",
                    location=e.location, declaration=owner, entity=e.name,
                )
            result.append(Relation(kind=a.kind, subject=e.name, target=a.target))
    return tuple(result)


def function_contract(decl: FunctionDecl, config: "VerifierConfig") -> FunctionContract:
    """
    Extract the contract of one function declaration.

    Raises
    ------
    AnnotationError
    """
    default = config.default_unannotated_kind
    params = tuple(
        extract_entity(p.name, p.annotations, p.type, p.location or decl.location,
                       config, owner=decl.name, default=default)
        for p in decl.params
    )
    seen: Set[str] = set()
    for p in params:
        if p.name in seen:
            raise ConflictingAnnotationError(
                f"duplicate parameter '{p.name}' in '{decl.name}'",
                location=p.location, declaration=decl.name, entity=p.name,
            )
        seen.add(p.name)

    rtype = decl.return_type.strip()
    if rtype == "void" or (not decl.returns and not rtype):
        returns = EntityContract(name="return", type=rtype or "void", location=decl.location)
    else:
        returns = extract_entity("return", decl.returns, rtype, decl.location,
                                 config, owner=decl.name, default=default)
    relations = _relations(decl.name, params, seen)
    for a in returns.annotations:
        if a.kind.accepts_target and a.target:
            if a.target not in seen:
                raise UnknownAnnotationError(
                    f"{a.kind.value}({a.target}) on the return of '{decl.name}' "
                    f"does not name a parameter",
                    location=decl.location, declaration=decl.name, entity="return",
                )
            relations += (Relation(kind=a.kind, subject="return", target=a.target),)
    return FunctionContract(
        name=decl.name,
        params=params,
        returns=returns,
        relations=relations,
        noreturn=decl.noreturn or config.is_noreturn(decl.name),
        is_definition=decl.is_definition,
        location=decl.location,
    )


def struct_contract(decl: StructDecl, config: "VerifierConfig") -> StructContract:
    """
    Extract the contract of one struct definition.

    Raises
    ------
    AnnotationError
    """
    fields = tuple(
        extract_entity(f.name, f.annotations, f.type, f.location or decl.location,
                       config, owner=decl.name, default=config.default_unannotated_kind)
        for f in decl.fields
    )
    names = [f.name for f in fields]
    if len(set(names)) != len(names):
        dup = next(n for n in names if names.count(n) > 1)
        raise ConflictingAnnotationError(
            f"duplicate field '{dup}' in struct '{decl.name}'",
            location=decl.location, declaration=decl.name, entity=dup,
        )
    relations = _relations(decl.name, fields, set(names))
    return StructContract(name=decl.name, fields=fields, relations=relations,
                          location=decl.location)


def local_contracts(
    decl: FunctionDecl,
    params: Sequence[EntityContract],
    config: "VerifierConfig",
) -> Dict[Decl, EntityContract]:
    """
    Contracts of the locals of *decl*, keyed by their ``Decl`` statement.

    Unannotated locals get ``kind=None`` and infer their kind from the
    first value bound to them.
    """
    result: Dict[Decl, EntityContract] = {}
    names: Set[str] = {p.name for p in params}
    decls = [s for s in walk_statements(decl.body or ()) if isinstance(s, Decl)]
    names.update(d.name for d in decls)
    for d in decls:
        loc = d.location if d.location.line else decl.location
        entity = extract_entity(d.name, d.annotations, d.type, loc, config,
                                owner=decl.name, default=None)
        for a in entity.annotations:
            if a.kind.accepts_target and a.target and (a.target == d.name or a.target not in names):
                raise UnknownAnnotationError(
                    f"{a.kind.value}({a.target}) on local '{d.name}' in '{decl.name}' "
                    f"does not name another binding",
                    location=loc, declaration=decl.name, entity=d.name,
                )
        result[d] = entity
    return result


def extract_contracts(
    unit: TranslationUnit,
    config: "VerifierConfig",
) -> Tuple[ContractTable, List[AnnotationError]]:
    """
    Build the contract table of a translation unit.

    Declarations whose annotations cannot be turned into a contract are
    skipped and their errors returned alongside the table.  A function
    declared several times (prototype plus definition) keeps the
    definition; prototypes whose contract disagrees with it are rejected.
    """
    errors: List[AnnotationError] = []
    functions: Dict[str, FunctionContract] = {}
    structs: Dict[str, StructContract] = {}
    locals_: Dict[str, Dict[Decl, EntityContract]] = {}
    rejected: Set[str] = set()

    for decl in unit.declarations:
        try:
            if isinstance(decl, StructDecl):
                sc = struct_contract(decl, config)
                if decl.name in structs:
                    raise ConflictingAnnotationError(
                        f"struct '{decl.name}' is defined twice",
                        location=decl.location, declaration=decl.name,
                    )
                structs[decl.name] = sc
                continue

            if decl.name in rejected:
                continue
            fc = function_contract(decl, config)
            if decl.is_definition:
                locals_[decl.name] = local_contracts(decl, fc.params, config)
            previous = functions.get(decl.name)
            if previous is not None:
                if previous.signature() != fc.signature():
                    raise ConflictingAnnotationError(
                        f"declarations of '{decl.name}' disagree on its ownership contract",
                        location=decl.location, declaration=decl.name,
                    )
                if previous.is_definition and fc.is_definition:
                    raise ConflictingAnnotationError(
                        f"function '{decl.name}' is defined twice",
                        location=decl.location, declaration=decl.name,
                    )
                if previous.is_definition:
                    continue
            functions[decl.name] = fc
        except AnnotationError as exc:
            logger.debug("skipping declaration %s: %s", decl.name, exc)
            if not exc.declaration:
                exc.declaration = decl.name
            if exc.location is None:
                exc.location = decl.location
            errors.append(exc)
            if isinstance(decl, FunctionDecl):
                rejected.add(decl.name)
                functions.pop(decl.name, None)
                locals_.pop(decl.name, None)

    logger.debug(
        "extracted %d function contract(s), %d struct contract(s), %d error(s)",
        len(functions), len(structs), len(errors),
    )
    return ContractTable(functions, structs, locals_), errors


__all__ = [
    "AnnotationKind",
    "Annotation",
    "OWNING_KINDS",
    "BORROWING_KINDS",
    "OUTPUT_KINDS",
    "CONFLICTING_PAIRS",
    "parse_kind_name",
    "parse_annotation",
    "primary_kind",
    "check_conflicts",
    "EntityContract",
    "Relation",
    "FunctionContract",
    "StructContract",
    "ContractTable",
    "extract_entity",
    "function_contract",
    "struct_contract",
    "local_contracts",
    "extract_contracts",
]
