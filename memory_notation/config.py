"""
memory_notation/config.py
═════════════════════════

Verifier configuration.

The configuration is a frozen :class:`VerifierConfig`, loaded from a JSON
object whose keys mirror the dataclass fields::

    {
      "default_unannotated_kind": "guarded",
      "loop_fixpoint_iteration_limit": 16,
      "recursion_iteration_limit": 8,
      "treat_warnings_as_errors": false,
      "release_functions": ["free"],
      "reconciled_pairs": [["take_possession", "ref_count"]],
      "suppress": ["legacy_*:LeakedOwnership"],
      "workers": 4
    }

Every key is optional.  Unknown keys and ill-typed values raise
:class:`~memory_notation.errors.ConfigError`.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Tuple, Union

from memory_notation.annotations import AnnotationKind, parse_kind_name
from memory_notation.errors import ConfigError, UnknownAnnotationError

logger = logging.getLogger(__name__)


DEFAULT_RELEASE_FUNCTIONS = frozenset({"free", "cfree", "g_free", "xfree"})
DEFAULT_ALLOCATION_FUNCTIONS = frozenset({
    "malloc", "calloc", "realloc", "reallocarray", "aligned_alloc",
    "strdup", "strndup", "g_malloc", "g_strdup", "xmalloc",
})
DEFAULT_INCREMENT_FUNCTIONS = frozenset({"incref", "retain"})
DEFAULT_DECREMENT_FUNCTIONS = frozenset({"decref", "unref"})
DEFAULT_NORETURN_FUNCTIONS = frozenset({
    "abort", "exit", "_exit", "_Exit", "quick_exit",
    "longjmp", "siglongjmp", "pthread_exit",
})

KindPair = FrozenSet[AnnotationKind]


@dataclass(frozen=True)
class VerifierConfig:
    """
    Project-wide verifier settings.

    Attributes
    ----------
    default_unannotated_kind      : Kind given to unannotated pointer params,
                                    fields and returns (GUARDED or OWNER)
    loop_fixpoint_iteration_limit : Loop-head iterations before a loop is
                                    reported as UnstableLoopOwnership
    recursion_iteration_limit     : Summary iterations per recursive SCC before
                                    UnresolvableRecursiveContract
    treat_warnings_as_errors      : Promote warning-severity diagnostics to errors
    release_functions             : Calls lowered to a release of argument 0
    allocation_functions          : Calls whose result is a fresh owned resource
    increment_functions           : Calls lowered to a refcount increment
    decrement_functions           : Calls lowered to a refcount decrement
    noreturn_functions            : Calls that end the path (NO_RETURN)
    reconciled_pairs              : Tag pairs exempted from conflict checks
    suppress                      : Suppression entries (``Rule`` / ``fn:Rule``)
    workers                       : Threads used per call-graph wave
    """
    default_unannotated_kind: AnnotationKind = AnnotationKind.GUARDED
    loop_fixpoint_iteration_limit: int = 16
    recursion_iteration_limit: int = 8
    treat_warnings_as_errors: bool = False
    release_functions: FrozenSet[str] = DEFAULT_RELEASE_FUNCTIONS
    allocation_functions: FrozenSet[str] = DEFAULT_ALLOCATION_FUNCTIONS
    increment_functions: FrozenSet[str] = DEFAULT_INCREMENT_FUNCTIONS
    decrement_functions: FrozenSet[str] = DEFAULT_DECREMENT_FUNCTIONS
    noreturn_functions: FrozenSet[str] = DEFAULT_NORETURN_FUNCTIONS
    reconciled_pairs: FrozenSet[KindPair] = field(default_factory=frozenset)
    suppress: Tuple[str, ...] = ()
    workers: int = 1

    def __post_init__(self) -> None:
        if self.default_unannotated_kind not in (AnnotationKind.GUARDED, AnnotationKind.OWNER):
            raise ConfigError(
                "default_unannotated_kind must be 'guarded' or 'owner', "
                f"got {self.default_unannotated_kind.value!r}"
            )
        for name in ("loop_fixpoint_iteration_limit", "recursion_iteration_limit", "workers"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")

    # ── queries ──────────────────────────────────────────────────────

    def is_reconciled(self, a: AnnotationKind, b: AnnotationKind) -> bool:
        return frozenset((a, b)) in self.reconciled_pairs

    def is_noreturn(self, name: str) -> bool:
        return name in self.noreturn_functions

    # ── construction ─────────────────────────────────────────────────

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "VerifierConfig":
        """Build a configuration from a decoded JSON object."""
        if not isinstance(data, Mapping):
            raise ConfigError(f"configuration must be an object, got {type(data).__name__}")
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown configuration key(s): {', '.join(unknown)}")
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            kwargs[key] = _coerce(key, value)
        return cls(**kwargs)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "VerifierConfig":
        p = Path(path)
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"cannot read configuration {p}: {exc}") from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{p}: invalid JSON: {exc}") from exc
        logger.debug("loaded configuration from %s", p)
        return cls.from_mapping(data)

    def with_overrides(self, **overrides: Any) -> "VerifierConfig":
        """Return a copy with the non-``None`` overrides applied."""
        changes = {k: _coerce(k, v) for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serialisable view, the inverse of :meth:`from_mapping`."""
        return {
            "default_unannotated_kind": self.default_unannotated_kind.value,
            "loop_fixpoint_iteration_limit": self.loop_fixpoint_iteration_limit,
            "recursion_iteration_limit": self.recursion_iteration_limit,
            "treat_warnings_as_errors": self.treat_warnings_as_errors,
            "release_functions": sorted(self.release_functions),
            "allocation_functions": sorted(self.allocation_functions),
            "increment_functions": sorted(self.increment_functions),
            "decrement_functions": sorted(self.decrement_functions),
            "noreturn_functions": sorted(self.noreturn_functions),
            "reconciled_pairs": sorted(
                sorted(k.value for k in pair) for pair in self.reconciled_pairs
            ),
            "suppress": list(self.suppress),
            "workers": self.workers,
        }


def _coerce(key: str, value: Any) -> Any:
    if key == "default_unannotated_kind":
        if isinstance(value, AnnotationKind):
            return value
        if not isinstance(value, str):
            raise ConfigError(f"{key} must be a string, got {value!r}")
        try:
            return parse_kind_name(value)
        except UnknownAnnotationError as exc:
            raise ConfigError(f"{key}: {exc.message}") from exc
    if key == "treat_warnings_as_errors":
        if not isinstance(value, bool):
            raise ConfigError(f"{key} must be a boolean, got {value!r}")
        return value
    if key in ("loop_fixpoint_iteration_limit", "recursion_iteration_limit", "workers"):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key} must be an integer, got {value!r}")
        return value
    if key.endswith("_functions"):
        return frozenset(_string_list(key, value))
    if key == "suppress":
        return tuple(_string_list(key, value))
    if key == "reconciled_pairs":
        return _coerce_pairs(value)
    raise ConfigError(f"unknown configuration key: {key}")


def _string_list(key: str, value: Any) -> Iterable[str]:
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ConfigError(f"{key} must be a list of strings, got {value!r}")
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must contain only strings, got {item!r}")
    return value


def _coerce_pairs(value: Any) -> FrozenSet[KindPair]:
    if isinstance(value, frozenset) and all(isinstance(p, frozenset) for p in value):
        return value
    pairs = set()
    for item in _string_list_of_lists(value):
        try:
            kinds = frozenset(parse_kind_name(name) for name in item)
        except UnknownAnnotationError as exc:
            raise ConfigError(f"reconciled_pairs: {exc.message}") from exc
        if len(kinds) != 2:
            raise ConfigError(f"reconciled_pairs entries must name two distinct kinds, got {item!r}")
        pairs.add(kinds)
    return frozenset(pairs)


def _string_list_of_lists(value: Any) -> Iterable[Tuple[str, ...]]:
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"reconciled_pairs must be a list of pairs, got {value!r}")
    for item in value:
        if not isinstance(item, (list, tuple)) or not all(isinstance(s, str) for s in item):
            raise ConfigError(f"reconciled_pairs entries must be lists of strings, got {item!r}")
        yield tuple(item)


DEFAULT_CONFIG = VerifierConfig()


__all__ = [
    "VerifierConfig",
    "DEFAULT_CONFIG",
    "DEFAULT_RELEASE_FUNCTIONS",
    "DEFAULT_ALLOCATION_FUNCTIONS",
    "DEFAULT_INCREMENT_FUNCTIONS",
    "DEFAULT_DECREMENT_FUNCTIONS",
    "DEFAULT_NORETURN_FUNCTIONS",
]
