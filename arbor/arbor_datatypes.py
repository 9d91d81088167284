"""
Defines the core data types for the arbor runtime.

This module provides the operation vocabulary, the immutable Code node the
parser emits, source locations, key bookkeeping records, the exception
classes shared by every layer, and the runtime configuration object.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


# =================================================================
# Exceptions
# =================================================================

class TraverseError(LookupError):
    """Raised when a traversal path runs into an absent value."""
    def __init__(self, message: str, key: Any = None, keys: tuple = ()):
        super().__init__(message)
        self.key = key
        self.keys = tuple(keys)


class ArborSyntaxError(SyntaxError):
    def __init__(self, message: str, location: Optional['Location'] = None):
        super().__init__(message)
        self.location = location

    def __str__(self):
        base = self.msg if self.msg is not None else ""
        if self.location is not None:
            return f"{base} (line {self.location.line}, col {self.location.col})"
        return base


class ReferenceNotFound(NameError):
    def __init__(self, name: str, kind: str = "scope"):
        super().__init__(f"{name} is not defined")
        self.name = name
        self.kind = kind


class CastError(TypeError):
    def __init__(self, value: Any, message: Optional[str] = None):
        super().__init__(message or f"Can't treat a {type(value).__name__} as a tree")
        self.value = value


class KeyDiscoveryError(RuntimeError):
    """Raised when virtual key discovery fails to settle."""
    pass


# =================================================================
# Operations and Code
# =================================================================

class Op(str, Enum):
    # Structural operations
    LITERAL = "literal"
    SCOPE = "scope"
    INHERITED = "inherited"
    BUILTIN = "builtin"
    UNDETERMINED = "undetermined"
    LAMBDA = "lambda"
    CALL = "call"
    TRAVERSE = "traverse"
    UNPACK = "unpack"
    TEMPLATE = "template"
    ARRAY = "array"
    OBJECT = "object"
    GETTER = "getter"
    MERGE = "merge"
    SPREAD = "spread"
    CONCAT = "concat"
    PATTERN = "pattern"

    # Binary operators
    ADDITION = "addition"
    SUBTRACTION = "subtraction"
    MULTIPLICATION = "multiplication"
    DIVISION = "division"
    REMAINDER = "remainder"
    EXPONENTIATION = "exponentiation"
    BITWISE_AND = "bitwiseAnd"
    BITWISE_OR = "bitwiseOr"
    BITWISE_XOR = "bitwiseXor"
    SHIFT_LEFT = "shiftLeft"
    SHIFT_RIGHT_SIGNED = "shiftRightSigned"
    SHIFT_RIGHT_UNSIGNED = "shiftRightUnsigned"
    EQUAL = "equal"
    STRICT_EQUAL = "strictEqual"
    NOT_EQUAL = "notEqual"
    NOT_STRICT_EQUAL = "notStrictEqual"
    LESS_THAN = "lessThan"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"

    # Unary operators
    LOGICAL_NOT = "logicalNot"
    UNARY_PLUS = "unaryPlus"
    UNARY_MINUS = "unaryMinus"
    BITWISE_NOT = "bitwiseNot"

    # Short-circuit operators; operands arrive as deferred lambdas
    LOGICAL_AND = "logicalAnd"
    LOGICAL_OR = "logicalOr"
    NULLISH_COALESCING = "nullishCoalescing"
    CONDITIONAL = "conditional"

    def __str__(self):
        return self.value

    def __repr__(self):
        return f"Op.{self.name}"


@dataclass(frozen=True)
class Location:
    """A span of source text, [start, end) character offsets."""
    source: str
    start: int
    end: int

    @property
    def line(self) -> int:
        return self.source.count("\n", 0, self.start) + 1

    @property
    def col(self) -> int:
        return self.start - (self.source.rfind("\n", 0, self.start) + 1) + 1

    @property
    def text(self) -> str:
        return self.source[self.start:self.end]

    def span(self, other: Optional['Location']) -> 'Location':
        if other is None or other.source is not self.source:
            return self
        return Location(self.source, min(self.start, other.start), max(self.end, other.end))

    def __repr__(self):
        return f"Location(line={self.line}, col={self.col}, text={self.text!r})"


class Code(tuple):
    """
    An immutable node of the compiled expression tree.

    Element 0 is an `Op`; the remaining elements are operands. The node also
    carries a `location` pointing back into the source it was parsed from.
    """
    location: Optional[Location]

    def __new__(cls, items, location: Optional[Location] = None):
        self = super().__new__(cls, items)
        self.location = location
        return self

    @property
    def op(self) -> Op:
        return self[0]

    @property
    def args(self) -> tuple:
        return tuple(self[1:])

    def __repr__(self):
        return f"Code({tuple.__repr__(self)})"


def is_code(obj: Any) -> bool:
    return isinstance(obj, Code)


def code(op: Op, *args, location: Optional[Location] = None) -> Code:
    return Code((op, *args), location)


# =================================================================
# Key bookkeeping
# =================================================================

@dataclass(frozen=True)
class KeyEntry:
    """A key known to a keys tree, flagged as virtual and/or hidden."""
    key: str
    virtual: bool = False
    hidden: bool = False


# =================================================================
# Configuration
# =================================================================

DEFAULT_IGNORE_KEYS = frozenset({".DS_Store", ".git", "__pycache__"})


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() not in ("", "0", "false", "no")


@dataclass(frozen=True)
class RuntimeConfig:
    """
    Immutable configuration passed explicitly into the evaluator.

    - builtins: the namespace consulted by builtin references.
    - ignore_keys: keys dropped during key discovery.
    - max_key_passes: upper bound on virtual key fixed-point passes.
    """
    builtins: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    ignore_keys: frozenset = DEFAULT_IGNORE_KEYS
    debug: bool = False
    max_key_passes: int = 100
    http_timeout: float = 5.0

    def __post_init__(self):
        if not isinstance(self.builtins, MappingProxyType):
            object.__setattr__(self, "builtins", MappingProxyType(dict(self.builtins)))
        object.__setattr__(self, "ignore_keys", frozenset(self.ignore_keys))

    def with_builtins(self, builtins: Mapping[str, Any]) -> 'RuntimeConfig':
        return RuntimeConfig(
            builtins=builtins,
            ignore_keys=self.ignore_keys,
            debug=self.debug,
            max_key_passes=self.max_key_passes,
            http_timeout=self.http_timeout,
        )

    @classmethod
    def from_env(cls, builtins: Optional[Mapping[str, Any]] = None) -> 'RuntimeConfig':
        ignore = DEFAULT_IGNORE_KEYS
        raw_ignore = os.environ.get("ARBOR_IGNORE_KEYS")
        if raw_ignore:
            ignore = frozenset(k.strip() for k in raw_ignore.split(",") if k.strip())
        try:
            passes = int(os.environ.get("ARBOR_MAX_KEY_PASSES", "100"))
        except ValueError:
            passes = 100
        try:
            timeout = float(os.environ.get("ARBOR_HTTP_TIMEOUT", "5.0"))
        except ValueError:
            timeout = 5.0
        return cls(
            builtins=builtins or {},
            ignore_keys=ignore,
            debug=_env_flag("ARBOR_DEBUG"),
            max_key_passes=max(1, passes),
            http_timeout=timeout,
        )
