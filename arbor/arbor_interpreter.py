import inspect
import math
import numbers
import sys
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Sequence

from arbor.arbor_datatypes import (
    Code,
    Op,
    ReferenceNotFound,
    RuntimeConfig,
    is_code,
)
from arbor.arbor_formulas import Pattern
from arbor.arbor_parser import parse_expression
from arbor.arbor_scope import BindingsTree, Scope, inherited_lookup, lookup
from arbor.arbor_tree import (
    ChangeSignal,
    invoke,
    is_packed,
    is_tree,
    is_treelike,
    trailing_slash,
)
from arbor.arbor_treeops import MergeTree, map_reduce, traverse_or_throw, values as tree_values


# =================================================================
# JavaScript-flavoured value semantics
# =================================================================

def is_number(value) -> bool:
    return isinstance(value, numbers.Number) and not isinstance(value, bool)


def js_string(value) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer() and abs(value) < 2 ** 53:
            return str(int(value))
        return repr(value)
    if isinstance(value, (list, tuple)):
        return ",".join("" if v is None else js_string(v) for v in value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def to_number(value):
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if is_number(value):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def normalize_number(value):
    """Integral floats collapse to ints so 4 / 2 is 2, as it prints."""
    if isinstance(value, float) and value.is_integer() and abs(value) < 2 ** 53:
        return int(value)
    return value


def to_int32(value) -> int:
    number = to_number(value)
    if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
        return 0
    result = int(number) & 0xFFFFFFFF
    return result - 0x100000000 if result & 0x80000000 else result


def to_uint32(value) -> int:
    return to_int32(value) & 0xFFFFFFFF


def is_truthy(value) -> bool:
    if value is None or value is False:
        return False
    if is_number(value):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    if isinstance(value, str):
        return value != ""
    return True


def _category(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def strict_equal(a, b) -> bool:
    if _category(a) != _category(b):
        return False
    if _category(a) == "object":
        return a is b or a == b
    return a == b


def loose_equal(a, b) -> bool:
    if a is None or b is None:
        return a is None and b is None
    ca, cb = _category(a), _category(b)
    if ca == cb:
        return strict_equal(a, b)
    if "object" in (ca, cb):
        return False
    return to_number(a) == to_number(b)


def _compare(a, b, op) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return op(a, b)
    x, y = to_number(a), to_number(b)
    if (isinstance(x, float) and math.isnan(x)) or (isinstance(y, float) and math.isnan(y)):
        return False
    return op(x, y)


def _add(a, b):
    if isinstance(a, str) or isinstance(b, str):
        return js_string(a) + js_string(b)
    if isinstance(a, list) and isinstance(b, list):
        return a + b
    if (is_number(a) or isinstance(a, bool) or a is None) and (is_number(b) or isinstance(b, bool) or b is None):
        return normalize_number(to_number(a) + to_number(b))
    return js_string(a) + js_string(b)


def _divide(a, b):
    x, y = to_number(a), to_number(b)
    if y == 0:
        if x == 0 or (isinstance(x, float) and math.isnan(x)):
            return math.nan
        return math.copysign(math.inf, x) * (math.copysign(1, y) if isinstance(y, float) else 1)
    return normalize_number(x / y)


def _remainder(a, b):
    x, y = to_number(a), to_number(b)
    if y == 0:
        return math.nan
    return normalize_number(math.fmod(x, y))


BINARY_FUNCTIONS = {
    Op.ADDITION: _add,
    Op.SUBTRACTION: lambda a, b: normalize_number(to_number(a) - to_number(b)),
    Op.MULTIPLICATION: lambda a, b: normalize_number(to_number(a) * to_number(b)),
    Op.DIVISION: _divide,
    Op.REMAINDER: _remainder,
    Op.EXPONENTIATION: lambda a, b: normalize_number(to_number(a) ** to_number(b)),
    Op.BITWISE_AND: lambda a, b: to_int32(to_int32(a) & to_int32(b)),
    Op.BITWISE_OR: lambda a, b: to_int32(to_int32(a) | to_int32(b)),
    Op.BITWISE_XOR: lambda a, b: to_int32(to_int32(a) ^ to_int32(b)),
    Op.SHIFT_LEFT: lambda a, b: to_int32(to_int32(a) << (to_uint32(b) & 31)),
    Op.SHIFT_RIGHT_SIGNED: lambda a, b: to_int32(a) >> (to_uint32(b) & 31),
    Op.SHIFT_RIGHT_UNSIGNED: lambda a, b: to_uint32(a) >> (to_uint32(b) & 31),
    Op.EQUAL: loose_equal,
    Op.STRICT_EQUAL: strict_equal,
    Op.NOT_EQUAL: lambda a, b: not loose_equal(a, b),
    Op.NOT_STRICT_EQUAL: lambda a, b: not strict_equal(a, b),
    Op.LESS_THAN: lambda a, b: _compare(a, b, lambda x, y: x < y),
    Op.LESS_THAN_OR_EQUAL: lambda a, b: _compare(a, b, lambda x, y: x <= y),
    Op.GREATER_THAN: lambda a, b: _compare(a, b, lambda x, y: x > y),
    Op.GREATER_THAN_OR_EQUAL: lambda a, b: _compare(a, b, lambda x, y: x >= y),
}

UNARY_FUNCTIONS = {
    Op.LOGICAL_NOT: lambda a: not is_truthy(a),
    Op.UNARY_PLUS: to_number,
    Op.UNARY_MINUS: lambda a: normalize_number(-to_number(a)),
    Op.BITWISE_NOT: lambda a: ~to_int32(a),
}


# =================================================================
# Text projection
# =================================================================

def _has_own_text(value) -> bool:
    return type(value).__str__ is not object.__str__


def get_text(value) -> str:
    """The text a value contributes to a concatenation."""
    if not value and not isinstance(value, (bytes, bytearray)):
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if value is True:
        return "true"
    if is_number(value):
        return js_string(value)
    if isinstance(value, (list, tuple, Mapping)) or callable(value):
        return ""
    if _has_own_text(value):
        return str(value)
    return ""


async def concat_text(*args, scope=None) -> str:
    """Concatenate the text of values and trees of values, in key order."""

    async def text_of(value, key=None, tree=None):
        if callable(value) and not is_tree(value):
            value = await invoke(value, scope=scope)
        if is_tree(value) or isinstance(value, (list, tuple, Mapping)):
            return await map_reduce(value, text_of, lambda values, keys: "".join(values))
        return get_text(value)

    return await map_reduce(list(args), text_of, lambda values, keys: "".join(values))


# =================================================================
# Runtime values
# =================================================================

class ArborFunction:
    """A lambda closed over the scope it was defined in."""

    def __init__(self, params: Sequence[str], body, closure: Scope, evaluator: 'Evaluator'):
        self.params = tuple(params)
        self.body = body
        self.closure = closure
        self.evaluator = evaluator

    @property
    def arity(self) -> int:
        return len(self.params)

    async def __call__(self, *args):
        bindings = {
            name: (args[index] if index < len(args) else None)
            for index, name in enumerate(self.params)
        }
        scope = Scope(BindingsTree(bindings), self.closure) if self.params else self.closure
        return await self.evaluator.evaluate(self.body, scope)

    def __repr__(self):
        source = getattr(getattr(self.body, "location", None), "text", None)
        return f"<lambda ({', '.join(self.params)}) {source or ''}>"


class ObjectLiteralTree:
    """
    The tree produced by an object literal.

    Plain properties are evaluated once and memoized; getters are evaluated
    on every access. Both see the object itself first in scope.
    """

    def __init__(self, entries: Sequence, scope: Scope, evaluator: 'Evaluator'):
        self.entries: Dict[Any, Any] = {}
        for key, node in entries:
            self.entries[trailing_slash.remove(key)] = node
        self.evaluator = evaluator
        self.scope = Scope(self, scope)
        self.parent = None
        self._values: Dict[Any, Any] = {}
        self._removed: set = set()
        self._evaluating: set = set()
        self.changed = ChangeSignal()

    @staticmethod
    def _is_getter(node) -> bool:
        return is_code(node) and node[0] is Op.GETTER

    async def force(self):
        """Evaluate every plain property, in definition order."""
        for key, node in self.entries.items():
            if not self._is_getter(node):
                await self.get(key)
        return self

    async def keys(self) -> list:
        keys = [k for k in self.entries if k not in self._removed]
        keys.extend(k for k in self._values if k not in self.entries)
        return keys

    async def get(self, key):
        key = trailing_slash.remove(key)
        if key in self._removed:
            return None
        if key in self._values:
            return self._values[key]
        node = self.entries.get(key)
        if node is None:
            return None
        if self._is_getter(node):
            return await self.evaluator.evaluate(node[1], self.scope)
        if key in self._evaluating:
            raise RecursionError(f"Circular reference to property {key}")
        self._evaluating.add(key)
        try:
            value = await self.evaluator.evaluate(node, self.scope)
        finally:
            self._evaluating.discard(key)
        self._values[key] = value
        return value

    async def set(self, key, value):
        key = trailing_slash.remove(key)
        if value is None:
            self._values.pop(key, None)
            if key in self.entries:
                self._removed.add(key)
        else:
            self._removed.discard(key)
            self._values[key] = value
        self.changed.emit()
        return self

    def __repr__(self):
        return f"ObjectLiteralTree({list(self.entries)})"


# =================================================================
# Evaluator
# =================================================================

class Evaluator:
    """Evaluates compiled Code against a scope."""

    def __init__(self, config: Optional[RuntimeConfig] = None):
        self.config = config or RuntimeConfig.from_env()
        if self.config.builtins:
            self.builtins = self.config.builtins
        else:
            # Lazy import avoids a cycle: the standard library needs an evaluator
            from arbor.arbor_runtime import StdLib
            self.builtins = StdLib(self).builtins()
            self.config = self.config.with_builtins(self.builtins)
            self.builtins = self.config.builtins

    def _dbg(self, *parts):
        if self.config.debug:
            try:
                print("[DBG]", *parts, file=sys.stderr)
            except Exception:
                pass

    def compile(self, source: str) -> Code:
        return parse_expression(source)

    async def run(self, source: str, scope=None):
        return await self.evaluate(self.compile(source), self._as_scope(scope))

    async def call(self, fn, args: Sequence = (), scope=None):
        return await invoke(fn, *args, scope=self._as_scope(scope))

    def make_object_tree(self, entries: Sequence, scope=None) -> ObjectLiteralTree:
        return ObjectLiteralTree(entries, self._as_scope(scope), self)

    def _as_scope(self, scope) -> Scope:
        if isinstance(scope, Scope):
            return scope
        return Scope(scope) if scope is not None else Scope()

    async def evaluate(self, node: Any, scope) -> Any:
        """Evaluate a node. Errors carry the location of the innermost failing node."""
        if not is_code(node):
            return node
        scope = self._as_scope(scope)
        try:
            return await self._eval(node, scope)
        except Exception as error:
            if getattr(error, "arbor_location", None) is None and node.location is not None:
                try:
                    error.arbor_location = node.location
                    error.arbor_node = node
                except AttributeError:
                    pass
            raise

    async def _eval_args(self, nodes: Sequence, scope: Scope) -> List[Any]:
        args = []
        for node in nodes:
            if is_code(node) and node[0] is Op.SPREAD:
                value = await self.evaluate(node[1], scope)
                if value is None:
                    continue
                if isinstance(value, (list, tuple)):
                    args.extend(value)
                elif is_treelike(value):
                    args.extend(await tree_values(value))
                else:
                    args.append(value)
            else:
                args.append(await self.evaluate(node, scope))
        return args

    async def _force(self, node, scope: Scope):
        """Evaluate a deferred argument without building a function for it."""
        if is_code(node) and node[0] is Op.LAMBDA and not node[1]:
            return await self.evaluate(node[2], scope)
        return await self.evaluate(node, scope)

    async def _eval(self, node: Code, scope: Scope) -> Any:
        op = node[0]
        match op:
            case Op.LITERAL:
                return node[1]

            case Op.SCOPE | Op.UNDETERMINED:
                value = await lookup(scope, node[1])
                if value is None:
                    raise ReferenceNotFound(trailing_slash.remove(node[1]), "scope")
                return value

            case Op.INHERITED:
                value = await inherited_lookup(scope, node[1])
                if value is None:
                    raise ReferenceNotFound(trailing_slash.remove(node[1]), "inherited")
                return value

            case Op.BUILTIN:
                name = node[1]
                value = self.builtins.get(name)
                if value is None:
                    value = await lookup(scope, name)
                if value is None:
                    raise ReferenceNotFound(name, "builtin")
                return value

            case Op.LAMBDA:
                return ArborFunction(node[1], node[2], scope, self)

            case Op.CALL:
                fn = await self.evaluate(node[1], scope)
                args = await self._eval_args(node[2:], scope)
                self._dbg("call", node[1], args)
                if callable(fn) and not is_tree(fn):
                    return await invoke(fn, *args, scope=scope)
                if is_treelike(fn):
                    return await traverse_or_throw(fn, *args, scope=scope)
                name = getattr(getattr(node[1], "location", None), "text", None) or js_string(fn)
                raise TypeError(f"{name} is not a function or tree")

            case Op.TRAVERSE:
                target = await self.evaluate(node[1], scope)
                keys = [await self.evaluate(key, scope) for key in node[2:]]
                return await traverse_or_throw(target, *keys, scope=scope)

            case Op.UNPACK:
                value = await self.evaluate(node[1], scope)
                if is_packed(value):
                    value = value.unpack()
                    if inspect.isawaitable(value):
                        value = await value
                return value

            case Op.TEMPLATE:
                strings = node[1][1]
                parts = [strings[0]]
                for string, value_node in zip(strings[1:], node[2:]):
                    parts.append(get_text(await self.evaluate(value_node, scope)))
                    parts.append(string)
                return "".join(parts)

            case Op.CONCAT:
                args = await self._eval_args(node[1:], scope)
                return await concat_text(*args, scope=scope)

            case Op.ARRAY:
                return await self._eval_args(node[1:], scope)

            case Op.OBJECT:
                tree = ObjectLiteralTree(node[1:], scope, self)
                return await tree.force()

            case Op.GETTER | Op.SPREAD:
                return await self.evaluate(node[1], scope)

            case Op.MERGE:
                parts = [await self.evaluate(part, scope) for part in node[1:]]
                parts = [part for part in parts if part is not None]
                if any(isinstance(part, list) for part in parts):
                    merged = []
                    for part in parts:
                        if isinstance(part, (list, tuple)):
                            merged.extend(part)
                        elif is_treelike(part):
                            merged.extend(await tree_values(part))
                        else:
                            merged.append(part)
                    return merged
                return MergeTree(*parts)

            case Op.PATTERN:
                pattern = Pattern(node[1])
                bindings = {}
                for name in pattern.variables:
                    value = await lookup(scope, name)
                    if value is None:
                        raise ReferenceNotFound(name, "pattern")
                    bindings[name] = js_string(value)
                key = pattern.instantiate(bindings)
                value = await lookup(scope, key)
                if value is None:
                    raise ReferenceNotFound(key, "scope")
                return value

            case Op.LOGICAL_AND:
                left = await self._force(node[1], scope)
                return await self._force(node[2], scope) if is_truthy(left) else left

            case Op.LOGICAL_OR:
                left = await self._force(node[1], scope)
                return left if is_truthy(left) else await self._force(node[2], scope)

            case Op.NULLISH_COALESCING:
                left = await self._force(node[1], scope)
                return left if left is not None else await self._force(node[2], scope)

            case Op.CONDITIONAL:
                condition = await self.evaluate(node[1], scope)
                branch = node[2] if is_truthy(condition) else node[3]
                return await self._force(branch, scope)

            case _ if op in BINARY_FUNCTIONS:
                left = await self.evaluate(node[1], scope)
                right = await self.evaluate(node[2], scope)
                return BINARY_FUNCTIONS[op](left, right)

            case _ if op in UNARY_FUNCTIONS:
                return UNARY_FUNCTIONS[op](await self.evaluate(node[1], scope))

            case _:
                raise ValueError(f"Unknown operation: {op}")
