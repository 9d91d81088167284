"""
Helpers the grammar uses to build Code nodes.

Identifiers that could name a builtin are parsed as `undetermined`
references; whether they become builtin or scope references is settled
once we know if they're called, traversed, or used as plain values.
"""

import re
from functools import reduce
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from arbor.arbor_datatypes import ArborSyntaxError, Code, Location, Op, is_code
from arbor.arbor_tree import trailing_slash


BUILTIN_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")
NAMESPACE_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9]*:$")

BINARY_OPERATORS = {
    "!=": Op.NOT_EQUAL,
    "!==": Op.NOT_STRICT_EQUAL,
    "%": Op.REMAINDER,
    "&": Op.BITWISE_AND,
    "*": Op.MULTIPLICATION,
    "**": Op.EXPONENTIATION,
    "+": Op.ADDITION,
    "-": Op.SUBTRACTION,
    "/": Op.DIVISION,
    "<": Op.LESS_THAN,
    "<<": Op.SHIFT_LEFT,
    "<=": Op.LESS_THAN_OR_EQUAL,
    "==": Op.EQUAL,
    "===": Op.STRICT_EQUAL,
    ">": Op.GREATER_THAN,
    ">=": Op.GREATER_THAN_OR_EQUAL,
    ">>": Op.SHIFT_RIGHT_SIGNED,
    ">>>": Op.SHIFT_RIGHT_UNSIGNED,
    "^": Op.BITWISE_XOR,
    "|": Op.BITWISE_OR,
}

SHORT_CIRCUIT_OPERATORS = {
    "&&": Op.LOGICAL_AND,
    "||": Op.LOGICAL_OR,
    "??": Op.NULLISH_COALESCING,
}

UNARY_OPERATORS = {
    "!": Op.LOGICAL_NOT,
    "+": Op.UNARY_PLUS,
    "-": Op.UNARY_MINUS,
    "~": Op.BITWISE_NOT,
}


def annotate(node, location: Optional[Location]) -> Any:
    """Attach a source location to a node, rebuilding it as Code if needed."""
    if isinstance(node, Code):
        return Code(node, location if location is not None else node.location)
    if isinstance(node, (list, tuple)) and node and isinstance(node[0], Op):
        return Code(node, location)
    return node


def span(*nodes) -> Optional[Location]:
    location = None
    for node in nodes:
        node_location = getattr(node, "location", None)
        if node_location is None:
            continue
        location = node_location if location is None else location.span(node_location)
    return location


def make_literal(value, location: Optional[Location] = None) -> Code:
    return Code((Op.LITERAL, value), location)


def make_reference(identifier: str, location: Optional[Location] = None) -> Code:
    """
    Namespaces (`name:`) are always builtins. A bare alphanumeric name might
    be a builtin, so it stays undetermined. Anything else is a scope key.
    """
    if NAMESPACE_NAME.match(identifier):
        op = Op.BUILTIN
    elif BUILTIN_NAME.match(identifier):
        op = Op.UNDETERMINED
    else:
        op = Op.SCOPE
    return Code((op, identifier), location)


def upgrade_reference(node):
    if is_code(node) and len(node) == 2 and node[0] is Op.UNDETERMINED:
        return Code((Op.BUILTIN, node[1]), node.location)
    return node


def downgrade_reference(node):
    if is_code(node) and len(node) == 2 and node[0] is Op.UNDETERMINED:
        return Code((Op.SCOPE, node[1]), node.location)
    return node


def _map_children(node, fn):
    """Rebuild a node by applying `fn` to its Code children and property pairs."""
    if is_code(node):
        if node[0] is Op.LITERAL:
            return node
        return Code((node[0], *(_map_operand(item, fn) for item in node[1:])), node.location)
    return node


def _map_operand(item, fn):
    if is_code(item):
        return fn(item)
    if isinstance(item, tuple) and len(item) == 2 and not is_code(item) and is_code(item[1]):
        # An object property pair
        return (item[0], fn(item[1]))
    return item


def downgrade_remaining(node):
    """Turn every undetermined reference left in a tree of nodes into a scope reference."""
    if not is_code(node):
        return node
    if node[0] is Op.UNDETERMINED:
        return downgrade_reference(node)
    return _map_children(node, downgrade_remaining)


def avoid_recursive_property_calls(node, key: str):
    """
    Code defining a property named `key` can't look `key` up in the object
    being defined, so such references are rewritten to inherited lookups.
    Lambdas that declare a parameter of the same name are left alone.
    """
    if not is_code(node):
        return node
    op = node[0]
    if op in (Op.SCOPE, Op.UNDETERMINED) and len(node) == 2:
        if trailing_slash.remove(node[1]) == trailing_slash.remove(key):
            return Code((Op.INHERITED, node[1]), node.location)
        return node
    if op is Op.LAMBDA and key in node[1]:
        return node
    return _map_children(node, lambda child: avoid_recursive_property_calls(child, key))


def make_call(target, args: Sequence, location: Optional[Location] = None) -> Code:
    """
    Build a call, traversal or tagged template application.

    `args` may begin with an Op.TRAVERSE marker (the remaining items are key
    nodes) or an Op.TEMPLATE marker (the remaining items are a template's
    strings literal and its values).
    """
    if not is_code(target):
        raise ArborSyntaxError(
            f"Can't call this like a function: {target}",
            getattr(target, "location", None) or location,
        )
    args = list(args)
    if args and args[0] is Op.TRAVERSE:
        tree = target
        if tree[0] is Op.UNDETERMINED:
            tree = downgrade_reference(tree)
            if tree[0] is Op.SCOPE and not trailing_slash.has(tree[1]):
                tree = Code((Op.SCOPE, trailing_slash.add(tree[1])), tree.location)
        keys = args[1:]
        node = (Op.TRAVERSE, tree, *keys) if keys else (Op.UNPACK, tree)
    elif args and args[0] is Op.TEMPLATE:
        node = (Op.CALL, upgrade_reference(target), *args[1:])
    else:
        node = (Op.CALL, upgrade_reference(target), *args)
    if location is None:
        location = span(target, *[a for a in args if is_code(a)])
    elif target.location is not None:
        location = target.location.span(location)
    return Code(node, location)


def make_array(entries: Iterable, location: Optional[Location] = None) -> Code:
    """
    Runs of plain entries become array nodes; spread entries break runs.
    More than one run or spread produces a merge of them.
    """
    current: List = []
    parts: List = []
    for value in entries:
        if is_code(value) and value[0] is Op.SPREAD:
            if current:
                parts.append(Code((Op.ARRAY, *current), span(*current)))
                current = []
            parts.extend(value[1:])
        else:
            current.append(value)
    if current:
        parts.append(Code((Op.ARRAY, *current), span(*current)))

    if len(parts) > 1:
        return Code((Op.MERGE, *parts), location)
    if len(parts) == 1:
        return annotate(parts[0], location)
    return Code((Op.ARRAY,), location)


def make_object(entries: Iterable[Tuple[Any, Any]], location: Optional[Location] = None,
                op: Op = Op.OBJECT) -> Code:
    """
    Entries are (key, code) pairs; a key of Op.SPREAD marks a spread. A
    spread object literal is folded in, other spreads split the object into
    parts that are merged. A getter whose body is a literal is stored as a
    plain property.
    """
    current: List = []
    parts: List = []
    for key, value in entries:
        if key is Op.SPREAD:
            if is_code(value) and value[0] is op:
                current.extend(value[1:])
            else:
                if current:
                    parts.append(Code((op, *current), location))
                    current = []
                parts.append(value)
            continue
        if is_code(value) and value[0] is Op.GETTER and is_code(value[1]) and value[1][0] is Op.LITERAL:
            value = value[1]
        current.append((key, value))
    if current:
        parts.append(Code((op, *current), location))

    if len(parts) > 1:
        return Code((Op.MERGE, *parts), location)
    if len(parts) == 1:
        return annotate(parts[0], location)
    return Code((op,), location)


def make_property(key: str, value) -> Tuple[str, Any]:
    modified = avoid_recursive_property_calls(value, key)
    return (key, downgrade_remaining(modified))


def make_getter(value, location: Optional[Location] = None) -> Code:
    return Code((Op.GETTER, value), location or getattr(value, "location", None))


def make_spread(value, location: Optional[Location] = None) -> Code:
    return Code((Op.SPREAD, value), location or getattr(value, "location", None))


def make_lambda(params: Sequence[str], body, location: Optional[Location] = None) -> Code:
    return Code((Op.LAMBDA, tuple(params), downgrade_remaining(body)), location)


def make_deferred_arguments(args: Iterable) -> list:
    """Wrap arguments in parameterless lambdas so the callee decides when to evaluate them."""
    deferred = []
    for arg in args:
        if is_code(arg) and arg[0] is Op.LITERAL:
            deferred.append(arg)
        else:
            deferred.append(Code((Op.LAMBDA, (), downgrade_remaining(arg)), getattr(arg, "location", None)))
    return deferred


def make_binary_operation(left, operation: Tuple[str, Any]) -> Code:
    token, right = operation
    location = span(left, right)
    if token in SHORT_CIRCUIT_OPERATORS:
        return Code((SHORT_CIRCUIT_OPERATORS[token], *make_deferred_arguments([left, right])), location)
    try:
        op = BINARY_OPERATORS[token]
    except KeyError:
        raise ArborSyntaxError(f"Unknown operator {token}", location) from None
    return Code((op, left, right), location)


def fold_binary(head, tail: Sequence[Tuple[str, Any]]):
    """Left-associative chain: a op b op c => (a op b) op c."""
    return reduce(make_binary_operation, tail, head)


def make_conditional(condition, then_branch, else_branch) -> Code:
    location = span(condition, then_branch, else_branch)
    return Code((Op.CONDITIONAL, condition, *make_deferred_arguments([then_branch, else_branch])), location)


def make_unary_operation(token: str, value, location: Optional[Location] = None) -> Code:
    return Code((UNARY_OPERATORS[token], value), location or getattr(value, "location", None))


def make_template(strings: Sequence[str], values: Sequence, location: Optional[Location] = None,
                  op: Op = Op.TEMPLATE) -> Code:
    """A template node: the literal strings, then each value wrapped in concat."""
    concats = [Code((Op.CONCAT, value), getattr(value, "location", None)) for value in values]
    literal = Code((Op.LITERAL, tuple(strings)), location)
    return Code((op, literal, *concats), location)


def make_pipeline(arg, fn) -> Code:
    """`arg -> fn` calls fn with arg."""
    return make_call(upgrade_reference(fn), [arg], span(arg, fn))


def make_pattern(pattern: str, location: Optional[Location] = None) -> Code:
    return Code((Op.PATTERN, pattern), location)
