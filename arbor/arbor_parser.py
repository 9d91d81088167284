"""
The expression grammar, built from the combinators in `arbor_combinators`
and the node builders in `arbor_compiler`.

Operator precedence, lowest first:

    ->                      pipeline
    ?:                      conditional
    ??  ||  &&              short-circuit
    |  ^  &                 bitwise
    == === != !==           equality
    < <= > >=               relational
    << >> >>>               shift
    + -                     additive
    * / %                   multiplicative
    **                      exponentiation (right associative)
    ! + - ~                 unary
    f(x)  a/b  tag`...`     call chain

A binary `-` or `/` must be surrounded by whitespace; without it the
characters belong to an identifier or a path.
"""

import re
from typing import Optional, Tuple

from arbor.arbor_combinators import (
    MISSING_TERM,
    Cursor,
    Parsed,
    any_of,
    forced_sequence,
    lazy,
    map_value,
    optional,
    regex,
    separated_list,
    sequence,
    series,
    terminal,
)
from arbor.arbor_compiler import (
    downgrade_remaining,
    fold_binary,
    make_array,
    make_call,
    make_conditional,
    make_getter,
    make_lambda,
    make_literal,
    make_object,
    make_pattern,
    make_pipeline,
    make_property,
    make_reference,
    make_spread,
    make_template,
    make_unary_operation,
)
from arbor.arbor_datatypes import ArborSyntaxError, Code, Location, Op


# =================================================================
# Lexical pieces
# =================================================================

WHITESPACE = re.compile(r"(?:\s+|/\*.*?\*/|(?:(?<=\s)|^)//[^\n]*)*", re.S)
IDENTIFIER = re.compile(r"[A-Za-z0-9_@$~][\w@$~]*(?:[.\-][\w@$~]+)*")
NUMBER = re.compile(r"(?:\d+\.\d+|\d+|\.\d+)(?:[eE][+-]?\d+)?(?![\w.@$~\-])")
KEYWORD = re.compile(r"(true|false|null)(?![\w.@$~\-])")
NAMESPACE = re.compile(r"([A-Za-z][A-Za-z0-9]*:)([\w@$~][\w@$~]*(?:[.\-][\w@$~]+)*)?(?![:/])")
PATTERN_TEXT = re.compile(r"(?:[\w.\-@$~]*\{[A-Za-z_]\w*\})+[\w.\-@$~]*")
PATH_KEY = re.compile(r"[^\s/(){}\[\]<>,;'\"`]*")
OBJECT_KEY = re.compile(r"[^\s:=,{}()\[\]'\"`]+")
PARAM = re.compile(r"[A-Za-z_@$~][\w@$~]*")

ESCAPES = {
    "n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "0": "\0",
    "\\": "\\", "'": "'", '"': '"', "`": "`", "$": "$",
}


def ws(cursor: Cursor) -> Parsed:
    match = WHITESPACE.match(cursor.source, cursor.pos)
    return Parsed(None, Cursor(cursor.source, match.end()))


def skip_ws(cursor: Cursor) -> Cursor:
    return ws(cursor).rest


def tok(pattern: str):
    """A token preceded by optional whitespace."""
    parser = terminal(pattern)

    def parse_token(cursor: Cursor) -> Optional[Parsed]:
        return parser(skip_ws(cursor))

    return parse_token


def spaced(pattern: str):
    """An operator token that requires whitespace on both sides."""
    compiled = re.compile(r"\s+(?:" + pattern + r")(?=\s)")

    def parse_spaced(cursor: Cursor) -> Optional[Parsed]:
        match = compiled.match(cursor.source, cursor.pos)
        if match is None:
            return None
        return Parsed(match.group(0).strip(), Cursor(cursor.source, match.end()))

    return parse_spaced


def operator(pattern: str):
    """An operator token; the value is the operator text."""
    parser = regex(pattern)

    def parse_operator(cursor: Cursor) -> Optional[Parsed]:
        return parser(skip_ws(cursor))

    return parse_operator


def located(parser, build):
    """Skip leading whitespace, run `parser`, and build a node with its location."""
    def parse_located(cursor: Cursor) -> Optional[Parsed]:
        start = skip_ws(cursor)
        parsed = parser(start)
        if parsed is None:
            return None
        location = Location(start.source, start.pos, parsed.rest.pos)
        return Parsed(build(parsed.value, location), parsed.rest)

    return parse_located


def required(parser, message: str):
    """A parser that must match; a miss is a syntax error at the next token."""
    def parse_required(cursor: Cursor) -> Parsed:
        parsed = parser(cursor)
        if parsed is None:
            raise ArborSyntaxError(message, skip_ws(cursor).location())
        return parsed

    return parse_required


def _span(start: Cursor, end: Cursor) -> Location:
    return Location(start.source, start.pos, end.pos)


def _unescape(match_text: str, location: Location) -> str:
    out = []
    i = 0
    while i < len(match_text):
        ch = match_text[i]
        if ch == "\\" and i + 1 < len(match_text):
            nxt = match_text[i + 1]
            if nxt == "u" and re.match(r"[0-9a-fA-F]{4}", match_text[i + 2:i + 6]):
                out.append(chr(int(match_text[i + 2:i + 6], 16)))
                i += 6
                continue
            if nxt == "\n":
                i += 2
                continue
            out.append(ESCAPES.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


# =================================================================
# Primaries
# =================================================================

def _number(text: str, location: Location) -> Code:
    value = float(text) if any(c in text for c in ".eE") else int(text)
    return make_literal(value, location)


number = located(regex(NUMBER), _number)

keyword = located(
    regex(KEYWORD),
    lambda text, location: make_literal({"true": True, "false": False, "null": None}[text], location),
)


def _string_parser(quote: str):
    body = re.compile(quote + r"((?:[^" + quote + r"\\]|\\.)*)" + quote, re.S)

    def parse_string(cursor: Cursor) -> Optional[Parsed]:
        match = body.match(cursor.source, cursor.pos)
        if match is None:
            if cursor.source.startswith(quote, cursor.pos):
                raise ArborSyntaxError("Unterminated string", cursor.location(len(cursor.source)))
            return None
        location = Location(cursor.source, cursor.pos, match.end())
        return Parsed(_unescape(match.group(1), location), Cursor(cursor.source, match.end()))

    return parse_string


string_text = any_of(_string_parser("'"), _string_parser('"'))
string = located(string_text, make_literal)

TEMPLATE_CHUNK = re.compile(r"(?:[^`\\$]|\\.|\$(?!\{))*", re.S)


template_chunk = map_value(regex(TEMPLATE_CHUNK), lambda text, start, end: _unescape(text, None))

template_substitution = map_value(
    sequence(
        terminal(r"\$\{"),
        required(lazy(lambda: expression), "Expected an expression in template"),
        required(tok(r"\}"), "Expected '}' to close template expression"),
    ),
    lambda value, start, end: downgrade_remaining(value[1]),
)


def _template_parts(value, start: Cursor, end: Cursor):
    _, (first, rest), _ = value
    strings = [first]
    values = []
    for substitution, chunk in rest or []:
        values.append(substitution)
        strings.append(chunk)
    return strings, values, _span(start, end)


# `text ${expr} text` -> (strings, values, location)
parse_template_literal = map_value(
    sequence(
        terminal("`"),
        sequence(template_chunk, optional(series(sequence(template_substitution, template_chunk)))),
        required(terminal("`"), "Unterminated template literal"),
    ),
    _template_parts,
)


template_literal = located(
    parse_template_literal,
    lambda value, location: make_template(value[0], value[1], location),
)


def _reference(text: str, location: Location) -> Code:
    return make_reference(text, location)


reference = located(regex(IDENTIFIER), _reference)


def _pattern(text: str, location: Location):
    return make_pattern(text, location)


def parse_pattern_reference(cursor: Cursor) -> Optional[Parsed]:
    match = PATTERN_TEXT.match(cursor.source, cursor.pos)
    if match is None:
        return None
    text = match.group(0)
    # A bare {name} is an object literal, not a pattern
    if re.fullmatch(r"\{[A-Za-z_]\w*\}", text):
        return None
    return Parsed(text, Cursor(cursor.source, match.end()))


pattern_reference = located(parse_pattern_reference, _pattern)


def _namespace(match_text: str, location: Location) -> Code:
    namespace, _, name = match_text.partition(":")
    ns_node = make_reference(namespace + ":", location)
    if not name:
        return ns_node
    key_location = Location(location.source, location.end - len(name), location.end)
    return make_call(ns_node, [Op.TRAVERSE, make_literal(name, key_location)], location)


namespace = located(regex(NAMESPACE), _namespace)


def _group(value, location):
    return value[1]


group = located(
    forced_sequence(terminal(r"\("), lazy(lambda: expression), tok(r"\)"),
                    message="Expected ')'"),
    _group,
)


# Lambdas

def _check_dangling(items, location: Location, what: str):
    if items and items[-1] is MISSING_TERM:
        raise ArborSyntaxError(f"Trailing comma in {what}", location)


param_list = separated_list(
    map_value(sequence(ws, regex(PARAM)), lambda v, s, e: v[1]),
    tok(","),
)


def _lambda_params(value, start: Cursor, end: Cursor) -> tuple:
    params = value[1]
    _check_dangling(params, _span(start, end), "parameter list")
    return tuple(params)


lambda_head = map_value(sequence(terminal(r"\("), param_list, tok(r"\)"), tok(r"=>")), _lambda_params)

arrow_lambda = located(
    sequence(lambda_head, required(lazy(lambda: expression), "Expected a lambda body")),
    lambda v, location: make_lambda(v[0], v[1], location),
)

implicit_lambda = located(
    forced_sequence(regex(r"=(?![=>])"), lazy(lambda: expression), message="Expected a lambda body"),
    lambda v, location: make_lambda(("_",), v[1], location),
)


# Arrays and objects

def parse_spread_prefix(cursor: Cursor) -> Optional[Parsed]:
    start = skip_ws(cursor)
    return regex(r"\.\.\.|…")(start)


def _spread_entry(value, location):
    return make_spread(value[1], location)


spread = located(sequence(parse_spread_prefix, lazy(lambda: expression)), _spread_entry)

array_entry = any_of(spread, lazy(lambda: expression))


def _array(value, location):
    entries = value[1]
    if entries and entries[-1] is MISSING_TERM:
        entries = entries[:-1]
    if MISSING_TERM in entries:
        raise ArborSyntaxError("Missing array entry", location)
    return make_array([downgrade_remaining(e) for e in entries], location)


array = located(
    forced_sequence(
        terminal(r"\["), separated_list(array_entry, tok(",")), tok(r"\]"),
        message="Expected ']'",
    ),
    _array,
)


object_key_text = any_of(string_text, regex(OBJECT_KEY))


def parse_object_entry(cursor: Cursor) -> Optional[Parsed]:
    start = skip_ws(cursor)
    parsed = spread(start)
    if parsed is not None:
        return Parsed((Op.SPREAD, downgrade_remaining(parsed.value[1])), parsed.rest)
    key = object_key_text(start)
    if key is None:
        return None
    name = key.value
    getter = sequence(tok(r"=(?![=>])"), lazy(lambda: expression))(key.rest)
    if getter is not None:
        body = getter.value[1]
        return Parsed(make_property(name, make_getter(body)), getter.rest)
    colon = tok(":")(key.rest)
    if colon is not None:
        value = expression(colon.rest)
        if value is None:
            raise ArborSyntaxError(f"Expected a value for {name}", skip_ws(colon.rest).location())
        return Parsed(make_property(name, value.value), value.rest)
    location = Location(start.source, start.pos, key.rest.pos)
    return Parsed(make_property(name, make_reference(name, location)), key.rest)


def _object(value, location):
    entries = value[1]
    if entries and entries[-1] is MISSING_TERM:
        entries = entries[:-1]
    if MISSING_TERM in entries:
        raise ArborSyntaxError("Missing object entry", location)
    return make_object(entries, location)


object_literal = located(
    forced_sequence(
        terminal(r"\{"), separated_list(parse_object_entry, tok(",")), tok(r"\}"),
        message="Expected '}'",
    ),
    _object,
)


primary = any_of(
    number,
    string,
    keyword,
    template_literal,
    arrow_lambda,
    implicit_lambda,
    array,
    pattern_reference,
    object_literal,
    group,
    namespace,
    reference,
)


# =================================================================
# Call chains
# =================================================================

argument = any_of(spread, lazy(lambda: expression))


def _arguments(value, start: Cursor, end: Cursor):
    args = value[1]
    location = _span(start, end)
    _check_dangling(args, location, "argument list")
    return "args", [downgrade_remaining(a) for a in args], location


arguments = map_value(
    sequence(terminal(r"\("), separated_list(argument, tok(",")), required(tok(r"\)"), "Expected ')'")),
    _arguments,
)

# A tight `/key` segment; `//` and `/*` start comments instead
path_segment = map_value(
    sequence(terminal(r"/(?![/*])"), regex(PATH_KEY)),
    lambda value, start, end: make_literal(value[1], Location(start.source, start.pos + 1, end.pos)),
)


def _path(keys, start: Cursor, end: Cursor):
    if len(keys) == 1 and keys[0][1] == "":
        keys = []
    return "path", keys, _span(start, end)


path = map_value(series(path_segment), _path)


def _tagged_template(value, start: Cursor, end: Cursor):
    strings, values, location = value
    node = make_template(strings, values, location)
    return "template", list(node[1:]), location


tagged_template = map_value(parse_template_literal, _tagged_template)

call_suffix = any_of(arguments, path, tagged_template)

SUFFIX_MARKERS = {"path": Op.TRAVERSE, "template": Op.TEMPLATE}


def _apply_suffixes(value, start: Cursor, end: Cursor):
    node, suffixes = value
    for kind, items, location in suffixes or []:
        marker = SUFFIX_MARKERS.get(kind)
        node = make_call(node, [marker, *items] if marker else items, location)
    return node


call_chain = map_value(sequence(primary, optional(series(call_suffix))), _apply_suffixes)


# =================================================================
# Operators
# =================================================================

def parse_unary(cursor: Cursor) -> Optional[Parsed]:
    start = skip_ws(cursor)
    op = regex(r"[!~](?!=)|[+\-](?=[\w(\[{'\"`!~+\-.])")(start)
    if op is not None:
        operand = parse_unary(op.rest)
        if operand is None:
            raise ArborSyntaxError(f"Expected an operand after {op.value}", skip_ws(op.rest).location())
        location = Location(start.source, start.pos, operand.rest.pos)
        value = operand.value
        if op.value == "-" and value[0] is Op.LITERAL and isinstance(value[1], (int, float)) \
                and not isinstance(value[1], bool):
            return Parsed(make_literal(-value[1], location), operand.rest)
        return Parsed(make_unary_operation(op.value, value, location), operand.rest)
    return call_chain(start)


def parse_exponentiation(cursor: Cursor) -> Optional[Parsed]:
    base = parse_unary(cursor)
    if base is None:
        return None
    op = operator(r"\*\*")(base.rest)
    if op is None:
        return base
    exponent = parse_exponentiation(op.rest)
    if exponent is None:
        raise ArborSyntaxError("Expected an exponent", skip_ws(op.rest).location())
    return Parsed(fold_binary(base.value, [("**", exponent.value)]), exponent.rest)


def operation(operator_parser, operand):
    """`operator operand`; once the operator matches, the operand is required."""
    def parse_operation(cursor: Cursor) -> Optional[Parsed]:
        op = operator_parser(cursor)
        if op is None:
            return None
        right = required(operand, f"Expected an expression after {op.value}")(op.rest)
        return Parsed((op.value, right.value), right.rest)

    return parse_operation


def binary_level(operand, operator_parser):
    """A left-associative level: operand (operator operand)*"""
    return map_value(
        sequence(operand, optional(series(operation(operator_parser, operand)))),
        lambda value, start, end: fold_binary(value[0], value[1] or []),
    )


multiplicative = binary_level(
    parse_exponentiation,
    any_of(operator(r"\*(?!\*)|%"), spaced(r"/")),
)
additive = binary_level(multiplicative, any_of(operator(r"\+(?!\+)"), spaced(r"-")))
shift = binary_level(additive, operator(r"<<|>>>|>>"))
relational = binary_level(shift, operator(r"<=|>=|<(?!<)|>(?![>=])"))
equality = binary_level(relational, operator(r"===|!==|==|!="))
bitwise_and = binary_level(equality, operator(r"&(?!&)"))
bitwise_xor = binary_level(bitwise_and, operator(r"\^"))
bitwise_or = binary_level(bitwise_xor, operator(r"\|(?!\|)"))
logical_and = binary_level(bitwise_or, operator(r"&&"))
logical_or = binary_level(logical_and, operator(r"\|\|"))
nullish = binary_level(logical_or, operator(r"\?\?"))


def parse_conditional(cursor: Cursor) -> Optional[Parsed]:
    condition = nullish(cursor)
    if condition is None:
        return None
    question = operator(r"\?(?!\?)")(condition.rest)
    if question is None:
        return condition
    branches = forced_sequence(
        lazy(lambda: expression), tok(":"), lazy(lambda: expression),
        message="Incomplete conditional expression",
    )(question.rest)
    if branches is None:
        raise ArborSyntaxError("Expected an expression after '?'", skip_ws(question.rest).location())
    then_branch, _, else_branch = branches.value
    return Parsed(make_conditional(condition.value, then_branch, else_branch), branches.rest)


pipeline_step = map_value(
    sequence(operator(r"->"), required(parse_conditional, "Expected a function after '->'")),
    lambda value, start, end: value[1],
)


def _pipeline(value, start: Cursor, end: Cursor):
    node, fns = value
    for fn in fns or []:
        node = make_pipeline(node, fn)
    return node


expression = map_value(sequence(parse_conditional, optional(series(pipeline_step))), _pipeline)


# =================================================================
# Entry points
# =================================================================

def parse_expression(source: str) -> Code:
    """Parse a complete expression; the whole input must be consumed."""
    cursor = Cursor(source, 0)
    parsed = expression(cursor)
    if parsed is None:
        start = skip_ws(cursor)
        raise ArborSyntaxError("Expected an expression", start.location(min(start.pos + 1, len(source))))
    rest = skip_ws(parsed.rest)
    if not rest.at_end:
        raise ArborSyntaxError(f"Unexpected {rest.rest[:1]!r}", rest.location(rest.pos + 1))
    return downgrade_remaining(parsed.value)


FORMULA_LHS = re.compile(r"\s*([^\s=][^=]*?)\s*=(?![=>])")
PATTERN_VARIABLE = re.compile(r"\{[A-Za-z_]\w*\}")


def parse_formula_key(key: str) -> Optional[Tuple[str, Optional[Code]]]:
    """
    Split a formula key into its pattern text and compiled expression.

    `name = expr` gives (name, code); a bare key holding {variables} gives
    (key, None); any other key is not a formula and gives None.
    """
    if not isinstance(key, str):
        return None
    match = FORMULA_LHS.match(key)
    if match is not None:
        cursor = Cursor(key, match.end())
        parsed = expression(cursor)
        if parsed is None:
            raise ArborSyntaxError("Expected an expression", skip_ws(cursor).location())
        rest = skip_ws(parsed.rest)
        if not rest.at_end:
            raise ArborSyntaxError(f"Unexpected {rest.rest[:1]!r}", rest.location(rest.pos + 1))
        return match.group(1), downgrade_remaining(parsed.value)
    if PATTERN_VARIABLE.search(key):
        return key, None
    return None
