import pytest

from arbor.arbor_datatypes import ArborSyntaxError, Op
from arbor.arbor_parser import parse_expression, parse_formula_key


def lit(value):
    return (Op.LITERAL, value)


def scope(name):
    return (Op.SCOPE, name)


# =================================================================
# Primaries
# =================================================================

@pytest.mark.parametrize("source, value", [
    ("1", 1),
    ("3.5", 3.5),
    ("1e3", 1000.0),
    ("-1", -1),
    ("'single'", "single"),
    ('"double"', "double"),
    ("'it\\'s'", "it's"),
    ("'\\u0041'", "A"),
    ("'a\\nb'", "a\nb"),
    ("true", True),
    ("false", False),
    ("null", None),
])
def test_literals(source, value):
    assert parse_expression(source) == lit(value)


def test_references():
    assert parse_expression("x") == scope("x")
    assert parse_expression("index.html") == scope("index.html")
    assert parse_expression("a-b") == scope("a-b")
    assert parse_expression("tree:") == (Op.BUILTIN, "tree:")
    assert parse_expression("tree:plain") == (Op.TRAVERSE, (Op.BUILTIN, "tree:"), lit("plain"))


def test_pattern_reference():
    assert parse_expression("{x}.md") == (Op.PATTERN, "{x}.md")


def test_paths():
    assert parse_expression("a/b") == (Op.TRAVERSE, scope("a/"), lit("b"))
    assert parse_expression("a/b/") == (Op.TRAVERSE, scope("a/"), lit("b"), lit(""))
    assert parse_expression("a/") == (Op.UNPACK, scope("a/"))


def test_calls():
    assert parse_expression("fn(a, 1)") == (Op.CALL, (Op.BUILTIN, "fn"), scope("a"), lit(1))
    assert parse_expression("fn()") == (Op.CALL, (Op.BUILTIN, "fn"))
    assert parse_expression("fn(1)(2)") == (Op.CALL, (Op.CALL, (Op.BUILTIN, "fn"), lit(1)), lit(2))


def test_call_location_spans_target_and_arguments():
    node = parse_expression("  foo(1)")
    assert node.location.text == "foo(1)"
    assert node.location.line == 1
    assert node.location.col == 3


def test_pipeline():
    assert parse_expression("x -> fn") == (Op.CALL, (Op.BUILTIN, "fn"), scope("x"))
    assert parse_expression("x -> f -> g") == (
        Op.CALL, (Op.BUILTIN, "g"), (Op.CALL, (Op.BUILTIN, "f"), scope("x")),
    )


def test_mixed_call_suffixes():
    assert parse_expression("fn(1)/a/b") == (
        Op.TRAVERSE, (Op.CALL, (Op.BUILTIN, "fn"), lit(1)), lit("a"), lit("b"),
    )
    assert parse_expression("1 + 2 * 3 - 4") == (
        Op.SUBTRACTION, (Op.ADDITION, lit(1), (Op.MULTIPLICATION, lit(2), lit(3))), lit(4),
    )


def test_templates():
    assert parse_expression("`Hello ${name}`") == (
        Op.TEMPLATE, lit(("Hello ", "")), (Op.CONCAT, scope("name")),
    )
    assert parse_expression("tag`a${b}`") == (
        Op.CALL, (Op.BUILTIN, "tag"), lit(("a", "")), (Op.CONCAT, scope("b")),
    )


def test_lambdas():
    assert parse_expression("(a, b) => a + b") == (
        Op.LAMBDA, ("a", "b"), (Op.ADDITION, scope("a"), scope("b")),
    )
    assert parse_expression("=_ + 1") == (
        Op.LAMBDA, ("_",), (Op.ADDITION, scope("_"), lit(1)),
    )


def test_arrays():
    assert parse_expression("[1, 2,]") == (Op.ARRAY, lit(1), lit(2))
    assert parse_expression("[1, ...xs, 2]") == (
        Op.MERGE, (Op.ARRAY, lit(1)), scope("xs"), (Op.ARRAY, lit(2)),
    )


def test_objects():
    assert parse_expression("{ a: 1, b = c }") == (
        Op.OBJECT, ("a", lit(1)), ("b", (Op.GETTER, scope("c"))),
    )
    assert parse_expression("{ a }") == (Op.OBJECT, ("a", (Op.INHERITED, "a")))
    assert parse_expression("{ ...x, a: 1, }") == (Op.MERGE, scope("x"), (Op.OBJECT, ("a", lit(1))))
    assert parse_expression("{ ...{ a: 1 }, b: 2 }") == (Op.OBJECT, ("a", lit(1)), ("b", lit(2)))


# =================================================================
# Operators
# =================================================================

def test_precedence():
    assert parse_expression("1 + 2 * 3") == (
        Op.ADDITION, lit(1), (Op.MULTIPLICATION, lit(2), lit(3)),
    )
    assert parse_expression("(1 + 2) * 3") == (
        Op.MULTIPLICATION, (Op.ADDITION, lit(1), lit(2)), lit(3),
    )
    assert parse_expression("2 ** 3 ** 2") == (
        Op.EXPONENTIATION, lit(2), (Op.EXPONENTIATION, lit(3), lit(2)),
    )


def test_subtraction_and_division_need_spaces():
    assert parse_expression("a - b") == (Op.SUBTRACTION, scope("a"), scope("b"))
    assert parse_expression("a / b") == (Op.DIVISION, scope("a"), scope("b"))


def test_unary():
    assert parse_expression("-x") == (Op.UNARY_MINUS, scope("x"))
    assert parse_expression("!x") == (Op.LOGICAL_NOT, scope("x"))


def test_short_circuit_operands_are_deferred():
    assert parse_expression("a && b") == (
        Op.LOGICAL_AND, (Op.LAMBDA, (), scope("a")), (Op.LAMBDA, (), scope("b")),
    )
    assert parse_expression("1 ?? 2") == (Op.NULLISH_COALESCING, lit(1), lit(2))


def test_conditional():
    assert parse_expression("x ? 1 : y") == (
        Op.CONDITIONAL, scope("x"), lit(1), (Op.LAMBDA, (), scope("y")),
    )


def test_comparisons():
    assert parse_expression("a === b")[0] is Op.STRICT_EQUAL
    assert parse_expression("a != b")[0] is Op.NOT_EQUAL
    assert parse_expression("a <= b")[0] is Op.LESS_THAN_OR_EQUAL
    assert parse_expression("a >>> b")[0] is Op.SHIFT_RIGHT_UNSIGNED


def test_comments_are_whitespace():
    assert parse_expression("1 // trailing") == lit(1)
    assert parse_expression("/* leading */ 1") == lit(1)


# =================================================================
# Errors
# =================================================================

@pytest.mark.parametrize("source, message", [
    ("", "Expected an expression"),
    ("(1", "Expected ')'"),
    ("1 +", "Expected an expression after +"),
    ("1 2", "Unexpected '2'"),
    ("'abc", "Unterminated string"),
    ("fn(1,)", "Trailing comma in argument list"),
    ("(a,) => a", "Trailing comma in parameter list"),
    ("[1", "Expected ']'"),
    ("`abc ${x}", "Unterminated template literal"),
    ("`${}`", "Expected an expression in template"),
    ("(x) =>", "Expected a lambda body"),
    ("x ->", "Expected a function after '->'"),
])
def test_syntax_errors(source, message):
    with pytest.raises(ArborSyntaxError) as info:
        parse_expression(source)
    assert message in str(info.value)


def test_syntax_error_location():
    with pytest.raises(ArborSyntaxError) as info:
        parse_expression("1 +\n  )")
    assert info.value.location.line == 2
    assert info.value.location.col == 3


# =================================================================
# Formula keys
# =================================================================

def test_formula_keys():
    assert parse_formula_key("total = a + b") == ("total", (Op.ADDITION, scope("a"), scope("b")))
    assert parse_formula_key("{x}.html = {x}.md") == ("{x}.html", (Op.PATTERN, "{x}.md"))
    assert parse_formula_key("{name}.txt") == ("{name}.txt", None)
    assert parse_formula_key("index.html") is None
    assert parse_formula_key("a == b") is None
    assert parse_formula_key(5) is None


def test_formula_key_with_bad_expression():
    with pytest.raises(ArborSyntaxError):
        parse_formula_key("bad = (")
