import pytest

from arbor.arbor_interpreter import Evaluator
from arbor.arbor_parser import parse_expression
from arbor.arbor_printer import Printer, format_code
from arbor.arbor_serialize import Buffer


@pytest.fixture
def printer():
    return Printer()


def test_scalars(printer):
    assert printer.pformat("it's") == "'it\\'s'"
    assert printer.pformat("a\nb") == "'a\\nb'"
    assert printer.pformat(2.0) == "2"
    assert printer.pformat(1.5) == "1.5"
    assert printer.pformat(True) == "true"
    assert printer.pformat(None) == "null"
    assert printer.pformat(b"abc") == "<3 bytes>"
    assert printer.pformat(Buffer(b"<p>", name="x.html")) == "<p>"


def test_nested_plain_values(printer):
    value = {"a": 1, "b": {"c": [1, 2]}}
    assert printer.pformat(value) == "a: 1\nb:\n  c:\n    - 1\n    - 2"


def test_lists_of_mappings(printer):
    assert printer.pformat([{"a": 1, "b": 2}, "x"]) == "- a: 1\n  b: 2\n- 'x'"
    assert printer.pformat([]) == "[]"
    assert printer.pformat({}) == "{}"


@pytest.mark.parametrize("source, expected", [
    ("fn(a, 1)", "call(builtin(fn), scope(a), literal(1))"),
    ("(x) => x", "lambda((x), scope(x))"),
    ("{ a: 1 }", "object(a: literal(1))"),
    ("`Hi ${x}`", "template(literal(['Hi ', '']), concat(scope(x)))"),
    ("a/b", "traverse(scope(a/), literal('b'))"),
    ("{x}.md", "pattern({x}.md)"),
])
def test_format_code(source, expected):
    assert format_code(parse_expression(source)) == expected


@pytest.mark.asyncio
async def test_functions(printer):
    fn = await Evaluator().run("(a, b) => a + b")
    assert printer.pformat(fn) == "(a, b) => addition(scope(a), scope(b))"
