import pytest

from arbor.arbor_interpreter import Evaluator
from arbor.arbor_scope import Scope
from arbor.arbor_serialize import (
    Buffer,
    ExpressionSource,
    ExpressionTree,
    deserialize,
    detect_format,
    from_json,
    from_yaml,
    parse_yaml,
    serialize,
    to_json,
    to_yaml,
)
from arbor.arbor_tree import ListTree, ObjectTree
from arbor.arbor_treeops import plain


def test_detect_format():
    assert detect_format("application/json") == "json"
    assert detect_format("application/x-yaml; charset=utf-8") == "yaml"
    assert detect_format(None, "data.yml") == "yaml"
    assert detect_format(None, "data.JSON") == "json"
    assert detect_format("text/html", "index.html") is None
    assert detect_format() is None


def test_deserialize():
    assert deserialize(b'{"a": 1}', content_type="application/json") == {"a": 1}
    assert deserialize("a: [1, 2]", name="x.yaml") == {"a": [1, 2]}
    assert deserialize(b"plain text") == "plain text"
    latin = "café".encode("latin-1")
    assert deserialize(latin, content_type="text/plain; charset=latin-1") == "café"


def test_serialize():
    assert serialize({"a": [1, 2]}, fmt="json", pretty=False) == '{"a": [1, 2]}'
    assert serialize({"b": 1, "a": 2}, fmt="yaml") == "b: 1\na: 2\n"
    assert serialize({"t": ExpressionSource("x + 1")}, fmt="json", pretty=False) == '{"t": "x + 1"}'
    with pytest.raises(ValueError):
        serialize({}, fmt="xml")


def test_expression_tag():
    data = parse_yaml("title: !expr name + '!'\ncount: 3\n")
    assert isinstance(data["title"], ExpressionSource)
    assert data["title"] == "name + '!'"
    assert data["count"] == 3


@pytest.mark.asyncio
async def test_from_yaml_evaluates_expressions():
    evaluator = Evaluator()
    text = "name: Ann\ngreeting: !expr \"`Hi ${name}`\"\nnested:\n  shout: !expr greeting + '!'\n"
    tree = from_yaml(text, evaluator)
    assert isinstance(tree, ExpressionTree)
    assert await tree.get("greeting") == "Hi Ann"
    nested = await tree.get("nested")
    assert isinstance(nested, ExpressionTree)
    assert await nested.get("shout") == "Hi Ann!"


@pytest.mark.asyncio
async def test_from_yaml_sees_parent_scope():
    evaluator = Evaluator()
    tree = from_yaml("total: !expr base * 2\n", evaluator, parent=Scope({"base": 21}))
    assert await tree.get("total") == 42


@pytest.mark.asyncio
async def test_from_yaml_without_evaluator():
    tree = from_yaml("a: 1\n")
    assert isinstance(tree, ObjectTree)
    assert isinstance(from_yaml("- 1\n- 2\n"), ListTree)
    assert from_yaml("just text") == "just text"


@pytest.mark.asyncio
async def test_from_json():
    tree = from_json('{"a": {"b": 2}}')
    assert await plain(tree) == {"a": {"b": 2}}
    assert from_json("5") == 5


@pytest.mark.asyncio
async def test_to_yaml_and_to_json_resolve_trees():
    tree = ObjectTree({"a": 1, "list": [1, 2]})
    assert await to_yaml(tree) == "a: 1\nlist:\n- 1\n- 2\n"
    assert await to_json(tree, pretty=False) == '{"a": 1, "list": [1, 2]}'
    assert await to_json("text") == '"text"'


@pytest.mark.asyncio
async def test_buffer_unpacks_by_name_or_type():
    data = Buffer(b'{"a": 1}', name="data.json")
    unpacked = data.unpack()
    assert await unpacked.get("a") == 1

    typed = Buffer("a: 2\n", content_type="application/yaml")
    assert await typed.unpack().get("a") == 2

    page = Buffer(b"<p>hi</p>", name="index.html")
    assert page.unpack() == "<p>hi</p>"
    assert str(page) == "<p>hi</p>"
    assert page.text == "<p>hi</p>"
    assert isinstance(page, bytes)
    assert repr(page) == "Buffer(name='index.html', size=9)"


def test_buffer_text_honours_charset():
    data = Buffer("café".encode("latin-1"), content_type="text/plain; charset=latin-1")
    assert data.text == "café"
