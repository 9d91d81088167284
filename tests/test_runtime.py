import pytest

from arbor.arbor_interpreter import Evaluator
from arbor.arbor_keys import KeysTree
from arbor.arbor_runtime import (
    ExceptionsTree,
    ExecutionResult,
    ScriptRunner,
    StdLib,
    evaluate_watched,
    language_name,
    message_for_error,
)
from arbor.arbor_scope import Scope, lookup
from arbor.arbor_tree import ConstantTree, FunctionTree, ObjectTree
from arbor.arbor_treeops import TreeHandle, plain


@pytest.fixture
def stdlib():
    return StdLib(Evaluator())


class Faulty:
    async def keys(self):
        return ["ok", "bad"]

    async def get(self, key):
        if key == "bad":
            raise ValueError("boom")
        return "fine"


def test_language_name():
    assert language_name("_values_deep") == "valuesDeep"
    assert language_name("_from") == "from"
    assert language_name("_to_yaml") == "toYaml"


def test_message_for_error_walks_causes():
    try:
        try:
            raise ValueError("root")
        except ValueError as inner:
            raise RuntimeError("outer") from inner
    except RuntimeError as error:
        assert message_for_error(error) == "outer\nValueError: root"
    assert message_for_error(KeyError("k")) == "KeyError: 'k'"


# =================================================================
# Builtins
# =================================================================

def test_builtin_names(stdlib):
    names = stdlib.builtins()
    for name in ("plain", "keys", "valuesDeep", "from", "map", "toYaml", "watch", "site", "tree:"):
        assert name in names
    assert "evaluateWatched" not in names
    assert "builtins" not in names
    assert "forEach" in names["tree:"]


@pytest.mark.asyncio
async def test_tree_contents(stdlib):
    data = {"a": 1, "b": {"c": 2, "d": [3, 4]}}
    assert await stdlib._keys(data) == ["a", "b"]
    assert await stdlib._keys(["x", "y"]) == [0, 1]
    assert await stdlib._values({"a": 1, "b": 2}) == [1, 2]
    assert await stdlib._values_deep(data) == [1, 2, 3, 4]
    assert await stdlib._entries({"a": 1}) == [["a", 1]]
    assert await stdlib._plain(data) == data
    assert await stdlib._plain("text") == "text"


@pytest.mark.asyncio
async def test_defineds_drops_absent_values(stdlib):
    tree = await stdlib._defineds({"a": 1, "b": None, "c": {"d": None}})
    assert await plain(tree) == {"a": 1}
    assert await stdlib._defineds({"a": None}) is None


@pytest.mark.asyncio
async def test_exceptions_collects_error_messages(stdlib):
    view = ExceptionsTree(Faulty())
    assert await view.get("ok") is None
    assert await view.get("bad") == "ValueError: boom"
    tree = await stdlib._exceptions(Faulty())
    assert await plain(tree) == {"bad": "ValueError: boom"}


@pytest.mark.asyncio
async def test_from_attaches_scope(stdlib):
    scope = Scope({"outer": 1})
    tree = stdlib._from({"a": 2}, scope=scope)
    assert await tree.get("a") == 2
    assert await lookup(tree.scope, "outer") == 1
    assert stdlib._from(None) is None


@pytest.mark.asyncio
async def test_filter_builtin(stdlib):
    scope = Scope({"outer": 1})
    tree = stdlib._filter({"a.md": 1, "b.txt": 2}, "*.md", scope=scope)
    assert await plain(tree) == {"a.md": 1}
    assert await lookup(tree.scope, "outer") == 1
    assert stdlib._filter(None, "*.md") is None
    assert "filter" in stdlib.builtins()["tree:"]


@pytest.mark.asyncio
async def test_merge_map_and_fn(stdlib):
    merged = stdlib._merge({"a": 1}, None, {"a": 2, "b": 3})
    assert await plain(merged) == {"a": 1, "b": 3}

    mapped = stdlib._map({"a": 1}, lambda value: value + 1)
    assert await plain(mapped) == {"a": 2}
    # A tree given as the value function is traversed with each value
    lookup_map = stdlib._map({"x": "one"}, {"one": "uno"})
    assert await lookup_map.get("x") == "uno"

    tree = stdlib._fn(lambda key: key * 2, ["a", "b"])
    assert isinstance(tree, FunctionTree)
    assert await plain(tree) == {"a": "aa", "b": "bb"}


@pytest.mark.asyncio
async def test_concat_and_traverse(stdlib):
    assert await stdlib._concat("a", ["b", "c"], 1) == "abc1"
    assert await stdlib._traverse({"a": {"b": 1}}, "a", "b") == 1
    assert await stdlib._traverse({"a": {"b": 1}}, "x", "b") is None


@pytest.mark.asyncio
async def test_formulas_builtin(stdlib):
    tree = stdlib._formulas({"a": 2, "double = a * 2": None})
    assert isinstance(tree, KeysTree)
    assert await tree.keys() == ["a", "double"]
    assert await tree.get("double") == 4


@pytest.mark.asyncio
async def test_serialization_builtins(stdlib):
    tree = stdlib._yaml("a: 1\nb: [x, y]\n")
    assert await plain(tree) == {"a": 1, "b": ["x", "y"]}
    assert await plain(stdlib._json('{"a": [1, 2]}')) == {"a": [1, 2]}
    assert await stdlib._to_yaml({"a": 1}) == "a: 1\n"
    assert await stdlib._to_json({"a": 1}) == '{\n  "a": 1\n}'


def test_site_builtin_uses_configured_timeout(stdlib):
    tree = stdlib._site("https://example.com")
    assert tree.href == "https://example.com/"
    assert tree.timeout == stdlib.evaluator.config.http_timeout


# =================================================================
# Watching
# =================================================================

@pytest.mark.asyncio
async def test_watch_refreshes_on_change(stdlib):
    source = ObjectTree({"a": 1})

    async def summarize(*, scope=None):
        return {"total": await lookup(scope, "a")}

    handle = await stdlib._watch(source, summarize)
    assert isinstance(handle, TreeHandle)
    assert await handle.get("total") == 1

    await source.set("a", 5)
    await handle.task
    assert await handle.get("total") == 5


@pytest.mark.asyncio
async def test_watch_without_function(stdlib):
    source = ObjectTree({"a": 1})
    assert await stdlib._watch(source) is source
    assert await stdlib._watch(None) is None


@pytest.mark.asyncio
async def test_evaluate_watched_failures(capsys):
    def broken():
        raise ValueError("bad")

    tree = await evaluate_watched(broken, Scope())
    assert isinstance(tree, ConstantTree)
    assert await tree.get("anything") == "ValueError: bad"

    tree = await evaluate_watched(lambda: 42, Scope())
    assert await tree.get("x") == "warning: watch expression did not return a tree"
    err = capsys.readouterr().err
    assert "ValueError: bad" in err
    assert "did not return a tree" in err


# =================================================================
# Script execution
# =================================================================

@pytest.mark.asyncio
async def test_handle_script_success():
    runner = ScriptRunner({"name": "World"})
    result = await runner.handle_script("`Hello, ${name}!`")
    assert result.status == "success"
    assert result.value == "Hello, World!"
    assert result.format_error() == ""


@pytest.mark.asyncio
async def test_globals_get_formulas():
    runner = ScriptRunner({"a": 2, "b = a * 3": None})
    result = await runner.handle_script("b")
    assert result.value == 6


@pytest.mark.asyncio
async def test_builtins_resolve_as_values():
    runner = ScriptRunner({"data": {"a": 1, "b": 2}})
    result = await runner.handle_script("plain(map(data, =_ + 1))")
    assert result.value == {"a": 2, "b": 3}
    result = await runner.handle_script("tree:keys(data)")
    assert result.value == ["a", "b"]


@pytest.mark.asyncio
async def test_script_builtins_for_filter_and_for_each():
    runner = ScriptRunner({"data": {"a.md": 1, "b.txt": 2}})
    result = await runner.handle_script("plain(filter(data, '*.md'))")
    assert result.status == "success", result.error_message
    assert result.value == {"a.md": 1}
    result = await runner.handle_script("tree:forEach(data, (v, k) => v)")
    assert result.status == "success", result.error_message


@pytest.mark.asyncio
async def test_property_lambda_sees_enclosing_value():
    runner = ScriptRunner({"n": 10})
    result = await runner.handle_script("{ n: (x) => n + x }/n(1)")
    assert result.status == "success", result.error_message
    assert result.value == 11


@pytest.mark.asyncio
async def test_yaml_expressions_see_script_scope():
    runner = ScriptRunner({"config.yaml": "a: 1\nb: !expr a + offset\n", "offset": 10})
    result = await runner.handle_script("yaml(config.yaml)/b")
    assert result.status == "success", result.error_message
    assert result.value == 11


@pytest.mark.asyncio
async def test_handle_script_syntax_error():
    runner = ScriptRunner()
    result = await runner.handle_script("(1")
    assert result.status == "error"
    assert result.error_message.startswith("SyntaxError: Expected ')'")
    assert "> 1 | (1" in result.error_message
    assert result.format_error().startswith("Error on line 1, col 3: SyntaxError")


@pytest.mark.asyncio
async def test_handle_script_runtime_error():
    runner = ScriptRunner()
    result = await runner.handle_script("1 + missing")
    assert result.status == "error"
    assert result.error_message.startswith("ReferenceNotFound: missing is not defined")
    assert "\nevaluating: missing" in result.error_message
    assert result.error_location.col == 5


def test_format_error_without_location():
    result = ExecutionResult(status="error", error_message="boom")
    assert result.format_error() == "boom"


@pytest.mark.asyncio
async def test_run_file_skips_shebang(tmp_path):
    script = tmp_path / "sum.arbor"
    script.write_text("#!/usr/bin/env arbor\n1 + 1\n", encoding="utf-8")
    runner = ScriptRunner()
    result = await runner.run_file(script)
    assert result.value == 2
    assert runner.source_path == script
