import asyncio
import inspect
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from arbor.arbor_datatypes import ArborSyntaxError, Location, RuntimeConfig
from arbor.arbor_http import SiteTree
from arbor.arbor_interpreter import Evaluator, concat_text, get_text
from arbor.arbor_keys import compose_tree
from arbor.arbor_scope import BindingsTree, Scope, get_scope, tree_with_scope
from arbor.arbor_serialize import from_json, from_yaml, to_json, to_yaml
from arbor.arbor_tree import (
    ConstantTree,
    FunctionTree,
    connect_changes,
    from_treelike,
    invoke,
    is_key_for_subtree,
    is_packed,
    is_tree,
    is_treelike,
)
from arbor.arbor_treeops import (
    FilterTree,
    MapTree,
    MergeTree,
    TreeHandle,
    assign,
    clear,
    entries,
    for_each,
    has,
    map_reduce,
    plain,
    remove,
    to_function,
    traverse,
    values,
)


def language_name(method_name: str) -> str:
    """'_values_deep' -> 'valuesDeep', '_from' -> 'from'."""
    head, *rest = method_name.strip("_").split("_")
    return head + "".join(part.capitalize() for part in rest)


def message_for_error(error: BaseException) -> str:
    """Messages from the outermost error down to its root cause, one per line."""
    lines = []
    while error.__cause__ is not None:
        lines.append(str(error))
        error = error.__cause__
    lines.append(f"{type(error).__name__}: {error}")
    return "\n".join(lines)


def _as_function(fn):
    if fn is None or (callable(fn) and not is_tree(fn)):
        return fn
    return to_function(fn)


def _defineds_reduce(values: list, keys: list):
    result = {}
    for key, value in zip(keys, values):
        if value is not None:
            result[key] = value
    return result or None


class ExceptionsTree:
    """A view of a tree whose values are the errors raised getting them."""

    def __init__(self, tree, parent=None):
        self.tree = from_treelike(tree)
        self.parent = parent

    async def keys(self) -> list:
        return list(await self.tree.keys())

    async def get(self, key):
        try:
            value = await self.tree.get(key)
        except Exception as error:
            return f"{type(error).__name__}: {error}"
        if is_tree(value):
            return ExceptionsTree(value, parent=self)
        return None


# ===================================================================
# Builtins
# ===================================================================

class StdLib:
    """
    Python implementations of the builtins.

    Every `_name` method is exposed to the language under its camelCase
    name; `_values_deep` is available as `valuesDeep`.
    """

    def __init__(self, evaluator):
        self.evaluator = evaluator

    def builtins(self) -> Dict[str, Any]:
        names = {}
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                names[language_name(name)] = member
        names["tree:"] = self.tree_namespace()
        return names

    def tree_namespace(self) -> Dict[str, Any]:
        """Operations available as `tree:name`."""
        return {
            "assign": assign,
            "clear": clear,
            "concat": self._concat,
            "defineds": self._defineds,
            "entries": self._entries,
            "exceptions": self._exceptions,
            "filter": self._filter,
            "forEach": for_each,
            "from": self._from,
            "has": has,
            "isKeyForSubtree": is_key_for_subtree,
            "isTree": is_tree,
            "keys": self._keys,
            "map": self._map,
            "merge": self._merge,
            "plain": self._plain,
            "remove": remove,
            "traverse": self._traverse,
            "values": self._values,
            "valuesDeep": self._values_deep,
        }

    # --- Tree contents ---
    async def _plain(self, treelike):
        if not is_treelike(treelike):
            return treelike
        return await plain(treelike)

    async def _keys(self, treelike):
        return list(await from_treelike(treelike).keys())

    async def _values(self, treelike):
        return await values(treelike)

    async def _values_deep(self, treelike):
        def flatten(items, keys):
            flat = []
            for item in items:
                if isinstance(item, list):
                    flat.extend(item)
                else:
                    flat.append(item)
            return flat
        return await map_reduce(treelike, None, flatten)

    async def _entries(self, treelike):
        return [[key, value] for key, value in await entries(treelike)]

    async def _defineds(self, treelike, *, scope=None):
        result = await map_reduce(treelike, None, _defineds_reduce)
        if result is None:
            return None
        return tree_with_scope(result, scope) if scope is not None else from_treelike(result)

    async def _exceptions(self, treelike, *, scope=None):
        return await self._defineds(ExceptionsTree(treelike), scope=scope)

    def _unpack(self, value):
        return value.unpack() if is_packed(value) else value

    async def _traverse(self, treelike, *keys, scope=None):
        return await traverse(treelike, *keys, scope=scope)

    # --- Building trees ---
    def _from(self, treelike, *, scope=None):
        if treelike is None:
            return None
        tree = from_treelike(treelike)
        return tree_with_scope(tree, scope) if scope is not None else tree

    def _filter(self, treelike, key_filter, *, scope=None):
        """Only the values whose keys match `key_filter`, a glob or a tree of globs."""
        if treelike is None:
            return None
        tree = FilterTree(treelike, key_filter)
        return tree_with_scope(tree, scope) if scope is not None else tree

    def _merge(self, *treelikes):
        return MergeTree(*[t for t in treelikes if t is not None])

    def _map(self, treelike, value_fn, key_fn=None, deep=False):
        return MapTree(treelike, _as_function(value_fn), key_fn=_as_function(key_fn), deep=bool(deep))

    def _fn(self, invocable, keys=None):
        return FunctionTree(_as_function(invocable), keys)

    async def _concat(self, *args, scope=None):
        return await concat_text(*args, scope=scope)

    def _formulas(self, treelike, *, scope=None):
        """Apply formulas and additions to a treelike, seeing `scope` beyond it."""
        return compose_tree(from_treelike(treelike), self.evaluator, parent=scope)

    def _site(self, href):
        return SiteTree(get_text(href), timeout=self.evaluator.config.http_timeout)

    # --- Serialization ---
    def _yaml(self, text, *, scope=None):
        return from_yaml(get_text(text), self.evaluator, parent=scope)

    def _json(self, text):
        return from_json(get_text(text))

    async def _to_yaml(self, treelike):
        return await to_yaml(treelike)

    async def _to_json(self, treelike):
        return await to_json(treelike)

    # --- Change tracking ---
    async def _watch(self, treelike, fn=None, *, scope=None):
        """
        Re-evaluate `fn` whenever the watched tree changes. The result is a
        handle whose target is swapped for the fresh result each time.
        """
        if treelike is None:
            return None
        container = from_treelike(treelike)
        if fn is None:
            return container

        fn_scope = Scope(get_scope(container), scope)
        handle = TreeHandle(await evaluate_watched(fn, fn_scope))

        async def refresh():
            handle.replace(await evaluate_watched(fn, fn_scope))

        def on_change(*args):
            handle.task = asyncio.ensure_future(refresh())

        if not connect_changes(container, on_change):
            self.evaluator._dbg("watch: tree has no change signal", container)
        return handle


async def evaluate_watched(fn, scope):
    """The tree `fn` produces, or a constant tree holding why it produced none."""
    message = None
    result = None
    try:
        result = await invoke(fn, scope=scope)
    except Exception as error:
        message = message_for_error(error)
    if is_treelike(result):
        return from_treelike(result)
    if message is None:
        message = "warning: watch expression did not return a tree"
    print(message, file=sys.stderr)
    return ConstantTree(message)


# ===================================================================
# Script Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_location: Optional[Location] = None

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_location is not None and not msg.startswith("Error on line "):
            return f"Error on line {self.error_location.line}, col {self.error_location.col}: {msg}"
        return msg


class ScriptRunner:
    """
    Compiles and evaluates expressions against a globals tree.

    The globals get formulas and additions applied; builtins sit at the end
    of the scope so a builtin passed by name, as in `map(items, plain)`,
    still resolves.
    """

    def __init__(self, globals=None, config: Optional[RuntimeConfig] = None):
        self.evaluator = Evaluator(config)
        self.builtins_tree = BindingsTree(self.evaluator.builtins)
        self.globals = compose_tree(
            from_treelike(globals if globals is not None else {}),
            self.evaluator,
            parent=self.builtins_tree,
        )
        self.source_path: Optional[Path] = None

    @property
    def scope(self) -> Scope:
        return get_scope(self.globals)

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_error(self, e: BaseException, source: str) -> tuple[str, Optional[Location]]:
        match e:
            case ArborSyntaxError():
                msg = f"SyntaxError: {e.msg}"
                location = e.location
            case _:
                msg = f"{type(e).__name__}: {e}"
                cause = e.__cause__
                while cause is not None:
                    msg = f"{msg}\ncaused by {type(cause).__name__}: {cause}"
                    cause = cause.__cause__
                location = getattr(e, 'arbor_location', None)

        node_text = None
        node = getattr(e, 'arbor_node', None)
        if node is not None and node.location is not None:
            node_text = node.location.text
        if node_text and node_text != source.strip():
            msg = f"{msg}\nevaluating: {node_text}"

        if location is not None and location.source == source:
            context = self._source_context(source, location.line, location.col)
            if context:
                msg = f"{msg}\n{context}"
        return msg, location

    async def handle_script(self, source: str) -> ExecutionResult:
        """The main entry point to execute a script."""
        try:
            code = self.evaluator.compile(source)
            value = await self.evaluator.evaluate(code, self.scope)
        except Exception as e:
            msg, location = self._format_error(e, source)
            self.evaluator._dbg("script failed:", repr(e))
            return ExecutionResult(status='error', error_message=msg, error_location=location)
        return ExecutionResult(status='success', value=value)

    async def run_file(self, path) -> ExecutionResult:
        p = Path(path)
        self.source_path = p
        source = p.read_text(encoding="utf-8")
        # Leading "#!" lines let scripts be executable
        source = re.sub(r"\A#![^\n]*\n", "\n", source)
        return await self.handle_script(source)
