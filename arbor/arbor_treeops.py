"""
Operations that work on any tree: traversal, aggregation, merging and
mapping, plus the handle used to swap a tree's target in place.
"""

import asyncio
import fnmatch
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from arbor.arbor_datatypes import TraverseError
from arbor.arbor_tree import (
    ChangeSignal,
    arity,
    connect_changes,
    from_treelike,
    invoke,
    is_mutable_tree,
    is_key_for_subtree,
    is_packed,
    is_tree,
    keys_from_path,
    trailing_slash,
)


async def _unpack(value):
    result = value.unpack()
    if inspect.isawaitable(result):
        result = await result
    return result


# =================================================================
# Traversal
# =================================================================

@dataclass(frozen=True)
class Found:
    value: Any


@dataclass(frozen=True)
class NotFound:
    key: Any
    keys: tuple

    @property
    def message(self) -> str:
        if self.key is not None and self.key != "":
            return f"{self.key} does not exist"
        return "Couldn't traverse the path: " + "/".join(str(k) for k in self.keys)


TraverseResult = Union[Found, NotFound]


async def traverse_result(treelike, *keys, scope=None) -> TraverseResult:
    """
    Walk `keys` from `treelike`.

    Packed values are unpacked, a lone trailing '' key returns the value
    reached so far, functions consume as many keys as they declare (at least
    one), and anything else is cast to a tree and asked for the next key.
    """
    if treelike is None:
        return NotFound(None, tuple(keys))
    value = treelike
    remaining = list(keys)
    key = None
    while remaining:
        if value is None:
            return NotFound(key, tuple(keys))
        if is_packed(value):
            value = await _unpack(value)
            if value is None:
                return NotFound(key, tuple(keys))
        if len(remaining) == 1 and remaining[0] == "":
            return Found(value)
        if callable(value) and not is_tree(value):
            count = max(arity(value), 1)
            args, remaining = remaining[:count], remaining[count:]
            key = None
            value = await invoke(value, *args, scope=scope)
        else:
            tree = from_treelike(value)
            key = remaining.pop(0)
            value = await tree.get(key)
    return Found(value)


async def traverse_or_throw(treelike, *keys, scope=None):
    result = await traverse_result(treelike, *keys, scope=scope)
    match result:
        case Found(value=value):
            return value
        case NotFound():
            raise TraverseError(result.message, result.key, result.keys)


async def traverse(treelike, *keys, scope=None):
    """Like `traverse_or_throw`, but a path that runs out yields None."""
    result = await traverse_result(treelike, *keys, scope=scope)
    if isinstance(result, Found):
        return result.value
    return None


async def traverse_path(treelike, path: str, scope=None):
    return await traverse(treelike, *keys_from_path(path), scope=scope)


# =================================================================
# Aggregation
# =================================================================

async def map_reduce(treelike, value_fn: Optional[Callable], reduce_fn: Callable):
    tree = from_treelike(treelike)
    keys = list(await tree.keys())

    async def resolve(key):
        value = await tree.get(key)
        if is_tree(value):
            return await map_reduce(value, value_fn, reduce_fn)
        if value_fn is None:
            return value
        result = value_fn(value, key, tree)
        if inspect.isawaitable(result):
            result = await result
        return result

    # Every get is issued before any is awaited; gather keeps key order
    values = await asyncio.gather(*(resolve(key) for key in keys))
    result = reduce_fn(list(values), keys)
    if inspect.isawaitable(result):
        result = await result
    return result


def _array_like(keys: list) -> bool:
    if not keys:
        return False
    for index, key in enumerate(keys):
        if isinstance(key, bool):
            return False
        if isinstance(key, int):
            if key != index:
                return False
        elif not (isinstance(key, str) and key == str(index)):
            return False
    return True


def _plain_reduce(values: list, keys: list):
    if _array_like(keys):
        return list(values)
    result = {}
    for key, value in zip(keys, values):
        name = trailing_slash.remove(key) if isinstance(key, str) else str(key)
        result[name] = value
    return result


async def plain(treelike):
    """Resolve a tree into nested dicts and lists."""
    return await map_reduce(treelike, None, _plain_reduce)


async def values(treelike) -> list:
    tree = from_treelike(treelike)
    keys = list(await tree.keys())
    return list(await asyncio.gather(*(tree.get(key) for key in keys)))


async def entries(treelike) -> list:
    tree = from_treelike(treelike)
    keys = list(await tree.keys())
    found = await asyncio.gather(*(tree.get(key) for key in keys))
    return list(zip(keys, found))


async def for_each(treelike, fn: Callable):
    tree = from_treelike(treelike)
    keys = list(await tree.keys())
    found = await asyncio.gather(*(tree.get(key) for key in keys))
    await asyncio.gather(*(invoke(fn, value, key) for key, value in zip(keys, found)))


async def has(treelike, key) -> bool:
    return await from_treelike(treelike).get(key) is not None


async def remove(tree, key) -> bool:
    if not is_mutable_tree(tree):
        raise TypeError("Can't remove a key from a read-only tree")
    existed = await tree.get(key) is not None
    await tree.set(key, None)
    return existed


async def clear(tree):
    if not is_mutable_tree(tree):
        raise TypeError("Can't clear a read-only tree")
    for key in list(await tree.keys()):
        await tree.set(key, None)
    return tree


async def assign(target, source):
    """Copy every value of `source` into the mutable tree `target`."""
    if not is_mutable_tree(target):
        raise TypeError("Assignment target must be a mutable tree")
    source = from_treelike(source)

    async def assign_key(key):
        value = await source.get(key)
        if is_tree(value):
            subtree = await target.get(key)
            if not is_mutable_tree(subtree):
                await target.set(key, {})
                subtree = await target.get(key)
            await assign(subtree, value)
        else:
            await target.set(key, value)

    await asyncio.gather(*(assign_key(key) for key in await source.keys()))
    return target


def to_function(treelike) -> Callable:
    tree = from_treelike(treelike)

    async def fn(key):
        if isinstance(key, str):
            return await traverse(tree, *keys_from_path(key))
        return await tree.get(key)

    return fn


# =================================================================
# Composite trees
# =================================================================

class MergeTree:
    """
    Presents several trees as one. Keys are the union in first-seen order;
    the first tree defining a key supplies its value, and keys that are
    subtrees everywhere they are defined merge recursively.
    """

    def __init__(self, *trees, parent=None):
        self.trees = [from_treelike(t) for t in trees]
        self.parent = parent
        self.changed = ChangeSignal()
        for tree in self.trees:
            connect_changes(tree, self.changed.emit)

    async def keys(self) -> list:
        seen = {}
        for tree in self.trees:
            for key in await tree.keys():
                seen.setdefault(key, None)
        return list(seen)

    async def get(self, key):
        subtrees = []
        for tree in self.trees:
            value = await tree.get(key)
            if value is None:
                continue
            if not is_tree(value):
                if subtrees:
                    break
                return value
            subtrees.append(value)
        if not subtrees:
            return None
        if len(subtrees) == 1:
            return subtrees[0]
        return MergeTree(*subtrees, parent=self)

    def __repr__(self):
        return f"MergeTree({', '.join(repr(t) for t in self.trees)})"


def merge(*treelikes) -> MergeTree:
    return MergeTree(*treelikes)


class MapTree:
    """A view of a tree whose values (and optionally keys) are transformed."""

    def __init__(self, source, value_fn: Optional[Callable] = None,
                 key_fn: Optional[Callable] = None, deep: bool = False, parent=None):
        self.source = from_treelike(source)
        self.value_fn = value_fn
        self.key_fn = key_fn
        self.deep = deep
        self.parent = parent
        self._key_map: Optional[dict] = None
        self.changed = ChangeSignal()
        connect_changes(self.source, self._on_source_changed)

    def _on_source_changed(self, *args):
        self._key_map = None
        self.changed.emit()

    async def _mapped_keys(self) -> dict:
        if self._key_map is None:
            mapping = {}
            for key in await self.source.keys():
                mapped = await invoke(self.key_fn, key) if self.key_fn else key
                if mapped is not None:
                    mapping.setdefault(mapped, key)
            self._key_map = mapping
        return self._key_map

    async def keys(self) -> list:
        return list(await self._mapped_keys())

    async def get(self, key):
        source_key = key
        if self.key_fn is not None:
            source_key = (await self._mapped_keys()).get(key)
            if source_key is None:
                return None
        value = await self.source.get(source_key)
        if value is None:
            return None
        if self.deep and is_tree(value):
            return MapTree(value, self.value_fn, self.key_fn, deep=True, parent=self)
        if self.value_fn is None:
            return value
        return await invoke(self.value_fn, value, source_key, self.source)


def map_tree(treelike, value_fn: Optional[Callable] = None, key_fn: Optional[Callable] = None,
             deep: bool = False) -> MapTree:
    return MapTree(treelike, value_fn, key_fn=key_fn, deep=deep)


class FilterTree:
    """
    A view of a tree that only keeps the keys a filter lets through.

    The filter is a glob string such as `*.md`, applied at every level, or a
    tree. A filter tree's keys may themselves be globs; a true value keeps
    the key and a subtree value filters the matching subtree in turn.
    """

    def __init__(self, source, key_filter, parent=None):
        self.source = from_treelike(source)
        self.filter = key_filter if isinstance(key_filter, str) else from_treelike(key_filter)
        self.parent = parent
        self.changed = ChangeSignal()
        connect_changes(self.source, lambda *args: self.changed.emit())

    async def _match(self, key):
        """The filter entry for `key`: a truthy value, a subtree filter, or None."""
        name = trailing_slash.remove(key)
        if isinstance(self.filter, str):
            if await is_key_for_subtree(self.source, key):
                return self.filter
            return True if fnmatch.fnmatchcase(str(name), self.filter) else None
        value = await self.filter.get(name)
        if value is not None:
            return value
        for pattern in await self.filter.keys():
            if isinstance(pattern, str) and "*" in pattern and fnmatch.fnmatchcase(str(name), pattern):
                return await self.filter.get(pattern)
        return None

    async def keys(self) -> list:
        source_keys = list(await self.source.keys())
        matches = await asyncio.gather(*(self._match(key) for key in source_keys))
        return [key for key, match in zip(source_keys, matches) if match]

    async def get(self, key):
        match = await self._match(key)
        if not match:
            return None
        value = await self.source.get(key)
        if is_tree(value) and (isinstance(match, str) or is_tree(match)):
            return FilterTree(value, match, parent=self)
        return value


class TreeHandle:
    """
    A stable reference to a tree whose target can be swapped.

    Callers hold the handle; `replace` repoints it and emits `changed` so
    anything layered on top can refresh.
    """

    def __init__(self, target=None, parent=None):
        self.target = from_treelike(target) if target is not None else None
        self.parent = parent
        self.changed = ChangeSignal()
        self.task: Optional[asyncio.Task] = None

    def replace(self, target):
        self.target = from_treelike(target) if target is not None else None
        self.changed.emit()
        return self

    async def keys(self) -> list:
        if self.target is None:
            return []
        return list(await self.target.keys())

    async def get(self, key):
        if self.target is None:
            return None
        return await self.target.get(key)

    async def set(self, key, value):
        if not is_mutable_tree(self.target):
            raise TypeError("Handle target is read-only")
        await self.target.set(key, value)
        return self

    def __repr__(self):
        return f"TreeHandle({self.target!r})"
