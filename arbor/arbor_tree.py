"""
The tree contract and the adapters that let ordinary Python values be
treated as trees.

A tree is any object with awaitable `keys()` and `get(key)` methods. Mutable
trees also offer `set(key, value)`. Nothing here requires a base class; the
adapters below exist so that mappings, sequences, callables and packed
values can be cast into that shape by `from_treelike`.
"""

import asyncio
import inspect
import numbers
from collections.abc import Mapping
from typing import Any, Callable, Iterable, List, Optional

from arbor.arbor_datatypes import CastError


# =================================================================
# Trailing slash helpers
# =================================================================

class trailing_slash:
    """A trailing '/' on a key marks that the caller expects a subtree."""

    @staticmethod
    def has(key) -> bool:
        return isinstance(key, str) and key.endswith("/")

    @staticmethod
    def add(key):
        if isinstance(key, str) and not key.endswith("/"):
            return key + "/"
        return key

    @staticmethod
    def remove(key):
        if isinstance(key, str) and len(key) > 1 and key.endswith("/"):
            return key[:-1]
        return key

    @staticmethod
    def toggle(key, flag: bool):
        return trailing_slash.add(key) if flag else trailing_slash.remove(key)


def keys_from_path(path: str) -> List[str]:
    """'a/b/c' -> ['a', 'b', 'c']; a trailing slash yields a final '' key."""
    if path.startswith("/"):
        path = path[1:]
    if path == "":
        return []
    return path.split("/")


# =================================================================
# Predicates
# =================================================================

def is_tree(obj: Any) -> bool:
    if obj is None or isinstance(obj, (type, Mapping, str, bytes)):
        return False
    return callable(getattr(obj, "keys", None)) and callable(getattr(obj, "get", None))


def is_mutable_tree(obj: Any) -> bool:
    return is_tree(obj) and callable(getattr(obj, "set", None))


def is_packed(obj: Any) -> bool:
    return not isinstance(obj, type) and callable(getattr(obj, "unpack", None))


def is_plain_object(obj: Any) -> bool:
    return isinstance(obj, (Mapping, list, tuple, set, frozenset))


def is_treelike(obj: Any) -> bool:
    """True for anything `from_treelike` casts without falling back to object fields."""
    if obj is None or isinstance(obj, (str, bytes, bool, numbers.Number)):
        return False
    return is_tree(obj) or is_packed(obj) or is_plain_object(obj) or callable(obj)


async def is_key_for_subtree(tree, key) -> bool:
    own_check = getattr(tree, "is_key_for_subtree", None)
    if callable(own_check):
        result = own_check(key)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)
    return is_tree(await tree.get(key))


# =================================================================
# Calling host functions
# =================================================================

def _signature(fn) -> Optional[inspect.Signature]:
    try:
        return inspect.signature(fn)
    except (TypeError, ValueError):
        return None


def accepts_scope(fn) -> bool:
    sig = _signature(fn)
    return sig is not None and "scope" in sig.parameters


def _positional_params(sig: inspect.Signature) -> list:
    return [
        p for p in sig.parameters.values()
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD) and p.name != "scope"
    ]


def arity(fn) -> int:
    """Number of required positional parameters of a callable."""
    declared = getattr(fn, "arity", None)
    if isinstance(declared, int) and not isinstance(declared, bool):
        return declared
    sig = _signature(fn)
    if sig is None:
        return 0
    return sum(1 for p in _positional_params(sig) if p.default is p.empty)


def _max_positional(fn) -> Optional[int]:
    sig = _signature(fn)
    if sig is None:
        return None
    if any(p.kind == p.VAR_POSITIONAL for p in sig.parameters.values()):
        return None
    return len(_positional_params(sig))


async def invoke(fn: Callable, *args, scope=None) -> Any:
    """
    Call a host or language function.

    Surplus positional arguments are dropped, a `scope` keyword is passed
    when the callable declares one, and awaitable results are awaited.
    """
    limit = _max_positional(fn)
    if limit is not None:
        args = args[:limit]
    kwargs = {}
    if scope is not None and accepts_scope(fn):
        kwargs["scope"] = scope
    result = fn(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


# =================================================================
# Change notification
# =================================================================

class ChangeSignal:
    """An ordered list of listeners notified when a tree's contents change."""

    def __init__(self):
        self._listeners: List[Callable] = []

    def connect(self, listener: Callable) -> Callable:
        if listener not in self._listeners:
            self._listeners.append(listener)
        return listener

    def disconnect(self, listener: Callable):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, *args):
        for listener in list(self._listeners):
            listener(*args)

    def __len__(self):
        return len(self._listeners)


def connect_changes(tree, listener: Callable) -> bool:
    """Subscribe to a tree's `changed` signal if it has one."""
    signal = getattr(tree, "changed", None)
    if isinstance(signal, ChangeSignal):
        signal.connect(listener)
        return True
    return False


# =================================================================
# Adapters
# =================================================================

def _adopt(value, parent):
    if parent is not None and is_tree(value) and getattr(value, "parent", False) is None:
        value.parent = parent
    return value


class ObjectTree:
    """A tree over a mapping, or over the public attributes of an object."""

    def __init__(self, obj: Any, parent=None):
        self.object = obj
        self.parent = parent
        self.changed = ChangeSignal()

    @property
    def _is_mapping(self) -> bool:
        return isinstance(self.object, Mapping)

    def _make_subtree(self, value):
        if isinstance(value, Mapping):
            return ObjectTree(value, parent=self)
        if isinstance(value, (list, tuple)):
            return ListTree(value, parent=self)
        return _adopt(value, self)

    async def keys(self) -> list:
        if self._is_mapping:
            return list(self.object.keys())
        return [k for k in vars(self.object) if not k.startswith("_")]

    def _raw(self, key):
        key = trailing_slash.remove(key)
        if self._is_mapping:
            if key in self.object:
                return self.object[key]
            # Mappings keyed by non-strings can still be addressed by text keys
            for k in self.object:
                if not isinstance(k, str) and str(k) == key:
                    return self.object[k]
            return None
        if not isinstance(key, str) or key.startswith("_"):
            return None
        return getattr(self.object, key, None)

    async def get(self, key):
        value = self._raw(key)
        if inspect.isawaitable(value):
            value = await value
        return self._make_subtree(value)

    async def is_key_for_subtree(self, key) -> bool:
        value = self._raw(key)
        return is_plain_object(value) or is_tree(value) or is_packed(value)

    async def set(self, key, value):
        key = trailing_slash.remove(key)
        if self._is_mapping:
            if value is None:
                self.object.pop(key, None)
            else:
                self.object[key] = value
        elif value is None:
            if hasattr(self.object, key):
                delattr(self.object, key)
        else:
            setattr(self.object, key, value)
        self.changed.emit()
        return self

    def __repr__(self):
        return f"ObjectTree({self.object!r})"


class ListTree:
    """A tree over a sequence, keyed by index."""

    def __init__(self, items: Iterable, parent=None):
        self.items = items if isinstance(items, list) else list(items)
        self.parent = parent
        self.changed = ChangeSignal()

    def _index(self, key) -> Optional[int]:
        key = trailing_slash.remove(key)
        if isinstance(key, bool):
            return None
        if isinstance(key, int):
            return key
        if isinstance(key, str) and key.isdigit():
            return int(key)
        return None

    async def keys(self) -> list:
        return list(range(len(self.items)))

    async def get(self, key):
        index = self._index(key)
        if index is None or not 0 <= index < len(self.items):
            return None
        value = self.items[index]
        if isinstance(value, Mapping):
            return ObjectTree(value, parent=self)
        if isinstance(value, (list, tuple)):
            return ListTree(value, parent=self)
        return _adopt(value, self)

    async def set(self, key, value):
        index = self._index(key)
        if index is None:
            raise KeyError(f"List trees only accept integer keys, not {key!r}")
        if value is None:
            if 0 <= index < len(self.items):
                del self.items[index]
        elif index == len(self.items):
            self.items.append(value)
        else:
            self.items[index] = value
        self.changed.emit()
        return self

    def __repr__(self):
        return f"ListTree({self.items!r})"


class FunctionTree:
    """A tree whose values are produced by calling a function with the key."""

    def __init__(self, fn: Callable, keys: Optional[Iterable] = None, parent=None):
        self.fn = fn
        self.declared_keys = list(keys) if keys is not None else []
        self.parent = parent

    async def keys(self) -> list:
        return list(self.declared_keys)

    async def get(self, key):
        return _adopt(await invoke(self.fn, key), self)

    def __repr__(self):
        return f"FunctionTree({self.fn!r})"


class DeferredTree:
    """A tree that loads its real contents on first use."""

    def __init__(self, loader: Callable, parent=None):
        self.loader = loader
        self.parent = parent
        self._tree = None
        self._task: Optional[asyncio.Future] = None
        self.changed = ChangeSignal()

    async def load(self):
        if self._tree is None:
            if self._task is None:
                self._task = asyncio.ensure_future(invoke(self.loader))
            value = await self._task
            self._tree = from_treelike(value, parent=self.parent)
            connect_changes(self._tree, self.changed.emit)
        return self._tree

    async def keys(self) -> list:
        return list(await (await self.load()).keys())

    async def get(self, key):
        return await (await self.load()).get(key)

    async def set(self, key, value):
        tree = await self.load()
        if not is_mutable_tree(tree):
            raise TypeError("Deferred tree content is read-only")
        await tree.set(key, value)
        return self


class ConstantTree:
    """A tree that returns the same value for every key."""

    def __init__(self, value, parent=None):
        self.value = value
        self.parent = parent

    async def keys(self) -> list:
        return []

    async def get(self, key):
        return self.value

    def __repr__(self):
        return f"ConstantTree({self.value!r})"


# =================================================================
# Casting
# =================================================================

def from_treelike(obj: Any, parent=None):
    """
    Cast a treelike value into a tree.

    Trees are returned unchanged. Packed values are unpacked (lazily when
    unpacking is asynchronous), mappings and sequences get adapters,
    callables become function trees, and objects expose their public fields.
    """
    if is_tree(obj):
        return _adopt(obj, parent)
    if is_packed(obj):
        unpack = obj.unpack
        if inspect.iscoroutinefunction(unpack):
            return DeferredTree(unpack, parent=parent)
        return from_treelike(unpack(), parent=parent)
    if obj is None or isinstance(obj, (str, bytes, bytearray, bool, numbers.Number)):
        raise CastError(obj)
    if isinstance(obj, Mapping):
        return ObjectTree(obj, parent=parent)
    if isinstance(obj, (list, tuple)):
        return ListTree(obj, parent=parent)
    if isinstance(obj, (set, frozenset)):
        return ListTree(list(obj), parent=parent)
    if callable(obj):
        return FunctionTree(obj, parent=parent)
    if hasattr(obj, "__dict__"):
        return ObjectTree(obj, parent=parent)
    raise CastError(obj)
