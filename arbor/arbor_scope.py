"""
Scope chains: an ordered sequence of trees searched front to back.
"""

from typing import Any, Optional, Tuple

from arbor.arbor_tree import from_treelike, is_tree, trailing_slash


class BindingsTree:
    """Name/value bindings for a call frame or a pattern match; values are not wrapped."""

    def __init__(self, bindings: Optional[dict] = None):
        self.bindings = dict(bindings or {})

    async def keys(self) -> list:
        return list(self.bindings)

    async def get(self, key):
        return self.bindings.get(trailing_slash.remove(key))

    def __repr__(self):
        return f"BindingsTree({self.bindings!r})"


class Scope:
    """An immutable, flattened chain of trees that is itself a tree."""

    def __init__(self, *treelikes):
        trees = []
        for item in treelikes:
            if item is None:
                continue
            if isinstance(item, Scope):
                trees.extend(item.trees)
            else:
                trees.append(from_treelike(item))
        self._trees: Tuple[Any, ...] = tuple(trees)

    @property
    def trees(self) -> Tuple[Any, ...]:
        return self._trees

    def __iter__(self):
        return iter(self._trees)

    def __len__(self):
        return len(self._trees)

    async def keys(self) -> list:
        seen = {}
        for tree in self._trees:
            for key in await tree.keys():
                seen.setdefault(key, None)
        return list(seen)

    async def get(self, key):
        return await lookup(self, key)

    def __repr__(self):
        return f"Scope({', '.join(type(t).__name__ for t in self._trees)})"


async def lookup(scope: Scope, key) -> Any:
    for tree in scope.trees:
        value = await tree.get(key)
        if value is not None:
            return value
    return None


async def inherited_lookup(scope: Scope, key) -> Any:
    """
    Lookup that starts one tree out from the tree owning the reference.

    Bindings at the front of the chain belong to call frames or pattern
    matches made inside that tree, so they are skipped along with it.
    """
    trees = scope.trees
    start = 0
    while start < len(trees) and isinstance(trees[start], BindingsTree):
        start += 1
    for tree in trees[start + 1:]:
        value = await tree.get(key)
        if value is not None:
            return value
    return None


def get_scope(tree: Optional[Any]) -> Scope:
    """
    The scope visible from inside `tree`: the tree itself followed by the
    scope of its parent. A tree that carries an explicit `scope` uses that.
    """
    if tree is None:
        return Scope()
    explicit = getattr(tree, "scope", None)
    if isinstance(explicit, Scope):
        return explicit
    parent = getattr(tree, "parent", None)
    if parent is None or parent is tree:
        return Scope(tree)
    return Scope(tree, get_scope(parent))


class ScopedTree:
    """A tree view that reports a fixed scope for code evaluated inside it."""

    def __init__(self, tree, scope: Scope):
        self.tree = from_treelike(tree)
        self.scope = Scope(self.tree, scope)
        self.parent = getattr(self.tree, "parent", None)

    async def keys(self) -> list:
        return list(await self.tree.keys())

    async def get(self, key):
        return await self.tree.get(key)


def tree_with_scope(tree, scope: Scope) -> ScopedTree:
    if not is_tree(tree):
        tree = from_treelike(tree)
    return ScopedTree(tree, scope)
