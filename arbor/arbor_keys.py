"""
Key discovery.

A KeysTree wraps an inner tree (usually a FormulasTree) and works out its
full key set: the inner tree's physical keys plus anything extensions add
as keys come in. New keys are queued and processed in waves until a wave
adds nothing. Each key is recorded with flags saying whether it is
virtual (not physically stored) and whether it is hidden from `keys()`.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from arbor.arbor_datatypes import KeyDiscoveryError, KeyEntry
from arbor.arbor_formulas import FormulasTree
from arbor.arbor_tree import (
    ChangeSignal,
    connect_changes,
    from_treelike,
    is_mutable_tree,
    is_tree,
    trailing_slash,
)
from arbor.arbor_treeops import MergeTree

CHILD_ADDITION_PREFIX = "+"
PEER_ADDITION_SUFFIX = "+"
INHERITABLE_PREFIXES = ("…", "...")


@dataclass
class KeyState:
    entries: Dict[Any, KeyEntry] = field(default_factory=dict)
    queue: deque = field(default_factory=deque)
    queued: set = field(default_factory=set)
    complete: bool = False


class KeysTree:
    """
    Wraps `inner` and runs key discovery with the given extensions.

    Extensions are classes (or factories) called with the KeysTree. They may
    define any of: reset(), key_added(key) -> dict of flags, keys_added(keys),
    fallback(key) -> value, decorate(key, value) -> value.
    """

    def __init__(self, inner, *extensions, parent=None, ignore=frozenset(),
                 max_passes: int = 100, evaluator=None):
        self.inner = from_treelike(inner)
        self.parent = parent
        self.ignore = frozenset(ignore)
        self.max_passes = max_passes
        self.evaluator = evaluator or getattr(self.inner, "evaluator", None)
        self.extensions = [make(self) for make in extensions]
        self.version = 0
        self._state = KeyState()
        self._discovering = False
        self.changed = ChangeSignal()
        if isinstance(self.inner, FormulasTree):
            self.inner.outer = self
        self._tracking = connect_changes(self.inner, self.on_change)

    def _dbg(self, *parts):
        if self.evaluator is not None:
            self.evaluator._dbg(*parts)

    def on_change(self, *args):
        self.version += 1
        self._state = KeyState()
        for extension in self.extensions:
            reset = getattr(extension, "reset", None)
            if reset is not None:
                reset()
        self.changed.emit(*args)

    def add_key(self, key, virtual: bool = True, hidden: bool = False):
        state = self._state
        if key in self.ignore or key in state.entries or key in state.queued:
            return
        state.queued.add(key)
        state.queue.append(KeyEntry(key, virtual=virtual, hidden=hidden))

    async def _seed_keys(self) -> list:
        physical = getattr(self.inner, "physical_keys", None)
        if physical is not None:
            return list(await physical())
        return list(await self.inner.keys())

    async def ensure_keys(self):
        """Run discovery unless it has run, or is running, for the current state."""
        if self._state.complete or self._discovering:
            return
        self._discovering = True
        try:
            await self._discover()
        finally:
            self._discovering = False

    async def _discover(self):
        state = KeyState()
        self._state = state
        for key in await self._seed_keys():
            self.add_key(key, virtual=False)

        waves = 0
        while state.queue:
            waves += 1
            if waves > self.max_passes:
                raise KeyDiscoveryError(f"Key discovery did not settle after {self.max_passes} waves")
            wave = []
            while state.queue:
                entry = state.queue.popleft()
                state.queued.discard(entry.key)
                flags = {}
                for extension in self.extensions:
                    key_added = getattr(extension, "key_added", None)
                    if key_added is not None:
                        flags.update(await key_added(entry.key) or {})
                entry = KeyEntry(
                    entry.key,
                    virtual=flags.get("virtual", entry.virtual),
                    hidden=flags.get("hidden", entry.hidden),
                )
                state.entries[entry.key] = entry
                wave.append(entry.key)
            for extension in self.extensions:
                keys_added = getattr(extension, "keys_added", None)
                if keys_added is not None:
                    await keys_added(wave)
        self._dbg("keys: settled after", waves, "waves with", len(state.entries), "keys")
        state.complete = True

    async def entries(self) -> List[KeyEntry]:
        await self.ensure_keys()
        return list(self._state.entries.values())

    async def all_keys(self) -> list:
        return [entry.key for entry in await self.entries()]

    async def public_keys(self) -> list:
        return [entry.key for entry in await self.entries() if not entry.hidden]

    async def real_keys(self) -> list:
        return [entry.key for entry in await self.entries() if not entry.virtual]

    async def keys(self) -> list:
        return await self.public_keys()

    async def get(self, key):
        value = await self.inner.get(key)
        if value is None:
            for extension in self.extensions:
                fallback = getattr(extension, "fallback", None)
                if fallback is not None:
                    value = await fallback(key)
                    if value is not None:
                        break
        for extension in self.extensions:
            decorate = getattr(extension, "decorate", None)
            if decorate is not None:
                value = await decorate(key, value)
        return value

    async def match_all(self, key) -> list:
        match_all = getattr(self.inner, "match_all", None)
        return list(await match_all(key)) if match_all is not None else []

    async def set(self, key, value):
        if not is_mutable_tree(self.inner):
            raise TypeError("Can't set a value in a read-only tree")
        await self.inner.set(key, value)
        if not self._tracking:
            self.on_change(key)
        return self

    def __repr__(self):
        return f"KeysTree({self.inner!r})"


# =================================================================
# Extensions
# =================================================================

class FormulaKeysExtension:
    """Hides formula keys and adds the keys the formulas imply."""

    def __init__(self, tree: KeysTree):
        self.tree = tree

    @property
    def formulas_tree(self) -> Optional[FormulasTree]:
        inner = self.tree.inner
        return inner if isinstance(inner, FormulasTree) else None

    async def key_added(self, key):
        formulas = self.formulas_tree
        if formulas is not None and formulas.is_formula_key(key):
            return {"hidden": True}
        return None

    async def keys_added(self, keys: list):
        formulas = self.formulas_tree
        if formulas is None:
            return
        known = dict.fromkeys(
            k for k in self.tree._state.entries if not formulas.is_formula_key(k)
        )
        before = set(known)
        for formula in await formulas.formulas():
            formula.add_implied_keys(known)
        for key in known:
            if key not in before:
                self.tree.add_key(key, virtual=True)


def is_child_addition_key(key) -> bool:
    return isinstance(key, str) and len(key) > 1 and key.startswith(CHILD_ADDITION_PREFIX)


def is_peer_addition_key(key) -> bool:
    return isinstance(key, str) and len(key) > 1 and key.endswith(PEER_ADDITION_SUFFIX) \
        and not is_child_addition_key(key)


def inheritable_name(key) -> Optional[str]:
    """'…name' -> 'name'; None for keys that aren't inheritable additions."""
    if not isinstance(key, str):
        return None
    for prefix in INHERITABLE_PREFIXES:
        if key.startswith(prefix) and len(key) > len(prefix):
            return key[len(prefix):]
    return None


class AdditionsExtension:
    """
    Merges in keys and values contributed by additions:

    - child additions: a `+name` key holding a tree whose keys and values
      are added to this tree;
    - peer additions: a `name+` key holding a tree merged into the `name`
      subtree, beneath that subtree's own values;
    - inheritable additions: a `…name` key whose value is visible as `name`
      in this tree and every tree below it.

    Precedence, highest first: local values, `…name` values defined in
    this tree, child additions in key order, values inherited from
    parents, then peer additions.
    """

    def __init__(self, tree: KeysTree):
        self.tree = tree
        self.peer_additions: List[Any] = []
        self.reset()

    def reset(self):
        self.child_additions: List[Any] = []
        self.inheritable: Dict[str, Any] = {}
        self.inherited: List[str] = []
        self.seeded = False

    async def key_added(self, key):
        if is_child_addition_key(key):
            addition = await self.tree.inner.get(key)
            if addition is not None:
                addition_tree = from_treelike(addition)
                self.child_additions.append(addition_tree)
                for addition_key in await _discoverable_keys(addition_tree):
                    if not is_child_addition_key(addition_key):
                        self.tree.add_key(addition_key, virtual=True)
            return {"hidden": True}
        name = inheritable_name(key)
        if name is not None:
            self.inheritable[name] = key
            self.tree.add_key(name, virtual=True)
            return {"hidden": True}
        if is_peer_addition_key(key):
            return {"hidden": True}
        return None

    async def keys_added(self, keys: list):
        if self.seeded:
            return
        self.seeded = True
        for peer in self.peer_additions:
            for peer_key in await _discoverable_keys(peer):
                self.tree.add_key(peer_key, virtual=True)
        parent_additions = _additions_of(self.tree.parent)
        if parent_additions is not None:
            await self.tree.parent.ensure_keys()
            self.inherited = parent_additions.inheritable_names()
            for name in self.inherited:
                self.tree.add_key(name, virtual=True)

    def inheritable_names(self) -> List[str]:
        names = dict.fromkeys(self.inherited)
        names.update(dict.fromkeys(self.inheritable))
        return list(names)

    async def fallback(self, key):
        if is_child_addition_key(key):
            return None
        await self.tree.ensure_keys()
        name = trailing_slash.remove(key)
        source = self.inheritable.get(name)
        if source is not None:
            value = await self.tree.inner.get(source)
            if value is not None:
                return value
        for addition in self.child_additions:
            value = await addition.get(key)
            if value is not None:
                return value
        if name in self.inherited and self.tree.parent is not None:
            value = await self.tree.parent.get(name)
            if value is not None:
                return value
        for peer in self.peer_additions:
            value = await peer.get(key)
            if value is not None:
                return value
        return None

    async def decorate(self, key, value):
        if not is_tree(value) or is_child_addition_key(key) or is_peer_addition_key(key):
            return value
        await self.tree.ensure_keys()
        peers = []
        peer_key = f"{trailing_slash.remove(key)}{PEER_ADDITION_SUFFIX}"
        if peer_key in self.tree._state.entries:
            peer = await self.tree.inner.get(peer_key)
            if peer is not None:
                peers.append(from_treelike(peer))
        if not peers:
            return value
        additions = _additions_of(value)
        if additions is not None:
            additions.peer_additions.extend(peers)
            value.on_change()
            return value
        return MergeTree(value, *peers)


def _additions_of(tree) -> Optional[AdditionsExtension]:
    for extension in getattr(tree, "extensions", None) or []:
        if isinstance(extension, AdditionsExtension):
            return extension
    return None


async def _discoverable_keys(tree) -> list:
    all_keys = getattr(tree, "all_keys", None)
    if all_keys is not None:
        return list(await all_keys())
    return list(await tree.keys())


class SubtreeExtension:
    """Wraps subtree values so formulas and additions apply at every level."""

    def __init__(self, tree: KeysTree):
        self.tree = tree

    async def decorate(self, key, value):
        if is_tree(value) and not isinstance(value, KeysTree) and self.tree.evaluator is not None:
            return compose_tree(value, self.tree.evaluator, parent=self.tree)
        return value


def compose_tree(base, evaluator, parent=None) -> KeysTree:
    """A tree with formulas, additions and key discovery applied, at every depth."""
    config = evaluator.config
    formulas = FormulasTree(base, evaluator, parent=parent)
    return KeysTree(
        formulas,
        FormulaKeysExtension,
        SubtreeExtension,
        AdditionsExtension,
        parent=parent,
        ignore=config.ignore_keys,
        max_passes=config.max_key_passes,
        evaluator=evaluator,
    )
