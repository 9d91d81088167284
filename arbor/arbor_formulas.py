"""
Formulas: tree keys that describe how to compute other keys.

A key like `{name}.html = page({name}.md)` is a variable formula: for every
existing key matching `{name}.md` it implies a virtual `{name}.html` key,
and asking for such a key evaluates the expression with `name` bound. A key
like `index.html = concat(header, body)` is a constant formula. A bare key
holding a `{variable}` binds the stored value to every matching key.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from arbor.arbor_compiler import avoid_recursive_property_calls
from arbor.arbor_datatypes import ArborSyntaxError, KeyDiscoveryError, Op, is_code
from arbor.arbor_parser import parse_formula_key
from arbor.arbor_scope import BindingsTree, Scope, get_scope, lookup
from arbor.arbor_tree import (
    ChangeSignal,
    connect_changes,
    from_treelike,
    invoke,
    is_mutable_tree,
    is_tree,
    is_treelike,
    trailing_slash,
)

VARIABLE = re.compile(r"\{([A-Za-z_]\w*)\}")


class Pattern:
    """Literal text with `{name}` wildcards; each wildcard matches one or more characters."""

    def __init__(self, text: str):
        self.text = text
        self.segments: List[tuple] = []
        pos = 0
        for match in VARIABLE.finditer(text):
            if match.start() > pos:
                self.segments.append(("text", text[pos:match.start()]))
            self.segments.append(("var", match.group(1)))
            pos = match.end()
        if pos < len(text):
            self.segments.append(("text", text[pos:]))
        self.variables = tuple(dict.fromkeys(v for kind, v in self.segments if kind == "var"))
        self._regex = self._compile()

    def _compile(self) -> re.Pattern:
        parts = []
        seen = set()
        for kind, value in self.segments:
            if kind == "text":
                parts.append(re.escape(value))
            elif value in seen:
                parts.append(f"(?P={value})")
            else:
                seen.add(value)
                parts.append(f"(?P<{value}>.+?)")
        return re.compile("".join(parts), re.S)

    @property
    def is_constant(self) -> bool:
        return not self.variables

    def unify(self, key) -> Optional[Dict[str, str]]:
        if not isinstance(key, str):
            key = str(key)
        match = self._regex.fullmatch(key)
        if match is None:
            return None
        return match.groupdict()

    def instantiate(self, bindings: Dict[str, Any]) -> str:
        out = []
        for kind, value in self.segments:
            if kind == "text":
                out.append(value)
            else:
                out.append(str(bindings[value]))
        return "".join(out)

    def __eq__(self, other):
        return isinstance(other, Pattern) and other.text == self.text

    def __hash__(self):
        return hash(self.text)

    def __repr__(self):
        return f"Pattern({self.text!r})"


def _pattern_references(node) -> List[Pattern]:
    found = []

    def walk(item):
        if is_code(item):
            if item[0] is Op.PATTERN:
                found.append(Pattern(item[1]))
                return
            if item[0] is Op.LITERAL:
                return
            for child in item[1:]:
                walk(child)
        elif isinstance(item, tuple):
            for child in item:
                walk(child)

    walk(node)
    return list(dict.fromkeys(found))


class Formula:
    """Base class for the three formula kinds."""

    def __init__(self, source: str, pattern: Pattern, code=None):
        self.source = source
        self.pattern = pattern
        self.code = code

    @staticmethod
    def parse(key) -> Optional['Formula']:
        try:
            parsed = parse_formula_key(key)
        except ArborSyntaxError:
            # A key that merely contains '=' is an ordinary key
            return None
        if parsed is None:
            return None
        text, code = parsed
        pattern = Pattern(text)
        if code is None:
            return BareFormula(key, pattern)
        if pattern.is_constant:
            return ConstantFormula(key, pattern, code)
        return VariableFormula(key, pattern, code)

    @staticmethod
    def is_formula(key) -> bool:
        return Formula.parse(key) is not None

    def unify(self, key) -> Optional[Dict[str, str]]:
        return self.pattern.unify(trailing_slash.remove(key))

    def add_implied_keys(self, keys: dict):
        """Add any keys this formula implies to the ordered key set `keys`."""
        pass

    async def evaluate(self, tree: 'FormulasTree', key, bindings: Dict[str, str]):
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.source!r})"


class ConstantFormula(Formula):

    def __init__(self, source: str, pattern: Pattern, code):
        super().__init__(source, pattern, avoid_recursive_property_calls(code, pattern.text))

    def add_implied_keys(self, keys: dict):
        keys.setdefault(self.pattern.text, None)

    async def evaluate(self, tree: 'FormulasTree', key, bindings: Dict[str, str]):
        return await tree.evaluator.evaluate(self.code, tree.formula_scope(bindings))


class VariableFormula(Formula):

    def __init__(self, source: str, pattern: Pattern, code):
        super().__init__(source, pattern, code)
        self.source_patterns = _pattern_references(code)

    def add_implied_keys(self, keys: dict):
        for existing in list(keys):
            if not isinstance(existing, str):
                existing = str(existing)
            for source_pattern in self.source_patterns:
                bindings = source_pattern.unify(existing)
                if bindings is None:
                    continue
                if all(name in bindings for name in self.pattern.variables):
                    keys.setdefault(self.pattern.instantiate(bindings), None)

    async def evaluate(self, tree: 'FormulasTree', key, bindings: Dict[str, str]):
        scope = tree.formula_scope(bindings)
        # The formula only applies if the keys it draws on exist
        for source_pattern in self.source_patterns:
            if all(name in bindings for name in source_pattern.variables):
                if await lookup(scope, source_pattern.instantiate(bindings)) is None:
                    return None
        return await tree.evaluator.evaluate(self.code, scope)


class BareFormula(Formula):
    """A pattern key whose stored value applies to every matching key."""

    async def evaluate(self, tree: 'FormulasTree', key, bindings: Dict[str, str]):
        value = await tree.base.get(self.source)
        if value is None:
            return None
        if callable(value) and not is_tree(value):
            return await invoke(value, *[bindings[name] for name in self.pattern.variables],
                                scope=tree.formula_scope(bindings))
        if is_treelike(value):
            return BoundTree(from_treelike(value), {**tree.bindings, **bindings}, parent=tree.outer)
        return value


def sort_formulas(formulas: List[Formula]) -> List[Formula]:
    """Constant formulas first; the sort is stable."""
    return sorted(formulas, key=lambda f: 0 if isinstance(f, ConstantFormula) else 1)


class BoundTree:
    """A tree seen through a set of variable bindings, which take precedence."""

    def __init__(self, tree, bindings: Dict[str, Any], parent=None):
        self.tree = from_treelike(tree)
        self.bindings = dict(bindings)
        self.parent = parent if parent is not None else getattr(self.tree, "parent", None)

    async def keys(self) -> list:
        return list(await self.tree.keys())

    async def get(self, key):
        name = trailing_slash.remove(key)
        if name in self.bindings:
            return self.bindings[name]
        return await self.tree.get(key)

    def __repr__(self):
        return f"BoundTree({self.tree!r}, {self.bindings!r})"


@dataclass
class FormulaState:
    """Memoized results; a fresh record means everything must be recomputed."""
    physical_keys: Optional[list] = None
    formulas: Optional[List[Formula]] = None
    formula_keys: Optional[set] = None
    real_keys: Optional[list] = None
    virtual_keys: Optional[list] = None
    parsed: Dict[Any, Optional[Formula]] = field(default_factory=dict)


class FormulasTree:
    """
    Wraps a tree so its formula keys produce virtual keys and values.

    get(key) checks the bindings, then the physical value, then each formula
    in priority order; the first defined result wins.
    """

    def __init__(self, base, evaluator, parent=None, bindings: Optional[Dict[str, Any]] = None):
        self.base = from_treelike(base)
        self.evaluator = evaluator
        self.parent = parent
        self.bindings: Dict[str, Any] = dict(bindings or {})
        # The outermost wrapper; formulas are evaluated in its scope
        self.outer = self
        self.apply_formulas = True
        self.version = 0
        self._state = FormulaState()
        self.changed = ChangeSignal()
        self._tracking = connect_changes(self.base, self.on_change)

    def on_change(self, *args):
        self.version += 1
        self._state = FormulaState()
        self.evaluator._dbg("formulas: reset", self.version)
        self.changed.emit(*args)

    def _parse(self, key) -> Optional[Formula]:
        cache = self._state.parsed
        if key not in cache:
            cache[key] = Formula.parse(key) if isinstance(key, str) else None
        return cache[key]

    def is_formula_key(self, key) -> bool:
        return self._parse(key) is not None

    def formula_scope(self, bindings: Optional[Dict[str, Any]] = None):
        combined = {**self.bindings, **(bindings or {})}
        outer_scope = get_scope(self.outer)
        if not combined:
            return outer_scope
        return Scope(BindingsTree(combined), outer_scope)

    async def physical_keys(self) -> list:
        state = self._state
        if state.physical_keys is None:
            ignore = self.evaluator.config.ignore_keys
            state.physical_keys = [k for k in await self.base.keys() if k not in ignore]
        return list(state.physical_keys)

    async def formulas(self) -> List[Formula]:
        state = self._state
        if state.formulas is None:
            found = []
            for key in await self.physical_keys():
                formula = self._parse(key)
                if formula is not None:
                    found.append(formula)
            state.formulas = sort_formulas(found)
        return state.formulas

    async def real_keys(self) -> list:
        state = self._state
        if state.real_keys is None:
            state.real_keys = [k for k in await self.physical_keys() if not self.is_formula_key(k)]
        return list(state.real_keys)

    async def virtual_keys(self) -> list:
        state = self._state
        if state.virtual_keys is None:
            real = await self.real_keys()
            keys = dict.fromkeys(real)
            formulas = await self.formulas()
            limit = self.evaluator.config.max_key_passes
            for passes in range(1, limit + 1):
                size = len(keys)
                for formula in formulas:
                    formula.add_implied_keys(keys)
                if len(keys) == size:
                    self.evaluator._dbg("formulas: virtual keys settled after", passes, "passes")
                    break
            else:
                raise KeyDiscoveryError(f"Virtual keys did not settle after {limit} passes")
            real_set = set(real)
            state.virtual_keys = [k for k in keys if k not in real_set]
        return list(state.virtual_keys)

    async def all_keys(self) -> list:
        formula_keys = [f.source for f in await self.formulas()]
        keys = dict.fromkeys(await self.real_keys())
        keys.update(dict.fromkeys(formula_keys))
        keys.update(dict.fromkeys(await self.virtual_keys()))
        return list(keys)

    async def keys(self) -> list:
        keys = dict.fromkeys(await self.real_keys())
        keys.update(dict.fromkeys(await self.virtual_keys()))
        return list(keys)

    async def _evaluate(self, formula: Formula, key):
        bindings = formula.unify(key)
        if bindings is None:
            return None
        return await formula.evaluate(self, key, bindings)

    async def get(self, key):
        name = trailing_slash.remove(key)
        if name in self.bindings:
            return self.bindings[name]
        value = await self.base.get(key)
        if value is None and self.apply_formulas:
            for formula in await self.formulas():
                value = await self._evaluate(formula, key)
                if value is not None:
                    break
        return value

    async def match_all(self, key) -> list:
        """The defined results of every formula that matches `key`, in priority order."""
        matches = []
        for formula in await self.formulas():
            value = await self._evaluate(formula, key)
            if value is not None:
                matches.append(value)
        return matches

    async def set(self, key, value):
        if not is_mutable_tree(self.base):
            raise TypeError("Can't set a value in a read-only tree")
        await self.base.set(key, value)
        if not self._tracking:
            self.on_change(key)
        return self

    def __repr__(self):
        return f"FormulasTree({self.base!r})"
