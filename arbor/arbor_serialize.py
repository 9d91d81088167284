from __future__ import annotations

import json
import re
from typing import Any, Optional
import collections.abc

import yaml

from arbor.arbor_scope import get_scope
from arbor.arbor_tree import ListTree, ObjectTree, from_treelike, is_treelike
from arbor.arbor_treeops import plain


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        enc = encoding or 'utf-8'
        try:
            return bytes(data).decode(enc, errors='replace')
        except LookupError:
            return bytes(data).decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


EXTENSION_FORMATS = {
    '.json': 'json',
    '.yaml': 'yaml',
    '.yml': 'yaml',
}


def detect_format(content_type: Optional[str] = None, name: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json' or 'yaml' when the content type or the file name
    extension identifies one, else None.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct:
        return 'yaml'
    if name:
        m = re.search(r'(\.[A-Za-z0-9]+)$', str(name))
        if m:
            return EXTENSION_FORMATS.get(m.group(1).lower())
    return None


# --------------------------
# YAML with embedded expressions
# --------------------------

class ExpressionSource(str):
    """Text of an expression embedded in YAML with the !expr tag."""

    def __repr__(self):
        return f"ExpressionSource({str.__repr__(self)})"


class ArborLoader(yaml.SafeLoader):
    pass


def _construct_expression(loader: yaml.SafeLoader, node: yaml.Node) -> ExpressionSource:
    return ExpressionSource(loader.construct_scalar(node))


ArborLoader.add_constructor('!expr', _construct_expression)


def parse_yaml(text: str | bytes) -> Any:
    return yaml.load(_norm_text(text), Loader=ArborLoader)


class ExpressionTree(ObjectTree):
    """A tree over parsed YAML whose !expr values are evaluated on access."""

    def __init__(self, obj: Any, evaluator, parent=None):
        super().__init__(obj, parent=parent)
        self.evaluator = evaluator

    def _make_subtree(self, value):
        if isinstance(value, collections.abc.Mapping):
            return ExpressionTree(value, self.evaluator, parent=self)
        if isinstance(value, list):
            return ListTree(value, parent=self)
        return value

    async def get(self, key):
        value = await super().get(key)
        if isinstance(value, ExpressionSource):
            code = self.evaluator.compile(str(value))
            return await self.evaluator.evaluate(code, get_scope(self))
        return value


def from_yaml(text: str | bytes, evaluator=None, parent=None) -> Any:
    """Parse YAML into a tree; scalars come back as they are."""
    data = parse_yaml(text)
    if isinstance(data, collections.abc.Mapping) and evaluator is not None:
        return ExpressionTree(data, evaluator, parent=parent)
    if is_treelike(data):
        return from_treelike(data, parent=parent)
    return data


def from_json(text: str | bytes, parent=None) -> Any:
    data = json.loads(_norm_text(text))
    if is_treelike(data):
        return from_treelike(data, parent=parent)
    return data


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                name: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert wire data (bytes/string) to native Python structures.
    Supported fmt: 'json', 'yaml'. If fmt is None, uses the content type,
    then the name's extension. Anything else comes back as text.
    """
    enc = _encoding_from_content_type(content_type)
    text = _norm_text(data, encoding=enc)
    f = fmt or detect_format(content_type, name)
    if f == 'json':
        return json.loads(text)
    if f == 'yaml':
        return parse_yaml(text)
    return text


def _to_builtin(obj: Any) -> Any:
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {str(k): _to_builtin(v) for k, v in obj.items()}
    if isinstance(obj, ExpressionSource):
        return str(obj)
    if isinstance(obj, (bytes, bytearray)):
        return _norm_text(obj)
    return obj


async def _resolve(value: Any) -> Any:
    if is_treelike(value) and not callable(value):
        return await plain(value)
    return value


def serialize(value: Any, *, fmt: str, pretty: bool = True) -> str:
    """
    Convert an already-resolved value into text.
    - fmt: 'json' | 'yaml'
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


async def to_yaml(value: Any) -> str:
    return serialize(await _resolve(value), fmt='yaml')


async def to_json(value: Any, pretty: bool = True) -> str:
    return serialize(await _resolve(value), fmt='json', pretty=pretty)


class Buffer(bytes):
    """
    Raw content fetched from somewhere. Unpacking deserializes it according
    to its name or content type; as text it decodes as UTF-8.
    """

    def __new__(cls, data: bytes | bytearray | str, name: Optional[str] = None,
                content_type: Optional[str] = None):
        if isinstance(data, str):
            data = data.encode('utf-8')
        self = super().__new__(cls, data)
        self.name = name
        self.content_type = content_type
        return self

    def unpack(self) -> Any:
        fmt = detect_format(self.content_type, self.name)
        if fmt is None:
            return self.text
        data = deserialize(bytes(self), content_type=self.content_type, fmt=fmt)
        if is_treelike(data):
            return from_treelike(data)
        return data

    @property
    def text(self) -> str:
        return _norm_text(bytes(self), encoding=_encoding_from_content_type(self.content_type))

    def __str__(self):
        return self.text

    def __repr__(self):
        return f"Buffer(name={self.name!r}, size={len(self)})"


__all__ = [
    "Buffer",
    "ExpressionSource",
    "ExpressionTree",
    "deserialize",
    "detect_format",
    "from_json",
    "from_yaml",
    "parse_yaml",
    "serialize",
    "to_json",
    "to_yaml",
]
