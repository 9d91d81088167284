"""
A pretty-printer for compiled code and plain values.
"""
import collections.abc

from arbor.arbor_datatypes import Code, Op
from arbor.arbor_interpreter import ArborFunction, js_string
from arbor.arbor_serialize import Buffer

REFERENCE_OPS = (Op.SCOPE, Op.INHERITED, Op.BUILTIN, Op.UNDETERMINED, Op.PATTERN)


class Printer:
    """Formats Code as `op(arg, ...)` text and plain values as YAML-like text."""

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        """Dispatcher to find the correct formatting method."""
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, Code):
            return self._pformat_code
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        if isinstance(obj, (list, tuple)):
            return self._pformat_list
        if isinstance(obj, Op):
            return lambda o, l: o.value
        if isinstance(obj, str):
            return self._pformat_str
        # Default to Python's repr for unknown types
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_number,
            float: self._pformat_number,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            bytes: self._pformat_bytes,
            Buffer: self._pformat_buffer,
            Code: self._pformat_code,
            ArborFunction: self._pformat_function,
        }

    def _pformat_number(self, obj, level):
        return js_string(obj)

    def _pformat_str(self, obj, level):
        escaped = str(obj).replace("\\", "\\\\").replace("'", "\\'").replace("\n", "\\n")
        return f"'{escaped}'"

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return 'null'

    def _pformat_bytes(self, obj, level):
        return f"<{len(obj)} bytes>"

    def _pformat_buffer(self, obj, level):
        return obj.text

    def _pformat_function(self, obj, level):
        return f"({', '.join(obj.params)}) => {self.pformat(obj.body, level)}"

    # --- Code ---
    def _pformat_operand(self, operand, level):
        if isinstance(operand, Code):
            return self._pformat_code(operand, level)
        if isinstance(operand, tuple) and len(operand) == 2 and isinstance(operand[1], Code) \
                and not isinstance(operand[0], Code):
            # An object property: (key, code)
            return f"{operand[0]}: {self._pformat_code(operand[1], level)}"
        if isinstance(operand, tuple):
            return f"({', '.join(str(p) for p in operand)})"
        return self.pformat(operand, level)

    def _pformat_code(self, obj, level):
        op = obj[0]
        if op in REFERENCE_OPS:
            return f"{op.value}({obj[1]})"
        if op is Op.LITERAL:
            value = obj[1]
            if isinstance(value, tuple):
                return f"literal([{', '.join(self.pformat(v, level) for v in value)}])"
            return f"literal({self.pformat(value, level)})"
        args = ", ".join(self._pformat_operand(arg, level) for arg in obj[1:])
        name = op.value if isinstance(op, Op) else str(op)
        return f"{name}({args})"

    # --- Plain values ---
    def _is_block(self, obj) -> bool:
        return isinstance(obj, (collections.abc.Mapping, list, tuple)) and not isinstance(obj, Code) \
            and len(obj) > 0

    def _pformat_dict(self, obj, level):
        if not obj:
            return "{}"
        indent = self._indent_char * level
        lines = []
        for key, value in obj.items():
            if self._is_block(value):
                lines.append(f"{indent}{key}:\n{self.pformat(value, level + 1)}")
            else:
                lines.append(f"{indent}{key}: {self.pformat(value, level + 1)}")
        return "\n".join(lines)

    def _pformat_list(self, obj, level):
        if not obj:
            return "[]"
        indent = self._indent_char * level
        lines = []
        for item in obj:
            if isinstance(item, collections.abc.Mapping) and item:
                nested = self.pformat(item, level + 1).lstrip()
                lines.append(f"{indent}- {nested}")
            elif self._is_block(item):
                lines.append(f"{indent}-\n{self.pformat(item, level + 1)}")
            else:
                lines.append(f"{indent}- {self.pformat(item, level + 1)}")
        return "\n".join(lines)


def format_code(code: Code) -> str:
    return Printer().pformat(code)
