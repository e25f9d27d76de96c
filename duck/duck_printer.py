"""
A printer for Duck values: the display form used by `print`, string
interpolation, `string(...)` and the REPL.
"""
import math

from duck.duck_datatypes import DuckFunction, DuckLambda, StructType, StructInstance


class Printer:
    """Formats Duck values into their user-facing text form."""

    def __init__(self):
        self._handlers = self._create_handlers()
        # ids of the lists and structs currently being formatted
        self._active = set()

    def pformat(self, obj, nested=False):
        """Public entry point to format a value.

        Strings print raw at the top level and quoted when nested inside a
        list or struct.
        """
        handler = self._get_handler(obj)
        return handler(obj, nested)

    def _get_handler(self, obj):
        handler = self._handlers.get(type(obj))
        if handler is not None:
            return handler
        if isinstance(obj, list):
            return self._pformat_list
        if callable(obj):
            return self._pformat_builtin
        return lambda o, n: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            bool: self._pformat_bool,
            int: self._pformat_number,
            float: self._pformat_number,
            type(None): self._pformat_nil,
            list: self._pformat_list,
            StructInstance: self._pformat_struct,
            StructType: self._pformat_struct_type,
            DuckFunction: self._pformat_function,
            DuckLambda: self._pformat_lambda,
        }

    def _pformat_str(self, obj, nested):
        if nested:
            escaped = obj.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\t", "\\t")
            return f'"{escaped}"'
        return obj

    def _pformat_bool(self, obj, nested):
        return 'true' if obj else 'false'

    def _pformat_nil(self, obj, nested):
        return 'nil'

    def _pformat_number(self, obj, nested):
        n = float(obj)
        if math.isnan(n):
            return 'nan'
        if math.isinf(n):
            return 'infinity' if n > 0 else '-infinity'
        if n.is_integer() and abs(n) < 1e15:
            return str(int(n))
        return repr(n)

    def _pformat_list(self, obj, nested):
        if id(obj) in self._active:
            return "[...]"
        self._active.add(id(obj))
        try:
            return "[" + ", ".join(self.pformat(item, nested=True) for item in obj) + "]"
        finally:
            self._active.discard(id(obj))

    def _pformat_struct(self, obj, nested):
        if not obj.fields:
            return f"{obj.type_name} {{}}"
        if id(obj) in self._active:
            return f"{obj.type_name} {{...}}"
        self._active.add(id(obj))
        try:
            inner = ", ".join(f"{k}: {self.pformat(v, nested=True)}" for k, v in obj.fields.items())
        finally:
            self._active.discard(id(obj))
        return f"{obj.type_name} {{ {inner} }}"

    def _pformat_struct_type(self, obj, nested):
        return f"<struct {obj.name} {{ {', '.join(obj.fields)} }}>"

    def _pformat_function(self, obj, nested):
        return f"<function {obj.name}({', '.join(obj.params)})>"

    def _pformat_lambda(self, obj, nested):
        return f"<lambda ({', '.join(obj.params)})>"

    def _pformat_builtin(self, obj, nested):
        name = getattr(obj, '__name__', None) or 'builtin'
        return f"<builtin {name.lstrip('_').replace('_', '-')}>"


_printer = Printer()


def display(value) -> str:
    """Display form of a value (module-level shortcut)."""
    return _printer.pformat(value)
