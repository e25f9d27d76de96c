"""
JSON and YAML codecs for Duck values.

Wire data parses into native Python structures first and is then converted
to Duck values: mappings become struct instances of type `object`, whole
numbers become floats. Serialization runs the same conversion backwards,
emitting integral numbers without a fraction.
"""
from __future__ import annotations

import base64
import json
import math
from typing import Any, Optional

import yaml

from duck.duck_datatypes import (
    StructInstance, StructType, DuckFunction, DuckLambda, is_number,
)

OBJECT_TYPE = "object"


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        return data.decode(encoding or 'utf-8')
    return data


def to_duck(obj: Any) -> Any:
    """Converts a parsed JSON/YAML structure into Duck values."""
    if isinstance(obj, dict):
        return StructInstance(OBJECT_TYPE, {str(k): to_duck(v) for k, v in obj.items()})
    if isinstance(obj, (list, tuple)):
        return [to_duck(x) for x in obj]
    if isinstance(obj, bool) or obj is None or isinstance(obj, str):
        return obj
    if isinstance(obj, (int, float)):
        return float(obj)
    # YAML !!binary and !!set
    if isinstance(obj, (bytes, bytearray)):
        return obj.decode("utf-8")
    if isinstance(obj, (set, frozenset)):
        return [to_duck(x) for x in sorted(obj, key=str)]
    # Dates and the like from YAML
    return str(obj)


def to_builtin(value: Any, _active: Optional[set] = None) -> Any:
    """Converts a Duck value into plain Python data ready for a codec.

    Raises ValueError for functions and for lists or structs that contain
    themselves.
    """
    if isinstance(value, (StructInstance, list)):
        active = _active if _active is not None else set()
        if id(value) in active:
            raise ValueError("circular structure cannot be serialized")
        active.add(id(value))
        try:
            if isinstance(value, StructInstance):
                return {k: to_builtin(v, active) for k, v in value.fields.items()}
            return [to_builtin(x, active) for x in value]
        finally:
            active.discard(id(value))
    if is_number(value):
        n = float(value)
        if math.isfinite(n) and n.is_integer():
            return int(n)
        return n
    if isinstance(value, (StructType, DuckFunction, DuckLambda)) or callable(value):
        raise ValueError("functions and struct types cannot be serialized")
    return value


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str, *, fmt: str) -> Any:
    """Parse wire data in `fmt` ('json' | 'yaml') into Duck values.

    Raises ValueError on malformed input.
    """
    text = _norm_text(data)
    f = (fmt or '').lower()
    if f == 'json':
        try:
            return to_duck(json.loads(text))
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid JSON: {e.msg} (line {e.lineno}, col {e.colno})") from e
    if f == 'yaml':
        try:
            return to_duck(yaml.safe_load(text))
        except yaml.YAMLError as e:
            raise ValueError(f"invalid YAML: {e}") from e
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def serialize(value: Any, *, fmt: str, pretty: bool = False) -> str:
    """
    Convert a Duck value into text.
    - fmt: 'json' | 'yaml'
    - pretty: indent JSON output (YAML is always block style)
    """
    f = (fmt or '').lower()
    built = to_builtin(value)
    if f == 'json':
        if pretty:
            return json.dumps(built, ensure_ascii=False, indent=2, allow_nan=False)
        return json.dumps(built, ensure_ascii=False, allow_nan=False)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def b64encode(text: str) -> str:
    return base64.b64encode(text.encode('utf-8')).decode('ascii')


def b64decode(text: str) -> str:
    # binascii.Error is a ValueError subclass
    return base64.b64decode(text.encode('ascii'), validate=True).decode('utf-8')


__all__ = [
    "deserialize",
    "serialize",
    "to_duck",
    "to_builtin",
    "b64encode",
    "b64decode",
]
