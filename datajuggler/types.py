"""
Property type registry - coerce-in / coerce-out pairs per type token.

A property's declared type is resolved once, at definition time, into a
``PropertyType``. The instance attribute table stores the pair of
functions; nothing else looks at the raw token again.

Usage:
    ```python
    from datajuggler.types import registry

    registry.resolve("number").coerce_in("42")     # -> 42
    registry.resolve([str]).coerce_in("[\"a\"]")   # -> List(['a'])

    registry.register(
        "decimal",
        coerce_in=lambda v, parent=None: None if v is None else Decimal(str(v)),
        aliases=(Decimal,),
    )
    ```
"""

from __future__ import annotations

import base64
import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from .faults import BadRequestFault
from .geo import GeoPoint

logger = logging.getLogger("datajuggler.types")

__all__ = [
    "UNSET",
    "PropertyType",
    "TypeRegistry",
    "List",
    "registry",
    "parse_date",
    "is_model_class",
]


# ── Sentinel ─────────────────────────────────────────────────────────────────

class _Unset:
    """Sentinel for distinguishing 'not set' from None."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "<UNSET>"

    def __bool__(self):
        return False

UNSET = _Unset()


def is_model_class(obj: Any) -> bool:
    return isinstance(obj, type) and hasattr(obj, "_definition")


# ── PropertyType ─────────────────────────────────────────────────────────────

class PropertyType:
    """
    A resolved property type.

    ``coerce_in(value, parent)`` converts user or connector input into the
    in-memory representation; ``coerce_out(value)`` converts it back into
    plain data for ``to_object``.
    """

    __slots__ = ("name", "coerce_in", "coerce_out", "base", "item_type", "model")

    def __init__(
        self,
        name: str,
        coerce_in: Callable[..., Any],
        coerce_out: Optional[Callable[[Any], Any]] = None,
        *,
        base: bool = True,
        item_type: Optional[PropertyType] = None,
        model: Any = None,
    ):
        self.name = name
        self.coerce_in = coerce_in
        self.coerce_out = coerce_out or _identity
        self.base = base
        self.item_type = item_type
        self.model = model

    def __repr__(self) -> str:
        return f"<PropertyType: {self.name}>"


def _identity(value: Any) -> Any:
    return value


# ── Base coercions ───────────────────────────────────────────────────────────

def coerce_string(value: Any, parent: Any = None) -> Any:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def coerce_number(value: Any, parent: Any = None) -> Any:
    if value is None or isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            # left as is, numericality validation reports it
            return value
    if isinstance(value, datetime):
        return value.timestamp() * 1000
    return value


_TRUE_STRINGS = ("true", "1")
_FALSE_STRINGS = ("false", "0")


def coerce_boolean(value: Any, parent: Any = None) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        return bool(lowered)
    return bool(value)


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a date-ish value; returns None when it cannot be parsed."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None
    return None


def coerce_date(value: Any, parent: Any = None) -> Any:
    if value is None:
        return None
    parsed = parse_date(value)
    # unparseable input is kept so the date validator can report it
    return parsed if parsed is not None else value


def coerce_object(value: Any, parent: Any = None) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def coerce_buffer(value: Any, parent: Any = None) -> Any:
    if value is None or isinstance(value, bytes):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, list):
        return bytes(value)
    if isinstance(value, dict) and value.get("type") == "Buffer":
        return bytes(value.get("data") or [])
    return value


def buffer_out(value: Any) -> Any:
    return value


def coerce_geopoint(value: Any, parent: Any = None) -> Any:
    if value is None or isinstance(value, GeoPoint):
        return value
    return GeoPoint(value)


def _to_plain(value: Any) -> Any:
    to_object = getattr(value, "to_object", None)
    if callable(to_object):
        return to_object()
    return value


# ── List ─────────────────────────────────────────────────────────────────────

class List(list):
    """
    A list whose items are coerced to a declared item type.

    Accepts a list or a JSON string holding a list.
    """

    def __init__(self, data: Any = None, item_type: Optional[PropertyType] = None, parent: Any = None):
        self.item_type = item_type
        self.parent = parent
        if data is None:
            data = []
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                raise BadRequestFault(f"could not create List from JSON string: {data!r}") from None
        if not isinstance(data, (list, tuple)):
            raise BadRequestFault(f"{data!r} is not an array")
        super().__init__(self._coerce(item) for item in data)

    def _coerce(self, item: Any) -> Any:
        if self.item_type is None:
            return item
        return self.item_type.coerce_in(item, self.parent)

    def append(self, item: Any) -> None:
        super().append(self._coerce(item))

    push = append

    def extend(self, items: Iterable[Any]) -> None:
        super().extend(self._coerce(item) for item in items)

    def insert(self, index: int, item: Any) -> None:
        super().insert(index, self._coerce(item))

    def __setitem__(self, index, value):
        if isinstance(index, slice):
            super().__setitem__(index, [self._coerce(v) for v in value])
        else:
            super().__setitem__(index, self._coerce(value))

    def to_object(self, only_schema: bool = True, remove_hidden: bool = False,
                  remove_protected: bool = False) -> list:
        items = []
        for item in self:
            to_object = getattr(item, "to_object", None)
            if callable(to_object):
                items.append(to_object(only_schema, remove_hidden, remove_protected))
            else:
                items.append(item)
        return items

    to_json = to_object

    def __repr__(self) -> str:
        return f"List({list.__repr__(self)})"


# ── Registry ─────────────────────────────────────────────────────────────────

class TypeRegistry:
    """
    Maps type tokens to ``PropertyType`` objects.

    Tokens may be names ("string", "number", "date", ...), Python classes
    (``str``, ``int``, ``datetime``, ``GeoPoint``, a model class), a
    one-element list ``[T]`` for typed arrays, or a model name that is
    resolved through ``ModelRegistry`` when first coerced.
    """

    def __init__(self):
        self._types: Dict[Any, PropertyType] = {}

    def register(
        self,
        name: str,
        coerce_in: Callable[..., Any],
        coerce_out: Optional[Callable[[Any], Any]] = None,
        *,
        aliases: Iterable[Any] = (),
    ) -> PropertyType:
        """Register a custom property type under ``name`` and its aliases."""
        ptype = PropertyType(name, coerce_in, coerce_out)
        self._types[name.lower()] = ptype
        for alias in aliases:
            self._types[alias.lower() if isinstance(alias, str) else alias] = ptype
        return ptype

    def get(self, token: Any) -> Optional[PropertyType]:
        key = token.lower() if isinstance(token, str) else token
        try:
            return self._types.get(key)
        except TypeError:
            return None

    def resolve(self, token: Any) -> PropertyType:
        """Resolve a type token; unknown tokens raise ``ValueError``."""
        if isinstance(token, PropertyType):
            return token
        if token is None:
            return self._types["any"]
        if isinstance(token, (list, tuple)):
            item = self.resolve(token[0]) if token else None
            return self.array_of(item)
        if is_model_class(token):
            return self.model_type(token)
        found = self.get(token)
        if found is not None:
            return found
        if isinstance(token, str):
            return self.model_type(token)
        raise ValueError(f"Unknown property type: {token!r}")

    def array_of(self, item_type: Optional[PropertyType]) -> PropertyType:
        name = f"[{item_type.name}]" if item_type else "array"

        def coerce_in(value, parent=None):
            if value is None:
                return None
            return List(value, item_type, parent)

        def coerce_out(value):
            if isinstance(value, List):
                return value.to_object()
            if isinstance(value, list):
                return [_to_plain(v) for v in value]
            return value

        return PropertyType(name, coerce_in, coerce_out, base=False, item_type=item_type)

    def model_type(self, model: Any) -> PropertyType:
        """Embedded model type; ``model`` may be a class or a registered name."""
        holder = {"cls": model if is_model_class(model) else None}
        name = model.__name__ if holder["cls"] is not None else str(model)

        def resolve_cls():
            if holder["cls"] is None:
                from .registry import ModelRegistry
                holder["cls"] = ModelRegistry.get(name)
                if holder["cls"] is None:
                    raise ValueError(f"Unknown property type: {name!r}")
            return holder["cls"]

        def coerce_in(value, parent=None):
            if value is None:
                return None
            cls = resolve_cls()
            if isinstance(value, cls):
                return value
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except ValueError:
                    return value
            if isinstance(value, dict):
                return cls(value)
            return value

        return PropertyType(name, coerce_in, _to_plain, base=False, model=model)


registry = TypeRegistry()

_any = registry.register("any", _identity, aliases=(object,))
registry.register("string", coerce_string, aliases=("str", "text", str))
registry.register("number", coerce_number, aliases=("int", "integer", "float", int, float))
registry.register("boolean", coerce_boolean, aliases=("bool", bool))
registry.register("date", coerce_date, aliases=("datetime", datetime, date))
registry.register("object", coerce_object, aliases=("dict", "json", dict))
registry.register("buffer", coerce_buffer, buffer_out, aliases=("bytes", bytes))
registry.register("geopoint", coerce_geopoint, aliases=(GeoPoint,))
registry._types["array"] = registry.array_of(None)
registry._types["list"] = registry._types["array"]
registry._types[list] = registry._types["array"]
