"""
Value serializers for key-value connectors.

``json`` (default) stores text: buffers as ``buffer:<base64>``, datetimes
as ``date:<ISO 8601>`` and everything else as JSON. ``msgpack`` stores
compact bytes with datetimes packed as extension type 1.
"""

from __future__ import annotations

import base64
import json
import logging
from datetime import date, datetime
from typing import Any

import msgpack

from ..types import parse_date

logger = logging.getLogger("datajuggler.connectors.serializers")

__all__ = ["JsonValueSerializer", "MsgpackValueSerializer", "get_serializer", "DATE_EXT_TYPE"]

DATE_EXT_TYPE = 1


def _plain(value: Any) -> Any:
    to_object = getattr(value, "to_object", None)
    if callable(to_object):
        return to_object()
    to_json = getattr(value, "to_json", None)
    if callable(to_json):
        return to_json()
    raise TypeError(f"Object of type {type(value).__name__} is not serializable")


class JsonValueSerializer:
    """Text encoding with ``buffer:`` and ``date:`` prefixes."""

    name = "json"

    def serialize(self, value: Any) -> str:
        if isinstance(value, (bytes, bytearray)):
            return "buffer:" + base64.b64encode(bytes(value)).decode("ascii")
        if isinstance(value, (datetime, date)):
            return "date:" + value.isoformat()
        try:
            return json.dumps(value, default=_plain)
        except (TypeError, ValueError) as e:
            logger.warning(f"JSON serialization failed: {e}")
            raise

    def deserialize(self, raw: Any) -> Any:
        if raw is None:
            return None
        if raw.startswith("buffer:"):
            return base64.b64decode(raw[len("buffer:"):])
        if raw.startswith("date:"):
            return parse_date(raw[len("date:"):])
        return json.loads(raw)


class MsgpackValueSerializer:
    """MessagePack encoding with a date extension type."""

    name = "msgpack"

    @staticmethod
    def _default(value: Any) -> Any:
        if isinstance(value, (datetime, date)):
            return msgpack.ExtType(DATE_EXT_TYPE, value.isoformat().encode("utf-8"))
        return _plain(value)

    @staticmethod
    def _ext_hook(code: int, data: bytes) -> Any:
        if code == DATE_EXT_TYPE:
            return parse_date(data.decode("utf-8"))
        return msgpack.ExtType(code, data)

    def serialize(self, value: Any) -> bytes:
        try:
            return msgpack.packb(value, use_bin_type=True, default=self._default)
        except (TypeError, ValueError) as e:
            logger.warning(f"Msgpack serialization failed: {e}")
            raise

    def deserialize(self, raw: Any) -> Any:
        if raw is None:
            return None
        return msgpack.unpackb(raw, raw=False, ext_hook=self._ext_hook)


def get_serializer(name: str = "json"):
    """Factory for value serializers: ``"json"`` or ``"msgpack"``."""
    serializers = {
        "json": JsonValueSerializer,
        "msgpack": MsgpackValueSerializer,
    }
    cls = serializers.get(name)
    if cls is None:
        raise ValueError(f"Unknown serializer: {name}. Options: {list(serializers.keys())}")
    return cls()
