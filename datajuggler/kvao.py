"""
Key-value access object - the API of models stored in key-value connectors.

Usage:
    ```python
    ds = DataSource("kv-memory")
    Token = ds.create_model("Token")

    await Token.set("a1", {"user": 7}, 60_000)     # ttl in milliseconds
    await Token.get("a1")                          # -> {"user": 7}
    await Token.ttl("a1")                          # -> remaining ms
    async for key in Token.iterate_keys({"match": "a*"}):
        ...
    ```
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .dao import Callback, dispatch
from .faults import ContractViolation, NotSupportedFault
from .model import BaseModel

logger = logging.getLogger("datajuggler.kvao")

__all__ = ["KeyValueAccessObject", "KeyValueModel"]


def _check_key(key: Any) -> None:
    if not isinstance(key, str) or not key:
        raise ContractViolation("key must be a non-empty string", key=repr(key))


def _check_options(options: Any) -> Dict[str, Any]:
    if options is None:
        return {}
    if not isinstance(options, dict):
        raise ContractViolation("options must be an object", options=type(options).__name__)
    return options


def _check_ttl(ttl: Any, name: str = "ttl") -> None:
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0:
        raise ContractViolation(f"{name} must be a positive number", ttl=repr(ttl))


class KeyValueAccessObject:
    """Class methods delegating to the connector's key-value protocol."""

    @classmethod
    def _kv_connector(cls) -> Any:
        return cls.get_connector()

    @classmethod
    async def _kv_call(cls, method: str, *args: Any) -> Any:
        await cls.get_data_source().ready()
        connector = cls._kv_connector()
        fn = getattr(connector, method, None)
        if fn is None:
            raise NotSupportedFault(f"Connector does not support {method}", method=method)
        logger.debug(f"{connector.name}.{method} {cls.__name__}")
        return await fn(cls.__name__, *args)

    @classmethod
    def set(cls, key: str, value: Any, options: Any = None, *, callback: Optional[Callback] = None):
        """Store ``value`` under ``key``; ``options`` may be a ttl number or ``{"ttl": ms}``."""
        if isinstance(options, (int, float)) and not isinstance(options, bool):
            options = {"ttl": options}
        options = _check_options(options)
        _check_key(key)
        if value is None:
            raise ContractViolation("value must be defined and not null")
        if "ttl" in options:
            _check_ttl(options["ttl"], "options.ttl")
        return dispatch(cls._kv_call("set", key, value, options), callback)

    @classmethod
    def get(cls, key: str, options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """The value under ``key``, None when missing or expired."""
        options = _check_options(options)
        _check_key(key)
        return dispatch(cls._kv_call("get", key, options), callback)

    @classmethod
    def expire(cls, key: str, ttl: float, options: Optional[Dict[str, Any]] = None, *,
               callback: Optional[Callback] = None):
        """Set a new ttl (ms) on an existing key; unknown keys are a 404."""
        options = _check_options(options)
        _check_key(key)
        _check_ttl(ttl)
        return dispatch(cls._kv_call("expire", key, ttl, options), callback)

    @classmethod
    def ttl(cls, key: str, options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """Remaining ttl in ms, None when the key does not expire; unknown keys are a 404."""
        options = _check_options(options)
        _check_key(key)
        return dispatch(cls._kv_call("ttl", key, options), callback)

    @classmethod
    def iterate_keys(cls, filter: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None) -> Any:
        """
        Iterator over the keys matching ``filter["match"]`` (glob with ``*`` and ``?``).

        ``await it.next()`` yields keys, then None; ``async for`` works too.
        """
        if filter is not None and not isinstance(filter, dict):
            raise ContractViolation("filter must be an object", filter=type(filter).__name__)
        options = _check_options(options)
        connector = cls._kv_connector()
        iterate = getattr(connector, "iterate_keys", None)
        if iterate is None:
            raise NotSupportedFault("Connector does not support iterate_keys", method="iterate_keys")
        return iterate(cls.__name__, filter or {}, options)

    @classmethod
    def keys(cls, filter: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None, *,
             callback: Optional[Callback] = None):
        """All keys matching ``filter`` as a list (prefer ``iterate_keys`` for large stores)."""
        iterator = cls.iterate_keys(filter, options)
        return dispatch(cls._collect_keys(iterator), callback)

    @classmethod
    async def _collect_keys(cls, iterator: Any) -> List[str]:
        await cls.get_data_source().ready()
        keys = []
        while True:
            key = await iterator.next()
            if key is None:
                return keys
            keys.append(key)

    @classmethod
    def delete(cls, key: str, options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        options = _check_options(options)
        _check_key(key)
        return dispatch(cls._kv_call("delete", key, options), callback)

    @classmethod
    def delete_all(cls, options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """Delete every key of the model, key by key when the connector lacks ``delete_all``."""
        options = _check_options(options)
        return dispatch(cls._delete_all(options), callback)

    @classmethod
    async def _delete_all(cls, options: Dict[str, Any]) -> None:
        connector = cls._kv_connector()
        if getattr(connector, "delete_all", None) is not None:
            return await cls._kv_call("delete_all", options)
        if getattr(connector, "delete", None) is None:
            raise NotSupportedFault("Connector does not support key-value pair deletion", method="delete_all")
        logger.debug("Falling back to unoptimized key-value pair deletion")
        await cls.get_data_source().ready()
        iterator = connector.iterate_keys(cls.__name__, {}, options)
        while True:
            key = await iterator.next()
            if key is None:
                return None
            await connector.delete(cls.__name__, key, options)

    @classmethod
    def flush(cls, options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        options = _check_options(options)
        return dispatch(cls._kv_call("flush", options), callback)


class KeyValueModel(BaseModel, KeyValueAccessObject):
    """Base class of models stored through a key-value connector."""

    class Meta:
        abstract = True
