"""
Connectors - storage backends for data sources.

Built-in connectors are registered by name; ``register_connector`` adds
third-party ones.

Usage:
    ```python
    from datajuggler.connectors import get_connector, register_connector

    connector_cls = get_connector("memory")
    register_connector("redis-kv", RedisKeyValue)
    ```
"""

from __future__ import annotations

from typing import Dict, Type

from ..faults import ConnectorNotFoundFault
from .base import Connector, ConnectorCapabilities
from .kv_memory import KeyValueMemory
from .memory import Memory
from .transient import Transient

__all__ = [
    "Connector",
    "ConnectorCapabilities",
    "Memory",
    "KeyValueMemory",
    "Transient",
    "get_connector",
    "register_connector",
]

_CONNECTORS: Dict[str, Type[Connector]] = {
    "memory": Memory,
    "kv-memory": KeyValueMemory,
    "transient": Transient,
}


def register_connector(name: str, connector_cls: Type[Connector]) -> None:
    _CONNECTORS[name] = connector_cls


def get_connector(name: str) -> Type[Connector]:
    try:
        return _CONNECTORS[name]
    except KeyError:
        raise ConnectorNotFoundFault(name) from None
