"""
Connector base - the interface between the DAO and a storage backend.

A connector stores rows for the models attached to its data source. The
DAO always passes the model *name*; the connector looks the class up in
``self._models`` when it needs the definition (id names, property types,
connector specific settings).

Every method may be sync or async and takes ``options`` as its last,
optional argument. The DAO inspects the signature before the call and only
passes ``options`` when the method accepts it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

logger = logging.getLogger("datajuggler.connectors")

__all__ = ["Connector", "ConnectorCapabilities"]


@dataclass
class ConnectorCapabilities:
    """Describes what a specific connector supports."""

    supports_transactions: bool = False
    supports_near: bool = False
    supports_ttl: bool = False
    atomic_upserts: bool = False
    name: str = "base"


class Connector(ABC):
    """
    Abstract connector.

    Subclasses implement ``connect`` / ``disconnect`` and whichever CRUD or
    key-value methods they support. The DAO checks for optional methods
    (``update_or_create``, ``find_or_create``, ``build_near_filter``...)
    with ``getattr`` and falls back to generic implementations.
    """

    name = "base"
    capabilities: ConnectorCapabilities = ConnectorCapabilities()
    data_access_object: Optional[Type[Any]] = None

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        self.settings: Dict[str, Any] = dict(settings or {})
        self.data_source: Any = None
        self.connected = False
        self._models: Dict[str, Dict[str, Any]] = {}

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection."""
        ...

    # ── Model bookkeeping ────────────────────────────────────────────────

    def define(self, model_cls: Type[Any]) -> None:
        """Attach a model class to this connector."""
        definition = model_cls._definition
        self._models[model_cls.__name__] = {
            "model": model_cls,
            "properties": definition.properties,
            "settings": definition.settings,
        }
        logger.debug(f"{self.name}: model {model_cls.__name__} attached")

    def get_model(self, model: str) -> Type[Any]:
        entry = self._models.get(model)
        if entry is None:
            raise LookupError(f"Model {model!r} is not attached to connector {self.name!r}")
        return entry["model"]

    def get_model_definition(self, model: str) -> Optional[Dict[str, Any]]:
        return self._models.get(model)

    def id_names(self, model: str) -> List[str]:
        return list(self.get_model(model)._definition.id_names)

    def id_name(self, model: str) -> Optional[str]:
        names = self.id_names(model)
        return names[0] if names else None

    def get_id_value(self, model: str, data: Dict[str, Any]) -> Any:
        name = self.id_name(model)
        return data.get(name) if name and data else None

    def set_id_value(self, model: str, data: Dict[str, Any], value: Any) -> None:
        name = self.id_name(model)
        if name:
            data[name] = value

    def get_default_id_type(self, prop: Any = None) -> str:
        return "number"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} models={list(self._models)}>"
