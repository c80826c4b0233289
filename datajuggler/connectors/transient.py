"""
Transient connector - accepts writes, stores nothing.

Useful for models that only need validation and hooks. ``create``
generates an id (a random number below 10000 for numeric ids, otherwise
24 hex characters); reads always come back empty.

Its methods take no ``options`` argument, so operations carrying a
transaction are rejected by the DAO.
"""

from __future__ import annotations

import logging
import random
import secrets
from typing import Any, Dict, List, Optional

from .base import Connector, ConnectorCapabilities

logger = logging.getLogger("datajuggler.connectors.transient")

__all__ = ["Transient"]


class Transient(Connector):
    """
    Settings:
        generate_id: callable ``(model, data, id_name) -> id``
        default_id_type: id type when the id property is untyped (default "string")
    """

    name = "transient"
    capabilities = ConnectorCapabilities(name="transient")

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        super().__init__(settings)
        if callable(self.settings.get("generate_id")):
            self.generate_id = self.settings["generate_id"]

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    def get_default_id_type(self, prop: Any = None) -> str:
        return self.settings.get("default_id_type") or "string"

    def generate_id(self, model: str, data: Dict[str, Any], id_name: str) -> Any:
        prop = self.get_model(model)._definition.properties.get(id_name)
        id_type = prop.ptype.name if prop is not None and prop.ptype.name != "any" else self.get_default_id_type()
        if id_type == "number":
            return random.randrange(10000)
        return secrets.token_hex(12)

    async def create(self, model: str, data: Dict[str, Any]) -> Any:
        id_name = self.id_name(model)
        prop = self.get_model(model)._definition.properties.get(id_name) if id_name else None
        if prop is None:
            return None
        id_value = self.get_id_value(model, data) or self.generate_id(model, data, id_name)
        id_value = prop.ptype.coerce_in(id_value) or id_value
        self.set_id_value(model, data, id_value)
        logger.debug(f"transient create {model} -> {id_value!r}")
        return id_value

    async def save(self, model: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return data

    async def exists(self, model: str, id: Any) -> bool:
        return False

    async def find(self, model: str, id: Any) -> None:
        return None

    async def all(self, model: str, filter: Optional[Dict[str, Any]] = None) -> List[Any]:
        return []

    async def count(self, model: str, where: Optional[Dict[str, Any]] = None) -> int:
        return 0

    async def update(self, model: str, where: Optional[Dict[str, Any]], data: Dict[str, Any]) -> Dict[str, int]:
        return {"count": 0}

    update_all = update

    async def update_attributes(self, model: str, id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
        if id is None or id == "":
            raise ValueError("You must provide an id when updating attributes!")
        self.set_id_value(model, data, id)
        return await self.save(model, data)

    async def destroy(self, model: str, id: Any) -> None:
        return None

    async def destroy_all(self, model: str, where: Optional[Dict[str, Any]] = None) -> None:
        return None
