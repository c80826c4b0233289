"""
Model instances - the per-operation state machine around a data bag.

A model instance keeps its property values in ``_data``; every attribute
read and write of a declared property goes through the class's descriptor
table. Instances start unpersisted and become persisted after a successful
connector write, or when they are built from connector rows
(``persisted=True``).

Usage:
    ```python
    class Book(Model):
        title = Property(str)
        pages = Property("number", default=0)

    book = Book({"title": "Dune", "pages": "412"})
    book.pages                  # -> 412 (coerced)
    book.to_object()            # -> {"title": "Dune", "pages": 412}
    book.is_new_record()        # -> True
    ```
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .context import OperationContext
from .faults import ModelDefinitionFault, UnknownPropertyFault
from .metaclass import ModelMeta
from .observer import ObserverRegistry
from .types import UNSET
from .utils import set_scope_values_from_where
from .validations import Validatable

logger = logging.getLogger("datajuggler.model")

__all__ = ["BaseModel", "generate_default"]


def generate_default(token: str) -> Any:
    """Value of a named default generator."""
    if token == "now":
        return datetime.now(timezone.utc)
    if token in ("guid", "uuid"):
        return str(uuid.uuid1())
    if token == "uuidv4":
        return str(uuid.uuid4())
    if token == "shortid":
        return secrets.token_urlsafe(7)[:9]
    raise ValueError(f"Unknown default_fn {token!r}")


class BaseModel(Validatable, metaclass=ModelMeta):
    """
    Base class of every model.

    Persistence lives in the data access mixins (``PersistedModel``,
    ``KeyValueModel``); this class owns instance state, coercion,
    serialization and validation.
    """

    _definition = None
    _observers = ObserverRegistry("BaseModel")
    _validations = []
    _relations: Dict[str, Any] = {}
    _scopes: Dict[str, Any] = {}
    _class_cache: Dict[str, Any] = {}
    _data_source = None

    def __init__(
        self,
        data: Any = None,
        *,
        apply_setters: bool = True,
        apply_default_values: bool = True,
        strict: Any = None,
        persisted: Optional[bool] = None,
        fields: Optional[Iterable[str]] = None,
    ):
        self._init_properties(
            data,
            apply_setters=apply_setters,
            apply_default_values=apply_default_values,
            strict=strict,
            persisted=persisted,
            fields=fields,
        )

    # ── Initialisation ───────────────────────────────────────────────────

    def _init_properties(
        self,
        data: Any,
        *,
        apply_setters: bool = True,
        apply_default_values: bool = True,
        strict: Any = None,
        persisted: Optional[bool] = None,
        fields: Optional[Iterable[str]] = None,
    ) -> None:
        cls = type(self)
        definition = cls._definition
        if isinstance(data, cls):
            data = data.to_object(False)
        data = dict(data) if data else {}
        cls.apply_properties(data)

        if strict is None:
            strict = definition.settings.strict
        object.__setattr__(self, "_data", {})
        object.__setattr__(self, "_cached_relations", {})
        object.__setattr__(self, "_strict", strict)
        object.__setattr__(self, "_persisted", persisted is True)
        object.__setattr__(self, "_unknown_properties", [])
        object.__setattr__(self, "errors", False)

        fields = list(fields) if fields else None
        properties = definition.properties
        relations = cls._relations

        for key, value in data.items():
            if fields is not None and key not in fields:
                continue
            if callable(value) and not isinstance(value, type):
                continue
            prop = properties.get(key)
            if prop is not None:
                if apply_setters or prop.id_index:
                    self._data[key] = prop.ptype.coerce_in(value, self)
                else:
                    self._data[key] = value
            elif key in relations:
                self._init_relation(relations[key], key, value)
            elif strict is False:
                self._data[key] = value
            elif strict == "throw":
                raise UnknownPropertyFault(cls.__name__, key)
            elif strict == "filter":
                continue
            else:
                self._unknown_properties.append(key)

        for name, prop in properties.items():
            if fields is not None and name not in fields:
                continue
            if name not in self._data:
                if not apply_default_values:
                    continue
                if prop.has_default():
                    default = prop.default
                    if default in (datetime, date):
                        value = datetime.now(timezone.utc)
                    else:
                        value = prop.get_default()
                elif prop.default_fn:
                    value = generate_default(prop.default_fn)
                else:
                    continue
                self._data[name] = prop.ptype.coerce_in(value, self)
            elif not apply_setters and not prop.ptype.base and self._data[name] is not None:
                self._data[name] = prop.ptype.coerce_in(self._data[name], self)

    def _init_relation(self, relation: Any, key: str, value: Any) -> None:
        target = relation.model_to
        if value is not None:
            if relation.multiple:
                value = [v if isinstance(v, target) else target(v) for v in value]
            elif not isinstance(value, target):
                value = target(value)
            if relation.type == "belongsTo":
                self._data[relation.key_from] = getattr(value, relation.key_to, None)
        self._cached_relations[key] = value
        self._data[key] = value

    # ── Attribute access ─────────────────────────────────────────────────

    def __getattr__(self, name: str) -> Any:
        # only reached when regular lookup fails
        if name.startswith("_"):
            raise AttributeError(name)
        cls = type(self)
        if name in cls._definition.properties:
            return self._data.get(name)
        relation = cls._relations.get(name)
        if relation is not None:
            return relation.accessor(self)
        if name in self._data:
            return self._data[name]
        raise AttributeError(f"{cls.__name__!r} object has no attribute {name!r}")

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_") or name == "errors":
            object.__setattr__(self, name, value)
            return
        cls = type(self)
        entry = cls._definition.table.get(name)
        if entry is not None:
            self._data[name] = entry[0](value, self)
            return
        if name in cls._relations:
            self._init_relation(cls._relations[name], name, value)
            return
        if self._strict is False:
            self._data[name] = value
        elif self._strict == "throw":
            raise UnknownPropertyFault(cls.__name__, name)
        else:
            object.__setattr__(self, name, value)

    def __delattr__(self, name: str) -> None:
        if name in self._data:
            del self._data[name]
        else:
            object.__delattr__(self, name)

    def __getitem__(self, name: str) -> Any:
        if name in self._data:
            return self._data[name]
        if name in self.__dict__ and not name.startswith("_"):
            return self.__dict__[name]
        return None

    def __setitem__(self, name: str, value: Any) -> None:
        setattr(self, name, value)

    def __contains__(self, name: str) -> bool:
        return name in self._data

    def _get_value(self, name: str) -> Any:
        """Value of ``name`` or ``UNSET`` when it was never set."""
        if name in self._data:
            return self._data[name]
        if name in self.__dict__ and not name.startswith("_") and name != "errors":
            return self.__dict__[name]
        return UNSET

    # ── Serialization ────────────────────────────────────────────────────

    def to_object(
        self,
        only_schema: bool = True,
        remove_hidden: bool = False,
        remove_protected: bool = False,
    ) -> Dict[str, Any]:
        """
        Plain dict of the instance.

        Schema properties are always emitted (when set). Non-strict instances,
        or ``only_schema=False``, also emit undeclared values. Related models
        loaded through ``include`` are emitted as nested dicts.
        """
        cls = type(self)
        definition = cls._definition
        settings = definition.settings
        schema_less = self._strict is False or not only_schema
        hidden: set = set()
        protected: set = set()
        if remove_hidden:
            hidden.update(settings.hidden)
            hidden.update(name for name, prop in definition.properties.items() if prop.hidden)
        if remove_protected:
            protected.update(settings.protected)
            protected.update(name for name, prop in definition.properties.items() if prop.protected)

        def plain(value: Any) -> Any:
            to_object = getattr(value, "to_object", None)
            if callable(to_object) and not isinstance(value, type):
                return to_object(not schema_less, remove_hidden, True)
            if isinstance(value, list):
                return [plain(v) for v in value]
            return value

        result: Dict[str, Any] = {}
        for name in definition.properties:
            if name in hidden or name in protected or name not in self._data:
                continue
            result[name] = plain(self._data[name])

        if schema_less:
            for name, value in self.__dict__.items():
                if name.startswith("_") or name == "errors" or name in result:
                    continue
                if name in hidden or name in protected or callable(value):
                    continue
                result[name] = plain(value)
            for name, value in self._data.items():
                if name in result or name in hidden or name in protected:
                    continue
                result[name] = plain(value)
        else:
            for name in cls._relations:
                if name in self._data and name not in hidden and name not in protected:
                    result[name] = plain(self._data[name])
        return result

    def to_json(self) -> Dict[str, Any]:
        return self.to_object(False, True, False)

    def from_object(self, obj: Dict[str, Any]) -> None:
        for key, value in obj.items():
            setattr(self, key, value)

    # ── State ────────────────────────────────────────────────────────────

    def is_new_record(self) -> bool:
        return not self._persisted

    def set_strict(self, strict: Any) -> None:
        self._strict = strict

    def reset(self) -> None:
        """Drop every value that is not a declared property (non-persisted edits)."""
        properties = type(self)._definition.properties
        for key in list(self._data):
            if key not in properties:
                del self._data[key]
        for key in [k for k in self.__dict__ if not k.startswith("_") and k != "errors"]:
            object.__delattr__(self, key)

    def get_id(self) -> Any:
        name = type(self)._definition.id_name()
        return self._data.get(name) if name else None

    def set_id(self, value: Any) -> None:
        name = type(self)._definition.id_name()
        if name:
            setattr(self, name, value)

    def set_attribute(self, name: str, value: Any) -> None:
        setattr(self, name, value)

    def set_attributes(self, data: Optional[Dict[str, Any]] = None) -> None:
        """Assign several values; declared properties go through coercion."""
        if not data:
            return
        data = dict(data)
        type(self).apply_properties(data, self)
        for key, value in data.items():
            if callable(value) and not isinstance(value, type):
                continue
            setattr(self, key, value)

    def unset_attribute(self, name: str, nullify: bool = False) -> None:
        if nullify:
            self._data[name] = None
        else:
            self._data.pop(name, None)

    # ── Class helpers ────────────────────────────────────────────────────

    @classmethod
    def get_data_source(cls) -> Any:
        if cls._data_source is None:
            raise ModelDefinitionFault(
                f"Model {cls.__name__} is not attached to a data source", model=cls.__name__
            )
        return cls._data_source

    @classmethod
    def get_connector(cls) -> Any:
        return cls.get_data_source().connector

    @classmethod
    def get_id_name(cls) -> Optional[str]:
        return cls._definition.id_name()

    @classmethod
    def get_property_type(cls, name: str) -> Optional[str]:
        prop = cls._definition.properties.get(name)
        return prop.ptype.name if prop else None

    @classmethod
    def define_property(cls, name: str, value: Any) -> None:
        """Add or redefine a property after the class was created."""
        cls._definition.define_property(name, value)
        prop = cls._definition.properties[name]
        if prop.required:
            cls.validates_presence_of(name)

    @classmethod
    def extend_model(cls, properties: Dict[str, Any]) -> None:
        for name, value in properties.items():
            cls.define_property(name, value)

    @classmethod
    def default_scope(cls, target: Any = None, instance: Any = None) -> Optional[Dict[str, Any]]:
        scope = cls._definition.settings.scope
        if callable(scope):
            scope = scope(cls, target, instance)
        return scope

    @classmethod
    def apply_properties(cls, data: Dict[str, Any], instance: Any = None) -> None:
        """Fold ``settings.properties`` (or the default scope's where) into ``data``."""
        properties = cls._definition.settings.properties
        if isinstance(properties, dict):
            data.update(properties)
        elif callable(properties):
            data.update(properties(cls, data, instance) or {})
        elif properties is not False:
            scope = cls.default_scope({}, instance) or {}
            if isinstance(scope.get("where"), dict):
                set_scope_values_from_where(data, scope["where"], cls)

    # ── Observers ────────────────────────────────────────────────────────

    @classmethod
    def observe(cls, operation: str, listener: Any = None):
        return cls._observers.observe(operation, listener)

    @classmethod
    def remove_observer(cls, operation: str, listener: Any) -> bool:
        return cls._observers.remove_observer(operation, listener)

    @classmethod
    def clear_observers(cls, operation: Optional[str] = None) -> None:
        cls._observers.clear_observers(operation)

    @classmethod
    async def notify_observers_of(cls, operation: Any, context: OperationContext) -> OperationContext:
        return await cls._observers.notify(operation, context)

    @classmethod
    async def notify_observers_around(cls, operation: str, context: OperationContext, work: Any) -> Any:
        return await cls._observers.notify_around(operation, context, work)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._data!r}>"

    def __eq__(self, other: Any) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self.to_object(False) == other.to_object(False)

    __hash__ = object.__hash__

