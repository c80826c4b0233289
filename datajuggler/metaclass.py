"""
Model metaclass - property collection, id injection, settings parsing,
observer and validation inheritance, registration.

Properties can be declared three ways, all ending in one ``ModelDefinition``:

    class Book(Model):
        title = Property(str, required=True)
        pages = Property("number", default=0)

        class Meta:
            strict = True
            hidden = ("secret",)

    Book = ModelMeta("Book", (Model,), {}, properties={"title": str})

    Book = data_source.define("Book", {"title": {"type": "string"}})
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Tuple

from .definition import ModelDefinition, ModelSettings, Property
from .observer import ObserverRegistry
from .registry import ModelRegistry

logger = logging.getLogger("datajuggler.metaclass")

__all__ = ["ModelMeta"]


class ModelMeta(type):
    """
    Metaclass for juggler models.

    Handles:
    - Property collection (class attributes and the ``properties`` keyword)
    - Inheritance of parent properties, settings, validations and relations
    - Id injection when no id property is declared
    - Meta class parsing into ``ModelSettings``
    - Per-class observer registry chained to the parent's registry
    - Registration in ``ModelRegistry`` and mixin application
    """

    def __new__(
        mcs,
        name: str,
        bases: Tuple[type, ...],
        namespace: Dict[str, Any],
        properties: Dict[str, Any] | None = None,
        settings: Any = None,
        **kwargs,
    ) -> ModelMeta:
        parents = [b for b in bases if isinstance(b, ModelMeta)]
        if not parents:
            return super().__new__(mcs, name, bases, namespace, **kwargs)
        parent = parents[0]

        meta_class = namespace.pop("Meta", None)

        declared: Dict[str, Any] = {}
        for key, value in list(namespace.items()):
            if isinstance(value, Property):
                declared[key] = namespace.pop(key)
        if properties:
            declared.update(properties)

        parent_definition = getattr(parent, "_definition", None)
        parent_settings = parent_definition.settings if parent_definition else None
        model_settings = ModelSettings(name, meta_class, parent_settings)
        if settings:
            overrides = ModelSettings(name, settings, model_settings)
            model_settings = overrides

        collected: Dict[str, Any] = {}
        if parent_definition is not None:
            declares_id = any(Property.parse(p).id_index for p in declared.values())
            for prop_name, prop in parent_definition.properties.items():
                if declares_id and prop.extra.get("injected"):
                    continue
                collected[prop_name] = prop
        collected.update(declared)

        cls = super().__new__(mcs, name, bases, namespace, **kwargs)

        cls._definition = ModelDefinition(name, collected, model_settings)
        cls._observers = ObserverRegistry(name, parent=getattr(parent, "_observers", None))
        cls._validations = list(getattr(parent, "_validations", ()))
        cls._relations = dict(getattr(parent, "_relations", {}))
        cls._scopes = {}
        cls._class_cache = {}

        for prop_name, prop in cls._definition.properties.items():
            if prop.required and prop_name in declared:
                cls.validates_presence_of(prop_name)

        id_name = cls._definition.id_name()
        if model_settings.force_id and id_name and not (parent_settings and parent_settings.force_id):
            cls.validates_absence_of(id_name, if_=lambda inst: inst.is_new_record())

        if not model_settings.abstract:
            ModelRegistry.register(cls)
            if model_settings.mixins:
                from .mixins import mixins
                for mixin_name, options in model_settings.mixins.items():
                    if options is False:
                        continue
                    mixins.apply(cls, mixin_name, options if isinstance(options, dict) else {})
            data_source = getattr(cls, "_data_source", None)
            if data_source is not None:
                data_source.attach(cls)
            if model_settings.extra.get("relations"):
                from .relations import define_relations
                define_relations(cls, model_settings.extra["relations"])
            logger.debug(f"Model {name} defined with properties {list(cls._definition.properties)}")

        return cls

    def __init__(cls, name, bases, namespace, properties=None, settings=None, **kwargs):
        super().__init__(name, bases, namespace, **kwargs)

    def __repr__(cls) -> str:
        return f"[Model {cls.__name__}]"
