"""
Model definition - properties, settings and the derived descriptor table.

A ``ModelDefinition`` is built once per model class by the metaclass. Any
later change (``define_property``, ``extend``) rebuilds the derived maps:
the ordered id names and the property descriptor table consulted by every
instance read and write.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .types import UNSET, PropertyType, registry

logger = logging.getLogger("datajuggler.definition")

__all__ = ["Property", "ModelSettings", "ModelDefinition"]


# ── Property ─────────────────────────────────────────────────────────────────

class Property:
    """
    Declarative property of a model.

    Parameters:
        type        – type token ("string", int, datetime, [str], GeoPoint, Model...)
        required    – adds a presence validation
        default     – literal (deep-copied) or callable default
        default_fn  – named generator: "now", "uuid"/"guid", "uuidv4", "shortid"
        id          – True, or an int giving the position in a composite id
        generated   – the connector generates the value
        index       – index hint for connectors
        hidden      – excluded from ``to_json``
        protected   – excluded from nested ``to_json``
    """

    __slots__ = (
        "name", "type", "ptype", "required", "default", "default_fn", "id",
        "generated", "index", "hidden", "protected", "extra",
    )

    def __init__(
        self,
        type: Any = "any",
        *,
        required: bool = False,
        default: Any = UNSET,
        default_fn: Optional[str] = None,
        id: Any = False,
        generated: bool = False,
        index: bool = False,
        hidden: bool = False,
        protected: bool = False,
        **extra: Any,
    ):
        self.name = ""
        self.type = type
        self.ptype: Optional[PropertyType] = None
        self.required = required
        self.default = default
        self.default_fn = default_fn
        self.id = id
        self.generated = generated
        self.index = index
        self.hidden = hidden
        self.protected = protected
        self.extra = extra

    @classmethod
    def parse(cls, value: Any) -> Property:
        """Build from a ``Property``, a type token, or a dict of options."""
        if isinstance(value, Property):
            return copy.copy(value)
        if isinstance(value, dict):
            options = dict(value)
            type_token = options.pop("type", "any")
            if "defaultFn" in options:
                options["default_fn"] = options.pop("defaultFn")
            return cls(type_token, **options)
        return cls(value)

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    @property
    def id_index(self) -> int:
        if self.id is True:
            return 1
        if isinstance(self.id, int) and not isinstance(self.id, bool):
            return self.id
        return 0

    def has_default(self) -> bool:
        return self.default is not UNSET

    def get_default(self) -> Any:
        if self.default is UNSET:
            return None
        if callable(self.default):
            return self.default()
        return copy.deepcopy(self.default)

    def __repr__(self) -> str:
        return f"<Property: {self.name} ({self.ptype.name if self.ptype else self.type})>"


# ── Settings ─────────────────────────────────────────────────────────────────

class ModelSettings:
    """
    Model settings parsed from an inner ``Meta`` class or a dict.

    Attributes:
        strict: False | True | "filter" | "validate" | "throw"
        id_injection: inject a numeric ``id`` when no id property exists
        validate_upsert: True (raise), False (skip), None (warn and continue)
        automatic_validation: validate on save and create
        force_id: reject client supplied ids on create
        hidden: property names dropped by ``to_json``
        protected: property names dropped from nested ``to_json``
        strict_delete: deleting a missing id raises 404
        scope: default scope (dict or callable returning one)
        properties: values applied to every write (dict or callable)
        mixins: {mixin_name: options}
        plural: plural name used for relation defaults
        abstract: definition only, no instances persisted
        extra: connector specific sections (e.g. ``{"memory": {"collection": "x"}}``)
    """

    __slots__ = (
        "strict",
        "id_injection",
        "validate_upsert",
        "automatic_validation",
        "force_id",
        "hidden",
        "protected",
        "strict_delete",
        "scope",
        "properties",
        "mixins",
        "plural",
        "abstract",
        "extra",
    )

    _DEFAULTS = {
        "strict": False,
        "id_injection": True,
        "validate_upsert": None,
        "automatic_validation": True,
        "force_id": False,
        "hidden": (),
        "protected": (),
        "strict_delete": False,
        "scope": None,
        "properties": None,
        "mixins": None,
        "plural": None,
        "abstract": False,
    }

    def __init__(self, model_name: str, meta: Any = None, parent: Optional[ModelSettings] = None):
        values = dict(self._DEFAULTS)
        extra: Dict[str, Any] = {}
        if parent is not None:
            values.update(parent.as_dict())
            values["abstract"] = False
            values["plural"] = None
            extra.update(copy.deepcopy(parent.extra))

        if isinstance(meta, dict):
            source = dict(meta)
        elif meta is not None:
            source = {k: v for k, v in vars(meta).items() if not k.startswith("__")}
        else:
            source = {}

        for key, value in source.items():
            if key in values:
                values[key] = value
            else:
                extra[key] = value

        for key, value in values.items():
            setattr(self, key, value)
        self.hidden = tuple(self.hidden or ())
        self.protected = tuple(self.protected or ())
        self.plural = self.plural or f"{model_name[:1].lower()}{model_name[1:]}s"
        self.extra = extra

    def as_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, key) for key in self._DEFAULTS}

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._DEFAULTS:
            return getattr(self, key)
        return self.extra.get(key, default)

    def __repr__(self) -> str:
        return f"<ModelSettings: strict={self.strict!r}>"


# ── Definition ───────────────────────────────────────────────────────────────

class ModelDefinition:
    """
    The schema of one model class.

    Owns the ordered property map, the settings, the ordered id names and
    the descriptor table ``{name: (coerce_in, coerce_out)}``.
    """

    def __init__(self, name: str, properties: Dict[str, Property], settings: ModelSettings):
        self.name = name
        self.properties: Dict[str, Property] = {}
        self.settings = settings
        self.id_names: List[str] = []
        self.table: Dict[str, Tuple[Callable[..., Any], Callable[[Any], Any]]] = {}
        for prop_name, prop in properties.items():
            self._add(prop_name, prop)
        self.build()

    def _add(self, name: str, prop: Any) -> Property:
        prop = Property.parse(prop)
        prop.name = name
        prop.ptype = registry.resolve(prop.type)
        self.properties[name] = prop
        return prop

    def build(self) -> None:
        """Derive id names and the descriptor table from ``properties``."""
        ids = [(p.id_index, i, name) for i, (name, p) in enumerate(self.properties.items()) if p.id_index]
        if not ids and self.settings.id_injection is not False and not self.settings.abstract:
            injected = Property("number", id=True, generated=True, injected=True)
            # the injected id leads the property order
            self.properties = {"id": self._prepared(injected, "id"), **self.properties}
            ids = [(1, 0, "id")]
        ids.sort()
        self.id_names = [name for _, _, name in ids]
        self.table = {
            name: (prop.ptype.coerce_in, prop.ptype.coerce_out)
            for name, prop in self.properties.items()
        }

    @staticmethod
    def _prepared(prop: Property, name: str) -> Property:
        prop.name = name
        prop.ptype = registry.resolve(prop.type)
        return prop

    def define_property(self, name: str, value: Any) -> Property:
        prop = self._add(name, value)
        self.build()
        logger.debug(f"Property {self.name}.{name} defined as {prop.ptype.name}")
        return prop

    def id_name(self) -> Optional[str]:
        return self.id_names[0] if self.id_names else None

    def id_property(self) -> Optional[Property]:
        name = self.id_name()
        return self.properties.get(name) if name else None

    def copy_for(self, name: str, settings: ModelSettings) -> ModelDefinition:
        """A child definition inheriting this definition's properties."""
        inherited = {k: copy.copy(v) for k, v in self.properties.items()}
        return ModelDefinition(name, inherited, settings)

    def __repr__(self) -> str:
        return f"<ModelDefinition: {self.name} ({', '.join(self.properties)})>"
