"""
Mixins - named behaviours applied to models at definition time.

A mixin is a function ``(model_cls, options)`` or another model class whose
properties and public class attributes are copied onto the target. Models
list the mixins they use in their settings:

    class Post(ds.Model):
        title = Property(str)

        class Meta:
            mixins = {"TimeStamp": True}

Usage:
    ```python
    from datajuggler.mixins import mixins

    @mixins.register("SoftDelete")
    def soft_delete(model, options):
        model.define_property("deleted", {"type": "boolean", "default": False})
    ```
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .faults import ContractViolation, ModelDefinitionFault
from .registry import ModelRegistry

logger = logging.getLogger("datajuggler.mixins")

__all__ = ["MixinRegistry", "mixins", "time_stamp"]

MixinFn = Callable[[Any, Dict[str, Any]], Any]


def _is_model_class(value: Any) -> bool:
    return isinstance(value, type) and hasattr(value, "_definition")


def _copy_model(model: Any, source: Any, options: Dict[str, Any]) -> None:
    """Copy the properties and public class attributes of ``source`` onto ``model``."""
    for name, prop in source._definition.properties.items():
        if name not in model._definition.properties and not prop.extra.get("injected"):
            model.define_property(name, prop)
    for name, value in vars(source).items():
        if name.startswith("_") or hasattr(model, name):
            continue
        setattr(model, name, value)


class MixinRegistry:
    """Named mixins, looked up when a model lists them in its settings."""

    def __init__(self):
        self._mixins: Dict[str, MixinFn] = {}

    def define(self, name: str, mixin: Any) -> None:
        """Define mixin ``name`` from a function or a model class."""
        if name in self._mixins:
            logger.debug(f"Duplicate mixin: {name}")
        if _is_model_class(mixin):
            source = mixin
            self._mixins[name] = lambda model, options: _copy_model(model, source, options)
        elif callable(mixin):
            self._mixins[name] = mixin
        else:
            raise ContractViolation("The mixin must be a function or model class", mixin=name)

    def register(self, name: str) -> Callable[[MixinFn], MixinFn]:
        """Decorator form of ``define``."""
        def _decorator(fn: MixinFn) -> MixinFn:
            self.define(name, fn)
            return fn
        return _decorator

    def get(self, name: str) -> Optional[MixinFn]:
        return self._mixins.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._mixins

    def apply(self, model: Any, name: str, options: Optional[Dict[str, Any]] = None) -> None:
        """
        Apply mixin ``name`` to ``model``.

        Names that are not registered mixins are resolved as model names.
        """
        fn = self._mixins.get(name)
        if fn is None:
            source = ModelRegistry.get(name)
            if source is None:
                raise ModelDefinitionFault(
                    f'Model "{model.__name__}" uses unknown mixin: {name}',
                    model=model.__name__,
                    mixin=name,
                )
            logger.debug(f"Mixin is resolved to a model: {name}")
            _copy_model(model, source, options or {})
            return
        fn(model, options or {})
        logger.debug(f"Mixin {name} applied to {model.__name__}")


# ── TimeStamp ────────────────────────────────────────────────────────────────

def time_stamp(model: Any, options: Dict[str, Any]) -> None:
    """
    Maintain creation and modification dates.

    Options:
        created_at: property name of the creation date (default ``created_at``)
        updated_at: property name of the modification date (default ``updated_at``)
    """
    if getattr(model, "_time_stamped", False):
        return
    model._time_stamped = True
    created = options.get("created_at", "created_at")
    updated = options.get("updated_at", "updated_at")
    for name in (created, updated):
        if name not in model._definition.properties:
            model.define_property(name, {"type": "date"})

    def stamp(ctx: Any) -> None:
        now = datetime.now(timezone.utc)
        if ctx.instance is not None:
            ctx.instance[updated] = now
            if ctx.is_new_instance or ctx.instance[created] is None:
                ctx.instance[created] = now
        elif ctx.data is not None:
            ctx.data[updated] = now

    model.observe("before save", stamp)


mixins = MixinRegistry()
mixins.define("TimeStamp", time_stamp)
