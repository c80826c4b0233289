"""
Model registry - global registry for all defined model classes.

Resolves forward references: relations and embedded property types may
name a model that is defined later.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Type

logger = logging.getLogger("datajuggler.registry")

__all__ = ["ModelRegistry"]


class ModelRegistry:
    """Global registry of model classes keyed by model name."""

    _models: Dict[str, Type[Any]] = {}
    _pending: Dict[str, List[Callable[[Type[Any]], None]]] = {}

    @classmethod
    def register(cls, model_cls: Type[Any]) -> None:
        """Register a model class and run callbacks waiting on its name."""
        name = model_cls.__name__
        if name in cls._models and cls._models[name] is not model_cls:
            logger.debug(f"Model {name} redefined")
        cls._models[name] = model_cls
        for callback in cls._pending.pop(name, []):
            callback(model_cls)

    @classmethod
    def get(cls, name: str) -> Optional[Type[Any]]:
        return cls._models.get(name)

    @classmethod
    def all_models(cls) -> Dict[str, Type[Any]]:
        return dict(cls._models)

    @classmethod
    def when_defined(cls, name: str, callback: Callable[[Type[Any]], None]) -> None:
        """Call ``callback(model_cls)`` now, or once ``name`` is registered."""
        model_cls = cls._models.get(name)
        if model_cls is not None:
            callback(model_cls)
        else:
            cls._pending.setdefault(name, []).append(callback)

    @classmethod
    def resolve(cls, target: Any) -> Type[Any]:
        """Resolve a model class or model name."""
        if isinstance(target, str):
            model_cls = cls._models.get(target)
            if model_cls is None:
                raise LookupError(f"Model {target!r} is not defined")
            return model_cls
        return target

    @classmethod
    def reset(cls) -> None:
        """Clear the registry (testing)."""
        cls._models.clear()
        cls._pending.clear()
