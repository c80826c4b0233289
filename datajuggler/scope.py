"""
Named scopes - reusable, cached query fragments bound to a receiver.

A scope is declared once on an owner (a model class) and read as an
attribute. The attribute is a ``ScopeAccessor`` bound to whatever it was
read from: the class itself, or an instance (relations build their scopes
per instance).

Usage:
    ```python
    Book.scope("published", {"where": {"published": True}, "order": "title"})

    await Book.published()                                # cached on Book
    await Book.published({"where": {"pages": {"gt": 100}}})
    await Book.published.count()
    book = Book.published.build({"title": "Dune"})        # published=True preset
    ```
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List, Optional

from .faults import ContractViolation
from .registry import ModelRegistry
from .utils import merge_query, set_scope_values_from_where

logger = logging.getLogger("datajuggler.scope")

__all__ = ["ScopeDefinition", "ScopeAccessor", "define_scope"]


class ScopeDefinition:
    """
    A named scope of ``owner`` over ``target``.

    ``params`` is a filter dict or a callable ``(receiver) -> filter``;
    ``methods`` are extra callables bound to the accessor as
    ``method(accessor, *args)``.
    """

    __slots__ = ("owner", "target", "name", "params", "methods", "options")

    def __init__(
        self,
        owner: Any,
        target: Any,
        name: str,
        params: Any = None,
        methods: Optional[Dict[str, Callable[..., Any]]] = None,
        options: Optional[Dict[str, Any]] = None,
    ):
        self.owner = owner
        self.target = target
        self.name = name
        self.params = params
        self.methods = dict(methods or {})
        self.options = dict(options or {})

    def target_model(self) -> Any:
        return ModelRegistry.resolve(self.target)

    def scope_for(self, receiver: Any) -> Dict[str, Any]:
        params = self.params(receiver) if callable(self.params) else self.params
        return copy.deepcopy(params or {})

    def __repr__(self) -> str:
        return f"<ScopeDefinition {self.name}>"


def _cache_of(receiver: Any) -> Dict[str, Any]:
    if isinstance(receiver, type):
        return receiver._class_cache
    return receiver._cached_relations


class ScopeAccessor:
    """
    Scope bound to a receiver.

    Awaiting ``accessor()`` returns the cached result when there is one;
    ``refresh=True`` or a filter argument queries again (a filtered read is
    not cached).
    """

    def __init__(self, definition: ScopeDefinition, receiver: Any):
        self.definition = definition
        self.receiver = receiver
        self._scope = definition.scope_for(receiver)
        for name, method in definition.methods.items():
            setattr(self, name, method.__get__(self))

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def target(self) -> Any:
        return self.definition.target_model()

    async def scope_filter(self) -> Dict[str, Any]:
        """The filter every query of this accessor starts from."""
        return copy.deepcopy(self._scope)

    async def _scoped(self, filter: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if filter is not None and not isinstance(filter, dict):
            raise ContractViolation("The filter argument must be an object", filter=type(filter).__name__)
        base = await self.scope_filter()
        return merge_query(base, copy.deepcopy(filter or {}), {"order": False}) or {}

    async def _scoped_where(self, where: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query = await self._scoped({"where": where} if where else None)
        return query.get("where") or {}

    # ── Reads ────────────────────────────────────────────────────────────

    async def __call__(self, filter: Optional[Dict[str, Any]] = None, refresh: bool = False,
                       options: Optional[Dict[str, Any]] = None) -> Any:
        cache = _cache_of(self.receiver)
        save_on_cache = filter is None
        if save_on_cache and not refresh and self.name in cache:
            return cache[self.name]
        result = await self._fetch(filter, options)
        if save_on_cache:
            cache[self.name] = result
        return result

    async def _fetch(self, filter: Optional[Dict[str, Any]], options: Optional[Dict[str, Any]]) -> Any:
        return await self.target.find(await self._scoped(filter), options)

    def get_cache(self) -> Any:
        return _cache_of(self.receiver).get(self.name)

    def reset_cache(self) -> None:
        _cache_of(self.receiver).pop(self.name, None)

    async def find(self, filter: Optional[Dict[str, Any]] = None,
                   options: Optional[Dict[str, Any]] = None) -> List[Any]:
        return await self.target.find(await self._scoped(filter), options)

    async def find_one(self, filter: Optional[Dict[str, Any]] = None,
                       options: Optional[Dict[str, Any]] = None) -> Any:
        return await self.target.find_one(await self._scoped(filter), options)

    async def find_by_id(self, id: Any, filter: Optional[Dict[str, Any]] = None,
                         options: Optional[Dict[str, Any]] = None) -> Any:
        target = self.target
        by_id = merge_query({"where": {target.get_id_name(): id}}, copy.deepcopy(filter or {}))
        return await target.find_one(await self._scoped(by_id), options)

    async def count(self, where: Optional[Dict[str, Any]] = None,
                    options: Optional[Dict[str, Any]] = None) -> int:
        return await self.target.count(await self._scoped_where(where), options)

    async def exists(self, id: Any, options: Optional[Dict[str, Any]] = None) -> bool:
        return await self.count({self.target.get_id_name(): id}, options) > 0

    # ── Writes ───────────────────────────────────────────────────────────

    def build(self, data: Optional[Dict[str, Any]] = None) -> Any:
        """A new target instance preset with the scope's fixed where values."""
        target = self.target
        data = dict(data or {})
        where = self._scope.get("where")
        if isinstance(where, dict):
            set_scope_values_from_where(data, where, target)
        return target(data)

    async def create(self, data: Optional[Dict[str, Any]] = None,
                     options: Optional[Dict[str, Any]] = None) -> Any:
        return await self.build(data).save(options)

    async def update_all(self, where: Optional[Dict[str, Any]] = None, data: Optional[Dict[str, Any]] = None,
                         options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if data is None:
            where, data = None, where
        return await self.target.update_all(await self._scoped_where(where), data, options)

    async def destroy_all(self, where: Optional[Dict[str, Any]] = None,
                          options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        result = await self.target.destroy_all(await self._scoped_where(where), options)
        self.reset_cache()
        return result

    async def destroy_by_id(self, id: Any, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.destroy_all({self.target.get_id_name(): id}, options)

    def __repr__(self) -> str:
        return f"<ScopeAccessor {self.name} of {self.receiver!r}>"


class _ScopeProperty:
    """Class attribute returning a ``ScopeAccessor`` for the class or an instance."""

    def __init__(self, definition: ScopeDefinition):
        self.definition = definition

    def __get__(self, instance: Any, owner: type) -> ScopeAccessor:
        return ScopeAccessor(self.definition, instance if instance is not None else owner)


def define_scope(
    owner: Any,
    target: Any,
    name: str,
    params: Any = None,
    methods: Optional[Dict[str, Callable[..., Any]]] = None,
    options: Optional[Dict[str, Any]] = None,
) -> ScopeDefinition:
    """Declare scope ``name`` on ``owner`` returning ``target`` instances."""
    if params is not None and not isinstance(params, dict) and not callable(params):
        raise ContractViolation("Scope params must be an object or a function", scope=name)
    definition = ScopeDefinition(owner, target, name, params, methods, options)
    owner._scopes[name] = definition
    setattr(owner, name, _ScopeProperty(definition))
    logger.debug(f"Scope {name} defined on {getattr(owner, '__name__', owner)}")
    return definition
