"""
Relations between models.

``belongs_to``, ``has_many`` (optionally ``through`` a join model),
``has_one`` and ``has_and_belongs_to_many`` register a frozen
``RelationDefinition`` on the declaring model. Reading the relation name on
an instance returns an accessor bound to that instance; related results are
cached on the instance until refreshed.

Usage:
    ```python
    Book.belongs_to(Author)                   # book.author(), author_id fk
    Author.has_many(Book)                     # author.books(), author.books.create(...)
    Physician.has_many(Patient, through=Appointment)
    Assembly.has_and_belongs_to_many(Part)    # AssemblyPart join model

    author = await book.author()
    await author.books.create({"title": "Dune"})
    await physician.patients.add(patient)
    ```

Relations can also be declared in settings, resolved once both models exist:

    class Book(ds.Model):
        class Meta:
            relations = {"author": {"type": "belongsTo", "model": "Author"}}
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .faults import BadRequestFault, ModelDefinitionFault
from .registry import ModelRegistry
from .scope import ScopeAccessor, ScopeDefinition
from .utils import merge_query

logger = logging.getLogger("datajuggler.relations")

__all__ = [
    "RelationDefinition",
    "belongs_to",
    "has_many",
    "has_one",
    "has_and_belongs_to_many",
    "define_relations",
]

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


@dataclass(frozen=True)
class RelationDefinition:
    """
    One relation of ``model_from``.

    For ``belongsTo`` the foreign key ``key_from`` lives on ``model_from``;
    for ``hasMany`` / ``hasOne`` it is ``key_to`` on ``model_to`` (or on
    ``model_through``, next to ``key_through`` pointing at ``model_to``).
    """

    type: str
    name: str
    model_from: Any
    model_to: Any
    key_from: str
    key_to: str
    model_through: Any = None
    key_through: Optional[str] = None
    multiple: bool = False
    options: Dict[str, Any] = field(default_factory=dict)

    def accessor(self, instance: Any) -> Any:
        if self.type == "belongsTo":
            return BelongsTo(self, instance)
        if self.type == "hasOne":
            return HasOne(self, instance)
        if self.model_through is not None:
            return HasManyThrough(self, instance)
        return HasMany(self, instance)

    def scope_where(self, instance: Any) -> Dict[str, Any]:
        """The where clause selecting the related rows of ``instance``."""
        return {self.key_to: instance[self.key_from]}

    def scope_filter(self, instance: Any) -> Dict[str, Any]:
        query: Dict[str, Any] = {"where": self.scope_where(instance)}
        scope = self.options.get("scope")
        if callable(scope):
            scope = scope(instance)
        if scope:
            merge_query(query, copy.deepcopy(scope))
        return query

    def apply_properties(self, instance: Any, data: Dict[str, Any]) -> None:
        """Copy ``options["properties"]`` (``{target_prop: source_prop}``) into ``data``."""
        properties = self.options.get("properties")
        if callable(properties):
            data.update(properties(instance) or {})
        elif isinstance(properties, dict):
            for target_key, source_key in properties.items():
                data[target_key] = instance[source_key]


# ── Accessors ────────────────────────────────────────────────────────────────

class _SingleRelation:
    """Shared behaviour of belongsTo and hasOne accessors."""

    def __init__(self, definition: RelationDefinition, instance: Any):
        self.definition = definition
        self.instance = instance

    @property
    def name(self) -> str:
        return self.definition.name

    def get_cache(self) -> Any:
        return self.instance._cached_relations.get(self.name)

    def reset_cache(self, value: Any = None) -> None:
        if value is None:
            self.instance._cached_relations.pop(self.name, None)
        else:
            self.instance._cached_relations[self.name] = value

    async def __call__(self, refresh: bool = False, options: Optional[Dict[str, Any]] = None) -> Any:
        cache = self.instance._cached_relations
        if not refresh and self.name in cache:
            return cache[self.name]
        related = await self._fetch(options)
        cache[self.name] = related
        return related

    async def _fetch(self, options: Optional[Dict[str, Any]]) -> Any:
        raise NotImplementedError

    async def update(self, data: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Any:
        target = await self(True, options)
        if target is None:
            raise BadRequestFault(f"{self.definition.model_to.__name__} instance not found", relation=self.name)
        return await target.update_attributes(data, options)

    async def destroy(self, options: Optional[Dict[str, Any]] = None) -> Any:
        target = await self(True, options)
        if target is None:
            raise BadRequestFault(f"{self.definition.model_to.__name__} instance not found", relation=self.name)
        result = await target.destroy(options)
        self.reset_cache()
        return result


class BelongsTo(_SingleRelation):
    """``book.author()`` - the instance referenced by the foreign key."""

    async def _fetch(self, options: Optional[Dict[str, Any]]) -> Any:
        fk = self.instance[self.definition.key_from]
        if fk is None:
            return None
        query = self.definition.scope_filter(self.instance)
        return await self.definition.model_to.find_one(query, options)

    def build(self, data: Optional[Dict[str, Any]] = None) -> Any:
        data = dict(data or {})
        self.definition.apply_properties(self.instance, data)
        return self.definition.model_to(data)

    async def create(self, data: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None) -> Any:
        """Create the target and point this instance's foreign key at it."""
        definition = self.definition
        data = dict(data or {})
        definition.apply_properties(self.instance, data)
        target = await definition.model_to.create(data, options)
        setattr(self.instance, definition.key_from, target[definition.key_to])
        if not self.instance.is_new_record():
            await self.instance.save(options)
        self.reset_cache(target)
        return target


class HasOne(_SingleRelation):
    """``supplier.account()`` - the single instance pointing back at this one."""

    async def _fetch(self, options: Optional[Dict[str, Any]]) -> Any:
        return await self.definition.model_to.find_one(self.definition.scope_filter(self.instance), options)

    def build(self, data: Optional[Dict[str, Any]] = None) -> Any:
        definition = self.definition
        data = dict(data or {})
        data[definition.key_to] = self.instance[definition.key_from]
        definition.apply_properties(self.instance, data)
        return definition.model_to(data)

    async def create(self, data: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None) -> Any:
        """Create the related instance; fails when one already exists."""
        definition = self.definition
        data = dict(data or {})
        data[definition.key_to] = self.instance[definition.key_from]
        definition.apply_properties(self.instance, data)
        query = definition.scope_filter(self.instance)
        target, created = await definition.model_to.find_or_create(query, data, options)
        if not created:
            raise BadRequestFault(
                f"HasOne relation cannot create more than one instance of {definition.model_to.__name__}",
                relation=self.name,
            )
        self.reset_cache(target)
        return target


class HasMany(ScopeAccessor):
    """``author.books`` - a scope over the target filtered by the foreign key."""

    def __init__(self, definition: RelationDefinition, instance: Any):
        self.relation = definition
        scope = ScopeDefinition(
            definition.model_from,
            definition.model_to,
            definition.name,
            definition.scope_filter,
            definition.options.get("scope_methods"),
        )
        super().__init__(scope, instance)

    def build(self, data: Optional[Dict[str, Any]] = None) -> Any:
        data = dict(data or {})
        self.relation.apply_properties(self.receiver, data)
        return super().build(data)

    async def update_by_id(self, id: Any, data: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Any:
        target = await self.find_by_id(id, None, options)
        if target is None:
            raise BadRequestFault(f"No instance with id {id} found in {self.name}", relation=self.name)
        return await target.update_attributes(data, options)


class HasManyThrough(HasMany):
    """
    ``physician.patients`` - targets linked through join model rows.

    ``add`` / ``remove`` / ``create`` / ``exists`` go through the join model.
    """

    def _link_where(self, target: Any = None) -> Dict[str, Any]:
        relation = self.relation
        where = {relation.key_to: self.receiver[relation.key_from]}
        if target is not None:
            target_id = target.get_id() if hasattr(target, "get_id") else target
            where[relation.key_through] = target_id
        return where

    async def scope_filter(self) -> Dict[str, Any]:
        relation = self.relation
        links = await relation.model_through.find({"where": self._link_where()})
        target_ids = [link[relation.key_through] for link in links if link[relation.key_through] is not None]
        query: Dict[str, Any] = {"where": {relation.model_to.get_id_name(): {"inq": target_ids}}}
        scope = relation.options.get("scope")
        if callable(scope):
            scope = scope(self.receiver)
        if scope:
            merge_query(query, copy.deepcopy(scope))
        return query

    def build(self, data: Optional[Dict[str, Any]] = None) -> Any:
        data = dict(data or {})
        self.relation.apply_properties(self.receiver, data)
        return self.relation.model_to(data)

    async def create(self, data: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None) -> Any:
        target = await self.relation.model_to.create(self.build(data), options)
        await self.add(target, None, options)
        return target

    async def add(self, target: Any, data: Optional[Dict[str, Any]] = None,
                  options: Optional[Dict[str, Any]] = None) -> Any:
        """Link ``target`` (instance or id) with a new join row."""
        link = dict(data or {})
        link.update(self._link_where(target))
        created = await self.relation.model_through.create(link, options)
        self.reset_cache()
        return created

    async def remove(self, target: Any, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Delete the join rows linking ``target``; the target itself is kept."""
        result = await self.relation.model_through.destroy_all(self._link_where(target), options)
        self.reset_cache()
        return result

    async def exists(self, target: Any, options: Optional[Dict[str, Any]] = None) -> bool:
        return await self.relation.model_through.count(self._link_where(target), options) > 0

    async def destroy_by_id(self, id: Any, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        await self.remove(id, options)
        return await self.relation.model_to.delete_by_id(id, options)


# ── Declaration ──────────────────────────────────────────────────────────────

def _resolve(model: Any) -> Any:
    try:
        return ModelRegistry.resolve(model)
    except LookupError:
        raise ModelDefinitionFault(f"Relation target {model!r} is not defined", model=str(model)) from None


def _define_foreign_key(model: Any, key: str, target: Any) -> None:
    if key in model._definition.properties:
        return
    id_prop = target._definition.id_property()
    id_type = id_prop.type if id_prop is not None else "any"
    model.define_property(key, {"type": id_type, "index": True})


def _register(definition: RelationDefinition) -> RelationDefinition:
    model_from = definition.model_from
    if definition.name in model_from._definition.properties:
        raise ModelDefinitionFault(
            f"Relation {definition.name!r} conflicts with a property of {model_from.__name__}",
            model=model_from.__name__,
        )
    model_from._relations[definition.name] = definition
    logger.debug(
        f"{definition.type} {model_from.__name__}.{definition.name} -> {definition.model_to.__name__}"
    )
    return definition


def belongs_to(model_from: Any, model_to: Any, *, as_: Optional[str] = None,
               foreign_key: Optional[str] = None, primary_key: Optional[str] = None,
               **options: Any) -> RelationDefinition:
    model_to = _resolve(model_to)
    name = as_ or snake(model_to.__name__)
    key_from = foreign_key or f"{name}_id"
    key_to = primary_key or model_to.get_id_name() or "id"
    _define_foreign_key(model_from, key_from, model_to)
    return _register(RelationDefinition(
        type="belongsTo",
        name=name,
        model_from=model_from,
        model_to=model_to,
        key_from=key_from,
        key_to=key_to,
        options=options,
    ))


def has_many(model_from: Any, model_to: Any, *, as_: Optional[str] = None,
             foreign_key: Optional[str] = None, primary_key: Optional[str] = None,
             through: Any = None, key_through: Optional[str] = None,
             **options: Any) -> RelationDefinition:
    model_to = _resolve(model_to)
    through = _resolve(through) if through is not None else None
    name = as_ or snake(model_to._definition.settings.plural)
    key_from = primary_key or model_from.get_id_name() or "id"
    key_to = foreign_key or f"{snake(model_from.__name__)}_id"
    if through is not None:
        key_through = key_through or f"{snake(model_to.__name__)}_id"
        _define_foreign_key(through, key_to, model_from)
        _define_foreign_key(through, key_through, model_to)
    else:
        _define_foreign_key(model_to, key_to, model_from)
    return _register(RelationDefinition(
        type="hasMany",
        name=name,
        model_from=model_from,
        model_to=model_to,
        key_from=key_from,
        key_to=key_to,
        model_through=through,
        key_through=key_through,
        multiple=True,
        options=options,
    ))


def has_one(model_from: Any, model_to: Any, *, as_: Optional[str] = None,
            foreign_key: Optional[str] = None, primary_key: Optional[str] = None,
            **options: Any) -> RelationDefinition:
    model_to = _resolve(model_to)
    name = as_ or snake(model_to.__name__)
    key_from = primary_key or model_from.get_id_name() or "id"
    key_to = foreign_key or f"{snake(model_from.__name__)}_id"
    _define_foreign_key(model_to, key_to, model_from)
    return _register(RelationDefinition(
        type="hasOne",
        name=name,
        model_from=model_from,
        model_to=model_to,
        key_from=key_from,
        key_to=key_to,
        options=options,
    ))


def has_and_belongs_to_many(model_from: Any, model_to: Any, *, through: Any = None,
                            **options: Any) -> RelationDefinition:
    """
    hasMany through a join model named ``<From><To>``.

    An existing ``<From><To>`` or ``<To><From>`` model is reused; otherwise
    one is defined on ``model_from``'s data source.
    """
    model_to = _resolve(model_to)
    if through is None:
        name1 = model_from.__name__ + model_to.__name__
        name2 = model_to.__name__ + model_from.__name__
        through = ModelRegistry.get(name1) or ModelRegistry.get(name2)
        if through is None:
            through = model_from.get_data_source().define(name1)
    through = _resolve(through)
    if snake(model_from.__name__) not in through._relations:
        belongs_to(through, model_from)
    if snake(model_to.__name__) not in through._relations:
        belongs_to(through, model_to)
    return has_many(model_from, model_to, through=through, **options)


_DECLARERS = {
    "belongsTo": belongs_to,
    "belongs_to": belongs_to,
    "hasMany": has_many,
    "has_many": has_many,
    "hasOne": has_one,
    "has_one": has_one,
    "hasAndBelongsToMany": has_and_belongs_to_many,
    "has_and_belongs_to_many": has_and_belongs_to_many,
}

_PARAM_ALIASES = {
    "foreignKey": "foreign_key",
    "primaryKey": "primary_key",
    "keyThrough": "key_through",
}


def define_relations(model_from: Any, relations: Dict[str, Dict[str, Any]]) -> None:
    """
    Declare ``{name: {"type", "model", ...}}`` relations from settings.

    Each relation is declared as soon as its target (and join) models exist.
    """
    for name, options in relations.items():
        options = dict(options)
        relation_type = options.pop("type", None)
        declare = _DECLARERS.get(relation_type)
        if declare is None:
            raise ModelDefinitionFault(f"Invalid relation type {relation_type!r} for {name}", relation=name)
        target = options.pop("model", None)
        if target is None:
            raise ModelDefinitionFault(f"Relation {name} has no target model", relation=name)
        params = {_PARAM_ALIASES.get(key, key): value for key, value in options.items()}
        params.setdefault("as_", name)

        pending: List[str] = [target] if isinstance(target, str) else []
        if isinstance(params.get("through"), str):
            pending.append(params["through"])
        _when_all_defined(pending, lambda _cls, d=declare, t=target, p=params: d(model_from, t, **p))


def _when_all_defined(names: List[str], callback: Any) -> None:
    missing = [name for name in names if ModelRegistry.get(name) is None]
    if not missing:
        callback(None)
        return
    ModelRegistry.when_defined(missing[0], lambda _cls: _when_all_defined(names, callback))
