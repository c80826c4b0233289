"""
Inclusion - batched loading of related models for ``find({"include": ...})``.

Every relation named in the include filter is loaded with one ``inq`` query
per relation and nesting level, then cached on each instance and copied
into its data so ``to_json()`` carries it.

Accepted shapes:
    "author"
    ["author", "reviews"]
    {"author": "books"}                                  # nested include
    {"relation": "reviews", "scope": {"where": {...}, "include": ...}}
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from .faults import BadRequestFault
from .utils import collect_target_ids, merge_query, normalize_includes

logger = logging.getLogger("datajuggler.inclusion")

__all__ = ["include"]


def _parse_entry(entry: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
    """``(relation name, filter applied to the related model)``."""
    name = entry.get("relation") or entry.get("rel")
    if isinstance(name, str):
        scope = copy.deepcopy(entry.get("scope") or {})
        return name, scope
    name, sub = next(iter(entry.items()))
    if sub is True or sub is None:
        return name, {}
    return name, {"include": sub}


def _key(value: Any) -> str:
    return str(value)


def _attach(instance: Any, name: str, value: Any) -> None:
    instance._cached_relations[name] = value
    instance._data[name] = value


async def include(model: Any, instances: List[Any], include_filter: Any,
                  options: Optional[Dict[str, Any]] = None) -> List[Any]:
    """Load the relations named by ``include_filter`` onto ``instances``."""
    options = options or {}
    for entry in normalize_includes(include_filter):
        name, scope = _parse_entry(entry)
        relation = model._relations.get(name)
        if relation is None:
            raise BadRequestFault(f'Relation "{name}" is not defined for {model.__name__} model', relation=name)
        logger.debug(f"Including {model.__name__}.{name} for {len(instances)} instances")
        if relation.type == "belongsTo":
            await _include_belongs_to(relation, instances, scope, options)
        elif relation.model_through is not None:
            await _include_through(relation, instances, scope, options)
        else:
            await _include_has(relation, instances, scope, options)
    return instances


async def _related(target: Any, key: str, ids: Dict[str, Any], scope: Dict[str, Any],
                   options: Dict[str, Any]) -> List[Any]:
    if not ids["inq"]:
        return []
    query = {"where": {key: ids}}
    merge_query(query, scope)
    return await target.find(query, options)


async def _include_belongs_to(relation: Any, instances: List[Any], scope: Dict[str, Any],
                              options: Dict[str, Any]) -> None:
    ids = collect_target_ids(instances, relation.key_from)
    related = await _related(relation.model_to, relation.key_to, ids, scope, options)
    by_key = {_key(item[relation.key_to]): item for item in related}
    for instance in instances:
        value = instance[relation.key_from]
        _attach(instance, relation.name, by_key.get(_key(value)) if value is not None else None)


async def _include_has(relation: Any, instances: List[Any], scope: Dict[str, Any],
                       options: Dict[str, Any]) -> None:
    ids = collect_target_ids(instances, relation.key_from)
    related = await _related(relation.model_to, relation.key_to, ids, scope, options)
    grouped: Dict[str, List[Any]] = {}
    for item in related:
        grouped.setdefault(_key(item[relation.key_to]), []).append(item)
    for instance in instances:
        matches = grouped.get(_key(instance[relation.key_from]), [])
        if relation.multiple:
            _attach(instance, relation.name, matches)
        else:
            _attach(instance, relation.name, matches[0] if matches else None)


async def _include_through(relation: Any, instances: List[Any], scope: Dict[str, Any],
                           options: Dict[str, Any]) -> None:
    owner_ids = collect_target_ids(instances, relation.key_from)
    links = await _related(relation.model_through, relation.key_to, owner_ids, {}, options)
    target_ids = collect_target_ids(links, relation.key_through)
    target_id_name = relation.model_to.get_id_name()
    targets = await _related(relation.model_to, target_id_name, target_ids, scope, options)
    by_id = {_key(target[target_id_name]): target for target in targets}

    linked: Dict[str, List[Any]] = {}
    for link in links:
        target = by_id.get(_key(link[relation.key_through]))
        if target is not None:
            linked.setdefault(_key(link[relation.key_to]), []).append(target)
    for instance in instances:
        _attach(instance, relation.name, linked.get(_key(instance[relation.key_from]), []))
