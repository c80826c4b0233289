"""
Query and data helpers shared by the DAO, scopes, relations and connectors.
"""

from __future__ import annotations

import copy
import json
import re
from typing import Any, Callable, Dict, Iterable, List, Optional

__all__ = [
    "merge_query",
    "merge_includes",
    "normalize_includes",
    "fields_to_array",
    "select_fields",
    "remove_undefined",
    "set_scope_values_from_where",
    "sort_objects_by_ids",
    "deep_merge",
    "uniq",
    "to_regexp",
    "id_equals",
    "collect_target_ids",
    "ids_have_duplicates",
    "is_plain_dict",
    "REGEX_TYPE",
]

REGEX_TYPE = type(re.compile(""))

_REGEX_LITERAL = re.compile(r"^/(.*)/([a-z]*)$", re.DOTALL)
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "g": 0}


def is_plain_dict(value: Any) -> bool:
    return type(value) is dict


def set_scope_values_from_where(data: Dict[str, Any], where: Dict[str, Any], target_model: Any) -> None:
    """Copy the fixed ``{property: value}`` pairs of ``where`` into ``data``."""
    properties = target_model._definition.properties
    for key, value in where.items():
        if key == "and":
            for clause in value or ():
                set_scope_values_from_where(data, clause, target_model)
            continue
        if key in properties and not isinstance(value, (dict, list, REGEX_TYPE)):
            data[key] = value


def normalize_includes(include: Any) -> List[Any]:
    """
    Normalise an include filter into a list of single-relation entries.

    ``"a"`` -> ``[{"a": True}]``; ``["a", {"b": "c"}]`` -> ``[{"a": True}, {"b": "c"}]``;
    ``{"a": True, "b": "c"}`` -> ``[{"a": True}, {"b": "c"}]``.
    """
    if isinstance(include, str):
        return [{include: True}]
    if isinstance(include, dict):
        if isinstance(include.get("relation") or include.get("rel"), str):
            return [include]
        return [{key: value} for key, value in include.items()]
    if isinstance(include, (list, tuple)):
        return [{entry: True} if isinstance(entry, str) else entry for entry in include]
    return []


def _include_name(entry: Dict[str, Any]) -> str:
    name = entry.get("relation") or entry.get("rel")
    if isinstance(name, str):
        return name
    return next(iter(entry))


def merge_includes(destination: Any, source: Any) -> List[Any]:
    """Merge two include filters; ``source`` entries win on the same relation."""
    dest = normalize_includes(destination)
    src = normalize_includes(source)
    if not dest:
        return src
    if not src:
        return dest
    names = [_include_name(entry) for entry in src]
    result = list(src)
    for entry in dest:
        if _include_name(entry) not in names:
            result.append(entry)
    return result


def merge_query(base: Optional[Dict[str, Any]], update: Optional[Dict[str, Any]],
                rules: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """
    Merge ``update`` into ``base`` in place and return ``base``.

    Where clauses are combined with ``and``; ``include`` entries of
    ``update`` win by relation name; ``fields``, ``limit``, ``skip`` and
    ``offset`` are overwritten; ``order`` is taken from ``update`` only when
    ``base`` has none (or ``rules["order"]`` is False). ``rules`` entries set to
    False exclude a key from merging (``fields`` then concatenates).
    """
    if not update:
        return base
    rules = rules or {}
    if base is None:
        base = {}

    update_where = update.get("where")
    if update_where:
        if base.get("where"):
            base["where"] = {"and": [base["where"], update_where]}
        else:
            base["where"] = update_where

    if rules.get("include") is not False and update.get("include"):
        if not base.get("include"):
            base["include"] = update["include"]
        elif rules.get("nested_include") is True:
            base["include"] = {update["include"]: base["include"]}
        else:
            base["include"] = merge_includes(base["include"], update["include"])

    if rules.get("collect") is not False and update.get("collect"):
        base["collect"] = update["collect"]

    if "fields" in update:
        if rules.get("fields") is not False:
            base["fields"] = update["fields"]
        else:
            existing = base.get("fields") or []
            existing = [existing] if isinstance(existing, str) else list(existing)
            extra = update["fields"]
            extra = [extra] if isinstance(extra, str) else list(extra or [])
            base["fields"] = uniq(existing + extra)

    if (not base.get("order") or rules.get("order") is False) and update.get("order"):
        base["order"] = update["order"]

    if rules.get("limit") is not False and update.get("limit") is not None:
        base["limit"] = update["limit"]

    skip = rules.get("skip") is not False and rules.get("offset") is not False
    if skip and update.get("skip") is not None:
        base["skip"] = update["skip"]
    if skip and update.get("offset") is not None:
        base["offset"] = update["offset"]

    return base


def fields_to_array(fields: Any, properties: List[str], exclude_unknown: bool = False) -> Optional[List[str]]:
    """
    Normalise a fields filter into the list of included property names.

    Accepts a name, a list of names, or ``{name: bool}``.
    """
    if not fields:
        return None
    result = list(properties)
    if isinstance(fields, str):
        result = [fields]
    elif isinstance(fields, (list, tuple)):
        result = list(fields)
    elif isinstance(fields, dict):
        included = [k for k, v in fields.items() if v]
        excluded = [k for k, v in fields.items() if not v]
        if included:
            result = included
        elif excluded:
            result = [p for p in result if p not in excluded]
    if exclude_unknown:
        result = [name for name in result if name in properties]
    return result


def select_fields(fields: Iterable[str]) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
    names = list(fields)

    def select(obj: Dict[str, Any]) -> Dict[str, Any]:
        return {name: obj.get(name) for name in names}

    return select


def remove_undefined(value: Any, handle: str = "ignore") -> Any:
    """
    Drop ``UNSET`` entries from nested dicts and lists.

    ``handle`` mirrors the connector setting: ``"nullify"`` replaces them
    with None, ``"throw"`` raises ``ValueError``.
    """
    from .types import UNSET

    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            if item is UNSET:
                if handle == "nullify":
                    result[key] = None
                elif handle == "throw":
                    raise ValueError(f"Unexpected undefined value for {key!r} in query")
                continue
            result[key] = remove_undefined(item, handle)
        return result
    if isinstance(value, list):
        return [remove_undefined(item, handle) for item in value if item is not UNSET]
    return value


def deep_merge(base: Any, extras: Any = None) -> Any:
    """Deep merge two dicts; lists are concatenated without duplicates."""
    if isinstance(base, list) and (isinstance(extras, list) or not extras):
        merged = list(base)
        for item in extras or []:
            if item not in merged:
                merged.append(item)
        return merged

    merged: Dict[str, Any] = {}
    if isinstance(base, dict):
        for key, value in base.items():
            merged[key] = deep_merge(value) if isinstance(value, (dict, list)) else value
    if isinstance(extras, dict):
        for key, extra in extras.items():
            if not isinstance(extra, (dict, list)):
                merged[key] = extra
            elif not isinstance(base, dict) or base.get(key) is None:
                merged[key] = copy.deepcopy(extra)
            else:
                merged[key] = deep_merge(base[key], extra)
    return merged


def _comparable(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return value


def sort_objects_by_ids(id_name: str, ids: List[Any], objects: List[Any], strict: bool = False) -> List[Any]:
    """
    Order ``objects`` by the position of their id in ``ids``.

    Objects whose id is not listed go last, or are dropped when ``strict``.
    """
    positions = {}
    for index, id_value in enumerate(ids):
        positions.setdefault(str(_comparable(id_value)), index)

    def position(obj: Any) -> int:
        value = obj.get(id_name) if isinstance(obj, dict) else getattr(obj, id_name, None)
        return positions.get(str(_comparable(value)), -1)

    heading, tailing = [], []
    for obj in objects:
        index = position(obj)
        if index == -1:
            if not strict:
                tailing.append(obj)
        else:
            heading.append(obj)
    heading.sort(key=position)
    return heading + tailing


def uniq(items: Optional[Iterable[Any]]) -> List[Any]:
    """Deduplicate while keeping the first occurrence."""
    result: List[Any] = []
    seen = []
    for item in items or []:
        key = _comparable(item)
        if key in seen:
            continue
        seen.append(key)
        result.append(item)
    return result


def to_regexp(value: Any) -> Any:
    """
    Convert a string, ``/regex/flags`` literal or compiled pattern to a pattern.

    Only the ``i``, ``g`` and ``m`` flags are accepted; returns a
    ``ValueError`` instance (not raised) for invalid input.
    """
    if isinstance(value, REGEX_TYPE):
        return value
    if not isinstance(value, str):
        return ValueError("Invalid argument, must be a string, regex literal, or compiled pattern")
    literal = _REGEX_LITERAL.match(value)
    if not literal:
        try:
            return re.compile(value)
        except re.error as exc:
            return ValueError(f"Invalid regex {value!r}: {exc}")
    expression, flags = literal.group(1), literal.group(2)
    invalid = [f for f in flags if f not in _REGEX_FLAGS]
    if invalid:
        return ValueError(f"Invalid regex flags: {','.join(invalid)}")
    compiled_flags = 0
    for flag in flags:
        compiled_flags |= _REGEX_FLAGS[flag]
    try:
        return re.compile(expression, compiled_flags)
    except re.error as exc:
        return ValueError(f"Invalid regex {value!r}: {exc}")


def id_equals(id1: Any, id2: Any) -> bool:
    """Compare ids allowing number/string equivalence."""
    if id1 == id2 and type(id1) is type(id2):
        return True
    numeric = (int, float)
    if (isinstance(id1, numeric) and isinstance(id2, str)) or (isinstance(id1, str) and isinstance(id2, numeric)):
        return str(id1) == str(id2)
    return json.dumps(id1, sort_keys=True, default=str) == json.dumps(id2, sort_keys=True, default=str)


def collect_target_ids(target_data: List[Any], id_prop_name: str) -> Dict[str, Any]:
    """``{"inq": [...]}`` of the distinct non-null ``id_prop_name`` values."""
    ids = []
    for item in target_data:
        value = item.get(id_prop_name) if isinstance(item, dict) else getattr(item, id_prop_name, None)
        if value is not None:
            ids.append(value)
    return {"inq": uniq(ids)}


def ids_have_duplicates(ids: List[Any]) -> bool:
    return len(uniq(ids)) != len(ids)
