"""
Filter normalisation and where-clause coercion.

``normalize_filter`` validates and rewrites a query filter before it
reaches observers and connectors: paging values become integers, ``order``
is split and upper-cased, ``fields`` becomes a list of names, undefined
values are dropped and the where clause is coerced to the property types.
"""

from __future__ import annotations

import copy
import json
import logging
import math
import re
from typing import Any, Dict, Optional

from .faults import BadRequestFault
from .types import coerce_boolean, parse_date
from .utils import REGEX_TYPE, fields_to_array, remove_undefined, to_regexp

logger = logging.getLogger("datajuggler.query")

__all__ = ["OPERATORS", "normalize_filter", "coerce_where"]

OPERATORS = (
    "gt", "gte", "lt", "lte", "between", "inq", "nin", "near", "neq",
    "like", "nlike", "ilike", "nilike", "regexp",
)
LOGICAL = ("and", "or", "nor")

_ORDER_SPLIT = re.compile(r"(?:\s*,\s*)+")


def _dumps(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return repr(value)


def _paging_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def normalize_filter(model: Any, filter: Any) -> Optional[Dict[str, Any]]:
    """Return a validated, normalised copy of ``filter`` (None stays None)."""
    if not filter:
        return None if filter is None else {}
    if not isinstance(filter, dict):
        raise BadRequestFault(f"The query filter {_dumps(filter)} is not an object")
    filter = copy.deepcopy(filter)

    if filter.get("limit") or filter.get("skip") or filter.get("offset"):
        limit = _paging_number(filter.get("limit") or 100)
        raw_offset = filter.get("skip") or filter.get("offset") or 0
        offset = _paging_number(raw_offset)
        if limit is None or limit <= 0 or math.ceil(limit) != limit:
            raise BadRequestFault(f"The limit parameter {_dumps(filter.get('limit'))} is not valid")
        if offset is None or offset < 0 or math.ceil(offset) != offset:
            raise BadRequestFault(f"The offset/skip parameter {_dumps(raw_offset)} is not valid")
        filter["limit"] = int(limit)
        filter["offset"] = int(offset)
        filter["skip"] = int(offset)

    if filter.get("order"):
        filter["order"] = _normalize_order(filter["order"])

    if filter.get("fields"):
        filter["fields"] = fields_to_array(
            filter["fields"],
            list(model._definition.properties),
            bool(model._definition.settings.strict),
        )

    filter = remove_undefined(filter)
    if "where" in filter:
        coerce_where(model, filter["where"])
    return filter


def _normalize_order(order: Any) -> Any:
    single = isinstance(order, str)
    entries = [order] if single else order
    if not isinstance(entries, (list, tuple)):
        raise BadRequestFault(f"The order {_dumps(order)} is not valid")
    fields = []
    for entry in entries:
        if not isinstance(entry, str):
            raise BadRequestFault(f"The order {_dumps(entry)} is not valid")
        for token in _ORDER_SPLIT.split(entry.strip()):
            if not token:
                continue
            parts = token.split()
            if len(parts) >= 2:
                direction = parts[1].upper()
                if direction not in ("ASC", "DESC"):
                    raise BadRequestFault(f"The order {_dumps(token)} has invalid direction")
                token = f"{parts[0]} {direction}"
            fields.append(token)
    if len(fields) == 1 and single:
        return fields[0]
    return fields


# ── Where coercion ───────────────────────────────────────────────────────────

def _coerce_date(value: Any) -> Any:
    parsed = parse_date(value)
    if parsed is None:
        raise BadRequestFault(f"Invalid date: {value}")
    return parsed


def _coerce_number(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
        try:
            number = float(value)
        except ValueError:
            return value
        return value if math.isnan(number) else number
    return value


def _coerce_string(value: Any) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float, bool)):
        return str(value).lower() if isinstance(value, bool) else str(value)
    return value


_COERCERS = {
    "date": _coerce_date,
    "number": _coerce_number,
    "boolean": coerce_boolean,
    "string": _coerce_string,
}


def _coercer_for(prop: Any):
    ptype = prop.ptype
    if ptype.item_type is not None:
        ptype = ptype.item_type
    if ptype.model is not None:
        return None
    return _COERCERS.get(ptype.name)


def _invalid_clause(prop_name: str, clause: Any) -> BadRequestFault:
    return BadRequestFault(f"The {prop_name} property has invalid clause {_dumps(clause)}")


def coerce_where(model: Any, where: Any) -> Any:
    """
    Coerce the values of ``where`` in place to the declared property types.

    Raises ``BadRequestFault`` (400) for malformed clauses: a non-dict where,
    logical operators without a list, ``inq``/``nin`` without a list,
    ``between`` without two values, ``like``/``nlike`` without a string or
    pattern, and invalid regular expressions.
    """
    if not where:
        return where
    if not isinstance(where, dict):
        raise BadRequestFault(f"The where clause {_dumps(where)} is not an object")

    properties = model._definition.properties
    for key in list(where):
        value = where[key]
        if key in LOGICAL:
            if not isinstance(value, list):
                raise BadRequestFault(f"The {key} operator has invalid clauses {_dumps(value)}")
            for clause in value:
                coerce_where(model, clause)
            continue

        prop = properties.get(key)
        if prop is None or value is None:
            continue
        coerce = _coercer_for(prop)

        if type(value) is dict:
            where[key] = _coerce_operators(key, value, coerce)
        elif isinstance(value, REGEX_TYPE):
            # {name: re} is shorthand for {name: {regexp: re}}
            where[key] = {"regexp": value}
        elif isinstance(value, list):
            where[key] = [coerce(v) if coerce and v is not None else v for v in value]
        elif coerce is not None:
            where[key] = coerce(value)
    return where


def _coerce_operators(prop_name: str, expression: Dict[str, Any], coerce) -> Dict[str, Any]:
    result = dict(expression)
    for operator in OPERATORS:
        if operator not in expression:
            continue
        value = expression[operator]
        if operator in ("inq", "nin"):
            if not isinstance(value, list):
                raise _invalid_clause(prop_name, expression)
        elif operator == "between":
            if not isinstance(value, list) or len(value) != 2:
                raise _invalid_clause(prop_name, expression)
        elif operator in ("like", "nlike"):
            if not isinstance(value, (str, REGEX_TYPE)):
                raise _invalid_clause(prop_name, expression)
        elif operator == "regexp":
            value = to_regexp(value)
            if isinstance(value, Exception):
                raise BadRequestFault(str(value))
            result[operator] = value
            continue

        if operator == "near" or coerce is None:
            continue
        if isinstance(value, list):
            result[operator] = [coerce(v) if v is not None else v for v in value]
        elif value is not None and not isinstance(value, REGEX_TYPE) and operator not in (
            "like", "nlike", "ilike", "nilike"
        ):
            result[operator] = coerce(value)
    return result
