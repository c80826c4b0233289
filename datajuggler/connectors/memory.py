"""
Memory connector - rows kept in process, optionally mirrored to a JSON file.

Each model collection maps ``str(id)`` to the row serialised as a JSON
string, so stored rows never share mutable state with instances. Numeric
ids come from a per-collection sequence.

Usage:
    ```python
    ds = DataSource("memory")                       # volatile
    ds = DataSource("memory", file="db.json")       # persisted on every write

    class Note(ds.Model):
        title = Property(str)
    ```

The filter engine implemented here (``apply_filter``) is also used by the
DAO to evaluate ``near`` queries for connectors without native geo support.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import json
import logging
import os
import re
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..faults import BadRequestFault, DuplicateEntryFault, NotFoundFault
from ..geo import GeoPoint, filter_by_distance, near_filter
from ..utils import REGEX_TYPE, select_fields
from .base import Connector, ConnectorCapabilities

logger = logging.getLogger("datajuggler.connectors.memory")

__all__ = ["Memory", "apply_filter", "like_to_regexp", "compare"]

_REVIVED_TYPES = ("date", "boolean", "number", "geopoint", "buffer")
_ORDER_DIRECTION = re.compile(r"\s+(A|DE)SC$", re.IGNORECASE)


# ── Serialization ────────────────────────────────────────────────────────────

def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, GeoPoint):
        return value.to_json()
    if isinstance(value, (bytes, bytearray)):
        return {"type": "Buffer", "data": list(value)}
    to_object = getattr(value, "to_object", None)
    if callable(to_object):
        return to_object()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize(data: Any) -> Optional[str]:
    if data is None:
        return None
    return json.dumps(data, default=_json_default)


def deserialize(raw: Any) -> Any:
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


# ── Filter engine ────────────────────────────────────────────────────────────

def _get_value(obj: Any, path: str) -> Any:
    if obj is None:
        return None
    value = obj
    for key in path.split("."):
        if isinstance(value, dict):
            value = value.get(key)
        else:
            value = getattr(value, key, None)
        if value is None:
            return None
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def compare(val1: Any, val2: Any) -> Optional[float]:
    """
    Three-way comparison of two values.

    Returns a negative number, zero or a positive number, or None when the
    values cannot be compared.
    """
    if val1 is None or val2 is None:
        return 0 if val1 is None and val2 is None else None
    if _is_number(val1) or isinstance(val1, bool):
        if isinstance(val2, str):
            try:
                val2 = float(val2)
            except ValueError:
                return None
        if not isinstance(val2, (int, float)):
            return None
        return float(val1) - float(val2)
    if isinstance(val1, datetime) and isinstance(val2, datetime):
        try:
            return (val1 - val2).total_seconds()
        except TypeError:
            # aware vs naive
            return compare(val1.replace(tzinfo=None), val2.replace(tzinfo=None))
    try:
        if val1 > val2:
            return 1
        if val1 < val2:
            return -1
    except TypeError:
        return None
    return 0 if val1 == val2 else None


def _loose_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ",".join(_loose_str(v) or "" for v in value)
    return str(value)


def like_to_regexp(pattern: Any, flags: int = 0) -> Any:
    """
    Translate a SQL ``like`` pattern into a compiled regular expression.

    ``%`` matches any run of characters, ``_`` any single character and a
    backslash makes the next character literal. Compiled patterns pass through.
    """
    if isinstance(pattern, REGEX_TYPE):
        return re.compile(pattern.pattern, pattern.flags | flags) if flags else pattern
    regex = []
    chars = iter(str(pattern))
    for char in chars:
        if char == "\\":
            regex.append(re.escape(next(chars, "")))
        elif char == "%":
            regex.append(".*")
        elif char == "_":
            regex.append(".")
        else:
            regex.append(re.escape(char))
    return re.compile("".join(regex), flags)


def _test_inequality(example: Dict[str, Any], value: Any) -> bool:
    checks = (
        ("gt", lambda c: c > 0),
        ("gte", lambda c: c >= 0),
        ("lt", lambda c: c < 0),
        ("lte", lambda c: c <= 0),
    )
    present = [(op, check) for op, check in checks if op in example]
    if not present:
        return False
    for op, check in present:
        result = compare(value, example[op])
        if result is None or not check(result):
            return False
    return True


def _search(pattern: Any, value: Any) -> bool:
    if value is None:
        return False
    return pattern.search(value if isinstance(value, str) else _loose_str(value)) is not None


def _test(example: Any, value: Any) -> bool:
    if isinstance(example, REGEX_TYPE):
        return isinstance(value, str) and example.search(value) is not None

    if isinstance(example, dict):
        if "regexp" in example:
            return bool(value) and _search(example["regexp"], value)
        if example.get("near") is not None:
            # applied separately by filter_by_distance
            return True
        if "inq" in example:
            wanted = _loose_str(value)
            return any(_loose_str(candidate) == wanted for candidate in example["inq"] or ())
        if "nin" in example:
            wanted = _loose_str(value)
            return all(_loose_str(candidate) != wanted for candidate in example["nin"] or ())
        if "neq" in example:
            return compare(example["neq"], value) != 0
        if "between" in example:
            low, high = example["between"]
            return _test_inequality({"gte": low}, value) and _test_inequality({"lte": high}, value)
        for operator, flags, negate in (
            ("like", 0, False),
            ("nlike", 0, True),
            ("ilike", re.IGNORECASE, False),
            ("nilike", re.IGNORECASE, True),
        ):
            if example.get(operator):
                matched = _search(like_to_regexp(example[operator], flags), value)
                return not matched if negate else matched
        return _test_inequality(example, value)

    if isinstance(example, datetime) and isinstance(value, datetime):
        return compare(example, value) == 0
    if example is None:
        return value is None
    return _loose_str(example) == _loose_str(value)


def apply_filter(filter: Dict[str, Any]) -> Callable[[Any], bool]:
    """Build a predicate over plain rows from ``filter["where"]``."""
    where = filter.get("where") or {}
    if callable(where):
        return where

    def matches(obj: Any) -> bool:
        for key, condition in where.items():
            if key in ("and", "or", "nor"):
                clauses = condition if isinstance(condition, list) else []
                results = (apply_filter({"where": clause})(obj) for clause in clauses)
                if key == "and" and not all(results):
                    return False
                if key == "or" and not any(results):
                    return False
                if key == "nor" and any(results):
                    return False
                continue
            if not _matches_key(obj, key, condition):
                return False
        return True

    return matches


def _matches_key(obj: Any, key: str, condition: Any) -> bool:
    value = _get_value(obj, key)
    if isinstance(value, list):
        if isinstance(condition, dict) and "neq" in condition and not value:
            return True
        return any(_test(condition, item) for item in value)
    if _test(condition, value):
        return True

    # "a.b" against a list of objects under "a"
    head, dot, rest = key.partition(".")
    if dot:
        sub_value = obj.get(head) if isinstance(obj, dict) else getattr(obj, head, None)
        sub_filter = apply_filter({"where": {rest: condition}})
        if isinstance(sub_value, list):
            return any(sub_filter(item) for item in sub_value)
        if isinstance(sub_value, dict):
            return sub_filter(sub_value)
    return False


def _parse_order(order: Any) -> List[Tuple[str, int]]:
    entries = [order] if isinstance(order, str) else list(order)
    parsed = []
    for entry in entries:
        reverse = 1
        match = _ORDER_DIRECTION.search(entry)
        if match:
            entry = entry[: match.start()]
            if match.group(1).lower() == "de":
                reverse = -1
        parsed.append((entry.strip(), reverse))
    return parsed


def _sort_key(orders: List[Tuple[str, int]]):
    def compare_rows(a: Any, b: Any) -> int:
        for key, reverse in orders:
            a_val, b_val = _get_value(a, key), _get_value(b, key)
            # missing values sort first
            if b_val is None and a_val is not None:
                return reverse
            if a_val is None and b_val is not None:
                return -reverse
            if a_val is None:
                continue
            try:
                result = (a_val > b_val) - (a_val < b_val)
            except TypeError:
                a_str, b_str = _loose_str(a_val), _loose_str(b_val)
                result = (a_str > b_str) - (a_str < b_str)
            if result:
                return result * reverse
        return 0

    return functools.cmp_to_key(compare_rows)


# ── Connector ────────────────────────────────────────────────────────────────

class Memory(Connector):
    """
    In-process connector with the full query engine.

    Settings:
        file: path of a JSON file loaded on connect and rewritten after
              every write
    """

    name = "memory"
    capabilities = ConnectorCapabilities(
        supports_transactions=True,
        supports_near=True,
        atomic_upserts=True,
        name="memory",
    )

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        super().__init__(settings)
        self.cache: Dict[str, Dict[str, str]] = {}
        self.ids: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._snapshots: Dict[str, Tuple[Dict[str, Dict[str, str]], Dict[str, int]]] = {}

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def connect(self) -> None:
        file = self.settings.get("file")
        if file:
            async with self._lock:
                content = await asyncio.to_thread(self._read_file, file)
            if content:
                self._load(content)
        self.connected = True
        logger.debug(f"memory connector connected (file={file!r})")

    async def disconnect(self) -> None:
        self.connected = False

    @staticmethod
    def _read_file(path: str) -> Optional[str]:
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read()

    @staticmethod
    def _write_file(path: str, content: str) -> None:
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(content)

    def _load(self, content: str) -> None:
        data = json.loads(content)
        self.ids.update(data.get("ids") or {})
        for collection, rows in (data.get("models") or {}).items():
            self.cache[collection] = dict(rows)

    async def _flush(self) -> None:
        """Mirror the store into the configured file, one write at a time."""
        file = self.settings.get("file")
        if not file:
            return
        content = json.dumps({"ids": self.ids, "models": self.cache}, indent=2)
        async with self._lock:
            await asyncio.to_thread(self._write_file, file, content)

    def define(self, model_cls: Any) -> None:
        super().define(model_cls)
        name = self._collection_name(model_cls.__name__)
        self.cache.setdefault(name, {})
        self.ids.setdefault(name, 1)

    # ── Collections ──────────────────────────────────────────────────────

    def _collection_name(self, model: str) -> str:
        entry = self._models.get(model)
        if entry is not None:
            section = entry["settings"].extra.get("memory") or {}
            if section.get("collection"):
                return section["collection"]
        return model

    def collection(self, model: str) -> Dict[str, str]:
        return self.cache.setdefault(self._collection_name(model), {})

    def from_db(self, model: str, raw: Any) -> Optional[Dict[str, Any]]:
        """Deserialize a stored row and revive typed property values."""
        if raw is None:
            return None
        data = deserialize(raw)
        properties = self.get_model(model)._definition.properties
        for key, value in data.items():
            prop = properties.get(key)
            if value is None or prop is None:
                continue
            if prop.ptype.name in _REVIVED_TYPES:
                data[key] = prop.ptype.coerce_in(value)
        return data

    def _create_sync(self, model: str, data: Dict[str, Any]) -> Any:
        name = self._collection_name(model)
        current = self.ids.get(name) or 1
        id_value = self.get_id_value(model, data) or current
        if _is_number(id_value) and id_value > current:
            current = id_value
        if _is_number(current):
            self.ids[name] = int(current) + 1

        id_name = self.id_name(model)
        prop = self.get_model(model)._definition.properties.get(id_name) if id_name else None
        if prop is not None:
            id_value = prop.ptype.coerce_in(id_value) or id_value
        self.set_id_value(model, data, id_value)

        rows = self.collection(model)
        if str(id_value) in rows:
            raise DuplicateEntryFault(model, id_value, id_name or "id")
        rows[str(id_value)] = serialize(data)
        return id_value

    def _rows(self, model: str) -> List[Dict[str, Any]]:
        return [self.from_db(model, raw) for raw in self.collection(model).values()]

    def _find_all_skipping_includes(self, model: str, filter: Optional[Dict[str, Any]]) -> List[Any]:
        nodes = self._rows(model)
        if not filter:
            return nodes

        order = filter.get("order") or self.id_names(model)
        if order:
            nodes.sort(key=_sort_key(_parse_order(order)))

        nf = near_filter(filter.get("where"))
        if nf:
            nodes = filter_by_distance(nodes, nf)

        if filter.get("where"):
            nodes = [node for node in nodes if apply_filter(filter)(node)]

        if filter.get("fields"):
            nodes = [select_fields(filter["fields"])(node) for node in nodes]

        skip = filter.get("skip") or filter.get("offset") or 0
        limit = filter.get("limit") or len(nodes)
        return nodes[skip:skip + limit]

    # ── CRUD ─────────────────────────────────────────────────────────────

    async def create(self, model: str, data: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Any:
        id_value = self._create_sync(model, data)
        await self._flush()
        return id_value

    async def update_or_create(self, model: str, data: Dict[str, Any],
                               options: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        id_value = self.get_id_value(model, data)
        if id_value is not None and await self.exists(model, id_value):
            data, _ = await self.save(model, data)
            return data, {"is_new_instance": False}
        await self.create(model, data)
        return self.from_db(model, serialize(data)), {"is_new_instance": True}

    patch_or_create = update_or_create

    async def upsert_with_where(self, model: str, where: Dict[str, Any], data: Dict[str, Any],
                                options: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        nodes = self._find_all_skipping_includes(model, {"where": where})
        if not nodes:
            self._create_sync(model, data)
            await self._flush()
            return self.from_db(model, serialize(data)), {"is_new_instance": True}
        if len(nodes) > 1:
            raise BadRequestFault(
                "There are multiple instances found. Upsert Operation will not be performed!"
            )
        id_value = self.get_id_value(model, nodes[0])
        updated = await self.update_attributes(model, id_value, data)
        return updated, {"is_new_instance": False}

    patch_or_create_with_where = upsert_with_where

    async def find_or_create(self, model: str, filter: Optional[Dict[str, Any]], data: Dict[str, Any],
                             options: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], bool]:
        nodes = self._find_all_skipping_includes(model, filter)
        if nodes:
            return nodes[0], False
        self._create_sync(model, data)
        await self._flush()
        return self.from_db(model, serialize(data)), True

    async def save(self, model: str, data: Dict[str, Any],
                   options: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        id_value = self.get_id_value(model, data)
        rows = self.collection(model)
        existing = deserialize(rows.get(str(id_value)))
        if existing:
            data = {**existing, **data}
        rows[str(id_value)] = serialize(data)
        await self._flush()
        return self.from_db(model, rows[str(id_value)]), {"is_new_instance": not existing}

    async def exists(self, model: str, id: Any, options: Optional[Dict[str, Any]] = None) -> bool:
        return str(id) in self.collection(model)

    async def find(self, model: str, id: Any, options: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return self.from_db(model, self.collection(model).get(str(id)))

    async def destroy(self, model: str, id: Any, options: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
        removed = self.collection(model).pop(str(id), None)
        await self._flush()
        return {"count": 1 if removed is not None else 0}

    async def all(self, model: str, filter: Optional[Dict[str, Any]] = None,
                  options: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        nodes = self._find_all_skipping_includes(model, filter)
        logger.debug(f"memory.all {model} -> {len(nodes)} rows")
        return nodes

    async def destroy_all(self, model: str, where: Optional[Dict[str, Any]] = None,
                          options: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
        rows = self.collection(model)
        if not where:
            count = len(rows)
            rows.clear()
        else:
            predicate = apply_filter({"where": where})
            doomed = [key for key, raw in rows.items() if predicate(self.from_db(model, raw))]
            for key in doomed:
                del rows[key]
            count = len(doomed)
        await self._flush()
        return {"count": count}

    async def count(self, model: str, where: Optional[Dict[str, Any]] = None,
                    options: Optional[Dict[str, Any]] = None) -> int:
        if not where:
            return len(self.collection(model))
        predicate = apply_filter({"where": where})
        return sum(1 for row in self._rows(model) if predicate(row))

    async def update(self, model: str, where: Optional[Dict[str, Any]], data: Dict[str, Any],
                     options: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
        predicate = apply_filter({"where": where or {}})
        count = 0
        for row in self._rows(model):
            if predicate(row):
                count += 1
                await self.update_attributes(model, self.get_id_value(model, row), data)
        return {"count": count}

    update_all = update

    async def update_attributes(self, model: str, id: Any, data: Dict[str, Any],
                                options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if id is None or id == "":
            raise ValueError("You must provide an id when updating attributes!")
        data = dict(data)
        self.set_id_value(model, data, id)
        if str(id) not in self.collection(model):
            raise NotFoundFault(
                f"Could not update attributes. Object with id {id} does not exist!",
                model=model,
                id=id,
            )
        saved, _ = await self.save(model, data)
        return saved

    async def replace_by_id(self, model: str, id: Any, data: Dict[str, Any],
                            options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if id is None or id == "":
            raise ValueError("You must provide an id when replacing!")
        rows = self.collection(model)
        if str(id) not in rows:
            raise NotFoundFault(f"Could not replace. Object with id {id} does not exist!", model=model, id=id)
        data = {k: v for k, v in data.items() if not callable(v)}
        self.set_id_value(model, data, id)
        rows[str(id)] = serialize(data)
        await self._flush()
        return self.from_db(model, rows[str(id)])

    async def replace_or_create(self, model: str, data: Dict[str, Any],
                                options: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        id_value = self.get_id_value(model, data)
        rows = self.collection(model)
        if id_value is None or str(id_value) not in rows:
            self._create_sync(model, data)
            await self._flush()
            return self.from_db(model, serialize(data)), {"is_new_instance": True}
        rows[str(id_value)] = serialize(data)
        await self._flush()
        return self.from_db(model, rows[str(id_value)]), {"is_new_instance": False}

    def build_near_filter(self, filter: Dict[str, Any], near: Any) -> None:
        """Near conditions are evaluated by ``all`` itself."""

    # ── Schema ───────────────────────────────────────────────────────────

    async def automigrate(self, models: Any = None) -> None:
        """Drop every row of ``models`` (all attached models by default)."""
        if isinstance(models, str):
            models = [models]
        models = list(models or self._models)
        invalid = [name for name in models if name not in self._models]
        if invalid:
            raise LookupError(f"Cannot migrate models not attached to this datasource: {' '.join(invalid)}")
        for name in models:
            collection = self._collection_name(name)
            self.cache[collection] = {}
            self.ids[collection] = 1
        await self._flush()

    async def autoupdate(self, models: Any = None) -> None:
        if isinstance(models, str):
            models = [models]
        for name in models or self._models:
            self.collection(name)

    # ── Transactions ─────────────────────────────────────────────────────

    async def begin_transaction(self, isolation_level: Optional[str] = None,
                                options: Optional[Dict[str, Any]] = None) -> str:
        """Snapshot the store; ``rollback`` restores it."""
        connection = uuid.uuid4().hex
        self._snapshots[connection] = (copy.deepcopy(self.cache), dict(self.ids))
        logger.debug(f"memory transaction {connection} started ({isolation_level})")
        return connection

    async def commit(self, connection: str, options: Optional[Dict[str, Any]] = None) -> None:
        self._snapshots.pop(connection, None)

    async def rollback(self, connection: str, options: Optional[Dict[str, Any]] = None) -> None:
        snapshot = self._snapshots.pop(connection, None)
        if snapshot is None:
            return
        self.cache, self.ids = snapshot
        await self._flush()
