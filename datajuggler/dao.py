"""
Data access object - the CRUD surface of persisted models.

Every public operation checks its arguments at call time (raising
``ContractViolation`` at once) and returns a coroutine. Passing
``callback=`` schedules the operation on the running loop instead and
reports the outcome as ``callback(err, result)``.

Each operation runs the same pipeline: wait for the data source, apply the
default scope, fire ``access``, fire ``before save`` / ``before delete``,
validate, fire ``persist``, call exactly one connector method, fire
``loaded``, then ``after save`` / ``after delete``.

Usage:
    ```python
    class Book(ds.Model):
        title = Property(str, required=True)

    book = await Book.create({"title": "Dune"})
    books = await Book.find({"where": {"title": {"like": "D%"}}, "order": "title DESC"})
    await book.update_attributes({"title": "Dune Messiah"})
    await Book.delete_by_id(book.id)

    Book.find_by_id(1, callback=lambda err, book: print(err, book))
    ```
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .context import OperationContext
from .faults import (
    BadRequestFault,
    BulkCreateFault,
    ContractViolation,
    NotFoundFault,
    NotSupportedFault,
    PKMissingFault,
    TransactionFault,
    UnknownPropertyFault,
    ValidationError,
)
from .geo import near_filter
from .model import BaseModel
from .query import coerce_where, normalize_filter
from .signals import changed, deleted, deleted_all
from .utils import id_equals, merge_query, remove_undefined, sort_objects_by_ids

logger = logging.getLogger("datajuggler.dao")

__all__ = ["DataAccessObject", "PersistedModel", "Model", "dispatch"]

Callback = Callable[..., Any]


# ── Call shapes ──────────────────────────────────────────────────────────────

# Strong references to callback tasks until they finish.
_background_tasks: Set["asyncio.Task[None]"] = set()


def dispatch(coro: Awaitable[Any], callback: Optional[Callback] = None) -> Any:
    """
    Return ``coro`` as is, or run it as a task reporting to ``callback``.

    The callback receives ``(None, result)`` on success, ``(None, *result)``
    for tuple results, ``(errors, results)`` for a failed bulk create and
    ``(error, None)`` otherwise.
    """
    if callback is None:
        return coro
    if not callable(callback):
        coro.close()
        raise ContractViolation("The callback argument must be a function")

    async def _run() -> None:
        try:
            result = await coro
        except BulkCreateFault as fault:
            outcome = callback(fault.errors, fault.results)
        except Exception as exc:
            outcome = callback(exc, None)
        else:
            if isinstance(result, tuple):
                outcome = callback(None, *result)
            else:
                outcome = callback(None, result)
        if inspect.isawaitable(outcome):
            await outcome

    task = asyncio.get_running_loop().create_task(_run())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def _check_options(options: Any) -> Dict[str, Any]:
    if options is None:
        return {}
    if not isinstance(options, dict):
        raise ContractViolation("The options argument must be an object", options=type(options).__name__)
    return options


def _check_object(value: Any, name: str, optional: bool = True) -> None:
    if value is None and optional:
        return
    if not isinstance(value, (dict, BaseModel)):
        raise ContractViolation(f"The {name} argument must be an object", **{name: type(value).__name__})


def _accepts_options(fn: Callable[..., Any], nargs: int) -> bool:
    """Whether ``fn`` takes a positional argument after the first ``nargs``."""
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return True
    positional = 0
    for param in signature.parameters.values():
        if param.kind is param.VAR_POSITIONAL:
            return True
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
            positional += 1
    return positional > nargs


def _split(result: Any) -> Tuple[Any, Any]:
    """Connector results may be ``data`` or ``(data, info)``."""
    if isinstance(result, tuple):
        return result[0], (result[1] if len(result) > 1 else None)
    return result, None


def _count_info(result: Any) -> Dict[str, Any]:
    if isinstance(result, dict):
        return result
    return {"count": result or 0}


def _is_where_by_given_id(model: Any, where: Any, id: Any) -> bool:
    id_name = model.get_id_name()
    if not isinstance(where, dict) or list(where) != [id_name]:
        return False
    return id_equals(where[id_name], id)


class _Operation:
    """Model, options and shared hook state of one DAO call."""

    __slots__ = ("model", "options", "hook_state")

    def __init__(self, model: Any, options: Dict[str, Any]):
        self.model = model
        self.options = options
        self.hook_state: Dict[str, Any] = {}

    @property
    def notify_enabled(self) -> bool:
        return self.options.get("notify") is not False

    def context(self, **fields: Any) -> OperationContext:
        return OperationContext(model=self.model, options=self.options, hook_state=self.hook_state, **fields)

    async def notify(self, operation: str, **fields: Any) -> OperationContext:
        return await self.model.notify_observers_of(operation, self.context(**fields))

    async def loaded(self, data: Any, is_new_instance: Optional[bool] = None) -> OperationContext:
        ctx = self.context(data=data, is_new_instance=is_new_instance)
        generate = getattr(self.model.get_connector(), "generate_context_data", None)
        if callable(generate):
            result = generate(ctx, data)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, OperationContext):
                ctx = result
        return await self.model.notify_observers_of("loaded", ctx)


# ============================================================================
# DataAccessObject
# ============================================================================

class DataAccessObject:
    """
    Persistence mixin for model classes.

    Mixed into ``PersistedModel``; connectors that pick another data
    access object (key-value stores) never see these methods.
    """

    # ── Plumbing ─────────────────────────────────────────────────────────

    @classmethod
    async def _ready(cls) -> None:
        await cls.get_data_source().ready()

    @classmethod
    def _require_id_name(cls) -> str:
        id_name = cls.get_id_name()
        if not id_name:
            raise PKMissingFault(cls.__name__)
        return id_name

    @classmethod
    async def _invoke(cls, method: str, *args: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        """Call ``connector.<method>(model_name, *args[, options])``."""
        connector = cls.get_connector()
        fn = getattr(connector, method, None)
        if fn is None:
            raise NotSupportedFault(
                f"The {connector.name} connector does not support {method}",
                connector=connector.name,
                method=method,
            )
        options = options or {}
        transaction = options.get("transaction")
        if transaction is not None and not getattr(transaction, "is_active", True):
            raise TransactionFault("The transaction is not active", method=method)

        call_args = (cls.__name__,) + args
        if _accepts_options(fn, len(call_args)):
            call_args += (options,)
        elif transaction is not None:
            raise TransactionFault(
                f"The {connector.name} connector does not support transactions for {method}",
                connector=connector.name,
                method=method,
            )

        logger.debug(f"{connector.name}.{method} {cls.__name__}")
        result = fn(*call_args)
        if inspect.isawaitable(result):
            result = await result
        return result

    @classmethod
    def _should_validate(cls, options: Dict[str, Any]) -> bool:
        if options.get("validate") is False:
            return False
        return cls._definition.settings.automatic_validation is not False

    @classmethod
    def _persist_data(cls, instance: Any) -> Dict[str, Any]:
        data = instance.to_object(True)
        for name in cls._relations:
            data.pop(name, None)
        return remove_undefined(data)

    @classmethod
    def _update_on_load(cls) -> bool:
        return bool(cls._definition.settings.get("update_on_load"))

    @classmethod
    def _by_id(cls, id: Any) -> Dict[str, Any]:
        return {"where": {cls._require_id_name(): id}}

    @classmethod
    def apply_scope(cls, query: Dict[str, Any], instance: Any = None) -> Dict[str, Any]:
        """Merge the default scope into ``query`` in place; the query's own order wins."""
        scope = cls.default_scope(query, instance)
        if not scope:
            return query
        merged = merge_query(copy.deepcopy(scope), query, {"order": False})
        query.clear()
        query.update(merged)
        return query

    # ── Create ───────────────────────────────────────────────────────────

    @classmethod
    def create(cls, data: Any = None, options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """
        Create one instance, or one per item when ``data`` is a list.

        A list is processed item by item; when any item fails the result is
        a ``BulkCreateFault`` holding the sparse errors and every result.
        """
        options = _check_options(options)
        if isinstance(data, list):
            for item in data:
                _check_object(item, "data")
            return dispatch(cls._create_many(data, options), callback)
        _check_object(data, "data")
        return dispatch(cls._create(data, options), callback)

    @classmethod
    async def _create_many(cls, items: List[Any], options: Dict[str, Any]) -> List[Any]:
        errors: List[Any] = []
        results: List[Any] = []
        for item in items:
            try:
                results.append(await cls._create(item or {}, options))
                errors.append(None)
            except Exception as exc:
                logger.debug(f"Bulk create of {cls.__name__} item failed: {exc}")
                errors.append(exc)
                results.append(getattr(exc, "instance", None) or item)
        if any(error is not None for error in errors):
            raise BulkCreateFault(errors, results)
        return results

    @classmethod
    async def _create(cls, data: Any, options: Dict[str, Any]) -> Any:
        await cls._ready()
        op = _Operation(cls, options)
        id_name = cls.get_id_name()

        if isinstance(data, cls):
            obj = data
        else:
            if isinstance(data, BaseModel):
                data = data.to_object(False)
            obj = cls(data or {})

        id_value = obj.get_id()
        query = {"where": {id_name: id_value}} if id_name and id_value is not None else {"where": {}}
        await op.notify("access", query=query)

        enforced: Dict[str, Any] = {}
        cls.apply_properties(enforced, obj)
        obj.set_attributes(enforced)

        ctx = await op.notify("before save", instance=obj, is_new_instance=True)
        obj = ctx.instance if ctx.instance is not None else obj

        if cls._should_validate(options) and not await obj.is_valid(None, options):
            raise ValidationError(obj)

        ctx = await op.notify(
            "persist",
            data=cls._persist_data(obj),
            instance=obj,
            current_instance=obj,
            is_new_instance=True,
        )
        persisted = ctx.data
        new_id = await cls._invoke("create", persisted, options=options)
        if isinstance(new_id, tuple):
            new_id = new_id[0]
        if new_id is not None and id_name:
            setattr(obj, id_name, new_id)
            persisted[id_name] = obj.get_id()
        obj._persisted = True

        ctx = await op.loaded(persisted, True)
        if cls._update_on_load() and ctx.data:
            obj.set_attributes(ctx.data)

        await op.notify("after save", instance=obj, is_new_instance=True)
        await changed.send(cls, instance=obj)
        return obj

    # ── Upserts ──────────────────────────────────────────────────────────

    @classmethod
    def upsert(cls, data: Any, options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """Update the instance with the id of ``data``, or create it."""
        options = _check_options(options)
        _check_object(data, "data", optional=False)
        return dispatch(cls._upsert(data, options), callback)

    update_or_create = upsert
    patch_or_create = upsert

    @classmethod
    async def _before_atomic_write(
        cls,
        op: _Operation,
        where: Dict[str, Any],
        data: Dict[str, Any],
        apply_default_values: bool,
    ) -> Tuple[Any, Dict[str, Any], Dict[str, Any]]:
        """``before save``, instance build and upsert validation of the atomic paths."""
        ctx = await op.notify("before save", where=where, data=data)
        where, data = ctx.where, ctx.data
        inst = data if isinstance(data, cls) else cls(data, apply_default_values=apply_default_values)
        update = inst.to_object(False)
        cls.apply_properties(update, inst)
        update = remove_undefined(update)

        validate_upsert = cls._definition.settings.validate_upsert
        if validate_upsert is not False and cls._should_validate(op.options):
            if not await inst.is_valid(update, op.options):
                if validate_upsert is True:
                    raise ValidationError(inst)
                logger.warning(
                    f"Ignoring validation errors in upsert of {cls.__name__}: {ValidationError(inst).message}"
                )
        return inst, where, update

    @classmethod
    async def _after_atomic_write(cls, op: _Operation, inst: Any, result: Any) -> Any:
        data, info = _split(result)
        is_new = (info or {}).get("is_new_instance")
        ctx = await op.loaded(data, is_new)
        inst._init_properties(ctx.data, persisted=True, strict=inst._strict)
        await op.notify("after save", instance=inst, is_new_instance=is_new)
        await changed.send(cls, instance=inst)
        return inst

    @classmethod
    async def _upsert(cls, data: Any, options: Dict[str, Any]) -> Any:
        await cls._ready()
        id_name = cls._require_id_name()
        if isinstance(data, BaseModel):
            data = data.to_object(False)
        data = dict(data)
        id_value = data.get(id_name)
        if id_value is None:
            return await cls._create(data, options)

        op = _Operation(cls, options)
        ctx = await op.notify("access", query={"where": {id_name: id_value}})
        query = ctx.query
        original = _is_where_by_given_id(cls, query.get("where"), id_value)

        connector = cls.get_connector()
        if original and getattr(connector, "update_or_create", None) is not None:
            inst, where, update = await cls._before_atomic_write(op, query["where"], data, False)
            ctx = await op.notify("persist", where=where, data=update, current_instance=inst)
            result = await cls._invoke("update_or_create", ctx.data, options=options)
            return await cls._after_atomic_write(op, inst, result)

        found = await cls._find_one(query, {**options, "notify": False})
        if not original:
            data.pop(id_name, None)
        if found is not None:
            return await found._update_attributes(data, options)
        return await cls._create(cls(data), options)

    @classmethod
    def replace_or_create(cls, data: Any, options: Optional[Dict[str, Any]] = None, *,
                          callback: Optional[Callback] = None):
        """Replace the instance with the id of ``data`` entirely, or create it."""
        options = _check_options(options)
        _check_object(data, "data", optional=False)
        return dispatch(cls._replace_or_create(data, options), callback)

    @classmethod
    async def _replace_or_create(cls, data: Any, options: Dict[str, Any]) -> Any:
        await cls._ready()
        id_name = cls._require_id_name()
        if isinstance(data, BaseModel):
            data = data.to_object(False)
        data = dict(data)
        id_value = data.get(id_name)
        if id_value is None:
            return await cls._create(data, options)

        op = _Operation(cls, options)
        ctx = await op.notify("access", query={"where": {id_name: id_value}})
        query = ctx.query
        original = _is_where_by_given_id(cls, query.get("where"), id_value)

        connector = cls.get_connector()
        if original and getattr(connector, "replace_or_create", None) is not None:
            inst, where, update = await cls._before_atomic_write(op, query["where"], data, True)
            ctx = await op.notify("persist", where=where, data=update, current_instance=inst)
            result = await cls._invoke("replace_or_create", ctx.data, options=options)
            return await cls._after_atomic_write(op, inst, result)

        found = await cls._find_one(query, {**options, "notify": False})
        if not original:
            data.pop(id_name, None)
        if found is not None:
            return await cls._replace_by_id(found.get_id(), data, options, found)
        return await cls._create(cls(data), options)

    @classmethod
    def upsert_with_where(cls, where: Optional[Dict[str, Any]], data: Any,
                          options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """Update the single instance matching ``where``, or create one."""
        options = _check_options(options)
        _check_object(where, "where")
        _check_object(data, "data", optional=False)
        return dispatch(cls._upsert_with_where(where, data, options), callback)

    patch_or_create_with_where = upsert_with_where

    @classmethod
    async def _upsert_with_where(cls, where: Optional[Dict[str, Any]], data: Any, options: Dict[str, Any]) -> Any:
        await cls._ready()
        if isinstance(data, BaseModel):
            data = data.to_object(False)
        data = dict(data)
        query = {"where": copy.deepcopy(where or {})}
        cls.apply_scope(query)
        coerce_where(cls, query.get("where"))

        op = _Operation(cls, options)
        ctx = await op.notify("access", query=query)
        where = ctx.query.get("where") or {}

        if getattr(cls.get_connector(), "upsert_with_where", None) is not None:
            inst, where, update = await cls._before_atomic_write(op, where, data, False)
            ctx = await op.notify("persist", where=where, data=update, current_instance=inst)
            result = await cls._invoke("upsert_with_where", ctx.where, ctx.data, options=options)
            return await cls._after_atomic_write(op, inst, result)

        found = await cls._find({"where": where}, {**options, "notify": False})
        if not found:
            return await cls._create(data, options)
        if len(found) > 1:
            raise BadRequestFault(
                "There are multiple instances found. Upsert Operation will not be performed!"
            )
        return await found[0]._update_attributes(data, options)

    @classmethod
    def find_or_create(cls, query: Optional[Dict[str, Any]], data: Any = None,
                       options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """
        Find the first instance matching ``query`` or create one from ``data``.

        Resolves to ``(instance, created)``. With ``data`` omitted, ``query``
        is used as the data and as the where clause.
        """
        options = _check_options(options)
        _check_object(query, "query")
        _check_object(data, "data")
        if data is None:
            data = query or {}
            query = {"where": data if isinstance(data, dict) else data.to_object(False)}
        return dispatch(cls._find_or_create(query, data, options), callback)

    @classmethod
    async def _find_or_create(cls, query: Optional[Dict[str, Any]], data: Any,
                              options: Dict[str, Any]) -> Tuple[Any, bool]:
        await cls._ready()
        if getattr(cls.get_connector(), "find_or_create", None) is None:
            found = await cls._find_one(query, options)
            if found is not None:
                return found, False
            return await cls._create(data, options), True

        query = normalize_filter(cls, query) or {}
        query["limit"] = 1
        cls.apply_scope(query)
        coerce_where(cls, query.get("where"))

        op = _Operation(cls, options)
        ctx = await op.notify("access", query=query)
        query = ctx.query

        obj = data if isinstance(data, cls) else cls(data.to_object(False) if isinstance(data, BaseModel) else data)
        enforced: Dict[str, Any] = {}
        cls.apply_properties(enforced, obj)
        obj.set_attributes(enforced)

        ctx = await op.notify("before save", instance=obj, is_new_instance=True)
        obj = ctx.instance if ctx.instance is not None else obj
        if cls._should_validate(options) and not await obj.is_valid(None, options):
            raise ValidationError(obj)

        ctx = await op.notify(
            "persist",
            data=cls._persist_data(obj),
            instance=obj,
            current_instance=obj,
            is_new_instance=True,
        )
        row, created = _split(await cls._invoke("find_or_create", query, ctx.data, options=options))
        created = bool(created)
        ctx = await op.loaded(row, created)
        result = cls(ctx.data, fields=query.get("fields"), apply_setters=False, persisted=True)
        if created:
            await op.notify("after save", instance=result, is_new_instance=True)
            await changed.send(cls, instance=result)
        return result, created

    # ── Reads ────────────────────────────────────────────────────────────

    @classmethod
    def find(cls, filter: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None, *,
             callback: Optional[Callback] = None):
        """Instances matching ``filter`` (where, order, limit, skip, fields, include)."""
        options = _check_options(options)
        _check_object(filter, "filter")
        return dispatch(cls._find(filter, options), callback)

    all = find

    @classmethod
    async def _find(cls, filter: Optional[Dict[str, Any]], options: Dict[str, Any]) -> List[Any]:
        await cls._ready()
        query = normalize_filter(cls, filter) or {}
        cls.apply_scope(query)
        coerce_where(cls, query.get("where"))

        op = _Operation(cls, options)
        if op.notify_enabled:
            ctx = await op.notify("access", query=query)
            query = ctx.query or {}

        connector = cls.get_connector()
        near = near_filter(query.get("where"))
        if near:
            build_near_filter = getattr(connector, "build_near_filter", None)
            if build_near_filter is None:
                rows = await cls._query_near_in_memory(query, options)
                return await cls._build_results(op, rows, query)
            build_near_filter(query, near)

        rows = await cls._invoke("all", query, options=options)
        return await cls._build_results(op, rows, query)

    @classmethod
    async def _query_near_in_memory(cls, query: Dict[str, Any], options: Dict[str, Any]) -> List[Any]:
        """Evaluate a near query over every stored row in a scratch memory store."""
        from .connectors.memory import Memory

        rows = await cls._invoke("all", {}, options=options)
        memory = Memory()
        memory.define(cls)
        for row in rows or []:
            await memory.create(cls.__name__, dict(row))
        return await memory.all(cls.__name__, query)

    @classmethod
    async def _build_results(cls, op: _Operation, rows: Any, query: Dict[str, Any]) -> List[Any]:
        results = []
        fields = query.get("fields")
        for row in rows or []:
            if op.notify_enabled:
                ctx = await op.loaded(row, False)
                row = ctx.data
            results.append(cls(row, fields=fields, apply_setters=False, persisted=True))
        if query.get("include") and results:
            from .inclusion import include

            await include(cls, results, query["include"], op.options)
        return results

    @classmethod
    def find_one(cls, filter: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None, *,
                 callback: Optional[Callback] = None):
        options = _check_options(options)
        _check_object(filter, "filter")
        return dispatch(cls._find_one(filter, options), callback)

    @classmethod
    async def _find_one(cls, filter: Optional[Dict[str, Any]], options: Dict[str, Any]) -> Any:
        query = dict(filter or {})
        query["limit"] = 1
        results = await cls._find(query, options)
        return results[0] if results else None

    @classmethod
    def find_by_id(cls, id: Any, filter: Optional[Dict[str, Any]] = None,
                   options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """The instance with ``id`` or None; ``filter`` may add ``include`` and ``fields``."""
        options = _check_options(options)
        _check_object(filter, "filter")
        return dispatch(cls._find_by_id(id, filter, options), callback)

    @classmethod
    async def _find_by_id(cls, id: Any, filter: Optional[Dict[str, Any]], options: Dict[str, Any]) -> Any:
        if id is None or id == "":
            raise NotFoundFault(f"{cls.__name__}.find_by_id requires the id argument", model=cls.__name__)
        query = cls._by_id(id)
        filter = filter or {}
        if filter.get("include"):
            query["include"] = filter["include"]
        if filter.get("fields"):
            query["fields"] = filter["fields"]
        return await cls._find_one(query, options)

    @classmethod
    def find_by_ids(cls, ids: List[Any], query: Optional[Dict[str, Any]] = None,
                    options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """Instances with the given ids, in the order of ``ids``."""
        options = _check_options(options)
        if not isinstance(ids, list):
            raise ContractViolation("The ids argument must be an array", ids=type(ids).__name__)
        _check_object(query, "query")
        return dispatch(cls._find_by_ids(ids, query, options), callback)

    @classmethod
    async def _find_by_ids(cls, ids: List[Any], query: Optional[Dict[str, Any]], options: Dict[str, Any]) -> List[Any]:
        id_name = cls._require_id_name()
        if not ids:
            return []
        filter = {"where": {id_name: {"inq": list(ids)}}}
        merge_query(filter, copy.deepcopy(query or {}))
        results = await cls._find(filter, options)
        return sort_objects_by_ids(id_name, ids, results)

    @classmethod
    def count(cls, where: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None, *,
              callback: Optional[Callback] = None):
        options = _check_options(options)
        _check_object(where, "where")
        return dispatch(cls._count(where, options), callback)

    @classmethod
    async def _count(cls, where: Optional[Dict[str, Any]], options: Dict[str, Any]) -> int:
        await cls._ready()
        query = {"where": copy.deepcopy(where)} if where else {}
        cls.apply_scope(query)
        coerce_where(cls, query.get("where"))

        op = _Operation(cls, options)
        if op.notify_enabled:
            ctx = await op.notify("access", query=query)
            query = ctx.query or {}
        return await cls._invoke("count", query.get("where") or {}, options=options)

    @classmethod
    def exists(cls, id: Any, options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        options = _check_options(options)
        return dispatch(cls._exists(id, options), callback)

    @classmethod
    async def _exists(cls, id: Any, options: Dict[str, Any]) -> bool:
        if id is None or id == "":
            raise NotFoundFault(f"{cls.__name__}.exists requires the id argument", model=cls.__name__)
        return await cls._count(cls._by_id(id)["where"], options) == 1

    # ── Bulk writes ──────────────────────────────────────────────────────

    @classmethod
    def update_all(cls, where: Optional[Dict[str, Any]] = None, data: Optional[Dict[str, Any]] = None,
                   options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """
        Apply ``data`` to every instance matching ``where``.

        ``update_all(data)`` updates every instance. Resolves to ``{"count": n}``.
        """
        options = _check_options(options)
        if data is None:
            where, data = None, where
        _check_object(where, "where")
        _check_object(data, "data", optional=False)
        return dispatch(cls._update_all(where, data, options), callback)

    update = update_all

    @classmethod
    async def _update_all(cls, where: Optional[Dict[str, Any]], data: Any, options: Dict[str, Any]) -> Dict[str, Any]:
        await cls._ready()
        if isinstance(data, BaseModel):
            data = data.to_object(False)
        query = {"where": copy.deepcopy(where or {})}
        cls.apply_scope(query)

        op = _Operation(cls, options)
        ctx = await op.notify("access", query=query)
        ctx = await op.notify("before save", where=ctx.query.get("where") or {}, data=remove_undefined(dict(data)))
        where, data = ctx.where, ctx.data
        coerce_where(cls, where)

        inst = cls(data, apply_default_values=False, persisted=True)
        cls.apply_properties(data, inst)
        typed = {key: inst._data.get(key, value) for key, value in data.items()}

        ctx = await op.notify("persist", where=where, data=typed, current_instance=inst)
        info = _count_info(await cls._invoke("update", where, ctx.data, options=options))
        await op.notify("after save", where=where, data=ctx.data, info=info)
        return info

    @classmethod
    def destroy_all(cls, where: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None, *,
                    callback: Optional[Callback] = None):
        """Delete every instance matching ``where``; resolves to ``{"count": n}``."""
        options = _check_options(options)
        _check_object(where, "where")
        return dispatch(cls._destroy_all(where, options), callback)

    delete_all = destroy_all
    remove = destroy_all

    @classmethod
    async def _destroy_all(cls, where: Optional[Dict[str, Any]], options: Dict[str, Any],
                           signal: bool = True) -> Dict[str, Any]:
        await cls._ready()
        query = {"where": copy.deepcopy(where or {})}
        cls.apply_scope(query)
        where = query.get("where") or {}

        op = _Operation(cls, options)
        if op.notify_enabled:
            ctx = await op.notify("access", query=query)
            ctx = await op.notify("before delete", where=(ctx.query or {}).get("where") or {})
            where = ctx.where or {}
        coerce_where(cls, where)

        info = _count_info(await cls._invoke("destroy_all", where, options=options))
        if op.notify_enabled:
            await op.notify("after delete", where=where, info=info)
        if signal:
            await deleted_all.send(cls, where=where, count=info.get("count"))
        return info

    @classmethod
    def delete_by_id(cls, id: Any, options: Optional[Dict[str, Any]] = None, *,
                     callback: Optional[Callback] = None):
        """
        Delete the instance with ``id``; resolves to ``{"count": n}``.

        With ``strict_delete`` (model setting or option) a missing id is a 404.
        """
        options = _check_options(options)
        return dispatch(cls._delete_by_id(id, options), callback)

    destroy_by_id = delete_by_id
    remove_by_id = delete_by_id

    @classmethod
    async def _delete_by_id(cls, id: Any, options: Dict[str, Any]) -> Dict[str, Any]:
        where = cls._by_id(id)["where"]
        if id is None or id == "":
            raise BadRequestFault(f"{cls.__name__}.delete_by_id requires the id argument", model=cls.__name__)
        info = await cls._destroy_all(where, options, signal=False)
        if info.get("count") == 0 and cls._strict_delete(options):
            raise NotFoundFault(f"No instance with id {id} found for {cls.__name__}", model=cls.__name__, id=id)
        await deleted.send(cls, id=id, instance=None)
        return info

    @classmethod
    def _strict_delete(cls, options: Dict[str, Any]) -> bool:
        if "strict_delete" in options:
            return bool(options["strict_delete"])
        return bool(cls._definition.settings.strict_delete)

    @classmethod
    def replace_by_id(cls, id: Any, data: Any, options: Optional[Dict[str, Any]] = None, *,
                      callback: Optional[Callback] = None):
        """Replace every property of the instance with ``id`` by ``data``."""
        options = _check_options(options)
        _check_object(data, "data", optional=False)
        return dispatch(cls._replace_by_id(id, data, options), callback)

    @classmethod
    async def _replace_by_id(cls, id: Any, data: Any, options: Dict[str, Any], target: Any = None) -> Any:
        await cls._ready()
        id_name = cls._require_id_name()
        if id is None or id == "":
            raise PKMissingFault(cls.__name__, f"{cls.__name__}.replace_by_id requires the id argument")
        if isinstance(data, BaseModel):
            data = data.to_object(False)
        data = dict(data)
        data[id_name] = id

        op = _Operation(cls, options)
        inst = cls(data, persisted=True)
        ctx = await op.notify("before save", instance=inst, is_new_instance=False)
        inst = ctx.instance if ctx.instance is not None else inst

        enforced: Dict[str, Any] = {}
        cls.apply_properties(enforced, inst)
        inst.set_attributes(enforced)
        if cls._should_validate(options) and not await inst.is_valid(None, options):
            raise ValidationError(inst)

        ctx = await op.notify(
            "persist",
            where={id_name: id},
            data=cls._persist_data(inst),
            current_instance=inst,
            is_new_instance=False,
        )
        result = await cls._invoke("replace_by_id", id, ctx.data, options=options)
        row, _ = _split(result)
        ctx = await op.loaded(row if row is not None else ctx.data, False)

        inst = target if target is not None else inst
        inst._init_properties(ctx.data, persisted=True, strict=inst._strict)
        inst.set_id(id)
        await op.notify("after save", instance=inst, is_new_instance=False)
        await changed.send(cls, instance=inst)
        return inst

    # ── Instance operations ──────────────────────────────────────────────

    def save(self, options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """Create the instance when new, otherwise write all of its properties."""
        options = _check_options(options)
        return dispatch(self._save(options), callback)

    async def _save(self, options: Dict[str, Any]) -> Any:
        cls = type(self)
        if self.is_new_record():
            return await cls._create(self, options)
        await cls._ready()
        id_name = cls._require_id_name()

        op = _Operation(cls, options)
        ctx = await op.notify("before save", instance=self, is_new_instance=False)
        inst = ctx.instance if ctx.instance is not None else self

        enforced: Dict[str, Any] = {}
        cls.apply_properties(enforced, inst)
        inst.set_attributes(enforced)
        if cls._should_validate(options) and not await inst.is_valid(None, options):
            raise ValidationError(inst)

        ctx = await op.notify(
            "persist",
            where={id_name: inst.get_id()},
            data=cls._persist_data(inst),
            current_instance=inst,
            is_new_instance=False,
        )
        data, info = _split(await cls._invoke("save", ctx.data, options=options))
        ctx = await op.loaded(data if data is not None else ctx.data, (info or {}).get("is_new_instance", False))
        inst._init_properties(ctx.data, persisted=True, strict=inst._strict)

        await op.notify("after save", instance=inst, is_new_instance=False)
        await changed.send(cls, instance=inst)
        return inst

    def update_attributes(self, data: Any, options: Optional[Dict[str, Any]] = None, *,
                          callback: Optional[Callback] = None):
        """Update the given properties and write only those."""
        options = _check_options(options)
        _check_object(data, "data", optional=False)
        return dispatch(self._update_attributes(data, options), callback)

    patch_attributes = update_attributes

    def update_attribute(self, name: str, value: Any, options: Optional[Dict[str, Any]] = None, *,
                         callback: Optional[Callback] = None):
        if not isinstance(name, str):
            raise ContractViolation("The name argument must be a string", name=type(name).__name__)
        return self.update_attributes({name: value}, options, callback=callback)

    async def _update_attributes(self, data: Any, options: Dict[str, Any]) -> Any:
        cls = type(self)
        await cls._ready()
        id_name = cls._require_id_name()
        if isinstance(data, BaseModel):
            data = data.to_object(False)
        data = dict(data)
        current_id = self.get_id()

        if id_name in data and data[id_name] is not None and not id_equals(data[id_name], current_id):
            raise BadRequestFault(
                f"id property ({id_name}) cannot be updated from {current_id} to {data[id_name]}",
                model=cls.__name__,
            )

        op = _Operation(cls, options)
        ctx = await op.notify(
            "before save",
            where={id_name: current_id},
            data=data,
            current_instance=self,
        )
        data = ctx.data

        properties = cls._definition.properties
        unknown = [key for key in data if key not in properties and key not in cls._relations]
        if unknown and self._strict == "throw":
            raise UnknownPropertyFault(cls.__name__, unknown[0])
        if unknown and self._strict is not False:
            if self._strict != "filter":
                self._unknown_properties.extend(key for key in unknown if key not in self._unknown_properties)
            data = {key: value for key, value in data.items() if key not in unknown}

        cls.apply_properties(data, self)
        self.set_attributes(data)
        if cls._should_validate(options) and not await self.is_valid(data, options):
            raise ValidationError(self)

        typed = {key: self._data.get(key, value) for key, value in data.items() if key not in cls._relations}
        ctx = await op.notify(
            "persist",
            where={id_name: current_id},
            data=remove_undefined(typed),
            current_instance=self,
            is_new_instance=False,
        )
        result = await cls._invoke("update_attributes", current_id, ctx.data, options=options)
        row, _ = _split(result)
        ctx = await op.loaded(row if row is not None else ctx.data, False)
        self._persisted = True
        if cls._update_on_load() and ctx.data:
            self.set_attributes(ctx.data)

        await op.notify("after save", instance=self, is_new_instance=False)
        await changed.send(cls, instance=self)
        return self

    def replace_attributes(self, data: Any, options: Optional[Dict[str, Any]] = None, *,
                           callback: Optional[Callback] = None):
        """Replace every property of this instance by ``data``."""
        options = _check_options(options)
        _check_object(data, "data", optional=False)
        return dispatch(type(self)._replace_by_id(self.get_id(), data, options, self), callback)

    def destroy(self, options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """Delete this instance; resolves to ``{"count": n}``."""
        options = _check_options(options)
        return dispatch(self._destroy(options), callback)

    delete = destroy

    async def _destroy(self, options: Dict[str, Any]) -> Dict[str, Any]:
        cls = type(self)
        await cls._ready()
        id_name = cls._require_id_name()
        id_value = self.get_id()

        op = _Operation(cls, options)
        ctx = await op.notify("access", query={"where": {id_name: id_value}})
        where = (ctx.query or {}).get("where") or {}
        ctx = await op.notify("before delete", where=where, instance=self)
        where = ctx.where or {}

        if _is_where_by_given_id(cls, where, id_value):
            info = _count_info(await cls._invoke("destroy", id_value, options=options))
        else:
            info = await cls._destroy_all(where, {**options, "notify": False}, signal=False)

        if info.get("count") == 0 and cls._strict_delete(options):
            raise NotFoundFault(
                f"No instance with id {id_value} found for {cls.__name__}",
                model=cls.__name__,
                id=id_value,
            )
        await op.notify("after delete", where=where, instance=self, info=info)
        await deleted.send(cls, id=id_value, instance=self)
        return info

    def reload(self, options: Optional[Dict[str, Any]] = None, *, callback: Optional[Callback] = None):
        """A fresh copy of this instance read from the connector."""
        options = _check_options(options)
        return dispatch(type(self)._find_by_id(self.get_id(), None, options), callback)

    # ── Scopes, relations, transactions ──────────────────────────────────

    @classmethod
    def scope(cls, name: str, query: Any, methods: Optional[Dict[str, Callable[..., Any]]] = None) -> None:
        """Declare a named scope: ``Book.scope("recent", {"order": "created DESC"})``."""
        from .scope import define_scope

        define_scope(cls, cls, name, query, methods)

    @classmethod
    def belongs_to(cls, model_to: Any, **params: Any) -> Any:
        from .relations import belongs_to

        return belongs_to(cls, model_to, **params)

    @classmethod
    def has_many(cls, model_to: Any, **params: Any) -> Any:
        from .relations import has_many

        return has_many(cls, model_to, **params)

    @classmethod
    def has_one(cls, model_to: Any, **params: Any) -> Any:
        from .relations import has_one

        return has_one(cls, model_to, **params)

    @classmethod
    def has_and_belongs_to_many(cls, model_to: Any, **params: Any) -> Any:
        from .relations import has_and_belongs_to_many

        return has_and_belongs_to_many(cls, model_to, **params)

    @classmethod
    async def begin_transaction(cls, isolation_level: Any = None, timeout: Optional[float] = None) -> Any:
        """Start a transaction on this model's connector (see ``Transaction``)."""
        from .transaction import Transaction

        await cls._ready()
        return await Transaction.begin(cls.get_connector(), isolation_level, timeout=timeout)


class PersistedModel(BaseModel, DataAccessObject):
    """Base class of models stored through a CRUD connector."""

    class Meta:
        abstract = True


Model = PersistedModel
