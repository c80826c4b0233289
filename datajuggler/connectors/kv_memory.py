"""
Key-value memory connector - per-model stores with millisecond TTLs.

Expired items are removed lazily by ``get`` and by a background reaper
that scans every store once per ``sweep_interval`` seconds while the
connector is connected. The reaper only stops on ``disconnect()``, so
close the data source before the event loop shuts down, or use it as an
async context manager.

Usage:
    ```python
    async with DataSource("kv-memory") as ds:
        Session = ds.create_model("Session")

        await Session.set("token-1", {"user": 7}, ttl=60_000)
        await Session.ttl("token-1")             # -> remaining ms
        await Session.keys({"match": "token-*"})
    ```
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from typing import Any, Dict, List, Optional

from ..faults import NotFoundFault
from .base import Connector, ConnectorCapabilities
from .serializers import get_serializer

logger = logging.getLogger("datajuggler.connectors.kv_memory")

__all__ = ["KeyValueMemory", "StoreItem", "KeyIterator"]


def _now_ms() -> float:
    return time.monotonic() * 1000


class StoreItem:
    """A stored value and its optional expiry (monotonic milliseconds)."""

    __slots__ = ("value", "expires")

    def __init__(self, value: Any, ttl: Optional[float] = None):
        self.value = value
        self.expires: Optional[float] = None
        self.set_ttl(ttl)

    def is_expired(self) -> bool:
        return self.expires is not None and self.expires <= _now_ms()

    def set_ttl(self, ttl: Optional[float]) -> None:
        self.expires = _now_ms() + ttl if ttl else None

    def remaining(self) -> Optional[float]:
        if self.expires is None:
            return None
        return max(0.0, self.expires - _now_ms())


class KeyIterator:
    """
    Iterates a snapshot of keys taken when the iterator was created.

    ``await it.next()`` returns the next key or None once exhausted; the
    iterator also supports ``async for``.
    """

    def __init__(self, keys: List[str]):
        self._keys = list(keys)

    async def next(self) -> Optional[str]:
        return self._keys.pop(0) if self._keys else None

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        key = await self.next()
        if key is None:
            raise StopAsyncIteration
        return key


class KeyValueMemory(Connector):
    """
    In-process key-value connector.

    Settings:
        serializer: "json" (default) or "msgpack"
        sweep_interval: seconds between reaper passes (default 1.0)
    """

    name = "kv-memory"
    capabilities = ConnectorCapabilities(supports_ttl=True, name="kv-memory")

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        super().__init__(settings)
        from ..kvao import KeyValueModel

        self.data_access_object = KeyValueModel
        self.serializer = get_serializer(self.settings.get("serializer") or "json")
        self._sweep_interval = float(self.settings.get("sweep_interval") or 1.0)
        self._store: Dict[str, Dict[str, StoreItem]] = {}
        self._lock = asyncio.Lock()
        self._reaper_task: Optional[asyncio.Task] = None

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def connect(self) -> None:
        if self._reaper_task is None or self._reaper_task.done():
            loop = asyncio.get_running_loop()
            self._reaper_task = loop.create_task(self._reaper())
        self.connected = True

    async def disconnect(self) -> None:
        if self._reaper_task and not self._reaper_task.done():
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
        self._reaper_task = None
        self.connected = False

    async def _reaper(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.remove_expired_items()
            except Exception as exc:
                logger.error(f"Expired key cleanup failed: {exc}")

    async def remove_expired_items(self) -> int:
        removed = 0
        async with self._lock:
            for model, store in self._store.items():
                for key in [k for k, item in store.items() if item.is_expired()]:
                    logger.debug(f"Removing expired key {model}:{key}")
                    del store[key]
                    removed += 1
        return removed

    def _store_for(self, model: str) -> Dict[str, StoreItem]:
        return self._store.setdefault(model, {})

    def _live_item(self, model: str, key: str) -> Optional[StoreItem]:
        store = self._store_for(model)
        item = store.get(key)
        if item is not None and item.is_expired():
            logger.debug(f"Removing expired key {model}:{key}")
            del store[key]
            return None
        return item

    # ── Key-value operations ─────────────────────────────────────────────

    async def get(self, model: str, key: str, options: Optional[Dict[str, Any]] = None) -> Any:
        async with self._lock:
            item = self._live_item(model, key)
        value = self.serializer.deserialize(item.value) if item is not None else None
        logger.debug(f"GET {model} {key!r} -> {value!r}")
        return value

    async def set(self, model: str, key: str, value: Any, options: Optional[Dict[str, Any]] = None) -> None:
        ttl = (options or {}).get("ttl")
        encoded = self.serializer.serialize(value)
        async with self._lock:
            self._store_for(model)[key] = StoreItem(encoded, ttl)
        logger.debug(f"SET {model} {key!r} ttl={ttl}")

    async def expire(self, model: str, key: str, ttl: float, options: Optional[Dict[str, Any]] = None) -> None:
        async with self._lock:
            item = self._live_item(model, key)
            if item is None:
                raise NotFoundFault(f"Cannot expire unknown key {key}", model=model, id=key)
            item.set_ttl(ttl)
        logger.debug(f"EXPIRE {model} {key!r} {ttl or '(never)'}")

    async def ttl(self, model: str, key: str, options: Optional[Dict[str, Any]] = None) -> Optional[float]:
        """Remaining time to live in ms, None when the key never expires."""
        async with self._lock:
            item = self._live_item(model, key)
        if item is None:
            raise NotFoundFault(f"Cannot get TTL for unknown key {key}", model=model, id=key)
        return item.remaining()

    def iterate_keys(self, model: str, filter: Optional[Dict[str, Any]] = None,
                     options: Optional[Dict[str, Any]] = None) -> KeyIterator:
        pattern = (filter or {}).get("match")
        store = self._store_for(model)
        keys = [
            key for key, item in store.items()
            if not item.is_expired() and (pattern is None or fnmatch.fnmatchcase(key, pattern))
        ]
        return KeyIterator(keys)

    async def delete(self, model: str, key: str, options: Optional[Dict[str, Any]] = None) -> None:
        async with self._lock:
            self._store_for(model).pop(key, None)

    async def delete_all(self, model: str, options: Optional[Dict[str, Any]] = None) -> None:
        async with self._lock:
            self._store[model] = {}

    async def flush(self, model: str, options: Optional[Dict[str, Any]] = None) -> None:
        await self.delete_all(model, options)
