"""
Transactions - a connector connection threaded through ``options``.

Usage:
    ```python
    tx = await Book.begin_transaction("READ COMMITTED", timeout=5.0)
    try:
        await Book.create({"title": "Dune"}, {"transaction": tx})
        await tx.commit()
    except Exception:
        await tx.rollback()
        raise
    ```

Transactions support observers: ``before commit``, ``after commit``,
``before rollback``, ``after rollback`` and ``timeout``. A transaction whose
``timeout`` elapses fires ``timeout`` and is rolled back unless a listener
raises.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from typing import Any, Dict, Optional

from .faults import TransactionFault
from .observer import ObserverRegistry

logger = logging.getLogger("datajuggler.transaction")

__all__ = ["Transaction", "TransactionContext", "ISOLATION_LEVELS"]

ISOLATION_LEVELS = ("READ COMMITTED", "READ UNCOMMITTED", "SERIALIZABLE", "REPEATABLE READ")


class TransactionContext:
    """Context handed to transaction observers."""

    __slots__ = ("transaction", "operation", "error", "results")

    def __init__(self, transaction: Transaction, operation: str):
        self.transaction = transaction
        self.operation = operation
        self.error: Optional[BaseException] = None
        self.results: Any = None


class Transaction:
    """
    An open connector transaction.

    ``connection`` is the handle returned by the connector's
    ``begin_transaction``; it is cleared on commit or rollback, which marks
    the transaction inactive.
    """

    def __init__(self, connector: Any, connection: Any, isolation_level: Optional[str] = None):
        self.id = uuid.uuid1().hex
        self.connector = connector
        self.connection = connection
        self.isolation_level = isolation_level
        self._observers = ObserverRegistry(f"Transaction {self.id}")
        self._timeout_handle: Optional[asyncio.TimerHandle] = None

    @classmethod
    async def begin(cls, connector: Any, isolation_level: Any = None, *,
                    timeout: Optional[float] = None) -> Transaction:
        """
        Start a transaction on ``connector``.

        ``isolation_level`` may also be an options dict
        ``{"isolation_level": ..., "timeout": ...}``; ``timeout`` is in seconds.
        """
        if isinstance(isolation_level, dict):
            options: Dict[str, Any] = dict(isolation_level)
            isolation_level = options.get("isolation_level")
            timeout = options.get("timeout", timeout)
        isolation_level = isolation_level or "READ COMMITTED"
        if isolation_level not in ISOLATION_LEVELS:
            raise TransactionFault(f"Invalid isolation level: {isolation_level}", isolation_level=isolation_level)

        begin = getattr(connector, "begin_transaction", None)
        if begin is None:
            raise TransactionFault("Transaction is not supported", connector=getattr(connector, "name", None))
        connection = begin(isolation_level)
        if inspect.isawaitable(connection):
            connection = await connection

        tx = cls(connector, connection, isolation_level)
        if timeout:
            tx._timeout_handle = asyncio.get_running_loop().call_later(timeout, tx._on_timeout)
        logger.debug(f"Transaction {tx.id} started ({isolation_level})")
        return tx

    @property
    def is_active(self) -> bool:
        return self.connection is not None

    def ensure_active(self) -> None:
        if not self.is_active:
            raise TransactionFault(f"The transaction is not active: {self.id}", transaction=self.id)

    # ── Observers ────────────────────────────────────────────────────────

    def observe(self, operation: str, listener: Any = None):
        return self._observers.observe(operation, listener)

    def remove_observer(self, operation: str, listener: Any) -> bool:
        return self._observers.remove_observer(operation, listener)

    # ── Completion ───────────────────────────────────────────────────────

    async def commit(self) -> None:
        await self._finish("commit")

    async def rollback(self) -> None:
        await self._finish("rollback")

    async def _finish(self, operation: str) -> None:
        self.ensure_active()
        self._cancel_timeout()
        context = TransactionContext(self, operation)

        async def work(_ctx: Any) -> Any:
            result = getattr(self.connector, operation)(self.connection)
            if inspect.isawaitable(result):
                result = await result
            return result

        try:
            await self._observers.notify_around(operation, context, work)
        finally:
            self.connection = None
        logger.debug(f"Transaction {self.id} {operation} done")

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if self.is_active:
            asyncio.get_running_loop().create_task(self._expire())

    async def _expire(self) -> None:
        try:
            await self._observers.notify("timeout", TransactionContext(self, "timeout"))
        except Exception as exc:
            logger.warning(f"Transaction {self.id} timeout listener failed, not rolling back: {exc}")
            return
        if self.is_active:
            await self.rollback()
            logger.debug(f"Transaction {self.id} is rolled back due to timeout")

    def to_json(self) -> str:
        return self.id

    def __str__(self) -> str:
        return self.id

    def __repr__(self) -> str:
        state = "active" if self.is_active else "done"
        return f"<Transaction {self.id} {state}>"
