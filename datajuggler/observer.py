"""
Observer registry - per-model operation hooks.

Observers are registered per model class under an operation name such as
``"access"``, ``"before save"``, ``"persist"``, ``"loaded"``,
``"after save"``, ``"before delete"`` or ``"after delete"``. Listeners of a
base model run before the listeners of the subclass; within one class they
run in registration order, one at a time.

Usage:
    ```python
    @Book.observe("before save")
    async def stamp(ctx):
        if ctx.instance is not None:
            ctx.instance.touched = True

    Book.observe("access", lambda ctx: ctx.query["where"].setdefault("deleted", False))
    ```
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple, Union

from .context import OperationContext

logger = logging.getLogger("datajuggler.observer")

__all__ = ["ObserverRegistry"]

Listener = Callable[[OperationContext], Any]


class ObserverRegistry:
    """
    Ordered listeners per operation for one model class.

    The listener list of an operation is an immutable tuple replaced on
    every registration, so a notification already in flight keeps iterating
    over the snapshot it started with.
    """

    __slots__ = ("owner", "parent", "_observers")

    def __init__(self, owner: str, parent: Optional[ObserverRegistry] = None):
        self.owner = owner
        self.parent = parent
        self._observers: Dict[str, Tuple[Listener, ...]] = {}

    def observe(self, operation: str, listener: Optional[Listener] = None):
        """Register ``listener`` for ``operation``. Can be used as a decorator."""
        def _decorator(fn: Listener) -> Listener:
            if not callable(fn):
                raise TypeError(f"Observer for {operation!r} must be callable")
            self._observers[operation] = self._observers.get(operation, ()) + (fn,)
            return fn

        if listener is not None:
            return _decorator(listener)
        return _decorator

    def remove_observer(self, operation: str, listener: Listener) -> bool:
        current = self._observers.get(operation, ())
        if listener not in current:
            return False
        index = current.index(listener)
        self._observers[operation] = current[:index] + current[index + 1:]
        return True

    def clear_observers(self, operation: Optional[str] = None) -> None:
        if operation is None:
            self._observers = {}
        else:
            self._observers.pop(operation, None)

    def listeners(self, operation: str) -> Tuple[Listener, ...]:
        return self._observers.get(operation, ())

    def has_observers(self, operation: str) -> bool:
        registry: Optional[ObserverRegistry] = self
        while registry is not None:
            if registry._observers.get(operation):
                return True
            registry = registry.parent
        return False

    async def notify(
        self,
        operation: Union[str, Iterable[str]],
        context: OperationContext,
    ) -> OperationContext:
        """
        Run the listeners of ``operation`` in sequence and return the context.

        A list of operations runs as a waterfall, each step receiving the
        context produced by the previous one. The first raised error aborts
        the chain and propagates to the caller.
        """
        if not isinstance(operation, str):
            for op in operation:
                context = await self.notify(op, context)
            return context

        if self.parent is not None:
            context = await self.parent.notify(operation, context)

        for listener in self._observers.get(operation, ()):
            result = listener(context)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, OperationContext):
                context = result
        return context

    async def notify_around(
        self,
        operation: str,
        context: OperationContext,
        work: Callable[[OperationContext], Awaitable[Any]],
    ) -> Any:
        """
        Fire ``before <op>``, run ``work``, then fire ``after <op>``.

        When ``work`` fails, ``after <op> error`` fires with ``context.error``
        set and the error is re-raised.
        """
        context = await self.notify(f"before {operation}", context)
        try:
            results = await work(context)
        except Exception as exc:
            context.error = exc
            await self.notify(f"after {operation} error", context)
            raise
        context.results = results
        await self.notify(f"after {operation}", context)
        return results

    def __repr__(self) -> str:
        counts = {op: len(fns) for op, fns in self._observers.items()}
        return f"<ObserverRegistry {self.owner} {counts}>"
