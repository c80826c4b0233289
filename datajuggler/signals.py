"""
Model events - notifications sent after completed writes.

Unlike observers, receivers of these signals cannot alter or abort an
operation: they run after the write completed. An error raised by a
receiver stops the remaining receivers and reaches the caller of the
operation; ``robust_send`` runs every receiver and logs their errors instead.

Usage:
    from datajuggler.signals import changed, deleted

    @changed.connect
    async def reindex(sender, instance, **kwargs):
        await search.index(sender.__name__, instance.to_json())

    @deleted.connect(sender=Book)
    def forget(sender, id, **kwargs):
        cache.pop(id, None)
"""

from __future__ import annotations

import contextlib
import inspect
import logging
from typing import Any, Callable, List, Optional, Type

logger = logging.getLogger("datajuggler.signals")

__all__ = ["Signal", "changed", "deleted", "deleted_all"]


class Signal:
    """
    A signal that can be connected to receiver functions.

    Receivers can be sync or async callables. They receive the model class as
    ``sender`` plus signal-specific keyword arguments. A receiver connected
    with a ``sender`` filter only sees that model and its subclasses.
    Lower ``priority`` runs first.
    """

    def __init__(self, name: str):
        self.name = name
        # Each entry: (receiver, sender_filter, priority)
        self._receivers: List[tuple] = []

    def connect(
        self,
        receiver: Callable = None,
        *,
        sender: Optional[Type] = None,
        priority: int = 100,
    ):
        """Connect a receiver function. Can be used as a decorator."""
        def _decorator(fn: Callable) -> Callable:
            self._add_receiver(fn, sender, priority)
            return fn

        if receiver is not None:
            return _decorator(receiver)
        return _decorator

    def _add_receiver(self, fn: Callable, sender: Optional[Type], priority: int) -> None:
        for existing, existing_sender, _ in self._receivers:
            if existing is fn and existing_sender is sender:
                return
        self._receivers.append((fn, sender, priority))
        # stable sort keeps insertion order for ties
        self._receivers.sort(key=lambda x: x[2])

    def disconnect(self, receiver: Callable, *, sender: Optional[Type] = None) -> bool:
        """Disconnect a receiver. Returns True if it was connected."""
        for i, (fn, s, _) in enumerate(self._receivers):
            if fn is receiver and (sender is None or s is sender):
                self._receivers.pop(i)
                return True
        return False

    @staticmethod
    def _matches(filter_sender: Optional[Type], sender: Type) -> bool:
        if filter_sender is None:
            return True
        return isinstance(sender, type) and issubclass(sender, filter_sender)

    async def send(self, sender: Type, **kwargs) -> List[Any]:
        """
        Fire the signal, calling every matching receiver.

        A receiver error propagates and the remaining receivers are skipped.
        """
        results = []
        for receiver, filter_sender, _ in list(self._receivers):
            if not self._matches(filter_sender, sender):
                continue
            result = receiver(sender=sender, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            results.append(result)
        return results

    async def robust_send(self, sender: Type, **kwargs) -> List[Any]:
        """
        Fire the signal, running every receiver regardless of errors.

        Errors raised by receivers are logged and returned in place of a result.
        """
        results = []
        for receiver, filter_sender, _ in list(self._receivers):
            if not self._matches(filter_sender, sender):
                continue
            try:
                result = receiver(sender=sender, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
                results.append(result)
            except Exception as exc:
                logger.error(
                    f"Signal '{self.name}' receiver {getattr(receiver, '__name__', receiver)} "
                    f"raised {exc.__class__.__name__}: {exc}"
                )
                results.append(exc)
        return results

    @property
    def receivers(self) -> List[Callable]:
        return [fn for fn, _, _ in self._receivers]

    def has_listeners(self, sender: Optional[Type] = None) -> bool:
        if sender is None:
            return bool(self._receivers)
        return any(self._matches(s, sender) for _, s, _ in self._receivers)

    @contextlib.contextmanager
    def connected(self, fn: Callable, *, sender: Optional[Type] = None, priority: int = 100):
        """Context manager for a temporary connection."""
        self._add_receiver(fn, sender, priority)
        try:
            yield
        finally:
            self.disconnect(fn, sender=sender)

    def clear(self) -> None:
        """Remove all receivers (useful for testing)."""
        self._receivers.clear()

    def __repr__(self) -> str:
        return f"<Signal '{self.name}' receivers={len(self._receivers)}>"


# Built-in model events
changed = Signal("changed")          # sender, instance
deleted = Signal("deleted")          # sender, id, instance
deleted_all = Signal("deleted_all")  # sender, where, count
