"""
Operation context - the accumulator threaded through every pipeline stage.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


__all__ = ["OperationContext"]


@dataclass
class OperationContext:
    """
    State handed from stage to stage of one DAO operation.

    Observers may mutate the context in place or return a new one; the
    pipeline reads whatever the previous stage handed back. ``hook_state``
    is shared by every stage of the operation, including replacement
    contexts built with ``evolve``.
    """

    model: Any
    options: Dict[str, Any] = field(default_factory=dict)
    hook_state: Dict[str, Any] = field(default_factory=dict)
    query: Optional[Dict[str, Any]] = None
    where: Optional[Dict[str, Any]] = None
    data: Optional[Dict[str, Any]] = None
    instance: Any = None
    current_instance: Any = None
    is_new_instance: Optional[bool] = None
    info: Optional[Dict[str, Any]] = None
    results: Any = None
    error: Optional[BaseException] = None

    def evolve(self, **changes: Any) -> OperationContext:
        """Return a copy with ``changes`` applied, sharing ``hook_state``."""
        return dataclasses.replace(self, **changes)

    @property
    def model_name(self) -> str:
        return getattr(self.model, "__name__", str(self.model))
