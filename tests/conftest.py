"""
Shared test fixtures for the datajuggler test suite.
"""

import pytest

from datajuggler import DataSource, ModelRegistry, signals


@pytest.fixture(autouse=True)
def reset_registry():
    """Every test defines its models from scratch."""
    ModelRegistry.reset()
    yield
    ModelRegistry.reset()
    for signal in (signals.changed, signals.deleted, signals.deleted_all):
        signal.clear()


@pytest.fixture
def ds():
    return DataSource("memory")


@pytest.fixture
def Book(ds):
    return ds.define(
        "Book",
        {
            "title": {"type": "string", "required": True},
            "pages": {"type": "number"},
            "published": {"type": "boolean", "default": False},
        },
    )


@pytest.fixture
def record_hooks():
    """Observe hook operations on a model; returns the list they append to."""
    def _record(model, operations=("access", "before save", "persist", "loaded", "after save",
                                   "before delete", "after delete")):
        calls = []
        for operation in operations:
            model.observe(operation, lambda ctx, op=operation: calls.append(op))
        return calls
    return _record
