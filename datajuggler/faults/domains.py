"""
Juggler faults - concrete faults raised by the data layer.

Every fault carries a stable ``code`` and, where the condition maps to a
client error, an HTTP-flavoured ``status_code``.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from .core import Fault, FaultDomain, Severity


MAX_PROPERTY_LEN = 32


# ============================================================================
# Contract
# ============================================================================

class ContractViolation(Fault, TypeError):
    """
    The caller passed arguments of the wrong shape.

    Raised synchronously to the caller; never delivered through a callback.
    """

    def __init__(self, message: str, **kwargs):
        super().__init__(
            code="CONTRACT_VIOLATION",
            message=message,
            domain=FaultDomain.CONTRACT,
            metadata=kwargs or None,
        )


# ============================================================================
# Data access
# ============================================================================

class DataFault(Fault):
    """Base class for data access faults."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        severity: Severity = Severity.ERROR,
        metadata: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            domain=FaultDomain.DATA,
            severity=severity,
            public=status_code is not None and status_code < 500,
            status_code=status_code,
            metadata=metadata,
        )


class NotFoundFault(DataFault):
    """No instance matched the given id (404)."""

    def __init__(self, message: str, *, model: str | None = None, id: Any = None):
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
            metadata={"model": model, "id": id},
        )


class BadRequestFault(DataFault):
    """Malformed filter, where clause or data (400)."""

    def __init__(self, message: str, **metadata):
        super().__init__(
            code="BAD_REQUEST",
            message=message,
            status_code=400,
            metadata=metadata or None,
        )


class PKMissingFault(DataFault):
    """Operation requires a primary key value that is missing."""

    def __init__(self, model: str, message: str | None = None):
        super().__init__(
            code="PK_MISSING",
            message=message or f"Primary key is missing for the {model} model",
            metadata={"model": model},
        )


class DuplicateEntryFault(DataFault):
    """A record with the same id already exists (409)."""

    def __init__(self, model: str, id: Any, id_name: str = "id"):
        super().__init__(
            code="DUPLICATE_ENTRY",
            message=f"Duplicate entry for {model}.{id_name}",
            status_code=409,
            metadata={"model": model, "id": id},
        )


class NotSupportedFault(DataFault):
    """The connector lacks the capability an operation needs (501)."""

    def __init__(self, message: str, **metadata):
        super().__init__(
            code="NOT_SUPPORTED",
            message=message,
            status_code=501,
            metadata=metadata or None,
        )


class BulkCreateFault(DataFault):
    """
    One or more items of a bulk create failed.

    ``errors`` is sparse: ``errors[i]`` is None when item ``i`` succeeded.
    ``results`` holds the instance built for every item.
    """

    def __init__(self, errors: list, results: list):
        failed = sum(1 for e in errors if e is not None)
        super().__init__(
            code="BULK_CREATE_FAILED",
            message=f"{failed} of {len(errors)} items could not be created",
        )
        self.errors = errors
        self.results = results


# ============================================================================
# Model
# ============================================================================

class ModelFault(Fault):
    """Base class for model definition and instance faults."""

    def __init__(self, code: str, message: str, *, status_code: Optional[int] = None,
                 metadata: Optional[dict[str, Any]] = None):
        super().__init__(
            code=code,
            message=message,
            domain=FaultDomain.MODEL,
            public=status_code is not None,
            status_code=status_code,
            metadata=metadata,
        )


class UnknownPropertyFault(ModelFault):
    """Unknown property assigned to a model with ``strict="throw"``."""

    def __init__(self, model: str, prop: str):
        super().__init__(
            code="UNKNOWN_PROPERTY",
            message=f"Unknown property: {prop}",
            status_code=400,
            metadata={"model": model, "property": prop},
        )


class ModelDefinitionFault(ModelFault):
    """Invalid model or relation declaration."""

    def __init__(self, message: str, **metadata):
        super().__init__(code="MODEL_DEFINITION_INVALID", message=message, metadata=metadata or None)


class ValidationError(ModelFault):
    """
    The instance failed validation (422).

    ``details`` holds ``{"context": model name, "codes": {...}, "messages": {...}}``.
    """

    def __init__(self, instance: Any):
        model = type(instance).__name__ if instance is not None else None
        errors = getattr(instance, "errors", None) or {}
        values = getattr(instance, "_data", None) or {}
        context = f"`{model}`" if model else "model"
        message = (
            f"The {context} instance is not valid. "
            f"Details: {format_errors(errors, values) or '(unknown)'}."
        )
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=422,
            metadata={"model": model},
        )
        self.instance = instance
        self.details = {
            "context": model,
            "codes": dict(getattr(errors, "codes", {}) or {}),
            "messages": dict(errors) if errors else {},
        }


def format_errors(errors: dict, values: dict) -> str:
    parts = []
    for prop, messages in errors.items():
        for msg in messages:
            text = f"`{prop}` {msg}"
            if prop in values:
                text += f" (value: {format_property_value(values[prop])})"
            parts.append(text)
    return "; ".join(parts)


def format_property_value(value: Any) -> str:
    if callable(getattr(value, "to_json", None)):
        value = value.to_json()
    try:
        text = json.dumps(value, default=str)
    except (TypeError, ValueError):
        text = repr(value)
    return truncate_property_string(text)


def truncate_property_string(value: str) -> str:
    if len(value) <= MAX_PROPERTY_LEN:
        return value
    tail = {'"': '"', "{": "}", "[": "]"}.get(value[0], "")
    keep = MAX_PROPERTY_LEN - len("...") - len(tail)
    return value[:keep] + "..." + tail


# ============================================================================
# Connector / datasource
# ============================================================================

class ConnectorFault(Fault):
    """Base class for connector and datasource faults."""

    def __init__(self, code: str, message: str, *, retryable: bool = False,
                 metadata: Optional[dict[str, Any]] = None):
        super().__init__(
            code=code,
            message=message,
            domain=FaultDomain.CONNECTOR,
            retryable=retryable,
            metadata=metadata,
        )


class ConnectionTimeoutFault(ConnectorFault):
    """The datasource did not connect within ``connection_timeout``."""

    def __init__(self, datasource: str, timeout: float):
        super().__init__(
            code="CONNECTION_TIMEOUT",
            message=f"Timeout in connecting after {timeout * 1000:.0f} ms",
            retryable=True,
            metadata={"datasource": datasource, "timeout": timeout},
        )


class ConnectorNotFoundFault(ConnectorFault):
    """No connector registered under the requested name."""

    def __init__(self, name: str):
        super().__init__(
            code="CONNECTOR_NOT_FOUND",
            message=f"Connector {name!r} is not installed",
            metadata={"connector": name},
        )


class TransactionFault(ConnectorFault):
    """Transaction misuse: inactive transaction or unsupported connector method."""

    def __init__(self, message: str, **metadata):
        super().__init__(code="TRANSACTION_FAILED", message=message, metadata=metadata or None)


class ConfigFault(Fault):
    """Invalid datasource configuration."""

    def __init__(self, message: str, **metadata):
        super().__init__(
            code="CONFIG_INVALID",
            message=message,
            domain=FaultDomain.CONFIG,
            metadata=metadata or None,
        )
