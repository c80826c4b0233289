"""
Juggler faults - structured error taxonomy for the data layer.

Usage:
    ```python
    from datajuggler.faults import NotFoundFault

    try:
        await Book.delete_by_id(7, {"strict_delete": True})
    except NotFoundFault as fault:
        assert fault.status_code == 404
    ```
"""

from .core import DOMAIN_DEFAULTS, Fault, FaultDomain, Severity
from .domains import (
    BadRequestFault,
    BulkCreateFault,
    ConfigFault,
    ConnectionTimeoutFault,
    ConnectorFault,
    ConnectorNotFoundFault,
    ContractViolation,
    DataFault,
    DuplicateEntryFault,
    ModelDefinitionFault,
    ModelFault,
    NotFoundFault,
    NotSupportedFault,
    PKMissingFault,
    TransactionFault,
    UnknownPropertyFault,
    ValidationError,
)

__all__ = [
    "DOMAIN_DEFAULTS",
    "Fault",
    "FaultDomain",
    "Severity",
    "BadRequestFault",
    "BulkCreateFault",
    "ConfigFault",
    "ConnectionTimeoutFault",
    "ConnectorFault",
    "ConnectorNotFoundFault",
    "ContractViolation",
    "DataFault",
    "DuplicateEntryFault",
    "ModelDefinitionFault",
    "ModelFault",
    "NotFoundFault",
    "NotSupportedFault",
    "PKMissingFault",
    "TransactionFault",
    "UnknownPropertyFault",
    "ValidationError",
]
