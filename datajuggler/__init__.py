"""
Datajuggler - async object-data mapping over pluggable connectors

Complete integration of:
- Models: typed properties, strict modes, hidden/protected fields
- DAO: create/find/update/destroy/upsert pipeline with observers
- Validations: presence, length, format, inclusion, uniqueness, custom rules
- Relations: belongsTo, hasMany (through), hasOne, hasAndBelongsToMany
- Scopes and inclusion of related models
- Connectors: memory, kv-memory, transient
- Transactions, mixins, model signals
- Faults: structured error taxonomy
"""

__version__ = "0.1.0"

# ============================================================================
# Models
# ============================================================================

from .definition import ModelDefinition, ModelSettings, Property
from .types import UNSET, List, registry as types
from .geo import GeoPoint
from .metaclass import ModelMeta
from .model import BaseModel
from .registry import ModelRegistry
from .context import OperationContext
from .validations import Errors

# ============================================================================
# Data access
# ============================================================================

from .dao import DataAccessObject, Model, PersistedModel
from .kvao import KeyValueAccessObject, KeyValueModel
from .datasource import DataSource
from .config import DataSourceConfig
from .transaction import Transaction
from .mixins import mixins
from . import signals

# ============================================================================
# Connectors
# ============================================================================

from .connectors import (
    Connector,
    KeyValueMemory,
    Memory,
    Transient,
    get_connector,
    register_connector,
)

# ============================================================================
# Faults
# ============================================================================

from .faults import (
    BadRequestFault,
    BulkCreateFault,
    ConfigFault,
    ConnectionTimeoutFault,
    ContractViolation,
    DuplicateEntryFault,
    Fault,
    ModelDefinitionFault,
    NotFoundFault,
    NotSupportedFault,
    PKMissingFault,
    TransactionFault,
    UnknownPropertyFault,
    ValidationError,
)

__all__ = [
    "__version__",
    # Models
    "ModelDefinition",
    "ModelSettings",
    "Property",
    "UNSET",
    "List",
    "types",
    "GeoPoint",
    "ModelMeta",
    "BaseModel",
    "ModelRegistry",
    "OperationContext",
    "Errors",
    # Data access
    "DataAccessObject",
    "Model",
    "PersistedModel",
    "KeyValueAccessObject",
    "KeyValueModel",
    "DataSource",
    "DataSourceConfig",
    "Transaction",
    "mixins",
    "signals",
    # Connectors
    "Connector",
    "Memory",
    "KeyValueMemory",
    "Transient",
    "get_connector",
    "register_connector",
    # Faults
    "Fault",
    "BadRequestFault",
    "BulkCreateFault",
    "ConfigFault",
    "ConnectionTimeoutFault",
    "ContractViolation",
    "DuplicateEntryFault",
    "ModelDefinitionFault",
    "NotFoundFault",
    "NotSupportedFault",
    "PKMissingFault",
    "TransactionFault",
    "UnknownPropertyFault",
    "ValidationError",
]
