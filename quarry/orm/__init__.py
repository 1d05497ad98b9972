"""
Quarry ORM (Object-Relational Mapping)
======================================

Lightweight async ORM with:
- Active Record pattern
- Query builder with identifier safety
- Attribute casting
- Relationships with batched eager loading
- Lifecycle observers
- Soft deletes and timestamps
- Multiple database support
"""

from quarry.orm.model import Model
from quarry.orm.query import (
    Paginator,
    Query,
    QueryBuilder,
)
from quarry.orm.connection import (
    Connection,
    Database,
    DatabaseConfig,
    DatabaseDriver,
    ExecuteResult,
)
from quarry.orm.casts import CastKind
from quarry.orm.observers import (
    ModelEvent,
    Observer,
    ObserverRegistry,
    VetoingObserver,
)
from quarry.orm.relations import (
    EagerLoader,
    Relation,
    RelationInfo,
    RelationKind,
)
from quarry.orm.exceptions import (
    InvalidIdentifier,
    InvalidOperator,
    MalformedStoredJSON,
    ModelNotFound,
    NoConnection,
    QuarryError,
    RelationNotFound,
    UnsupportedDriver,
)

__all__ = [
    # Model
    "Model",
    "CastKind",
    # Query
    "Query",
    "QueryBuilder",
    "Paginator",
    # Connection
    "Connection",
    "Database",
    "DatabaseConfig",
    "DatabaseDriver",
    "ExecuteResult",
    # Observers
    "ModelEvent",
    "Observer",
    "ObserverRegistry",
    "VetoingObserver",
    # Relations
    "EagerLoader",
    "Relation",
    "RelationInfo",
    "RelationKind",
    # Exceptions
    "QuarryError",
    "InvalidIdentifier",
    "InvalidOperator",
    "MalformedStoredJSON",
    "ModelNotFound",
    "NoConnection",
    "RelationNotFound",
    "UnsupportedDriver",
]
