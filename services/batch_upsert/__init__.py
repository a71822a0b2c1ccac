"""
LobbyLeaks Batch Upsert Engine

JSON-driven batch upsert/delete against relational tables with:
- Atomic single-or-batch writes keyed by identifier
- Row locking for lost-update prevention
- Allow-listed dynamic table routing
- Pydantic settings and structured logging with structlog
"""

__version__ = "0.1.0"

from .engine import BatchEngine
from .errors import (
    BatchUpsertError,
    ConstraintViolation,
    LockTimeout,
    RoutingError,
    RowNotFound,
    ValidationError,
)
from .routing import RoutingOptions, TableConfig, TableRegistry

__all__ = [
    "BatchEngine",
    "BatchUpsertError",
    "ConstraintViolation",
    "LockTimeout",
    "RoutingError",
    "RowNotFound",
    "ValidationError",
    "RoutingOptions",
    "TableConfig",
    "TableRegistry",
]
