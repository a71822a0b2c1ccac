"""
Error taxonomy for the batch upsert engine.

Every failure aborts the call's transaction and reaches the caller as one
of the exceptions below. Store errors that do not fit the taxonomy are
re-raised unchanged by the engine.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError

# PostgreSQL SQLSTATE codes
LOCK_NOT_AVAILABLE = "55P03"
QUERY_CANCELED = "57014"
DATA_EXCEPTION_CLASS = "22"


class BatchUpsertError(Exception):
    """Base class for all engine errors."""

    code = "batch_upsert_error"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"error": self.code, "message": str(self)}


class ValidationError(BatchUpsertError):
    """Payload is malformed or a value cannot be converted to its column type."""

    code = "validation_error"

    def __init__(self, message: str, index: Optional[int] = None, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.index = index
        self.fields = fields or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.index is not None:
            data["index"] = self.index
        if self.fields:
            data["fields"] = self.fields
        return data


class RowNotFound(BatchUpsertError):
    """An entry references an identifier that does not exist in the target table."""

    code = "row_not_found"

    def __init__(self, table: str, identifier: Any, index: Optional[int] = None):
        message = f"row {identifier!r} not found in table {table!r}"
        if index is not None:
            message = f"entry {index}: {message}"
        super().__init__(message)
        self.table = table
        self.identifier = identifier
        self.index = index

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(table=self.table, identifier=self.identifier, index=self.index)
        return data


class ConstraintViolation(BatchUpsertError):
    """The store rejected a write (unique, foreign key, check or not-null constraint)."""

    code = "constraint_violation"

    def __init__(self, message: str, orig: Optional[BaseException] = None):
        super().__init__(message)
        self.orig = orig


class LockTimeout(BatchUpsertError):
    """Waiting for a row lock took longer than the configured timeout."""

    code = "lock_timeout"


class RoutingError(BatchUpsertError):
    """Table name is unsafe, not allow-listed, or does not match its expected schema."""

    code = "routing_error"


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    """Extract the SQLSTATE from a wrapped psycopg (3 or 2) error, if any."""
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def translate_db_error(exc: DBAPIError) -> Optional[BatchUpsertError]:
    """
    Map a SQLAlchemy DBAPI error onto the engine's error taxonomy.

    Args:
        exc: Error raised by SQLAlchemy while executing a statement

    Returns:
        Matching BatchUpsertError, or None when the error is outside the
        taxonomy and must propagate unchanged
    """
    message = str(exc.orig) if exc.orig is not None else str(exc)
    state = _sqlstate(exc)

    if isinstance(exc, IntegrityError):
        return ConstraintViolation(message, orig=exc.orig)

    if state in (LOCK_NOT_AVAILABLE, QUERY_CANCELED):
        return LockTimeout(message)

    if state is not None and state.startswith(DATA_EXCEPTION_CLASS):
        return ValidationError(message)

    # SQLite reports busy locks without a SQLSTATE
    if "database is locked" in message:
        return LockTimeout(message)

    return None
