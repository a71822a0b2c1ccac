"""
Batch upsert/delete engine.

Accepts JSON describing one or many rows of a routed table, inserts or
updates them keyed by identifier (or deletes them), and returns the
affected rows in input order. Every call is one atomic unit: any failing
entry rolls back the writes of all other entries.
"""

import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Union

import structlog
from sqlalchemy import Connection, Engine, delete, insert, select
from sqlalchemy.exc import DBAPIError

from .db.connector import set_lock_timeout, upsert
from .errors import BatchUpsertError, RowNotFound, ValidationError, translate_db_error
from .log_config import log_database_operation, log_operation_failure
from .payload import Entry, apply_defaults, parse_entries
from .routing import RoutingOptions, TableConfig, TableRegistry
from .settings import Settings, settings

logger = structlog.get_logger(__name__)

Row = Dict[str, Any]
Options = Union[RoutingOptions, Mapping[str, Any], None]


class BatchEngine:
    """
    JSON-driven batch upsert/delete against registered tables.

    The engine holds no per-call state; all state lives in the store.

    Example:
        >>> registry = TableRegistry(default_table="users")
        >>> registry.register(users_table, defaults={"is_admin": False})
        >>> batch = BatchEngine(engine, registry)
        >>> batch.upsert({"name": "x"})
        [{'id': 77, 'name': 'x', 'is_admin': False}]
        >>> batch.upsert({"id": 77, "name": "y"})
        [{'id': 77, 'name': 'y', 'is_admin': False}]
    """

    def __init__(
        self,
        engine: Engine,
        registry: TableRegistry,
        lock_timeout_ms: int = 5000,
        max_batch_size: Optional[int] = None,
    ):
        self.engine = engine
        self.registry = registry
        self.lock_timeout_ms = lock_timeout_ms
        self.max_batch_size = max_batch_size

    @classmethod
    def from_settings(
        cls,
        engine: Engine,
        registry: TableRegistry,
        config: Optional[Settings] = None,
    ) -> "BatchEngine":
        """Create an engine using lock timeout and batch limits from settings."""
        config = config or settings()
        return cls(
            engine,
            registry,
            lock_timeout_ms=config.lock_timeout_ms,
            max_batch_size=config.max_batch_size,
        )

    def upsert(
        self,
        payload: Any,
        options: Options = None,
        connection: Optional[Connection] = None,
    ) -> List[Row]:
        """
        Insert new rows and update existing ones.

        Entries without an identifier are inserted with the table's default
        policy applied to absent fields; the store assigns the identifier.
        Entries with an identifier are locked (SELECT ... FOR UPDATE), merged
        over the current row and written back. Fields absent from an entry
        keep their current value.

        Args:
            payload: One object, an array of objects, or JSON text
            options: Routing options selecting the target table
            connection: Run inside this connection's transaction (as a
                savepoint when one is already open) instead of a new one

        Returns:
            Written rows, in payload order

        Raises:
            RoutingError: Unknown or unsafe table name
            ValidationError: Malformed payload or unconvertible value
            RowNotFound: An identifier does not exist at lock time
            ConstraintViolation: The store rejected a write
            LockTimeout: A row lock could not be acquired in time
        """
        config = self.registry.resolve(options)
        entries = parse_entries(payload, config, self.max_batch_size)
        return self._run("UPSERT", config, entries, connection, self._write_entry)

    def delete(
        self,
        payload: Any,
        options: Options = None,
        connection: Optional[Connection] = None,
    ) -> List[Row]:
        """
        Delete rows by identifier.

        Args:
            payload: One object, an array of objects, or JSON text; every
                entry must carry the identifier
            options: Routing options selecting the target table
            connection: Run inside this connection's transaction

        Returns:
            Deleted rows as they were immediately before removal, in payload order

        Raises:
            ValidationError: An entry has no identifier
            RowNotFound: An identifier does not match any row
        """
        config = self.registry.resolve(options)
        entries = parse_entries(payload, config, self.max_batch_size)

        for entry in entries:
            if entry.is_new:
                raise ValidationError(
                    f"entry {entry.index}: delete requires {config.id_column!r}",
                    index=entry.index,
                    fields=[config.id_column],
                )

        return self._run("DELETE", config, entries, connection, self._delete_entry)

    def fetch(
        self,
        identifiers: Union[Any, Sequence[Any]],
        options: Options = None,
        connection: Optional[Connection] = None,
    ) -> List[Row]:
        """
        Read rows by identifier.

        Args:
            identifiers: One identifier or a list of identifiers
            options: Routing options selecting the target table
            connection: Read through this connection

        Returns:
            Current rows, in the order requested

        Raises:
            RowNotFound: An identifier does not match any row
        """
        config = self.registry.resolve(options)
        if not isinstance(identifiers, (list, tuple)):
            identifiers = [identifiers]

        entries = parse_entries(
            [{config.id_column: identifier} for identifier in identifiers],
            config,
            self.max_batch_size,
        )
        for entry in entries:
            if entry.is_new:
                raise ValidationError(f"entry {entry.index}: identifier cannot be null", index=entry.index)

        if not entries:
            return []

        start_time = time.perf_counter()
        wanted = [entry.identifier for entry in entries]
        stmt = select(config.table).where(config.id.in_(list(dict.fromkeys(wanted))))

        with self._atomic(connection) as conn:
            found = {row[config.id_column]: dict(row) for row in conn.execute(stmt).mappings()}

        rows = []
        for entry in entries:
            if entry.identifier not in found:
                raise RowNotFound(config.name, entry.identifier, entry.index)
            rows.append(dict(found[entry.identifier]))

        log_database_operation(
            logger,
            "SELECT",
            table=config.name,
            duration_ms=(time.perf_counter() - start_time) * 1000,
            rows_affected=len(rows),
        )
        return rows

    @contextmanager
    def _atomic(self, connection: Optional[Connection]) -> Iterator[Connection]:
        """Scope one call: own transaction, or a savepoint inside the caller's."""
        if connection is None:
            with self.engine.begin() as conn:
                yield conn
        elif connection.in_transaction():
            with connection.begin_nested():
                yield connection
        else:
            with connection.begin():
                yield connection

    def _run(
        self,
        operation: str,
        config: TableConfig,
        entries: Sequence[Entry],
        connection: Optional[Connection],
        write: Callable[[Connection, TableConfig, Entry], Row],
    ) -> List[Row]:
        if not entries:
            logger.debug("Empty payload, nothing to write", operation=operation, table=config.name)
            return []

        start_time = time.perf_counter()
        created = sum(1 for entry in entries if entry.is_new)

        try:
            with self._atomic(connection) as conn:
                set_lock_timeout(conn, self.lock_timeout_ms)
                rows = [write(conn, config, entry) for entry in entries]
        except DBAPIError as e:
            error = translate_db_error(e)
            log_operation_failure(
                logger,
                operation,
                error or e,
                table=config.name,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                entries=len(entries),
            )
            if error is None:
                raise
            raise error from e
        except BatchUpsertError as e:
            log_operation_failure(
                logger,
                operation,
                e,
                table=config.name,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                entries=len(entries),
            )
            raise

        log_database_operation(
            logger,
            operation,
            table=config.name,
            duration_ms=(time.perf_counter() - start_time) * 1000,
            rows_affected=len(rows),
            created=created if operation == "UPSERT" else 0,
        )
        return rows

    def _write_entry(self, conn: Connection, config: TableConfig, entry: Entry) -> Row:
        table = config.table

        if entry.is_new:
            values = apply_defaults(entry.values, config.defaults)
            if not values:
                # Nothing to write but the store's own defaults
                stmt = insert(table)
            else:
                stmt = upsert(table, config.id_column, values, dialect=conn.dialect.name)
            return dict(conn.execute(stmt.returning(*table.c)).mappings().one())

        current = conn.execute(
            select(table).where(config.id == entry.identifier).with_for_update()
        ).mappings().first()

        if current is None:
            raise RowNotFound(config.name, entry.identifier, entry.index)

        merged = dict(current)
        merged.update(entry.values)

        stmt = upsert(table, config.id_column, merged, dialect=conn.dialect.name)
        written = conn.execute(stmt.returning(*table.c)).mappings().first()

        # Identifier-only tables resolve to DO NOTHING, which returns no row
        return dict(written) if written is not None else merged

    def _delete_entry(self, conn: Connection, config: TableConfig, entry: Entry) -> Row:
        table = config.table
        stmt = delete(table).where(config.id == entry.identifier).returning(*table.c)
        removed = conn.execute(stmt).mappings().first()

        if removed is None:
            raise RowNotFound(config.name, entry.identifier, entry.index)

        return dict(removed)
