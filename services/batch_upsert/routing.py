"""
Dynamic table routing.

Callers choose a target table by name. Names are checked against a strict
identifier syntax and then against an allow-list of registered tables;
only the registered SQLAlchemy Table objects ever reach statement
construction, so table names are quoted by the compiler and values are
always bound parameters.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import Connection, Engine, MetaData, Table, inspect
from sqlalchemy.exc import InvalidRequestError

from .errors import RoutingError

logger = structlog.get_logger(__name__)

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# PostgreSQL truncates identifiers beyond NAMEDATALEN - 1 bytes
MAX_IDENTIFIER_LENGTH = 63


def validate_identifier(name: Any) -> str:
    """
    Check that a table name is a plain SQL identifier.

    Args:
        name: Candidate table name

    Returns:
        The name, unchanged

    Raises:
        RoutingError: If the name is not a string, too long, or contains
            anything besides letters, digits and underscores
    """
    if not isinstance(name, str) or not name:
        raise RoutingError(f"table name must be a non-empty string, got {name!r}")

    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise RoutingError(f"table name {name[:20]!r}... exceeds {MAX_IDENTIFIER_LENGTH} characters")

    if not IDENTIFIER_RE.match(name):
        raise RoutingError(f"table name {name!r} is not a valid identifier")

    return name


class RoutingOptions(BaseModel):
    """Per-call routing: which physical table the call targets."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    table_name: Optional[str] = None

    @classmethod
    def coerce(cls, options: Union["RoutingOptions", Mapping[str, Any], None]) -> "RoutingOptions":
        """Accept None, a plain mapping (e.g. decoded JSON) or an instance."""
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        if not isinstance(options, Mapping):
            raise RoutingError(f"routing options must be an object, got {type(options).__name__}")
        try:
            return cls.model_validate(dict(options))
        except PydanticValidationError as e:
            raise RoutingError(f"invalid routing options: {e.errors()[0]['msg']}") from e


@dataclass(frozen=True)
class TableConfig:
    """Logical schema of one routable table and its insert-time default policy."""

    table: Table
    id_column: str = "id"
    defaults: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.table.name

    @property
    def id(self):
        """Identifier column object."""
        return self.table.c[self.id_column]

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.table.columns]


def _convert_defaults(table: Table, id_column: str, defaults: Dict[str, Any]) -> Dict[str, Any]:
    """Convert default values to their column types, as payload values are."""
    if not defaults:
        return defaults

    # payload.py imports TableConfig from this module
    from .payload import build_entry_model

    model = build_entry_model(table, id_column)
    aliases = {name: info.alias for name, info in model.model_fields.items()}

    try:
        parsed = model.model_validate(defaults)
    except PydanticValidationError as e:
        fields = sorted({str(error["loc"][0]) for error in e.errors() if error["loc"]})
        raise RoutingError(
            f"defaults for {table.name!r} have invalid values for: {', '.join(fields)}"
        ) from e

    return {
        aliases[name]: getattr(parsed, name)
        for name in parsed.model_fields_set
        if aliases[name] in defaults
    }


class TableRegistry:
    """
    Allow-list of tables the engine may write to.

    Example:
        >>> registry = TableRegistry()
        >>> registry.register(users_table, defaults={"is_admin": False})
        >>> registry.register_partition("users_2025", base="users")
        >>> registry.resolve({"table_name": "users_2025"}).name
        'users_2025'
    """

    def __init__(self, default_table: Optional[str] = None):
        self._tables: Dict[str, TableConfig] = {}
        self._metadata = MetaData()
        self.default_table = default_table

    def __contains__(self, name: str) -> bool:
        return name in self._tables

    def __len__(self) -> int:
        return len(self._tables)

    @property
    def names(self) -> List[str]:
        return sorted(self._tables)

    def register(
        self,
        table: Table,
        id_column: str = "id",
        defaults: Optional[Dict[str, Any]] = None,
    ) -> TableConfig:
        """
        Add a table to the allow-list.

        Args:
            table: SQLAlchemy Table describing the logical schema
            id_column: Name of the identifier column
            defaults: Insert-time default values, keyed by column name

        Returns:
            The registered TableConfig

        Raises:
            RoutingError: If the table name is unsafe, or the identifier or
                a default refers to a column the table does not have
        """
        validate_identifier(table.name)
        defaults = dict(defaults or {})

        if id_column not in table.c:
            raise RoutingError(f"table {table.name!r} has no identifier column {id_column!r}")

        unknown = sorted(set(defaults) - set(table.c.keys()))
        if unknown:
            raise RoutingError(f"defaults for {table.name!r} name unknown columns: {', '.join(unknown)}")

        if id_column in defaults:
            raise RoutingError(f"identifier column {id_column!r} cannot have a default")

        defaults = _convert_defaults(table, id_column, defaults)
        config = TableConfig(table=table, id_column=id_column, defaults=defaults)
        self._tables[table.name] = config

        logger.debug("Registered table", table=table.name, id_column=id_column, defaults=sorted(defaults))
        return config

    def register_partition(self, name: str, base: str) -> TableConfig:
        """
        Add a hand-partitioned table sharing the schema of a registered one.

        Args:
            name: Physical table name of the partition
            base: Name of an already registered table

        Returns:
            The registered TableConfig for the partition
        """
        validate_identifier(name)
        try:
            base_config = self._tables[base]
        except KeyError:
            raise RoutingError(f"base table {base!r} is not registered") from None

        partition = base_config.table.to_metadata(self._metadata, name=name)
        return self.register(partition, id_column=base_config.id_column, defaults=base_config.defaults)

    def reflect(
        self,
        engine: Union[Engine, Connection],
        names: Iterable[str],
        id_column: str = "id",
        defaults: Optional[Mapping[str, Dict[str, Any]]] = None,
    ) -> List[TableConfig]:
        """
        Register tables by reading their schema from the database.

        Args:
            engine: Engine or connection to reflect from
            names: Table names to load
            id_column: Identifier column shared by the tables
            defaults: Insert-time defaults per table name

        Returns:
            The registered TableConfigs, in the order requested
        """
        names = [validate_identifier(name) for name in names]
        defaults = defaults or {}

        try:
            self._metadata.reflect(bind=engine, only=names, extend_existing=True)
        except InvalidRequestError as e:
            raise RoutingError(f"cannot reflect tables: {e}") from e

        return [
            self.register(self._metadata.tables[name], id_column=id_column, defaults=defaults.get(name))
            for name in names
        ]

    def resolve(self, options: Union[RoutingOptions, Mapping[str, Any], None] = None) -> TableConfig:
        """
        Select the table a call targets.

        Args:
            options: Routing options; when no table name is given the
                registry's default table is used

        Returns:
            TableConfig of the target table

        Raises:
            RoutingError: If no table is selected, the name is unsafe, or the
                table is not in the allow-list
        """
        options = RoutingOptions.coerce(options)
        name = options.table_name if options.table_name is not None else self.default_table

        if name is None:
            raise RoutingError("no table_name given and no default table configured")

        validate_identifier(name)

        try:
            return self._tables[name]
        except KeyError:
            raise RoutingError(f"table {name!r} is not in the allow-list") from None

    def verify(self, connection: Union[Engine, Connection]) -> None:
        """
        Check that every registered table exists with the expected columns.

        Raises:
            RoutingError: On the first missing table or column
        """
        inspector = inspect(connection)

        for name, config in sorted(self._tables.items()):
            if not inspector.has_table(name, schema=config.table.schema):
                raise RoutingError(f"table {name!r} does not exist")

            actual = {column["name"] for column in inspector.get_columns(name, schema=config.table.schema)}
            missing = sorted(set(config.column_names) - actual)
            if missing:
                raise RoutingError(f"table {name!r} is missing columns: {', '.join(missing)}")

        logger.debug("Verified table schemas", tables=self.names)
