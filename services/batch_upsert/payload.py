"""
Payload normalization and validation.

Turns the semi-structured input of a call (one JSON object, an array of
objects, or JSON text) into an ordered tuple of immutable entries whose
values have been converted to the target table's column types.
"""

import json
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Annotated, Any, Dict, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, create_model
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import Column, Table
from sqlalchemy.types import JSON

from .errors import ValidationError
from .routing import TableConfig


@dataclass(frozen=True)
class Entry:
    """One validated payload object."""

    index: int
    identifier: Any
    values: Mapping[str, Any]

    @property
    def is_new(self) -> bool:
        return self.identifier is None

    def provided(self) -> Dict[str, Any]:
        """Fields present in the source object, identifier excluded."""
        return dict(self.values)


def normalize_payload(payload: Any) -> List[Dict[str, Any]]:
    """
    Normalize a payload to a list of objects.

    Args:
        payload: A mapping, a list/tuple of mappings, or JSON text (str or
            bytes) decoding to either

    Returns:
        List of plain dicts, in input order

    Raises:
        ValidationError: If the payload is not an object or a sequence of objects
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError(f"payload is not UTF-8 text: {e}") from e

    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationError(f"payload is not valid JSON: {e.msg} (line {e.lineno}, column {e.colno})") from e

    if isinstance(payload, Mapping):
        return [dict(payload)]

    if isinstance(payload, (list, tuple)):
        objects = []
        for index, item in enumerate(payload):
            if not isinstance(item, Mapping):
                raise ValidationError(
                    f"entry {index} must be an object, got {type(item).__name__}",
                    index=index,
                )
            objects.append(dict(item))
        return objects

    raise ValidationError(
        f"payload must be an object or an array of objects, got {type(payload).__name__}"
    )


def _python_type(column: Column) -> Any:
    # JSON columns hold arbitrary documents (objects, arrays, scalars)
    if isinstance(column.type, JSON):
        return Any
    try:
        return column.type.python_type
    except NotImplementedError:
        return Any


def _reject_bool(value: Any) -> Any:
    # Lax int mode would read true/false as the identifiers 1/0
    if isinstance(value, bool):
        raise ValueError("identifier cannot be a boolean")
    return value


@lru_cache(maxsize=None)
def build_entry_model(table: Table, id_column: str) -> Type[BaseModel]:
    """
    Build the pydantic model that validates payload objects for a table.

    Fields are declared under positional names with the column name as
    alias, so columns such as "schema" or "_rev" cannot clash with model
    attributes. Every field defaults to None; presence is read back from
    model_fields_set.
    """
    fields = {}
    for position, column in enumerate(table.columns):
        python_type = _python_type(column)
        annotation = python_type
        if column.nullable or column.name == id_column:
            annotation = Optional[annotation]
        if column.name == id_column and python_type is not bool:
            annotation = Annotated[annotation, BeforeValidator(_reject_bool)]
        fields[f"field_{position}"] = (annotation, Field(default=None, alias=column.name))

    return create_model(
        f"{table.name.title().replace('_', '')}Entry",
        __config__=ConfigDict(extra="ignore", frozen=True),
        **fields,
    )


def parse_entries(
    payload: Any,
    config: TableConfig,
    max_batch_size: Optional[int] = None,
) -> Tuple[Entry, ...]:
    """
    Validate a payload against a table's columns.

    Args:
        payload: Raw call payload (see normalize_payload)
        config: Target table configuration
        max_batch_size: Reject payloads with more entries than this

    Returns:
        Tuple of entries in input order

    Raises:
        ValidationError: If the payload is malformed, too large, or any value
            cannot be converted to its column type; no entry is returned when
            any entry fails
    """
    objects = normalize_payload(payload)

    if max_batch_size is not None and len(objects) > max_batch_size:
        raise ValidationError(
            f"payload has {len(objects)} entries, more than the limit of {max_batch_size}"
        )

    model = build_entry_model(config.table, config.id_column)
    aliases = {name: info.alias for name, info in model.model_fields.items()}
    column_names = config.column_names

    entries = []
    for index, obj in enumerate(objects):
        try:
            parsed = model.model_validate(obj)
        except PydanticValidationError as e:
            fields = sorted({str(error["loc"][0]) for error in e.errors() if error["loc"]})
            raise ValidationError(
                f"entry {index}: invalid value for {', '.join(fields) or 'entry'}",
                index=index,
                fields=fields,
            ) from e

        present = {aliases[name]: getattr(parsed, name) for name in parsed.model_fields_set}
        identifier = present.pop(config.id_column, None)
        values = {name: present[name] for name in column_names if name in present}
        entries.append(Entry(index=index, identifier=identifier, values=MappingProxyType(values)))

    return tuple(entries)


def apply_defaults(values: Mapping[str, Any], defaults: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Fill absent fields from the insert-time default policy.

    Provided values always win, including an explicit None.
    """
    merged = dict(defaults)
    merged.update(values)
    return merged
