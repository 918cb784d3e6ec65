"""
Type mapping between relational columns and archive physical types.

Pure functions with no I/O. The forward direction observes the dynamic
value kinds of a column and unifies them into one physical type; the
reverse direction turns decoded values and column definitions back into
relational values and DDL.

Widening order:
    INTEGER + REAL -> double (integers are promoted)
    INTEGER of 0/1 in a BOOLEAN-declared column -> bool, only when the
    observation covers the whole column; int64 otherwise
    Any other mix of non-null kinds has no valid widening.

Invariants:
    - Mapping is deterministic: same column + same observation -> same type
    - A value that cannot be coerced into the chosen type is an error,
      never a silent re-widening
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from ..errors import SchemaIncompatibleError
from .types import (
    Affinity,
    ColumnDef,
    PhysicalType,
    ValueKind,
    is_boolean_declared,
    quote_identifier,
    value_kind,
)

# Default physical type of a column with no non-null value to observe
_AFFINITY_DEFAULTS = {
    Affinity.INTEGER: PhysicalType.INT64,
    Affinity.REAL: PhysicalType.DOUBLE,
    Affinity.TEXT: PhysicalType.UTF8,
    Affinity.BLOB: PhysicalType.BYTES,
    Affinity.NUMERIC: PhysicalType.DOUBLE,
}

# Kinds each physical type accepts
_ACCEPTED_KINDS = {
    PhysicalType.INT64: {ValueKind.INTEGER},
    PhysicalType.DOUBLE: {ValueKind.INTEGER, ValueKind.REAL},
    PhysicalType.BOOLEAN: {ValueKind.INTEGER},
    PhysicalType.UTF8: {ValueKind.TEXT},
    PhysicalType.BYTES: {ValueKind.BLOB},
}

# Declared type used when the source column had none
_DECLARED_FOR_PHYSICAL = {
    PhysicalType.INT64: "INTEGER",
    PhysicalType.DOUBLE: "REAL",
    PhysicalType.UTF8: "TEXT",
    PhysicalType.BYTES: "",
    PhysicalType.BOOLEAN: "BOOLEAN",
}

_KEYWORD_DEFAULTS = frozenset({"CURRENT_TIME", "CURRENT_DATE", "CURRENT_TIMESTAMP"})


@dataclass(frozen=True)
class TypeObservation:
    """Summary of the value kinds seen in a column.

    Attributes:
        kinds: Kinds of all observed values, NULL included
        integers_are_boolean: True if every INTEGER value seen was 0 or 1
        complete: True if every value of the column was observed, not a sample
    """

    kinds: frozenset[ValueKind] = frozenset()
    integers_are_boolean: bool = True
    complete: bool = False

    @property
    def non_null_kinds(self) -> frozenset[ValueKind]:
        return self.kinds - {ValueKind.NULL}


def _kind_names(kinds: Iterable[ValueKind]) -> list[str]:
    return sorted(k.value for k in kinds)


class TypeMapper:
    """Bidirectional mapping between relational and physical column types.

    Example:
        >>> mapper = TypeMapper()
        >>> column = ColumnDef.declare("score", "REAL")
        >>> mapper.choose(column, mapper.observe([1, 2.5, None]))
        <PhysicalType.DOUBLE: 'double'>
    """

    def __init__(self, table: str | None = None) -> None:
        self.table = table

    def observe(self, values: Iterable[Any], complete: bool = False) -> TypeObservation:
        """Summarize the kinds of a sequence of relational values.

        Args:
            values: Values of the column
            complete: Whether values holds the whole column
        """
        kinds: set[ValueKind] = set()
        integers_are_boolean = True
        for value in values:
            kind = value_kind(value)
            kinds.add(kind)
            if kind is ValueKind.INTEGER and value not in (0, 1):
                integers_are_boolean = False
        return TypeObservation(frozenset(kinds), integers_are_boolean, complete)

    def choose(
        self,
        column: ColumnDef,
        observation: TypeObservation,
        override: PhysicalType | None = None,
    ) -> PhysicalType:
        """Select the physical type for a column.

        Args:
            column: Column definition (declared type and affinity)
            observation: Kinds observed in the column
            override: Explicitly configured physical type, if any

        Returns:
            The chosen physical type

        Raises:
            SchemaIncompatibleError: If the observed kinds cannot be unified,
                or the override cannot hold them
        """
        kinds = observation.non_null_kinds

        if override is not None:
            rejected = {k for k in kinds if k not in _ACCEPTED_KINDS[override]}
            if override is PhysicalType.BOOLEAN and not observation.integers_are_boolean:
                rejected.add(ValueKind.INTEGER)
            if rejected:
                raise SchemaIncompatibleError(
                    f"Configured type {override.value} cannot hold "
                    f"{', '.join(_kind_names(rejected))} values",
                    table=self.table,
                    column=column.name,
                    conflicting_types=[override.value, *_kind_names(rejected)],
                )
            return override

        boolean_declared = observation.complete and is_boolean_declared(column.declared_type)

        if not kinds:
            if boolean_declared:
                return PhysicalType.BOOLEAN
            return _AFFINITY_DEFAULTS[column.affinity]

        if kinds == {ValueKind.INTEGER}:
            if column.affinity is Affinity.REAL:
                return PhysicalType.DOUBLE
            if boolean_declared and observation.integers_are_boolean:
                return PhysicalType.BOOLEAN
            return PhysicalType.INT64

        if kinds <= {ValueKind.INTEGER, ValueKind.REAL}:
            return PhysicalType.DOUBLE

        if kinds == {ValueKind.TEXT}:
            return PhysicalType.UTF8

        if kinds == {ValueKind.BLOB}:
            return PhysicalType.BYTES

        names = _kind_names(kinds)
        raise SchemaIncompatibleError(
            f"Column holds incompatible value types: {', '.join(names)}",
            table=self.table,
            column=column.name,
            conflicting_types=names,
        )

    def coerce(self, value: Any, physical_type: PhysicalType, column: str | None = None) -> Any:
        """Convert a relational value into the physical domain.

        None passes through unchanged.

        Raises:
            SchemaIncompatibleError: If the value cannot be represented
        """
        if value is None:
            return None

        kind = value_kind(value)
        if kind in _ACCEPTED_KINDS[physical_type]:
            if physical_type is PhysicalType.DOUBLE:
                return float(value)
            if physical_type is PhysicalType.BOOLEAN:
                if value in (0, 1):
                    return bool(value)
            elif physical_type is PhysicalType.BYTES:
                return bytes(value)
            else:
                return value

        raise SchemaIncompatibleError(
            f"Value of type {kind.value} does not fit column type {physical_type.value}",
            table=self.table,
            column=column,
            conflicting_types=[physical_type.value, kind.value],
        )

    def to_relational(self, value: Any, physical_type: PhysicalType) -> Any:
        """Convert a decoded physical value back to a relational value."""
        if value is None:
            return None
        if physical_type is PhysicalType.BOOLEAN:
            return int(value)
        if physical_type is PhysicalType.DOUBLE:
            return float(value)
        return value

    def declared_type_for(self, column: ColumnDef, physical_type: PhysicalType) -> str:
        """Declared type to use when rebuilding the column."""
        if column.declared_type:
            return column.declared_type
        return _DECLARED_FOR_PHYSICAL[physical_type]

    def column_declaration(self, column: ColumnDef, physical_type: PhysicalType) -> str:
        """Render the column's DDL fragment for CREATE TABLE.

        Example:
            >>> TypeMapper().column_declaration(
            ...     ColumnDef.declare("name", "TEXT", notnull=True), PhysicalType.UTF8
            ... )
            '"name" TEXT NOT NULL'
        """
        parts = [quote_identifier(column.name)]
        declared = self.declared_type_for(column, physical_type)
        if declared:
            parts.append(declared)
        if column.notnull:
            parts.append("NOT NULL")
        if column.default is not None:
            if column.default.upper() in _KEYWORD_DEFAULTS:
                parts.append(f"DEFAULT {column.default}")
            else:
                parts.append(f"DEFAULT ({column.default})")
        return " ".join(parts)

