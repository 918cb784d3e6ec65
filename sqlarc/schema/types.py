"""
Core type definitions for the sqlarc schema model.

This module defines the foundational types shared by both pipelines:
- ValueKind: Dynamic per-value type tag of a relational value
- Affinity: Declared preferred type of a relational column
- PhysicalType: Fixed, statically-typed representation in the archive
- ColumnDef / IndexDef / TableSchema: Tabular schema of one table

Relational values are the plain Python values produced by sqlite3:
None, int, float, str and bytes.

Invariants:
    - Column names are unique within a table
    - Column order is stable and defines the order of chunks in a row group
    - Enum values are persisted in archive metadata and must never change

How to change safely:
    - Add new physical types or encodings at the end and bump FORMAT_VERSION
    - Never rename enum values; archives written earlier depend on them
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ValueKind(Enum):
    """Dynamic type tag of a single relational value."""

    NULL = "null"
    INTEGER = "integer"
    REAL = "real"
    TEXT = "text"
    BLOB = "blob"


class Affinity(Enum):
    """SQLite column affinity derived from the declared type."""

    INTEGER = "INTEGER"
    REAL = "REAL"
    TEXT = "TEXT"
    BLOB = "BLOB"
    NUMERIC = "NUMERIC"

    @classmethod
    def from_str(cls, value: str) -> Affinity:
        """Convert a persisted affinity label back to Affinity.

        Raises:
            ValueError: If value is not a valid affinity
        """
        for affinity in cls:
            if affinity.value == value:
                return affinity
        valid = [a.value for a in cls]
        raise ValueError(f"Invalid affinity '{value}'. Valid affinities: {valid}")


class PhysicalType(Enum):
    """Physical column types of the archive.

    Every physical type is nullable; nulls live in the Parquet definition
    levels.
    """

    INT64 = "int64"
    DOUBLE = "double"
    UTF8 = "utf8"
    BYTES = "bytes"
    BOOLEAN = "bool"

    @classmethod
    def from_str(cls, value: str) -> PhysicalType:
        """Convert a persisted type tag back to PhysicalType.

        Raises:
            ValueError: If value is not a known physical type
        """
        for physical_type in cls:
            if physical_type.value == value:
                return physical_type
        valid = [t.value for t in cls]
        raise ValueError(f"Unknown physical type '{value}'. Valid types: {valid}")

    @property
    def is_numeric(self) -> bool:
        return self in (PhysicalType.INT64, PhysicalType.DOUBLE)


class Encoding(Enum):
    """Value encodings for column chunks."""

    PLAIN = "plain"
    DICTIONARY = "dictionary"
    DELTA = "delta"

    @classmethod
    def from_str(cls, value: str) -> Encoding:
        for encoding in cls:
            if encoding.value == value:
                return encoding
        valid = [e.value for e in cls]
        raise ValueError(f"Unknown encoding '{value}'. Valid encodings: {valid}")


# Declared type names that mark a boolean column (SQLite gives them NUMERIC affinity)
BOOLEAN_TYPE_NAMES = frozenset({"BOOL", "BOOLEAN"})


def affinity_of(declared_type: str | None) -> Affinity:
    """Derive a column's affinity from its declared type.

    Follows the SQLite rules in order: INT -> INTEGER; CHAR, CLOB or TEXT
    -> TEXT; BLOB or no type -> BLOB; REAL, FLOA or DOUB -> REAL; anything
    else -> NUMERIC.

    Example:
        >>> affinity_of("VARCHAR(255)")
        <Affinity.TEXT: 'TEXT'>
    """
    decl = (declared_type or "").upper()
    if "INT" in decl:
        return Affinity.INTEGER
    if "CHAR" in decl or "CLOB" in decl or "TEXT" in decl:
        return Affinity.TEXT
    if "BLOB" in decl or not decl.strip():
        return Affinity.BLOB
    if "REAL" in decl or "FLOA" in decl or "DOUB" in decl:
        return Affinity.REAL
    return Affinity.NUMERIC


def is_boolean_declared(declared_type: str | None) -> bool:
    """Whether the declared type names a boolean (e.g. BOOL, BOOLEAN)."""
    decl = (declared_type or "").strip().upper()
    return decl in BOOLEAN_TYPE_NAMES


def value_kind(value: Any) -> ValueKind:
    """Classify a relational value.

    Raises:
        TypeError: If value is not one of None, int, float, str, bytes
    """
    if value is None:
        return ValueKind.NULL
    if isinstance(value, bool):
        return ValueKind.INTEGER
    if isinstance(value, int):
        return ValueKind.INTEGER
    if isinstance(value, float):
        return ValueKind.REAL
    if isinstance(value, str):
        return ValueKind.TEXT
    if isinstance(value, (bytes, bytearray, memoryview)):
        return ValueKind.BLOB
    raise TypeError(f"Unsupported relational value of type {type(value).__name__}")


def quote_identifier(name: str) -> str:
    """Quote an SQL identifier for SQLite."""
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class ColumnDef:
    """Definition of a relational column.

    Attributes:
        name: Column name
        declared_type: Declared type text as written in the DDL (may be empty)
        affinity: Affinity derived from declared_type
        notnull: Whether the column is declared NOT NULL
        default: Default expression text, or None
        pk: 1-based position in the primary key, 0 if not a member
    """

    name: str
    declared_type: str = ""
    affinity: Affinity = Affinity.BLOB
    notnull: bool = False
    default: str | None = None
    pk: int = 0

    @classmethod
    def declare(
        cls,
        name: str,
        declared_type: str = "",
        notnull: bool = False,
        default: str | None = None,
        pk: int = 0,
    ) -> ColumnDef:
        """Create a column deriving the affinity from the declared type."""
        return cls(
            name=name,
            declared_type=declared_type,
            affinity=affinity_of(declared_type),
            notnull=notnull,
            default=default,
            pk=pk,
        )

    @property
    def is_primary_key(self) -> bool:
        return self.pk > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "declared_type": self.declared_type,
            "affinity": self.affinity.value,
            "notnull": self.notnull,
            "default": self.default,
            "pk": self.pk,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ColumnDef:
        return cls(
            name=data["name"],
            declared_type=data.get("declared_type", ""),
            affinity=Affinity.from_str(data["affinity"]),
            notnull=bool(data.get("notnull", False)),
            default=data.get("default"),
            pk=int(data.get("pk", 0)),
        )


@dataclass(frozen=True)
class IndexDef:
    """Definition of a secondary index, rebuilt after restoration.

    Attributes:
        name: Index name
        columns: Indexed column names, in index order
        unique: Whether the index enforces uniqueness
    """

    name: str
    columns: tuple[str, ...]
    unique: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "columns": list(self.columns), "unique": self.unique}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexDef:
        return cls(
            name=data["name"],
            columns=tuple(data["columns"]),
            unique=bool(data.get("unique", False)),
        )


@dataclass(frozen=True)
class TableSchema:
    """Tabular schema of one table.

    Attributes:
        name: Table name
        columns: Ordered column definitions
        indexes: Secondary indexes (including UNIQUE constraints)
        without_rowid: Whether the table was declared WITHOUT ROWID

    Raises:
        ValueError: On construction if column names are not unique
    """

    name: str
    columns: tuple[ColumnDef, ...]
    indexes: tuple[IndexDef, ...] = field(default_factory=tuple)
    without_rowid: bool = False

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for column in self.columns:
            if column.name in seen:
                raise ValueError(f"Duplicate column name '{column.name}' in table '{self.name}'")
            seen.add(column.name)

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def primary_key(self) -> list[str]:
        """Primary key column names in key order."""
        members = sorted((c for c in self.columns if c.pk > 0), key=lambda c: c.pk)
        return [c.name for c in members]

    def column(self, name: str) -> ColumnDef:
        for column in self.columns:
            if column.name == name:
                return column
        raise KeyError(f"No column '{name}' in table '{self.name}'")

    def is_indexed(self, name: str) -> bool:
        """Whether the column is a member of the primary key or any index."""
        if name in self.primary_key:
            return True
        return any(name in index.columns for index in self.indexes)

    def project(self, column_names: list[str] | None) -> TableSchema:
        """Restrict the schema to a subset of columns.

        Column order of the table is kept. The primary key survives only if
        all of its columns are kept; indexes likewise.

        Raises:
            KeyError: If a requested column does not exist
        """
        if column_names is None:
            return self
        wanted = set(column_names)
        for name in wanted:
            self.column(name)

        pk_kept = all(name in wanted for name in self.primary_key)
        columns = []
        for column in self.columns:
            if column.name not in wanted:
                continue
            if column.pk and not pk_kept:
                column = ColumnDef(
                    name=column.name,
                    declared_type=column.declared_type,
                    affinity=column.affinity,
                    notnull=column.notnull,
                    default=column.default,
                    pk=0,
                )
            columns.append(column)

        indexes = tuple(i for i in self.indexes if all(c in wanted for c in i.columns))
        return TableSchema(
            name=self.name,
            columns=tuple(columns),
            indexes=indexes,
            without_rowid=self.without_rowid and pk_kept,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "columns": [c.to_dict() for c in self.columns],
            "indexes": [i.to_dict() for i in self.indexes],
            "without_rowid": self.without_rowid,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TableSchema:
        return cls(
            name=data["name"],
            columns=tuple(ColumnDef.from_dict(c) for c in data["columns"]),
            indexes=tuple(IndexDef.from_dict(i) for i in data.get("indexes", [])),
            without_rowid=bool(data.get("without_rowid", False)),
        )
