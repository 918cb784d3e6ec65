"""
Archive container model shared by the archival and restoration pipelines.

This module defines the interchange contract:
- ColumnStatistics: Per-chunk min/max/null/row/distinct summary
- ColumnChunk: One column of one row group, values in the physical domain
- RowGroupMeta: Row count and per-column statistics of one row group
- ArchiveMetadata: Table schema, physical types, encodings and row groups

ArchiveMetadata travels inside the Parquet file as JSON under the
METADATA_KEY key-value entry. Parquet's own footer carries the bytes,
page checksums and min/max statistics; the entry adds what Parquet
cannot express: the relational schema, the SQLite declared types and
the distinct-value estimates.

Invariants:
    - Statistics are computed once per chunk and never mutated
    - Every row group has exactly one statistics entry per archived
      column, in column order
    - Metadata accepts new row groups until sealed, then is immutable

How to change safely:
    - Add new metadata keys with defaults; never remove existing ones
    - Bump FORMAT_VERSION for any layout change
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from ..errors import CorruptArchiveError
from ..schema.types import Encoding, PhysicalType, TableSchema
from .codec import Compression

FORMAT_VERSION = 2

METADATA_KEY = "sqlarc.metadata"


def _value_to_json(value: Any, physical_type: PhysicalType) -> Any:
    if value is None:
        return None
    if physical_type is PhysicalType.BYTES:
        return value.hex()
    return value


def _value_from_json(value: Any, physical_type: PhysicalType) -> Any:
    if value is None:
        return None
    if physical_type is PhysicalType.BYTES:
        return bytes.fromhex(value)
    if physical_type is PhysicalType.DOUBLE:
        return float(value)
    if physical_type is PhysicalType.BOOLEAN:
        return bool(value)
    if physical_type is PhysicalType.INT64:
        if not isinstance(value, int):
            raise ValueError(f"Expected integer statistic, got {value!r}")
        return value
    if not isinstance(value, str):
        raise ValueError(f"Expected string statistic, got {value!r}")
    return value


@dataclass(frozen=True)
class ColumnStatistics:
    """Summary of one column chunk.

    Attributes:
        min_value: Smallest non-null value (physical domain), None if unknown
        max_value: Largest non-null value (physical domain), None if unknown
        null_count: Number of null values
        row_count: Number of values, nulls included
        distinct_count: Approximate number of distinct non-null values
    """

    min_value: Any = None
    max_value: Any = None
    null_count: int = 0
    row_count: int = 0
    distinct_count: int | None = None

    @property
    def all_null(self) -> bool:
        return self.null_count == self.row_count

    @property
    def has_bounds(self) -> bool:
        return self.min_value is not None and self.max_value is not None

    def to_dict(self, physical_type: PhysicalType) -> dict[str, Any]:
        return {
            "min": _value_to_json(self.min_value, physical_type),
            "max": _value_to_json(self.max_value, physical_type),
            "null_count": self.null_count,
            "row_count": self.row_count,
            "distinct_count": self.distinct_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], physical_type: PhysicalType) -> ColumnStatistics:
        stats = cls(
            min_value=_value_from_json(data.get("min"), physical_type),
            max_value=_value_from_json(data.get("max"), physical_type),
            null_count=int(data["null_count"]),
            row_count=int(data["row_count"]),
            distinct_count=data.get("distinct_count"),
        )
        if stats.null_count < 0 or stats.null_count > stats.row_count:
            raise ValueError(
                f"Null count {stats.null_count} outside [0, {stats.row_count}]"
            )
        return stats


@dataclass(frozen=True)
class ColumnChunk:
    """One column of a row group, coerced and summarized.

    Attributes:
        column: Column name
        physical_type: Physical type of the values
        values: Values in the physical domain, None for null
        statistics: Statistics of the chunk
    """

    column: str
    physical_type: PhysicalType
    values: list[Any]
    statistics: ColumnStatistics


@dataclass
class RowGroupMeta:
    """Metadata of one row group.

    Attributes:
        row_count: Rows in the group
        statistics: One ColumnStatistics per archived column, in column order
    """

    row_count: int
    statistics: list[ColumnStatistics] = field(default_factory=list)


@dataclass
class ArchiveMetadata:
    """Schema, physical types and row groups of one archived table.

    Attributes:
        table: Archived table schema (after projection)
        physical_types: Physical type per column, aligned with table.columns
        encodings: Parquet encoding per column, aligned with table.columns
        compression: Parquet codec of every column chunk
        compression_level: Codec level, None for the codec default
        row_groups: Row groups in archive order
        created_at: Creation timestamp (Unix ms)
        format_version: Archive format version
    """

    table: TableSchema
    physical_types: tuple[PhysicalType, ...]
    encodings: tuple[Encoding, ...] = ()
    compression: Compression = Compression.ZSTD
    compression_level: int | None = None
    row_groups: list[RowGroupMeta] = field(default_factory=list)
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))
    format_version: int = FORMAT_VERSION
    _sealed: bool = field(default=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        columns = len(self.table.columns)
        if len(self.physical_types) != columns:
            raise ValueError(
                f"{len(self.physical_types)} physical types for {columns} columns"
            )
        if not self.encodings:
            self.encodings = (Encoding.PLAIN,) * columns
        if len(self.encodings) != columns:
            raise ValueError(f"{len(self.encodings)} encodings for {columns} columns")

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def row_count(self) -> int:
        return sum(rg.row_count for rg in self.row_groups)

    def physical_type_of(self, column: str) -> PhysicalType:
        return self.physical_types[self.table.column_names.index(column)]

    def encoding_of(self, column: str) -> Encoding:
        return self.encodings[self.table.column_names.index(column)]

    def column_statistics(self, column: str) -> list[ColumnStatistics]:
        """Per-row-group statistics of one column, in archive order."""
        index = self.table.column_names.index(column)
        return [rg.statistics[index] for rg in self.row_groups]

    def add_row_group(self, row_group: RowGroupMeta) -> None:
        """Append a completed row group.

        Raises:
            RuntimeError: If the metadata has been sealed
            ValueError: If the statistics do not cover every archived column
        """
        if self._sealed:
            raise RuntimeError(f"Archive metadata for '{self.table.name}' is sealed")
        if len(row_group.statistics) != len(self.table.columns):
            raise ValueError(
                f"Row group has statistics for {len(row_group.statistics)} of "
                f"{len(self.table.columns)} columns"
            )
        self.row_groups.append(row_group)

    def seal(self) -> None:
        self._sealed = True

    def to_dict(self) -> dict[str, Any]:
        columns = []
        for column, physical_type, encoding in zip(
            self.table.columns, self.physical_types, self.encodings
        ):
            entry = column.to_dict()
            entry["physical_type"] = physical_type.value
            entry["encoding"] = encoding.value
            columns.append(entry)
        return {
            "format_version": self.format_version,
            "created_at": self.created_at,
            "compression": self.compression.value,
            "compression_level": self.compression_level,
            "table": {
                "name": self.table.name,
                "columns": columns,
                "indexes": [i.to_dict() for i in self.table.indexes],
                "without_rowid": self.table.without_rowid,
            },
            "row_groups": [
                {
                    "row_count": rg.row_count,
                    "statistics": [
                        stats.to_dict(physical_type)
                        for stats, physical_type in zip(rg.statistics, self.physical_types)
                    ],
                }
                for rg in self.row_groups
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveMetadata:
        """Rebuild sealed metadata from its JSON form.

        Raises:
            CorruptArchiveError: If the structure is invalid
        """
        table_name = None
        try:
            version = int(data["format_version"])
            if version != FORMAT_VERSION:
                raise ValueError(f"Unsupported archive format version {version}")

            table_data = data["table"]
            table_name = table_data["name"]
            table = TableSchema.from_dict(table_data)
            physical_types = tuple(
                PhysicalType.from_str(c["physical_type"]) for c in table_data["columns"]
            )
            encodings = tuple(
                Encoding.from_str(c.get("encoding", "plain")) for c in table_data["columns"]
            )

            row_groups = []
            for index, rg in enumerate(data["row_groups"]):
                if len(rg["statistics"]) != len(physical_types):
                    raise ValueError(
                        f"Row group {index} has {len(rg['statistics'])} statistics "
                        f"for {len(physical_types)} columns"
                    )
                row_count = int(rg["row_count"])
                if row_count < 0:
                    raise ValueError(f"Row group {index} has negative row count")
                statistics = [
                    ColumnStatistics.from_dict(stats, physical_type)
                    for stats, physical_type in zip(rg["statistics"], physical_types)
                ]
                row_groups.append(RowGroupMeta(row_count=row_count, statistics=statistics))

            metadata = cls(
                table=table,
                physical_types=physical_types,
                encodings=encodings,
                compression=Compression.from_str(data.get("compression", "none")),
                compression_level=data.get("compression_level"),
                row_groups=row_groups,
                created_at=int(data.get("created_at", 0)),
                format_version=version,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptArchiveError(f"Invalid archive metadata: {e}", table=table_name) from e

        metadata.seal()
        return metadata
