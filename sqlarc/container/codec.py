"""
Compression codecs, column encodings and the Arrow type mapping.

Archives are Parquet files. This module decides how the columns of one
archive are laid out in Parquet:

    PhysicalType    Arrow type      Parquet physical type
    int64           int64           INT64
    double          float64         DOUBLE
    utf8            string          BYTE_ARRAY (String)
    bytes           binary          BYTE_ARRAY
    bool            bool            BOOLEAN

Every column is nullable (OPTIONAL in Parquet); nulls live in the
definition levels, never in the values.

Encodings are chosen once per column and apply to every row group of
the archive:
    PLAIN       Parquet PLAIN
    DICTIONARY  Parquet RLE_DICTIONARY (falls back to PLAIN when the
                dictionary page outgrows its limit)
    DELTA       Parquet DELTA_BINARY_PACKED, int64 only

Invariants:
    - Enum values are persisted in archive metadata and must never change
    - writer_options() never enables a dictionary and a column encoding
      for the same column

How to change safely:
    - New codecs must be ones pyarrow can write; add them at the end
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import Any

import pyarrow as pa

from ..schema.types import Encoding, PhysicalType, TableSchema


class Compression(Enum):
    """Parquet compression codecs."""

    NONE = "none"
    SNAPPY = "snappy"
    GZIP = "gzip"
    BROTLI = "brotli"
    LZ4 = "lz4"
    ZSTD = "zstd"

    @classmethod
    def from_str(cls, value: str) -> Compression:
        """Convert a codec name to Compression.

        Raises:
            ValueError: If the codec is not supported
        """
        for codec in cls:
            if codec.value == value.lower():
                return codec
        valid = [c.value for c in cls]
        raise ValueError(f"Unsupported codec '{value}'. Valid codecs: {valid}")

    @property
    def level_range(self) -> tuple[int, int] | None:
        """Accepted compression levels, None when the codec has no levels."""
        return _LEVEL_RANGES.get(self)


# pyarrow caps a single written row group at this many rows
MAX_ROW_GROUP_SIZE = 1024 * 1024

_LEVEL_RANGES = {
    Compression.GZIP: (1, 9),
    Compression.BROTLI: (0, 11),
    Compression.ZSTD: (1, 22),
}

_ARROW_TYPES = {
    PhysicalType.INT64: pa.int64(),
    PhysicalType.DOUBLE: pa.float64(),
    PhysicalType.UTF8: pa.string(),
    PhysicalType.BYTES: pa.binary(),
    PhysicalType.BOOLEAN: pa.bool_(),
}

# Parquet name of the non-dictionary encodings
_PARQUET_ENCODINGS = {
    Encoding.PLAIN: "PLAIN",
    Encoding.DELTA: "DELTA_BINARY_PACKED",
}


def arrow_type(physical_type: PhysicalType) -> pa.DataType:
    return _ARROW_TYPES[physical_type]


def arrow_schema(table: TableSchema, physical_types: Sequence[PhysicalType]) -> pa.Schema:
    """Arrow schema of an archive: one nullable field per archived column."""
    return pa.schema(
        [
            pa.field(column.name, arrow_type(physical_type), nullable=True)
            for column, physical_type in zip(table.columns, physical_types)
        ]
    )


def to_arrow(values: Sequence[Any], physical_type: PhysicalType) -> pa.Array:
    """Build an Arrow array from physical-domain values (None for null)."""
    return pa.array(values, type=arrow_type(physical_type))


def choose_encoding(physical_type: PhysicalType, present: Sequence[Any]) -> Encoding:
    """Pick an encoding from a sample of a column's present values.

    Dictionary encoding is used for strings and blobs when at most half of
    the values are distinct; delta encoding for non-decreasing integers.
    """
    if len(present) < 2:
        return Encoding.PLAIN
    if physical_type in (PhysicalType.UTF8, PhysicalType.BYTES):
        if len(set(present)) * 2 <= len(present):
            return Encoding.DICTIONARY
        return Encoding.PLAIN
    if physical_type is PhysicalType.INT64:
        if all(a <= b for a, b in zip(present, present[1:])):
            return Encoding.DELTA
    return Encoding.PLAIN


def supports(physical_type: PhysicalType, encoding: Encoding) -> bool:
    if encoding is Encoding.PLAIN:
        return True
    if encoding is Encoding.DICTIONARY:
        return physical_type is not PhysicalType.BOOLEAN
    return physical_type is PhysicalType.INT64


def writer_options(
    column_names: Sequence[str],
    encodings: Sequence[Encoding],
    compression: Compression,
    compression_level: int | None = None,
) -> dict[str, Any]:
    """Keyword arguments for pyarrow.parquet.ParquetWriter.

    Example:
        >>> options = writer_options(
        ...     ["id", "tag"], [Encoding.DELTA, Encoding.DICTIONARY], Compression.ZSTD
        ... )
        >>> options["use_dictionary"], options["column_encoding"]
        (['tag'], {'id': 'DELTA_BINARY_PACKED'})
    """
    dictionary = [n for n, e in zip(column_names, encodings) if e is Encoding.DICTIONARY]
    column_encoding = {
        name: _PARQUET_ENCODINGS[encoding]
        for name, encoding in zip(column_names, encodings)
        if encoding is not Encoding.DICTIONARY
    }
    options: dict[str, Any] = {
        "compression": compression.value,
        "use_dictionary": dictionary or False,
        "column_encoding": column_encoding or None,
        "write_statistics": True,
        "write_page_checksum": True,
    }
    if compression_level is not None and compression.level_range is not None:
        options["compression_level"] = compression_level
    return options
