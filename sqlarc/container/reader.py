"""
Archive file reader with predicate pushdown.

Opening an archive parses the Parquet footer with pyarrow.parquet and
validates the archive metadata stored in its key-value entry against the
Parquet schema and row groups. Chunks are read lazily with
ParquetFile.read_row_group: page checksums are verified while reading
and each chunk's value and null counts are checked against the archive
statistics.

Predicate pushdown uses the Parquet column chunk statistics: a row
group is skipped without reading any page when some predicate proves
that no row of the group can match. Rows of the remaining groups are
filtered exactly, so skipping never changes the result of a scan.

Invariants:
    - The reader never writes to the archive
    - Values are returned in the physical domain (see PhysicalType)
    - Nulls never match a comparison predicate
    - A chunk with unknown bounds is never skipped by a comparison
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO

import pyarrow as pa
import pyarrow.parquet as pq

from ..errors import ArchiveIOError, ChunkMisalignmentError, CorruptArchiveError
from .codec import arrow_type
from .model import METADATA_KEY, ArchiveMetadata, ColumnStatistics

logger = logging.getLogger(__name__)


class PredicateOp(Enum):
    """Comparison operators supported by scan predicates."""

    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    BETWEEN = "between"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"

    @classmethod
    def from_str(cls, value: str) -> PredicateOp:
        for op in cls:
            if op.value == value.lower():
                return op
        valid = [o.value for o in cls]
        raise ValueError(f"Unknown predicate operator '{value}'. Valid operators: {valid}")


def _is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


@dataclass(frozen=True)
class Predicate:
    """A filter on one column, in the physical domain.

    Attributes:
        column: Column name
        op: Operator
        value: Comparison value (lower bound for BETWEEN)
        upper: Upper bound for BETWEEN, inclusive

    Example:
        Predicate("score", PredicateOp.GE, 90.0)
        Predicate.between("id", 10, 20)
    """

    column: str
    op: PredicateOp
    value: Any = None
    upper: Any = None

    @classmethod
    def between(cls, column: str, lower: Any, upper: Any) -> Predicate:
        return cls(column, PredicateOp.BETWEEN, lower, upper)

    def can_skip(self, stats: ColumnStatistics) -> bool:
        """Whether the statistics prove that no value of the chunk matches."""
        if self.op is PredicateOp.IS_NULL:
            return stats.null_count == 0
        if stats.all_null:
            return True
        if self.op is PredicateOp.IS_NOT_NULL:
            return False

        if not stats.has_bounds:
            return False
        low, high = stats.min_value, stats.max_value
        if self.op is PredicateOp.EQ:
            return self.value < low or self.value > high
        if self.op is PredicateOp.NE:
            return low == high == self.value
        if self.op is PredicateOp.LT:
            return low >= self.value
        if self.op is PredicateOp.LE:
            return low > self.value
        if self.op is PredicateOp.GT:
            return high <= self.value
        if self.op is PredicateOp.GE:
            return high < self.value
        return high < self.value or low > self.upper

    def matches(self, value: Any) -> bool:
        """Evaluate the predicate against one value."""
        if self.op is PredicateOp.IS_NULL:
            return value is None
        if self.op is PredicateOp.IS_NOT_NULL:
            return value is not None
        if value is None or _is_nan(value):
            return False

        if self.op is PredicateOp.EQ:
            return value == self.value
        if self.op is PredicateOp.NE:
            return value != self.value
        if self.op is PredicateOp.LT:
            return value < self.value
        if self.op is PredicateOp.LE:
            return value <= self.value
        if self.op is PredicateOp.GT:
            return value > self.value
        if self.op is PredicateOp.GE:
            return value >= self.value
        return self.value <= value <= self.upper


class ArchiveReader:
    """Read-only access to one archive file.

    Usage:
        with ArchiveReader.open(path) as reader:
            for row in reader.scan(["id", "name"], [Predicate("id", PredicateOp.GT, 5)]):
                ...
    """

    def __init__(
        self, path: str, file: BinaryIO, parquet: pq.ParquetFile, metadata: ArchiveMetadata
    ) -> None:
        self.path = path
        self.metadata = metadata
        self.skipped_row_groups = 0
        self._file = file
        self._parquet = parquet

    @classmethod
    def open(cls, path: str) -> ArchiveReader:
        """Open an archive and validate its structure.

        Raises:
            ArchiveIOError: If the file cannot be read
            CorruptArchiveError: If the Parquet footer or the metadata is invalid
        """
        try:
            file = open(path, "rb")
        except OSError as e:
            raise ArchiveIOError(f"Cannot open archive: {e}", path=path) from e

        try:
            try:
                parquet = pq.ParquetFile(file, page_checksum_verification=True)
            except (pa.ArrowException, OSError) as e:
                raise CorruptArchiveError(f"Not a readable Parquet file: {e}", path=path) from e
            metadata = cls._read_metadata(path, parquet)
        except BaseException:
            file.close()
            raise
        return cls(path, file, parquet, metadata)

    @staticmethod
    def _read_metadata(path: str, parquet: pq.ParquetFile) -> ArchiveMetadata:
        entries = parquet.metadata.metadata or {}
        raw = entries.get(METADATA_KEY.encode("utf-8"))
        if raw is None:
            raise CorruptArchiveError("File carries no sqlarc metadata", path=path)

        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptArchiveError(f"Metadata is not valid JSON: {e}", path=path) from e
        if not isinstance(data, dict):
            raise CorruptArchiveError("Metadata is not a JSON object", path=path)

        try:
            metadata = ArchiveMetadata.from_dict(data)
        except CorruptArchiveError as e:
            e.path = path
            e.details["path"] = path
            raise

        table = metadata.table.name
        schema = parquet.schema_arrow
        if schema.names != metadata.table.column_names:
            raise CorruptArchiveError(
                f"Parquet columns {schema.names} do not match archived columns",
                table=table,
                path=path,
            )
        for field, physical_type in zip(schema, metadata.physical_types):
            if field.type != arrow_type(physical_type):
                raise CorruptArchiveError(
                    f"Parquet type {field.type} does not match physical type "
                    f"{physical_type.value}",
                    table=table,
                    column=field.name,
                    path=path,
                )
        if parquet.num_row_groups != len(metadata.row_groups):
            raise CorruptArchiveError(
                f"File holds {parquet.num_row_groups} row groups, "
                f"metadata lists {len(metadata.row_groups)}",
                table=table,
                path=path,
            )
        return metadata

    def __enter__(self) -> ArchiveReader:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._file.close()

    @property
    def column_names(self) -> list[str]:
        return self.metadata.table.column_names

    @property
    def parquet_metadata(self) -> pq.FileMetaData:
        """Parquet footer: sizes, encodings and statistics of every column chunk."""
        return self._parquet.metadata

    def chunk_statistics(self, row_group: int, column: str) -> ColumnStatistics:
        """Statistics of one chunk, bounds taken from the Parquet footer.

        Bounds are None when Parquet recorded none, e.g. for a chunk of
        NaN values only.
        """
        index = self.column_names.index(column)
        archived = self.metadata.row_groups[row_group].statistics[index]
        footer = self._parquet.metadata.row_group(row_group).column(index).statistics
        if footer is None:
            return archived

        low = high = None
        if footer.has_min_max:
            low, high = footer.min, footer.max
        return ColumnStatistics(
            min_value=low,
            max_value=high,
            null_count=footer.null_count if footer.has_null_count else archived.null_count,
            row_count=archived.row_count,
            distinct_count=archived.distinct_count,
        )

    def read_chunk(self, row_group: int, column: str) -> list[Any]:
        """Read and decode one column chunk.

        Raises:
            CorruptArchiveError: On page checksum, decode or count mismatch
        """
        table = self.metadata.table.name
        index = self.column_names.index(column)
        stats = self.metadata.row_groups[row_group].statistics[index]

        try:
            array = self._parquet.read_row_group(row_group, columns=[column]).column(0)
        except (pa.ArrowException, OSError) as e:
            raise CorruptArchiveError(
                f"Failed to decode row group {row_group}: {e}",
                table=table,
                column=column,
                path=self.path,
            ) from e

        if len(array) != stats.row_count:
            raise CorruptArchiveError(
                f"Chunk holds {len(array)} values, statistics say {stats.row_count}",
                table=table,
                column=column,
                path=self.path,
            )
        if array.null_count != stats.null_count:
            raise CorruptArchiveError(
                f"Chunk holds {array.null_count} nulls, statistics say {stats.null_count}",
                table=table,
                column=column,
                path=self.path,
            )
        return array.to_pylist()

    def read_row_group(
        self, row_group: int, columns: Sequence[str] | None = None
    ) -> dict[str, list[Any]]:
        """Decode the chunks of one row group.

        Raises:
            ChunkMisalignmentError: If a decoded column does not hold exactly
                the row group's row count
        """
        names = list(columns) if columns is not None else self.column_names
        expected = self.metadata.row_groups[row_group].row_count
        decoded = {name: self.read_chunk(row_group, name) for name in names}

        counts = {name: len(values) for name, values in decoded.items()}
        if any(n != expected for n in counts.values()):
            raise ChunkMisalignmentError(
                f"Row group {row_group} declares {expected} rows",
                table=self.metadata.table.name,
                row_group=row_group,
                row_counts=counts,
            )
        return decoded

    def iter_row_groups(
        self, columns: Sequence[str] | None = None
    ) -> Iterator[tuple[int, dict[str, list[Any]]]]:
        for index in range(len(self.metadata.row_groups)):
            yield index, self.read_row_group(index, columns)

    def scan(
        self,
        columns: Sequence[str] | None = None,
        predicates: Iterable[Predicate] = (),
    ) -> Iterator[tuple[Any, ...]]:
        """Yield the rows matching all predicates, in archive order.

        Args:
            columns: Columns to return (default: all, in table order)
            predicates: Conjunction of predicates

        Raises:
            KeyError: If a column or predicate column does not exist
        """
        names = list(columns) if columns is not None else self.column_names
        predicates = list(predicates)
        for name in [*names, *(p.column for p in predicates)]:
            self.metadata.table.column(name)

        needed = list(dict.fromkeys([*names, *(p.column for p in predicates)]))
        self.skipped_row_groups = 0

        for index, row_group in enumerate(self.metadata.row_groups):
            if any(p.can_skip(self.chunk_statistics(index, p.column)) for p in predicates):
                self.skipped_row_groups += 1
                continue

            decoded = self.read_row_group(index, needed)
            for i in range(row_group.row_count):
                if all(p.matches(decoded[p.column][i]) for p in predicates):
                    yield tuple(decoded[name][i] for name in names)

        logger.debug(
            "Scan finished",
            extra={
                "table": self.metadata.table.name,
                "row_groups": len(self.metadata.row_groups),
                "skipped_row_groups": self.skipped_row_groups,
            },
        )
