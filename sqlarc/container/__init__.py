"""
Archive container for sqlarc.

The container model is the interchange contract between the archival
and restoration pipelines. Archives are Parquet files written and read
with pyarrow. This package provides:
- model: ColumnStatistics, ColumnChunk, ArchiveMetadata and friends
- codec: Compression codecs, encoding choice and the Arrow type mapping
- writer: Streaming ArchiveWriter with atomic finalization
- reader: ArchiveReader with predicate pushdown
"""

from .codec import Compression, arrow_schema, arrow_type, choose_encoding, writer_options
from .model import (
    FORMAT_VERSION,
    METADATA_KEY,
    ArchiveMetadata,
    ColumnChunk,
    ColumnStatistics,
    RowGroupMeta,
)
from .reader import ArchiveReader, Predicate, PredicateOp
from .writer import ArchiveWriter

__all__ = [
    "FORMAT_VERSION",
    "METADATA_KEY",
    "ArchiveMetadata",
    "ArchiveReader",
    "ArchiveWriter",
    "ColumnChunk",
    "ColumnStatistics",
    "Compression",
    "Predicate",
    "PredicateOp",
    "RowGroupMeta",
    "arrow_schema",
    "arrow_type",
    "choose_encoding",
    "writer_options",
]
