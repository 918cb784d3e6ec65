"""
sqlarc: columnar archival of SQLite databases.

sqlarc converts the tables of a SQLite database into compressed,
columnar archive files (one Parquet file per table, written with
pyarrow) and rebuilds an equivalent database from them. Chunk
statistics keep archives queryable without full decompression.

Architecture:
    SqliteSource -> TableArchiver -> ArchiveWriter -> <table>.sqlarc
                         |
                    TypeMapper, StatisticsCollector

    <table>.sqlarc -> ArchiveReader -> TableRestorer -> SqliteDestination
                                            |
                                        TypeMapper

The container model (ArchiveMetadata and friends) is the only contract
shared by the two pipelines.

Modules:
    schema: Table schema model and the TypeMapper
    stats: Per-chunk StatisticsCollector
    container: Archive model, Parquet layout, writer and reader
    store: SQLite source and destination
    archive: Archival pipeline
    restore: Restoration pipeline
    config: Environment and YAML configuration
    main: Command line
"""

from ._version import __version__
from .archive import DatabaseArchiver, TableArchiver
from .config import ArchiveConfig, ObservabilityConfig, RestoreConfig, ToolConfig
from .container import ArchiveMetadata, ArchiveReader, ColumnStatistics, Predicate, PredicateOp
from .errors import (
    ArchiveError,
    ArchiveIOError,
    ChunkMisalignmentError,
    CorruptArchiveError,
    IntegrityCheckError,
    OperationCancelledError,
    SchemaIncompatibleError,
    TableExistsError,
)
from .reporting import ProgressEvent, ProgressObserver, TableResult
from .restore import DatabaseRestorer, TableRestorer
from .schema import PhysicalType, TableSchema, TypeMapper
from .stats import DistinctSketch, StatisticsCollector

__all__ = [
    "__version__",
    "ArchiveConfig",
    "ArchiveError",
    "ArchiveIOError",
    "ArchiveMetadata",
    "ArchiveReader",
    "ChunkMisalignmentError",
    "ColumnStatistics",
    "CorruptArchiveError",
    "DatabaseArchiver",
    "DatabaseRestorer",
    "DistinctSketch",
    "IntegrityCheckError",
    "ObservabilityConfig",
    "OperationCancelledError",
    "PhysicalType",
    "Predicate",
    "PredicateOp",
    "ProgressEvent",
    "ProgressObserver",
    "RestoreConfig",
    "SchemaIncompatibleError",
    "StatisticsCollector",
    "TableArchiver",
    "TableExistsError",
    "TableResult",
    "TableRestorer",
    "TableSchema",
    "ToolConfig",
    "TypeMapper",
]
