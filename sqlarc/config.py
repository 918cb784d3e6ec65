"""
Configuration management for sqlarc.

Settings come from three places, later ones winning:
1. Defaults in the dataclasses below
2. Environment variables (from_env)
3. A YAML file passed with --config (load_archive_config), then
   command-line flags

Example YAML file:
    row_group_size: 10000
    compression: zstd
    compression_level: 9
    include_schema: true
    tables:
      events:
        columns: [id, kind, payload]
        overrides:
          kind:
            encoding: dictionary
          flag:
            physical_type: bool

Invariants:
    - Every setting has a default that works for a local run
    - validate() rejects values the pipelines cannot honour before any
      file is touched

How to change safely:
    - Add new settings with defaults
    - Keep environment variable names stable; scripts depend on them
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .container.codec import MAX_ROW_GROUP_SIZE, Compression
from .schema.types import Encoding, PhysicalType
from .stats.collector import MAX_PRECISION, MIN_PRECISION

logger = logging.getLogger(__name__)

ENCODING_MODES = ("auto", "plain")
TYPE_INFERENCE_MODES = ("first_row_group", "full_column")
IF_EXISTS_MODES = ("fail", "replace")
LOG_FORMATS = ("text", "json")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    return int(value) if value else None


class ColumnOverride(BaseModel):
    """Per-column settings from the YAML file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    physical_type: PhysicalType | None = Field(None, description="Force a physical type")
    encoding: Encoding | None = Field(None, description="Force a chunk encoding")


class TableOverride(BaseModel):
    """Per-table settings from the YAML file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    columns: list[str] | None = Field(None, description="Column allow-list, table order kept")
    overrides: dict[str, ColumnOverride] = Field(default_factory=dict)


class ArchiveFileConfig(BaseModel):
    """Schema of the YAML configuration file."""

    model_config = ConfigDict(extra="forbid")

    row_group_size: int | None = Field(None, gt=0)
    compression: Compression | None = None
    compression_level: int | None = None
    encoding: Literal["auto", "plain"] | None = None
    type_inference: Literal["first_row_group", "full_column"] | None = None
    distinct_estimate: bool | None = None
    include_schema: bool | None = None
    tables: dict[str, TableOverride] | None = None


@dataclass(frozen=True)
class ArchiveConfig:
    """Archival pipeline configuration.

    Attributes:
        row_group_size: Rows per row group (the last group may be shorter)
        compression: Chunk compression codec
        compression_level: Codec level, None for the codec default
        encoding: "auto" picks dictionary/delta where they fit, "plain" never does
        type_inference: "first_row_group" infers types from the first row group,
            "full_column" inspects the whole column up front
        distinct_estimate: Whether to record a distinct-count estimate per chunk
        sketch_precision: HyperLogLog precision of the distinct estimate
        fetch_size: Rows fetched from the source cursor per round trip
        max_concurrent: Tables archived in parallel
        tables: Table allow-list, None for every table
        include_schema: Also archive the sqlite_schema catalog table
        table_overrides: Per-table column allow-lists and column overrides
    """

    row_group_size: int = 50_000
    compression: Compression = Compression.ZSTD
    compression_level: int | None = None
    encoding: str = "auto"
    type_inference: str = "first_row_group"
    distinct_estimate: bool = True
    sketch_precision: int = 10
    fetch_size: int = 1000
    max_concurrent: int = 1
    tables: tuple[str, ...] | None = None
    include_schema: bool = False
    table_overrides: dict[str, TableOverride] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> ArchiveConfig:
        """Load configuration from environment variables."""
        tables = os.getenv("SQLARC_TABLES")
        return cls(
            row_group_size=int(os.getenv("SQLARC_ROW_GROUP_SIZE", "50000")),
            compression=Compression.from_str(os.getenv("SQLARC_COMPRESSION", "zstd")),
            compression_level=_env_optional_int("SQLARC_COMPRESSION_LEVEL"),
            encoding=os.getenv("SQLARC_ENCODING", "auto").lower(),
            type_inference=os.getenv("SQLARC_TYPE_INFERENCE", "first_row_group").lower(),
            distinct_estimate=_env_bool("SQLARC_DISTINCT_ESTIMATE", "true"),
            sketch_precision=int(os.getenv("SQLARC_SKETCH_PRECISION", "10")),
            fetch_size=int(os.getenv("SQLARC_FETCH_SIZE", "1000")),
            max_concurrent=int(os.getenv("SQLARC_MAX_CONCURRENT", "1")),
            tables=tuple(t.strip() for t in tables.split(",") if t.strip()) if tables else None,
            include_schema=_env_bool("SQLARC_INCLUDE_SCHEMA", "false"),
        )

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ValueError: If a value is out of range or unknown
        """
        if not 0 < self.row_group_size <= MAX_ROW_GROUP_SIZE:
            raise ValueError(
                f"row_group_size must be between 1 and {MAX_ROW_GROUP_SIZE}, "
                f"got {self.row_group_size}"
            )
        if self.encoding not in ENCODING_MODES:
            raise ValueError(f"Invalid encoding mode '{self.encoding}'. Valid: {ENCODING_MODES}")
        if self.type_inference not in TYPE_INFERENCE_MODES:
            raise ValueError(
                f"Invalid type inference mode '{self.type_inference}'. "
                f"Valid: {TYPE_INFERENCE_MODES}"
            )
        if not MIN_PRECISION <= self.sketch_precision <= MAX_PRECISION:
            raise ValueError(
                f"sketch_precision must be between {MIN_PRECISION} and {MAX_PRECISION}"
            )
        if self.fetch_size <= 0:
            raise ValueError(f"fetch_size must be positive, got {self.fetch_size}")
        if self.max_concurrent <= 0:
            raise ValueError(f"max_concurrent must be positive, got {self.max_concurrent}")
        if self.compression_level is not None and self.compression.level_range is not None:
            low, high = self.compression.level_range
            if not low <= self.compression_level <= high:
                raise ValueError(
                    f"{self.compression.value} level must be between {low} and {high}, "
                    f"got {self.compression_level}"
                )

    def columns_for(self, table: str) -> list[str] | None:
        """Column allow-list of a table, None for all columns."""
        override = self.table_overrides.get(table)
        return override.columns if override is not None else None

    def column_override(self, table: str, column: str) -> ColumnOverride | None:
        override = self.table_overrides.get(table)
        if override is None:
            return None
        return override.overrides.get(column)


@dataclass(frozen=True)
class RestoreConfig:
    """Restoration pipeline configuration.

    Attributes:
        if_exists: "fail" when a destination table exists, or "replace" it
        verify: Run PRAGMA integrity_check after all tables are restored
        journal_mode: Journal mode of the destination database, None to keep it
    """

    if_exists: str = "fail"
    verify: bool = True
    journal_mode: str | None = None

    @classmethod
    def from_env(cls) -> RestoreConfig:
        """Load configuration from environment variables."""
        return cls(
            if_exists=os.getenv("SQLARC_IF_EXISTS", "fail").lower(),
            verify=_env_bool("SQLARC_VERIFY", "true"),
            journal_mode=os.getenv("SQLARC_JOURNAL_MODE") or None,
        )

    def validate(self) -> None:
        if self.if_exists not in IF_EXISTS_MODES:
            raise ValueError(f"Invalid if_exists '{self.if_exists}'. Valid: {IF_EXISTS_MODES}")
        if self.journal_mode is not None and not self.journal_mode.isalpha():
            raise ValueError(f"Invalid journal mode '{self.journal_mode}'")


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (text, json)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "text").lower(),
        )

    def validate(self) -> None:
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"Invalid LOG_LEVEL '{self.log_level}'. Valid: {LOG_LEVELS}")
        if self.log_format not in LOG_FORMATS:
            raise ValueError(f"Invalid LOG_FORMAT '{self.log_format}'. Valid: {LOG_FORMATS}")


@dataclass
class ToolConfig:
    """Complete sqlarc configuration.

    Attributes:
        archive: Archival pipeline configuration
        restore: Restoration pipeline configuration
        observability: Logging configuration
    """

    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    restore: RestoreConfig = field(default_factory=RestoreConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ToolConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If a variable holds an invalid value
        """
        config = cls(
            archive=ArchiveConfig.from_env(),
            restore=RestoreConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        self.archive.validate()
        self.restore.validate()
        self.observability.validate()

    def log_config(self) -> None:
        logger.info(
            "Configuration loaded",
            extra={
                "row_group_size": self.archive.row_group_size,
                "compression": self.archive.compression.value,
                "compression_level": self.archive.compression_level,
                "encoding": self.archive.encoding,
                "type_inference": self.archive.type_inference,
                "max_concurrent": self.archive.max_concurrent,
                "tables": list(self.archive.tables) if self.archive.tables else None,
                "include_schema": self.archive.include_schema,
                "if_exists": self.restore.if_exists,
                "verify": self.restore.verify,
                "log_level": self.observability.log_level,
            },
        )


def load_archive_config(path: str, base: ArchiveConfig | None = None) -> ArchiveConfig:
    """Merge a YAML configuration file onto an archive configuration.

    Keys present in the file replace the base values. When the file names
    tables, their keys become the table allow-list unless the base already
    has one.

    Raises:
        ValueError: If the file cannot be read or fails validation
    """
    base = base or ArchiveConfig()
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    try:
        parsed = ArchiveFileConfig.model_validate(raw or {})
    except ValidationError as e:
        raise ValueError(f"Invalid config file {path}: {e}") from e

    changes = {
        name: getattr(parsed, name)
        for name in parsed.model_fields_set
        if name != "tables" and getattr(parsed, name) is not None
    }
    if parsed.tables is not None:
        changes["table_overrides"] = dict(parsed.tables)
        if base.tables is None:
            changes["tables"] = tuple(parsed.tables)

    config = dataclasses.replace(base, **changes)
    config.validate()
    logger.debug("Loaded config file", extra={"path": path, "keys": sorted(changes)})
    return config
