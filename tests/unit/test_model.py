"""
Unit tests for the archive container model.

Tests cover:
- Metadata serialization
- Sealing and row group validation
- Rejection of structurally invalid metadata
"""

import copy

import pytest

from sqlarc.container.codec import Compression
from sqlarc.container.model import (
    FORMAT_VERSION,
    ArchiveMetadata,
    ColumnStatistics,
    RowGroupMeta,
)
from sqlarc.errors import CorruptArchiveError
from sqlarc.schema.types import ColumnDef, Encoding, IndexDef, PhysicalType, TableSchema


def _schema():
    return TableSchema(
        name="files",
        columns=(
            ColumnDef.declare("id", "INTEGER", pk=1),
            ColumnDef.declare("digest", "BLOB"),
        ),
        indexes=(IndexDef("files_digest", ("digest",)),),
    )


def _metadata():
    metadata = ArchiveMetadata(
        table=_schema(),
        physical_types=(PhysicalType.INT64, PhysicalType.BYTES),
        encodings=(Encoding.DELTA, Encoding.PLAIN),
        compression=Compression.ZSTD,
        created_at=1700000000000,
    )
    metadata.add_row_group(
        RowGroupMeta(
            row_count=2,
            statistics=[
                ColumnStatistics(1, 2, 0, 2, 2),
                ColumnStatistics(b"\x00\x01", b"\xff", 0, 2, 2),
            ],
        )
    )
    return metadata


class TestArchiveMetadata:
    """Tests for ArchiveMetadata."""

    def test_serialization(self):
        """to_dict/from_dict preserve schema, types, encodings and statistics."""
        metadata = _metadata()
        data = metadata.to_dict()
        restored = ArchiveMetadata.from_dict(data)

        assert restored.table == metadata.table
        assert restored.physical_types == metadata.physical_types
        assert restored.encodings == (Encoding.DELTA, Encoding.PLAIN)
        assert restored.row_groups == metadata.row_groups
        assert restored.created_at == 1700000000000
        assert restored.format_version == FORMAT_VERSION
        assert restored.sealed

    def test_bytes_statistics_stored_as_hex(self):
        data = _metadata().to_dict()
        stats = data["row_groups"][0]["statistics"][1]
        assert stats["min"] == "0001"
        assert stats["max"] == "ff"

    def test_encodings_default_to_plain(self):
        metadata = ArchiveMetadata(table=_schema(), physical_types=(PhysicalType.INT64,) * 2)
        assert metadata.encodings == (Encoding.PLAIN, Encoding.PLAIN)

    def test_derived_values(self):
        metadata = _metadata()
        assert metadata.row_count == 2
        assert metadata.physical_type_of("digest") is PhysicalType.BYTES
        assert metadata.encoding_of("id") is Encoding.DELTA
        assert [s.max_value for s in metadata.column_statistics("id")] == [2]

    def test_sealed_rejects_row_groups(self):
        metadata = _metadata()
        metadata.seal()
        with pytest.raises(RuntimeError, match="sealed"):
            metadata.add_row_group(RowGroupMeta(row_count=0, statistics=[]))

    def test_statistics_must_cover_columns(self):
        metadata = _metadata()
        with pytest.raises(ValueError):
            metadata.add_row_group(
                RowGroupMeta(row_count=1, statistics=[ColumnStatistics(row_count=1)])
            )

    def test_types_must_align(self):
        with pytest.raises(ValueError):
            ArchiveMetadata(table=_schema(), physical_types=(PhysicalType.INT64,))
        with pytest.raises(ValueError):
            ArchiveMetadata(
                table=_schema(),
                physical_types=(PhysicalType.INT64, PhysicalType.BYTES),
                encodings=(Encoding.PLAIN,),
            )

    def test_bounds(self):
        assert ColumnStatistics(1, 2, 0, 2).has_bounds
        assert not ColumnStatistics(None, None, 0, 2).has_bounds


class TestCorruptMetadata:
    """from_dict rejects invalid metadata with CorruptArchiveError."""

    @pytest.fixture
    def data(self):
        return copy.deepcopy(_metadata().to_dict())

    def test_missing_key(self, data):
        del data["row_groups"]
        with pytest.raises(CorruptArchiveError) as exc_info:
            ArchiveMetadata.from_dict(data)
        assert exc_info.value.table == "files"

    def test_unknown_physical_type(self, data):
        data["table"]["columns"][0]["physical_type"] = "decimal"
        with pytest.raises(CorruptArchiveError):
            ArchiveMetadata.from_dict(data)

    def test_unknown_encoding(self, data):
        data["table"]["columns"][0]["encoding"] = "rle"
        with pytest.raises(CorruptArchiveError):
            ArchiveMetadata.from_dict(data)

    def test_unknown_codec(self, data):
        data["compression"] = "lzo"
        with pytest.raises(CorruptArchiveError):
            ArchiveMetadata.from_dict(data)

    def test_other_version(self, data):
        data["format_version"] = FORMAT_VERSION + 1
        with pytest.raises(CorruptArchiveError, match="version"):
            ArchiveMetadata.from_dict(data)

    def test_missing_statistics(self, data):
        data["row_groups"][0]["statistics"].pop()
        with pytest.raises(CorruptArchiveError):
            ArchiveMetadata.from_dict(data)

    def test_null_count_exceeds_rows(self, data):
        data["row_groups"][0]["statistics"][0]["null_count"] = 5
        with pytest.raises(CorruptArchiveError):
            ArchiveMetadata.from_dict(data)

    def test_bad_hex(self, data):
        data["row_groups"][0]["statistics"][1]["min"] = "zz"
        with pytest.raises(CorruptArchiveError):
            ArchiveMetadata.from_dict(data)
