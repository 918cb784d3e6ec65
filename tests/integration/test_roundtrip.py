"""
Integration tests for archiving tables and restoring them.

Tests cover:
- Round trip of values, declared types, keys and indexes
- Row group layout and chunk statistics
- Deterministic chunking
- Replace / fail behaviour of existing destination tables
"""

import os
import sqlite3

import pyarrow.parquet as pq
import pytest

from sqlarc.archive import DatabaseArchiver, TableArchiver, archive_filename
from sqlarc.config import ArchiveConfig, RestoreConfig, TableOverride
from sqlarc.container import ArchiveReader, Compression
from sqlarc.restore import (
    SCHEMA_SIDE_TABLE,
    DatabaseRestorer,
    TableRestorer,
    expand_archive_paths,
)
from sqlarc.schema.types import Encoding, PhysicalType
from sqlarc.store import SqliteDestination, SqliteSource


def archive_table(db_path, table, out_dir, config=None, observer=None):
    path = os.path.join(out_dir, archive_filename(table))
    with SqliteSource(db_path) as source:
        metadata = TableArchiver(source, config or ArchiveConfig(), observer).archive(table, path)
    return path, metadata


class TestScoresExample:
    """The three-row example table with a row group size of 2."""

    @pytest.fixture
    def archived(self, make_db, workdir):
        db = make_db(
            "CREATE TABLE scores (id INTEGER, name TEXT, score REAL)",
            {"scores": [(1, "a", 1.5), (2, None, 2.0), (3, "c", None)]},
        )
        path, metadata = archive_table(db, "scores", workdir, ArchiveConfig(row_group_size=2))
        return db, path, metadata

    def test_layout(self, archived):
        _, path, metadata = archived
        assert os.path.basename(path) == "scores.sqlarc"
        assert [rg.row_count for rg in metadata.row_groups] == [2, 1]
        assert metadata.physical_types == (
            PhysicalType.INT64,
            PhysicalType.UTF8,
            PhysicalType.DOUBLE,
        )

    def test_statistics(self, archived):
        _, _, metadata = archived
        score = metadata.column_statistics("score")
        assert score[0].min_value == 1.5
        assert score[0].max_value == 2.0
        assert score[0].null_count == 0
        assert score[1].null_count == 1
        assert score[1].all_null

        name = metadata.column_statistics("name")
        assert name[0].null_count == 1
        assert name[0].min_value == name[0].max_value == "a"

    def test_reader_sees_same_metadata(self, archived):
        _, path, metadata = archived
        with ArchiveReader.open(path) as reader:
            assert reader.metadata.to_dict() == metadata.to_dict()
            assert list(reader.scan()) == [(1, "a", 1.5), (2, None, 2.0), (3, "c", None)]

    def test_restore(self, archived, workdir, query):
        _, path, _ = archived
        dest = os.path.join(workdir, "restored.db")
        results = DatabaseRestorer(dest).restore_all([path])

        assert [r.success for r in results] == [True]
        assert results[0].rows == 3
        assert results[0].row_groups == 2
        assert query(dest, "SELECT id, name, score FROM scores ORDER BY id") == [
            (1, "a", 1.5),
            (2, None, 2.0),
            (3, "c", None),
        ]
        assert query(dest, "SELECT name, type FROM pragma_table_info('scores')") == [
            ("id", "INTEGER"),
            ("name", "TEXT"),
            ("score", "REAL"),
        ]


class TestRoundTrip:
    """Round trips of richer tables."""

    def test_value_fidelity(self, make_db, workdir, query):
        """Every storage class survives, including extremes."""
        rows = [
            (1, 2**63 - 1, 0.1, "héllo wörld 🙂", b"\x00\x01\xff", 1),
            (2, -(2**63), -1e308, "", b"", 0),
            (3, None, None, None, None, None),
            (4, 0, 3.0, "x" * 5000, bytes(range(256)), 1),
        ]
        db = make_db(
            "CREATE TABLE mixed (id INTEGER PRIMARY KEY, big INTEGER, f DOUBLE, "
            "s VARCHAR(10), b BLOB, flag BOOLEAN)",
            {"mixed": rows},
        )
        path, metadata = archive_table(db, "mixed", workdir, ArchiveConfig(row_group_size=3))
        assert metadata.physical_type_of("flag") is PhysicalType.INT64
        assert metadata.physical_type_of("b") is PhysicalType.BYTES

        dest = os.path.join(workdir, "restored.db")
        DatabaseRestorer(dest).restore_all([path])
        assert query(dest, "SELECT * FROM mixed ORDER BY id") == rows
        assert query(dest, "SELECT typeof(f) FROM mixed WHERE id = 4") == [("real",)]

    def test_boolean_column_narrowed_only_when_fully_seen(self, make_db, workdir, query):
        """A BOOLEAN column holding 2 after the first group still restores."""
        rows = [(1, 0), (2, 1), (3, 2)]
        db = make_db("CREATE TABLE flags (id INTEGER PRIMARY KEY, f BOOLEAN)", {"flags": rows})

        path, metadata = archive_table(db, "flags", workdir, ArchiveConfig(row_group_size=2))
        assert metadata.physical_type_of("f") is PhysicalType.INT64

        dest = os.path.join(workdir, "restored.db")
        results = DatabaseRestorer(dest).restore_all([path])
        assert results[0].success
        assert query(dest, "SELECT * FROM flags ORDER BY id") == rows

    def test_boolean_column_in_single_group(self, make_db, workdir):
        db = make_db(
            "CREATE TABLE flags (id INTEGER PRIMARY KEY, f BOOLEAN)", {"flags": [(1, 0), (2, 1)]}
        )
        _, metadata = archive_table(db, "flags", workdir, ArchiveConfig(row_group_size=3))
        assert metadata.physical_type_of("f") is PhysicalType.BOOLEAN

    def test_integer_values_in_untyped_column(self, make_db, workdir, query):
        """Columns without a declared type keep their values."""
        db = make_db("CREATE TABLE t (v)", {"t": [(1,), (2.5,), (None,)]})
        path, metadata = archive_table(db, "t", workdir)
        assert metadata.physical_types == (PhysicalType.DOUBLE,)

        dest = os.path.join(workdir, "restored.db")
        DatabaseRestorer(dest).restore_all([path])
        assert query(dest, "SELECT v FROM t ORDER BY rowid") == [(1.0,), (2.5,), (None,)]

    def test_empty_table(self, make_db, workdir, query):
        db = make_db("CREATE TABLE empty (id INTEGER PRIMARY KEY, note TEXT NOT NULL)")
        path, metadata = archive_table(db, "empty", workdir)
        assert metadata.row_groups == []
        assert metadata.physical_types == (PhysicalType.INT64, PhysicalType.UTF8)

        dest = os.path.join(workdir, "restored.db")
        results = DatabaseRestorer(dest).restore_all([path])
        assert results[0].success
        assert query(dest, "SELECT COUNT(*) FROM empty") == [(0,)]

    def test_all_null_column(self, make_db, workdir, query):
        """An all-null column follows its declared affinity and stays null."""
        db = make_db(
            "CREATE TABLE t (id INTEGER PRIMARY KEY, note TEXT, amount DECIMAL(10,2))",
            {"t": [(i, None, None) for i in range(1, 6)]},
        )
        path, metadata = archive_table(db, "t", workdir, ArchiveConfig(row_group_size=2))
        assert metadata.physical_type_of("note") is PhysicalType.UTF8
        assert metadata.physical_type_of("amount") is PhysicalType.DOUBLE
        assert all(s.all_null for s in metadata.column_statistics("note"))
        assert all(s.min_value is None for s in metadata.column_statistics("amount"))

        dest = os.path.join(workdir, "restored.db")
        DatabaseRestorer(dest).restore_all([path])
        assert query(dest, "SELECT COUNT(*) FROM t WHERE note IS NULL AND amount IS NULL") == [
            (5,)
        ]
        assert query(dest, "SELECT type FROM pragma_table_info('t') WHERE name = 'amount'") == [
            ("DECIMAL(10,2)",)
        ]

    @pytest.mark.parametrize("codec", list(Compression))
    def test_every_codec(self, make_db, workdir, query, codec):
        rows = [(i, f"row {i % 7}", i * 0.5) for i in range(1, 301)]
        db = make_db("CREATE TABLE t (id INTEGER PRIMARY KEY, s TEXT, x REAL)", {"t": rows})
        config = ArchiveConfig(row_group_size=64, compression=codec)
        path, metadata = archive_table(db, "t", workdir, config)
        assert metadata.compression is codec

        dest = os.path.join(workdir, "restored.db")
        DatabaseRestorer(dest).restore_all([path])
        assert query(dest, "SELECT * FROM t ORDER BY id") == rows

    def test_encodings_chosen(self, make_db, workdir):
        rows = [(i, ["red", "green"][i % 2], 100 - i) for i in range(1, 51)]
        db = make_db("CREATE TABLE t (id INTEGER PRIMARY KEY, color TEXT, n INTEGER)", {"t": rows})

        path, metadata = archive_table(db, "t", workdir)
        assert metadata.encodings == (Encoding.DELTA, Encoding.DICTIONARY, Encoding.PLAIN)
        parquet = pq.ParquetFile(path).metadata.row_group(0)
        assert "DELTA_BINARY_PACKED" in parquet.column(0).encodings
        assert "RLE_DICTIONARY" in parquet.column(1).encodings
        assert "PLAIN" in parquet.column(2).encodings

        _, metadata = archive_table(db, "t", workdir, ArchiveConfig(encoding="plain"))
        assert set(metadata.encodings) == {Encoding.PLAIN}

    def test_rows_in_primary_key_order(self, make_db, workdir):
        db = make_db(
            "CREATE TABLE t (k TEXT PRIMARY KEY, v INTEGER)",
            {"t": [("c", 3), ("a", 1), ("b", 2)]},
        )
        path, _ = archive_table(db, "t", workdir)
        with ArchiveReader.open(path) as reader:
            assert list(reader.scan(["k"])) == [("a",), ("b",), ("c",)]


class TestChunking:
    """Row group layout."""

    def test_group_sizes(self, make_db, workdir):
        db = make_db("CREATE TABLE t (id INTEGER PRIMARY KEY)", {"t": [(i,) for i in range(25)]})
        _, metadata = archive_table(db, "t", workdir, ArchiveConfig(row_group_size=10))
        assert [rg.row_count for rg in metadata.row_groups] == [10, 10, 5]
        assert metadata.row_count == 25
        for rg in metadata.row_groups:
            assert all(s.row_count == rg.row_count for s in rg.statistics)

    def test_exact_multiple(self, make_db, workdir):
        db = make_db("CREATE TABLE t (id INTEGER PRIMARY KEY)", {"t": [(i,) for i in range(20)]})
        _, metadata = archive_table(db, "t", workdir, ArchiveConfig(row_group_size=10))
        assert [rg.row_count for rg in metadata.row_groups] == [10, 10]

    def test_deterministic(self, make_db, workdir):
        """Same rows and configuration give identical chunks."""
        rows = [(i, f"name-{i % 13}", i / 3) for i in range(500)]
        db = make_db("CREATE TABLE t (id INTEGER PRIMARY KEY, s TEXT, x REAL)", {"t": rows})
        config = ArchiveConfig(row_group_size=128)

        first_dir = os.path.join(workdir, "first")
        second_dir = os.path.join(workdir, "second")
        os.makedirs(first_dir)
        os.makedirs(second_dir)
        first_path, first = archive_table(db, "t", first_dir, config)
        second_path, second = archive_table(db, "t", second_dir, config)

        first_dict = first.to_dict()
        second_dict = second.to_dict()
        first_dict.pop("created_at")
        second_dict.pop("created_at")
        assert first_dict == second_dict

        data_a = pq.read_table(first_path)
        data_b = pq.read_table(second_path)
        assert data_a.equals(data_b)
        layout_a = pq.ParquetFile(first_path).metadata
        layout_b = pq.ParquetFile(second_path).metadata
        assert [layout_a.row_group(i).num_rows for i in range(layout_a.num_row_groups)] == [
            layout_b.row_group(i).num_rows for i in range(layout_b.num_row_groups)
        ]

    def test_column_allow_list(self, make_db, workdir, query):
        """Configured columns are archived in table order; the key survives."""
        db = make_db(
            "CREATE TABLE t (id INTEGER PRIMARY KEY, secret TEXT, note TEXT)",
            {"t": [(1, "s1", "n1"), (2, "s2", "n2")]},
        )
        config = ArchiveConfig(table_overrides={"t": TableOverride(columns=["note", "id"])})
        path, metadata = archive_table(db, "t", workdir, config)
        assert metadata.table.column_names == ["id", "note"]

        dest = os.path.join(workdir, "restored.db")
        DatabaseRestorer(dest).restore_all([path])
        assert query(dest, "SELECT * FROM t ORDER BY id") == [(1, "n1"), (2, "n2")]


class TestSchemaRebuild:
    """Keys, constraints and indexes are rebuilt on restore."""

    @pytest.fixture
    def restored(self, make_db, workdir):
        db = make_db(
            """
            CREATE TABLE users (
                id INTEGER PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                team TEXT,
                created TEXT DEFAULT CURRENT_TIMESTAMP,
                score INTEGER DEFAULT 0
            );
            CREATE INDEX users_team ON users (team);
            CREATE INDEX users_lower_email ON users (lower(email));
            CREATE INDEX users_partial ON users (team) WHERE team IS NOT NULL;
            """,
            {
                "users": [
                    (1, "a@example.com", "red", "2024-01-01", 5),
                    (2, "b@example.com", None, "2024-01-02", 7),
                ]
            },
        )
        path, metadata = archive_table(db, "users", workdir)
        dest = os.path.join(workdir, "restored.db")
        results = DatabaseRestorer(dest).restore_all([path])
        assert results[0].success
        return dest, metadata

    def test_indexes(self, restored, query):
        """Declared and UNIQUE-constraint indexes are rebuilt; others are skipped."""
        dest, metadata = restored
        assert [i.name for i in metadata.table.indexes] == ["users_email_unique", "users_team"]
        assert query(
            dest,
            "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = 'users' "
            "ORDER BY name",
        ) == [("users_email_unique",), ("users_team",)]

    def test_unique_enforced(self, restored):
        dest, _ = restored
        conn = sqlite3.connect(dest)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("INSERT INTO users (id, email) VALUES (3, 'a@example.com')")
        finally:
            conn.close()

    def test_columns(self, restored, query):
        dest, _ = restored
        assert query(dest, "SELECT name, type, \"notnull\", pk FROM pragma_table_info('users')") == [
            ("id", "INTEGER", 0, 1),
            ("email", "TEXT", 1, 0),
            ("team", "TEXT", 0, 0),
            ("created", "TEXT", 0, 0),
            ("score", "INTEGER", 0, 0),
        ]
        assert query(
            dest, "SELECT dflt_value FROM pragma_table_info('users') WHERE name = 'created'"
        ) == [("CURRENT_TIMESTAMP",)]

    def test_defaults_apply(self, restored, query):
        dest, _ = restored
        conn = sqlite3.connect(dest)
        try:
            conn.execute("INSERT INTO users (id, email) VALUES (3, 'c@example.com')")
            conn.commit()
        finally:
            conn.close()
        assert query(dest, "SELECT score, created IS NOT NULL FROM users WHERE id = 3") == [
            (0, 1)
        ]

    def test_without_rowid_composite_key(self, make_db, workdir, query):
        db = make_db(
            "CREATE TABLE kv (ns TEXT, k TEXT, v BLOB, PRIMARY KEY (ns, k)) WITHOUT ROWID",
            {"kv": [("b", "x", b"1"), ("a", "y", b"2"), ("a", "x", b"3")]},
        )
        path, metadata = archive_table(db, "kv", workdir)
        assert metadata.table.without_rowid
        assert metadata.table.primary_key == ["ns", "k"]

        dest = os.path.join(workdir, "restored.db")
        DatabaseRestorer(dest).restore_all([path])
        (sql,) = query(dest, "SELECT sql FROM sqlite_master WHERE name = 'kv'")[0]
        assert sql.endswith("WITHOUT ROWID")
        assert 'PRIMARY KEY ("ns", "k")' in sql
        assert query(dest, "SELECT * FROM kv ORDER BY ns, k") == [
            ("a", "x", b"3"),
            ("a", "y", b"2"),
            ("b", "x", b"1"),
        ]


class TestExistingTables:
    """Behaviour when the destination already holds the table."""

    @pytest.fixture
    def archive_path(self, make_db, workdir):
        db = make_db("CREATE TABLE t (id INTEGER PRIMARY KEY)", {"t": [(1,), (2,)]})
        path, _ = archive_table(db, "t", workdir)
        return path

    def test_fails_by_default(self, archive_path, workdir, query):
        dest = os.path.join(workdir, "restored.db")
        assert DatabaseRestorer(dest).restore_all([archive_path])[0].success

        results = DatabaseRestorer(dest).restore_all([archive_path])
        assert not results[0].success
        assert results[0].error_code == "TABLE_EXISTS"
        assert query(dest, "SELECT COUNT(*) FROM t") == [(2,)]

    def test_replace(self, archive_path, workdir, query):
        dest = os.path.join(workdir, "restored.db")
        conn = sqlite3.connect(dest)
        conn.execute("CREATE TABLE t (other TEXT)")
        conn.execute("INSERT INTO t VALUES ('stale')")
        conn.commit()
        conn.close()

        results = DatabaseRestorer(dest, RestoreConfig(if_exists="replace")).restore_all(
            [archive_path]
        )
        assert results[0].success
        assert query(dest, "SELECT * FROM t ORDER BY id") == [(1,), (2,)]

    def test_table_restorer_direct(self, archive_path, workdir, query):
        dest = os.path.join(workdir, "restored.db")
        with SqliteDestination(dest) as destination:
            stats = TableRestorer(destination).restore(archive_path)
        assert (stats.table, stats.rows, stats.row_groups, stats.indexes) == ("t", 2, 1, 0)


class TestArchivePaths:
    """Archive file naming and discovery."""

    def test_unsafe_table_name(self, make_db, workdir, query):
        db = make_db('CREATE TABLE "order items/2024" (id INTEGER)', {"order items/2024": [(1,)]})
        path, _ = archive_table(db, "order items/2024", workdir)
        assert os.path.basename(path) == "order_items_2024.sqlarc"

        dest = os.path.join(workdir, "restored.db")
        results = DatabaseRestorer(dest).restore_all([workdir])
        assert results[0].table == "order items/2024"
        assert query(dest, 'SELECT id FROM "order items/2024"') == [(1,)]

    def test_expand_directories(self, workdir):
        for name in ["b.sqlarc", "a.sqlarc", "notes.txt"]:
            open(os.path.join(workdir, name), "wb").close()
        explicit = os.path.join(workdir, "explicit.bin")
        assert expand_archive_paths([workdir, explicit]) == [
            os.path.join(workdir, "a.sqlarc"),
            os.path.join(workdir, "b.sqlarc"),
            explicit,
        ]


class TestCatalogArchive:
    """Archiving sqlite_schema alongside the tables."""

    @pytest.fixture
    def db(self, make_db):
        return make_db(
            """
            CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT);
            CREATE VIEW item_names AS SELECT name FROM items;
            """,
            {"items": [(1, "a"), (2, "b")]},
        )

    @pytest.mark.asyncio
    async def test_catalog_not_archived_by_default(self, db, workdir):
        out_dir = os.path.join(workdir, "out")
        results = await DatabaseArchiver(db, out_dir).archive_all()
        assert [r.table for r in results] == ["items"]

    @pytest.mark.asyncio
    async def test_catalog_restored_into_side_table(self, db, workdir, query):
        out_dir = os.path.join(workdir, "out")
        archiver = DatabaseArchiver(db, out_dir, ArchiveConfig(include_schema=True))
        results = await archiver.archive_all()
        assert [r.table for r in results] == ["items", "sqlite_schema"]
        assert all(r.success for r in results)
        assert os.path.exists(os.path.join(out_dir, "sqlite_schema.sqlarc"))

        dest = os.path.join(workdir, "restored.db")
        restored = DatabaseRestorer(dest).restore_all([out_dir])
        assert [r.table for r in restored] == ["items", SCHEMA_SIDE_TABLE]
        assert all(r.success for r in restored)
        assert query(
            dest, f"SELECT type, name FROM {SCHEMA_SIDE_TABLE} ORDER BY name"
        ) == [("table", "items"), ("view", "item_names")]
        assert query(dest, "SELECT name FROM sqlite_master WHERE type = 'view'") == []
