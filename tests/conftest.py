"""
Shared fixtures for the sqlarc test suite.

Databases are created in temporary directories; nothing touches the
working tree.
"""

import os
import sqlite3
import tempfile

import pytest


@pytest.fixture
def workdir():
    """Create temporary working directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def make_db(workdir):
    """Factory creating a SQLite database from a DDL script and rows.

    Usage:
        path = make_db("CREATE TABLE t (a INTEGER)", {"t": [(1,), (2,)]})
    """

    def _make(script, rows=None, name="source.db"):
        path = os.path.join(workdir, name)
        conn = sqlite3.connect(path)
        try:
            conn.executescript(script)
            for table, table_rows in (rows or {}).items():
                if not table_rows:
                    continue
                placeholders = ", ".join("?" for _ in table_rows[0])
                conn.executemany(f'INSERT INTO "{table}" VALUES ({placeholders})', table_rows)
            conn.commit()
        finally:
            conn.close()
        return path

    return _make


def read_rows(path, sql):
    conn = sqlite3.connect(path)
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


@pytest.fixture
def query():
    """Run a query against a database file and return all rows."""
    return read_rows


@pytest.fixture
def clean_env(monkeypatch):
    """Remove sqlarc settings from the environment."""
    for name in list(os.environ):
        if name.startswith("SQLARC_") or name in ("LOG_LEVEL", "LOG_FORMAT"):
            monkeypatch.delenv(name)
    return monkeypatch
