"""
sqlarc test suite.

This package contains:
- unit/: Unit tests (no I/O beyond temporary files)
- integration/: Archive and restore round trips against real SQLite files
"""
