"""
PDS Backup Test Suite.

This package contains:
- unit/: Unit tests (no external services)
- integration/: Integration tests (SQLite, in-memory object store, subprocesses)
"""
