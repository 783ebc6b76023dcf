"""
Discovery module for PDS Backup.

This module enumerates the actor stores present on disk:
- One handle per <shard>/<did>/ directory that holds a store.sqlite
- Signing key files, listed independently of their databases

Invariants:
    - A missing actors directory yields no handles, not an error
    - Entries that disappear mid-scan are skipped
    - Results are sorted by path
"""

from .scanner import DB_FILENAME, KEY_FILENAME, ActorStoreHandle, scan_actors, scan_key_files

__all__ = [
    "ActorStoreHandle",
    "scan_actors",
    "scan_key_files",
    "DB_FILENAME",
    "KEY_FILENAME",
]
