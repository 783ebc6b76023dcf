"""
Snapshot module for PDS Backup.

This module produces point-in-time copies of live actor databases for
the periodic backup path:
- Consistent copies of WAL-mode databases via the SQLite backup API
- Writers are never blocked longer than the copy itself

Invariants:
    - Only complete copies that pass quick_check are returned
    - Copies live in a private scratch location; the caller deletes them
    - Failed copies are cleaned up before SnapshotError is raised
"""

from .snapshotter import Snapshotter

__all__ = ["Snapshotter"]
