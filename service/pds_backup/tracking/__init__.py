"""
Tracking module for PDS Backup.

A TrackedItemSet records which items the periodic backup path has
successfully uploaded, so a restarted coordinator does not redo them.

Invariants:
    - record() is called only after the upload is confirmed
    - The log is append-only; nothing is ever removed
    - One coordinator owns each set (single writer)
"""

from .tracked_set import TrackedItemSet

__all__ = ["TrackedItemSet"]
