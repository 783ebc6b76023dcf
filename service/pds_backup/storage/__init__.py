"""
Remote object storage for PDS Backup.

This module provides the narrow put-only interface the backup subsystem
needs, plus the local-path to remote-key mapping shared by Litestream
targets and snapshot uploads.

Invariants:
    - put() returns only after the object store acknowledged the write
    - Failures surface as UploadError
    - Remote keys are the local path relative to the PDS data directory
"""

from .object_store import (
    InMemoryObjectStore,
    ObjectStore,
    S3ObjectStore,
    remote_key_for,
)

__all__ = [
    "ObjectStore",
    "S3ObjectStore",
    "InMemoryObjectStore",
    "remote_key_for",
]
