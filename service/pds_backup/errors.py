"""
Error types for PDS Backup.

This module defines all exception types raised by the backup and recovery
subsystems:
- PdsBackupError: Base exception
- AccountNotFoundError: No account record for the DID
- ActorStoreExistsError: Recovery attempted against a live actor store
- SnapshotError: Local snapshot could not be produced
- UploadError: Remote storage unreachable or rejected the object
- DirectoryUpdateError: Identity directory key rotation failed
- SequencingError: Change-event sequencer unavailable

Invariants:
    - All errors inherit from PdsBackupError
    - Errors carry the identifier they concern in details
    - Secrets are never included in messages
"""

from __future__ import annotations

from typing import Any


class PdsBackupError(Exception):
    """Base exception for all PDS Backup errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "PDS_BACKUP_ERROR"
        self.details = details or {}


class AccountNotFoundError(PdsBackupError):
    """No account record exists for the DID."""

    def __init__(self, did: str) -> None:
        super().__init__(
            f"No account found for {did}",
            code="NOT_FOUND",
            details={"did": did},
        )
        self.did = did


class ActorStoreExistsError(PdsBackupError):
    """An actor store already exists for the DID.

    Raised when:
    - Recovery is attempted against an intact store
    - A store is created twice for the same DID
    """

    def __init__(self, did: str) -> None:
        super().__init__(
            f"Actor store already exists for {did}",
            code="ALREADY_EXISTS",
            details={"did": did},
        )
        self.did = did


class SnapshotError(PdsBackupError):
    """A consistent database copy could not be produced.

    Raised when:
    - The source file is missing or is not a SQLite database
    - The source stays locked past the busy timeout
    - The copy fails its integrity check
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message, code="SNAPSHOT_ERROR", details={"path": path})
        self.path = path


class UploadError(PdsBackupError):
    """Remote storage did not accept an object."""

    def __init__(self, message: str, remote_key: str | None = None) -> None:
        super().__init__(message, code="UPLOAD_ERROR", details={"remote_key": remote_key})
        self.remote_key = remote_key


class DirectoryUpdateError(PdsBackupError):
    """Identity directory rejected or could not receive a key rotation."""

    def __init__(
        self,
        message: str,
        did: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            code="DIRECTORY_UPDATE_ERROR",
            details={"did": did, "status_code": status_code},
        )
        self.did = did
        self.status_code = status_code


class SequencingError(PdsBackupError):
    """The change-event sequencer is unavailable."""

    def __init__(self, message: str, did: str | None = None) -> None:
        super().__init__(message, code="SEQUENCING_ERROR", details={"did": did})
        self.did = did
