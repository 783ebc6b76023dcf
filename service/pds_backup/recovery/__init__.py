"""
Recovery module for PDS Backup.

This module rebuilds an empty actor store for an account whose store was
lost, keeping the DID so followers and other references stay valid.

Invariants:
    - Preconditions are checked before any mutation
    - Steps 1-4 are fatal and never rolled back; partial state is reported
    - Identity directory and cleanup failures never fail the recovery
    - At most one recovery per DID at a time (operational constraint)
"""

from .base import (
    AccountDirectory,
    ActorStoreManager,
    EventSequencer,
    IdentityDirectoryClient,
    Keypair,
    RecoveryContext,
)
from .saga import RecoveryResult, RecoverySaga, RecoveryStep, StepFailure

__all__ = [
    "AccountDirectory",
    "ActorStoreManager",
    "EventSequencer",
    "IdentityDirectoryClient",
    "Keypair",
    "RecoveryContext",
    "RecoveryResult",
    "RecoverySaga",
    "RecoveryStep",
    "StepFailure",
]
