"""
Local PDS collaborators used by actor recovery.

This module provides SQLite-backed implementations of the interfaces the
recovery saga consumes, pointed at the same files the PDS uses:
- ActorStore: per-actor directories, databases and key files
- AccountManager: account records and repo roots
- Sequencer: change events for the firehose
- PlcClient: signing key rotation in the PLC directory
- Secp256k1Keypair: signing and rotation keys

Invariants:
    - These classes never delete actor data
    - Schemas are created with IF NOT EXISTS; the PDS owns migrations
"""

from .account import Account, AccountManager
from .actor_store import ActorLocation, ActorStore, ActorStoreNotFoundError, ActorTransaction
from .identity import PlcClient
from .keypair import Secp256k1Keypair
from .repo import Commit, RepoTransactor, next_tid
from .sequencer import SequencedEvent, Sequencer

__all__ = [
    "Account",
    "AccountManager",
    "ActorLocation",
    "ActorStore",
    "ActorStoreNotFoundError",
    "ActorTransaction",
    "Commit",
    "PlcClient",
    "RepoTransactor",
    "Secp256k1Keypair",
    "SequencedEvent",
    "Sequencer",
    "next_tid",
]
