"""
PDS Backup - backup coordination and actor recovery for per-tenant SQLite stores.

This package keeps a fleet of per-actor SQLite stores recoverable:
- Litestream continuously replicates every actor store known at startup
- A periodic coordinator snapshots actor stores created after startup
- Signing key files (not SQLite) are uploaded by the same coordinator
- A recovery saga rebuilds a lost actor store under the same DID

Architecture:
    ┌──────────────┐   startup scan   ┌──────────────────┐
    │  Discovery   │─────────────────▶│  Config Builder  │──▶ litestream.yml
    │  Scanner     │                  └──────────────────┘         │
    └──────┬───────┘                                               ▼
           │ periodic scan                                  ┌────────────┐
           ▼                                                │ Litestream │
    ┌──────────────┐   ┌──────────────┐   ┌──────────┐      └─────┬──────┘
    │   Backup     │──▶│  Snapshotter │──▶│  Object  │            │
    │ Coordinator  │   └──────────────┘   │  Store   │◀───────────┘
    └──────┬───────┘                      └──────────┘
           ▼
    ┌──────────────┐
    │ TrackedItem  │
    │ Sets (local) │
    └──────────────┘

Invariants:
    - An item is recorded as backed up only after its upload succeeded
    - Databases owned by Litestream are never snapshotted by the coordinator
    - Missing remote-storage credentials disable backup, never the PDS
    - Recovery never deletes partially created state

How to change safely:
    - Keep the remote path layout stable; restores depend on it
    - Test the coordinator with failing uploads before changing retry logic
    - Recovery steps 1-4 must stay fatal; do not add automatic rollback

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
