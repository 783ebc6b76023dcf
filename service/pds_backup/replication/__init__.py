"""
Continuous replication module for PDS Backup.

This module feeds Litestream, which streams committed WAL frames of every
listed database to remote storage until it is terminated:
- Builds the Litestream config from the base config plus discovered actors
- Captures which databases Litestream owns, for the periodic backup path

Invariants:
    - The config is built exactly once, before Litestream starts
    - Litestream cannot reload its config, so actors created later are
      covered by the backup coordinator until the next restart
    - Credentials are written as ${VAR} placeholders, never as values
"""

from .config_builder import (
    ReplicaSettings,
    ReplicatedSetSnapshot,
    ReplicationConfig,
    ReplicationTarget,
    build_replication_config,
    load_base_config,
    write_replication_config,
)

__all__ = [
    "ReplicaSettings",
    "ReplicatedSetSnapshot",
    "ReplicationConfig",
    "ReplicationTarget",
    "build_replication_config",
    "load_base_config",
    "write_replication_config",
]
