"""
Litestream config builder.

Generated config shape (YAML):

    dbs:
      - path: /pds/account.sqlite          # from the base config, untouched
        replicas: [...]
      - path: /pds/actors/5b/did:plc:abc/store.sqlite
        replicas:
          - type: s3
            endpoint: ${LITESTREAM_R2_ENDPOINT}
            bucket: pds-backup
            path: actors/5b/did:plc:abc/store.sqlite
            access-key-id: ${LITESTREAM_ACCESS_KEY_ID}
            secret-access-key: ${LITESTREAM_SECRET_ACCESS_KEY}
            sync-interval: 60s

Litestream expands ${VAR} references itself, so secrets never touch disk.

How to change safely:
    - Keep remote paths identical to storage.remote_key_for(); the periodic
      backup path uploads to the same keys
    - Base config keys other than dbs are passed through unchanged
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..discovery import ActorStoreHandle
from ..storage import remote_key_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplicationTarget:
    """A (local database, remote path) pair watched by Litestream."""

    local_path: str
    remote_path: str


@dataclass(frozen=True)
class ReplicaSettings:
    """Replica block written for every actor database.

    Attributes:
        bucket: Destination bucket
        endpoint: Endpoint (placeholder expanded by Litestream)
        access_key_id: Access key (placeholder expanded by Litestream)
        secret_access_key: Secret key (placeholder expanded by Litestream)
        sync_interval: How often Litestream pushes WAL frames
    """

    bucket: str = "pds-backup"
    endpoint: str = "${LITESTREAM_R2_ENDPOINT}"
    access_key_id: str = "${LITESTREAM_ACCESS_KEY_ID}"
    secret_access_key: str = "${LITESTREAM_SECRET_ACCESS_KEY}"
    sync_interval: str = "60s"

    def replica_for(self, remote_path: str) -> dict[str, Any]:
        return {
            "type": "s3",
            "endpoint": self.endpoint,
            "bucket": self.bucket,
            "path": remote_path,
            "access-key-id": self.access_key_id,
            "secret-access-key": self.secret_access_key,
            "sync-interval": self.sync_interval,
        }


@dataclass(frozen=True)
class ReplicationConfig:
    """A complete Litestream config.

    Attributes:
        settings: Top-level base config keys other than dbs
        base_dbs: Database entries of the base config, verbatim
        actor_targets: One target per discovered actor database
        replica: Replica settings used for actor targets
    """

    settings: dict[str, Any] = field(default_factory=dict)
    base_dbs: tuple[dict[str, Any], ...] = ()
    actor_targets: tuple[ReplicationTarget, ...] = ()
    replica: ReplicaSettings = field(default_factory=ReplicaSettings)

    def targets(self) -> list[ReplicationTarget]:
        """All targets: the fixed base databases first, then actor databases."""
        base = []
        for db in self.base_dbs:
            replicas = db.get("replicas") or [db.get("replica") or {}]
            first = replicas[0] if replicas else {}
            base.append(
                ReplicationTarget(
                    local_path=str(db.get("path", "")),
                    remote_path=str(first.get("path", "")),
                )
            )
        return base + list(self.actor_targets)

    def to_dict(self) -> dict[str, Any]:
        dbs = [dict(db) for db in self.base_dbs]
        dbs.extend(
            {
                "path": target.local_path,
                "replicas": [self.replica.replica_for(target.remote_path)],
            }
            for target in self.actor_targets
        )
        return {**self.settings, "dbs": dbs}

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)


@dataclass(frozen=True)
class ReplicatedSetSnapshot:
    """Databases owned by Litestream, captured once at startup.

    The snapshot goes stale as new actors are created; that is expected.
    Those actors are picked up by the backup coordinator until the next
    restart regenerates the Litestream config.
    """

    db_paths: frozenset[str] = frozenset()

    @classmethod
    def from_config(cls, config: ReplicationConfig) -> ReplicatedSetSnapshot:
        return cls(frozenset(target.local_path for target in config.actor_targets))

    @classmethod
    def from_handles(cls, handles: Iterable[ActorStoreHandle]) -> ReplicatedSetSnapshot:
        return cls(frozenset(str(handle.db_path) for handle in handles))

    def covers(self, db_path: str | Path) -> bool:
        return str(db_path) in self.db_paths

    def __len__(self) -> int:
        return len(self.db_paths)


def build_replication_config(
    handles: Sequence[ActorStoreHandle],
    base_config: dict[str, Any] | None,
    *,
    data_root: str | Path,
    replica: ReplicaSettings | None = None,
) -> ReplicationConfig:
    """Append one replication target per discovered actor to the base config.

    Pure: reads no files and does not modify base_config.

    Args:
        handles: Discovered actor stores
        base_config: Parsed base config (None or {} for no fixed databases)
        data_root: Prefix stripped from local paths to form remote paths
        replica: Replica settings for actor targets

    Returns:
        The complete config

    Raises:
        ValueError: If the base config is malformed or a handle lies
            outside data_root
    """
    base_config = dict(base_config or {})
    base_dbs = base_config.pop("dbs", None) or []
    if not isinstance(base_dbs, list):
        raise ValueError("Base Litestream config 'dbs' must be a list")

    targets = tuple(
        ReplicationTarget(
            local_path=str(handle.db_path),
            remote_path=remote_key_for(handle.db_path, data_root),
        )
        for handle in handles
    )

    return ReplicationConfig(
        settings=base_config,
        base_dbs=tuple(dict(db) for db in base_dbs),
        actor_targets=targets,
        replica=replica or ReplicaSettings(),
    )


def load_base_config(path: str | Path) -> dict[str, Any]:
    """Read the base Litestream config; a missing file means no fixed databases."""
    path = Path(path)
    if not path.exists():
        logger.warning(f"Litestream base config not found: {path}")
        return {}

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Litestream base config must be a mapping: {path}")
    return data


def write_replication_config(config: ReplicationConfig, path: str | Path) -> None:
    """Write the config atomically (temp file + rename)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=".litestream-", suffix=".yml", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(config.to_yaml())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    logger.info(
        f"Litestream config generated with {len(config.actor_targets)} actor database(s)",
        extra={"path": str(path), "total_targets": len(config.targets())},
    )
