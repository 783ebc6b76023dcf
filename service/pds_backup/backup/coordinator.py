"""
Periodic backup coordinator.

The coordinator is one long-lived asyncio task. Each pass:
1. Uploads every signing key file not yet in the key set
2. Snapshots and uploads every actor database that Litestream does not
   own (per the startup ReplicatedSetSnapshot) and that is not yet in the
   database set
3. Records each item only after its upload was acknowledged

Items are processed one at a time, so the same database is never
snapshotted twice concurrently and each tracked set has a single writer.

State machine:
    IDLE -> SCANNING -> BACKING_UP -> IDLE
    IDLE -> SHUTTING_DOWN -> TERMINATED

How to change safely:
    - Never record an item before put() returned
    - Keep per-item error handling broad; one bad actor must not starve the rest
    - Do not cancel the task to stop it; call stop() so uploads can finish
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..discovery import scan_actors, scan_key_files
from ..replication import ReplicatedSetSnapshot
from ..snapshot import Snapshotter
from ..storage import ObjectStore, remote_key_for
from ..tracking import TrackedItemSet

logger = logging.getLogger(__name__)


class CoordinatorState(Enum):
    """Backup loop states."""

    IDLE = "idle"
    SCANNING = "scanning"
    BACKING_UP = "backing_up"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


@dataclass
class PassResult:
    """Outcome of one backup pass.

    Attributes:
        keys_uploaded: Key files uploaded and recorded
        dbs_uploaded: Databases snapshotted, uploaded and recorded
        failed: Local paths that failed and stay eligible for retry
    """

    keys_uploaded: int = 0
    dbs_uploaded: int = 0
    failed: list[str] = field(default_factory=list)


class BackupCoordinator:
    """Periodic snapshot backup for items Litestream does not cover.

    Attributes:
        actors_dir: Directory holding <shard>/<did>/ actor stores
        data_root: Prefix stripped from local paths to form remote keys
        object_store: Remote storage
        snapshotter: Snapshot engine for databases
        replicated: Databases owned by Litestream (captured at startup)
        tracked_keys: Key files already backed up
        tracked_dbs: Databases already backed up
        interval_seconds: Sleep between passes

    Example:
        >>> coordinator = BackupCoordinator(...)
        >>> task = asyncio.create_task(coordinator.start())
        >>> ...
        >>> await coordinator.stop()
        >>> await task
    """

    def __init__(
        self,
        actors_dir: str | Path,
        data_root: str | Path,
        object_store: ObjectStore,
        snapshotter: Snapshotter,
        replicated: ReplicatedSetSnapshot,
        tracked_keys: TrackedItemSet,
        tracked_dbs: TrackedItemSet,
        interval_seconds: float = 300,
    ) -> None:
        self.actors_dir = Path(actors_dir)
        self.data_root = Path(data_root)
        self.object_store = object_store
        self.snapshotter = snapshotter
        self.replicated = replicated
        self.tracked_keys = tracked_keys
        self.tracked_dbs = tracked_dbs
        self.interval_seconds = interval_seconds

        self._state = CoordinatorState.IDLE
        self._started = False
        self._shutdown = asyncio.Event()
        self._pass_count = 0
        self._keys_uploaded = 0
        self._dbs_uploaded = 0
        self._failures = 0

    @property
    def state(self) -> CoordinatorState:
        return self._state

    async def start(self) -> None:
        """Run passes until stop() is called.

        The first pass runs immediately, then one pass per interval.
        """
        if self._started:
            logger.warning("Backup coordinator already started")
            return
        self._started = True

        logger.info(
            f"Starting periodic backup (every {self.interval_seconds}s)",
            extra={
                "actors_dir": str(self.actors_dir),
                "replicated_dbs": len(self.replicated),
                "tracked_keys": len(self.tracked_keys),
                "tracked_dbs": len(self.tracked_dbs),
            },
        )

        try:
            while not self._shutdown.is_set():
                try:
                    await self.run_pass()
                except Exception as e:
                    logger.error(f"Backup pass failed, retrying next interval: {e}", exc_info=True)
                if await self._sleep():
                    break
        finally:
            self._state = CoordinatorState.TERMINATED
            logger.info("Backup coordinator stopped")

    async def stop(self) -> None:
        """Request shutdown; the current pass (if any) is allowed to finish."""
        if not self._shutdown.is_set():
            logger.info("Stopping backup coordinator")
        self._shutdown.set()
        if self._state is CoordinatorState.IDLE:
            self._state = CoordinatorState.SHUTTING_DOWN

    async def _sleep(self) -> bool:
        """Sleep for one interval; returns True if shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def run_pass(self) -> PassResult:
        """Run one full backup pass.

        Never raises for per-item failures; they are logged and reported in
        the result.
        """
        result = PassResult()
        if self._shutdown.is_set():
            return result

        self._state = CoordinatorState.SCANNING
        try:
            key_files = scan_key_files(self.actors_dir)
            handles = scan_actors(self.actors_dir)

            self._state = CoordinatorState.BACKING_UP
            for key_path in key_files:
                await self._backup_key(key_path, result)
            for handle in handles:
                await self._backup_db(handle.db_path, result)
        finally:
            self._state = (
                CoordinatorState.SHUTTING_DOWN
                if self._shutdown.is_set()
                else CoordinatorState.IDLE
            )

        self._pass_count += 1
        self._keys_uploaded += result.keys_uploaded
        self._dbs_uploaded += result.dbs_uploaded
        self._failures += len(result.failed)

        if result.keys_uploaded:
            logger.info(f"Uploaded {result.keys_uploaded} new signing key(s)")
        if result.dbs_uploaded:
            logger.info(f"Snapshot-backed {result.dbs_uploaded} new actor database(s)")
        if result.failed:
            logger.warning(
                f"{len(result.failed)} item(s) failed, will retry next pass",
                extra={"failed": result.failed},
            )

        return result

    async def _backup_key(self, key_path: Path, result: PassResult) -> None:
        item = str(key_path)
        if item in self.tracked_keys:
            return

        try:
            await self.object_store.put(key_path, remote_key_for(key_path, self.data_root))
            self.tracked_keys.record(item)
            result.keys_uploaded += 1
        except Exception as e:
            logger.warning(f"Failed to upload {key_path}: {e}", exc_info=True)
            result.failed.append(item)

    async def _backup_db(self, db_path: Path, result: PassResult) -> None:
        item = str(db_path)
        if self.replicated.covers(item) or item in self.tracked_dbs:
            return

        snapshot = None
        try:
            snapshot = await self.snapshotter.snapshot(db_path)
            remote_key = remote_key_for(db_path, self.data_root)
            await self.object_store.put(snapshot, remote_key)
            self.tracked_dbs.record(item)
            result.dbs_uploaded += 1
            logger.debug("Snapshot uploaded", extra={"db_path": item, "remote_key": remote_key})
        except Exception as e:
            logger.warning(f"Failed to back up {db_path}: {e}", exc_info=True)
            result.failed.append(item)
        finally:
            if snapshot is not None:
                snapshot.unlink(missing_ok=True)

    @property
    def stats(self) -> dict[str, Any]:
        """Get coordinator statistics."""
        return {
            "state": self._state.value,
            "pass_count": self._pass_count,
            "keys_uploaded": self._keys_uploaded,
            "dbs_uploaded": self._dbs_uploaded,
            "failures": self._failures,
        }
