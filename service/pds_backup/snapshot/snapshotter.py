"""
SQLite snapshot engine for PDS Backup.

The Snapshotter copies a live actor database into a scratch file using the
SQLite online backup API. The source is opened read-only; in WAL mode a
reader holds no lock that blocks writers, so the PDS keeps writing while
the copy runs and the copy reflects the last commit visible when the backup
step began.

Invariants:
    - Snapshots are atomic (single backup step over all pages)
    - The returned copy is a self-contained database (no -wal/-shm sidecars)
    - Concurrent snapshots of different databases are safe; snapshots of the
      same database must not overlap (the coordinator runs them sequentially)

How to change safely:
    - Keep the source read-only; never checkpoint the live database from here
    - Test against a database with an open writer before changing pragmas
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import tempfile
from pathlib import Path
from typing import Any

from ..errors import SnapshotError

logger = logging.getLogger(__name__)


class Snapshotter:
    """Creates consistent copies of SQLite databases.

    Attributes:
        scratch_dir: Directory for copies (system temp dir when None)
        busy_timeout_ms: How long to wait on a locked source

    Example:
        >>> snapshotter = Snapshotter()
        >>> copy = await snapshotter.snapshot(Path("/pds/actors/5b/did:plc:abc/store.sqlite"))
        >>> try:
        ...     await store.put(copy, "actors/5b/did:plc:abc/store.sqlite")
        ... finally:
        ...     copy.unlink()
    """

    def __init__(
        self,
        scratch_dir: str | Path | None = None,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.scratch_dir = Path(scratch_dir) if scratch_dir else None
        self.busy_timeout_ms = busy_timeout_ms
        self._snapshot_count = 0

    async def snapshot(self, db_path: str | Path) -> Path:
        """Create a consistent copy of a database.

        Args:
            db_path: Source database

        Returns:
            Path to the copy; the caller owns deleting it

        Raises:
            SnapshotError: If the source is missing, not a database, stays
                locked, or the copy fails its integrity check
        """
        db_path = Path(db_path)
        if not db_path.is_file():
            raise SnapshotError(f"Database not found: {db_path}", path=str(db_path))

        if self.scratch_dir:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix="actor-db-snapshot-",
            suffix=".sqlite",
            dir=self.scratch_dir,
        )
        os.close(fd)
        tmp_path = Path(tmp_name)

        try:
            await asyncio.get_running_loop().run_in_executor(
                None,
                self._backup_database,
                db_path,
                tmp_path,
            )
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        self._snapshot_count += 1
        logger.debug(
            "Created snapshot",
            extra={
                "source": str(db_path),
                "snapshot": str(tmp_path),
                "size_bytes": tmp_path.stat().st_size,
            },
        )
        return tmp_path

    def _backup_database(self, source_path: Path, dest_path: Path) -> None:
        """Create consistent database backup using SQLite backup API."""
        timeout = self.busy_timeout_ms / 1000.0
        try:
            source_conn = sqlite3.connect(
                f"{source_path.resolve().as_uri()}?mode=ro",
                uri=True,
                timeout=timeout,
            )
        except sqlite3.Error as e:
            raise SnapshotError(f"Cannot open {source_path}: {e}", path=str(source_path)) from e

        dest_conn = sqlite3.connect(str(dest_path))
        try:
            source_conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            source_conn.backup(dest_conn)

            result = dest_conn.execute("PRAGMA quick_check").fetchone()[0]
            if result != "ok":
                raise SnapshotError(
                    f"Snapshot of {source_path} failed quick_check: {result}",
                    path=str(source_path),
                )
        except sqlite3.Error as e:
            raise SnapshotError(
                f"Failed to snapshot {source_path}: {e}", path=str(source_path)
            ) from e
        finally:
            source_conn.close()
            dest_conn.close()

    @property
    def stats(self) -> dict[str, Any]:
        """Get snapshotter statistics."""
        return {"snapshot_count": self._snapshot_count}
