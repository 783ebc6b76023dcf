"""
Integration tests for the backup coordinator with an in-memory object store.

Tests cover:
- Keys and unreplicated databases uploaded once, then skipped
- Litestream-replicated databases never snapshotted
- Failed uploads retried on the next pass
- Snapshot failures isolated to one actor
- Prompt shutdown while sleeping
- Shutdown during a pass lets the pass finish
- Scan and pass errors never end the loop
"""

import asyncio
import os
import sqlite3
import tempfile
from pathlib import Path

import pytest

from service.pds_backup.backup import BackupCoordinator, CoordinatorState
from service.pds_backup.backup import coordinator as coordinator_module
from service.pds_backup.discovery import scanner
from service.pds_backup.discovery import ActorStoreHandle
from service.pds_backup.replication import ReplicatedSetSnapshot
from service.pds_backup.snapshot import Snapshotter
from service.pds_backup.storage import InMemoryObjectStore
from service.pds_backup.tracking import TrackedItemSet


def make_actor(actors_dir: Path, shard: str, did: str) -> ActorStoreHandle:
    directory = actors_dir / shard / did
    directory.mkdir(parents=True)
    db_path = directory / "store.sqlite"
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("CREATE TABLE record (uri TEXT PRIMARY KEY)")
        conn.execute("INSERT INTO record VALUES (?)", (f"at://{did}/app.bsky.feed.post/1",))
        conn.commit()
    finally:
        conn.close()
    key_path = directory / "key"
    key_path.write_bytes(b"\x07" * 32)
    return ActorStoreHandle(did=did, db_path=db_path, key_path=key_path)


class SlowObjectStore(InMemoryObjectStore):
    """In-memory store whose uploads take a while."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    async def put(self, local_path, remote_key):
        await asyncio.sleep(self.delay)
        await super().put(local_path, remote_key)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestBackupCoordinator:
    """Integration tests for BackupCoordinator."""

    @pytest.fixture
    def data_root(self):
        """Create temporary PDS data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            (root / "actors").mkdir()
            yield root

    @pytest.fixture
    def store(self):
        return InMemoryObjectStore()

    def make_coordinator(
        self,
        data_root: Path,
        store: InMemoryObjectStore,
        replicated: ReplicatedSetSnapshot | None = None,
        interval_seconds: float = 300,
    ) -> BackupCoordinator:
        return BackupCoordinator(
            actors_dir=data_root / "actors",
            data_root=data_root,
            object_store=store,
            snapshotter=Snapshotter(scratch_dir=data_root / "scratch"),
            replicated=replicated or ReplicatedSetSnapshot(),
            tracked_keys=TrackedItemSet(data_root / "backed-up-keys"),
            tracked_dbs=TrackedItemSet(data_root / "backed-up-dbs"),
            interval_seconds=interval_seconds,
        )

    @pytest.mark.asyncio
    async def test_uploads_new_items_once(self, data_root, store):
        """A second pass with nothing new uploads nothing."""
        make_actor(data_root / "actors", "5b", "did:plc:abc")
        coordinator = self.make_coordinator(data_root, store)

        first = await coordinator.run_pass()
        second = await coordinator.run_pass()

        assert first.keys_uploaded == 1
        assert first.dbs_uploaded == 1
        assert second.keys_uploaded == 0
        assert second.dbs_uploaded == 0
        assert store.upload_count("actors/5b/did:plc:abc/key") == 1
        assert store.upload_count("actors/5b/did:plc:abc/store.sqlite") == 1
        assert store.objects["actors/5b/did:plc:abc/key"] == b"\x07" * 32

    @pytest.mark.asyncio
    async def test_uploaded_snapshot_is_a_database(self, data_root, store):
        make_actor(data_root / "actors", "5b", "did:plc:abc")
        coordinator = self.make_coordinator(data_root, store)

        await coordinator.run_pass()

        restored = data_root / "restored.sqlite"
        restored.write_bytes(store.objects["actors/5b/did:plc:abc/store.sqlite"])
        conn = sqlite3.connect(str(restored))
        try:
            assert conn.execute("SELECT COUNT(*) FROM record").fetchone()[0] == 1
        finally:
            conn.close()
        assert list((data_root / "scratch").iterdir()) == []

    @pytest.mark.asyncio
    async def test_tracking_survives_restart(self, data_root, store):
        """Items recorded by a previous process are not uploaded again."""
        make_actor(data_root / "actors", "5b", "did:plc:abc")
        await self.make_coordinator(data_root, store).run_pass()

        result = await self.make_coordinator(data_root, store).run_pass()

        assert result.keys_uploaded == 0
        assert result.dbs_uploaded == 0
        assert len(store.uploads) == 2

    @pytest.mark.asyncio
    async def test_replicated_database_skipped(self, data_root, store):
        """Databases owned by Litestream are skipped; their keys are not."""
        replicated = make_actor(data_root / "actors", "5b", "did:plc:old")
        make_actor(data_root / "actors", "c1", "did:plc:new")
        coordinator = self.make_coordinator(
            data_root, store, ReplicatedSetSnapshot.from_handles([replicated])
        )

        result = await coordinator.run_pass()

        assert result.keys_uploaded == 2
        assert result.dbs_uploaded == 1
        assert "actors/5b/did:plc:old/store.sqlite" not in store.put_calls
        assert "actors/c1/did:plc:new/store.sqlite" in store.uploads

    @pytest.mark.asyncio
    async def test_failed_upload_retried_next_pass(self, data_root, store):
        """A failed item is not recorded and is retried on the next pass."""
        make_actor(data_root / "actors", "5b", "did:plc:abc")
        make_actor(data_root / "actors", "c1", "did:plc:def")
        coordinator = self.make_coordinator(data_root, store)
        store.fail_keys.add("actors/5b/did:plc:abc/key")

        first = await coordinator.run_pass()

        assert first.failed == [str(data_root / "actors/5b/did:plc:abc/key")]
        assert first.keys_uploaded == 1
        assert first.dbs_uploaded == 2
        assert str(data_root / "actors/5b/did:plc:abc/key") not in coordinator.tracked_keys

        store.fail_keys.clear()
        second = await coordinator.run_pass()

        assert second.keys_uploaded == 1
        assert second.failed == []
        assert store.upload_count("actors/5b/did:plc:abc/key") == 1
        assert store.upload_count("actors/c1/did:plc:def/key") == 1

    @pytest.mark.asyncio
    async def test_snapshot_failure_isolated(self, data_root, store):
        """A corrupt database fails alone; other actors are backed up."""
        broken = make_actor(data_root / "actors", "5b", "did:plc:broken")
        broken.db_path.write_bytes(b"garbage" * 1000)
        for sidecar in ("store.sqlite-wal", "store.sqlite-shm"):
            (broken.directory / sidecar).unlink(missing_ok=True)
        make_actor(data_root / "actors", "c1", "did:plc:fine")
        coordinator = self.make_coordinator(data_root, store)

        result = await coordinator.run_pass()

        assert result.failed == [str(broken.db_path)]
        assert "actors/c1/did:plc:fine/store.sqlite" in store.uploads
        assert "actors/5b/did:plc:broken/store.sqlite" not in store.put_calls
        assert coordinator.stats["failures"] == 1

    @pytest.mark.asyncio
    async def test_actor_created_between_passes(self, data_root, store):
        coordinator = self.make_coordinator(data_root, store)
        assert (await coordinator.run_pass()).dbs_uploaded == 0

        make_actor(data_root / "actors", "5b", "did:plc:late")
        result = await coordinator.run_pass()

        assert result.keys_uploaded == 1
        assert result.dbs_uploaded == 1

    @pytest.mark.asyncio
    async def test_stop_while_sleeping(self, data_root, store):
        """stop() interrupts the interval sleep promptly."""
        make_actor(data_root / "actors", "5b", "did:plc:abc")
        coordinator = self.make_coordinator(data_root, store, interval_seconds=3600)
        assert coordinator.state is CoordinatorState.IDLE

        task = asyncio.create_task(coordinator.start())
        for _ in range(200):
            if coordinator.stats["pass_count"]:
                break
            await asyncio.sleep(0.01)
        assert coordinator.stats["pass_count"] == 1

        await coordinator.stop()
        await asyncio.wait_for(task, timeout=5)

        assert coordinator.state is CoordinatorState.TERMINATED
        assert len(store.uploads) == 2

    @pytest.mark.asyncio
    async def test_no_pass_after_stop(self, data_root, store):
        make_actor(data_root / "actors", "5b", "did:plc:abc")
        coordinator = self.make_coordinator(data_root, store)

        await coordinator.stop()
        result = await coordinator.run_pass()

        assert coordinator.state is CoordinatorState.SHUTTING_DOWN
        assert result.keys_uploaded == 0
        assert store.put_calls == []

    @pytest.mark.asyncio
    async def test_stop_during_pass_lets_it_finish(self, data_root):
        """An in-flight pass completes; no further pass starts."""
        make_actor(data_root / "actors", "5b", "did:plc:a")
        store = SlowObjectStore(delay=0.2)
        coordinator = self.make_coordinator(data_root, store, interval_seconds=0.01)

        task = asyncio.create_task(coordinator.start())
        await wait_until(lambda: coordinator.state is CoordinatorState.BACKING_UP)
        await coordinator.stop()
        await asyncio.wait_for(task, timeout=5)

        assert store.uploads == [
            "actors/5b/did:plc:a/key",
            "actors/5b/did:plc:a/store.sqlite",
        ]
        assert coordinator.stats["pass_count"] == 1
        assert coordinator.state is CoordinatorState.TERMINATED

    @pytest.mark.asyncio
    async def test_unreadable_shard_does_not_stop_loop(self, data_root, store, monkeypatch):
        """A shard that cannot be listed is skipped every pass; others are backed up."""
        make_actor(data_root / "actors", "5b", "did:plc:ok")
        make_actor(data_root / "actors", "zz", "did:plc:locked")
        real_scandir = os.scandir

        def denied_scandir(path):
            if Path(path).name == "zz":
                raise PermissionError(13, "Permission denied", str(path))
            return real_scandir(path)

        monkeypatch.setattr(scanner.os, "scandir", denied_scandir)
        coordinator = self.make_coordinator(data_root, store, interval_seconds=0.01)

        task = asyncio.create_task(coordinator.start())
        await wait_until(lambda: coordinator.stats["pass_count"] >= 2)

        assert not task.done()
        assert "actors/5b/did:plc:ok/key" in store.uploads
        assert not any("did:plc:locked" in key for key in store.put_calls)

        await coordinator.stop()
        await asyncio.wait_for(task, timeout=5)

    @pytest.mark.asyncio
    async def test_failed_pass_retried_next_interval(self, data_root, store, monkeypatch):
        """An unexpected pass-level error is logged and the next pass runs."""
        make_actor(data_root / "actors", "5b", "did:plc:ok")
        real_scan = coordinator_module.scan_key_files
        calls = []

        def failing_once(root):
            calls.append(root)
            if len(calls) == 1:
                raise RuntimeError("scan exploded")
            return real_scan(root)

        monkeypatch.setattr(coordinator_module, "scan_key_files", failing_once)
        coordinator = self.make_coordinator(data_root, store, interval_seconds=0.01)

        task = asyncio.create_task(coordinator.start())
        await wait_until(lambda: "actors/5b/did:plc:ok/key" in store.uploads)

        assert not task.done()
        assert coordinator.state is not CoordinatorState.TERMINATED

        await coordinator.stop()
        await asyncio.wait_for(task, timeout=5)
        assert coordinator.state is CoordinatorState.TERMINATED
