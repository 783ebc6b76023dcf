"""
Integration tests for actor recovery against real local stores.

Uses AccountManager, ActorStore and Sequencer on a temporary data
directory, with a fake identity directory client.

Tests cover:
- End-to-end recovery of a missing actor store
- Precondition refusals with no writes
- Non-fatal identity directory failure
- Fatal sequencer failure
- Fatal repo creation failure and reported partial state
- Fatal repo root update failure
- Reserved keypair cleanup, and ignored cleanup failure
"""

import tempfile
from pathlib import Path

import pytest

from service.pds_backup.actors import (
    AccountManager,
    ActorStore,
    Secp256k1Keypair,
    Sequencer,
)
from service.pds_backup.errors import (
    AccountNotFoundError,
    ActorStoreExistsError,
    DirectoryUpdateError,
    SequencingError,
)
from service.pds_backup.recovery import RecoveryContext, RecoveryStep, RecoverySaga

DID = "did:plc:test1"
HANDLE = "test1.example.com"


class FakeIdentityDirectory:
    """Records signing key updates; optionally fails."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.updates: list[tuple[str, str]] = []

    async def update_signing_key(self, did, rotation_key, new_key_id):
        if self.error is not None:
            raise self.error
        self.updates.append((did, new_key_id))


class UnavailableSequencer:
    async def sequence_identity_event(self, did, handle):
        raise SequencingError("Sequencer database unavailable: disk I/O error", did=did)

    async def sequence_commit(self, did, commit):
        raise SequencingError("Sequencer database unavailable: disk I/O error", did=did)


class BrokenRepoActorStore(ActorStore):
    """ActorStore whose repo creation fails."""

    async def transact(self, did, fn):
        raise RuntimeError("disk full")


class BrokenCleanupActorStore(ActorStore):
    """ActorStore whose reserved keypair cleanup fails."""

    async def clear_reserved_keypair(self, key_did, did=None):
        raise PermissionError(13, "Permission denied")


class ReadOnlyAccountManager(AccountManager):
    """AccountManager whose repo root update fails."""

    async def update_repo_root(self, did, cid, rev):
        raise RuntimeError("attempt to write a readonly database")


class TestRecoverySaga:
    """Integration tests for RecoverySaga."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary PDS data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    async def accounts(self, data_dir):
        manager = AccountManager(data_dir / "account.sqlite")
        await manager.initialize()
        await manager.create_account(DID, HANDLE)
        return manager

    @pytest.fixture
    def actor_store(self, data_dir):
        return ActorStore(data_dir / "actors")

    @pytest.fixture
    def sequencer(self, data_dir):
        return Sequencer(data_dir / "sequencer.sqlite")

    def make_context(self, accounts, actor_store, sequencer, identity=None, rotation_key=None):
        return RecoveryContext(
            accounts=accounts,
            actor_store=actor_store,
            identity=identity or FakeIdentityDirectory(),
            rotation_key=rotation_key or Secp256k1Keypair.create(),
            sequencer=sequencer,
            keypair_factory=Secp256k1Keypair.create,
        )

    @pytest.mark.asyncio
    async def test_recover_missing_actor(self, accounts, actor_store, sequencer):
        """The store is rebuilt with one commit and the account points at it."""
        identity = FakeIdentityDirectory()
        saga = RecoverySaga(self.make_context(accounts, actor_store, sequencer, identity))

        result = await saga.recover(DID)

        assert result.success
        assert not result.degraded
        assert result.handle == HANDLE
        assert result.completed_steps == list(RecoveryStep)

        assert await actor_store.exists(DID)
        assert await actor_store.count_commits(DID) == 1
        assert await actor_store.count_records(DID) == 0
        assert actor_store.load_keypair(DID).did() == result.signing_key_id

        account = await accounts.get_account(DID)
        assert account.repo_root_cid == result.commit.cid
        assert account.repo_rev == result.commit.rev
        assert (await actor_store.get_repo_root(DID))["cid"] == result.commit.cid

        assert identity.updates == [(DID, result.signing_key_id)]

        events = await sequencer.events_for(DID)
        assert [e.event_type for e in events] == ["identity", "commit"]
        assert events[0].event["handle"] == HANDLE
        assert events[1].event["commit"] == result.commit.cid

    @pytest.mark.asyncio
    async def test_key_file_permissions(self, accounts, actor_store, sequencer):
        saga = RecoverySaga(self.make_context(accounts, actor_store, sequencer))

        await saga.recover(DID)

        key_path = actor_store.location(DID).key_path
        assert key_path.stat().st_mode & 0o777 == 0o600

    @pytest.mark.asyncio
    async def test_refuses_existing_store(self, accounts, actor_store, sequencer):
        """An intact store is never overwritten."""
        await actor_store.create(DID, Secp256k1Keypair.create())
        original_key = actor_store.location(DID).key_path.read_bytes()
        saga = RecoverySaga(self.make_context(accounts, actor_store, sequencer))

        with pytest.raises(ActorStoreExistsError):
            await saga.recover(DID)

        assert actor_store.location(DID).key_path.read_bytes() == original_key
        assert await actor_store.count_commits(DID) == 0
        assert (await accounts.get_account(DID)).repo_root_cid is None
        assert await sequencer.events_for(DID) == []

    @pytest.mark.asyncio
    async def test_refuses_unknown_account(self, accounts, actor_store, sequencer):
        saga = RecoverySaga(self.make_context(accounts, actor_store, sequencer))

        with pytest.raises(AccountNotFoundError):
            await saga.recover("did:plc:unknown")

        assert not actor_store.location("did:plc:unknown").directory.exists()
        assert await sequencer.events_for("did:plc:unknown") == []

    @pytest.mark.asyncio
    async def test_identity_failure_is_not_fatal(self, accounts, actor_store, sequencer):
        """A directory failure leaves a usable store and a flagged warning."""
        identity = FakeIdentityDirectory(
            error=DirectoryUpdateError("Rotation key is not authorized for this DID", did=DID)
        )
        saga = RecoverySaga(self.make_context(accounts, actor_store, sequencer, identity))

        result = await saga.recover(DID)

        assert result.success
        assert result.degraded
        [warning] = result.warnings
        assert warning.step is RecoveryStep.UPDATE_IDENTITY
        assert not warning.fatal
        assert RecoveryStep.UPDATE_IDENTITY not in result.completed_steps
        assert RecoveryStep.SEQUENCE_EVENTS in result.completed_steps
        assert len(await sequencer.events_for(DID)) == 2

    @pytest.mark.asyncio
    async def test_missing_rotation_key_is_not_fatal(self, accounts, actor_store, sequencer):
        identity = FakeIdentityDirectory()
        context = self.make_context(accounts, actor_store, sequencer, identity)
        context.rotation_key = None

        result = await RecoverySaga(context).recover(DID)

        assert result.success
        assert result.degraded
        assert identity.updates == []

    @pytest.mark.asyncio
    async def test_sequencer_unavailable_is_fatal(self, accounts, actor_store):
        saga = RecoverySaga(self.make_context(accounts, actor_store, UnavailableSequencer()))

        result = await saga.recover(DID)

        assert not result.success
        assert result.failure.step is RecoveryStep.SEQUENCE_EVENTS
        assert result.failure.partial_state
        # Earlier steps are kept, not rolled back
        assert (await accounts.get_account(DID)).repo_root_cid == result.commit.cid
        assert await actor_store.count_commits(DID) == 1

    @pytest.mark.asyncio
    async def test_repo_creation_failure(self, accounts, data_dir, sequencer):
        """A failed repo write stops before the account is touched."""
        actor_store = BrokenRepoActorStore(data_dir / "actors")
        saga = RecoverySaga(self.make_context(accounts, actor_store, sequencer))

        result = await saga.recover(DID)

        assert not result.success
        assert result.failure.step is RecoveryStep.CREATE_REPO
        assert result.failure.fatal
        assert "disk full" in result.failure.error
        assert "Remove the actor directory" in result.failure.partial_state
        assert result.completed_steps == [
            RecoveryStep.GENERATE_KEYPAIR,
            RecoveryStep.CREATE_STORE,
        ]
        assert (await accounts.get_account(DID)).repo_root_cid is None
        assert await sequencer.events_for(DID) == []

    @pytest.mark.asyncio
    async def test_leftover_directory_fails_at_store_creation(
        self, accounts, actor_store, sequencer
    ):
        """A partial directory without a database is reported, not reused."""
        actor_store.location(DID).directory.mkdir(parents=True)
        saga = RecoverySaga(self.make_context(accounts, actor_store, sequencer))

        result = await saga.recover(DID)

        assert result.failure.step is RecoveryStep.CREATE_STORE
        assert (await accounts.get_account(DID)).repo_root_cid is None

    @pytest.mark.asyncio
    async def test_repo_root_update_failure(self, data_dir, accounts, actor_store, sequencer):
        """A failed root update keeps the commit for a manual retry."""
        read_only = ReadOnlyAccountManager(data_dir / "account.sqlite")
        saga = RecoverySaga(self.make_context(read_only, actor_store, sequencer))

        result = await saga.recover(DID)

        assert not result.success
        assert result.failure.step is RecoveryStep.UPDATE_REPO_ROOT
        assert result.failure.fatal
        assert "Retry the repo root update" in result.failure.partial_state
        assert result.commit is not None
        assert (await actor_store.get_repo_root(DID))["cid"] == result.commit.cid
        assert (await accounts.get_account(DID)).repo_root_cid is None
        assert await sequencer.events_for(DID) == []

    @pytest.mark.asyncio
    async def test_reserved_keypair_cleared(self, accounts, actor_store, sequencer):
        """A keypair reserved for the DID is used and then removed."""
        key_did = await actor_store.reserve_keypair(DID)
        reserved_path = actor_store.reserved_key_dir / key_did
        pointer_path = actor_store.reserved_key_dir / DID
        assert reserved_path.exists()
        assert pointer_path.read_text() == key_did

        context = self.make_context(accounts, actor_store, sequencer)
        context.keypair_factory = lambda: Secp256k1Keypair.from_private_key_bytes(
            reserved_path.read_bytes()
        )

        result = await RecoverySaga(context).recover(DID)

        assert result.success
        assert result.signing_key_id == key_did
        assert RecoveryStep.CLEAR_RESERVED_KEYPAIR in result.completed_steps
        assert not reserved_path.exists()
        assert not pointer_path.exists()

    @pytest.mark.asyncio
    async def test_reserved_keypair_cleanup_failure_ignored(self, accounts, data_dir, sequencer):
        actor_store = BrokenCleanupActorStore(data_dir / "actors")
        saga = RecoverySaga(self.make_context(accounts, actor_store, sequencer))

        result = await saga.recover(DID)

        assert result.success
        assert not result.degraded
        assert RecoveryStep.CLEAR_RESERVED_KEYPAIR not in result.completed_steps
        assert await actor_store.exists(DID)
