"""
Per-actor SQLite store manager.

Layout:
    <actors_dir>/<sha256(did)[:2]>/<did>/store.sqlite
    <actors_dir>/<sha256(did)[:2]>/<did>/key
    <actors_dir>/reserved_keys/<key did>

Each actor store holds one repo. Only the tables recovery touches are
created here; the PDS adds its own on first use (CREATE IF NOT EXISTS).

Invariants:
    - One SQLite file per actor, WAL mode
    - The key file is written before the database, mode 0600
    - create() refuses to reuse an existing actor directory
    - All writes go through transact() (single BEGIN IMMEDIATE transaction)

Table schema:
    repo_root:
        - did TEXT PRIMARY KEY
        - cid TEXT
        - rev TEXT
        - indexedAt TEXT

    repo_block:
        - cid TEXT PRIMARY KEY
        - repoRev TEXT
        - size INTEGER
        - content BLOB

    record:
        - uri TEXT PRIMARY KEY
        - cid TEXT
        - collection TEXT
        - rkey TEXT
        - repoRev TEXT
        - indexedAt TEXT
"""

from __future__ import annotations

import hashlib
import inspect
import logging
import os
import sqlite3
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from ..discovery import DB_FILENAME, KEY_FILENAME
from ..errors import ActorStoreExistsError
from .keypair import Secp256k1Keypair
from .repo import RepoTransactor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ActorStoreNotFoundError(Exception):
    """Actor store does not exist."""

    pass


@dataclass(frozen=True)
class ActorLocation:
    """Where an actor's files live."""

    directory: Path
    db_path: Path
    key_path: Path


@dataclass
class ActorTransaction:
    """Handle passed to transact() callbacks.

    Attributes:
        did: Actor identity
        conn: Connection inside an open transaction
        keypair: The actor's signing keypair
        repo: Repo writer bound to this transaction
    """

    did: str
    conn: sqlite3.Connection
    keypair: Secp256k1Keypair
    repo: RepoTransactor


class ActorStore:
    """Manager for per-actor SQLite stores.

    Example:
        >>> actor_store = ActorStore("/pds/actors")
        >>> await actor_store.create("did:plc:abc", Secp256k1Keypair.create())
        >>> commit = await actor_store.transact(
        ...     "did:plc:abc", lambda txn: txn.repo.create_repo()
        ... )
    """

    def __init__(
        self,
        directory: str | Path,
        busy_timeout_ms: int = 5000,
        reserved_key_dir: str | Path | None = None,
    ) -> None:
        self.directory = Path(directory)
        self.busy_timeout_ms = busy_timeout_ms
        self.reserved_key_dir = (
            Path(reserved_key_dir) if reserved_key_dir else self.directory / "reserved_keys"
        )

    def location(self, did: str) -> ActorLocation:
        if not did.startswith("did:") or "/" in did or "\x00" in did:
            raise ValueError(f"Invalid DID: {did!r}")
        shard = hashlib.sha256(did.encode("utf-8")).hexdigest()[:2]
        directory = self.directory / shard / did
        return ActorLocation(
            directory=directory,
            db_path=directory / DB_FILENAME,
            key_path=directory / KEY_FILENAME,
        )

    @contextmanager
    def _get_connection(self, did: str) -> Iterator[sqlite3.Connection]:
        db_path = self.location(did).db_path
        if not db_path.exists():
            raise ActorStoreNotFoundError(f"Actor store not found: {did}")

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS repo_root (
                did TEXT PRIMARY KEY,
                cid TEXT NOT NULL,
                rev TEXT NOT NULL,
                indexedAt TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS repo_block (
                cid TEXT PRIMARY KEY,
                repoRev TEXT NOT NULL,
                size INTEGER NOT NULL,
                content BLOB NOT NULL
            );

            CREATE INDEX IF NOT EXISTS repo_block_repo_rev_idx ON repo_block(repoRev, cid);

            CREATE TABLE IF NOT EXISTS record (
                uri TEXT PRIMARY KEY,
                cid TEXT NOT NULL,
                collection TEXT NOT NULL,
                rkey TEXT NOT NULL,
                repoRev TEXT,
                indexedAt TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS record_cid_idx ON record(cid);
            CREATE INDEX IF NOT EXISTS record_collection_idx ON record(collection);
        """)

    async def exists(self, did: str) -> bool:
        """Check if the actor's database exists."""
        return self.location(did).db_path.exists()

    async def create(self, did: str, keypair: Secp256k1Keypair) -> ActorLocation:
        """Create the actor directory, key file and database.

        Raises:
            ActorStoreExistsError: If the actor directory already exists
        """
        location = self.location(did)
        location.directory.parent.mkdir(parents=True, exist_ok=True)
        try:
            location.directory.mkdir()
        except FileExistsError:
            raise ActorStoreExistsError(did) from None

        fd = os.open(location.key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(keypair.export())
            f.flush()
            os.fsync(f.fileno())

        location.db_path.touch()
        with self._get_connection(did) as conn:
            self._create_schema(conn)

        logger.info(f"Created actor store: {did}", extra={"path": str(location.directory)})
        return location

    def load_keypair(self, did: str) -> Secp256k1Keypair:
        return Secp256k1Keypair.from_private_key_bytes(self.location(did).key_path.read_bytes())

    async def transact(
        self,
        did: str,
        fn: Callable[[ActorTransaction], T | Awaitable[T]],
    ) -> T:
        """Run fn with exclusive write access to the actor store.

        fn may be a plain or an async callable. The transaction commits when
        fn returns and rolls back if it raises.

        Raises:
            ActorStoreNotFoundError: If the store does not exist
        """
        keypair = self.load_keypair(did)
        with self._get_connection(did) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                txn = ActorTransaction(
                    did=did,
                    conn=conn,
                    keypair=keypair,
                    repo=RepoTransactor(conn, did, keypair),
                )
                result = fn(txn)
                if inspect.isawaitable(result):
                    result = await result
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        return result

    async def get_repo_root(self, did: str) -> dict[str, Any] | None:
        with self._get_connection(did) as conn:
            row = conn.execute(
                "SELECT cid, rev FROM repo_root WHERE did = ?", (did,)
            ).fetchone()
            return dict(row) if row else None

    async def count_commits(self, did: str) -> int:
        """Number of repo roots recorded for the actor (0 or 1)."""
        with self._get_connection(did) as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM repo_root WHERE did = ?", (did,)
            ).fetchone()[0]

    async def count_records(self, did: str) -> int:
        with self._get_connection(did) as conn:
            return conn.execute("SELECT COUNT(*) FROM record").fetchone()[0]

    async def reserve_keypair(self, did: str) -> str:
        """Generate and park a keypair for a future create(); returns its key DID."""
        keypair = Secp256k1Keypair.create()
        self.reserved_key_dir.mkdir(parents=True, exist_ok=True)
        path = self.reserved_key_dir / keypair.did()
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(keypair.export())
        (self.reserved_key_dir / did).write_text(keypair.did(), encoding="utf-8")
        return keypair.did()

    async def clear_reserved_keypair(self, key_did: str, did: str | None = None) -> None:
        """Remove reserved keypair files for key_did (and the DID's pointer)."""
        (self.reserved_key_dir / key_did).unlink(missing_ok=True)
        if did:
            (self.reserved_key_dir / did).unlink(missing_ok=True)
