"""
Account directory backed by the PDS account database.

Only the columns recovery reads or writes are managed here.

Table schema:
    actor:
        - did TEXT PRIMARY KEY
        - handle TEXT
        - createdAt TEXT
        - deactivatedAt TEXT

    repo_root:
        - did TEXT PRIMARY KEY
        - cid TEXT
        - rev TEXT
        - indexedAt TEXT
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Account:
    """An account record.

    Attributes:
        did: Actor identity
        handle: Current handle (None when invalid or unset)
        repo_root_cid: CID of the current repo commit
        repo_rev: Revision of the current repo commit
    """

    did: str
    handle: str | None
    repo_root_cid: str | None = None
    repo_rev: str | None = None


class AccountManager:
    """Reads and updates account records.

    Example:
        >>> accounts = AccountManager("/pds/account.sqlite")
        >>> account = await accounts.get_account("did:plc:abc")
    """

    def __init__(self, db_path: str | Path, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the tables if they do not exist."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS actor (
                    did TEXT PRIMARY KEY,
                    handle TEXT UNIQUE,
                    createdAt TEXT NOT NULL,
                    deactivatedAt TEXT
                );

                CREATE TABLE IF NOT EXISTS repo_root (
                    did TEXT PRIMARY KEY,
                    cid TEXT NOT NULL,
                    rev TEXT NOT NULL,
                    indexedAt TEXT NOT NULL
                );
            """)

    async def create_account(self, did: str, handle: str | None) -> Account:
        now = datetime.now(timezone.utc).isoformat()
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO actor (did, handle, createdAt) VALUES (?, ?, ?)",
                (did, handle, now),
            )
        return Account(did=did, handle=handle)

    async def get_account(self, did: str) -> Account | None:
        with self._get_connection() as conn:
            try:
                row = conn.execute(
                    """
                    SELECT actor.did, actor.handle, repo_root.cid, repo_root.rev
                    FROM actor
                    LEFT JOIN repo_root ON repo_root.did = actor.did
                    WHERE actor.did = ?
                    """,
                    (did,),
                ).fetchone()
            except sqlite3.OperationalError as e:
                # Missing tables mean an empty account database.
                if "no such table" in str(e):
                    return None
                raise

        if row is None:
            return None
        return Account(
            did=row["did"],
            handle=row["handle"],
            repo_root_cid=row["cid"],
            repo_rev=row["rev"],
        )

    async def update_repo_root(self, did: str, cid: str, rev: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO repo_root (did, cid, rev, indexedAt) VALUES (?, ?, ?, ?)
                ON CONFLICT (did) DO UPDATE SET
                    cid = excluded.cid,
                    rev = excluded.rev,
                    indexedAt = excluded.indexedAt
                """,
                (did, cid, rev, now),
            )
        logger.debug("Updated repo root", extra={"did": did, "cid": cid, "rev": rev})
