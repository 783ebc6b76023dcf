"""
Change-event sequencer backed by the PDS sequencer database.

Events are appended to repo_seq; the PDS firehose reads them in seq order
and relays them to subscribers.

Table schema:
    repo_seq:
        - seq INTEGER PRIMARY KEY AUTOINCREMENT
        - did TEXT
        - eventType TEXT ("identity", "commit", ...)
        - event TEXT (JSON)
        - invalidated INTEGER
        - sequencedAt TEXT

Invariants:
    - seq is strictly increasing; callers that need ordering sequence in order
    - An unreachable database surfaces as SequencingError
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import SequencingError
from .repo import Commit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SequencedEvent:
    """A row of repo_seq."""

    seq: int
    did: str
    event_type: str
    event: dict[str, Any]
    sequenced_at: str


class Sequencer:
    """Appends change events for downstream subscribers.

    Example:
        >>> sequencer = Sequencer("/pds/sequencer.sqlite")
        >>> await sequencer.sequence_identity_event("did:plc:abc", "alice.example.com")
    """

    def __init__(self, db_path: str | Path, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise SequencingError(f"Sequencer database unavailable: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS repo_seq (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    did TEXT NOT NULL,
                    eventType TEXT NOT NULL,
                    event TEXT NOT NULL,
                    invalidated INTEGER NOT NULL DEFAULT 0,
                    sequencedAt TEXT NOT NULL
                )
            """)
            yield conn
        except sqlite3.Error as e:
            raise SequencingError(f"Sequencer database unavailable: {e}") from e
        finally:
            conn.close()

    def _append(self, did: str, event_type: str, event: dict[str, Any]) -> int:
        now = datetime.now(timezone.utc).isoformat()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO repo_seq (did, eventType, event, sequencedAt)
                VALUES (?, ?, ?, ?)
                """,
                (did, event_type, json.dumps(event, sort_keys=True), now),
            )
            seq = cursor.lastrowid

        logger.debug("Sequenced event", extra={"did": did, "event_type": event_type, "seq": seq})
        return seq

    async def sequence_identity_event(self, did: str, handle: str | None) -> int:
        return self._append(did, "identity", {"did": did, "handle": handle})

    async def sequence_commit(self, did: str, commit: Commit) -> int:
        return self._append(
            did,
            "commit",
            {
                "repo": did,
                "commit": commit.cid,
                "rev": commit.rev,
                "since": None,
                "prev": commit.prev,
                "ops": [],
                "rebase": False,
                "tooBig": False,
            },
        )

    async def events_for(self, did: str) -> list[SequencedEvent]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT seq, did, eventType, event, sequencedAt FROM repo_seq
                WHERE did = ? ORDER BY seq
                """,
                (did,),
            ).fetchall()
        return [
            SequencedEvent(
                seq=row["seq"],
                did=row["did"],
                event_type=row["eventType"],
                event=json.loads(row["event"]),
                sequenced_at=row["sequencedAt"],
            )
            for row in rows
        ]
