"""
Minimal repository primitives for actor stores.

A repo is a signed commit pointing at the root of the record tree. Only
what recovery needs is implemented here: creating the initial commit of an
empty repo. Blocks are addressed by "sha256:<hex>" of their canonical JSON
encoding.

Revisions are TIDs: 13 characters of sortable base32 encoding a
microsecond timestamp (11 chars) and a random clock id (2 chars).
"""

from __future__ import annotations

import hashlib
import json
import random
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .keypair import Secp256k1Keypair

REPO_VERSION = 3

_S32_ALPHABET = "234567abcdefghijklmnopqrstuvwxyz"
_tid_lock = threading.Lock()
_last_tid_micros = 0


def _s32encode(value: int) -> str:
    out = ""
    while value:
        value, rem = divmod(value, 32)
        out = _S32_ALPHABET[rem] + out
    return out


def next_tid() -> str:
    """Monotonic, sortable timestamp identifier."""
    global _last_tid_micros
    with _tid_lock:
        micros = max(time.time_ns() // 1000, _last_tid_micros + 1)
        _last_tid_micros = micros
    clock_id = random.randrange(32 * 32)
    return _s32encode(micros).rjust(11, "2") + _s32encode(clock_id).rjust(2, "2")


def encode_block(value: dict[str, Any]) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")


def cid_for(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


@dataclass(frozen=True)
class Commit:
    """A signed repo commit.

    Attributes:
        did: Repo owner
        cid: Content identifier of the commit block
        rev: Revision (TID)
        data_cid: Root of the record tree
        prev: Previous commit CID (None for the first commit)
        sig: Signature over the unsigned commit, hex
    """

    did: str
    cid: str
    rev: str
    data_cid: str
    prev: str | None
    sig: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "did": self.did,
            "cid": self.cid,
            "rev": self.rev,
            "data": self.data_cid,
            "prev": self.prev,
            "sig": self.sig,
        }


class RepoTransactor:
    """Repo writes inside an actor store transaction."""

    def __init__(self, conn: sqlite3.Connection, did: str, keypair: Secp256k1Keypair) -> None:
        self.conn = conn
        self.did = did
        self.keypair = keypair

    def create_repo(self) -> Commit:
        """Write the initial commit of an empty repo.

        Raises:
            ValueError: If the repo already has a root
        """
        existing = self.conn.execute("SELECT cid FROM repo_root WHERE did = ?", (self.did,))
        if existing.fetchone():
            raise ValueError(f"Repo already initialized for {self.did}")

        rev = next_tid()
        now = datetime.now(timezone.utc).isoformat()

        tree_root = encode_block({"e": [], "l": None})
        data_cid = cid_for(tree_root)

        unsigned = {
            "did": self.did,
            "version": REPO_VERSION,
            "data": data_cid,
            "rev": rev,
            "prev": None,
        }
        sig = self.keypair.sign(encode_block(unsigned)).hex()
        commit_block = encode_block({**unsigned, "sig": sig})
        commit_cid = cid_for(commit_block)

        for cid, content in ((data_cid, tree_root), (commit_cid, commit_block)):
            self.conn.execute(
                """
                INSERT OR IGNORE INTO repo_block (cid, repoRev, size, content)
                VALUES (?, ?, ?, ?)
                """,
                (cid, rev, len(content), content),
            )
        self.conn.execute(
            "INSERT INTO repo_root (did, cid, rev, indexedAt) VALUES (?, ?, ?, ?)",
            (self.did, commit_cid, rev, now),
        )

        return Commit(
            did=self.did,
            cid=commit_cid,
            rev=rev,
            data_cid=data_cid,
            prev=None,
            sig=sig,
        )
