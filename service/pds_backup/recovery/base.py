"""
Collaborator protocols for actor recovery.

The saga depends only on these protocols. The implementations in
pds_backup.actors satisfy them against a local PDS data directory; tests
may substitute fakes.

How to change safely:
    - Protocol changes require updating the actors implementations and fakes
    - Keep methods async; implementations may do network I/O
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")


@runtime_checkable
class Keypair(Protocol):
    """An exportable signing keypair."""

    def did(self) -> str: ...

    def sign(self, data: bytes) -> bytes: ...

    def export(self) -> bytes: ...


class AccountRecord(Protocol):
    did: str
    handle: str | None


class CommitRecord(Protocol):
    cid: str
    rev: str


@runtime_checkable
class AccountDirectory(Protocol):
    async def get_account(self, did: str) -> AccountRecord | None: ...

    async def update_repo_root(self, did: str, cid: str, rev: str) -> None: ...


@runtime_checkable
class ActorStoreManager(Protocol):
    async def exists(self, did: str) -> bool: ...

    async def create(self, did: str, keypair: Any) -> Any: ...

    async def transact(self, did: str, fn: Callable[[Any], T | Awaitable[T]]) -> T: ...

    async def clear_reserved_keypair(self, key_did: str, did: str | None = None) -> None: ...


@runtime_checkable
class IdentityDirectoryClient(Protocol):
    async def update_signing_key(self, did: str, rotation_key: Any, new_key_id: str) -> None: ...


@runtime_checkable
class EventSequencer(Protocol):
    async def sequence_identity_event(self, did: str, handle: str | None) -> Any: ...

    async def sequence_commit(self, did: str, commit: Any) -> Any: ...


@dataclass
class RecoveryContext:
    """Collaborators needed for one recovery run.

    Attributes:
        accounts: Account directory
        actor_store: Actor store manager
        identity: Identity directory client
        rotation_key: Credential authorized to rotate keys in the directory
        sequencer: Change-event sequencer
        keypair_factory: Creates the new signing keypair
    """

    accounts: AccountDirectory
    actor_store: ActorStoreManager
    identity: IdentityDirectoryClient
    rotation_key: Keypair | None
    sequencer: EventSequencer
    keypair_factory: Callable[[], Keypair]
