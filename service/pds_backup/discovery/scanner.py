"""
Actor store discovery.

Layout walked by the scanner:
    <actors_dir>/<shard>/<did>/store.sqlite
    <actors_dir>/<shard>/<did>/key

The shard is the first two hex characters of sha256(did). Only the two
fixed levels are visited; anything deeper or shallower is ignored.

Actor directories are created and deleted by the PDS while a scan runs,
so every filesystem call is allowed to fail for a single entry without
failing the scan.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DB_FILENAME = "store.sqlite"
KEY_FILENAME = "key"


@dataclass(frozen=True)
class ActorStoreHandle:
    """One actor's on-disk store.

    Attributes:
        did: Actor identity (directory name)
        db_path: Primary SQLite database
        key_path: Signing key file (may not exist yet)
    """

    did: str
    db_path: Path
    key_path: Path

    @property
    def directory(self) -> Path:
        return self.db_path.parent


def _sorted_subdirs(path: Path) -> list[os.DirEntry]:
    try:
        with os.scandir(path) as it:
            entries = list(it)
    except (FileNotFoundError, NotADirectoryError):
        return []
    except OSError as e:
        logger.warning(f"Skipping unreadable directory {path}: {e}", extra={"path": str(path)})
        return []

    subdirs = []
    for entry in entries:
        try:
            if entry.is_dir(follow_symlinks=False):
                subdirs.append(entry)
        except OSError:
            continue
    return sorted(subdirs, key=lambda e: e.name)


def _iter_actor_dirs(root: Path) -> Iterator[Path]:
    for shard in _sorted_subdirs(root):
        for actor in _sorted_subdirs(Path(shard.path)):
            yield Path(actor.path)


def scan_actors(root: str | Path) -> list[ActorStoreHandle]:
    """List actor stores that have a primary database.

    Args:
        root: Actors directory

    Returns:
        Handles sorted by database path
    """
    root = Path(root)
    handles = []
    for actor_dir in _iter_actor_dirs(root):
        db_path = actor_dir / DB_FILENAME
        try:
            if not db_path.is_file():
                continue
        except OSError:
            continue
        handles.append(
            ActorStoreHandle(
                did=actor_dir.name,
                db_path=db_path,
                key_path=actor_dir / KEY_FILENAME,
            )
        )

    logger.debug(f"Discovered {len(handles)} actor store(s) under {root}")
    return handles


def scan_key_files(root: str | Path) -> list[Path]:
    """List signing key files, whether or not their database exists yet."""
    keys = []
    for actor_dir in _iter_actor_dirs(Path(root)):
        key_path = actor_dir / KEY_FILENAME
        try:
            if key_path.is_file():
                keys.append(key_path)
        except OSError:
            continue
    return keys
