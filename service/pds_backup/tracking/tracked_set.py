"""
Durable membership set backed by an append-only log.

File format: one identifier per line, UTF-8. The log is read once when
the set is opened; duplicate lines (possible after a crash between the
append and a retried upload) collapse into a single member. Membership
checks are served from memory.

Invariants:
    - A member is in memory only after its line has been fsync'd
    - Opening a missing log creates it empty
    - Identifiers never contain newlines
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path

logger = logging.getLogger(__name__)


class TrackedItemSet:
    """Append-only, durable set of backed-up item identifiers.

    Example:
        >>> keys = TrackedItemSet("/tmp/backed-up-keys")
        >>> if "/pds/actors/5b/did:plc:abc/key" not in keys:
        ...     upload(...)
        ...     keys.record("/pds/actors/5b/did:plc:abc/key")
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._items: set[str] = set()
        self._needs_newline = False
        self._load()

    def _load(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

        lines = 0
        last_line = ""
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                last_line = line
                item = line.rstrip("\n")
                if item:
                    self._items.add(item)
                    lines += 1

        # A torn final line (crash mid-append) must not absorb the next append
        self._needs_newline = bool(last_line) and not last_line.endswith("\n")

        if lines != len(self._items):
            logger.debug(
                f"Collapsed {lines - len(self._items)} duplicate entries in {self.path}"
            )

    def contains(self, item: str) -> bool:
        return item in self._items

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._items))

    def record(self, item: str) -> None:
        """Durably add an item.

        Raises:
            ValueError: If the identifier is empty or contains a newline
        """
        if not item or "\n" in item or "\r" in item:
            raise ValueError(f"Invalid tracked item identifier: {item!r}")
        if item in self._items:
            return

        with open(self.path, "a", encoding="utf-8") as f:
            if self._needs_newline:
                f.write("\n")
            f.write(item + "\n")
            f.flush()
            os.fsync(f.fileno())

        self._needs_newline = False
        self._items.add(item)
