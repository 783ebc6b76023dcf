"""
CLI tools for PDS Backup administration.

This module provides command-line tools for:
- recover_actor: Rebuild an empty actor store for an existing DID

Invariants:
    - Tools work against the PDS data directory; the PDS may keep running
    - Tools refuse to touch an actor store that still exists
    - All operations are logged for audit
"""

from .recover_actor import build_context

__all__ = ["build_context"]
