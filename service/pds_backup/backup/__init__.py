"""
Backup module for PDS Backup.

This module runs the periodic backup loop that supplements Litestream:
- Signing key files (not SQLite, so Litestream cannot replicate them)
- Actor databases created after startup (not in the Litestream config)

Invariants:
    - An item is tracked only after its upload succeeded
    - A failing item never aborts the pass; it is retried next pass
    - Shutdown interrupts the sleep, never an upload
"""

from .coordinator import BackupCoordinator, CoordinatorState, PassResult

__all__ = ["BackupCoordinator", "CoordinatorState", "PassResult"]
