"""
PDS Backup - Main entry point.

This module starts the PDS with backup around it:
- Scans actor stores and generates the Litestream config
- Runs `litestream replicate -exec <PDS>` so replication lives and dies
  with the PDS process
- Runs the periodic backup coordinator for keys and new actors

Usage:
    python -m service.pds_backup.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Without remote-storage credentials the PDS runs without backup
    - The Litestream config is generated once, before Litestream starts
    - Shutdown lets an in-flight upload finish before exiting

How to change safely:
    - Litestream does not support config reload (SIGHUP kills it); new
      actors must stay covered by the coordinator until restart
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import signal
import sys

import json_log_formatter

from .backup import BackupCoordinator
from .config import ServiceConfig
from .discovery import scan_actors
from .replication import (
    ReplicaSettings,
    ReplicatedSetSnapshot,
    build_replication_config,
    load_base_config,
    write_replication_config,
)
from .snapshot import Snapshotter
from .storage import S3ObjectStore
from .tracking import TrackedItemSet

logger = logging.getLogger(__name__)


def setup_logging(config: ServiceConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Service configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def prepare_replication(config: ServiceConfig) -> ReplicatedSetSnapshot:
    """Generate the Litestream config and return what it covers."""
    handles = scan_actors(config.storage.actors_dir)
    replication_config = build_replication_config(
        handles,
        load_base_config(config.litestream.base_config_path),
        data_root=config.storage.data_dir,
        replica=ReplicaSettings(
            bucket=config.s3.bucket,
            sync_interval=config.litestream.sync_interval,
        ),
    )
    write_replication_config(replication_config, config.litestream.config_path)
    return ReplicatedSetSnapshot.from_config(replication_config)


class BackupService:
    """Runs the PDS under Litestream plus the backup coordinator.

    Attributes:
        config: Service configuration
        coordinator: Periodic backup coordinator (None without credentials)

    Example:
        >>> service = BackupService(ServiceConfig.from_env())
        >>> exit_code = await service.run()
    """

    def __init__(self, config: ServiceConfig) -> None:
        self.config = config
        self.coordinator: BackupCoordinator | None = None
        self._shutdown_event = asyncio.Event()
        self._process: asyncio.subprocess.Process | None = None

    async def run(self) -> int:
        """Run until the child process exits or shutdown is requested.

        Returns:
            Exit code of the child process
        """
        self.config.log_config()

        if not self.config.s3.has_credentials:
            logger.warning("No remote storage credentials configured, running PDS without backup")
            return await self._supervise(list(self.config.primary_command))

        replicated = prepare_replication(self.config)

        async with S3ObjectStore(self.config.s3) as object_store:
            self.coordinator = BackupCoordinator(
                actors_dir=self.config.storage.actors_dir,
                data_root=self.config.storage.data_dir,
                object_store=object_store,
                snapshotter=Snapshotter(
                    scratch_dir=self.config.backup.scratch_dir,
                    busy_timeout_ms=self.config.storage.busy_timeout_ms,
                ),
                replicated=replicated,
                tracked_keys=TrackedItemSet(self.config.backup.tracked_keys_path),
                tracked_dbs=TrackedItemSet(self.config.backup.tracked_dbs_path),
                interval_seconds=self.config.backup.interval_seconds,
            )
            coordinator_task = asyncio.create_task(self.coordinator.start())

            try:
                return await self._supervise(
                    [
                        self.config.litestream.binary,
                        "replicate",
                        "-config",
                        self.config.litestream.config_path,
                        "-exec",
                        shlex.join(self.config.primary_command),
                    ]
                )
            finally:
                await self.coordinator.stop()
                await coordinator_task

    async def _supervise(self, argv: list[str]) -> int:
        logger.info(f"Starting {argv[0]}", extra={"argv": argv})
        self._process = await asyncio.create_subprocess_exec(*argv)

        exit_wait = asyncio.create_task(self._process.wait())
        shutdown_wait = asyncio.create_task(self._shutdown_event.wait())
        await asyncio.wait({exit_wait, shutdown_wait}, return_when=asyncio.FIRST_COMPLETED)

        if not exit_wait.done():
            logger.info(f"Forwarding shutdown to {argv[0]}")
            self._process.send_signal(signal.SIGTERM)
            await exit_wait
        shutdown_wait.cancel()

        returncode = self._process.returncode
        logger.info(f"{argv[0]} exited with code {returncode}")
        return returncode

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    service = BackupService(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        service.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        exit_code = loop.run_until_complete(service.run())
    finally:
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
