"""
Configuration management for PDS Backup.

All configuration is done via environment variables - no config files inside containers.
The only files read at startup are the Litestream base config and the tracked-item logs.

Invariants:
    - All settings have sensible defaults for the PDS container layout
    - Absent remote-storage credentials are a valid configuration (backup disabled)
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep the environment variable names Litestream itself reads
      (LITESTREAM_ACCESS_KEY_ID, LITESTREAM_SECRET_ACCESS_KEY) unchanged
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "/pds"


@dataclass(frozen=True)
class StorageConfig:
    """Local PDS data layout.

    Attributes:
        data_dir: Root of the PDS data volume; remote paths are relative to it
        actors_dir: Directory holding <shard>/<did>/ actor stores
        account_db: Path to the account database
        sequencer_db: Path to the change-event sequencer database
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = DEFAULT_DATA_DIR
    actors_dir: str = f"{DEFAULT_DATA_DIR}/actors"
    account_db: str = f"{DEFAULT_DATA_DIR}/account.sqlite"
    sequencer_db: str = f"{DEFAULT_DATA_DIR}/sequencer.sqlite"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        data_dir = os.getenv("PDS_DATA_DIRECTORY", DEFAULT_DATA_DIR)
        return cls(
            data_dir=data_dir,
            actors_dir=os.getenv("PDS_ACTOR_STORE_DIRECTORY", f"{data_dir}/actors"),
            account_db=os.getenv("PDS_ACCOUNT_DB_LOCATION", f"{data_dir}/account.sqlite"),
            sequencer_db=os.getenv("PDS_SEQUENCER_DB_LOCATION", f"{data_dir}/sequencer.sqlite"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class S3Config:
    """Remote object storage configuration (S3-compatible, e.g. Cloudflare R2).

    Attributes:
        bucket: Bucket name
        region: Region name ("auto" for R2)
        endpoint_url: S3 endpoint URL
        access_key_id: Access key ID
        secret_access_key: Secret access key
    """

    bucket: str = "pds-backup"
    region: str = "auto"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("BACKUP_BUCKET", "pds-backup"),
            region=os.getenv("BACKUP_REGION", "auto"),
            endpoint_url=os.getenv("LITESTREAM_R2_ENDPOINT") or None,
            access_key_id=os.getenv("LITESTREAM_ACCESS_KEY_ID") or None,
            secret_access_key=os.getenv("LITESTREAM_SECRET_ACCESS_KEY") or None,
        )

    @property
    def has_credentials(self) -> bool:
        """Whether remote storage is configured at all.

        An access key without an endpoint cannot reach R2, so both are required.
        """
        return bool(self.access_key_id and self.endpoint_url)


@dataclass(frozen=True)
class LitestreamConfig:
    """Continuous replication tool configuration.

    Attributes:
        config_path: Where the generated config is written
        base_config_path: Base config listing the fixed (non-actor) databases
        binary: Litestream executable
        sync_interval: Replica sync interval for actor databases
    """

    config_path: str = "/etc/litestream.yml"
    base_config_path: str = "/etc/litestream-base.yml"
    binary: str = "litestream"
    sync_interval: str = "60s"

    @classmethod
    def from_env(cls) -> LitestreamConfig:
        """Load configuration from environment variables."""
        return cls(
            config_path=os.getenv("LITESTREAM_CONFIG", "/etc/litestream.yml"),
            base_config_path=os.getenv("LITESTREAM_BASE_CONFIG", "/etc/litestream-base.yml"),
            binary=os.getenv("LITESTREAM_BIN", "litestream"),
            sync_interval=os.getenv("LITESTREAM_SYNC_INTERVAL", "60s"),
        )


@dataclass(frozen=True)
class BackupConfig:
    """Periodic backup coordinator configuration.

    Attributes:
        interval_seconds: Sleep between backup passes
        tracked_keys_path: Membership log of uploaded signing keys
        tracked_dbs_path: Membership log of snapshot-backed databases
        scratch_dir: Directory for snapshot copies (system temp dir if unset)
    """

    interval_seconds: int = 300  # 5 minutes
    tracked_keys_path: str = "/tmp/backed-up-keys"
    tracked_dbs_path: str = "/tmp/backed-up-dbs"
    scratch_dir: str | None = None

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        return cls(
            interval_seconds=int(os.getenv("ACTOR_BACKUP_INTERVAL_SECONDS", "300")),
            tracked_keys_path=os.getenv("ACTOR_BACKUP_TRACKED_KEYS", "/tmp/backed-up-keys"),
            tracked_dbs_path=os.getenv("ACTOR_BACKUP_TRACKED_DBS", "/tmp/backed-up-dbs"),
            scratch_dir=os.getenv("ACTOR_BACKUP_SCRATCH_DIR") or None,
        )


@dataclass(frozen=True)
class IdentityConfig:
    """Identity directory (PLC) configuration.

    Attributes:
        plc_url: Base URL of the PLC directory
        rotation_key_hex: Hex-encoded secp256k1 rotation key of the PDS
        timeout_seconds: HTTP timeout for directory requests
    """

    plc_url: str = "https://plc.directory"
    rotation_key_hex: str | None = None
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> IdentityConfig:
        """Load configuration from environment variables."""
        return cls(
            plc_url=os.getenv("PDS_DID_PLC_URL", "https://plc.directory"),
            rotation_key_hex=os.getenv("PDS_PLC_ROTATION_KEY_K256_PRIVATE_KEY_HEX") or None,
            timeout_seconds=float(os.getenv("PDS_DID_PLC_TIMEOUT_SECONDS", "10")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServiceConfig:
    """Complete service configuration.

    Attributes:
        storage: Local data layout
        s3: Remote object storage
        litestream: Continuous replication tool
        backup: Periodic backup coordinator
        identity: Identity directory
        observability: Logging
        primary_command: Command line of the primary PDS service
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    s3: S3Config = field(default_factory=S3Config)
    litestream: LitestreamConfig = field(default_factory=LitestreamConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    primary_command: tuple[str, ...] = ("node", "--enable-source-maps", "index.js")

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        command = os.getenv("PDS_CMD")
        config = cls(
            storage=StorageConfig.from_env(),
            s3=S3Config.from_env(),
            litestream=LitestreamConfig.from_env(),
            backup=BackupConfig.from_env(),
            identity=IdentityConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
            primary_command=tuple(shlex.split(command))
            if command
            else ("node", "--enable-source-maps", "index.js"),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.primary_command:
            raise ValueError("PDS_CMD must not be empty")

        if self.backup.interval_seconds <= 0:
            raise ValueError("ACTOR_BACKUP_INTERVAL_SECONDS must be positive")

        if self.s3.has_credentials and not self.s3.bucket:
            raise ValueError("BACKUP_BUCKET is required when remote storage is configured")

        actors = Path(self.storage.actors_dir)
        data = Path(self.storage.data_dir)
        if data != actors and data not in actors.parents:
            raise ValueError(
                f"PDS_ACTOR_STORE_DIRECTORY ({actors}) must live under "
                f"PDS_DATA_DIRECTORY ({data})"
            )

        if self.s3.has_credentials and not self.s3.secret_access_key:
            logger.warning("LITESTREAM_SECRET_ACCESS_KEY is not set; uploads will likely fail")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Service configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "actors_dir": self.storage.actors_dir,
                "bucket": self.s3.bucket,
                "endpoint": self.s3.endpoint_url,
                "backup_enabled": self.s3.has_credentials,
                "backup_interval_seconds": self.backup.interval_seconds,
                "litestream_config": self.litestream.config_path,
                "plc_url": self.identity.plc_url,
                "log_level": self.observability.log_level,
            },
        )
