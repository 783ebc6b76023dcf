"""
Object store clients.

Remote layout (relative to the bucket root):
    actors/<shard>/<did>/store.sqlite
    actors/<shard>/<did>/key

This is the same layout Litestream replicas use, so a snapshot-backed
database and a continuously replicated one restore the same way.

How to change safely:
    - Changing remote_key_for() orphans every existing backup
    - New backends must implement the ObjectStore protocol
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from aiobotocore.session import get_session

from ..config import S3Config
from ..errors import UploadError

logger = logging.getLogger(__name__)


def remote_key_for(local_path: str | Path, data_root: str | Path) -> str:
    """Map a local file to its remote key by stripping the data root.

    Example:
        >>> remote_key_for("/pds/actors/5b/did:plc:abc/key", "/pds")
        'actors/5b/did:plc:abc/key'

    Raises:
        ValueError: If the path is not under the data root
    """
    return Path(local_path).relative_to(Path(data_root)).as_posix()


@runtime_checkable
class ObjectStore(Protocol):
    """Put-only view of remote object storage."""

    async def put(self, local_path: Path, remote_key: str) -> None:
        """Upload a local file under remote_key.

        Raises:
            UploadError: If the upload was not acknowledged
        """
        ...


class S3ObjectStore:
    """S3-compatible object store (Cloudflare R2, MinIO, AWS).

    The client is created lazily on first use and must be closed with
    close() (or by using the store as an async context manager).

    Example:
        >>> async with S3ObjectStore(S3Config.from_env()) as store:
        ...     await store.put(Path("/pds/actors/5b/did:plc:abc/key"), "actors/5b/did:plc:abc/key")
    """

    def __init__(self, s3_config: S3Config) -> None:
        self.s3_config = s3_config
        self._session = None
        self._s3_ctx = None
        self._s3_client = None
        self._upload_count = 0

    async def __aenter__(self) -> S3ObjectStore:
        await self._init_s3_client()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _init_s3_client(self) -> None:
        """Initialize S3 client."""
        if self._s3_client is not None:
            return

        self._session = get_session()

        client_kwargs = {
            "region_name": self.s3_config.region,
        }

        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None
            self._s3_ctx = None
            self._session = None

    async def put(self, local_path: Path, remote_key: str) -> None:
        try:
            await self._init_s3_client()
            body = await asyncio.get_running_loop().run_in_executor(
                None, Path(local_path).read_bytes
            )
            await self._s3_client.put_object(
                Bucket=self.s3_config.bucket,
                Key=remote_key,
                Body=body,
            )
        except UploadError:
            raise
        except Exception as e:
            raise UploadError(f"Failed to upload {local_path}: {e}", remote_key=remote_key) from e

        self._upload_count += 1
        logger.debug(
            "Uploaded object",
            extra={"bucket": self.s3_config.bucket, "key": remote_key, "size_bytes": len(body)},
        )

    @property
    def stats(self) -> dict[str, Any]:
        return {"upload_count": self._upload_count}


class InMemoryObjectStore:
    """In-memory ObjectStore for tests and local development.

    Stored objects are kept as bytes keyed by remote key. Keys listed in
    fail_keys (or every key, when fail_all is set) raise UploadError, which
    lets tests exercise the retry-next-pass path.

    Attributes:
        objects: Remote key -> object bytes
        put_calls: Every remote key put() was called with, in order
        uploads: Remote keys of successful puts, in order
    """

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.put_calls: list[str] = []
        self.uploads: list[str] = []
        self.fail_keys: set[str] = set()
        self.fail_all = False

    async def put(self, local_path: Path, remote_key: str) -> None:
        self.put_calls.append(remote_key)
        if self.fail_all or remote_key in self.fail_keys:
            raise UploadError(f"Injected upload failure for {remote_key}", remote_key=remote_key)
        try:
            self.objects[remote_key] = Path(local_path).read_bytes()
        except OSError as e:
            raise UploadError(f"Failed to read {local_path}: {e}", remote_key=remote_key) from e
        self.uploads.append(remote_key)

    def upload_count(self, remote_key: str) -> int:
        return self.uploads.count(remote_key)
