"""
Identity directory client (PLC).

Key rotation flow:
1. GET  {plc_url}/{did}/data      current document state
2. GET  {plc_url}/{did}/log/last  last operation, referenced as prev
3. POST {plc_url}/{did}           new operation with the atproto
   verification method replaced and signed by a rotation key

The operation is encoded as canonical JSON and signed with the PDS
rotation key; the signature is base64url without padding.

Invariants:
    - The rotation key must be listed in the document's rotationKeys;
      otherwise nothing is posted
    - Every transport or HTTP failure surfaces as DirectoryUpdateError
"""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from ..errors import DirectoryUpdateError
from .keypair import Secp256k1Keypair
from .repo import cid_for, encode_block

logger = logging.getLogger(__name__)


class PlcClient:
    """Minimal PLC directory client.

    Attributes:
        plc_url: Directory base URL
        timeout_seconds: Request timeout

    Example:
        >>> plc = PlcClient("https://plc.directory")
        >>> await plc.update_signing_key(did, rotation_key, new_keypair.did())
    """

    def __init__(
        self,
        plc_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.plc_url = plc_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def _get_json(self, client: httpx.AsyncClient, path: str, did: str) -> dict[str, Any]:
        response = await client.get(path)
        if response.status_code >= 400:
            raise DirectoryUpdateError(
                f"GET {path} failed with HTTP {response.status_code}",
                did=did,
                status_code=response.status_code,
            )
        return response.json()

    async def update_signing_key(
        self,
        did: str,
        rotation_key: Secp256k1Keypair,
        new_key_id: str,
    ) -> None:
        """Replace the atproto verification method of a DID.

        Raises:
            DirectoryUpdateError: If the rotation key is not authorized,
                the directory is unreachable, or it rejects the operation
        """
        try:
            async with httpx.AsyncClient(
                base_url=self.plc_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                data = await self._get_json(client, f"/{did}/data", did)
                last_op = await self._get_json(client, f"/{did}/log/last", did)

                rotation_keys = data.get("rotationKeys") or []
                if rotation_key.did() not in rotation_keys:
                    raise DirectoryUpdateError(
                        "Rotation key is not authorized for this DID", did=did
                    )

                op: dict[str, Any] = {
                    "type": "plc_operation",
                    "rotationKeys": rotation_keys,
                    "verificationMethods": {
                        **(data.get("verificationMethods") or {}),
                        "atproto": new_key_id,
                    },
                    "alsoKnownAs": data.get("alsoKnownAs") or [],
                    "services": data.get("services") or {},
                    "prev": cid_for(encode_block(last_op)),
                }
                sig = rotation_key.sign(encode_block(op))
                op["sig"] = base64.urlsafe_b64encode(sig).rstrip(b"=").decode("ascii")

                response = await client.post(f"/{did}", json=op)
                if response.status_code >= 400:
                    raise DirectoryUpdateError(
                        f"PLC rejected operation: HTTP {response.status_code} {response.text}",
                        did=did,
                        status_code=response.status_code,
                    )
        except httpx.HTTPError as e:
            raise DirectoryUpdateError(f"PLC directory unreachable: {e}", did=did) from e
        except ValueError as e:
            raise DirectoryUpdateError(f"PLC returned an invalid response: {e}", did=did) from e

        logger.info("PLC signing key updated", extra={"did": did, "signing_key": new_key_id})
