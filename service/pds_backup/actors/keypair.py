"""
secp256k1 signing keypairs.

Key identifiers use the did:key form: "did:key:z" followed by the base58btc
encoding of the secp256k1-pub multicodec prefix (0xe7 0x01) and the
compressed public key.

The key file of an actor store holds the raw 32-byte private scalar.
"""

from __future__ import annotations

import base58
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

SECP256K1_MULTICODEC = b"\xe7\x01"
DID_KEY_PREFIX = "did:key:"

# Order of the secp256k1 group; signatures are normalized to low-S.
_CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class Secp256k1Keypair:
    """An exportable secp256k1 keypair.

    Example:
        >>> keypair = Secp256k1Keypair.create()
        >>> keypair.did()
        'did:key:zQ3sh...'
    """

    def __init__(self, private_key: ec.EllipticCurvePrivateKey) -> None:
        if not isinstance(private_key.curve, ec.SECP256K1):
            raise ValueError("Keypair must use the secp256k1 curve")
        self._private_key = private_key

    @classmethod
    def create(cls) -> Secp256k1Keypair:
        return cls(ec.generate_private_key(ec.SECP256K1()))

    @classmethod
    def from_private_key_bytes(cls, raw: bytes) -> Secp256k1Keypair:
        if len(raw) != 32:
            raise ValueError(f"Expected a 32-byte private key, got {len(raw)} bytes")
        return cls(ec.derive_private_key(int.from_bytes(raw, "big"), ec.SECP256K1()))

    @classmethod
    def from_hex(cls, value: str) -> Secp256k1Keypair:
        return cls.from_private_key_bytes(bytes.fromhex(value.strip()))

    def public_key_bytes(self) -> bytes:
        """Compressed (33-byte) public key."""
        return self._private_key.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.CompressedPoint,
        )

    def did(self) -> str:
        encoded = base58.b58encode(SECP256K1_MULTICODEC + self.public_key_bytes()).decode("ascii")
        return f"{DID_KEY_PREFIX}z{encoded}"

    def sign(self, data: bytes) -> bytes:
        """ECDSA-SHA256 signature in compact (r || s) form, low-S."""
        der = self._private_key.sign(data, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        if s > _CURVE_ORDER // 2:
            s = _CURVE_ORDER - s
        return r.to_bytes(32, "big") + s.to_bytes(32, "big")

    def export(self) -> bytes:
        """Raw 32-byte private scalar."""
        return self._private_key.private_numbers().private_value.to_bytes(32, "big")
