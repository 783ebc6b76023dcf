"""
Unit tests for secp256k1 keypairs.

Tests cover:
- did:key encoding
- Export and re-import of the private scalar
- Compact low-S signatures that verify against the public key
"""

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from service.pds_backup.actors import Secp256k1Keypair
from service.pds_backup.actors.keypair import _CURVE_ORDER


class TestSecp256k1Keypair:
    """Tests for Secp256k1Keypair."""

    def test_did_key_form(self):
        """Compressed secp256k1 did:keys share the zQ3s prefix."""
        keypair = Secp256k1Keypair.create()

        assert keypair.did().startswith("did:key:zQ3s")
        assert len(keypair.public_key_bytes()) == 33

    def test_export_round_trip(self):
        keypair = Secp256k1Keypair.create()

        restored = Secp256k1Keypair.from_private_key_bytes(keypair.export())

        assert len(keypair.export()) == 32
        assert restored.did() == keypair.did()

    def test_from_hex(self):
        keypair = Secp256k1Keypair.create()

        restored = Secp256k1Keypair.from_hex(keypair.export().hex() + "\n")

        assert restored.did() == keypair.did()

    def test_distinct_keys(self):
        assert Secp256k1Keypair.create().did() != Secp256k1Keypair.create().did()

    def test_wrong_length_rejected(self):
        with pytest.raises(ValueError):
            Secp256k1Keypair.from_private_key_bytes(b"\x01" * 31)

    def test_wrong_curve_rejected(self):
        with pytest.raises(ValueError):
            Secp256k1Keypair(ec.generate_private_key(ec.SECP256R1()))

    def test_signature_verifies(self):
        keypair = Secp256k1Keypair.create()
        data = b'{"did":"did:plc:test1"}'

        sig = keypair.sign(data)

        assert len(sig) == 64
        r = int.from_bytes(sig[:32], "big")
        s = int.from_bytes(sig[32:], "big")
        assert s <= _CURVE_ORDER // 2
        public_key = ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256K1(), keypair.public_key_bytes()
        )
        public_key.verify(encode_dss_signature(r, s), data, ec.ECDSA(hashes.SHA256()))
