"""x25519 key exchange between a client session and the computation cluster."""

from __future__ import annotations

from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from veiled_perps.domain.constants import PUBLIC_KEY_SIZE

_SHARED_SECRET_INFO = b"veiled-perps/shared-secret/v1"


@dataclass(frozen=True)
class KeyPair:
    """Raw x25519 keypair.

    Attributes:
        private_key: 32-byte private scalar.
        public_key: 32-byte public key.
    """

    private_key: bytes
    public_key: bytes

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key.hex()})"


def crypto_generate_keypair() -> KeyPair:
    """Generate a fresh x25519 keypair from the OS CSPRNG.

    Returns:
        KeyPair: Raw private and public key bytes.
    """

    private_key = X25519PrivateKey.generate()
    return KeyPair(
        private_key=private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption()),
        public_key=private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw),
    )


def crypto_derive_shared_secret(private_key: bytes, counterparty_public_key: bytes) -> bytes:
    """Derive the 32-byte symmetric secret shared with a counterparty.

    Both sides derive the same secret from their own private key and the
    other side's public key; the raw ECDH output is passed through HKDF.

    Args:
        private_key: Own 32-byte private key.
        counterparty_public_key: Counterparty 32-byte public key.

    Returns:
        bytes: 32-byte shared secret.

    Raises:
        ValueError: Raised when a key is malformed or the exchange yields a low-order point.
    """

    if len(counterparty_public_key) != PUBLIC_KEY_SIZE:
        raise ValueError(f"counterparty public key must be {PUBLIC_KEY_SIZE} bytes")

    shared_point = X25519PrivateKey.from_private_bytes(private_key).exchange(
        X25519PublicKey.from_public_bytes(counterparty_public_key)
    )
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=_SHARED_SECRET_INFO).derive(shared_point)
