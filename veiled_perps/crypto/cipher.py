"""Fixed-width field cipher for encrypted position values.

Each plaintext value is a non-negative integer encoded as a 16-byte
little-endian field and sealed with ChaCha20-Poly1305, producing exactly
32 bytes (16-byte body plus 16-byte tag). The per-call key is derived from
the shared secret with HKDF salted by the 16-byte nonce, and each element
uses its index as the AEAD nonce, so ciphertexts depend on the nonce and a
wrong secret or nonce fails authentication.
"""

from __future__ import annotations

import secrets
from typing import Sequence

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from veiled_perps.domain.constants import CIPHERTEXT_SIZE, NONCE_SIZE
from veiled_perps.domain.errors import DecryptionFailedError, FieldRangeError

FIELD_SIZE = 16
FIELD_MAX = 2 ** (FIELD_SIZE * 8) - 1
SECRET_SIZE = 32

_FIELD_KEY_INFO = b"veiled-perps/field-cipher/v1"


def crypto_generate_nonce() -> bytes:
    """Return a fresh random 16-byte nonce.

    Returns:
        bytes: Nonce bytes from the OS CSPRNG.
    """

    return secrets.token_bytes(NONCE_SIZE)


def crypto_nonce_to_int(nonce: bytes) -> int:
    """Convert nonce bytes to the integer form stored on positions.

    Args:
        nonce: 16-byte nonce.

    Returns:
        int: Little-endian unsigned value.

    Raises:
        ValueError: Raised when the nonce is not 16 bytes.
    """

    _crypto_require_size(nonce, NONCE_SIZE, "nonce")
    return int.from_bytes(nonce, "little")


def crypto_nonce_from_int(value: int) -> bytes:
    """Convert a stored integer nonce back to bytes.

    Args:
        value: Unsigned 128-bit nonce value.

    Returns:
        bytes: 16-byte little-endian nonce.

    Raises:
        ValueError: Raised when the value does not fit 16 bytes.
    """

    if value < 0 or value > FIELD_MAX:
        raise ValueError("nonce value must fit in 16 unsigned bytes")
    return value.to_bytes(NONCE_SIZE, "little")


def crypto_encrypt_fields(secret: bytes, nonce: bytes, values: Sequence[int]) -> list[bytes]:
    """Encrypt plaintext field values under one secret and nonce.

    Args:
        secret: 32-byte shared secret.
        nonce: Single-use 16-byte nonce.
        values: Non-negative integers below 2**128; booleans encode as 0/1.

    Returns:
        list[bytes]: One 32-byte ciphertext per value, in input order.

    Raises:
        FieldRangeError: Raised when a value is negative or too wide.
        ValueError: Raised when secret or nonce sizes are wrong.
    """

    aead = ChaCha20Poly1305(_crypto_derive_field_key(secret, nonce))
    ciphertexts: list[bytes] = []
    for index, value in enumerate(values):
        field_value = int(value)
        if field_value < 0 or field_value > FIELD_MAX:
            raise FieldRangeError(f"field {index} value is outside [0, 2**128)")
        ciphertexts.append(aead.encrypt(_crypto_element_nonce(index), field_value.to_bytes(FIELD_SIZE, "little"), None))
    return ciphertexts


def crypto_decrypt_fields(secret: bytes, nonce: bytes, ciphertexts: Sequence[bytes]) -> list[int]:
    """Decrypt field ciphertexts produced by `crypto_encrypt_fields`.

    Args:
        secret: 32-byte shared secret.
        nonce: 16-byte nonce used for encryption.
        ciphertexts: 32-byte ciphertexts in encryption order.

    Returns:
        list[int]: Plaintext values.

    Raises:
        DecryptionFailedError: Raised when any ciphertext fails authentication.
        ValueError: Raised when secret, nonce or ciphertext sizes are wrong.
    """

    aead = ChaCha20Poly1305(_crypto_derive_field_key(secret, nonce))
    values: list[int] = []
    for index, ciphertext in enumerate(ciphertexts):
        _crypto_require_size(ciphertext, CIPHERTEXT_SIZE, f"ciphertext {index}")
        try:
            plaintext = aead.decrypt(_crypto_element_nonce(index), bytes(ciphertext), None)
        except InvalidTag as error:
            raise DecryptionFailedError(f"ciphertext {index} failed authentication") from error
        values.append(int.from_bytes(plaintext, "little"))
    return values


def _crypto_derive_field_key(secret: bytes, nonce: bytes) -> bytes:
    _crypto_require_size(secret, SECRET_SIZE, "secret")
    _crypto_require_size(nonce, NONCE_SIZE, "nonce")
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=bytes(nonce), info=_FIELD_KEY_INFO).derive(bytes(secret))


def _crypto_element_nonce(index: int) -> bytes:
    return index.to_bytes(12, "little")


def _crypto_require_size(value: bytes, expected_size: int, label: str) -> None:
    if not isinstance(value, (bytes, bytearray)) or len(value) != expected_size:
        raise ValueError(f"{label} must be {expected_size} bytes")
