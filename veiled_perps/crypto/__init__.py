"""Key exchange, field cipher and encryption session primitives."""

from .cipher import (
    crypto_decrypt_fields,
    crypto_encrypt_fields,
    crypto_generate_nonce,
    crypto_nonce_from_int,
    crypto_nonce_to_int,
)
from .key_cache import ClusterKeyCache, KeyFetchRetryStrategy
from .key_exchange import KeyPair, crypto_derive_shared_secret, crypto_generate_keypair
from .session import EncryptedFields, EncryptionSession, ReadWriteLock

__all__ = [
    "ClusterKeyCache",
    "EncryptedFields",
    "EncryptionSession",
    "KeyFetchRetryStrategy",
    "KeyPair",
    "ReadWriteLock",
    "crypto_decrypt_fields",
    "crypto_derive_shared_secret",
    "crypto_encrypt_fields",
    "crypto_generate_keypair",
    "crypto_generate_nonce",
    "crypto_nonce_from_int",
    "crypto_nonce_to_int",
]
