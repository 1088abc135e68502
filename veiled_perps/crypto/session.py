"""Client encryption session bound to the current cluster public key."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Sequence

from veiled_perps.domain.errors import KeyUnavailableError

from .cipher import crypto_decrypt_fields, crypto_encrypt_fields, crypto_generate_nonce, crypto_nonce_from_int, crypto_nonce_to_int
from .key_cache import ClusterKeyCache
from .key_exchange import KeyPair, crypto_derive_shared_secret, crypto_generate_keypair

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many-reader, single-writer lock with writer preference."""

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._active_readers = 0
        self._writer_active = False
        self._waiting_writers = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        """Hold a shared read lock; waits while a writer is active or queued."""

        with self._condition:
            while self._writer_active or self._waiting_writers:
                self._condition.wait()
            self._active_readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._active_readers -= 1
                if self._active_readers == 0:
                    self._condition.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        """Hold the exclusive write lock once current readers drain."""

        with self._condition:
            self._waiting_writers += 1
            while self._writer_active or self._active_readers:
                self._condition.wait()
            self._waiting_writers -= 1
            self._writer_active = True
        try:
            yield
        finally:
            with self._condition:
                self._writer_active = False
                self._condition.notify_all()


@dataclass(frozen=True)
class EncryptedFields:
    """Ciphertexts and the nonce they were produced with.

    Attributes:
        ciphertexts: 32-byte ciphertexts in input order.
        nonce: Nonce as an integer.
    """

    ciphertexts: tuple[bytes, ...]
    nonce: int


class EncryptionSession:
    """Per-client keypair and the secret shared with the cluster.

    The secret is re-derived whenever the cached cluster key changes; the
    keypair, cluster key and secret are swapped under a write lock so
    concurrent encrypt/decrypt calls never observe a half-updated session.
    """

    def __init__(self, key_cache: ClusterKeyCache, keypair: KeyPair | None = None):
        """Initialize encryption session.

        Args:
            key_cache: Cluster public key cache.
            keypair: Optional fixed client keypair; generated when omitted.

        Raises:
            ValueError: Raised when key_cache is None.
        """

        if key_cache is None:
            raise ValueError("key_cache must not be None")
        self._key_cache = key_cache
        self._keypair = keypair or crypto_generate_keypair()
        self._lock = ReadWriteLock()
        self._cluster_public_key: bytes | None = None
        self._shared_secret: bytes | None = None

    @property
    def public_key(self) -> bytes:
        """Return this client's x25519 public key."""

        return self._keypair.public_key

    async def session_establish(self) -> bytes:
        """Fetch the cluster key if needed and derive the shared secret.

        Returns:
            bytes: Cluster public key the session is bound to.

        Raises:
            KeyFetchTimeoutError: Raised when the cluster key cannot be fetched.
        """

        cluster_public_key = await self._key_cache.key_cache_get_public_key()
        with self._lock.read_locked():
            if self._cluster_public_key == cluster_public_key:
                return cluster_public_key

        shared_secret = crypto_derive_shared_secret(self._keypair.private_key, cluster_public_key)
        with self._lock.write_locked():
            self._cluster_public_key = cluster_public_key
            self._shared_secret = shared_secret
        logger.info("encryption session bound to cluster key %s", cluster_public_key.hex()[:16])
        return cluster_public_key

    def session_invalidate(self) -> None:
        """Drop the cached cluster key and the derived secret."""

        self._key_cache.key_cache_invalidate()
        with self._lock.write_locked():
            self._cluster_public_key = None
            self._shared_secret = None

    def session_encrypt(self, values: Sequence[int]) -> EncryptedFields:
        """Encrypt values under the shared secret with a fresh nonce.

        Args:
            values: Plaintext field values.

        Returns:
            EncryptedFields: Ciphertexts and nonce.

        Raises:
            KeyUnavailableError: Raised when the session is not established.
        """

        nonce = crypto_generate_nonce()
        with self._lock.read_locked():
            shared_secret = self._session_require_secret()
            ciphertexts = crypto_encrypt_fields(shared_secret, nonce, values)
        return EncryptedFields(ciphertexts=tuple(ciphertexts), nonce=crypto_nonce_to_int(nonce))

    def session_decrypt(self, ciphertexts: Sequence[bytes], nonce: int) -> list[int]:
        """Decrypt ciphertexts produced for this session's key.

        Args:
            ciphertexts: 32-byte ciphertexts.
            nonce: Nonce as an integer.

        Returns:
            list[int]: Plaintext values.

        Raises:
            KeyUnavailableError: Raised when the session is not established.
            DecryptionFailedError: Raised when authentication fails.
        """

        with self._lock.read_locked():
            shared_secret = self._session_require_secret()
            return crypto_decrypt_fields(shared_secret, crypto_nonce_from_int(nonce), ciphertexts)

    def _session_require_secret(self) -> bytes:
        if self._shared_secret is None:
            raise KeyUnavailableError("encryption session is not established")
        return self._shared_secret
