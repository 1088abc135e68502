"""Process-scoped cache of the cluster public key with bounded fetch retry."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

from veiled_perps.adapters.interfaces import ClusterKeySourcePort
from veiled_perps.domain.errors import KeyFetchTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyFetchRetryStrategy:
    """Immutable key-fetch retry config and wait calculation.

    Attributes:
        retry_attempts: Number of fetch attempts.
        backoff_base_seconds: Base delay for exponential backoff.
        max_backoff_seconds: Delay cap before jitter.
        jitter_min_multiplier: Minimum jitter multiplier.
        jitter_max_multiplier: Maximum jitter multiplier.
        random_unit_interval_provider: Provider returning value in [0.0, 1.0].
    """

    retry_attempts: int = 20
    backoff_base_seconds: float = 2.0
    max_backoff_seconds: float = 2.0
    jitter_min_multiplier: float = 1.0
    jitter_max_multiplier: float = 1.0
    random_unit_interval_provider: Callable[[], float] = random.random

    def strategy_calculate_retry_wait_seconds(self, retry_index: int) -> float:
        """Calculate the capped, jittered wait before the next attempt.

        Args:
            retry_index: Zero-based index of the failed attempt.

        Returns:
            float: Wait seconds.

        Raises:
            ValueError: Raised when retry index is negative.
            RuntimeError: Raised when the jitter provider returns an out-of-range value.
        """

        if retry_index < 0:
            raise ValueError("retry_index must be >= 0")

        backoff_seconds = self.backoff_base_seconds * (2**retry_index)
        capped_backoff_seconds = min(backoff_seconds, self.max_backoff_seconds)
        return max(0.0, capped_backoff_seconds * self.strategy_calculate_jitter_multiplier())

    def strategy_calculate_jitter_multiplier(self) -> float:
        """Return jitter multiplier within configured bounds.

        Returns:
            float: Jitter multiplier value.

        Raises:
            RuntimeError: Raised when jitter source returns value outside [0.0, 1.0].
        """

        random_ratio = float(self.random_unit_interval_provider())
        if random_ratio < 0.0 or random_ratio > 1.0:
            raise RuntimeError("random_unit_interval_provider must return a value in [0.0, 1.0]")

        jitter_span = self.jitter_max_multiplier - self.jitter_min_multiplier
        return self.jitter_min_multiplier + (random_ratio * jitter_span)


class ClusterKeyCache:
    """Cluster public key fetched once and cached until invalidated.

    Concurrent callers share a single in-flight fetch. A fetch failing with
    `ConnectionError` (including `KeyUnavailableError`) is retried with
    backoff; exhaustion raises `KeyFetchTimeoutError`.
    """

    def __init__(
        self,
        key_source: ClusterKeySourcePort,
        retry_strategy: KeyFetchRetryStrategy | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """Initialize key cache.

        Args:
            key_source: Source reading the published cluster key.
            retry_strategy: Optional retry strategy; defaults to 20 attempts at 2 seconds.
            sleep: Optional async sleep used between attempts.

        Raises:
            ValueError: Raised when key_source is None or attempts are below one.
        """

        if key_source is None:
            raise ValueError("key_source must not be None")
        self._key_source = key_source
        self._retry_strategy = retry_strategy or KeyFetchRetryStrategy()
        if self._retry_strategy.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        self._sleep = sleep or asyncio.sleep
        self._fetch_lock = asyncio.Lock()
        self._cached_public_key: bytes | None = None

    def key_cache_peek(self) -> bytes | None:
        """Return the cached key without fetching.

        Returns:
            bytes | None: Cached key or None.
        """

        return self._cached_public_key

    async def key_cache_get_public_key(self) -> bytes:
        """Return the cluster public key, fetching it on first use.

        Returns:
            bytes: 32-byte cluster public key.

        Raises:
            KeyFetchTimeoutError: Raised when every fetch attempt fails.
        """

        cached_public_key = self._cached_public_key
        if cached_public_key is not None:
            return cached_public_key

        async with self._fetch_lock:
            if self._cached_public_key is not None:
                return self._cached_public_key
            public_key = await self._key_cache_fetch_with_retry()
            self._cached_public_key = public_key
            return public_key

    def key_cache_invalidate(self) -> None:
        """Drop the cached key so the next read fetches it again."""

        if self._cached_public_key is not None:
            logger.info("cluster public key invalidated")
        self._cached_public_key = None

    async def _key_cache_fetch_with_retry(self) -> bytes:
        attempts = self._retry_strategy.retry_attempts
        last_error: ConnectionError | None = None
        for attempt_index in range(attempts):
            try:
                public_key = self._key_source.cluster_key_fetch()
                logger.info("cluster public key fetched on attempt %s", attempt_index + 1)
                return public_key
            except ConnectionError as error:
                last_error = error
                logger.warning("cluster public key unavailable (attempt %s/%s): %s", attempt_index + 1, attempts, error)
                if attempt_index < attempts - 1:
                    await self._sleep(self._retry_strategy.strategy_calculate_retry_wait_seconds(attempt_index))

        raise KeyFetchTimeoutError(f"cluster public key unavailable after {attempts} attempts") from last_error
