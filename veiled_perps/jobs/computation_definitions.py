"""Registration of the computation definitions position workflows depend on."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from veiled_perps.domain.constants import COMPUTATION_DEFINITION_NAMES
from veiled_perps.domain.errors import KeyUnavailableError
from veiled_perps.domain.models import ComputationDefinitionRecord

from .interfaces import LedgerProgramPort

logger = logging.getLogger(__name__)


class ComputationDefinitionRegistrar:
    """Register and finalize every computation definition once.

    Only the finalize step is retried, with a fixed backoff, because it
    waits on the cluster key ceremony. Registration itself is idempotent.
    """

    def __init__(
        self,
        program: LedgerProgramPort,
        admin: str,
        retry_attempts: int = 5,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """Initialize registrar.

        Args:
            program: Ledger program port.
            admin: Protocol admin identity.
            retry_attempts: Finalize attempts per definition.
            backoff_seconds: Fixed wait between finalize attempts.
            sleep: Optional async sleep.

        Raises:
            ValueError: Raised when inputs are invalid.
        """

        if program is None:
            raise ValueError("program must not be None")
        if not admin.strip():
            raise ValueError("admin must not be blank")
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        if backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")
        self._program = program
        self._admin = admin
        self._retry_attempts = retry_attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep or asyncio.sleep

    async def registrar_register_all(self) -> list[ComputationDefinitionRecord]:
        """Register and finalize all five definitions.

        Returns:
            list[ComputationDefinitionRecord]: Finalized definitions in registration order.

        Raises:
            KeyUnavailableError: Raised when finalization keeps failing after all attempts.
        """

        return [await self.registrar_register(name) for name in COMPUTATION_DEFINITION_NAMES]

    async def registrar_register(self, name: str) -> ComputationDefinitionRecord:
        """Register and finalize one definition.

        Args:
            name: Definition name.

        Returns:
            ComputationDefinitionRecord: Finalized definition.

        Raises:
            InvalidConfigError: Raised when the name is unknown.
            KeyUnavailableError: Raised when finalization keeps failing after all attempts.
        """

        definition = self._program.program_init_computation_definition(self._admin, name)
        if definition.is_finalized:
            return definition

        for attempt_index in range(self._retry_attempts - 1):
            try:
                return self._registrar_finalize(name)
            except KeyUnavailableError as error:
                logger.warning(
                    "finalizing computation definition %s failed (attempt %s/%s): %s",
                    name,
                    attempt_index + 1,
                    self._retry_attempts,
                    error,
                )
                await self._sleep(self._backoff_seconds)

        return self._registrar_finalize(name)

    def _registrar_finalize(self, name: str) -> ComputationDefinitionRecord:
        finalized = self._program.program_finalize_computation_definition(self._admin, name)
        logger.info("computation definition %s finalized", name)
        return finalized
