"""Tests for computation definition registration and finalize retry."""

from __future__ import annotations

import asyncio

import pytest

from veiled_perps.domain.constants import COMPUTATION_DEFINITION_NAMES
from veiled_perps.domain.errors import KeyUnavailableError
from veiled_perps.domain.models import ComputationDefinitionRecord
from veiled_perps.jobs import ComputationDefinitionRegistrar


class _CeremonyProgramStub:
    """Program stub whose finalize step fails until the key ceremony completes."""

    def __init__(self, finalize_failures: int):
        self.finalize_failures = finalize_failures
        self.init_calls: list[str] = []
        self.finalize_calls: list[str] = []
        self.definitions: dict[str, ComputationDefinitionRecord] = {}

    def program_init_computation_definition(self, admin: str, name: str) -> ComputationDefinitionRecord:
        self.init_calls.append(name)
        return self.definitions.setdefault(
            name,
            ComputationDefinitionRecord(name=name, is_finalized=False, registered_at=0),
        )

    def program_finalize_computation_definition(self, admin: str, name: str) -> ComputationDefinitionRecord:
        """Fail while failures remain, then finalize.

        Raises:
            KeyUnavailableError: Raised while the simulated ceremony is running.
        """

        self.finalize_calls.append(name)
        if self.finalize_failures > 0:
            self.finalize_failures -= 1
            raise KeyUnavailableError("cluster public key is not published yet")
        finalized = ComputationDefinitionRecord(name=name, is_finalized=True, registered_at=0)
        self.definitions[name] = finalized
        return finalized


class _SleepRecorder:
    def __init__(self):
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


def test_registrar_finalizes_all_definitions_after_transient_failures() -> None:
    """Finalize failures are retried with the fixed backoff until the key is published.

    Returns:
        None: Assertions validate retries and finalized definitions.

    Raises:
        AssertionError: Raised when retries or results differ.
    """

    program = _CeremonyProgramStub(finalize_failures=2)
    sleep = _SleepRecorder()
    registrar = ComputationDefinitionRegistrar(program=program, admin="admin", backoff_seconds=2.0, sleep=sleep)

    definitions = asyncio.run(registrar.registrar_register_all())

    assert [definition.name for definition in definitions] == list(COMPUTATION_DEFINITION_NAMES)
    assert all(definition.is_finalized for definition in definitions)
    assert sleep.waits == [2.0, 2.0]
    assert len(program.finalize_calls) == len(COMPUTATION_DEFINITION_NAMES) + 2


def test_registrar_skips_finalize_for_already_finalized_definition() -> None:
    """Re-running registration does not finalize definitions a second time.

    Returns:
        None: Assertions validate idempotent registration.

    Raises:
        AssertionError: Raised when finalize is called again.
    """

    program = _CeremonyProgramStub(finalize_failures=0)
    registrar = ComputationDefinitionRegistrar(program=program, admin="admin", sleep=_SleepRecorder())

    asyncio.run(registrar.registrar_register("init_position"))
    asyncio.run(registrar.registrar_register("init_position"))

    assert program.init_calls == ["init_position", "init_position"]
    assert program.finalize_calls == ["init_position"]


def test_registrar_raises_after_exhausting_attempts() -> None:
    """A ceremony that never completes raises the last `KeyUnavailableError`.

    Returns:
        None: Assertions validate exhaustion behavior.

    Raises:
        AssertionError: Raised when no error is raised.
    """

    program = _CeremonyProgramStub(finalize_failures=100)
    sleep = _SleepRecorder()
    registrar = ComputationDefinitionRegistrar(program=program, admin="admin", retry_attempts=3, sleep=sleep)

    with pytest.raises(KeyUnavailableError):
        asyncio.run(registrar.registrar_register("close_position"))

    assert program.finalize_calls == ["close_position"] * 3
    assert len(sleep.waits) == 2


def test_registrar_rejects_invalid_configuration() -> None:
    """Blank admin and non-positive attempts are rejected at construction.

    Returns:
        None: Assertions validate constructor checks.

    Raises:
        AssertionError: Raised when invalid configuration is accepted.
    """

    with pytest.raises(ValueError):
        ComputationDefinitionRegistrar(program=_CeremonyProgramStub(0), admin=" ")
    with pytest.raises(ValueError):
        ComputationDefinitionRegistrar(program=_CeremonyProgramStub(0), admin="admin", retry_attempts=0)
