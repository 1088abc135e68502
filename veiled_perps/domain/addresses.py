"""Deterministic ledger address derivation."""

from __future__ import annotations

import hashlib


def domain_derive_address(*seeds: str | int) -> str:
    """Derive a stable 32-byte hex address from ordered seed values.

    Args:
        seeds: Seed values such as a prefix label and parent addresses.

    Returns:
        str: 64-character lowercase hex address.

    Raises:
        ValueError: Raised when no seed is given.
    """

    if not seeds:
        raise ValueError("at least one seed is required")

    digest = hashlib.sha256()
    for seed in seeds:
        encoded_seed = str(seed).encode("utf-8")
        digest.update(len(encoded_seed).to_bytes(4, "little"))
        digest.update(encoded_seed)
    return digest.hexdigest()
