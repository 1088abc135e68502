"""Custody oracle price reads with staleness and confidence checks."""

from __future__ import annotations

from veiled_perps.domain.constants import BPS_POWER, PRICE_POWER
from veiled_perps.domain.errors import OraclePriceError, StaleOracleError
from veiled_perps.domain.models import CustodyRecord, OraclePriceRecord, OracleType


def oracle_get_price(custody: CustodyRecord, now: int) -> OraclePriceRecord:
    """Return the custody price if it is fresh and tight enough.

    Args:
        custody: Custody whose oracle is read.
        now: Current unix time in seconds.

    Returns:
        OraclePriceRecord: Validated price.

    Raises:
        OraclePriceError: Raised when the oracle type is NONE, the price is zero,
            or confidence exceeds `max_price_error` basis points of price.
        StaleOracleError: Raised when no price was published or it is older than `max_price_age_sec`.
    """

    if custody.oracle.oracle_type is OracleType.NONE:
        raise OraclePriceError(f"custody {custody.custody_id} has no oracle configured")

    price_record = custody.oracle_price
    if price_record is None:
        raise StaleOracleError(f"custody {custody.custody_id} has no published price")

    price_age = now - price_record.publish_time
    if price_age < 0 or price_age > custody.oracle.max_price_age_sec:
        raise StaleOracleError(
            f"custody {custody.custody_id} price age {price_age}s exceeds {custody.oracle.max_price_age_sec}s"
        )

    if price_record.price <= 0:
        raise OraclePriceError(f"custody {custody.custody_id} price must be positive")

    confidence_bps = price_record.confidence * BPS_POWER // price_record.price
    if confidence_bps > custody.oracle.max_price_error:
        raise OraclePriceError(
            f"custody {custody.custody_id} price confidence {confidence_bps} bps exceeds {custody.oracle.max_price_error} bps"
        )
    return price_record


def oracle_usd_to_tokens(amount_usd: int, price: int) -> int:
    """Convert a USD amount to tokens at a price, truncating.

    Raises:
        OraclePriceError: Raised when price is not positive.
    """

    if price <= 0:
        raise OraclePriceError("price must be positive")
    return amount_usd * PRICE_POWER // price


def oracle_tokens_to_usd(token_amount: int, price: int) -> int:
    """Convert a token amount to USD at a price, truncating."""

    return token_amount * price // PRICE_POWER
