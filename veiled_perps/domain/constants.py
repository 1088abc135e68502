"""Fixed-point scales, protocol limits, and computation definition names."""

BPS_POWER = 10_000
RATE_POWER = 1_000_000_000
USD_DECIMALS = 6
PRICE_POWER = 10**USD_DECIMALS

MAX_POOL_NAME_LEN = 64
MAX_POOLS = 10
MAX_CUSTODIES = 10

CIPHERTEXT_SIZE = 32
NONCE_SIZE = 16
PUBLIC_KEY_SIZE = 32
POSITION_FIELD_COUNT = 5
ZERO_CIPHERTEXT = bytes(CIPHERTEXT_SIZE)

SIDE_LONG = 1
SIDE_SHORT = 2

# Leverage reported when the remaining margin is zero.
UNBOUNDED_LEVERAGE = 1_000_000

SECONDS_PER_HOUR = 3600

COMP_DEF_INIT_POSITION = "init_position"
COMP_DEF_UPDATE_POSITION = "update_position"
COMP_DEF_CHECK_LIQUIDATION = "check_liquidation"
COMP_DEF_CLOSE_POSITION = "close_position"
COMP_DEF_CALCULATE_PNL = "calculate_pnl"

COMPUTATION_DEFINITION_NAMES: tuple[str, ...] = (
    COMP_DEF_INIT_POSITION,
    COMP_DEF_UPDATE_POSITION,
    COMP_DEF_CHECK_LIQUIDATION,
    COMP_DEF_CLOSE_POSITION,
    COMP_DEF_CALCULATE_PNL,
)
