"""Program ids and fixed domain constants."""

from __future__ import annotations

from solders.pubkey import Pubkey

# ---------------- Program IDs ----------------
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")

# Wrapped SOL mint, the output side of every conversion quote
NATIVE_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")

# SPL Token instruction indices
BURN_IX = 8
CLOSE_ACCOUNT_IX = 9

# ---------------- Units ----------------
LAMPORTS_PER_SOL = 1_000_000_000

# Rent deposit returned by closing one 165-byte token account (0.00203928 SOL)
RENT_RECLAIM_LAMPORTS = 2_039_280

# Share of the reclaimed value kept by the platform in direct-withdrawal mode
PLATFORM_FEE_FRACTION = 0.021

# ---------------- Wire limits ----------------
MAX_TRANSACTION_SIZE = 1232
SIGNATURE_SIZE = 64
PUBKEY_SIZE = 32
BLOCKHASH_SIZE = 32
MESSAGE_HEADER_SIZE = 3

# ---------------- Batch defaults ----------------
EMPTY_BATCH_CEILING = 15
VALUED_BATCH_CEILING = 5

COMPUTE_UNIT_PRICE_MICRO_LAMPORTS = 10_000
COMPUTE_UNIT_LIMIT = 200_000

# ---------------- Planner defaults ----------------
# Above this share of the size ceiling a non-empty account is burned, never swapped.
CONVERSION_SIZE_CUTOFF = 0.8
# 0.000005 SOL; quoted output below this is not worth a swap
NEGLIGIBLE_OUTPUT_LAMPORTS = 5_000
MAX_PRICE_IMPACT_PCT = 20.0
MAX_ROUTE_HOPS = 2
DEFAULT_SLIPPAGE_BPS = 100

# ---------------- Orchestrator defaults ----------------
BATCH_DELAY_SECONDS = 8.0
COMPUTE_RETRY_LIMIT = 2
COMPUTE_RETRY_DELAY_SECONDS = 2.0
CONFIRM_TIMEOUT_SECONDS = 60.0
STATUS_CHECK_DELAY_SECONDS = 5.0


def fmt_sol(lamports: int) -> str:
    return f"{lamports / LAMPORTS_PER_SOL:.9f}".rstrip("0").rstrip(".") or "0"
