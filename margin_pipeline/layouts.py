"""
On-chain account layouts.

Raydium AMM v4 pool state, the OpenBook (Serum v3) market it is paired
with, SPL mints and token accounts, and the protocol's BasePool.
"""
from construct import Bytes, Const, ConstructError, Flag, Int8ul, Int32ul, Int64ul, Padding, Struct

from .errors import ValidationError

PublicKey = Bytes(32)

# Anchor discriminator of the protocol's BasePool account
BASE_POOL_DISCRIMINATOR = bytes([220, 192, 66, 74, 196, 95, 91, 32])

AMM_V4_U64_FIELDS = (
    "status", "nonce", "max_order", "depth", "base_decimal", "quote_decimal",
    "state", "reset_flag", "min_size", "vol_max_cut_ratio", "amount_wave_ratio",
    "base_lot_size", "quote_lot_size", "min_price_multiplier", "max_price_multiplier",
    "system_decimal_value", "min_separate_numerator", "min_separate_denominator",
    "trade_fee_numerator", "trade_fee_denominator", "pnl_numerator", "pnl_denominator",
    "swap_fee_numerator", "swap_fee_denominator", "base_need_take_pnl",
    "quote_need_take_pnl", "quote_total_pnl", "base_total_pnl", "pool_open_time",
    "punish_pc_amount", "punish_coin_amount", "orderbook_to_init_time",
)

AMM_V4_LAYOUT = Struct(
    *[name / Int64ul for name in AMM_V4_U64_FIELDS],
    # u128 swap counters are not read
    Padding(16),
    Padding(16),
    "swap_base2quote_fee" / Int64ul,
    Padding(16),
    Padding(16),
    "swap_quote2base_fee" / Int64ul,
    "base_vault" / PublicKey,
    "quote_vault" / PublicKey,
    "base_mint" / PublicKey,
    "quote_mint" / PublicKey,
    "lp_mint" / PublicKey,
    "open_orders" / PublicKey,
    "market_id" / PublicKey,
    "market_program_id" / PublicKey,
    "target_orders" / PublicKey,
    "withdraw_queue" / PublicKey,
    "lp_vault" / PublicKey,
    "owner" / PublicKey,
    "lp_reserve" / Int64ul,
    Padding(24),
)

MARKET_V3_LAYOUT = Struct(
    Padding(5),
    "account_flags" / Int64ul,
    "own_address" / PublicKey,
    "vault_signer_nonce" / Int64ul,
    "base_mint" / PublicKey,
    "quote_mint" / PublicKey,
    "base_vault" / PublicKey,
    "base_deposits_total" / Int64ul,
    "base_fees_accrued" / Int64ul,
    "quote_vault" / PublicKey,
    "quote_deposits_total" / Int64ul,
    "quote_fees_accrued" / Int64ul,
    "quote_dust_threshold" / Int64ul,
    "request_queue" / PublicKey,
    "event_queue" / PublicKey,
    "bids" / PublicKey,
    "asks" / PublicKey,
    "base_lot_size" / Int64ul,
    "quote_lot_size" / Int64ul,
    "fee_rate_bps" / Int64ul,
    "referrer_rebates_accrued" / Int64ul,
    Padding(7),
)

# Token-2022 extensions follow the base 82 bytes and are not parsed
MINT_LAYOUT = Struct(
    "mint_authority_option" / Int32ul,
    "mint_authority" / PublicKey,
    "supply" / Int64ul,
    "decimals" / Int8ul,
    "is_initialized" / Flag,
    "freeze_authority_option" / Int32ul,
    "freeze_authority" / PublicKey,
)

# Leading fields of an SPL token account
TOKEN_ACCOUNT_LAYOUT = Struct(
    "mint" / PublicKey,
    "owner" / PublicKey,
    "amount" / Int64ul,
)

BASE_POOL_LAYOUT = Struct(
    "discriminator" / Const(BASE_POOL_DISCRIMINATOR),
    "collateral" / PublicKey,
    "collateral_vault" / PublicKey,
    "currency" / PublicKey,
    "currency_vault" / PublicKey,
    "is_long_pool" / Flag,
    "bump" / Int8ul,
)

# swapBaseIn: (9, amount_in, minimum_amount_out); swapBaseOut: (11, max_amount_in, amount_out)
SWAP_INSTRUCTION_LAYOUT = Struct(
    "instruction" / Int8ul,
    "amount_in" / Int64ul,
    "amount_out" / Int64ul,
)


def parse_account(layout: Struct, data: bytes, kind: str, address=None, exact: bool = False):
    """
    Parse `data` with `layout`.

    Args:
        layout: construct Struct to parse with
        data: Raw account data
        kind: Account kind for error messages
        address: Account address for error messages
        exact: Require the data to be exactly the layout size

    Raises:
        ValidationError: Data too short, wrong size, or a constant mismatch
    """
    if exact and len(data) != layout.sizeof():
        raise ValidationError(f"{kind} account {address} has {len(data)} bytes, expected {layout.sizeof()}")
    try:
        return layout.parse(data)
    except ConstructError as e:
        raise ValidationError(f"Account {address} is not a valid {kind}: {e}") from e
