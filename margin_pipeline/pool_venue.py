"""
Single-pool swap venue on a Raydium AMM v4 pool.

Quotes straight from the pool's vault balances with constant-product math
and emits one swapBaseIn / swapBaseOut instruction; there are no setup or
cleanup instructions. When a margin pool is named, the swap must match the
position's open or close leg and the quote records the position side.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from construct import ConstructError
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .account_cache import AmmCache, AmmInfo, MarketCache, MintCache, PoolCache, PoolInfo
from .accounts import MinimalSwapAccounts, SwapAccountResolver
from .errors import PipelineError, VenueError
from .jupiter_client import SwapMode
from .layouts import SWAP_INSTRUCTION_LAYOUT, TOKEN_ACCOUNT_LAYOUT, parse_account
from .solana_client import SolanaClient
from .transaction_builder import InstructionSet
from .utils import b64decode_account_data, short_key, to_pubkey

logger = logging.getLogger(__name__)

VENUE = "pool"
BPS_DENOMINATOR = 10_000

RAYDIUM_AMM_V4_PROGRAM_ID = Pubkey.from_string("675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8")

SWAP_BASE_IN = 9
SWAP_BASE_OUT = 11

# Initialized, SwapOnly, WaitingTrade
SWAP_ENABLED_STATUSES = (1, 6, 7)


class SwapDirection(str, Enum):
    BASE_TO_QUOTE = "base_to_quote"
    QUOTE_TO_BASE = "quote_to_base"


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"


class PositionAction(str, Enum):
    # currency -> collateral
    OPEN = "open"
    # collateral -> currency
    CLOSE = "close"


def calculate_swap_output(amount_in: int, reserve_in: int, reserve_out: int,
                          fee_numerator: int = 25, fee_denominator: int = 10_000) -> int:
    """x*y=k output for `amount_in`, net of the pool fee."""
    amount_in_with_fee = amount_in * (fee_denominator - fee_numerator)
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * fee_denominator + amount_in_with_fee
    return numerator // denominator if denominator else 0


def calculate_swap_input(amount_out: int, reserve_in: int, reserve_out: int,
                         fee_numerator: int = 25, fee_denominator: int = 10_000) -> int:
    """Inverse: input needed to receive `amount_out`. Rounds up."""
    if amount_out >= reserve_out:
        raise VenueError(f"Requested output {amount_out} exceeds pool reserve {reserve_out}", venue=VENUE)
    numerator = reserve_in * amount_out * fee_denominator
    denominator = (reserve_out - amount_out) * (fee_denominator - fee_numerator)
    return numerator // denominator + 1


def calculate_price_impact_pct(amount_in: int, amount_out: int, reserve_in: int, reserve_out: int) -> float:
    """Drop of the pool price (out per in) caused by the swap, in percent."""
    if not (reserve_in and reserve_out):
        return 0.0
    price_before = reserve_out / reserve_in
    price_after = (reserve_out - amount_out) / (reserve_in + amount_in)
    return (price_before - price_after) * 100 / price_before


@dataclass
class PoolQuote:
    amm: Pubkey
    input_mint: Pubkey
    output_mint: Pubkey
    direction: SwapDirection
    swap_mode: str
    in_amount: int
    out_amount: int
    # min out for ExactIn, max in for ExactOut
    other_amount_threshold: int
    slippage_bps: int
    price_impact_pct: float
    position_side: Optional[PositionSide] = None
    position_action: Optional[PositionAction] = None


def swap_direction(amm: AmmInfo, input_mint: Pubkey, output_mint: Pubkey) -> SwapDirection:
    if input_mint == amm.base_mint and output_mint == amm.quote_mint:
        return SwapDirection.BASE_TO_QUOTE
    if input_mint == amm.quote_mint and output_mint == amm.base_mint:
        return SwapDirection.QUOTE_TO_BASE
    raise VenueError(
        f"AMM pool {amm.address} does not trade {short_key(input_mint)} -> {short_key(output_mint)}",
        venue=VENUE
    )


def position_leg(pool: PoolInfo, input_mint: Pubkey, output_mint: Pubkey) -> Tuple[PositionSide, PositionAction]:
    """
    Side and leg of a margin position swap.

    Opening a long or a short sells the pool's currency for its collateral;
    closing sells the collateral back.
    """
    side = PositionSide.LONG if pool.is_long_pool else PositionSide.SHORT
    if input_mint == pool.currency and output_mint == pool.collateral:
        return side, PositionAction.OPEN
    if input_mint == pool.collateral and output_mint == pool.currency:
        return side, PositionAction.CLOSE
    raise VenueError(
        f"Swap {short_key(input_mint)} -> {short_key(output_mint)} is neither leg of "
        f"{side.value} pool {pool.address}",
        venue=VENUE
    )


def decode_token_amount(address: Pubkey, data: bytes) -> int:
    return parse_account(TOKEN_ACCOUNT_LAYOUT, data, "token account", address).amount


class PoolVenue:
    """Quotes and builds swaps against one AMM v4 pool."""

    name = VENUE

    def __init__(
        self,
        solana_client: SolanaClient,
        amm_cache: AmmCache,
        market_cache: MarketCache,
        mint_cache: MintCache,
        pool_cache: PoolCache
    ):
        self.solana_client = solana_client
        self.amm_cache = amm_cache
        self.pool_cache = pool_cache
        self.resolver = SwapAccountResolver(mint_cache, amm_cache, market_cache)

    @property
    def program_id(self) -> Pubkey:
        return self.amm_cache.program_id

    async def _reserves(self, amm: AmmInfo) -> Tuple[int, int]:
        """(base, quote) vault balances net of the pnl the pool still owes."""
        # Vault balances change every block, so they bypass the cache
        accounts = await self.solana_client.get_multiple_accounts([amm.base_vault, amm.quote_vault])
        if amm.base_vault not in accounts or amm.quote_vault not in accounts:
            raise VenueError(f"AMM pool {amm.address} vault account missing", venue=VENUE)
        base = decode_token_amount(amm.base_vault, b64decode_account_data(accounts[amm.base_vault].data))
        quote = decode_token_amount(amm.quote_vault, b64decode_account_data(accounts[amm.quote_vault].data))
        return max(base - amm.base_need_take_pnl, 0), max(quote - amm.quote_need_take_pnl, 0)

    async def _margin_pool(self, margin_pool) -> Optional[PoolInfo]:
        if margin_pool is None:
            return None
        pool = await self.pool_cache.get_account(margin_pool)
        if pool is None:
            raise VenueError(f"Margin pool {margin_pool} not found", venue=VENUE)
        return pool

    async def quote(
        self,
        pool_id: Optional[str],
        input_mint,
        output_mint,
        amount: int,
        slippage_bps: int,
        swap_mode: str = SwapMode.EXACT_IN,
        margin_pool=None
    ) -> PoolQuote:
        """
        Quote a swap against AMM pool `pool_id` from live reserves.

        Args:
            pool_id: AMM pool address
            input_mint: Mint sold
            output_mint: Mint bought
            amount: Input amount (ExactIn) or output amount (ExactOut)
            slippage_bps: Slippage tolerance in basis points
            swap_mode: ExactIn or ExactOut
            margin_pool: Optional BasePool whose open or close leg this swap is

        Raises:
            VenueError: No or malformed pool id, unknown or malformed pool,
                pool not swappable, mints not in the pool or not a leg of the
                margin pool, or empty reserves
        """
        if not pool_id:
            raise VenueError("Pool venue requires a pool id", venue=VENUE)

        try:
            input_mint = to_pubkey(input_mint)
            output_mint = to_pubkey(output_mint)
            amm, pool = await asyncio.gather(
                self.amm_cache.get_account(pool_id),
                self._margin_pool(margin_pool)
            )
            if amm is None:
                raise VenueError(f"AMM pool {pool_id} not found", venue=VENUE)
            if amm.status not in SWAP_ENABLED_STATUSES:
                raise VenueError(f"AMM pool {pool_id} is not swappable (status {amm.status})", venue=VENUE)
            direction = swap_direction(amm, input_mint, output_mint)
            side, action = position_leg(pool, input_mint, output_mint) if pool else (None, None)
            reserve_base, reserve_quote = await self._reserves(amm)
        except VenueError:
            raise
        except (PipelineError, ValueError, TypeError) as e:
            raise VenueError(f"AMM pool {pool_id} lookup failed: {e}", venue=VENUE) from e

        if direction == SwapDirection.BASE_TO_QUOTE:
            reserve_in, reserve_out = reserve_base, reserve_quote
        else:
            reserve_in, reserve_out = reserve_quote, reserve_base
        if reserve_in == 0 or reserve_out == 0:
            raise VenueError(f"AMM pool {pool_id} has empty reserves", venue=VENUE)

        fee = (amm.swap_fee_numerator, amm.swap_fee_denominator)
        if swap_mode == SwapMode.EXACT_OUT:
            out_amount = amount
            in_amount = calculate_swap_input(out_amount, reserve_in, reserve_out, *fee)
            threshold = -(-in_amount * (BPS_DENOMINATOR + slippage_bps) // BPS_DENOMINATOR)
        else:
            in_amount = amount
            out_amount = calculate_swap_output(in_amount, reserve_in, reserve_out, *fee)
            if out_amount == 0:
                raise VenueError(f"AMM pool {pool_id} output rounds to zero for {in_amount}", venue=VENUE)
            threshold = out_amount * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR

        quote = PoolQuote(
            amm=amm.address,
            input_mint=input_mint,
            output_mint=output_mint,
            direction=direction,
            swap_mode=swap_mode,
            in_amount=in_amount,
            out_amount=out_amount,
            other_amount_threshold=threshold,
            slippage_bps=slippage_bps,
            price_impact_pct=calculate_price_impact_pct(in_amount, out_amount, reserve_in, reserve_out),
            position_side=side,
            position_action=action
        )
        logger.debug(
            f"Pool quote {short_key(amm.address)} {direction.value}: in={in_amount} out={out_amount} "
            f"impact={quote.price_impact_pct:.2f}%"
            + (f" ({side.value} {action.value})" if side else "")
        )
        return quote

    async def build(self, quote: PoolQuote, owner) -> InstructionSet:
        """One swap instruction, no setup or cleanup."""
        try:
            accounts = await self.resolver.resolve(MinimalSwapAccounts(
                owner=to_pubkey(owner),
                amm=quote.amm,
                input_mint=quote.input_mint,
                output_mint=quote.output_mint
            ))
        except (PipelineError, ValueError) as e:
            raise VenueError(f"Pool swap accounts unavailable: {e}", venue=VENUE) from e

        try:
            data = self._instruction_data(quote)
        except ConstructError as e:
            raise VenueError(f"Pool swap amounts out of range: {e}", venue=VENUE) from e
        swap_ix = Instruction(program_id=self.program_id, accounts=accounts.to_account_metas(), data=data)
        return InstructionSet(core=[swap_ix])

    @staticmethod
    def _instruction_data(quote: PoolQuote) -> bytes:
        if quote.swap_mode == SwapMode.EXACT_OUT:
            return SWAP_INSTRUCTION_LAYOUT.build(dict(
                instruction=SWAP_BASE_OUT, amount_in=quote.other_amount_threshold, amount_out=quote.out_amount
            ))
        return SWAP_INSTRUCTION_LAYOUT.build(dict(
            instruction=SWAP_BASE_IN, amount_in=quote.in_amount, amount_out=quote.other_amount_threshold
        ))
