"""
Swap routing across two venues: the aggregator and a single pool.

The preferred venue is tried once; on VenueError the other venue is tried
once; if that fails too the call fails with AllVenuesFailedError.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from solders.address_lookup_table_account import AddressLookupTableAccount

from .errors import AllVenuesFailedError, PipelineError, ValidationError, VenueError
from .jupiter_client import JupiterClient, SwapMode
from .pool_venue import PoolVenue, PositionAction, PositionSide
from .solana_client import SolanaClient
from .transaction_builder import InstructionSet
from .utils import get_terminal_colors, short_key, to_pubkey

logger = logging.getLogger(__name__)

MAX_SLIPPAGE_BPS = 10_000


class Venue(str, Enum):
    AGGREGATOR = "jupiter"
    POOL = "pool"

    @property
    def alternate(self) -> "Venue":
        return Venue.POOL if self == Venue.AGGREGATOR else Venue.AGGREGATOR


_SWAP_MODES = {
    "exactin": SwapMode.EXACT_IN,
    "exact_in": SwapMode.EXACT_IN,
    "exactout": SwapMode.EXACT_OUT,
    "exact_out": SwapMode.EXACT_OUT,
}


def normalize_swap_mode(swap_mode: str) -> str:
    """Accept ExactIn/EXACT_IN style names; return the aggregator's spelling."""
    try:
        return _SWAP_MODES[str(swap_mode).lower()]
    except KeyError:
        raise ValidationError(f"Unknown swap mode: {swap_mode}") from None


@dataclass(frozen=True)
class SwapOptions:
    """Venue-specific knobs; each venue ignores the ones it does not use."""
    pool_id: Optional[str] = None
    # BasePool whose open or close leg the swap is; pool venue only
    margin_pool: Optional[str] = None
    only_direct_routes: bool = False
    as_legacy: bool = False
    max_accounts: Optional[int] = None
    wrap_unwrap_sol: bool = True
    delegate: Optional[str] = None


@dataclass
class QuoteResult:
    """Venue-normalized quote plus the instructions that execute it."""
    in_amount: int
    out_amount: int
    instruction_set: InstructionSet
    lookup_tables: List[AddressLookupTableAccount] = field(default_factory=list)
    venue: Optional[Venue] = None
    price_impact_pct: float = 0.0
    position_side: Optional[PositionSide] = None
    position_action: Optional[PositionAction] = None


class AggregatorVenue:
    """Quote, then build-from-quote, through the Jupiter API."""

    venue = Venue.AGGREGATOR

    def __init__(self, jupiter_client: JupiterClient, solana_client: SolanaClient):
        self.jupiter_client = jupiter_client
        self.solana_client = solana_client

    async def swap(self, owner, input_mint, output_mint, amount, slippage_bps, swap_mode, options: SwapOptions) -> QuoteResult:
        quote = await self.jupiter_client.get_quote(
            str(input_mint),
            str(output_mint),
            amount,
            slippage_bps=slippage_bps,
            swap_mode=swap_mode,
            only_direct_routes=options.only_direct_routes,
            as_legacy=options.as_legacy,
            max_accounts=options.max_accounts
        )
        response = await self.jupiter_client.get_swap_instructions(
            quote,
            str(owner),
            wrap_unwrap_sol=options.wrap_unwrap_sol,
            delegate=options.delegate
        )
        if response.compute_budget_instructions:
            # The transaction builder owns the compute budget
            logger.debug(f"Dropping {len(response.compute_budget_instructions)} aggregator compute-budget instruction(s)")

        setup = [ix.to_instruction() for ix in response.setup_instructions]
        if response.token_ledger_instruction:
            setup.append(response.token_ledger_instruction.to_instruction())
        cleanup = [response.cleanup_instruction.to_instruction()] if response.cleanup_instruction else []

        try:
            lookup_tables = await self.solana_client.get_address_lookup_table_accounts(response.address_lookup_tables)
        except (PipelineError, ValueError) as e:
            raise VenueError(f"Jupiter lookup tables unavailable: {e}", venue=self.venue.value) from e

        return QuoteResult(
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
            instruction_set=InstructionSet(
                setup=setup,
                core=[response.swap_instruction.to_instruction()],
                cleanup=cleanup
            ),
            lookup_tables=lookup_tables,
            venue=self.venue,
            price_impact_pct=quote.price_impact_pct
        )


class PoolSwapVenue:
    """Direct swap against the AMM pool named by SwapOptions.pool_id."""

    venue = Venue.POOL

    def __init__(self, pool_venue: PoolVenue):
        self.pool_venue = pool_venue

    async def swap(self, owner, input_mint, output_mint, amount, slippage_bps, swap_mode, options: SwapOptions) -> QuoteResult:
        quote = await self.pool_venue.quote(
            options.pool_id, input_mint, output_mint, amount, slippage_bps, swap_mode,
            margin_pool=options.margin_pool
        )
        instruction_set = await self.pool_venue.build(quote, owner)
        return QuoteResult(
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
            instruction_set=instruction_set,
            lookup_tables=[],
            venue=self.venue,
            price_impact_pct=quote.price_impact_pct,
            position_side=quote.position_side,
            position_action=quote.position_action
        )


class SwapRouter:
    """Routes swaps to the preferred venue with a single fallback."""

    def __init__(self, venues: Dict[Venue, object]):
        self.venues = dict(venues)

    @staticmethod
    def validate(input_mint, output_mint, amount: int, slippage_bps: int):
        if amount is None or amount <= 0:
            raise ValidationError(f"Swap amount must be positive, got {amount}")
        if not 0 <= slippage_bps <= MAX_SLIPPAGE_BPS:
            raise ValidationError(f"Slippage must be within 0..{MAX_SLIPPAGE_BPS} bps, got {slippage_bps}")
        try:
            same = to_pubkey(input_mint) == to_pubkey(output_mint)
        except ValueError as e:
            raise ValidationError(f"Invalid mint address: {e}") from e
        if same:
            raise ValidationError("Input and output mint must differ")

    async def _swap_on(self, venue: Venue, *args) -> QuoteResult:
        adapter = self.venues.get(venue)
        if adapter is None:
            raise VenueError(f"Venue {venue.value} is not configured", venue=venue.value)
        return await adapter.swap(*args)

    async def swap(
        self,
        owner,
        input_mint,
        output_mint,
        amount: int,
        slippage_bps: int,
        swap_mode: str = SwapMode.EXACT_IN,
        preferred_venue: Venue = Venue.AGGREGATOR,
        options: Optional[SwapOptions] = None
    ) -> QuoteResult:
        """
        Quote and build a swap.

        Args:
            owner: Wallet whose token accounts are swapped
            input_mint: Mint sold
            output_mint: Mint bought
            amount: Input amount (ExactIn) or output amount (ExactOut), base units
            slippage_bps: Slippage tolerance in basis points
            swap_mode: ExactIn or ExactOut
            preferred_venue: Venue tried first
            options: Venue-specific options (pool id, routing flags, delegate)

        Returns:
            QuoteResult from whichever venue succeeded

        Raises:
            ValidationError: Bad input, raised before any request
            AllVenuesFailedError: Preferred and alternate venue both failed
        """
        colors = get_terminal_colors()
        self.validate(input_mint, output_mint, amount, slippage_bps)
        swap_mode = normalize_swap_mode(swap_mode)
        preferred_venue = Venue(preferred_venue)
        options = options or SwapOptions()
        args = (owner, input_mint, output_mint, amount, slippage_bps, swap_mode, options)

        errors = {}
        for venue in (preferred_venue, preferred_venue.alternate):
            try:
                result = await self._swap_on(venue, *args)
            except VenueError as e:
                errors[venue.value] = e
                logger.warning(f"{colors['RED']}{venue.value} swap failed:{colors['RESET']} {e}")
                continue
            logger.info(
                f"Swap via {colors['CYAN']}{venue.value}{colors['RESET']}: "
                f"{short_key(input_mint)} -> {short_key(output_mint)} "
                f"in={colors['GREEN']}{result.in_amount}{colors['RESET']} "
                f"out={colors['GREEN']}{result.out_amount}{colors['RESET']}"
            )
            return result

        logger.error("All swap venues failed")
        raise AllVenuesFailedError(errors)
