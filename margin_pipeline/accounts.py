"""
Account sets for the AMM v4 swap instruction.

Callers either pass the four user-facing keys (MinimalSwapAccounts) or every
account the instruction touches (FullSwapAccounts). The `shape` tag says
which one it is; SwapAccountResolver expands Minimal into Full from the AMM
pool and its OpenBook market.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, List, Union

from solders.instruction import AccountMeta
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from .account_cache import AmmCache, MarketCache, MintCache
from .errors import ValidationError

logger = logging.getLogger(__name__)


class AccountShape(str, Enum):
    MINIMAL = "minimal"
    FULL = "full"


@dataclass(frozen=True)
class MinimalSwapAccounts:
    shape: ClassVar[AccountShape] = AccountShape.MINIMAL
    owner: Pubkey
    amm: Pubkey
    input_mint: Pubkey
    output_mint: Pubkey


@dataclass(frozen=True)
class FullSwapAccounts:
    shape: ClassVar[AccountShape] = AccountShape.FULL
    owner: Pubkey
    amm: Pubkey
    authority: Pubkey
    open_orders: Pubkey
    target_orders: Pubkey
    base_vault: Pubkey
    quote_vault: Pubkey
    market_program: Pubkey
    market: Pubkey
    bids: Pubkey
    asks: Pubkey
    event_queue: Pubkey
    market_base_vault: Pubkey
    market_quote_vault: Pubkey
    vault_signer: Pubkey
    user_source: Pubkey
    user_destination: Pubkey
    token_program: Pubkey = TOKEN_PROGRAM_ID

    def to_account_metas(self) -> List[AccountMeta]:
        """The 18 accounts of swapBaseIn/swapBaseOut, in program order."""
        return [
            AccountMeta(self.token_program, is_signer=False, is_writable=False),
            AccountMeta(self.amm, is_signer=False, is_writable=True),
            AccountMeta(self.authority, is_signer=False, is_writable=False),
            AccountMeta(self.open_orders, is_signer=False, is_writable=True),
            AccountMeta(self.target_orders, is_signer=False, is_writable=True),
            AccountMeta(self.base_vault, is_signer=False, is_writable=True),
            AccountMeta(self.quote_vault, is_signer=False, is_writable=True),
            AccountMeta(self.market_program, is_signer=False, is_writable=False),
            AccountMeta(self.market, is_signer=False, is_writable=True),
            AccountMeta(self.bids, is_signer=False, is_writable=True),
            AccountMeta(self.asks, is_signer=False, is_writable=True),
            AccountMeta(self.event_queue, is_signer=False, is_writable=True),
            AccountMeta(self.market_base_vault, is_signer=False, is_writable=True),
            AccountMeta(self.market_quote_vault, is_signer=False, is_writable=True),
            AccountMeta(self.vault_signer, is_signer=False, is_writable=False),
            AccountMeta(self.user_source, is_signer=False, is_writable=True),
            AccountMeta(self.user_destination, is_signer=False, is_writable=True),
            AccountMeta(self.owner, is_signer=True, is_writable=False),
        ]


SwapAccounts = Union[MinimalSwapAccounts, FullSwapAccounts]


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    return get_associated_token_address(owner, mint, token_program_id=token_program)


class SwapAccountResolver:
    """Expands MinimalSwapAccounts to FullSwapAccounts using the shared caches."""

    def __init__(self, mint_cache: MintCache, amm_cache: AmmCache, market_cache: MarketCache):
        self.mint_cache = mint_cache
        self.amm_cache = amm_cache
        self.market_cache = market_cache

    async def resolve(self, accounts: SwapAccounts) -> FullSwapAccounts:
        """
        Return the full account set for `accounts`.

        The AMM pool and both mints are looked up in parallel, then the
        pool's market; if any lookup fails the whole resolution fails.

        Raises:
            ValidationError: Unknown shape, missing pool, market or mint, a
                mint that is not one of the pool's two, or a mint owned by a
                token program other than SPL Token
        """
        if accounts.shape == AccountShape.FULL:
            return accounts
        if accounts.shape != AccountShape.MINIMAL:
            raise ValidationError(f"Unknown account shape: {accounts.shape}")

        amm, token_programs = await asyncio.gather(
            self.amm_cache.get_account(accounts.amm),
            self.mint_cache.get_token_programs([accounts.input_mint, accounts.output_mint])
        )
        if amm is None:
            raise ValidationError(f"AMM pool {accounts.amm} not found")
        if {accounts.input_mint, accounts.output_mint} != set(amm.mints):
            raise ValidationError(
                f"AMM pool {accounts.amm} trades {amm.base_mint}/{amm.quote_mint}, "
                f"not {accounts.input_mint}/{accounts.output_mint}"
            )
        for mint in (accounts.input_mint, accounts.output_mint):
            if mint not in token_programs:
                raise ValidationError(f"Mint {mint} not found")
            # AMM v4 only moves SPL Token accounts
            if token_programs[mint] != TOKEN_PROGRAM_ID:
                raise ValidationError(f"Mint {mint} is owned by {token_programs[mint]}, not SPL Token")

        market = await self.market_cache.get_account(amm.market_id)
        if market is None:
            raise ValidationError(f"Market {amm.market_id} of AMM pool {accounts.amm} not found")

        full = FullSwapAccounts(
            owner=accounts.owner,
            amm=accounts.amm,
            authority=amm.authority,
            open_orders=amm.open_orders,
            target_orders=amm.target_orders,
            base_vault=amm.base_vault,
            quote_vault=amm.quote_vault,
            market_program=amm.market_program_id,
            market=market.address,
            bids=market.bids,
            asks=market.asks,
            event_queue=market.event_queue,
            market_base_vault=market.base_vault,
            market_quote_vault=market.quote_vault,
            vault_signer=market.vault_signer,
            user_source=associated_token_address(accounts.owner, accounts.input_mint),
            user_destination=associated_token_address(accounts.owner, accounts.output_mint)
        )
        logger.debug(f"Resolved swap accounts for AMM pool {accounts.amm}")
        return full
