"""
Read-through account caches.

One cache instance is created at startup and shared by every pipeline run
for the life of the process; it is never torn down. Writes are plain dict
assignments (last write wins), so concurrent runs need no lock.
"""
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Callable, Dict, Generic, Iterable, Optional, TypeVar

from solders.account import Account
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

from .errors import ValidationError
from .layouts import AMM_V4_LAYOUT, BASE_POOL_LAYOUT, MARKET_V3_LAYOUT, MINT_LAYOUT, parse_account
from .solana_client import SolanaClient
from .utils import b64decode_account_data, dedupe, get_terminal_colors, to_pubkey

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOKEN_PROGRAM_IDS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

AMM_AUTHORITY_SEED = b"amm authority"


@dataclass
class CachedAccount(Generic[T]):
    """Decoded account payload plus when it was fetched."""
    address: Pubkey
    payload: T
    fetched_at: float


class AccountCache(Generic[T]):
    """
    Address -> decoded record, fetched through one batched RPC read per miss set.

    Accounts that do not exist on-chain are left out of results; they are not
    errors and are not cached.
    """

    def __init__(
        self,
        solana_client: SolanaClient,
        decoder: Callable[[Pubkey, Account], T],
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.solana_client = solana_client
        self.decoder = decoder
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Pubkey, CachedAccount[T]] = {}

    def _fresh(self, entry: CachedAccount[T]) -> bool:
        if self.ttl_seconds is None:
            return True
        return self._clock() - entry.fetched_at < self.ttl_seconds

    def peek(self, address) -> Optional[T]:
        """Cached payload without touching the network, or None."""
        entry = self._entries.get(to_pubkey(address))
        if entry is None or not self._fresh(entry):
            return None
        return entry.payload

    async def get_accounts(self, addresses: Iterable) -> Dict[Pubkey, T]:
        """
        Get decoded records for `addresses`.

        Cache hits are served directly; all misses go out in a single
        batched fetch and are cached before returning.

        Args:
            addresses: Pubkeys or base58 strings

        Returns:
            Mapping of pubkey -> decoded record (absent accounts omitted)
        """
        colors = get_terminal_colors()
        pubkeys = dedupe(to_pubkey(a) for a in addresses)
        result: Dict[Pubkey, T] = {}
        misses = []
        for pubkey in pubkeys:
            entry = self._entries.get(pubkey)
            if entry is not None and self._fresh(entry):
                result[pubkey] = entry.payload
            else:
                misses.append(pubkey)

        if misses:
            logger.debug(
                f"{colors['DIM']}{type(self).__name__}: {len(result)} hit(s), "
                f"{len(misses)} miss(es){colors['RESET']}"
            )
            fetched = await self.solana_client.get_multiple_accounts(misses)
            now = self._clock()
            for pubkey in misses:
                account = fetched.get(pubkey)
                if account is None:
                    continue
                payload = self.decoder(pubkey, account)
                self._entries[pubkey] = CachedAccount(address=pubkey, payload=payload, fetched_at=now)
                result[pubkey] = payload
        return result

    async def get_account(self, address) -> Optional[T]:
        pubkey = to_pubkey(address)
        return (await self.get_accounts([pubkey])).get(pubkey)

    def invalidate(self, address=None):
        """Drop one entry, or every entry when no address is given."""
        if address is None:
            self._entries.clear()
        else:
            self._entries.pop(to_pubkey(address), None)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class MintInfo:
    """SPL mint state plus the token program that owns it."""
    address: Pubkey
    token_program: Pubkey
    decimals: int
    supply: int
    is_initialized: bool


def decode_mint(address: Pubkey, account: Account) -> MintInfo:
    """Decode an SPL Token / Token-2022 mint; Token-2022 extensions are ignored."""
    if account.owner not in TOKEN_PROGRAM_IDS:
        raise ValidationError(f"Account {address} is not a mint (owner {account.owner})")
    mint = parse_account(MINT_LAYOUT, b64decode_account_data(account.data), "mint", address)
    return MintInfo(
        address=address,
        token_program=account.owner,
        decimals=mint.decimals,
        supply=mint.supply,
        is_initialized=mint.is_initialized
    )


class MintCache(AccountCache[MintInfo]):
    """Mint cache exposing decimals and the owning token program."""

    def __init__(self, solana_client: SolanaClient, ttl_seconds: Optional[float] = None, **kwargs):
        super().__init__(solana_client, decode_mint, ttl_seconds=ttl_seconds, **kwargs)

    async def get_decimals(self, mints: Iterable) -> Dict[Pubkey, int]:
        return {mint: info.decimals for mint, info in (await self.get_accounts(mints)).items()}

    async def get_token_programs(self, mints: Iterable) -> Dict[Pubkey, Pubkey]:
        return {mint: info.token_program for mint, info in (await self.get_accounts(mints)).items()}

    async def get_token_program(self, mint) -> Pubkey:
        """
        Owning token program of `mint`.

        Raises:
            ValidationError: If the mint does not exist
        """
        info = await self.get_account(mint)
        if info is None:
            raise ValidationError(f"Mint {mint} not found")
        return info.token_program


@dataclass
class PoolInfo:
    """Protocol BasePool account: one collateral/currency pair, long or short."""
    address: Pubkey
    collateral: Pubkey
    collateral_vault: Pubkey
    currency: Pubkey
    currency_vault: Pubkey
    is_long_pool: bool
    bump: int


def decode_pool(address: Pubkey, account: Account) -> PoolInfo:
    pool = parse_account(BASE_POOL_LAYOUT, b64decode_account_data(account.data), "BasePool", address)
    return PoolInfo(
        address=address,
        collateral=Pubkey.from_bytes(pool.collateral),
        collateral_vault=Pubkey.from_bytes(pool.collateral_vault),
        currency=Pubkey.from_bytes(pool.currency),
        currency_vault=Pubkey.from_bytes(pool.currency_vault),
        is_long_pool=pool.is_long_pool,
        bump=pool.bump
    )


class PoolCache(AccountCache[PoolInfo]):
    def __init__(self, solana_client: SolanaClient, ttl_seconds: Optional[float] = None, **kwargs):
        super().__init__(solana_client, decode_pool, ttl_seconds=ttl_seconds, **kwargs)


def _program_address(seeds, program_id: Pubkey, what: str) -> Pubkey:
    # solders raises its own PubkeyError for seeds that land on the curve
    try:
        return Pubkey.create_program_address(seeds, program_id)
    except Exception as e:
        raise ValidationError(f"Cannot derive {what}: {e}") from e


@dataclass
class AmmInfo:
    """
    Raydium AMM v4 pool state.

    Reserves are not stored here; they are the vault balances minus the
    pnl the pool still owes, and change every block.
    """
    address: Pubkey
    program_id: Pubkey
    authority: Pubkey
    status: int
    base_decimals: int
    quote_decimals: int
    swap_fee_numerator: int
    swap_fee_denominator: int
    base_need_take_pnl: int
    quote_need_take_pnl: int
    base_vault: Pubkey
    quote_vault: Pubkey
    base_mint: Pubkey
    quote_mint: Pubkey
    open_orders: Pubkey
    target_orders: Pubkey
    market_id: Pubkey
    market_program_id: Pubkey

    @property
    def mints(self):
        return (self.base_mint, self.quote_mint)


def decode_amm(address: Pubkey, account: Account, program_id: Optional[Pubkey] = None) -> AmmInfo:
    """
    Decode a 752-byte AMM v4 pool.

    Raises:
        ValidationError: Wrong owner, wrong size, or an authority nonce that
            does not derive a program address
    """
    if program_id is not None and account.owner != program_id:
        raise ValidationError(f"Account {address} is not an AMM pool (owner {account.owner})")
    amm = parse_account(AMM_V4_LAYOUT, b64decode_account_data(account.data), "AMM pool", address, exact=True)
    if amm.nonce > 0xFF:
        raise ValidationError(f"AMM pool {address} has an invalid authority nonce {amm.nonce}")
    return AmmInfo(
        address=address,
        program_id=account.owner,
        authority=_program_address([AMM_AUTHORITY_SEED, bytes([amm.nonce])], account.owner, "AMM authority"),
        status=amm.status,
        base_decimals=amm.base_decimal,
        quote_decimals=amm.quote_decimal,
        swap_fee_numerator=amm.swap_fee_numerator,
        swap_fee_denominator=amm.swap_fee_denominator,
        base_need_take_pnl=amm.base_need_take_pnl,
        quote_need_take_pnl=amm.quote_need_take_pnl,
        base_vault=Pubkey.from_bytes(amm.base_vault),
        quote_vault=Pubkey.from_bytes(amm.quote_vault),
        base_mint=Pubkey.from_bytes(amm.base_mint),
        quote_mint=Pubkey.from_bytes(amm.quote_mint),
        open_orders=Pubkey.from_bytes(amm.open_orders),
        target_orders=Pubkey.from_bytes(amm.target_orders),
        market_id=Pubkey.from_bytes(amm.market_id),
        market_program_id=Pubkey.from_bytes(amm.market_program_id)
    )


class AmmCache(AccountCache[AmmInfo]):
    """AMM pools owned by `program_id`."""

    def __init__(self, solana_client: SolanaClient, program_id: Pubkey, ttl_seconds: Optional[float] = None, **kwargs):
        super().__init__(solana_client, partial(decode_amm, program_id=program_id), ttl_seconds=ttl_seconds, **kwargs)
        self.program_id = program_id


@dataclass
class MarketInfo:
    """OpenBook market accounts an AMM v4 swap passes through."""
    address: Pubkey
    program_id: Pubkey
    vault_signer: Pubkey
    base_mint: Pubkey
    quote_mint: Pubkey
    base_vault: Pubkey
    quote_vault: Pubkey
    event_queue: Pubkey
    bids: Pubkey
    asks: Pubkey


def decode_market(address: Pubkey, account: Account) -> MarketInfo:
    market = parse_account(MARKET_V3_LAYOUT, b64decode_account_data(account.data), "market", address)
    vault_signer = _program_address(
        [bytes(address), market.vault_signer_nonce.to_bytes(8, "little")],
        account.owner,
        "market vault signer"
    )
    return MarketInfo(
        address=address,
        program_id=account.owner,
        vault_signer=vault_signer,
        base_mint=Pubkey.from_bytes(market.base_mint),
        quote_mint=Pubkey.from_bytes(market.quote_mint),
        base_vault=Pubkey.from_bytes(market.base_vault),
        quote_vault=Pubkey.from_bytes(market.quote_vault),
        event_queue=Pubkey.from_bytes(market.event_queue),
        bids=Pubkey.from_bytes(market.bids),
        asks=Pubkey.from_bytes(market.asks)
    )


class MarketCache(AccountCache[MarketInfo]):
    def __init__(self, solana_client: SolanaClient, ttl_seconds: Optional[float] = None, **kwargs):
        super().__init__(solana_client, decode_market, ttl_seconds=ttl_seconds, **kwargs)
