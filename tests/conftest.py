"""
Pytest configuration and fixtures for margin pipeline tests.
"""
from types import SimpleNamespace

import pytest
from unittest.mock import AsyncMock
from solders.account import Account
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID

from margin_pipeline.account_cache import AMM_AUTHORITY_SEED
from margin_pipeline.layouts import (
    AMM_V4_LAYOUT,
    BASE_POOL_LAYOUT,
    MARKET_V3_LAYOUT,
    MINT_LAYOUT,
    TOKEN_ACCOUNT_LAYOUT,
)
from margin_pipeline.pool_venue import RAYDIUM_AMM_V4_PROGRAM_ID
from margin_pipeline.transaction_builder import InstructionSet

OPENBOOK_PROGRAM_ID = Pubkey.from_string("srmqPvymJeFKQ4zGQed1GFppgkRHL9kaELCbyksJtPX")
BASE_RESERVE = 1_000_000_000
QUOTE_RESERVE = 2_000_000_000


def _layout_values(layout, **fields) -> dict:
    """Zeroed values for every named field of `layout`, then `fields`."""
    values = {sc.name: bytes(32) if sc.sizeof() == 32 else 0 for sc in layout.subcons if sc.name}
    values.update({name: bytes(v) if isinstance(v, Pubkey) else v for name, v in fields.items()})
    return values


def make_mint_account(decimals: int = 6, supply: int = 1_000_000, owner: Pubkey = TOKEN_PROGRAM_ID) -> Account:
    """SPL mint account with the standard 82-byte layout."""
    data = MINT_LAYOUT.build(_layout_values(MINT_LAYOUT, supply=supply, decimals=decimals, is_initialized=True))
    return Account(lamports=1_461_600, data=data, owner=owner)


def make_token_account(mint: Pubkey, owner: Pubkey, amount: int) -> Account:
    """SPL token account; only mint, owner and amount are filled in."""
    data = TOKEN_ACCOUNT_LAYOUT.build(dict(mint=bytes(mint), owner=bytes(owner), amount=amount))
    return Account(lamports=2_039_280, data=data + bytes(165 - len(data)), owner=TOKEN_PROGRAM_ID)


def make_amm_account(program_id: Pubkey = RAYDIUM_AMM_V4_PROGRAM_ID, **fields) -> Account:
    """752-byte AMM v4 pool, swappable, 25/10000 fee, valid authority nonce."""
    _, nonce = Pubkey.find_program_address([AMM_AUTHORITY_SEED], program_id)
    values = _layout_values(
        AMM_V4_LAYOUT, status=6, nonce=nonce, swap_fee_numerator=25, swap_fee_denominator=10_000
    )
    values.update({name: bytes(v) if isinstance(v, Pubkey) else v for name, v in fields.items()})
    return Account(lamports=6_124_800, data=AMM_V4_LAYOUT.build(values), owner=program_id)


def vault_signer_nonce(market: Pubkey, program_id: Pubkey = OPENBOOK_PROGRAM_ID) -> int:
    """First nonce whose seeds derive an off-curve vault signer for `market`."""
    for nonce in range(256):
        try:
            Pubkey.create_program_address([bytes(market), nonce.to_bytes(8, "little")], program_id)
        except Exception:
            continue
        return nonce
    raise AssertionError(f"No vault signer nonce for {market}")


def make_market_account(address: Pubkey, program_id: Pubkey = OPENBOOK_PROGRAM_ID, **fields) -> Account:
    """388-byte OpenBook market with a vault signer nonce valid for `address`."""
    values = _layout_values(MARKET_V3_LAYOUT, own_address=address, vault_signer_nonce=vault_signer_nonce(address, program_id))
    values.update({name: bytes(v) if isinstance(v, Pubkey) else v for name, v in fields.items()})
    return Account(lamports=2_800_000, data=MARKET_V3_LAYOUT.build(values), owner=program_id)


def make_base_pool_account(collateral: Pubkey, collateral_vault: Pubkey, currency: Pubkey, currency_vault: Pubkey,
                           is_long: bool = True, bump: int = 255, owner: Pubkey = None) -> Account:
    """Protocol BasePool account."""
    data = BASE_POOL_LAYOUT.build(dict(
        collateral=bytes(collateral),
        collateral_vault=bytes(collateral_vault),
        currency=bytes(currency),
        currency_vault=bytes(currency_vault),
        is_long_pool=is_long,
        bump=bump
    ))
    return Account(lamports=1_000_000, data=data, owner=owner or Pubkey.new_unique())


class ChainAccounts(dict):
    """Pubkey -> Account map served like SolanaClient.get_multiple_accounts."""

    async def get_multiple_accounts(self, pubkeys):
        return {pubkey: self[pubkey] for pubkey in pubkeys if pubkey in self}


def make_amm_pool(base_reserve: int = BASE_RESERVE, quote_reserve: int = QUOTE_RESERVE,
                  base_mint: Pubkey = None, quote_mint: Pubkey = None, **amm_fields) -> SimpleNamespace:
    """
    An AMM v4 pool, its OpenBook market, both mints and both vaults.

    `accounts` holds every account by address; the rest are the keys.
    """
    keys = SimpleNamespace(**{name: Pubkey.new_unique() for name in (
        "amm", "base_mint", "quote_mint", "base_vault", "quote_vault", "open_orders", "target_orders",
        "market", "bids", "asks", "event_queue", "request_queue", "market_base_vault", "market_quote_vault",
    )})
    if base_mint is not None:
        keys.base_mint = base_mint
    if quote_mint is not None:
        keys.quote_mint = quote_mint
    amm_values = dict(
        base_vault=keys.base_vault,
        quote_vault=keys.quote_vault,
        base_mint=keys.base_mint,
        quote_mint=keys.quote_mint,
        open_orders=keys.open_orders,
        target_orders=keys.target_orders,
        market_id=keys.market,
        market_program_id=OPENBOOK_PROGRAM_ID,
        base_decimal=9,
        quote_decimal=6,
    )
    amm_values.update(amm_fields)
    keys.accounts = ChainAccounts({
        keys.amm: make_amm_account(**amm_values),
        keys.market: make_market_account(
            keys.market,
            base_mint=keys.base_mint,
            quote_mint=keys.quote_mint,
            base_vault=keys.market_base_vault,
            quote_vault=keys.market_quote_vault,
            request_queue=keys.request_queue,
            event_queue=keys.event_queue,
            bids=keys.bids,
            asks=keys.asks
        ),
        keys.base_mint: make_mint_account(decimals=9),
        keys.quote_mint: make_mint_account(decimals=6),
        keys.base_vault: make_token_account(keys.base_mint, keys.amm, base_reserve),
        keys.quote_vault: make_token_account(keys.quote_mint, keys.amm, quote_reserve),
    })
    return keys
def make_payload_instruction(payer: Pubkey, data: bytes = b"\x01", program_id: Pubkey = None) -> Instruction:
    """Instruction that writes to the payer and one other account."""
    return Instruction(
        program_id=program_id or Pubkey.new_unique(),
        accounts=[
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(Pubkey.new_unique(), is_signer=False, is_writable=True),
        ],
        data=data
    )


@pytest.fixture
def mock_keypair():
    """Create a keypair for testing."""
    return Keypair()


@pytest.fixture
def payer(mock_keypair):
    return mock_keypair.pubkey()


@pytest.fixture
def mock_solana_client():
    """
    Mocked SolanaClient: default blockhash and a successful simulation
    consuming 100_000 units.
    """
    client = AsyncMock()
    client.get_latest_blockhash.return_value = Hash.default()
    client.simulate.return_value = {
        "err": None,
        "logs": [],
        "accounts": None,
        "units_consumed": 100_000,
        "return_data": None
    }
    client.send_transaction.return_value = "5igNaTuRe"
    return client


@pytest.fixture
def instruction_set(payer):
    """Single payload instruction touching two writable accounts."""
    return InstructionSet(core=[make_payload_instruction(payer)])


@pytest.fixture
def sol_mint():
    """SOL mint address."""
    return "So11111111111111111111111111111111111111112"


@pytest.fixture
def usdc_mint():
    """USDC mint address."""
    return "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
