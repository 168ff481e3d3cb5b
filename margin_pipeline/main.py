"""
Main entry point: configuration, logging, and pipeline wiring.
"""
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

import base58
import dotenv
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .account_cache import AmmCache, MarketCache, MintCache, PoolCache
from .compute_budget import ComputeBudgetConfig, Destination, FeeMode, Speed
from .errors import PipelineError, ValidationError
from .jupiter_client import JupiterClient
from .pool_venue import RAYDIUM_AMM_V4_PROGRAM_ID, PoolVenue
from .priority_fees import PriorityFeeClient, PriorityFeeEstimator
from .relay_client import DEFAULT_RELAY_URL, KNOWN_TIP_ACCOUNTS, RelayClient
from .sender_provider import (
    DirectProviderConfig,
    ProviderKind,
    RelayBundleConfig,
    SenderProvider,
    create_sender_provider,
)
from .solana_client import SolanaClient
from .swap_router import AggregatorVenue, PoolSwapVenue, SwapOptions, SwapRouter, Venue
from .tips import DEFAULT_TIP_PERCENTILE, DEFAULT_TIP_STATS_URL, PriorityFeeTipEstimator, TipFloorEstimator, TipStatsClient
from .transaction_builder import InstructionSet, TransactionBuilder
from .utils import get_terminal_colors

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
TIP_STRATEGIES = ("tip_floor", "priority_fee")
LOG_FILE = "margin_pipeline.log"

PROJECT_ROOT = Path(__file__).parent.parent


def setup_logging(level: Optional[str] = None):
    """Log to stdout and margin_pipeline.log; level from LOG_LEVEL (default INFO)."""
    level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(LOG_FILE)
        ]
    )


def load_config() -> dict:
    """Load configuration from .env and config.json."""
    env_path = PROJECT_ROOT / '.env'
    if env_path.exists():
        dotenv.load_dotenv(env_path)
    else:
        logger.warning(f".env file not found at {env_path}")

    config_path = PROJECT_ROOT / 'config.json'
    if config_path.exists():
        with open(config_path, 'r') as f:
            config = json.load(f)
    else:
        logger.debug(f"config.json not found at {config_path}")
        config = {}

    return config


def load_wallet(private_key_str: Optional[str] = None) -> Optional[Keypair]:
    """
    Load wallet from a base58 private key (WALLET_PRIVATE_KEY by default).

    Returns:
        Keypair, or None if no key is configured

    Raises:
        ValidationError: If the key is not a valid base58 keypair
    """
    if not private_key_str:
        private_key_str = os.getenv('WALLET_PRIVATE_KEY')

    if not private_key_str:
        logger.warning("No wallet private key provided")
        return None

    try:
        key_bytes = base58.b58decode(private_key_str)
        return Keypair.from_bytes(key_bytes)
    except ValueError as e:
        raise ValidationError(f"Invalid wallet private key: {e}") from e


@dataclass(frozen=True)
class PipelineSettings:
    """Process-wide settings, resolved once at startup."""
    rpc_url: str = DEFAULT_RPC_URL
    fee_api_url: Optional[str] = None
    relay_url: str = DEFAULT_RELAY_URL
    relay_uuid: Optional[str] = None
    relay_tip_accounts: Optional[Sequence[str]] = None
    tip_stats_url: str = DEFAULT_TIP_STATS_URL
    tip_strategy: str = "tip_floor"
    tip_percentile: int = DEFAULT_TIP_PERCENTILE
    jupiter_api_url: Optional[str] = None
    jupiter_api_key: Optional[str] = None
    pool_program_id: str = str(RAYDIUM_AMM_V4_PROGRAM_ID)
    compute_budget: ComputeBudgetConfig = field(default_factory=ComputeBudgetConfig)
    provider: ProviderKind = ProviderKind.DIRECT
    simulate_before_send: bool = False
    confirm_bundles: bool = False
    cache_ttl_seconds: Optional[float] = None

    def provider_config(self):
        if self.provider == ProviderKind.RELAY_BUNDLE:
            return RelayBundleConfig(simulate=self.simulate_before_send, confirm=self.confirm_bundles)
        return DirectProviderConfig(simulate=self.simulate_before_send)


def _setting(name: str, config: dict, default=None):
    """Environment variable first, then config.json (lower-case key), then default."""
    value = os.getenv(name)
    if value is None or value == '':
        value = config.get(name.lower(), default)
    return value


def _int_setting(name: str, config: dict, default=None) -> Optional[int]:
    value = _setting(name, config, default)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be an integer, got {value!r}") from e


def _bool_setting(name: str, config: dict, default: bool = False) -> bool:
    value = _setting(name, config, default)
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('1', 'true', 'yes')


def build_settings(config: Optional[dict] = None) -> PipelineSettings:
    """
    Build PipelineSettings from the environment and config.json.

    Raises:
        ValidationError: If any value is malformed
    """
    config = config or {}
    compute_budget = ComputeBudgetConfig(
        destination=str(_setting('CU_DESTINATION', config, Destination.PRIORITY.value)).lower(),
        mode=str(_setting('CU_MODE', config, FeeMode.DYNAMIC.value)).lower(),
        speed=str(_setting('CU_SPEED', config, Speed.NORMAL.value)).lower(),
        price=_int_setting('CU_PRICE', config, 50_000),
        limit=_int_setting('CU_LIMIT', config)
    )

    provider_name = str(_setting('SENDER_PROVIDER', config, ProviderKind.DIRECT.value)).lower()
    try:
        provider = ProviderKind(provider_name)
    except ValueError as e:
        raise ValidationError(f"SENDER_PROVIDER must be 'direct' or 'relay', got {provider_name!r}") from e

    tip_strategy = str(_setting('TIP_STRATEGY', config, TIP_STRATEGIES[0])).lower()
    if tip_strategy not in TIP_STRATEGIES:
        raise ValidationError(f"TIP_STRATEGY must be one of {', '.join(TIP_STRATEGIES)}, got {tip_strategy!r}")
    if tip_strategy == "priority_fee" and compute_budget.destination == Destination.RELAY:
        # Relay-destination transactions carry a zero compute-unit price, so the derived tip is always 0
        raise ValidationError("TIP_STRATEGY=priority_fee cannot be used with CU_DESTINATION=relay")

    pool_program_id = str(_setting('POOL_PROGRAM_ID', config, str(RAYDIUM_AMM_V4_PROGRAM_ID)))
    try:
        Pubkey.from_string(pool_program_id)
    except ValueError as e:
        raise ValidationError(f"POOL_PROGRAM_ID is not a valid address: {pool_program_id!r}") from e

    ttl = _setting('CACHE_TTL_SECONDS', config)
    tip_accounts = config.get('relay_tip_accounts')
    if tip_accounts is None and not _bool_setting('RELAY_FETCH_TIP_ACCOUNTS', config):
        tip_accounts = KNOWN_TIP_ACCOUNTS

    return PipelineSettings(
        rpc_url=_setting('RPC_URL', config, DEFAULT_RPC_URL),
        fee_api_url=_setting('FEE_API_URL', config),
        relay_url=_setting('RELAY_URL', config, DEFAULT_RELAY_URL),
        relay_uuid=_setting('RELAY_UUID', config),
        relay_tip_accounts=tip_accounts,
        tip_stats_url=_setting('TIP_STATS_URL', config, DEFAULT_TIP_STATS_URL),
        tip_strategy=tip_strategy,
        tip_percentile=_int_setting('TIP_PERCENTILE', config, DEFAULT_TIP_PERCENTILE),
        jupiter_api_url=_setting('JUPITER_API_URL', config),
        jupiter_api_key=_setting('JUPITER_API_KEY', config),
        pool_program_id=pool_program_id,
        compute_budget=compute_budget,
        provider=provider,
        simulate_before_send=_bool_setting('SIMULATE_BEFORE_SEND', config),
        confirm_bundles=_bool_setting('CONFIRM_BUNDLES', config),
        cache_ttl_seconds=float(ttl) if ttl not in (None, '') else None
    )


@dataclass
class Pipeline:
    """All components wired for one process; caches live as long as this object."""
    settings: PipelineSettings
    solana: SolanaClient
    mint_cache: MintCache
    pool_cache: PoolCache
    amm_cache: AmmCache
    market_cache: MarketCache
    builder: TransactionBuilder
    router: SwapRouter
    sender: SenderProvider
    closeables: List = field(default_factory=list)

    async def build(self, payer: Pubkey, instruction_set: InstructionSet, lookup_tables=()):
        return await self.builder.build(
            payer, instruction_set, config=self.settings.compute_budget, lookup_tables=lookup_tables
        )

    async def execute(self, payer: Pubkey, signer, instruction_set: InstructionSet, lookup_tables=()) -> str:
        """Build, prepare and send one transaction; returns signature or bundle id."""
        built = await self.build(payer, instruction_set, lookup_tables)
        signed = await self.sender.prepare([built], payer, signer)
        return await self.sender.send(signed)

    async def close(self):
        for closeable in self.closeables:
            await closeable.close()


def build_pipeline(settings: PipelineSettings) -> Pipeline:
    solana = SolanaClient(settings.rpc_url)
    mint_cache = MintCache(solana, ttl_seconds=settings.cache_ttl_seconds)
    pool_cache = PoolCache(solana, ttl_seconds=settings.cache_ttl_seconds)
    amm_cache = AmmCache(solana, Pubkey.from_string(settings.pool_program_id), ttl_seconds=settings.cache_ttl_seconds)
    market_cache = MarketCache(solana, ttl_seconds=settings.cache_ttl_seconds)
    closeables = [solana]

    fee_client = None
    if settings.fee_api_url:
        fee_client = PriorityFeeClient(settings.fee_api_url)
        closeables.append(fee_client)
    builder = TransactionBuilder(solana, PriorityFeeEstimator(solana, fee_client))

    jupiter = JupiterClient(settings.jupiter_api_url, api_key=settings.jupiter_api_key)
    closeables.append(jupiter)
    pool_venue = PoolVenue(solana, amm_cache, market_cache, mint_cache, pool_cache)
    router = SwapRouter({
        Venue.AGGREGATOR: AggregatorVenue(jupiter, solana),
        Venue.POOL: PoolSwapVenue(pool_venue)
    })

    relay_client = None
    tip_estimator = None
    if settings.provider == ProviderKind.RELAY_BUNDLE:
        relay_client = RelayClient(
            settings.relay_url,
            uuid=settings.relay_uuid,
            tip_accounts=settings.relay_tip_accounts
        )
        closeables.append(relay_client)
        if settings.tip_strategy == "priority_fee":
            tip_estimator = PriorityFeeTipEstimator()
        else:
            stats_client = TipStatsClient(settings.tip_stats_url)
            closeables.append(stats_client)
            tip_estimator = TipFloorEstimator(stats_client, settings.tip_percentile)

    sender = create_sender_provider(
        settings.provider_config(),
        solana,
        builder=builder,
        relay_client=relay_client,
        tip_estimator=tip_estimator
    )
    return Pipeline(
        settings=settings,
        solana=solana,
        mint_cache=mint_cache,
        pool_cache=pool_cache,
        amm_cache=amm_cache,
        market_cache=market_cache,
        builder=builder,
        router=router,
        sender=sender,
        closeables=closeables
    )


async def main(
    mode: str = 'quote',
    input_mint: Optional[str] = None,
    output_mint: Optional[str] = None,
    amount: Optional[int] = None,
    slippage_bps: int = 50,
    swap_mode: str = 'ExactIn',
    venue: str = Venue.AGGREGATOR.value,
    pool_id: Optional[str] = None,
    margin_pool: Optional[str] = None
) -> int:
    """
    Route a swap and, depending on `mode`, stop after the quote, simulate it,
    or send it.

    Returns:
        Process exit code
    """
    setup_logging()
    colors = get_terminal_colors()
    logger.info(f"Starting margin pipeline ({mode})")

    try:
        config = load_config()
        settings = build_settings(config)
        wallet = load_wallet()
    except PipelineError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    if wallet is None:
        logger.error("Wallet required to build swap instructions")
        return 1

    pipeline = build_pipeline(settings)
    payer = wallet.pubkey()
    try:
        result = await pipeline.router.swap(
            payer,
            input_mint,
            output_mint,
            amount,
            slippage_bps,
            swap_mode=swap_mode,
            preferred_venue=Venue(venue),
            options=SwapOptions(pool_id=pool_id, margin_pool=margin_pool)
        )
        logger.info(
            f"Quote from {colors['CYAN']}{result.venue.value}{colors['RESET']}: "
            f"in={colors['GREEN']}{result.in_amount}{colors['RESET']} "
            f"out={colors['GREEN']}{result.out_amount}{colors['RESET']} "
            f"impact={result.price_impact_pct:.2f}%"
        )
        if mode == 'quote':
            return 0

        built = await pipeline.build(payer, result.instruction_set, result.lookup_tables)
        if mode == 'simulate':
            logger.info(
                f"Simulation OK: {colors['GREEN']}{built.units_consumed}{colors['RESET']} units consumed, "
                f"limit {built.compute_limit}"
            )
            return 0

        signed = await pipeline.sender.prepare([built], payer, wallet)
        submission_id = await pipeline.sender.send(signed)
        logger.info(f"Submitted: {colors['CYAN']}{submission_id}{colors['RESET']}")
        return 0
    except PipelineError as e:
        logger.error(f"{colors['RED']}{type(e).__name__}: {e}{colors['RESET']}")
        return 1
    finally:
        await pipeline.close()
        logger.info("Pipeline stopped")
