"""
Tests for settings resolution and pipeline wiring in main.py.
"""
import base58
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from margin_pipeline.compute_budget import Destination, FeeMode, Speed
from margin_pipeline.errors import ValidationError
from margin_pipeline.main import Pipeline, build_pipeline, build_settings, load_wallet, main
from margin_pipeline.pool_venue import RAYDIUM_AMM_V4_PROGRAM_ID
from margin_pipeline.relay_client import KNOWN_TIP_ACCOUNTS
from margin_pipeline.sender_provider import (
    DirectProviderConfig,
    DirectSenderProvider,
    ProviderKind,
    RelayBundleConfig,
    RelayBundleSenderProvider,
)
from margin_pipeline.swap_router import Venue
from margin_pipeline.tips import PriorityFeeTipEstimator, TipFloorEstimator

SETTING_NAMES = [
    'RPC_URL', 'FEE_API_URL', 'RELAY_URL', 'RELAY_UUID', 'RELAY_FETCH_TIP_ACCOUNTS',
    'TIP_STATS_URL', 'TIP_STRATEGY', 'TIP_PERCENTILE', 'JUPITER_API_URL', 'JUPITER_API_KEY',
    'POOL_PROGRAM_ID', 'CU_DESTINATION', 'CU_MODE', 'CU_SPEED', 'CU_PRICE', 'CU_LIMIT',
    'SENDER_PROVIDER', 'SIMULATE_BEFORE_SEND', 'CONFIRM_BUNDLES', 'CACHE_TTL_SECONDS',
    'WALLET_PRIVATE_KEY', 'LOG_LEVEL',
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's .env out of these tests."""
    for name in SETTING_NAMES:
        monkeypatch.delenv(name, raising=False)


class TestBuildSettings:
    """Tests for environment/config.json resolution."""

    def test_defaults(self):
        settings = build_settings({})

        assert settings.rpc_url == "https://api.mainnet-beta.solana.com"
        assert settings.provider == ProviderKind.DIRECT
        assert settings.compute_budget.destination == Destination.PRIORITY
        assert settings.compute_budget.mode == FeeMode.DYNAMIC
        assert settings.compute_budget.speed == Speed.NORMAL
        assert settings.compute_budget.price == 50_000
        assert settings.compute_budget.limit is None
        assert settings.relay_tip_accounts == KNOWN_TIP_ACCOUNTS
        assert settings.cache_ttl_seconds is None
        assert settings.pool_program_id == str(RAYDIUM_AMM_V4_PROGRAM_ID)
        assert isinstance(settings.provider_config(), DirectProviderConfig)

    def test_config_json_values(self):
        settings = build_settings({
            "cu_mode": "fixed",
            "cu_price": 5000,
            "cu_limit": 200000,
            "sender_provider": "relay",
            "confirm_bundles": True,
            "cache_ttl_seconds": 30
        })

        assert settings.compute_budget.mode == FeeMode.FIXED
        assert settings.compute_budget.price == 5000
        assert settings.compute_budget.limit == 200000
        assert settings.provider == ProviderKind.RELAY_BUNDLE
        assert settings.cache_ttl_seconds == 30.0
        provider_config = settings.provider_config()
        assert isinstance(provider_config, RelayBundleConfig)
        assert provider_config.confirm is True

    def test_env_overrides_config(self, monkeypatch):
        monkeypatch.setenv('CU_SPEED', 'TURBO')
        monkeypatch.setenv('SIMULATE_BEFORE_SEND', 'true')

        settings = build_settings({"cu_speed": "fast"})

        assert settings.compute_budget.speed == Speed.TURBO
        assert settings.simulate_before_send is True

    def test_invalid_integer(self, monkeypatch):
        monkeypatch.setenv('CU_PRICE', 'lots')
        with pytest.raises(ValidationError, match="CU_PRICE"):
            build_settings({})

    def test_invalid_compute_budget(self):
        with pytest.raises(ValidationError):
            build_settings({"cu_limit": 2_000_000})

    def test_invalid_provider(self, monkeypatch):
        monkeypatch.setenv('SENDER_PROVIDER', 'carrier-pigeon')
        with pytest.raises(ValidationError, match="SENDER_PROVIDER"):
            build_settings({})

    def test_fetch_tip_accounts_from_relay(self, monkeypatch):
        monkeypatch.setenv('RELAY_FETCH_TIP_ACCOUNTS', '1')
        assert build_settings({}).relay_tip_accounts is None

    def test_priority_fee_tip_rejected_for_relay_destination(self):
        with pytest.raises(ValidationError, match="priority_fee"):
            build_settings({
                "sender_provider": "relay",
                "cu_destination": "relay",
                "cu_price": 0,
                "tip_strategy": "priority_fee"
            })

    def test_relay_destination_with_tip_floor(self):
        settings = build_settings({"sender_provider": "relay", "cu_destination": "relay", "cu_price": 0})
        assert settings.compute_budget.destination == Destination.RELAY
        assert settings.tip_strategy == "tip_floor"

    def test_unknown_tip_strategy(self, monkeypatch):
        monkeypatch.setenv('TIP_STRATEGY', 'generous')
        with pytest.raises(ValidationError, match="TIP_STRATEGY"):
            build_settings({})

    def test_invalid_pool_program_id(self, monkeypatch):
        monkeypatch.setenv('POOL_PROGRAM_ID', 'raydium')
        with pytest.raises(ValidationError, match="POOL_PROGRAM_ID"):
            build_settings({})


class TestLoadWallet:
    def test_no_key(self):
        assert load_wallet() is None

    def test_valid_key(self):
        keypair = Keypair()
        loaded = load_wallet(base58.b58encode(bytes(keypair)).decode())
        assert loaded.pubkey() == keypair.pubkey()

    def test_invalid_key(self):
        with pytest.raises(ValidationError):
            load_wallet("0OIl")


class TestBuildPipeline:
    """Tests for component wiring."""

    @pytest.mark.asyncio
    async def test_direct_pipeline(self):
        pipeline = build_pipeline(build_settings({}))
        try:
            assert isinstance(pipeline.sender, DirectSenderProvider)
            assert set(pipeline.router.venues) == {Venue.AGGREGATOR, Venue.POOL}
            assert pipeline.amm_cache.program_id == RAYDIUM_AMM_V4_PROGRAM_ID
        finally:
            await pipeline.close()

    @pytest.mark.asyncio
    async def test_relay_pipeline_with_pool_program_override(self):
        settings = build_settings({
            "sender_provider": "relay",
            "tip_strategy": "priority_fee",
            "pool_program_id": "11111111111111111111111111111111"
        })
        pipeline = build_pipeline(settings)
        try:
            assert isinstance(pipeline.sender, RelayBundleSenderProvider)
            assert isinstance(pipeline.sender.tip_estimator, PriorityFeeTipEstimator)
            assert set(pipeline.router.venues) == {Venue.AGGREGATOR, Venue.POOL}
            assert pipeline.amm_cache.program_id == Pubkey.from_string("11111111111111111111111111111111")
        finally:
            await pipeline.close()

    @pytest.mark.asyncio
    async def test_relay_pipeline_tip_floor(self):
        pipeline = build_pipeline(build_settings({"sender_provider": "relay", "tip_percentile": 95}))
        try:
            assert isinstance(pipeline.sender.tip_estimator, TipFloorEstimator)
            assert pipeline.sender.tip_estimator.percentile == 95
        finally:
            await pipeline.close()

    @pytest.mark.asyncio
    async def test_execute(self, mock_keypair, payer, instruction_set):
        built = MagicMock()
        builder = MagicMock()
        builder.build = AsyncMock(return_value=built)
        sender = MagicMock()
        sender.prepare = AsyncMock(return_value=["signed"])
        sender.send = AsyncMock(return_value="sig")
        pipeline = Pipeline(
            settings=build_settings({}),
            solana=MagicMock(),
            mint_cache=MagicMock(),
            pool_cache=MagicMock(),
            amm_cache=MagicMock(),
            market_cache=MagicMock(),
            builder=builder,
            router=MagicMock(),
            sender=sender
        )

        assert await pipeline.execute(payer, mock_keypair, instruction_set) == "sig"
        assert builder.build.call_args.kwargs["config"] == pipeline.settings.compute_budget
        sender.prepare.assert_awaited_once_with([built], payer, mock_keypair)
        sender.send.assert_awaited_once_with(["signed"])


class TestMain:
    @pytest.mark.asyncio
    async def test_main_without_wallet(self, sol_mint, usdc_mint):
        with patch('margin_pipeline.main.setup_logging'), \
             patch('margin_pipeline.main.load_config', return_value={}):
            exit_code = await main('quote', sol_mint, usdc_mint, 1_000)

        assert exit_code == 1

    @pytest.mark.asyncio
    async def test_main_bad_config(self, sol_mint, usdc_mint):
        with patch('margin_pipeline.main.setup_logging'), \
             patch('margin_pipeline.main.load_config', return_value={"cu_price": "lots"}):
            exit_code = await main('quote', sol_mint, usdc_mint, 1_000)

        assert exit_code == 1
