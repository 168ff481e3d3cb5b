"""
Tests for sender_provider.py
"""
from unittest.mock import AsyncMock

import pytest
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import VersionedTransaction

from margin_pipeline.errors import BundleTimeoutError, SimulationError, ValidationError
from margin_pipeline.relay_client import NextLeader
from margin_pipeline.sender_provider import (
    DirectProviderConfig,
    DirectSenderProvider,
    RelayBundleConfig,
    RelayBundleSenderProvider,
    create_sender_provider,
    encode_transaction,
)
from margin_pipeline.tips import PriorityFeeTipEstimator
from margin_pipeline.transaction_builder import BuiltTransaction, TransactionBuilder
from conftest import make_payload_instruction

TIP_ACCOUNT = Pubkey.from_string("96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5")


def built_transaction(payer: Pubkey, marker: int = 1, price: int = 30_000) -> BuiltTransaction:
    """Distinct compiled transaction per marker."""
    return BuiltTransaction.compile(
        payer,
        Hash.default(),
        [
            set_compute_unit_limit(200_000),
            set_compute_unit_price(price),
            make_payload_instruction(payer, bytes([marker])),
        ]
    )


class TestSenderProviderBase:
    """Checks shared by every provider."""

    @pytest.fixture
    def provider(self, mock_solana_client):
        return DirectSenderProvider(mock_solana_client)

    @pytest.mark.asyncio
    async def test_prepare_signs_with_keypair(self, provider, mock_keypair, payer):
        signed = await provider.prepare([built_transaction(payer)], payer, mock_keypair)

        assert len(signed) == 1
        assert isinstance(signed[0], VersionedTransaction)
        assert signed[0].signatures[0] != Signature.default()
        assert signed[0].message.account_keys[0] == payer

    @pytest.mark.asyncio
    async def test_fee_payer_mismatch(self, provider, mock_keypair):
        other = Keypair().pubkey()
        with pytest.raises(ValidationError, match="fee payer"):
            await provider.prepare([built_transaction(other)], mock_keypair.pubkey(), mock_keypair)

    @pytest.mark.asyncio
    async def test_no_transactions(self, provider, mock_keypair, payer):
        with pytest.raises(ValidationError):
            await provider.prepare([], payer, mock_keypair)

    @pytest.mark.asyncio
    async def test_async_signer(self, provider, mock_keypair, payer):
        class RemoteSigner:
            def __init__(self):
                self.calls = 0

            async def sign_transaction(self, tx):
                self.calls += 1
                return VersionedTransaction(tx.message, [mock_keypair])

        signer = RemoteSigner()
        signed = await provider.prepare([built_transaction(payer)], payer, signer)

        assert signer.calls == 1
        assert len(signed) == 1

    @pytest.mark.asyncio
    async def test_unsupported_signer(self, provider, payer):
        with pytest.raises(ValidationError, match="Unsupported signer"):
            await provider.prepare([built_transaction(payer)], payer, object())

    def test_validate_signatures_rejects_placeholder(self, payer):
        with pytest.raises(ValidationError, match="fee payer signature"):
            DirectSenderProvider.validate_signatures([built_transaction(payer).unsigned()])

    @pytest.mark.asyncio
    async def test_simulate_before_send(self, mock_solana_client, mock_keypair, payer):
        mock_solana_client.simulate.return_value = {
            "err": {"InstructionError": [2, {"Custom": 1}]},
            "logs": [],
            "units_consumed": 10
        }
        provider = DirectSenderProvider(mock_solana_client, simulate=True)

        with pytest.raises(SimulationError) as exc_info:
            await provider.prepare([built_transaction(payer)], payer, mock_keypair)

        assert exc_info.value.program_error.code == 1
        assert exc_info.value.program_error.instruction_index == 2

    @pytest.mark.asyncio
    async def test_no_simulation_by_default(self, provider, mock_solana_client, mock_keypair, payer):
        await provider.prepare([built_transaction(payer)], payer, mock_keypair)
        mock_solana_client.simulate.assert_not_called()


class TestDirectSenderProvider:
    """Tests for DirectSenderProvider."""

    @pytest.mark.asyncio
    async def test_send_single(self, mock_solana_client, mock_keypair, payer):
        provider = DirectSenderProvider(mock_solana_client)
        signed = await provider.prepare([built_transaction(payer)], payer, mock_keypair)

        signature = await provider.send(signed)

        assert signature == "5igNaTuRe"
        mock_solana_client.send_transaction.assert_awaited_once_with(signed[0], skip_preflight=True)

    @pytest.mark.asyncio
    async def test_rejects_multiple(self, mock_solana_client, mock_keypair, payer):
        provider = DirectSenderProvider(mock_solana_client)
        with pytest.raises(ValidationError, match="exactly one"):
            await provider.prepare([built_transaction(payer, 1), built_transaction(payer, 2)], payer, mock_keypair)


class TestRelayBundleSenderProvider:
    """Tests for RelayBundleSenderProvider tipping and bundle submission."""

    @pytest.fixture
    def relay_client(self):
        client = AsyncMock()
        client.random_tip_account.return_value = TIP_ACCOUNT
        client.get_next_scheduled_leader.return_value = NextLeader(current_slot=100, next_leader_slot=101)
        client.send_bundle.return_value = "bundle-1"
        return client

    @pytest.fixture
    def tip_estimator(self):
        estimator = AsyncMock()
        estimator.estimate.return_value = 10_000
        return estimator

    @pytest.fixture
    def config(self):
        return RelayBundleConfig(leader_poll_interval=0)

    @pytest.fixture
    def provider(self, mock_solana_client, relay_client, tip_estimator, config):
        builder = TransactionBuilder(mock_solana_client)
        return RelayBundleSenderProvider(mock_solana_client, builder, relay_client, tip_estimator, config)

    @pytest.mark.asyncio
    async def test_single_transaction_not_bundled(self, provider, mock_solana_client, relay_client,
                                                  tip_estimator, mock_keypair, payer):
        signed = await provider.prepare([built_transaction(payer)], payer, mock_keypair)
        result = await provider.send(signed)

        assert len(signed) == 1
        assert result == "5igNaTuRe"
        tip_estimator.estimate.assert_not_called()
        relay_client.send_bundle.assert_not_called()
        mock_solana_client.send_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_bundle_gets_one_tip(self, provider, relay_client, tip_estimator, mock_keypair, payer):
        transactions = [built_transaction(payer, 1), built_transaction(payer, 2)]

        signed = await provider.prepare(transactions, payer, mock_keypair)

        assert len(signed) == 3
        tip_estimator.estimate.assert_awaited_once()
        tip_tx = signed[-1]
        keys = tip_tx.message.account_keys
        assert SYSTEM_PROGRAM_ID in keys
        assert TIP_ACCOUNT in keys
        assert keys[0] == payer

        bundle_id = await provider.send(signed)

        assert bundle_id == "bundle-1"
        relay_client.send_bundle.assert_awaited_once()
        encoded = relay_client.send_bundle.call_args[0][0]
        assert encoded == [encode_transaction(tx) for tx in signed]

    @pytest.mark.asyncio
    async def test_zero_tip_rejected(self, provider, tip_estimator, relay_client, mock_keypair, payer):
        tip_estimator.estimate.return_value = 0

        with pytest.raises(ValidationError, match="tip must be positive"):
            await provider.prepare([built_transaction(payer, 1), built_transaction(payer, 2)], payer, mock_keypair)

        relay_client.random_tip_account.assert_not_called()
        relay_client.send_bundle.assert_not_called()

    @pytest.mark.asyncio
    async def test_unpriced_transactions_cannot_fund_priority_fee_tip(self, mock_solana_client, relay_client,
                                                                      config, mock_keypair, payer):
        """Relay-destination transactions carry price 0, so a fee-derived tip is refused."""
        provider = RelayBundleSenderProvider(
            mock_solana_client, TransactionBuilder(mock_solana_client), relay_client, PriorityFeeTipEstimator(), config
        )
        transactions = [built_transaction(payer, 1, price=0), built_transaction(payer, 2, price=0)]

        with pytest.raises(ValidationError):
            await provider.prepare(transactions, payer, mock_keypair)

        relay_client.random_tip_account.assert_not_called()
        relay_client.send_bundle.assert_not_called()

    @pytest.mark.asyncio
    async def test_bundle_with_tip_over_limit(self, provider, mock_keypair, payer):
        transactions = [built_transaction(payer, i) for i in range(5)]
        with pytest.raises(ValidationError, match="exceeds"):
            await provider.prepare(transactions, payer, mock_keypair)

    @pytest.mark.asyncio
    async def test_too_many_transactions(self, provider, tip_estimator, mock_keypair, payer):
        transactions = [built_transaction(payer, i) for i in range(6)]
        with pytest.raises(ValidationError):
            await provider.prepare(transactions, payer, mock_keypair)
        tip_estimator.estimate.assert_not_called()

    @pytest.mark.asyncio
    async def test_identical_transactions_broadcast_once(self, provider, mock_solana_client, relay_client,
                                                         mock_keypair, payer):
        tx = built_transaction(payer)
        signed = [VersionedTransaction(tx.message, [mock_keypair])] * 2

        result = await provider.send(signed)

        assert result == "5igNaTuRe"
        relay_client.send_bundle.assert_not_called()
        relay_client.get_next_scheduled_leader.assert_not_called()
        mock_solana_client.send_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_identical_transactions_prepared_without_tip(self, provider, tip_estimator, relay_client,
                                                               mock_keypair, payer):
        tx = built_transaction(payer)

        signed = await provider.prepare([tx, tx], payer, mock_keypair)

        assert len(signed) == 1
        tip_estimator.estimate.assert_not_called()
        relay_client.random_tip_account.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicates_dropped_from_bundle(self, provider, relay_client, mock_keypair, payer):
        first = VersionedTransaction(built_transaction(payer, 1).message, [mock_keypair])
        second = VersionedTransaction(built_transaction(payer, 2).message, [mock_keypair])

        await provider.send([first, second, first])

        assert relay_client.send_bundle.call_args[0][0] == [encode_transaction(first), encode_transaction(second)]

    @pytest.mark.asyncio
    async def test_waits_for_close_leader(self, provider, relay_client):
        relay_client.get_next_scheduled_leader.side_effect = [
            NextLeader(current_slot=100, next_leader_slot=140),
            NextLeader(current_slot=120, next_leader_slot=140),
            NextLeader(current_slot=138, next_leader_slot=140),
        ]

        leader = await provider.wait_for_leader()

        assert leader.slots_until_leader == 2
        assert relay_client.get_next_scheduled_leader.await_count == 3

    @pytest.mark.asyncio
    async def test_leader_wait_bounded(self, mock_solana_client, relay_client, tip_estimator):
        relay_client.get_next_scheduled_leader.return_value = NextLeader(current_slot=100, next_leader_slot=500)
        config = RelayBundleConfig(leader_poll_interval=0, max_leader_polls=3)
        provider = RelayBundleSenderProvider(
            mock_solana_client, TransactionBuilder(mock_solana_client), relay_client, tip_estimator, config
        )

        with pytest.raises(BundleTimeoutError):
            await provider.wait_for_leader()
        assert relay_client.get_next_scheduled_leader.await_count == 3

    @pytest.mark.asyncio
    async def test_confirm_when_configured(self, mock_solana_client, relay_client, tip_estimator, mock_keypair, payer):
        config = RelayBundleConfig(leader_poll_interval=0, confirm=True, confirm_timeout=5.0)
        provider = RelayBundleSenderProvider(
            mock_solana_client, TransactionBuilder(mock_solana_client), relay_client, tip_estimator, config
        )
        signed = await provider.prepare([built_transaction(payer, 1), built_transaction(payer, 2)], payer, mock_keypair)

        await provider.send(signed)

        relay_client.confirm_bundle.assert_awaited_once_with("bundle-1", timeout=5.0, poll_interval=1.0)


class TestCreateSenderProvider:
    def test_direct(self, mock_solana_client):
        provider = create_sender_provider(DirectProviderConfig(simulate=True), mock_solana_client)
        assert isinstance(provider, DirectSenderProvider)
        assert provider.simulate_before_send is True

    def test_relay(self, mock_solana_client):
        provider = create_sender_provider(
            RelayBundleConfig(),
            mock_solana_client,
            builder=TransactionBuilder(mock_solana_client),
            relay_client=AsyncMock(),
            tip_estimator=AsyncMock()
        )
        assert isinstance(provider, RelayBundleSenderProvider)

    def test_relay_requires_collaborators(self, mock_solana_client):
        with pytest.raises(ValidationError, match="requires"):
            create_sender_provider(RelayBundleConfig(), mock_solana_client)
