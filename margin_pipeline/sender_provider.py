"""
Sender providers: sign built transactions and submit them.

DirectSenderProvider broadcasts a single transaction through the chain RPC.
RelayBundleSenderProvider appends a tip transfer and submits two or more
transactions as one bundle to the relay, timed to the next relay leader.
"""
import asyncio
import base64
import logging
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, List, Optional, Sequence, Union

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from .errors import BundleTimeoutError, SimulationError, ValidationError, parse_program_error
from .relay_client import NextLeader, RelayClient
from .solana_client import SolanaClient
from .transaction_builder import BuiltTransaction, InstructionSet, TransactionBuilder
from .utils import dedupe, get_terminal_colors

logger = logging.getLogger(__name__)

MAX_BUNDLE_TRANSACTIONS = 5


class ProviderKind(str, Enum):
    DIRECT = "direct"
    RELAY_BUNDLE = "relay"


@dataclass(frozen=True)
class DirectProviderConfig:
    kind: ClassVar[ProviderKind] = ProviderKind.DIRECT
    simulate: bool = False


@dataclass(frozen=True)
class RelayBundleConfig:
    kind: ClassVar[ProviderKind] = ProviderKind.RELAY_BUNDLE
    simulate: bool = False
    confirm: bool = False
    max_transactions: int = MAX_BUNDLE_TRANSACTIONS
    leader_poll_interval: float = 0.5
    max_leader_slot_gap: int = 2
    max_leader_polls: int = 240
    confirm_timeout: float = 30.0
    confirm_poll_interval: float = 1.0


ProviderConfig = Union[DirectProviderConfig, RelayBundleConfig]


def _message_of(tx):
    return tx.message


def _unsigned(tx) -> VersionedTransaction:
    if isinstance(tx, BuiltTransaction):
        return tx.unsigned()
    return tx


def encode_transaction(tx: VersionedTransaction) -> str:
    return base64.b64encode(bytes(tx)).decode("ascii")


class SenderProvider:
    """
    Common prepare/send contract.

    `prepare(transactions, payer, signer)` checks the fee payer, optionally
    simulates, lets the subclass append extra transactions, signs everything
    and checks the signatures. `send(signed)` submits and returns an id.
    """

    def __init__(self, solana_client: SolanaClient, simulate: bool = False):
        self.solana_client = solana_client
        self.simulate_before_send = simulate

    @staticmethod
    def validate_fee_payer(transactions: Sequence, payer: Pubkey):
        if not transactions:
            raise ValidationError("No transactions to send")
        for index, tx in enumerate(transactions):
            fee_payer = _message_of(tx).account_keys[0]
            if fee_payer != payer:
                raise ValidationError(f"Transaction {index} fee payer {fee_payer} does not match {payer}")

    @staticmethod
    def validate_signatures(signed: Sequence[VersionedTransaction]):
        for index, tx in enumerate(signed):
            required = tx.message.header.num_required_signatures
            if len(tx.signatures) < required:
                raise ValidationError(
                    f"Transaction {index} requires {required} signatures but only has {len(tx.signatures)}"
                )
            if not tx.signatures or tx.signatures[0] == Signature.default():
                raise ValidationError(f"Transaction {index} is missing the fee payer signature")

    async def simulate(self, transactions: Sequence):
        """Simulate all transactions in parallel; the first failure aborts."""
        results = await asyncio.gather(
            *(self.solana_client.simulate(_unsigned(tx)) for tx in transactions)
        )
        for index, (tx, sim) in enumerate(zip(transactions, results)):
            if sim.get("err"):
                message = _message_of(tx)
                raise SimulationError(
                    f"Transaction {index} failed simulation: {sim['err']}",
                    err=sim["err"],
                    logs=sim.get("logs"),
                    units_consumed=sim.get("units_consumed"),
                    program_error=parse_program_error(
                        sim["err"],
                        logs=sim.get("logs") or [],
                        account_keys=message.account_keys,
                        program_id_indexes=[ix.program_id_index for ix in message.instructions]
                    )
                )

    async def sign(self, tx, signer) -> VersionedTransaction:
        """
        Sign with a solders Keypair, or with any object exposing
        `async sign_transaction(tx) -> VersionedTransaction`.
        """
        sign_transaction = getattr(signer, "sign_transaction", None)
        if sign_transaction is not None:
            return await sign_transaction(_unsigned(tx))
        if isinstance(signer, Keypair):
            return VersionedTransaction(_message_of(tx), [signer])
        raise ValidationError(f"Unsupported signer type: {type(signer).__name__}")

    async def _extra_transactions(self, transactions: Sequence, payer: Pubkey) -> List:
        return []

    async def prepare(self, transactions: Sequence, payer: Pubkey, signer) -> List[VersionedTransaction]:
        """
        Validate, optionally simulate, extend and sign `transactions`.

        Args:
            transactions: BuiltTransaction or unsigned VersionedTransaction objects
            payer: Expected fee payer of every transaction
            signer: Keypair or async signer

        Returns:
            Signed transactions, in submission order

        Raises:
            ValidationError: Payer mismatch, too many transactions, bad signatures
            SimulationError: A transaction failed simulation
        """
        self.validate_fee_payer(transactions, payer)
        if self.simulate_before_send:
            await self.simulate(transactions)
        full = [*transactions, *(await self._extra_transactions(transactions, payer))]
        signed = [await self.sign(tx, signer) for tx in full]
        self.validate_signatures(signed)
        return signed

    async def send(self, signed: Sequence[VersionedTransaction]) -> str:
        raise NotImplementedError


class DirectSenderProvider(SenderProvider):
    """Broadcasts exactly one transaction through the chain RPC, preflight disabled."""

    async def prepare(self, transactions: Sequence, payer: Pubkey, signer) -> List[VersionedTransaction]:
        if len(transactions) > 1:
            raise ValidationError("Direct sender supports exactly one transaction")
        return await super().prepare(transactions, payer, signer)

    async def send(self, signed: Sequence[VersionedTransaction]) -> str:
        if len(signed) != 1:
            raise ValidationError("Direct sender supports exactly one transaction")
        colors = get_terminal_colors()
        signature = await self.solana_client.send_transaction(signed[0], skip_preflight=True)
        logger.info(f"Transaction sent: {colors['CYAN']}{signature}{colors['RESET']}")
        return signature


class RelayBundleSenderProvider(SenderProvider):
    """
    Submits two or more transactions as one relay bundle with a tip appended.

    A single transaction gains nothing from bundling: it gets no tip and is
    broadcast directly.
    """

    def __init__(
        self,
        solana_client: SolanaClient,
        builder: TransactionBuilder,
        relay_client: RelayClient,
        tip_estimator,
        config: Optional[RelayBundleConfig] = None
    ):
        config = config or RelayBundleConfig()
        super().__init__(solana_client, simulate=config.simulate)
        self.builder = builder
        self.relay_client = relay_client
        self.tip_estimator = tip_estimator
        self.config = config

    async def _extra_transactions(self, transactions: Sequence, payer: Pubkey) -> List[BuiltTransaction]:
        colors = get_terminal_colors()
        if len(transactions) < 2:
            return []
        if len(transactions) + 1 > self.config.max_transactions:
            raise ValidationError(
                f"Bundle of {len(transactions)} transactions plus tip exceeds "
                f"{self.config.max_transactions} transactions"
            )

        tip_lamports = await self.tip_estimator.estimate(transactions)
        if tip_lamports <= 0:
            logger.error(f"Tip estimate is {tip_lamports} lamports, refusing to bundle without a tip")
            raise ValidationError(f"Bundle tip must be positive, estimated {tip_lamports} lamports")

        tip_account = await self.relay_client.random_tip_account()
        tip_ix = transfer(TransferParams(from_pubkey=payer, to_pubkey=tip_account, lamports=tip_lamports))
        tip_tx = await self.builder.build(payer, InstructionSet(core=[tip_ix]), config=None, tip_only=True)
        logger.info(
            f"Tip {colors['YELLOW']}{tip_lamports}{colors['RESET']} lamports -> "
            f"{colors['CYAN']}{tip_account}{colors['RESET']}"
        )
        return [tip_tx]

    async def prepare(self, transactions: Sequence, payer: Pubkey, signer) -> List[VersionedTransaction]:
        # Identical messages count once toward the tip and bundle thresholds
        unique = {}
        for tx in transactions:
            unique.setdefault(bytes(_message_of(tx)), tx)
        transactions = list(unique.values())
        if len(transactions) > self.config.max_transactions:
            raise ValidationError(f"Bundle exceeds {self.config.max_transactions} transactions")
        return await super().prepare(transactions, payer, signer)

    async def wait_for_leader(self) -> NextLeader:
        """
        Poll the relay until its next leader is at most `max_leader_slot_gap` slots away.

        Raises:
            BundleTimeoutError: After `max_leader_polls` polls without a close leader
            SendError: Relay unreachable
        """
        colors = get_terminal_colors()
        for _ in range(self.config.max_leader_polls):
            leader = await self.relay_client.get_next_scheduled_leader()
            if leader.slots_until_leader <= self.config.max_leader_slot_gap:
                logger.debug(f"Relay leader in {leader.slots_until_leader} slot(s) at {leader.next_leader_slot}")
                return leader
            logger.debug(
                f"{colors['DIM']}Relay leader {leader.slots_until_leader} slots away, waiting{colors['RESET']}"
            )
            await asyncio.sleep(self.config.leader_poll_interval)
        raise BundleTimeoutError(f"No relay leader within {self.config.max_leader_slot_gap} slots after "
                                 f"{self.config.max_leader_polls} polls")

    async def send(self, signed: Sequence[VersionedTransaction]) -> str:
        """
        Broadcast a lone transaction, or submit the set as a bundle.

        Returns:
            Transaction signature (single) or bundle id
        """
        colors = get_terminal_colors()
        if not signed:
            raise ValidationError("No transactions to send")
        encoded = dedupe(encode_transaction(tx) for tx in signed)
        if len(encoded) == 1:
            signature = await self.solana_client.send_transaction(signed[0], skip_preflight=True)
            logger.info(f"Transaction sent: {colors['CYAN']}{signature}{colors['RESET']}")
            return signature

        await self.wait_for_leader()
        bundle_id = await self.relay_client.send_bundle(encoded)
        logger.info(
            f"Bundle submitted: {colors['CYAN']}{bundle_id}{colors['RESET']} "
            f"({colors['GREEN']}{len(encoded)}{colors['RESET']} transactions)"
        )
        if self.config.confirm:
            await self.relay_client.confirm_bundle(
                bundle_id,
                timeout=self.config.confirm_timeout,
                poll_interval=self.config.confirm_poll_interval
            )
        return bundle_id


def create_sender_provider(
    config: ProviderConfig,
    solana_client: SolanaClient,
    builder: Optional[TransactionBuilder] = None,
    relay_client: Optional[RelayClient] = None,
    tip_estimator=None
) -> SenderProvider:
    """Provider for the tagged `config`."""
    if config.kind == ProviderKind.DIRECT:
        return DirectSenderProvider(solana_client, simulate=config.simulate)
    if config.kind == ProviderKind.RELAY_BUNDLE:
        if builder is None or relay_client is None or tip_estimator is None:
            raise ValidationError("Relay bundle provider requires builder, relay client and tip estimator")
        return RelayBundleSenderProvider(solana_client, builder, relay_client, tip_estimator, config)
    raise ValidationError(f"Unknown provider kind: {config.kind}")
