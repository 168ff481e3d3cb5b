"""
Transaction builder: compute budget, compile, simulate, tighten the limit.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .compute_budget import (
    ComputeBudgetConfig,
    Destination,
    FeeMode,
    MAX_COMPUTE_LIMIT,
    decode_compute_budget,
    replace_compute_unit_limit,
    set_compute_unit_limit,
    set_compute_unit_price,
)
from .errors import SimulationError, ValidationError, parse_program_error
from .priority_fees import PriorityFeeEstimator
from .solana_client import SolanaClient
from .utils import get_terminal_colors

logger = logging.getLogger(__name__)

# Max serialized transaction size (packet data size)
MAX_TRANSACTION_SIZE = 1232


@dataclass(frozen=True)
class InstructionSet:
    """Instructions grouped by phase; merged as setup -> core -> cleanup."""
    setup: Tuple[Instruction, ...] = ()
    core: Tuple[Instruction, ...] = ()
    cleanup: Tuple[Instruction, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "setup", tuple(self.setup))
        object.__setattr__(self, "core", tuple(self.core))
        object.__setattr__(self, "cleanup", tuple(self.cleanup))

    def instructions(self) -> List[Instruction]:
        return [*self.setup, *self.core, *self.cleanup]

    def merged(self, compute_budget: Sequence[Instruction] = ()) -> List[Instruction]:
        """Compute-budget instructions first, then setup, core, cleanup."""
        return [*compute_budget, *self.instructions()]

    def __add__(self, other: "InstructionSet") -> "InstructionSet":
        return InstructionSet(
            setup=self.setup + other.setup,
            core=self.core + other.core,
            cleanup=self.cleanup + other.cleanup
        )

    def __bool__(self) -> bool:
        return bool(self.setup or self.core or self.cleanup)


@dataclass(frozen=True)
class BuiltTransaction:
    """A compiled, unsigned transaction. Never mutated after construction."""
    payer: Pubkey
    blockhash: Hash
    instructions: Tuple[Instruction, ...]
    lookup_tables: Tuple[AddressLookupTableAccount, ...]
    message: MessageV0
    compute_limit: Optional[int] = None
    compute_price: Optional[int] = None
    units_consumed: Optional[int] = None
    tip_only: bool = False

    @classmethod
    def compile(
        cls,
        payer: Pubkey,
        blockhash: Hash,
        instructions: Sequence[Instruction],
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
        units_consumed: Optional[int] = None,
        tip_only: bool = False
    ) -> "BuiltTransaction":
        message = MessageV0.try_compile(
            payer=payer,
            instructions=list(instructions),
            address_lookup_table_accounts=list(lookup_tables),
            recent_blockhash=blockhash
        )
        budget = decode_compute_budget(instructions)
        return cls(
            payer=payer,
            blockhash=blockhash,
            instructions=tuple(instructions),
            lookup_tables=tuple(lookup_tables),
            message=message,
            compute_limit=budget.limit,
            compute_price=budget.price,
            units_consumed=units_consumed,
            tip_only=tip_only
        )

    def unsigned(self) -> VersionedTransaction:
        """Transaction with placeholder signatures, for simulation and size checks."""
        signatures = [Signature.default()] * self.message.header.num_required_signatures
        return VersionedTransaction.populate(self.message, signatures)

    def serialized_size(self) -> int:
        return len(bytes(self.unsigned()))

    def with_compute_limit(self, units: int, units_consumed: Optional[int] = None) -> "BuiltTransaction":
        """New instance with the limit replaced, recompiled against the same blockhash."""
        return BuiltTransaction.compile(
            payer=self.payer,
            blockhash=self.blockhash,
            instructions=replace_compute_unit_limit(self.instructions, units),
            lookup_tables=self.lookup_tables,
            units_consumed=units_consumed,
            tip_only=self.tip_only
        )


@dataclass(frozen=True)
class TransactionBuilder:
    """
    Turns an InstructionSet into a BuiltTransaction.

    Holds only its collaborators; all per-build settings come in through
    `build`, so one instance can serve concurrent builds.
    """
    solana_client: SolanaClient
    fee_estimator: Optional[PriorityFeeEstimator] = field(default=None)

    async def compute_budget_instructions(
        self,
        config: ComputeBudgetConfig,
        instruction_set: InstructionSet
    ) -> List[Instruction]:
        """
        Limit and price instructions for `config`.

        RELAY destination pays through the tip, so price is 0. FIXED mode uses
        the configured price verbatim. DYNAMIC mode asks the estimator and caps
        at the configured price.
        """
        limit = config.initial_limit
        if config.destination == Destination.RELAY:
            price = 0
        elif config.mode == FeeMode.FIXED:
            price = config.price
        else:
            if self.fee_estimator is None:
                raise ValidationError("Dynamic compute budget requires a fee estimator")
            price = await self.fee_estimator.estimate(
                instruction_set.instructions(), config.speed, config.price
            )
        return [set_compute_unit_limit(limit), set_compute_unit_price(price)]

    async def build(
        self,
        payer: Pubkey,
        instruction_set: InstructionSet,
        config: Optional[ComputeBudgetConfig] = None,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
        tip_only: bool = False
    ) -> BuiltTransaction:
        """
        Build a transaction for `instruction_set`.

        Args:
            payer: Fee payer
            instruction_set: Payload instructions
            config: Compute budget; None emits no compute-budget instructions
            lookup_tables: Address lookup tables to compile against
            tip_only: Skip simulation (fee-less tip transfers)

        Returns:
            BuiltTransaction, with the compute limit tightened to
            ceil(units_consumed * limit_buffer) when the limit is not pinned

        Raises:
            ValidationError: Empty instruction set or oversized transaction
            SimulationError: Simulation reported an on-chain error
            RpcError: Blockhash fetch or simulation request failed
        """
        colors = get_terminal_colors()
        if not instruction_set:
            raise ValidationError("Cannot build a transaction with no instructions")

        budget_ixs = []
        if config is not None:
            budget_ixs = await self.compute_budget_instructions(config, instruction_set)

        blockhash = await self.solana_client.get_latest_blockhash()
        built = BuiltTransaction.compile(
            payer=payer,
            blockhash=blockhash,
            instructions=instruction_set.merged(budget_ixs),
            lookup_tables=lookup_tables,
            tip_only=tip_only
        )

        if not tip_only:
            built = await self._simulate_and_adjust(built, config)

        size = built.serialized_size()
        if size > MAX_TRANSACTION_SIZE:
            raise ValidationError(f"Transaction too large: {size} > {MAX_TRANSACTION_SIZE} bytes")

        logger.info(
            f"Transaction built: {len(built.instructions)} instructions, "
            f"limit={colors['GREEN']}{built.compute_limit}{colors['RESET']}, "
            f"price={colors['YELLOW']}{built.compute_price}{colors['RESET']}, "
            f"{size} bytes"
        )
        return built

    async def _simulate_and_adjust(
        self,
        built: BuiltTransaction,
        config: Optional[ComputeBudgetConfig]
    ) -> BuiltTransaction:
        sim = await self.solana_client.simulate(built.unsigned())
        units = sim.get("units_consumed")

        if sim.get("err"):
            program_error = parse_program_error(
                sim["err"],
                logs=sim.get("logs") or [],
                account_keys=built.message.account_keys,
                program_id_indexes=[ix.program_id_index for ix in built.message.instructions]
            )
            if program_error is not None and program_error.expected:
                logger.info(f"Simulation failed with expected error {program_error.name} ({program_error.code})")
            else:
                logger.error(f"Simulation failed: {sim['err']}")
            raise SimulationError(
                f"Simulation failed: {sim['err']}",
                err=sim["err"],
                logs=sim.get("logs"),
                units_consumed=units,
                program_error=program_error
            )

        if config is None or config.limit_pinned:
            return built
        if not units:
            logger.warning("Simulation reported no units consumed, keeping initial compute limit")
            return built

        new_limit = min(math.ceil(units * config.limit_buffer), MAX_COMPUTE_LIMIT)
        logger.debug(f"Units consumed {units}, compute limit {built.compute_limit} -> {new_limit}")
        return built.with_compute_limit(new_limit, units_consumed=units)
