"""
Compute-budget configuration and structural decoding of compute-budget instructions.

Instructions are built with the solders builders; decoding finds them by
program id and discriminator.
"""
import struct
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import Iterable, List, Optional, Sequence

from solders.compute_budget import ID as COMPUTE_BUDGET_PROGRAM_ID
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .errors import ValidationError
from .utils import dedupe

SET_COMPUTE_UNIT_LIMIT = 2
SET_COMPUTE_UNIT_PRICE = 3

DEFAULT_COMPUTE_LIMIT = 400_000
DEFAULT_UNIT_PRICE = 50_000
MAX_COMPUTE_LIMIT = 1_400_000
DEFAULT_LIMIT_BUFFER = Fraction(6, 5)


class Destination(str, Enum):
    """Where the transaction is headed: a priced RPC broadcast or a tip-paid relay."""
    PRIORITY = "priority"
    RELAY = "relay"


class FeeMode(str, Enum):
    DYNAMIC = "dynamic"
    FIXED = "fixed"


class Speed(str, Enum):
    NORMAL = "normal"
    FAST = "fast"
    TURBO = "turbo"

    @property
    def buffer(self) -> Fraction:
        return SPEED_BUFFERS[self]

    @property
    def fee_tier(self) -> str:
        return SPEED_FEE_TIERS[self]


SPEED_BUFFERS = {
    Speed.NORMAL: Fraction(11, 10),
    Speed.FAST: Fraction(2),
    Speed.TURBO: Fraction(4),
}

# Tier of the external fee ladder used for each speed
SPEED_FEE_TIERS = {
    Speed.NORMAL: "medium",
    Speed.FAST: "high",
    Speed.TURBO: "veryHigh",
}


@dataclass(frozen=True)
class ComputeBudgetConfig:
    """
    Immutable compute-budget settings for one build.

    `price` is the ceiling in DYNAMIC mode and the exact price in FIXED mode,
    in micro-lamports per compute unit. `limit` pins the compute-unit limit;
    when None the builder starts from DEFAULT_COMPUTE_LIMIT and tightens it
    after simulation.
    """
    destination: Destination = Destination.PRIORITY
    mode: FeeMode = FeeMode.DYNAMIC
    speed: Speed = Speed.NORMAL
    price: int = DEFAULT_UNIT_PRICE
    limit: Optional[int] = None
    limit_buffer: Fraction = DEFAULT_LIMIT_BUFFER

    def __post_init__(self):
        try:
            object.__setattr__(self, "destination", Destination(self.destination))
            object.__setattr__(self, "mode", FeeMode(self.mode))
            object.__setattr__(self, "speed", Speed(self.speed))
        except ValueError as e:
            raise ValidationError(f"Invalid compute budget config: {e}") from e
        object.__setattr__(self, "limit_buffer", Fraction(self.limit_buffer))

        if not isinstance(self.price, int) or self.price < 0:
            raise ValidationError(f"Compute unit price must be a non-negative integer, got {self.price!r}")
        if self.destination == Destination.PRIORITY and self.price == 0:
            raise ValidationError("Compute unit price must be positive for priority destination")
        if self.limit is not None and not 1 <= self.limit <= MAX_COMPUTE_LIMIT:
            raise ValidationError(f"Compute unit limit must be within 1..{MAX_COMPUTE_LIMIT}, got {self.limit}")
        if self.limit_buffer < 1:
            raise ValidationError(f"Limit buffer must be >= 1, got {self.limit_buffer}")

    @property
    def limit_pinned(self) -> bool:
        return self.limit is not None

    @property
    def initial_limit(self) -> int:
        return self.limit if self.limit is not None else DEFAULT_COMPUTE_LIMIT


@dataclass(frozen=True)
class ComputeBudgetValues:
    """Limit and price decoded from a transaction's compute-budget instructions."""
    limit: Optional[int]
    price: Optional[int]


def is_compute_budget_instruction(ix: Instruction) -> bool:
    return ix.program_id == COMPUTE_BUDGET_PROGRAM_ID


def decode_compute_budget(instructions: Iterable[Instruction]) -> ComputeBudgetValues:
    """
    Find the compute-unit limit and price by program id and discriminator.

    Position in the instruction list does not matter.
    """
    limit = None
    price = None
    for ix in instructions:
        if not is_compute_budget_instruction(ix):
            continue
        data = bytes(ix.data)
        if data[:1] == bytes([SET_COMPUTE_UNIT_LIMIT]) and len(data) >= 5:
            limit = struct.unpack_from("<I", data, 1)[0]
        elif data[:1] == bytes([SET_COMPUTE_UNIT_PRICE]) and len(data) >= 9:
            price = struct.unpack_from("<Q", data, 1)[0]
    return ComputeBudgetValues(limit=limit, price=price)


def replace_compute_unit_limit(instructions: Sequence[Instruction], units: int) -> List[Instruction]:
    """Return a new list with the compute-unit limit instruction swapped for `units`."""
    replaced = []
    found = False
    for ix in instructions:
        if (not found and is_compute_budget_instruction(ix)
                and bytes(ix.data)[:1] == bytes([SET_COMPUTE_UNIT_LIMIT])):
            replaced.append(set_compute_unit_limit(units))
            found = True
        else:
            replaced.append(ix)
    if not found:
        raise ValidationError("No compute unit limit instruction to replace")
    return replaced


def writable_accounts(instructions: Iterable[Instruction]) -> List[Pubkey]:
    """Writable account keys across all instructions, deduplicated in first-seen order."""
    return dedupe(
        meta.pubkey
        for ix in instructions
        for meta in ix.accounts
        if meta.is_writable
    )
