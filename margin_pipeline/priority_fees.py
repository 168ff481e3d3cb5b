"""
Priority fee estimation.

Price per compute unit comes from, in order:
1. An external fee-estimation service (getPriorityFeeEstimate JSON-RPC),
   keyed by the writable accounts of the instructions.
2. Recent prioritization fees observed by the chain RPC for the same accounts:
   75th percentile of the nonzero samples times the speed buffer.
3. DEFAULT_UNIT_PRICE times the speed buffer.
The configured ceiling caps whichever value is used.
"""
import logging
import math
from dataclasses import dataclass
from fractions import Fraction
from typing import Iterable, List, Optional, Sequence

import httpx
from solders.instruction import Instruction

from .compute_budget import DEFAULT_UNIT_PRICE, Speed, writable_accounts
from .errors import RpcError
from .solana_client import SolanaClient
from .utils import get_terminal_colors, short_key

logger = logging.getLogger(__name__)

LOCAL_FEE_PERCENTILE = 75


@dataclass
class PriorityFeeLevels:
    """Tiered price ladder returned by the fee-estimation service (micro-lamports/CU)."""
    min: float
    low: float
    medium: float
    high: float
    very_high: float
    unsafe_max: float

    def for_speed(self, speed: Speed) -> float:
        return {
            "medium": self.medium,
            "high": self.high,
            "veryHigh": self.very_high,
        }[speed.fee_tier]


class PriorityFeeClient:
    """Client for a getPriorityFeeEstimate-compatible JSON-RPC endpoint."""

    def __init__(self, api_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.api_url = api_url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def get_fee_levels(self, account_keys: Sequence[str]) -> PriorityFeeLevels:
        """
        Request the full fee ladder for the given account keys.

        Raises:
            RpcError: On transport failure, HTTP error, or a malformed response
        """
        payload = {
            "jsonrpc": "2.0",
            "id": "priority-fee",
            "method": "getPriorityFeeEstimate",
            "params": [
                {
                    "accountKeys": list(account_keys),
                    "options": {"includeAllPriorityFeeLevels": True}
                }
            ]
        }
        try:
            response = await self.client.post(self.api_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RpcError(f"Priority fee service request failed: {e}") from e

        if "error" in data:
            raise RpcError(f"Priority fee service error: {data['error']}")
        try:
            levels = data["result"]["priorityFeeLevels"]
            return PriorityFeeLevels(
                min=float(levels["min"]),
                low=float(levels["low"]),
                medium=float(levels["medium"]),
                high=float(levels["high"]),
                very_high=float(levels["veryHigh"]),
                unsafe_max=float(levels["unsafeMax"])
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError(f"Malformed priority fee response: {data}") from e

    async def close(self):
        await self.client.aclose()


def percentile(sorted_values: Sequence[int], pct: int) -> Fraction:
    """
    Percentile with linear interpolation between the two bracketing ranks.

    percentile([10, 20, 30, 40], 75) == 32.5
    """
    if not sorted_values:
        raise ValueError("percentile of empty sequence")
    rank = Fraction(pct, 100) * (len(sorted_values) - 1)
    lower = math.floor(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * weight


def price_from_samples(samples: Iterable[int], speed: Speed) -> int:
    """Buffered 75th percentile of nonzero samples, or the buffered default price."""
    nonzero = sorted(s for s in samples if s > 0)
    if not nonzero:
        return math.ceil(DEFAULT_UNIT_PRICE * speed.buffer)
    return math.ceil(percentile(nonzero, LOCAL_FEE_PERCENTILE) * speed.buffer)


class PriorityFeeEstimator:
    """Derives a compute-unit price for an instruction list."""

    def __init__(self, solana_client: SolanaClient, fee_client: Optional[PriorityFeeClient] = None):
        self.solana_client = solana_client
        self.fee_client = fee_client

    async def estimate(self, instructions: Sequence[Instruction], speed: Speed, ceiling: int) -> int:
        """
        Estimate the compute-unit price for `instructions`.

        Args:
            instructions: Payload instructions (compute-budget instructions excluded)
            speed: Speed tier
            ceiling: Maximum price in micro-lamports per compute unit

        Returns:
            Price in micro-lamports per compute unit, never above `ceiling`

        Raises:
            RpcError: If the fee service is unavailable and local samples cannot be read
        """
        colors = get_terminal_colors()
        accounts = writable_accounts(instructions)
        price = None

        if self.fee_client is not None:
            try:
                levels = await self.fee_client.get_fee_levels([str(a) for a in accounts])
                price = math.ceil(levels.for_speed(speed))
                logger.debug(f"Fee service {speed.fee_tier} tier: {price} for {len(accounts)} writable accounts")
            except RpcError as e:
                logger.warning(f"Priority fee service unavailable, using local samples: {e}")

        if price is None:
            samples = await self.solana_client.get_recent_prioritization_fees(accounts)
            price = price_from_samples(samples, speed)
            logger.debug(
                f"Local fee samples: {len(samples)} "
                f"({sum(1 for s in samples if s > 0)} nonzero) -> {price}"
            )

        if price > ceiling:
            logger.debug(f"Estimated price {price} above ceiling, capped at {ceiling}")
            price = ceiling

        first = short_key(accounts[0]) if accounts else "-"
        logger.info(
            f"Priority fee: {colors['YELLOW']}{price}{colors['RESET']} micro-lamports/CU "
            f"(speed={speed.value}, first writable={first})"
        )
        return price
